"""Staged upload orchestrator: stage -> transfer -> finalize.

Drives one :class:`~mediasync.upload.fsm.StagedUploadSM` per request:

1. **requested** -- obtain a signed :class:`StagedTarget`.
2. **transferred** -- POST the payload to the signer.
3. **finalized** -- create the catalog file from the target's resource URL.

An expired target or a timed-out transfer fails the attempt and restarts
it from step 1 with a fresh target, up to ``restart_limit`` times.  A
finalize is never repeated blindly: each resource URL is finalized at most
once, and a request whose finalize timed out is reconciled against the
catalog before anything is created again.  Staged files are named after
the request fingerprint so that reconcile can find them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from mediasync.models import FileRecord, StagedTarget, UploadConfig, UploadRequest
from mediasync.upload.download import SourceFetcher
from mediasync.upload.errors import (
    MediaSyncError,
    ProtocolExpiryError,
    TransportTimeoutError,
    ValidationError,
)
from mediasync.upload.executor import FileCreateInput, RequestExecutor
from mediasync.upload.fsm import StagedUploadSM, create_fsm
from mediasync.upload.provenance import compute_request_fingerprint, staged_filename

logger = logging.getLogger(__name__)

ExpiryPredicate = Callable[[ValidationError], bool]
Clock = Callable[[], datetime]

_EXPIRY_MARKERS = (
    "<Code>ExpiredToken</Code>",
    "<Code>RequestExpired</Code>",
    "Request has expired",
    "Policy expired",
)


def default_expiry_predicate(error: ValidationError) -> bool:
    """Recognize a signer rejection caused by an expired signature."""
    body = error.body or ""
    return any(marker in body for marker in _EXPIRY_MARKERS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StagedUploadOrchestrator:
    """Runs the three-step staged upload protocol for byte payloads.

    Usage::

        staged = StagedUploadOrchestrator(executor, fetcher, restart_limit=1)
        record = await staged.upload(UploadRequest(Path("cover.jpg")))

    Args:
        executor: Request executor for the catalog calls and the transfer.
        fetcher: Loads payload bytes when ``upload`` is not given them.
        restart_limit: Fresh-target restarts allowed after an expiry or a
            transfer timeout.
        expiry_predicate: Decides whether a signer rejection means the
            target expired.
        clock: Returns the current UTC time; used for expiry checks.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        fetcher: SourceFetcher,
        *,
        restart_limit: int = 1,
        expiry_predicate: ExpiryPredicate = default_expiry_predicate,
        clock: Clock = _utcnow,
    ) -> None:
        self._executor = executor
        self._fetcher = fetcher
        self.restart_limit = restart_limit
        self._is_expiry = expiry_predicate
        self._clock = clock

        # fingerprint -> finalized record
        self._finalized: dict[str, FileRecord] = {}
        self._finalized_targets: set[str] = set()
        # fingerprint -> transferred target whose finalize had an unknown outcome
        self._unconfirmed: dict[str, StagedTarget] = {}
        self._in_flight: dict[str, asyncio.Task[FileRecord]] = {}

    @classmethod
    def from_config(
        cls,
        config: UploadConfig,
        executor: RequestExecutor,
        fetcher: SourceFetcher,
    ) -> StagedUploadOrchestrator:
        return cls(executor, fetcher, restart_limit=config.staged_restart_limit)

    async def upload(
        self,
        request: UploadRequest,
        *,
        payload: bytes | None = None,
        timeout: float | None = None,
    ) -> FileRecord:
        """Upload *request* through the staged protocol.

        Re-submitting a request that was already finalized returns the
        existing record; concurrent identical submissions share one run.

        Args:
            request: The upload request.
            payload: Pre-loaded payload bytes; loaded from the request
                source when omitted.
            timeout: Per-call timeout for every remote step.

        Raises:
            DomainUserError: The catalog refused the target or the file.
            ProtocolExpiryError: Targets kept expiring past the restart limit.
            TransportTimeoutError: The transfer (past the restart limit) or
                the finalize timed out.
            ValidationError: The signer or the catalog rejected a request.
        """
        if payload is None:
            payload = await self._fetcher.load(request, timeout=timeout)
        fingerprint = compute_request_fingerprint(request, payload)

        existing = self._finalized.get(fingerprint)
        if existing is not None:
            logger.info(
                "%s already finalized as %s, not uploading again",
                request.display_name,
                existing.id,
            )
            return existing

        task = self._in_flight.get(fingerprint)
        if task is None:
            task = asyncio.ensure_future(
                self._run(request, payload, fingerprint, timeout)
            )
            self._in_flight[fingerprint] = task
            task.add_done_callback(lambda _: self._in_flight.pop(fingerprint, None))
        return await asyncio.shield(task)

    async def _run(
        self,
        request: UploadRequest,
        payload: bytes,
        fingerprint: str,
        timeout: float | None,
    ) -> FileRecord:
        if fingerprint in self._unconfirmed:
            record = await self._reconcile(request, fingerprint, timeout)
            if record is not None:
                return record

        filename = staged_filename(request.display_name, fingerprint)
        sm = create_fsm()
        restarts_left = self.restart_limit

        while True:
            target = await self._request_target(sm, request, filename, len(payload), timeout)
            try:
                await self._transfer(sm, target, request, filename, payload, timeout)
            except (ProtocolExpiryError, TransportTimeoutError) as exc:
                if restarts_left <= 0:
                    raise
                restarts_left -= 1
                logger.warning(
                    "Staged transfer of %s failed (%s), restarting with a fresh target",
                    request.display_name,
                    exc,
                )
                sm.restart()
                continue

            return await self._finalize(sm, target, request, fingerprint, timeout)

    async def _request_target(
        self,
        sm: StagedUploadSM,
        request: UploadRequest,
        filename: str,
        size: int,
        timeout: float | None,
    ) -> StagedTarget:
        try:
            target = await self._executor.stage_upload(
                filename,
                request.content_type,
                size,
                request.resource_type,
                timeout=timeout,
            )
        except MediaSyncError:
            sm.fail()
            raise
        sm.request_target()
        logger.debug("Staged target for %s: %s", request.display_name, target.resource_url)
        return target

    async def _transfer(
        self,
        sm: StagedUploadSM,
        target: StagedTarget,
        request: UploadRequest,
        filename: str,
        payload: bytes,
        timeout: float | None,
    ) -> None:
        if target.is_expired(self._clock()):
            sm.fail()
            raise ProtocolExpiryError(
                f"Staged target for {request.display_name} expired at {target.expires_at}"
            )

        try:
            await self._executor.transfer_to_target(
                target,
                payload,
                filename,
                request.content_type,
                timeout=timeout,
            )
        except ValidationError as exc:
            sm.fail()
            if self._is_expiry(exc):
                raise ProtocolExpiryError(
                    f"Signer rejected expired target for {request.display_name}"
                ) from exc
            raise
        except MediaSyncError:
            sm.fail()
            raise
        sm.complete_transfer()

    async def _finalize(
        self,
        sm: StagedUploadSM,
        target: StagedTarget,
        request: UploadRequest,
        fingerprint: str,
        timeout: float | None,
    ) -> FileRecord:
        if target.resource_url in self._finalized_targets:
            sm.fail()
            raise ValidationError(f"Target {target.resource_url} was already finalized")

        try:
            record = await self._executor.create_file(
                FileCreateInput(
                    original_source=target.resource_url,
                    content_type=request.resource_type,
                    alt=request.descriptive_text or None,
                ),
                timeout=timeout,
            )
        except TransportTimeoutError:
            sm.fail()
            self._unconfirmed[fingerprint] = target
            logger.error(
                "Finalize of %s timed out; outcome unknown, will reconcile on resubmission",
                request.display_name,
            )
            raise
        except MediaSyncError:
            sm.fail()
            raise

        sm.finalize()
        self._remember(fingerprint, target, record)
        logger.info("Staged upload of %s finalized as %s", request.display_name, record.id)
        return record

    def _remember(self, fingerprint: str, target: StagedTarget, record: FileRecord) -> None:
        self._finalized_targets.add(target.resource_url)
        self._finalized[fingerprint] = record
        self._unconfirmed.pop(fingerprint, None)

    async def _reconcile(
        self,
        request: UploadRequest,
        fingerprint: str,
        timeout: float | None,
    ) -> FileRecord | None:
        """Resolve a finalize whose outcome was lost to a timeout.

        The staged filename carries the request fingerprint, so a search on
        it finds only files this request created.  Returns that file, or
        finalizes the same (already transferred) target when there is none.
        """
        target = self._unconfirmed[fingerprint]
        filename = staged_filename(request.display_name, fingerprint)
        candidate_ids = await self._executor.search_files(
            f"filename:{filename}", timeout=timeout
        )
        for file_id in candidate_ids:
            record = await self._executor.query_file(file_id, timeout=timeout)
            if (record.descriptive_text or "") != request.descriptive_text:
                logger.debug("Skipping %s: descriptive text differs", record.id)
                continue
            logger.info(
                "Recovered %s from an earlier finalize: %s",
                request.display_name,
                record.id,
            )
            self._remember(fingerprint, target, record)
            return record

        if target.is_expired(self._clock()):
            self._unconfirmed.pop(fingerprint, None)
            return None

        sm = create_fsm("transferred")
        return await self._finalize(sm, target, request, fingerprint, timeout)
