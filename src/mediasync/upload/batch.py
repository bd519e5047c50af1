"""Batch coordinator for catalog media uploads.

Composes the upload primitives (executor, staged orchestrator, metadata
tracker, circuit breaker) into a batch engine that:

* Splits requests into chunks processed one after another
* Bounds concurrency inside a chunk with ``asyncio.Semaphore``
* Sends URL sources in one ``fileCreate`` call per chunk and byte, path
  and fetch-refusing URL sources through the staged protocol
* Attaches provenance after each file exists
* Accounts for every submitted request in the returned :class:`BatchResult`
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Protocol

from mediasync.models import (
    BatchResult,
    FailureKind,
    FileRecord,
    ItemFailure,
    SourceKind,
    UploadConfig,
    UploadRequest,
)
from mediasync.upload.download import needs_staged_fallback
from mediasync.upload.errors import (
    BatchAbortedError,
    MediaSyncError,
    MetadataAttachmentError,
    NotCreatedError,
    TransientTransportError,
)
from mediasync.upload.executor import FileCreateInput, RequestExecutor
from mediasync.upload.metadata import MetadataTracker
from mediasync.upload.provenance import build_provenance_records
from mediasync.upload.staged import StagedUploadOrchestrator

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Outcome = FileRecord | BaseException


class ProgressCallbacks(Protocol):
    """Events the coordinator reports while a batch runs."""

    def start_chunk(self, chunk_number: int, chunk_size: int) -> None: ...

    def complete_chunk(self, chunk_number: int) -> None: ...

    def item_succeeded(self, name: str) -> None: ...

    def item_failed(self, name: str, error: str) -> None: ...

    def item_unverified(self, name: str) -> None: ...

    def update_circuit_state(self, state: str, concurrency: int) -> None: ...


def _failure_from(error: BaseException) -> ItemFailure:
    if isinstance(error, MediaSyncError):
        return ItemFailure(kind=error.kind, message=str(error), error=error)
    return ItemFailure(
        kind=FailureKind.VALIDATION,
        message=f"{type(error).__name__}: {error}",
    )


class BatchCoordinator:
    """Uploads a batch of requests and reports the outcome of each one.

    Usage::

        coordinator = BatchCoordinator.from_config(config, executor, staged, tracker)
        result = await coordinator.submit(requests)
        assert result.is_complete

    Args:
        executor: Request executor for direct URL creation.
        staged: Orchestrator for the staged protocol.
        tracker: Metadata tracker for provenance.
        chunk_size: Requests per chunk and concurrency bound inside it.
        inter_chunk_delay: Seconds slept between chunks.
        staged_fallback_domains: Hosts whose URLs are downloaded and staged.
        abort_after_unreachable_chunks: Consecutive chunks failing entirely
            on transport before the batch is aborted (0 disables).
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        staged: StagedUploadOrchestrator,
        tracker: MetadataTracker,
        *,
        chunk_size: int = 10,
        inter_chunk_delay: float = 0.5,
        staged_fallback_domains: tuple[str, ...] = (),
        abort_after_unreachable_chunks: int = 2,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._executor = executor
        self._staged = staged
        self._tracker = tracker
        self.chunk_size = chunk_size
        self.inter_chunk_delay = inter_chunk_delay
        self.staged_fallback_domains = staged_fallback_domains
        self.abort_after_unreachable_chunks = abort_after_unreachable_chunks
        self._sleep = sleep
        self._shutdown_event = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: UploadConfig,
        executor: RequestExecutor,
        staged: StagedUploadOrchestrator,
        tracker: MetadataTracker,
    ) -> BatchCoordinator:
        return cls(
            executor,
            staged,
            tracker,
            chunk_size=config.chunk_size,
            inter_chunk_delay=config.inter_chunk_delay,
            staged_fallback_domains=config.staged_fallback_domains,
            abort_after_unreachable_chunks=config.abort_after_unreachable_chunks,
        )

    @property
    def shutdown_event(self) -> asyncio.Event:
        """Set it to stop after the current chunk; the rest are cancelled."""
        return self._shutdown_event

    def request_shutdown(self) -> None:
        logger.warning("Graceful shutdown requested, finishing current chunk...")
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def submit(
        self,
        requests: Iterable[UploadRequest],
        *,
        progress: ProgressCallbacks | None = None,
    ) -> BatchResult:
        """Upload *requests* and return the outcome of every one of them.

        Individual failures never abort the batch; they are recorded in
        ``failed`` with their :class:`FailureKind`.

        Raises:
            BatchAbortedError: The catalog stayed unreachable for
                ``abort_after_unreachable_chunks`` consecutive chunks.  Its
                ``result`` still accounts for every request.
        """
        pending = list(requests)
        result = BatchResult(submitted=len(pending))
        chunks = [
            pending[i : i + self.chunk_size] for i in range(0, len(pending), self.chunk_size)
        ]
        logger.info(
            "Submitting %d requests in %d chunks of up to %d",
            len(pending),
            len(chunks),
            self.chunk_size,
        )

        unreachable_streak = 0
        for chunk_number, chunk in enumerate(chunks, start=1):
            if self._shutdown_event.is_set():
                logger.warning("Shutdown requested, skipping remaining chunks")
                self._fail_remaining(
                    result,
                    chunks[chunk_number - 1 :],
                    FailureKind.CANCELLED,
                    "Cancelled before upload",
                    progress,
                )
                break

            if chunk_number > 1 and self.inter_chunk_delay > 0:
                await self._sleep(self.inter_chunk_delay)

            outcomes, attach_errors = await self._process_chunk(chunk, chunk_number, progress)
            self._record(result, chunk, outcomes, attach_errors, progress)
            if progress is not None:
                progress.complete_chunk(chunk_number)

            if all(isinstance(o, TransientTransportError) for o in outcomes):
                unreachable_streak += 1
            else:
                unreachable_streak = 0

            if (
                self.abort_after_unreachable_chunks > 0
                and unreachable_streak >= self.abort_after_unreachable_chunks
                and chunk_number < len(chunks)
            ):
                self._fail_remaining(
                    result,
                    chunks[chunk_number:],
                    FailureKind.TRANSIENT_TRANSPORT,
                    "Not attempted: catalog unreachable",
                    progress,
                )
                logger.error(
                    "Aborting batch after %d unreachable chunks: %s",
                    unreachable_streak,
                    result.summary(),
                )
                raise BatchAbortedError(
                    f"Catalog unreachable for {unreachable_streak} consecutive chunks",
                    result,
                )

        logger.info(
            "Batch complete: %d succeeded (%d unverified), %d failed of %d submitted",
            len(result.succeeded),
            len(result.unverified),
            len(result.failed),
            result.submitted,
        )
        return result

    # ------------------------------------------------------------------
    # Chunk processing
    # ------------------------------------------------------------------

    def _goes_direct(self, request: UploadRequest) -> bool:
        return request.source_kind == SourceKind.URL and not needs_staged_fallback(
            request.source, self.staged_fallback_domains
        )

    async def _process_chunk(
        self,
        chunk: list[UploadRequest],
        chunk_number: int,
        progress: ProgressCallbacks | None,
    ) -> tuple[list[Outcome], dict[int, MetadataAttachmentError]]:
        breaker = self._executor.governor.circuit_breaker
        concurrency = breaker.get_recommended_concurrency(self.chunk_size)
        semaphore = asyncio.Semaphore(concurrency)

        if progress is not None:
            progress.start_chunk(chunk_number, len(chunk))
            progress.update_circuit_state(breaker.state.value, concurrency)
        logger.info(
            "Starting chunk %d (%d items, concurrency %d)",
            chunk_number,
            len(chunk),
            concurrency,
        )

        direct_idx = [i for i, r in enumerate(chunk) if self._goes_direct(r)]
        staged_idx = [i for i, r in enumerate(chunk) if i not in direct_idx]

        async def staged_item(request: UploadRequest) -> FileRecord:
            async with semaphore:
                return await self._staged.upload(request)

        results = await asyncio.gather(
            self._create_direct([chunk[i] for i in direct_idx], semaphore),
            *(staged_item(chunk[i]) for i in staged_idx),
            return_exceptions=True,
        )

        outcomes: list[Outcome] = [None] * len(chunk)  # type: ignore[list-item]
        direct_result = results[0]
        if isinstance(direct_result, BaseException):
            for i in direct_idx:
                outcomes[i] = direct_result
        else:
            for i, outcome in zip(direct_idx, direct_result):
                outcomes[i] = outcome
        for i, outcome in zip(staged_idx, results[1:]):
            outcomes[i] = outcome

        attach_results = await asyncio.gather(
            *(
                self._attach(chunk[i], outcome, semaphore)
                for i, outcome in enumerate(outcomes)
                if isinstance(outcome, FileRecord)
            )
        )
        attached_idx = [i for i, o in enumerate(outcomes) if isinstance(o, FileRecord)]
        attach_errors = {
            i: err for i, err in zip(attached_idx, attach_results) if err is not None
        }
        return outcomes, attach_errors

    async def _create_direct(
        self,
        requests: list[UploadRequest],
        semaphore: asyncio.Semaphore,
    ) -> list[Outcome]:
        """One ``fileCreate`` call for the chunk's URL sources.

        Items the catalog dropped only because a sibling was rejected are
        retried on their own.
        """
        if not requests:
            return []
        inputs = [
            FileCreateInput(
                original_source=r.source,
                content_type=r.resource_type,
                alt=r.descriptive_text or None,
            )
            for r in requests
        ]
        async with semaphore:
            outcomes: list[Outcome] = list(await self._executor.create_files_batch(inputs))

        if len(inputs) > 1:
            for k, outcome in enumerate(outcomes):
                if not isinstance(outcome, NotCreatedError):
                    continue
                logger.info("Retrying %s on its own", requests[k].display_name)
                try:
                    async with semaphore:
                        outcomes[k] = await self._executor.create_file(inputs[k])
                except MediaSyncError as exc:
                    outcomes[k] = exc
        return outcomes

    async def _attach(
        self,
        request: UploadRequest,
        record: FileRecord,
        semaphore: asyncio.Semaphore,
    ) -> MetadataAttachmentError | None:
        """Attach provenance and check the stored values came back."""
        records = build_provenance_records(request.provenance, self._tracker.namespace)
        if not records:
            return None
        try:
            async with semaphore:
                stored = await self._tracker.attach(record.id, *records)
        except MetadataAttachmentError as exc:
            return exc
        except TransientTransportError as exc:
            return MetadataAttachmentError(
                f"Could not attach provenance to {record.id}: {exc}", file_id=record.id
            )

        actual = {r.identity: r.value for r in stored}
        missing = [r.key for r in records if actual.get(r.identity) != r.value]
        if missing:
            return MetadataAttachmentError(
                f"Provenance of {record.id} did not read back: {', '.join(missing)}",
                file_id=record.id,
            )
        return None

    # ------------------------------------------------------------------
    # Result accounting
    # ------------------------------------------------------------------

    def _record(
        self,
        result: BatchResult,
        chunk: list[UploadRequest],
        outcomes: list[Outcome],
        attach_errors: dict[int, MetadataAttachmentError],
        progress: ProgressCallbacks | None,
    ) -> None:
        for i, (request, outcome) in enumerate(zip(chunk, outcomes)):
            if isinstance(outcome, FileRecord):
                result.succeeded.append((request, outcome))
                if progress is not None:
                    progress.item_succeeded(request.display_name)
                error = attach_errors.get(i)
                if error is not None:
                    logger.warning("%s uploaded but unverified: %s", outcome.id, error)
                    result.unverified.append((request, outcome, error))
                    if progress is not None:
                        progress.item_unverified(request.display_name)
            else:
                failure = _failure_from(outcome)
                logger.error(
                    "Upload of %s failed (%s): %s",
                    request.display_name,
                    failure.kind.value,
                    failure.message,
                )
                result.failed.append((request, failure))
                if progress is not None:
                    progress.item_failed(request.display_name, failure.message)

    def _fail_remaining(
        self,
        result: BatchResult,
        chunks: list[list[UploadRequest]],
        kind: FailureKind,
        message: str,
        progress: ProgressCallbacks | None,
    ) -> None:
        for chunk in chunks:
            for request in chunk:
                result.failed.append((request, ItemFailure(kind=kind, message=message)))
                if progress is not None:
                    progress.item_failed(request.display_name, message)
