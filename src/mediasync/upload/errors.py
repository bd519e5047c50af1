"""Error taxonomy for the upload pipeline.

Every error carries a :class:`~mediasync.models.FailureKind` so that the
batch coordinator classifies failures by kind rather than by message text.
Only :class:`TransientTransportError` (and its subclasses) is ever retried.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mediasync.models import FailureKind

if TYPE_CHECKING:
    from mediasync.models import BatchResult


class MediaSyncError(Exception):
    """Base class for all pipeline errors."""

    kind: FailureKind = FailureKind.VALIDATION


class TransientTransportError(MediaSyncError):
    """Network failure, 5xx response or rate-limit signal. Retryable."""

    kind = FailureKind.TRANSIENT_TRANSPORT

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(TransientTransportError):
    """The remote service signalled that the client is over its rate limit."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class TransportTimeoutError(TransientTransportError):
    """An outbound call did not complete within its timeout.

    Only idempotent calls are retried after a timeout; for anything else
    the remote outcome is unknown.
    """


class ValidationError(MediaSyncError):
    """Malformed, unauthorized or otherwise rejected request. Not retried."""

    kind = FailureKind.VALIDATION

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: list[str] | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []
        self.body = body


class DomainUserError(MediaSyncError):
    """Per-item rejection returned inside an otherwise successful response."""

    kind = FailureKind.DOMAIN_USER

    def __init__(
        self,
        message: str,
        field: tuple[str, ...] = (),
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.field = field
        self.code = code


class NotCreatedError(DomainUserError):
    """No file came back for an item and no error names it.

    Happens when the catalog rejects a whole multi-item call because of a
    sibling item; the item itself may well be fine on its own.
    """


class ProtocolExpiryError(MediaSyncError):
    """A staged target expired before its transfer completed."""

    kind = FailureKind.PROTOCOL_EXPIRY


class ResolutionAmbiguityError(MediaSyncError):
    """No reachable public URL could be found for a file."""

    kind = FailureKind.RESOLUTION_AMBIGUITY

    def __init__(self, message: str, tried: list[str] | None = None) -> None:
        super().__init__(message)
        self.tried = tried or []


class MetadataAttachmentError(MediaSyncError):
    """Provenance could not be written for a file that was uploaded."""

    kind = FailureKind.METADATA_ATTACHMENT

    def __init__(self, message: str, file_id: str | None = None) -> None:
        super().__init__(message)
        self.file_id = file_id


class BatchAbortedError(MediaSyncError):
    """The remote service became unreachable for the rest of a batch.

    ``result`` still accounts for every submitted request; the ones that
    were never attempted are recorded as transport failures.
    """

    kind = FailureKind.TRANSIENT_TRANSPORT

    def __init__(self, message: str, result: BatchResult) -> None:
        super().__init__(message)
        self.result = result
