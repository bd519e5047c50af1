"""Data models and enums for the catalog media upload pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from mediasync.upload.errors import MediaSyncError, MetadataAttachmentError


class FileStatus(str, Enum):
    """Remote processing status of a catalog file."""

    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_follow(self, previous: FileStatus) -> bool:
        """Whether this status is a legal successor of *previous*.

        Statuses only move forward, and nothing comes back from FAILED.
        """
        if previous == FileStatus.FAILED:
            return self == FileStatus.FAILED
        if self == FileStatus.FAILED:
            return True
        return self.rank >= previous.rank


_STATUS_RANK = {
    FileStatus.UPLOADED: 0,
    FileStatus.PROCESSING: 1,
    FileStatus.READY: 2,
    FileStatus.FAILED: 3,
}


class SourceKind(str, Enum):
    """How the payload of an upload request is supplied."""

    URL = "url"
    BYTES = "bytes"
    PATH = "path"


class FailureKind(str, Enum):
    """Classification of a per-item failure in a batch."""

    TRANSIENT_TRANSPORT = "transient_transport"
    VALIDATION = "validation"
    DOMAIN_USER = "domain_user"
    PROTOCOL_EXPIRY = "protocol_expiry"
    RESOLUTION_AMBIGUITY = "resolution_ambiguity"
    METADATA_ATTACHMENT = "metadata_attachment"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class Provenance:
    """External identifiers an uploaded file is traced back to."""

    product_id: int | None = None
    external_code: str | None = None  # UPC
    batch_id: str | None = None


Source = Union[str, bytes, Path]


@dataclass(frozen=True)
class UploadRequest:
    """One logical unit of work: a single media asset to upload.

    ``source`` is a public URL (``str``), raw bytes, or a local
    :class:`~pathlib.Path`.  Byte and path sources need a ``filename`` for
    the staged upload; it defaults to the path's name.
    """

    source: Source
    content_type: str = "image/jpeg"
    descriptive_text: str = ""
    provenance: Provenance = field(default_factory=Provenance)
    filename: str | None = None

    @property
    def source_kind(self) -> SourceKind:
        if isinstance(self.source, bytes):
            return SourceKind.BYTES
        if isinstance(self.source, Path):
            return SourceKind.PATH
        return SourceKind.URL

    @property
    def display_name(self) -> str:
        if self.filename:
            return self.filename
        if isinstance(self.source, Path):
            return self.source.name
        if isinstance(self.source, str):
            return self.source.rsplit("/", 1)[-1].split("?", 1)[0] or self.source
        return "upload.bin"

    @property
    def resource_type(self) -> str:
        """Catalog content type enum (IMAGE, VIDEO or FILE)."""
        ct = self.content_type.lower()
        if ct.startswith("image/"):
            return "IMAGE"
        if ct.startswith("video/"):
            return "VIDEO"
        return "FILE"


@dataclass(frozen=True, slots=True)
class ImageInfo:
    """Media dimensions and the URL aliases the catalog exposes for a file."""

    width: int | None = None
    height: int | None = None
    url: str | None = None
    original_src: str | None = None
    transformed_src: str | None = None
    src: str | None = None
    preview_url: str | None = None


@dataclass(frozen=True, slots=True)
class FileRecord:
    """A file as created and reported by the catalog service."""

    id: str
    status: FileStatus
    descriptive_text: str | None = None
    created_at: datetime | None = None
    image: ImageInfo | None = None

    @property
    def legacy_id(self) -> str:
        """Trailing numeric part of the opaque ``gid://`` identifier."""
        return self.id.rsplit("/", 1)[-1]

    def refreshed(self, newer: FileRecord) -> FileRecord:
        """Return *newer* if it is a legal successor of this record.

        Raises:
            ValueError: If *newer* belongs to another file or would move
                the status backwards.
        """
        if newer.id != self.id:
            raise ValueError(f"Cannot refresh {self.id} with {newer.id}")
        if not newer.status.can_follow(self.status):
            raise ValueError(
                f"Illegal status transition for {self.id}: "
                f"{self.status.value} -> {newer.status.value}"
            )
        return newer


@dataclass(frozen=True, slots=True)
class StagedTarget:
    """A single-use, signed upload destination.

    ``parameters`` keeps the signer's order; it must be posted unchanged.
    """

    target_url: str
    resource_url: str
    parameters: tuple[tuple[str, str], ...]
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(frozen=True, slots=True)
class ProvenanceRecord:
    """A structured key-value annotation attached to a catalog file."""

    namespace: str
    key: str
    value: str
    type: str = "single_line_text_field"

    @property
    def identity(self) -> tuple[str, str]:
        return (self.namespace, self.key)


@dataclass(frozen=True, slots=True)
class ItemFailure:
    """Why one upload request did not produce a file."""

    kind: FailureKind
    message: str
    error: MediaSyncError | None = None


@dataclass(frozen=True, slots=True)
class ResolvedUrl:
    """A public URL chosen by the CDN resolver.

    ``verified`` is ``False`` when the URL was constructed heuristically
    or could not be checked.
    """

    url: str
    strategy: str
    verified: bool


@dataclass
class BatchResult:
    """Terminal outcome of every request submitted in a batch.

    ``unverified`` lists items that were uploaded (and therefore appear in
    ``succeeded``) but whose provenance could not be attached.
    """

    submitted: int = 0
    succeeded: list[tuple[UploadRequest, FileRecord]] = field(default_factory=list)
    failed: list[tuple[UploadRequest, ItemFailure]] = field(default_factory=list)
    unverified: list[
        tuple[UploadRequest, FileRecord, MetadataAttachmentError]
    ] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return len(self.succeeded) + len(self.failed) == self.submitted

    def summary(self) -> dict[str, int]:
        return {
            "submitted": self.submitted,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "unverified": len(self.unverified),
        }


DEFAULT_STAGED_FALLBACK_DOMAINS: tuple[str, ...] = (
    "indigoimages.ca",
    "indigo.ca",
    "dynamic.indigoimages.ca",
    "images.indigo.ca",
)


@dataclass
class UploadConfig:
    """Configuration for the catalog media upload pipeline.

    Controls the target shop, transport policy (rate ceiling, retries,
    timeouts), batching, CDN resolution and provenance namespace.
    """

    shop_domain: str = ""
    access_token: str | None = None
    api_version: str = "2024-01"
    max_retries: int = 3
    timeout_seconds: float = 30.0
    enable_rate_limiting: bool = True
    requests_per_second: float = 2.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    backoff_jitter: bool = False
    chunk_size: int = 10
    inter_chunk_delay: float = 0.5
    resolve_wait_seconds: float = 2.0
    check_urls: bool = True
    metafield_namespace: str = "migration"
    staged_restart_limit: int = 1
    staged_target_ttl_seconds: float = 3600.0
    staged_fallback_domains: tuple[str, ...] = DEFAULT_STAGED_FALLBACK_DOMAINS
    abort_after_unreachable_chunks: int = 2
    cdn_url_template: str = "https://{shop_domain}/cdn/shop/files/{legacy_id}"

    @property
    def base_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/"

    def is_valid(self) -> bool:
        return bool(self.shop_domain.strip()) and bool((self.access_token or "").strip())

    def validate(self) -> None:
        """Raise :class:`ValueError` unless the shop domain and token are set."""
        if not self.shop_domain.strip():
            raise ValueError(
                "Shop domain not configured.\n"
                "Set shop_domain in the config file or export SHOPIFY_SHOP_DOMAIN"
            )
        if not (self.access_token or "").strip():
            raise ValueError(
                "Access token not found.\n"
                "Set it with: mediasync config set-token YOUR_TOKEN\n"
                "Or: export SHOPIFY_ACCESS_TOKEN=your-token"
            )
