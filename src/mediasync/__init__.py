"""Resilient media uploads into a Shopify catalog with provenance tracking."""

__version__ = "0.1.0"

from mediasync.models import (
    BatchResult,
    FailureKind,
    FileRecord,
    FileStatus,
    Provenance,
    ProvenanceRecord,
    UploadConfig,
    UploadRequest,
)

__all__ = [
    "BatchResult",
    "FailureKind",
    "FileRecord",
    "FileStatus",
    "Provenance",
    "ProvenanceRecord",
    "UploadConfig",
    "UploadRequest",
    "__version__",
]
