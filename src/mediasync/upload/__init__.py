"""Upload pipeline for the Shopify Admin API.

Public API
----------
.. autoclass:: TransportGovernor
.. autoclass:: RollingWindowCircuitBreaker
.. autoclass:: AdaptiveRateLimiter
.. autoclass:: RateLimiterConfig
.. autoclass:: CircuitState
.. autoclass:: RequestExecutor
.. autoclass:: StagedUploadOrchestrator
.. autoclass:: CdnUrlResolver
.. autoclass:: MetadataTracker
.. autoclass:: BatchCoordinator
.. autoclass:: UploadProgressTracker
"""

from mediasync.upload.batch import BatchCoordinator
from mediasync.upload.cdn import CdnUrlResolver, RestFallback
from mediasync.upload.circuit_breaker import CircuitState, RollingWindowCircuitBreaker
from mediasync.upload.download import SourceFetcher
from mediasync.upload.errors import (
    BatchAbortedError,
    DomainUserError,
    MediaSyncError,
    MetadataAttachmentError,
    NotCreatedError,
    ProtocolExpiryError,
    RateLimitError,
    ResolutionAmbiguityError,
    TransientTransportError,
    TransportTimeoutError,
    ValidationError,
)
from mediasync.upload.executor import FileCreateInput, RequestExecutor, build_http_client
from mediasync.upload.governor import TransportGovernor, default_rate_limit_predicate
from mediasync.upload.metadata import MetadataTracker
from mediasync.upload.pipeline import UploadPipeline, build_pipeline
from mediasync.upload.progress import UploadProgressTracker
from mediasync.upload.provenance import build_provenance_records, compute_request_fingerprint
from mediasync.upload.rate_limiter import AdaptiveRateLimiter, RateLimiterConfig
from mediasync.upload.staged import StagedUploadOrchestrator

__all__ = [
    "AdaptiveRateLimiter",
    "BatchAbortedError",
    "BatchCoordinator",
    "CdnUrlResolver",
    "CircuitState",
    "DomainUserError",
    "FileCreateInput",
    "MediaSyncError",
    "MetadataAttachmentError",
    "MetadataTracker",
    "NotCreatedError",
    "ProtocolExpiryError",
    "RateLimitError",
    "RateLimiterConfig",
    "RequestExecutor",
    "ResolutionAmbiguityError",
    "RestFallback",
    "RollingWindowCircuitBreaker",
    "SourceFetcher",
    "StagedUploadOrchestrator",
    "TransientTransportError",
    "TransportGovernor",
    "TransportTimeoutError",
    "UploadPipeline",
    "UploadProgressTracker",
    "ValidationError",
    "build_http_client",
    "build_pipeline",
    "build_provenance_records",
    "compute_request_fingerprint",
    "default_rate_limit_predicate",
]
