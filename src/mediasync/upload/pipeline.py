"""Wiring of the upload components around one shared governor."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from mediasync.models import UploadConfig
from mediasync.upload.batch import BatchCoordinator
from mediasync.upload.cdn import CdnUrlResolver
from mediasync.upload.circuit_breaker import RollingWindowCircuitBreaker
from mediasync.upload.download import SourceFetcher
from mediasync.upload.executor import RequestExecutor
from mediasync.upload.governor import TransportGovernor
from mediasync.upload.metadata import MetadataTracker
from mediasync.upload.staged import StagedUploadOrchestrator


@dataclass
class UploadPipeline:
    governor: TransportGovernor
    executor: RequestExecutor
    fetcher: SourceFetcher
    staged: StagedUploadOrchestrator
    tracker: MetadataTracker
    resolver: CdnUrlResolver
    coordinator: BatchCoordinator


def build_pipeline(
    config: UploadConfig,
    http: httpx.AsyncClient,
    circuit_breaker: RollingWindowCircuitBreaker | None = None,
) -> UploadPipeline:
    """Build every component from *config* on top of the caller's client.

    All components share a single :class:`TransportGovernor`, so the
    request-rate ceiling holds across direct, staged and metadata calls.
    """
    governor = TransportGovernor.from_config(config, circuit_breaker)
    executor = RequestExecutor(http, governor, config)
    fetcher = SourceFetcher(http, governor)
    staged = StagedUploadOrchestrator.from_config(config, executor, fetcher)
    tracker = MetadataTracker.from_config(config, executor)
    resolver = CdnUrlResolver.from_config(config, executor, http)
    coordinator = BatchCoordinator.from_config(config, executor, staged, tracker)
    return UploadPipeline(
        governor=governor,
        executor=executor,
        fetcher=fetcher,
        staged=staged,
        tracker=tracker,
        resolver=resolver,
        coordinator=coordinator,
    )
