"""Metadata tracker: provenance metafields on catalog files.

Provenance lives in structured metafields keyed by ``(namespace, key)``,
attached only after the file exists.  Writes are upserts, so re-attaching
overwrites the previous value instead of adding a second one.
"""

from __future__ import annotations

import logging

from mediasync.models import Provenance, ProvenanceRecord, UploadConfig
from mediasync.upload.errors import DomainUserError, MetadataAttachmentError, ValidationError
from mediasync.upload.executor import RequestExecutor
from mediasync.upload.provenance import build_provenance_records

logger = logging.getLogger(__name__)


def metafield_search_query(namespace: str, key: str, value: str) -> str:
    """Catalog search string matching files by one metafield value."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'metafields.{namespace}.{key}:"{escaped}"'


class MetadataTracker:
    """Attaches, reads and searches provenance records.

    Args:
        executor: Request executor used for the metafield surface.
        namespace: Default metafield namespace.
    """

    def __init__(self, executor: RequestExecutor, namespace: str = "migration") -> None:
        self._executor = executor
        self.namespace = namespace

    @classmethod
    def from_config(cls, config: UploadConfig, executor: RequestExecutor) -> MetadataTracker:
        return cls(executor, namespace=config.metafield_namespace)

    async def attach(self, record_id: str, *records: ProvenanceRecord) -> list[ProvenanceRecord]:
        """Upsert *records* on the file *record_id*.

        Raises:
            MetadataAttachmentError: The catalog rejected a record.
        """
        if not records:
            return []
        try:
            stored = await self._executor.set_metafields(record_id, list(records))
        except (DomainUserError, ValidationError) as exc:
            raise MetadataAttachmentError(
                f"Could not attach provenance to {record_id}: {exc}",
                file_id=record_id,
            ) from exc
        logger.debug("Attached %d provenance records to %s", len(stored), record_id)
        return stored

    async def attach_provenance(
        self,
        record_id: str,
        provenance: Provenance,
    ) -> list[ProvenanceRecord]:
        """Attach the product id, UPC and batch id of *provenance*."""
        return await self.attach(
            record_id, *build_provenance_records(provenance, self.namespace)
        )

    async def read(self, record_id: str) -> list[ProvenanceRecord]:
        """Current provenance records of *record_id* in this namespace."""
        records = await self._executor.file_metafields(record_id)
        return [r for r in records if r.namespace == self.namespace]

    async def verify(self, record_id: str, provenance: Provenance) -> bool:
        """Whether every record of *provenance* reads back unchanged."""
        expected = {
            r.identity: r.value for r in build_provenance_records(provenance, self.namespace)
        }
        actual = {r.identity: r.value for r in await self.read(record_id)}
        return all(actual.get(identity) == value for identity, value in expected.items())

    async def find_by_provenance(
        self,
        key: str,
        value: str,
        namespace: str | None = None,
    ) -> list[str]:
        """Ids of files whose current ``(namespace, key)`` value is *value*.

        The catalog search index may lag behind writes, so every candidate
        is read back and kept only if its latest value still matches.
        """
        ns = namespace or self.namespace
        candidates = await self._executor.search_files(metafield_search_query(ns, key, value))

        matches: list[str] = []
        for file_id in dict.fromkeys(candidates):
            records = await self._executor.file_metafields(file_id)
            current = {r.identity: r.value for r in records}
            if current.get((ns, key)) == value:
                matches.append(file_id)
            else:
                logger.debug("Dropping stale search hit %s for %s.%s", file_id, ns, key)
        return matches
