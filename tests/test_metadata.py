"""Tests for provenance records and the metadata tracker."""

from __future__ import annotations

import pytest

from mediasync.models import Provenance, ProvenanceRecord, UploadRequest
from mediasync.upload.errors import MetadataAttachmentError
from mediasync.upload.executor import FileCreateInput, RequestExecutor
from mediasync.upload.metadata import MetadataTracker, metafield_search_query
from mediasync.upload.provenance import (
    build_provenance_records,
    compute_request_fingerprint,
    staged_filename,
)

from conftest import FakeCatalog


@pytest.fixture
def tracker(executor: RequestExecutor) -> MetadataTracker:
    return MetadataTracker(executor, namespace="migration")


async def _new_file(executor: RequestExecutor, name: str = "a.jpg") -> str:
    record = await executor.create_file(FileCreateInput(f"https://img.example.com/{name}"))
    return record.id


# ======================================================================
# Record construction
# ======================================================================


class TestBuildProvenanceRecords:
    """Tests for build_provenance_records()."""

    def test_all_fields(self):
        records = build_provenance_records(
            Provenance(product_id=42, external_code="0123456789012", batch_id="b-1")
        )
        assert records == [
            ProvenanceRecord("migration", "product_id", "42", "number_integer"),
            ProvenanceRecord("migration", "upc", "0123456789012"),
            ProvenanceRecord("migration", "batch_id", "b-1"),
        ]

    def test_unset_fields_are_skipped(self):
        assert build_provenance_records(Provenance()) == []
        [record] = build_provenance_records(Provenance(external_code="X"), namespace="legacy")
        assert record.identity == ("legacy", "upc")


class TestRequestFingerprint:
    """Tests for compute_request_fingerprint()."""

    def test_equal_requests_share_fingerprint(self):
        a = UploadRequest(source=b"abc", filename="a.jpg", provenance=Provenance(product_id=1))
        b = UploadRequest(source=b"abc", filename="a.jpg", provenance=Provenance(product_id=1))
        assert compute_request_fingerprint(a) == compute_request_fingerprint(b)

    def test_provenance_changes_fingerprint(self):
        a = UploadRequest(source=b"abc", filename="a.jpg", provenance=Provenance(product_id=1))
        b = UploadRequest(source=b"abc", filename="a.jpg", provenance=Provenance(product_id=2))
        assert compute_request_fingerprint(a) != compute_request_fingerprint(b)

    def test_payload_overrides_source(self, tmp_path):
        path = tmp_path / "a.jpg"
        path.write_bytes(b"abc")
        request = UploadRequest(source=path)
        assert compute_request_fingerprint(request) == compute_request_fingerprint(
            request, payload=b"abc"
        )

    def test_staged_filename_carries_fingerprint_tag(self):
        fingerprint = "0123456789abcdef" * 4
        assert staged_filename("cover.jpg", fingerprint) == "cover-0123456789ab.jpg"
        assert staged_filename("archive.tar.gz", fingerprint) == "archive.tar-0123456789ab.gz"
        assert staged_filename("README", fingerprint) == "README-0123456789ab"
        assert staged_filename(".hidden", fingerprint) == ".hidden-0123456789ab"


def test_metafield_search_query_escapes_quotes():
    assert metafield_search_query("migration", "upc", 'a"b') == 'metafields.migration.upc:"a\\"b"'


# ======================================================================
# Tracker against the fake catalog
# ======================================================================


class TestMetadataTracker:
    """Tests for MetadataTracker attach, read, verify and search."""

    async def test_attach_provenance_and_read(
        self, tracker: MetadataTracker, executor: RequestExecutor
    ):
        file_id = await _new_file(executor)
        provenance = Provenance(product_id=42, external_code="0123456789012")

        stored = await tracker.attach_provenance(file_id, provenance)

        assert {r.key for r in stored} == {"product_id", "upc"}
        assert await tracker.verify(file_id, provenance)

    async def test_reattach_overwrites(
        self, tracker: MetadataTracker, executor: RequestExecutor, catalog: FakeCatalog
    ):
        """Attaching the same key twice leaves one record with the latest value."""
        file_id = await _new_file(executor)

        await tracker.attach(file_id, ProvenanceRecord("migration", "upc", "111"))
        await tracker.attach(file_id, ProvenanceRecord("migration", "upc", "222"))

        records = await tracker.read(file_id)
        assert records == [ProvenanceRecord("migration", "upc", "222")]
        assert len(catalog.metafields[file_id]) == 1

    async def test_read_filters_namespace(
        self, tracker: MetadataTracker, executor: RequestExecutor
    ):
        file_id = await _new_file(executor)
        await tracker.attach(
            file_id,
            ProvenanceRecord("migration", "upc", "111"),
            ProvenanceRecord("inventory", "bin", "A-7"),
        )

        assert [r.key for r in await tracker.read(file_id)] == ["upc"]

    async def test_verify_detects_mismatch(
        self, tracker: MetadataTracker, executor: RequestExecutor
    ):
        file_id = await _new_file(executor)
        await tracker.attach_provenance(file_id, Provenance(external_code="111"))

        assert not await tracker.verify(file_id, Provenance(external_code="222"))
        assert not await tracker.verify(file_id, Provenance(product_id=1, external_code="111"))

    async def test_attach_nothing_is_a_no_op(
        self, tracker: MetadataTracker, catalog: FakeCatalog
    ):
        assert await tracker.attach("gid://shopify/MediaImage/1") == []
        assert catalog.requests == []

    async def test_attach_to_missing_file_raises(self, tracker: MetadataTracker):
        with pytest.raises(MetadataAttachmentError) as exc_info:
            await tracker.attach(
                "gid://shopify/MediaImage/404", ProvenanceRecord("migration", "upc", "1")
            )
        assert exc_info.value.file_id == "gid://shopify/MediaImage/404"

    async def test_find_by_provenance(self, tracker: MetadataTracker, executor: RequestExecutor):
        first = await _new_file(executor, "a.jpg")
        second = await _new_file(executor, "b.jpg")
        other = await _new_file(executor, "c.jpg")
        for file_id in (first, second):
            await tracker.attach_provenance(file_id, Provenance(product_id=42))
        await tracker.attach_provenance(other, Provenance(product_id=7))

        assert sorted(await tracker.find_by_provenance("product_id", "42")) == sorted(
            [first, second]
        )

    async def test_find_ignores_stale_search_hits(
        self, tracker: MetadataTracker, executor: RequestExecutor, catalog: FakeCatalog
    ):
        """A file whose value was overwritten is not found by its old value."""
        file_id = await _new_file(executor)
        await tracker.attach(file_id, ProvenanceRecord("migration", "upc", "111"))
        await tracker.attach(file_id, ProvenanceRecord("migration", "upc", "222"))
        assert file_id in catalog.search_index[("migration", "upc", "111")]

        assert await tracker.find_by_provenance("upc", "111") == []
        assert await tracker.find_by_provenance("upc", "222") == [file_id]
