"""Provenance record construction and request fingerprinting.

Provenance travels in structured metafields, never in the descriptive
(alt) text.  The fingerprint identifies an upload request independent of
object identity, so a re-submitted request can be recognized.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

from mediasync.models import Provenance, ProvenanceRecord, UploadRequest

PRODUCT_ID_KEY = "product_id"
UPC_KEY = "upc"
BATCH_ID_KEY = "batch_id"


def build_provenance_records(
    provenance: Provenance,
    namespace: str = "migration",
) -> list[ProvenanceRecord]:
    """Build the metafield records for *provenance*.

    Only identifiers that are set produce a record.  ``product_id`` is
    typed as an integer; the others are single-line text.

    Args:
        provenance: External identifiers of the upload.
        namespace: Metafield namespace shared by all records.

    Returns:
        Records in a stable order (product_id, upc, batch_id).
    """
    records: list[ProvenanceRecord] = []
    if provenance.product_id is not None:
        records.append(
            ProvenanceRecord(
                namespace=namespace,
                key=PRODUCT_ID_KEY,
                value=str(provenance.product_id),
                type="number_integer",
            )
        )
    if provenance.external_code:
        records.append(
            ProvenanceRecord(namespace=namespace, key=UPC_KEY, value=provenance.external_code)
        )
    if provenance.batch_id:
        records.append(
            ProvenanceRecord(namespace=namespace, key=BATCH_ID_KEY, value=provenance.batch_id)
        )
    return records


def _content_hash(request: UploadRequest, payload: bytes | None) -> str:
    if payload is not None:
        return hashlib.sha256(payload).hexdigest()
    source = request.source
    if isinstance(source, bytes):
        return hashlib.sha256(source).hexdigest()
    if isinstance(source, Path):
        return hashlib.sha256(source.read_bytes()).hexdigest()
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


def compute_request_fingerprint(
    request: UploadRequest,
    payload: bytes | None = None,
) -> str:
    """Compute a deterministic SHA-256 fingerprint of an upload request.

    Two requests with the same content, naming and provenance share a
    fingerprint, whatever their object identity.

    Args:
        request: The upload request.
        payload: Already loaded payload bytes; avoids re-reading a path.

    Returns:
        Hex-encoded SHA-256 digest string.
    """
    prov = request.provenance
    body = json.dumps(
        {
            "content_hash": _content_hash(request, payload),
            "content_type": request.content_type,
            "filename": request.display_name,
            "alt": request.descriptive_text,
            "provenance": [prov.product_id, prov.external_code, prov.batch_id],
        },
        sort_keys=True,
        ensure_ascii=True,
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def staged_filename(display_name: str, fingerprint: str) -> str:
    """Catalog filename unique to one request, e.g. ``cover-1a2b3c4d5e6f.jpg``.

    The fingerprint tag lets a later search find exactly the file this
    request created, even when other uploads share its display name.
    """
    tag = fingerprint[:12]
    stem, dot, suffix = display_name.rpartition(".")
    if not dot or not stem:
        return f"{display_name}-{tag}"
    return f"{stem}-{tag}.{suffix}"
