"""Request executor for the catalog GraphQL and REST surfaces.

Each public method is one logical remote operation.  Calls go through the
shared :class:`~mediasync.upload.governor.TransportGovernor`; responses are
decoded into the typed records of :mod:`mediasync.upload.schemas`.

Two failure channels are kept apart:

* protocol-level failures (HTTP errors, a GraphQL ``errors`` array) raise
  :class:`ValidationError` or :class:`TransientTransportError`;
* domain user errors (``userErrors`` inside a successful payload) become
  :class:`DomainUserError` values, attributed to the item they concern.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar
from urllib.parse import parse_qs, urlsplit

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from mediasync.models import FileRecord, ProvenanceRecord, StagedTarget, UploadConfig
from mediasync.upload.errors import (
    DomainUserError,
    NotCreatedError,
    ValidationError,
)
from mediasync.upload.governor import TransportGovernor
from mediasync.upload.schemas import (
    FileCreateData,
    FileCreatePayload,
    FilesSearchData,
    GraphQLResponse,
    MetafieldOwnerData,
    MetafieldsSetData,
    NodeData,
    ProductImageEnvelope,
    ProductImagePayload,
    StagedUploadsCreateData,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

ACCESS_TOKEN_HEADER = "X-Shopify-Access-Token"

# ---------------------------------------------------------------------------
# GraphQL documents
# ---------------------------------------------------------------------------

_FILE_FIELDS = """
    id
    fileStatus
    alt
    createdAt
    preview { image { url } }
    ... on MediaImage {
        image { width height url originalSrc transformedSrc src }
    }
"""

FILE_CREATE_MUTATION = f"""
mutation fileCreate($files: [FileCreateInput!]!) {{
    fileCreate(files: $files) {{
        files {{ {_FILE_FIELDS} }}
        userErrors {{ field message code }}
    }}
}}
"""

FILE_NODE_QUERY = f"""
query fileNode($id: ID!) {{
    node(id: $id) {{
        ... on File {{ {_FILE_FIELDS} }}
    }}
}}
"""

STAGED_UPLOADS_CREATE_MUTATION = """
mutation stagedUploadsCreate($input: [StagedUploadInput!]!) {
    stagedUploadsCreate(input: $input) {
        stagedTargets {
            url
            resourceUrl
            parameters { name value }
        }
        userErrors { field message }
    }
}
"""

METAFIELDS_SET_MUTATION = """
mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
    metafieldsSet(metafields: $metafields) {
        metafields { id namespace key value type }
        userErrors { field message code }
    }
}
"""

OWNER_METAFIELDS_QUERY = """
query ownerMetafields($id: ID!, $first: Int!) {
    node(id: $id) {
        id
        ... on HasMetafields {
            metafields(first: $first) {
                edges { node { id namespace key value type } }
            }
        }
    }
}
"""

FILES_SEARCH_QUERY = """
query filesSearch($first: Int!, $query: String!) {
    files(first: $first, query: $query) {
        edges { node { id } }
    }
}
"""


@dataclass(frozen=True, slots=True)
class FileCreateInput:
    """Wire shape of one ``fileCreate`` input."""

    original_source: str
    content_type: str = "IMAGE"
    alt: str | None = None

    def to_variables(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "originalSource": self.original_source,
            "contentType": self.content_type,
        }
        if self.alt is not None:
            data["alt"] = self.alt
        return data


def build_http_client(config: UploadConfig) -> httpx.AsyncClient:
    """Create the HTTP client the executor and its peers share.

    The caller owns its lifetime (``async with build_http_client(cfg) as http``).
    The access token is not set here; the executor adds it only to catalog
    API calls so that it never reaches staged-upload or CDN hosts.
    """
    return httpx.AsyncClient(
        base_url=config.base_url,
        timeout=httpx.Timeout(config.timeout_seconds),
        follow_redirects=True,
    )


def correlate_created_files(
    inputs: list[FileCreateInput],
    payload: FileCreatePayload,
) -> list[FileRecord | DomainUserError]:
    """Map a ``fileCreate`` payload back onto its inputs, position by position.

    1. User errors whose ``field`` path names an index go to that item.
    2. Returned files are matched by alt text when that alt text is unique
       among the still-open inputs.
    3. Remaining files fill the remaining items in order.
    4. Items still without an outcome take an unattributed user error, or
       a :class:`NotCreatedError`.
    """
    n = len(inputs)
    outcomes: list[FileRecord | DomainUserError | None] = [None] * n
    unattributed = []

    for err in payload.user_errors:
        idx = err.item_index
        if idx is not None and 0 <= idx < n and outcomes[idx] is None:
            outcomes[idx] = DomainUserError(
                err.describe(), field=tuple(err.field or ()), code=err.code
            )
        else:
            unattributed.append(err)

    open_alts = Counter(
        inputs[i].alt for i in range(n) if outcomes[i] is None and inputs[i].alt
    )
    by_alt = {
        inputs[i].alt: i
        for i in range(n)
        if outcomes[i] is None and inputs[i].alt and open_alts[inputs[i].alt] == 1
    }

    leftovers = []
    for file in payload.files:
        idx = by_alt.pop(file.alt, None) if file.alt else None
        if idx is not None:
            outcomes[idx] = file.to_record()
        else:
            leftovers.append(file)

    open_slots = [i for i in range(n) if outcomes[i] is None]
    for idx, file in zip(open_slots, leftovers):
        outcomes[idx] = file.to_record()
    if len(leftovers) > len(open_slots):
        logger.warning(
            "fileCreate returned %d more files than inputs left to match",
            len(leftovers) - len(open_slots),
        )

    for idx in range(n):
        if outcomes[idx] is not None:
            continue
        if unattributed:
            err = unattributed.pop(0)
            outcomes[idx] = DomainUserError(
                err.describe(), field=tuple(err.field or ()), code=err.code
            )
        else:
            outcomes[idx] = NotCreatedError(
                f"No file was created for {inputs[idx].original_source[:120]}"
            )

    return outcomes  # type: ignore[return-value]


def _target_expiry(url: str, now: datetime, ttl_seconds: float) -> datetime:
    """Expiry of a signed target, read from its URL when the signer says so."""
    query = parse_qs(urlsplit(url).query)
    for date_key, ttl_key in (
        ("X-Goog-Date", "X-Goog-Expires"),
        ("X-Amz-Date", "X-Amz-Expires"),
    ):
        if date_key in query and ttl_key in query:
            try:
                signed_at = datetime.strptime(
                    query[date_key][0], "%Y%m%dT%H%M%SZ"
                ).replace(tzinfo=timezone.utc)
                return signed_at + timedelta(seconds=int(query[ttl_key][0]))
            except ValueError:
                logger.debug("Could not parse signer expiry from %s", url)
    return now + timedelta(seconds=ttl_seconds)


class RequestExecutor:
    """Issues single logical operations against the catalog service.

    Usage::

        async with build_http_client(config) as http:
            governor = TransportGovernor.from_config(config)
            executor = RequestExecutor(http, governor, config)
            record = await executor.create_file(
                FileCreateInput("https://example.com/a.jpg", alt="Front cover")
            )

    Args:
        http: Shared client whose ``base_url`` points at the Admin API.
        governor: Shared transport governor.
        config: Provides the access token and staged target TTL.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        governor: TransportGovernor,
        config: UploadConfig,
    ) -> None:
        self._http = http
        self._governor = governor
        self._config = config

    @property
    def governor(self) -> TransportGovernor:
        return self._governor

    # ------------------------------------------------------------------
    # GraphQL plumbing
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        return {ACCESS_TOKEN_HEADER: self._config.access_token or ""}

    async def graphql(
        self,
        query: str,
        variables: dict[str, Any],
        model: type[M],
        *,
        idempotent: bool,
        description: str,
        timeout: float | None = None,
    ) -> M:
        """Run one GraphQL document and decode its ``data`` into *model*.

        Raises:
            ValidationError: The envelope carries ``errors``, has no data,
                or does not match *model*.
        """
        body = {"query": query, "variables": variables}

        response = await self._governor.execute(
            lambda: self._http.post(
                "graphql.json", json=body, headers=self._auth_headers()
            ),
            idempotent=idempotent,
            timeout=timeout,
            description=description,
        )

        try:
            envelope = GraphQLResponse[model].model_validate(response.json())
        except (ValueError, SchemaValidationError) as exc:
            raise ValidationError(
                f"{description}: malformed response ({exc})",
                status_code=response.status_code,
                body=response.text,
            ) from exc

        if envelope.errors:
            messages = [e.message for e in envelope.errors]
            raise ValidationError(
                f"{description}: GraphQL errors: {'; '.join(messages)}",
                status_code=response.status_code,
                errors=messages,
            )
        if envelope.data is None:
            raise ValidationError(f"{description}: no data returned")
        return envelope.data

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def create_files_batch(
        self,
        inputs: list[FileCreateInput],
        *,
        timeout: float | None = None,
    ) -> list[FileRecord | DomainUserError]:
        """Create several files in one ``fileCreate`` call.

        Returns:
            One outcome per input, in input order: the created
            :class:`FileRecord` or the :class:`DomainUserError` explaining
            why that input was rejected.
        """
        if not inputs:
            return []

        data = await self.graphql(
            FILE_CREATE_MUTATION,
            {"files": [i.to_variables() for i in inputs]},
            FileCreateData,
            idempotent=False,
            description=f"fileCreate[{len(inputs)}]",
            timeout=timeout,
        )
        payload = data.file_create
        if payload is None:
            raise ValidationError("fileCreate: empty payload")

        outcomes = correlate_created_files(inputs, payload)
        logger.debug(
            "fileCreate: %d inputs -> %d files, %d user errors",
            len(inputs),
            len(payload.files),
            len(payload.user_errors),
        )
        return outcomes

    async def create_file(
        self,
        file_input: FileCreateInput,
        *,
        timeout: float | None = None,
    ) -> FileRecord:
        """Create one file.

        Raises:
            DomainUserError: The catalog rejected this input.
        """
        [outcome] = await self.create_files_batch([file_input], timeout=timeout)
        if isinstance(outcome, DomainUserError):
            raise outcome
        return outcome

    async def query_file(self, file_id: str, *, timeout: float | None = None) -> FileRecord:
        """Fetch the current state of a file.

        Raises:
            ValidationError: No file exists with *file_id*.
        """
        data = await self.graphql(
            FILE_NODE_QUERY,
            {"id": file_id},
            NodeData,
            idempotent=True,
            description=f"node({file_id})",
            timeout=timeout,
        )
        if data.node is None:
            raise ValidationError(f"File {file_id} not found", status_code=404)
        return data.node.to_record()

    # ------------------------------------------------------------------
    # Staged uploads
    # ------------------------------------------------------------------

    async def stage_upload(
        self,
        filename: str,
        mime_type: str,
        file_size: int,
        resource: str = "IMAGE",
        *,
        timeout: float | None = None,
    ) -> StagedTarget:
        """Request a fresh signed upload target.

        Raises:
            DomainUserError: The catalog refused the target (quota, size...).
        """
        staged_input = {
            "filename": filename,
            "mimeType": mime_type,
            "resource": resource,
            "fileSize": str(file_size),
            "httpMethod": "POST",
        }
        data = await self.graphql(
            STAGED_UPLOADS_CREATE_MUTATION,
            {"input": [staged_input]},
            StagedUploadsCreateData,
            idempotent=True,
            description=f"stagedUploadsCreate({filename})",
            timeout=timeout,
        )
        payload = data.staged_uploads_create
        if payload is None:
            raise ValidationError("stagedUploadsCreate: empty payload")
        if payload.user_errors:
            err = payload.user_errors[0]
            raise DomainUserError(err.describe(), field=tuple(err.field or ()))
        if not payload.staged_targets:
            raise ValidationError("stagedUploadsCreate: no staged target returned")

        target = payload.staged_targets[0]
        now = datetime.now(timezone.utc)
        return StagedTarget(
            target_url=target.url,
            resource_url=target.resource_url,
            parameters=tuple((p.name, p.value) for p in target.parameters),
            expires_at=_target_expiry(
                target.url, now, self._config.staged_target_ttl_seconds
            ),
        )

    async def transfer_to_target(
        self,
        target: StagedTarget,
        payload: bytes,
        filename: str,
        content_type: str,
        *,
        timeout: float | None = None,
    ) -> None:
        """POST *payload* as a multipart form to a signed target.

        The signer's parameters go first, in exactly their given order, and
        the payload goes last as the ``file`` field.  Repeated parameter
        names are sent once per occurrence.  Sent without catalog
        credentials.  Never retried after a timeout.
        """
        # a None filename renders a plain form field
        parts: list[tuple[str, tuple[str | None, bytes] | tuple[str, bytes, str]]] = [
            (name, (None, value.encode("utf-8"))) for name, value in target.parameters
        ]
        parts.append(("file", (filename, payload, content_type)))
        await self._governor.execute(
            lambda: self._http.post(
                target.target_url,
                files=parts,
            ),
            idempotent=False,
            timeout=timeout,
            description=f"staged transfer to {urlsplit(target.target_url).netloc}",
        )

    # ------------------------------------------------------------------
    # Metafields
    # ------------------------------------------------------------------

    async def set_metafields(
        self,
        owner_id: str,
        records: list[ProvenanceRecord],
        *,
        timeout: float | None = None,
    ) -> list[ProvenanceRecord]:
        """Upsert metafields on *owner_id*, keyed by ``(namespace, key)``.

        Raises:
            DomainUserError: The catalog rejected one of the records.
        """
        data = await self.graphql(
            METAFIELDS_SET_MUTATION,
            {
                "metafields": [
                    {
                        "ownerId": owner_id,
                        "namespace": r.namespace,
                        "key": r.key,
                        "value": r.value,
                        "type": r.type,
                    }
                    for r in records
                ]
            },
            MetafieldsSetData,
            # metafieldsSet is an upsert, repeating it is harmless
            idempotent=True,
            description=f"metafieldsSet({owner_id})",
            timeout=timeout,
        )
        payload = data.metafields_set
        if payload is None:
            raise ValidationError("metafieldsSet: empty payload")
        if payload.user_errors:
            raise DomainUserError(
                "; ".join(e.describe() for e in payload.user_errors),
                field=tuple(payload.user_errors[0].field or ()),
                code=payload.user_errors[0].code,
            )
        return [m.to_record() for m in payload.metafields]

    async def file_metafields(
        self,
        owner_id: str,
        first: int = 50,
        *,
        timeout: float | None = None,
    ) -> list[ProvenanceRecord]:
        data = await self.graphql(
            OWNER_METAFIELDS_QUERY,
            {"id": owner_id, "first": first},
            MetafieldOwnerData,
            idempotent=True,
            description=f"metafields({owner_id})",
            timeout=timeout,
        )
        if data.node is None:
            raise ValidationError(f"File {owner_id} not found", status_code=404)
        if data.node.metafields is None:
            return []
        return [edge.node.to_record() for edge in data.node.metafields.edges]

    async def search_files(
        self,
        search: str,
        first: int = 50,
        *,
        timeout: float | None = None,
    ) -> list[str]:
        """Ids of files matching a catalog search string."""
        data = await self.graphql(
            FILES_SEARCH_QUERY,
            {"first": first, "query": search},
            FilesSearchData,
            idempotent=True,
            description="files search",
            timeout=timeout,
        )
        if data.files is None:
            return []
        return [edge.node.id for edge in data.files.edges]

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    async def attach_product_image(
        self,
        product_id: int,
        src: str,
        alt: str | None = None,
        *,
        timeout: float | None = None,
    ) -> ProductImagePayload:
        """Attach an image to a product through the REST surface.

        The returned ``src`` is a public URL usable immediately, without
        waiting for asynchronous file processing.
        """
        image: dict[str, Any] = {"src": src}
        if alt is not None:
            image["alt"] = alt

        response = await self._governor.execute(
            lambda: self._http.post(
                f"products/{product_id}/images.json",
                json={"image": image},
                headers=self._auth_headers(),
            ),
            idempotent=False,
            timeout=timeout,
            description=f"product {product_id} image attach",
        )
        try:
            return ProductImageEnvelope.model_validate(response.json()).image
        except (ValueError, SchemaValidationError) as exc:
            raise ValidationError(
                f"product {product_id} image attach: malformed response ({exc})",
                status_code=response.status_code,
                body=response.text,
            ) from exc
