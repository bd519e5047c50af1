"""Shared pytest fixtures for the mediasync test suite.

Provides an ``UploadConfig`` tuned for fast tests, and ``FakeCatalog``: an
in-memory stand-in for the Shopify Admin API, the staged-upload signer and
the CDN, served through ``httpx.MockTransport``.
"""

from __future__ import annotations

import itertools
import json
import re
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import pytest

from mediasync.models import UploadConfig
from mediasync.upload.circuit_breaker import RollingWindowCircuitBreaker
from mediasync.upload.download import SourceFetcher
from mediasync.upload.executor import RequestExecutor
from mediasync.upload.governor import TransportGovernor

SHOP = "test-shop.myshopify.com"
STORAGE_HOST = "storage.example.com"
CDN_HOST = "cdn.example.com"

Scripted = httpx.Response | Exception | Callable[[httpx.Request], Any]


class FakeCatalog:
    """In-memory catalog service.

    Attributes worth poking at from tests:
        files: file id -> node dict as the GraphQL API would return it.
        metafields: file id -> {(namespace, key): (value, type)}.
        graphql_script: responses (or exceptions) served before normal
            handling of the next GraphQL calls.
        transfer_script: same, for staged transfers.
        reject_sources: ``originalSource`` values refused with a user error.
        unreachable: URLs the CDN answers with 404.
        requests: every request seen, in order.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1001)
        self.files: dict[str, dict[str, Any]] = {}
        self.metafields: dict[str, dict[tuple[str, str], tuple[str, str]]] = {}
        # every (namespace, key, value) a file ever had; the search index lags
        self.search_index: dict[tuple[str, str, str], set[str]] = {}
        self.staged: dict[str, dict[str, Any]] = {}
        self.transfers: list[httpx.Request] = []
        self.graphql_script: deque[Scripted] = deque()
        self.transfer_script: deque[Scripted] = deque()
        self.reject_sources: set[str] = set()
        self.atomic_file_create = False
        self.unreachable: set[str] = set()
        self.head_not_allowed = False
        self.ready_on_create = False
        self.product_images: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.file_create_calls = 0

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == STORAGE_HOST:
            return await self._play(self.transfer_script, request, self._transfer)
        if host == CDN_HOST:
            return self._cdn(request)
        path = request.url.path
        if path.endswith("/graphql.json"):
            return await self._play(self.graphql_script, request, self._graphql)
        match = re.search(r"/products/(\d+)/images\.json$", path)
        if match:
            return self._product_image(int(match.group(1)), request)
        return httpx.Response(404, json={"errors": "Not Found"})

    async def _play(
        self,
        script: deque[Scripted],
        request: httpx.Request,
        default: Callable[[httpx.Request], httpx.Response],
    ) -> httpx.Response:
        if script:
            step = script.popleft()
            if isinstance(step, Exception):
                raise step
            if isinstance(step, httpx.Response):
                return step
            result = step(request)
            if hasattr(result, "__await__"):
                result = await result
            if result is not None:
                return result
        return default(request)

    # ------------------------------------------------------------------
    # GraphQL
    # ------------------------------------------------------------------

    def handle_graphql_now(self, request: httpx.Request) -> httpx.Response:
        """Apply a GraphQL call immediately (for scripts that then hang)."""
        return self._graphql(request)

    def _graphql(self, request: httpx.Request) -> httpx.Response:
        assert request.headers.get("X-Shopify-Access-Token") == "shpat_test"
        body = json.loads(request.content)
        query, variables = body["query"], body.get("variables") or {}
        if "fileCreate(" in query:
            data = {"fileCreate": self._file_create(variables["files"])}
        elif "stagedUploadsCreate(" in query:
            data = {"stagedUploadsCreate": self._staged_create(variables["input"])}
        elif "metafieldsSet(" in query:
            data = {"metafieldsSet": self._metafields_set(variables["metafields"])}
        elif "query ownerMetafields" in query:
            data = {"node": self._owner_metafields(variables["id"])}
        elif "query filesSearch" in query:
            data = {"files": self._search(variables["query"])}
        elif "query fileNode" in query:
            data = {"node": self._node(variables["id"])}
        else:
            return httpx.Response(200, json={"errors": [{"message": "Unknown query"}]})
        return httpx.Response(200, json={"data": data})

    def new_file(self, source: str, alt: str | None, filename: str | None = None) -> str:
        n = next(self._ids)
        file_id = f"gid://shopify/MediaImage/{n}"
        name = filename or source.rsplit("/", 1)[-1].split("?", 1)[0]
        self.files[file_id] = {
            "id": file_id,
            "fileStatus": "READY" if self.ready_on_create else "UPLOADED",
            "alt": alt,
            "createdAt": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "image": self._image(n, name) if self.ready_on_create else None,
            "_filename": name,
            "_n": n,
        }
        return file_id

    @staticmethod
    def _image(n: int, name: str) -> dict[str, Any]:
        url = f"https://{CDN_HOST}/s/files/{n}/{name}?v=1700000000"
        return {
            "width": 800,
            "height": 600,
            "url": url,
            "originalSrc": url,
            "transformedSrc": url,
            "src": url,
        }

    def _public(self, file_id: str) -> dict[str, Any]:
        return {k: v for k, v in self.files[file_id].items() if not k.startswith("_")}

    def _file_create(self, inputs: list[dict[str, Any]]) -> dict[str, Any]:
        self.file_create_calls += 1
        errors = []
        for i, item in enumerate(inputs):
            source = item["originalSource"]
            staged = self.staged.get(source)
            if source in self.reject_sources:
                errors.append(
                    {
                        "field": ["files", str(i), "originalSource"],
                        "message": "Image URL is invalid",
                        "code": "INVALID",
                    }
                )
            elif staged is not None and not staged["transferred"]:
                errors.append(
                    {
                        "field": ["files", str(i), "originalSource"],
                        "message": "File not found at staged location",
                        "code": "INVALID",
                    }
                )
        if errors and self.atomic_file_create:
            return {"files": [], "userErrors": errors}

        rejected = {int(e["field"][1]) for e in errors}
        created = [
            self._public(self.new_file(item["originalSource"], item.get("alt")))
            for i, item in enumerate(inputs)
            if i not in rejected
        ]
        return {"files": created, "userErrors": errors}

    def _node(self, file_id: str) -> dict[str, Any] | None:
        file = self.files.get(file_id)
        if file is None:
            return None
        if file["fileStatus"] != "FAILED":
            file["fileStatus"] = "READY"
            file["image"] = file["image"] or self._image(file["_n"], file["_filename"])
        return self._public(file_id)

    def _staged_create(self, inputs: list[dict[str, Any]]) -> dict[str, Any]:
        targets = []
        for item in inputs:
            n = next(self._ids)
            url = f"https://{STORAGE_HOST}/upload/{n}"
            resource_url = f"{url}/{item['filename']}"
            self.staged[resource_url] = {"transferred": False, "url": url}
            targets.append(
                {
                    "url": url,
                    "resourceUrl": resource_url,
                    "parameters": [
                        {"name": "Content-Type", "value": item["mimeType"]},
                        {"name": "success_action_status", "value": "201"},
                        {"name": "acl", "value": "private"},
                        {"name": "key", "value": f"tmp/{n}/{item['filename']}"},
                        {"name": "x-goog-algorithm", "value": "GOOG4-RSA-SHA256"},
                        {"name": "x-goog-signature", "value": f"sig{n}"},
                        {"name": "policy", "value": f"policy{n}"},
                    ],
                }
            )
        return {"stagedTargets": targets, "userErrors": []}

    def _metafields_set(self, inputs: list[dict[str, Any]]) -> dict[str, Any]:
        stored = []
        for item in inputs:
            owner = item["ownerId"]
            if owner not in self.files:
                return {
                    "metafields": [],
                    "userErrors": [
                        {"field": ["metafields", "0", "ownerId"], "message": "Owner not found"}
                    ],
                }
            ident = (item["namespace"], item["key"])
            self.metafields.setdefault(owner, {})[ident] = (item["value"], item["type"])
            self.search_index.setdefault((*ident, item["value"]), set()).add(owner)
            stored.append(
                {
                    "id": f"gid://shopify/Metafield/{next(self._ids)}",
                    "namespace": item["namespace"],
                    "key": item["key"],
                    "value": item["value"],
                    "type": item["type"],
                }
            )
        return {"metafields": stored, "userErrors": []}

    def _owner_metafields(self, owner: str) -> dict[str, Any] | None:
        if owner not in self.files:
            return None
        edges = [
            {"node": {"namespace": ns, "key": key, "value": value, "type": type_}}
            for (ns, key), (value, type_) in self.metafields.get(owner, {}).items()
        ]
        return {"id": owner, "metafields": {"edges": edges}}

    def _search(self, query: str) -> dict[str, Any]:
        match = re.fullmatch(r'metafields\.([^.]+)\.([^:]+):"(.*)"', query)
        if match:
            ids = sorted(self.search_index.get(match.groups(), set()))
        elif query.startswith("filename:"):
            name = query.split(":", 1)[1]
            ids = [fid for fid, f in self.files.items() if f["_filename"] == name]
        else:
            ids = []
        return {"edges": [{"node": {"id": fid}} for fid in ids]}

    # ------------------------------------------------------------------
    # Staged transfer, CDN, REST
    # ------------------------------------------------------------------

    def _transfer(self, request: httpx.Request) -> httpx.Response:
        self.transfers.append(request)
        url = str(request.url)
        for resource_url, target in self.staged.items():
            if target["url"] == url:
                target["transferred"] = True
                return httpx.Response(201, text="<PostResponse/>")
        return httpx.Response(404, text="<Error><Code>NoSuchUpload</Code></Error>")

    def _cdn(self, request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD" and self.head_not_allowed:
            return httpx.Response(405)
        if str(request.url) in self.unreachable:
            return httpx.Response(404)
        return httpx.Response(200, content=b"" if request.method == "HEAD" else b"\xff\xd8")

    def _product_image(self, product_id: int, request: httpx.Request) -> httpx.Response:
        image = json.loads(request.content)["image"]
        n = next(self._ids)
        payload = {
            "id": n,
            "product_id": product_id,
            "src": f"https://{CDN_HOST}/s/files/products/{n}.jpg",
            "alt": image.get("alt"),
        }
        self.product_images.append(payload)
        return httpx.Response(200, json={"image": payload})


def expired_signer_response() -> httpx.Response:
    return httpx.Response(
        400,
        text=(
            "<?xml version='1.0' encoding='UTF-8'?><Error><Code>ExpiredToken</Code>"
            "<Message>The provided token has expired.</Message></Error>"
        ),
    )


# ======================================================================
# Fixtures
# ======================================================================


@pytest.fixture
def config() -> UploadConfig:
    """Config with rate limiting off and millisecond backoff."""
    return UploadConfig(
        shop_domain=SHOP,
        access_token="shpat_test",
        enable_rate_limiting=False,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        timeout_seconds=5.0,
        inter_chunk_delay=0.0,
        resolve_wait_seconds=0.0,
    )


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
async def http(catalog: FakeCatalog, config: UploadConfig):
    async with httpx.AsyncClient(
        transport=catalog.transport(), base_url=config.base_url
    ) as client:
        yield client


@pytest.fixture
def circuit_breaker() -> RollingWindowCircuitBreaker:
    return RollingWindowCircuitBreaker()


@pytest.fixture
def governor(config: UploadConfig, circuit_breaker: RollingWindowCircuitBreaker) -> TransportGovernor:
    return TransportGovernor.from_config(config, circuit_breaker)


@pytest.fixture
def executor(
    http: httpx.AsyncClient, governor: TransportGovernor, config: UploadConfig
) -> RequestExecutor:
    return RequestExecutor(http, governor, config)


@pytest.fixture
def fetcher(http: httpx.AsyncClient, governor: TransportGovernor) -> SourceFetcher:
    return SourceFetcher(http, governor)
