"""Tests for the CDN URL resolver strategies and image URL variants."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from mediasync.models import FileRecord, FileStatus, ImageInfo, ResolvedUrl, UploadConfig
from mediasync.upload.cdn import (
    PRESETS,
    CdnUrlResolver,
    CropMode,
    ImageFormat,
    ImageTransformation,
    RestFallback,
    alias_candidates,
    responsive_urls,
    strip_version_param,
    transformed_url,
)
from mediasync.upload.errors import ResolutionAmbiguityError
from mediasync.upload.executor import FileCreateInput, RequestExecutor
from mediasync.upload.governor import TransportGovernor

from conftest import CDN_HOST, SHOP, FakeCatalog


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def resolver(
    executor: RequestExecutor,
    http: httpx.AsyncClient,
    governor: TransportGovernor,
    config: UploadConfig,
    sleep: AsyncMock,
) -> CdnUrlResolver:
    return CdnUrlResolver(
        executor,
        http,
        governor,
        shop_domain=SHOP,
        url_template=config.cdn_url_template,
        wait_seconds=2.0,
        check_urls=True,
        sleep=sleep,
    )


async def _ready_file(executor: RequestExecutor, catalog: FakeCatalog) -> FileRecord:
    catalog.ready_on_create = True
    return await executor.create_file(FileCreateInput("https://img.example.com/a.jpg"))


class TestUrlHelpers:
    """Tests for URL variant helpers."""

    def test_strip_version_param(self):
        assert (
            strip_version_param("https://cdn.example.com/a.jpg?v=123&width=100")
            == "https://cdn.example.com/a.jpg?width=100"
        )
        assert strip_version_param("https://cdn.example.com/a.jpg?v=1") == (
            "https://cdn.example.com/a.jpg"
        )
        assert strip_version_param("https://cdn.example.com/a.jpg") == (
            "https://cdn.example.com/a.jpg"
        )

    def test_alias_candidates_without_image(self):
        record = FileRecord(id="gid://shopify/MediaImage/1", status=FileStatus.READY)
        assert alias_candidates(record) == []

    def test_alias_candidates_include_stripped_variants(self):
        url = "https://cdn.example.com/a.jpg?v=1"
        record = FileRecord(
            id="gid://shopify/MediaImage/1",
            status=FileStatus.READY,
            image=ImageInfo(url=url, original_src=url, src=url),
        )
        assert alias_candidates(record) == [url, "https://cdn.example.com/a.jpg"]


class TestCdnUrlResolver:
    """Tests for CdnUrlResolver.resolve."""

    async def test_direct_url_when_ready(
        self, resolver: CdnUrlResolver, executor: RequestExecutor, catalog: FakeCatalog, sleep
    ):
        """A READY record's own URL wins without waiting."""
        record = await _ready_file(executor, catalog)

        resolved = await resolver.resolve(record)

        assert resolved.strategy == "direct"
        assert resolved.verified is True
        assert resolved.url == record.image.url
        sleep.assert_not_awaited()

    async def test_requery_after_wait(
        self, resolver: CdnUrlResolver, executor: RequestExecutor, sleep
    ):
        """A record still processing is re-queried once after the wait."""
        record = await executor.create_file(FileCreateInput("https://img.example.com/a.jpg"))
        assert record.status == FileStatus.UPLOADED

        resolved = await resolver.resolve(record)

        assert resolved.strategy == "requery"
        assert resolved.verified is True
        sleep.assert_awaited_once_with(2.0)

    async def test_version_stripped_alias(
        self, resolver: CdnUrlResolver, executor: RequestExecutor, catalog: FakeCatalog
    ):
        """When the versioned URL is unreachable, the stripped variant is used."""
        record = await _ready_file(executor, catalog)
        catalog.unreachable.add(record.image.url)

        resolved = await resolver.resolve(record)

        assert resolved.strategy == "alias"
        assert resolved.url == strip_version_param(record.image.url)
        assert "?" not in resolved.url

    async def test_never_returns_unreachable_candidate(
        self, resolver: CdnUrlResolver, executor: RequestExecutor, catalog: FakeCatalog
    ):
        """With every real candidate down, only the unverified constructed URL remains."""
        record = await _ready_file(executor, catalog)
        catalog.unreachable.update(alias_candidates(record))

        resolved = await resolver.resolve(record)

        assert resolved.url not in catalog.unreachable
        assert resolved.strategy == "constructed"
        assert resolved.verified is False
        assert resolved.url == f"https://{SHOP}/cdn/shop/files/{record.legacy_id}"

    async def test_rest_fallback(
        self, resolver: CdnUrlResolver, executor: RequestExecutor, catalog: FakeCatalog
    ):
        """A caller-supplied product fallback attaches the source through REST."""
        record = await _ready_file(executor, catalog)
        catalog.unreachable.update(alias_candidates(record))

        resolved = await resolver.resolve(
            record, fallback=RestFallback(product_id=42, source_url="https://img.example.com/a.jpg")
        )

        assert resolved.strategy == "rest"
        assert resolved.verified is True
        assert resolved.url.startswith(f"https://{CDN_HOST}/s/files/products/")
        assert catalog.product_images[0]["product_id"] == 42

    async def test_head_405_falls_back_to_get(
        self, resolver: CdnUrlResolver, executor: RequestExecutor, catalog: FakeCatalog
    ):
        record = await _ready_file(executor, catalog)
        catalog.head_not_allowed = True

        resolved = await resolver.resolve(record)

        assert resolved.strategy == "direct"
        cdn_methods = [r.method for r in catalog.requests if r.url.host == CDN_HOST]
        assert cdn_methods == ["HEAD", "GET"]

    async def test_unchecked_urls_are_unverified(
        self,
        executor: RequestExecutor,
        http: httpx.AsyncClient,
        governor: TransportGovernor,
        catalog: FakeCatalog,
    ):
        resolver = CdnUrlResolver(executor, http, governor, check_urls=False, sleep=AsyncMock())
        record = await _ready_file(executor, catalog)

        resolved = await resolver.resolve(record)

        assert resolved.strategy == "direct"
        assert resolved.verified is False
        assert not [r for r in catalog.requests if r.url.host == CDN_HOST]

    async def test_nothing_to_try_raises(
        self,
        executor: RequestExecutor,
        http: httpx.AsyncClient,
        governor: TransportGovernor,
    ):
        """No URL fields, a failed re-query and no template: ambiguity error."""
        resolver = CdnUrlResolver(executor, http, governor, url_template="", sleep=AsyncMock())
        record = FileRecord(id="gid://shopify/MediaImage/404", status=FileStatus.UPLOADED)

        with pytest.raises(ResolutionAmbiguityError) as exc_info:
            await resolver.resolve(record)

        assert exc_info.value.tried == []


class TestImageTransformations:
    """Tests for transformed_url, presets and responsive_urls."""

    BASE = f"https://{CDN_HOST}/s/files/1/0001/files/cover.jpg?v=1700000000"

    def test_all_parameters_in_order(self):
        transformation = ImageTransformation(
            width=400,
            height=300,
            crop=CropMode.TOP,
            format=ImageFormat.PNG,
            quality=70,
            scale=2,
        )
        url = transformed_url("https://cdn.example.com/a.jpg", transformation)
        assert url == (
            "https://cdn.example.com/a.jpg"
            "?width=400&height=300&crop=top&format=png&quality=70&scale=2"
        )

    def test_quality_is_clamped(self):
        assert ImageTransformation(quality=150).to_params() == [("quality", "100")]
        assert ImageTransformation(quality=0).to_params() == [("quality", "1")]

    def test_non_positive_size_rejected(self):
        with pytest.raises(ValueError, match="width"):
            ImageTransformation(width=0)
        with pytest.raises(ValueError, match="height"):
            ImageTransformation(height=-5)

    def test_empty_transformation_keeps_url(self):
        assert transformed_url(self.BASE, ImageTransformation()) == self.BASE
        assert transformed_url(self.BASE, None) == self.BASE

    def test_works_on_resolved_url_and_keeps_version(self):
        resolved = ResolvedUrl(url=self.BASE, strategy="direct", verified=True)
        url = transformed_url(resolved, "thumbnail")
        assert url == f"{self.BASE}&width=150&height=150&crop=center"

    def test_existing_parameters_are_replaced(self):
        url = transformed_url("https://cdn.example.com/a.jpg?width=10&v=3", "medium")
        assert url == "https://cdn.example.com/a.jpg?v=3&width=800&height=600&crop=center"

    def test_presets(self):
        assert transformed_url("https://cdn.example.com/a.jpg", "webp").endswith(
            "?format=webp&quality=85"
        )
        assert transformed_url("https://cdn.example.com/a.jpg", "high_quality").endswith(
            "?quality=100"
        )
        assert PRESETS["large"].to_params() == [
            ("width", "1200"),
            ("height", "800"),
            ("crop", "center"),
        ]

    def test_unknown_preset_and_empty_url(self):
        with pytest.raises(ValueError, match="Unknown image preset"):
            transformed_url(self.BASE, "huge")
        with pytest.raises(ValueError, match="cannot be empty"):
            transformed_url("", "thumbnail")

    def test_responsive_urls(self):
        resolved = ResolvedUrl(url="https://cdn.example.com/a.jpg", strategy="alias", verified=True)

        urls = responsive_urls(resolved)

        assert list(urls) == ["thumbnail", "small", "medium", "large", "webp", "original"]
        assert urls["original"] == "https://cdn.example.com/a.jpg"
        assert urls["small"] == "https://cdn.example.com/a.jpg?width=300&height=300&crop=center"
        assert urls["webp"] == "https://cdn.example.com/a.jpg?format=webp&quality=85"
