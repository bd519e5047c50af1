"""CDN URL resolver.

Finds a publicly reachable URL for a catalog file.  Strategies are tried
in order and the first reachable candidate wins:

1. ``direct``      -- the record's image URL, once the file is READY.
2. ``requery``     -- the same after a short wait and a fresh query.
3. ``alias``       -- alternate URL fields (original, transformed, src,
   preview), each also without its ``v`` cache-busting parameter.
4. ``rest``        -- attach the source to a product through REST and use
   the URL it returns (only when the caller provides a fallback).
5. ``constructed`` -- a URL built from the file id; never checked and
   always reported as unverified.

A resolved URL can then be turned into CDN-side variants (resized,
cropped, re-encoded) with :func:`transformed_url` and the named presets.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from mediasync.models import FileRecord, FileStatus, ResolvedUrl, UploadConfig
from mediasync.upload.errors import MediaSyncError, ResolutionAmbiguityError, ValidationError
from mediasync.upload.executor import RequestExecutor
from mediasync.upload.governor import TransportGovernor

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RestFallback:
    """Source to attach through REST when no file URL is reachable."""

    product_id: int
    source_url: str
    alt: str | None = None


def strip_version_param(url: str) -> str:
    """Remove the ``v`` query parameter from *url*."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "v"]
    return urlunsplit(parts._replace(query=urlencode(query)))


def alias_candidates(record: FileRecord) -> list[str]:
    """Alternate URLs of *record*, each followed by its version-stripped form."""
    image = record.image
    if image is None:
        return []
    urls: list[str] = []
    for url in (
        image.original_src,
        image.transformed_src,
        image.src,
        image.preview_url,
        image.url,
    ):
        if not url:
            continue
        for variant in (url, strip_version_param(url)):
            if variant not in urls:
                urls.append(variant)
    return urls


# ----------------------------------------------------------------------
# Image transformations
# ----------------------------------------------------------------------


class CropMode(str, Enum):
    CENTER = "center"
    TOP = "top"
    BOTTOM = "bottom"
    LEFT = "left"
    RIGHT = "right"


class ImageFormat(str, Enum):
    JPG = "jpg"
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    GIF = "gif"


@dataclass(frozen=True, slots=True)
class ImageTransformation:
    """CDN-side resize, crop and re-encode options for an image URL.

    Unset fields add no query parameter.  ``quality`` is clamped to
    1..100; a non-positive ``width`` or ``height`` is rejected.
    """

    width: int | None = None
    height: int | None = None
    crop: CropMode | None = None
    format: ImageFormat | None = None
    quality: int | None = None
    scale: float | None = None

    def __post_init__(self) -> None:
        for name in ("width", "height"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive, got {value!r}")

    def to_params(self) -> list[tuple[str, str]]:
        """Query parameters in width, height, crop, format, quality, scale order."""
        params: list[tuple[str, str]] = []
        if self.width is not None:
            params.append(("width", str(self.width)))
        if self.height is not None:
            params.append(("height", str(self.height)))
        if self.crop is not None:
            params.append(("crop", CropMode(self.crop).value))
        if self.format is not None:
            params.append(("format", ImageFormat(self.format).value))
        if self.quality is not None:
            params.append(("quality", str(max(1, min(100, self.quality)))))
        if self.scale is not None:
            params.append(("scale", f"{self.scale:g}"))
        return params


PRESETS: dict[str, ImageTransformation] = {
    "thumbnail": ImageTransformation(width=150, height=150, crop=CropMode.CENTER),
    "small": ImageTransformation(width=300, height=300, crop=CropMode.CENTER),
    "medium": ImageTransformation(width=800, height=600, crop=CropMode.CENTER),
    "large": ImageTransformation(width=1200, height=800, crop=CropMode.CENTER),
    "webp": ImageTransformation(format=ImageFormat.WEBP, quality=85),
    "high_quality": ImageTransformation(quality=100),
}

# presets listed by responsive_urls, in order
RESPONSIVE_PRESETS = ("thumbnail", "small", "medium", "large", "webp")


def transformed_url(
    resolved: ResolvedUrl | str,
    transformation: ImageTransformation | str | None,
) -> str:
    """Apply *transformation* (or a preset name) to a resolved CDN URL.

    Parameters already on the URL with the same names are replaced; any
    others, such as the ``v`` cache-buster, are kept.

    Raises:
        ValueError: The URL is empty or the preset name is unknown.
    """
    url = resolved.url if isinstance(resolved, ResolvedUrl) else resolved
    if not url:
        raise ValueError("Base CDN URL cannot be empty")
    if isinstance(transformation, str):
        try:
            transformation = PRESETS[transformation]
        except KeyError:
            raise ValueError(f"Unknown image preset: {transformation!r}") from None
    if transformation is None:
        return url

    params = transformation.to_params()
    if not params:
        return url
    names = {name for name, _ in params}
    parts = urlsplit(url)
    kept = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in names
    ]
    return urlunsplit(parts._replace(query=urlencode(kept + params)))


def responsive_urls(resolved: ResolvedUrl | str) -> dict[str, str]:
    """Preset variants of *resolved* for responsive markup, plus ``original``."""
    url = resolved.url if isinstance(resolved, ResolvedUrl) else resolved
    urls = {name: transformed_url(url, name) for name in RESPONSIVE_PRESETS}
    urls["original"] = url
    return urls


class CdnUrlResolver:
    """Resolves a reachable public URL for a :class:`FileRecord`.

    Args:
        executor: Used to re-query the record and for the REST fallback.
        http: Shared HTTP client used for reachability checks.
        governor: Shared transport governor.
        shop_domain: Substituted into ``url_template``.
        url_template: Format string with ``{shop_domain}``, ``{legacy_id}``
            and ``{file_id}``; empty disables the constructed strategy.
        wait_seconds: Delay before re-querying a record.
        check_urls: Whether candidates are checked for reachability.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        http: httpx.AsyncClient,
        governor: TransportGovernor,
        *,
        shop_domain: str = "",
        url_template: str = "",
        wait_seconds: float = 2.0,
        check_urls: bool = True,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._executor = executor
        self._http = http
        self._governor = governor
        self.shop_domain = shop_domain
        self.url_template = url_template
        self.wait_seconds = wait_seconds
        self.check_urls = check_urls
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: UploadConfig,
        executor: RequestExecutor,
        http: httpx.AsyncClient,
    ) -> CdnUrlResolver:
        return cls(
            executor,
            http,
            executor.governor,
            shop_domain=config.shop_domain,
            url_template=config.cdn_url_template,
            wait_seconds=config.resolve_wait_seconds,
            check_urls=config.check_urls,
        )

    async def resolve(
        self,
        record: FileRecord,
        *,
        fallback: RestFallback | None = None,
    ) -> ResolvedUrl:
        """Return the first reachable URL for *record*.

        Raises:
            ResolutionAmbiguityError: No candidate could be found at all.
        """
        tried: list[str] = []

        async def accept(url: str | None, strategy: str) -> ResolvedUrl | None:
            if not url or url in tried:
                return None
            tried.append(url)
            if not self.check_urls:
                return ResolvedUrl(url=url, strategy=strategy, verified=False)
            if await self.is_reachable(url):
                return ResolvedUrl(url=url, strategy=strategy, verified=True)
            logger.debug("Candidate %s (%s) is unreachable", url, strategy)
            return None

        if record.status == FileStatus.READY and record.image is not None:
            found = await accept(record.image.url, "direct")
            if found:
                return found

        await self._sleep(self.wait_seconds)
        try:
            record = record.refreshed(await self._executor.query_file(record.id))
        except (MediaSyncError, ValueError) as exc:
            logger.warning("Re-query of %s failed: %s", record.id, exc)
        else:
            if record.status == FileStatus.READY and record.image is not None:
                found = await accept(record.image.url, "requery")
                if found:
                    return found

        for url in alias_candidates(record):
            found = await accept(url, "alias")
            if found:
                return found

        if fallback is not None:
            try:
                image = await self._executor.attach_product_image(
                    fallback.product_id, fallback.source_url, fallback.alt
                )
            except MediaSyncError as exc:
                logger.warning(
                    "REST fallback for product %s failed: %s", fallback.product_id, exc
                )
            else:
                found = await accept(image.src, "rest")
                if found:
                    return found

        constructed = self.construct_url(record)
        if constructed:
            logger.warning("Falling back to constructed URL for %s: %s", record.id, constructed)
            return ResolvedUrl(url=constructed, strategy="constructed", verified=False)

        raise ResolutionAmbiguityError(
            f"No reachable URL for {record.id}", tried=tried
        )

    def construct_url(self, record: FileRecord) -> str | None:
        if not self.url_template or not record.legacy_id.isdigit():
            return None
        return self.url_template.format(
            shop_domain=self.shop_domain,
            legacy_id=record.legacy_id,
            file_id=record.id,
        )

    async def is_reachable(self, url: str) -> bool:
        """Check *url* once with HEAD, falling back to GET on 405."""
        try:
            await self._governor.execute(
                lambda: self._http.head(url),
                idempotent=True,
                description=f"reachability check of {url}",
            )
            return True
        except ValidationError as exc:
            if exc.status_code != 405:
                return False
        except MediaSyncError:
            return False

        try:
            await self._governor.execute(
                lambda: self._http.get(url),
                idempotent=True,
                description=f"reachability check of {url}",
            )
            return True
        except MediaSyncError:
            return False
