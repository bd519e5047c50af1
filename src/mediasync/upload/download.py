"""Payload loading for staged uploads.

Byte sources are used as-is, path sources are read from disk, and URL
sources whose host refuses server-side fetching by the catalog are
downloaded here with browser-like headers so they can go through the
staged path instead.
"""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlsplit

import httpx

from mediasync.models import SourceKind, UploadRequest
from mediasync.upload.errors import ValidationError
from mediasync.upload.governor import TransportGovernor

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "image",
    "Sec-Fetch-Mode": "no-cors",
    "Sec-Fetch-Site": "cross-site",
    "DNT": "1",
}


def needs_staged_fallback(url: str, domains: tuple[str, ...]) -> bool:
    """Whether *url* is hosted on one of *domains* (or a subdomain)."""
    host = (urlsplit(url).hostname or "").lower()
    return any(host == d or host.endswith("." + d) for d in domains)


class SourceFetcher:
    """Loads the bytes of an :class:`UploadRequest`.

    Args:
        http: Shared HTTP client (used for URL downloads only).
        governor: Shared transport governor.
    """

    def __init__(self, http: httpx.AsyncClient, governor: TransportGovernor) -> None:
        self._http = http
        self._governor = governor

    async def load(self, request: UploadRequest, *, timeout: float | None = None) -> bytes:
        """Return the payload of *request*.

        Raises:
            ValidationError: The payload is empty or cannot be read.
            TransientTransportError: A URL download failed after retries.
        """
        kind = request.source_kind
        if kind == SourceKind.BYTES:
            payload = request.source
        elif kind == SourceKind.PATH:
            try:
                payload = await asyncio.to_thread(request.source.read_bytes)
            except OSError as exc:
                raise ValidationError(f"Cannot read {request.source}: {exc}") from exc
        else:
            payload = await self.download(request.source, timeout=timeout)

        if not payload:
            raise ValidationError(f"Empty payload for {request.display_name}")
        return payload

    async def download(self, url: str, *, timeout: float | None = None) -> bytes:
        """Download *url* with browser-like headers."""
        response = await self._governor.execute(
            lambda: self._http.get(url, headers=BROWSER_HEADERS),
            idempotent=True,
            timeout=timeout,
            description=f"download {urlsplit(url).netloc}",
        )
        logger.debug("Downloaded %d bytes from %s", len(response.content), url)
        return response.content
