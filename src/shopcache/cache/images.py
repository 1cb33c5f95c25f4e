"""Image preloading cache.

Fetches image payloads with httpx and memoizes them in the memory backend of
a KeyValueCache, so product cards and carousels can render from a local
`data:` URI instead of going back to the network.

- preload() is single-flight per URL: concurrent callers share one fetch
- size caps are enforced before download (Content-Length) and while reading
  the body, since servers may lie about length; oversize images are skipped
- preload_many() batches by priority tier (all at once, chunks of 3, or one
  at a time with a pause)
- a failing image is logged and skipped, never aborting its siblings

Preloads are not cancellable once started; a caller that goes away simply
ignores the result.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

import httpx

from shopcache.cache.backends import BackendKind
from shopcache.cache.keys import CacheDurations, CacheKeys
from shopcache.cache.store import KeyValueCache
from shopcache.errors import CacheError, FetchFailure, OversizeFailure, Outcome
from shopcache.observability.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB per image
MEDIUM_CHUNK_SIZE = 3
LOW_PRIORITY_DELAY = 0.1  # seconds between background loads


class Priority(str, Enum):
    """Preload priority tier."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ImageEncoding(str, Enum):
    """How a cached image payload is held."""

    BINARY = "binary"  # raw bytes
    TEXT = "text"  # data: URI string


@dataclass(frozen=True, slots=True)
class ImageCacheRecord:
    """A cached image payload."""

    payload: bytes | str
    encoding: ImageEncoding
    byte_size: int
    mime_type: str
    source_url: str

    def data_uri(self) -> str:
        """Renderable reference for the image."""
        if isinstance(self.payload, str):
            return self.payload
        encoded = base64.b64encode(self.payload).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True, slots=True)
class ImageCacheStats:
    """Snapshot of image cache usage."""

    cached: int
    cached_bytes: int
    in_flight: int

    @property
    def memory_usage(self) -> str:
        return format_bytes(self.cached_bytes)


def format_bytes(size: int) -> str:
    """Format a byte count for display (e.g. "1.5 KB")."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2):g} {units[unit]}"


class ImageCache:
    """Preloads images and serves them from the memory backend."""

    def __init__(
        self,
        cache: KeyValueCache,
        client: httpx.AsyncClient | None = None,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        default_encoding: ImageEncoding | str = ImageEncoding.BINARY,
        medium_chunk_size: int = MEDIUM_CHUNK_SIZE,
        low_priority_delay: float = LOW_PRIORITY_DELAY,
        timeout: float = 30.0,
        ttl: float = CacheDurations.DAY,
        metrics: MetricsRegistry | None = None,
    ):
        self._cache = cache
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self.max_bytes = max_bytes
        self.default_encoding = ImageEncoding(default_encoding)
        self.medium_chunk_size = max(1, medium_chunk_size)
        self.low_priority_delay = low_priority_delay
        self.ttl = ttl
        self._metrics = metrics or MetricsRegistry(enabled=False)
        self._in_flight: dict[str, asyncio.Task[Outcome[ImageCacheRecord]]] = {}

    def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client, creating one on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this cache created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Lookups (synchronous, for rendering)
    # -------------------------------------------------------------------------

    def get_cached(self, url: str) -> ImageCacheRecord | None:
        """Get the cached record for a URL, if any."""
        record = self._cache.get(CacheKeys.image_blob(url), backend=BackendKind.MEMORY)
        return record if isinstance(record, ImageCacheRecord) else None

    def get_cached_url(self, url: str) -> str | None:
        """Get a renderable data URI for a cached image, or None on miss."""
        record = self.get_cached(url)
        return record.data_uri() if record is not None else None

    def resolve_url(self, url: str) -> str:
        """Cached data URI when available, otherwise the original URL."""
        return self.get_cached_url(url) or url

    # -------------------------------------------------------------------------
    # Preloading
    # -------------------------------------------------------------------------

    async def preload(
        self,
        url: str,
        priority: Priority | str = Priority.MEDIUM,
        encoding: ImageEncoding | str | None = None,
        max_bytes: int | None = None,
    ) -> ImageCacheRecord | None:
        """Fetch and cache an image.

        Returns the cached record, or None if the image could not be fetched
        or exceeded the size cap. Concurrent calls for the same URL share a
        single fetch.
        """
        cached = self.get_cached(url)
        if cached is not None:
            return cached

        task = self._in_flight.get(url)
        if task is None:
            task = asyncio.create_task(
                self._load(
                    url,
                    ImageEncoding(encoding) if encoding is not None else self.default_encoding,
                    max_bytes if max_bytes is not None else self.max_bytes,
                )
            )
            self._in_flight[url] = task
            task.add_done_callback(lambda done, url=url: self._forget(url, done))
            logger.debug(f"Preloading image ({Priority(priority).value}): {url}")

        # One cancelled caller must not cancel the fetch shared with others
        outcome = await asyncio.shield(task)
        return outcome.value

    def _forget(self, url: str, task: asyncio.Task[Outcome[ImageCacheRecord]]) -> None:
        if self._in_flight.get(url) is task:
            del self._in_flight[url]

    async def _load(
        self, url: str, encoding: ImageEncoding, max_bytes: int
    ) -> Outcome[ImageCacheRecord]:
        """Fetch, size-check and store one image."""
        try:
            body, mime_type = await self._fetch(url, max_bytes)
        except OversizeFailure as e:
            logger.warning(str(e))
            self._metrics.image_fetches_total.labels(outcome="oversize").inc()
            return Outcome.failure(e)
        except CacheError as e:
            logger.error(f"Failed to cache image {url}: {e}")
            self._metrics.image_fetches_total.labels(outcome="failed").inc()
            return Outcome.failure(e)

        payload: bytes | str = body
        if encoding is ImageEncoding.TEXT:
            payload = f"data:{mime_type};base64,{base64.b64encode(body).decode('ascii')}"

        record = ImageCacheRecord(
            payload=payload,
            encoding=encoding,
            byte_size=len(body),
            mime_type=mime_type,
            source_url=url,
        )
        self._cache.set(
            CacheKeys.image_blob(url), record, ttl=self.ttl, backend=BackendKind.MEMORY
        )

        self._metrics.image_fetches_total.labels(outcome="cached").inc()
        self.stats()  # refreshes image_bytes_cached
        logger.info(f"Cached image: {url} ({format_bytes(record.byte_size)})")
        return Outcome.success(record)

    async def _fetch(self, url: str, max_bytes: int) -> tuple[bytes, str]:
        """Download an image body, enforcing the size cap.

        Raises:
            FetchFailure: On non-success status, malformed URL or transport error
            OversizeFailure: If the declared or actual size exceeds max_bytes
        """
        client = self._get_client()
        try:
            async with client.stream("GET", url) as response:
                if not response.is_success:
                    raise FetchFailure(
                        url, f"HTTP {response.status_code}", status_code=response.status_code
                    )

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise OversizeFailure(url, int(declared), max_bytes)

                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > max_bytes:
                        raise OversizeFailure(url, received, max_bytes)
                    chunks.append(chunk)

                content_type = response.headers.get("content-type", "application/octet-stream")
                mime_type = content_type.split(";")[0].strip() or "application/octet-stream"
                return b"".join(chunks), mime_type
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchFailure(url, str(e) or type(e).__name__) from e

    async def _preload_quietly(
        self,
        url: str,
        encoding: ImageEncoding | str | None,
        max_bytes: int | None,
    ) -> ImageCacheRecord | None:
        try:
            return await self.preload(url, encoding=encoding, max_bytes=max_bytes)
        except Exception:
            logger.exception(f"Unexpected error preloading {url}")
            return None

    async def preload_many(
        self,
        urls: Iterable[str],
        priority: Priority | str = Priority.MEDIUM,
        encoding: ImageEncoding | str | None = None,
        max_bytes: int | None = None,
    ) -> list[ImageCacheRecord | None]:
        """Preload several images using the batching policy of a priority tier.

        - high: every fetch at once
        - medium: chunks of `medium_chunk_size`, one chunk after another
        - low: one at a time with `low_priority_delay` between loads

        Returns one result per URL, in order.
        """
        url_list = list(urls)
        if not url_list:
            return []

        tier = Priority(priority)
        results: list[ImageCacheRecord | None] = []

        if tier is Priority.HIGH:
            results = list(
                await asyncio.gather(
                    *(self._preload_quietly(url, encoding, max_bytes) for url in url_list)
                )
            )
        elif tier is Priority.MEDIUM:
            for start in range(0, len(url_list), self.medium_chunk_size):
                chunk = url_list[start : start + self.medium_chunk_size]
                results.extend(
                    await asyncio.gather(
                        *(self._preload_quietly(url, encoding, max_bytes) for url in chunk)
                    )
                )
        else:
            for index, url in enumerate(url_list):
                results.append(await self._preload_quietly(url, encoding, max_bytes))
                if index < len(url_list) - 1:
                    await asyncio.sleep(self.low_priority_delay)

        cached = sum(1 for record in results if record is not None)
        logger.debug(f"Preloaded {cached}/{len(url_list)} images ({tier.value})")
        return results

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def _image_keys(self) -> list[str]:
        return [
            key for key in self._cache.keys(BackendKind.MEMORY) if CacheKeys.is_image_blob(key)
        ]

    def clear(self) -> int:
        """Drop every cached image from the memory backend.

        Durable storage is never touched. Returns the number of images dropped.
        """
        keys = self._image_keys()
        logger.info(f"Clearing image cache. Current stats: {self.stats()}")
        for key in keys:
            self._cache.delete(key, backend=BackendKind.MEMORY)
        self._metrics.image_bytes_cached.set(0)
        return len(keys)

    def stats(self) -> ImageCacheStats:
        """Count live cached images and their total size.

        Also refreshes the image_bytes_cached gauge.
        """
        cached = 0
        cached_bytes = 0
        for key in self._image_keys():
            record = self._cache.get(key, backend=BackendKind.MEMORY)
            if isinstance(record, ImageCacheRecord):
                cached += 1
                cached_bytes += record.byte_size
        self._metrics.image_bytes_cached.set(cached_bytes)
        return ImageCacheStats(
            cached=cached, cached_bytes=cached_bytes, in_flight=len(self._in_flight)
        )
