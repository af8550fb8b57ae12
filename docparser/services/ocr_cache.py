# docparser/services/ocr_cache.py
from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Optional, Protocol

from pydantic import ValidationError

from docparser.schemas.ocr import OcrResult
from docparser.services.cache import CacheBackend
from docparser.services.ocr_service import ImageSource, load_image_bytes
from docparser.shared.metrics import MetricsRegistry, metrics

logger = logging.getLogger(__name__)

CACHE_TIMEOUT = 2.0


class OcrExtractor(Protocol):
    async def extract(self, image: ImageSource, mime: str = "image/jpeg") -> OcrResult: ...


def cache_key(image: bytes) -> str:
    return "ocr:" + hashlib.sha256(image).hexdigest()


class OcrCache:
    """Content-addressed OCR results. Any failure reads as a miss."""

    def __init__(self, backend: CacheBackend, ttl: int = 24 * 3600, timeout: float = CACHE_TIMEOUT):
        self._backend = backend
        self.ttl = ttl
        self._timeout = timeout

    async def lookup(self, key: str) -> Optional[OcrResult]:
        try:
            raw = await asyncio.wait_for(self._backend.get(key), self._timeout)
        except Exception as e:  # cache is best-effort
            logger.warning("ocr cache read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return OcrResult.model_validate_json(raw)
        except ValidationError:
            logger.warning("ocr cache entry %s is corrupt, treating as miss", key)
            return None

    async def store(self, key: str, result: OcrResult, ttl: Optional[int] = None) -> None:
        """Raises on failure; CachedOcrEngine decides what to do with it."""
        await asyncio.wait_for(
            self._backend.set(key, result.model_dump_json(), ttl or self.ttl), self._timeout
        )


class CachedOcrEngine:
    def __init__(self, engine: OcrExtractor, cache: OcrCache, registry: Optional[MetricsRegistry] = None):
        self._engine = engine
        self._cache = cache
        reg = registry or metrics
        self._hits = reg.counter("ocr_cache_hits_total")
        self._misses = reg.counter("ocr_cache_misses_total")

    async def extract(self, image: ImageSource, mime: str = "image/jpeg") -> OcrResult:
        if isinstance(image, str) and image.startswith(("http://", "https://", "data:")):
            # remote images are not content-addressable without downloading them
            return await self._engine.extract(image, mime)

        data = await load_image_bytes(image)
        key = cache_key(data)

        cached = await self._cache.lookup(key)
        if cached is not None:
            self._hits.inc()
            logger.debug("ocr cache hit %s", key)
            return cached

        self._misses.inc()
        result = await self._engine.extract(data, mime)
        try:
            await self._cache.store(key, result)
        except Exception as e:
            logger.error("ocr cache write failed for %s: %s", key, e)
        return result
