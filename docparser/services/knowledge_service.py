# docparser/services/knowledge_service.py
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from docparser.repositories.knowledge_repo import KnowledgeRepository
from docparser.schemas.knowledge import KnowledgeCreate, KnowledgeEntry, KnowledgeUpdate
from docparser.services.cache import CacheBackend
from docparser.shared.errors import NotFoundError

logger = logging.getLogger(__name__)

GENERAL_QUERY = "contract standards best practices"
GENERAL_KEY = "general"
PER_INDUSTRY = 2
GENERAL_LIMIT = 3
CACHE_TIMEOUT = 2.0


def _render(industry: str, entries: List[KnowledgeEntry]) -> str:
    return "".join(f"Industry: {industry}\n{e.content}\n\n" for e in entries)


class KnowledgeLookup:
    """
    Industry standards text for risk prompts, read through a cache.
    Never raises: a failing store means no standards, not a failed analysis.
    """

    def __init__(
        self,
        repo: KnowledgeRepository,
        cache: CacheBackend,
        ttl: int = 24 * 3600,
        max_chars: int = 8 * 1024,
    ):
        self._repo = repo
        self._cache = cache
        self._ttl = ttl
        self._max_chars = max_chars

    async def _cache_get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.wait_for(self._cache.get(key), CACHE_TIMEOUT)
        except Exception as e:
            logger.warning("knowledge cache read failed for %s: %s", key, e)
            return None

    async def _cache_set(self, key: str, value: str) -> None:
        try:
            await asyncio.wait_for(self._cache.set(key, value, self._ttl), CACHE_TIMEOUT)
        except Exception as e:
            logger.warning("knowledge cache write failed for %s: %s", key, e)

    async def _for_industry(self, industry: str) -> str:
        key = f"knowledge:{industry}"
        cached = await self._cache_get(key)
        if cached is not None:
            return cached

        entries = await self._repo.search(f"{industry} contract standards", category=industry, limit=PER_INDUSTRY)
        text = _render(industry, entries)
        if text:
            await self._cache_set(key, text)
        return text

    async def _general(self) -> str:
        key = f"knowledge:{GENERAL_KEY}"
        cached = await self._cache_get(key)
        if cached is not None:
            return cached
        entries = await self._repo.search(GENERAL_QUERY, limit=GENERAL_LIMIT)
        text = _render(GENERAL_KEY, entries)
        if text:
            await self._cache_set(key, text)
        return text

    async def standards_for(self, *industries: str) -> str:
        tags = []
        for i in industries:
            tag = (i or "").strip().lower()
            if tag and tag not in tags:
                tags.append(tag)

        try:
            out = ""
            for tag in tags:
                if tag == GENERAL_KEY:
                    continue
                out += await self._for_industry(tag)
                if len(out) >= self._max_chars:
                    break
            if not out:
                out = await self._general()
        except Exception as e:
            logger.warning("knowledge lookup failed for %s: %s", tags, e)
            return ""
        return out[: self._max_chars]


class KnowledgeService:
    """CRUD over the versioned corpus."""

    def __init__(self, repo: KnowledgeRepository, cache: Optional[CacheBackend] = None):
        self._repo = repo
        self._cache = cache

    async def _invalidate(self, *categories: str) -> None:
        if self._cache is None:
            return
        for category in {*categories, GENERAL_KEY}:
            try:
                await self._cache.delete(f"knowledge:{category}")
            except Exception as e:
                logger.warning("knowledge cache invalidation failed for %s: %s", category, e)

    async def list_latest(self, category: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[KnowledgeEntry]:
        return await self._repo.list_latest(category, limit, offset)

    async def get_latest(self, logical_id: str) -> KnowledgeEntry:
        entry = await self._repo.get_latest(logical_id)
        if entry is None:
            raise NotFoundError(f"Knowledge entry {logical_id} not found")
        return entry

    async def create(self, data: KnowledgeCreate) -> KnowledgeEntry:
        entry = await self._repo.create(data)
        await self._invalidate(entry.category)
        return entry

    async def update(self, logical_id: str, changes: KnowledgeUpdate) -> KnowledgeEntry:
        previous = await self.get_latest(logical_id)
        entry = await self._repo.update(logical_id, changes)
        await self._invalidate(previous.category, entry.category)
        return entry

    async def versions(self, logical_id: str) -> List[KnowledgeEntry]:
        chain = await self._repo.versions(logical_id)
        if not chain:
            raise NotFoundError(f"Knowledge entry {logical_id} not found")
        return chain
