# docparser/repositories/knowledge_repo.py
from __future__ import annotations

import re
import uuid
from typing import List, Optional

from sqlalchemy import func, or_, select, update

from docparser.models.knowledge_tables import KnowledgeRow
from docparser.repositories.base import SqlRepository
from docparser.schemas.knowledge import KnowledgeCreate, KnowledgeEntry, KnowledgeUpdate
from docparser.shared.errors import NotFoundError

_WORD_RE = re.compile(r"[A-Za-z0-9]{3,}")


def _terms(query: str) -> List[str]:
    seen: List[str] = []
    for w in _WORD_RE.findall(query.lower()):
        if w not in seen:
            seen.append(w)
    return seen


class KnowledgeRepository(SqlRepository):
    """
    Versioned knowledge corpus. `update` appends a row and moves the
    is_latest flag inside one transaction.
    """

    async def create(self, data: KnowledgeCreate) -> KnowledgeEntry:
        async def _do() -> KnowledgeEntry:
            async with self._session_maker() as session:
                row_id = str(uuid.uuid4())
                row = KnowledgeRow(
                    id=row_id,
                    logical_id=str(uuid.uuid4()),
                    title=data.title,
                    content=data.content,
                    category=data.category.strip().lower() or "general",
                    tags=list(data.tags),
                    source=data.source,
                    version=1,
                    parent_version_id=None,
                    is_latest=True,
                )
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return KnowledgeEntry.model_validate(row)

        return await self._guard("knowledge.create", _do())

    async def get_latest(self, logical_id: str) -> Optional[KnowledgeEntry]:
        async def _do() -> Optional[KnowledgeEntry]:
            async with self._session_maker() as session:
                stmt = select(KnowledgeRow).where(
                    KnowledgeRow.logical_id == logical_id, KnowledgeRow.is_latest.is_(True)
                )
                row = (await session.execute(stmt)).scalars().first()
                return KnowledgeEntry.model_validate(row) if row else None

        return await self._guard("knowledge.get_latest", _do())

    async def update(self, logical_id: str, changes: KnowledgeUpdate) -> KnowledgeEntry:
        async def _do() -> KnowledgeEntry:
            async with self._session_maker() as session:
                async with session.begin():
                    stmt = (
                        select(KnowledgeRow)
                        .where(KnowledgeRow.logical_id == logical_id, KnowledgeRow.is_latest.is_(True))
                        .with_for_update()
                    )
                    current = (await session.execute(stmt)).scalars().first()
                    if current is None:
                        raise NotFoundError(f"Knowledge entry {logical_id} not found")

                    patch = changes.model_dump(exclude_none=True)
                    await session.execute(
                        update(KnowledgeRow)
                        .where(KnowledgeRow.logical_id == logical_id)
                        .values(is_latest=False)
                    )
                    row = KnowledgeRow(
                        id=str(uuid.uuid4()),
                        logical_id=logical_id,
                        title=patch.get("title", current.title),
                        content=patch.get("content", current.content),
                        category=(patch.get("category", current.category) or "general").strip().lower(),
                        tags=list(patch.get("tags", current.tags or [])),
                        source=patch.get("source", current.source),
                        version=current.version + 1,
                        parent_version_id=current.id,
                        is_latest=True,
                    )
                    session.add(row)
                await session.refresh(row)
                return KnowledgeEntry.model_validate(row)

        return await self._guard("knowledge.update", _do())

    async def versions(self, logical_id: str) -> List[KnowledgeEntry]:
        async def _do() -> List[KnowledgeEntry]:
            async with self._session_maker() as session:
                stmt = (
                    select(KnowledgeRow)
                    .where(KnowledgeRow.logical_id == logical_id)
                    .order_by(KnowledgeRow.version)
                )
                return [KnowledgeEntry.model_validate(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._guard("knowledge.versions", _do())

    async def list_latest(
        self, category: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[KnowledgeEntry]:
        async def _do() -> List[KnowledgeEntry]:
            async with self._session_maker() as session:
                stmt = select(KnowledgeRow).where(KnowledgeRow.is_latest.is_(True))
                if category:
                    stmt = stmt.where(KnowledgeRow.category == category.strip().lower())
                stmt = stmt.order_by(KnowledgeRow.created_at.desc(), KnowledgeRow.id).limit(limit).offset(offset)
                return [KnowledgeEntry.model_validate(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._guard("knowledge.list_latest", _do())

    async def search(self, query: str, category: Optional[str] = None, limit: int = 5) -> List[KnowledgeEntry]:
        """
        Latest rows ranked by how many query terms they mention. With a
        category only rows of that category are considered.
        """
        terms = _terms(query)
        cat = category.strip().lower() if category else None

        async def _do() -> List[KnowledgeEntry]:
            async with self._session_maker() as session:
                stmt = select(KnowledgeRow).where(KnowledgeRow.is_latest.is_(True))
                if cat:
                    stmt = stmt.where(KnowledgeRow.category == cat)
                else:
                    clauses = []
                    for t in terms:
                        like = f"%{t}%"
                        clauses.append(func.lower(KnowledgeRow.title).like(like))
                        clauses.append(func.lower(KnowledgeRow.content).like(like))
                    if not clauses:
                        return []
                    stmt = stmt.where(or_(*clauses))
                stmt = (
                    stmt
                    .order_by(KnowledgeRow.created_at.desc())
                    .limit(max(limit * 10, 50))
                )
                rows = (await session.execute(stmt)).scalars().all()

            def score(r: KnowledgeRow) -> int:
                hay = f"{r.title} {r.content}".lower()
                return sum(1 for t in terms if t in hay)

            ranked = sorted(rows, key=score, reverse=True)
            return [KnowledgeEntry.model_validate(r) for r in ranked[:limit]]

        return await self._guard("knowledge.search", _do())
