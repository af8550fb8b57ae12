# docparser/models/knowledge_tables.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from docparser.db import Base
from docparser.models._common import utcnow


class KnowledgeRow(Base):
    """
    Versioned industry-standards entry. Rows sharing a logical_id form a
    parent-pointer chain; exactly one of them carries is_latest.
    """
    __tablename__ = "knowledge_entries"
    __table_args__ = (
        UniqueConstraint("logical_id", "version", name="uq_knowledge_version"),
        Index("idx_knowledge_latest_category", "is_latest", "category"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    logical_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(128), nullable=False, default="general")
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    source: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    parent_version_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    is_latest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
