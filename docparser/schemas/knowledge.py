# docparser/schemas/knowledge.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class KnowledgeEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    logical_id: str
    title: str
    content: str
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    source: str = ""
    version: int = 1
    parent_version_id: Optional[str] = None
    is_latest: bool = True
    created_at: Optional[datetime] = None


class KnowledgeCreate(BaseModel):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    source: str = ""


class KnowledgeUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    source: Optional[str] = None


class KnowledgeList(BaseModel):
    items: List[KnowledgeEntry] = Field(default_factory=list)
    limit: int
    offset: int
