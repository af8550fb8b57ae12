# docparser/routers/knowledge.py
from __future__ import annotations

from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query, status

from docparser.dependencies import get_actor_id, get_knowledge_service
from docparser.schemas.knowledge import KnowledgeCreate, KnowledgeEntry, KnowledgeList, KnowledgeUpdate
from docparser.services.knowledge_service import KnowledgeService

router = APIRouter(prefix="/knowledge", tags=["Knowledge"])

Service = Annotated[KnowledgeService, Depends(get_knowledge_service)]


@router.get("", response_model=KnowledgeList)
async def list_knowledge(
    service: Service,
    category: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    items = await service.list_latest(category, limit, offset)
    return KnowledgeList(items=items, limit=limit, offset=offset)


@router.get("/{logical_id}", response_model=KnowledgeEntry)
async def get_knowledge(logical_id: str, service: Service):
    return await service.get_latest(logical_id)


@router.get("/{logical_id}/versions", response_model=List[KnowledgeEntry])
async def list_knowledge_versions(logical_id: str, service: Service):
    return await service.versions(logical_id)


# Writes need an actor
@router.post(
    "",
    response_model=KnowledgeEntry,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(get_actor_id)],
)
async def create_knowledge(payload: KnowledgeCreate, service: Service):
    return await service.create(payload)


@router.put("/{logical_id}", response_model=KnowledgeEntry, dependencies=[Depends(get_actor_id)])
async def update_knowledge(logical_id: str, payload: KnowledgeUpdate, service: Service):
    """Appends a new version; the previous one stays in the chain."""
    return await service.update(logical_id, payload)
