# docparser/routers/validations.py
from __future__ import annotations

from typing import Annotated, List

from fastapi import APIRouter, Depends, status

from docparser.dependencies import get_actor_id, get_validation_engine
from docparser.schemas.validation import AuditEntry, FeedbackCreate, FeedbackEntry, ValidationRecord
from docparser.services.validation_service import ValidationEngine
from docparser.shared.errors import ForbiddenError

router = APIRouter(prefix="/validations", tags=["Validations"])

Actor = Annotated[str, Depends(get_actor_id)]
Engine = Annotated[ValidationEngine, Depends(get_validation_engine)]


async def _owned(engine: ValidationEngine, validation_id: str, actor_id: str) -> ValidationRecord:
    record = await engine.get(validation_id)
    if record.owner_id != actor_id:
        raise ForbiddenError()
    return record


@router.post("/{validation_id}/feedback", response_model=FeedbackEntry, status_code=status.HTTP_201_CREATED)
async def add_validation_feedback(validation_id: str, payload: FeedbackCreate, actor_id: Actor, engine: Engine):
    await _owned(engine, validation_id, actor_id)
    return await engine.add_feedback(
        validation_id, actor_id, payload.feedback_type, payload.rating, payload.comment
    )


@router.post("/{validation_id}/recalculate", response_model=ValidationRecord)
async def recalculate_confidence(validation_id: str, actor_id: Actor, engine: Engine):
    """Applies accuracy feedback to the confidence; repeat calls without new feedback are no-ops."""
    await _owned(engine, validation_id, actor_id)
    return await engine.update_confidence_from_feedback(validation_id, actor_id)


@router.get("/{validation_id}/audit", response_model=List[AuditEntry])
async def get_audit_trail(validation_id: str, actor_id: Actor, engine: Engine):
    await _owned(engine, validation_id, actor_id)
    return await engine.audit_trail(validation_id)
