# docparser/repositories/validation_repo.py
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select

from docparser.models.validation_tables import AuditRow, FeedbackRow, ValidationRow
from docparser.repositories.base import SqlRepository
from docparser.schemas.validation import (
    ABSENT,
    AuditEntry,
    ElementsPresent,
    FeedbackEntry,
    ValidationRecord,
    ValidationResult,
)


def _to_record(row: ValidationRow) -> ValidationRecord:
    return ValidationRecord(
        id=row.id,
        validation_id=row.validation_id,
        contract_id=row.contract_id,
        owner_id=row.owner_id,
        validation_type=row.validation_type,
        result=ValidationResult.model_validate(row.result),
        elements=ElementsPresent.model_validate(row.elements) if row.elements else ABSENT,
        confidence_score=row.confidence_score,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class ValidationRepository(SqlRepository):
    """Validation records, their audit log and feedback."""

    # ---------- records ----------
    async def add_record(self, record: ValidationRecord) -> ValidationRecord:
        async def _do() -> ValidationRecord:
            async with self._session_maker() as session:
                row = ValidationRow(
                    id=record.id,
                    validation_id=record.validation_id,
                    contract_id=record.contract_id,
                    owner_id=record.owner_id,
                    validation_type=record.validation_type,
                    result=record.result.model_dump(mode="json"),
                    elements=(
                        record.elements.model_dump(mode="json")
                        if isinstance(record.elements, ElementsPresent)
                        else None
                    ),
                    confidence_score=record.confidence_score,
                    version=record.version,
                )
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return _to_record(row)

        return await self._guard("validation.add_record", _do())

    async def latest(self, validation_id: str) -> Optional[ValidationRecord]:
        async def _do() -> Optional[ValidationRecord]:
            async with self._session_maker() as session:
                stmt = (
                    select(ValidationRow)
                    .where(ValidationRow.validation_id == validation_id)
                    .order_by(ValidationRow.version.desc())
                    .limit(1)
                )
                row = (await session.execute(stmt)).scalars().first()
                return _to_record(row) if row else None

        return await self._guard("validation.latest", _do())

    async def versions(self, validation_id: str) -> List[ValidationRecord]:
        async def _do() -> List[ValidationRecord]:
            async with self._session_maker() as session:
                stmt = (
                    select(ValidationRow)
                    .where(ValidationRow.validation_id == validation_id)
                    .order_by(ValidationRow.version)
                )
                return [_to_record(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._guard("validation.versions", _do())

    async def history(self, contract_id: str) -> List[ValidationRecord]:
        async def _do() -> List[ValidationRecord]:
            async with self._session_maker() as session:
                stmt = (
                    select(ValidationRow)
                    .where(ValidationRow.contract_id == contract_id)
                    .order_by(ValidationRow.created_at, ValidationRow.version)
                )
                return [_to_record(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._guard("validation.history", _do())

    # ---------- audit ----------
    async def add_audit(self, entry: AuditEntry) -> AuditEntry:
        async def _do() -> AuditEntry:
            async with self._session_maker() as session:
                row = AuditRow(
                    validation_id=entry.validation_id,
                    actor_id=entry.actor_id,
                    action=entry.action,
                    previous_version=entry.previous_version,
                    current_version=entry.current_version,
                    changes=entry.changes,
                    reason=entry.reason,
                )
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return AuditEntry.model_validate(row)

        return await self._guard("validation.add_audit", _do())

    async def audit_trail(self, validation_id: str) -> List[AuditEntry]:
        async def _do() -> List[AuditEntry]:
            async with self._session_maker() as session:
                stmt = select(AuditRow).where(AuditRow.validation_id == validation_id).order_by(AuditRow.id)
                return [AuditEntry.model_validate(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._guard("validation.audit_trail", _do())

    async def last_audit(self, validation_id: str, action: str) -> Optional[AuditEntry]:
        async def _do() -> Optional[AuditEntry]:
            async with self._session_maker() as session:
                stmt = (
                    select(AuditRow)
                    .where(AuditRow.validation_id == validation_id, AuditRow.action == action)
                    .order_by(AuditRow.id.desc())
                    .limit(1)
                )
                row = (await session.execute(stmt)).scalars().first()
                return AuditEntry.model_validate(row) if row else None

        return await self._guard("validation.last_audit", _do())

    # ---------- feedback ----------
    async def add_feedback(self, entry: FeedbackEntry) -> FeedbackEntry:
        async def _do() -> FeedbackEntry:
            async with self._session_maker() as session:
                row = FeedbackRow(
                    validation_id=entry.validation_id,
                    actor_id=entry.actor_id,
                    feedback_type=entry.feedback_type,
                    rating=entry.rating,
                    comment=entry.comment,
                )
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return FeedbackEntry.model_validate(row)

        return await self._guard("validation.add_feedback", _do())

    async def feedback(self, validation_id: str, feedback_type: Optional[str] = None) -> List[FeedbackEntry]:
        async def _do() -> List[FeedbackEntry]:
            async with self._session_maker() as session:
                stmt = select(FeedbackRow).where(FeedbackRow.validation_id == validation_id)
                if feedback_type:
                    stmt = stmt.where(FeedbackRow.feedback_type == feedback_type)
                stmt = stmt.order_by(FeedbackRow.id)
                return [FeedbackEntry.model_validate(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._guard("validation.feedback", _do())
