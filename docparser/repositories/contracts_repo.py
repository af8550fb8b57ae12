# docparser/repositories/contracts_repo.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, select

from docparser.models.contract_tables import ContractRow
from docparser.repositories.base import SqlRepository
from docparser.schemas.contract import (
    ContractAnalysis,
    ContractRecord,
    ContractStatus,
    ContractSummary,
)
from docparser.schemas.validation import (
    ContractElementsResult,
    ElementsAbsent,
    ValidationResult,
    elements_of,
    present,
)


def _dump(model) -> Optional[dict]:
    return model.model_dump(mode="json") if model is not None else None


def _to_record(row: ContractRow) -> ContractRecord:
    return ContractRecord(
        id=row.id,
        owner_id=row.owner_id,
        original_filename=row.original_filename,
        mime_type=row.mime_type,
        blob_path=row.blob_path,
        sha256=row.sha256,
        size_bytes=row.size_bytes,
        status=ContractStatus(row.status),
        retention_days=row.retention_days,
        summary=ContractSummary.model_validate(row.summary) if row.summary else None,
        analysis=ContractAnalysis.model_validate(row.analysis) if row.analysis else None,
        validation=ValidationResult.model_validate(row.validation) if row.validation else None,
        validation_id=row.validation_id,
        confidence_score=row.confidence_score,
        error_message=row.error_message,
        elements=present(ContractElementsResult.model_validate(row.elements)) if row.elements else ElementsAbsent(),
        extracted_text=row.extracted_text,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply(row: ContractRow, record: ContractRecord) -> None:
    row.blob_path = record.blob_path
    row.status = record.status.value
    row.summary = _dump(record.summary)
    row.analysis = _dump(record.analysis)
    row.validation = _dump(record.validation)
    row.validation_id = record.validation_id
    row.confidence_score = record.confidence_score
    row.error_message = record.error_message
    row.elements = _dump(elements_of(record.elements))
    row.extracted_text = record.extracted_text


class ContractsRepository(SqlRepository):

    async def create(self, record: ContractRecord) -> ContractRecord:
        async def _do() -> ContractRecord:
            async with self._session_maker() as session:
                row = ContractRow(
                    id=record.id,
                    owner_id=record.owner_id,
                    original_filename=record.original_filename,
                    mime_type=record.mime_type,
                    sha256=record.sha256,
                    size_bytes=record.size_bytes,
                    retention_days=record.retention_days,
                )
                if record.created_at is not None:
                    row.created_at = record.created_at
                _apply(row, record)
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return _to_record(row)

        return await self._guard("contracts.create", _do())

    async def get(self, contract_id: str) -> Optional[ContractRecord]:
        async def _do() -> Optional[ContractRecord]:
            async with self._session_maker() as session:
                row = await session.get(ContractRow, contract_id)
                return _to_record(row) if row else None

        return await self._guard("contracts.get", _do())

    async def update(self, record: ContractRecord) -> ContractRecord:
        """Persist the mutable part of a record (status + embedded JSON)."""

        async def _do() -> ContractRecord:
            async with self._session_maker() as session:
                row = await session.get(ContractRow, record.id)
                if row is None:
                    # deleted concurrently; keep the caller's view
                    return record
                _apply(row, record)
                await session.commit()
                await session.refresh(row)
                return _to_record(row)

        return await self._guard("contracts.update", _do())

    async def delete(self, contract_id: str) -> bool:
        async def _do() -> bool:
            async with self._session_maker() as session:
                result = await session.execute(delete(ContractRow).where(ContractRow.id == contract_id))
                await session.commit()
                return result.rowcount > 0

        return await self._guard("contracts.delete", _do())

    async def list_expired(self, now: datetime, batch_size: int = 500) -> List[ContractRecord]:
        """
        Records whose created_at + retention_days is in the past.
        Retention is per row, so the date math happens here and not in SQL.
        """

        async def _do() -> List[ContractRecord]:
            async with self._session_maker() as session:
                stmt = (
                    select(ContractRow)
                    .where(ContractRow.created_at < now)
                    .order_by(ContractRow.created_at)
                    .limit(batch_size)
                )
                rows = (await session.execute(stmt)).scalars().all()
                return [
                    _to_record(r)
                    for r in rows
                    if r.created_at + timedelta(days=r.retention_days) < now
                ]

        return await self._guard("contracts.list_expired", _do())
