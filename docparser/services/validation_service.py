# docparser/services/validation_service.py
from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional

from docparser.repositories.validation_repo import ValidationRepository
from docparser.schemas.validation import (
    FEEDBACK_TYPES,
    REQUIRED_ELEMENTS,
    AuditEntry,
    ContractElementsResult,
    FeedbackEntry,
    ValidationRecord,
    ValidationResult,
    elements_of,
    present,
)
from docparser.services import prompts
from docparser.services.llm_contract_analysis import StructuredLlm
from docparser.shared.errors import InputError, NotFoundError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

CONFIDENCE_WEIGHTS: Dict[str, float] = {
    "llm_confidence": 0.40,
    "element_completeness": 0.30,
    "contract_structure": 0.20,
    "content_quality": 0.10,
}
DEFAULT_CONTENT_QUALITY = 0.70
FEEDBACK_STEP = 0.1
NEUTRAL_RATING = 3.0


def _clamp(v: float) -> float:
    return max(0.0, min(v, 1.0))


# -------------------------- Scoring --------------------------

def confidence_factors(
    result: ValidationResult, elements: Optional[ContractElementsResult] = None
) -> Dict[str, float]:
    detected = set(result.detected_elements)
    completeness = sum(1 for e in REQUIRED_ELEMENTS if e in detected) / len(REQUIRED_ELEMENTS)
    return {
        "llm_confidence": _clamp(result.confidence),
        "element_completeness": completeness,
        "contract_structure": max(0.0, 1.0 - 0.1 * len(result.missing_elements)),
        "content_quality": _clamp(elements.confidence) if elements is not None else DEFAULT_CONTENT_QUALITY,
    }


def confidence_score(result: ValidationResult, elements: Optional[ContractElementsResult] = None) -> float:
    """Weighted mean of the factors above, clamped to [0, 1]."""
    factors = confidence_factors(result, elements)
    total_weight = sum(CONFIDENCE_WEIGHTS.values())
    score = sum(CONFIDENCE_WEIGHTS[k] * v for k, v in factors.items()) / total_weight
    return _clamp(score)


# -------------------------- Engine --------------------------

class ValidationEngine:
    def __init__(self, llm: StructuredLlm, repo: ValidationRepository):
        self._llm = llm
        self._repo = repo

    async def validate(self, text: str) -> ValidationResult:
        return await self._llm.ask(prompts.validation(text), ValidationResult, stage="validation")

    async def detect_elements(self, text: str) -> ContractElementsResult:
        return await self._llm.ask(prompts.element_detection(text), ContractElementsResult, stage="elements")

    async def _audit(self, entry: AuditEntry) -> None:
        try:
            await self._repo.add_audit(entry)
        except Exception as e:
            logger.warning("audit write failed (%s for %s): %s", entry.action, entry.validation_id, e)

    async def store(
        self,
        contract_id: str,
        owner_id: str,
        result: ValidationResult,
        elements: Optional[ContractElementsResult] = None,
        validation_type: str = "contract",
    ) -> ValidationRecord:
        record = ValidationRecord(
            id=str(uuid.uuid4()),
            validation_id=str(uuid.uuid4()),
            contract_id=contract_id,
            owner_id=owner_id,
            validation_type=validation_type,
            result=result,
            elements=present(elements),
            confidence_score=confidence_score(result, elements),
            version=1,
        )
        saved = await self._repo.add_record(record)
        await self._audit(
            AuditEntry(
                validation_id=saved.validation_id,
                actor_id=owner_id,
                action="created",
                previous_version=0,
                current_version=1,
                changes={"action": "initial_creation"},
                reason="Initial validation record",
            )
        )
        return saved

    async def get(self, validation_id: str) -> ValidationRecord:
        record = await self._repo.latest(validation_id)
        if record is None:
            raise NotFoundError(f"Validation {validation_id} not found")
        return record

    async def history(self, contract_id: str) -> List[ValidationRecord]:
        return await self._repo.history(contract_id)

    async def audit_trail(self, validation_id: str) -> List[AuditEntry]:
        await self.get(validation_id)
        return await self._repo.audit_trail(validation_id)

    async def add_feedback(
        self,
        validation_id: str,
        actor_id: str,
        feedback_type: str,
        rating: int,
        comment: str = "",
    ) -> FeedbackEntry:
        if feedback_type not in FEEDBACK_TYPES:
            raise InputError("invalid_feedback_type", f"feedback_type must be one of {', '.join(FEEDBACK_TYPES)}")
        if not 1 <= int(rating) <= 5:
            raise InputError("invalid_rating", "rating must be between 1 and 5")

        record = await self.get(validation_id)
        entry = await self._repo.add_feedback(
            FeedbackEntry(
                validation_id=validation_id,
                actor_id=actor_id,
                feedback_type=feedback_type,
                rating=int(rating),
                comment=comment,
            )
        )
        await self._audit(
            AuditEntry(
                validation_id=validation_id,
                actor_id=actor_id,
                action="feedback_added",
                previous_version=record.version,
                current_version=record.version,
                changes={"feedback_id": entry.id, "feedback_type": feedback_type, "rating": entry.rating},
                reason=comment,
            )
        )
        return entry

    async def update_confidence_from_feedback(
        self, validation_id: str, actor_id: str = SYSTEM_ACTOR
    ) -> ValidationRecord:
        """
        confidence = base + (mean accuracy rating - 3) * 0.1, clamped, where
        base is the version-1 confidence. No-op when the accuracy feedback set
        equals the one applied last time, or when the confidence would not move.
        """
        current = await self.get(validation_id)
        feedback = await self._repo.feedback(validation_id, "accuracy")
        if not feedback:
            return current

        feedback_ids = sorted(f.id for f in feedback if f.id is not None)
        last = await self._repo.last_audit(validation_id, "confidence_updated")
        if last is not None and sorted(last.changes.get("feedback_ids") or []) == feedback_ids:
            logger.debug("validation %s: feedback already applied", validation_id)
            return current

        versions = await self._repo.versions(validation_id)
        base = versions[0].result.confidence if versions else current.result.confidence

        mean = sum(f.rating for f in feedback) / len(feedback)
        delta = (mean - NEUTRAL_RATING) * FEEDBACK_STEP
        before = current.result.confidence
        after = round(_clamp(base + delta), 6)

        if after == round(before, 6):
            logger.debug("validation %s: feedback leaves confidence at %.3f", validation_id, before)
            return current

        result = current.result.model_copy(update={"confidence": after})
        elements = elements_of(current.elements)
        updated = await self._repo.add_record(
            current.model_copy(
                update={
                    "id": str(uuid.uuid4()),
                    "result": result,
                    "confidence_score": confidence_score(result, elements),
                    "version": current.version + 1,
                    "created_at": None,
                    "updated_at": None,
                }
            )
        )
        await self._audit(
            AuditEntry(
                validation_id=validation_id,
                actor_id=actor_id,
                action="confidence_updated",
                previous_version=current.version,
                current_version=updated.version,
                changes={
                    "before": before,
                    "after": after,
                    "n": len(feedback),
                    "feedback_ids": feedback_ids,
                },
                reason=f"Adjusted from {len(feedback)} accuracy rating(s), mean {mean:.2f}",
            )
        )
        logger.info("validation %s: confidence %.3f -> %.3f (v%d)", validation_id, before, after, updated.version)
        return updated
