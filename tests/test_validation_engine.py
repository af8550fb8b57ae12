"""
Validation engine tests.

============================================================
COVERAGE
============================================================
- Composite confidence and its factors
- Verdict / element detection through the structured LLM
- Feedback: validation, adjustment, idempotence, audit trail
============================================================
"""

import pytest

from docparser.schemas.validation import (
    REQUIRED_ELEMENTS,
    ContractElementsResult,
    ValidationResult,
)
from docparser.services.validation_service import (
    CONFIDENCE_WEIGHTS,
    confidence_factors,
    confidence_score,
)
from docparser.shared.errors import InputError, NotFoundError, PipelineError

from conftest import VALID_CONTRACT, Sequenced


def _result(**overrides) -> ValidationResult:
    return ValidationResult.model_validate({**VALID_CONTRACT, **overrides})


class TestConfidenceScore:
    """Weighted composite."""

    def test_all_required_present_without_elements(self):
        # 0.4*0.9 + 0.3*1 + 0.2*1 + 0.1*0.7
        assert confidence_score(_result()) == pytest.approx(0.93)

    def test_factors(self):
        result = _result(detected_elements=list(REQUIRED_ELEMENTS[:3]), missing_elements=["signatures", "dates"])
        factors = confidence_factors(result, ContractElementsResult(confidence=0.4))

        assert factors == pytest.approx(
            {
                "llm_confidence": 0.9,
                "element_completeness": 0.5,
                "contract_structure": 0.8,
                "content_quality": 0.4,
            }
        )

    def test_equals_weighted_mean(self):
        result = _result(confidence=0.3, detected_elements=["consideration"], missing_elements=["dates"])
        elements = ContractElementsResult(confidence=0.6)
        factors = confidence_factors(result, elements)
        expected = sum(CONFIDENCE_WEIGHTS[k] * v for k, v in factors.items()) / sum(CONFIDENCE_WEIGHTS.values())

        assert confidence_score(result, elements) == pytest.approx(expected)

    def test_structure_factor_bottoms_out_at_zero(self):
        many_missing = ["payment_terms", "delivery_terms", "performance_obligations", "termination_clauses",
                        "dispute_resolution", "governing_law", "signatures", "dates", "contact_information",
                        "warranties", "liability_limitations", "force_majeure"]
        result = _result(confidence=0.0, detected_elements=[], missing_elements=many_missing)

        assert confidence_factors(result)["contract_structure"] == 0.0
        assert 0.0 <= confidence_score(result) <= 1.0


class TestValidateAndDetect:
    """LLM-backed steps."""

    @pytest.mark.asyncio
    async def test_validate_returns_verdict(self, validation_engine):
        result = await validation_engine.validate("THIS AGREEMENT is made between ...")

        assert result.is_valid_contract is True
        assert "payment_terms" in result.detected_elements

    @pytest.mark.asyncio
    async def test_parse_failure_is_retried_once_with_strict_prompt(self, validation_engine, gateway):
        gateway.replies["validation"] = Sequenced("Sure! Here is the verdict you asked for.", VALID_CONTRACT)

        result = await validation_engine.validate("contract text")

        assert result.is_valid_contract is True
        assert gateway.count("validation") == 2
        strict = gateway.calls[-1][1].messages[0]
        assert strict["role"] == "system"
        assert "strict JSON" in strict["content"]

    @pytest.mark.asyncio
    async def test_second_parse_failure_is_a_pipeline_error(self, validation_engine, gateway):
        gateway.replies["validation"] = "still not json"

        with pytest.raises(PipelineError) as exc:
            await validation_engine.validate("contract text")

        assert exc.value.stage == "parse"
        assert gateway.count("validation") == 2

    @pytest.mark.asyncio
    async def test_detect_elements(self, validation_engine, gateway):
        gateway.replies["elements"] = {
            "parties": [{"name": "Acme", "role": "buyer"}],
            "obligations": [{"party": "Acme", "description": "Pay", "type": "payment"}],
            "terms": [{"type": "price", "description": "Total", "value": 50000}],
            "confidence": 0.8,
        }

        elements = await validation_engine.detect_elements("contract text")

        assert elements.parties[0].name == "Acme"
        assert elements.terms[0].value == "50000"
        assert elements.confidence == 0.8


class TestFeedback:
    """Feedback-driven confidence adjustment."""

    async def _stored(self, engine, confidence=0.8):
        return await engine.store("contract-1", "owner-1", _result(confidence=confidence))

    @pytest.mark.asyncio
    async def test_store_writes_version_one_and_created_audit(self, validation_engine):
        record = await self._stored(validation_engine)
        trail = await validation_engine.audit_trail(record.validation_id)

        assert record.version == 1
        assert record.confidence_score == pytest.approx(0.4 * 0.8 + 0.3 + 0.2 + 0.07)
        assert [a.action for a in trail] == ["created"]
        assert trail[0].actor_id == "owner-1"

    @pytest.mark.asyncio
    async def test_adjustment_then_noop(self, validation_engine):
        record = await self._stored(validation_engine)
        vid = record.validation_id
        await validation_engine.add_feedback(vid, "reviewer", "accuracy", 4)
        await validation_engine.add_feedback(vid, "reviewer", "accuracy", 5)

        updated = await validation_engine.update_confidence_from_feedback(vid)

        assert updated.version == 2
        assert updated.result.confidence == pytest.approx(0.95)
        last = (await validation_engine.audit_trail(vid))[-1]
        assert last.action == "confidence_updated"
        assert last.previous_version == 1
        assert last.current_version == 2
        assert last.changes["before"] == pytest.approx(0.8)
        assert last.changes["after"] == pytest.approx(0.95)
        assert last.changes["n"] == 2
        assert len(last.changes["feedback_ids"]) == 2

        again = await validation_engine.update_confidence_from_feedback(vid)
        trail = await validation_engine.audit_trail(vid)

        assert again.version == 2
        assert again.result.confidence == pytest.approx(0.95)
        assert [a.action for a in trail].count("confidence_updated") == 1

    @pytest.mark.asyncio
    async def test_new_feedback_does_not_compound(self, validation_engine):
        record = await self._stored(validation_engine)
        vid = record.validation_id
        await validation_engine.add_feedback(vid, "r1", "accuracy", 4)
        first = await validation_engine.update_confidence_from_feedback(vid)
        await validation_engine.add_feedback(vid, "r2", "accuracy", 5)
        second = await validation_engine.update_confidence_from_feedback(vid)

        assert first.result.confidence == pytest.approx(0.9)
        # base stays the v1 confidence: 0.8 + (4.5 - 3) * 0.1, not 0.9 + 0.15
        assert second.result.confidence == pytest.approx(0.95)
        assert second.version == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ratings", [[3], [2, 4]])
    async def test_neutral_feedback_writes_nothing(self, validation_engine, validation_repo, ratings):
        record = await self._stored(validation_engine)
        vid = record.validation_id
        for rating in ratings:
            await validation_engine.add_feedback(vid, "r", "accuracy", rating)

        unchanged = await validation_engine.update_confidence_from_feedback(vid)
        trail = await validation_engine.audit_trail(vid)

        assert unchanged.version == 1
        assert unchanged.result.confidence == pytest.approx(0.8)
        assert len(await validation_repo.versions(vid)) == 1
        assert "confidence_updated" not in [a.action for a in trail]

    @pytest.mark.asyncio
    async def test_rerun_after_lost_audit_writes_no_new_version(self, validation_engine, validation_repo, monkeypatch):
        record = await self._stored(validation_engine)
        vid = record.validation_id
        await validation_engine.add_feedback(vid, "r", "accuracy", 4)

        async def broken(entry):
            raise RuntimeError("audit store down")

        monkeypatch.setattr(validation_repo, "add_audit", broken)

        first = await validation_engine.update_confidence_from_feedback(vid)
        again = await validation_engine.update_confidence_from_feedback(vid)

        assert first.version == 2
        assert again.version == 2
        assert again.result.confidence == pytest.approx(0.9)
        assert len(await validation_repo.versions(vid)) == 2

    @pytest.mark.asyncio
    async def test_only_accuracy_feedback_counts(self, validation_engine):
        record = await self._stored(validation_engine)
        await validation_engine.add_feedback(record.validation_id, "r", "completeness", 1)

        unchanged = await validation_engine.update_confidence_from_feedback(record.validation_id)

        assert unchanged.version == 1
        assert unchanged.result.confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_low_ratings_lower_confidence_and_clamp(self, validation_engine):
        record = await self._stored(validation_engine, confidence=0.1)
        await validation_engine.add_feedback(record.validation_id, "r", "accuracy", 1)

        updated = await validation_engine.update_confidence_from_feedback(record.validation_id)

        assert updated.result.confidence == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("feedback_type,rating", [("accuracy", 0), ("accuracy", 6), ("praise", 3)])
    async def test_invalid_feedback_is_rejected(self, validation_engine, feedback_type, rating):
        record = await self._stored(validation_engine)

        with pytest.raises(InputError):
            await validation_engine.add_feedback(record.validation_id, "r", feedback_type, rating)

    @pytest.mark.asyncio
    async def test_unknown_validation_id(self, validation_engine):
        with pytest.raises(NotFoundError):
            await validation_engine.add_feedback("missing", "r", "accuracy", 3)

    @pytest.mark.asyncio
    async def test_audit_failure_is_swallowed(self, validation_engine, validation_repo, monkeypatch):
        async def broken(entry):
            raise RuntimeError("audit store down")

        monkeypatch.setattr(validation_repo, "add_audit", broken)

        record = await self._stored(validation_engine)

        assert record.version == 1
