# docparser/services/llm_contract_analysis.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel

from docparser.schemas.analysis import (
    ComplianceReport,
    IndustryClassification,
    MilestoneSequence,
    RiskAssessment,
    SequencedMilestone,
)
from docparser.schemas.contract import AnalysisMilestone, ContractAnalysis
from docparser.services import prompts
from docparser.services.llm_gateway import (
    LlmGateway,
    LlmRequest,
    image_part,
    system_message,
    text_part,
    user_message,
)
from docparser.services.response_parser import content_json, validate_as
from docparser.shared.errors import HttpStatusError, ParseError, PipelineError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MAX_PROMPT_CHARS = 60_000


# -------------------------- Utils --------------------------

def _truncate_for_prompt(txt: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    if txt and len(txt) > max_chars:
        return txt[:max_chars] + " …"
    return txt or ""


class StructuredLlm:
    """
    Prompt in, validated pydantic model out. A ParseError is retried once
    with a strict JSON-only system message; the second one becomes a
    PipelineError(stage="parse"). Upstream 4xx becomes PipelineError(stage="upstream").
    """

    def __init__(
        self,
        gateway: LlmGateway,
        model: str,
        vision_model: Optional[str] = None,
        provider: Optional[str] = None,
        temperature: float = 0.0,
    ):
        self._gateway = gateway
        self.model = model
        self.vision_model = vision_model or model
        self._provider = provider
        self._temperature = temperature

    async def _once(
        self, messages: List[Dict[str, Any]], model_cls: Type[M], model: str, list_key: Optional[str]
    ) -> M:
        request = LlmRequest(model=model, messages=messages, temperature=self._temperature)
        try:
            response = await self._gateway.execute(self._provider, request)
        except HttpStatusError as e:
            if e.transient:
                raise
            raise PipelineError("upstream", f"LLM provider rejected the request (HTTP {e.status})", e) from e

        data = content_json(response.body)
        if isinstance(data, list) and list_key:
            data = {list_key: data}
        if not isinstance(data, dict):
            raise ParseError(f"Expected a JSON object for {model_cls.__name__}")
        return validate_as(data, model_cls)

    async def ask(
        self,
        prompt: Union[str, List[Dict[str, Any]]],
        model_cls: Type[M],
        *,
        stage: str,
        system: Optional[str] = None,
        vision: bool = False,
        list_key: Optional[str] = None,
    ) -> M:
        model = self.vision_model if vision else self.model
        messages = [system_message(system)] if system else []
        messages.append(user_message(prompt))
        try:
            return await self._once(messages, model_cls, model, list_key)
        except ParseError as first:
            logger.warning("%s: unparseable LLM output (%s), retrying with strict JSON prompt", stage, first)
            strict = [system_message(prompts.JSON_ONLY_SYSTEM), *messages]
            try:
                return await self._once(strict, model_cls, model, list_key)
            except ParseError as second:
                raise PipelineError("parse", f"{stage}: {second.message}", second) from second


# -------------------------- LLM Steps --------------------------

class ContractAnalyzer:
    def __init__(self, llm: StructuredLlm):
        self._llm = llm

    async def analyze_text(self, text: str) -> ContractAnalysis:
        return await self._llm.ask(
            prompts.contract_analysis(_truncate_for_prompt(text)), ContractAnalysis, stage="analysis"
        )

    async def analyze_images(self, image_urls: Sequence[str]) -> ContractAnalysis:
        """One multimodal request over every page image."""
        parts = [text_part(prompts.multimodal_contract_analysis())]
        parts.extend(image_part(u) for u in image_urls)
        return await self._llm.ask(parts, ContractAnalysis, stage="multimodal_analysis", vision=True)

    async def assess_risk(self, text: str, industry_standards: str) -> RiskAssessment:
        return await self._llm.ask(
            prompts.risk_assessment(_truncate_for_prompt(text), industry_standards),
            RiskAssessment,
            stage="risk_assessment",
        )

    async def classify_industry(self, text: str) -> str:
        try:
            result = await self._llm.ask(
                prompts.industry_classification(text), IndustryClassification, stage="industry"
            )
        except Exception as e:
            logger.warning("industry classification failed, using 'general': %s", e)
            return "general"
        return result.industry

    async def check_compliance(self, text: str, jurisdiction: str) -> ComplianceReport:
        report = await self._llm.ask(
            prompts.compliance(_truncate_for_prompt(text), jurisdiction),
            ComplianceReport,
            stage="compliance",
            system=prompts.COMPLIANCE_SYSTEM,
        )
        if not report.jurisdiction:
            report.jurisdiction = jurisdiction
        return report

    async def sequence_milestones(self, milestones: List[AnalysisMilestone]) -> List[SequencedMilestone]:
        if not milestones:
            return []
        seq = await self._llm.ask(
            prompts.milestone_sequencing(milestones),
            MilestoneSequence,
            stage="milestone_sequencing",
            list_key="milestones",
        )
        return sorted(seq.milestones, key=lambda m: m.sequence_order)
