# docparser/schemas/analysis.py
from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from docparser.schemas.contract import RiskFactor

COMPLIANCE_LEVELS = ("full", "partial", "minimal", "non-compliant")


class RiskAssessment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    missing_clauses: List[str] = Field(default_factory=list)
    risks: List[RiskFactor] = Field(default_factory=list)
    compliance_score: float = 0.0
    suggestions: List[str] = Field(default_factory=list)

    @field_validator("compliance_score", mode="before")
    @classmethod
    def _score(cls, v: Any) -> float:
        try:
            return float(v)
        except (TypeError, ValueError):
            return 0.0

    @field_validator("missing_clauses", "suggestions", mode="before")
    @classmethod
    def _strings(cls, v: Any) -> List[str]:
        return [str(x) for x in (v or []) if x is not None]


class SequencedMilestone(BaseModel):
    id: str = ""
    description: str = ""
    sequence_order: int = 0
    category: str = ""
    dependencies: List[str] = Field(default_factory=list)
    percentage: float = 0.0

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _deps(cls, v: Any) -> List[str]:
        return [str(x) for x in (v or [])]


class MilestoneSequence(BaseModel):
    milestones: List[SequencedMilestone] = Field(default_factory=list)


class ComplianceReport(BaseModel):
    model_config = ConfigDict(extra="ignore")

    jurisdiction: str = ""
    required_clauses: List[str] = Field(default_factory=list)
    missing_clauses: List[str] = Field(default_factory=list)
    compliance_level: str = "partial"
    recommendations: List[str] = Field(default_factory=list)
    risk_level: str = "medium"

    @field_validator("compliance_level", mode="before")
    @classmethod
    def _level(cls, v: Any) -> str:
        s = str(v or "").strip().lower().replace("_", "-").replace(" ", "-")
        return s if s in COMPLIANCE_LEVELS else "partial"


class IndustryClassification(BaseModel):
    industry: str = "general"

    @field_validator("industry", mode="before")
    @classmethod
    def _industry(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s or "general"
