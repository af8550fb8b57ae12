# docparser/schemas/contract.py
from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from docparser.schemas.validation import ElementsAbsent, ElementsSlot, ValidationResult

MAX_FILE_SIZE = 10 * 1024 * 1024

MIME_PDF = "application/pdf"
MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MIME_TXT = "text/plain"
MIME_JPEG = "image/jpeg"
MIME_PNG = "image/png"
MIME_TIFF = "image/tiff"

ALLOWED_MIME_TYPES = {MIME_PDF, MIME_DOCX, MIME_TXT, MIME_JPEG, MIME_PNG, MIME_TIFF}
IMAGE_MIME_TYPES = {MIME_JPEG, MIME_PNG, MIME_TIFF}

EXTENSION_MIME_TYPES: Dict[str, str] = {
    ".pdf": MIME_PDF,
    ".docx": MIME_DOCX,
    ".txt": MIME_TXT,
    ".jpeg": MIME_JPEG,
    ".jpg": MIME_JPEG,
    ".png": MIME_PNG,
    ".tiff": MIME_TIFF,
    ".tif": MIME_TIFF,
}

SEVERITIES = ("low", "medium", "high", "critical")
GOODS_NATURES = ("physical", "digital", "services")

_MONEY_JUNK = re.compile(r"[^0-9.\-]")


def to_decimal(value: Any) -> Optional[Decimal]:
    """LLMs send money as numbers, "50000", "50,000" or "$50,000.00"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = _MONEY_JUNK.sub("", str(value))
    if not s or s in ("-", ".", "-."):
        return None
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value).strip().rstrip("%").strip()
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        return None


class ContractStatus(str, Enum):
    uploaded = "uploaded"
    validated = "validated"
    analyzed = "analyzed"
    failed = "failed"


_STATUS_ORDER = {
    ContractStatus.uploaded: 0,
    ContractStatus.validated: 1,
    ContractStatus.analyzed: 2,
}


def can_transition(current: ContractStatus, target: ContractStatus) -> bool:
    """Forward-only through uploaded -> validated -> analyzed; failed from anywhere."""
    if target == ContractStatus.failed:
        return True
    if current == ContractStatus.failed:
        return False
    return _STATUS_ORDER[target] >= _STATUS_ORDER[current]


class ContractSummary(BaseModel):
    buyer_name: str = ""
    buyer_address: str = ""
    buyer_country: str = ""
    seller_name: str = ""
    seller_address: str = ""
    seller_country: str = ""
    goods_nature: str = ""
    total_value: Decimal = Decimal("0")
    currency: str = ""
    jurisdiction: str = ""


class AnalysisMilestone(BaseModel):
    description: str = ""
    amount: Optional[Decimal] = None
    percentage: Optional[float] = None
    trigger_condition: str = ""
    due_date: str = ""

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Optional[Decimal]:
        return to_decimal(v)

    @field_validator("percentage", mode="before")
    @classmethod
    def _percentage(cls, v: Any) -> Optional[float]:
        return _to_float(v)

    @field_validator("description", "trigger_condition", "due_date", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return "" if v is None else str(v)


class RiskFactor(BaseModel):
    type: str = "general"
    description: str = ""
    severity: str = "medium"
    party: str = "both"
    recommendation: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s if s in SEVERITIES else "medium"

    @field_validator("party", mode="before")
    @classmethod
    def _party(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s if s in ("buyer", "seller", "both") else "both"

    @field_validator("type", "description", "recommendation", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return "" if v is None else str(v)


class ContractAnalysis(BaseModel):
    """What the analysis prompt returns (multimodal and text mode share it)."""

    model_config = ConfigDict(extra="ignore")

    contract_name: str = ""
    buyer: str = ""
    buyer_address: str = ""
    buyer_country: str = ""
    seller: str = ""
    seller_address: str = ""
    seller_country: str = ""
    total_value: Decimal = Decimal("0")
    currency: str = ""
    effective_date: str = ""
    termination_date: str = ""
    jurisdiction: str = ""
    goods_nature: str = ""
    milestones: List[AnalysisMilestone] = Field(default_factory=list)
    risk_factors: List[RiskFactor] = Field(default_factory=list)

    @field_validator("total_value", mode="before")
    @classmethod
    def _total(cls, v: Any) -> Decimal:
        return to_decimal(v) or Decimal("0")

    @field_validator("goods_nature", mode="before")
    @classmethod
    def _nature(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s if s in GOODS_NATURES else ""

    @field_validator(
        "contract_name", "buyer", "buyer_address", "buyer_country", "seller",
        "seller_address", "seller_country", "currency", "effective_date",
        "termination_date", "jurisdiction",
        mode="before",
    )
    @classmethod
    def _text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("milestones", "risk_factors", mode="before")
    @classmethod
    def _list(cls, v: Any) -> List[Any]:
        return [item for item in (v or []) if isinstance(item, dict)]

    @model_validator(mode="after")
    def _has_content(self) -> "ContractAnalysis":
        # a reply with none of the core fields is a refusal, not an analysis
        if not (self.contract_name or self.buyer or self.seller or self.total_value > 0 or self.milestones):
            raise ValueError("analysis has no contract name, parties, value or milestones")
        return self

    def summary(self) -> ContractSummary:
        return ContractSummary(
            buyer_name=self.buyer,
            buyer_address=self.buyer_address,
            buyer_country=self.buyer_country,
            seller_name=self.seller,
            seller_address=self.seller_address,
            seller_country=self.seller_country,
            goods_nature=self.goods_nature,
            total_value=self.total_value,
            currency=self.currency,
            jurisdiction=self.jurisdiction,
        )


class ContractRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    original_filename: str
    mime_type: str
    blob_path: str = ""
    sha256: str = ""
    size_bytes: int = 0
    status: ContractStatus = ContractStatus.uploaded
    retention_days: int = 365
    summary: Optional[ContractSummary] = None
    analysis: Optional[ContractAnalysis] = None
    validation: Optional[ValidationResult] = None
    validation_id: Optional[str] = None
    confidence_score: Optional[float] = None
    error_message: Optional[str] = None
    elements: ElementsSlot = Field(default_factory=ElementsAbsent)
    extracted_text: Optional[str] = Field(default=None, exclude=True)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UploadInput(BaseModel):
    content: bytes
    filename: str
    mime_type: str = ""
    size: int = 0


# ---------- API payloads ----------

class UploadResponse(BaseModel):
    document_id: str


class UploadAnalyzeResponse(BaseModel):
    document_id: str
    analysis: Optional[ContractAnalysis] = None
    validation: Optional[ValidationResult] = None
    status: ContractStatus


class AnalyzeResponse(BaseModel):
    analysis: ContractAnalysis


class PartyInvolved(BaseModel):
    role: str
    name: str
    address: str = ""
    country: str = ""


class ContractAnalysisView(BaseModel):
    contract_id: str
    contract_name: str
    parties_involved: List[PartyInvolved] = Field(default_factory=list)
    effective_date: str = ""
    termination_date: str = ""
    summary: Optional[ContractSummary] = None
    milestones: List[AnalysisMilestone] = Field(default_factory=list)
    risk_factors: List[RiskFactor] = Field(default_factory=list)
