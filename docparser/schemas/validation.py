# docparser/schemas/validation.py
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Closed vocabulary of contract elements. Prompts render it from here.
CONTRACT_ELEMENTS: tuple = (
    "parties_identification",
    "offer_and_acceptance",
    "consideration",
    "legal_capacity",
    "mutual_consent",
    "lawful_purpose",
    "payment_terms",
    "delivery_terms",
    "performance_obligations",
    "termination_clauses",
    "dispute_resolution",
    "governing_law",
    "signatures",
    "dates",
    "contact_information",
    "warranties",
    "liability_limitations",
    "force_majeure",
    "confidentiality",
    "intellectual_property",
)
REQUIRED_ELEMENTS: tuple = CONTRACT_ELEMENTS[:6]
_ELEMENT_SET = frozenset(CONTRACT_ELEMENTS)

FEEDBACK_TYPES = ("accuracy", "completeness", "suggestion")
AUDIT_ACTIONS = ("created", "feedback_added", "confidence_updated", "reviewed")


def normalize_elements(values: Any) -> List[str]:
    """Lower-case, snake-case, drop unknown tags, keep first occurrence order."""
    out: List[str] = []
    for v in values or []:
        tag = str(v).strip().lower().replace(" ", "_").replace("-", "_")
        if tag in _ELEMENT_SET and tag not in out:
            out.append(tag)
    return out


def _clamp01(v: Any, default: float) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return default
    return max(0.0, min(f, 1.0))


class ValidationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_valid_contract: bool = Field(
        validation_alias=AliasChoices("is_valid_contract", "isValidContract")
    )
    reason: Optional[str] = None
    confidence: float = 0.0
    contract_type: str = Field(
        default="unknown", validation_alias=AliasChoices("contract_type", "contractType")
    )
    detected_elements: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("detected_elements", "detectedElements"),
    )
    missing_elements: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("missing_elements", "missingElements"),
    )

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        return _clamp01(v, 0.0)

    @field_validator("detected_elements", "missing_elements", mode="before")
    @classmethod
    def _elements(cls, v: Any) -> List[str]:
        return normalize_elements(v)

    @field_validator("contract_type", mode="before")
    @classmethod
    def _type(cls, v: Any) -> str:
        return str(v or "unknown")


# ---------- Element detection ----------

class ContractParty(BaseModel):
    name: str = ""
    role: str = ""
    address: str = ""
    contact: str = ""


class ContractObligation(BaseModel):
    party: str = ""
    description: str = ""
    type: str = ""
    deadline: str = ""


class ContractTerm(BaseModel):
    type: str = ""
    description: str = ""
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _value(cls, v: Any) -> str:
        return "" if v is None else str(v)


class ContractElementsResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    parties: List[ContractParty] = Field(default_factory=list)
    obligations: List[ContractObligation] = Field(default_factory=list)
    terms: List[ContractTerm] = Field(default_factory=list)
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        return _clamp01(v, 0.0)


class ElementsAbsent(BaseModel):
    kind: Literal["absent"] = "absent"


class ElementsPresent(BaseModel):
    kind: Literal["present"] = "present"
    value: ContractElementsResult


ElementsSlot = Annotated[Union[ElementsAbsent, ElementsPresent], Field(discriminator="kind")]

ABSENT = ElementsAbsent()


def present(value: Optional[ContractElementsResult]) -> Union[ElementsAbsent, ElementsPresent]:
    return ABSENT if value is None else ElementsPresent(value=value)


def elements_of(slot: Union[ElementsAbsent, ElementsPresent, None]) -> Optional[ContractElementsResult]:
    if isinstance(slot, ElementsPresent):
        return slot.value
    return None


# ---------- Records ----------

class ValidationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    validation_id: str
    contract_id: str
    owner_id: str
    validation_type: str = "contract"
    result: ValidationResult
    elements: ElementsSlot = Field(default_factory=ElementsAbsent)
    confidence_score: float = 0.0
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    validation_id: str
    actor_id: str
    action: str
    previous_version: int = 0
    current_version: int = 0
    changes: Dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    created_at: Optional[datetime] = None


class FeedbackEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    validation_id: str
    actor_id: str
    feedback_type: str
    rating: int
    comment: str = ""
    created_at: Optional[datetime] = None


class FeedbackCreate(BaseModel):
    feedback_type: str = "accuracy"
    rating: int
    comment: str = ""
