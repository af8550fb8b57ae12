# docparser/schemas/ocr.py
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator


class OcrResult(BaseModel):
    text: str
    confidence: float = 0.0

    @field_validator("text", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        if isinstance(v, list):
            return "\n".join(str(x) for x in v)
        return "" if v is None else str(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        try:
            return max(0.0, min(float(v), 1.0))
        except (TypeError, ValueError):
            return 0.0
