# docparser/models/contract_tables.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from docparser.db import Base
from docparser.models._common import utcnow


class ContractRow(Base):
    """
    One row per uploaded document. Analysis, summary and the latest
    validation verdict are embedded as JSON.
    """
    __tablename__ = "contracts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)  # UUID string
    owner_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False)
    blob_path: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    sha256: Mapped[str] = mapped_column(String(64), index=True, nullable=False, default="")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), index=True, nullable=False, default="uploaded")
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False, default=365)

    summary: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    analysis: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    validation: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    elements: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    validation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
