# docparser/services/analysis_orchestrator.py
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, TypedDict

from langgraph.graph import END, StateGraph
from starlette.concurrency import run_in_threadpool

from docparser.repositories.contracts_repo import ContractsRepository
from docparser.schemas.analysis import ComplianceReport, SequencedMilestone
from docparser.schemas.contract import (
    ALLOWED_MIME_TYPES,
    EXTENSION_MIME_TYPES,
    IMAGE_MIME_TYPES,
    MAX_FILE_SIZE,
    MIME_DOCX,
    MIME_JPEG,
    MIME_PDF,
    MIME_TXT,
    ContractAnalysis,
    ContractRecord,
    ContractStatus,
    UploadInput,
    can_transition,
)
from docparser.schemas.validation import (
    ContractElementsResult,
    ValidationRecord,
    ValidationResult,
    elements_of,
    present,
)
from docparser.services.blob_store import BlobStore
from docparser.services.document_loaders import PdfTextExtractor, compute_sha256, docx_text, plain_text
from docparser.services.knowledge_service import KnowledgeLookup
from docparser.services.llm_contract_analysis import ContractAnalyzer
from docparser.services.milestones import normalize_milestones
from docparser.services.ocr_cache import OcrExtractor
from docparser.services.ocr_service import load_image_bytes, to_data_url
from docparser.services.rasterizer import Rasterizer
from docparser.services.validation_service import ValidationEngine
from docparser.shared.errors import (
    AppError,
    ForbiddenError,
    InputError,
    InvalidTransition,
    NotFoundError,
    PipelineError,
    RasterError,
)

logger = logging.getLogger(__name__)


# ---- State ----
class PipelineState(TypedDict, total=False):
    record: Optional[ContractRecord]   # None when nothing is persisted
    content: bytes
    mime_type: str
    text: str
    analysis: Optional[ContractAnalysis]
    validation: Optional[ValidationResult]
    run_validation: bool


# -------------------------- Utils --------------------------

def _write_file(path: str, content: bytes) -> None:
    with open(path, "wb") as f:
        f.write(content)


def _advance(record: ContractRecord, target: ContractStatus, **changes: Any) -> ContractRecord:
    if not can_transition(record.status, target):
        raise InvalidTransition(record.status.value, target.value)
    return record.model_copy(update={"status": target, **changes})


def analysis_digest(analysis: ContractAnalysis) -> str:
    """
    Plain-text rendering of an analysis. The multimodal path produces an
    analysis without page text; validation and risk prompts read this instead.
    """
    lines = [f"Contract: {analysis.contract_name}"]
    for role, name, address, country in (
        ("Buyer", analysis.buyer, analysis.buyer_address, analysis.buyer_country),
        ("Seller", analysis.seller, analysis.seller_address, analysis.seller_country),
    ):
        if name:
            lines.append(f"{role}: " + ", ".join(p for p in (name, address, country) if p))
    if analysis.total_value:
        lines.append(f"Total value: {analysis.total_value} {analysis.currency}".rstrip())
    for label, value in (
        ("Effective date", analysis.effective_date),
        ("Termination date", analysis.termination_date),
        ("Governing law", analysis.jurisdiction),
        ("Nature of goods", analysis.goods_nature),
    ):
        if value:
            lines.append(f"{label}: {value}")
    if analysis.milestones:
        lines.append("Payment terms:")
        for m in analysis.milestones:
            share = f" ({m.percentage:g}%)" if m.percentage is not None else ""
            amount = f" {m.amount}" if m.amount is not None else ""
            trigger = f", due on {m.trigger_condition}" if m.trigger_condition else ""
            lines.append(f"- {m.description}:{amount}{share}{trigger}")
    if analysis.risk_factors:
        lines.append("Noted risks:")
        lines.extend(f"- {r.description}" for r in analysis.risk_factors)
    return "\n".join(lines)


class AnalysisOrchestrator:
    """
    Upload -> extract -> validate -> analyze -> normalize -> assess risk -> persist.
    The steps after upload run as a langgraph StateGraph.
    """

    def __init__(
        self,
        contracts: ContractsRepository,
        blobs: BlobStore,
        pdf_text: PdfTextExtractor,
        rasterizer: Rasterizer,
        ocr: OcrExtractor,
        analyzer: ContractAnalyzer,
        validation: ValidationEngine,
        knowledge: KnowledgeLookup,
        *,
        max_upload_bytes: int = MAX_FILE_SIZE,
        max_pages: int = 10,
        text_probe_bytes: int = 512,
        retention_days: int = 365,
        ocr_concurrency: int = 4,
        ocr_timeout: float = 30.0,
    ):
        self._contracts = contracts
        self._blobs = blobs
        self._pdf_text = pdf_text
        self._rasterizer = rasterizer
        self._ocr = ocr
        self._analyzer = analyzer
        self._validation = validation
        self._knowledge = knowledge
        self._max_upload_bytes = max_upload_bytes
        self._max_pages = max_pages
        self._text_probe_bytes = text_probe_bytes
        self._retention_days = retention_days
        self._ocr_concurrency = max(1, ocr_concurrency)
        self._ocr_timeout = ocr_timeout
        self._graph = self._build_graph()

    def _build_graph(self):
        g = StateGraph(PipelineState)
        g.add_node("extract_text", self._extract_text)
        g.add_node("validate_contract", self._validate_contract)
        g.add_node("analyze_contract", self._analyze_contract)
        g.add_node("normalize_milestones", self._normalize_milestones)
        g.add_node("assess_risk", self._assess_risk)
        g.add_node("persist_result", self._persist_result)

        g.set_entry_point("extract_text")
        g.add_conditional_edges(
            "extract_text",
            self._after_extract,
            {"validate_contract": "validate_contract", "analyze_contract": "analyze_contract"},
        )
        g.add_conditional_edges(
            "validate_contract",
            self._after_validate,
            {"analyze_contract": "analyze_contract", END: END},
        )
        g.add_edge("analyze_contract", "normalize_milestones")
        g.add_edge("normalize_milestones", "assess_risk")
        g.add_edge("assess_risk", "persist_result")
        g.add_edge("persist_result", END)
        return g.compile()

    # -------------------------- Input --------------------------

    @staticmethod
    def resolve_mime(declared: str, filename: str) -> str:
        mime = (declared or "").split(";")[0].strip().lower()
        if mime in ALLOWED_MIME_TYPES:
            return mime
        ext = os.path.splitext(filename or "")[1].lower()
        return EXTENSION_MIME_TYPES.get(ext, mime)

    def check_input(self, upload: UploadInput) -> str:
        """Returns the resolved MIME type. Runs before any external call."""
        size = max(upload.size, len(upload.content))
        if size > self._max_upload_bytes:
            raise InputError("too_large", f"File exceeds the {self._max_upload_bytes} byte limit")
        if not upload.content:
            raise InputError("empty_file", "Uploaded file is empty")
        mime = self.resolve_mime(upload.mime_type, upload.filename)
        if mime not in ALLOWED_MIME_TYPES:
            raise InputError("unsupported_type", f"Unsupported file type: {mime or 'unknown'}")
        return mime

    # -------------------------- Nodes --------------------------

    def _probe(self, content: bytes) -> str:
        return plain_text(content[: self._text_probe_bytes])

    async def _ocr_pages(self, images: Sequence[bytes], mime: str = MIME_JPEG) -> str:
        sem = asyncio.Semaphore(self._ocr_concurrency)

        async def one(index: int, image: bytes) -> Tuple[int, str]:
            async with sem:
                try:
                    result = await asyncio.wait_for(self._ocr.extract(image, mime), self._ocr_timeout)
                except (AppError, asyncio.TimeoutError) as e:
                    logger.warning("ocr failed for page %d: %s", index + 1, e)
                    return index, ""
                return index, result.text.strip()

        pages = await asyncio.gather(*(one(i, img) for i, img in enumerate(images)))
        return "\n\n".join(f"=== PAGE {i + 1} ===\n{text}" for i, text in sorted(pages) if text)

    async def _extract_pdf(self, content: bytes) -> Tuple[str, Optional[ContractAnalysis]]:
        with tempfile.TemporaryDirectory(prefix="docparser-src-") as workdir:
            pdf_path = os.path.join(workdir, "document.pdf")
            await run_in_threadpool(_write_file, pdf_path, content)

            text, usable = await self._pdf_text.try_extract(pdf_path)
            if usable:
                return text, None
            logger.info("pdf has no usable text layer, rasterizing")

            try:
                pages = await self._rasterizer.rasterize(pdf_path, self._max_pages)
            except RasterError as e:
                logger.warning("rasterization failed: %s", e)
                return "", None
            async with pages:
                images = [await load_image_bytes(p) for p in pages]

        try:
            analysis = await self._analyzer.analyze_images([to_data_url(img) for img in images])
            return "", analysis
        except AppError as e:
            logger.warning("multimodal analysis failed, falling back to per-page OCR: %s", e)
        return await self._ocr_pages(images), None

    async def _extract_text(self, state: PipelineState) -> Dict[str, Any]:
        content = state.get("content")
        if state.get("text") or not content:
            return {}

        mime = state.get("mime_type") or ""
        analysis = None
        if mime == MIME_TXT:
            text = plain_text(content)
        elif mime == MIME_DOCX:
            try:
                text = await docx_text(content)
            except Exception as e:
                logger.warning("docx extraction failed: %s", e)
                text = ""
        elif mime in IMAGE_MIME_TYPES:
            text = await self._ocr_pages([content], mime)
        elif mime == MIME_PDF:
            text, analysis = await self._extract_pdf(content)
        else:
            raise InputError("unsupported_type", f"Unsupported file type: {mime or 'unknown'}")

        if analysis is not None:
            return {"text": "", "analysis": analysis}
        if not text:
            logger.warning("no text extracted from %s document, using text probe", mime)
            text = self._probe(content)
        return {"text": text}

    def _after_extract(self, state: PipelineState) -> str:
        return "validate_contract" if state.get("run_validation") else "analyze_contract"

    def _source_text(self, state: PipelineState) -> str:
        text = state.get("text") or ""
        analysis = state.get("analysis")
        if not text.strip() and analysis is not None:
            text = analysis_digest(analysis)
        if not text.strip():
            raise PipelineError("extract", "No text could be extracted from the document")
        return text

    async def _validate_contract(self, state: PipelineState) -> Dict[str, Any]:
        text = self._source_text(state)
        result = await self._validation.validate(text)
        update: Dict[str, Any] = {"validation": result}

        record = state.get("record")
        if record is not None:
            stored = await self._validation.store(record.id, record.owner_id, result)
            record = _advance(
                record,
                ContractStatus.validated,
                validation=result,
                validation_id=stored.validation_id,
                confidence_score=stored.confidence_score,
                extracted_text=state.get("text") or None,
            )
            update["record"] = await self._contracts.update(record)

        if not result.is_valid_contract:
            logger.info("document rejected by validation: %s", result.reason)
        return update

    def _after_validate(self, state: PipelineState) -> str:
        validation = state.get("validation")
        return "analyze_contract" if validation and validation.is_valid_contract else END

    async def _analyze_contract(self, state: PipelineState) -> Dict[str, Any]:
        if state.get("analysis") is not None:
            return {}
        return {"analysis": await self._analyzer.analyze_text(self._source_text(state))}

    async def _normalize_milestones(self, state: PipelineState) -> Dict[str, Any]:
        analysis = state["analysis"]
        milestones = normalize_milestones(analysis.milestones, analysis.total_value)
        return {"analysis": analysis.model_copy(update={"milestones": milestones})}

    async def _assess_risk(self, state: PipelineState) -> Dict[str, Any]:
        analysis = state["analysis"]
        try:
            text = self._source_text(state)
            industry = await self._analyzer.classify_industry(text)
            standards = await self._knowledge.standards_for(industry)
            assessment = await self._analyzer.assess_risk(text, standards)
        except Exception as e:
            logger.warning("risk assessment failed, continuing without it: %s", e)
            return {}
        if not assessment.risks:
            return {}
        risks = [*analysis.risk_factors, *assessment.risks]
        return {"analysis": analysis.model_copy(update={"risk_factors": risks})}

    async def _persist_result(self, state: PipelineState) -> Dict[str, Any]:
        record = state.get("record")
        if record is None:
            return {}
        analysis = state["analysis"]
        record = _advance(
            record,
            ContractStatus.analyzed,
            analysis=analysis,
            summary=analysis.summary(),
            error_message=None,
            extracted_text=state.get("text") or record.extracted_text,
        )
        return {"record": await self._contracts.update(record)}

    # -------------------------- Runs --------------------------

    async def _mark_failed(self, record: ContractRecord, error: Exception) -> None:
        try:
            current = await self._contracts.get(record.id) or record
            await self._contracts.update(
                _advance(current, ContractStatus.failed, error_message=str(error) or type(error).__name__)
            )
        except Exception as e:
            logger.error("could not mark contract %s as failed: %s", record.id, e)

    async def upload(self, upload: UploadInput, owner_id: str) -> ContractRecord:
        mime = self.check_input(upload)
        blob_path = await self._blobs.save(upload.content, upload.filename, mime)
        record = ContractRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            original_filename=upload.filename,
            mime_type=mime,
            blob_path=blob_path,
            sha256=compute_sha256(upload.content),
            size_bytes=len(upload.content),
            retention_days=self._retention_days,
        )
        try:
            created = await self._contracts.create(record)
        except Exception:
            await self._delete_blob(blob_path)
            raise
        logger.info("contract %s uploaded by %s (%s, %d bytes)", created.id, owner_id, mime, created.size_bytes)
        return created

    async def analyze(self, upload: UploadInput, owner_id: str) -> ContractRecord:
        record = await self.upload(upload, owner_id)
        state: PipelineState = {
            "record": record,
            "content": upload.content,
            "mime_type": record.mime_type,
            "run_validation": True,
        }
        try:
            final = await self._graph.ainvoke(state)
        except Exception as e:
            logger.error("analysis of contract %s failed: %s", record.id, e)
            await self._mark_failed(record, e)
            raise
        return final["record"]

    async def analyze_document(self, upload: UploadInput) -> ContractAnalysis:
        """Analysis only; nothing is stored."""
        mime = self.check_input(upload)
        final = await self._graph.ainvoke(
            {"record": None, "content": upload.content, "mime_type": mime, "run_validation": False}
        )
        return final["analysis"]

    async def analyze_text(self, text: str) -> ContractAnalysis:
        final = await self._graph.ainvoke({"record": None, "text": text, "run_validation": False})
        return final["analysis"]

    # -------------------------- Stored contracts --------------------------

    async def get(self, contract_id: str, owner_id: str) -> ContractRecord:
        record = await self._contracts.get(contract_id)
        if record is None:
            raise NotFoundError(f"Contract {contract_id} not found")
        if record.owner_id != owner_id:
            raise ForbiddenError()
        return record

    async def _delete_blob(self, path: str) -> None:
        if not path:
            return
        try:
            await self._blobs.delete(path)
        except Exception as e:
            logger.warning("blob delete failed for %s: %s", path, e)

    async def delete(self, contract_id: str, owner_id: str) -> None:
        record = await self.get(contract_id, owner_id)
        await self._contracts.delete(record.id)
        await self._delete_blob(record.blob_path)
        logger.info("contract %s deleted by %s", contract_id, owner_id)

    async def _stored_text(self, record: ContractRecord) -> str:
        if record.extracted_text:
            return record.extracted_text
        if record.analysis is not None:
            return analysis_digest(record.analysis)
        content = await self._blobs.read(record.blob_path)
        extracted = await self._extract_text({"content": content, "mime_type": record.mime_type})
        return self._source_text({"text": extracted.get("text", ""), "analysis": extracted.get("analysis")})

    async def elements(self, contract_id: str, owner_id: str) -> ContractElementsResult:
        """Detected once, then served from the record."""
        record = await self.get(contract_id, owner_id)
        stored = elements_of(record.elements)
        if stored is not None:
            return stored
        detected = await self._validation.detect_elements(await self._stored_text(record))
        await self._contracts.update(record.model_copy(update={"elements": present(detected)}))
        return detected

    async def validations(self, contract_id: str, owner_id: str) -> List[ValidationRecord]:
        await self.get(contract_id, owner_id)
        return await self._validation.history(contract_id)

    async def check_compliance(
        self, contract_id: str, owner_id: str, jurisdiction: Optional[str] = None
    ) -> ComplianceReport:
        record = await self.get(contract_id, owner_id)
        jurisdiction = (jurisdiction or "").strip() or (record.analysis.jurisdiction if record.analysis else "")
        if not jurisdiction:
            raise InputError("missing_jurisdiction", "jurisdiction is required when the contract names none")
        return await self._analyzer.check_compliance(await self._stored_text(record), jurisdiction)

    async def sequence_milestones(self, contract_id: str, owner_id: str) -> List[SequencedMilestone]:
        record = await self.get(contract_id, owner_id)
        if record.analysis is None:
            raise NotFoundError(f"Contract {contract_id} has not been analyzed")
        return await self._analyzer.sequence_milestones(record.analysis.milestones)

    async def cleanup_expired(self, now: Optional[datetime] = None, batch_size: int = 500) -> int:
        """Retention sweep: drop records past created_at + retention_days, with their blobs."""
        now = now or datetime.now(timezone.utc).replace(tzinfo=None)
        removed = 0
        while True:
            expired = await self._contracts.list_expired(now, batch_size)
            deleted = 0
            for record in expired:
                await self._delete_blob(record.blob_path)
                if await self._contracts.delete(record.id):
                    deleted += 1
            removed += deleted
            if len(expired) < batch_size or deleted == 0:
                break
        if removed:
            logger.info("retention sweep removed %d contract(s)", removed)
        return removed
