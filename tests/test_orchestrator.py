"""
Analysis pipeline tests.

============================================================
COVERAGE
============================================================
- Text-native PDF, scanned PDF (multimodal), OCR fallback
- Input rejection before any external call
- Validation short-circuit, advisory risk step, failure marking
- Stored-contract operations and the retention sweep
============================================================
"""

import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from docparser.models.contract_tables import ContractRow
from docparser.schemas.contract import (
    MAX_FILE_SIZE,
    MIME_DOCX,
    MIME_PDF,
    MIME_PNG,
    MIME_TXT,
    ContractAnalysis,
    ContractRecord,
    ContractStatus,
    UploadInput,
)
from docparser.services.analysis_orchestrator import AnalysisOrchestrator, analysis_digest
from docparser.services.cache import MemoryCache
from docparser.services.knowledge_service import KnowledgeLookup
from docparser.services.llm_contract_analysis import ContractAnalyzer
from docparser.services.ocr_cache import CachedOcrEngine, OcrCache
from docparser.shared.errors import (
    ForbiddenError,
    HttpStatusError,
    InputError,
    NotFoundError,
    PipelineError,
    RasterError,
)
from docparser.shared.metrics import MetricsRegistry

from conftest import (
    ANALYSIS,
    INVALID_CONTRACT,
    FakeOcr,
    FakePdfText,
    FakeRasterizer,
    InMemoryBlobStore,
    RawBody,
)

CONTRACT_TEXT = (
    "SUPPLY AGREEMENT between Acme Corp (Buyer) and Globex Ltd (Seller). "
    "The Buyer shall pay USD 50,000: 30% on signing and 70% on delivery. "
    "This agreement is governed by the laws of England and Wales."
)

PDF_BYTES = b"%PDF-1.4\n%scanned contract\n"


def _pdf(content: bytes = PDF_BYTES) -> UploadInput:
    return UploadInput(content=content, filename="contract.pdf", mime_type=MIME_PDF)


def _txt(text: str = CONTRACT_TEXT) -> UploadInput:
    return UploadInput(content=text.encode(), filename="contract.txt", mime_type=MIME_TXT)


def _build(contracts_repo, knowledge_repo, llm, validation_engine, **overrides) -> AnalysisOrchestrator:
    parts = {
        "blobs": InMemoryBlobStore(),
        "pdf_text": FakePdfText(),
        "rasterizer": FakeRasterizer(),
        "ocr": FakeOcr(),
    }
    parts.update(overrides)
    return AnalysisOrchestrator(
        contracts_repo,
        parts["blobs"],
        parts["pdf_text"],
        parts["rasterizer"],
        parts["ocr"],
        ContractAnalyzer(llm),
        validation_engine,
        KnowledgeLookup(knowledge_repo, MemoryCache()),
    )


async def _only_row(session_maker) -> ContractRow:
    async with session_maker() as session:
        rows = (await session.execute(select(ContractRow))).scalars().all()
    assert len(rows) == 1
    return rows[0]


class TestTextNativePdf:
    """PDF with a usable text layer."""

    @pytest.mark.asyncio
    async def test_full_pipeline(self, orchestrator, pdf_text, rasterizer, fake_ocr, gateway, validation_engine):
        pdf_text.result = (CONTRACT_TEXT, True)

        record = await orchestrator.analyze(_pdf(), "owner-1")

        assert record.status == ContractStatus.analyzed
        assert record.confidence_score == pytest.approx(0.93)
        assert record.validation.is_valid_contract is True
        assert record.summary.buyer_name == "Acme Corp"
        assert record.summary.total_value == Decimal("50000")
        assert [r.severity for r in record.analysis.risk_factors] == ["medium", "high"]
        assert gateway.tasks() == ["validation", "analysis", "industry", "risk"]
        assert fake_ocr.calls == []
        assert rasterizer.workdirs == []

        trail = await validation_engine.audit_trail(record.validation_id)
        assert [a.action for a in trail] == ["created"]

    @pytest.mark.asyncio
    async def test_source_file_is_written_to_a_removed_temp_dir(self, orchestrator, pdf_text):
        pdf_text.result = (CONTRACT_TEXT, True)

        await orchestrator.analyze(_pdf(), "owner-1")

        assert len(pdf_text.paths) == 1
        assert not os.path.exists(pdf_text.paths[0])

    @pytest.mark.asyncio
    async def test_record_is_persisted(self, orchestrator, contracts_repo, pdf_text, blobs):
        pdf_text.result = (CONTRACT_TEXT, True)

        record = await orchestrator.analyze(_pdf(), "owner-1")
        stored = await contracts_repo.get(record.id)

        assert stored.status == ContractStatus.analyzed
        assert stored.extracted_text == CONTRACT_TEXT
        assert stored.sha256 and stored.size_bytes == len(PDF_BYTES)
        assert blobs.blobs[stored.blob_path] == PDF_BYTES


class TestScannedPdf:
    """No text layer: rasterize, one multimodal call, OCR as fallback."""

    @pytest.mark.asyncio
    async def test_multimodal_analysis_skips_ocr(self, orchestrator, rasterizer, fake_ocr, gateway):
        record = await orchestrator.analyze(_pdf(), "owner-1")

        assert record.status == ContractStatus.analyzed
        assert fake_ocr.calls == []
        assert gateway.tasks() == ["multimodal", "validation", "industry", "risk"]

        request = gateway.calls[0][1]
        assert request.model == "test/vision-model"
        images = [p for p in request.messages[-1]["content"] if p["type"] == "image_url"]
        assert len(images) == 2
        assert all(p["image_url"]["url"].startswith("data:image/jpeg;base64,") for p in images)

        assert rasterizer.workdirs
        assert not any(os.path.exists(d) for d in rasterizer.workdirs)

    @pytest.mark.asyncio
    async def test_validation_reads_the_analysis_digest(self, orchestrator, gateway):
        await orchestrator.analyze(_pdf(), "owner-1")

        validation_request = gateway.calls[1][1]
        prompt = validation_request.messages[-1]["content"]
        assert "Buyer: Acme Corp" in prompt
        assert "Governing law: England and Wales" in prompt

    @pytest.mark.asyncio
    async def test_multimodal_failure_falls_back_to_per_page_ocr(self, orchestrator, gateway, fake_ocr, contracts_repo):
        gateway.replies["multimodal"] = HttpStatusError(400, "image too large")

        record = await orchestrator.analyze(_pdf(), "owner-1")
        stored = await contracts_repo.get(record.id)

        assert sorted(fake_ocr.calls) == [b"page-1", b"page-2"]
        assert stored.extracted_text == "=== PAGE 1 ===\nOCR page-1\n\n=== PAGE 2 ===\nOCR page-2"
        assert gateway.tasks() == ["multimodal", "validation", "analysis", "industry", "risk"]
        assert record.status == ContractStatus.analyzed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [{}, {"note": "I cannot read these scans"}])
    async def test_empty_multimodal_answer_falls_back_to_ocr(self, orchestrator, gateway, fake_ocr, reply):
        gateway.replies["multimodal"] = reply

        record = await orchestrator.analyze(_pdf(), "owner-1")

        assert gateway.count("multimodal") == 2
        assert sorted(fake_ocr.calls) == [b"page-1", b"page-2"]
        assert record.status == ContractStatus.analyzed
        assert record.analysis.buyer == "Acme Corp"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ['{"choices": [null]}', '{"choices": ["oops"]}'])
    async def test_malformed_multimodal_envelope_falls_back_to_ocr(self, orchestrator, gateway, fake_ocr, body):
        gateway.replies["multimodal"] = RawBody(body)

        record = await orchestrator.analyze(_pdf(), "owner-1")

        assert sorted(fake_ocr.calls) == [b"page-1", b"page-2"]
        assert record.status == ContractStatus.analyzed

    @pytest.mark.asyncio
    async def test_failed_page_is_left_out(self, contracts_repo, knowledge_repo, llm, validation_engine, gateway):
        gateway.replies["multimodal"] = "not json at all"
        ocr = FakeOcr(failing={b"page-2"})
        orch = _build(contracts_repo, knowledge_repo, llm, validation_engine, ocr=ocr, rasterizer=FakeRasterizer(3))

        record = await orch.analyze(_pdf(), "owner-1")
        stored = await contracts_repo.get(record.id)

        assert stored.extracted_text == "=== PAGE 1 ===\nOCR page-1\n\n=== PAGE 3 ===\nOCR page-3"

    @pytest.mark.asyncio
    async def test_reprocessing_hits_the_ocr_cache(self, contracts_repo, knowledge_repo, llm, validation_engine, gateway):
        gateway.replies["multimodal"] = HttpStatusError(400, "nope")
        ocr = FakeOcr()
        registry = MetricsRegistry()
        cached = CachedOcrEngine(ocr, OcrCache(MemoryCache()), registry)
        orch = _build(contracts_repo, knowledge_repo, llm, validation_engine, ocr=cached)

        await orch.analyze(_pdf(), "owner-1")
        await orch.analyze(_pdf(), "owner-1")

        assert len(ocr.calls) == 2
        assert registry.counter("ocr_cache_hits_total").value() == 2
        assert registry.counter("ocr_cache_misses_total").value() == 2

    @pytest.mark.asyncio
    async def test_rasterizer_failure_uses_text_probe(self, contracts_repo, knowledge_repo, llm, validation_engine, gateway):
        orch = _build(
            contracts_repo, knowledge_repo, llm, validation_engine,
            rasterizer=FakeRasterizer(error=RasterError("pdftoppm not found")),
        )

        record = await orch.analyze(_pdf(), "owner-1")

        assert record.status == ContractStatus.analyzed
        assert "%PDF-1.4" in gateway.calls[0][1].messages[-1]["content"]


class TestInputRejection:
    """Rejected before any blob write or upstream call."""

    @pytest.mark.asyncio
    async def test_unsupported_type(self, orchestrator, gateway, blobs, fake_ocr):
        upload = UploadInput(content=b"GIF89a....", filename="scan.gif", mime_type="image/gif")

        with pytest.raises(InputError) as exc:
            await orchestrator.analyze(upload, "owner-1")

        assert exc.value.reason == "unsupported_type"
        assert exc.value.status_code == 400
        assert gateway.calls == []
        assert fake_ocr.calls == []
        assert blobs.blobs == {}

    @pytest.mark.asyncio
    async def test_too_large(self, orchestrator, gateway, blobs):
        upload = UploadInput(content=PDF_BYTES, filename="big.pdf", mime_type=MIME_PDF, size=MAX_FILE_SIZE + 1)

        with pytest.raises(InputError) as exc:
            await orchestrator.analyze(upload, "owner-1")

        assert exc.value.reason == "too_large"
        assert gateway.calls == []
        assert blobs.blobs == {}

    @pytest.mark.asyncio
    async def test_empty_file(self, orchestrator):
        with pytest.raises(InputError) as exc:
            await orchestrator.upload(UploadInput(content=b"", filename="a.pdf", mime_type=MIME_PDF), "owner-1")

        assert exc.value.reason == "empty_file"

    @pytest.mark.parametrize(
        "declared,filename,expected",
        [
            ("application/pdf", "x.bin", MIME_PDF),
            ("application/octet-stream", "contract.DOCX", MIME_DOCX),
            ("text/plain; charset=utf-8", "notes", MIME_TXT),
            ("", "scan.png", MIME_PNG),
            ("application/octet-stream", "archive.zip", "application/octet-stream"),
        ],
    )
    def test_resolve_mime(self, declared, filename, expected):
        assert AnalysisOrchestrator.resolve_mime(declared, filename) == expected


class TestPipelineOutcomes:
    """Short-circuit, advisory steps, failure marking."""

    @pytest.mark.asyncio
    async def test_invalid_contract_stops_after_validation(self, orchestrator, gateway):
        gateway.replies["validation"] = INVALID_CONTRACT

        record = await orchestrator.analyze(_txt("Soup of the day: tomato. Bread: sourdough."), "owner-1")

        assert record.status == ContractStatus.validated
        assert record.validation.is_valid_contract is False
        assert record.analysis is None
        assert gateway.tasks() == ["validation"]

    @pytest.mark.asyncio
    async def test_risk_failure_is_not_fatal(self, orchestrator, gateway):
        gateway.replies["risk"] = HttpStatusError(503, "overloaded")

        record = await orchestrator.analyze(_txt(), "owner-1")

        assert record.status == ContractStatus.analyzed
        assert [r.description for r in record.analysis.risk_factors] == ["Large advance"]

    @pytest.mark.asyncio
    async def test_unparseable_analysis_marks_contract_failed(self, orchestrator, gateway, session_maker):
        gateway.replies["analysis"] = "I cannot help with that."

        with pytest.raises(PipelineError) as exc:
            await orchestrator.analyze(_txt(), "owner-1")

        assert exc.value.stage == "parse"
        assert gateway.count("analysis") == 2
        row = await _only_row(session_maker)
        assert row.status == "failed"
        assert row.error_message

    @pytest.mark.asyncio
    async def test_milestones_are_normalized(self, orchestrator, gateway):
        gateway.replies["analysis"] = {
            "total_value": "$10,000.00",
            "milestones": [
                {"description": "Advance", "percentage": "25%"},
                {"description": "Final", "amount": "7,500"},
            ],
        }

        record = await orchestrator.analyze(_txt(), "owner-1")
        first, second = record.analysis.milestones

        assert first.amount == Decimal("2500.00")
        assert second.percentage == pytest.approx(75.0)

    @pytest.mark.asyncio
    async def test_plain_text_upload(self, orchestrator, pdf_text, contracts_repo):
        record = await orchestrator.analyze(_txt(), "owner-1")
        stored = await contracts_repo.get(record.id)

        assert stored.extracted_text == CONTRACT_TEXT
        assert pdf_text.paths == []

    @pytest.mark.asyncio
    async def test_image_upload_goes_through_ocr(self, orchestrator, fake_ocr, contracts_repo):
        upload = UploadInput(content=b"png-bytes", filename="scan.png", mime_type=MIME_PNG)

        record = await orchestrator.analyze(upload, "owner-1")
        stored = await contracts_repo.get(record.id)

        assert fake_ocr.calls == [b"png-bytes"]
        assert fake_ocr.mimes == [MIME_PNG]
        assert stored.extracted_text == "=== PAGE 1 ===\nOCR png-bytes"

    @pytest.mark.asyncio
    async def test_unreadable_docx_falls_back_to_text_probe(self, orchestrator, gateway):
        content = b"SUPPLY AGREEMENT between Acme and Globex. " + b"x" * 2000
        upload = UploadInput(content=content, filename="contract.docx", mime_type=MIME_DOCX)

        await orchestrator.analyze(upload, "owner-1")

        prompt = gateway.calls[0][1].messages[-1]["content"]
        assert "SUPPLY AGREEMENT between Acme and Globex." in prompt
        assert "x" * 600 not in prompt

    @pytest.mark.asyncio
    async def test_analyze_text_stores_nothing(self, orchestrator, gateway, session_maker):
        analysis = await orchestrator.analyze_text(CONTRACT_TEXT)

        assert analysis.buyer == "Acme Corp"
        assert gateway.tasks() == ["analysis", "industry", "risk"]
        async with session_maker() as session:
            assert (await session.execute(select(ContractRow))).first() is None

    @pytest.mark.asyncio
    async def test_analyze_document_skips_validation(self, orchestrator, gateway, blobs):
        analysis = await orchestrator.analyze_document(_txt())

        assert analysis.jurisdiction == "England and Wales"
        assert "validation" not in gateway.tasks()
        assert blobs.blobs == {}


class TestStoredContracts:
    """Operations over persisted contracts."""

    @pytest.mark.asyncio
    async def test_get_enforces_ownership(self, orchestrator):
        record = await orchestrator.upload(_txt(), "owner-1")

        assert (await orchestrator.get(record.id, "owner-1")).id == record.id
        with pytest.raises(ForbiddenError):
            await orchestrator.get(record.id, "someone-else")
        with pytest.raises(NotFoundError):
            await orchestrator.get("missing", "owner-1")

    @pytest.mark.asyncio
    async def test_delete_removes_record_and_blob(self, orchestrator, contracts_repo, blobs):
        record = await orchestrator.upload(_txt(), "owner-1")

        await orchestrator.delete(record.id, "owner-1")

        assert await contracts_repo.get(record.id) is None
        assert blobs.blobs == {}

    @pytest.mark.asyncio
    async def test_elements_are_detected_once(self, orchestrator, gateway):
        gateway.replies["elements"] = {"parties": [{"name": "Acme Corp", "role": "buyer"}], "confidence": 0.7}
        record = await orchestrator.analyze(_txt(), "owner-1")

        first = await orchestrator.elements(record.id, "owner-1")
        second = await orchestrator.elements(record.id, "owner-1")

        assert first == second
        assert first.parties[0].name == "Acme Corp"
        assert gateway.count("elements") == 1
        element_prompts = [r.messages[-1]["content"] for t, r in gateway.calls if t == "elements"]
        assert CONTRACT_TEXT in element_prompts[0]

    @pytest.mark.asyncio
    async def test_elements_of_uploaded_contract_read_the_blob(self, orchestrator, gateway):
        gateway.replies["elements"] = {"confidence": 0.5}
        record = await orchestrator.upload(_txt(), "owner-1")

        await orchestrator.elements(record.id, "owner-1")

        (task, request), = gateway.calls
        assert task == "elements"
        assert "SUPPLY AGREEMENT" in request.messages[-1]["content"]

    @pytest.mark.asyncio
    async def test_validation_history(self, orchestrator):
        record = await orchestrator.analyze(_txt(), "owner-1")

        history = await orchestrator.validations(record.id, "owner-1")

        assert [v.validation_id for v in history] == [record.validation_id]

    @pytest.mark.asyncio
    async def test_compliance_defaults_to_analysis_jurisdiction(self, orchestrator, gateway):
        gateway.replies["compliance"] = {"compliance_level": "Partial", "missing_clauses": ["data_protection"]}
        record = await orchestrator.analyze(_txt(), "owner-1")

        report = await orchestrator.check_compliance(record.id, "owner-1")

        assert report.jurisdiction == "England and Wales"
        assert report.compliance_level == "partial"
        assert "jurisdiction: England and Wales" in gateway.calls[-1][1].messages[-1]["content"]

    @pytest.mark.asyncio
    async def test_compliance_needs_a_jurisdiction(self, orchestrator, gateway):
        record = await orchestrator.upload(_txt(), "owner-1")

        with pytest.raises(InputError) as exc:
            await orchestrator.check_compliance(record.id, "owner-1")

        assert exc.value.reason == "missing_jurisdiction"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_sequence_milestones(self, orchestrator, gateway):
        gateway.replies["sequencing"] = [
            {"id": 2, "description": "Delivery", "sequence_order": 2, "dependencies": [1], "percentage": 70},
            {"id": 1, "description": "Advance", "sequence_order": 1, "percentage": 30},
        ]
        record = await orchestrator.analyze(_txt(), "owner-1")

        sequenced = await orchestrator.sequence_milestones(record.id, "owner-1")

        assert [m.id for m in sequenced] == ["1", "2"]
        assert sequenced[1].dependencies == ["1"]

    @pytest.mark.asyncio
    async def test_sequence_needs_an_analysis(self, orchestrator):
        record = await orchestrator.upload(_txt(), "owner-1")

        with pytest.raises(NotFoundError):
            await orchestrator.sequence_milestones(record.id, "owner-1")

    def test_digest_mentions_parties_and_terms(self):
        digest = analysis_digest(ContractAnalysis.model_validate(ANALYSIS))

        assert digest.splitlines()[0] == "Contract: Supply Agreement"
        assert "Seller: Globex Ltd, 22 Harbour Rd, Leeds, UK" in digest
        assert "Total value: 50000 USD" in digest
        assert "- Advance: 15000 (30%), due on signing" in digest


class TestRetention:
    """Retention sweep."""

    async def _seed(self, contracts_repo, blobs, created_at, retention_days=30):
        path = await blobs.save(b"old", "old.txt")
        record = ContractRecord(
            id=f"c-{created_at:%Y%m%d}-{retention_days}",
            owner_id="owner-1",
            original_filename="old.txt",
            mime_type=MIME_TXT,
            blob_path=path,
            retention_days=retention_days,
            created_at=created_at,
        )
        return await contracts_repo.create(record)

    @pytest.mark.asyncio
    async def test_removes_only_expired_records(self, orchestrator, contracts_repo, blobs):
        now = datetime(2024, 6, 1)
        expired = await self._seed(contracts_repo, blobs, now - timedelta(days=31))
        fresh = await self._seed(contracts_repo, blobs, now - timedelta(days=5))
        long_lived = await self._seed(contracts_repo, blobs, now - timedelta(days=31), retention_days=365)

        removed = await orchestrator.cleanup_expired(now)

        assert removed == 1
        assert await contracts_repo.get(expired.id) is None
        assert await contracts_repo.get(fresh.id) is not None
        assert await contracts_repo.get(long_lived.id) is not None
        assert expired.blob_path not in blobs.blobs

    @pytest.mark.asyncio
    async def test_blob_failure_does_not_stop_the_sweep(self, contracts_repo, knowledge_repo, llm, validation_engine):
        blobs = InMemoryBlobStore(fail_delete=True)
        orch = _build(contracts_repo, knowledge_repo, llm, validation_engine, blobs=blobs)
        now = datetime(2024, 6, 1)
        for days in (40, 50, 60):
            await self._seed(contracts_repo, blobs, now - timedelta(days=days))

        removed = await orch.cleanup_expired(now, batch_size=2)

        assert removed == 3
