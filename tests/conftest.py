"""
Shared fixtures and test doubles.

============================================================
DOUBLES
============================================================
- FakeGateway: stands in for LlmGateway; answers per prompt task
- FakeOcr: stands in for the (cached) OCR engine
- InMemoryBlobStore: BlobStore without disk or S3
- FakePdfText / FakeRasterizer: PDF probes without pypdf or pdftoppm

Repositories run against in-memory sqlite (aiosqlite).
============================================================
"""

from __future__ import annotations

import json
import os
import tempfile
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest
import pytest_asyncio

from docparser.config import DatabaseSettings
from docparser.db import build_engine, build_session_maker, create_tables
from docparser.repositories.contracts_repo import ContractsRepository
from docparser.repositories.knowledge_repo import KnowledgeRepository
from docparser.repositories.validation_repo import ValidationRepository
from docparser.schemas.ocr import OcrResult
from docparser.services.analysis_orchestrator import AnalysisOrchestrator
from docparser.services.cache import MemoryCache
from docparser.services.knowledge_service import KnowledgeLookup
from docparser.services.llm_contract_analysis import ContractAnalyzer, StructuredLlm
from docparser.services.llm_gateway import LlmRequest, LlmResponse
from docparser.services.rasterizer import RasterizedPages
from docparser.services.validation_service import ValidationEngine
from docparser.shared.errors import NotFoundError, OcrFailure


# ============================================================
# LLM
# ============================================================

# prompt marker -> task name
TASK_MARKERS: List[Tuple[str, str]] = [
    ("attached page images", "multimodal"),
    ("Analyze the following contract", "analysis"),
    ("legally meaningful contract", "validation"),
    ("Extract the parties, obligations and key terms", "elements"),
    ("Sequence the following contract milestones", "sequencing"),
    ("Assess the following contract for potential risks", "risk"),
    ("legal compliance in the jurisdiction", "compliance"),
    ("Classify the industry", "industry"),
]


def envelope(content: Union[str, Dict[str, Any], List[Any]]) -> str:
    """A chat-completions response body around `content`."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return json.dumps({"choices": [{"message": {"role": "assistant", "content": content}}]})


def _prompt_text(request: LlmRequest) -> str:
    parts = []
    for message in request.messages:
        content = message["content"]
        if isinstance(content, str):
            parts.append(content)
        else:
            parts.extend(p.get("text", "") for p in content if p.get("type") == "text")
    return "\n".join(parts)


def task_of(request: LlmRequest) -> str:
    text = _prompt_text(request)
    for marker, task in TASK_MARKERS:
        if marker in text:
            return task
    raise AssertionError(f"unrecognised prompt: {text[:80]!r}")


class Sequenced:
    """Replies consumed in order; the last one repeats."""

    def __init__(self, *replies: Any):
        self._replies = list(replies)

    def next(self) -> Any:
        return self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]


class RawBody(str):
    """A reply sent as the whole response body, without an envelope."""


class FakeGateway:
    """
    Answers each prompt task with a canned reply: a JSON-able object, a raw
    content string, a RawBody, an exception to raise, a callable taking the
    request, or a Sequenced of those.
    """

    def __init__(self, replies: Optional[Dict[str, Any]] = None):
        self.replies: Dict[str, Any] = dict(replies or {})
        self.calls: List[Tuple[str, LlmRequest]] = []

    def tasks(self) -> List[str]:
        return [task for task, _ in self.calls]

    def count(self, task: str) -> int:
        return self.tasks().count(task)

    async def execute(self, provider_id: Optional[str], request: LlmRequest) -> LlmResponse:
        task = task_of(request)
        self.calls.append((task, request))
        if task not in self.replies:
            raise AssertionError(f"no fake reply configured for {task}")

        reply = self.replies[task]
        if isinstance(reply, Sequenced):
            reply = reply.next()
        if callable(reply):
            reply = reply(request)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, RawBody):
            return LlmResponse(status=200, body=str(reply), provider="fake", model=request.model)
        return LlmResponse(status=200, body=envelope(reply), provider="fake", model=request.model)


VALID_CONTRACT = {
    "is_valid_contract": True,
    "reason": "Supply agreement with parties, price and signatures",
    "confidence": 0.9,
    "contract_type": "supply_agreement",
    "detected_elements": [
        "parties_identification",
        "offer_and_acceptance",
        "consideration",
        "legal_capacity",
        "mutual_consent",
        "lawful_purpose",
        "payment_terms",
    ],
    "missing_elements": [],
}

INVALID_CONTRACT = {
    "is_valid_contract": False,
    "reason": "This is a restaurant menu",
    "confidence": 0.95,
    "contract_type": "",
    "detected_elements": [],
    "missing_elements": ["parties_identification", "consideration"],
}

ANALYSIS = {
    "contract_name": "Supply Agreement",
    "buyer": "Acme Corp",
    "buyer_address": "1 Main St, Springfield",
    "buyer_country": "USA",
    "seller": "Globex Ltd",
    "seller_address": "22 Harbour Rd, Leeds",
    "seller_country": "UK",
    "total_value": "50,000",
    "currency": "USD",
    "effective_date": "2024-01-01",
    "termination_date": "2024-12-31",
    "jurisdiction": "England and Wales",
    "goods_nature": "physical",
    "milestones": [
        {"description": "Advance", "amount": 15000, "percentage": 30, "trigger_condition": "signing"},
        {"description": "Delivery", "amount": 35000, "percentage": 70, "trigger_condition": "delivery"},
    ],
    "risk_factors": [
        {"type": "payment", "description": "Large advance", "severity": "medium", "party": "buyer"},
    ],
}

RISK = {
    "missing_clauses": ["force_majeure"],
    "risks": [
        {
            "type": "legal",
            "description": "No force majeure clause",
            "severity": "high",
            "party": "both",
            "recommendation": "Add a force majeure clause",
        }
    ],
    "compliance_score": 0.7,
    "suggestions": [],
}


def default_replies() -> Dict[str, Any]:
    return {
        "validation": VALID_CONTRACT,
        "analysis": ANALYSIS,
        "multimodal": ANALYSIS,
        "industry": {"industry": "manufacturing"},
        "risk": RISK,
    }


# ============================================================
# OCR / PDF / blobs
# ============================================================

class FakeOcr:
    """Returns `OCR <image bytes>`; images listed in `failing` raise OcrFailure."""

    def __init__(self, failing: Optional[set] = None):
        self.failing = failing or set()
        self.calls: List[bytes] = []
        self.mimes: List[str] = []

    async def extract(self, image: Any, mime: str = "image/jpeg") -> OcrResult:
        data = image if isinstance(image, bytes) else str(image).encode()
        self.calls.append(data)
        self.mimes.append(mime)
        if data in self.failing:
            raise OcrFailure(None)
        return OcrResult(text=f"OCR {data.decode(errors='replace')}", confidence=0.9)


class FakePdfText:
    def __init__(self, text: str = "", usable: bool = False):
        self.result = (text, usable)
        self.paths: List[str] = []

    async def try_extract(self, pdf_path: str) -> Tuple[str, bool]:
        self.paths.append(pdf_path)
        return self.result


class FakeRasterizer:
    """Writes `pages` fake JPEGs (content b"page-N") into a real temp dir."""

    def __init__(self, pages: int = 2, error: Optional[Exception] = None):
        self.pages = pages
        self.error = error
        self.workdirs: List[str] = []

    async def rasterize(self, pdf_path: str, max_pages: Optional[int] = None) -> RasterizedPages:
        if self.error is not None:
            raise self.error
        workdir = tempfile.mkdtemp(prefix="docparser-test-")
        self.workdirs.append(workdir)
        paths = []
        for n in range(1, self.pages + 1):
            path = os.path.join(workdir, f"page-{n}.jpg")
            with open(path, "wb") as f:
                f.write(f"page-{n}".encode())
            paths.append(path)
        return RasterizedPages(workdir, paths)


class InMemoryBlobStore:
    def __init__(self, fail_delete: bool = False):
        self.blobs: Dict[str, bytes] = {}
        self.fail_delete = fail_delete

    async def save(self, content: bytes, filename: str, content_type: Optional[str] = None) -> str:
        path = f"mem/{uuid.uuid4().hex}{os.path.splitext(filename)[1]}"
        self.blobs[path] = content
        return path

    async def read(self, path: str) -> bytes:
        if path not in self.blobs:
            raise NotFoundError(f"blob {path} not found")
        return self.blobs[path]

    async def delete(self, path: str) -> None:
        if self.fail_delete:
            raise OSError("disk on fire")
        self.blobs.pop(path, None)


# ============================================================
# Fixtures
# ============================================================

@pytest_asyncio.fixture
async def session_maker():
    engine = build_engine(DatabaseSettings(dialect="sqlite", dsn=":memory:"))
    await create_tables(engine)
    yield build_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def contracts_repo(session_maker) -> ContractsRepository:
    return ContractsRepository(session_maker)


@pytest.fixture
def validation_repo(session_maker) -> ValidationRepository:
    return ValidationRepository(session_maker)


@pytest.fixture
def knowledge_repo(session_maker) -> KnowledgeRepository:
    return KnowledgeRepository(session_maker)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway(default_replies())


@pytest.fixture
def llm(gateway) -> StructuredLlm:
    return StructuredLlm(gateway, model="test/text-model", vision_model="test/vision-model")


@pytest.fixture
def validation_engine(llm, validation_repo) -> ValidationEngine:
    return ValidationEngine(llm, validation_repo)


@pytest.fixture
def fake_ocr() -> FakeOcr:
    return FakeOcr()


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def pdf_text() -> FakePdfText:
    return FakePdfText()


@pytest.fixture
def rasterizer() -> FakeRasterizer:
    return FakeRasterizer()


@pytest.fixture
def orchestrator(
    contracts_repo, knowledge_repo, blobs, pdf_text, rasterizer, fake_ocr, llm, validation_engine
) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        contracts_repo,
        blobs,
        pdf_text,
        rasterizer,
        fake_ocr,
        ContractAnalyzer(llm),
        validation_engine,
        KnowledgeLookup(knowledge_repo, MemoryCache()),
    )
