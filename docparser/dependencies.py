# docparser/dependencies.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Header, Request
from sqlalchemy.ext.asyncio import AsyncEngine

from docparser.config import Settings
from docparser.db import build_engine, build_session_maker
from docparser.repositories.contracts_repo import ContractsRepository
from docparser.repositories.knowledge_repo import KnowledgeRepository
from docparser.repositories.validation_repo import ValidationRepository
from docparser.services.analysis_orchestrator import AnalysisOrchestrator
from docparser.services.blob_store import BlobStore, build_blob_store
from docparser.services.cache import CacheBackend, build_cache
from docparser.services.document_loaders import PdfTextExtractor
from docparser.services.knowledge_service import KnowledgeLookup, KnowledgeService
from docparser.services.llm_contract_analysis import ContractAnalyzer, StructuredLlm
from docparser.services.llm_gateway import LlmGateway, build_caller, build_registry
from docparser.services.ocr_cache import CachedOcrEngine, OcrCache
from docparser.services.ocr_service import OcrEngine, OcrValidator
from docparser.services.rasterizer import Rasterizer
from docparser.services.validation_service import ValidationEngine
from docparser.shared.errors import AuthError


@dataclass
class Container:
    """Everything the routers need, wired once in the lifespan."""

    settings: Settings
    engine: AsyncEngine
    http: httpx.AsyncClient
    cache: CacheBackend
    blobs: BlobStore
    gateway: LlmGateway
    orchestrator: AnalysisOrchestrator
    validation: ValidationEngine
    knowledge: KnowledgeService

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.cache.close()
        await self.engine.dispose()


def build_container(
    settings: Settings,
    *,
    http: Optional[httpx.AsyncClient] = None,
    cache: Optional[CacheBackend] = None,
    blobs: Optional[BlobStore] = None,
) -> Container:
    engine = build_engine(settings.database)
    session_maker = build_session_maker(engine)
    repo_timeout = settings.pipeline.repository_timeout

    http = http or httpx.AsyncClient()
    cache = cache or build_cache(settings.redis)
    blobs = blobs or build_blob_store(settings.storage)

    gateway = LlmGateway(build_registry(settings.llm, http), settings.llm.default_provider)
    llm = StructuredLlm(
        gateway,
        model=settings.llm.analysis_model,
        vision_model=settings.llm.vision_model,
        provider=settings.llm.default_provider,
        temperature=settings.llm.temperature,
    )

    ocr_conf = settings.llm.openrouter.model_copy(update={"timeout": settings.ocr.timeout})
    ocr = CachedOcrEngine(
        OcrEngine(
            build_caller("ocr", ocr_conf, http),
            api_key=settings.ocr.api_key,
            model=settings.ocr.model,
            fallback_models=settings.ocr.fallback_models,
            validator=OcrValidator(settings.ocr.min_confidence),
        ),
        OcrCache(cache, ttl=settings.ocr.cache_ttl_seconds),
    )

    knowledge_repo = KnowledgeRepository(session_maker, repo_timeout)
    validation = ValidationEngine(llm, ValidationRepository(session_maker, repo_timeout))
    orchestrator = AnalysisOrchestrator(
        ContractsRepository(session_maker, repo_timeout),
        blobs,
        PdfTextExtractor(),
        Rasterizer(settings.pipeline.rasterizer_binary),
        ocr,
        ContractAnalyzer(llm),
        validation,
        KnowledgeLookup(
            knowledge_repo,
            cache,
            ttl=settings.knowledge.cache_ttl_seconds,
            max_chars=settings.knowledge.max_chars,
        ),
        max_upload_bytes=settings.server.max_upload_bytes,
        max_pages=settings.pipeline.max_pages,
        text_probe_bytes=settings.pipeline.text_probe_bytes,
        retention_days=settings.pipeline.retention_days,
        ocr_concurrency=settings.ocr.concurrency,
        ocr_timeout=settings.ocr.timeout,
    )

    return Container(
        settings=settings,
        engine=engine,
        http=http,
        cache=cache,
        blobs=blobs,
        gateway=gateway,
        orchestrator=orchestrator,
        validation=validation,
        knowledge=KnowledgeService(knowledge_repo, cache),
    )


# -------------------------- FastAPI dependencies --------------------------

def get_container(request: Request) -> Container:
    return request.app.state.container


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    return get_container(request).orchestrator


def get_validation_engine(request: Request) -> ValidationEngine:
    return get_container(request).validation


def get_knowledge_service(request: Request) -> KnowledgeService:
    return get_container(request).knowledge


def get_actor_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    actor = (x_user_id or "").strip()
    if not actor:
        raise AuthError("X-User-ID header is required")
    return actor
