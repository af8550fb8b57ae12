# docparser/routers/contracts.py
from __future__ import annotations

import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile, status

from docparser.dependencies import get_actor_id, get_orchestrator
from docparser.schemas.analysis import ComplianceReport, MilestoneSequence
from docparser.schemas.contract import (
    AnalyzeResponse,
    ContractAnalysisView,
    ContractRecord,
    PartyInvolved,
    UploadAnalyzeResponse,
    UploadInput,
    UploadResponse,
)
from docparser.schemas.validation import ContractElementsResult, ValidationRecord
from docparser.services.analysis_orchestrator import AnalysisOrchestrator
from docparser.shared.errors import InputError, NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contracts", tags=["Contracts"])

Actor = Annotated[str, Depends(get_actor_id)]
Orchestrator = Annotated[AnalysisOrchestrator, Depends(get_orchestrator)]


async def _read_upload(file: Optional[UploadFile]) -> UploadInput:
    if file is None or not file.filename:
        raise InputError("missing_file", "A file must be provided in the 'file' form field")
    content = await file.read()
    return UploadInput(
        content=content,
        filename=file.filename,
        mime_type=file.content_type or "",
        size=len(content),
    )


def _analysis_view(record: ContractRecord) -> ContractAnalysisView:
    analysis = record.analysis
    parties = [
        PartyInvolved(role=role, name=name, address=address, country=country)
        for role, name, address, country in (
            ("buyer", analysis.buyer, analysis.buyer_address, analysis.buyer_country),
            ("seller", analysis.seller, analysis.seller_address, analysis.seller_country),
        )
        if name
    ]
    return ContractAnalysisView(
        contract_id=record.id,
        contract_name=analysis.contract_name,
        parties_involved=parties,
        effective_date=analysis.effective_date,
        termination_date=analysis.termination_date,
        summary=record.summary or analysis.summary(),
        milestones=analysis.milestones,
        risk_factors=analysis.risk_factors,
    )


# ----- Upload -----
@router.post("/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_contract(
    actor_id: Actor,
    orchestrator: Orchestrator,
    file: Optional[UploadFile] = File(default=None),
):
    record = await orchestrator.upload(await _read_upload(file), actor_id)
    return UploadResponse(document_id=record.id)


@router.post("/upload-analyze", response_model=UploadAnalyzeResponse, status_code=status.HTTP_201_CREATED)
async def upload_and_analyze_contract(
    actor_id: Actor,
    orchestrator: Orchestrator,
    file: Optional[UploadFile] = File(default=None),
):
    """
    Stores the file and runs the whole pipeline. A document the validator
    rejects comes back with status `validated` and no analysis.
    """
    record = await orchestrator.analyze(await _read_upload(file), actor_id)
    return UploadAnalyzeResponse(
        document_id=record.id,
        analysis=record.analysis,
        validation=record.validation,
        status=record.status,
    )


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_contract(
    actor_id: Actor,
    orchestrator: Orchestrator,
    file: Optional[UploadFile] = File(default=None),
):
    upload = await _read_upload(file)
    logger.info("one-off analysis of %s for %s", upload.filename, actor_id)
    return AnalyzeResponse(analysis=await orchestrator.analyze_document(upload))


# ----- Read / delete -----
@router.get("/{contract_id}", response_model=ContractRecord)
async def get_contract(contract_id: str, actor_id: Actor, orchestrator: Orchestrator):
    return await orchestrator.get(contract_id, actor_id)


@router.get("/{contract_id}/analysis", response_model=ContractAnalysisView)
async def get_contract_analysis(contract_id: str, actor_id: Actor, orchestrator: Orchestrator):
    record = await orchestrator.get(contract_id, actor_id)
    if record.analysis is None:
        raise NotFoundError(f"Contract {contract_id} has no analysis")
    return _analysis_view(record)


@router.get("/{contract_id}/elements", response_model=ContractElementsResult)
async def get_contract_elements(contract_id: str, actor_id: Actor, orchestrator: Orchestrator):
    return await orchestrator.elements(contract_id, actor_id)


@router.delete("/{contract_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_contract(contract_id: str, actor_id: Actor, orchestrator: Orchestrator):
    await orchestrator.delete(contract_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----- Follow-up analysis -----
@router.get("/{contract_id}/validations", response_model=List[ValidationRecord])
async def list_contract_validations(contract_id: str, actor_id: Actor, orchestrator: Orchestrator):
    return await orchestrator.validations(contract_id, actor_id)


@router.post("/{contract_id}/compliance", response_model=ComplianceReport)
async def check_contract_compliance(
    contract_id: str,
    actor_id: Actor,
    orchestrator: Orchestrator,
    jurisdiction: Optional[str] = Query(None, description="Defaults to the contract's governing law"),
):
    return await orchestrator.check_compliance(contract_id, actor_id, jurisdiction)


@router.post("/{contract_id}/milestones/sequence", response_model=MilestoneSequence)
async def sequence_contract_milestones(contract_id: str, actor_id: Actor, orchestrator: Orchestrator):
    return MilestoneSequence(milestones=await orchestrator.sequence_milestones(contract_id, actor_id))
