"""
/api/v1/processing-documents endpoints.
Upload, listing, page manipulation, extraction, pipeline status,
duplicate decisions and links.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status

from docledger.dependencies import (
    get_actor,
    get_context,
    get_expected_version,
    get_idempotency_key,
    get_orchestrator,
    verify_api_key,
)
from docledger.models.enums import DuplicateStatus, PipelineStatus
from docledger.pipeline.orchestrator import ExtractionOrchestrator
from docledger.pipeline.pages import AppendFile
from docledger.pipeline.state_machine import PipelineService
from docledger.schemas.contracts import ExtractionOptions
from docledger.schemas.documents import (
    AppendResult,
    CanApproveResult,
    DeletePagesRequest,
    DeletePagesResult,
    DeleteRequest,
    DocumentLinks,
    DocumentListParams,
    DocumentListResponse,
    DocumentOut,
    DuplicateDecisionRequest,
    DuplicateDecisionResult,
    LinkCreate,
    LinkOut,
    PageOut,
    ReorderPagesRequest,
    ReorderResult,
    RotationRequest,
    RotationResult,
    SplitRequest,
    SplitResult,
    StateEventOut,
    StatusReport,
    SuspectedDuplicateReport,
)
from docledger.schemas.revisions import ExtractionJob
from docledger.services.authz import Actor
from docledger.services.context import ServiceContext
from docledger.services.documents import DocumentService
from docledger.services.duplicates import DuplicateService
from docledger.services.links import LinkService

router = APIRouter(
    prefix="/api/v1/processing-documents",
    tags=["processing-documents"],
    dependencies=[Depends(verify_api_key)],
)


def _content_type(upload: UploadFile) -> str:
    return upload.content_type or "application/octet-stream"


# ── Documents ────────────────────────────────────────────────

@router.post("", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
async def upload_document(
    file: UploadFile = File(...),
    tenant_id: str = Form(...),
    company_id: str = Form(...),
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    """Upload a PDF or image; the document starts in UPLOADED."""
    content = await file.read()
    return await DocumentService(ctx).register_document(
        tenant_id=tenant_id,
        company_id=company_id,
        file_name=file.filename or "document.pdf",
        mime_type=_content_type(file),
        content=content,
        actor=actor,
    )


@router.get("", response_model=DocumentListResponse)
async def list_documents(
    tenant_id: str = Query(...),
    company_id: Optional[str] = Query(None),
    pipeline_status: Optional[PipelineStatus] = Query(None),
    duplicate_status: Optional[DuplicateStatus] = Query(None),
    include_containers: bool = Query(True),
    parent_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    """List documents with optional filtering and pagination."""
    params = DocumentListParams(
        tenant_id=tenant_id,
        company_id=company_id,
        pipeline_status=pipeline_status,
        duplicate_status=duplicate_status,
        include_containers=include_containers,
        parent_id=parent_id,
        limit=limit,
        offset=offset,
    )
    return await DocumentService(ctx).list_documents(params, actor=actor)


@router.get("/{document_id}", response_model=DocumentOut)
async def get_document(
    document_id: str,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    return await DocumentService(ctx).get_document(document_id, actor=actor)


@router.post("/{document_id}/delete", response_model=DocumentOut)
async def delete_document(
    document_id: str,
    body: DeleteRequest,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    return await DocumentService(ctx).soft_delete_document(
        document_id, actor=actor, expected_version=expected_version, reason=body.reason,
    )


# ── Pages ────────────────────────────────────────────────────

@router.get("/{document_id}/pages", response_model=list[PageOut])
async def list_pages(
    document_id: str,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    return await DocumentService(ctx).list_pages(document_id, actor=actor)


@router.patch("/{document_id}/pages/{page_number}", response_model=RotationResult)
async def update_page_rotation(
    document_id: str,
    page_number: int,
    body: RotationRequest,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    return await DocumentService(ctx).update_page_rotation(
        document_id,
        actor=actor,
        expected_version=expected_version,
        page_number=page_number,
        rotation_deg=body.rotation_deg,
    )


@router.post("/{document_id}/pages/append", response_model=AppendResult)
async def append_pages(
    document_id: str,
    files: list[UploadFile] = File(...),
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    """Append PDFs and images (each image becomes one page) in upload order."""
    appended = [
        AppendFile(file_name=f.filename or "page", mime_type=_content_type(f), content=await f.read())
        for f in files
    ]
    return await DocumentService(ctx).append_pages(
        document_id, actor=actor, expected_version=expected_version, files=appended,
    )


@router.post("/{document_id}/pages/reorder", response_model=ReorderResult)
async def reorder_pages(
    document_id: str,
    body: ReorderPagesRequest,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    return await DocumentService(ctx).reorder_pages(
        document_id, actor=actor, expected_version=expected_version, new_order=body.new_order,
    )


@router.post("/{document_id}/pages/delete", response_model=DeletePagesResult)
async def delete_pages(
    document_id: str,
    body: DeletePagesRequest,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    return await DocumentService(ctx).delete_pages(
        document_id, actor=actor, expected_version=expected_version, page_numbers=body.page_numbers,
    )


@router.post("/{document_id}/split", response_model=SplitResult)
async def split_document(
    document_id: str,
    body: SplitRequest,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    return await DocumentService(ctx).split_document(
        document_id, actor=actor, expected_version=expected_version, ranges=body.ranges,
    )


# ── Extraction & pipeline ────────────────────────────────────

@router.post("/{document_id}/extract", response_model=ExtractionJob, status_code=status.HTTP_202_ACCEPTED)
async def trigger_extraction(
    document_id: str,
    options: Optional[ExtractionOptions] = None,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.trigger_extraction(
        document_id,
        actor=actor,
        expected_version=expected_version,
        idempotency_key=idempotency_key,
        options=options,
    )


@router.post("/{document_id}/status", response_model=DocumentOut)
async def report_status(
    document_id: str,
    body: StatusReport,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    """Worker-reported pipeline transition."""
    return await PipelineService(ctx).report_status(
        document_id,
        actor=actor,
        expected_version=expected_version,
        to_status=body.to_status,
        reason=body.reason,
    )


@router.get("/{document_id}/events", response_model=list[StateEventOut])
async def list_state_events(
    document_id: str,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    return await PipelineService(ctx).list_state_events(document_id, actor=actor)


# ── Duplicates ───────────────────────────────────────────────

@router.get("/{document_id}/can-approve", response_model=CanApproveResult)
async def can_approve(
    document_id: str,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    return await DuplicateService(ctx).can_approve(document_id, actor=actor)


@router.post("/{document_id}/duplicate", response_model=DocumentOut)
async def mark_suspected_duplicate(
    document_id: str,
    body: SuspectedDuplicateReport,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    return await DuplicateService(ctx).mark_suspected(
        document_id,
        actor=actor,
        expected_version=expected_version,
        duplicate_of_id=body.duplicate_of_id,
        score=body.score,
        reason=body.reason,
    )


@router.post("/{document_id}/duplicate-decision", response_model=DuplicateDecisionResult)
async def record_duplicate_decision(
    document_id: str,
    body: DuplicateDecisionRequest,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    return await DuplicateService(ctx).record_duplicate_decision(
        document_id,
        actor=actor,
        expected_version=expected_version,
        decision=body.decision,
        reason=body.reason,
    )


# ── Links ────────────────────────────────────────────────────

@router.get("/{document_id}/links", response_model=DocumentLinks)
async def list_links(
    document_id: str,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    return await LinkService(ctx).list_links(document_id, actor=actor)


@router.post("/{document_id}/links", response_model=LinkOut, status_code=status.HTTP_201_CREATED)
async def create_link(
    document_id: str,
    body: LinkCreate,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    return await LinkService(ctx).create_link(
        document_id, body.target_document_id, body.link_type, actor=actor, notes=body.notes,
    )


@router.delete("/links/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_link(
    link_id: str,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    await LinkService(ctx).delete_link(link_id, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
