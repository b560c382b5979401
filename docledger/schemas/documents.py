"""
Pydantic request/response schemas for processing documents, pages,
pipeline state, duplicates and links.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from docledger.models.enums import (
    DocumentLinkType,
    DuplicateAction,
    DuplicateStatus,
    PipelineStatus,
)


# ── Request Schemas ──────────────────────────────────────────

class PageRange(BaseModel):
    """Inclusive, 1-indexed page range."""
    page_from: int
    page_to: int


class SplitRequest(BaseModel):
    ranges: list[PageRange]


class RotationRequest(BaseModel):
    rotation_deg: int


class ReorderPagesRequest(BaseModel):
    # old page numbers in their new order
    new_order: list[int]


class DeletePagesRequest(BaseModel):
    page_numbers: list[int]


class StatusReport(BaseModel):
    """Worker-reported pipeline status."""
    to_status: PipelineStatus
    reason: Optional[str] = None


class DuplicateDecisionRequest(BaseModel):
    decision: DuplicateAction
    reason: Optional[str] = None


class SuspectedDuplicateReport(BaseModel):
    duplicate_of_id: uuid.UUID
    score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    reason: Optional[str] = None


class DeleteRequest(BaseModel):
    reason: str = Field(min_length=1)


class LinkCreate(BaseModel):
    target_document_id: uuid.UUID
    link_type: DocumentLinkType
    notes: Optional[str] = None


class DocumentListParams(BaseModel):
    """Query parameters for listing documents."""
    tenant_id: str
    company_id: Optional[str] = None
    pipeline_status: Optional[PipelineStatus] = None
    duplicate_status: Optional[DuplicateStatus] = None
    include_containers: bool = True
    parent_id: Optional[uuid.UUID] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


# ── Response Schemas ─────────────────────────────────────────

class DocumentOut(BaseModel):
    id: uuid.UUID
    tenant_id: str
    company_id: str
    file_name: str
    mime_type: str
    file_size_bytes: int
    storage_key: str
    file_hash: Optional[str] = None
    pipeline_status: PipelineStatus
    duplicate_status: DuplicateStatus
    duplicate_of_id: Optional[uuid.UUID] = None
    duplicate_score: Optional[float] = None
    duplicate_reason: Optional[str] = None
    is_container: bool
    parent_processing_doc_id: Optional[uuid.UUID] = None
    page_from: Optional[int] = None
    page_to: Optional[int] = None
    page_count: Optional[int] = None
    current_revision_id: Optional[uuid.UUID] = None
    lock_version: int
    version: int
    root_document_id: Optional[uuid.UUID] = None
    error_count: int = 0
    last_error: Optional[dict[str, Any]] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DocumentListResponse(BaseModel):
    """Paginated document list response."""
    documents: list[DocumentOut]
    total: int
    limit: int
    offset: int


class PageOut(BaseModel):
    page_number: int
    width: int
    height: int
    rotation_deg: int
    fingerprint: Optional[str] = None
    render_dpi: int

    model_config = {"from_attributes": True}


class StateEventOut(BaseModel):
    event_type: str
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    reason: Optional[str] = None
    metadata_json: Optional[dict[str, Any]] = None
    actor_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SplitResult(BaseModel):
    document: DocumentOut
    children: list[DocumentOut]


class AppendResult(BaseModel):
    document_id: uuid.UUID
    pages_added: int
    new_total_pages: int
    file_size_bytes: int
    lock_version: int


class RotationResult(BaseModel):
    document_id: uuid.UUID
    page_number: int
    rotation_deg: int
    lock_version: int


class ReorderResult(BaseModel):
    document_id: uuid.UUID
    reordered: bool
    total_pages: int
    # new page number -> old page number
    page_mapping: dict[int, int] = Field(default_factory=dict)
    lock_version: int


class DeletePagesResult(BaseModel):
    document_id: uuid.UUID
    pages_deleted: list[int]
    new_total_pages: int
    file_size_bytes: int
    lock_version: int


class CanApproveResult(BaseModel):
    can_approve: bool
    reason: Optional[str] = None


class DuplicateDecisionResult(BaseModel):
    document: DocumentOut
    decision: DuplicateAction


class LinkOut(BaseModel):
    id: uuid.UUID
    source_document_id: uuid.UUID
    target_document_id: uuid.UUID
    link_type: DocumentLinkType
    notes: Optional[str] = None
    linked_by: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DocumentLinks(BaseModel):
    outgoing: list[LinkOut]
    incoming: list[LinkOut]
