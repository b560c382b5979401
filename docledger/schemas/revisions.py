"""
Pydantic request/response schemas for document revisions, approval,
alias resolution and extraction jobs.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from docledger.models.enums import (
    AliasLearningMode,
    AliasStrategy,
    DocumentCategory,
    ExchangeRateSource,
    ExchangeRateType,
    IssueSeverity,
    PipelineStatus,
    RevisionStatus,
    RevisionType,
    ValidationStatus,
)


# ── Line Items ───────────────────────────────────────────────

class LineItemIn(BaseModel):
    """A line item to create or replace, addressed by line_no (or id)."""
    id: Optional[uuid.UUID] = None
    line_no: int = Field(ge=1)
    description: str
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    amount: Decimal
    tax_amount: Optional[Decimal] = None
    tax_code: Optional[str] = None
    account_code: Optional[str] = None
    home_amount: Optional[Decimal] = None
    home_tax_amount: Optional[Decimal] = None
    is_home_amount_override: bool = False
    is_home_tax_override: bool = False


class LineItemOut(BaseModel):
    id: uuid.UUID
    line_no: int
    description: str
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    amount: Decimal
    tax_amount: Optional[Decimal] = None
    tax_code: Optional[str] = None
    account_code: Optional[str] = None
    evidence_json: Optional[dict[str, Any]] = None
    home_amount: Optional[Decimal] = None
    home_tax_amount: Optional[Decimal] = None
    is_home_amount_override: bool = False
    is_home_tax_override: bool = False

    model_config = {"from_attributes": True}


# ── Revisions ────────────────────────────────────────────────

class HeaderPatch(BaseModel):
    """Header fields to change. Only fields that are set are applied."""
    document_category: Optional[DocumentCategory] = None
    vendor_name: Optional[str] = None
    vendor_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    document_number: Optional[str] = None
    document_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Optional[str] = None
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    home_currency: Optional[str] = None
    home_exchange_rate: Optional[Decimal] = None
    home_exchange_rate_source: Optional[ExchangeRateSource] = None
    exchange_rate_date: Optional[date] = None
    home_subtotal: Optional[Decimal] = None
    home_tax_amount: Optional[Decimal] = None
    home_equivalent: Optional[Decimal] = None
    is_home_exchange_rate_override: Optional[bool] = None
    is_home_subtotal_override: Optional[bool] = None
    is_home_tax_override: Optional[bool] = None
    is_home_equivalent_override: Optional[bool] = None


class RevisionPatch(BaseModel):
    """Edit applied on top of a base revision to form a new DRAFT."""
    header: HeaderPatch = Field(default_factory=HeaderPatch)
    items_to_upsert: list[LineItemIn] = Field(default_factory=list)
    # line numbers
    items_to_delete: list[int] = Field(default_factory=list)


class CreateRevisionRequest(BaseModel):
    based_on_revision_id: uuid.UUID
    patch: RevisionPatch = Field(default_factory=RevisionPatch)
    reason: Optional[str] = None


class UpdateDraftRequest(BaseModel):
    header_updates: HeaderPatch = Field(default_factory=HeaderPatch)
    items_to_upsert: list[LineItemIn] = Field(default_factory=list)
    # line item ids
    items_to_delete: list[uuid.UUID] = Field(default_factory=list)


class ValidationIssue(BaseModel):
    code: str
    severity: IssueSeverity
    message: str
    field: Optional[str] = None


class ValidationResult(BaseModel):
    status: ValidationStatus
    issues: list[ValidationIssue] = Field(default_factory=list)


class RevisionOut(BaseModel):
    id: uuid.UUID
    processing_document_id: uuid.UUID
    based_on_revision_id: Optional[uuid.UUID] = None
    extraction_job_id: Optional[str] = None
    revision_number: int
    revision_type: RevisionType
    status: RevisionStatus
    reason: Optional[str] = None
    document_category: DocumentCategory
    vendor_name: Optional[str] = None
    vendor_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    document_number: Optional[str] = None
    document_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: str
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total_amount: Decimal
    home_currency: Optional[str] = None
    home_exchange_rate: Optional[Decimal] = None
    home_exchange_rate_source: Optional[ExchangeRateSource] = None
    exchange_rate_date: Optional[date] = None
    home_subtotal: Optional[Decimal] = None
    home_tax_amount: Optional[Decimal] = None
    home_equivalent: Optional[Decimal] = None
    is_home_exchange_rate_override: bool = False
    is_home_subtotal_override: bool = False
    is_home_tax_override: bool = False
    is_home_equivalent_override: bool = False
    validation_status: ValidationStatus
    validation_issues: Optional[list[ValidationIssue]] = None
    document_key: Optional[str] = None
    header_evidence_json: Optional[dict[str, Any]] = None
    created_by: str
    created_at: datetime
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    override_reason: Optional[str] = None
    superseded_at: Optional[datetime] = None
    items: list[LineItemOut] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class RevisionMutationResult(BaseModel):
    """Revision plus the owning document's new lock version."""
    revision: RevisionOut
    lock_version: int


# ── Approval ─────────────────────────────────────────────────

class LineHomeOverride(BaseModel):
    line_no: int
    home_amount: Optional[Decimal] = None
    home_tax_amount: Optional[Decimal] = None


class AliasLearning(BaseModel):
    vendor: AliasLearningMode = AliasLearningMode.AUTO
    customer: AliasLearningMode = AliasLearningMode.AUTO


class ApprovalInput(BaseModel):
    home_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    exchange_rate_source: Optional[ExchangeRateSource] = None
    exchange_rate_date: Optional[date] = None
    home_subtotal: Optional[Decimal] = None
    home_tax_amount: Optional[Decimal] = None
    home_equivalent: Optional[Decimal] = None
    line_overrides: list[LineHomeOverride] = Field(default_factory=list)
    override_reason: Optional[str] = None
    alias_learning: AliasLearning = Field(default_factory=AliasLearning)


class ApprovalResult(BaseModel):
    revision: RevisionOut
    document_id: uuid.UUID
    current_revision_id: uuid.UUID
    superseded_revision_id: Optional[uuid.UUID] = None
    lock_version: int


# ── Alias Resolution ─────────────────────────────────────────

class AliasResolution(BaseModel):
    raw_name: Optional[str] = None
    matched: bool
    canonical_name: Optional[str] = None
    contact_id: Optional[uuid.UUID] = None
    strategy: AliasStrategy
    confidence: float
    matched_to: Optional[str] = None


class ResolveAliasRequest(BaseModel):
    raw_name: Optional[str] = None


# ── Extraction ───────────────────────────────────────────────

class ExtractionJob(BaseModel):
    job_id: str
    document_id: uuid.UUID
    pipeline_status: PipelineStatus
    lock_version: int
    estimated_completion_seconds: int
    estimated_completion_at: datetime


# ── Exchange Rates & Aliases ─────────────────────────────────

class ManualRateCreate(BaseModel):
    source_currency: str = Field(min_length=3, max_length=3)
    target_currency: str = Field(min_length=3, max_length=3)
    rate: Decimal = Field(gt=0)
    rate_date: date
    # None creates a system-wide rate
    tenant_id: Optional[str] = None
    reason: Optional[str] = None


class ExchangeRateOut(BaseModel):
    id: uuid.UUID
    tenant_id: Optional[str] = None
    source_currency: str
    target_currency: str
    rate: Decimal
    rate_date: date
    rate_type: ExchangeRateType
    is_manual_override: bool
    manual_reason: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AliasLearnRequest(BaseModel):
    company_id: str
    raw_name: str = Field(min_length=1)
    contact_id: uuid.UUID
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class AliasOut(BaseModel):
    id: uuid.UUID
    tenant_id: str
    company_id: str
    raw_name: str
    contact_id: uuid.UUID
    confidence: float
    created_at: datetime

    model_config = {"from_attributes": True}
