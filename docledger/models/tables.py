"""
SQLAlchemy ORM models.
Column types are portable: generic UUID, JSON (JSONB on PostgreSQL) and
string-backed enums, so the same schema runs on PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    BigInteger,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from docledger.models.database import Base
from docledger.models.enums import (
    DocumentCategory,
    DocumentLinkType,
    DuplicateAction,
    DuplicateStatus,
    ExchangeRateSource,
    ExchangeRateType,
    PipelineStatus,
    RevisionStatus,
    RevisionType,
    ValidationStatus,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def str_enum(enum_cls):
    """Store enum values as plain strings; no native DB enum type."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# ────────────────────────────────────────────────────────────
# PROCESSING DOCUMENTS
# ────────────────────────────────────────────────────────────
class ProcessingDocument(Base):
    __tablename__ = "processing_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Underlying file
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    file_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Split lineage
    is_container: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parent_processing_doc_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("processing_documents.id"), nullable=True
    )
    page_from: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    page_to: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    split_plan: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Pipeline
    pipeline_status: Mapped[PipelineStatus] = mapped_column(
        str_enum(PipelineStatus), nullable=False, default=PipelineStatus.UPLOADED
    )
    last_error: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    can_retry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dead_letter_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Job allowed to write results; jobs with any other id are skipped
    active_job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Duplicates & version lineage
    duplicate_status: Mapped[DuplicateStatus] = mapped_column(
        str_enum(DuplicateStatus), nullable=False, default=DuplicateStatus.NONE
    )
    duplicate_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    duplicate_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    duplicate_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    root_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Revisions & concurrency
    current_revision_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_processing_docs_company", "tenant_id", "company_id"),
        Index("idx_processing_docs_status", "pipeline_status"),
        Index("idx_processing_docs_parent", "parent_processing_doc_id"),
        Index("idx_processing_docs_hash", "file_hash"),
        Index("idx_processing_docs_retry", "pipeline_status", "next_retry_at"),
    )


# ────────────────────────────────────────────────────────────
# PAGES
# ────────────────────────────────────────────────────────────
class DocumentPage(Base):
    __tablename__ = "document_pages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    processing_document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("processing_documents.id", ondelete="CASCADE"), nullable=False
    )
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    render_dpi: Mapped[int] = mapped_column(Integer, nullable=False, default=72)
    rotation_deg: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("processing_document_id", "page_number", name="uq_page_doc_number"),
    )


# ────────────────────────────────────────────────────────────
# REVISIONS
# ────────────────────────────────────────────────────────────
class DocumentRevision(Base):
    __tablename__ = "document_revisions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    processing_document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("processing_documents.id", ondelete="CASCADE"), nullable=False
    )
    based_on_revision_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("document_revisions.id"), nullable=True
    )
    extraction_job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)
    revision_type: Mapped[RevisionType] = mapped_column(str_enum(RevisionType), nullable=False)
    status: Mapped[RevisionStatus] = mapped_column(
        str_enum(RevisionStatus), nullable=False, default=RevisionStatus.DRAFT
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Header
    document_category: Mapped[DocumentCategory] = mapped_column(
        str_enum(DocumentCategory), nullable=False, default=DocumentCategory.INVOICE
    )
    vendor_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vendor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    document_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    tax_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    # Home currency
    home_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    home_exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 8), nullable=True)
    home_exchange_rate_source: Mapped[Optional[ExchangeRateSource]] = mapped_column(
        str_enum(ExchangeRateSource), nullable=True
    )
    exchange_rate_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    home_subtotal: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    home_tax_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    home_equivalent: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    is_home_exchange_rate_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_home_subtotal_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_home_tax_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_home_equivalent_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Validation & search
    validation_status: Mapped[ValidationStatus] = mapped_column(
        str_enum(ValidationStatus), nullable=False, default=ValidationStatus.PENDING
    )
    validation_issues: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    document_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    search_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    header_evidence_json: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    override_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("processing_document_id", "revision_number", name="uq_revision_doc_number"),
        # At most one APPROVED revision per document
        Index(
            "uq_revision_one_approved",
            "processing_document_id",
            unique=True,
            postgresql_where=text("status = 'APPROVED'"),
            sqlite_where=text("status = 'APPROVED'"),
        ),
        Index("idx_revisions_document_key", "document_key"),
    )


class DocumentRevisionLineItem(Base):
    __tablename__ = "document_revision_line_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    revision_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("document_revisions.id", ondelete="CASCADE"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    tax_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    tax_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    account_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    evidence_json: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    home_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    home_tax_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    is_home_amount_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_home_tax_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("revision_id", "line_no", name="uq_line_item_revision_line"),
    )


# ────────────────────────────────────────────────────────────
# IDEMPOTENCY
# ────────────────────────────────────────────────────────────
class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    response: Mapped[dict] = mapped_column(JSONType, nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("key", "endpoint", "method", name="uq_idempotency_scope"),
        Index("idx_idempotency_expires", "expires_at"),
    )


# ────────────────────────────────────────────────────────────
# LINKS, EVENTS, DUPLICATE DECISIONS
# ────────────────────────────────────────────────────────────
class DocumentLink(Base):
    __tablename__ = "document_links"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("processing_documents.id", ondelete="CASCADE"), nullable=False
    )
    target_document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("processing_documents.id", ondelete="CASCADE"), nullable=False
    )
    link_type: Mapped[DocumentLinkType] = mapped_column(str_enum(DocumentLinkType), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    linked_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "source_document_id", "target_document_id", "link_type", name="uq_document_link"
        ),
        Index("idx_document_links_target", "target_document_id"),
    )


class DocumentStateEvent(Base):
    __tablename__ = "document_state_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    processing_document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("processing_documents.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    from_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_state_events_doc", "processing_document_id", "created_at"),
    )


class DuplicateDecision(Base):
    __tablename__ = "duplicate_decisions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    processing_document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("processing_documents.id", ondelete="CASCADE"), nullable=False
    )
    suspected_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    decision: Mapped[DuplicateAction] = mapped_column(str_enum(DuplicateAction), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decided_by: Mapped[str] = mapped_column(String(64), nullable=False)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_duplicate_decisions_doc", "processing_document_id"),
    )


# ────────────────────────────────────────────────────────────
# CONTACTS & ALIASES
# ────────────────────────────────────────────────────────────
class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_corporate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_contacts_tenant", "tenant_id"),
    )


class CounterpartyAlias(Base):
    __tablename__ = "counterparty_aliases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_name: Mapped[str] = mapped_column(Text, nullable=False)
    contact_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("contacts.id"), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_aliases_scope", "tenant_id", "company_id"),
    )


# ────────────────────────────────────────────────────────────
# EXCHANGE RATES
# ────────────────────────────────────────────────────────────
class ExchangeRate(Base):
    __tablename__ = "exchange_rates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # NULL tenant = system rate
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    target_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    rate_type: Mapped[ExchangeRateType] = mapped_column(str_enum(ExchangeRateType), nullable=False)
    is_manual_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manual_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_exchange_rates_lookup", "source_currency", "target_currency", "rate_date"),
    )
