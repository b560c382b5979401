"""
Extraction capability contract.
Every capability returns an ExtractionProposal; the orchestrator turns it
into a DRAFT revision and never looks at capability-specific output.
"""

import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from docledger.models.enums import DocumentCategory


class FieldEvidence(BaseModel):
    """Where a proposed value was read from."""
    page_number: Optional[int] = None
    text: Optional[str] = None
    bbox: Optional[list[float]] = None
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)


class ProposedLineItem(BaseModel):
    description: str
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    amount: Decimal
    tax_amount: Optional[Decimal] = None
    tax_code: Optional[str] = None
    account_code: Optional[str] = None
    evidence: Optional[FieldEvidence] = None


class ExtractionProposal(BaseModel):
    """Proposed header, line items and per-field provenance."""
    document_category: DocumentCategory = DocumentCategory.INVOICE
    vendor_name: Optional[str] = None
    customer_name: Optional[str] = None
    document_number: Optional[str] = None
    document_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: str = "SGD"
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total_amount: Decimal = Decimal("0.00")
    items: list[ProposedLineItem] = Field(default_factory=list)
    # field name -> evidence
    evidence: dict[str, FieldEvidence] = Field(default_factory=dict)
    # When the capability sees several documents in one file
    split_suggestions: list[tuple[int, int]] = Field(default_factory=list)
    capability: str = ""
    capability_version: str = ""


class ExtractionOptions(BaseModel):
    """Caller options forwarded to the capability."""
    hints: dict[str, Any] = Field(default_factory=dict)
    detect_split: bool = True


class ExtractionContext(BaseModel):
    document_id: uuid.UUID
    tenant_id: str
    company_id: str
    file_name: str
    mime_type: str
    page_count: Optional[int] = None
    job_id: str
    options: ExtractionOptions = Field(default_factory=ExtractionOptions)
