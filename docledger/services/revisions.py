"""
Revision manager.

A document's financial data lives in numbered revisions. Extraction and
edits only ever add DRAFT revisions; approval promotes one DRAFT to
APPROVED and supersedes the previous APPROVED revision in the same
transaction. APPROVED and SUPERSEDED revisions are never edited.
"""

import hashlib
import uuid
import re
from datetime import datetime, timezone
from typing import Iterable, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.config import settings
from docledger.errors import (
    DuplicateDecisionRequiredError,
    InvalidStateError,
    ResourceNotFoundError,
    ValidationError,
)
from docledger.models.enums import DuplicateStatus, RevisionStatus, RevisionType
from docledger.models.tables import DocumentRevision, DocumentRevisionLineItem, ProcessingDocument
from docledger.observability.metrics import revisions_approved_total, revisions_created_total
from docledger.schemas.contracts import ExtractionProposal
from docledger.schemas.revisions import (
    ApprovalInput,
    ApprovalResult,
    LineItemIn,
    LineItemOut,
    RevisionMutationResult,
    RevisionOut,
    RevisionPatch,
    UpdateDraftRequest,
    ValidationResult,
)
from docledger.services import duplicates
from docledger.services.audit import AuditEntry
from docledger.services.authz import READ, Actor
from docledger.services.context import ServiceContext
from docledger.services.currency import ExchangeRateService, compute_home_amounts
from docledger.services.events import RevisionApproved
from docledger.services.guard import as_uuid, guarded_mutation, load_document
from docledger.services.validation import blocking_error_codes, validate_revision_data

logger = structlog.get_logger(__name__)

HEADER_FIELDS = [
    "document_category",
    "vendor_name",
    "vendor_id",
    "customer_name",
    "customer_id",
    "document_number",
    "document_date",
    "due_date",
    "currency",
    "subtotal",
    "tax_amount",
    "total_amount",
    "home_currency",
    "home_exchange_rate",
    "home_exchange_rate_source",
    "exchange_rate_date",
    "home_subtotal",
    "home_tax_amount",
    "home_equivalent",
    "is_home_exchange_rate_override",
    "is_home_subtotal_override",
    "is_home_tax_override",
    "is_home_equivalent_override",
]

LINE_FIELDS = [
    "description",
    "quantity",
    "unit_price",
    "amount",
    "tax_amount",
    "tax_code",
    "account_code",
    "evidence_json",
    "home_amount",
    "home_tax_amount",
    "is_home_amount_override",
    "is_home_tax_override",
]

# Header fields a patch may not set to null
NON_NULL_FIELDS = {
    "document_category",
    "currency",
    "total_amount",
    "is_home_exchange_rate_override",
    "is_home_subtotal_override",
    "is_home_tax_override",
    "is_home_equivalent_override",
}

_WS = re.compile(r"\s+")


def _norm(value) -> str:
    return _WS.sub(" ", str(value or "")).strip().lower()


def compute_document_key(revision) -> str:
    """Stable identity of the business document, for duplicate matching."""
    parts = [
        _norm(revision.vendor_name),
        _norm(revision.document_number),
        revision.document_date.isoformat() if revision.document_date else "",
        f"{revision.total_amount:.2f}" if revision.total_amount is not None else "",
        (revision.currency or "").upper(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def build_search_text(revision, items: Iterable = ()) -> str:
    values = [
        revision.vendor_name,
        revision.customer_name,
        revision.document_number,
        revision.document_date.isoformat() if revision.document_date else None,
        revision.currency,
        str(revision.total_amount) if revision.total_amount is not None else None,
    ]
    values.extend(item.description for item in items)
    return " ".join(_norm(v) for v in values if v)


def apply_header(revision: DocumentRevision, updates: dict) -> None:
    for name, value in updates.items():
        if name not in HEADER_FIELDS:
            continue
        if value is None and name in NON_NULL_FIELDS:
            raise ValidationError(f"{name} cannot be cleared", details={"field": name})
        setattr(revision, name, value)


def _line_values(item: LineItemIn) -> dict:
    return item.model_dump(exclude={"id", "line_no"})


def to_revision_out(revision: DocumentRevision, items: Iterable[DocumentRevisionLineItem]) -> RevisionOut:
    out = RevisionOut.model_validate(revision)
    return out.model_copy(update={
        "items": [LineItemOut.model_validate(i) for i in sorted(items, key=lambda i: i.line_no)]
    })


def persist_validation(revision: DocumentRevision, items: list) -> ValidationResult:
    """Validate and store the result plus the derived key and search text."""
    result = validate_revision_data(revision, items)
    revision.validation_status = result.status
    revision.validation_issues = [i.model_dump(mode="json") for i in result.issues]
    revision.document_key = compute_document_key(revision)
    revision.search_text = build_search_text(revision, items)
    return result


async def next_revision_number(session: AsyncSession, document_id) -> int:
    current = await session.scalar(
        select(func.max(DocumentRevision.revision_number)).where(
            DocumentRevision.processing_document_id == document_id
        )
    )
    return (current or 0) + 1


async def load_revision(session: AsyncSession, document: ProcessingDocument, revision_id) -> DocumentRevision:
    result = await session.execute(
        select(DocumentRevision).where(
            DocumentRevision.id == as_uuid(revision_id, "revision id"),
            DocumentRevision.processing_document_id == document.id,
        )
    )
    revision = result.scalar_one_or_none()
    if revision is None:
        raise ResourceNotFoundError(f"Revision {revision_id} not found")
    return revision


async def load_items(session: AsyncSession, revision_id) -> list[DocumentRevisionLineItem]:
    result = await session.execute(
        select(DocumentRevisionLineItem)
        .where(DocumentRevisionLineItem.revision_id == revision_id)
        .order_by(DocumentRevisionLineItem.line_no)
    )
    return list(result.scalars().all())


async def create_revision_from_proposal(
    session: AsyncSession,
    document: ProcessingDocument,
    proposal: ExtractionProposal,
    *,
    job_id: Optional[str],
    actor_id: str,
    revision_type: RevisionType = RevisionType.EXTRACTION,
) -> DocumentRevision:
    """Turn an extraction proposal into a new DRAFT revision with provenance."""
    evidence = {name: e.model_dump(mode="json") for name, e in proposal.evidence.items()}
    revision = DocumentRevision(
        processing_document_id=document.id,
        based_on_revision_id=document.current_revision_id,
        extraction_job_id=job_id,
        revision_number=await next_revision_number(session, document.id),
        revision_type=revision_type,
        status=RevisionStatus.DRAFT,
        document_category=proposal.document_category,
        vendor_name=proposal.vendor_name,
        customer_name=proposal.customer_name,
        document_number=proposal.document_number,
        document_date=proposal.document_date,
        due_date=proposal.due_date,
        currency=proposal.currency.upper(),
        subtotal=proposal.subtotal,
        tax_amount=proposal.tax_amount,
        total_amount=proposal.total_amount,
        header_evidence_json={
            "fields": evidence,
            "capability": proposal.capability,
            "capability_version": proposal.capability_version,
        },
        created_by=actor_id,
    )
    session.add(revision)
    await session.flush()

    items = [
        DocumentRevisionLineItem(
            revision_id=revision.id,
            line_no=n,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            amount=item.amount,
            tax_amount=item.tax_amount,
            tax_code=item.tax_code,
            account_code=item.account_code,
            evidence_json=item.evidence.model_dump(mode="json") if item.evidence else None,
        )
        for n, item in enumerate(proposal.items, start=1)
    ]
    session.add_all(items)
    persist_validation(revision, items)
    await session.flush()

    revisions_created_total.labels(revision_type=revision_type.value).inc()
    logger.info(
        "revision_created_from_extraction",
        document_id=str(document.id),
        revision_id=str(revision.id),
        revision_number=revision.revision_number,
        job_id=job_id,
        validation_status=revision.validation_status.value,
    )
    return revision


def _revision_ttl() -> int:
    return settings.IDEMPOTENCY_TTL_REVISION_SECONDS


class RevisionManager:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self.rates = ExchangeRateService(ctx)

    # ── Reads ────────────────────────────────────────────────

    async def list_revisions(self, document_id, *, actor: Actor) -> list[RevisionOut]:
        """Newest first, with line items."""
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            result = await uow.session.execute(
                select(DocumentRevision)
                .where(DocumentRevision.processing_document_id == document.id)
                .order_by(DocumentRevision.revision_number.desc())
            )
            revisions = list(result.scalars().all())
            return [to_revision_out(r, await load_items(uow.session, r.id)) for r in revisions]

    async def get_revision(self, document_id, revision_id, *, actor: Actor, revalidate: bool = False) -> RevisionOut:
        """
        Fetch one revision. With revalidate, validation is re-run and, for
        a DRAFT, the fresh result is stored.
        """
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            revision = await load_revision(uow.session, document, revision_id)
            items = await load_items(uow.session, revision.id)

            if revalidate:
                if RevisionStatus(revision.status) == RevisionStatus.DRAFT:
                    persist_validation(revision, items)
                    await uow.session.flush()
                else:
                    result = validate_revision_data(revision, items)
                    out = to_revision_out(revision, items)
                    return out.model_copy(update={
                        "validation_status": result.status,
                        "validation_issues": result.issues,
                    })
            return to_revision_out(revision, items)

    async def validate_revision(self, document_id, revision_id, *, actor: Actor) -> ValidationResult:
        """Side-effect free; nothing is stored."""
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            revision = await load_revision(uow.session, document, revision_id)
            items = await load_items(uow.session, revision.id)
            return validate_revision_data(revision, items)

    # ── Mutations ────────────────────────────────────────────

    @guarded_mutation(
        "create_revision",
        response_model=RevisionMutationResult,
        endpoint="/processing-documents/{document_id}/revisions",
        ttl_seconds=_revision_ttl,
        status_code=201,
    )
    async def create_revision(
        self,
        uow,
        document,
        *,
        actor: Actor,
        based_on_revision_id,
        patch: RevisionPatch,
        reason: Optional[str] = None,
    ):
        """New DRAFT = copy of the base revision with the patch applied."""
        session = uow.session
        base = await load_revision(session, document, based_on_revision_id)
        base_items = await load_items(session, base.id)

        revision = DocumentRevision(
            processing_document_id=document.id,
            based_on_revision_id=base.id,
            revision_number=await next_revision_number(session, document.id),
            revision_type=RevisionType.USER_EDIT,
            status=RevisionStatus.DRAFT,
            reason=reason,
            header_evidence_json=base.header_evidence_json,
            created_by=actor.user_id,
            **{name: getattr(base, name) for name in HEADER_FIELDS},
        )
        apply_header(revision, patch.header.model_dump(exclude_unset=True))
        session.add(revision)
        await session.flush()

        lines = {item.line_no: {name: getattr(item, name) for name in LINE_FIELDS} for item in base_items}
        for line_no in patch.items_to_delete:
            lines.pop(line_no, None)
        for item in patch.items_to_upsert:
            lines[item.line_no] = {**lines.get(item.line_no, {}), **_line_values(item)}

        items = [
            DocumentRevisionLineItem(revision_id=revision.id, line_no=n, **values)
            for n, (_, values) in enumerate(sorted(lines.items()), start=1)
        ]
        session.add_all(items)
        persist_validation(revision, items)
        await session.flush()

        await self.ctx.audit.append(AuditEntry(
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            action="CREATE",
            entity_type="DocumentRevision",
            entity_id=str(revision.id),
            summary=f"Created revision {revision.revision_number} from {base.revision_number}",
            metadata={"reason": reason},
        ))
        revisions_created_total.labels(revision_type=RevisionType.USER_EDIT.value).inc()
        logger.info(
            "revision_created",
            document_id=str(document.id),
            revision_id=str(revision.id),
            based_on=str(base.id),
            revision_number=revision.revision_number,
        )
        return RevisionMutationResult(
            revision=to_revision_out(revision, items), lock_version=document.lock_version
        )

    @guarded_mutation(
        "update_draft",
        response_model=RevisionMutationResult,
        endpoint="/processing-documents/{document_id}/revisions/{revision_id}",
    )
    async def update_draft(self, uow, document, *, actor: Actor, revision_id, changes: UpdateDraftRequest):
        """Header patch, item deletes and item upserts on a DRAFT, as one unit."""
        session = uow.session
        revision = await load_revision(session, document, revision_id)
        if RevisionStatus(revision.status) != RevisionStatus.DRAFT:
            raise InvalidStateError(
                f"Only DRAFT revisions can be edited; revision is {RevisionStatus(revision.status).value}",
                details={"revision_id": str(revision.id), "status": RevisionStatus(revision.status).value},
            )

        apply_header(revision, changes.header_updates.model_dump(exclude_unset=True))

        items = await load_items(session, revision.id)
        by_id = {item.id: item for item in items}

        unknown = [str(i) for i in changes.items_to_delete if i not in by_id]
        if unknown:
            raise ValidationError("Line items not found on this revision", details={"item_ids": unknown})
        for item_id in changes.items_to_delete:
            await session.delete(by_id.pop(item_id))
        # Deleted line numbers must be free before renumbered rows are written
        await session.flush()

        # Resolve every upsert against the numbering as it was before this edit
        plan = []
        for incoming in changes.items_to_upsert:
            if incoming.id is not None:
                target = by_id.get(incoming.id)
                if target is None:
                    raise ValidationError(
                        "Line item not found on this revision", details={"item_id": str(incoming.id)}
                    )
            else:
                target = next((i for i in by_id.values() if i.line_no == incoming.line_no), None)
            plan.append((target, incoming))

        final_numbers = {item.id: item.line_no for item in by_id.values()}
        for target, incoming in plan:
            if target is not None:
                final_numbers[target.id] = incoming.line_no
        line_numbers = list(final_numbers.values()) + [incoming.line_no for target, incoming in plan if target is None]
        if len(line_numbers) != len(set(line_numbers)):
            raise ValidationError("Line numbers must be unique within a revision")

        # Moved rows wait on negative numbers so swaps never collide mid-flush
        moved = [item for item in by_id.values() if final_numbers[item.id] != item.line_no]
        for offset, item in enumerate(moved, start=1):
            item.line_no = -offset
        if moved:
            await session.flush()

        for target, incoming in plan:
            if target is None:
                target = DocumentRevisionLineItem(
                    id=uuid.uuid4(), revision_id=revision.id, line_no=incoming.line_no, **_line_values(incoming)
                )
                session.add(target)
                by_id[target.id] = target
                continue
            for name, value in _line_values(incoming).items():
                setattr(target, name, value)
        for item in moved:
            item.line_no = final_numbers[item.id]

        remaining = list(by_id.values())

        result = persist_validation(revision, remaining)
        await session.flush()

        await self.ctx.audit.append(AuditEntry(
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            action="UPDATE",
            entity_type="DocumentRevision",
            entity_id=str(revision.id),
            summary=f"Edited draft revision {revision.revision_number}",
            metadata={
                "deleted": len(changes.items_to_delete),
                "upserted": len(changes.items_to_upsert),
                "validation_status": result.status.value,
            },
        ))
        logger.info(
            "draft_updated",
            document_id=str(document.id),
            revision_id=str(revision.id),
            validation_status=result.status.value,
        )
        return RevisionMutationResult(
            revision=to_revision_out(revision, remaining), lock_version=document.lock_version
        )

    @guarded_mutation(
        "approve_revision",
        response_model=ApprovalResult,
        endpoint="/processing-documents/{document_id}/revisions/{revision_id}/approve",
        ttl_seconds=_revision_ttl,
    )
    async def approve_revision(self, uow, document, *, actor: Actor, revision_id, approval: ApprovalInput):
        session = uow.session
        revision = await load_revision(session, document, revision_id)
        if RevisionStatus(revision.status) != RevisionStatus.DRAFT:
            raise InvalidStateError(
                f"Only DRAFT revisions can be approved; revision is {RevisionStatus(revision.status).value}"
            )

        gate = duplicates.can_approve(document)
        if not gate.can_approve:
            raise DuplicateDecisionRequiredError(
                gate.reason,
                details={
                    "duplicate_status": DuplicateStatus(document.duplicate_status).value,
                    "duplicate_of_id": str(document.duplicate_of_id) if document.duplicate_of_id else None,
                },
            )

        items = await load_items(session, revision.id)
        result = persist_validation(revision, items)
        blocking = blocking_error_codes(revision.validation_issues)
        if blocking and not (approval.override_reason or "").strip():
            raise ValidationError(
                "Revision has validation errors; an override reason is required to approve",
                details={"error_codes": blocking},
            )

        self._apply_home_currency(revision, items, approval, await self._select_rate(session, document, revision, approval))

        now = datetime.now(timezone.utc)
        previous = await session.execute(
            select(DocumentRevision).where(
                DocumentRevision.processing_document_id == document.id,
                DocumentRevision.status == RevisionStatus.APPROVED,
                DocumentRevision.id != revision.id,
            )
        )
        superseded = previous.scalar_one_or_none()
        if superseded is not None:
            superseded.status = RevisionStatus.SUPERSEDED
            superseded.superseded_at = now
            # Must hit the database before the new APPROVED row does
            await session.flush()

        revision.status = RevisionStatus.APPROVED
        revision.approved_at = now
        revision.approved_by = actor.user_id
        revision.override_reason = approval.override_reason
        document.current_revision_id = revision.id
        await session.flush()

        await self.ctx.audit.append(AuditEntry(
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            action="APPROVE",
            entity_type="DocumentRevision",
            entity_id=str(revision.id),
            summary=f"Approved revision {revision.revision_number}",
            metadata={
                "superseded_revision_id": str(superseded.id) if superseded else None,
                "override_reason": approval.override_reason,
                "validation_status": result.status.value,
            },
        ))

        event = RevisionApproved(
            document_id=str(document.id),
            revision_id=str(revision.id),
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            vendor_name=revision.vendor_name,
            vendor_id=revision.vendor_id,
            customer_name=revision.customer_name,
            customer_id=revision.customer_id,
            vendor_learning=approval.alias_learning.vendor,
            customer_learning=approval.alias_learning.customer,
        )
        uow.on_commit(lambda: self.ctx.events.publish(event))

        revisions_approved_total.labels(validation_status=result.status.value).inc()
        logger.info(
            "revision_approved",
            document_id=str(document.id),
            revision_id=str(revision.id),
            superseded_revision_id=str(superseded.id) if superseded else None,
        )
        return ApprovalResult(
            revision=to_revision_out(revision, items),
            document_id=document.id,
            current_revision_id=revision.id,
            superseded_revision_id=superseded.id if superseded else None,
            lock_version=document.lock_version,
        )

    async def _select_rate(self, session, document, revision, approval: ApprovalInput):
        home_currency = (approval.home_currency or revision.home_currency or settings.DEFAULT_HOME_CURRENCY).upper()
        quote = await self.rates.select_rate(
            session,
            revision,
            home_currency,
            document.tenant_id,
            explicit_rate=approval.exchange_rate,
            explicit_source=approval.exchange_rate_source,
            rate_date=approval.exchange_rate_date,
        )
        return home_currency, quote

    @staticmethod
    def _apply_home_currency(revision, items, approval: ApprovalInput, selected) -> None:
        home_currency, quote = selected
        supplied_header = {
            name: getattr(approval, name)
            for name in ("home_subtotal", "home_tax_amount", "home_equivalent")
            if getattr(approval, name) is not None
        }
        supplied_lines = {
            o.line_no: {k: v for k, v in (("home_amount", o.home_amount), ("home_tax_amount", o.home_tax_amount)) if v is not None}
            for o in approval.line_overrides
        }
        amounts = compute_home_amounts(revision, items, home_currency, quote, supplied_header, supplied_lines)

        revision.home_currency = amounts.home_currency
        revision.home_exchange_rate = amounts.quote.rate
        revision.home_exchange_rate_source = amounts.quote.source
        revision.exchange_rate_date = amounts.quote.rate_date
        revision.is_home_exchange_rate_override = amounts.quote.is_override
        revision.home_subtotal = amounts.home_subtotal
        revision.home_tax_amount = amounts.home_tax_amount
        revision.home_equivalent = amounts.home_equivalent
        revision.is_home_subtotal_override = amounts.is_home_subtotal_override
        revision.is_home_tax_override = amounts.is_home_tax_override
        revision.is_home_equivalent_override = amounts.is_home_equivalent_override

        by_line = {line.line_no: line for line in amounts.lines}
        for item in items:
            line = by_line[item.line_no]
            item.home_amount = line.home_amount
            item.home_tax_amount = line.home_tax_amount
            item.is_home_amount_override = line.is_home_amount_override
            item.is_home_tax_override = line.is_home_tax_override
