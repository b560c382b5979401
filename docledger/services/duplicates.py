"""
Duplicate detection gate and human duplicate decisions.

Matching is a pluggable capability (see matching.py). This module owns
the gate that approval consults and the decisions a reviewer records:

    SUSPECTED --CONFIRM_DUPLICATE--> CONFIRMED (document soft-deleted)
              --REJECT_DUPLICATE---> REJECTED
              --MARK_AS_NEW_VERSION-> NONE (chained as a new version)
"""

from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.errors import InvalidStateError, ValidationError
from docledger.models.enums import DuplicateAction, DuplicateStatus, StateEventType
from docledger.models.tables import DuplicateDecision, ProcessingDocument
from docledger.observability.metrics import duplicate_decisions_total
from docledger.pipeline.state_machine import record_event
from docledger.schemas.documents import CanApproveResult, DocumentOut, DuplicateDecisionResult
from docledger.services.audit import AuditEntry
from docledger.services.authz import READ, Actor
from docledger.services.context import ServiceContext
from docledger.services.documents import soft_delete
from docledger.services.guard import as_uuid, guarded_mutation, load_document
from docledger.services.matching import DuplicateMatcher

logger = structlog.get_logger(__name__)

REASON_DECISION_REQUIRED = "Duplicate decision required before approval"
REASON_CONFIRMED = "Confirmed duplicates cannot be approved"


def can_approve(document: ProcessingDocument) -> CanApproveResult:
    """Gate check on an already loaded document."""
    status = DuplicateStatus(document.duplicate_status)
    if status == DuplicateStatus.SUSPECTED:
        return CanApproveResult(can_approve=False, reason=REASON_DECISION_REQUIRED)
    if status == DuplicateStatus.CONFIRMED:
        return CanApproveResult(can_approve=False, reason=REASON_CONFIRMED)
    return CanApproveResult(can_approve=True)


class DuplicateService:
    def __init__(self, ctx: ServiceContext, matcher: Optional[DuplicateMatcher] = None):
        self.ctx = ctx
        self.matcher = matcher or ctx.duplicate_matcher

    async def can_approve(self, document_id, *, actor: Actor) -> CanApproveResult:
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            return can_approve(document)

    async def check_for_duplicates(self, document_id, *, actor: Actor) -> Optional[DocumentOut]:
        """Ask the matcher; flag the best candidate as SUSPECTED. None if no match."""
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            if DuplicateStatus(document.duplicate_status) != DuplicateStatus.NONE:
                return None
            candidates = await self.matcher.find_candidates(uow.session, document)

        candidates = [c for c in candidates if c.document_id != str(document.id)]
        if not candidates:
            return None
        best = max(candidates, key=lambda c: c.score)
        return await self.mark_suspected(
            document_id,
            actor=actor,
            duplicate_of_id=best.document_id,
            score=best.score,
            reason=best.reason,
        )

    @guarded_mutation(
        "mark_suspected",
        response_model=DocumentOut,
        endpoint="/processing-documents/{document_id}/duplicate",
    )
    async def mark_suspected(
        self,
        uow,
        document,
        *,
        actor: Actor,
        duplicate_of_id,
        score: Optional[float] = None,
        reason: Optional[str] = None,
    ):
        """Flag a document as a suspected duplicate of another in its tenant."""
        original_id = as_uuid(duplicate_of_id, "duplicate_of_id")
        if original_id == document.id:
            raise ValidationError("A document cannot duplicate itself")
        original = await load_document(uow.session, original_id)
        if original.tenant_id != document.tenant_id:
            raise ValidationError("Suspected original belongs to another tenant")
        if DuplicateStatus(document.duplicate_status) == DuplicateStatus.CONFIRMED:
            raise InvalidStateError("Document is already a confirmed duplicate")

        document.duplicate_status = DuplicateStatus.SUSPECTED
        document.duplicate_of_id = original.id
        document.duplicate_score = score
        document.duplicate_reason = reason
        record_event(
            uow.session, document, StateEventType.DUPLICATE_DECISION,
            to_state=DuplicateStatus.SUSPECTED.value,
            reason=reason,
            metadata={"duplicate_of_id": str(original.id), "score": score},
            actor_id=actor.user_id,
        )
        await uow.session.flush()
        logger.info(
            "duplicate_suspected",
            document_id=str(document.id),
            duplicate_of_id=str(original.id),
            score=score,
        )
        return DocumentOut.model_validate(document)

    @guarded_mutation(
        "record_duplicate_decision",
        response_model=DuplicateDecisionResult,
        endpoint="/processing-documents/{document_id}/duplicate-decision",
    )
    async def record_duplicate_decision(
        self,
        uow,
        document,
        *,
        actor: Actor,
        decision: DuplicateAction,
        reason: Optional[str] = None,
    ):
        if DuplicateStatus(document.duplicate_status) != DuplicateStatus.SUSPECTED:
            raise InvalidStateError(
                "Duplicate decisions can only be recorded for suspected duplicates",
                details={"duplicate_status": DuplicateStatus(document.duplicate_status).value},
            )

        decision = DuplicateAction(decision)
        suspected_of = document.duplicate_of_id
        from_status = DuplicateStatus(document.duplicate_status)

        if decision == DuplicateAction.CONFIRM_DUPLICATE:
            document.duplicate_status = DuplicateStatus.CONFIRMED
            await soft_delete(
                uow.session, document,
                reason or f"Confirmed duplicate of {suspected_of}",
                actor.user_id,
            )
        elif decision == DuplicateAction.REJECT_DUPLICATE:
            document.duplicate_status = DuplicateStatus.REJECTED
            document.duplicate_of_id = None
        else:
            await self._chain_version(uow.session, document, suspected_of)
            document.duplicate_status = DuplicateStatus.NONE
            document.duplicate_of_id = None

        uow.session.add(
            DuplicateDecision(
                processing_document_id=document.id,
                suspected_of_id=suspected_of,
                decision=decision,
                reason=reason,
                decided_by=actor.user_id,
            )
        )
        record_event(
            uow.session, document, StateEventType.DUPLICATE_DECISION,
            from_state=from_status.value,
            to_state=DuplicateStatus(document.duplicate_status).value,
            reason=reason,
            metadata={"decision": decision.value, "suspected_of_id": str(suspected_of) if suspected_of else None},
            actor_id=actor.user_id,
        )
        await uow.session.flush()

        await self.ctx.audit.append(AuditEntry(
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            action="DUPLICATE_DECISION",
            entity_type="ProcessingDocument",
            entity_id=str(document.id),
            summary=f"{decision.value}: {reason or ''}".strip(),
            metadata={"suspected_of_id": str(suspected_of) if suspected_of else None},
        ))
        duplicate_decisions_total.labels(decision=decision.value).inc()
        logger.info("duplicate_decision_recorded", document_id=str(document.id), decision=decision.value)

        return DuplicateDecisionResult(document=DocumentOut.model_validate(document), decision=decision)

    async def _chain_version(self, session: AsyncSession, document: ProcessingDocument, original_id) -> None:
        """Make document the next version in the original's lineage."""
        if original_id is None:
            raise InvalidStateError("Suspected duplicate has no original to chain to")
        original = await load_document(session, original_id, include_deleted=True)
        root_id = original.root_document_id or original.id
        latest = await session.scalar(
            select(func.max(ProcessingDocument.version)).where(
                ProcessingDocument.root_document_id == root_id,
                ProcessingDocument.id != document.id,
            )
        )
        document.root_document_id = root_id
        document.version = max(latest or 0, original.version) + 1
