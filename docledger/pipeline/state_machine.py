"""
Pipeline state machine for processing documents.

UPLOADED -> QUEUED -> PROCESSING -> SPLIT_PENDING -> SPLIT_DONE
                                 -> EXTRACTION_DONE
any non-terminal -> FAILED_RETRYABLE -> QUEUED (retry)
                                     -> FAILED_PERMANENT | DEAD_LETTER

SPLIT_DONE and EXTRACTION_DONE are success terminals; FAILED_PERMANENT and
DEAD_LETTER are failure terminals. A manual split of a freshly uploaded
document goes straight from UPLOADED to SPLIT_DONE.

Helpers here change status and append a DocumentStateEvent; they do not
touch lock_version. Callers run them inside a guarded mutation or claim
the version themselves.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.config import settings
from docledger.errors import InvalidStateError
from docledger.models.enums import PipelineStatus, StateEventType
from docledger.models.tables import DocumentStateEvent, ProcessingDocument
from docledger.observability.metrics import pipeline_failures_total, pipeline_transitions_total
from docledger.schemas.documents import DocumentOut, StateEventOut
from docledger.services.context import ServiceContext
from docledger.services.guard import as_uuid, guarded_mutation, load_document
from docledger.services.authz import READ

logger = structlog.get_logger(__name__)

S = PipelineStatus

ALLOWED_TRANSITIONS: dict[PipelineStatus, frozenset[PipelineStatus]] = {
    S.UPLOADED: frozenset({S.QUEUED, S.SPLIT_DONE, S.FAILED_RETRYABLE}),
    S.QUEUED: frozenset({S.PROCESSING, S.FAILED_RETRYABLE}),
    S.PROCESSING: frozenset({S.SPLIT_PENDING, S.EXTRACTION_DONE, S.FAILED_RETRYABLE}),
    S.SPLIT_PENDING: frozenset({S.SPLIT_DONE, S.FAILED_RETRYABLE}),
    S.FAILED_RETRYABLE: frozenset({S.QUEUED, S.FAILED_PERMANENT, S.DEAD_LETTER}),
    S.SPLIT_DONE: frozenset(),
    S.EXTRACTION_DONE: frozenset(),
    S.FAILED_PERMANENT: frozenset(),
    S.DEAD_LETTER: frozenset(),
}

SUCCESS_TERMINALS = frozenset({S.SPLIT_DONE, S.EXTRACTION_DONE})
FAILURE_TERMINALS = frozenset({S.FAILED_PERMANENT, S.DEAD_LETTER})
TERMINAL_STATES = SUCCESS_TERMINALS | FAILURE_TERMINALS

# States a user may split from
SPLITTABLE_STATES = frozenset({S.UPLOADED, S.SPLIT_PENDING})


def is_transition_allowed(from_status: PipelineStatus, to_status: PipelineStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(PipelineStatus(from_status), frozenset())


def exhausted_status() -> PipelineStatus:
    """Terminal a document lands in once its retry budget is spent."""
    status = PipelineStatus(settings.PIPELINE_EXHAUSTED_STATUS)
    if status not in FAILURE_TERMINALS:
        raise ValueError(f"PIPELINE_EXHAUSTED_STATUS must be a failure terminal, got {status}")
    return status


def retry_delay(error_count: int) -> timedelta:
    """Exponential backoff: base * multiplier^(n-1), capped."""
    exponent = max(error_count - 1, 0)
    delay_ms = min(
        settings.PIPELINE_RETRY_BASE_MS * settings.PIPELINE_RETRY_MULTIPLIER ** exponent,
        settings.PIPELINE_RETRY_MAX_MS,
    )
    return timedelta(milliseconds=delay_ms)


def record_event(
    session: AsyncSession,
    document: ProcessingDocument,
    event_type: StateEventType,
    *,
    from_state: Optional[str] = None,
    to_state: Optional[str] = None,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    actor_id: Optional[str] = None,
) -> DocumentStateEvent:
    event = DocumentStateEvent(
        processing_document_id=document.id,
        tenant_id=document.tenant_id,
        company_id=document.company_id,
        event_type=event_type.value,
        from_state=from_state,
        to_state=to_state,
        reason=reason,
        metadata_json=metadata,
        actor_id=actor_id,
    )
    session.add(event)
    return event


def apply_transition(
    session: AsyncSession,
    document: ProcessingDocument,
    to_status: PipelineStatus,
    *,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """Move document to to_status or raise INVALID_STATE."""
    current = PipelineStatus(document.pipeline_status)
    to_status = PipelineStatus(to_status)

    if not is_transition_allowed(current, to_status):
        logger.info(
            "pipeline_transition_rejected",
            document_id=str(document.id),
            from_status=current.value,
            to_status=to_status.value,
        )
        raise InvalidStateError(
            f"Cannot move document from {current.value} to {to_status.value}",
            details={"from_status": current.value, "to_status": to_status.value},
        )

    document.pipeline_status = to_status
    record_event(
        session,
        document,
        StateEventType.TRANSITION,
        from_state=current.value,
        to_state=to_status.value,
        reason=reason,
        metadata=metadata,
        actor_id=actor_id,
    )
    pipeline_transitions_total.labels(from_status=current.value, to_status=to_status.value).inc()
    logger.info(
        "pipeline_transition",
        document_id=str(document.id),
        from_status=current.value,
        to_status=to_status.value,
        reason=reason,
    )


def record_failure(
    session: AsyncSession,
    document: ProcessingDocument,
    *,
    error_code: str,
    message: str,
    retryable: bool = True,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PipelineStatus:
    """
    Drive a failed document into FAILED_RETRYABLE and, when it cannot be
    retried or has spent its budget, on into a failure terminal.
    Returns the resulting status.
    """
    now = now or datetime.now(timezone.utc)
    current = PipelineStatus(document.pipeline_status)

    if current != S.FAILED_RETRYABLE:
        apply_transition(
            session, document, S.FAILED_RETRYABLE,
            actor_id=actor_id, reason=error_code,
        )

    document.error_count = (document.error_count or 0) + 1
    document.first_error_at = document.first_error_at or now
    document.last_error = {"code": error_code, "message": message, "at": now.isoformat()}
    record_event(
        session,
        document,
        StateEventType.FAILURE,
        to_state=S.FAILED_RETRYABLE.value,
        reason=message,
        metadata={"error_code": error_code, "retryable": retryable, "error_count": document.error_count},
        actor_id=actor_id,
    )
    pipeline_failures_total.labels(error_code=error_code, retryable=str(retryable).lower()).inc()

    if not retryable:
        document.can_retry = False
        document.next_retry_at = None
        apply_transition(
            session, document, S.FAILED_PERMANENT,
            actor_id=actor_id, reason="Non-retryable failure",
        )
    elif document.error_count > settings.PIPELINE_MAX_RETRIES:
        exhaust(session, document, actor_id=actor_id, now=now)
    else:
        document.can_retry = True
        document.next_retry_at = now + retry_delay(document.error_count)
        logger.warning(
            "pipeline_retry_scheduled",
            document_id=str(document.id),
            error_code=error_code,
            error_count=document.error_count,
            next_retry_at=document.next_retry_at.isoformat(),
        )

    return PipelineStatus(document.pipeline_status)


def exhaust(
    session: AsyncSession,
    document: ProcessingDocument,
    *,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Move a FAILED_RETRYABLE document with no budget left to its terminal."""
    now = now or datetime.now(timezone.utc)
    terminal = exhausted_status()
    document.can_retry = False
    document.next_retry_at = None
    if terminal == S.DEAD_LETTER:
        document.dead_letter_at = now
    apply_transition(
        session, document, terminal,
        actor_id=actor_id,
        reason="Retry budget exhausted",
        metadata={"error_count": document.error_count, "max_retries": settings.PIPELINE_MAX_RETRIES},
    )
    logger.error(
        "pipeline_retries_exhausted",
        document_id=str(document.id),
        error_count=document.error_count,
        terminal=terminal.value,
    )


class PipelineService:
    """Status reads and worker-reported transitions."""

    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    @guarded_mutation(
        "report_status",
        response_model=DocumentOut,
        endpoint="/processing-documents/{document_id}/status",
    )
    async def report_status(self, uow, document, *, actor, to_status: PipelineStatus, reason: Optional[str] = None):
        """Apply a worker-reported status through the transition table."""
        apply_transition(uow.session, document, to_status, actor_id=actor.user_id, reason=reason)
        await uow.session.flush()
        return DocumentOut.model_validate(document)

    async def list_pending_retries(self, now: Optional[datetime] = None, limit: int = 100) -> list[ProcessingDocument]:
        """FAILED_RETRYABLE documents whose next retry is due."""
        now = now or datetime.now(timezone.utc)
        async with self.ctx.unit_of_work() as uow:
            result = await uow.session.execute(
                select(ProcessingDocument)
                .where(
                    ProcessingDocument.pipeline_status == S.FAILED_RETRYABLE,
                    ProcessingDocument.can_retry.is_(True),
                    ProcessingDocument.deleted_at.is_(None),
                    ProcessingDocument.next_retry_at <= now,
                )
                .order_by(ProcessingDocument.next_retry_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_state_events(self, document_id, *, actor) -> list[StateEventOut]:
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id, include_deleted=True)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            result = await uow.session.execute(
                select(DocumentStateEvent)
                .where(DocumentStateEvent.processing_document_id == as_uuid(document_id))
                .order_by(DocumentStateEvent.created_at, DocumentStateEvent.id)
            )
            return [StateEventOut.model_validate(e) for e in result.scalars().all()]
