"""
Extraction orchestrator.

trigger_extraction() only queues work: it moves the document to QUEUED,
hands a job to the dispatcher after commit and returns a job reference.
run_extraction() is what the worker executes:

    QUEUED -> PROCESSING -> submit to capability
        -> SPLIT_PENDING   (capability saw several documents in the file)
        -> EXTRACTION_DONE (new DRAFT revision from the proposal)
        -> FAILED_RETRYABLE / terminal on capability or storage failure

The capability call runs outside any database transaction.
"""

import inspect
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from redis.exceptions import RedisError

from docledger.config import settings
from docledger.engines.base import ExtractionCapability, ExtractionError
from docledger.errors import ConcurrentModificationError, InvalidStateError, StorageError
from docledger.models.enums import PipelineStatus, RevisionType, StateEventType
from docledger.observability.metrics import extraction_duration_seconds, extraction_jobs_total
from docledger.pipeline.state_machine import (
    PipelineService,
    apply_transition,
    exhaust,
    record_event,
    record_failure,
)
from docledger.schemas.contracts import ExtractionContext, ExtractionOptions
from docledger.schemas.revisions import ExtractionJob
from docledger.services.authz import SYSTEM_ACTOR, Actor
from docledger.services.context import ServiceContext
from docledger.services.guard import claim_next_version, guarded_mutation, load_document
from docledger.services.revisions import create_revision_from_proposal

logger = structlog.get_logger(__name__)

S = PipelineStatus

# (document_id, job_id, options) -> None; may be a coroutine function
Dispatcher = Callable[[str, str, dict], Union[None, Awaitable[None]]]

TRIGGERABLE_STATES = frozenset({S.UPLOADED, S.FAILED_RETRYABLE, S.EXTRACTION_DONE})


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def _extraction_ttl() -> int:
    return settings.IDEMPOTENCY_TTL_EXTRACTION_SECONDS


def _skip_reason(document, job_id: str) -> Optional[str]:
    if PipelineStatus(document.pipeline_status) not in (S.QUEUED, S.EXTRACTION_DONE):
        return "unexpected_status"
    if document.active_job_id != job_id:
        # Redelivered, already finished or superseded by a newer trigger
        return "not_active_job"
    return None


def rq_dispatcher(document_id: str, job_id: str, options: dict) -> None:
    from docledger.worker.jobs import enqueue_extraction

    enqueue_extraction(document_id, job_id, options)


class ExtractionOrchestrator:
    def __init__(
        self,
        ctx: ServiceContext,
        capability: ExtractionCapability,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.ctx = ctx
        self.capability = capability
        self.dispatcher = dispatcher or rq_dispatcher

    # ── Trigger ──────────────────────────────────────────────

    @guarded_mutation(
        "trigger_extraction",
        response_model=ExtractionJob,
        endpoint="/processing-documents/{document_id}/extract",
        ttl_seconds=_extraction_ttl,
        status_code=202,
    )
    async def trigger_extraction(self, uow, document, *, actor: Actor, options: Optional[ExtractionOptions] = None):
        """Queue the document for extraction. Re-extraction keeps EXTRACTION_DONE."""
        current = PipelineStatus(document.pipeline_status)
        if current not in TRIGGERABLE_STATES:
            raise InvalidStateError(
                f"Cannot extract a document in status {current.value}",
                details={"pipeline_status": current.value},
            )

        job_id = new_job_id()
        reextract = current == S.EXTRACTION_DONE
        if reextract:
            record_event(
                uow.session, document, StateEventType.TRANSITION,
                from_state=current.value, to_state=current.value,
                reason="Re-extraction requested", metadata={"job_id": job_id},
                actor_id=actor.user_id,
            )
        else:
            apply_transition(
                uow.session, document, S.QUEUED,
                actor_id=actor.user_id,
                reason="Extraction requested" if current == S.UPLOADED else "Manual retry",
                metadata={"job_id": job_id},
            )
            document.next_retry_at = None
        document.active_job_id = job_id
        await uow.session.flush()

        opts = (options or ExtractionOptions()).model_dump(mode="json")
        document_id = str(document.id)
        uow.on_commit(lambda: self._dispatch(document_id, job_id, opts, reextract))

        extraction_jobs_total.labels(outcome="queued").inc()
        logger.info("extraction_triggered", document_id=document_id, job_id=job_id)

        estimate = settings.EXTRACTION_ESTIMATE_SECONDS
        return ExtractionJob(
            job_id=job_id,
            document_id=document.id,
            pipeline_status=document.pipeline_status,
            lock_version=document.lock_version,
            estimated_completion_seconds=estimate,
            estimated_completion_at=datetime.now(timezone.utc) + timedelta(seconds=estimate),
        )

    async def _dispatch(self, document_id: str, job_id: str, options: dict, reextract: bool = False) -> None:
        try:
            result = self.dispatcher(document_id, job_id, options)
            if inspect.isawaitable(result):
                await result
        except (RedisError, ConnectionError, OSError) as e:
            # Queue unreachable. A first extraction waits for the retry sweep;
            # a re-extraction keeps EXTRACTION_DONE and only records the error.
            logger.error("extraction_dispatch_failed", document_id=document_id, job_id=job_id, error=str(e))
            await self._fail(
                document_id, job_id,
                error_code="DISPATCH_FAILED", message=str(e), retryable=True, reextract=reextract,
            )

    # ── Worker flow ──────────────────────────────────────────

    async def run_extraction(
        self, document_id: str, job_id: str, options: Optional[dict] = None
    ) -> dict[str, Any]:
        """
        Execute one extraction job. Returns a summary dict; a job that finds
        the document in an unexpected state is skipped.
        """
        opts = ExtractionOptions.model_validate(options or {})

        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            current = PipelineStatus(document.pipeline_status)
            reason = _skip_reason(document, job_id)
            if reason:
                return self._skipped(document_id, job_id, current, reason)

            reextract = current == S.EXTRACTION_DONE
            await claim_next_version(uow.session, document, "run_extraction")
            if not reextract:
                apply_transition(
                    uow.session, document, S.PROCESSING,
                    actor_id=SYSTEM_ACTOR.user_id, reason="Worker picked up job", metadata={"job_id": job_id},
                )
            context = ExtractionContext(
                document_id=document.id,
                tenant_id=document.tenant_id,
                company_id=document.company_id,
                file_name=document.file_name,
                mime_type=document.mime_type,
                page_count=document.page_count,
                job_id=job_id,
                options=opts,
            )
            storage_key = document.storage_key

        logger.info("extraction_started", document_id=document_id, job_id=job_id, capability=self.capability.name)
        started_at = time.time()
        try:
            content = self.ctx.storage.get(storage_key)
            proposal = await self.capability.submit(content, context)
        except ExtractionError as e:
            await self._fail(document_id, job_id, e.error_code, e.message, e.retryable, reextract)
            return {"document_id": document_id, "job_id": job_id, "status": "FAILED", "error_code": e.error_code}
        except StorageError as e:
            await self._fail(document_id, job_id, e.error_code, e.message, True, reextract)
            return {"document_id": document_id, "job_id": job_id, "status": "FAILED", "error_code": e.error_code}
        except Exception as e:
            await self._fail(document_id, job_id, "INTERNAL_ERROR", f"{type(e).__name__}: {e}", True, reextract)
            raise
        finally:
            extraction_duration_seconds.labels(capability=self.capability.name).observe(time.time() - started_at)

        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            if document.active_job_id != job_id:
                # Superseded by a newer trigger while the capability ran
                return self._skipped(
                    document_id, job_id, PipelineStatus(document.pipeline_status), "superseded",
                )
            await claim_next_version(uow.session, document, "run_extraction")
            revision_id = None

            if opts.detect_split and not reextract and len(proposal.split_suggestions) >= 2:
                document.split_plan = [{"page_from": f, "page_to": t} for f, t in proposal.split_suggestions]
                apply_transition(
                    uow.session, document, S.SPLIT_PENDING,
                    actor_id=SYSTEM_ACTOR.user_id,
                    reason="Multiple documents detected",
                    metadata={"job_id": job_id, "split_plan": document.split_plan},
                )
                outcome = "split_pending"
            else:
                revision = await create_revision_from_proposal(
                    uow.session, document, proposal,
                    job_id=job_id,
                    actor_id=SYSTEM_ACTOR.user_id,
                    revision_type=RevisionType.REPROCESS if reextract else RevisionType.EXTRACTION,
                )
                revision_id = str(revision.id)
                if not reextract:
                    apply_transition(
                        uow.session, document, S.EXTRACTION_DONE,
                        actor_id=SYSTEM_ACTOR.user_id, reason="Extraction succeeded",
                        metadata={"job_id": job_id, "revision_id": revision_id},
                    )
                outcome = "completed"
            document.can_retry = True
            document.next_retry_at = None
            document.active_job_id = None
            status = PipelineStatus(document.pipeline_status).value

        duration_ms = int((time.time() - started_at) * 1000)
        extraction_jobs_total.labels(outcome=outcome).inc()
        logger.info(
            "extraction_completed",
            document_id=document_id,
            job_id=job_id,
            status=status,
            revision_id=revision_id,
            duration_ms=duration_ms,
        )
        return {
            "document_id": document_id,
            "job_id": job_id,
            "status": status,
            "revision_id": revision_id,
            "duration_ms": duration_ms,
        }

    def _skipped(self, document_id: str, job_id: str, status: PipelineStatus, reason: str) -> dict[str, Any]:
        logger.warning(
            "extraction_job_skipped",
            document_id=document_id, job_id=job_id, pipeline_status=status.value, reason=reason,
        )
        extraction_jobs_total.labels(outcome="skipped").inc()
        return {"document_id": document_id, "job_id": job_id, "status": status.value, "skipped": True}

    async def _fail(
        self,
        document_id: str,
        job_id: str,
        error_code: str,
        message: str,
        retryable: bool,
        reextract: bool,
    ) -> None:
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            if document.active_job_id != job_id:
                logger.warning("extraction_failure_ignored", document_id=document_id, job_id=job_id, error_code=error_code)
                return
            await claim_next_version(uow.session, document, "run_extraction")
            document.active_job_id = None
            if reextract:
                # The existing extraction stays valid; only note the failed attempt
                document.last_error = {
                    "code": error_code, "message": message, "at": datetime.now(timezone.utc).isoformat(),
                }
                record_event(
                    uow.session, document, StateEventType.FAILURE,
                    reason=message,
                    metadata={"error_code": error_code, "job_id": job_id, "reextract": True},
                    actor_id=SYSTEM_ACTOR.user_id,
                )
                status = PipelineStatus(document.pipeline_status)
            else:
                status = record_failure(
                    uow.session, document,
                    error_code=error_code, message=message, retryable=retryable,
                    actor_id=SYSTEM_ACTOR.user_id,
                )
        extraction_jobs_total.labels(outcome="failed").inc()
        logger.error(
            "extraction_failed",
            document_id=document_id,
            job_id=job_id,
            error_code=error_code,
            error=message,
            status=status.value,
        )

    # ── Retry sweep ──────────────────────────────────────────

    async def requeue_due_retries(self, now: Optional[datetime] = None, limit: int = 100) -> list[str]:
        """
        Re-queue FAILED_RETRYABLE documents whose retry is due, or move them
        to the exhausted terminal when the budget is spent. Returns job ids.
        """
        now = now or datetime.now(timezone.utc)
        due = await PipelineService(self.ctx).list_pending_retries(now=now, limit=limit)
        job_ids = []
        for candidate in due:
            try:
                job_id = await self._requeue(candidate.id, now)
            except (ConcurrentModificationError, InvalidStateError) as e:
                logger.info("retry_requeue_skipped", document_id=str(candidate.id), reason=e.message)
                continue
            if job_id:
                job_ids.append(job_id)
        logger.info("retry_sweep_completed", due=len(due), requeued=len(job_ids))
        return job_ids

    async def _requeue(self, document_id, now: datetime) -> Optional[str]:
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await claim_next_version(uow.session, document, "requeue_retry")
            if (document.error_count or 0) > settings.PIPELINE_MAX_RETRIES:
                exhaust(uow.session, document, actor_id=SYSTEM_ACTOR.user_id, now=now)
                return None

            job_id = new_job_id()
            apply_transition(
                uow.session, document, S.QUEUED,
                actor_id=SYSTEM_ACTOR.user_id,
                reason="Automatic retry",
                metadata={"job_id": job_id, "error_count": document.error_count},
            )
            document.next_retry_at = None
            document.active_job_id = job_id
            doc_id = str(document.id)
            uow.on_commit(lambda: self._dispatch(doc_id, job_id, ExtractionOptions().model_dump(mode="json")))
        return job_id
