"""
RQ job functions for the extraction pipeline.
These are the entry points that the worker calls.
"""

import asyncio
from datetime import timedelta

import structlog
from redis import Redis
from rq import Queue

from docledger.config import settings

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the extraction job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def enqueue_extraction(document_id: str, job_id: str, options: dict) -> str:
    """
    Enqueue an extraction job under our own job id so the id returned to
    the caller is the id RQ tracks.
    """
    q = get_queue()
    job = q.enqueue(
        run_extraction_job,
        document_id,
        job_id,
        options,
        job_id=job_id,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
    )
    logger.info("job_enqueued", document_id=document_id, job_id=job.id)
    return job.id


def run_extraction_job(document_id: str, job_id: str, options: dict) -> dict:
    """
    Main job function: run one extraction for a document.
    This runs inside the RQ worker process.
    """
    logger.info("job_started", document_id=document_id, job_id=job_id)

    try:
        result = asyncio.run(_run_extraction_async(document_id, job_id, options))
        logger.info("job_completed", document_id=document_id, job_id=job_id, status=result.get("status"))
        return result
    except Exception as e:
        logger.error("job_failed", document_id=document_id, job_id=job_id, error=str(e))
        raise


def requeue_retries_job(limit: int = 100, reschedule: bool = True) -> list[str]:
    """Periodic sweep of FAILED_RETRYABLE documents whose retry is due."""
    try:
        return asyncio.run(_requeue_async(limit))
    finally:
        if reschedule:
            schedule_retry_sweep()


def schedule_retry_sweep() -> None:
    """Queue the next sweep; needs a worker started with the scheduler."""
    get_queue().enqueue_in(
        timedelta(seconds=settings.RETRY_SWEEP_INTERVAL_SECONDS),
        requeue_retries_job,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
    )


def _build_orchestrator():
    from docledger.engines.registry import get_capability
    from docledger.pipeline.orchestrator import ExtractionOrchestrator
    from docledger.services.context import build_context

    return ExtractionOrchestrator(build_context(), get_capability(settings.EXTRACTION_CAPABILITY))


async def _run_extraction_async(document_id: str, job_id: str, options: dict) -> dict:
    from docledger.models.database import close_db

    try:
        return await _build_orchestrator().run_extraction(document_id, job_id, options)
    finally:
        # Each job gets a fresh event loop; pooled connections must not outlive it
        await close_db()


async def _requeue_async(limit: int) -> list[str]:
    from docledger.models.database import close_db

    try:
        return await _build_orchestrator().requeue_due_retries(limit=limit)
    finally:
        await close_db()
