"""
Worker entry point.
Run with: python -m docledger.worker.runner
"""

import structlog
from redis import Redis
from rq import Worker

from docledger.config import settings
from docledger.observability.logging import setup_logging
from docledger.worker.jobs import schedule_retry_sweep

logger = structlog.get_logger(__name__)


def main():
    """Start the RQ worker."""
    setup_logging(component="worker")

    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker(
        queues=[settings.QUEUE_NAME],
        connection=conn,
        name=f"extraction-worker-{settings.APP_VERSION}",
    )

    schedule_retry_sweep()
    logger.info("worker_starting", queue=settings.QUEUE_NAME, capability=settings.EXTRACTION_CAPABILITY)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
