"""
Health check endpoints.
/health always returns 200 so platform health checks pass while a
dependency is down; /health/ready reports whether the service can work.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from docledger.config import settings
from docledger.dependencies import get_context
from docledger.services.context import ServiceContext

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])


async def _database_ok(ctx: ServiceContext) -> tuple[bool, Optional[str]]:
    try:
        async with ctx.session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except (SQLAlchemyError, OSError) as e:
        logger.warning("health_database_unreachable", error=str(e)[:200])
        return False, str(e)[:200]


def _queue_ok() -> bool:
    try:
        return bool(Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2).ping())
    except (RedisError, OSError) as e:
        logger.warning("health_queue_unreachable", error=str(e)[:200])
        return False


@router.get("/health")
async def health_check(ctx: ServiceContext = Depends(get_context)):
    """Liveness plus database connectivity. Always 200."""
    db_ok, db_error = await _database_ok(ctx)

    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "extraction_capability": settings.EXTRACTION_CAPABILITY,
        "database": "connected" if db_ok else "unreachable",
    }
    if db_error:
        response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check(ctx: ServiceContext = Depends(get_context)):
    """Ready only when both the database and the job queue answer."""
    db_ok, _ = await _database_ok(ctx)
    queue_ok = await asyncio.to_thread(_queue_ok)
    return {"ready": db_ok and queue_ok, "database": db_ok, "queue": queue_ok}
