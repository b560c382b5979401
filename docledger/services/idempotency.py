"""
Idempotency cache for retried mutating requests.

Records are keyed by (key, endpoint, method) and honoured only while
now < expires_at; expired records are treated as absent and replaced on
the next store.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.models.tables import IdempotencyRecord

logger = structlog.get_logger(__name__)


def ensure_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def lookup(
    session: AsyncSession,
    key: str,
    endpoint: str,
    method: str = "POST",
    now: Optional[datetime] = None,
) -> Optional[IdempotencyRecord]:
    """Return the unexpired record for this scope, or None."""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.key == key,
            IdempotencyRecord.endpoint == endpoint,
            IdempotencyRecord.method == method,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        return None
    if ensure_utc(record.expires_at) <= now:
        logger.debug("idempotency_record_expired", key=key, endpoint=endpoint)
        return None
    return record


async def store(
    session: AsyncSession,
    key: str,
    endpoint: str,
    response: dict,
    status_code: int,
    ttl_seconds: int,
    method: str = "POST",
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IdempotencyRecord:
    """Cache a successful response in the caller's transaction."""
    now = now or datetime.now(timezone.utc)

    # A live record written concurrently is left in place so the insert
    # below fails on the unique constraint instead of overwriting it.
    await session.execute(
        delete(IdempotencyRecord).where(
            IdempotencyRecord.key == key,
            IdempotencyRecord.endpoint == endpoint,
            IdempotencyRecord.method == method,
            IdempotencyRecord.expires_at <= now,
        )
    )

    record = IdempotencyRecord(
        key=key,
        endpoint=endpoint,
        method=method,
        tenant_id=tenant_id,
        response=response,
        status_code=status_code,
        expires_at=now + timedelta(seconds=ttl_seconds),
        created_at=now,
    )
    session.add(record)
    await session.flush()

    logger.debug("idempotency_record_stored", key=key, endpoint=endpoint, ttl_seconds=ttl_seconds)
    return record


async def purge_expired(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Delete expired records. Returns count deleted."""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now)
    )
    count = result.rowcount or 0
    logger.info("idempotency_records_purged", count=count)
    return count
