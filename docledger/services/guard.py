"""
Optimistic concurrency and idempotency guard for document mutations.

Every mutating document operation runs inside guarded_mutation():

    load document -> authorize -> idempotent replay? -> reject containers
    -> expected-version check -> claim next lock_version -> operation
    -> cache response -> commit

Claiming the version is a compare-and-swap UPDATE on lock_version, so two
writers that read the same version can never both commit.
"""

import functools
import uuid
from typing import Any, Callable, Optional, Type, Union

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from docledger.errors import (
    ConcurrentModificationError,
    InvalidStateError,
    ResourceNotFoundError,
    ValidationError,
)
from docledger.models.tables import ProcessingDocument, utcnow
from docledger.observability.metrics import idempotent_replays_total, lock_conflicts_total
from docledger.services import idempotency
from docledger.services.authz import UPDATE, Actor

logger = structlog.get_logger(__name__)


def as_uuid(value: Union[str, uuid.UUID], label: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid {label}: {value}") from e


async def load_document(
    session: AsyncSession,
    document_id: Union[str, uuid.UUID],
    include_deleted: bool = False,
) -> ProcessingDocument:
    """Fetch a document or raise RESOURCE_NOT_FOUND (soft-deleted counts as missing)."""
    doc_uuid = as_uuid(document_id, "document id")
    stmt = select(ProcessingDocument).where(ProcessingDocument.id == doc_uuid)
    if not include_deleted:
        stmt = stmt.where(ProcessingDocument.deleted_at.is_(None))
    result = await session.execute(stmt)
    document = result.scalar_one_or_none()
    if document is None:
        raise ResourceNotFoundError(f"Document {document_id} not found")
    return document


def check_expected_version(
    document: ProcessingDocument,
    expected_version: Optional[int],
    operation: str,
) -> None:
    """Compare the caller's expected version. None skips the check."""
    if expected_version is None:
        return
    if expected_version != document.lock_version:
        lock_conflicts_total.labels(operation=operation).inc()
        logger.info(
            "lock_version_mismatch",
            document_id=str(document.id),
            operation=operation,
            expected_version=expected_version,
            current_version=document.lock_version,
        )
        raise ConcurrentModificationError(
            "Document was modified by another request; refetch and retry",
            details={"expected_version": expected_version, "current_version": document.lock_version},
        )


async def claim_next_version(
    session: AsyncSession,
    document: ProcessingDocument,
    operation: str,
) -> int:
    """
    Bump lock_version from the value we read, atomically.

    Zero rows updated means another writer committed first; the caller's
    transaction must roll back.
    """
    read_version = document.lock_version
    result = await session.execute(
        update(ProcessingDocument)
        .where(
            ProcessingDocument.id == document.id,
            ProcessingDocument.lock_version == read_version,
        )
        .values(lock_version=read_version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        lock_conflicts_total.labels(operation=operation).inc()
        logger.info(
            "lock_version_claim_lost",
            document_id=str(document.id),
            operation=operation,
            read_version=read_version,
        )
        raise ConcurrentModificationError(
            "Document was modified by another request; refetch and retry",
            details={"read_version": read_version},
        )
    set_committed_value(document, "lock_version", read_version + 1)
    return read_version + 1


def guarded_mutation(
    operation: str,
    *,
    response_model: Type[BaseModel],
    endpoint: str,
    ttl_seconds: Optional[Callable[[], int]] = None,
    status_code: int = 200,
    allow_container: bool = False,
):
    """
    Wrap a service method as a guarded document mutation.

    The wrapped method is declared as ``fn(self, uow, document, *, actor, ...)``
    and called as ``method(document_id, *, actor, expected_version=None,
    idempotency_key=None, ...)``. ``endpoint`` is formatted with document_id
    and the keyword arguments to scope idempotency keys. ``ttl_seconds`` is a
    callable so configuration is read at call time; without it the operation
    is not idempotency-cached.
    """

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(
            self,
            document_id,
            *,
            actor: Actor,
            expected_version: Optional[int] = None,
            idempotency_key: Optional[str] = None,
            **kwargs: Any,
        ):
            scope = endpoint.format(document_id=document_id, **kwargs)
            cached = idempotency_key is not None and ttl_seconds is not None

            try:
                async with self.ctx.unit_of_work() as uow:
                    document = await load_document(uow.session, document_id)
                    await self.ctx.authorizer.require(
                        actor, document.tenant_id, document.company_id, UPDATE
                    )

                    if cached:
                        record = await idempotency.lookup(uow.session, idempotency_key, scope)
                        if record is not None:
                            idempotent_replays_total.labels(operation=operation).inc()
                            logger.info("idempotent_replay", operation=operation, endpoint=scope)
                            return response_model.model_validate(record.response)

                    if document.is_container and not allow_container:
                        raise InvalidStateError(
                            "Document has been split into child documents and no longer accepts edits"
                        )

                    check_expected_version(document, expected_version, operation)
                    await claim_next_version(uow.session, document, operation)

                    result = await fn(self, uow, document, actor=actor, **kwargs)
                    payload = result.model_dump(mode="json")

                    if cached:
                        await idempotency.store(
                            uow.session,
                            idempotency_key,
                            scope,
                            response=payload,
                            status_code=status_code,
                            ttl_seconds=ttl_seconds(),
                            tenant_id=document.tenant_id,
                        )
            except IntegrityError:
                if not cached:
                    raise
                # Lost a race with a concurrent request carrying the same key
                async with self.ctx.unit_of_work() as uow:
                    record = await idempotency.lookup(uow.session, idempotency_key, scope)
                if record is None:
                    raise
                idempotent_replays_total.labels(operation=operation).inc()
                logger.info("idempotent_replay_after_race", operation=operation, endpoint=scope)
                return response_model.model_validate(record.response)

            logger.debug(
                "mutation_committed",
                operation=operation,
                document_id=str(document.id),
                lock_version=document.lock_version,
            )
            return response_model.model_validate(payload)

        return wrapper

    return decorator
