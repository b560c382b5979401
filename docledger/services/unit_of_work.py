"""
Unit of work: one transaction per mutating operation.

Commits on clean exit, rolls back on any exception, and runs callbacks
registered with on_commit() only after the commit succeeded.
"""

from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docledger.models.database import async_session_factory

logger = structlog.get_logger(__name__)

AfterCommit = Callable[[], Awaitable[None]]


class UnitOfWork:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or async_session_factory
        self._after_commit: list[AfterCommit] = []
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "UnitOfWork":
        self.session = self._session_factory()
        self._after_commit = []
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                await self.session.commit()
            else:
                await self.session.rollback()
        finally:
            await self.session.close()

        if exc_type is None:
            # The transaction is durable; a callback error must not surface
            # as a failure of the committed operation.
            for callback in self._after_commit:
                try:
                    await callback()
                except Exception:
                    logger.exception(
                        "after_commit_callback_failed",
                        callback=getattr(callback, "__qualname__", repr(callback)),
                    )

    def on_commit(self, callback: AfterCommit) -> None:
        """Run callback once the transaction has committed."""
        self._after_commit.append(callback)
