"""
Duplicate matchers.

A matcher proposes earlier documents that a newly registered one may
duplicate; DuplicateService turns the best candidate into a SUSPECTED flag.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.models.tables import ProcessingDocument

logger = structlog.get_logger(__name__)

EXACT_HASH_REASON = "Exact file hash match"


@dataclass
class DuplicateCandidate:
    document_id: str
    score: float
    reason: str


class DuplicateMatcher(ABC):
    """Finds earlier documents the given one may duplicate."""

    @abstractmethod
    async def find_candidates(
        self, session: AsyncSession, document: ProcessingDocument
    ) -> list[DuplicateCandidate]:
        ...


class NullDuplicateMatcher(DuplicateMatcher):
    """Never suspects anything."""

    async def find_candidates(self, session, document) -> list[DuplicateCandidate]:
        return []


class FileHashDuplicateMatcher(DuplicateMatcher):
    """Byte-identical uploads in the same tenant and company, oldest first."""

    async def find_candidates(self, session, document) -> list[DuplicateCandidate]:
        if not document.file_hash:
            return []
        result = await session.execute(
            select(ProcessingDocument.id)
            .where(
                ProcessingDocument.file_hash == document.file_hash,
                ProcessingDocument.tenant_id == document.tenant_id,
                ProcessingDocument.company_id == document.company_id,
                ProcessingDocument.deleted_at.is_(None),
                ProcessingDocument.id != document.id,
            )
            .order_by(ProcessingDocument.created_at)
            .limit(1)
        )
        original_id = result.scalar_one_or_none()
        if original_id is None:
            return []
        logger.info("file_hash_match", document_id=str(document.id), duplicate_of_id=str(original_id))
        return [DuplicateCandidate(str(original_id), 1.0, EXACT_HASH_REASON)]


MATCHERS = {
    "none": NullDuplicateMatcher,
    "file_hash": FileHashDuplicateMatcher,
}


def build_matcher(name: str) -> DuplicateMatcher:
    try:
        return MATCHERS[name]()
    except KeyError:
        raise ValueError(f"Unknown duplicate matcher: {name}") from None
