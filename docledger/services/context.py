"""
Collaborators shared by the document services.
"""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from docledger.config import settings
from docledger.models.database import async_session_factory
from docledger.services.audit import AuditSink, LoggingAuditSink
from docledger.services.authz import Authorizer, TenantAuthorizer
from docledger.services.events import EventBus
from docledger.services.matching import DuplicateMatcher, NullDuplicateMatcher, build_matcher
from docledger.services.unit_of_work import UnitOfWork
from docledger.storage.artifact_store import ArtifactStore, LocalArtifactStore


@dataclass
class ServiceContext:
    session_factory: async_sessionmaker
    storage: ArtifactStore
    authorizer: Authorizer = field(default_factory=TenantAuthorizer)
    audit: AuditSink = field(default_factory=LoggingAuditSink)
    events: EventBus = field(default_factory=EventBus)
    # Consulted when a document is registered
    duplicate_matcher: DuplicateMatcher = field(default_factory=NullDuplicateMatcher)

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.session_factory)


def build_context(
    session_factory: Optional[async_sessionmaker] = None,
    storage: Optional[ArtifactStore] = None,
) -> ServiceContext:
    """Production wiring: configured database, local file storage and duplicate matcher."""
    return ServiceContext(
        session_factory=session_factory or async_session_factory,
        storage=storage or LocalArtifactStore(),
        duplicate_matcher=build_matcher(settings.DUPLICATE_MATCHER),
    )
