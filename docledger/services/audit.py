"""
Audit-log collaborator.
Audit persistence is external; the default sink emits entries as
structured log events.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

logger = structlog.get_logger("docledger.audit")


@dataclass
class AuditEntry:
    tenant_id: str
    company_id: str
    actor_id: str
    action: str
    entity_type: str
    entity_id: str
    summary: str
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditSink(ABC):
    @abstractmethod
    async def append(self, entry: AuditEntry) -> None:
        ...


class LoggingAuditSink(AuditSink):
    async def append(self, entry: AuditEntry) -> None:
        logger.info(
            "audit",
            tenant_id=entry.tenant_id,
            company_id=entry.company_id,
            actor_id=entry.actor_id,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            summary=entry.summary,
            **entry.metadata,
        )


class RecordingAuditSink(AuditSink):
    """Keeps entries in memory. Useful for single-process tools and tests."""

    def __init__(self):
        self.entries: list[AuditEntry] = []

    async def append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def last(self, action: Optional[str] = None) -> Optional[AuditEntry]:
        for entry in reversed(self.entries):
            if action is None or entry.action == action:
                return entry
        return None
