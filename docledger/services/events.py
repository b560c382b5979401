"""
In-process domain events.
Publishers emit after their transaction commits; subscriber failures are
logged and do not propagate into the publishing operation.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Type

import structlog

from docledger.models.enums import AliasLearningMode

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RevisionApproved:
    document_id: str
    revision_id: str
    tenant_id: str
    company_id: str
    actor_id: str
    vendor_name: Optional[str]
    vendor_id: Optional[str]
    customer_name: Optional[str]
    customer_id: Optional[str]
    vendor_learning: AliasLearningMode = AliasLearningMode.AUTO
    customer_learning: AliasLearningMode = AliasLearningMode.AUTO


Handler = Callable[[object], Awaitable[None]]


class EventBus:
    def __init__(self):
        self._handlers: dict[Type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    async def publish(self, event: object) -> None:
        for handler in self._handlers.get(type(event), []):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )
