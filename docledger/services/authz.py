"""
Authorization collaborator.
Permission evaluation lives outside this service; we only ask
"may this actor read/update documents of this company?".
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import structlog

from docledger.errors import PermissionDeniedError

logger = structlog.get_logger(__name__)

READ = "read"
UPDATE = "update"


@dataclass(frozen=True)
class Actor:
    """Caller identity as established by the authentication layer."""

    user_id: str
    tenant_id: Optional[str] = None
    is_service: bool = False


SYSTEM_ACTOR = Actor(user_id="system", is_service=True)


class Authorizer(ABC):
    @abstractmethod
    async def check(self, actor: Actor, tenant_id: str, company_id: str, permission: str) -> bool:
        ...

    async def require(self, actor: Actor, tenant_id: str, company_id: str, permission: str) -> None:
        """Raise PermissionDeniedError unless check() allows the action."""
        if not await self.check(actor, tenant_id, company_id, permission):
            logger.warning(
                "permission_denied",
                user_id=actor.user_id,
                company_id=company_id,
                permission=permission,
            )
            raise PermissionDeniedError(
                f"Not permitted to {permission} documents of company {company_id}"
            )


class TenantAuthorizer(Authorizer):
    """
    Default policy: service actors may do anything, users only act within
    their own tenant. Deployments plug in their role-based checker instead.
    """

    async def check(self, actor: Actor, tenant_id: str, company_id: str, permission: str) -> bool:
        if actor.is_service:
            return True
        return actor.tenant_id is None or actor.tenant_id == tenant_id
