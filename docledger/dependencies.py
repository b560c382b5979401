"""
FastAPI dependency injection.
Provides the service context, caller identity, API key validation and the
concurrency headers (If-Match, Idempotency-Key).
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from docledger.config import settings
from docledger.engines.registry import get_capability
from docledger.errors import ValidationError
from docledger.pipeline.orchestrator import ExtractionOrchestrator
from docledger.services.aliases import AliasResolutionService
from docledger.services.authz import Actor
from docledger.services.context import ServiceContext, build_context


# ── Singleton instances ──────────────────────────────────────
_context: Optional[ServiceContext] = None


def get_context() -> ServiceContext:
    """Get or create the service context singleton."""
    global _context
    if _context is None:
        _context = build_context()
        AliasResolutionService(_context).subscribe(_context.events)
    return _context


def get_orchestrator(ctx: ServiceContext = Depends(get_context)) -> ExtractionOrchestrator:
    return ExtractionOrchestrator(ctx, get_capability(settings.EXTRACTION_CAPABILITY))


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key


async def get_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    x_service: bool = Header(False, alias="X-Service"),
) -> Actor:
    """Caller identity forwarded by the authenticating gateway."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )
    return Actor(user_id=x_actor_id, tenant_id=x_tenant_id, is_service=x_service)


def parse_if_match(value: Optional[str]) -> Optional[int]:
    """'3', '"3"' and 'W/"3"' all mean lock version 3; absent means no check."""
    if value is None or value.strip() in ("", "*"):
        return None
    raw = value.strip()
    if raw.startswith("W/"):
        raw = raw[2:]
    raw = raw.strip('"')
    try:
        version = int(raw)
    except ValueError:
        raise ValidationError("If-Match must carry an integer lock version", details={"if_match": value}) from None
    if version < 0:
        raise ValidationError("Lock version cannot be negative", details={"if_match": value})
    return version


async def get_expected_version(
    if_match: Optional[str] = Header(None, alias="If-Match"),
) -> Optional[int]:
    return parse_if_match(if_match)


async def get_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> Optional[str]:
    if idempotency_key is not None and not (0 < len(idempotency_key.strip()) <= 255):
        raise ValidationError("Idempotency-Key must be 1-255 characters")
    return idempotency_key.strip() if idempotency_key else None
