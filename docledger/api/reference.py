"""
Reference data endpoints: manual exchange rates and learned aliases.
"""

from fastapi import APIRouter, Depends, status

from docledger.dependencies import get_actor, get_context, verify_api_key
from docledger.errors import PermissionDeniedError, ValidationError
from docledger.schemas.revisions import AliasLearnRequest, AliasOut, ExchangeRateOut, ManualRateCreate
from docledger.services.aliases import AliasResolutionService
from docledger.services.authz import UPDATE, Actor
from docledger.services.context import ServiceContext
from docledger.services.currency import ExchangeRateService

router = APIRouter(prefix="/api/v1", tags=["reference"], dependencies=[Depends(verify_api_key)])


@router.post("/exchange-rates", response_model=ExchangeRateOut, status_code=status.HTTP_201_CREATED)
async def create_manual_rate(
    body: ManualRateCreate,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    """Add a manual rate: tenant override when tenant_id is set, system rate otherwise."""
    if body.tenant_id is None:
        if not actor.is_service:
            raise PermissionDeniedError("Only service actors may create system exchange rates")
    else:
        await ctx.authorizer.require(actor, body.tenant_id, "*", UPDATE)

    row = await ExchangeRateService(ctx).create_manual_rate(
        source_currency=body.source_currency.upper(),
        target_currency=body.target_currency.upper(),
        rate=body.rate,
        rate_date=body.rate_date,
        actor=actor,
        tenant_id=body.tenant_id,
        reason=body.reason,
    )
    return ExchangeRateOut.model_validate(row)


@router.post("/tenants/{tenant_id}/aliases", response_model=AliasOut, status_code=status.HTTP_201_CREATED)
async def learn_alias(
    tenant_id: str,
    body: AliasLearnRequest,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    """Teach a raw name -> contact mapping explicitly."""
    await ctx.authorizer.require(actor, tenant_id, body.company_id, UPDATE)
    alias = await AliasResolutionService(ctx).learn_alias(
        tenant_id=tenant_id,
        company_id=body.company_id,
        raw_name=body.raw_name,
        contact_id=body.contact_id,
        confidence=body.confidence,
        actor_id=actor.user_id,
    )
    if alias is None:
        raise ValidationError("raw_name must contain a name")
    return AliasOut.model_validate(alias)
