"""
Currency conversion and exchange-rate lookup.

Home amounts are round_half_up(amount * rate, 2). A caller-supplied home
value that differs from the computed one by more than
HOME_OVERRIDE_TOLERANCE is kept and flagged as an override; the flag is
stored with the revision so editors can see which values were adjusted.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.config import settings
from docledger.errors import ValidationError
from docledger.models.enums import ExchangeRateSource, ExchangeRateType
from docledger.models.tables import ExchangeRate
from docledger.services.audit import AuditEntry
from docledger.services.authz import Actor
from docledger.services.context import ServiceContext

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ONE = Decimal("1")

RATE_TYPE_SOURCE = {
    ExchangeRateType.DAILY_RATE: ExchangeRateSource.SYSTEM_DAILY,
    ExchangeRateType.MONTHLY_RATE: ExchangeRateSource.SYSTEM_MONTHLY_AVG,
    ExchangeRateType.MANUAL_RATE: ExchangeRateSource.MANUAL,
}
SOURCE_RATE_TYPE = {
    ExchangeRateSource.SYSTEM_DAILY: ExchangeRateType.DAILY_RATE,
    ExchangeRateSource.SYSTEM_MONTHLY_AVG: ExchangeRateType.MONTHLY_RATE,
}
# Preference among system rates published for the same date
RATE_TYPE_PRIORITY = [ExchangeRateType.DAILY_RATE, ExchangeRateType.MONTHLY_RATE, ExchangeRateType.MANUAL_RATE]


def round_half_up(value: Decimal, places: int = 2) -> Decimal:
    return Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def convert(amount: Optional[Decimal], rate: Decimal) -> Optional[Decimal]:
    if amount is None:
        return None
    return round_half_up(Decimal(amount) * Decimal(rate))


def override_tolerance() -> Decimal:
    return Decimal(str(settings.HOME_OVERRIDE_TOLERANCE))


def resolve_home_value(
    computed: Optional[Decimal],
    supplied: Optional[Decimal] = None,
    stored: Optional[Decimal] = None,
    stored_override: bool = False,
    tolerance: Optional[Decimal] = None,
) -> tuple[Optional[Decimal], bool]:
    """
    Pick the home value to keep and whether it is a manual override.

    A supplied value wins when it differs from computed beyond tolerance;
    otherwise a previously stored override is kept; otherwise computed.
    """
    tolerance = tolerance if tolerance is not None else override_tolerance()
    if supplied is not None:
        supplied = round_half_up(supplied)
        if computed is None or abs(supplied - computed) > tolerance:
            return supplied, True
        return computed, False
    if stored_override and stored is not None:
        return stored, True
    return computed, False


# ── Rate selection ───────────────────────────────────────────

@dataclass
class RateQuote:
    rate: Decimal
    rate_date: date
    source: ExchangeRateSource
    # tenant_override, system, fallback, caller, draft, same_currency
    origin: str
    is_override: bool = False


@dataclass
class LineHome:
    line_no: int
    home_amount: Optional[Decimal]
    home_tax_amount: Optional[Decimal]
    is_home_amount_override: bool = False
    is_home_tax_override: bool = False


@dataclass
class HomeAmounts:
    home_currency: str
    quote: RateQuote
    home_subtotal: Optional[Decimal]
    home_tax_amount: Optional[Decimal]
    home_equivalent: Optional[Decimal]
    is_home_subtotal_override: bool = False
    is_home_tax_override: bool = False
    is_home_equivalent_override: bool = False
    lines: list[LineHome] = field(default_factory=list)


def same_currency_quote(on_date: date) -> RateQuote:
    return RateQuote(
        rate=ONE, rate_date=on_date, source=ExchangeRateSource.SAME_CURRENCY, origin="same_currency"
    )


def compute_home_amounts(
    revision,
    items: Iterable,
    home_currency: str,
    quote: RateQuote,
    supplied_header: Optional[dict] = None,
    supplied_lines: Optional[dict[int, dict]] = None,
) -> HomeAmounts:
    """
    Convert header and line amounts into home currency.

    ``supplied_header`` maps home_subtotal/home_tax_amount/home_equivalent to
    caller values; ``supplied_lines`` maps line_no to home_amount /
    home_tax_amount. Same-currency revisions mirror the originals with no
    overrides.
    """
    items = sorted(items, key=lambda i: i.line_no)

    if revision.currency == home_currency:
        return HomeAmounts(
            home_currency=home_currency,
            quote=same_currency_quote(quote.rate_date),
            home_subtotal=revision.subtotal,
            home_tax_amount=revision.tax_amount,
            home_equivalent=revision.total_amount,
            lines=[
                LineHome(item.line_no, item.amount, item.tax_amount)
                for item in items
            ],
        )

    supplied_header = supplied_header or {}
    supplied_lines = supplied_lines or {}
    rate = quote.rate

    home_subtotal, subtotal_override = resolve_home_value(
        convert(revision.subtotal, rate),
        supplied_header.get("home_subtotal"),
        revision.home_subtotal,
        revision.is_home_subtotal_override,
    )
    home_tax, tax_override = resolve_home_value(
        convert(revision.tax_amount, rate),
        supplied_header.get("home_tax_amount"),
        revision.home_tax_amount,
        revision.is_home_tax_override,
    )
    home_equivalent, equivalent_override = resolve_home_value(
        convert(revision.total_amount, rate),
        supplied_header.get("home_equivalent"),
        revision.home_equivalent,
        revision.is_home_equivalent_override,
    )

    return HomeAmounts(
        home_currency=home_currency,
        quote=quote,
        home_subtotal=home_subtotal,
        home_tax_amount=home_tax,
        home_equivalent=home_equivalent,
        is_home_subtotal_override=subtotal_override,
        is_home_tax_override=tax_override,
        is_home_equivalent_override=equivalent_override,
        lines=convert_lines(items, rate, supplied_lines),
    )


def convert_lines(items: list, rate: Decimal, supplied_lines: dict[int, dict]) -> list[LineHome]:
    """
    Convert each line, then push the rounding residue onto the first line
    that is not overridden so converted lines add up to the converted total
    of those lines.
    """
    lines: list[LineHome] = []
    for item in items:
        supplied = supplied_lines.get(item.line_no, {})
        amount, amount_override = resolve_home_value(
            convert(item.amount, rate),
            supplied.get("home_amount"),
            item.home_amount,
            item.is_home_amount_override,
        )
        tax, tax_override = resolve_home_value(
            convert(item.tax_amount, rate),
            supplied.get("home_tax_amount"),
            item.home_tax_amount,
            item.is_home_tax_override,
        )
        lines.append(LineHome(item.line_no, amount, tax, amount_override, tax_override))

    free = [
        (item, line) for item, line in zip(items, lines)
        if not line.is_home_amount_override and not line.is_home_tax_override
    ]
    if free:
        original_total = sum(
            (Decimal(i.amount) + Decimal(i.tax_amount or 0) for i, _ in free), Decimal("0")
        )
        converted_total = sum(
            (l.home_amount + (l.home_tax_amount or Decimal("0")) for _, l in free), Decimal("0")
        )
        residue = convert(original_total, rate) - converted_total
        if residue:
            first = free[0][1]
            first.home_amount = first.home_amount + residue
            logger.debug("home_rounding_adjusted", line_no=first.line_no, residue=str(residue))
    return lines


class ExchangeRateService:
    """System and tenant exchange rates, looked up by date."""

    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    async def lookup(
        self,
        session: AsyncSession,
        source_currency: str,
        target_currency: str,
        on_date: date,
        tenant_id: Optional[str] = None,
        rate_type: Optional[ExchangeRateType] = None,
    ) -> Optional[RateQuote]:
        """
        1. Tenant manual override for the date
        2. System rate for the exact date
        3. Latest system rate on or before the date
        """
        base = select(ExchangeRate).where(
            ExchangeRate.source_currency == source_currency,
            ExchangeRate.target_currency == target_currency,
        )
        if rate_type is not None:
            base = base.where(ExchangeRate.rate_type == rate_type)

        if tenant_id:
            result = await session.execute(
                base.where(
                    ExchangeRate.tenant_id == tenant_id,
                    ExchangeRate.rate_date == on_date,
                    ExchangeRate.is_manual_override.is_(True),
                ).order_by(ExchangeRate.created_at.desc())
            )
            row = result.scalars().first()
            if row is not None:
                return RateQuote(row.rate, row.rate_date, ExchangeRateSource.MANUAL, "tenant_override", True)

        result = await session.execute(
            base.where(ExchangeRate.tenant_id.is_(None), ExchangeRate.rate_date == on_date)
        )
        same_day = list(result.scalars().all())
        if same_day:
            row = min(same_day, key=lambda r: RATE_TYPE_PRIORITY.index(ExchangeRateType(r.rate_type)))
            return RateQuote(row.rate, row.rate_date, RATE_TYPE_SOURCE[ExchangeRateType(row.rate_type)], "system")

        result = await session.execute(
            base.where(ExchangeRate.tenant_id.is_(None), ExchangeRate.rate_date <= on_date)
            .order_by(ExchangeRate.rate_date.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            return RateQuote(row.rate, row.rate_date, RATE_TYPE_SOURCE[ExchangeRateType(row.rate_type)], "fallback")

        return None

    async def get_rate(
        self,
        source_currency: str,
        target_currency: str,
        on_date: date,
        tenant_id: Optional[str] = None,
    ) -> Optional[RateQuote]:
        async with self.ctx.unit_of_work() as uow:
            return await self.lookup(uow.session, source_currency, target_currency, on_date, tenant_id)

    async def select_rate(
        self,
        session: AsyncSession,
        revision,
        home_currency: str,
        tenant_id: str,
        explicit_rate: Optional[Decimal] = None,
        explicit_source: Optional[ExchangeRateSource] = None,
        rate_date: Optional[date] = None,
    ) -> RateQuote:
        """
        Rate for converting a revision, in priority order: explicit caller
        rate, a rate overridden on the draft, then the rate table for the
        supplied (or document) date and source.
        """
        on_date = rate_date or revision.document_date or date.today()

        if revision.currency == home_currency:
            return same_currency_quote(on_date)

        if explicit_rate is not None:
            return RateQuote(
                Decimal(explicit_rate), on_date,
                explicit_source or ExchangeRateSource.MANUAL, "caller", True,
            )

        if revision.is_home_exchange_rate_override and revision.home_exchange_rate is not None:
            return RateQuote(
                revision.home_exchange_rate,
                revision.exchange_rate_date or on_date,
                revision.home_exchange_rate_source or ExchangeRateSource.MANUAL,
                "draft",
                True,
            )

        quote = await self.lookup(
            session,
            revision.currency,
            home_currency,
            on_date,
            tenant_id,
            rate_type=SOURCE_RATE_TYPE.get(explicit_source) if explicit_source else None,
        )
        if quote is None:
            raise ValidationError(
                f"No exchange rate available for {revision.currency}/{home_currency} on {on_date}",
                details={"source_currency": revision.currency, "target_currency": home_currency},
            )
        return quote

    async def create_manual_rate(
        self,
        *,
        source_currency: str,
        target_currency: str,
        rate: Decimal,
        rate_date: date,
        actor: Actor,
        tenant_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ExchangeRate:
        """Add a MANUAL_RATE (tenant override, or system rate when tenant_id is None)."""
        if rate <= 0:
            raise ValidationError("Exchange rate must be positive")

        async with self.ctx.unit_of_work() as uow:
            result = await uow.session.execute(
                select(ExchangeRate).where(
                    ExchangeRate.tenant_id.is_(None) if tenant_id is None else ExchangeRate.tenant_id == tenant_id,
                    ExchangeRate.source_currency == source_currency,
                    ExchangeRate.target_currency == target_currency,
                    ExchangeRate.rate_date == rate_date,
                    ExchangeRate.rate_type == ExchangeRateType.MANUAL_RATE,
                )
            )
            if result.scalars().first() is not None:
                raise ValidationError(
                    f"A manual rate for {source_currency}/{target_currency} on {rate_date} already exists"
                )

            row = ExchangeRate(
                tenant_id=tenant_id,
                source_currency=source_currency,
                target_currency=target_currency,
                rate=rate,
                rate_date=rate_date,
                rate_type=ExchangeRateType.MANUAL_RATE,
                is_manual_override=True,
                manual_reason=reason,
                created_by=actor.user_id,
            )
            uow.session.add(row)
            await uow.session.flush()

        await self.ctx.audit.append(AuditEntry(
            tenant_id=tenant_id or "system",
            company_id="*",
            actor_id=actor.user_id,
            action="EXCHANGE_RATE_CREATED",
            entity_type="ExchangeRate",
            entity_id=str(row.id),
            summary=f"Created manual rate {source_currency}/{target_currency} = {rate}",
            metadata={"rate_date": rate_date.isoformat()},
        ))
        logger.info(
            "manual_rate_created",
            source_currency=source_currency,
            target_currency=target_currency,
            rate=str(rate),
            tenant_id=tenant_id,
        )
        return row
