"""
Tests for home-currency conversion and exchange-rate selection.
"""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from docledger.errors import ValidationError
from docledger.models.enums import ExchangeRateSource, ExchangeRateType
from docledger.models.tables import ExchangeRate
from docledger.schemas.revisions import ApprovalInput, LineHomeOverride
from docledger.services.authz import SYSTEM_ACTOR
from docledger.services.currency import (
    ExchangeRateService,
    RateQuote,
    compute_home_amounts,
    convert_lines,
    resolve_home_value,
    round_half_up,
)
from docledger.services.revisions import RevisionManager

from conftest import TENANT, sample_proposal

INVOICE_DATE = date(2024, 3, 15)


def _line(line_no, amount, tax=None, home=None, overridden=False):
    return SimpleNamespace(
        line_no=line_no,
        amount=Decimal(amount),
        tax_amount=Decimal(tax) if tax is not None else None,
        home_amount=home,
        home_tax_amount=None,
        is_home_amount_override=overridden,
        is_home_tax_override=False,
    )


def _header(currency="USD", **values):
    defaults = dict(
        currency=currency,
        subtotal=Decimal("100.00"),
        tax_amount=Decimal("9.00"),
        total_amount=Decimal("109.00"),
        home_subtotal=None,
        home_tax_amount=None,
        home_equivalent=None,
        is_home_subtotal_override=False,
        is_home_tax_override=False,
        is_home_equivalent_override=False,
    )
    defaults.update(values)
    return SimpleNamespace(**defaults)


async def _add_rate(ctx, rate, on_date=INVOICE_DATE, rate_type=ExchangeRateType.DAILY_RATE, tenant_id=None,
                    source="USD", target="SGD"):
    async with ctx.unit_of_work() as uow:
        uow.session.add(ExchangeRate(
            tenant_id=tenant_id,
            source_currency=source,
            target_currency=target,
            rate=Decimal(rate),
            rate_date=on_date,
            rate_type=rate_type,
            is_manual_override=tenant_id is not None,
        ))


class TestRounding:

    @pytest.mark.parametrize("value, expected", [
        ("1.005", "1.01"),
        ("1.004", "1.00"),
        ("-1.005", "-1.01"),
        ("2.675", "2.68"),
    ])
    def test_round_half_up(self, value, expected):
        assert round_half_up(Decimal(value)) == Decimal(expected)


class TestResolveHomeValue:

    def test_computed_when_nothing_supplied(self):
        assert resolve_home_value(Decimal("135.00")) == (Decimal("135.00"), False)

    def test_supplied_beyond_tolerance_is_override(self):
        assert resolve_home_value(Decimal("135.00"), Decimal("135.01")) == (Decimal("135.01"), True)

    def test_supplied_within_tolerance_is_not(self):
        assert resolve_home_value(Decimal("135.00"), Decimal("135.004")) == (Decimal("135.00"), False)

    def test_stored_override_survives(self):
        assert resolve_home_value(Decimal("135.00"), stored=Decimal("140.00"), stored_override=True) == (
            Decimal("140.00"), True
        )

    def test_stored_value_without_flag_is_recomputed(self):
        assert resolve_home_value(Decimal("135.00"), stored=Decimal("140.00")) == (Decimal("135.00"), False)


class TestConvertLines:

    def test_residue_lands_on_first_line(self):
        items = [_line(1, "0.10"), _line(2, "0.10"), _line(3, "0.10")]
        lines = convert_lines(items, Decimal("1.555"), {})

        # 3 x 0.16 = 0.48 but 0.30 x 1.555 rounds to 0.47
        assert [l.home_amount for l in lines] == [Decimal("0.15"), Decimal("0.16"), Decimal("0.16")]

    def test_residue_skips_overridden_lines(self):
        items = [_line(1, "0.10"), _line(2, "0.10"), _line(3, "0.10"), _line(4, "0.10")]
        lines = convert_lines(items, Decimal("1.555"), {1: {"home_amount": Decimal("1.00")}})

        assert lines[0].home_amount == Decimal("1.00")
        assert lines[0].is_home_amount_override is True
        assert [l.home_amount for l in lines[1:]] == [Decimal("0.15"), Decimal("0.16"), Decimal("0.16")]

    def test_tax_is_converted(self):
        lines = convert_lines([_line(1, "10.00", tax="0.90")], Decimal("1.35"), {})
        assert (lines[0].home_amount, lines[0].home_tax_amount) == (Decimal("13.50"), Decimal("1.22"))


class TestComputeHomeAmounts:

    def test_same_currency_mirrors_amounts(self):
        quote = RateQuote(Decimal("1"), INVOICE_DATE, ExchangeRateSource.SAME_CURRENCY, "same_currency")
        amounts = compute_home_amounts(_header("SGD"), [_line(1, "100.00")], "SGD", quote, {"home_equivalent": Decimal("1")})

        assert amounts.home_equivalent == Decimal("109.00")
        assert amounts.is_home_equivalent_override is False
        assert amounts.quote.source == ExchangeRateSource.SAME_CURRENCY

    def test_foreign_currency(self):
        quote = RateQuote(Decimal("1.35"), INVOICE_DATE, ExchangeRateSource.SYSTEM_DAILY, "system")
        amounts = compute_home_amounts(
            _header(), [_line(1, "60.00"), _line(2, "40.00")], "SGD", quote,
            supplied_header={"home_equivalent": Decimal("147.20")},
        )

        assert amounts.home_subtotal == Decimal("135.00")
        assert amounts.home_tax_amount == Decimal("12.15")
        assert amounts.home_equivalent == Decimal("147.20")
        assert amounts.is_home_equivalent_override is True
        assert amounts.is_home_subtotal_override is False
        assert [l.home_amount for l in amounts.lines] == [Decimal("81.00"), Decimal("54.00")]


class TestRateLookup:

    async def test_exact_system_rate(self, ctx):
        await _add_rate(ctx, "1.35")
        quote = await ExchangeRateService(ctx).get_rate("USD", "SGD", INVOICE_DATE)

        assert quote.rate == Decimal("1.35")
        assert quote.source == ExchangeRateSource.SYSTEM_DAILY
        assert quote.origin == "system"
        assert quote.is_override is False

    async def test_daily_preferred_over_monthly(self, ctx):
        await _add_rate(ctx, "1.30", rate_type=ExchangeRateType.MONTHLY_RATE)
        await _add_rate(ctx, "1.35")
        quote = await ExchangeRateService(ctx).get_rate("USD", "SGD", INVOICE_DATE)
        assert quote.rate == Decimal("1.35")

    async def test_tenant_override_wins(self, ctx):
        await _add_rate(ctx, "1.35")
        await _add_rate(ctx, "1.40", rate_type=ExchangeRateType.MANUAL_RATE, tenant_id=TENANT)

        service = ExchangeRateService(ctx)
        tenant_quote = await service.get_rate("USD", "SGD", INVOICE_DATE, tenant_id=TENANT)
        other_quote = await service.get_rate("USD", "SGD", INVOICE_DATE, tenant_id="tenant-9")

        assert (tenant_quote.rate, tenant_quote.origin, tenant_quote.is_override) == (
            Decimal("1.40"), "tenant_override", True
        )
        assert other_quote.rate == Decimal("1.35")

    async def test_falls_back_to_latest_earlier_rate(self, ctx):
        await _add_rate(ctx, "1.31", on_date=date(2024, 3, 1))
        await _add_rate(ctx, "1.33", on_date=date(2024, 3, 12))
        await _add_rate(ctx, "1.39", on_date=date(2024, 3, 20))
        quote = await ExchangeRateService(ctx).get_rate("USD", "SGD", INVOICE_DATE)

        assert (quote.rate, quote.rate_date, quote.origin) == (Decimal("1.33"), date(2024, 3, 12), "fallback")

    async def test_nothing_available(self, ctx):
        assert await ExchangeRateService(ctx).get_rate("USD", "SGD", INVOICE_DATE) is None

    async def test_manual_system_rate(self, ctx, audit):
        service = ExchangeRateService(ctx)
        row = await service.create_manual_rate(
            source_currency="EUR", target_currency="SGD", rate=Decimal("1.45"),
            rate_date=INVOICE_DATE, actor=SYSTEM_ACTOR, reason="Bank rate",
        )
        assert row.tenant_id is None
        assert row.rate_type == ExchangeRateType.MANUAL_RATE
        assert audit.last("EXCHANGE_RATE_CREATED").entity_id == str(row.id)

        quote = await service.get_rate("EUR", "SGD", INVOICE_DATE)
        assert quote.source == ExchangeRateSource.MANUAL

        with pytest.raises(ValidationError):
            await service.create_manual_rate(
                source_currency="EUR", target_currency="SGD", rate=Decimal("1.46"),
                rate_date=INVOICE_DATE, actor=SYSTEM_ACTOR,
            )


class TestApprovalConversion:

    @pytest.fixture(autouse=True)
    def usd_invoice(self, capability):
        capability.proposal = sample_proposal(currency="USD")

    async def test_table_rate(self, ctx, extracted, actor):
        await _add_rate(ctx, "1.35")
        doc_id, rev_id = await extracted()

        result = await RevisionManager(ctx).approve_revision(
            doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput()
        )
        revision = result.revision

        assert revision.home_currency == "SGD"
        assert revision.home_exchange_rate == Decimal("1.35")
        assert revision.home_exchange_rate_source == ExchangeRateSource.SYSTEM_DAILY
        assert revision.exchange_rate_date == INVOICE_DATE
        assert revision.is_home_exchange_rate_override is False
        assert (revision.home_subtotal, revision.home_tax_amount, revision.home_equivalent) == (
            Decimal("135.00"), Decimal("12.15"), Decimal("147.15")
        )
        assert [i.home_amount for i in revision.items] == [Decimal("81.00"), Decimal("54.00")]

    async def test_caller_rate_and_overrides(self, ctx, extracted, actor):
        doc_id, rev_id = await extracted()

        result = await RevisionManager(ctx).approve_revision(
            doc_id, actor=actor, revision_id=rev_id,
            approval=ApprovalInput(
                exchange_rate=Decimal("1.36"),
                home_equivalent=Decimal("148.24"),
                line_overrides=[LineHomeOverride(line_no=2, home_amount=Decimal("55.00"))],
            ),
        )
        revision = result.revision

        assert revision.home_exchange_rate == Decimal("1.36")
        assert revision.home_exchange_rate_source == ExchangeRateSource.MANUAL
        assert revision.is_home_exchange_rate_override is True
        # 109.00 x 1.36 = 148.24, so the supplied value is not an override
        assert revision.is_home_equivalent_override is False
        assert [(i.home_amount, i.is_home_amount_override) for i in revision.items] == [
            (Decimal("81.60"), False),
            (Decimal("55.00"), True),
        ]

    async def test_missing_rate_blocks_approval(self, ctx, extracted, actor):
        doc_id, rev_id = await extracted()
        with pytest.raises(ValidationError):
            await RevisionManager(ctx).approve_revision(
                doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput()
            )
