"""
Tests for the document amount parser.
"""

from decimal import Decimal

from docledger.pipeline.amount_parser import detect_currency, is_amount_like, last_amount_in, parse_amount


class TestParseAmount:
    """Test amount parsing and sign conventions."""

    def test_simple_amount(self):
        result = parse_amount("1234.56")
        assert result.amount == Decimal("1234.56")
        assert not result.is_negative
        assert result.sign_convention == "NONE"

    def test_with_commas(self):
        result = parse_amount("1,234,567.89")
        assert result.amount == Decimal("1234567.89")

    def test_currency_code_prefix(self):
        result = parse_amount("SGD 1,234.56")
        assert result.amount == Decimal("1234.56")
        assert result.currency == "SGD"

    def test_currency_symbol(self):
        result = parse_amount("S$500.00")
        assert result.amount == Decimal("500.00")
        assert result.currency == "SGD"

    def test_code_alias(self):
        result = parse_amount("RM 250")
        assert result.amount == Decimal("250")
        assert result.currency == "MYR"

    def test_parentheses_negative(self):
        result = parse_amount("(500.00)")
        assert result.amount == Decimal("-500.00")
        assert result.is_negative
        assert result.sign_convention == "PARENTHESES"

    def test_cr_suffix_is_credit(self):
        result = parse_amount("100.00 CR")
        assert result.amount == Decimal("-100.00")
        assert result.sign_convention == "CR_DR"

    def test_dr_suffix_stays_positive(self):
        result = parse_amount("100.00 DR")
        assert result.amount == Decimal("100.00")
        assert not result.is_negative

    def test_trailing_minus(self):
        result = parse_amount("75.50-")
        assert result.amount == Decimal("-75.50")
        assert result.sign_convention == "MINUS"

    def test_leading_minus(self):
        assert parse_amount("-75.50").amount == Decimal("-75.50")

    def test_european_separators(self):
        assert parse_amount("1.234,56").amount == Decimal("1234.56")

    def test_decimal_comma(self):
        assert parse_amount("12,50").amount == Decimal("12.50")

    def test_thousands_comma_only(self):
        assert parse_amount("1,234").amount == Decimal("1234")

    def test_zero_has_lower_confidence(self):
        result = parse_amount("0.00")
        assert result.amount == Decimal("0.00")
        assert result.confidence == 0.80

    def test_empty_string(self):
        assert parse_amount("").amount is None

    def test_dash_only(self):
        assert parse_amount("-").amount is None

    def test_code_without_number(self):
        result = parse_amount("USD")
        assert result.amount is None
        assert result.currency == "USD"


class TestLastAmountIn:
    """Test amount extraction from a line of document text."""

    def test_total_line(self):
        result = last_amount_in("Total due  SGD 1,070.00")
        assert result.amount == Decimal("1070.00")
        assert result.currency == "SGD"

    def test_rightmost_amount_wins(self):
        result = last_amount_in("GST 9% 9.00")
        assert result.amount == Decimal("9.00")

    def test_ignores_references_and_dates(self):
        assert last_amount_in("Invoice INV-001 dated 12/03/2024") is None

    def test_no_amount(self):
        assert last_amount_in("Thank you for your business") is None


class TestDetectCurrency:

    def test_code(self):
        assert detect_currency("Amount payable in usd") == "USD"

    def test_symbol(self):
        assert detect_currency("Total £45.00") == "GBP"

    def test_bare_dollar_is_ambiguous(self):
        assert detect_currency("Total $45.00") is None


class TestIsAmountLike:
    """Test quick amount pattern check."""

    def test_simple_number(self):
        assert is_amount_like("1234.56")

    def test_with_cr(self):
        assert is_amount_like("100.00 CR")

    def test_parentheses(self):
        assert is_amount_like("(500.00)")

    def test_not_amount(self):
        assert not is_amount_like("hello world")

    def test_empty(self):
        assert not is_amount_like("")
