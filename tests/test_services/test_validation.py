"""
Tests for revision validation rules.
"""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from docledger.models.enums import DocumentCategory, IssueSeverity, ValidationStatus
from docledger.services.validation import blocking_error_codes, validate_revision_data

TODAY = date(2024, 6, 1)


def _revision(**values):
    defaults = dict(
        vendor_name="Acme Supplies",
        document_date=date(2024, 3, 15),
        currency="SGD",
        document_category=DocumentCategory.INVOICE,
        subtotal=Decimal("100.00"),
        tax_amount=Decimal("9.00"),
        total_amount=Decimal("109.00"),
    )
    defaults.update(values)
    return SimpleNamespace(**defaults)


def _items(*amounts):
    return [SimpleNamespace(amount=Decimal(a)) for a in amounts]


def _codes(result):
    return [i.code for i in result.issues]


class TestValidateRevisionData:

    def test_clean_revision(self):
        result = validate_revision_data(_revision(), _items("60.00", "40.00"), today=TODAY)
        assert result.status == ValidationStatus.VALID
        assert result.issues == []

    def test_missing_vendor_is_warning(self):
        result = validate_revision_data(_revision(vendor_name="  "), [], today=TODAY)
        assert _codes(result) == ["MISSING_VENDOR"]
        assert result.status == ValidationStatus.WARNINGS
        assert result.issues[0].field == "vendor_name"

    def test_future_date(self):
        result = validate_revision_data(_revision(document_date=date(2024, 6, 2)), [], today=TODAY)
        assert _codes(result) == ["FUTURE_DATE"]

    @pytest.mark.parametrize("currency", ["sgd", "SG", "SGDX", "", None])
    def test_invalid_currency(self, currency):
        result = validate_revision_data(_revision(currency=currency), [], today=TODAY)
        assert _codes(result) == ["INVALID_CURRENCY"]
        assert result.status == ValidationStatus.INVALID

    def test_credit_note_must_be_negative(self):
        positive = _revision(
            document_category=DocumentCategory.CREDIT_NOTE, subtotal=None, tax_amount=None
        )
        negative = _revision(
            document_category=DocumentCategory.CREDIT_NOTE,
            subtotal=Decimal("-100.00"), tax_amount=Decimal("-9.00"), total_amount=Decimal("-109.00"),
        )
        assert _codes(validate_revision_data(positive, [], today=TODAY)) == ["CREDIT_NOTE_TOTAL_NOT_NEGATIVE"]
        assert validate_revision_data(negative, [], today=TODAY).status == ValidationStatus.VALID

    def test_line_sum_within_tolerance(self):
        result = validate_revision_data(_revision(), _items("60.00", "40.01"), today=TODAY)
        assert result.status == ValidationStatus.VALID

    def test_line_sum_mismatch(self):
        result = validate_revision_data(_revision(), _items("60.00", "40.02"), today=TODAY)
        assert _codes(result) == ["LINE_SUM_MISMATCH"]

    def test_line_sum_skipped_without_lines_or_subtotal(self):
        assert validate_revision_data(_revision(subtotal=None), _items("1.00"), today=TODAY).issues == []

    def test_header_arithmetic(self):
        result = validate_revision_data(_revision(total_amount=Decimal("110.00")), [], today=TODAY)
        assert _codes(result) == ["HEADER_ARITHMETIC_MISMATCH"]
        assert result.issues[0].severity == IssueSeverity.WARN

    def test_custom_tolerance(self):
        result = validate_revision_data(
            _revision(total_amount=Decimal("109.50")), [], today=TODAY, tolerance=Decimal("1")
        )
        assert result.issues == []


class TestBlockingErrorCodes:

    def test_only_errors_block(self):
        stored = [
            {"code": "MISSING_VENDOR", "severity": "WARN"},
            {"code": "INVALID_CURRENCY", "severity": "ERROR"},
        ]
        assert blocking_error_codes(stored) == ["INVALID_CURRENCY"]

    def test_nothing_stored(self):
        assert blocking_error_codes(None) == []
