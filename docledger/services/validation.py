"""
Revision validation.
Deterministic and side-effect free: callers decide whether to persist
the result.
"""

import re
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from docledger.config import settings
from docledger.models.enums import DocumentCategory, IssueSeverity, ValidationStatus
from docledger.schemas.revisions import ValidationIssue, ValidationResult

CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

ISSUE_CATALOG = {
    "MISSING_VENDOR": (IssueSeverity.WARN, "Vendor name is missing"),
    "FUTURE_DATE": (IssueSeverity.WARN, "Document date is in the future"),
    "INVALID_CURRENCY": (IssueSeverity.ERROR, "Currency code is invalid"),
    "CREDIT_NOTE_TOTAL_NOT_NEGATIVE": (IssueSeverity.ERROR, "Credit note total must be negative"),
    "LINE_SUM_MISMATCH": (IssueSeverity.WARN, "Sum of line items does not match subtotal"),
    "HEADER_ARITHMETIC_MISMATCH": (IssueSeverity.WARN, "Header amounts do not compute correctly"),
}


def _issue(code: str, field: Optional[str] = None) -> ValidationIssue:
    severity, message = ISSUE_CATALOG[code]
    return ValidationIssue(code=code, severity=severity, message=message, field=field)


def validate_revision_data(
    revision,
    items: Iterable,
    today: Optional[date] = None,
    tolerance: Optional[Decimal] = None,
) -> ValidationResult:
    """
    Check a revision's header and line items.

    ``revision`` and ``items`` only need the header/line attributes, so ORM
    rows and pydantic models both work.
    """
    today = today or date.today()
    tolerance = tolerance if tolerance is not None else Decimal(str(settings.AMOUNT_TOLERANCE))
    items = list(items)
    issues: list[ValidationIssue] = []

    if not (revision.vendor_name or "").strip():
        issues.append(_issue("MISSING_VENDOR", "vendor_name"))

    if revision.document_date and revision.document_date > today:
        issues.append(_issue("FUTURE_DATE", "document_date"))

    if not CURRENCY_RE.match(revision.currency or ""):
        issues.append(_issue("INVALID_CURRENCY", "currency"))

    total = revision.total_amount
    if revision.document_category == DocumentCategory.CREDIT_NOTE and total is not None and total > 0:
        issues.append(_issue("CREDIT_NOTE_TOTAL_NOT_NEGATIVE", "total_amount"))

    if items and revision.subtotal is not None:
        line_sum = sum((Decimal(item.amount) for item in items), Decimal("0"))
        if abs(line_sum - revision.subtotal) > tolerance:
            issues.append(_issue("LINE_SUM_MISMATCH", "subtotal"))

    if revision.subtotal is not None and revision.tax_amount is not None and total is not None:
        if abs(revision.subtotal + revision.tax_amount - total) > tolerance:
            issues.append(_issue("HEADER_ARITHMETIC_MISMATCH", "total_amount"))

    if any(i.severity == IssueSeverity.ERROR for i in issues):
        status = ValidationStatus.INVALID
    elif issues:
        status = ValidationStatus.WARNINGS
    else:
        status = ValidationStatus.VALID

    return ValidationResult(status=status, issues=issues)


def blocking_error_codes(stored_issues: Optional[list]) -> list[str]:
    """Codes of ERROR-severity issues in a stored validation_issues list."""
    return [
        issue["code"]
        for issue in (stored_issues or [])
        if issue.get("severity") == IssueSeverity.ERROR.value
    ]
