"""
Day-first date parser for document header fields.

Strategy:
1. Try unambiguous formats first (named month, ISO)
2. For numeric formats: assume dd/mm
3. Flag dd/mm vs mm/dd ambiguity when both readings are valid
"""

import re
from datetime import date
from typing import Optional

from dateutil import parser as dateutil_parser
from pydantic import BaseModel


class DateParseResult(BaseModel):
    parsed_date: Optional[date] = None
    raw_text: str
    format_detected: str
    confidence: float
    is_ambiguous: bool
    ambiguity_note: Optional[str] = None


_MONTHS = r'(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)\w*'

# Ordered by specificity (try most specific first)
DATE_FORMATS = [
    # Unambiguous: named month
    (rf'(\d{{1,2}})(?:st|nd|rd|th)?[\s\-]+{_MONTHS},?[\s\-]+(\d{{4}})', 'DD_MON_YYYY', False),
    (rf'{_MONTHS}\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})', 'MON_DD_YYYY', False),
    (rf'(\d{{1,2}})[\s\-]+{_MONTHS}[\s\-]+(\d{{2}})\b', 'DD_MON_YY', False),

    # ISO format
    (r'(\d{4})-(\d{2})-(\d{2})', 'YYYY-MM-DD', False),
    (r'(\d{4})/(\d{2})/(\d{2})', 'YYYY/MM/DD', False),

    # Numeric, day first (potentially ambiguous)
    (r'(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})', 'DD/MM/YYYY', True),
    (r'(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2})\b', 'DD/MM/YY', True),
]


def parse_date(raw: str, reference: Optional[date] = None) -> DateParseResult:
    """
    Parse the first date found in raw.

    ``reference`` (usually today) is used to score implausible years.
    """
    raw_clean = raw.strip()
    reference = reference or date.today()

    for pattern, format_name, potentially_ambiguous in DATE_FORMATS:
        m = re.search(pattern, raw_clean, re.IGNORECASE)
        if not m:
            continue

        try:
            parsed = _parse_by_format(m, format_name)
        except (ValueError, OverflowError):
            continue

        if parsed is None:
            continue

        is_ambiguous = False
        ambiguity_note = None
        if potentially_ambiguous:
            day_val, month_val = int(m.group(1)), int(m.group(2))
            if day_val <= 12 and month_val <= 12 and day_val != month_val:
                is_ambiguous = True
                ambiguity_note = f"dd/mm vs mm/dd ambiguous ({m.group(1)}/{m.group(2)})"

        confidence = 0.95 if not is_ambiguous else 0.70
        if parsed.year > reference.year + 1:
            confidence = 0.3  # Future date is suspicious
        if parsed.year < 2000:
            confidence = 0.5  # Very old date

        return DateParseResult(
            parsed_date=parsed,
            raw_text=raw,
            format_detected=format_name,
            confidence=confidence,
            is_ambiguous=is_ambiguous,
            ambiguity_note=ambiguity_note,
        )

    return DateParseResult(
        parsed_date=None,
        raw_text=raw,
        format_detected="UNKNOWN",
        confidence=0.0,
        is_ambiguous=False,
    )


def _parse_by_format(match, format_name: str) -> Optional[date]:
    """Parse date from regex match based on detected format."""

    if format_name == 'YYYY-MM-DD' or format_name == 'YYYY/MM/DD':
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    if format_name == 'DD/MM/YYYY':
        return date(int(match.group(3)), int(match.group(2)), int(match.group(1)))

    if format_name == 'DD/MM/YY':
        yy = int(match.group(3))
        year = 1900 + yy if yy > 50 else 2000 + yy
        return date(year, int(match.group(2)), int(match.group(1)))

    if 'MON' in format_name:
        parsed = dateutil_parser.parse(match.group(0), dayfirst=True).date()
        if format_name == 'DD_MON_YY' and parsed.year < 1950:
            parsed = parsed.replace(year=parsed.year + 100)
        return parsed

    return None


def is_date_like(text: str) -> bool:
    """Quick check if text looks like it could be a date."""
    text = text.strip()
    if not text:
        return False
    date_patterns = [
        r'\d{1,2}[/\-\.]\d{1,2}[/\-\.]\d{2,4}',
        r'\d{1,2}\s+(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)',
        r'\d{4}-\d{2}-\d{2}',
    ]
    return any(re.search(p, text, re.IGNORECASE) for p in date_patterns)
