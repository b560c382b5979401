"""
Amount parser for invoice and receipt text.

Handles the conventions seen on financial documents:
- SGD 1,234.56 / S$1,234.56 / 1234.56 USD
- (1,234.56)        -> negative (parentheses)
- 1,234.56 CR       -> negative (credit)
- -1,234.56         -> negative (leading minus)
- 1,234.56-         -> negative (trailing minus)
- 1.234,56          -> European separators
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel

CURRENCY_CODES = (
    "SGD", "USD", "EUR", "GBP", "MYR", "AUD", "NZD", "HKD", "JPY", "CNY",
    "RMB", "RM", "IDR", "THB", "PHP", "INR", "CAD", "CHF", "KRW", "TWD", "VND",
)

CODE_ALIASES = {"RMB": "CNY", "RM": "MYR"}

# Longest first so "S$" wins over "$"
CURRENCY_SYMBOLS = {
    "US$": "USD",
    "S$": "SGD",
    "A$": "AUD",
    "HK$": "HKD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "$": None,
}

_CODE_RE = re.compile(r"(?<![A-Za-z])(" + "|".join(CURRENCY_CODES) + r")(?![A-Za-z])", re.IGNORECASE)
# Not part of a reference like INV-001 or a date like 12/03/2024
_AMOUNT_IN_TEXT = re.compile(
    r"(?<![0-9\-/.,])\(?[-\u2212]?\d[\d,.]*\)?-?(?:\s?(?:CR|DR)\b)?(?![\w/])", re.IGNORECASE
)


class AmountParseResult(BaseModel):
    amount: Optional[Decimal] = None
    raw_text: str
    currency: Optional[str] = None
    is_negative: bool = False
    sign_convention: Optional[str] = None  # PARENTHESES, CR_DR, MINUS, NONE
    confidence: float = 0.0


def detect_currency(text: str) -> Optional[str]:
    """ISO code named in text, or implied by an unambiguous symbol."""
    m = _CODE_RE.search(text)
    if m:
        code = m.group(1).upper()
        return CODE_ALIASES.get(code, code)
    for symbol, code in CURRENCY_SYMBOLS.items():
        if code and symbol in text:
            return code
    return None


def parse_amount(raw: str) -> AmountParseResult:
    """
    Parse a monetary amount.
    """
    s = raw.strip()

    if not s or s in ('-', '--', '---'):
        return AmountParseResult(amount=None, raw_text=raw, confidence=0.0)

    currency = detect_currency(s)
    s = _CODE_RE.sub('', s)
    for symbol in CURRENCY_SYMBOLS:
        s = s.replace(symbol, '')
    s = s.strip()

    if not s:
        return AmountParseResult(amount=None, raw_text=raw, currency=currency, confidence=0.0)

    # Detect sign convention
    is_negative = False
    sign_convention = 'NONE'

    # Parentheses: (100.00) -> negative
    if s.startswith('(') and s.endswith(')'):
        s = s[1:-1].strip()
        is_negative = True
        sign_convention = 'PARENTHESES'

    # CR/DR suffix: on a supplier document CR marks a credit to the customer
    m = re.match(r'^(.+?)\s*(CR|DR)$', s, re.IGNORECASE)
    if m:
        s = m.group(1).strip()
        is_negative = m.group(2).upper() == 'CR'
        sign_convention = 'CR_DR'

    # Trailing minus: 100.00-
    if not is_negative and s.endswith('-'):
        s = s[:-1].strip()
        is_negative = True
        sign_convention = 'MINUS'

    # Leading minus: -100.00
    if not is_negative and (s.startswith('-') or s.startswith(chr(8722))):
        s = s[1:].strip()
        is_negative = True
        sign_convention = 'MINUS'

    s = _normalise_separators(s.replace(' ', ''))

    try:
        amount = Decimal(s)
    except (InvalidOperation, ValueError):
        return AmountParseResult(amount=None, raw_text=raw, currency=currency, confidence=0.0)

    if is_negative:
        amount = -amount

    confidence = 0.95 if sign_convention in ('NONE', 'PARENTHESES') else 0.90
    abs_amount = abs(amount)
    if abs_amount > Decimal('100000000'):
        confidence = 0.5  # Suspiciously large
    if abs_amount == Decimal('0'):
        confidence = 0.80

    return AmountParseResult(
        amount=amount,
        raw_text=raw,
        currency=currency,
        is_negative=is_negative,
        sign_convention=sign_convention,
        confidence=confidence,
    )


def _normalise_separators(s: str) -> str:
    """1,234.56 and 1.234,56 both become 1234.56."""
    if ',' in s and '.' in s:
        if s.rfind(',') > s.rfind('.'):
            return s.replace('.', '').replace(',', '.')
        return s.replace(',', '')
    if ',' in s:
        head, _, tail = s.rpartition(',')
        # A single comma followed by two digits is a decimal comma
        if len(tail) == 2 and ',' not in head:
            return f"{head}.{tail}"
        return s.replace(',', '')
    return s


def last_amount_in(text: str) -> Optional[AmountParseResult]:
    """Rightmost parseable amount in a line of text, e.g. 'Total due  SGD 1,070.00'."""
    for candidate in reversed(_AMOUNT_IN_TEXT.findall(text)):
        result = parse_amount(candidate)
        if result.amount is not None:
            if result.currency is None:
                result.currency = detect_currency(text)
            return result
    return None


def is_amount_like(text: str) -> bool:
    """Quick check if text looks like it could be a monetary amount."""
    text = text.strip()
    if not text:
        return False
    return parse_amount(text).amount is not None
