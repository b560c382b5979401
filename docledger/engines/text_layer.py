"""
Text-layer extraction capability.
Reads embedded PDF text with pdfplumber and proposes header fields from
labelled lines ("Invoice No", "Total", ...). Scanned documents without a
text layer fail non-retryably so a human or an OCR capability takes over.
"""

import asyncio
import io
import re
from decimal import Decimal
from typing import Optional

import pdfplumber
import structlog
from pdfminer.pdfparser import PDFSyntaxError
from pdfplumber.utils.exceptions import PdfminerException

from docledger.engines.base import ExtractionCapability, ExtractionError
from docledger.pipeline.amount_parser import detect_currency, last_amount_in
from docledger.pipeline.date_parser import parse_date
from docledger.pipeline.doc_classifier import classify_document
from docledger.schemas.contracts import (
    ExtractionContext,
    ExtractionProposal,
    FieldEvidence,
)

logger = structlog.get_logger(__name__)

PDF_MIME = "application/pdf"
TEXT_CONFIDENCE = 0.95

_NUMBER_LABEL = re.compile(
    r"(?:invoice|inv|credit\s+note|debit\s+note|receipt|document|bill|po)\s*"
    r"(?:no\.?|number|#)\s*[:.]?\s*([A-Z0-9][A-Z0-9\-/]*)",
    re.IGNORECASE,
)
_DUE_LABEL = re.compile(r"\b(?:due\s+date|payment\s+due|due\s+on)\b", re.IGNORECASE)
_DATE_LABEL = re.compile(r"\b(?:invoice\s+date|document\s+date|date\s+of\s+issue|date)\b", re.IGNORECASE)
_SUBTOTAL_LABEL = re.compile(r"\b(?:sub[\s\-]?total|total\s+before\s+tax|net\s+amount)\b", re.IGNORECASE)
_TAX_LABEL = re.compile(r"\b(?:gst|vat|sst|tax)\b", re.IGNORECASE)
_TOTAL_LABEL = re.compile(r"\b(?:grand\s+total|total\s+due|amount\s+due|total\s+payable|total)\b", re.IGNORECASE)


class _Line:
    __slots__ = ("text", "page_number", "bbox")

    def __init__(self, text: str, page_number: int, bbox: list[float]):
        self.text = text
        self.page_number = page_number
        self.bbox = bbox


def _build_lines(words: list[dict], page_number: int, width: float, height: float,
                 y_tolerance: float = 3.0) -> list[_Line]:
    """
    Cluster words into lines by their top coordinate.
    Bboxes are normalised to 0-1 page space.
    """
    if not words:
        return []

    ordered = sorted(words, key=lambda w: (w["top"], w["x0"]))
    groups = [[ordered[0]]]
    for word in ordered[1:]:
        if abs(word["top"] - groups[-1][0]["top"]) <= y_tolerance:
            groups[-1].append(word)
        else:
            groups.append([word])

    lines = []
    for group in groups:
        group.sort(key=lambda w: w["x0"])
        lines.append(_Line(
            text=" ".join(w["text"] for w in group),
            page_number=page_number,
            bbox=[
                round(min(w["x0"] for w in group) / width, 6),
                round(min(w["top"] for w in group) / height, 6),
                round(max(w["x1"] for w in group) / width, 6),
                round(max(w["bottom"] for w in group) / height, 6),
            ],
        ))
    return lines


def _evidence(line: _Line, confidence: float = TEXT_CONFIDENCE) -> FieldEvidence:
    return FieldEvidence(page_number=line.page_number, text=line.text, bbox=line.bbox, confidence=confidence)


def _read_pages(content: bytes) -> list[list[_Line]]:
    pages = []
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        for index, page in enumerate(pdf.pages):
            words = page.extract_words(x_tolerance=3, y_tolerance=3, keep_blank_chars=False)
            words = [w for w in words if w.get("text", "").strip()]
            pages.append(_build_lines(words, index + 1, float(page.width), float(page.height)))
    return pages


def _first_amount(lines: list[_Line], label: re.Pattern, exclude: Optional[re.Pattern] = None):
    """Bottom-most labelled line carrying an amount; totals sit at the foot of the page."""
    for line in reversed(lines):
        if not label.search(line.text):
            continue
        if exclude is not None and exclude.search(line.text):
            continue
        parsed = last_amount_in(line.text)
        if parsed is not None:
            return parsed, line
    return None, None


def _suggest_splits(pages: list[list[_Line]]) -> list[tuple[int, int]]:
    """
    Page ranges that start whenever a new document number appears.
    Returns an empty list when the file looks like a single document.
    """
    starts: list[int] = []
    seen: set[str] = set()
    for page_lines in pages:
        if not page_lines:
            continue
        for line in page_lines[:15]:
            m = _NUMBER_LABEL.search(line.text)
            if m:
                number = m.group(1).upper()
                if number not in seen:
                    seen.add(number)
                    starts.append(page_lines[0].page_number)
                break
    if len(starts) < 2:
        return []
    ranges = []
    for i, start in enumerate(starts):
        end = starts[i + 1] - 1 if i + 1 < len(starts) else len(pages)
        ranges.append((start, end))
    if ranges[0][0] != 1:
        ranges[0] = (1, ranges[0][1])
    return ranges


class TextLayerCapability(ExtractionCapability):
    """Header-field extraction from PDFs with an embedded text layer."""

    @property
    def name(self) -> str:
        return "text_layer"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def submit(self, content: bytes, context: ExtractionContext) -> ExtractionProposal:
        if context.mime_type != PDF_MIME:
            raise ExtractionError(
                self.name, "UNSUPPORTED_MEDIA",
                f"Text-layer extraction needs a PDF, got {context.mime_type}",
                retryable=False,
            )

        try:
            pages = await asyncio.to_thread(_read_pages, content)
        except (PDFSyntaxError, PdfminerException) as e:
            raise ExtractionError(self.name, "UNREADABLE_PDF", str(e), retryable=False) from e

        lines = [line for page_lines in pages for line in page_lines]
        if not lines:
            raise ExtractionError(self.name, "NO_TEXT_LAYER", "Document has no embedded text", retryable=False)

        proposal = self._propose(pages, lines, context)
        logger.info(
            "text_layer_extraction_complete",
            document_id=str(context.document_id),
            page_count=len(pages),
            line_count=len(lines),
            fields=sorted(proposal.evidence),
        )
        return proposal

    def _propose(self, pages: list[list[_Line]], lines: list[_Line], context: ExtractionContext) -> ExtractionProposal:
        values: dict = {"capability": self.name, "capability_version": self.version}
        evidence: dict[str, FieldEvidence] = {}

        classification = classify_document([line.text for line in lines])
        values["document_category"] = classification.category

        # Vendor letterhead is normally the first line of the first page
        first = lines[0]
        values["vendor_name"] = first.text[:255]
        evidence["vendor_name"] = _evidence(first, 0.6)

        for line in lines:
            m = _NUMBER_LABEL.search(line.text)
            if m:
                values["document_number"] = m.group(1)
                evidence["document_number"] = _evidence(line)
                break

        for line in lines:
            if _DUE_LABEL.search(line.text):
                parsed = parse_date(line.text)
                if parsed.parsed_date:
                    values["due_date"] = parsed.parsed_date
                    evidence["due_date"] = _evidence(line, parsed.confidence)
                    break

        for line in lines:
            if _DATE_LABEL.search(line.text) and not _DUE_LABEL.search(line.text):
                parsed = parse_date(line.text)
                if parsed.parsed_date:
                    values["document_date"] = parsed.parsed_date
                    evidence["document_date"] = _evidence(line, parsed.confidence)
                    break

        subtotal, subtotal_line = _first_amount(lines, _SUBTOTAL_LABEL)
        if subtotal is not None:
            values["subtotal"] = subtotal.amount
            evidence["subtotal"] = _evidence(subtotal_line, subtotal.confidence)

        tax, tax_line = _first_amount(lines, _TAX_LABEL, exclude=_TOTAL_LABEL)
        if tax is not None:
            values["tax_amount"] = tax.amount
            evidence["tax_amount"] = _evidence(tax_line, tax.confidence)

        total, total_line = _first_amount(lines, _TOTAL_LABEL, exclude=_SUBTOTAL_LABEL)
        if total is not None:
            values["total_amount"] = total.amount
            evidence["total_amount"] = _evidence(total_line, total.confidence)
        elif subtotal is not None:
            values["total_amount"] = subtotal.amount + (tax.amount if tax is not None else Decimal("0"))

        currency = (total.currency if total is not None else None) or detect_currency(
            " ".join(line.text for line in lines[:40])
        )
        hinted = context.options.hints.get("currency")
        if currency:
            values["currency"] = currency
            source_line = total_line if total is not None and total.currency else first
            evidence["currency"] = _evidence(source_line, 0.8)
        elif hinted:
            values["currency"] = str(hinted).upper()

        values["evidence"] = evidence
        values["split_suggestions"] = _suggest_splits(pages) if context.options.detect_split else []
        return ExtractionProposal(**values)
