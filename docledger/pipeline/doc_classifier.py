"""
Document category classification from page text.
Keyword scoring; the highest-scoring category wins, INVOICE by default.
"""

import re

from pydantic import BaseModel

from docledger.models.enums import DocumentCategory


class ClassificationResult(BaseModel):
    category: DocumentCategory = DocumentCategory.INVOICE
    confidence: float = 0.0
    signals: list[str] = []


CATEGORY_KEYWORDS: dict[DocumentCategory, list[str]] = {
    DocumentCategory.CREDIT_NOTE: [
        r"credit\s+note",
        r"credit\s+memo",
        r"\bcn\s*(no|number|#)",
        r"amount\s+credited",
    ],
    DocumentCategory.DEBIT_NOTE: [
        r"debit\s+note",
        r"debit\s+memo",
        r"\bdn\s*(no|number|#)",
    ],
    DocumentCategory.RECEIPT: [
        r"\breceipt\b",
        r"amount\s+received",
        r"payment\s+received",
        r"\bchange\s+due\b",
    ],
    DocumentCategory.PURCHASE_ORDER: [
        r"purchase\s+order",
        r"\bpo\s*(no|number|#)",
        r"delivery\s+instructions",
    ],
    DocumentCategory.STATEMENT: [
        r"statement\s+of\s+account",
        r"account\s+statement",
        r"opening\s+balance",
        r"closing\s+balance",
        r"balance\s+brought\s+forward",
    ],
    DocumentCategory.INVOICE: [
        r"tax\s+invoice",
        r"\binvoice\b",
        r"amount\s+due",
        r"payment\s+terms",
        r"due\s+date",
    ],
}

# Score needed before a non-default category is chosen
MIN_SCORE = 0.3
SIGNAL_WEIGHT = 0.3


def classify_document(page_texts: list[str]) -> ClassificationResult:
    """
    Classify a document into a DocumentCategory.
    Examines all page text for classification signals.
    """
    combined_text = " ".join(page_texts).lower()
    signals = []
    scores: dict[DocumentCategory, float] = {}

    for category, patterns in CATEGORY_KEYWORDS.items():
        score = 0.0
        for pattern in patterns:
            if re.search(pattern, combined_text, re.IGNORECASE):
                score += SIGNAL_WEIGHT
                signals.append(f"{category.value}:{pattern[:30]}")
        scores[category] = min(score, 1.0)

    # "Tax invoice" headers also appear on credit notes; specific categories win ties
    best = max(scores, key=lambda c: (scores[c], c != DocumentCategory.INVOICE))
    if scores[best] < MIN_SCORE:
        return ClassificationResult(
            category=DocumentCategory.INVOICE,
            confidence=scores[DocumentCategory.INVOICE],
            signals=signals,
        )
    return ClassificationResult(category=best, confidence=scores[best], signals=signals)
