"""
Python enums for stored status and type columns.
Names and values are the machine-readable values exposed by the API.
"""

from enum import Enum


class PipelineStatus(str, Enum):
    UPLOADED = "UPLOADED"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SPLIT_PENDING = "SPLIT_PENDING"
    SPLIT_DONE = "SPLIT_DONE"
    EXTRACTION_DONE = "EXTRACTION_DONE"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_PERMANENT = "FAILED_PERMANENT"
    DEAD_LETTER = "DEAD_LETTER"


class DuplicateStatus(str, Enum):
    NONE = "NONE"
    SUSPECTED = "SUSPECTED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class DuplicateAction(str, Enum):
    CONFIRM_DUPLICATE = "CONFIRM_DUPLICATE"
    REJECT_DUPLICATE = "REJECT_DUPLICATE"
    MARK_AS_NEW_VERSION = "MARK_AS_NEW_VERSION"


class RevisionStatus(str, Enum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    SUPERSEDED = "SUPERSEDED"


class RevisionType(str, Enum):
    EXTRACTION = "EXTRACTION"
    USER_EDIT = "USER_EDIT"
    REPROCESS = "REPROCESS"


class DocumentCategory(str, Enum):
    INVOICE = "INVOICE"
    CREDIT_NOTE = "CREDIT_NOTE"
    DEBIT_NOTE = "DEBIT_NOTE"
    RECEIPT = "RECEIPT"
    STATEMENT = "STATEMENT"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    OTHER = "OTHER"


class ValidationStatus(str, Enum):
    PENDING = "PENDING"
    VALID = "VALID"
    WARNINGS = "WARNINGS"
    INVALID = "INVALID"


class IssueSeverity(str, Enum):
    WARN = "WARN"
    ERROR = "ERROR"


class ExchangeRateSource(str, Enum):
    SAME_CURRENCY = "SAME_CURRENCY"
    MANUAL = "MANUAL"
    SYSTEM_DAILY = "SYSTEM_DAILY"
    SYSTEM_MONTHLY_AVG = "SYSTEM_MONTHLY_AVG"
    PROVIDER_DEFAULT = "PROVIDER_DEFAULT"
    DOCUMENT = "DOCUMENT"


class ExchangeRateType(str, Enum):
    DAILY_RATE = "DAILY_RATE"
    MONTHLY_RATE = "MONTHLY_RATE"
    MANUAL_RATE = "MANUAL_RATE"


class AliasLearningMode(str, Enum):
    AUTO = "AUTO"
    FORCE = "FORCE"
    SKIP = "SKIP"


class AliasStrategy(str, Enum):
    ALIAS = "ALIAS"
    CONTACT = "CONTACT"
    NONE = "NONE"


class DocumentLinkType(str, Enum):
    PO_TO_DN = "PO_TO_DN"
    PO_TO_INVOICE = "PO_TO_INVOICE"
    DN_TO_INVOICE = "DN_TO_INVOICE"
    INVOICE_TO_CN = "INVOICE_TO_CN"
    INVOICE_TO_DN_ADJ = "INVOICE_TO_DN_ADJ"
    QUOTE_TO_PO = "QUOTE_TO_PO"
    CONTRACT_TO_PO = "CONTRACT_TO_PO"
    RELATED = "RELATED"
    SPLIT = "SPLIT"


class StateEventType(str, Enum):
    TRANSITION = "TRANSITION"
    FAILURE = "FAILURE"
    SPLIT = "SPLIT"
    APPEND = "APPEND"
    ROTATE = "ROTATE"
    REORDER = "REORDER"
    DELETE_PAGES = "DELETE_PAGES"
    DUPLICATE_DECISION = "DUPLICATE_DECISION"
    SOFT_DELETE = "SOFT_DELETE"
