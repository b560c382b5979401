"""
Abstract base class for extraction capabilities.
OCR/AI extraction runs outside this service; a capability adapter submits
document bytes and returns an ExtractionProposal.
"""

from abc import ABC, abstractmethod

from docledger.schemas.contracts import ExtractionContext, ExtractionProposal


class ExtractionCapability(ABC):
    """
    Every capability must:
    1. Accept document bytes plus an ExtractionContext
    2. Return an ExtractionProposal
    3. Report its name and version
    4. Raise ExtractionError on failure, flagging whether a retry can help
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier, e.g. 'stub', 'document_ai'."""
        ...

    @property
    @abstractmethod
    def version(self) -> str:
        ...

    @abstractmethod
    async def submit(self, content: bytes, context: ExtractionContext) -> ExtractionProposal:
        """
        Run extraction on the document bytes.
        Must raise ExtractionError on failure (never return partial/corrupt data).
        """
        ...

    async def health_check(self) -> bool:
        return True


class ExtractionError(Exception):
    """Raised when an extraction capability fails."""

    def __init__(self, capability: str, error_code: str, message: str, retryable: bool = True):
        self.capability = capability
        self.error_code = error_code
        self.message = message
        self.retryable = retryable
        super().__init__(f"[{capability}] {error_code}: {message}")
