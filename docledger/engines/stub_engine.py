"""
Stub extraction capability for exercising pipeline plumbing.
Returns a fixed proposal without reading the document.
"""

from typing import Optional

from docledger.engines.base import ExtractionCapability
from docledger.schemas.contracts import ExtractionContext, ExtractionProposal


class StubCapability(ExtractionCapability):
    """Fake adapter that returns a canned (by default empty) proposal."""

    def __init__(self, proposal: Optional[ExtractionProposal] = None):
        self.proposal = proposal
        self.submissions: list[ExtractionContext] = []

    @property
    def name(self) -> str:
        return "stub"

    @property
    def version(self) -> str:
        return "0.1.0"

    async def submit(self, content: bytes, context: ExtractionContext) -> ExtractionProposal:
        self.submissions.append(context)
        proposal = self.proposal or ExtractionProposal()
        return proposal.model_copy(
            update={"capability": self.name, "capability_version": self.version}
        )
