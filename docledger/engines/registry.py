"""
Extraction capability registry.
EXTRACTION_CAPABILITY in settings names the adapter the worker uses.
"""

from docledger.engines.base import ExtractionCapability
from docledger.engines.stub_engine import StubCapability
from docledger.engines.text_layer import TextLayerCapability

CAPABILITIES: dict[str, type[ExtractionCapability]] = {
    "stub": StubCapability,
    "text_layer": TextLayerCapability,
}


def get_capability(name: str) -> ExtractionCapability:
    try:
        return CAPABILITIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown extraction capability '{name}'. Known: {', '.join(sorted(CAPABILITIES))}"
        ) from None
