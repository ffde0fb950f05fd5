from .evidence_provider import EvidenceProvider, SearchRequest, SearchResult
from .reasoning_provider import (
    ReasoningCapability,
    ReasoningProvider,
    ReasoningRequest,
    ReasoningResponse,
)

__all__ = [
    "EvidenceProvider",
    "ReasoningCapability",
    "ReasoningProvider",
    "ReasoningRequest",
    "ReasoningResponse",
    "SearchRequest",
    "SearchResult",
]
