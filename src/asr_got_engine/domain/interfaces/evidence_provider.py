"""Interface for evidence search providers."""
from typing import List, Protocol

from pydantic import BaseModel, Field

from ..models.graph_elements import SourceReference


class SearchRequest(BaseModel):
    query: str
    focus: str = ""
    recent_only: bool = False


class SearchResult(BaseModel):
    text: str = ""
    sources: List[SourceReference] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class EvidenceProvider(Protocol):
    """A search provider used to gather evidence for hypotheses."""

    async def search(self, request: SearchRequest) -> SearchResult:
        """Return search results for the given request."""
        ...
