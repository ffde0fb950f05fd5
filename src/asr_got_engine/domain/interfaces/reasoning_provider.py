"""Interface for the external reasoning service."""
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel


class ReasoningCapability(str, Enum):
    THINKING_ONLY = "thinking-only"
    THINKING_STRUCTURED = "thinking-structured"
    THINKING_SEARCH = "thinking-search"
    THINKING_CODE = "thinking-code"


class ReasoningRequest(BaseModel):
    prompt: str
    capability: ReasoningCapability = ReasoningCapability.THINKING_ONLY
    output_schema: Optional[Dict[str, Any]] = None
    max_tokens: int = 2000
    temperature: float = 0.2


class ReasoningResponse(BaseModel):
    text: str
    finish_reason: str = "stop"
    structured: Optional[Any] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def truncated(self) -> bool:
        return self.finish_reason.lower() in ("length", "max_tokens")


class ReasoningProvider(Protocol):
    """A reasoning model endpoint."""

    async def generate(self, request: ReasoningRequest) -> ReasoningResponse:
        """Return the model's response to ``request``."""
        ...


def estimate_tokens(text: str) -> int:
    """Rough token estimate (four characters per token)."""
    return max(1, -(-len(text) // 4))

