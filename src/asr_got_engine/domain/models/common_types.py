"""
Common type definitions shared by the engine, the stages and the callers.
Kept separate from the graph models to avoid circular imports.
"""

import datetime
import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr

from .graph_elements import Edge, Hyperedge, Node


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class StageStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    FALLBACK = "fallback"


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def as_dict(self) -> Dict[str, int]:
        return {"input": self.input, "output": self.output, "total": self.total}


class StageResult(BaseModel):
    """Aggregated outcome of one stage execution."""

    stage: int
    content: str = ""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    hyperedges: List[Hyperedge] = Field(default_factory=list)
    status: StageStatus = StageStatus.COMPLETED
    timestamp: datetime.datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ResearchContext(BaseModel):
    """Accumulated research framing. Lists only ever grow within one run."""

    field: str = ""
    topic: str = ""
    objectives: List[str] = Field(default_factory=list)
    hypotheses: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    biases_detected: List[str] = Field(default_factory=list)
    knowledge_gaps: List[str] = Field(default_factory=list)

    def extend(self, attribute: str, values: List[str]) -> None:
        current: List[str] = getattr(self, attribute)
        for value in values:
            if value and value not in current:
                current.append(value)


class StageExecutionContext(BaseModel):
    """Audit record for a single stage execution."""

    stage_id: int
    stage_name: str
    input_query: str
    api_calls_made: int = 0
    tokens_consumed: int = 0
    confidence_achieved: float = 0.0
    status: StageStatus = StageStatus.COMPLETED
    error_message: Optional[str] = None
    output_summary: str = ""
    started_at: datetime.datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime.datetime] = None


class ApiCredentials(BaseModel):
    """
    Opaque credentials for the external services.

    Values are ``SecretStr`` so they never appear in reprs, logs or dumps.
    """

    reasoning_api_key: Optional[SecretStr] = None
    search_api_key: Optional[SecretStr] = None

    @classmethod
    def from_env(cls) -> "ApiCredentials":
        reasoning = os.getenv("GEMINI_API_KEY")
        search = os.getenv("PERPLEXITY_API_KEY")
        return cls(
            reasoning_api_key=SecretStr(reasoning) if reasoning else None,
            search_api_key=SecretStr(search) if search else None,
        )

    @property
    def has_search(self) -> bool:
        return bool(
            self.search_api_key and self.search_api_key.get_secret_value().strip()
        )
