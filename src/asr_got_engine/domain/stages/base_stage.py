import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger  # type: ignore
from pydantic import BaseModel, Field

from ...config import EngineSettings
from ...services.call_router import ExternalCallRouter
from ..models.common import ConfidenceVector
from ..models.common_types import ResearchContext
from ..models.graph_elements import Edge, EdgeType, Node, ResearchGraph
from ..utils.response_parser import ResponseParser


class StageOutput(BaseModel):
    """Standard output structure for each stage."""

    summary: str = ""
    content: str = ""
    metrics: Dict[str, Any] = Field(default_factory=dict)
    fallback_used: bool = False


@dataclass
class StageState:
    """Working copy a stage mutates. Committed by the engine only on success."""

    session_id: str
    query: str
    graph: ResearchGraph
    research_context: ResearchContext


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_") or "item"


class BaseStage(ABC):
    """Abstract Base Class for all stages in the ASR-GoT pipeline."""

    stage_name: str = "UnknownStage"  # Override in subclasses
    stage_number: int = 0

    def __init__(
        self,
        settings: EngineSettings,
        router: ExternalCallRouter,
        parser: Optional[ResponseParser] = None,
    ):
        self.settings = settings
        self.params = settings.pipeline
        self.router = router
        self.parser = parser or ResponseParser()
        logger.debug(f"Initialized stage: {self.stage_name}")  # type: ignore

    @abstractmethod
    async def execute(self, state: StageState) -> StageOutput:
        """
        Executes the logic for this stage against ``state``.

        Implementations mutate ``state.graph`` and ``state.research_context``
        in place and return the stage's content and metrics. External calls go
        through ``self.router``.
        """
        raise NotImplementedError("Subclasses must implement execute method")

    def fallback(self, state: StageState) -> StageOutput:
        """Deterministic heuristic used when the cost guardrail refuses calls."""
        raise NotImplementedError(f"{self.stage_name} has no fallback heuristic")

    # -- graph helpers --
    def _add_node(self, state: StageState, node: Node) -> Node:
        node.stage_of_origin = self.stage_number
        return state.graph.add_node(node)

    def _link(
        self,
        state: StageState,
        source_id: str,
        target_id: str,
        edge_type: EdgeType,
        confidence: float,
        **metadata: Any,
    ) -> Edge:
        edge = Edge(
            id=f"e_{source_id}_{edge_type.value}_{target_id}",
            source_id=source_id,
            target_id=target_id,
            type=edge_type,
            confidence=confidence,
            stage_of_origin=self.stage_number,
        )
        for key, value in metadata.items():
            setattr(edge.metadata, key, value)
        return state.graph.add_edge(edge)

    @staticmethod
    def _vector(values: list[float]) -> ConfidenceVector:
        return ConfidenceVector.from_list(values)

    # -- logging --
    def _log_start(self, session_id: Optional[str]):
        logger.info(
            f"[Session: {session_id or 'N/A'}] >>> Executing Stage: {self.stage_name} >>>"
        )

    def _log_end(self, session_id: Optional[str], output: StageOutput):
        logger.info(
            f"[Session: {session_id or 'N/A'}] <<< Completed Stage: {self.stage_name} | Summary: {output.summary} | Metrics: {output.metrics} <<<"
        )
