import json
from typing import Dict

from ..interfaces.reasoning_provider import ReasoningCapability
from ..models.common import EpistemicStatus
from ..models.graph_elements import (
    DimensionMetadata,
    EdgeType,
    GapMetadata,
    Node,
    NodeType,
)
from ..services.exceptions import GraphConsistencyError
from ..utils.response_parser import sanitize_text, split_items
from .base_stage import BaseStage, StageOutput, StageState, slugify
from .stage_1_initialization import ROOT_NODE_ID

KNOWLEDGE_GAPS = "Knowledge Gaps"
HIGH_IMPACT_DIMENSIONS = 3


class DecompositionStage(BaseStage):
    stage_name: str = "DecompositionStage"
    stage_number: int = 2

    def _prompt(self, state: StageState) -> str:
        names = ", ".join(self.params.dimensions)
        return (
            f"Research question: {state.query}\n"
            f"Field: {state.research_context.field}\n"
            f"Objectives: {'; '.join(state.research_context.objectives)}\n\n"
            f"Decompose the task along these dimensions: {names}.\n"
            "Respond with a JSON object mapping each dimension name to a concise "
            "description of that dimension for this research question."
        )

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        response = await self.router.reason(
            self._prompt(state),
            capability=ReasoningCapability.THINKING_STRUCTURED,
            name="stage2-decomposition",
        )
        raw = json.dumps(response.structured) if isinstance(response.structured, dict) else response.text
        descriptions = self.parser.parse_dimensions(raw, self.params.dimensions)
        output = self._build(state, descriptions, sanitize_text(response.text))
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        descriptions = {name: "" for name in self.params.dimensions}
        content = "Standard decomposition dimensions: " + ", ".join(self.params.dimensions)
        output = self._build(state, descriptions, content)
        output.fallback_used = True
        self._log_end(state.session_id, output)
        return output

    def _build(self, state: StageState, descriptions: Dict[str, str], content: str) -> StageOutput:
        if not state.graph.has_node(ROOT_NODE_ID):
            raise GraphConsistencyError("Decomposition requires the root node")
        field = state.research_context.field
        dimension_ids = []
        for index, name in enumerate(self.params.dimensions):
            description = descriptions.get(name) or f"{name} analysis for {field} research context"
            node = Node(
                id=f"dim_{slugify(name)}",
                label=name,
                type=NodeType.DIMENSION,
                confidence=self._vector(self.params.dimension_confidence),
                metadata=DimensionMetadata(
                    description=description,
                    source_description="Task decomposition",
                    epistemic_status=EpistemicStatus.INFERRED,
                    disciplinary_tags=[field.lower()] if field else [],
                    impact_score=0.9 if index < HIGH_IMPACT_DIMENSIONS else 0.7,
                    dimension_name=name,
                    priority=index + 1,
                    content=description,
                ),
            )
            self._add_node(state, node)
            self._link(state, ROOT_NODE_ID, node.id, EdgeType.SUPPORTIVE, 0.8, relation_tag="decomposition")
            dimension_ids.append(node.id)

            if name == KNOWLEDGE_GAPS:
                gaps = split_items(descriptions.get(name) or "") or [description]
                state.research_context.extend("knowledge_gaps", gaps)
                gap = Node(
                    id="gap_knowledge",
                    label="Identified knowledge gaps",
                    type=NodeType.GAP,
                    confidence=self._vector([0.4, 0.5, 0.4, 0.4]),
                    metadata=GapMetadata(
                        description=description,
                        gap_description="; ".join(gaps),
                        priority="high",
                        disciplinary_tags=[field.lower()] if field else [],
                    ),
                )
                self._add_node(state, gap)
                self._link(state, node.id, gap.id, EdgeType.PREREQUISITE, 0.6, relation_tag="gap")

        return StageOutput(
            summary=f"Created {len(dimension_ids)} dimension nodes",
            content=content,
            metrics={
                "dimensions_created": len(dimension_ids),
                "dimension_node_ids": dimension_ids,
                "knowledge_gaps": len(state.research_context.knowledge_gaps),
            },
        )
