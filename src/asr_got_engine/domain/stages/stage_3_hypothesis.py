import json
from typing import List

from loguru import logger

from ..interfaces.reasoning_provider import ReasoningCapability
from ..models.common import EpistemicStatus
from ..models.graph_elements import (
    EdgeType,
    FalsificationCriteria,
    HypothesisMetadata,
    Node,
    NodeType,
)
from ..utils.metadata_helpers import normalize_tags
from ..utils.response_parser import ParsedHypothesis
from .base_stage import BaseStage, StageOutput, StageState

HYPOTHESIS_PATTERNS = [
    "{dimension} factors directly influence the outcomes studied in {field}",
    "Interactions between {dimension} components explain the variation observed in {topic}",
    "Current approaches to {dimension} in {field} leave measurable gaps",
    "{dimension} effects are moderated by contextual conditions",
]

_THEORY_MARKERS = ("theory", "theoretical", "framework", "model", "mechanism")


class HypothesisStage(BaseStage):
    stage_name: str = "HypothesisStage"
    stage_number: int = 3

    def _prompt(self, state: StageState, dimension: Node) -> str:
        k = self.params.hypotheses_per_dimension
        return (
            f"Research question: {state.query}\n"
            f"Field: {state.research_context.field}\n"
            f"Dimension: {dimension.label}: {dimension.metadata.description}\n\n"
            f"Propose {k} distinct, falsifiable hypotheses for this dimension. "
            'Respond with JSON: {"hypotheses": [{"statement": ..., '
            '"falsification_criteria": ..., "testing_plan": <literature search query>, '
            '"disciplines": [...]}]}'
        )

    def _template_hypotheses(self, state: StageState, dimension: Node, start: int) -> List[ParsedHypothesis]:
        ctx = state.research_context
        templates = []
        for i in range(start, self.params.hypotheses_per_dimension):
            pattern = HYPOTHESIS_PATTERNS[i % len(HYPOTHESIS_PATTERNS)]
            statement = pattern.format(
                dimension=dimension.label, field=ctx.field or "the field", topic=ctx.topic or state.query
            )
            templates.append(
                ParsedHypothesis(
                    statement=statement,
                    falsification=f"No measurable association between {dimension.label.lower()} and the outcome",
                    testing_plan=f"{dimension.label} {ctx.field} {ctx.topic}".strip(),
                )
            )
        return templates

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        dimensions = sorted(state.graph.nodes_of_type(NodeType.DIMENSION), key=lambda n: n.metadata.priority)
        contents = []
        created: List[str] = []
        for dimension in dimensions:
            response = await self.router.reason(
                self._prompt(state, dimension),
                capability=ReasoningCapability.THINKING_STRUCTURED,
                name=f"stage3-{dimension.id}",
            )
            raw = json.dumps(response.structured) if response.structured is not None else response.text
            parsed = self.parser.parse_hypotheses(raw, self.params.hypotheses_per_dimension)
            if len(parsed) < self.params.hypotheses_per_dimension:
                logger.debug(
                    f"Only {len(parsed)} hypotheses parsed for {dimension.id}; filling with templates"
                )
                parsed.extend(self._template_hypotheses(state, dimension, len(parsed)))
            created.extend(self._add_hypotheses(state, dimension, parsed))
            contents.append(f"{dimension.label}: " + " | ".join(h.statement for h in parsed))
        output = self._output(state, created, "\n".join(contents))
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        dimensions = sorted(state.graph.nodes_of_type(NodeType.DIMENSION), key=lambda n: n.metadata.priority)
        created: List[str] = []
        for dimension in dimensions:
            created.extend(self._add_hypotheses(state, dimension, self._template_hypotheses(state, dimension, 0)))
        output = self._output(state, created, f"Generated {len(created)} hypotheses from predefined patterns")
        output.fallback_used = True
        self._log_end(state.session_id, output)
        return output

    def _add_hypotheses(self, state: StageState, dimension: Node, parsed: List[ParsedHypothesis]) -> List[str]:
        field = state.research_context.field
        created = []
        for index, hypothesis in enumerate(parsed[: self.params.hypotheses_per_dimension], start=1):
            statement = hypothesis.statement
            lowered = statement.lower()
            tags = normalize_tags(hypothesis.disciplines) or normalize_tags([field])
            node = Node(
                id=f"hyp_{dimension.id}_{index}",
                label=statement[:200],
                type=NodeType.HYPOTHESIS,
                confidence=self._vector(self.params.hypothesis_confidence),
                metadata=HypothesisMetadata(
                    description=statement,
                    source_description=f"Hypothesis generated for dimension '{dimension.label}'",
                    epistemic_status=EpistemicStatus.HYPOTHESIS,
                    disciplinary_tags=tags,
                    impact_score=dimension.metadata.impact_score,
                    dimension_id=dimension.id,
                    falsification_criteria=FalsificationCriteria(
                        description=hypothesis.falsification
                        or f"Evidence showing no effect for: {statement[:120]}"
                    ),
                    testing_plan=hypothesis.testing_plan or statement[:200],
                    theoretical_framework=any(marker in lowered for marker in _THEORY_MARKERS),
                ),
            )
            self._add_node(state, node)
            self._link(state, dimension.id, node.id, EdgeType.SUPPORTIVE, 0.7, relation_tag="generates_hypothesis")
            state.research_context.extend("hypotheses", [statement])
            created.append(node.id)
        return created

    def _output(self, state: StageState, created: List[str], content: str) -> StageOutput:
        return StageOutput(
            summary=f"Generated {len(created)} hypotheses",
            content=content,
            metrics={
                "hypotheses_created": len(created),
                "hypothesis_node_ids": created,
                "hypotheses_per_dimension": self.params.hypotheses_per_dimension,
            },
        )
