from typing import List, Tuple

from ..interfaces.reasoning_provider import ReasoningCapability
from ..models.common import ConfidenceVector, EpistemicStatus
from ..models.graph_elements import EdgeType, Node, NodeType, SynthesisMetadata
from ..utils.response_parser import citation_markers, sanitize_text, word_count
from .base_stage import BaseStage, StageOutput, StageState

SYNTHESIS_NODE_ID = "synthesis_composition"
TOP_HYPOTHESES = 5


class CompositionStage(BaseStage):
    """Composes the narrative synthesis with inline ``[n]`` citations."""

    stage_name: str = "CompositionStage"
    stage_number: int = 7

    def _ranked_hypotheses(self, state: StageState) -> List[Node]:
        return sorted(
            state.graph.nodes_of_type(NodeType.HYPOTHESIS),
            key=lambda n: (-n.confidence.average_confidence, n.id),
        )[:TOP_HYPOTHESES]

    @staticmethod
    def _reference_list(state: StageState) -> List[Tuple[str, str]]:
        """(title, url) pairs for every active evidence source, numbered by position."""
        references: List[Tuple[str, str]] = []
        seen = set()
        for evidence in sorted(state.graph.nodes_of_type(NodeType.EVIDENCE), key=lambda n: n.id):
            for source in evidence.metadata.sources:
                key = source.url or source.title
                if key and key not in seen:
                    seen.add(key)
                    references.append((source.title or evidence.label, source.url))
            if not evidence.metadata.sources and evidence.label not in seen:
                seen.add(evidence.label)
                references.append((evidence.label, ""))
        return references

    def _prompt(self, state: StageState, hypotheses: List[Node], references: List[Tuple[str, str]]) -> str:
        lines = [
            f"Research question: {state.query}",
            f"Field: {state.research_context.field}",
            "",
            "Key hypotheses (with mean confidence):",
        ]
        lines.extend(
            f"- {h.metadata.description or h.label} ({h.confidence.average_confidence:.2f})"
            for h in hypotheses
        )
        lines.append("")
        lines.append("Numbered sources:")
        lines.extend(f"[{i}] {title} {url}".rstrip() for i, (title, url) in enumerate(references, start=1))
        lines.append("")
        lines.append(
            "Write a structured scientific synthesis answering the research question. "
            "Cite sources inline with their [n] numbers only."
        )
        return "\n".join(lines)

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        hypotheses = self._ranked_hypotheses(state)
        references = self._reference_list(state)
        response = await self.router.reason(
            self._prompt(state, hypotheses, references),
            capability=ReasoningCapability.THINKING_ONLY,
            max_tokens=self.params.default_max_tokens * 2,
            name="stage7-composition",
        )
        output = self._compose(state, hypotheses, references, sanitize_text(response.text))
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        hypotheses = self._ranked_hypotheses(state)
        references = self._reference_list(state)
        lines = [
            f"Synthesis for: {sanitize_text(state.query)}",
            f"Field: {state.research_context.field or 'General Science'}",
            "",
        ]
        for index, hypothesis in enumerate(hypotheses, start=1):
            citation = f" [{index}]" if index <= len(references) else ""
            lines.append(
                f"{index}. {hypothesis.label} (confidence {hypothesis.confidence.average_confidence:.2f}){citation}"
            )
        if not hypotheses:
            lines.append("No hypotheses met the confidence criteria for synthesis.")
        output = self._compose(state, hypotheses, references, "\n".join(lines))
        output.fallback_used = True
        self._log_end(state.session_id, output)
        return output

    def _compose(
        self,
        state: StageState,
        hypotheses: List[Node],
        references: List[Tuple[str, str]],
        content: str,
    ) -> StageOutput:
        cited = [n for n in citation_markers(content) if 1 <= n <= len(references)]
        cited_refs = [
            f"[{n}] {references[n - 1][0]}" + (f" ({references[n - 1][1]})" if references[n - 1][1] else "")
            for n in cited
        ]
        words = word_count(content)
        aggregate = (
            sum(h.confidence.average_confidence for h in hypotheses) / len(hypotheses)
            if hypotheses
            else 0.5
        )
        synthesis = Node(
            id=SYNTHESIS_NODE_ID,
            label="Research Synthesis",
            type=NodeType.SYNTHESIS,
            confidence=ConfidenceVector.from_list([aggregate] * 4),
            metadata=SynthesisMetadata(
                description=content[:2000],
                source_description="Composition of the pruned research graph",
                epistemic_status=EpistemicStatus.INFERRED,
                disciplinary_tags=[state.research_context.field.lower()] if state.research_context.field else [],
                impact_score=0.9,
                word_count=words,
                citation_count=len(cited),
                references=cited_refs,
            ),
        )
        self._add_node(state, synthesis)
        for hypothesis in hypotheses:
            self._link(
                state,
                hypothesis.id,
                SYNTHESIS_NODE_ID,
                EdgeType.SUPPORTIVE,
                hypothesis.confidence.average_confidence,
                relation_tag="synthesized_into",
            )
        return StageOutput(
            summary=f"Composed synthesis of {words} words with {len(cited)} citations",
            content=content,
            metrics={
                "word_count": words,
                "citation_count": len(cited),
                "references": cited_refs,
                "hypotheses_synthesized": len(hypotheses),
                "available_sources": len(references),
            },
        )
