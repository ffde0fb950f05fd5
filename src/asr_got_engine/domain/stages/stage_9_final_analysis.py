"""
Stage 9 writes the final report one section at a time.

Sections 9A-9G run in order and each prompt carries an excerpt of the
sections already written, so later sections build on earlier ones. A section
whose reply is empty after sanitization is filled from its template; the
fallback path fills every section that way.
"""

from dataclasses import dataclass
from typing import Any, Dict, List

from loguru import logger  # type: ignore

from ..interfaces.reasoning_provider import ReasoningCapability
from ..models.graph_elements import NodeType
from ..utils.response_parser import sanitize_text, word_count
from .base_stage import BaseStage, StageOutput, StageState
from .stage_7_composition import SYNTHESIS_NODE_ID
from .stage_8_reflection import REFLECTION_NODE_ID

MAX_DERIVED_RECOMMENDATIONS = 5
PRIOR_SECTION_EXCERPT_CHARS = 600


@dataclass(frozen=True)
class ReportSection:
    substage: str
    key: str
    title: str
    instructions: str
    capability: ReasoningCapability = ReasoningCapability.THINKING_ONLY


REPORT_SECTIONS = (
    ReportSection(
        "9A",
        "abstract",
        "Abstract",
        "Summarise the question, the approach, the principal findings and the overall confidence in one paragraph.",
    ),
    ReportSection(
        "9B",
        "introduction",
        "Introduction",
        "Introduce the research question, its background in the field and the objectives of the analysis.",
        ReasoningCapability.THINKING_SEARCH,
    ),
    ReportSection(
        "9C",
        "methodology",
        "Methodology",
        "Describe how the question was decomposed, how hypotheses were generated and how evidence was weighed.",
    ),
    ReportSection(
        "9D",
        "results",
        "Results",
        "Report the findings per hypothesis with their confidence and the strength of the supporting evidence.",
    ),
    ReportSection(
        "9E",
        "discussion",
        "Discussion",
        "Interpret the results, relate them to the detected biases and knowledge gaps and state the limitations.",
        ReasoningCapability.THINKING_SEARCH,
    ),
    ReportSection(
        "9F",
        "conclusions",
        "Conclusions",
        "State the conclusions and future research directions. "
        "End with lines of the form 'Recommendation: <text>'.",
    ),
    ReportSection(
        "9G",
        "references",
        "References",
        "List the references cited in the synthesis in numbered order, one per line.",
    ),
)


class FinalAnalysisStage(BaseStage):
    stage_name: str = "FinalAnalysisStage"
    stage_number: int = 9

    def _summary_statistics(self, state: StageState) -> Dict[str, Any]:
        graph = state.graph
        hypotheses = graph.nodes_of_type(NodeType.HYPOTHESIS)
        active = graph.active_nodes()
        reflection = graph.get_node(REFLECTION_NODE_ID)
        return {
            "total_nodes": len(graph.nodes),
            "active_nodes": len(active),
            "total_edges": len(graph.edges),
            "total_hyperedges": len(graph.hyperedges),
            "hypotheses": len(hypotheses),
            "evidence": len(graph.nodes_of_type(NodeType.EVIDENCE)),
            "bridges": len(graph.nodes_of_type(NodeType.BRIDGE)),
            "mean_confidence": (
                sum(n.confidence.average_confidence for n in active) / len(active) if active else 0.0
            ),
            "consistency_score": reflection.metadata.consistency_score if reflection else None,
            "biases_detected": list(state.research_context.biases_detected),
            "knowledge_gaps": len(state.research_context.knowledge_gaps),
        }

    def _derived_recommendations(self, state: StageState) -> List[str]:
        recommendations: List[str] = []
        weakest = sorted(
            state.graph.nodes_of_type(NodeType.HYPOTHESIS),
            key=lambda n: (n.confidence.average_confidence, n.id),
        )
        for hypothesis in weakest[:2]:
            recommendations.append(f"Gather further evidence for: {hypothesis.label}")
        for gap in state.research_context.knowledge_gaps[:2]:
            recommendations.append(f"Address knowledge gap: {gap}")
        for bias in state.research_context.biases_detected[:1]:
            recommendations.append(f"Mitigate {bias.replace('_', ' ')} in follow-up work")
        return recommendations[:MAX_DERIVED_RECOMMENDATIONS]

    def _prompt(
        self,
        state: StageState,
        stats: Dict[str, Any],
        section: ReportSection,
        written: List[Dict[str, Any]],
    ) -> str:
        synthesis = state.graph.get_node(SYNTHESIS_NODE_ID)
        narrative = synthesis.metadata.description if synthesis else ""
        previous = "\n\n".join(
            f"## {s['title']}\n{s['content'][:PRIOR_SECTION_EXCERPT_CHARS]}" for s in written
        ) or "(none yet)"
        return (
            f"Research question: {state.query}\n"
            f"Field: {state.research_context.field}\n"
            f"Graph statistics: {stats}\n"
            f"Detected biases: {', '.join(state.research_context.biases_detected) or 'none'}\n"
            f"Knowledge gaps: {'; '.join(state.research_context.knowledge_gaps) or 'none'}\n\n"
            f"Synthesis:\n{narrative}\n\n"
            f"Sections written so far:\n{previous}\n\n"
            f"Write the {section.title} section ({section.substage}) of the final analysis report. "
            f"{section.instructions}"
        )

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        stats = self._summary_statistics(state)
        derived = self._derived_recommendations(state)
        sections: List[Dict[str, Any]] = []
        for section in REPORT_SECTIONS:
            response = await self.router.reason(
                self._prompt(state, stats, section, sections),
                capability=section.capability,
                name=f"stage{section.substage}-{section.key}",
            )
            content = sanitize_text(response.text)
            template_used = not content
            if template_used:
                logger.warning(f"Section {section.substage} ({section.title}) came back empty; using its template")
                content = self._section_template(section, state, stats, derived)
            sections.append(self._section_record(section, content, response.total_tokens, template_used))

        conclusions = next(s for s in sections if s["key"] == "conclusions")
        recommendations = (
            self.parser.parse_recommendations(conclusions["content"])
            or self.parser.parse_recommendations(self._assemble(sections))
            or derived
        )
        output = self._finish(state, stats, sections, recommendations)
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        stats = self._summary_statistics(state)
        recommendations = self._derived_recommendations(state)
        sections = [
            self._section_record(
                section, self._section_template(section, state, stats, recommendations), 0, True
            )
            for section in REPORT_SECTIONS
        ]
        output = self._finish(state, stats, sections, recommendations)
        output.fallback_used = True
        self._log_end(state.session_id, output)
        return output

    @staticmethod
    def _section_record(section: ReportSection, content: str, tokens: int, template_used: bool) -> Dict[str, Any]:
        return {
            "substage": section.substage,
            "key": section.key,
            "title": section.title,
            "content": content,
            "word_count": word_count(content),
            "tokens": tokens,
            "template_used": template_used,
        }

    def _section_template(
        self,
        section: ReportSection,
        state: StageState,
        stats: Dict[str, Any],
        recommendations: List[str],
    ) -> str:
        context = state.research_context
        field = context.field or "General Science"
        if section.key == "abstract":
            return (
                f"Final analysis for: {sanitize_text(state.query)}. "
                f"Hypotheses evaluated: {stats['hypotheses']} with {stats['evidence']} evidence nodes in {field}. "
                f"Mean confidence across active nodes: {stats['mean_confidence']:.2f}."
            )
        if section.key == "introduction":
            objectives = "; ".join(context.objectives) or "Comprehensive analysis"
            return f"Research question: {sanitize_text(state.query)}\nField: {field}\nObjectives: {objectives}"
        if section.key == "methodology":
            dimensions = len(state.graph.nodes_of_type(NodeType.DIMENSION))
            return (
                f"The question was decomposed into {dimensions} dimensions. "
                f"{stats['hypotheses']} hypotheses were scored against {stats['evidence']} evidence nodes "
                f"and the graph was pruned to {stats['active_nodes']} active nodes."
            )
        if section.key == "results":
            ranked = sorted(
                state.graph.nodes_of_type(NodeType.HYPOTHESIS),
                key=lambda n: (-n.confidence.average_confidence, n.id),
            )
            lines = [f"- {h.label}: confidence {h.confidence.average_confidence:.2f}" for h in ranked[:5]]
            return "\n".join(lines) or "No hypotheses were evaluated."
        if section.key == "discussion":
            consistency = stats["consistency_score"]
            lines = [
                f"Detected biases: {', '.join(stats['biases_detected']) or 'none'}",
                f"Knowledge gaps: {'; '.join(context.knowledge_gaps) or 'none'}",
            ]
            if consistency is not None:
                lines.append(f"Consistency score: {consistency:.2f}")
            return "\n".join(lines)
        if section.key == "conclusions":
            return "\n".join(f"Recommendation: {r}" for r in recommendations) or "No recommendations."
        synthesis = state.graph.get_node(SYNTHESIS_NODE_ID)
        references = synthesis.metadata.references if synthesis else []
        return "\n".join(references) or "No references were collected."

    @staticmethod
    def _assemble(sections: List[Dict[str, Any]]) -> str:
        return "\n\n".join(f"## {s['title']}\n\n{s['content']}" for s in sections)

    def _finish(
        self,
        state: StageState,
        stats: Dict[str, Any],
        sections: List[Dict[str, Any]],
        recommendations: List[str],
    ) -> StageOutput:
        state.graph.metadata.completed = True
        content = self._assemble(sections)
        words = word_count(content)
        return StageOutput(
            summary=(
                f"Final analysis completed ({len(sections)} sections, {words} words, "
                f"{len(recommendations)} recommendations)"
            ),
            content=content,
            metrics={
                "final_word_count": words,
                "summary_statistics": stats,
                "recommendations": recommendations,
                "sections": [{k: v for k, v in s.items() if k != "content"} for s in sections],
                "templated_sections": [s["substage"] for s in sections if s["template_used"]],
            },
        )
