import json
from typing import List, Optional, Tuple

from loguru import logger  # type: ignore

from ..interfaces.reasoning_provider import ReasoningCapability
from ..models.common import ConfidenceVector, EpistemicStatus
from ..models.graph_elements import BiasFlag, EdgeType, Node, NodeType, ReflectionMetadata
from ..utils.response_parser import ReflectionFindings, sanitize_text
from .base_stage import BaseStage, StageOutput, StageState
from .stage_1_initialization import ROOT_NODE_ID
from .stage_7_composition import SYNTHESIS_NODE_ID

REFLECTION_NODE_ID = "reflection_audit"
CONFIRMATION_BIAS_RATIO = 0.9
CONFIRMATION_BIAS_MIN_EDGES = 3


class ReflectionStage(BaseStage):
    stage_name: str = "ReflectionStage"
    stage_number: int = 8

    def _prompt(self, state: StageState, local_findings: List[str]) -> str:
        synthesis = state.graph.get_node(SYNTHESIS_NODE_ID)
        narrative = synthesis.metadata.description if synthesis else "(no synthesis available)"
        findings = "\n".join(f"- {f}" for f in local_findings) or "- none"
        return (
            f"Research question: {state.query}\n"
            f"Field: {state.research_context.field}\n\n"
            f"Synthesis under review:\n{narrative}\n\n"
            f"Automated audit findings:\n{findings}\n\n"
            "Critically review the synthesis for cognitive and methodological biases, "
            "internal consistency and unsupported claims. Respond with JSON with the keys: "
            "bias_flags (list of {bias_type, description}), consistency_score (0..1), findings (list)."
        )

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        local_flags, local_findings, local_consistency = self._audit(state)
        response = await self.router.reason(
            self._prompt(state, local_findings),
            capability=ReasoningCapability.THINKING_STRUCTURED,
            name="stage8-reflection",
        )
        raw = json.dumps(response.structured) if isinstance(response.structured, dict) else response.text
        parsed = self.parser.parse_reflection(raw)
        output = self._reflect(state, local_flags, local_findings, local_consistency, parsed)
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        local_flags, local_findings, local_consistency = self._audit(state)
        output = self._reflect(state, local_flags, local_findings, local_consistency, None)
        output.fallback_used = True
        self._log_end(state.session_id, output)
        return output

    # -- local audit --
    def _evidence_edges(self, state: StageState, hypothesis: Node):
        return [
            e
            for e in state.graph.edges_into(hypothesis.id)
            if state.graph.nodes[e.source_id].type == NodeType.EVIDENCE
            and state.graph.nodes[e.source_id].is_active
        ]

    def _audit(self, state: StageState) -> Tuple[List[BiasFlag], List[str], float]:
        flags: List[BiasFlag] = []
        findings: List[str] = []
        hypotheses = sorted(state.graph.nodes_of_type(NodeType.HYPOTHESIS), key=lambda n: n.id)

        evidence_edges = []
        single_source = []
        uncovered = []
        missing_falsification = []
        for hypothesis in hypotheses:
            edges = self._evidence_edges(state, hypothesis)
            evidence_edges.extend(edges)
            if not edges:
                uncovered.append(hypothesis.id)
            elif len(edges) == 1:
                single_source.append(hypothesis.id)
            criteria = hypothesis.metadata.falsification_criteria
            if criteria is None or not criteria.description.strip():
                missing_falsification.append(hypothesis.id)

        supportive = [e for e in evidence_edges if e.type.family != EdgeType.CONTRADICTORY]
        contradictory = [e for e in evidence_edges if e.type == EdgeType.CONTRADICTORY]
        if (
            len(evidence_edges) >= CONFIRMATION_BIAS_MIN_EDGES
            and len(supportive) / len(evidence_edges) > CONFIRMATION_BIAS_RATIO
        ):
            flags.append(
                BiasFlag(
                    bias_type="confirmation_bias",
                    description=f"{len(supportive)} of {len(evidence_edges)} evidence links are supportive",
                    assessment_stage_id=str(self.stage_number),
                    mitigation_suggested="Search explicitly for disconfirming evidence",
                    severity="medium",
                )
            )
        if hypotheses and len(single_source) * 2 >= len(hypotheses):
            flags.append(
                BiasFlag(
                    bias_type="single_source_reliance",
                    description=f"{len(single_source)} hypotheses rest on a single evidence node",
                    assessment_stage_id=str(self.stage_number),
                    mitigation_suggested="Corroborate with independent sources",
                    severity="low",
                )
            )
        if uncovered:
            findings.append(f"{len(uncovered)} hypotheses have no linked evidence: {', '.join(uncovered)}")
        if missing_falsification:
            findings.append(f"{len(missing_falsification)} hypotheses lack falsification criteria")
        if contradictory:
            findings.append(f"{len(contradictory)} evidence links contradict their hypothesis")

        consistency = 1.0 - (len(contradictory) / len(evidence_edges)) if evidence_edges else 0.5
        return flags, findings, consistency

    def _reflect(
        self,
        state: StageState,
        flags: List[BiasFlag],
        findings: List[str],
        consistency: float,
        parsed: Optional[ReflectionFindings],
    ) -> StageOutput:
        if parsed is not None:
            known = {f.bias_type for f in flags}
            for raw in parsed.bias_flags:
                bias_type = sanitize_text(raw.get("bias_type", "")).lower().replace(" ", "_")
                if bias_type and bias_type not in known:
                    known.add(bias_type)
                    flags.append(
                        BiasFlag(
                            bias_type=bias_type,
                            description=sanitize_text(str(raw.get("description") or "")),
                            assessment_stage_id=str(self.stage_number),
                        )
                    )
            findings = findings + [sanitize_text(f) for f in parsed.findings]
            if parsed.consistency_score is not None:
                consistency = (consistency + parsed.consistency_score) / 2.0
            else:
                logger.debug("Reflection response carried no consistency score; using local audit only")

        state.research_context.extend("biases_detected", [f.bias_type for f in flags])
        node = Node(
            id=REFLECTION_NODE_ID,
            label="Reflection Audit",
            type=NodeType.REFLECTION,
            confidence=ConfidenceVector.from_list([consistency, consistency, 0.6, consistency]),
            metadata=ReflectionMetadata(
                description=f"Audit found {len(flags)} bias flags; consistency {consistency:.2f}",
                source_description="Self-audit of the research graph",
                epistemic_status=EpistemicStatus.INFERRED,
                impact_score=0.8,
                bias_flags=flags,
                consistency_score=consistency,
                audit_findings=findings,
            ),
        )
        self._add_node(state, node)
        anchor = SYNTHESIS_NODE_ID if state.graph.has_node(SYNTHESIS_NODE_ID) else ROOT_NODE_ID
        if state.graph.has_node(anchor):
            self._link(state, anchor, REFLECTION_NODE_ID, EdgeType.PREREQUISITE, consistency, relation_tag="audited_by")

        lines = [f"Consistency score: {consistency:.2f}"]
        lines.extend(f"Bias: {f.bias_type} - {f.description}" for f in flags)
        lines.extend(f"Finding: {f}" for f in findings)
        return StageOutput(
            summary=f"Reflection flagged {len(flags)} biases with consistency {consistency:.2f}",
            content="\n".join(lines),
            metrics={
                "bias_flags": [f.bias_type for f in flags],
                "bias_count": len(flags),
                "consistency_score": consistency,
                "audit_findings": findings,
            },
        )
