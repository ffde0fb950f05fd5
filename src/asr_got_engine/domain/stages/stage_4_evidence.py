import json
from collections import defaultdict
from typing import Dict, List, Optional

from loguru import logger  # type: ignore

from ..interfaces.evidence_provider import SearchResult
from ..interfaces.reasoning_provider import ReasoningCapability
from ..models.common import ConfidenceVector, EpistemicStatus
from ..models.graph_elements import (
    BridgeMetadata,
    CausalMetadata,
    EdgeType,
    EvidenceMetadata,
    EvidenceQuality,
    Hyperedge,
    HyperedgeMetadata,
    HyperedgeType,
    InterdisciplinaryInfo,
    Node,
    NodeType,
    SourceReference,
    TemporalMetadata,
)
from ..services.confidence_calculator import compute_confidence
from ..utils.metadata_helpers import calculate_semantic_similarity, normalize_tags
from ..utils.response_parser import EvidenceAnalysis, sanitize_text
from .base_stage import BaseStage, StageOutput, StageState

COMPLEX_RELATIONSHIP_MIN_NODES = 3
COMPLEX_RELATIONSHIP_MIN_CONFIDENCE = 0.8


class EvidenceStage(BaseStage):
    stage_name: str = "EvidenceStage"
    stage_number: int = 4

    def _analysis_prompt(self, state: StageState, hypothesis: Node, search: SearchResult) -> str:
        sources = "\n".join(f"- {s.title or s.url} ({s.url})" for s in search.sources) or "- none"
        return (
            f"Field: {state.research_context.field}\n"
            f"Hypothesis: {hypothesis.metadata.description}\n"
            f"Falsification criteria: {hypothesis.metadata.falsification_criteria.description if hypothesis.metadata.falsification_criteria else 'n/a'}\n\n"
            f"Search findings:\n{search.text}\n\nSources:\n{sources}\n\n"
            "Assess how this evidence bears on the hypothesis. Respond with JSON with the keys: "
            "edge_type (supportive|contradictory|correlative|causal_direct|causal_counterfactual|"
            "causal_confounded), confidence ([empirical, theoretical, methodological, consensus] in 0..1), "
            "evidence_quality (high|medium|low), statistical_power, sample_size, effect_size, p_value, "
            "study_design, peer_reviewed, controversial, confounders, mechanism, counterfactual, "
            "temporal_pattern, disciplines."
        )

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        hypotheses = sorted(state.graph.nodes_of_type(NodeType.HYPOTHESIS), key=lambda n: n.id)
        tracker = _EvidenceTracker()
        contents = []
        if not hypotheses:
            logger.warning("No hypotheses found. Skipping evidence stage.")

        for hypothesis in hypotheses:
            search = await self.router.search(
                hypothesis.metadata.testing_plan or hypothesis.label,
                focus=state.research_context.field,
                recent_only=True,
            )
            response = await self.router.reason(
                self._analysis_prompt(state, hypothesis, search),
                capability=ReasoningCapability.THINKING_STRUCTURED,
                name=f"stage4-analysis-{hypothesis.id}",
            )
            raw = json.dumps(response.structured) if isinstance(response.structured, dict) else response.text
            analysis = self.parser.parse_evidence_analysis(raw)
            sources = search.sources[: self.params.evidence_per_hypothesis]
            if not sources and search.text.strip():
                sources = [SourceReference(title="Search summary")]
            if not sources:
                logger.debug(f"No evidence found for hypothesis '{hypothesis.id}'.")
                continue
            summary = sanitize_text(search.text)
            evidence_nodes = [
                self._create_evidence(state, hypothesis, analysis, source, summary, index)
                for index, source in enumerate(sources)
            ]
            self._integrate(state, hypothesis, evidence_nodes, tracker)
            contents.append(
                f"{hypothesis.label}: {analysis.edge_type.value} evidence from {len(evidence_nodes)} source(s)"
            )

        tracker.hyperedges += self._create_cross_hypothesis_hyperedges(state, tracker.evidence_ids)
        output = self._output(tracker, "\n".join(contents))
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        tracker = _EvidenceTracker()
        for hypothesis in sorted(state.graph.nodes_of_type(NodeType.HYPOTHESIS), key=lambda n: n.id):
            analysis = EvidenceAnalysis(
                evidence_quality=EvidenceQuality.LOW,
                confidence=[0.5, 0.5, 0.4, 0.4],
                disciplines=hypothesis.metadata.disciplinary_tags,
            )
            evidence = self._create_evidence(
                state,
                hypothesis,
                analysis,
                SourceReference(title="Synthesized from hypothesis metadata"),
                f"Evidence synthesized without external search for: {hypothesis.metadata.description}",
                0,
            )
            self._integrate(state, hypothesis, [evidence], tracker)
        output = self._output(tracker, f"Synthesized evidence for {tracker.hypotheses_updated} hypotheses without external search")
        output.fallback_used = True
        self._log_end(state.session_id, output)
        return output

    # -- evidence nodes --
    def _create_evidence(
        self,
        state: StageState,
        hypothesis: Node,
        analysis: EvidenceAnalysis,
        source: SourceReference,
        summary: str,
        index: int,
    ) -> Node:
        tags = normalize_tags(analysis.disciplines) or list(hypothesis.metadata.disciplinary_tags)
        label = sanitize_text(source.title) or summary[:80] or f"Evidence {index + 1}"
        node = Node(
            id=f"ev_{hypothesis.id}_{index + 1}",
            label=label[:200],
            type=NodeType.EVIDENCE,
            confidence=ConfidenceVector.from_list(analysis.confidence),
            metadata=EvidenceMetadata(
                description=summary[:2000],
                source_description=source.url or "reasoning-service synthesis",
                epistemic_status=(
                    EpistemicStatus.EVIDENCE_SUPPORTED
                    if analysis.supports_hypothesis
                    else EpistemicStatus.EVIDENCE_CONTRADICTED
                ),
                disciplinary_tags=tags,
                impact_score=hypothesis.metadata.impact_score,
                hypothesis_id=hypothesis.id,
                evidence_quality=analysis.evidence_quality,
                statistical_power=analysis.statistical_power,
                sample_size=analysis.sample_size,
                effect_size=analysis.effect_size,
                p_value=analysis.p_value,
                peer_review_status=analysis.peer_reviewed,
                study_design=analysis.study_design,
                controls=analysis.confounders,
                supports_hypothesis=analysis.supports_hypothesis,
                controversial=analysis.controversial,
                sources=[source] if source.url else [],
            ),
        )
        self._add_node(state, node)
        edge_type = analysis.edge_type
        causal = None
        temporal = None
        if edge_type.family == EdgeType.CAUSAL:
            causal = CausalMetadata(
                description=analysis.mechanism,
                causal_strength=sum(analysis.confidence) / 4.0,
                confounders=analysis.confounders,
                counterfactual=analysis.counterfactual,
            )
        if analysis.temporal_pattern:
            temporal = TemporalMetadata(pattern_type=analysis.temporal_pattern)
        self._link(
            state,
            node.id,
            hypothesis.id,
            edge_type,
            sum(analysis.confidence) / 4.0,
            relation_tag="evidence_for" if analysis.supports_hypothesis else "evidence_against",
            causal=causal,
            temporal=temporal,
        )
        return node

    def _integrate(
        self, state: StageState, hypothesis: Node, evidence_nodes: List[Node], tracker: "_EvidenceTracker"
    ) -> None:
        tracker.evidence_ids.extend(n.id for n in evidence_nodes)
        linked = [
            state.graph.nodes[e.source_id]
            for e in state.graph.edges_into(hypothesis.id)
            if state.graph.nodes[e.source_id].type == NodeType.EVIDENCE
            and state.graph.nodes[e.source_id].is_active
        ]
        result = compute_confidence(hypothesis, linked, state.graph.incident_edges(hypothesis.id))
        hypothesis.update_confidence(
            result.to_confidence_vector(),
            updated_by=self.stage_name,
            reason=f"Integrated {len(evidence_nodes)} evidence node(s); quality {result.metadata.quality_score:.2f}",
        )
        tracker.hypotheses_updated += 1

        for evidence in evidence_nodes:
            if self._create_bridge(state, evidence, hypothesis):
                tracker.bridges += 1

        if len(evidence_nodes) >= 2:
            weight = sum(n.confidence.average_confidence for n in evidence_nodes) / len(evidence_nodes)
            state.graph.add_hyperedge(
                Hyperedge(
                    id=f"hx_multi_causal_{hypothesis.id}",
                    node_ids=[hypothesis.id, *(n.id for n in evidence_nodes)],
                    type=HyperedgeType.MULTI_CAUSAL,
                    weight=weight,
                    stage_of_origin=self.stage_number,
                    metadata=HyperedgeMetadata(
                        description=f"Joint evidence bearing on '{hypothesis.label[:60]}'",
                        relationship_descriptor="multi_causal",
                    ),
                )
            )
            tracker.hyperedges += 1

    def _create_bridge(self, state: StageState, evidence: Node, hypothesis: Node) -> Optional[str]:
        hypo_tags = set(hypothesis.metadata.disciplinary_tags)
        ev_tags = set(evidence.metadata.disciplinary_tags)
        if not hypo_tags or not ev_tags or hypo_tags & ev_tags:
            return None
        similarity = calculate_semantic_similarity(
            f"{evidence.label} {evidence.metadata.description}", hypothesis.metadata.description
        )
        if similarity < self.params.bridge_similarity_threshold:
            return None
        bridge_id = f"bridge_{evidence.id}"
        bridge = Node(
            id=bridge_id,
            label=f"Bridge: {', '.join(sorted(ev_tags))} <=> {', '.join(sorted(hypo_tags))}",
            type=NodeType.BRIDGE,
            confidence=ConfidenceVector(
                empirical_support=similarity,
                theoretical_basis=0.4,
                methodological_rigor=0.5,
                consensus_alignment=0.3,
            ),
            metadata=BridgeMetadata(
                description=f"Interdisciplinary bridge between {sorted(hypo_tags)} and {sorted(ev_tags)}",
                source_description="Evidence integration",
                epistemic_status=EpistemicStatus.INFERRED,
                disciplinary_tags=sorted(hypo_tags | ev_tags),
                impact_score=0.6,
                interdisciplinary_info=InterdisciplinaryInfo(
                    source_disciplines=sorted(ev_tags),
                    target_disciplines=sorted(hypo_tags),
                    bridging_concept=f"Connection between '{evidence.label[:40]}' and '{hypothesis.label[:40]}'",
                ),
            ),
        )
        self._add_node(state, bridge)
        self._link(state, evidence.id, bridge_id, EdgeType.CORRELATIVE, 0.8, relation_tag="bridge_source")
        self._link(state, bridge_id, hypothesis.id, EdgeType.CORRELATIVE, 0.8, relation_tag="bridge_target")
        logger.debug(f"Created bridge {bridge_id} between {evidence.id} and {hypothesis.id}")
        return bridge_id

    def _create_cross_hypothesis_hyperedges(self, state: StageState, evidence_ids: List[str]) -> int:
        created = 0
        by_tag: Dict[str, List[str]] = defaultdict(list)
        for evidence_id in evidence_ids:
            for tag in state.graph.nodes[evidence_id].metadata.disciplinary_tags:
                by_tag[tag].append(evidence_id)
        for tag in sorted(by_tag):
            members = by_tag[tag]
            if len(members) < 2:
                continue
            weight = sum(state.graph.nodes[m].confidence.average_confidence for m in members) / len(members)
            state.graph.add_hyperedge(
                Hyperedge(
                    id=f"hx_interdisciplinary_{tag.replace(' ', '_')}",
                    node_ids=members,
                    type=HyperedgeType.INTERDISCIPLINARY,
                    weight=weight,
                    stage_of_origin=self.stage_number,
                    metadata=HyperedgeMetadata(
                        description=f"Evidence sharing the discipline '{tag}'",
                        relationship_descriptor="interdisciplinary",
                        disciplines=[tag],
                    ),
                )
            )
            created += 1

        strong = [
            evidence_id
            for evidence_id in evidence_ids
            if state.graph.nodes[evidence_id].confidence.average_confidence > COMPLEX_RELATIONSHIP_MIN_CONFIDENCE
        ]
        if len(strong) >= COMPLEX_RELATIONSHIP_MIN_NODES:
            state.graph.add_hyperedge(
                Hyperedge(
                    id="hx_complex_relationship",
                    node_ids=strong,
                    type=HyperedgeType.COMPLEX_RELATIONSHIP,
                    weight=sum(state.graph.nodes[s].confidence.average_confidence for s in strong) / len(strong),
                    stage_of_origin=self.stage_number,
                    metadata=HyperedgeMetadata(
                        description="High-confidence evidence cluster",
                        relationship_descriptor="complex_relationship",
                    ),
                )
            )
            created += 1
        return created

    def _output(self, tracker: "_EvidenceTracker", content: str) -> StageOutput:
        return StageOutput(
            summary=(
                f"Integrated {len(tracker.evidence_ids)} evidence nodes across "
                f"{tracker.hypotheses_updated} hypotheses"
            ),
            content=content,
            metrics={
                "evidence_nodes_created": len(tracker.evidence_ids),
                "hypotheses_updated": tracker.hypotheses_updated,
                "bridges_created": tracker.bridges,
                "hyperedges_created": tracker.hyperedges,
            },
        )


class _EvidenceTracker:
    def __init__(self) -> None:
        self.evidence_ids: List[str] = []
        self.hypotheses_updated = 0
        self.bridges = 0
        self.hyperedges = 0
