"""
Multi-dimensional confidence scoring.

``compute_confidence`` is a pure function: the same node, evidence and edges
always give the same result, independent of the order evidence is passed in.
"""

import math
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..models.common import CONFIDENCE_DIMENSIONS, ConfidenceVector, clamp
from ..models.graph_elements import (
    Edge,
    EdgeType,
    EvidenceMetadata,
    EvidenceQuality,
    HypothesisMetadata,
    Node,
)

# Fraction of a full-strength signal applied per piece of evidence.
EVIDENCE_GAIN = 0.5
UNLINKED_EDGE_WEIGHT = 0.5
BIAS_PENALTY = 0.05

# (empirical, theoretical, methodological, consensus) per edge family
EDGE_DIMENSION_FACTORS: dict[EdgeType, tuple[float, float, float, float]] = {
    EdgeType.SUPPORTIVE: (1.0, 0.8, 0.4, 0.4),
    EdgeType.CAUSAL: (1.0, 0.4, 0.8, 0.4),
    EdgeType.CORRELATIVE: (0.6, 0.2, 0.4, 0.2),
    EdgeType.TEMPORAL: (0.3, 0.3, 0.3, 0.3),
    EdgeType.PREREQUISITE: (0.3, 0.3, 0.3, 0.3),
    EdgeType.CONTRADICTORY: (-1.0, 0.0, 0.0, -0.8),
}

QUALITY_TIER_SIGNAL = {
    EvidenceQuality.HIGH: 0.3,
    EvidenceQuality.MEDIUM: 0.2,
    EvidenceQuality.LOW: 0.1,
}

STUDY_DESIGN_SIGNAL = {
    "rct": 0.4,
    "randomized_controlled_trial": 0.4,
    "meta_analysis": 0.4,
    "cohort": 0.3,
    "case_control": 0.25,
    "cross_sectional": 0.2,
}


class ConfidenceMetadata(BaseModel):
    evidence_count: int = 0
    confidence_delta: float = 0.0
    quality_score: float = 0.0
    uncertainty_bounds: tuple[float, float] = (0.0, 1.0)


class ConfidenceResult(BaseModel):
    vector: List[float]
    aggregated: float
    dimensions: dict[str, float]
    metadata: ConfidenceMetadata = Field(default_factory=ConfidenceMetadata)

    def to_confidence_vector(self) -> ConfidenceVector:
        return ConfidenceVector.from_list(self.vector)


def _evidence_metadata(evidence: Node) -> EvidenceMetadata:
    meta = evidence.metadata
    if isinstance(meta, EvidenceMetadata):
        return meta
    return EvidenceMetadata()


def empirical_signal(meta: EvidenceMetadata) -> float:
    signal = QUALITY_TIER_SIGNAL.get(meta.evidence_quality, 0.1)
    signal += meta.statistical_power * 0.25
    signal += min(0.2, meta.sample_size / 1000)
    if meta.replication_count > 1:
        signal += min(0.15, meta.replication_count * 0.05)
    return clamp(signal)


def theoretical_signal(meta: EvidenceMetadata, hypothesis: Optional[HypothesisMetadata]) -> float:
    signal = 0.25 if meta.peer_review_status else 0.05
    signal += min(0.2, meta.citation_count / 1000)
    if hypothesis is not None:
        if hypothesis.theoretical_framework:
            signal += 0.3
        signal += hypothesis.theoretical_consistency * 0.25
    return clamp(signal)


def methodological_signal(meta: EvidenceMetadata) -> float:
    design = meta.study_design.lower().replace("-", "_").replace(" ", "_")
    signal = STUDY_DESIGN_SIGNAL.get(design, 0.1)
    signal += min(0.45, 0.15 * len(meta.controls))
    signal += meta.statistical_power * 0.15
    return clamp(signal)


def consensus_signal(meta: EvidenceMetadata) -> float:
    signal = meta.journal_rank * 0.4
    if meta.peer_review_status:
        signal += 0.2
    signal += min(0.2, meta.citation_count / 500)
    if meta.controversial:
        signal -= 0.2
    return clamp(signal)


def evidence_quality_score(meta: EvidenceMetadata) -> float:
    score = 0.3 if meta.peer_review_status else 0.0
    score += meta.journal_rank * 0.2
    score += min(0.2, meta.citation_count / 100)
    if meta.replication_count > 1:
        score += 0.15
    score += QUALITY_TIER_SIGNAL.get(meta.evidence_quality, 0.1) / 2
    score -= 0.1 * len(meta.bias_flags)
    return clamp(score)


def _linking_edge(node: Node, evidence: Node, edges: Sequence[Edge]) -> Optional[Edge]:
    for edge in edges:
        if {edge.source_id, edge.target_id} == {node.id, evidence.id}:
            return edge
    return None


def compute_confidence(
    node: Node,
    supporting_evidence: Iterable[Node],
    incident_edges: Sequence[Edge],
) -> ConfidenceResult:
    """
    Recompute a node's confidence vector from its linked evidence.

    Each dimension starts at the node's current value and receives one
    contribution per evidence node: ``signal * edge factor * edge weight``
    scaled by ``EVIDENCE_GAIN``. The running value is clamped to [0, 1] after
    every contribution. Evidence is processed in id order.

    Args:
        node: The node being scored (usually a hypothesis).
        supporting_evidence: Evidence nodes linked to ``node``.
        incident_edges: Edges touching ``node``; used to find the type and
            weight of the link to each evidence node.

    Returns:
        A ``ConfidenceResult`` with the new vector, its mean, named dimensions
        and quality/uncertainty metadata.
    """
    prior = node.confidence.to_list()
    values = list(prior)
    hypothesis_meta = node.metadata if isinstance(node.metadata, HypothesisMetadata) else None
    evidence_list = sorted(supporting_evidence, key=lambda n: n.id)

    quality_scores: List[float] = []
    for evidence in evidence_list:
        meta = _evidence_metadata(evidence)
        edge = _linking_edge(node, evidence, incident_edges)
        if edge is not None:
            family = edge.type.family
            weight = edge.confidence
        else:
            family = EdgeType.SUPPORTIVE if meta.supports_hypothesis else EdgeType.CONTRADICTORY
            weight = UNLINKED_EDGE_WEIGHT

        signals = (
            empirical_signal(meta),
            theoretical_signal(meta, hypothesis_meta),
            methodological_signal(meta),
            consensus_signal(meta),
        )
        factors = EDGE_DIMENSION_FACTORS[family]
        for i in range(4):
            values[i] = clamp(values[i] + signals[i] * factors[i] * weight * EVIDENCE_GAIN)

        if meta.bias_flags:
            penalty = BIAS_PENALTY * len(meta.bias_flags)
            values[2] = clamp(values[2] - penalty)
            values[3] = clamp(values[3] - penalty)

        quality_scores.append(evidence_quality_score(meta))

    aggregated = sum(values) / 4.0
    count = len(evidence_list)
    quality = sum(quality_scores) / count if count else 0.0
    if count:
        half_width = (1.0 / math.sqrt(count)) * (1.0 - quality)
    else:
        half_width = 0.5
    half_width = clamp(half_width, 0.0, 0.5)

    return ConfidenceResult(
        vector=values,
        aggregated=aggregated,
        dimensions=dict(zip(CONFIDENCE_DIMENSIONS, values)),
        metadata=ConfidenceMetadata(
            evidence_count=count,
            confidence_delta=aggregated - sum(prior) / 4.0,
            quality_score=quality,
            uncertainty_bounds=(clamp(aggregated - half_width), clamp(aggregated + half_width)),
        ),
    )


def confidence_evolution(
    node: Node,
    evidence_batches: Sequence[Sequence[Node]],
    incident_edges: Sequence[Edge],
) -> List[ConfidenceResult]:
    """Replay evidence batches in order and return the result after each one."""
    current = node.model_copy(deep=True)
    history: List[ConfidenceResult] = []
    for batch in evidence_batches:
        result = compute_confidence(current, batch, incident_edges)
        current.confidence = result.to_confidence_vector()
        history.append(result)
    return history
