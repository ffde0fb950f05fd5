import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from asr_got_engine.domain.models.common import ConfidenceVector
from asr_got_engine.domain.models.graph_elements import (
    BiasFlag,
    Edge,
    EdgeType,
    EvidenceMetadata,
    EvidenceQuality,
    HypothesisMetadata,
    Node,
    NodeType,
)
from asr_got_engine.domain.services.confidence_calculator import (
    compute_confidence,
    confidence_evolution,
    empirical_signal,
    methodological_signal,
)


# --- Test Fixtures ---
@pytest.fixture
def hypothesis_node():
    """Hypothesis with the neutral 0.5 prior on every dimension."""
    return Node(id="hyp", type=NodeType.HYPOTHESIS, metadata=HypothesisMetadata())


def _evidence(node_id: str, **meta) -> Node:
    return Node(id=node_id, type=NodeType.EVIDENCE, metadata=EvidenceMetadata(**meta))


def _edge(evidence: Node, edge_type: EdgeType, confidence: float = 0.8) -> Edge:
    return Edge(source_id=evidence.id, target_id="hyp", type=edge_type, confidence=confidence)


def test_no_evidence_keeps_prior_with_widest_bounds(hypothesis_node):
    result = compute_confidence(hypothesis_node, [], [])

    assert result.vector == [0.5, 0.5, 0.5, 0.5]
    assert result.aggregated == pytest.approx(0.5)
    assert result.metadata.evidence_count == 0
    assert result.metadata.uncertainty_bounds == (0.0, 1.0)


def test_supportive_evidence_raises_confidence(hypothesis_node):
    ev = _evidence("ev1", evidence_quality=EvidenceQuality.HIGH, statistical_power=0.8, peer_review_status=True)
    result = compute_confidence(hypothesis_node, [ev], [_edge(ev, EdgeType.SUPPORTIVE)])

    assert result.aggregated > 0.5
    assert result.metadata.confidence_delta > 0
    assert result.dimensions["empirical_support"] > 0.5


def test_contradictory_evidence_lowers_confidence(hypothesis_node):
    ev = _evidence("ev1", evidence_quality=EvidenceQuality.HIGH, statistical_power=0.9)
    result = compute_confidence(hypothesis_node, [ev], [_edge(ev, EdgeType.CONTRADICTORY)])

    assert result.dimensions["empirical_support"] < 0.5
    assert result.aggregated < 0.5


def test_unlinked_evidence_uses_supports_flag(hypothesis_node):
    against = _evidence("ev1", supports_hypothesis=False, statistical_power=0.9)
    result = compute_confidence(hypothesis_node, [against], [])
    assert result.dimensions["empirical_support"] < 0.5


def test_causal_sub_variant_scores_like_causal(hypothesis_node):
    ev = _evidence("ev1", study_design="rct")
    direct = compute_confidence(hypothesis_node, [ev], [_edge(ev, EdgeType.CAUSAL_DIRECT)])
    plain = compute_confidence(hypothesis_node, [ev], [_edge(ev, EdgeType.CAUSAL)])
    assert direct.vector == plain.vector


def test_evidence_order_does_not_matter(hypothesis_node):
    first = _evidence("ev_a", statistical_power=0.9, sample_size=800)
    second = _evidence("ev_b", evidence_quality=EvidenceQuality.LOW)
    edges = [_edge(first, EdgeType.SUPPORTIVE), _edge(second, EdgeType.CONTRADICTORY, 0.6)]

    forward = compute_confidence(hypothesis_node, [first, second], edges)
    backward = compute_confidence(hypothesis_node, [second, first], list(reversed(edges)))

    assert forward.vector == backward.vector
    assert forward.metadata == backward.metadata


def test_bias_flags_penalize_rigor_and_consensus(hypothesis_node):
    clean = _evidence("ev1", study_design="cohort")
    biased = _evidence(
        "ev1",
        study_design="cohort",
        bias_flags=[BiasFlag(bias_type="selection"), BiasFlag(bias_type="funding")],
    )
    edge = _edge(clean, EdgeType.SUPPORTIVE)

    clean_result = compute_confidence(hypothesis_node, [clean], [edge])
    biased_result = compute_confidence(hypothesis_node, [biased], [edge])

    assert biased_result.dimensions["methodological_rigor"] < clean_result.dimensions["methodological_rigor"]
    assert biased_result.dimensions["consensus_alignment"] < clean_result.dimensions["consensus_alignment"]
    assert biased_result.dimensions["empirical_support"] == clean_result.dimensions["empirical_support"]


def test_bounds_narrow_with_more_evidence(hypothesis_node):
    items = [_evidence(f"ev{i}", peer_review_status=True) for i in range(4)]
    edges = [_edge(ev, EdgeType.SUPPORTIVE) for ev in items]

    one = compute_confidence(hypothesis_node, items[:1], edges)
    four = compute_confidence(hypothesis_node, items, edges)

    width_one = one.metadata.uncertainty_bounds[1] - one.metadata.uncertainty_bounds[0]
    width_four = four.metadata.uncertainty_bounds[1] - four.metadata.uncertainty_bounds[0]
    assert width_four < width_one


def test_input_node_is_not_mutated(hypothesis_node):
    ev = _evidence("ev1", statistical_power=1.0)
    compute_confidence(hypothesis_node, [ev], [_edge(ev, EdgeType.SUPPORTIVE)])
    assert hypothesis_node.confidence == ConfidenceVector()
    assert hypothesis_node.metadata.revision_history == []


def test_confidence_evolution_replays_batches(hypothesis_node):
    batches = [[_evidence("ev1", statistical_power=0.9)], [_evidence("ev2", statistical_power=0.9)]]
    edges = [_edge(batch[0], EdgeType.SUPPORTIVE) for batch in batches]

    history = confidence_evolution(hypothesis_node, batches, edges)

    assert len(history) == 2
    assert history[1].aggregated > history[0].aggregated > 0.5


def test_signal_helpers_respect_caps():
    strong = EvidenceMetadata(
        evidence_quality=EvidenceQuality.HIGH, statistical_power=1.0, sample_size=10_000, replication_count=9
    )
    assert empirical_signal(strong) == pytest.approx(0.3 + 0.25 + 0.2 + 0.15)
    assert methodological_signal(EvidenceMetadata(study_design="Meta-Analysis")) == pytest.approx(0.4 + 0.5 * 0.15)


@settings(max_examples=50)
@given(
    prior=st.lists(st.floats(min_value=0, max_value=1), min_size=4, max_size=4),
    weights=st.lists(st.floats(min_value=0, max_value=1), min_size=1, max_size=5),
    contradictory=st.booleans(),
)
def test_result_stays_in_unit_interval(prior, weights, contradictory):
    node = Node(id="hyp", type=NodeType.HYPOTHESIS, confidence=ConfidenceVector.from_list(prior))
    items = [_evidence(f"ev{i}", statistical_power=1.0, sample_size=5000) for i in range(len(weights))]
    edge_type = EdgeType.CONTRADICTORY if contradictory else EdgeType.SUPPORTIVE
    edges = [_edge(ev, edge_type, w) for ev, w in zip(items, weights)]

    result = compute_confidence(node, items, edges)

    assert all(0.0 <= v <= 1.0 for v in result.vector)
    low, high = result.metadata.uncertainty_bounds
    assert 0.0 <= low <= result.aggregated <= high <= 1.0
