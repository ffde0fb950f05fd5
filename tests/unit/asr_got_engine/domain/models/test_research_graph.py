import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError as PydanticValidationError

from asr_got_engine.domain.models.common import ConfidenceVector
from asr_got_engine.domain.models.graph_elements import (
    DimensionMetadata,
    Edge,
    EdgeType,
    EvidenceMetadata,
    Hyperedge,
    HypothesisMetadata,
    Node,
    NodeType,
    ResearchGraph,
    RootMetadata,
)
from asr_got_engine.domain.services.exceptions import GraphConsistencyError


# --- Test Fixtures ---
@pytest.fixture
def small_graph():
    """Root -> dimension -> hypothesis chain created by stages 1, 2 and 3."""
    graph = ResearchGraph()
    graph.add_node(Node(id="root", type=NodeType.ROOT, stage_of_origin=1))
    graph.add_node(Node(id="dim", type=NodeType.DIMENSION, stage_of_origin=2))
    graph.add_node(Node(id="hyp", type=NodeType.HYPOTHESIS, stage_of_origin=3))
    graph.add_edge(Edge(id="e1", source_id="root", target_id="dim", stage_of_origin=2))
    graph.add_edge(Edge(id="e2", source_id="dim", target_id="hyp", stage_of_origin=3))
    return graph


# --- ConfidenceVector ---
def test_confidence_vector_clamps_on_construction_and_assignment():
    vector = ConfidenceVector(empirical_support=1.7, theoretical_basis=-0.2)
    assert vector.empirical_support == 1.0
    assert vector.theoretical_basis == 0.0

    vector.consensus_alignment = 3.0
    assert vector.consensus_alignment == 1.0


def test_confidence_vector_from_list_requires_four_values():
    with pytest.raises(ValueError):
        ConfidenceVector.from_list([0.1, 0.2, 0.3])
    vector = ConfidenceVector.from_list([0.1, 0.2, 0.3, 0.4])
    assert vector.to_list() == [0.1, 0.2, 0.3, 0.4]
    assert vector.average_confidence == pytest.approx(0.25)


@given(st.lists(st.floats(min_value=-10, max_value=10, allow_nan=False), min_size=4, max_size=4))
def test_confidence_vector_always_within_unit_interval(values):
    vector = ConfidenceVector.from_list(values)
    assert len(vector.to_list()) == 4
    assert all(0.0 <= v <= 1.0 for v in vector.to_list())


# --- Node ---
def test_node_gets_metadata_matching_its_type():
    node = Node(id="h1", type=NodeType.HYPOTHESIS)
    assert isinstance(node.metadata, HypothesisMetadata)
    assert node.is_active


def test_node_rejects_metadata_of_another_type():
    with pytest.raises(PydanticValidationError):
        Node(id="h1", type=NodeType.HYPOTHESIS, metadata=EvidenceMetadata())


def test_node_metadata_round_trips_through_discriminator():
    node = Node(id="r", type=NodeType.ROOT, metadata=RootMetadata(primary_field="Oncology"))
    restored = Node.model_validate(node.model_dump())
    assert isinstance(restored.metadata, RootMetadata)
    assert restored.metadata.primary_field == "Oncology"


def test_update_confidence_appends_revision_history():
    node = Node(id="h1", type=NodeType.HYPOTHESIS)
    node.update_confidence(ConfidenceVector.from_list([0.9, 0.8, 0.7, 0.6]), "tester", "new evidence")

    assert node.confidence.empirical_support == 0.9
    record = node.metadata.revision_history[-1]
    assert record.user_or_process == "tester"
    assert record.changes_made["confidence"]["old"]["empirical_support"] == 0.5


def test_mark_pruned_keeps_node_but_deactivates_it():
    node = Node(id="d1", type=NodeType.DIMENSION, metadata=DimensionMetadata())
    node.mark_pruned("pruner", "too weak")
    assert not node.is_active
    assert node.metadata.opacity == pytest.approx(0.3)


# --- Hyperedge ---
@pytest.mark.parametrize("node_ids", [["a"], ["a", "a"], []])
def test_hyperedge_requires_two_distinct_nodes(node_ids):
    with pytest.raises(PydanticValidationError):
        Hyperedge(node_ids=node_ids)


# --- ResearchGraph ---
def test_add_node_rejects_duplicate_ids(small_graph):
    with pytest.raises(GraphConsistencyError):
        small_graph.add_node(Node(id="root", type=NodeType.ROOT))


def test_add_edge_rejects_dangling_endpoint(small_graph):
    with pytest.raises(GraphConsistencyError):
        small_graph.add_edge(Edge(source_id="hyp", target_id="missing"))


def test_add_hyperedge_rejects_unknown_nodes(small_graph):
    with pytest.raises(GraphConsistencyError):
        small_graph.add_hyperedge(Hyperedge(node_ids=["hyp", "ghost"]))


def test_metadata_counts_track_collections(small_graph):
    small_graph.add_hyperedge(Hyperedge(id="hx", node_ids=["dim", "hyp"]))
    meta = small_graph.refresh_metadata(stage=3)

    assert meta.stage == 3
    assert meta.total_nodes == len(small_graph.nodes) == 3
    assert meta.total_edges == 2
    assert meta.total_hyperedges == 1
    assert meta.density == pytest.approx(2 / 6)
    assert meta.complexity == pytest.approx((2 + 2) / 3)
    small_graph.validate_consistency()


def test_validate_consistency_detects_stale_counts(small_graph):
    small_graph.nodes["extra"] = Node(id="extra", type=NodeType.GAP)
    with pytest.raises(GraphConsistencyError):
        small_graph.validate_consistency()


def test_edge_family_collapses_sub_variants():
    assert EdgeType.CAUSAL_COUNTERFACTUAL.family == EdgeType.CAUSAL
    assert EdgeType.TEMPORAL_DELAYED.family == EdgeType.TEMPORAL
    assert EdgeType.SUPPORTIVE.family == EdgeType.SUPPORTIVE


def test_remove_from_stage_drops_later_elements(small_graph):
    small_graph.remove_from_stage(3)

    assert set(small_graph.nodes) == {"root", "dim"}
    assert [e.id for e in small_graph.edges] == ["e1"]
    assert small_graph.metadata.total_nodes == 2


def test_snapshot_is_independent(small_graph):
    copy = small_graph.snapshot()
    copy.nodes["hyp"].mark_pruned("test", "copy only")
    copy.add_node(Node(id="new", type=NodeType.GAP))

    assert small_graph.nodes["hyp"].is_active
    assert "new" not in small_graph.nodes


def test_nodes_of_type_skips_inactive_by_default(small_graph):
    small_graph.nodes["hyp"].metadata.merged_into = "other"
    assert small_graph.nodes_of_type(NodeType.HYPOTHESIS) == []
    assert len(small_graph.nodes_of_type(NodeType.HYPOTHESIS, active_only=False)) == 1
