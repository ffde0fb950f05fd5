import datetime
import uuid
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from ..services.exceptions import GraphConsistencyError
from .common import (
    CertaintyScore,
    ConfidenceVector,
    EpistemicStatus,
    ImpactScore,
    TimestampedModel,
)

GRAPH_SCHEMA_VERSION = "1.0"


# --- Enumerations ---
class NodeType(str, Enum):
    ROOT = "root"
    DIMENSION = "dimension"
    HYPOTHESIS = "hypothesis"
    EVIDENCE = "evidence"
    BRIDGE = "bridge"
    GAP = "gap"
    SYNTHESIS = "synthesis"
    REFLECTION = "reflection"


class EdgeType(str, Enum):
    SUPPORTIVE = "supportive"
    CONTRADICTORY = "contradictory"
    CORRELATIVE = "correlative"
    CAUSAL = "causal"
    CAUSAL_DIRECT = "causal_direct"
    CAUSAL_COUNTERFACTUAL = "causal_counterfactual"
    CAUSAL_CONFOUNDED = "causal_confounded"
    TEMPORAL = "temporal"
    TEMPORAL_PRECEDENCE = "temporal_precedence"
    TEMPORAL_SEQUENTIAL = "temporal_sequential"
    TEMPORAL_DELAYED = "temporal_delayed"
    TEMPORAL_CYCLIC = "temporal_cyclic"
    PREREQUISITE = "prerequisite"

    @property
    def family(self) -> "EdgeType":
        """Collapse causal and temporal sub-variants onto their parent type."""
        if self.value.startswith("causal"):
            return EdgeType.CAUSAL
        if self.value.startswith("temporal"):
            return EdgeType.TEMPORAL
        return self


class HyperedgeType(str, Enum):
    MULTI_CAUSAL = "multi_causal"
    INTERDISCIPLINARY = "interdisciplinary"
    COMPLEX_RELATIONSHIP = "complex_relationship"


class EvidenceQuality(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# --- Metadata building blocks ---
class FalsificationCriteria(BaseModel):
    description: str
    testable_conditions: List[str] = Field(default_factory=list)


class BiasFlag(BaseModel):
    bias_type: str
    description: str = ""
    assessment_stage_id: str = ""
    mitigation_suggested: str = ""
    severity: str = "low"


class RevisionRecord(BaseModel):
    timestamp: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    user_or_process: str
    action: str
    changes_made: Dict[str, Any] = Field(default_factory=dict)
    reason: str = ""


class SourceReference(BaseModel):
    url: str = ""
    title: str = ""


class InterdisciplinaryInfo(BaseModel):
    source_disciplines: List[str] = Field(default_factory=list)
    target_disciplines: List[str] = Field(default_factory=list)
    bridging_concept: str = ""


class CausalMetadata(BaseModel):
    description: str = ""
    causal_strength: float = 0.0
    confounders: List[str] = Field(default_factory=list)
    counterfactual: str = ""


class TemporalMetadata(BaseModel):
    pattern_type: str = ""
    delay_description: str = ""
    sequence_order: int = 0


class Attribution(BaseModel):
    source_id: str = ""
    contributor: str = ""
    role: str = Field(default="author")


# --- Per-type node metadata ---
class BaseNodeMetadata(TimestampedModel):
    description: str = ""
    source_description: str = ""
    epistemic_status: EpistemicStatus = EpistemicStatus.UNKNOWN
    disciplinary_tags: List[str] = Field(default_factory=list)
    impact_score: ImpactScore = 0.5
    attribution: List[Attribution] = Field(default_factory=list)
    pruned: bool = False
    opacity: CertaintyScore = 1.0
    merged_into: Optional[str] = None
    revision_history: List[RevisionRecord] = Field(default_factory=list)


class RootMetadata(BaseNodeMetadata):
    kind: Literal["root"] = "root"
    primary_field: str = ""
    secondary_fields: List[str] = Field(default_factory=list)
    initial_scope: str = ""


class DimensionMetadata(BaseNodeMetadata):
    kind: Literal["dimension"] = "dimension"
    dimension_name: str = ""
    priority: int = 0
    content: str = ""


class HypothesisMetadata(BaseNodeMetadata):
    kind: Literal["hypothesis"] = "hypothesis"
    dimension_id: str = ""
    falsification_criteria: Optional[FalsificationCriteria] = None
    testing_plan: str = ""
    theoretical_framework: bool = False
    theoretical_consistency: CertaintyScore = 0.0
    merged_from: List[str] = Field(default_factory=list)


class EvidenceMetadata(BaseNodeMetadata):
    kind: Literal["evidence"] = "evidence"
    hypothesis_id: str = ""
    evidence_quality: EvidenceQuality = EvidenceQuality.MEDIUM
    statistical_power: CertaintyScore = 0.5
    sample_size: int = 0
    effect_size: Optional[float] = None
    p_value: Optional[float] = None
    replication_count: int = 0
    peer_review_status: bool = False
    citation_count: int = 0
    journal_rank: CertaintyScore = 0.0
    study_design: str = ""
    controls: List[str] = Field(default_factory=list)
    bias_flags: List[BiasFlag] = Field(default_factory=list)
    supports_hypothesis: bool = True
    controversial: bool = False
    sources: List[SourceReference] = Field(default_factory=list)


class BridgeMetadata(BaseNodeMetadata):
    kind: Literal["bridge"] = "bridge"
    interdisciplinary_info: InterdisciplinaryInfo = Field(
        default_factory=InterdisciplinaryInfo
    )


class GapMetadata(BaseNodeMetadata):
    kind: Literal["gap"] = "gap"
    gap_description: str = ""
    priority: str = "medium"


class SynthesisMetadata(BaseNodeMetadata):
    kind: Literal["synthesis"] = "synthesis"
    word_count: int = 0
    citation_count: int = 0
    references: List[str] = Field(default_factory=list)


class ReflectionMetadata(BaseNodeMetadata):
    kind: Literal["reflection"] = "reflection"
    bias_flags: List[BiasFlag] = Field(default_factory=list)
    consistency_score: CertaintyScore = 0.0
    audit_findings: List[str] = Field(default_factory=list)


NodeMetadata = Annotated[
    Union[
        RootMetadata,
        DimensionMetadata,
        HypothesisMetadata,
        EvidenceMetadata,
        BridgeMetadata,
        GapMetadata,
        SynthesisMetadata,
        ReflectionMetadata,
    ],
    Field(discriminator="kind"),
]

METADATA_BY_NODE_TYPE: Dict[NodeType, type] = {
    NodeType.ROOT: RootMetadata,
    NodeType.DIMENSION: DimensionMetadata,
    NodeType.HYPOTHESIS: HypothesisMetadata,
    NodeType.EVIDENCE: EvidenceMetadata,
    NodeType.BRIDGE: BridgeMetadata,
    NodeType.GAP: GapMetadata,
    NodeType.SYNTHESIS: SynthesisMetadata,
    NodeType.REFLECTION: ReflectionMetadata,
}


# --- Core graph element models ---
class Node(TimestampedModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    label: str = ""
    type: NodeType = NodeType.HYPOTHESIS
    confidence: ConfidenceVector = Field(default_factory=ConfidenceVector)
    stage_of_origin: int = 0
    metadata: Optional[NodeMetadata] = None

    @model_validator(mode="after")
    def _metadata_matches_type(self) -> "Node":
        if self.metadata is None:
            self.metadata = METADATA_BY_NODE_TYPE[self.type]()
        elif self.metadata.kind != self.type.value:
            raise ValueError(
                f"Node '{self.id}' of type '{self.type.value}' cannot carry "
                f"'{self.metadata.kind}' metadata"
            )
        return self

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Node) and self.id == other.id

    @property
    def is_active(self) -> bool:
        return not self.metadata.pruned and self.metadata.merged_into is None

    def update_confidence(
        self,
        new_confidence: ConfidenceVector,
        updated_by: str,
        reason: Optional[str] = None,
    ) -> None:
        old_conf = self.confidence.model_dump()
        self.confidence = new_confidence
        self.metadata.revision_history.append(
            RevisionRecord(
                user_or_process=updated_by,
                action="update_confidence",
                changes_made={
                    "confidence": {"old": old_conf, "new": new_confidence.model_dump()}
                },
                reason=reason or "",
            )
        )
        self.touch()

    def mark_pruned(self, pruned_by: str, reason: str, opacity: float = 0.3) -> None:
        self.metadata.pruned = True
        self.metadata.opacity = opacity
        self.metadata.revision_history.append(
            RevisionRecord(user_or_process=pruned_by, action="prune", reason=reason)
        )
        self.touch()


class EdgeMetadata(TimestampedModel):
    description: str = ""
    relation_tag: str = ""
    causal: Optional[CausalMetadata] = None
    temporal: Optional[TemporalMetadata] = None
    pruned: bool = False


class Edge(TimestampedModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str
    target_id: str
    type: EdgeType = EdgeType.SUPPORTIVE
    confidence: CertaintyScore = 0.7
    stage_of_origin: int = 0
    metadata: EdgeMetadata = Field(default_factory=EdgeMetadata)

    def __hash__(self) -> int:
        return hash((self.id, self.source_id, self.target_id, self.type))

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, Edge):
            return (
                self.id == other.id
                and self.source_id == other.source_id
                and self.target_id == other.target_id
                and self.type == other.type
            )
        return False

    @property
    def is_active(self) -> bool:
        return not self.metadata.pruned


class HyperedgeMetadata(TimestampedModel):
    description: str = ""
    relationship_descriptor: str = ""
    disciplines: List[str] = Field(default_factory=list)


class Hyperedge(TimestampedModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    node_ids: List[str]
    type: HyperedgeType = HyperedgeType.MULTI_CAUSAL
    weight: CertaintyScore = 0.5
    stage_of_origin: int = 0
    metadata: HyperedgeMetadata = Field(default_factory=HyperedgeMetadata)

    @field_validator("node_ids")
    @classmethod
    def _at_least_two_distinct(cls, value: List[str]) -> List[str]:
        if len(set(value)) < 2:
            raise ValueError("A hyperedge must reference at least 2 distinct nodes")
        return value

    def __hash__(self) -> int:
        return hash((self.id, tuple(sorted(self.node_ids))))

    def __eq__(self, other: Any) -> bool:
        return (
            isinstance(other, Hyperedge)
            and self.id == other.id
            and set(self.node_ids) == set(other.node_ids)
        )


class GraphMetadata(BaseModel):
    schema_version: str = GRAPH_SCHEMA_VERSION
    stage: int = 0
    total_nodes: int = 0
    total_edges: int = 0
    total_hyperedges: int = 0
    active_nodes: int = 0
    density: float = 0.0
    complexity: float = 0.0
    completed: bool = False
    created_at: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    last_updated: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


class ResearchGraph(BaseModel):
    """In-memory research graph mutated stage by stage."""

    nodes: Dict[str, Node] = Field(default_factory=dict)
    edges: List[Edge] = Field(default_factory=list)
    hyperedges: List[Hyperedge] = Field(default_factory=list)
    metadata: GraphMetadata = Field(default_factory=GraphMetadata)

    # -- nodes --
    def add_node(self, node: Node) -> Node:
        if node.id in self.nodes:
            raise GraphConsistencyError(f"Duplicate node id '{node.id}'")
        self.nodes[node.id] = node
        self.refresh_metadata()
        return node

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def nodes_of_type(self, node_type: NodeType, active_only: bool = True) -> List[Node]:
        return [
            n
            for n in self.nodes.values()
            if n.type == node_type and (n.is_active or not active_only)
        ]

    def active_nodes(self) -> List[Node]:
        return [n for n in self.nodes.values() if n.is_active]

    # -- edges --
    def add_edge(self, edge: Edge) -> Edge:
        for endpoint in (edge.source_id, edge.target_id):
            if endpoint not in self.nodes:
                raise GraphConsistencyError(
                    f"Edge '{edge.id}' references unknown node '{endpoint}'"
                )
        if any(e.id == edge.id for e in self.edges):
            raise GraphConsistencyError(f"Duplicate edge id '{edge.id}'")
        self.edges.append(edge)
        self.refresh_metadata()
        return edge

    def has_edge(self, source: str, target: str) -> bool:
        return any(e.source_id == source and e.target_id == target for e in self.edges)

    def edges_into(self, node_id: str, active_only: bool = True) -> List[Edge]:
        return [
            e
            for e in self.edges
            if e.target_id == node_id and (e.is_active or not active_only)
        ]

    def edges_from(self, node_id: str, active_only: bool = True) -> List[Edge]:
        return [
            e
            for e in self.edges
            if e.source_id == node_id and (e.is_active or not active_only)
        ]

    def incident_edges(self, node_id: str, active_only: bool = True) -> List[Edge]:
        return [
            e
            for e in self.edges
            if node_id in (e.source_id, e.target_id) and (e.is_active or not active_only)
        ]

    # -- hyperedges --
    def add_hyperedge(self, hyperedge: Hyperedge) -> Hyperedge:
        missing = [nid for nid in hyperedge.node_ids if nid not in self.nodes]
        if missing:
            raise GraphConsistencyError(
                f"Hyperedge '{hyperedge.id}' references unknown nodes {missing}"
            )
        if any(h.id == hyperedge.id for h in self.hyperedges):
            raise GraphConsistencyError(f"Duplicate hyperedge id '{hyperedge.id}'")
        self.hyperedges.append(hyperedge)
        self.refresh_metadata()
        return hyperedge

    # -- lifecycle --
    def remove_from_stage(self, stage: int) -> None:
        """Drop every element created by ``stage`` or any later stage."""
        removed = {nid for nid, n in self.nodes.items() if n.stage_of_origin >= stage}
        self.nodes = {nid: n for nid, n in self.nodes.items() if nid not in removed}
        self.edges = [
            e
            for e in self.edges
            if e.stage_of_origin < stage
            and e.source_id not in removed
            and e.target_id not in removed
        ]
        self.hyperedges = [
            h
            for h in self.hyperedges
            if h.stage_of_origin < stage and not removed.intersection(h.node_ids)
        ]
        self.refresh_metadata()

    def refresh_metadata(self, stage: Optional[int] = None) -> GraphMetadata:
        n = len(self.nodes)
        e = len(self.edges)
        meta = self.metadata
        meta.total_nodes = n
        meta.total_edges = e
        meta.total_hyperedges = len(self.hyperedges)
        meta.active_nodes = len(self.active_nodes())
        meta.density = e / (n * (n - 1)) if n > 1 else 0.0
        hyper_arity = sum(len(h.node_ids) for h in self.hyperedges)
        meta.complexity = (e + hyper_arity) / n if n else 0.0
        if stage is not None:
            meta.stage = stage
        meta.last_updated = datetime.datetime.now(datetime.timezone.utc)
        return meta

    def validate_consistency(self) -> None:
        """Raise ``GraphConsistencyError`` if any structural invariant is broken."""
        for node_id, node in self.nodes.items():
            if node_id != node.id:
                raise GraphConsistencyError(
                    f"Node keyed as '{node_id}' carries id '{node.id}'"
                )
        seen_edges: set[str] = set()
        for edge in self.edges:
            if edge.id in seen_edges:
                raise GraphConsistencyError(f"Duplicate edge id '{edge.id}'")
            seen_edges.add(edge.id)
            if edge.source_id not in self.nodes or edge.target_id not in self.nodes:
                raise GraphConsistencyError(
                    f"Edge '{edge.id}' has a dangling endpoint"
                )
        for hyperedge in self.hyperedges:
            if len(set(hyperedge.node_ids)) < 2:
                raise GraphConsistencyError(
                    f"Hyperedge '{hyperedge.id}' references fewer than 2 nodes"
                )
            if any(nid not in self.nodes for nid in hyperedge.node_ids):
                raise GraphConsistencyError(
                    f"Hyperedge '{hyperedge.id}' has a dangling endpoint"
                )
        meta = self.metadata
        if (meta.total_nodes, meta.total_edges, meta.total_hyperedges) != (
            len(self.nodes),
            len(self.edges),
            len(self.hyperedges),
        ):
            raise GraphConsistencyError("Graph metadata counts are stale")

    def snapshot(self) -> "ResearchGraph":
        return self.model_copy(deep=True)
