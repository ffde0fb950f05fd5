from typing import List

from ..models.graph_elements import Node, NodeType
from .base_stage import BaseStage, StageOutput, StageState
from .stage_1_initialization import ROOT_NODE_ID


class SubgraphExtractionStage(BaseStage):
    """Selects the high-confidence reasoning chains. Read-only on the graph."""

    stage_name: str = "SubgraphExtractionStage"
    stage_number: int = 6

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        output = self._extract(state)
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        return self._extract(state)

    def _qualifies(self, node: Node) -> bool:
        return node.is_active and node.confidence.average_confidence >= self.params.subgraph_confidence_threshold

    def _children(self, state: StageState, node: Node, child_type: NodeType) -> List[Node]:
        children = []
        for edge in state.graph.edges_from(node.id):
            child = state.graph.nodes[edge.target_id]
            if child.type == child_type and self._qualifies(child):
                children.append(child)
        return sorted(children, key=lambda n: n.id)

    def _evidence_for(self, state: StageState, hypothesis: Node) -> List[Node]:
        evidence = []
        for edge in state.graph.edges_into(hypothesis.id):
            source = state.graph.nodes[edge.source_id]
            if source.type == NodeType.EVIDENCE and self._qualifies(source):
                evidence.append(source)
        return sorted(evidence, key=lambda n: n.id)

    def _extract(self, state: StageState) -> StageOutput:
        root = state.graph.get_node(ROOT_NODE_ID)
        pathways: List[List[str]] = []
        if root is not None and self._qualifies(root):
            for dimension in self._children(state, root, NodeType.DIMENSION):
                for hypothesis in self._children(state, dimension, NodeType.HYPOTHESIS):
                    for evidence in self._evidence_for(state, hypothesis):
                        pathways.append([root.id, dimension.id, hypothesis.id, evidence.id])

        subgraph_ids: List[str] = []
        for path in pathways:
            for node_id in path:
                if node_id not in subgraph_ids:
                    subgraph_ids.append(node_id)

        high_impact = sorted(
            n.id
            for n in state.graph.active_nodes()
            if n.metadata.impact_score >= self.params.high_impact_threshold
        )
        inner_edges = [
            e
            for e in state.graph.edges
            if e.is_active and e.source_id in subgraph_ids and e.target_id in subgraph_ids
        ]
        complexity = len(inner_edges) / len(subgraph_ids) if subgraph_ids else 0.0
        hypotheses_covered = sorted({path[2] for path in pathways})

        summary = (
            f"Extracted {len(pathways)} high-confidence pathways covering "
            f"{len(subgraph_ids)} nodes"
        )
        content_lines = [summary]
        for path in pathways:
            labels = [state.graph.nodes[node_id].label for node_id in path]
            content_lines.append(" -> ".join(labels))
        return StageOutput(
            summary=summary,
            content="\n".join(content_lines),
            metrics={
                "pathway_count": len(pathways),
                "subgraph_node_ids": subgraph_ids,
                "subgraph_size": len(subgraph_ids),
                "hypotheses_covered": hypotheses_covered,
                "high_impact_node_ids": high_impact,
                "complexity_score": complexity,
                "confidence_threshold": self.params.subgraph_confidence_threshold,
            },
        )
