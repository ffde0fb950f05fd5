from typing import Dict, List, Tuple

from loguru import logger  # type: ignore

from ..models.common import ConfidenceVector
from ..models.graph_elements import Node, NodeType, RevisionRecord
from ..utils.math_helpers import calculate_entropy, calculate_information_gain, weighted_average
from ..utils.metadata_helpers import calculate_semantic_similarity
from .base_stage import BaseStage, StageOutput, StageState

PROTECTED_NODE_TYPES = (NodeType.ROOT, NodeType.DIMENSION)


class PruningMergingStage(BaseStage):
    """
    Graph hygiene: drops weak edges and nodes, then merges near-duplicate
    hypotheses. Makes no external calls, so ``fallback`` and ``execute``
    share the same deterministic core.
    """

    stage_name: str = "PruningMergingStage"
    stage_number: int = 5

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        output = self._prune_and_merge(state)
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        output = self._prune_and_merge(state)
        self._log_end(state.session_id, output)
        return output

    def _confidence_distribution(self, state: StageState) -> List[float]:
        return [n.confidence.average_confidence for n in state.graph.active_nodes()]

    def _prune_and_merge(self, state: StageState) -> StageOutput:
        prior = self._confidence_distribution(state)
        edges_pruned = self._prune_edges(state)
        nodes_pruned = self._prune_nodes(state)
        orphans_pruned = self._prune_orphans(state)
        merges = self._merge_hypotheses(state)
        posterior = self._confidence_distribution(state)

        gain = calculate_information_gain(prior, posterior)
        active = len(state.graph.active_nodes())
        summary = (
            f"Pruned {nodes_pruned + orphans_pruned} nodes and {edges_pruned} edges; "
            f"merged {len(merges)} hypothesis pairs"
        )
        content_lines = [summary]
        content_lines.extend(f"Merged {absorbed} into {survivor}" for survivor, absorbed in merges)
        return StageOutput(
            summary=summary,
            content="\n".join(content_lines),
            metrics={
                "nodes_pruned": nodes_pruned + orphans_pruned,
                "edges_pruned": edges_pruned,
                "nodes_merged": len(merges),
                "merged_pairs": [list(pair) for pair in merges],
                "active_nodes": active,
                "entropy_before": calculate_entropy(prior),
                "entropy_after": calculate_entropy(posterior),
                "information_gain": gain,
            },
        )

    def _prune_edges(self, state: StageState) -> int:
        count = 0
        for edge in state.graph.edges:
            if edge.is_active and edge.confidence < self.params.edge_prune_threshold:
                edge.metadata.pruned = True
                edge.metadata.description = (
                    edge.metadata.description
                    or f"Pruned: confidence {edge.confidence:.2f} below threshold"
                )
                edge.touch()
                count += 1
        return count

    def _prune_nodes(self, state: StageState) -> int:
        count = 0
        for node in sorted(state.graph.active_nodes(), key=lambda n: n.id):
            if node.type in PROTECTED_NODE_TYPES:
                continue
            weakest = min(node.confidence.to_list())
            if (
                weakest < self.params.prune_confidence_threshold
                and node.metadata.impact_score < self.params.prune_impact_threshold
            ):
                node.mark_pruned(
                    self.stage_name,
                    f"Low confidence ({weakest:.2f}) and low impact ({node.metadata.impact_score:.2f})",
                )
                self._prune_incident_edges(state, node)
                count += 1
        if count:
            logger.debug(f"Pruned {count} low-confidence, low-impact nodes")
        return count

    def _prune_orphans(self, state: StageState) -> int:
        count = 0
        for node in sorted(state.graph.active_nodes(), key=lambda n: n.id):
            if node.type in PROTECTED_NODE_TYPES:
                continue
            if not state.graph.incident_edges(node.id):
                node.mark_pruned(self.stage_name, "Orphaned: no active edges remain")
                count += 1
        return count

    def _prune_incident_edges(self, state: StageState, node: Node) -> None:
        for edge in state.graph.incident_edges(node.id):
            edge.metadata.pruned = True
            edge.touch()

    def _evidence_count(self, state: StageState, node: Node) -> int:
        return sum(
            1
            for e in state.graph.edges_into(node.id)
            if state.graph.nodes[e.source_id].type == NodeType.EVIDENCE
        )

    def _merge_hypotheses(self, state: StageState) -> List[Tuple[str, str]]:
        merges: List[Tuple[str, str]] = []
        hypotheses = sorted(state.graph.nodes_of_type(NodeType.HYPOTHESIS), key=lambda n: n.id)
        absorbed: Dict[str, str] = {}
        for i, survivor in enumerate(hypotheses):
            if survivor.id in absorbed:
                continue
            for candidate in hypotheses[i + 1 :]:
                if candidate.id in absorbed:
                    continue
                similarity = calculate_semantic_similarity(
                    survivor.metadata.description or survivor.label,
                    candidate.metadata.description or candidate.label,
                )
                if similarity < self.params.merge_similarity_threshold:
                    continue
                self._merge(state, survivor, candidate, similarity)
                absorbed[candidate.id] = survivor.id
                merges.append((survivor.id, candidate.id))
        return merges

    def _merge(self, state: StageState, survivor: Node, absorbed: Node, similarity: float) -> None:
        weights = [
            1.0 + self._evidence_count(state, survivor),
            1.0 + self._evidence_count(state, absorbed),
        ]
        merged = weighted_average(
            [survivor.confidence.to_list(), absorbed.confidence.to_list()], weights
        )
        survivor.update_confidence(
            ConfidenceVector.from_list(merged),
            updated_by=self.stage_name,
            reason=f"Merged with '{absorbed.id}' (similarity {similarity:.2f})",
        )
        survivor.metadata.merged_from.append(absorbed.id)
        for tag in absorbed.metadata.disciplinary_tags:
            if tag not in survivor.metadata.disciplinary_tags:
                survivor.metadata.disciplinary_tags.append(tag)
        survivor.metadata.impact_score = max(
            survivor.metadata.impact_score, absorbed.metadata.impact_score
        )

        absorbed.metadata.merged_into = survivor.id
        absorbed.metadata.opacity = 0.3
        absorbed.metadata.revision_history.append(
            RevisionRecord(
                user_or_process=self.stage_name,
                action="merge",
                changes_made={"merged_into": survivor.id},
                reason=f"Similarity {similarity:.2f} with '{survivor.id}'",
            )
        )
        absorbed.touch()
        logger.debug(f"Merged hypothesis {absorbed.id} into {survivor.id}")
