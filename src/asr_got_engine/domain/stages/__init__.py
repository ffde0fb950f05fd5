from .base_stage import BaseStage, StageOutput, StageState
from .stage_1_initialization import InitializationStage
from .stage_2_decomposition import DecompositionStage
from .stage_3_hypothesis import HypothesisStage
from .stage_4_evidence import EvidenceStage
from .stage_5_pruning import PruningMergingStage
from .stage_6_subgraph import SubgraphExtractionStage
from .stage_7_composition import CompositionStage
from .stage_8_reflection import ReflectionStage
from .stage_9_final_analysis import FinalAnalysisStage

# Ordered by stage number; index 0 is stage 1.
STAGE_CLASSES = [
    InitializationStage,
    DecompositionStage,
    HypothesisStage,
    EvidenceStage,
    PruningMergingStage,
    SubgraphExtractionStage,
    CompositionStage,
    ReflectionStage,
    FinalAnalysisStage,
]

__all__ = [
    "BaseStage",
    "StageOutput",
    "StageState",
    "STAGE_CLASSES",
    "InitializationStage",
    "DecompositionStage",
    "HypothesisStage",
    "EvidenceStage",
    "PruningMergingStage",
    "SubgraphExtractionStage",
    "CompositionStage",
    "ReflectionStage",
    "FinalAnalysisStage",
]
