"""Shared primitive models used by the graph elements and the stages."""

import datetime
from enum import Enum
from typing import Annotated, List

from pydantic import BaseModel, Field, field_validator

CertaintyScore = Annotated[float, Field(ge=0.0, le=1.0)]
ImpactScore = Annotated[float, Field(ge=0.0, le=1.0)]

CONFIDENCE_DIMENSIONS = (
    "empirical_support",
    "theoretical_basis",
    "methodological_rigor",
    "consensus_alignment",
)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))


class EpistemicStatus(str, Enum):
    ASSUMPTION = "assumption"
    HYPOTHESIS = "hypothesis"
    EVIDENCE_SUPPORTED = "evidence_supported"
    EVIDENCE_CONTRADICTED = "evidence_contradicted"
    INFERRED = "inferred"
    SYNTHESIZED = "synthesized"
    UNKNOWN = "unknown"


class TimestampedModel(BaseModel):
    created_at: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    updated_at: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    def touch(self) -> None:
        self.updated_at = datetime.datetime.now(datetime.timezone.utc)


class ConfidenceVector(BaseModel):
    """
    Four-dimensional confidence score.

    Values outside [0, 1] are clamped on construction and on assignment so a
    vector can never leave the unit hypercube.
    """

    empirical_support: float = 0.5
    theoretical_basis: float = 0.5
    methodological_rigor: float = 0.5
    consensus_alignment: float = 0.5

    model_config = {"validate_assignment": True}

    @field_validator(*CONFIDENCE_DIMENSIONS, mode="before")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp(value)

    @classmethod
    def from_list(cls, values: List[float]) -> "ConfidenceVector":
        if len(values) != 4:
            raise ValueError(
                f"Confidence vector needs exactly 4 values, got {len(values)}"
            )
        return cls(**dict(zip(CONFIDENCE_DIMENSIONS, values)))

    def to_list(self) -> List[float]:
        return [getattr(self, name) for name in CONFIDENCE_DIMENSIONS]

    @property
    def average_confidence(self) -> float:
        return sum(self.to_list()) / 4.0

    def as_dimensions(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in CONFIDENCE_DIMENSIONS}
