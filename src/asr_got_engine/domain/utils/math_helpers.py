import math
from typing import Sequence


def calculate_entropy(distribution: Sequence[float]) -> float:
    """Shannon entropy (bits) of a distribution; non-normalized input is normalized."""
    total = sum(p for p in distribution if p > 0)
    if total <= 0:
        return 0.0
    entropy = 0.0
    for p in distribution:
        if p > 0:
            q = p / total
            entropy -= q * math.log2(q)
    return entropy


def calculate_information_gain(
    prior_distribution: Sequence[float], posterior_distribution: Sequence[float]
) -> float:
    """Entropy reduction from prior to posterior. Never negative."""
    return max(
        0.0, calculate_entropy(prior_distribution) - calculate_entropy(posterior_distribution)
    )


def weighted_average(values: Sequence[Sequence[float]], weights: Sequence[float]) -> list[float]:
    """Element-wise weighted average; falls back to an unweighted mean when all weights are 0."""
    if not values:
        raise ValueError("Cannot average an empty sequence")
    if len(values) != len(weights):
        raise ValueError("values and weights must have the same length")
    total = sum(weights)
    if total <= 0:
        weights = [1.0] * len(values)
        total = float(len(values))
    width = len(values[0])
    return [
        sum(v[i] * w for v, w in zip(values, weights)) / total for i in range(width)
    ]
