"""
Acceptance rules and Rosenbluth selection for configurational-bias
grand-canonical moves.

Ratios are handled as logarithms: with chemical potentials of tens of kBT
the plain product overflows long before the acceptance test is made.
"""

from __future__ import annotations

import math
import random
from typing import Sequence


def log_insertion_ratio(
    volume: float,
    beta: float,
    chemical_potential: float,
    energy_change: float,
    rosenbluth_weight: float,
    de_broglie: float,
    count: int,
) -> float:
    """log of V exp(beta mu - beta dE) W / (Lambda (N + 1)), N molecules before insertion."""
    if rosenbluth_weight <= 0.0:
        return -math.inf
    if math.isinf(rosenbluth_weight):
        return math.inf
    return (
        math.log(volume)
        + beta * chemical_potential
        - beta * energy_change
        + math.log(rosenbluth_weight)
        - math.log(de_broglie)
        - math.log(count + 1)
    )


def log_deletion_ratio(
    volume: float,
    beta: float,
    chemical_potential: float,
    energy_change: float,
    rosenbluth_weight: float,
    de_broglie: float,
    count: int,
) -> float:
    """
    log of N Lambda / (V exp(beta mu - beta dE) W), N molecules before deletion.

    ``energy_change`` is the energy of adding the chain back, so the rule is
    the exact reciprocal of the insertion rule for N - 1 -> N.
    """
    return -log_insertion_ratio(
        volume, beta, chemical_potential, energy_change, rosenbluth_weight, de_broglie, count - 1
    )


def insertion_ratio(*args: float) -> float:
    return _safe_exp(log_insertion_ratio(*args))  # type: ignore[arg-type]


def deletion_ratio(*args: float) -> float:
    return _safe_exp(log_deletion_ratio(*args))  # type: ignore[arg-type]


def acceptance_probability(log_ratio: float) -> float:
    """min(1, exp(log_ratio))."""
    if log_ratio >= 0.0:
        return 1.0
    return math.exp(log_ratio)


def _safe_exp(value: float) -> float:
    if value > 700.0:
        return math.inf
    return math.exp(value)


def rosenbluth_select(weights: Sequence[float], total: float, rng: random.Random) -> int:
    """Pick an index with probability weights[i] / total by walking the cumulative sum."""
    threshold = rng.random() * total
    cumulative = 0.0
    last_positive = 0
    for index, weight in enumerate(weights):
        if weight > 0.0:
            last_positive = index
        cumulative += weight
        if cumulative > threshold:
            return index
    # Rounding can leave the threshold just above the final cumulative sum.
    return last_positive
