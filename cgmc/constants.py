"""Numerical constants shared across the force field and samplers.

Energies are in units of kBT when beta is set to 1, lengths in the
simulation's unit length.
"""

from __future__ import annotations

import math

# Distinguished energy for forbidden (overlapping) configurations. Any sum
# that reaches it stays at it.
VERY_LARGE_ENERGY = 1.0e20

K216 = 2.0 ** (1.0 / 6.0)
SQRT_PI = math.sqrt(math.pi)

MED_SMALL_NUMBER = 1.0e-6

# Virial estimator shells, after Chang and Sandler (1993).
VIRIAL_SHELL_FRACTION = 0.01
VIRIAL_SHELL_COUNT = 4

# Number of CBMC insertions averaged per chemical potential estimate.
WIDOM_INSERTIONS = 100

DEFAULT_GC_SYMBOL = "P"
DEFAULT_CBMC_TRIALS = 20

MOVE_TYPES = ("bead_translation", "com_translation", "pivot", "crankshaft", "reptation")


def energy_sum(*terms: float) -> float:
    """Add energy terms, saturating at VERY_LARGE_ENERGY."""

    total = 0.0
    for term in terms:
        if term >= VERY_LARGE_ENERGY:
            return VERY_LARGE_ENERGY
        total += term
        if total >= VERY_LARGE_ENERGY:
            return VERY_LARGE_ENERGY
    return total


def boltzmann_factor(beta: float, energy: float) -> float:
    if energy >= VERY_LARGE_ENERGY:
        return 0.0
    exponent = -beta * energy
    if exponent > 700.0:
        return math.inf
    return math.exp(exponent)
