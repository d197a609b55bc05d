"""
Potential variants for the four force-field families.

Pair, bonded, long-range (Ewald) and external potentials share one protocol:
initialize the energy cache for a population, evaluate the energy change of a
single-molecule trial move, then commit or discard that change. The cache is
always the authority for the running total.

Energies are in kBT (beta = 1 convention). Forbidden configurations return
``VERY_LARGE_ENERGY`` instead of raising.
"""

from __future__ import annotations

import itertools
import logging
import math
import random
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from cgmc.constants import K216, SQRT_PI, VERY_LARGE_ENERGY, energy_sum
from cgmc.errors import ConfigurationError
from cgmc.molecules import Bead, Molecule, vector_length, vector_sub


logger = logging.getLogger(__name__)


def _mixing_key(symbol_a: str, symbol_b: str) -> Tuple[str, str]:
    return tuple(sorted((symbol_a, symbol_b)))  # type: ignore[return-value]


class PairwiseCache:
    """
    Symmetric molecule-by-molecule energy matrix.

    Entry (i, j) holds the summed pair energy between molecules i and j; the
    diagonal holds intramolecular energy. The running total is the upper
    triangle. A pending trial row is kept until ``finalize``.
    """

    def __init__(self) -> None:
        self.matrix = np.zeros((0, 0))
        self.total_energy = 0.0
        self._pending: Optional[Tuple[int, np.ndarray, float]] = None

    def reset(self, matrix: np.ndarray) -> None:
        self.matrix = matrix
        self._pending = None
        self.total_energy = self._triangle_sum()

    def molecule_energy(self, index: int) -> float:
        row = self.matrix[index]
        return energy_sum(*row.tolist())

    def stage(self, index: int, new_row: np.ndarray) -> float:
        old = self.molecule_energy(index)
        new = energy_sum(*new_row.tolist())
        if new >= VERY_LARGE_ENERGY:
            self._pending = None
            return VERY_LARGE_ENERGY
        delta = -VERY_LARGE_ENERGY if old >= VERY_LARGE_ENERGY else new - old
        self._pending = (index, new_row, delta)
        return delta

    def finalize(self, index: int, accept: bool) -> None:
        pending, self._pending = self._pending, None
        if not accept or pending is None:
            return
        staged_index, row, delta = pending
        if staged_index != index:
            raise RuntimeError(f"Pending energy belongs to molecule {staged_index}, not {index}.")
        self.matrix[index, :] = row
        self.matrix[:, index] = row
        if delta <= -VERY_LARGE_ENERGY or self.total_energy >= VERY_LARGE_ENERGY:
            self.total_energy = self._triangle_sum()
        else:
            self.total_energy += delta

    def remove(self, index: int) -> None:
        removed = self.molecule_energy(index)
        if removed >= VERY_LARGE_ENERGY or self.total_energy >= VERY_LARGE_ENERGY:
            self.matrix = np.delete(np.delete(self.matrix, index, axis=0), index, axis=1)
            self.total_energy = self._triangle_sum()
        else:
            self.total_energy -= removed
            self.matrix = np.delete(np.delete(self.matrix, index, axis=0), index, axis=1)
        self._pending = None

    def append(self, row: np.ndarray) -> None:
        n = self.matrix.shape[0]
        if row.shape[0] != n + 1:
            raise ValueError(f"New cache row has {row.shape[0]} entries, expected {n + 1}.")
        grown = np.zeros((n + 1, n + 1))
        grown[:n, :n] = self.matrix
        grown[n, :] = row
        grown[:, n] = row
        self.matrix = grown
        self.total_energy = energy_sum(self.total_energy, *row.tolist())

    def _triangle_sum(self) -> float:
        if self.matrix.size == 0:
            return 0.0
        return energy_sum(*self.matrix[np.triu_indices(self.matrix.shape[0])].tolist())


# ---------------------------------------------------------------------------
# Pair potentials
# ---------------------------------------------------------------------------


class PairPotential:
    """Base class for pairwise potentials between beads of different molecules."""

    name = "pair"
    is_hard = False

    def __init__(self) -> None:
        self._cache = PairwiseCache()

    @property
    def total_energy(self) -> float:
        return self._cache.total_energy

    @property
    def symbols(self) -> Iterable[str]:
        raise NotImplementedError

    def energy_at_distance(self, r: float, symbol_a: str, symbol_b: str) -> float:
        raise NotImplementedError

    def pair_energy(
        self,
        bead_a: Bead,
        bead_b: Bead,
        box_lengths: Sequence[float],
        npbc: int,
        trial_a: bool = False,
        trial_b: bool = False,
    ) -> float:
        r = bead_a.distance(bead_b, box_lengths, npbc, trial_a, trial_b)
        return self.energy_at_distance(r, bead_a.symbol, bead_b.symbol)

    def molecule_pair_energy(
        self,
        mol_a: Molecule,
        mol_b: Molecule,
        box_lengths: Sequence[float],
        npbc: int,
        trial_a: bool = False,
    ) -> float:
        total = 0.0
        for bead_a in mol_a.beads:
            for bead_b in mol_b.beads:
                energy = self.pair_energy(bead_a, bead_b, box_lengths, npbc, trial_a, False)
                if energy >= VERY_LARGE_ENERGY:
                    return VERY_LARGE_ENERGY
                total += energy
        return total

    def intramolecular_energy(
        self, mol: Molecule, box_lengths: Sequence[float], npbc: int, trial: bool = False
    ) -> float:
        bonded = mol.bonded_pairs()
        total = 0.0
        for i, j in itertools.combinations(range(mol.size()), 2):
            if (i, j) in bonded:
                continue
            energy = self.pair_energy(mol.beads[i], mol.beads[j], box_lengths, npbc, trial, trial)
            if energy >= VERY_LARGE_ENERGY:
                return VERY_LARGE_ENERGY
            total += energy
        return total

    def _row(
        self,
        mols: Sequence[Molecule],
        index: int,
        box_lengths: Sequence[float],
        npbc: int,
        trial: bool = False,
        upto: Optional[int] = None,
    ) -> np.ndarray:
        count = len(mols) if upto is None else upto
        row = np.zeros(count)
        for j in range(count):
            if j == index:
                row[j] = self.intramolecular_energy(mols[index], box_lengths, npbc, trial)
            else:
                row[j] = self.molecule_pair_energy(mols[index], mols[j], box_lengths, npbc, trial)
            if row[j] >= VERY_LARGE_ENERGY:
                row[j] = VERY_LARGE_ENERGY
                if trial:
                    return row
        return row

    def energy_initialization(self, mols: Sequence[Molecule], box_lengths: Sequence[float], npbc: int) -> None:
        n = len(mols)
        matrix = np.zeros((n, n))
        for i in range(n):
            matrix[i, i] = self.intramolecular_energy(mols[i], box_lengths, npbc)
            for j in range(i + 1, n):
                value = self.molecule_pair_energy(mols[i], mols[j], box_lengths, npbc)
                matrix[i, j] = value
                matrix[j, i] = value
        self._cache.reset(matrix)
        if self._cache.total_energy >= VERY_LARGE_ENERGY:
            logger.warning("%s: initial configuration contains overlapping beads.", self.name)

    def energy_difference(
        self, mols: Sequence[Molecule], moved: int, box_lengths: Sequence[float], npbc: int
    ) -> float:
        row = self._row(mols, moved, box_lengths, npbc, trial=True)
        return self._cache.stage(moved, row)

    def finalize_energy(self, mols: Sequence[Molecule], moved: int, accept: bool) -> None:
        self._cache.finalize(moved, accept)

    def adjust_energy_upon_deletion(self, mols: Sequence[Molecule], index: int) -> None:
        self._cache.remove(index)

    def energy_init_for_added_molecule(
        self, mols: Sequence[Molecule], index: int, box_lengths: Sequence[float], npbc: int
    ) -> None:
        self._cache.append(self._row(mols, index, box_lengths, npbc, upto=index + 1))

    def recompute_total(self, mols: Sequence[Molecule], box_lengths: Sequence[float], npbc: int) -> float:
        terms = []
        for i in range(len(mols)):
            terms.append(self.intramolecular_energy(mols[i], box_lengths, npbc))
            for j in range(i + 1, len(mols)):
                terms.append(self.molecule_pair_energy(mols[i], mols[j], box_lengths, npbc))
        return energy_sum(*terms)


class LennardJonesPair(PairPotential):
    """Full, untruncated Lennard-Jones with Lorentz-Berthelot mixing."""

    name = "LJ"

    def __init__(self, sigmas: Mapping[str, float], epsilons: Mapping[str, float]):
        super().__init__()
        self.sigmas = dict(sigmas)
        self.epsilons = dict(epsilons)
        self._mixed: Dict[Tuple[str, str], Tuple[float, float]] = {}

    @property
    def symbols(self) -> Iterable[str]:
        return self.sigmas.keys()

    def mixed_parameters(self, symbol_a: str, symbol_b: str) -> Tuple[float, float]:
        key = _mixing_key(symbol_a, symbol_b)
        params = self._mixed.get(key)
        if params is None:
            sigma = 0.5 * (self.sigmas[symbol_a] + self.sigmas[symbol_b])
            epsilon = math.sqrt(self.epsilons[symbol_a] * self.epsilons[symbol_b])
            params = (sigma, epsilon)
            self._mixed[key] = params
        return params

    def energy_at_distance(self, r: float, symbol_a: str, symbol_b: str) -> float:
        if r <= 0.0:
            return VERY_LARGE_ENERGY
        sigma, epsilon = self.mixed_parameters(symbol_a, symbol_b)
        sr6 = (sigma / r) ** 6
        return 4.0 * epsilon * (sr6 * sr6 - sr6)


class TruncatedLJPair(LennardJonesPair):
    """
    Cutoff >= 0: full LJ truncated and shifted at ``cutoff``.
    Cutoff < 0: purely repulsive LJ (WCA) truncated at 2^(1/6) sigma.
    """

    name = "TruncatedLJ"

    def __init__(self, cutoff: float, sigmas: Mapping[str, float], epsilons: Mapping[str, float]):
        super().__init__(sigmas, epsilons)
        self.cutoff = float(cutoff)

    def energy_at_distance(self, r: float, symbol_a: str, symbol_b: str) -> float:
        if r <= 0.0:
            return VERY_LARGE_ENERGY
        sigma, epsilon = self.mixed_parameters(symbol_a, symbol_b)
        if self.cutoff < 0:
            if r >= K216 * sigma:
                return 0.0
            ref6 = (1.0 / K216) ** 6
        else:
            if r >= self.cutoff:
                return 0.0
            ref6 = (sigma / self.cutoff) ** 6
        energy_ref = 4.0 * epsilon * (ref6 * ref6 - ref6)
        sr6 = (sigma / r) ** 6
        return 4.0 * epsilon * (sr6 * sr6 - sr6) - energy_ref


class HardSpherePair(PairPotential):
    name = "HardSphere"
    is_hard = True

    def __init__(self, diameters: Mapping[str, float]):
        super().__init__()
        self.diameters = dict(diameters)

    @property
    def symbols(self) -> Iterable[str]:
        return self.diameters.keys()

    def energy_at_distance(self, r: float, symbol_a: str, symbol_b: str) -> float:
        contact = 0.5 * (self.diameters[symbol_a] + self.diameters[symbol_b])
        if r <= 0.0 or r < contact:
            return VERY_LARGE_ENERGY
        return 0.0


# ---------------------------------------------------------------------------
# Bonded potentials
# ---------------------------------------------------------------------------


class SpringBond:
    """Harmonic bonds, E = k/2 (r - r0)^2, summed per molecule."""

    name = "Spring"
    is_hard = False

    def __init__(self, k: float, r0: float = 0.0):
        if k <= 0:
            raise ConfigurationError(f"Spring constant must be positive, got {k}.")
        self.k = float(k)
        self.r0 = float(r0)
        self.total_energy = 0.0
        self._energies = np.zeros(0)
        self._pending: Optional[Tuple[int, float, float]] = None

    def bond_energy(self, r: float) -> float:
        dr = r - self.r0
        return 0.5 * self.k * dr * dr

    def molecule_energy(self, mol: Molecule, box_lengths: Sequence[float], npbc: int, trial: bool = False) -> float:
        total = 0.0
        for i, j in mol.bonds:
            r = mol.beads[i].distance(mol.beads[j], box_lengths, npbc, trial, trial)
            total += self.bond_energy(r)
        return total

    def energy_initialization(self, mols: Sequence[Molecule], box_lengths: Sequence[float], npbc: int) -> None:
        self._energies = np.array([self.molecule_energy(mol, box_lengths, npbc) for mol in mols], dtype=float)
        self.total_energy = float(self._energies.sum())
        self._pending = None

    def energy_difference(
        self, mols: Sequence[Molecule], moved: int, box_lengths: Sequence[float], npbc: int
    ) -> float:
        new = self.molecule_energy(mols[moved], box_lengths, npbc, trial=True)
        delta = new - self._energies[moved]
        self._pending = (moved, new, delta)
        return delta

    def finalize_energy(self, mols: Sequence[Molecule], moved: int, accept: bool) -> None:
        pending, self._pending = self._pending, None
        if accept and pending is not None:
            index, new, delta = pending
            self._energies[index] = new
            self.total_energy += delta

    def adjust_energy_upon_deletion(self, mols: Sequence[Molecule], index: int) -> None:
        self.total_energy -= self._energies[index]
        self._energies = np.delete(self._energies, index)
        self._pending = None

    def energy_init_for_added_molecule(
        self, mols: Sequence[Molecule], index: int, box_lengths: Sequence[float], npbc: int
    ) -> None:
        energy = self.molecule_energy(mols[index], box_lengths, npbc)
        self._energies = np.append(self._energies, energy)
        self.total_energy += energy

    def recompute_total(self, mols: Sequence[Molecule], box_lengths: Sequence[float], npbc: int) -> float:
        return sum(self.molecule_energy(mol, box_lengths, npbc) for mol in mols)

    def random_bond_length(self, beta: float, rng: random.Random) -> float:
        """Sample r from P(r) ~ r^2 exp(-beta k/2 (r - r0)^2)."""
        sigma = 1.0 / math.sqrt(beta * self.k)
        if self.r0 == 0.0:
            return vector_length((rng.gauss(0.0, sigma), rng.gauss(0.0, sigma), rng.gauss(0.0, sigma)))
        r_max = self.r0 + 6.0 * sigma
        while True:
            r = rng.gauss(self.r0, sigma)
            if r <= 0.0:
                continue
            if r >= r_max or rng.random() < (r / r_max) ** 2:
                return r


# ---------------------------------------------------------------------------
# Long-range electrostatics
# ---------------------------------------------------------------------------


class EwaldCoulomb:
    """
    Ewald summation of the Coulomb energy in kBT, scaled by the Bjerrum
    length: real-space erfc sum + reciprocal structure-factor sum + self term.

    Real-space energies are cached per molecule pair; the reciprocal part is
    cached as the structure factor S(k).
    """

    name = "Coul"
    is_hard = False

    def __init__(
        self,
        box_lengths: Sequence[float],
        bjerrum_length: float,
        alpha: float,
        k_max: int = 5,
        real_cutoff: Optional[float] = None,
    ):
        if bjerrum_length <= 0 or alpha <= 0 or k_max < 1:
            raise ConfigurationError("Ewald needs positive bjerrum_length, alpha and k_max >= 1.")
        self.bjerrum_length = float(bjerrum_length)
        self.alpha = float(alpha)
        self.k_max = int(k_max)
        self._fixed_cutoff = real_cutoff
        self._real = PairwiseCache()
        self.recip_energy = 0.0
        self.self_energy = 0.0
        self._structure = np.zeros(0, dtype=complex)
        self._pending: Optional[Tuple[int, np.ndarray]] = None
        self.set_box_lengths(box_lengths)

    def set_box_lengths(self, box_lengths: Sequence[float]) -> None:
        self.box_lengths = tuple(float(x) for x in box_lengths)
        self.volume = self.box_lengths[0] * self.box_lengths[1] * self.box_lengths[2]
        self.real_cutoff = (
            float(self._fixed_cutoff) if self._fixed_cutoff is not None else 0.5 * min(self.box_lengths)
        )
        n_range = np.arange(-self.k_max, self.k_max + 1)
        grid = np.array(np.meshgrid(n_range, n_range, n_range, indexing="ij")).reshape(3, -1).T
        n_sq = np.sum(grid * grid, axis=1)
        grid = grid[(n_sq > 0) & (n_sq <= self.k_max * self.k_max)]
        self.kvectors = 2.0 * np.pi * grid / np.array(self.box_lengths)
        k_sq = np.sum(self.kvectors * self.kvectors, axis=1)
        self.kcoefficients = (2.0 * np.pi / self.volume) * np.exp(-k_sq / (4.0 * self.alpha ** 2)) / k_sq

    @property
    def total_energy(self) -> float:
        return self._real.total_energy + self.recip_energy + self.self_energy

    def energy_components(self) -> Tuple[float, float, float]:
        return self._real.total_energy, self.recip_energy, self.self_energy

    def pair_energy(
        self,
        bead_a: Bead,
        bead_b: Bead,
        box_lengths: Sequence[float],
        npbc: int,
        trial_a: bool = False,
        trial_b: bool = False,
    ) -> float:
        """Real-space screened Coulomb energy of one pair."""
        if bead_a.charge == 0 or bead_b.charge == 0:
            return 0.0
        r = bead_a.distance(bead_b, box_lengths, npbc, trial_a, trial_b)
        if r <= 0.0:
            return VERY_LARGE_ENERGY
        if r >= self.real_cutoff:
            return 0.0
        return self.bjerrum_length * bead_a.charge * bead_b.charge * math.erfc(self.alpha * r) / r

    def _molecule_pair_energy(
        self, mol_a: Molecule, mol_b: Molecule, box_lengths: Sequence[float], npbc: int, trial_a: bool = False
    ) -> float:
        return sum(
            self.pair_energy(a, b, box_lengths, npbc, trial_a, False) for a in mol_a.beads for b in mol_b.beads
        )

    def _intramolecular_energy(
        self, mol: Molecule, box_lengths: Sequence[float], npbc: int, trial: bool = False
    ) -> float:
        return sum(
            self.pair_energy(a, b, box_lengths, npbc, trial, trial)
            for a, b in itertools.combinations(mol.beads, 2)
        )

    def _row(
        self,
        mols: Sequence[Molecule],
        index: int,
        box_lengths: Sequence[float],
        npbc: int,
        trial: bool = False,
        upto: Optional[int] = None,
    ) -> np.ndarray:
        count = len(mols) if upto is None else upto
        row = np.zeros(count)
        for j in range(count):
            if j == index:
                row[j] = self._intramolecular_energy(mols[index], box_lengths, npbc, trial)
            else:
                row[j] = self._molecule_pair_energy(mols[index], mols[j], box_lengths, npbc, trial)
        return row

    def _structure_of(self, beads: Iterable[Bead], trial: bool = False) -> np.ndarray:
        charged = [bead for bead in beads if bead.charge != 0]
        if not charged:
            return np.zeros(self.kvectors.shape[0], dtype=complex)
        positions = np.array([bead.coords(trial) for bead in charged])
        charges = np.array([bead.charge for bead in charged])
        phases = positions @ self.kvectors.T
        return charges @ np.exp(1j * phases)

    def _recip_from(self, structure: np.ndarray) -> float:
        return self.bjerrum_length * float(np.sum(self.kcoefficients * np.abs(structure) ** 2))

    def _self_of(self, beads: Iterable[Bead]) -> float:
        return -self.bjerrum_length * self.alpha / SQRT_PI * sum(bead.charge ** 2 for bead in beads)

    @staticmethod
    def _all_beads(mols: Iterable[Molecule]) -> List[Bead]:
        return [bead for mol in mols for bead in mol.beads]

    def energy_initialization(self, mols: Sequence[Molecule], box_lengths: Sequence[float], npbc: int) -> None:
        n = len(mols)
        matrix = np.zeros((n, n))
        for i in range(n):
            matrix[i, i] = self._intramolecular_energy(mols[i], box_lengths, npbc)
            for j in range(i + 1, n):
                value = self._molecule_pair_energy(mols[i], mols[j], box_lengths, npbc)
                matrix[i, j] = value
                matrix[j, i] = value
        self._real.reset(matrix)
        beads = self._all_beads(mols)
        self._structure = self._structure_of(beads)
        self.recip_energy = self._recip_from(self._structure)
        self.self_energy = self._self_of(beads)
        self._pending = None

    def energy_difference(
        self, mols: Sequence[Molecule], moved: int, box_lengths: Sequence[float], npbc: int
    ) -> float:
        real_delta = self._real.stage(moved, self._row(mols, moved, box_lengths, npbc, trial=True))
        if real_delta >= VERY_LARGE_ENERGY:
            self._pending = None
            return VERY_LARGE_ENERGY
        moved_beads = [bead for bead in mols[moved].beads if bead.moved]
        new_structure = (
            self._structure + self._structure_of(moved_beads, trial=True) - self._structure_of(moved_beads)
        )
        recip_delta = self._recip_from(new_structure) - self.recip_energy
        self._pending = (moved, new_structure)
        return real_delta + recip_delta

    def finalize_energy(self, mols: Sequence[Molecule], moved: int, accept: bool) -> None:
        self._real.finalize(moved, accept)
        pending, self._pending = self._pending, None
        if accept and pending is not None:
            self._structure = pending[1]
            self.recip_energy = self._recip_from(self._structure)

    def adjust_energy_upon_deletion(self, mols: Sequence[Molecule], index: int) -> None:
        self._real.remove(index)
        beads = mols[index].beads
        self._structure = self._structure - self._structure_of(beads)
        self.recip_energy = self._recip_from(self._structure)
        self.self_energy -= self._self_of(beads)
        self._pending = None

    def energy_init_for_added_molecule(
        self, mols: Sequence[Molecule], index: int, box_lengths: Sequence[float], npbc: int
    ) -> None:
        self._real.append(self._row(mols, index, box_lengths, npbc, upto=index + 1))
        beads = mols[index].beads
        self._structure = self._structure + self._structure_of(beads)
        self.recip_energy = self._recip_from(self._structure)
        self.self_energy += self._self_of(beads)

    def trial_chain_energy(
        self,
        mols: Sequence[Molecule],
        chain: Sequence[Bead],
        excluded: Optional[range],
        box_lengths: Sequence[float],
        npbc: int,
    ) -> float:
        """Energy change of adding ``chain`` to the system without ``excluded`` molecules."""
        skip = excluded if excluded is not None else range(0)
        real = 0.0
        for index, mol in enumerate(mols):
            if index in skip:
                continue
            for other in mol.beads:
                for bead in chain:
                    real += self.pair_energy(bead, other, box_lengths, npbc)
        for a, b in itertools.combinations(chain, 2):
            real += self.pair_energy(a, b, box_lengths, npbc)
        base = self._structure
        if excluded is not None:
            base = base - self._structure_of(bead for i in skip for bead in mols[i].beads)
        with_chain = base + self._structure_of(chain)
        recip = self._recip_from(with_chain) - self._recip_from(base)
        return real + recip + self._self_of(chain)

    def volume_derivative(self, volume: float) -> float:
        """dU/dV under isotropic scaling (Coulomb energy scales as 1/L)."""
        return -self.total_energy / (3.0 * volume)

    def recompute_total(self, mols: Sequence[Molecule], box_lengths: Sequence[float], npbc: int) -> float:
        real = 0.0
        for i in range(len(mols)):
            real += self._intramolecular_energy(mols[i], box_lengths, npbc)
            for j in range(i + 1, len(mols)):
                real += self._molecule_pair_energy(mols[i], mols[j], box_lengths, npbc)
        beads = self._all_beads(mols)
        return real + self._recip_from(self._structure_of(beads)) + self._self_of(beads)


# ---------------------------------------------------------------------------
# External potentials
# ---------------------------------------------------------------------------


class ExternalPotential:
    """Walls perpendicular to z at z = 0 and, with two walls, at z = Lz."""

    name = "external"
    is_hard = False

    def __init__(self, walls: int = 2):
        if walls not in (1, 2):
            raise ConfigurationError(f"Number of walls must be 1 or 2, got {walls}.")
        self.walls = walls
        self.total_energy = 0.0
        self._energies = np.zeros(0)
        self._pending: Optional[Tuple[int, float, float]] = None

    @property
    def symbols(self) -> Iterable[str]:
        raise NotImplementedError

    def wall_energy(self, distance: float, symbol: str) -> float:
        raise NotImplementedError

    def bead_energy(self, bead: Bead, box_lengths: Sequence[float], trial: bool = False) -> float:
        left, right = bead.distances_to_walls(box_lengths, trial)
        distances = (left, right) if self.walls == 2 else (left,)
        return energy_sum(*(self.wall_energy(d, bead.symbol) for d in distances))

    def molecule_energy(self, mol: Molecule, box_lengths: Sequence[float], trial: bool = False) -> float:
        return energy_sum(*(self.bead_energy(bead, box_lengths, trial) for bead in mol.beads))

    def energy_initialization(self, mols: Sequence[Molecule], box_lengths: Sequence[float], npbc: int) -> None:
        self._energies = np.array([self.molecule_energy(mol, box_lengths) for mol in mols], dtype=float)
        self.total_energy = energy_sum(*self._energies.tolist())
        self._pending = None
        if self.total_energy >= VERY_LARGE_ENERGY:
            logger.warning("%s: initial configuration penetrates a wall.", self.name)

    def energy_difference(
        self, mols: Sequence[Molecule], moved: int, box_lengths: Sequence[float], npbc: int
    ) -> float:
        new = self.molecule_energy(mols[moved], box_lengths, trial=True)
        if new >= VERY_LARGE_ENERGY:
            self._pending = None
            return VERY_LARGE_ENERGY
        old = self._energies[moved]
        delta = -VERY_LARGE_ENERGY if old >= VERY_LARGE_ENERGY else new - old
        self._pending = (moved, new, delta)
        return delta

    def finalize_energy(self, mols: Sequence[Molecule], moved: int, accept: bool) -> None:
        pending, self._pending = self._pending, None
        if not accept or pending is None:
            return
        index, new, delta = pending
        self._energies[index] = new
        if delta <= -VERY_LARGE_ENERGY or self.total_energy >= VERY_LARGE_ENERGY:
            self.total_energy = energy_sum(*self._energies.tolist())
        else:
            self.total_energy += delta

    def adjust_energy_upon_deletion(self, mols: Sequence[Molecule], index: int) -> None:
        self._energies = np.delete(self._energies, index)
        self.total_energy = energy_sum(*self._energies.tolist())
        self._pending = None

    def energy_init_for_added_molecule(
        self, mols: Sequence[Molecule], index: int, box_lengths: Sequence[float], npbc: int
    ) -> None:
        energy = self.molecule_energy(mols[index], box_lengths)
        self._energies = np.append(self._energies, energy)
        self.total_energy = energy_sum(self.total_energy, energy)

    def recompute_total(self, mols: Sequence[Molecule], box_lengths: Sequence[float], npbc: int) -> float:
        return energy_sum(*(self.molecule_energy(mol, box_lengths) for mol in mols))

    def calculate_force(self, mols: Sequence[Molecule], box_lengths: Sequence[float]) -> float:
        """Total force the beads exert on the walls; zero for impulsive walls."""
        return 0.0


class TruncatedLJWall(ExternalPotential):
    name = "TruncatedLJWall"

    def __init__(
        self,
        cutoff: float,
        sigmas: Mapping[str, float],
        epsilons: Mapping[str, float],
        wall_sigma: float = 1.0,
        wall_epsilon: float = 1.0,
        walls: int = 2,
    ):
        super().__init__(walls)
        self.cutoff = float(cutoff)
        self.sigmas = dict(sigmas)
        self.epsilons = dict(epsilons)
        self.wall_sigma = float(wall_sigma)
        self.wall_epsilon = float(wall_epsilon)

    @property
    def symbols(self) -> Iterable[str]:
        return self.sigmas.keys()

    def _mixed(self, symbol: str) -> Tuple[float, float]:
        sigma = 0.5 * (self.sigmas[symbol] + self.wall_sigma)
        epsilon = math.sqrt(self.epsilons[symbol] * self.wall_epsilon)
        return sigma, epsilon

    def wall_energy(self, distance: float, symbol: str) -> float:
        if distance <= 0.0:
            return VERY_LARGE_ENERGY
        if distance >= self.cutoff:
            return 0.0
        sigma, epsilon = self._mixed(symbol)
        ref6 = (sigma / self.cutoff) ** 6
        sr6 = (sigma / distance) ** 6
        return 4.0 * epsilon * (sr6 * sr6 - sr6) - 4.0 * epsilon * (ref6 * ref6 - ref6)

    def wall_force(self, distance: float, symbol: str) -> float:
        if distance <= 0.0 or distance >= self.cutoff:
            return 0.0
        sigma, epsilon = self._mixed(symbol)
        sr6 = (sigma / distance) ** 6
        return 4.0 * epsilon * (12.0 * sr6 * sr6 - 6.0 * sr6) / distance

    def calculate_force(self, mols: Sequence[Molecule], box_lengths: Sequence[float]) -> float:
        force = 0.0
        for mol in mols:
            for bead in mol.beads:
                left, right = bead.distances_to_walls(box_lengths)
                force += self.wall_force(left, bead.symbol)
                if self.walls == 2:
                    force += self.wall_force(right, bead.symbol)
        return force / self.walls


class HardWall(ExternalPotential):
    name = "HardWall"
    is_hard = True

    def __init__(self, radii: Mapping[str, float], walls: int = 2):
        super().__init__(walls)
        self.radii = dict(radii)

    @property
    def symbols(self) -> Iterable[str]:
        return self.radii.keys()

    def wall_energy(self, distance: float, symbol: str) -> float:
        if distance <= 0.0 or distance < self.radii[symbol]:
            return VERY_LARGE_ENERGY
        return 0.0


class WellWall(HardWall):
    """Hard walls with an attractive square well of ``depth`` over ``width``."""

    name = "WellWall"

    def __init__(self, radii: Mapping[str, float], depth: float, width: float, walls: int = 2):
        super().__init__(radii, walls)
        if width <= 0:
            raise ConfigurationError(f"Well width must be positive, got {width}.")
        self.depth = float(depth)
        self.width = float(width)

    def wall_energy(self, distance: float, symbol: str) -> float:
        hard = super().wall_energy(distance, symbol)
        if hard >= VERY_LARGE_ENERGY:
            return hard
        if distance < self.radii[symbol] + self.width:
            return -self.depth
        return 0.0


# ---------------------------------------------------------------------------
# Construction by name
# ---------------------------------------------------------------------------


def _type_table(types: Mapping[str, Mapping[str, Any]], key: str) -> Dict[str, float]:
    table = {}
    for symbol, entry in types.items():
        if key not in entry:
            raise ConfigurationError(f"Bead type {symbol!r} is missing {key!r}.")
        table[symbol] = float(entry[key])
    return table


def create_pair_potential(name: str, params: Mapping[str, Any], types: Mapping[str, Mapping[str, Any]]) -> PairPotential:
    if name == "TruncatedLJ":
        return TruncatedLJPair(
            float(params.get("cutoff", -1.0)), _type_table(types, "sigma"), _type_table(types, "epsilon")
        )
    if name == "LJ":
        return LennardJonesPair(_type_table(types, "sigma"), _type_table(types, "epsilon"))
    if name == "HardSphere":
        return HardSpherePair(_type_table(types, "diameter"))
    raise ConfigurationError(f"Undefined pair potential {name!r}.")


def create_ewald_potential(name: str, params: Mapping[str, Any], box_lengths: Sequence[float]) -> EwaldCoulomb:
    if name == "Coul":
        cutoff = params.get("real_cutoff")
        return EwaldCoulomb(
            box_lengths,
            bjerrum_length=float(params.get("bjerrum_length", 1.0)),
            alpha=float(params.get("alpha", 5.0 / min(box_lengths))),
            k_max=int(params.get("k_max", 5)),
            real_cutoff=float(cutoff) if cutoff is not None else None,
        )
    raise ConfigurationError(f"Undefined Ewald potential {name!r}.")


def create_bond_potential(name: str, params: Mapping[str, Any]) -> SpringBond:
    if name == "Spring":
        return SpringBond(float(params.get("k", 1.0)), float(params.get("r0", 0.0)))
    raise ConfigurationError(f"Undefined bonded potential {name!r}.")


def create_external_potential(
    name: str, params: Mapping[str, Any], types: Mapping[str, Mapping[str, Any]]
) -> ExternalPotential:
    walls = int(params.get("walls", 2))
    if name == "TruncatedLJWall":
        return TruncatedLJWall(
            float(params.get("cutoff", K216)),
            _type_table(types, "sigma"),
            _type_table(types, "epsilon"),
            wall_sigma=float(params.get("wall_sigma", 1.0)),
            wall_epsilon=float(params.get("wall_epsilon", 1.0)),
            walls=walls,
        )
    if name == "HardWall":
        return HardWall(_type_table(types, "radius"), walls=walls)
    if name == "WellWall":
        return WellWall(
            _type_table(types, "radius"),
            depth=float(params.get("depth", 1.0)),
            width=float(params.get("width", 1.0)),
            walls=walls,
        )
    raise ConfigurationError(f"Undefined external potential {name!r}.")
