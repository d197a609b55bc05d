"""
Beads, molecules and the coordinate kinematics used by trial moves.

Coordinates are plain 3-tuples. Each bead keeps two snapshots: the accepted
``position`` and the tentative ``trial_position``. A move writes trial
coordinates only; the caller commits or reverts once the force field has
decided acceptance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import random
from typing import Iterable, List, Optional, Sequence, Tuple


Vector = Tuple[float, float, float]


def vector_add(a: Vector, b: Vector) -> Vector:
    return (a[0] + b[0], a[1] + b[1], a[2] + b[2])


def vector_sub(a: Vector, b: Vector) -> Vector:
    return (a[0] - b[0], a[1] - b[1], a[2] - b[2])


def vector_scale(v: Vector, scalar: float) -> Vector:
    return (v[0] * scalar, v[1] * scalar, v[2] * scalar)


def vector_length(v: Vector) -> float:
    return math.sqrt(v[0] * v[0] + v[1] * v[1] + v[2] * v[2])


def vector_dot(a: Vector, b: Vector) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


def vector_cross(a: Vector, b: Vector) -> Vector:
    return (
        a[1] * b[2] - a[2] * b[1],
        a[2] * b[0] - a[0] * b[2],
        a[0] * b[1] - a[1] * b[0],
    )


def minimum_image(delta: Vector, box_lengths: Optional[Sequence[float]], npbc: int = 3) -> Vector:
    """Wrap the first ``npbc`` components of ``delta`` into the nearest image."""
    if box_lengths is None or npbc <= 0:
        return delta
    wrapped = list(delta)
    for idx in range(min(npbc, 3)):
        box = box_lengths[idx]
        if box == 0:
            continue
        wrapped[idx] -= box * round(wrapped[idx] / box)
    return (wrapped[0], wrapped[1], wrapped[2])


def random_unit_vector(rng: random.Random) -> Vector:
    """Uniform point on the unit sphere (Marsaglia 1972)."""
    while True:
        u = 2.0 * rng.random() - 1.0
        v = 2.0 * rng.random() - 1.0
        s = u * u + v * v
        if s < 1.0:
            break
    factor = 2.0 * math.sqrt(1.0 - s)
    return (u * factor, v * factor, 1.0 - 2.0 * s)


def random_box_position(rng: random.Random, box_lengths: Sequence[float]) -> Vector:
    return (
        rng.random() * box_lengths[0],
        rng.random() * box_lengths[1],
        rng.random() * box_lengths[2],
    )


def rodrigues_rotation(v: Vector, axis: Vector, theta: float) -> Vector:
    """Rotate ``v`` around ``axis`` (normalized here) by ``theta`` radians."""
    norm = vector_length(axis)
    if norm == 0.0:
        return v
    k = vector_scale(axis, 1.0 / norm)
    cos_theta = math.cos(theta)
    sin_theta = math.sin(theta)
    term1 = vector_scale(v, cos_theta)
    term2 = vector_scale(vector_cross(k, v), sin_theta)
    term3 = vector_scale(k, vector_dot(k, v) * (1.0 - cos_theta))
    return vector_add(vector_add(term1, term2), term3)


@dataclass
class Bead:
    symbol: str
    id: int
    mol_id: int
    charge: float
    position: Vector
    trial_position: Optional[Vector] = None
    moved: bool = False

    def __post_init__(self) -> None:
        self.position = tuple(float(x) for x in self.position)  # type: ignore[assignment]
        if self.trial_position is None:
            self.trial_position = self.position
        else:
            self.trial_position = tuple(float(x) for x in self.trial_position)  # type: ignore[assignment]

    def coords(self, trial: bool = False) -> Vector:
        return self.trial_position if trial else self.position  # type: ignore[return-value]

    def set_position(self, position: Vector) -> None:
        """Place the bead, overwriting both snapshots."""
        self.position = (float(position[0]), float(position[1]), float(position[2]))
        self.trial_position = self.position

    def set_trial_position(self, position: Vector) -> None:
        self.trial_position = (float(position[0]), float(position[1]), float(position[2]))
        self.moved = True

    def update_current_position(self) -> None:
        """Commit the trial snapshot."""
        self.position = self.trial_position  # type: ignore[assignment]

    def update_trial_position(self) -> None:
        """Revert the trial snapshot."""
        self.trial_position = self.position

    def unset_moved(self) -> None:
        self.moved = False

    def distance_vector(
        self,
        other: "Bead",
        box_lengths: Sequence[float],
        npbc: int,
        trial: bool = False,
        other_trial: bool = False,
    ) -> Vector:
        """Minimum-image vector pointing from ``other`` to this bead."""
        delta = vector_sub(self.coords(trial), other.coords(other_trial))
        return minimum_image(delta, box_lengths, npbc)

    def distance(
        self,
        other: "Bead",
        box_lengths: Sequence[float],
        npbc: int,
        trial: bool = False,
        other_trial: bool = False,
    ) -> float:
        return vector_length(self.distance_vector(other, box_lengths, npbc, trial, other_trial))

    def distances_to_walls(self, box_lengths: Sequence[float], trial: bool = False) -> Tuple[float, float]:
        """Distance to the z = 0 wall and to the z = Lz wall."""
        z = self.coords(trial)[2]
        return z, box_lengths[2] - z


@dataclass
class Molecule:
    beads: List[Bead] = field(default_factory=list)
    bonds: List[Tuple[int, int]] = field(default_factory=list)
    angles: List[Tuple[int, int, int]] = field(default_factory=list)
    dihedrals: List[Tuple[int, int, int, int]] = field(default_factory=list)

    def size(self) -> int:
        return len(self.beads)

    def is_chain(self) -> bool:
        return len(self.beads) > 1

    def add_bead(self, bead: Bead) -> None:
        self.beads.append(bead)

    def add_bond(self, i: int, j: int) -> None:
        self.bonds.append((int(i), int(j)))

    def add_angle(self, i: int, j: int, k: int) -> None:
        self.angles.append((int(i), int(j), int(k)))

    def add_dihedral(self, i: int, j: int, k: int, l: int) -> None:
        self.dihedrals.append((int(i), int(j), int(k), int(l)))

    def bonded_pairs(self) -> set:
        return {tuple(sorted(bond)) for bond in self.bonds}

    def commit_trial(self) -> None:
        for bead in self.beads:
            bead.update_current_position()
            bead.unset_moved()

    def revert_trial(self) -> None:
        for bead in self.beads:
            bead.update_trial_position()
            bead.unset_moved()

    # Trial move kinematics. Each writes trial coordinates only.

    def bead_translate(self, move_size: float, rng: random.Random) -> None:
        for bead in self.beads:
            displacement = (
                (rng.random() - 0.5) * move_size,
                (rng.random() - 0.5) * move_size,
                (rng.random() - 0.5) * move_size,
            )
            bead.set_trial_position(vector_add(bead.position, displacement))

    def com_translate(self, move_size: float, rng: random.Random) -> None:
        displacement = (
            (rng.random() - 0.5) * move_size,
            (rng.random() - 0.5) * move_size,
            (rng.random() - 0.5) * move_size,
        )
        for bead in self.beads:
            bead.set_trial_position(vector_add(bead.position, displacement))

    def pivot(self, move_size: float, rng: random.Random) -> None:
        """Rotate the beads after a random pivot bead about a random axis."""
        if self.size() < 2:
            return
        pivot_index = rng.randrange(self.size() - 1)
        axis = random_unit_vector(rng)
        theta = (2.0 * rng.random() - 1.0) * move_size
        origin = self.beads[pivot_index].position
        for bead in self.beads[pivot_index + 1:]:
            offset = vector_sub(bead.position, origin)
            bead.set_trial_position(vector_add(origin, rodrigues_rotation(offset, axis, theta)))

    def crankshaft(self, move_size: float, rng: random.Random) -> None:
        """Rotate one inner bead about the axis through its two neighbours."""
        if self.size() < 3:
            return
        index = rng.randrange(1, self.size() - 1)
        before = self.beads[index - 1].position
        after = self.beads[index + 1].position
        axis = vector_sub(after, before)
        theta = (2.0 * rng.random() - 1.0) * move_size
        offset = vector_sub(self.beads[index].position, before)
        self.beads[index].set_trial_position(vector_add(before, rodrigues_rotation(offset, axis, theta)))

    def random_reptation(self, rng: random.Random, bond_length: float) -> None:
        """Slither the chain one bond: drop one end, regrow at the other."""
        if self.size() < 2:
            return
        positions = [bead.position for bead in self.beads]
        direction = vector_scale(random_unit_vector(rng), bond_length)
        if rng.random() < 0.5:
            shifted = positions[1:] + [vector_add(positions[-1], direction)]
        else:
            shifted = [vector_add(positions[0], direction)] + positions[:-1]
        for bead, position in zip(self.beads, shifted):
            bead.set_trial_position(position)


def count_species(molecules: Iterable[Molecule]) -> Tuple[int, int, int]:
    """Return (chains, cations, anions); neutral ions count as cations."""
    chains = cations = anions = 0
    for mol in molecules:
        if mol.is_chain():
            chains += 1
        elif mol.beads[0].charge >= 0:
            cations += 1
        else:
            anions += 1
    return chains, cations, anions
