"""
Virial pressure estimator.

Hard-core contributions are obtained from the contact value of the
force-projection histogram (Chang and Sandler 1993): pairs closer than a
few thin shells beyond contact are binned per (shell, axis, site1, site2),
each shell is normalized by its volume at read time, and a weighted linear
fit is evaluated at the contact distance. The electrostatic term comes
from the analytic volume derivative of the Ewald energy.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Tuple

import numpy as np

from cgmc.constants import VIRIAL_SHELL_COUNT, VIRIAL_SHELL_FRACTION
from cgmc.errors import ConfigurationError
from cgmc.molecules import Molecule


logger = logging.getLogger(__name__)


def contact_value(x: np.ndarray, y: np.ndarray, contact: float) -> float:
    """Weighted least-squares line through (x, y), evaluated at ``contact``."""
    weights = 1.0 / (x - contact)
    slope, intercept = np.polyfit(x, y, 1, w=weights)
    return float(slope * contact + intercept)


class VirialEstimator:
    """
    Histograms are only ever added to; ``compute`` normalizes a copy by the
    number of samples taken so far.
    """

    def __init__(
        self,
        bead_size: float,
        chain_length: int,
        box_lengths: Sequence[float],
        npbc: int,
        beta: float,
        wall_histogram: bool = False,
        shells: int = VIRIAL_SHELL_COUNT,
    ):
        if bead_size <= 0:
            raise ConfigurationError(f"Virial bead size must be positive, got {bead_size}.")
        if chain_length < 0:
            raise ConfigurationError(f"Chain length must be non-negative, got {chain_length}.")
        self.bead_size = float(bead_size)
        self.resolution = VIRIAL_SHELL_FRACTION * self.bead_size
        self.shells = int(shells)
        self.chain_length = int(chain_length)
        self.sites = self.chain_length + 2
        self.npbc = npbc
        self.beta = beta
        self.use_wall_histogram = wall_histogram
        self.set_box_lengths(box_lengths)

        self.pair_histogram = np.zeros((self.shells, 3, self.sites, self.sites))
        self.wall_histogram = np.zeros(self.shells)
        self.samples = 0
        self._electrostatic_sum = np.zeros(3)

        self.pressure = np.zeros(3)
        self.hard_sphere = np.zeros(3)
        self.electrostatic = np.zeros(3)

        edges = self.bead_size + self.resolution * np.arange(self.shells + 1)
        self.shell_centres = edges[:-1] + 0.5 * self.resolution
        self.shell_volumes = 4.0 / 3.0 * math.pi * (edges[1:] ** 3 - edges[:-1] ** 3)
        self.wall_centres = 0.5 * self.bead_size + (np.arange(self.shells) + 0.5) * self.resolution

    def set_box_lengths(self, box_lengths: Sequence[float]) -> None:
        self.box_lengths = np.array([float(x) for x in box_lengths])
        self.volume = float(np.prod(self.box_lengths))

    def site_of(self, mol: Molecule, bead_index: int) -> int:
        """Chain beads map to their index, cations to chain_length, anions to chain_length + 1."""
        if mol.is_chain():
            if bead_index >= self.chain_length:
                raise ValueError(
                    f"Chain of {mol.size()} beads exceeds the {self.chain_length} virial sites."
                )
            return bead_index
        if mol.beads[0].charge >= 0:
            return self.chain_length
        return self.chain_length + 1

    def _gather(self, mols: Sequence[Molecule]) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        positions = []
        references = []
        owners = []
        sites = []
        for index, mol in enumerate(mols):
            reference = mol.beads[0].position
            for bead_index, bead in enumerate(mol.beads):
                positions.append(bead.position)
                references.append(reference)
                owners.append(index)
                sites.append(self.site_of(mol, bead_index))
        return (
            np.array(positions, dtype=float).reshape(-1, 3),
            np.array(references, dtype=float).reshape(-1, 3),
            np.array(owners, dtype=int),
            np.array(sites, dtype=int),
        )

    def _minimum_image(self, delta: np.ndarray) -> np.ndarray:
        wrapped = delta.copy()
        for axis in range(min(self.npbc, 3)):
            box = self.box_lengths[axis]
            wrapped[..., axis] -= box * np.round(wrapped[..., axis] / box)
        return wrapped

    def accumulate(self, mols: Sequence[Molecule]) -> None:
        """Add one sample of the pair (and wall) statistics to the histograms."""
        self.samples += 1
        n_mol = len(mols)
        if n_mol == 0:
            return
        positions, references, owners, sites = self._gather(mols)
        weight = 1.0 / float(n_mol * n_mol)

        separation = self._minimum_image(positions[:, None, :] - positions[None, :, :])
        offsets = references - positions
        projected = separation + offsets[:, None, :] - offsets[None, :, :]
        distance = np.sqrt(np.sum(separation * separation, axis=-1))
        limit = self.bead_size + self.resolution * self.shells
        mask = (owners[:, None] != owners[None, :]) & (distance <= limit)
        first, second = np.nonzero(mask)
        if first.size:
            lengths = distance[first, second]
            dots = projected[first, second] * separation[first, second] / lengths[:, None]
            bins = np.floor((lengths - self.bead_size) / self.resolution).astype(int)
            bins = np.clip(bins, 0, self.shells - 1)
            for axis in range(3):
                np.add.at(
                    self.pair_histogram,
                    (bins, axis, sites[first], sites[second]),
                    weight * dots[:, axis],
                )

        if self.use_wall_histogram:
            z = positions[:, 2]
            wall_limit = 0.5 * self.bead_size + self.resolution * self.shells
            for distances in (z, self.box_lengths[2] - z):
                near = distances[distances <= wall_limit]
                bins = np.floor((near - 0.5 * self.bead_size) / self.resolution).astype(int)
                bins = np.clip(bins, 0, self.shells - 1)
                np.add.at(self.wall_histogram, bins, 1.0 / n_mol)

    def sample(self, mols: Sequence[Molecule], rho: float, volume_derivative: Optional[float] = None) -> None:
        """Accumulate one sample, then refresh the pressure tensor."""
        self.accumulate(mols)
        if volume_derivative is not None and len(mols) > 0:
            density = len(mols) / self.volume
            self._electrostatic_sum += -volume_derivative * self.beta / density
        self.compute(rho, electrostatics=volume_derivative is not None)

    def compute(self, rho: float, electrostatics: bool = True) -> np.ndarray:
        if self.samples == 0:
            return self.pressure
        per_shell = self.pair_histogram.sum(axis=(2, 3)) / self.shell_centres[:, None]
        per_shell /= (self.samples * self.shell_volumes / self.volume)[:, None]
        prefactor = 2.0 * math.pi * rho * self.bead_size ** 3
        for axis in range(3):
            self.hard_sphere[axis] = prefactor * contact_value(
                self.shell_centres, per_shell[:, axis], self.bead_size
            )
        if self.use_wall_histogram:
            wall = self.wall_histogram / (self.samples * self.resolution / self.box_lengths[2])
            self.hard_sphere[2] += prefactor * contact_value(self.wall_centres, wall, 0.5 * self.bead_size)
        if electrostatics:
            self.electrostatic = self._electrostatic_sum / self.samples
        else:
            self.electrostatic = np.zeros(3)
        self.pressure = 1.0 + self.hard_sphere + self.electrostatic
        return self.pressure

    def formatted(self) -> str:
        values = list(self.pressure) + list(self.hard_sphere) + list(self.electrostatic)
        return " ".join(f"{float(value):g}" for value in values)
