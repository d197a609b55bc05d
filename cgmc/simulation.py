"""
Monte Carlo driver: translational moves, grand-canonical moves, running
averages and the statistics table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
import random
from typing import Dict, List, Optional, Set, TextIO, Tuple

from cgmc.config_loader import SimulationSettings
from cgmc.constants import MOVE_TYPES, VERY_LARGE_ENERGY, boltzmann_factor
from cgmc.force_field import ForceField
from cgmc.molecules import Molecule, count_species, vector_sub


logger = logging.getLogger(__name__)

DEFAULT_MOVE_SIZE = 0.5


@dataclass
class RunningAverages:
    samples: int = 0
    chain_samples: int = 0
    energies: Dict[str, float] = field(default_factory=dict)
    density: float = 0.0
    chemical_potential: float = 0.0
    radius_of_gyration: float = 0.0
    radius_of_gyration_xyz: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    end_to_end: float = 0.0


class Simulation:
    """
    Metropolis Monte Carlo over a population of beads and chains.
    """

    def __init__(
        self,
        settings: SimulationSettings,
        force_field: ForceField,
        molecules: List[Molecule],
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.force_field = force_field
        self.molecules = molecules
        self.random = rng if rng is not None else random.Random(settings.seed)
        self.current_step = 0
        self.attempted: Dict[str, int] = {move: 0 for move in MOVE_TYPES}
        self.accepted: Dict[str, int] = {move: 0 for move in MOVE_TYPES}
        self.insertions_attempted = 0
        self.insertions_accepted = 0
        self.deletions_attempted = 0
        self.deletions_accepted = 0
        self.averages = RunningAverages()
        self._used_ids: Set[int] = {bead.id for mol in molecules for bead in mol.beads if bead.id >= 0}
        self._id_counter = 0
        self._warn_about_empty_moves()

    def _warn_about_empty_moves(self) -> None:
        chains, cations, anions = count_species(self.molecules)
        probabilities = self.settings.move_probabilities
        if chains == 0 and 1.0 - probabilities.get("bead_translation", 0.0) > 0:
            logger.warning("There is no chain in the system but chain moves are requested.")
        if cations + anions == 0 and probabilities.get("bead_translation", 0.0) > 0:
            logger.warning("There is no single bead in the system but bead moves are requested.")
        if self.settings.beta != 1.0:
            logger.warning("Setting beta to 1 keeps the energy unit of the simulation at kBT.")

    @property
    def equilibrated(self) -> bool:
        """Counters and averages only collect after the equilibration steps."""
        return self.current_step > self.settings.equilibration_steps

    def _next_bead_id(self) -> int:
        while self._id_counter in self._used_ids:
            self._id_counter += 1
        self._used_ids.add(self._id_counter)
        return self._id_counter

    def _move_size(self, move: str) -> float:
        return self.settings.move_sizes.get(move, DEFAULT_MOVE_SIZE)

    def _choose_move(self) -> str:
        threshold = self.random.random()
        cumulative = 0.0
        for move in MOVE_TYPES:
            cumulative += self.settings.move_probabilities.get(move, 0.0)
            if threshold < cumulative:
                return move
        return MOVE_TYPES[-1]

    def run(self, steps: Optional[int] = None, stats: Optional[TextIO] = None) -> None:
        total = self.settings.steps if steps is None else steps
        if stats is not None:
            stats.write(self.stat_header() + "\n")
        for _ in range(total):
            self.step()
            if stats is not None and self._sampling_step():
                stats.write(self.stat_row() + "\n")

    def step(self) -> None:
        self.current_step += 1
        force_field = self.force_field
        if force_field.use_gc and self.random.randrange(force_field.gc_frequency) == 0:
            self.gc_move()
        else:
            self.translational_move()
        if self._sampling_step():
            self.sample()

    def _sampling_step(self) -> bool:
        return self.equilibrated and self.current_step % self.settings.sample_interval == 0

    def translational_move(self) -> Optional[bool]:
        """One Metropolis move; returns acceptance, or None when nothing could move."""
        if not self.molecules:
            return None
        move = self._choose_move()
        if move == "bead_translation":
            candidates = [i for i, mol in enumerate(self.molecules) if not mol.is_chain()]
        else:
            candidates = [i for i, mol in enumerate(self.molecules) if mol.is_chain()]
        if not candidates:
            return None
        mol_id = candidates[min(int(self.random.random() * len(candidates)), len(candidates) - 1)]
        molecule = self.molecules[mol_id]
        size = self._move_size(move)
        if move == "bead_translation":
            molecule.bead_translate(size, self.random)
        elif move == "com_translation":
            molecule.com_translate(size, self.random)
        elif move == "pivot":
            molecule.pivot(size, self.random)
        elif move == "crankshaft":
            molecule.crankshaft(size, self.random)
        else:
            molecule.random_reptation(self.random, self.force_field.rigid_bond or 0.0)

        counted = self.equilibrated
        if counted:
            self.attempted[move] += 1
        delta = self.force_field.energy_difference(self.molecules, mol_id)
        if delta >= VERY_LARGE_ENERGY:
            accept = False
        else:
            accept = self.random.random() < boltzmann_factor(self.settings.beta, delta)
        self.force_field.finalize_energies(self.molecules, accept, mol_id)
        if accept:
            molecule.commit_trial()
            if counted:
                self.accepted[move] += 1
        else:
            molecule.revert_trial()
        return accept

    def gc_move(self) -> Optional[bool]:
        """Insert or delete one grand-canonical group with equal probability."""
        force_field = self.force_field
        counted = self.equilibrated
        if self.random.random() < 0.5:
            self.insertions_attempted += counted
            before = len(self.molecules)
            if not force_field.cbmc_chain_insertion(self.molecules, self.random):
                return False
            self.insertions_accepted += counted
            for mol_id in range(before, len(self.molecules)):
                for bead in self.molecules[mol_id].beads:
                    bead.id = self._next_bead_id()
                    bead.mol_id = mol_id
            force_field.energy_init_for_added_molecules(self.molecules, len(self.molecules) - before)
            return True

        self.deletions_attempted += counted
        if not self.molecules:
            return False
        delete_id = force_field.cbmc_chain_deletion(self.molecules, self.random)
        if delete_id is None:
            return False
        self.deletions_accepted += counted
        removed = self.molecules[delete_id: delete_id + force_field.gc_group_size]
        for mol in removed:
            for bead in mol.beads:
                self._used_ids.discard(bead.id)
        del self.molecules[delete_id: delete_id + force_field.gc_group_size]
        for mol_id in range(delete_id, len(self.molecules)):
            for bead in self.molecules[mol_id].beads:
                bead.mol_id = mol_id
        return True

    # Observables --------------------------------------------------------

    def radius_of_gyration(self) -> Tuple[float, Tuple[float, float, float]]:
        """Mean squared radius of gyration over chains, total and per axis."""
        total = 0.0
        per_axis = [0.0, 0.0, 0.0]
        chains = 0
        for mol in self.molecules:
            if not mol.is_chain():
                continue
            chains += 1
            n = mol.size()
            mol_total = 0.0
            mol_axis = [0.0, 0.0, 0.0]
            for j in range(n - 1):
                for k in range(j + 1, n):
                    delta = vector_sub(mol.beads[j].position, mol.beads[k].position)
                    for axis in range(3):
                        mol_axis[axis] += delta[axis] * delta[axis]
                    mol_total += delta[0] * delta[0] + delta[1] * delta[1] + delta[2] * delta[2]
            total += mol_total / (n * n)
            for axis in range(3):
                per_axis[axis] += mol_axis[axis] / (n * n)
        if chains == 0:
            return 0.0, (0.0, 0.0, 0.0)
        return total / chains, (per_axis[0] / chains, per_axis[1] / chains, per_axis[2] / chains)

    def end_to_end_distance(self) -> float:
        """Mean squared end-to-end distance over chains."""
        total = 0.0
        chains = 0
        for mol in self.molecules:
            if mol.is_chain():
                chains += 1
                delta = vector_sub(mol.beads[0].position, mol.beads[-1].position)
                total += delta[0] * delta[0] + delta[1] * delta[1] + delta[2] * delta[2]
        return total / chains if chains else 0.0

    def sample(self) -> None:
        averages = self.averages
        averages.samples += 1
        for family, energy in self.force_field.total_energies().items():
            averages.energies[family] = averages.energies.get(family, 0.0) + energy
        averages.density += len(self.molecules) / self.force_field.volume
        self.force_field.calc_pressure_virial_hsel(self.molecules, averages.density / averages.samples)
        if self.settings.calc_chemical_potential:
            averages.chemical_potential += self.force_field.calc_chemical_potential(self.molecules, self.random)
        if self.molecules:
            averages.chain_samples += 1
            rg, rg_xyz = self.radius_of_gyration()
            averages.radius_of_gyration += rg
            averages.radius_of_gyration_xyz = (
                averages.radius_of_gyration_xyz[0] + rg_xyz[0],
                averages.radius_of_gyration_xyz[1] + rg_xyz[1],
                averages.radius_of_gyration_xyz[2] + rg_xyz[2],
            )
            averages.end_to_end += self.end_to_end_distance()

    def stat_header(self) -> str:
        columns = ["#Step"]
        labels = {"pair": "<PairEne>", "ewald": "<EwaldEne>", "bond": "<BondEne>", "external": "<ExtPotEne>"}
        columns.extend(labels[family] for family in self.force_field.total_energies())
        columns.append("<TotalEnergy>")
        if self.force_field.use_gc:
            columns.extend(["NoOfMol", "<Density>"])
        columns.append("<Pxx> <Pyy> <Pzz> <Phxx> <Phyy> <Phzz> <Pexx> <Peyy> <Pezz>")
        if self.settings.calc_chemical_potential:
            columns.append("mu")
        columns.append("<|Rg|> <|Rgx|> <|Rgy|> <|Rgz|> <ete>")
        columns.append("beadtrans comtrans pivot crankshaft reptate")
        if self.force_field.use_gc:
            columns.append("insert delete")
        return " ".join(columns)

    def stat_row(self) -> str:
        averages = self.averages
        samples = max(averages.samples, 1)
        chain_samples = max(averages.chain_samples, 1)
        columns = [str(self.current_step)]
        total = 0.0
        for family in self.force_field.total_energies():
            value = averages.energies.get(family, 0.0) / samples
            total += value
            columns.append(f"{value:.7g}")
        columns.append(f"{total:.7g}")
        if self.force_field.use_gc:
            columns.append(str(len(self.molecules)))
            columns.append(f"{averages.density / samples:.4g}")
        columns.append(self.force_field.get_pressure())
        if self.settings.calc_chemical_potential:
            widom = averages.chemical_potential / samples
            columns.append(f"{-math.log(widom) / self.settings.beta:g}" if widom > 0 else "INF")
        rg_xyz = averages.radius_of_gyration_xyz
        for value in (averages.radius_of_gyration, rg_xyz[0], rg_xyz[1], rg_xyz[2], averages.end_to_end):
            columns.append(f"{math.sqrt(value / chain_samples):.4g}")
        for move in MOVE_TYPES:
            columns.append(_ratio(self.accepted[move], self.attempted[move]))
        if self.force_field.use_gc:
            columns.append(_ratio(self.insertions_accepted, self.insertions_attempted))
            columns.append(_ratio(self.deletions_accepted, self.deletions_attempted))
        return " ".join(columns)


def _ratio(accepted: int, attempted: int) -> str:
    if attempted == 0:
        return "nan"
    return f"{accepted / attempted:g}"
