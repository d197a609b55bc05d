"""
Force-field orchestrator.

Owns zero or one potential per family, dispatches energy evaluation for
trial moves, runs configurational-bias grand-canonical insertion and
deletion, and feeds the virial pressure estimator.
"""

from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

import numpy as np

from cgmc import cbmc
from cgmc.constants import (
    DEFAULT_CBMC_TRIALS,
    DEFAULT_GC_SYMBOL,
    MED_SMALL_NUMBER,
    VERY_LARGE_ENERGY,
    WIDOM_INSERTIONS,
    boltzmann_factor,
    energy_sum,
)
from cgmc.errors import ConfigurationError
from cgmc.molecules import (
    Bead,
    Molecule,
    random_box_position,
    random_unit_vector,
    vector_add,
    vector_length,
    vector_scale,
    vector_sub,
)
from cgmc.potentials import (
    EwaldCoulomb,
    ExternalPotential,
    PairPotential,
    SpringBond,
    create_bond_potential,
    create_ewald_potential,
    create_external_potential,
    create_pair_potential,
)
from cgmc.virial import VirialEstimator

if TYPE_CHECKING:
    from cgmc.config_loader import ForceFieldSettings


logger = logging.getLogger(__name__)

CHAIN = "chain"
COUNTERION = "counterion"


class ForceField:
    def __init__(
        self,
        settings: "ForceFieldSettings",
        beta: float,
        npbc: int,
        box_lengths: Sequence[float],
        mols: List[Molecule],
    ):
        self.settings = settings
        self.beta = float(beta)
        self.npbc = int(npbc)
        self.box_lengths = tuple(float(x) for x in box_lengths)
        self.volume = self.box_lengths[0] * self.box_lengths[1] * self.box_lengths[2]

        if settings.histogram_resolution <= 0:
            raise ConfigurationError(
                f"Histogram resolution must be positive, got {settings.histogram_resolution}."
            )
        self._log_parameters()

        self.pair: Optional[PairPotential] = None
        self.ewald: Optional[EwaldCoulomb] = None
        self.bond: Optional[SpringBond] = None
        self.external: Optional[ExternalPotential] = None
        self.rigid_bond: Optional[float] = None
        self._build_potentials()

        chain_length = self._population_chain_length(mols)
        gc = settings.grand_canonical
        if gc is not None:
            if gc.trials < 1:
                raise ConfigurationError("Number of CBMC trials must be at least 1.")
            if gc.chain_length < 1:
                raise ConfigurationError("Grand-canonical chain length must be at least 1.")
            self.chemical_potential = gc.chemical_potential
            self.de_broglie = gc.de_broglie
            self.gc_frequency = gc.frequency
            self.gc_chain_length = gc.chain_length
            self.gc_charge = gc.charge
            self.gc_symbol = gc.symbol
            self.cbmc_trials = gc.trials
            chain_length = max(chain_length, gc.chain_length)
        else:
            # Widom insertions of the neutral species already in the box.
            self.chemical_potential = 0.0
            self.de_broglie = 1.0
            self.gc_frequency = 0
            self.gc_chain_length = max(chain_length, 1)
            self.gc_charge = 0.0
            self.gc_symbol = self._population_chain_symbol(mols)
            self.cbmc_trials = DEFAULT_CBMC_TRIALS
        self._check_symbols(mols)

        self.virial = VirialEstimator(
            settings.virial_bead_size,
            chain_length,
            self.box_lengths,
            self.npbc,
            self.beta,
            wall_histogram=self.external is not None and self.external.name == "HardWall",
        )

        self.initialize_energy(mols)
        self._allocate_cbmc_buffers()

    @property
    def use_gc(self) -> bool:
        return self.settings.grand_canonical is not None

    @property
    def gc_group_size(self) -> int:
        """Molecules inserted or deleted together: the chain plus its counterions."""
        return 1 + self.gc_chain_length if self.gc_charge != 0 else 1

    @property
    def _group_beads(self) -> int:
        return 2 * self.gc_chain_length if self.gc_charge != 0 else self.gc_chain_length

    def _log_parameters(self) -> None:
        settings = self.settings
        logger.info("Force field parameters.")
        logger.info("  [P] histogram resolution (ul) : %s", settings.histogram_resolution)
        logger.info("  [P] hard sphere size (ul)     : %s", settings.virial_bead_size)
        logger.info("  pair potential                : %s", _name_or_no(settings.pair))
        logger.info("  Ewald potential               : %s", _name_or_no(settings.ewald))
        logger.info("  bond potential                : %s", _name_or_no(settings.bond))
        logger.info("  rigid bond                    : %s", settings.rigid_bond or "no")
        logger.info("  external potential            : %s", _name_or_no(settings.external))
        gc = settings.grand_canonical
        logger.info("  grand canonical MC            : %s", "yes" if gc is not None else "no")
        if gc is not None:
            logger.info("  [GC] chemical potential (kBT) : %s", gc.chemical_potential)
            logger.info("  [GC] de Broglie wavelength^3  : %s", gc.de_broglie)
            logger.info("  [GC] move frequency           : %s", gc.frequency)
            logger.info("  [GC] chain length             : %s", gc.chain_length)
            logger.info("  [GC] bead charge (e)          : %s", gc.charge)
            logger.info("  [GC] bead type                : %s", gc.symbol)
            logger.info("  [GC] CBMC trials              : %s", gc.trials)
        if settings.use_angle or settings.use_dihedral:
            logger.warning("Angle and dihedral potentials are not implemented; the flags are ignored.")

    def _build_potentials(self) -> None:
        settings = self.settings
        hard = soft = 0
        if settings.pair is not None:
            self.pair = create_pair_potential(settings.pair.name, settings.pair.parameters, settings.pair.types)
            hard, soft = _count(self.pair.is_hard, hard, soft)
        if settings.ewald is not None:
            self.ewald = create_ewald_potential(settings.ewald.name, settings.ewald.parameters, self.box_lengths)
            soft += 1
        if settings.bond is not None:
            self.bond = create_bond_potential(settings.bond.name, settings.bond.parameters)
            soft += 1
        if settings.rigid_bond is not None:
            if settings.rigid_bond <= 0:
                raise ConfigurationError(f"Rigid bond length must be positive, got {settings.rigid_bond}.")
            self.rigid_bond = float(settings.rigid_bond)
            hard += 1
        if settings.external is not None:
            self.external = create_external_potential(
                settings.external.name, settings.external.parameters, settings.external.types
            )
            hard, soft = _count(self.external.is_hard, hard, soft)
            if self.external.name == "WellWall":
                logger.warning("No correct pressure calculation exists for the well wall potential.")
            logger.warning(
                "With a confining wall the box z-length should be 3 to 5 times the confinement "
                "for the electrostatics to be correct."
            )
        if hard and soft:
            logger.warning(
                "Pressure cannot be calculated correctly for all combinations of hard and soft potentials."
            )

    def _population_chain_length(self, mols: Sequence[Molecule]) -> int:
        return max((mol.size() for mol in mols if mol.is_chain()), default=0)

    def _population_chain_symbol(self, mols: Sequence[Molecule]) -> str:
        for mol in mols:
            if mol.is_chain():
                return mol.beads[0].symbol
        return DEFAULT_GC_SYMBOL

    def _check_symbols(self, mols: Sequence[Molecule]) -> None:
        used = {bead.symbol for mol in mols for bead in mol.beads}
        if self.use_gc:
            used.add(self.gc_symbol)
        for potential in (self.pair, self.external):
            if potential is None:
                continue
            missing = used - set(potential.symbols)
            if missing:
                raise ConfigurationError(
                    f"{potential.name} has no parameters for bead types: {', '.join(sorted(missing))}."
                )

    def _allocate_cbmc_buffers(self) -> None:
        self._chain: List[Bead] = [
            Bead(self.gc_symbol, -1, -1, self.gc_charge, (0.0, 0.0, 0.0)) for _ in range(self.gc_chain_length)
        ]
        self._trial_beads: List[Bead] = [
            Bead(self.gc_symbol, -1, -1, self.gc_charge, (0.0, 0.0, 0.0)) for _ in range(self.cbmc_trials)
        ]
        if self.gc_charge != 0:
            self._chain.extend(
                Bead(self.gc_symbol, -1, -1, -self.gc_charge, (0.0, 0.0, 0.0))
                for _ in range(self.gc_chain_length)
            )
            self._trial_beads.extend(
                Bead(self.gc_symbol, -1, -1, -self.gc_charge, (0.0, 0.0, 0.0)) for _ in range(self.cbmc_trials)
            )
        self._trial_weights = np.zeros(self.cbmc_trials)

    def _families(self) -> List[object]:
        return [p for p in (self.pair, self.ewald, self.bond, self.external) if p is not None]

    # Energies -----------------------------------------------------------

    def initialize_energy(self, mols: Sequence[Molecule]) -> None:
        for potential in self._families():
            potential.energy_initialization(mols, self.box_lengths, self.npbc)  # type: ignore[attr-defined]
            logger.info("Initialized %s potential.", potential.name)  # type: ignore[attr-defined]

    def energy_difference(self, mols: Sequence[Molecule], moved: int) -> float:
        delta = 0.0
        # Hard families first so an overlap skips the expensive terms.
        if self.pair is not None:
            delta = energy_sum(delta, self.pair.energy_difference(mols, moved, self.box_lengths, self.npbc))
            if delta >= VERY_LARGE_ENERGY:
                return VERY_LARGE_ENERGY
        if self.external is not None:
            delta = energy_sum(delta, self.external.energy_difference(mols, moved, self.box_lengths, self.npbc))
            if delta >= VERY_LARGE_ENERGY:
                return VERY_LARGE_ENERGY
        if self.ewald is not None:
            delta = energy_sum(delta, self.ewald.energy_difference(mols, moved, self.box_lengths, self.npbc))
        if self.bond is not None:
            delta = energy_sum(delta, self.bond.energy_difference(mols, moved, self.box_lengths, self.npbc))
        return delta

    def finalize_energies(self, mols: Sequence[Molecule], accept: bool, moved: int) -> None:
        for potential in self._families():
            potential.finalize_energy(mols, moved, accept)  # type: ignore[attr-defined]

    def energy_init_for_added_molecules(self, mols: Sequence[Molecule], count: int) -> None:
        """Extend every cache with the last ``count`` molecules of ``mols``."""
        for index in range(len(mols) - count, len(mols)):
            for potential in self._families():
                potential.energy_init_for_added_molecule(  # type: ignore[attr-defined]
                    mols, index, self.box_lengths, self.npbc
                )

    def total_energies(self) -> Dict[str, float]:
        totals = {}
        if self.pair is not None:
            totals["pair"] = self.pair.total_energy
        if self.ewald is not None:
            totals["ewald"] = self.ewald.total_energy
        if self.bond is not None:
            totals["bond"] = self.bond.total_energy
        if self.external is not None:
            totals["external"] = self.external.total_energy
        return totals

    def ewald_energy_components(self) -> Optional[tuple]:
        if self.ewald is None:
            return None
        return self.ewald.energy_components()

    def calculate_external_force(self, mols: Sequence[Molecule]) -> float:
        if self.external is None:
            return 0.0
        return self.external.calculate_force(mols, self.box_lengths)

    def set_box_lengths(self, box_lengths: Sequence[float], mols: Sequence[Molecule]) -> None:
        """Resize the box and rebuild every energy cache for it."""
        self.box_lengths = tuple(float(x) for x in box_lengths)
        self.volume = self.box_lengths[0] * self.box_lengths[1] * self.box_lengths[2]
        if self.ewald is not None:
            self.ewald.set_box_lengths(self.box_lengths)
        self.virial.set_box_lengths(self.box_lengths)
        self.initialize_energy(mols)

    def coordinates_obey_rigid_bond(self, mols: Sequence[Molecule]) -> None:
        """
        Push overlapping bonded neighbours out to the rigid bond length and
        rebuild the energy caches if anything moved.
        """
        if self.pair is None or self.rigid_bond is None:
            return
        moved = False
        for mol in mols:
            for j in range(mol.size() - 1):
                anchor = mol.beads[j].position
                increment = 0.0
                while (
                    self.pair.pair_energy(mol.beads[j], mol.beads[j + 1], self.box_lengths, self.npbc)
                    >= VERY_LARGE_ENERGY
                ):
                    offset = vector_sub(mol.beads[j + 1].position, anchor)
                    length = vector_length(offset)
                    direction = vector_scale(offset, 1.0 / length) if length > 0 else (1.0, 0.0, 0.0)
                    mol.beads[j + 1].set_position(
                        vector_add(anchor, vector_scale(direction, self.rigid_bond + increment))
                    )
                    increment += MED_SMALL_NUMBER
                    moved = True
        if moved:
            self.initialize_energy(mols)

    # CBMC ---------------------------------------------------------------

    def bead_energy(
        self,
        bead: Bead,
        mols: Sequence[Molecule],
        current_length: int,
        excluded: Optional[int] = None,
        kind: str = CHAIN,
    ) -> float:
        """
        Energy of ``bead`` against the population (minus the exclusion window),
        the first ``current_length`` beads of the trial chain, and the walls.
        """
        energy = 0.0
        if self.pair is not None:
            counterions = self.gc_chain_length if self.gc_charge != 0 else 0
            for index, mol in enumerate(mols):
                if excluded is not None and excluded <= index <= excluded + counterions:
                    continue
                for other in mol.beads:
                    energy = energy_sum(energy, self.pair.pair_energy(bead, other, self.box_lengths, self.npbc))
                    if energy >= VERY_LARGE_ENERGY:
                        return VERY_LARGE_ENERGY
            for i in range(current_length):
                # A chain bead is bonded to the last bead grown so far.
                if kind == CHAIN and i == current_length - 1:
                    continue
                energy = energy_sum(
                    energy, self.pair.pair_energy(bead, self._chain[i], self.box_lengths, self.npbc)
                )
                if energy >= VERY_LARGE_ENERGY:
                    return VERY_LARGE_ENERGY
        if self.external is not None:
            energy = energy_sum(energy, self.external.bead_energy(bead, self.box_lengths))
        return energy

    def cbmc_gen_trial_beads(
        self,
        end_bead: Bead,
        mols: Sequence[Molecule],
        current_length: int,
        rng: random.Random,
        excluded: Optional[int] = None,
        kind: str = CHAIN,
    ) -> float:
        """Fill the trial set for the next bead and return its Rosenbluth weight."""
        offset = self.cbmc_trials if kind == COUNTERION else 0
        total = 0.0
        for i in range(self.cbmc_trials):
            if kind == CHAIN:
                if self.bond is not None:
                    bond_length = self.bond.random_bond_length(self.beta, rng)
                elif self.rigid_bond is not None:
                    bond_length = self.rigid_bond
                else:
                    bond_length = 0.0
                position = vector_add(end_bead.position, vector_scale(random_unit_vector(rng), bond_length))
            else:
                position = random_box_position(rng, self.box_lengths)
            trial = self._trial_beads[offset + i]
            trial.set_position(position)
            weight = boltzmann_factor(
                self.beta, self.bead_energy(trial, mols, current_length, excluded, kind)
            )
            self._trial_weights[i] = weight
            total += weight
        return total

    def _grow_first_bead(self, mols: Sequence[Molecule], rng: random.Random) -> float:
        self._chain[0].set_position(random_box_position(rng, self.box_lengths))
        return boltzmann_factor(self.beta, self.bead_energy(self._chain[0], mols, 0, None, CHAIN))

    def _grow_chain(self, mols: Sequence[Molecule], rng: random.Random, beads: int, weight: float) -> float:
        for i in range(1, beads):
            if weight <= 0.0:
                return 0.0
            kind = COUNTERION if i >= self.gc_chain_length else CHAIN
            total = self.cbmc_gen_trial_beads(self._chain[i - 1], mols, i, rng, None, kind)
            weight *= total / self.cbmc_trials
            if total <= 0.0:
                # Selection draw still consumed.
                rng.random()
                return 0.0
            choice = cbmc.rosenbluth_select(self._trial_weights, total, rng)
            offset = self.cbmc_trials if kind == COUNTERION else 0
            self._chain[i].set_position(self._trial_beads[offset + choice].position)
        return weight

    def cbmc_chain_insertion(self, mols: List[Molecule], rng: random.Random) -> bool:
        """
        Attempt to insert one grand-canonical group. Accepted molecules are
        appended with placeholder ids; ids and cache initialization are the
        caller's job.
        """
        beads = self._group_beads
        weight = self._grow_chain(mols, rng, beads, self._grow_first_bead(mols, rng))
        if weight <= 0.0:
            # Every attempt draws its acceptance number.
            rng.random()
            return False

        energy_change = 0.0
        if self.ewald is not None:
            energy_change = self.ewald.trial_chain_energy(
                mols, self._chain[:beads], None, self.box_lengths, self.npbc
            )

        log_ratio = cbmc.log_insertion_ratio(
            self.volume,
            self.beta,
            self.chemical_potential,
            energy_change,
            weight,
            self.de_broglie,
            len(mols),
        )
        if rng.random() >= cbmc.acceptance_probability(log_ratio):
            return False

        chain = Molecule()
        for bead in self._chain[: self.gc_chain_length]:
            chain.add_bead(Bead(bead.symbol, -1, -1, bead.charge, bead.position))
        for i in range(chain.size() - 1):
            chain.add_bond(i, i + 1)
        mols.append(chain)
        for bead in self._chain[self.gc_chain_length: beads]:
            mols.append(Molecule(beads=[Bead(bead.symbol, -1, -1, bead.charge, bead.position)]))
        logger.debug("CBMC insertion accepted, %d molecules.", len(mols))
        return True

    def _matches_group(self, mols: Sequence[Molecule], index: int) -> bool:
        mol = mols[index]
        if mol.size() != self.gc_chain_length or mol.beads[0].charge != self.gc_charge:
            return False
        if self.gc_charge == 0:
            return True
        if index + self.gc_chain_length >= len(mols):
            return False
        for offset in range(1, self.gc_chain_length + 1):
            ion = mols[index + offset]
            if ion.size() != 1 or ion.beads[0].charge != -self.gc_charge:
                return False
        return True

    def cbmc_chain_deletion(self, mols: Sequence[Molecule], rng: random.Random) -> Optional[int]:
        """
        Attempt to delete one grand-canonical group. On acceptance every cache
        is purged for the group and its first index is returned; the caller
        removes the molecules. Returns None when nothing was deleted.
        """
        if not any(self._matches_group(mols, i) for i in range(len(mols))):
            return None
        while True:
            delete_id = min(int(rng.random() * len(mols)), len(mols) - 1)
            if self._matches_group(mols, delete_id):
                break

        target = mols[delete_id]
        weight = boltzmann_factor(self.beta, self.bead_energy(target.beads[0], mols, 0, delete_id, CHAIN))
        self._chain[0].set_position(target.beads[0].position)

        beads = self._group_beads
        for i in range(1, beads):
            if i < self.gc_chain_length:
                kind = CHAIN
                position = target.beads[i].position
            else:
                kind = COUNTERION
                position = mols[delete_id + i - self.gc_chain_length + 1].beads[0].position
            self._chain[i].set_position(position)
            self.cbmc_gen_trial_beads(self._chain[i - 1], mols, i, rng, delete_id, kind)
            # The real bead takes the place of the first trial.
            self._trial_weights[0] = boltzmann_factor(
                self.beta, self.bead_energy(self._chain[i], mols, i, delete_id, kind)
            )
            weight *= float(self._trial_weights.sum()) / self.cbmc_trials

        group = range(delete_id, delete_id + self.gc_group_size)
        energy_change = 0.0
        if self.ewald is not None:
            energy_change = self.ewald.trial_chain_energy(
                mols, self._chain[:beads], group, self.box_lengths, self.npbc
            )

        log_ratio = cbmc.log_deletion_ratio(
            self.volume,
            self.beta,
            self.chemical_potential,
            energy_change,
            weight,
            self.de_broglie,
            len(mols),
        )
        if rng.random() >= cbmc.acceptance_probability(log_ratio):
            return None

        for index in reversed(group):
            for potential in self._families():
                potential.adjust_energy_upon_deletion(mols, index)  # type: ignore[attr-defined]
        logger.debug("CBMC deletion accepted at molecule %d.", delete_id)
        return delete_id

    def calc_chemical_potential(self, mols: Sequence[Molecule], rng: random.Random) -> float:
        """
        Mean CBMC insertion weight V W / (Lambda (N + 1)) over a fixed number
        of test insertions. The excess chemical potential is -ln(value) / beta.
        """
        total = 0.0
        for _ in range(WIDOM_INSERTIONS):
            weight = self._grow_chain(mols, rng, self.gc_chain_length, self._grow_first_bead(mols, rng))
            total += self.volume * weight / (self.de_broglie * (len(mols) + 1))
        return total / WIDOM_INSERTIONS

    # Pressure -----------------------------------------------------------

    def calc_pressure_virial_hsel(self, mols: Sequence[Molecule], rho: float) -> None:
        derivative = self.ewald.volume_derivative(self.volume) if self.ewald is not None else None
        self.virial.sample(mols, rho, derivative)

    def get_pressure(self) -> str:
        """Pxx Pyy Pzz Phxx Phyy Phzz Pexx Peyy Pezz."""
        return self.virial.formatted()


def _name_or_no(settings: object) -> str:
    return getattr(settings, "name", None) or "no"


def _count(is_hard: bool, hard: int, soft: int) -> Tuple[int, int]:
    if is_hard:
        return hard + 1, soft
    return hard, soft + 1
