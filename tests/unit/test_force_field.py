"""Cache bookkeeping of the force field across trial moves, insertions and deletions."""

from __future__ import annotations

import random
from typing import List

import pytest

from cgmc.config_loader import ForceFieldSettings, GrandCanonicalSettings, PotentialSettings
from cgmc.constants import VERY_LARGE_ENERGY
from cgmc.errors import ConfigurationError
from cgmc.force_field import ForceField
from cgmc.molecules import Molecule

from conftest import make_chain, make_ion, make_population

BOX = (12.0, 12.0, 12.0)


def soft_settings(**overrides) -> ForceFieldSettings:
    settings = ForceFieldSettings(
        pair=PotentialSettings("TruncatedLJ", {"cutoff": -1.0}, {"P": {"sigma": 1.0, "epsilon": 1.0}}),
        ewald=PotentialSettings("Coul", {"bjerrum_length": 1.0, "alpha": 0.5, "k_max": 4}),
        bond=PotentialSettings("Spring", {"k": 50.0, "r0": 1.0}),
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def hard_settings(**overrides) -> ForceFieldSettings:
    settings = ForceFieldSettings(
        pair=PotentialSettings("HardSphere", {}, {"P": {"diameter": 1.0}}),
        bond=PotentialSettings("Spring", {"k": 50.0, "r0": 1.0}),
        external=PotentialSettings("HardWall", {"walls": 2}, {"P": {"radius": 0.5}}),
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def families(force_field: ForceField) -> List[object]:
    return [p for p in (force_field.pair, force_field.ewald, force_field.bond, force_field.external) if p is not None]


def assert_caches_consistent(force_field: ForceField, mols: List[Molecule]) -> None:
    for potential in families(force_field):
        expected = potential.recompute_total(mols, force_field.box_lengths, force_field.npbc)
        assert potential.total_energy == pytest.approx(expected, rel=1e-7, abs=1e-7), potential.name


def random_moves(force_field: ForceField, mols: List[Molecule], rng: random.Random, count: int) -> int:
    accepted = 0
    for _ in range(count):
        index = rng.randrange(len(mols))
        molecule = mols[index]
        if molecule.is_chain() and rng.random() < 0.5:
            molecule.pivot(0.8, rng)
        else:
            molecule.com_translate(0.6, rng)
        delta = force_field.energy_difference(mols, index)
        accept = delta < VERY_LARGE_ENERGY and rng.random() < 0.6
        force_field.finalize_energies(mols, accept, index)
        if accept:
            molecule.commit_trial()
            accepted += 1
        else:
            molecule.revert_trial()
    return accepted


def test_soft_caches_follow_random_moves(rng: random.Random) -> None:
    mols = make_population(seed=1, chains=3, length=4, ions=6, box=BOX[0], charged=True)
    force_field = ForceField(soft_settings(), 1.0, 3, BOX, mols)
    assert_caches_consistent(force_field, mols)
    accepted = random_moves(force_field, mols, rng, 150)
    assert accepted > 0
    assert_caches_consistent(force_field, mols)


def test_hard_caches_follow_random_moves(rng: random.Random) -> None:
    mols = make_population(seed=2, chains=3, length=3, ions=6, box=BOX[0])
    force_field = ForceField(hard_settings(), 1.0, 2, BOX, mols)
    assert force_field.pair.total_energy == 0.0
    assert force_field.external.total_energy == 0.0
    accepted = random_moves(force_field, mols, rng, 150)
    assert accepted > 0
    assert_caches_consistent(force_field, mols)
    assert force_field.pair.total_energy == 0.0


def test_overlap_short_circuits_and_rejection_keeps_totals() -> None:
    mols = [make_ion((2.0, 2.0, 2.0), 0.0), make_ion((6.0, 6.0, 6.0), 0.0)]
    force_field = ForceField(hard_settings(external=None), 1.0, 3, BOX, mols)
    mols[1].beads[0].set_trial_position((2.2, 2.0, 2.0))
    assert force_field.energy_difference(mols, 1) == VERY_LARGE_ENERGY
    force_field.finalize_energies(mols, False, 1)
    mols[1].revert_trial()
    assert force_field.pair.total_energy == 0.0
    assert mols[1].beads[0].position == (6.0, 6.0, 6.0)


def test_added_and_deleted_molecules_keep_caches_consistent() -> None:
    mols = make_population(seed=3, chains=2, length=3, ions=4, box=BOX[0], charged=True)
    force_field = ForceField(soft_settings(), 1.0, 3, BOX, mols)

    mols.append(make_chain([(6.0, 10.0, 10.5), (7.0, 10.0, 10.5), (8.0, 10.2, 10.5)], charge=-1.0))
    force_field.energy_init_for_added_molecules(mols, 1)
    assert_caches_consistent(force_field, mols)

    for potential in families(force_field):
        potential.adjust_energy_upon_deletion(mols, 1)
    del mols[1]
    assert_caches_consistent(force_field, mols)


def test_total_energies_report_present_families() -> None:
    mols = make_population(seed=4, chains=1, length=3, ions=2, box=BOX[0])
    force_field = ForceField(hard_settings(), 1.0, 2, BOX, mols)
    assert set(force_field.total_energies()) == {"pair", "bond", "external"}
    assert force_field.ewald_energy_components() is None
    assert force_field.calculate_external_force(mols) == 0.0


def test_set_box_lengths_rebuilds_caches() -> None:
    mols = make_population(seed=5, chains=2, length=3, ions=4, box=BOX[0], charged=True)
    force_field = ForceField(soft_settings(), 1.0, 3, BOX, mols)
    force_field.set_box_lengths((13.0, 13.0, 13.0), mols)
    assert force_field.volume == pytest.approx(13.0 ** 3)
    assert_caches_consistent(force_field, mols)


def test_coordinates_obey_rigid_bond() -> None:
    chain = make_chain([(2.0, 2.0, 2.0), (2.5, 2.0, 2.0), (3.0, 2.0, 2.0)])
    mols = [chain]
    settings = hard_settings(bond=None, external=None, rigid_bond=1.0)
    force_field = ForceField(settings, 1.0, 3, BOX, mols)
    force_field.coordinates_obey_rigid_bond(mols)
    for j in range(chain.size() - 1):
        r = chain.beads[j].distance(chain.beads[j + 1], BOX, 3)
        assert r >= 1.0
        assert r == pytest.approx(1.0, abs=1e-4)


def test_rigid_bond_fix_rebuilds_caches() -> None:
    chain = make_chain([(2.0, 2.0, 2.0), (2.9, 2.0, 2.0), (3.8, 2.0, 2.0)], charge=1.0)
    mols = [chain, make_ion((6.0, 6.0, 6.0), -1.0), make_ion((8.0, 3.0, 9.0), -1.0), make_ion((3.0, 9.0, 5.0), -1.0)]
    settings = hard_settings(
        bond=None,
        external=None,
        rigid_bond=1.0,
        ewald=PotentialSettings("Coul", {"bjerrum_length": 1.0, "alpha": 0.5, "k_max": 4}),
    )
    force_field = ForceField(settings, 1.0, 3, BOX, mols)
    before = force_field.ewald.total_energy
    force_field.coordinates_obey_rigid_bond(mols)
    assert force_field.ewald.total_energy != pytest.approx(before)
    assert_caches_consistent(force_field, mols)
    # Moves started from the fixed coordinates keep the caches in step.
    random_moves(force_field, mols, random.Random(3), 40)
    assert_caches_consistent(force_field, mols)


@pytest.mark.parametrize(
    "overrides",
    [
        {"histogram_resolution": 0.0},
        {"virial_bead_size": 0.0},
        {"rigid_bond": 0.0},
        {"grand_canonical": GrandCanonicalSettings(chemical_potential=0.0, trials=0)},
        {"grand_canonical": GrandCanonicalSettings(chemical_potential=0.0, chain_length=0)},
        {"pair": PotentialSettings("Morse", {}, {"P": {"sigma": 1.0}})},
    ],
)
def test_invalid_force_field_settings_are_fatal(overrides) -> None:
    with pytest.raises(ConfigurationError):
        ForceField(hard_settings(**overrides), 1.0, 2, BOX, [])


def test_missing_bead_type_parameters_are_fatal() -> None:
    mols = [make_ion((3.0, 3.0, 3.0), 0.0, symbol="Q")]
    with pytest.raises(ConfigurationError):
        ForceField(hard_settings(), 1.0, 2, BOX, mols)


def test_widom_defaults_follow_population() -> None:
    mols = [make_chain([(2.0, 2.0, 2.0), (3.0, 2.0, 2.0)], symbol="P")]
    force_field = ForceField(hard_settings(external=None), 1.0, 3, BOX, mols)
    assert not force_field.use_gc
    assert force_field.gc_chain_length == 2
    assert force_field.gc_symbol == "P"
    assert force_field.gc_group_size == 1
