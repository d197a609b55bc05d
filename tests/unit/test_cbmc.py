"""Configurational-bias grand-canonical insertion and deletion."""

from __future__ import annotations

import math
import random
from typing import List

import pytest

from cgmc import cbmc
from cgmc.config_loader import ForceFieldSettings, GrandCanonicalSettings, PotentialSettings
from cgmc.force_field import ForceField
from cgmc.molecules import Molecule

from conftest import make_chain, make_ion

BOX = (10.0, 10.0, 10.0)


def gc_settings(
    chemical_potential: float, chain_length: int = 1, charge: float = 0.0, trials: int = 5, **extra
) -> ForceFieldSettings:
    settings = ForceFieldSettings(
        pair=PotentialSettings("HardSphere", {}, {"P": {"diameter": 1.0}}),
        grand_canonical=GrandCanonicalSettings(
            chemical_potential=chemical_potential,
            chain_length=chain_length,
            charge=charge,
            trials=trials,
        ),
    )
    for key, value in extra.items():
        setattr(settings, key, value)
    return settings


def test_insertion_and_deletion_ratios_are_reciprocal() -> None:
    args = (1000.0, 1.0, -2.0, 0.7, 0.35, 1.0)
    for count in (0, 1, 5, 40):
        forward = cbmc.log_insertion_ratio(*args, count)
        backward = cbmc.log_deletion_ratio(*args, count + 1)
        assert forward + backward == pytest.approx(0.0, abs=1e-12)


@pytest.mark.parametrize("chemical_potential", [-12.0, -3.0, 0.0, 4.0])
def test_acceptance_probabilities_satisfy_detailed_balance(chemical_potential: float) -> None:
    volume, beta, energy, weight, de_broglie, count = 500.0, 1.0, 0.3, 1.0, 1.0, 7
    p_insert = cbmc.acceptance_probability(
        cbmc.log_insertion_ratio(volume, beta, chemical_potential, energy, weight, de_broglie, count)
    )
    p_delete = cbmc.acceptance_probability(
        cbmc.log_deletion_ratio(volume, beta, chemical_potential, energy, weight, de_broglie, count + 1)
    )
    expected = math.exp(beta * chemical_potential - beta * energy) * volume / (de_broglie * (count + 1))
    assert p_insert / p_delete == pytest.approx(expected)


def test_zero_weight_is_never_accepted() -> None:
    log_ratio = cbmc.log_insertion_ratio(1000.0, 1.0, 100.0, 0.0, 0.0, 1.0, 0)
    assert cbmc.acceptance_probability(log_ratio) == 0.0


def test_huge_chemical_potential_does_not_overflow() -> None:
    assert cbmc.insertion_ratio(1000.0, 1.0, 1000.0, 0.0, 1.0, 1.0, 0) == math.inf
    assert cbmc.deletion_ratio(1000.0, 1.0, 1000.0, 0.0, 1.0, 1.0, 1) == 0.0


def test_rosenbluth_select_skips_zero_weights(rng: random.Random) -> None:
    weights = [0.0, 0.0, 2.5, 0.0]
    for _ in range(50):
        assert cbmc.rosenbluth_select(weights, 2.5, rng) == 2


def test_rosenbluth_select_guards_against_rounding(rng: random.Random) -> None:
    # A total slightly above the true sum must still pick a weighted trial.
    weights = [0.0, 1.0, 0.0]
    for _ in range(50):
        assert cbmc.rosenbluth_select(weights, 1.0 + 1e-9, rng) == 1


def test_insert_then_delete_single_bead(rng: random.Random) -> None:
    mols = []
    force_field = ForceField(gc_settings(50.0), 1.0, 3, BOX, mols)
    assert force_field.cbmc_chain_insertion(mols, rng)
    assert len(mols) == 1
    assert mols[0].size() == 1
    force_field.energy_init_for_added_molecules(mols, 1)
    assert force_field.pair.total_energy == 0.0

    force_field.chemical_potential = -50.0
    assert force_field.cbmc_chain_deletion(mols, rng) == 0
    assert force_field.pair.total_energy == 0.0
    assert force_field.pair._cache.matrix.shape == (0, 0)


def test_ideal_chain_population_follows_chemical_potential() -> None:
    # Without interactions <N> = V exp(beta mu) / Lambda = 1000 * 0.02.
    mols: List[Molecule] = []
    settings = ForceFieldSettings(
        grand_canonical=GrandCanonicalSettings(chemical_potential=math.log(0.02), chain_length=3, trials=4)
    )
    force_field = ForceField(settings, 1.0, 3, BOX, mols)
    generator = random.Random(2024)
    total = samples = 0
    for step in range(30000):
        if generator.random() < 0.5:
            force_field.cbmc_chain_insertion(mols, generator)
        else:
            delete_id = force_field.cbmc_chain_deletion(mols, generator)
            if delete_id is not None:
                del mols[delete_id]
        if step >= 3000:
            total += len(mols)
            samples += 1
    assert all(mol.size() == 3 for mol in mols)
    assert total / samples == pytest.approx(20.0, abs=1.5)


def test_deletion_weight_uses_the_real_beads(rng: random.Random, monkeypatch: pytest.MonkeyPatch) -> None:
    # One trial per bead, so the weight is exactly that of the chain being removed.
    chain = make_chain([(2.0, 2.0, 2.0), (3.0, 2.0, 2.0), (4.0, 2.0, 2.0)])
    mols = [chain, make_ion((3.0, 3.05, 2.0), 0.0)]
    settings = gc_settings(
        0.0,
        chain_length=3,
        trials=1,
        pair=PotentialSettings("TruncatedLJ", {"cutoff": -1.0}, {"P": {"sigma": 1.0, "epsilon": 1.0}}),
        rigid_bond=1.0,
    )
    force_field = ForceField(settings, 1.0, 3, BOX, mols)
    weights = []
    log_deletion_ratio = cbmc.log_deletion_ratio

    def recording(*args: float) -> float:
        weights.append(args[4])
        return log_deletion_ratio(*args)

    monkeypatch.setattr(cbmc, "log_deletion_ratio", recording)
    force_field.cbmc_chain_deletion(mols, rng)

    # Only the middle bead sits inside the WCA range of the ion, at r = 1.05.
    sr6 = (1.0 / 1.05) ** 6
    wca = 4.0 * (sr6 * sr6 - sr6) + 1.0
    assert weights == [pytest.approx(math.exp(-wca))]


def test_blocked_insertion_still_draws_acceptance_number() -> None:
    mols = [make_ion((5.0, 5.0, 5.0), 0.0, symbol="Q")]
    settings = gc_settings(
        50.0, pair=PotentialSettings("HardSphere", {}, {"P": {"diameter": 1.0}, "Q": {"diameter": 40.0}})
    )
    force_field = ForceField(settings, 1.0, 3, BOX, mols)
    generator = random.Random(5)
    reference = random.Random(5)
    assert not force_field.cbmc_chain_insertion(mols, generator)
    # Three coordinates for the first bead, then the acceptance number.
    for _ in range(4):
        reference.random()
    assert generator.random() == reference.random()
    assert len(mols) == 1


def test_inserted_chain_is_bonded_sequentially(rng: random.Random) -> None:
    mols = []
    settings = gc_settings(50.0, chain_length=4, trials=20, rigid_bond=1.0)
    force_field = ForceField(settings, 1.0, 3, BOX, mols)
    assert force_field.cbmc_chain_insertion(mols, rng)
    chain = mols[0]
    assert chain.size() == 4
    assert chain.bonds == [(0, 1), (1, 2), (2, 3)]
    for i in range(3):
        assert chain.beads[i].distance(chain.beads[i + 1], BOX, 3) == pytest.approx(1.0)
    assert all(bead.id == -1 for bead in chain.beads)


def test_deletion_without_matching_group_returns_none(rng: random.Random) -> None:
    mols = [make_chain([(2.0, 2.0, 2.0), (3.0, 2.0, 2.0), (4.0, 2.0, 2.0)])]
    force_field = ForceField(gc_settings(-50.0), 1.0, 3, BOX, mols)
    assert force_field.cbmc_chain_deletion(mols, rng) is None
    assert len(mols) == 1


def test_charged_group_brings_counterions(rng: random.Random) -> None:
    mols = []
    settings = gc_settings(
        100.0,
        chain_length=2,
        charge=1.0,
        pair=PotentialSettings("TruncatedLJ", {"cutoff": -1.0}, {"P": {"sigma": 1.0, "epsilon": 1.0}}),
        bond=PotentialSettings("Spring", {"k": 100.0, "r0": 1.0}),
        ewald=PotentialSettings("Coul", {"bjerrum_length": 1.0, "alpha": 0.5, "k_max": 4}),
    )
    force_field = ForceField(settings, 1.0, 3, BOX, mols)
    assert force_field.gc_group_size == 3
    assert force_field.cbmc_chain_insertion(mols, rng)
    assert len(mols) == 3
    assert mols[0].size() == 2
    assert [bead.charge for bead in mols[0].beads] == [1.0, 1.0]
    assert [mol.beads[0].charge for mol in mols[1:]] == [-1.0, -1.0]
    force_field.energy_init_for_added_molecules(mols, 3)
    for potential in (force_field.pair, force_field.ewald, force_field.bond):
        expected = potential.recompute_total(mols, BOX, 3)
        assert potential.total_energy == pytest.approx(expected, rel=1e-9, abs=1e-9)

    force_field.chemical_potential = -100.0
    assert force_field.cbmc_chain_deletion(mols, rng) == 0
    assert force_field.pair.total_energy == pytest.approx(0.0, abs=1e-9)
    assert force_field.bond.total_energy == pytest.approx(0.0, abs=1e-9)
    assert force_field.ewald.total_energy == pytest.approx(0.0, abs=1e-9)


def test_charged_deletion_skips_chain_without_counterions(rng: random.Random) -> None:
    mols = [make_chain([(2.0, 2.0, 2.0), (3.0, 2.0, 2.0)], charge=1.0), make_ion((6.0, 6.0, 6.0), -1.0)]
    settings = gc_settings(-50.0, chain_length=2, charge=1.0, rigid_bond=1.0)
    force_field = ForceField(settings, 1.0, 3, BOX, mols)
    assert force_field.cbmc_chain_deletion(mols, rng) is None


def test_widom_weight_of_empty_box_is_volume(rng: random.Random) -> None:
    settings = gc_settings(0.0, grand_canonical=None)
    force_field = ForceField(settings, 1.0, 3, BOX, [])
    assert force_field.calc_chemical_potential([], rng) == pytest.approx(1000.0)
