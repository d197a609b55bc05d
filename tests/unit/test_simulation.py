"""Monte Carlo driver and command line entry point."""

from __future__ import annotations

import dataclasses
import io
import pathlib
import random

import pytest
import yaml

from cgmc import cli
from cgmc.config_loader import (
    ForceFieldSettings,
    GrandCanonicalSettings,
    PotentialSettings,
    SimulationSettings,
    load_config_from_yaml,
)
from cgmc.force_field import ForceField
from cgmc.simulation import Simulation

from conftest import make_population


def build_simulation(config: pathlib.Path, steps: int, seed: int = 11) -> Simulation:
    bundle = load_config_from_yaml(config)
    settings = dataclasses.replace(bundle.simulation, steps=steps, equilibration_steps=0, seed=seed)
    force_field = ForceField(
        bundle.force_field, settings.beta, settings.npbc, settings.box_lengths, bundle.molecules
    )
    return Simulation(settings, force_field, bundle.molecules)


def assert_caches_consistent(simulation: Simulation) -> None:
    force_field = simulation.force_field
    for potential in (force_field.pair, force_field.ewald, force_field.bond, force_field.external):
        if potential is None:
            continue
        expected = potential.recompute_total(simulation.molecules, force_field.box_lengths, force_field.npbc)
        assert potential.total_energy == pytest.approx(expected, rel=1e-7, abs=1e-7), potential.name


def test_template_run_writes_statistics(project_root: pathlib.Path) -> None:
    simulation = build_simulation(project_root / "config" / "template.yaml", steps=300)
    stats = io.StringIO()
    simulation.run(stats=stats)
    lines = stats.getvalue().splitlines()
    assert lines[0].startswith("#Step")
    # Header plus one row per sample interval.
    assert len(lines) == 1 + 300 // simulation.settings.sample_interval
    header = lines[0].split()
    for row in lines[1:]:
        assert len(row.split()) == len(header)
    assert simulation.current_step == 300
    assert sum(simulation.attempted.values()) == 300
    assert 0 < sum(simulation.accepted.values()) <= 300
    assert_caches_consistent(simulation)


def test_equilibration_steps_are_not_sampled(project_root: pathlib.Path) -> None:
    bundle = load_config_from_yaml(project_root / "config" / "template.yaml")
    settings = dataclasses.replace(bundle.simulation, steps=300, equilibration_steps=100, seed=11)
    force_field = ForceField(
        bundle.force_field, settings.beta, settings.npbc, settings.box_lengths, bundle.molecules
    )
    simulation = Simulation(settings, force_field, bundle.molecules)
    stats = io.StringIO()
    simulation.run(stats=stats)
    rows = stats.getvalue().splitlines()[1:]
    assert [int(row.split()[0]) for row in rows] == [200, 300]
    assert simulation.averages.samples == 2
    assert sum(simulation.attempted.values()) == 200


def test_hard_chain_melt_keeps_chains_rigid(project_root: pathlib.Path) -> None:
    simulation = build_simulation(project_root / "config" / "presets" / "hard_chain_melt.yaml", steps=100)
    simulation.run()
    assert simulation.force_field.pair.total_energy == 0.0
    box = simulation.force_field.box_lengths
    for molecule in simulation.molecules:
        for j in range(molecule.size() - 1):
            r = molecule.beads[j].distance(molecule.beads[j + 1], box, 3)
            assert r == pytest.approx(1.0)
    assert simulation.averages.chemical_potential > 0.0


def test_grand_canonical_run_keeps_ids_unique(rng: random.Random) -> None:
    box = (10.0, 10.0, 10.0)
    molecules = make_population(seed=9, chains=2, length=2, ions=2, box=box[0])
    force_field_settings = ForceFieldSettings(
        pair=PotentialSettings("HardSphere", {}, {"P": {"diameter": 1.0}}),
        bond=PotentialSettings("Spring", {"k": 50.0, "r0": 1.0}),
        grand_canonical=GrandCanonicalSettings(chemical_potential=2.0, frequency=3, chain_length=2, trials=10),
    )
    settings = SimulationSettings(
        box_lengths=box,
        steps=300,
        sample_interval=50,
        move_probabilities={"bead_translation": 0.5, "com_translation": 0.5},
    )
    force_field = ForceField(force_field_settings, 1.0, 3, box, molecules)
    simulation = Simulation(settings, force_field, molecules, rng=rng)
    simulation.run()

    assert simulation.insertions_attempted + simulation.deletions_attempted > 0
    ids = [bead.id for molecule in simulation.molecules for bead in molecule.beads]
    assert len(ids) == len(set(ids))
    assert all(bead_id >= 0 for bead_id in ids)
    for mol_id, molecule in enumerate(simulation.molecules):
        assert all(bead.mol_id == mol_id for bead in molecule.beads)
    assert_caches_consistent(simulation)
    assert "insert delete" in simulation.stat_header()


def test_translational_move_without_candidates_returns_none(rng: random.Random) -> None:
    settings = SimulationSettings(move_probabilities={"pivot": 1.0})
    force_field = ForceField(
        ForceFieldSettings(pair=PotentialSettings("HardSphere", {}, {"P": {"diameter": 1.0}})),
        1.0,
        3,
        settings.box_lengths,
        [],
    )
    simulation = Simulation(settings, force_field, [], rng=rng)
    assert simulation.translational_move() is None


def test_cli_writes_stats_file(project_root: pathlib.Path, tmp_path: pathlib.Path) -> None:
    stats = tmp_path / "out" / "stats.txt"
    cli.main([str(project_root / "config" / "template.yaml"), "--steps", "200", "--seed", "4", "--stats", str(stats)])
    lines = stats.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("#Step")
    assert len(lines) == 3


def test_cli_exits_on_configuration_error(tmp_path: pathlib.Path) -> None:
    config = tmp_path / "bad.yaml"
    config.write_text(yaml.safe_dump({"simulation": {"beta": -1.0}}), encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        cli.main([str(config)])
    assert excinfo.value.code == 1
