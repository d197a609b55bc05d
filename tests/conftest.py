"""
Shared pytest fixtures for cgmc tests.

Configuration assets are parsed once per session; population builders
create small, hand-placed systems so tests control every coordinate.
"""

from __future__ import annotations

import pathlib
import random
import sys
from typing import Any, Dict, List, Sequence, Tuple

import pytest
import yaml

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from cgmc.config_loader import assign_ids  # noqa: E402
from cgmc.molecules import Bead, Molecule  # noqa: E402


@pytest.fixture(scope="session")
def project_root() -> pathlib.Path:
    """Return repository root directory."""
    return REPO_ROOT


def _load_yaml(path: pathlib.Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)  # type: ignore[no-any-return]


@pytest.fixture(scope="session")
def config_template(project_root: pathlib.Path) -> Dict[str, Any]:
    """Parsed representation of the default simulation config template."""
    return _load_yaml(project_root / "config" / "template.yaml")


@pytest.fixture(scope="session")
def force_field_tokens(project_root: pathlib.Path) -> List[str]:
    """Whitespace-split labeled token stream for a fully featured force field."""
    path = project_root / "tests" / "data" / "force_field_tokens.txt"
    return path.read_text(encoding="utf-8").split()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(12345)


def make_chain(
    positions: Sequence[Tuple[float, float, float]], symbol: str = "P", charge: float = 0.0
) -> Molecule:
    molecule = Molecule()
    for position in positions:
        molecule.add_bead(Bead(symbol, -1, -1, charge, position))
    for i in range(len(positions) - 1):
        molecule.add_bond(i, i + 1)
    return molecule


def make_ion(position: Tuple[float, float, float], charge: float, symbol: str = "P") -> Molecule:
    return Molecule(beads=[Bead(symbol, -1, -1, charge, position)])


def make_population(seed: int, chains: int, length: int, ions: int, box: float, charged: bool = False) -> List[Molecule]:
    """Chains on a coarse grid with ions scattered between them, no pair closer than 1.1."""
    generator = random.Random(seed)
    molecules: List[Molecule] = []
    spacing = box / 3.0
    for n in range(chains):
        origin = (0.5 + (n % 3) * spacing, 0.5 + ((n // 3) % 3) * spacing, 0.5 + (n // 9) * spacing)
        positions = [(origin[0] + 0.95 * i, origin[1], origin[2]) for i in range(length)]
        molecules.append(make_chain(positions, charge=1.0 if charged else 0.0))
    placed = [bead.position for mol in molecules for bead in mol.beads]
    while len(molecules) < chains + ions:
        candidate = (generator.random() * box, generator.random() * box, 1.0 + generator.random() * (box - 2.0))
        if all(_periodic_distance(candidate, other, box) > 1.1 for other in placed):
            charge = (-1.0 if len(molecules) % 2 else 1.0) if charged else 0.0
            molecules.append(make_ion(candidate, charge))
            placed.append(candidate)
    assign_ids(molecules)
    return molecules


def _periodic_distance(a: Sequence[float], b: Sequence[float], box: float) -> float:
    total = 0.0
    for axis in range(3):
        delta = a[axis] - b[axis]
        delta -= box * round(delta / box)
        total += delta * delta
    return total ** 0.5
