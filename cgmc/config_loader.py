"""
Settings for cgmc runs, loaded from YAML configuration files or from the
labeled token stream used by the force-field input format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import yaml

from cgmc.constants import DEFAULT_CBMC_TRIALS, DEFAULT_GC_SYMBOL, MOVE_TYPES
from cgmc.errors import ConfigurationError
from cgmc.molecules import Bead, Molecule, Vector


logger = logging.getLogger(__name__)


@dataclass
class PotentialSettings:
    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    types: Dict[str, Dict[str, float]] = field(default_factory=dict)


@dataclass
class GrandCanonicalSettings:
    chemical_potential: float
    de_broglie: float = 1.0
    frequency: int = 1
    chain_length: int = 1
    charge: float = 0.0
    symbol: str = DEFAULT_GC_SYMBOL
    trials: int = DEFAULT_CBMC_TRIALS


@dataclass
class ForceFieldSettings:
    histogram_resolution: float = 0.1
    virial_bead_size: float = 1.0
    pair: Optional[PotentialSettings] = None
    ewald: Optional[PotentialSettings] = None
    bond: Optional[PotentialSettings] = None
    rigid_bond: Optional[float] = None
    use_angle: bool = False
    use_dihedral: bool = False
    external: Optional[PotentialSettings] = None
    grand_canonical: Optional[GrandCanonicalSettings] = None


@dataclass
class SimulationSettings:
    beta: float = 1.0
    npbc: int = 3
    box_lengths: Vector = (10.0, 10.0, 10.0)
    steps: int = 1000
    equilibration_steps: int = 0
    sample_interval: int = 100
    seed: Optional[int] = None
    move_probabilities: Dict[str, float] = field(default_factory=lambda: {"com_translation": 1.0})
    move_sizes: Dict[str, float] = field(default_factory=dict)
    calc_chemical_potential: bool = False


@dataclass
class ConfigBundle:
    """Container returned by configuration loader."""

    simulation: SimulationSettings
    force_field: ForceFieldSettings
    molecules: List[Molecule]
    metadata: Dict[str, Any]


# Scalar parameters and per-type keys of each potential, in token order.
POTENTIAL_SCHEMAS: Dict[str, Dict[str, Tuple[Tuple[str, Callable[[str], Any]], ...]]] = {
    "pair": {
        "TruncatedLJ": (("cutoff", float),),
        "LJ": (),
        "HardSphere": (),
    },
    "ewald": {
        "Coul": (("bjerrum_length", float), ("alpha", float), ("k_max", int)),
    },
    "bond": {
        "Spring": (("k", float), ("r0", float)),
    },
    "external": {
        "TruncatedLJWall": (("cutoff", float), ("wall_sigma", float), ("wall_epsilon", float), ("walls", int)),
        "HardWall": (("walls", int),),
        "WellWall": (("walls", int), ("depth", float), ("width", float)),
    },
}

TYPE_KEYS: Dict[str, Tuple[str, ...]] = {
    "TruncatedLJ": ("sigma", "epsilon"),
    "LJ": ("sigma", "epsilon"),
    "HardSphere": ("diameter",),
    "TruncatedLJWall": ("sigma", "epsilon"),
    "HardWall": ("radius",),
    "WellWall": ("radius",),
}

FAMILY_LABELS = {"pair": "pair", "ewald": "Ewald", "bond": "bonded", "external": "external"}


def _check_potential_name(family: str, name: str) -> None:
    if name not in POTENTIAL_SCHEMAS[family]:
        raise ConfigurationError(f"Undefined {FAMILY_LABELS[family]} potential {name!r}.")


# ---------------------------------------------------------------------------
# Token stream
# ---------------------------------------------------------------------------


class _TokenStream:
    """``label value`` pairs; labels are read and discarded."""

    def __init__(self, tokens: Iterable[str]):
        self._tokens: Iterator[str] = iter(tokens)

    def _next(self) -> str:
        try:
            return next(self._tokens)
        except StopIteration:
            raise ConfigurationError("Force field input ended early.") from None

    def value(self, convert: Callable[[str], Any] = str) -> Any:
        label = self._next()
        raw = self._next()
        try:
            return convert(raw)
        except ValueError:
            raise ConfigurationError(f"Bad value {raw!r} for {label!r}.") from None


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _read_potential_block(stream: _TokenStream, family: str) -> PotentialSettings:
    name = stream.value()
    _check_potential_name(family, name)
    parameters = {key: stream.value(convert) for key, convert in POTENTIAL_SCHEMAS[family][name]}
    types: Dict[str, Dict[str, float]] = {}
    keys = TYPE_KEYS.get(name)
    if keys:
        while True:
            symbol = stream.value()
            if symbol == "end":
                break
            types[symbol] = {key: stream.value(float) for key in keys}
    return PotentialSettings(name=name, parameters=parameters, types=types)


def read_force_field_tokens(tokens: Iterable[str]) -> ForceFieldSettings:
    """Parse the fixed-order force-field input: flags, GC block, then per-family blocks."""
    stream = _TokenStream(tokens)
    histogram_resolution = stream.value(float)
    virial_bead_size = stream.value(float)
    use_pair = stream.value(_parse_bool)
    use_ewald = stream.value(_parse_bool)
    use_bond = stream.value(_parse_bool)
    use_rigid = stream.value(_parse_bool)
    use_angle = stream.value(_parse_bool)
    use_dihedral = stream.value(_parse_bool)
    use_external = stream.value(_parse_bool)
    use_gc = stream.value(_parse_bool)

    grand_canonical = None
    if use_gc:
        grand_canonical = GrandCanonicalSettings(
            chemical_potential=stream.value(float),
            de_broglie=stream.value(float),
            frequency=stream.value(int),
            chain_length=stream.value(int),
            charge=stream.value(float),
            symbol=stream.value(),
            trials=stream.value(int),
        )

    settings = ForceFieldSettings(
        histogram_resolution=histogram_resolution,
        virial_bead_size=virial_bead_size,
        use_angle=use_angle,
        use_dihedral=use_dihedral,
        grand_canonical=grand_canonical,
    )
    if use_pair:
        settings.pair = _read_potential_block(stream, "pair")
    if use_ewald:
        settings.ewald = _read_potential_block(stream, "ewald")
    if use_bond:
        settings.bond = _read_potential_block(stream, "bond")
    if use_rigid:
        settings.rigid_bond = stream.value(float)
    if use_external:
        settings.external = _read_potential_block(stream, "external")
    return settings


def read_force_field_file(path: Path) -> ForceFieldSettings:
    with Path(path).open("r", encoding="utf-8") as handle:
        return read_force_field_tokens(handle.read().split())


# ---------------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------------


def load_config_from_yaml(path: Path) -> ConfigBundle:
    """Load simulation settings, force-field settings and the initial population."""
    data = _load_yaml(Path(path))
    simulation = _build_simulation_settings(data.get("simulation", {}))
    force_field = _build_force_field_settings(data.get("force_field", {}))
    molecules = _build_molecules(data.get("system", {}), simulation.box_lengths)
    validate_settings(simulation, force_field)
    logger.debug("Loaded %d molecules from %s.", len(molecules), path)
    return ConfigBundle(
        simulation=simulation,
        force_field=force_field,
        molecules=molecules,
        metadata=data.get("metadata", {}),
    )


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        content = yaml.safe_load(handle)
    if not isinstance(content, dict):
        raise ValueError(f"YAML file {path} must contain a mapping at the root.")
    return content


def _build_simulation_settings(config: Dict[str, Any]) -> SimulationSettings:
    defaults = SimulationSettings()
    probabilities: Dict[str, float] = {}
    sizes: Dict[str, float] = {}
    for move, entry in (config.get("moves") or {}).items():
        if isinstance(entry, dict):
            probabilities[move] = float(entry.get("probability", 0.0))
            if "size" in entry:
                sizes[move] = float(entry["size"])
        else:
            probabilities[move] = float(entry)
    seed = config.get("seed")
    return SimulationSettings(
        beta=float(config.get("beta", defaults.beta)),
        npbc=int(config.get("npbc", defaults.npbc)),
        box_lengths=_tuple3(config.get("box", defaults.box_lengths)),
        steps=int(config.get("steps", defaults.steps)),
        equilibration_steps=int(config.get("equilibration_steps", defaults.equilibration_steps)),
        sample_interval=int(config.get("sample_interval", defaults.sample_interval)),
        seed=int(seed) if seed is not None else None,
        move_probabilities=probabilities or defaults.move_probabilities,
        move_sizes=sizes,
        calc_chemical_potential=_parse_bool(config.get("calc_chemical_potential", False)),
    )


def _build_potential(family: str, entry: Optional[Dict[str, Any]]) -> Optional[PotentialSettings]:
    if not entry:
        return None
    if "name" not in entry:
        raise ConfigurationError(f"The {FAMILY_LABELS[family]} potential needs a name.")
    name = str(entry["name"])
    _check_potential_name(family, name)
    parameters = {key: value for key, value in entry.items() if key not in ("name", "types")}
    types = {
        str(symbol): {key: float(value) for key, value in (params or {}).items()}
        for symbol, params in (entry.get("types") or {}).items()
    }
    return PotentialSettings(name=name, parameters=parameters, types=types)


def _build_force_field_settings(config: Dict[str, Any]) -> ForceFieldSettings:
    gc_entry = config.get("grand_canonical")
    grand_canonical = None
    if gc_entry:
        if "chemical_potential" not in gc_entry:
            raise ConfigurationError("grand_canonical needs a chemical_potential.")
        grand_canonical = GrandCanonicalSettings(
            chemical_potential=float(gc_entry["chemical_potential"]),
            de_broglie=float(gc_entry.get("de_broglie", 1.0)),
            frequency=int(gc_entry.get("frequency", 1)),
            chain_length=int(gc_entry.get("chain_length", 1)),
            charge=float(gc_entry.get("charge", 0.0)),
            symbol=str(gc_entry.get("symbol", DEFAULT_GC_SYMBOL)),
            trials=int(gc_entry.get("trials", DEFAULT_CBMC_TRIALS)),
        )
    rigid_bond = config.get("rigid_bond")
    return ForceFieldSettings(
        histogram_resolution=float(config.get("histogram_resolution", 0.1)),
        virial_bead_size=float(config.get("virial_bead_size", 1.0)),
        pair=_build_potential("pair", config.get("pair")),
        ewald=_build_potential("ewald", config.get("ewald")),
        bond=_build_potential("bond", config.get("bond")),
        rigid_bond=float(rigid_bond) if rigid_bond is not None else None,
        use_angle=_parse_bool(config.get("angle", False)),
        use_dihedral=_parse_bool(config.get("dihedral", False)),
        external=_build_potential("external", config.get("external")),
        grand_canonical=grand_canonical,
    )


def _build_molecules(config: Dict[str, Any], box_lengths: Vector) -> List[Molecule]:
    molecules: List[Molecule] = []
    for entry in config.get("molecules", []) or []:
        molecule = Molecule()
        for bead in entry.get("beads", []):
            molecule.add_bead(
                Bead(
                    symbol=str(bead["symbol"]),
                    id=-1,
                    mol_id=-1,
                    charge=float(bead.get("charge", 0.0)),
                    position=_tuple3(bead["position"]),
                )
            )
        if not molecule.beads:
            raise ValueError("Every molecule needs at least one bead.")
        bonds = entry.get("bonds")
        if bonds is None:
            bonds = [(i, i + 1) for i in range(molecule.size() - 1)]
        for i, j in bonds:
            molecule.add_bond(i, j)
        for angle in entry.get("angles", []) or []:
            molecule.add_angle(*angle)
        for dihedral in entry.get("dihedrals", []) or []:
            molecule.add_dihedral(*dihedral)
        molecules.append(molecule)
    lattice = config.get("lattice")
    if lattice:
        molecules.extend(_lattice_chains(lattice, box_lengths))
    assign_ids(molecules)
    return molecules


def _lattice_chains(config: Dict[str, Any], box_lengths: Vector) -> List[Molecule]:
    """Straight chains along x on a simple lattice, as a starting configuration."""
    count = int(config.get("count", 0))
    length = int(config.get("length", 1))
    symbol = str(config.get("symbol", DEFAULT_GC_SYMBOL))
    charge = float(config.get("charge", 0.0))
    bond_length = float(config.get("bond_length", 1.0))
    spacing = float(config.get("spacing", 1.5 * bond_length))
    extent = (length - 1) * bond_length + spacing
    per_row = int(box_lengths[0] // extent)
    per_column = int(box_lengths[1] // spacing)
    per_layer = int(box_lengths[2] // spacing)
    if count > per_row * per_column * per_layer:
        raise ConfigurationError(f"{count} chains of length {length} do not fit in the box.")
    chains = []
    for n in range(count):
        ix = n % per_row
        iy = (n // per_row) % per_column
        iz = n // (per_row * per_column)
        origin = (ix * extent + 0.5 * spacing, (iy + 0.5) * spacing, (iz + 0.5) * spacing)
        chain = Molecule()
        for i in range(length):
            chain.add_bead(Bead(symbol, -1, -1, charge, (origin[0] + i * bond_length, origin[1], origin[2])))
        for i in range(length - 1):
            chain.add_bond(i, i + 1)
        chains.append(chain)
    return chains


def assign_ids(molecules: List[Molecule]) -> None:
    bead_id = 0
    for mol_id, molecule in enumerate(molecules):
        for bead in molecule.beads:
            bead.id = bead_id
            bead.mol_id = mol_id
            bead_id += 1


def validate_settings(simulation: SimulationSettings, force_field: ForceFieldSettings) -> None:
    """Reject setting combinations the simulation cannot run with."""
    if simulation.beta <= 0:
        raise ConfigurationError(f"beta must be positive, got {simulation.beta}.")
    if simulation.npbc not in (2, 3):
        raise ConfigurationError(f"npbc must be 2 or 3, got {simulation.npbc}.")
    if any(length <= 0 for length in simulation.box_lengths):
        raise ConfigurationError(f"Box lengths must be positive, got {simulation.box_lengths}.")
    if simulation.sample_interval < 1:
        raise ConfigurationError("sample_interval must be at least 1.")
    if simulation.equilibration_steps < 0:
        raise ConfigurationError("equilibration_steps must not be negative.")
    unknown = set(simulation.move_probabilities) - set(MOVE_TYPES)
    if unknown:
        raise ConfigurationError(f"Unknown move types: {', '.join(sorted(unknown))}.")
    if any(p < 0 for p in simulation.move_probabilities.values()):
        raise ConfigurationError("Move probabilities must be non-negative.")
    total = sum(simulation.move_probabilities.values())
    if not math.isclose(total, 1.0, rel_tol=0.0, abs_tol=1e-9):
        raise ConfigurationError(f"Move probabilities must sum to 1, got {total}.")
    rigid = force_field.rigid_bond is not None
    if rigid and simulation.move_probabilities.get("crankshaft", 0.0) > 0:
        raise ConfigurationError("Crankshaft moves cannot be used with rigid bonds.")
    if not rigid and simulation.move_probabilities.get("reptation", 0.0) > 0:
        raise ConfigurationError("Reptation moves need rigid bonds.")
    if simulation.calc_chemical_potential and force_field.grand_canonical is not None:
        raise ConfigurationError("Chemical potential calculation cannot be combined with grand canonical MC.")
    gc = force_field.grand_canonical
    if gc is not None and gc.frequency < 1:
        raise ConfigurationError("Grand-canonical move frequency must be at least 1.")


def _tuple3(values: Iterable[Any]) -> Vector:
    items = list(values)
    if len(items) != 3:
        raise ValueError(f"Expected 3 components, got {items!r}")
    return (float(items[0]), float(items[1]), float(items[2]))
