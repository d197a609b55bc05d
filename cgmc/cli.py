"""
Command line entry point: run a Monte Carlo simulation from a YAML config.
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys
from typing import List, Optional

from cgmc.config_loader import load_config_from_yaml
from cgmc.errors import ConfigurationError
from cgmc.force_field import ForceField
from cgmc.simulation import Simulation


logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Coarse-grained Monte Carlo simulation.")
    parser.add_argument("config", type=pathlib.Path, help="Path to the YAML configuration.")
    parser.add_argument("--steps", type=int, default=None, help="Override the number of steps.")
    parser.add_argument("--seed", type=int, default=None, help="Override the random seed.")
    parser.add_argument(
        "--stats",
        type=pathlib.Path,
        default=None,
        help="Write the statistics table here instead of standard output.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    try:
        bundle = load_config_from_yaml(args.config)
        settings = bundle.simulation
        if args.seed is not None:
            settings.seed = args.seed
        force_field = ForceField(
            bundle.force_field,
            settings.beta,
            settings.npbc,
            settings.box_lengths,
            bundle.molecules,
        )
    except ConfigurationError as exc:
        logger.error("%s Exiting.", exc)
        sys.exit(1)

    force_field.coordinates_obey_rigid_bond(bundle.molecules)
    simulation = Simulation(settings, force_field, bundle.molecules)
    name = bundle.metadata.get("name", args.config.stem)
    logger.info(
        "Running %s for %d steps, %d of them equilibration.",
        name,
        args.steps if args.steps is not None else settings.steps,
        settings.equilibration_steps,
    )

    if args.stats is not None:
        args.stats.parent.mkdir(parents=True, exist_ok=True)
        with args.stats.open("w", encoding="utf-8") as handle:
            simulation.run(args.steps, stats=handle)
    else:
        simulation.run(args.steps, stats=sys.stdout)
    logger.info("Simulation complete.")


if __name__ == "__main__":
    main()
