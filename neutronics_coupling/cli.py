#!/usr/bin/env python3
"""
Command-line interface for neutronics-coupling package.
"""

import argparse
import json
import logging
import sys

from .config import HEAT_PROFILES, get_heat_profile, load_config, validate_coupling
from .coupling import CouplingController
from .drivers.surrogate_heat import SurrogateHeatDriver
from .geometry import index_from_driver
from .io import save_history, save_mapping
from .mapping import MeshMapper


def _load_or_exit(path):
    try:
        return load_config(path)
    except (OSError, ValueError) as e:
        print(f"Error: could not load coupling config: {e}")
        sys.exit(1)


def cmd_show_config(args):
    """Print the coupling configuration and the surrogate geometry profile."""
    cfg = _load_or_exit(args.config)
    print("--- Coupling configuration ---")
    print(json.dumps(cfg, indent=2))
    print(f"--- Heat profile: {args.profile} ---")
    print(json.dumps(get_heat_profile(args.profile), indent=2))


def cmd_map(args):
    """Map the surrogate T/H mesh onto an OpenMC model and report coverage."""
    from .drivers.openmc_driver import OpenmcDriver

    print(f"--- Mapping '{args.profile}' onto OpenMC model in {args.model_dir} ---")
    heat = SurrogateHeatDriver.from_config(get_heat_profile(args.profile))
    with OpenmcDriver(args.model_dir) as neutronics:
        mapper = MeshMapper(index_from_driver(neutronics), name=args.profile)
        mapping, fractions = mapper.build(heat.centroids(), heat.volumes())

    print(f"Elements: {mapping.n_elements}")
    print(f"Mapped cells: {mapping.n_cells}")
    print(f"Unmapped elements: {mapping.n_unmapped}")
    print(f"Mapped volume: {fractions.cell_volumes.sum():.6e} cm^3")
    if args.output:
        save_mapping(mapping, fractions, args.output, name=args.profile)
        print(f"Map saved to {args.output}")


def cmd_run(args):
    """Run a coupled OpenMC + surrogate T/H calculation."""
    cfg = _load_or_exit(args.config)
    if args.power is not None:
        cfg['total_power'] = args.power
    if args.timesteps is not None:
        cfg['timesteps'] = args.timesteps
    try:
        validate_coupling(cfg)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    from .drivers.openmc_driver import OpenmcDriver

    print(f"=== Coupled run: {cfg['timesteps']} time step(s), {cfg['total_power']:.4e} W ===")
    heat = SurrogateHeatDriver.from_config(get_heat_profile(args.profile))
    with OpenmcDriver(args.model_dir, statepoint=args.statepoint) as neutronics:
        controller = CouplingController(
            neutronics, heat,
            total_power=cfg['total_power'],
            max_iterations=cfg['max_picard_iter'],
            tolerance=cfg['tolerance'],
            norm=cfg['norm'],
            alpha=cfg['alpha'],
            alpha_T=cfg['alpha_T'],
            alpha_rho=cfg['alpha_rho'],
            temperature_ic=cfg['temperature_ic'],
        )
        results = controller.run(cfg['timesteps'])

    for result in results:
        status = "converged" if result.converged else "NOT converged"
        print(f"Time step {result.timestep}: {status} after {result.iterations} iteration(s)")
    save_history(results, args.output)
    print(f"History saved to {args.output}")
    if not all(r.converged for r in results):
        sys.exit(2)


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="neutronics-coupling",
        description="Couple a Monte Carlo neutronics solver to thermal-hydraulics solvers"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Show config command
    show_parser = subparsers.add_parser("show-config", help="Print the effective configuration")
    show_parser.add_argument("--config", default=None, help="JSON file with coupling options.")
    show_parser.add_argument("--profile", choices=HEAT_PROFILES.keys(), default='single_rod',
                             help="Surrogate T/H geometry profile.")
    show_parser.set_defaults(func=cmd_show_config)

    # Map command
    map_parser = subparsers.add_parser("map", help="Build the cell/element map against an OpenMC model")
    map_parser.add_argument("model_dir", help="Directory with the OpenMC XML input.")
    map_parser.add_argument("--profile", choices=HEAT_PROFILES.keys(), default='single_rod',
                            help="Surrogate T/H geometry profile.")
    map_parser.add_argument("-o", "--output", default=None, help="HDF5 file to save the map to.")
    map_parser.set_defaults(func=cmd_map)

    # Coupled run command
    run_parser = subparsers.add_parser("run", help="Run a coupled calculation")
    run_parser.add_argument("model_dir", help="Directory with the OpenMC XML input.")
    run_parser.add_argument("--config", default=None, help="JSON file with coupling options.")
    run_parser.add_argument("--profile", choices=HEAT_PROFILES.keys(), default='single_rod',
                            help="Surrogate T/H geometry profile.")
    run_parser.add_argument("--power", type=float, default=None, help="Total power in Watts.")
    run_parser.add_argument("--timesteps", type=int, default=None, help="Number of time steps.")
    run_parser.add_argument("--statepoint", action="store_true",
                            help="Write an OpenMC statepoint after every Picard iteration.")
    run_parser.add_argument("-o", "--output", default="coupling_history.h5",
                            help="HDF5 file for the iteration history.")
    run_parser.set_defaults(func=cmd_run)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
