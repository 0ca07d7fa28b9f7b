"""LineRT — CLI entry point.

Runs the non-LTE molecular line transfer: population iteration on the
grid, then raytraced images.

Usage
-----
    python main.py
    python main.py --config config/default_config.yaml --sweeps 30 --threads 8
    python main.py --lte --no-images
    python main.py --restart output/populations.npz
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging."""
    fmt = "%(name)s [%(levelname)s] %(message)s"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt,
        stream=sys.stdout,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="linert",
        description="LineRT — non-LTE molecular line radiative transfer and imaging",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python main.py\n"
            "  python main.py --points 4000 --photons 64 --sweeps 30\n"
            "  python main.py --lte --no-images\n"
            "  python main.py --restart output/populations.npz --output run2\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/default_config.yaml",
        help="Path to simulation config YAML (default: config/default_config.yaml)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Output directory for data and plots (default: from config)",
    )
    parser.add_argument(
        "--points",
        type=int,
        default=None,
        help="Override number of interior grid points",
    )
    parser.add_argument(
        "--photons",
        type=int,
        default=None,
        help="Override photons per grid point and sweep",
    )
    parser.add_argument(
        "--sweeps",
        type=int,
        default=None,
        help="Override maximum number of sweeps",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=None,
        help="Worker threads for sweeps and raytracing",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override photon sampling seed",
    )
    parser.add_argument(
        "--lte",
        action="store_true",
        default=False,
        help="Skip the non-LTE iteration and image LTE populations",
    )
    parser.add_argument(
        "--restart",
        type=str,
        default=None,
        help="Start from populations saved by a previous run",
    )
    parser.add_argument(
        "--no-images",
        action="store_true",
        default=False,
        help="Do not raytrace the configured images",
    )
    parser.add_argument(
        "--no-plots",
        action="store_true",
        default=False,
        help="Do not write PNG figures",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )
    return parser.parse_args(argv)


def apply_overrides(config, args: argparse.Namespace):
    """Return ``config`` with the CLI overrides applied."""
    solver_changes = {}
    if args.photons is not None:
        solver_changes["photons_per_point"] = args.photons
    if args.sweeps is not None:
        solver_changes["max_sweeps"] = args.sweeps
    if args.threads is not None:
        solver_changes["n_threads"] = args.threads
    if args.seed is not None:
        solver_changes["seed"] = args.seed
    if args.lte:
        solver_changes["lte_only"] = True
    if args.restart is not None:
        solver_changes["restart_file"] = Path(args.restart)
    if solver_changes:
        config.solver = dataclasses.replace(config.solver, **solver_changes)

    if args.threads is not None:
        config.raytracer = dataclasses.replace(config.raytracer, n_threads=args.threads)
    if args.points is not None:
        config.grid = dataclasses.replace(config.grid, num_points=args.points)
    if args.output is not None:
        config.output_directory = Path(args.output)
    return config


def main(argv: list[str] | None = None) -> int:
    """Main simulation entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    logger = logging.getLogger("linert")
    logger.info("=" * 60)
    logger.info("  LineRT — Non-LTE Line Radiative Transfer")
    logger.info("=" * 60)

    from core_engine.constants import (
        _validate_config,
        load_config,
        log_assumptions,
        log_platform_info,
    )
    from line_solver.scheduler import SolverError
    from simulation.runner import SimulationRunner
    from visualization.plotter import generate_all_plots

    config_path = Path(args.config)
    logger.info("Loading config: %s", config_path)
    config = apply_overrides(load_config(config_path), args)
    _validate_config(config)
    log_platform_info()
    log_assumptions(config)

    runner = SimulationRunner(config)
    try:
        results = runner.run(
            save_data=True,
            output_dir=config.output_directory,
            render_images=not args.no_images,
        )
    except SolverError as exc:
        logger.error("Population iteration failed: %s", exc)
        return 2

    saved: list[Path] = []
    if not args.no_plots:
        logger.info("Generating plots → %s/", config.output_directory)
        saved = generate_all_plots(results, output_dir=config.output_directory)

    # Summary
    meta = results.metadata
    logger.info("=" * 60)
    logger.info("  SIMULATION COMPLETE")
    logger.info("=" * 60)
    logger.info("  Grid: %d points (%d sinks), %d cells",
                meta["num_points"], meta["num_sink_points"], meta["num_cells"])
    logger.info("  Solver: %s after %d sweeps, %.1f%% converged",
                meta["solver_state"], meta["sweeps"], 100.0 * meta["converged_fraction"])
    logger.info("  Wall time: %.1f s", meta.get("wall_time_s", 0))
    for name, image in results.images.items():
        logger.info("  Image %s: peak %.4e %s", name, float(image.intensity.max()), image.spec.unit)
    logger.info("  Plots (%d):", len(saved))
    for p in saved:
        logger.info("    → %s", p)
    logger.info("=" * 60)

    return 0


if __name__ == "__main__":
    sys.exit(main())
