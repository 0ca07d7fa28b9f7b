"""Simulation Runner: the full non-LTE line modelling pipeline.

Orchestrates:
1. Molecular data and physical model
2. Grid points → Delaunay mesh with neighbour graph
3. Lookup tables, dust opacity, blend table
4. Population records (LTE or restart file)
5. Convergence scheduler (photon transport + statistical equilibrium)
6. Raytraced images
7. Populations, images and metadata written to the output directory
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

import numpy as np

from core_engine.blends import BlendTable, find_blends
from core_engine.constants import SimulationConfig, hash_array
from core_engine.lookup_tables import LookupTables, build_lookup_tables
from core_engine.mesh import Mesh, build_mesh
from core_engine.molecular import DustOpacity, MolecularData, load_dust_opacity
from core_engine.raytracer import ImageResult, ImageSpec, Raytracer
from data_ingestion.lamda_loader import load_molecules
from data_ingestion.point_placement import place_points
from data_ingestion.synthetic_cloud import PhysicalModel, build_physical_model
from line_solver.populations import SpeciesState, init_species_states
from line_solver.scheduler import ConvergenceScheduler, SchedulerReport

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result Container
# ---------------------------------------------------------------------------


@dataclass
class SimulationResults:
    """Container for simulation output data.

    Attributes
    ----------
    mesh : Mesh
    molecules : list[MolecularData]
    states : list[SpeciesState]
        Converged population records.
    report : SchedulerReport
    images : dict[str, ImageResult]
    metadata : dict
        Run metadata (grid, convergence, timing).
    """

    mesh: Mesh
    molecules: list[MolecularData]
    states: list[SpeciesState]
    report: SchedulerReport
    images: dict[str, ImageResult] = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Simulation Runner
# ---------------------------------------------------------------------------


class SimulationRunner:
    """Main simulation runner.

    Parameters
    ----------
    config : SimulationConfig
        Full simulation configuration loaded from YAML.
    model : PhysicalModel, optional
        Source model; built from ``config.model`` if omitted.
    """

    def __init__(self, config: SimulationConfig, model: PhysicalModel | None = None) -> None:
        self._config = config
        self._constants = config.constants
        self._model = model

        logger.info(
            "SimulationRunner initialized: %d species, %d grid points, %d sinks, R=%.0f au",
            len(config.molecules),
            config.grid.num_points,
            config.grid.num_sink_points,
            config.grid.radius_au,
        )

    @property
    def config(self) -> SimulationConfig:
        return self._config

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def load_species(self) -> list[MolecularData]:
        return load_molecules([m.file for m in self._config.molecules], self._constants)

    def build_model(self) -> PhysicalModel:
        if self._model is None:
            au = self._constants.astronomical_unit
            abundances = np.array([m.abundance for m in self._config.molecules])
            self._model = build_physical_model(
                self._config.model, self._constants, abundances,
                min_radius_m=self._config.grid.min_scale_au * au,
            )
        return self._model

    def build_grid(self, model: PhysicalModel) -> Mesh:
        grid = self._config.grid
        au = self._constants.astronomical_unit
        points = place_points(
            model.density,
            num_points=grid.num_points,
            num_sink_points=grid.num_sink_points,
            radius_m=grid.radius_au * au,
            min_scale_m=grid.min_scale_au * au,
            weight_exponent=grid.density_weight_exponent,
            seed=grid.seed,
        )
        return build_mesh(points.positions, points.is_sink, model, grid.path_weight_directions)

    def build_tables(self) -> LookupTables:
        lt = self._config.lookup_tables
        return build_lookup_tables(
            max_taylor=lt.fast_exp_max_taylor,
            num_bits=lt.fast_exp_num_bits,
            error_bound=lt.fast_exp_error_bound,
            erf_limit=lt.erf_table_limit,
            erf_points_per_unit=lt.erf_table_points_per_unit,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        save_data: bool = True,
        output_dir: Path | str | None = None,
        render_images: bool = True,
    ) -> SimulationResults:
        """Execute the pipeline.

        Parameters
        ----------
        save_data : bool
            Write populations, images and metadata to ``output_dir``.
        output_dir : Path or str, optional
            Defaults to ``config.output_directory``.
        render_images : bool
            Raytrace the configured images after convergence.

        Returns
        -------
        SimulationResults

        Raises
        ------
        SolverError
            If a point's rate matrix stays singular.
        """
        config = self._config
        constants = self._constants
        output_dir = Path(output_dir) if output_dir is not None else config.output_directory
        wall_start = time.perf_counter()

        logger.info("Step 1/6: Loading molecular data and physical model...")
        molecules = self.load_species()
        model = self.build_model()

        logger.info("Step 2/6: Placing grid points and triangulating...")
        mesh = self.build_grid(model)

        logger.info("Step 3/6: Lookup tables, dust opacity and line blends...")
        tables = self.build_tables()
        dust: DustOpacity = load_dust_opacity(config.dust, constants)
        blends: BlendTable = find_blends(
            molecules,
            config.solver.max_blend_delta_v_ms,
            constants.speed_of_light,
            enabled=config.solver.blending,
        )

        logger.info("Step 4/6: Initialising populations...")
        restart = None
        if config.solver.restart_file is not None:
            from simulation.io_manager import load_populations

            restart, _, _ = load_populations(config.solver.restart_file, mesh.positions)
        states = init_species_states(mesh, molecules, dust, constants, restart)

        logger.info("Step 5/6: Iterating level populations...")
        scheduler = ConvergenceScheduler(
            mesh, molecules, states, blends, tables, constants, config.solver
        )
        report = scheduler.run()
        solve_elapsed = time.perf_counter() - wall_start

        results = SimulationResults(
            mesh=mesh,
            molecules=molecules,
            states=states,
            report=report,
            metadata={
                "num_points": mesh.num_points,
                "num_sink_points": int(mesh.is_sink.sum()),
                "num_cells": mesh.num_cells,
                "grid_hash": hash_array(mesh.positions),
                "species": [mol.name for mol in molecules],
                "num_blends": blends.num_blends,
                "solver_state": report.state.value,
                "sweeps": report.sweeps,
                "converged_fraction": report.converged_fraction,
                "partially_converged": report.partially_converged,
                "history": [asdict(s) for s in report.history],
                "solve_time_s": solve_elapsed,
            },
        )

        if render_images and config.images:
            logger.info("Step 6/6: Raytracing %d image(s)...", len(config.images))
            tracer = Raytracer(
                mesh, molecules, states, blends, tables, dust, constants, config.raytracer
            )
            for img_cfg in config.images:
                spec = ImageSpec.from_config(img_cfg, molecules, constants)
                results.images[spec.name] = tracer.render(spec)
        else:
            logger.info("Step 6/6: Skipping images.")

        wall_elapsed = time.perf_counter() - wall_start
        results.metadata["wall_time_s"] = wall_elapsed
        logger.info("Simulation complete: %.1f seconds wall time", wall_elapsed)

        if save_data:
            from simulation.io_manager import save_image, save_metadata, save_populations

            save_populations(
                output_dir / "populations.npz",
                [s.pops for s in states],
                mesh.positions,
                [mol.name for mol in molecules],
            )
            for image in results.images.values():
                save_image(output_dir, image)
            save_metadata(output_dir, results.metadata)

        return results
