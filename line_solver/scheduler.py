"""Convergence scheduler: Gauss-Jacobi sweeps over the grid points.

State machine
-------------
    IDLE ──run()──▶ SWEEPING ──▶ CONVERGED   (fraction ≥ threshold)
                           └───▶ EXHAUSTED   (sweep budget used up)

Every sweep freezes the population snapshot, computes each non-sink
point (photon sampling + statistical equilibrium, all species) into a
disjoint next-state buffer using a thread pool, and then commits the
buffer. Because each point reads only the snapshot and its own frozen
random stream, the result is bit-identical for any thread count and
processing order.

Sink points are never solved; they keep their initial populations.

A point whose rate matrix is singular keeps its previous populations and
counts as unconverged. If it stays singular for
``max_consecutive_failures`` sweeps in a row the run is aborted with
:class:`SolverError`.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from core_engine.blends import BlendTable
from core_engine.constants import PhysicalConstants, SolverConfig
from core_engine.lookup_tables import LookupTables
from core_engine.mesh import Mesh
from core_engine.molecular import MolecularData, lte_populations
from line_solver.photon import PhotonPlan, plan_photons, sample_radiation
from line_solver.populations import PopulationBuffers, SpeciesState, line_coefficients
from line_solver.stateq import StateqStatus, solve_point

logger = logging.getLogger(__name__)


class SolverError(RuntimeError):
    """Raised when a point's equilibrium stays singular across sweeps."""


class SchedulerState(Enum):
    IDLE = "idle"
    SWEEPING = "sweeping"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (SchedulerState.CONVERGED, SchedulerState.EXHAUSTED)


@dataclass(frozen=True)
class SweepStats:
    """Summary of one sweep."""

    sweep: int
    converged_fraction: float
    num_singular: int
    num_not_stabilised: int
    median_rel_change: float
    max_rel_change: float


@dataclass
class SchedulerReport:
    """Final outcome of the iteration.

    Attributes
    ----------
    state : SchedulerState
        CONVERGED or EXHAUSTED.
    sweeps : int
        Sweeps performed.
    converged_fraction : float
        Fraction of non-sink points converged after the last sweep.
    partially_converged : bool
        True when the sweep budget ran out below the threshold.
    history : list[SweepStats]
    pops : list[np.ndarray]
        Final populations per species. Shape: (N, n_levels) each.
    """

    state: SchedulerState
    sweeps: int
    converged_fraction: float
    partially_converged: bool
    history: list[SweepStats] = field(default_factory=list)
    pops: list[np.ndarray] = field(default_factory=list)


@dataclass(frozen=True)
class _PointOutcome:
    converged: bool
    singular: bool
    not_stabilised: bool
    max_rel_change: float


class ConvergenceScheduler:
    """Drives photon sampling and equilibrium solves to convergence.

    Parameters
    ----------
    mesh : Mesh
    molecules : list[MolecularData]
    states : list[SpeciesState]
        Initial population records; updated in place by :meth:`run`.
    blends : BlendTable
    tables : LookupTables
    constants : PhysicalConstants
    solver : SolverConfig
    """

    def __init__(
        self,
        mesh: Mesh,
        molecules: list[MolecularData],
        states: list[SpeciesState],
        blends: BlendTable,
        tables: LookupTables,
        constants: PhysicalConstants,
        solver: SolverConfig,
    ) -> None:
        self.mesh = mesh
        self.molecules = molecules
        self.states = states
        self.blends = blends
        self.tables = tables
        self.constants = constants
        self.config = solver

        self.state = SchedulerState.IDLE
        self.sweeps_done = 0
        self.history: list[SweepStats] = []

        self._buffers = PopulationBuffers([s.pops for s in states])
        self._interior = mesh.interior_indices
        self._failures = np.zeros(mesh.num_points, dtype=np.int64)
        self._plans: dict[int, PhotonPlan] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> SchedulerReport:
        """Sweep until converged or the budget is exhausted.

        Raises
        ------
        SolverError
            If a point stays singular for too many consecutive sweeps.
        """
        if self.state.is_terminal:
            raise RuntimeError(f"Scheduler already finished ({self.state.value})")

        if self.config.lte_only:
            logger.info("LTE-only run: populations fixed at local thermodynamic equilibrium.")
            for s, mol in enumerate(self.molecules):
                lte = lte_populations(mol, self.mesh.temperature, self.constants)
                self._buffers.snapshot[s] = lte
                self.states[s].pops = lte.copy()
            self.state = SchedulerState.CONVERGED
            return self._report(1.0)

        logger.info(
            "Starting non-LTE iteration: %d points, %d species, %d photons/point, "
            "max %d sweeps, %d threads",
            self._interior.shape[0],
            len(self.molecules),
            self.config.photons_per_point,
            self.config.max_sweeps,
            self.config.n_threads,
        )
        self._prepare_plans()

        fraction = 0.0
        while not self.state.is_terminal:
            stats = self.sweep()
            fraction = stats.converged_fraction

        for s, state in enumerate(self.states):
            state.pops = np.array(self._buffers.snapshot[s])

        if self.state is SchedulerState.EXHAUSTED:
            logger.warning(
                "Sweep budget exhausted after %d sweeps: only %.1f%% of points converged "
                "(threshold %.1f%%). Output is partially converged.",
                self.sweeps_done,
                100.0 * fraction,
                100.0 * self.config.convergence_fraction,
            )
        else:
            logger.info(
                "Converged after %d sweeps (%.1f%% of points).",
                self.sweeps_done,
                100.0 * fraction,
            )
        return self._report(fraction)

    def sweep(self) -> SweepStats:
        """Run one Gauss-Jacobi sweep and update the scheduler state."""
        if self.state.is_terminal:
            raise RuntimeError(f"Scheduler already finished ({self.state.value})")
        if not self._plans:
            self._prepare_plans()

        self.state = SchedulerState.SWEEPING
        self._buffers.begin_sweep()
        coeffs = line_coefficients(
            self.molecules, self.states, self._buffers.snapshot, self.constants
        )

        def work(point: int) -> _PointOutcome:
            return self._solve_point(int(point), coeffs)

        with ThreadPoolExecutor(max_workers=self.config.n_threads) as pool:
            outcomes = list(pool.map(work, self._interior))

        self._buffers.commit()
        self.sweeps_done += 1

        converged = np.array([o.converged for o in outcomes], dtype=bool)
        singular = np.array([o.singular for o in outcomes], dtype=bool)
        changes = np.array([o.max_rel_change for o in outcomes])
        finite = changes[np.isfinite(changes)]

        self._failures[self._interior] = np.where(singular, self._failures[self._interior] + 1, 0)
        worst = int(self._failures.max()) if self._failures.size else 0
        if worst >= self.config.max_consecutive_failures:
            bad = np.flatnonzero(self._failures >= self.config.max_consecutive_failures)
            raise SolverError(
                f"Rate matrix singular for {worst} consecutive sweeps at "
                f"{bad.shape[0]} point(s), first index {int(bad[0])}"
            )

        fraction = float(converged.mean()) if converged.size else 1.0
        stats = SweepStats(
            sweep=self.sweeps_done,
            converged_fraction=fraction,
            num_singular=int(singular.sum()),
            num_not_stabilised=int(sum(o.not_stabilised for o in outcomes)),
            median_rel_change=float(np.median(finite)) if finite.size else 0.0,
            max_rel_change=float(finite.max()) if finite.size else 0.0,
        )
        self.history.append(stats)

        logger.info(
            "Sweep %d/%d: %.1f%% converged, median change %.2e, max %.2e, "
            "%d singular, %d not stabilised",
            stats.sweep,
            self.config.max_sweeps,
            100.0 * fraction,
            stats.median_rel_change,
            stats.max_rel_change,
            stats.num_singular,
            stats.num_not_stabilised,
        )

        if fraction >= self.config.convergence_fraction:
            self.state = SchedulerState.CONVERGED
        elif self.sweeps_done >= self.config.max_sweeps:
            self.state = SchedulerState.EXHAUSTED
        return stats

    @property
    def populations(self) -> list[np.ndarray]:
        """Committed populations per species (read-only view between sweeps)."""
        return self._buffers.snapshot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare_plans(self) -> None:
        n_ph = self.config.photons_per_point
        seed = self.config.seed
        plans = [plan_photons(self.mesh, int(p), n_ph, seed) for p in self._interior]
        self._plans = dict(zip((int(p) for p in self._interior), plans))
        logger.debug("Photon launch plans drawn for %d points", len(self._plans))

    def _solve_point(self, point: int, coeffs) -> _PointOutcome:
        plan = self._plans[point]
        converged = True
        singular = False
        not_stabilised = False
        worst = 0.0

        offsets = self.blends.line_offsets
        for s, (mol, state) in enumerate(zip(self.molecules, self.states)):
            g0 = int(offsets[s])
            sample = sample_radiation(
                self.mesh,
                point,
                g0,
                g0 + mol.num_lines,
                float(state.dopb[point]),
                plan,
                coeffs,
                self.blends.blend_ptr,
                self.blends.blend_line,
                self.blends.blend_dv,
                self.tables,
                self.config.max_photon_steps,
            )
            result = solve_point(
                mol,
                state,
                point,
                self._buffers.snapshot[s][point],
                sample,
                coeffs,
                g0,
                self.blends.blend_ptr,
                self.blends.blend_line,
                self.blends.blend_dv,
                float(self.mesh.temperature[point]),
                self.constants,
                self.config,
            )
            self._buffers.write(s, point, result.pops)

            converged &= result.converged
            singular |= result.status is StateqStatus.SINGULAR
            not_stabilised |= result.status is StateqStatus.NOT_STABILISED
            worst = max(worst, result.max_rel_change)

        return _PointOutcome(
            converged=converged,
            singular=singular,
            not_stabilised=not_stabilised,
            max_rel_change=worst,
        )

    def _report(self, fraction: float) -> SchedulerReport:
        return SchedulerReport(
            state=self.state,
            sweeps=self.sweeps_done,
            converged_fraction=fraction,
            partially_converged=self.state is SchedulerState.EXHAUSTED,
            history=list(self.history),
            pops=[np.array(p) for p in self._buffers.snapshot],
        )
