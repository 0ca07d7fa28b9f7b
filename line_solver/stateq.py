"""Statistical equilibrium of the level populations at one grid point.

Given the photon sample of a point, the solver iterates

1. the mean intensity J̄ of every line, from the sampled intensities
   plus the contribution of the local half-edge evaluated with the
   current iterate (accelerated lambda iteration);
2. the rate matrix of radiative (A, B·J̄) and collisional transitions,
   with the last balance equation replaced by Σ n_i = 1;
3. a dense solve, clamping values below the population floor and
   renormalising;

until the largest relative change of the levels above ``min_population``
drops below ``local_tolerance`` or ``max_local_iterations`` is reached.
A point that runs out of local iterations keeps its last iterate but is
reported as unconverged.

Rate matrix convention
----------------------
M[i, j] is the rate coefficient (1/s) populating level i from level j;
the diagonal holds minus the total depopulation rate of each level, so
that M·n = 0 in equilibrium.

Mean intensity
--------------
For photon k with local half-edge length ds_k, velocity offset Δv_k and
local profile φ_k = exp(−(Δv_k/b)²):

    τ_k   = (φ_k α_line + α_dust) ds_k
    I_k   = I_phot,k e^{−τ_k} + (φ_k j_line + j_dust) ds_k (1 − e^{−τ_k}) / τ_k
    J̄     = Σ_k φ_k I_k / Σ_k φ_k
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from core_engine.constants import PhysicalConstants, SolverConfig
from core_engine.molecular import MolecularData
from line_solver.photon import PhotonSample
from line_solver.populations import LineCoefficients, SpeciesState

logger = logging.getLogger(__name__)

_MIN_TAU: float = -30.0
_SMALL_TAU: float = 1e-8


class StateqStatus(Enum):
    OK = "ok"
    NOT_STABILISED = "not_stabilised"
    SINGULAR = "singular"


@dataclass
class StateqResult:
    """Outcome of one point solve.

    Attributes
    ----------
    pops : np.ndarray
        New populations (previous ones if the matrix was singular).
    converged : bool
        Local iteration stabilised and the relative change versus the
        previous sweep is below the tolerance.
    status : StateqStatus
    max_rel_change : float
        Largest relative change versus the previous sweep.
    iterations : int
        Local iterations performed.
    """

    pops: np.ndarray
    converged: bool
    status: StateqStatus
    max_rel_change: float
    iterations: int


# ===================================================================
# BUILDING BLOCKS
# ===================================================================


def relative_change(new: np.ndarray, old: np.ndarray, min_pop: float) -> float:
    """Largest |new − old| / new over levels with new > min_pop."""
    mask = new > min_pop
    if not mask.any():
        return 0.0
    return float(np.max(np.abs(new[mask] - old[mask]) / new[mask]))


def remnant(tau: np.ndarray) -> np.ndarray:
    """(1 − e^{−τ}) / τ, continuous at τ = 0."""
    tau = np.asarray(tau, dtype=np.float64)
    small = np.abs(tau) < _SMALL_TAU
    safe = np.where(small, 1.0, tau)
    return np.where(small, 1.0 - 0.5 * tau, -np.expm1(-safe) / safe)


def collision_rates(
    mol: MolecularData,
    state: SpeciesState,
    point: int,
    temperature: float,
    constants: PhysicalConstants,
) -> np.ndarray:
    """Collisional rate matrix C[i, j] (transitions i → j) [1/s]."""
    n_lev = mol.num_levels
    colli = np.zeros((n_lev, n_lev))
    energies = mol.level_energies
    weights = mol.level_weights

    for k, table in enumerate(mol.collision_tables):
        down = table.downward_rates(int(state.t_binlow[k, point]), float(state.interp_coeff[k, point]))
        down = down * state.partner_density[k, point]
        u, lo = table.upper, table.lower
        boltz = np.exp(-constants.hckb * (energies[u] - energies[lo]) / temperature)
        up = down * weights[u] / weights[lo] * boltz
        np.add.at(colli, (u, lo), down)
        np.add.at(colli, (lo, u), up)

    return colli


def mean_intensity(
    mol: MolecularData,
    state: SpeciesState,
    point: int,
    pops: np.ndarray,
    sample: PhotonSample,
    coeffs: LineCoefficients,
    line_start: int,
    blend_ptr: np.ndarray,
    blend_line: np.ndarray,
    blend_dv: np.ndarray,
    hpip: float,
) -> np.ndarray:
    """J̄ per line of the species, see module docstring.

    Blended partner lines of the same species use the current iterate;
    lines of other species use the sweep snapshot.
    """
    line_j, line_a = _local_terms(mol, state, point, pops, hpip)
    n_lines = mol.num_lines
    line_stop = line_start + n_lines

    vfac = sample.vfac_loc                               # (n_ph,)
    jbar = np.empty(n_lines)
    weight_sum = vfac.sum()

    for li in range(n_lines):
        g = line_start + li
        jnu = vfac * line_j[li] + state.dust[point, li]
        alpha = vfac * line_a[li] + state.knu[point, li]

        for b in range(blend_ptr[g], blend_ptr[g + 1]):
            gb = blend_line[b]
            vfac_b = np.exp(-((sample.delta_v + blend_dv[b]) * coeffs.binv[point, gb]) ** 2)
            if line_start <= gb < line_stop:
                jnu = jnu + vfac_b * line_j[gb - line_start]
                alpha = alpha + vfac_b * line_a[gb - line_start]
            else:
                jnu = jnu + vfac_b * coeffs.line_j[point, gb]
                alpha = alpha + vfac_b * coeffs.line_a[point, gb]

        tau = np.maximum(alpha * sample.ds_local, _MIN_TAU)
        intensity = sample.phot[li] * np.exp(-tau) + jnu * sample.ds_local * remnant(tau)
        if weight_sum > 0.0:
            jbar[li] = float(np.dot(vfac, intensity) / weight_sum)
        else:
            jbar[li] = float(np.mean(sample.phot[li]))

    return jbar


def _local_terms(
    mol: MolecularData,
    state: SpeciesState,
    point: int,
    pops: np.ndarray,
    hpip: float,
) -> tuple[np.ndarray, np.ndarray]:
    n_u = pops[mol.line_upper]
    n_l = pops[mol.line_lower]
    factor = hpip * state.binv[point] * state.nmol[point]
    return (
        factor * n_u * mol.einstein_a,
        factor * (n_l * mol.einstein_b_lu - n_u * mol.einstein_b_ul),
    )


def rate_matrix(mol: MolecularData, jbar: np.ndarray, colli: np.ndarray) -> np.ndarray:
    """Balance matrix with the normalisation row, see module docstring."""
    n_lev = mol.num_levels
    matrix = np.zeros((n_lev, n_lev))

    u, lo = mol.line_upper, mol.line_lower
    down = mol.einstein_a + mol.einstein_b_ul * jbar
    up = mol.einstein_b_lu * jbar
    np.add.at(matrix, (u, u), -down)
    np.add.at(matrix, (lo, u), down)
    np.add.at(matrix, (lo, lo), -up)
    np.add.at(matrix, (u, lo), up)

    # colli[i, j]: i → j
    matrix += colli.T
    matrix[np.diag_indices(n_lev)] -= colli.sum(axis=1)

    matrix[-1, :] = 1.0
    return matrix


# ===================================================================
# POINT SOLVE
# ===================================================================


def solve_point(
    mol: MolecularData,
    state: SpeciesState,
    point: int,
    previous: np.ndarray,
    sample: PhotonSample,
    coeffs: LineCoefficients,
    line_start: int,
    blend_ptr: np.ndarray,
    blend_line: np.ndarray,
    blend_dv: np.ndarray,
    temperature: float,
    constants: PhysicalConstants,
    solver: SolverConfig,
) -> StateqResult:
    """Iterate the equilibrium of one point for one species.

    Parameters
    ----------
    mol : MolecularData
    state : SpeciesState
    point : int
    previous : np.ndarray
        Populations of the point in the sweep snapshot. Shape: (n_levels,).
    sample : PhotonSample
        Radiation sampled from the same snapshot.
    coeffs : LineCoefficients
        Snapshot coefficients (for blends with other species).
    line_start : int
        Global index of the first line of the species.
    blend_ptr, blend_line, blend_dv : np.ndarray
        CSR blend table.
    temperature : float
        Gas temperature at the point [K].
    constants : PhysicalConstants
    solver : SolverConfig

    Returns
    -------
    StateqResult
        Never raises for a singular matrix; reports ``SINGULAR`` and keeps
        the previous populations instead.
    """
    colli = collision_rates(mol, state, point, temperature, constants)
    rhs = np.zeros(mol.num_levels)
    rhs[-1] = 1.0

    current = previous.copy()
    status = StateqStatus.NOT_STABILISED
    iterations = 0

    for iterations in range(1, solver.max_local_iterations + 1):
        jbar = mean_intensity(
            mol, state, point, current, sample, coeffs, line_start,
            blend_ptr, blend_line, blend_dv, constants.hpip,
        )
        matrix = rate_matrix(mol, jbar, colli)

        try:
            solution = np.linalg.solve(matrix, rhs)
        except np.linalg.LinAlgError:
            solution = None
        if solution is None or not np.all(np.isfinite(solution)):
            logger.debug("Point %d (%s): singular rate matrix", point, mol.name)
            return StateqResult(
                pops=previous.copy(),
                converged=False,
                status=StateqStatus.SINGULAR,
                max_rel_change=float("inf"),
                iterations=iterations,
            )

        new = np.maximum(solution, solver.population_floor)
        new /= new.sum()

        change = relative_change(new, current, solver.min_population)
        current = new
        if change < solver.local_tolerance:
            status = StateqStatus.OK
            break

    sweep_change = relative_change(current, previous, solver.min_population)
    return StateqResult(
        pops=current,
        converged=status is StateqStatus.OK and sweep_change < solver.population_tolerance,
        status=status,
        max_rel_change=sweep_change,
        iterations=iterations,
    )
