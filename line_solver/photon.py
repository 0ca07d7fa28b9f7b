"""Monte-Carlo photon transport along the neighbour graph.

For a grid point p and one species, a fixed number of photon packages
is traced from p outward through the mesh. Each package accumulates the
radiation that would arrive at p along its path, using the populations
of the frozen sweep snapshot, and finally the attenuated background at
the domain boundary.

Sampling
--------
- First edge k: stratified inverse CDF of the neighbour solid-angle
  shares ``neigh_w``; photon i uses the target (i + u) / n_photons.
- Direction: area-uniform inside the cap of solid angle 4π·w_k around
  the direction of edge k.
- Velocity offset: uniform in ±2.15·dopb(p).

Random numbers come from the point's own stream,
``default_rng(SeedSequence([seed, p]))``, drawn once. The same launch
plan is reused in every sweep, so the iteration converges to a fixed
point and the results do not depend on the processing order.

Walk
----
From the current point the next hop is the neighbour that advances
along the photon direction and lies closest to the ideal straight ray
from p. Each edge is split into two half-edges owned by the nearer
endpoint. The half-edge owned by p itself is not integrated; it is
returned (length, velocity offset and local profile value) so that the
equilibrium solver can add the local contribution with its current
iterate (accelerated lambda iteration).

For a half-edge with emissivity j and absorption coefficient α:

    dτ = α ds
    I += e^{−τ} j ds (1 − e^{−dτ}) / dτ
    τ += dτ

The velocity-overlap factor of a half-edge is the mean of the Gaussian
profile over the piecewise-linear projected velocity, sampled at the
edge ends and at 1/4, 1/2, 3/4 of the edge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numba import njit

from core_engine.lookup_tables import LookupTables, fast_exp, gaussian_profile_average
from core_engine.mesh import Mesh
from core_engine.sphere_sampling import cap_cos_theta_max, sample_in_cap
from line_solver.populations import LineCoefficients

logger = logging.getLogger(__name__)

# Velocity offsets are drawn within this many line widths of the line centre.
VELOCITY_SPREAD: float = 2.15
# Optical depth increments are not allowed below this (maser amplification cap).
_MIN_DTAU: float = -30.0
_SMALL_DTAU: float = 1e-8


@dataclass(frozen=True)
class PhotonPlan:
    """Launch parameters of the photons of one point.

    Attributes
    ----------
    directions : np.ndarray
        Unit propagation directions. Shape: (n_photons, 3).
    first_edge : np.ndarray
        Global edge index of the first hop. Shape: (n_photons,).
    dv_unit : np.ndarray
        Velocity offset in units of the sampling half-width,
        uniform in [−1, 1). Shape: (n_photons,).
    """

    directions: np.ndarray
    first_edge: np.ndarray
    dv_unit: np.ndarray


@dataclass(frozen=True)
class PhotonSample:
    """Radiation field sampled at one point for one species.

    Attributes
    ----------
    phot : np.ndarray
        Intensity arriving at the end of the local half-edge, per line of
        the species and per photon. Shape: (n_lines, n_photons).
    ds_local : np.ndarray
        Length of the local half-edge [m]. Shape: (n_photons,).
    delta_v : np.ndarray
        Velocity offset of each photon [m/s]. Shape: (n_photons,).
    vfac_loc : np.ndarray
        Local profile value exp(−(Δv/b)²). Shape: (n_photons,).
    """

    phot: np.ndarray
    ds_local: np.ndarray
    delta_v: np.ndarray
    vfac_loc: np.ndarray


def plan_photons(mesh: Mesh, point: int, n_photons: int, seed: int) -> PhotonPlan:
    """Draw the launch plan of a point from its own random stream."""
    rng = np.random.default_rng(np.random.SeedSequence([seed, point]))
    u = rng.random((n_photons, 4))

    lo, hi = mesh.neigh_ptr[point], mesh.neigh_ptr[point + 1]
    weights = mesh.neigh_w[lo:hi]
    cdf = np.cumsum(weights)
    cdf /= cdf[-1]

    targets = (np.arange(n_photons) + u[:, 0]) / n_photons
    local = np.minimum(np.searchsorted(cdf, targets, side="right"), hi - lo - 1)
    first_edge = (lo + local).astype(np.int64)

    directions = np.empty((n_photons, 3))
    for i in range(n_photons):
        e = first_edge[i]
        directions[i] = sample_in_cap(
            mesh.neigh_dir[e], cap_cos_theta_max(mesh.neigh_w[e]), u[i, 1], u[i, 2]
        )

    return PhotonPlan(
        directions=directions,
        first_edge=first_edge,
        dv_unit=2.0 * u[:, 3] - 1.0,
    )


def sample_radiation(
    mesh: Mesh,
    point: int,
    line_start: int,
    line_stop: int,
    dopb: float,
    plan: PhotonPlan,
    coeffs: LineCoefficients,
    blend_ptr: np.ndarray,
    blend_line: np.ndarray,
    blend_dv: np.ndarray,
    tables: LookupTables,
    max_steps: int,
) -> PhotonSample:
    """Trace the photons of one point for the lines [line_start, line_stop).

    Parameters
    ----------
    mesh : Mesh
    point : int
        Non-sink grid point.
    line_start, line_stop : int
        Global line range of the species.
    dopb : float
        Line width of the species at the point [m/s].
    plan : PhotonPlan
    coeffs : LineCoefficients
        Snapshot coefficients of all species.
    blend_ptr, blend_line, blend_dv : np.ndarray
        CSR blend table over global lines.
    tables : LookupTables
    max_steps : int
        Hop cap per photon.

    Returns
    -------
    PhotonSample
    """
    delta_v = plan.dv_unit * VELOCITY_SPREAD * dopb
    phot, ds_local = _trace_photons(
        point,
        line_start,
        line_stop,
        plan.directions,
        plan.first_edge,
        delta_v,
        mesh.positions,
        mesh.velocity,
        mesh.is_sink,
        mesh.neigh_ptr,
        mesh.neigh_idx,
        mesh.neigh_dir,
        mesh.neigh_ds,
        mesh.edge_velocity,
        coeffs.line_j,
        coeffs.line_a,
        coeffs.cont_j,
        coeffs.cont_a,
        coeffs.binv,
        coeffs.background,
        blend_ptr,
        blend_line,
        blend_dv,
        tables.exp_table_2d,
        tables.exp_table_3d,
        tables.lowest_exponent,
        tables.num_exponents,
        tables.max_taylor,
        tables.erf_table,
        tables.erf_inv_step,
        tables.erf_limit,
        max_steps,
    )
    return PhotonSample(
        phot=phot,
        ds_local=ds_local,
        delta_v=delta_v,
        vfac_loc=np.exp(-(delta_v / dopb) ** 2),
    )


# ===================================================================
# NUMBA KERNELS
# ===================================================================


@njit(cache=True, fastmath=False, nogil=True)
def _half_edge_vfac(
    u0: float,
    u1: float,
    u2: float,
    shift: float,
    binv: float,
    erf_table: np.ndarray,
    erf_inv_step: float,
    erf_limit: float,
) -> float:
    """Mean profile over two linear velocity pieces u0→u1→u2."""
    xa = (shift - u0) * binv
    xm = (shift - u1) * binv
    xb = (shift - u2) * binv
    return 0.5 * (
        gaussian_profile_average(xa, xm, erf_table, erf_inv_step, erf_limit)
        + gaussian_profile_average(xm, xb, erf_table, erf_inv_step, erf_limit)
    )


@njit(cache=True, fastmath=False, nogil=True)
def _integrate_half_edge(
    owner: int,
    u0: float,
    u1: float,
    u2: float,
    dv: float,
    ds: float,
    line_start: int,
    line_stop: int,
    phot: np.ndarray,
    tau: np.ndarray,
    ph: int,
    line_j: np.ndarray,
    line_a: np.ndarray,
    cont_j: np.ndarray,
    cont_a: np.ndarray,
    binv: np.ndarray,
    blend_ptr: np.ndarray,
    blend_line: np.ndarray,
    blend_dv: np.ndarray,
    exp_2d: np.ndarray,
    exp_3d: np.ndarray,
    lowest_exponent: int,
    num_exponents: int,
    max_taylor: int,
    erf_table: np.ndarray,
    erf_inv_step: float,
    erf_limit: float,
) -> None:
    for g in range(line_start, line_stop):
        vfac = _half_edge_vfac(u0, u1, u2, dv, binv[owner, g],
                               erf_table, erf_inv_step, erf_limit)
        jnu = vfac * line_j[owner, g] + cont_j[owner, g]
        alpha = vfac * line_a[owner, g] + cont_a[owner, g]

        for b in range(blend_ptr[g], blend_ptr[g + 1]):
            gb = blend_line[b]
            vfac_b = _half_edge_vfac(u0, u1, u2, dv + blend_dv[b], binv[owner, gb],
                                     erf_table, erf_inv_step, erf_limit)
            jnu += vfac_b * line_j[owner, gb]
            alpha += vfac_b * line_a[owner, gb]

        li = g - line_start
        dtau = alpha * ds
        if dtau < _MIN_DTAU:
            dtau = _MIN_DTAU
        att = fast_exp(tau[li], exp_2d, exp_3d, lowest_exponent, num_exponents, max_taylor)
        if abs(dtau) < _SMALL_DTAU:
            remnant = 1.0 - 0.5 * dtau
        else:
            remnant = (1.0 - fast_exp(dtau, exp_2d, exp_3d, lowest_exponent,
                                      num_exponents, max_taylor)) / dtau
        phot[li, ph] += att * jnu * ds * remnant
        tau[li] += dtau


@njit(cache=True, fastmath=False, nogil=True)
def _trace_photons(
    origin: int,
    line_start: int,
    line_stop: int,
    directions: np.ndarray,
    first_edge: np.ndarray,
    delta_v: np.ndarray,
    positions: np.ndarray,
    velocity: np.ndarray,
    is_sink: np.ndarray,
    neigh_ptr: np.ndarray,
    neigh_idx: np.ndarray,
    neigh_dir: np.ndarray,
    neigh_ds: np.ndarray,
    edge_velocity: np.ndarray,
    line_j: np.ndarray,
    line_a: np.ndarray,
    cont_j: np.ndarray,
    cont_a: np.ndarray,
    binv: np.ndarray,
    background: np.ndarray,
    blend_ptr: np.ndarray,
    blend_line: np.ndarray,
    blend_dv: np.ndarray,
    exp_2d: np.ndarray,
    exp_3d: np.ndarray,
    lowest_exponent: int,
    num_exponents: int,
    max_taylor: int,
    erf_table: np.ndarray,
    erf_inv_step: float,
    erf_limit: float,
    max_steps: int,
):
    n_lines = line_stop - line_start
    n_photons = directions.shape[0]
    phot = np.zeros((n_lines, n_photons))
    ds_local = np.empty(n_photons)
    tau = np.zeros(n_lines)

    ox = positions[origin, 0]
    oy = positions[origin, 1]
    oz = positions[origin, 2]

    for ph in range(n_photons):
        dx = directions[ph, 0]
        dy = directions[ph, 1]
        dz = directions[ph, 2]
        dv = delta_v[ph]
        for li in range(n_lines):
            tau[li] = 0.0

        # Projected bulk velocity at the origin is the reference frame
        u_ref = velocity[origin, 0] * dx + velocity[origin, 1] * dy + velocity[origin, 2] * dz

        here = origin
        edge = first_edge[ph]
        ds_local[ph] = 0.5 * neigh_ds[edge]

        for _ in range(max_steps):
            there = neigh_idx[edge]
            half = 0.5 * neigh_ds[edge]

            u_here = (velocity[here, 0] * dx + velocity[here, 1] * dy
                      + velocity[here, 2] * dz) - u_ref
            u_q1 = (edge_velocity[edge, 0, 0] * dx + edge_velocity[edge, 0, 1] * dy
                    + edge_velocity[edge, 0, 2] * dz) - u_ref
            u_mid = (edge_velocity[edge, 1, 0] * dx + edge_velocity[edge, 1, 1] * dy
                     + edge_velocity[edge, 1, 2] * dz) - u_ref
            u_q3 = (edge_velocity[edge, 2, 0] * dx + edge_velocity[edge, 2, 1] * dy
                    + edge_velocity[edge, 2, 2] * dz) - u_ref
            u_there = (velocity[there, 0] * dx + velocity[there, 1] * dy
                       + velocity[there, 2] * dz) - u_ref

            if here != origin:
                _integrate_half_edge(
                    here, u_here, u_q1, u_mid, dv, half, line_start, line_stop,
                    phot, tau, ph, line_j, line_a, cont_j, cont_a, binv,
                    blend_ptr, blend_line, blend_dv, exp_2d, exp_3d,
                    lowest_exponent, num_exponents, max_taylor,
                    erf_table, erf_inv_step, erf_limit,
                )

            if is_sink[there]:
                break

            _integrate_half_edge(
                there, u_mid, u_q3, u_there, dv, half, line_start, line_stop,
                phot, tau, ph, line_j, line_a, cont_j, cont_a, binv,
                blend_ptr, blend_line, blend_dv, exp_2d, exp_3d,
                lowest_exponent, num_exponents, max_taylor,
                erf_table, erf_inv_step, erf_limit,
            )

            # Next hop: forward neighbour closest to the straight ray
            rx = positions[there, 0] - ox
            ry = positions[there, 1] - oy
            rz = positions[there, 2] - oz
            progress = rx * dx + ry * dy + rz * dz

            best = -1
            best_dist = 1e300
            for k in range(neigh_ptr[there], neigh_ptr[there + 1]):
                n = neigh_idx[k]
                qx = positions[n, 0] - ox
                qy = positions[n, 1] - oy
                qz = positions[n, 2] - oz
                along = qx * dx + qy * dy + qz * dz
                if along <= progress:
                    continue
                px = qx - along * dx
                py = qy - along * dy
                pz = qz - along * dz
                dist = px * px + py * py + pz * pz
                if dist < best_dist:
                    best_dist = dist
                    best = k

            if best < 0:
                break
            here = there
            edge = best

        for li in range(n_lines):
            phot[li, ph] += fast_exp(tau[li], exp_2d, exp_3d, lowest_exponent,
                                     num_exponents, max_taylor) * background[line_start + li]

    return phot, ds_local
