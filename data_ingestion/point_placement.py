"""Grid point placement inside a spherical model domain.

Interior points are drawn by rejection sampling with acceptance
probability proportional to (n / n_max)^α, with radii distributed
logarithmically between the minimum scale and the domain radius so that
the steep inner profile is resolved. Boundary sink points lie on the
outer sphere on a Fibonacci lattice; they close the Delaunay hull and
carry the fixed boundary condition of the photon transport.

Notes
-----
Placement is deterministic for a given seed. Points closer than
1e-6 of the minimum scale to an already accepted point are rejected so
the triangulation never sees duplicates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from core_engine.sphere_sampling import fibonacci_sphere

logger = logging.getLogger(__name__)

# Interior points stay inside this fraction of the radius so that no
# interior point lands on the sink shell.
_INTERIOR_RADIUS_FRACTION: float = 0.999
_BATCH_SIZE: int = 4096
_MAX_BATCHES: int = 10_000


@dataclass
class PointSet:
    """Positions of grid points and their sink flags.

    Attributes
    ----------
    positions : np.ndarray
        Point coordinates [m]. Shape: (N, 3).
    is_sink : np.ndarray
        Boundary flag. Shape: (N,), dtype: bool.
    metadata : dict
        Placement parameters.
    """

    positions: np.ndarray
    is_sink: np.ndarray
    metadata: dict


def place_points(
    density_fn,
    num_points: int,
    num_sink_points: int,
    radius_m: float,
    min_scale_m: float,
    weight_exponent: float = 0.2,
    seed: int = 1237,
) -> PointSet:
    """Place interior and sink points.

    Parameters
    ----------
    density_fn : callable
        Vectorized density callback, (M, 3) → (M,).
    num_points : int
        Interior point count.
    num_sink_points : int
        Sink point count on the outer sphere.
    radius_m : float
        Domain radius [m].
    min_scale_m : float
        Smallest sampled radius [m].
    weight_exponent : float
        Exponent α of the density-weighted acceptance.
    seed : int
        Random seed.

    Returns
    -------
    PointSet
        Interior points first, then sinks.

    Raises
    ------
    ValueError
        If the parameters are inconsistent or the sampler stalls.
    """
    if num_points < 1 or num_sink_points < 4:
        raise ValueError("Need ≥ 1 interior point and ≥ 4 sink points.")
    if not (0.0 < min_scale_m < radius_m):
        raise ValueError("min_scale must be positive and below the radius.")

    rng = np.random.default_rng(seed)
    r_max = radius_m * _INTERIOR_RADIUS_FRACTION
    log_lo, log_hi = np.log(min_scale_m), np.log(r_max)

    # Density normalisation from a coarse radial probe
    probe_r = np.exp(np.linspace(log_lo, log_hi, 256))
    probe = np.column_stack([probe_r, np.zeros_like(probe_r), np.zeros_like(probe_r)])
    n_max = float(np.max(density_fn(probe)))
    if not np.isfinite(n_max) or n_max <= 0.0:
        raise ValueError("Density callback must be positive and finite inside the domain.")

    accepted: list[np.ndarray] = []
    count = 0
    min_sep = 1e-6 * min_scale_m

    for _ in range(_MAX_BATCHES):
        if count >= num_points:
            break
        r = np.exp(rng.uniform(log_lo, log_hi, _BATCH_SIZE))
        direction = rng.normal(size=(_BATCH_SIZE, 3))
        direction /= np.linalg.norm(direction, axis=1, keepdims=True)
        cand = r[:, None] * direction

        weight = (np.maximum(density_fn(cand), 0.0) / n_max) ** weight_exponent
        keep = rng.uniform(size=_BATCH_SIZE) < weight
        cand = cand[keep]
        accepted.append(cand)
        count += cand.shape[0]
    if count < num_points:
        raise ValueError(f"Point placement stalled after {_MAX_BATCHES} batches.")

    interior = np.concatenate(accepted)[:num_points]

    # Drop near-duplicates
    tree = cKDTree(interior)
    drop = {j for _, j in tree.query_pairs(min_sep)}
    if drop:
        logger.warning("Dropped %d near-duplicate grid points", len(drop))
        interior = np.delete(interior, sorted(drop), axis=0)

    sinks = radius_m * fibonacci_sphere(num_sink_points)

    positions = np.vstack([interior, sinks])
    is_sink = np.zeros(positions.shape[0], dtype=bool)
    is_sink[interior.shape[0]:] = True

    logger.info(
        "Placed %d interior + %d sink points (R=%.3e m, r_min=%.3e m, alpha=%.2f, seed=%d)",
        interior.shape[0],
        num_sink_points,
        radius_m,
        min_scale_m,
        weight_exponent,
        seed,
    )

    return PointSet(
        positions=positions,
        is_sink=is_sink,
        metadata={
            "num_points": int(interior.shape[0]),
            "num_sink_points": int(num_sink_points),
            "radius_m": radius_m,
            "min_scale_m": min_scale_m,
            "weight_exponent": weight_exponent,
            "seed": seed,
        },
    )
