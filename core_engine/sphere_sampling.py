"""Direction sampling on the unit sphere and on spherical caps.

Provides the Fibonacci lattice used to estimate the solid-angle share of
each grid-point neighbour, the boundary sink-point shell, and uniform
sampling inside a spherical cap around an arbitrary axis (photon launch
directions).

References
----------
- González, Á. (2010). "Measurement of areas on a sphere using
  Fibonacci and latitude–longitude lattices." Math. Geosci., 42, 49–64.

Algorithm
---------
Fibonacci lattice of N points on the full sphere:

    golden_angle = π(3 − √5) ≈ 2.3999…

    For i ∈ [0, N−1]:
        z_i = 1 − (2i + 1) / N           (area-uniform in z)
        φ_i = i · golden_angle
        p_i = (√(1 − z_i²) cos φ_i,  √(1 − z_i²) sin φ_i,  z_i)

A spherical cap of solid angle Ω has cos θ_max = 1 − Ω / 2π; sampling
cos θ uniformly in [cos θ_max, 1] is area-uniform inside the cap.
"""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GOLDEN_ANGLE: float = np.pi * (3.0 - np.sqrt(5.0))  # ≈ 2.39996 rad


# ---------------------------------------------------------------------------
# Fibonacci lattice
# ---------------------------------------------------------------------------


def fibonacci_sphere(num_samples: int) -> np.ndarray:
    """Near-uniform unit directions covering the whole sphere.

    Parameters
    ----------
    num_samples : int
        Number of directions. Must be ≥ 1.

    Returns
    -------
    np.ndarray
        Unit vectors. Shape: (num_samples, 3), dtype: float64.

    Raises
    ------
    ValueError
        If num_samples < 1.
    """
    if num_samples < 1:
        raise ValueError(f"num_samples must be ≥ 1, got {num_samples}")

    i = np.arange(num_samples, dtype=np.float64)
    z = 1.0 - (2.0 * i + 1.0) / num_samples
    r = np.sqrt(np.clip(1.0 - z * z, 0.0, 1.0))
    phi = i * _GOLDEN_ANGLE

    dirs = np.empty((num_samples, 3), dtype=np.float64)
    dirs[:, 0] = r * np.cos(phi)
    dirs[:, 1] = r * np.sin(phi)
    dirs[:, 2] = z
    return dirs


def solid_angle_shares(
    neighbour_dirs: np.ndarray,
    lattice: np.ndarray,
) -> np.ndarray:
    """Fraction of the sphere for which each neighbour is the best-aligned one.

    Parameters
    ----------
    neighbour_dirs : np.ndarray
        Unit vectors toward each neighbour. Shape: (k, 3).
    lattice : np.ndarray
        Fibonacci directions. Shape: (n_dir, 3).

    Returns
    -------
    np.ndarray
        Weights summing to 1. Shape: (k,).
    """
    best = np.argmax(lattice @ neighbour_dirs.T, axis=1)
    counts = np.bincount(best, minlength=neighbour_dirs.shape[0]).astype(np.float64)
    return counts / lattice.shape[0]


# ---------------------------------------------------------------------------
# Local frames
# ---------------------------------------------------------------------------


def cap_frame(axis: np.ndarray) -> np.ndarray:
    """Orthonormal right-handed frame whose third column is ``axis``.

    The first column is built from whichever Cartesian axis is least
    aligned with ``axis``, so the construction never degenerates.
    """
    axis = np.asarray(axis, dtype=np.float64)
    axis = axis / np.linalg.norm(axis)
    helper = np.array([1.0, 0.0, 0.0]) if abs(axis[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    e1 = np.cross(helper, axis)
    e1 /= np.linalg.norm(e1)
    e2 = np.cross(axis, e1)
    return np.column_stack((e1, e2, axis))


# ---------------------------------------------------------------------------
# Spherical caps
# ---------------------------------------------------------------------------


def cap_cos_theta_max(solid_angle_fraction: float) -> float:
    """cos θ_max of a cap covering the given fraction of 4π sr."""
    return float(np.clip(1.0 - 2.0 * solid_angle_fraction, -1.0, 1.0))


def sample_in_cap(
    axis: np.ndarray,
    cos_theta_max: float,
    u_cos: float,
    u_phi: float,
) -> np.ndarray:
    """Area-uniform direction inside a cap around ``axis``.

    Parameters
    ----------
    axis : np.ndarray
        Unit cap axis. Shape: (3,).
    cos_theta_max : float
        Cosine of the cap half-angle.
    u_cos, u_phi : float
        Uniform deviates in [0, 1).

    Returns
    -------
    np.ndarray
        Unit direction. Shape: (3,).
    """
    cos_t = 1.0 - u_cos * (1.0 - cos_theta_max)
    sin_t = np.sqrt(max(0.0, 1.0 - cos_t * cos_t))
    phi = 2.0 * np.pi * u_phi

    local = np.array([sin_t * np.cos(phi), sin_t * np.sin(phi), cos_t])
    out = cap_frame(axis) @ local
    return out / np.linalg.norm(out)

