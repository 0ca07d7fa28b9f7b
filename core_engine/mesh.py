"""Grid points, neighbour graph and Delaunay cells.

The mesh is an index-based arena: every per-point and per-cell quantity
is stored in contiguous arrays and referenced by integer index, so the
numba kernels and the worker threads can read it concurrently.

Layout
------
Points (N rows)
    positions, velocity, bfield (N, 3); density, temperature,
    dust_temperature, doppler, gas_to_dust (N,); abundance (N, n_species);
    is_sink (N,).

Neighbours (CSR, E directed edges, both directions stored)
    ``neigh_ptr[i]:neigh_ptr[i+1]`` indexes the edges of point i;
    neigh_idx, neigh_dir (unit), neigh_ds (length), neigh_w (solid-angle
    share, sums to 1 per point), edge_velocity (E, 3, 3): bulk velocity
    sampled at 1/4, 1/2 and 3/4 along the edge.

Cells (C rows)
    cell_vertices (C, 4), cell_neighbors (C, 4), cell_centroids (C, 3).
    ``cell_neighbors[c, k]`` is the cell across the face opposite vertex
    k, or -1 on the domain boundary.

The neighbour graph is the edge set of the Delaunay tetrahedralisation,
so it is symmetric by construction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations

import numpy as np
from scipy.spatial import Delaunay, QhullError, cKDTree

from core_engine.molecular import CollisionPartner
from core_engine.sphere_sampling import fibonacci_sphere, solid_angle_shares

logger = logging.getLogger(__name__)

_MIN_POINTS: int = 5
_EDGE_SAMPLE_FRACTIONS = np.array([0.25, 0.5, 0.75])
_COPLANAR_RTOL: float = 1e-10


class MeshConstructionError(ValueError):
    """Raised when the input points cannot form a valid 3-D mesh."""


@dataclass(frozen=True)
class GridPoint:
    """Read-only view of one grid point."""

    index: int
    position: np.ndarray
    velocity: np.ndarray
    bfield: np.ndarray
    neighbours: np.ndarray
    neighbour_dirs: np.ndarray
    neighbour_ds: np.ndarray
    path_weights: np.ndarray
    density: float
    temperature: float
    doppler: float
    abundance: np.ndarray
    is_sink: bool


@dataclass
class Mesh:
    """Point/cell arena. See module docstring for the array layout."""

    positions: np.ndarray
    velocity: np.ndarray
    bfield: np.ndarray
    density: np.ndarray
    temperature: np.ndarray
    dust_temperature: np.ndarray
    doppler: np.ndarray
    gas_to_dust: np.ndarray
    abundance: np.ndarray
    is_sink: np.ndarray
    neigh_ptr: np.ndarray
    neigh_idx: np.ndarray
    neigh_dir: np.ndarray
    neigh_ds: np.ndarray
    neigh_w: np.ndarray
    edge_velocity: np.ndarray
    cell_vertices: np.ndarray
    cell_neighbors: np.ndarray
    cell_centroids: np.ndarray
    partner_density: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    delaunay: Delaunay | None = field(default=None, repr=False)
    kdtree: cKDTree | None = field(default=None, repr=False)

    @property
    def num_points(self) -> int:
        return int(self.positions.shape[0])

    @property
    def num_cells(self) -> int:
        return int(self.cell_vertices.shape[0])

    @property
    def num_species(self) -> int:
        return int(self.abundance.shape[1])

    @property
    def interior_indices(self) -> np.ndarray:
        return np.flatnonzero(~self.is_sink)

    @property
    def mean_spacing(self) -> float:
        return float(self.neigh_ds.mean())

    def neighbours(self, i: int) -> np.ndarray:
        return self.neigh_idx[self.neigh_ptr[i]:self.neigh_ptr[i + 1]]

    def point(self, i: int) -> GridPoint:
        lo, hi = self.neigh_ptr[i], self.neigh_ptr[i + 1]
        return GridPoint(
            index=int(i),
            position=self.positions[i].copy(),
            velocity=self.velocity[i].copy(),
            bfield=self.bfield[i].copy(),
            neighbours=self.neigh_idx[lo:hi].copy(),
            neighbour_dirs=self.neigh_dir[lo:hi].copy(),
            neighbour_ds=self.neigh_ds[lo:hi].copy(),
            path_weights=self.neigh_w[lo:hi].copy(),
            density=float(self.density[i]),
            temperature=float(self.temperature[i]),
            doppler=float(self.doppler[i]),
            abundance=self.abundance[i].copy(),
            is_sink=bool(self.is_sink[i]),
        )


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def build_mesh(
    positions: np.ndarray,
    is_sink: np.ndarray,
    model,
    path_weight_directions: int = 512,
) -> Mesh:
    """Triangulate the points and evaluate the physical model on them.

    Parameters
    ----------
    positions : np.ndarray
        Point coordinates [m]. Shape: (N, 3).
    is_sink : np.ndarray
        Boundary flag per point. Shape: (N,).
    model : PhysicalModel
        Source model providing the vectorized physical callbacks.
    path_weight_directions : int
        Size of the Fibonacci lattice used for neighbour solid-angle shares.

    Returns
    -------
    Mesh

    Raises
    ------
    MeshConstructionError
        Fewer than 5 points, non-finite or coplanar input, duplicate
        points, or a triangulation failure.
    """
    positions = np.ascontiguousarray(positions, dtype=np.float64)
    is_sink = np.asarray(is_sink, dtype=bool)
    n = positions.shape[0]

    if positions.ndim != 2 or positions.shape[1] != 3:
        raise MeshConstructionError(f"Expected (N, 3) positions, got {positions.shape}")
    if n < _MIN_POINTS:
        raise MeshConstructionError(f"At least {_MIN_POINTS} points are needed, got {n}")
    if is_sink.shape != (n,):
        raise MeshConstructionError("is_sink must have one entry per point")
    if not np.all(np.isfinite(positions)):
        raise MeshConstructionError("Point coordinates must be finite")

    centred = positions - positions.mean(axis=0)
    sv = np.linalg.svd(centred, compute_uv=False)
    if sv[0] == 0.0 or sv[-1] / sv[0] < _COPLANAR_RTOL:
        raise MeshConstructionError("Points are coplanar or collinear; no 3-D cells exist")

    logger.info("Triangulating %d points (%d sinks)...", n, int(is_sink.sum()))
    try:
        tri = Delaunay(positions)
    except QhullError as exc:
        raise MeshConstructionError(f"Delaunay triangulation failed: {exc}") from exc

    if tri.coplanar.shape[0] > 0:
        raise MeshConstructionError(
            f"{tri.coplanar.shape[0]} points were not included in the triangulation "
            "(duplicate or degenerate input)"
        )

    cell_vertices = tri.simplices.astype(np.int64)
    cell_neighbors = tri.neighbors.astype(np.int64)
    cell_centroids = positions[cell_vertices].mean(axis=1)

    # --- Neighbour graph from the cell edges ---
    neigh_ptr, neigh_idx = _edges_from_cells(cell_vertices, n)
    src = np.repeat(np.arange(n), np.diff(neigh_ptr))
    delta = positions[neigh_idx] - positions[src]
    neigh_ds = np.linalg.norm(delta, axis=1)
    neigh_dir = delta / neigh_ds[:, None]

    if np.any(np.diff(neigh_ptr) == 0):
        raise MeshConstructionError("Some points have no neighbours")

    # --- Solid-angle path weights ---
    lattice = fibonacci_sphere(path_weight_directions)
    neigh_w = np.empty_like(neigh_ds)
    for i in range(n):
        lo, hi = neigh_ptr[i], neigh_ptr[i + 1]
        neigh_w[lo:hi] = solid_angle_shares(neigh_dir[lo:hi], lattice)

    # --- Physical model evaluation ---
    velocity = np.asarray(model.velocity(positions), dtype=np.float64)
    samples = (
        positions[src][:, None, :]
        + _EDGE_SAMPLE_FRACTIONS[None, :, None] * delta[:, None, :]
    )
    edge_velocity = np.asarray(
        model.velocity(samples.reshape(-1, 3)), dtype=np.float64
    ).reshape(-1, 3, 3)

    temperature = np.asarray(model.temperature(positions), dtype=np.float64)
    density = np.asarray(model.density(positions), dtype=np.float64)
    if np.any(temperature <= 0.0) or np.any(density < 0.0):
        raise MeshConstructionError("Model returned non-positive temperature or negative density")

    mesh = Mesh(
        positions=positions,
        velocity=velocity,
        bfield=np.asarray(model.magnetic_field(positions), dtype=np.float64),
        density=density,
        temperature=temperature,
        dust_temperature=np.asarray(model.dust_temperature(positions), dtype=np.float64),
        doppler=np.asarray(model.doppler(positions), dtype=np.float64),
        gas_to_dust=np.asarray(model.gas_to_dust(positions), dtype=np.float64),
        abundance=np.atleast_2d(np.asarray(model.abundance(positions), dtype=np.float64)),
        is_sink=is_sink,
        neigh_ptr=neigh_ptr,
        neigh_idx=neigh_idx,
        neigh_dir=neigh_dir,
        neigh_ds=neigh_ds,
        neigh_w=neigh_w,
        edge_velocity=edge_velocity,
        cell_vertices=cell_vertices,
        cell_neighbors=cell_neighbors,
        cell_centroids=cell_centroids,
        partner_density={
            CollisionPartner(p) if not isinstance(p, CollisionPartner) else p: np.asarray(v)
            for p, v in model.partner_densities(positions).items()
        },
        delaunay=tri,
        kdtree=cKDTree(positions),
    )

    mesh.metadata = {
        "num_points": n,
        "num_sink_points": int(is_sink.sum()),
        "num_cells": mesh.num_cells,
        "num_edges": int(neigh_idx.shape[0]),
        "mean_neighbours": float(neigh_idx.shape[0] / n),
        "path_weight_directions": path_weight_directions,
        "domain_radius_m": float(np.linalg.norm(positions, axis=1).max()),
    }

    logger.info(
        "Mesh created: %d points, %d cells, %d directed edges (%.1f neighbours/point)",
        n,
        mesh.num_cells,
        neigh_idx.shape[0],
        mesh.metadata["mean_neighbours"],
    )

    return mesh


def _edges_from_cells(cell_vertices: np.ndarray, num_points: int) -> tuple[np.ndarray, np.ndarray]:
    """Unique undirected cell edges as a symmetric CSR adjacency."""
    pairs = np.concatenate(
        [cell_vertices[:, [a, b]] for a, b in combinations(range(4), 2)]
    )
    pairs.sort(axis=1)
    pairs = np.unique(pairs, axis=0)

    src = np.concatenate([pairs[:, 0], pairs[:, 1]])
    dst = np.concatenate([pairs[:, 1], pairs[:, 0]])
    order = np.lexsort((dst, src))
    src, dst = src[order], dst[order]

    neigh_ptr = np.zeros(num_points + 1, dtype=np.int64)
    np.cumsum(np.bincount(src, minlength=num_points), out=neigh_ptr[1:])
    return neigh_ptr, dst.astype(np.int64)


# ---------------------------------------------------------------------------
# Consistency checks
# ---------------------------------------------------------------------------


def verify_neighbour_symmetry(mesh: Mesh) -> bool:
    """True if q is a neighbour of p exactly when p is a neighbour of q."""
    src = np.repeat(np.arange(mesh.num_points), np.diff(mesh.neigh_ptr))
    forward = set(zip(src.tolist(), mesh.neigh_idx.tolist()))
    return all((q, p) in forward for p, q in forward)


def verify_cell_adjacency(mesh: Mesh) -> bool:
    """True if every shared face lists the same three vertices on both sides.

    For each cell c and face k with neighbour m = cell_neighbors[c, k] ≥ 0,
    m must point back to c through some face k', and the vertices of c
    without vertex k must equal the vertices of m without vertex k'.
    """
    verts = mesh.cell_vertices
    nbrs = mesh.cell_neighbors
    ids = np.arange(mesh.num_cells)

    for k in range(4):
        nb = nbrs[:, k]
        mask = nb >= 0
        if not mask.any():
            continue
        own = np.sort(np.delete(verts[mask], k, axis=1), axis=1)

        back_hits = nbrs[nb[mask]] == ids[mask, None]
        if not np.all(back_hits.any(axis=1)):
            return False
        back = np.argmax(back_hits, axis=1)

        keep = np.arange(4)[None, :] != back[:, None]
        other = np.sort(verts[nb[mask]][keep].reshape(-1, 3), axis=1)
        if not np.array_equal(own, other):
            return False

    return True
