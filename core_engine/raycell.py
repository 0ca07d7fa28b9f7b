"""Ray traversal through the Delaunay cells of the mesh.

Given a ray (origin, unit direction), the walker finds the entry cell and
then repeatedly leaves the current cell through its genuine exit face,
recording where the ray crosses each face. The records carry the ids and
barycentric weights of the crossing point, so the raytracer can
interpolate any per-point quantity at both ends of every segment.

Record layout
-------------
Record 0 is the entry point (the origin itself if it lies inside the
mesh, else the crossing of the boundary face). Record i+1 is the exit
point of ``cell_ids[i]``; segment i runs between records i and i+1.
Each record stores four vertex ids and four weights (weights clipped to
[0, 1] and renormalised; the vertex opposite a crossed face has weight 0).

Face test
---------
For face k of cell c (opposite vertex k) with vertices a, b, d:

    n      = (b − a) × (d − a), oriented away from vertex k
    sign   = sign(n · dir)            (+1: the ray leaves through it)
    t      = n · (a − origin) / (n · dir)
    P      = origin + t dir
    v0 = b − a, v1 = d − a, v2 = P − a
    d00 = v0·v0, d01 = v0·v1, d11 = v1·v1, d20 = v2·v0, d21 = v2·v1
    β = (d11 d20 − d01 d21) / (d00 d11 − d01²)
    γ = (d00 d21 − d01 d20) / (d00 d11 − d01²)
    α = 1 − β − γ
    closeness = min(α, β, γ)

A face is accepted when it is an exit face and closeness ≥ −tol; the
most interior accepted face wins. If none qualifies (ray through a
vertex or along an edge) the tolerance is multiplied by 10, up to four
times, before the best exit face is taken regardless.

References
----------
- Brinch, C. & Hogerheijde, M. R. (2010). A&A 523, A25, §2.4.
- Ericson, C. (2005). Real-Time Collision Detection, §3.4.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum

import numpy as np
from numba import njit

from core_engine.mesh import Mesh

logger = logging.getLogger(__name__)

_MAX_NUDGES: int = 4
_NUDGE_FACTOR: float = 10.0
_INSIDE_TOLERANCE: float = 1e-9

# Face k of a tetrahedron is made of the other three vertices.
_FACE_VERTS = np.array([[1, 2, 3], [0, 2, 3], [0, 1, 3], [0, 1, 2]], dtype=np.int64)


class TraversalStatus(IntEnum):
    BOUNDARY = 0       # left the mesh through a boundary face
    STEP_LIMIT = 1     # max_steps reached
    MISSED = 2         # ray does not enter the mesh
    DEAD_END = 3       # no exit face found


@dataclass(frozen=True)
class TraversalResult:
    """Ordered cell chain and crossing records of one ray.

    Attributes
    ----------
    cell_ids : np.ndarray
        Cells traversed, in order. Shape: (n,).
    face_ids : np.ndarray
        Face crossed at each record (−1 for an origin inside the mesh).
        Shape: (n + 1,).
    orientation : np.ndarray
        Orientation sign of each crossed face (−1 entering, +1 exiting).
        Shape: (n + 1,).
    dists : np.ndarray
        Distance along the ray of each record [m]. Shape: (n + 1,).
    vertex_ids : np.ndarray
        Cell vertices of each record. Shape: (n + 1, 4).
    weights : np.ndarray
        Barycentric weights. Shape: (n + 1, 4); rows sum to 1.
    collpar : np.ndarray
        Edge-closeness of each crossing. Shape: (n + 1,).
    status : TraversalStatus
    n_nudges : int
        Tolerance nudges applied along the ray.
    """

    cell_ids: np.ndarray
    face_ids: np.ndarray
    orientation: np.ndarray
    dists: np.ndarray
    vertex_ids: np.ndarray
    weights: np.ndarray
    collpar: np.ndarray
    status: TraversalStatus
    n_nudges: int

    @property
    def num_segments(self) -> int:
        return int(self.cell_ids.shape[0])

    @property
    def segment_lengths(self) -> np.ndarray:
        return np.diff(self.dists)

    @property
    def path_length(self) -> float:
        if self.dists.shape[0] < 2:
            return 0.0
        return float(self.dists[-1] - self.dists[0])


def _empty_result(status: TraversalStatus) -> TraversalResult:
    return TraversalResult(
        cell_ids=np.zeros(0, dtype=np.int64),
        face_ids=np.zeros(0, dtype=np.int64),
        orientation=np.zeros(0, dtype=np.int64),
        dists=np.zeros(0),
        vertex_ids=np.zeros((0, 4), dtype=np.int64),
        weights=np.zeros((0, 4)),
        collpar=np.zeros(0),
        status=status,
        n_nudges=0,
    )


# ---------------------------------------------------------------------------
# Walker
# ---------------------------------------------------------------------------


class CellWalker:
    """Reusable ray walker over one mesh.

    Precomputes the boundary faces used to find entry cells for rays that
    start outside the mesh.

    Parameters
    ----------
    mesh : Mesh
    face_tolerance : float
        Initial edge-closeness tolerance.
    max_steps : int
        Cell cap per ray. The number of cells in the mesh also caps the
        walk, so record buffers never outgrow the mesh.
    """

    def __init__(self, mesh: Mesh, face_tolerance: float = 1e-10, max_steps: int = 100_000) -> None:
        self.mesh = mesh
        self.face_tolerance = float(face_tolerance)
        self.max_steps = int(max_steps)

        cells, faces = np.nonzero(mesh.cell_neighbors < 0)
        self.boundary_cells = cells.astype(np.int64)
        self.boundary_faces = faces.astype(np.int64)
        logger.debug("CellWalker: %d boundary faces", cells.shape[0])

    def locate(self, point: np.ndarray) -> tuple[int, np.ndarray]:
        """Cell containing ``point`` and its barycentric weights.

        Uses ``Delaunay.find_simplex``; for points that land numerically
        on the hull, the cells around the nearest grid point are tested
        with a small tolerance. Returns (−1, zeros) if outside.
        """
        tri = self.mesh.delaunay
        point = np.asarray(point, dtype=np.float64)
        cell = int(tri.find_simplex(point))
        if cell >= 0:
            return cell, self._cell_weights(cell, point)

        _, nearest = self.mesh.kdtree.query(point)
        candidates = np.flatnonzero(np.any(self.mesh.cell_vertices == nearest, axis=1))
        for c in candidates:
            w = self._cell_weights(int(c), point)
            if w.min() >= -_INSIDE_TOLERANCE:
                return int(c), w
        return -1, np.zeros(4)

    def _cell_weights(self, cell: int, point: np.ndarray) -> np.ndarray:
        transform = self.mesh.delaunay.transform[cell]
        b = transform[:3] @ (point - transform[3])
        return np.append(b, 1.0 - b.sum())

    def trace(self, origin: np.ndarray, direction: np.ndarray) -> TraversalResult:
        """Walk the ray through the mesh.

        Parameters
        ----------
        origin : np.ndarray
            Ray origin [m]. Shape: (3,).
        direction : np.ndarray
            Ray direction (normalised internally). Shape: (3,).

        Returns
        -------
        TraversalResult
        """
        origin = np.asarray(origin, dtype=np.float64)
        direction = np.asarray(direction, dtype=np.float64)
        direction = direction / np.linalg.norm(direction)
        mesh = self.mesh

        cell, weights = self.locate(origin)
        if cell >= 0:
            entry_face = -1
            entry_dist = 0.0
            entry_weights = np.clip(weights, 0.0, 1.0)
            entry_weights /= entry_weights.sum()
            entry_coll = float(weights.min())
        else:
            cell, entry_face, entry_dist, entry_weights, entry_coll = _find_entry(
                origin, direction, mesh.positions, mesh.cell_vertices,
                self.boundary_cells, self.boundary_faces, _FACE_VERTS, self.face_tolerance,
            )
            if cell < 0:
                return _empty_result(TraversalStatus.MISSED)

        (cell_ids, face_ids, orient, dists, vert_ids, wts, coll,
         n_rec, status, nudges) = _walk(
            origin, direction, mesh.positions, mesh.cell_vertices, mesh.cell_neighbors,
            _FACE_VERTS, cell, entry_face, entry_dist, entry_weights, entry_coll,
            self.face_tolerance, _MAX_NUDGES, _NUDGE_FACTOR, self.max_steps,
        )

        if status == TraversalStatus.STEP_LIMIT:
            logger.debug("Ray from %s hit the step cap (%d cells)", origin, self.max_steps)

        return TraversalResult(
            cell_ids=cell_ids[: n_rec - 1].copy(),
            face_ids=face_ids[:n_rec].copy(),
            orientation=orient[:n_rec].copy(),
            dists=dists[:n_rec].copy(),
            vertex_ids=vert_ids[:n_rec].copy(),
            weights=wts[:n_rec].copy(),
            collpar=coll[:n_rec].copy(),
            status=TraversalStatus(status),
            n_nudges=int(nudges),
        )


def traverse_ray(mesh: Mesh, origin: np.ndarray, direction: np.ndarray,
                 face_tolerance: float = 1e-10, max_steps: int = 100_000) -> TraversalResult:
    """One-off traversal; build a :class:`CellWalker` to trace many rays."""
    return CellWalker(mesh, face_tolerance, max_steps).trace(origin, direction)


# ===================================================================
# NUMBA KERNELS
# ===================================================================


@njit(cache=True, fastmath=False, nogil=True)
def _face_hit(
    origin: np.ndarray,
    direction: np.ndarray,
    positions: np.ndarray,
    cell_vertices: np.ndarray,
    face_verts: np.ndarray,
    cell: int,
    face: int,
):
    """Intersection of the ray with one cell face.

    Returns (sign, t, w_a, w_b, w_d, closeness); sign is 0 for a face
    parallel to the ray.
    """
    ia = cell_vertices[cell, face_verts[face, 0]]
    ib = cell_vertices[cell, face_verts[face, 1]]
    idd = cell_vertices[cell, face_verts[face, 2]]
    iopp = cell_vertices[cell, face]

    ax = positions[ia, 0]
    ay = positions[ia, 1]
    az = positions[ia, 2]
    v0x = positions[ib, 0] - ax
    v0y = positions[ib, 1] - ay
    v0z = positions[ib, 2] - az
    v1x = positions[idd, 0] - ax
    v1y = positions[idd, 1] - ay
    v1z = positions[idd, 2] - az

    nx = v0y * v1z - v0z * v1y
    ny = v0z * v1x - v0x * v1z
    nz = v0x * v1y - v0y * v1x

    # Orient the normal away from the opposite vertex
    ox = positions[iopp, 0] - ax
    oy = positions[iopp, 1] - ay
    oz = positions[iopp, 2] - az
    if nx * ox + ny * oy + nz * oz > 0.0:
        nx = -nx
        ny = -ny
        nz = -nz

    denom = nx * direction[0] + ny * direction[1] + nz * direction[2]
    if denom == 0.0:
        return 0, 0.0, 0.0, 0.0, 0.0, -1e300
    sign = 1 if denom > 0.0 else -1

    t = (nx * (ax - origin[0]) + ny * (ay - origin[1]) + nz * (az - origin[2])) / denom

    v2x = origin[0] + t * direction[0] - ax
    v2y = origin[1] + t * direction[1] - ay
    v2z = origin[2] + t * direction[2] - az

    d00 = v0x * v0x + v0y * v0y + v0z * v0z
    d01 = v0x * v1x + v0y * v1y + v0z * v1z
    d11 = v1x * v1x + v1y * v1y + v1z * v1z
    d20 = v2x * v0x + v2y * v0y + v2z * v0z
    d21 = v2x * v1x + v2y * v1y + v2z * v1z
    det = d00 * d11 - d01 * d01
    if det == 0.0:
        return 0, 0.0, 0.0, 0.0, 0.0, -1e300

    wb = (d11 * d20 - d01 * d21) / det
    wd = (d00 * d21 - d01 * d20) / det
    wa = 1.0 - wb - wd

    closeness = wa
    if wb < closeness:
        closeness = wb
    if wd < closeness:
        closeness = wd
    return sign, t, wa, wb, wd, closeness


@njit(cache=True, fastmath=False, nogil=True)
def _store_record(
    rec: int,
    cell: int,
    face: int,
    sign: int,
    t: float,
    wa: float,
    wb: float,
    wd: float,
    closeness: float,
    cell_vertices: np.ndarray,
    face_verts: np.ndarray,
    face_ids: np.ndarray,
    orient: np.ndarray,
    dists: np.ndarray,
    vert_ids: np.ndarray,
    wts: np.ndarray,
    coll: np.ndarray,
) -> None:
    for j in range(4):
        vert_ids[rec, j] = cell_vertices[cell, j]
        wts[rec, j] = 0.0
    w3 = np.empty(3)
    w3[0] = min(max(wa, 0.0), 1.0)
    w3[1] = min(max(wb, 0.0), 1.0)
    w3[2] = min(max(wd, 0.0), 1.0)
    total = w3[0] + w3[1] + w3[2]
    if total <= 0.0:
        w3[0] = 1.0 / 3.0
        w3[1] = 1.0 / 3.0
        w3[2] = 1.0 / 3.0
        total = 1.0
    for j in range(3):
        wts[rec, face_verts[face, j]] = w3[j] / total
    face_ids[rec] = face
    orient[rec] = sign
    dists[rec] = t
    coll[rec] = closeness


@njit(cache=True, fastmath=False, nogil=True)
def _find_entry(
    origin: np.ndarray,
    direction: np.ndarray,
    positions: np.ndarray,
    cell_vertices: np.ndarray,
    boundary_cells: np.ndarray,
    boundary_faces: np.ndarray,
    face_verts: np.ndarray,
    tol: float,
):
    """Nearest boundary face the ray enters through.

    Returns (cell, face, t, weights (4,), closeness); cell is −1 on a miss.
    """
    best = -1
    best_t = 1e300
    best_wa = 0.0
    best_wb = 0.0
    best_wd = 0.0
    best_c = 0.0
    for i in range(boundary_cells.shape[0]):
        sign, t, wa, wb, wd, closeness = _face_hit(
            origin, direction, positions, cell_vertices, face_verts,
            boundary_cells[i], boundary_faces[i],
        )
        if sign >= 0 or t < 0.0 or closeness < -tol:
            continue
        if t < best_t:
            best = i
            best_t = t
            best_wa = wa
            best_wb = wb
            best_wd = wd
            best_c = closeness

    weights = np.zeros(4)
    if best < 0:
        return -1, -1, 0.0, weights, 0.0

    cell = boundary_cells[best]
    face = boundary_faces[best]
    w3 = np.empty(3)
    w3[0] = min(max(best_wa, 0.0), 1.0)
    w3[1] = min(max(best_wb, 0.0), 1.0)
    w3[2] = min(max(best_wd, 0.0), 1.0)
    total = w3[0] + w3[1] + w3[2]
    for j in range(3):
        weights[face_verts[face, j]] = w3[j] / total
    return cell, face, best_t, weights, best_c


@njit(cache=True, fastmath=False, nogil=True)
def _walk(
    origin: np.ndarray,
    direction: np.ndarray,
    positions: np.ndarray,
    cell_vertices: np.ndarray,
    cell_neighbors: np.ndarray,
    face_verts: np.ndarray,
    start_cell: int,
    entry_face: int,
    entry_dist: float,
    entry_weights: np.ndarray,
    entry_coll: float,
    tol0: float,
    max_nudges: int,
    nudge_factor: float,
    max_steps: int,
):
    # A straight ray enters each cell at most once
    n_steps = min(max_steps, cell_vertices.shape[0])
    n_alloc = n_steps + 1
    cell_ids = np.empty(n_alloc, dtype=np.int64)
    face_ids = np.empty(n_alloc, dtype=np.int64)
    orient = np.empty(n_alloc, dtype=np.int64)
    dists = np.empty(n_alloc)
    vert_ids = np.empty((n_alloc, 4), dtype=np.int64)
    wts = np.empty((n_alloc, 4))
    coll = np.empty(n_alloc)

    # Entry record
    for j in range(4):
        vert_ids[0, j] = cell_vertices[start_cell, j]
        wts[0, j] = entry_weights[j]
    face_ids[0] = entry_face
    orient[0] = -1
    dists[0] = entry_dist
    coll[0] = entry_coll

    cell = start_cell
    skip_face = entry_face
    t_prev = entry_dist
    n_rec = 1
    status = 1  # STEP_LIMIT unless the walk ends earlier
    total_nudges = 0

    for _ in range(n_steps):
        best_face = -1
        best_coll = -1e300
        best_t = 0.0
        best_wa = 0.0
        best_wb = 0.0
        best_wd = 0.0

        forced_face = -1
        forced_coll = -1e300
        forced_t = 0.0
        forced_wa = 0.0
        forced_wb = 0.0
        forced_wd = 0.0

        tol = tol0
        for attempt in range(max_nudges + 1):
            for k in range(4):
                if k == skip_face:
                    continue
                sign, t, wa, wb, wd, closeness = _face_hit(
                    origin, direction, positions, cell_vertices, face_verts, cell, k
                )
                if sign <= 0:
                    continue
                if t < t_prev - 1e-9 * (abs(t_prev) + 1.0):
                    continue
                if attempt == 0 and closeness > forced_coll:
                    forced_face = k
                    forced_coll = closeness
                    forced_t = t
                    forced_wa = wa
                    forced_wb = wb
                    forced_wd = wd
                if closeness >= -tol and closeness > best_coll:
                    best_face = k
                    best_coll = closeness
                    best_t = t
                    best_wa = wa
                    best_wb = wb
                    best_wd = wd
            if best_face >= 0:
                break
            tol *= nudge_factor
            total_nudges += 1

        if best_face < 0:
            if forced_face < 0:
                status = 3  # DEAD_END
                break
            best_face = forced_face
            best_coll = forced_coll
            best_t = forced_t
            best_wa = forced_wa
            best_wb = forced_wb
            best_wd = forced_wd

        if best_t < t_prev:
            best_t = t_prev

        cell_ids[n_rec - 1] = cell
        _store_record(
            n_rec, cell, best_face, 1, best_t, best_wa, best_wb, best_wd, best_coll,
            cell_vertices, face_verts, face_ids, orient, dists, vert_ids, wts, coll,
        )
        n_rec += 1
        t_prev = best_t

        nxt = cell_neighbors[cell, best_face]
        if nxt < 0:
            status = 0  # BOUNDARY
            break

        # Face index of the shared face as seen from the neighbour
        back = -1
        for k in range(4):
            if cell_neighbors[nxt, k] == cell:
                back = k
                break
        cell = nxt
        skip_face = back

    return (cell_ids, face_ids, orient, dists, vert_ids, wts, coll,
            n_rec, status, total_nudges)
