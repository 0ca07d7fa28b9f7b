"""Image synthesis by ray integration through the converged mesh.

For every pixel a ray is launched from outside the source towards the
observer's line of sight and walked through the Delaunay cells
(:mod:`core_engine.raycell`). Along each cell segment the emissivity and
opacity ingredients are interpolated barycentrically at both ends and the
transfer equation is integrated with a linearly varying source function.

Geometry
--------
With inclination θ and position angle φ the image frame is

    x_img = ( cosθ cosφ,  cosθ sinφ, −sinθ)
    y_img = (−sinφ,        cosφ,       0   )
    z_los = ( sinθ cosφ,  sinθ sinφ,  cosθ )

The ray of pixel offset (x, y) starts at x·x_img + y·y_img + R·z_los
(R twice the domain radius) and travels along −z_los. Positive
line-of-sight velocities are receding.

Segment integration
-------------------
For a (sub-)segment with emissivity j and absorption α varying linearly
from end a (near the observer) to end b:

    Δ  = ½ (α_a + α_b) ds
    S  = j / α
    dI = e^{−τ} [ S_a (1 − e^{−Δ}) + (S_b − S_a)(1 − e^{−Δ}(1 + Δ)) / Δ ]
    τ += Δ

A segment is split into sub-steps whenever the projected velocity
changes by more than ``velocity_step_fraction`` line widths across it.

Dust polarisation
-----------------
For continuum images with polarisation, grains align with the local
magnetic field B. With γ the angle between B and the sky plane and ψ the
position angle of the projected field:

    I ∝ j (1 − p (cos²γ / 2 − 1/3))
    Q ∝ j p cos²γ cos 2(ψ + 90°)
    U ∝ j p cos²γ sin 2(ψ + 90°)

with maximum polarisation p. Absorption is not dichroic.

References
----------
- Brinch, C. & Hogerheijde, M. R. (2010). A&A 523, A25.
- Padovani, M. et al. (2012). A&A 543, A16.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
from numba import njit

from core_engine.blends import BlendTable
from core_engine.constants import ImageConfig, PhysicalConstants, RaytracerConfig
from core_engine.lookup_tables import LookupTables, fast_exp
from core_engine.mesh import Mesh
from core_engine.molecular import DustOpacity, MolecularData, planck_intensity
from core_engine.raycell import CellWalker, TraversalStatus
from line_solver.populations import SpeciesState, species_line_terms

logger = logging.getLogger(__name__)

UNITS: tuple[str, ...] = ("kelvin", "jansky_per_pixel", "si", "tau")
ALGORITHMS: tuple[str, ...] = ("delaunay", "nearest")

_ARCSEC_TO_RAD: float = math.pi / (180.0 * 3600.0)
_JANSKY: float = 1e-26  # W m⁻² Hz⁻¹
_MIN_DTAU: float = -30.0
_TAYLOR_DTAU: float = 1e-3
_THIN_ALPHA_DS: float = 1e-12


# ===================================================================
# IMAGE DESCRIPTION
# ===================================================================


@dataclass(frozen=True)
class ImageSpec:
    """Geometry, spectral setup and unit of one image.

    Attributes
    ----------
    name : str
    pixels : int
        Pixels per side.
    pixel_size_rad : float
        Angular pixel size [rad].
    distance_m : float
        Source distance [m].
    channel_offsets : np.ndarray
        Channel velocities relative to the source [m/s]. Shape: (n_chan,).
    source_velocity : float
        Systemic velocity [m/s].
    theta, phi : float
        Viewing angles [rad].
    unit : str
        One of :data:`UNITS`.
    polarization : bool
    frequency : float
        Rest frequency of the line, or the continuum frequency [Hz].
    species, transition : int or None
        Line image selection; None for continuum images.
    """

    name: str
    pixels: int
    pixel_size_rad: float
    distance_m: float
    channel_offsets: np.ndarray
    source_velocity: float
    theta: float
    phi: float
    unit: str
    polarization: bool
    frequency: float
    species: int | None = None
    transition: int | None = None

    @property
    def is_line(self) -> bool:
        return self.species is not None

    @property
    def num_channels(self) -> int:
        return int(self.channel_offsets.shape[0])

    @property
    def channel_velocities(self) -> np.ndarray:
        """Observed channel velocities [m/s]."""
        return self.channel_offsets + self.source_velocity

    @property
    def pixel_size_m(self) -> float:
        return self.pixel_size_rad * self.distance_m

    @property
    def pixel_solid_angle(self) -> float:
        return self.pixel_size_rad ** 2

    @classmethod
    def from_config(
        cls,
        config: ImageConfig,
        molecules: list[MolecularData],
        constants: PhysicalConstants,
    ) -> ImageSpec:
        """Resolve an :class:`ImageConfig` against the loaded species.

        Raises
        ------
        ValueError
            If the species/transition does not exist or the unit is unknown.
        """
        if config.unit not in UNITS:
            raise ValueError(f"Image {config.name}: unknown unit '{config.unit}'")

        if config.is_line:
            if not 0 <= config.species < len(molecules):
                raise ValueError(f"Image {config.name}: no species {config.species}")
            mol = molecules[config.species]
            if not 0 <= config.transition < mol.num_lines:
                raise ValueError(
                    f"Image {config.name}: {mol.name} has no transition {config.transition}"
                )
            frequency = float(mol.frequencies[config.transition])
            n_chan = config.channels
            offsets = (np.arange(n_chan) - 0.5 * (n_chan - 1)) * config.velocity_resolution_ms
            species, transition = config.species, config.transition
        else:
            frequency = config.frequency_GHz * 1e9
            offsets = np.zeros(1)
            species = transition = None

        return cls(
            name=config.name,
            pixels=config.pixels,
            pixel_size_rad=config.resolution_arcsec * _ARCSEC_TO_RAD,
            distance_m=config.distance_pc * constants.parsec,
            channel_offsets=offsets,
            source_velocity=config.source_velocity_ms,
            theta=math.radians(config.theta_deg),
            phi=math.radians(config.phi_deg),
            unit=config.unit,
            polarization=config.polarization and not config.is_line,
            frequency=frequency,
            species=species,
            transition=transition,
        )


@dataclass
class ImageResult:
    """Synthesized image cube.

    Attributes
    ----------
    spec : ImageSpec
    intensity : np.ndarray
        Intensity per channel in ``spec.unit`` (optical depth for unit
        'tau'). Shape: (pixels, pixels, n_chan), indexed [y, x, channel].
    tau : np.ndarray
        Optical depth per channel. Shape: (pixels, pixels, n_chan).
    stokes : np.ndarray or None
        Stokes I, Q, U in ``spec.unit``. Shape: (pixels, pixels, 3).
    num_rays : np.ndarray
        Sub-rays per pixel. Shape: (pixels, pixels).
    num_missed : int
        Sub-rays that did not intersect the mesh.
    """

    spec: ImageSpec
    intensity: np.ndarray
    tau: np.ndarray
    stokes: np.ndarray | None
    num_rays: np.ndarray
    num_missed: int = 0

    def moment0(self) -> np.ndarray:
        """Velocity-integrated intensity [unit · m/s]."""
        if not self.spec.is_line or self.spec.num_channels < 2:
            return self.intensity.sum(axis=-1)
        dv = float(abs(self.spec.channel_offsets[1] - self.spec.channel_offsets[0]))
        return self.intensity.sum(axis=-1) * dv

    def total_flux(self, constants: PhysicalConstants) -> np.ndarray:
        """Flux density per channel [Jy], summed over the image."""
        if self.spec.unit == "tau":
            raise ValueError(f"Image {self.spec.name} holds optical depths, not intensities")
        factor = unit_factor(self.spec, "jansky_per_pixel", constants) / unit_factor(
            self.spec, self.spec.unit, constants
        )
        return self.intensity.sum(axis=(0, 1)) * factor


def rotation_matrix(theta: float, phi: float) -> np.ndarray:
    """Rows x_img, y_img, z_los of the image frame (see module docstring)."""
    ct, st = math.cos(theta), math.sin(theta)
    cp, sp = math.cos(phi), math.sin(phi)
    return np.array([
        [ct * cp, ct * sp, -st],
        [-sp, cp, 0.0],
        [st * cp, st * sp, ct],
    ])


def unit_factor(spec: ImageSpec, unit: str, constants: PhysicalConstants) -> float:
    """Multiplier converting SI intensity [W m⁻² Hz⁻¹ sr⁻¹] to ``unit``."""
    if unit == "si" or unit == "tau":
        return 1.0
    if unit == "kelvin":
        # Rayleigh-Jeans brightness temperature
        return constants.speed_of_light ** 2 / (2.0 * constants.boltzmann * spec.frequency ** 2)
    if unit == "jansky_per_pixel":
        return spec.pixel_solid_angle / _JANSKY
    raise ValueError(f"Unknown image unit '{unit}'")


# ===================================================================
# EMISSION INGREDIENTS
# ===================================================================


@dataclass(frozen=True)
class _EmissionTerms:
    """Per-grid-point ingredients of one image.

    ``line_*`` have shape (n_lines, N): the imaged line followed by its
    blend partners, whose profile centres lie at −``shift`` [m/s] in the
    frame of the imaged line.
    """

    line_j: np.ndarray
    line_a: np.ndarray
    line_binv: np.ndarray
    shift: np.ndarray
    cont_j: np.ndarray
    cont_a: np.ndarray


def _polarization_factors(bfield: np.ndarray, rotation: np.ndarray, max_pol: float) -> np.ndarray:
    """Stokes emission factors (3, n) for magnetic fields of shape (n, 3)."""
    b_img = bfield @ rotation.T
    bx, by, bz = b_img[:, 0], b_img[:, 1], b_img[:, 2]
    b2 = bx * bx + by * by + bz * bz
    has_field = b2 > 0.0

    cos2gam = np.where(has_field, (bx * bx + by * by) / np.where(has_field, b2, 1.0), 0.0)
    psi = np.arctan2(by, bx) + 0.5 * np.pi

    factors = np.empty((3, bfield.shape[0]))
    factors[0] = np.where(has_field, 1.0 - max_pol * (0.5 * cos2gam - 1.0 / 3.0), 1.0)
    factors[1] = max_pol * cos2gam * np.cos(2.0 * psi)
    factors[2] = max_pol * cos2gam * np.sin(2.0 * psi)
    return factors


# ===================================================================
# RAYTRACER
# ===================================================================


class Raytracer:
    """Synthesizes images from a solved population field.

    Parameters
    ----------
    mesh : Mesh
    molecules : list[MolecularData]
    states : list[SpeciesState]
        Converged population records.
    blends : BlendTable
    tables : LookupTables
    dust : DustOpacity
    constants : PhysicalConstants
    config : RaytracerConfig
    """

    def __init__(
        self,
        mesh: Mesh,
        molecules: list[MolecularData],
        states: list[SpeciesState],
        blends: BlendTable,
        tables: LookupTables,
        dust: DustOpacity,
        constants: PhysicalConstants,
        config: RaytracerConfig,
    ) -> None:
        if config.algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown raytracing algorithm '{config.algorithm}'")
        self.mesh = mesh
        self.molecules = molecules
        self.states = states
        self.blends = blends
        self.tables = tables
        self.dust = dust
        self.constants = constants
        self.config = config

        self.walker = CellWalker(mesh, config.face_tolerance, config.max_steps)
        self.domain_radius = float(np.linalg.norm(mesh.positions, axis=1).max())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def render(self, spec: ImageSpec) -> ImageResult:
        """Trace all pixels of one image."""
        terms = self._emission_terms(spec)
        rotation = rotation_matrix(spec.theta, spec.phi)
        pol = (
            _polarization_factors(self.mesh.bfield, rotation, self.config.max_polarization)
            if spec.polarization else np.ones((3, self.mesh.num_points))
        )

        n = spec.pixels
        n_chan = spec.num_channels
        intensity = np.zeros((n, n, n_chan))
        tau = np.zeros((n, n, n_chan))
        stokes = np.zeros((n, n, 3))
        num_rays = np.zeros((n, n), dtype=np.int64)
        missed = np.zeros((n, n), dtype=np.int64)

        logger.info(
            "Raytracing image '%s': %dx%d pixels, %d channel(s), %s algorithm, "
            "antialias %d, %d threads",
            spec.name, n, n, n_chan, self.config.algorithm,
            self.config.antialias, self.config.n_threads,
        )

        def work(pixel: int) -> None:
            iy, ix = divmod(pixel, n)
            i_pix, t_pix, s_pix, n_miss = self._trace_pixel(spec, terms, pol, rotation, iy, ix)
            intensity[iy, ix] = i_pix
            tau[iy, ix] = t_pix
            stokes[iy, ix] = s_pix
            num_rays[iy, ix] = self.config.antialias
            missed[iy, ix] = n_miss

        with ThreadPoolExecutor(max_workers=self.config.n_threads) as pool:
            list(pool.map(work, range(n * n)))

        factor = unit_factor(spec, spec.unit, self.constants)
        result = ImageResult(
            spec=spec,
            intensity=tau.copy() if spec.unit == "tau" else intensity * factor,
            tau=tau,
            stokes=stokes * factor if spec.polarization else None,
            num_rays=num_rays,
            num_missed=int(missed.sum()),
        )
        logger.info(
            "Image '%s' done: peak %.4e %s, max tau %.3e, %d sub-ray(s) missed the source",
            spec.name, float(result.intensity.max()), spec.unit,
            float(tau.max()), result.num_missed,
        )
        return result

    def trace_ray(
        self,
        origin: np.ndarray,
        direction: np.ndarray,
        spec: ImageSpec,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, bool]:
        """Integrate a single ray; returns (intensity, tau, stokes, hit) in SI."""
        terms = self._emission_terms(spec)
        rotation = rotation_matrix(spec.theta, spec.phi)
        pol = (
            _polarization_factors(self.mesh.bfield, rotation, self.config.max_polarization)
            if spec.polarization else np.ones((3, self.mesh.num_points))
        )
        return self._integrate(origin, direction, spec, terms, pol)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emission_terms(self, spec: ImageSpec) -> _EmissionTerms:
        mesh = self.mesh
        if not spec.is_line:
            cont_a = self.dust.absorption(spec.frequency, mesh.density, mesh.gas_to_dust, self.constants)
            cont_j = cont_a * planck_intensity(spec.frequency, mesh.dust_temperature, self.constants)
            empty = np.zeros((0, mesh.num_points))
            return _EmissionTerms(empty, empty, empty, np.zeros(0), cont_j, cont_a)

        s, l = spec.species, spec.transition
        contributors = [(s, l, 0.0)] + [
            (b.species, b.line, b.delta_v) for b in self.blends.blends_of(s, l)
        ]

        line_j, line_a, line_binv, shift = [], [], [], []
        for sb, lb, dv in contributors:
            mol = self.molecules[sb]
            state = self.states[sb]
            lj, la = species_line_terms(mol, state, state.pops, self.constants.hpip)
            line_j.append(lj[:, lb])
            line_a.append(la[:, lb])
            line_binv.append(state.binv)
            shift.append(dv)

        state = self.states[s]
        return _EmissionTerms(
            line_j=np.array(line_j),
            line_a=np.array(line_a),
            line_binv=np.array(line_binv),
            shift=np.array(shift),
            cont_j=np.ascontiguousarray(state.dust[:, l]),
            cont_a=np.ascontiguousarray(state.knu[:, l]),
        )

    def _trace_pixel(
        self,
        spec: ImageSpec,
        terms: _EmissionTerms,
        pol: np.ndarray,
        rotation: np.ndarray,
        iy: int,
        ix: int,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, int]:
        n = spec.pixels
        size = spec.pixel_size_m
        n_sub = self.config.antialias
        x_img, y_img, z_los = rotation

        if n_sub > 1:
            rng = np.random.default_rng(np.random.SeedSequence([self.config.seed, iy * n + ix]))
            jitter = rng.random((n_sub, 2)) - 0.5
        else:
            jitter = np.zeros((1, 2))

        intensity = np.zeros(spec.num_channels)
        tau = np.zeros(spec.num_channels)
        stokes = np.zeros(3)
        n_miss = 0
        for dx, dy in jitter:
            x = (ix - 0.5 * (n - 1) + dx) * size
            y = (iy - 0.5 * (n - 1) + dy) * size
            origin = x * x_img + y * y_img + 2.0 * self.domain_radius * z_los
            i_ray, t_ray, s_ray, hit = self._integrate(origin, -z_los, spec, terms, pol)
            intensity += i_ray
            tau += t_ray
            stokes += s_ray
            n_miss += 0 if hit else 1

        return intensity / len(jitter), tau / len(jitter), stokes / len(jitter), n_miss

    def _integrate(
        self,
        origin: np.ndarray,
        direction: np.ndarray,
        spec: ImageSpec,
        terms: _EmissionTerms,
        pol: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, bool]:
        direction = np.asarray(direction, dtype=np.float64)
        direction = direction / np.linalg.norm(direction)

        if self.config.algorithm == "delaunay":
            records = self._delaunay_records(origin, direction)
        else:
            records = self._nearest_records(origin, direction)

        intensity = np.zeros(spec.num_channels)
        tau = np.zeros(spec.num_channels)
        stokes = np.zeros(3)
        if records is None:
            return intensity, tau, stokes, False

        seg_ds, seg_a, seg_b, vertex_ids, weights = records

        def at_records(values: np.ndarray) -> np.ndarray:
            return np.sum(values[..., vertex_ids] * weights, axis=-1)

        vlos = at_records(self.mesh.velocity @ direction)
        t = self.tables
        _integrate_segments(
            seg_ds, seg_a, seg_b,
            at_records(terms.line_j), at_records(terms.line_a), at_records(terms.line_binv),
            terms.shift, at_records(terms.cont_j), at_records(terms.cont_a),
            vlos, at_records(pol), spec.channel_offsets,
            self.config.velocity_step_fraction, self.config.max_substeps, spec.polarization,
            t.exp_table_2d, t.exp_table_3d, t.lowest_exponent, t.num_exponents, t.max_taylor,
            intensity, tau, stokes,
        )
        return intensity, tau, stokes, True

    def _delaunay_records(self, origin: np.ndarray, direction: np.ndarray):
        walk = self.walker.trace(origin, direction)
        if walk.status is TraversalStatus.MISSED or walk.num_segments == 0:
            return None
        n_seg = walk.num_segments
        seg_a = np.arange(n_seg, dtype=np.int64)
        return walk.segment_lengths, seg_a, seg_a + 1, walk.vertex_ids, walk.weights

    def _nearest_records(self, origin: np.ndarray, direction: np.ndarray):
        # Chord through the bounding sphere of the grid
        b = float(origin @ direction)
        c = float(origin @ origin) - self.domain_radius ** 2
        disc = b * b - c
        if disc <= 0.0:
            return None
        root = math.sqrt(disc)
        t0, t1 = max(-b - root, 0.0), -b + root
        if t1 <= t0:
            return None

        step = self.config.nearest_step_fraction * self.mesh.mean_spacing
        n_steps = max(int(math.ceil((t1 - t0) / step)), 1)
        edges = np.linspace(t0, t1, n_steps + 1)
        mids = 0.5 * (edges[:-1] + edges[1:])
        _, nearest = self.mesh.kdtree.query(origin + mids[:, None] * direction)

        seg = np.arange(n_steps, dtype=np.int64)
        vertex_ids = np.asarray(nearest, dtype=np.int64)[:, None]
        weights = np.ones((n_steps, 1))
        return np.diff(edges), seg, seg, vertex_ids, weights


def trace_image(
    config: ImageConfig,
    raytracer: Raytracer,
) -> ImageResult:
    """Resolve ``config`` and render it with ``raytracer``."""
    spec = ImageSpec.from_config(config, raytracer.molecules, raytracer.constants)
    return raytracer.render(spec)


# ===================================================================
# NUMBA KERNELS
# ===================================================================


@njit(cache=True, fastmath=False, nogil=True)
def _source_step(
    j0: float,
    a0: float,
    j1: float,
    a1: float,
    ds: float,
    tau: float,
    exp_2d: np.ndarray,
    exp_3d: np.ndarray,
    lowest_exponent: int,
    num_exponents: int,
    max_taylor: int,
):
    """Emergent contribution and optical depth of one linear sub-step."""
    dtau = 0.5 * (a0 + a1) * ds
    if dtau < _MIN_DTAU:
        dtau = _MIN_DTAU
    att = fast_exp(tau, exp_2d, exp_3d, lowest_exponent, num_exponents, max_taylor)

    if abs(dtau) < _TAYLOR_DTAU:
        first = dtau * (1.0 - dtau * (0.5 - dtau / 6.0))
        second = dtau * (0.5 - dtau * (1.0 / 3.0 - dtau / 8.0))
    else:
        e = fast_exp(dtau, exp_2d, exp_3d, lowest_exponent, num_exponents, max_taylor)
        first = 1.0 - e
        second = (1.0 - e * (1.0 + dtau)) / dtau

    if a0 > 0.0 and a1 > 0.0:
        s0 = j0 / a0
        s1 = j1 / a1
        return att * (s0 * first + (s1 - s0) * second), dtau

    # Vanishing or negative opacity: constant source or pure emission
    a_mean = 0.5 * (a0 + a1)
    j_mean = 0.5 * (j0 + j1)
    if abs(a_mean) * ds < _THIN_ALPHA_DS:
        return att * j_mean * ds, dtau
    return att * (j_mean / a_mean) * first, dtau


@njit(cache=True, fastmath=False, nogil=True)
def _integrate_segments(
    seg_ds: np.ndarray,
    seg_a: np.ndarray,
    seg_b: np.ndarray,
    line_j: np.ndarray,
    line_a: np.ndarray,
    line_binv: np.ndarray,
    shift: np.ndarray,
    cont_j: np.ndarray,
    cont_a: np.ndarray,
    vlos: np.ndarray,
    pol: np.ndarray,
    channels: np.ndarray,
    velocity_step_fraction: float,
    max_substeps: int,
    polarized: bool,
    exp_2d: np.ndarray,
    exp_3d: np.ndarray,
    lowest_exponent: int,
    num_exponents: int,
    max_taylor: int,
    intensity: np.ndarray,
    tau: np.ndarray,
    stokes: np.ndarray,
) -> None:
    """Front-to-back integration over segments between record pairs.

    Quantities are given at records (last axis); segment s runs from
    record ``seg_a[s]`` to ``seg_b[s]`` over length ``seg_ds[s]``.
    """
    n_lines = line_j.shape[0]
    n_chan = channels.shape[0]

    for s in range(seg_ds.shape[0]):
        ds = seg_ds[s]
        if ds <= 0.0:
            continue
        a = seg_a[s]
        b = seg_b[s]

        n_sub = 1
        if n_lines > 0:
            bmax = 0.0
            for li in range(n_lines):
                if line_binv[li, a] > bmax:
                    bmax = line_binv[li, a]
                if line_binv[li, b] > bmax:
                    bmax = line_binv[li, b]
            n_sub = int(math.ceil(abs(vlos[b] - vlos[a]) * bmax / velocity_step_fraction))
            if n_sub < 1:
                n_sub = 1
            if n_sub > max_substeps:
                n_sub = max_substeps
        dsub = ds / n_sub

        for k in range(n_sub):
            f0 = k / n_sub
            f1 = (k + 1) / n_sub
            cj0 = cont_j[a] + f0 * (cont_j[b] - cont_j[a])
            cj1 = cont_j[a] + f1 * (cont_j[b] - cont_j[a])
            ca0 = cont_a[a] + f0 * (cont_a[b] - cont_a[a])
            ca1 = cont_a[a] + f1 * (cont_a[b] - cont_a[a])
            v0 = vlos[a] + f0 * (vlos[b] - vlos[a])
            v1 = vlos[a] + f1 * (vlos[b] - vlos[a])

            if polarized:
                for q in range(3):
                    p0 = pol[q, a] + f0 * (pol[q, b] - pol[q, a])
                    p1 = pol[q, a] + f1 * (pol[q, b] - pol[q, a])
                    d_i, _ = _source_step(p0 * cj0, ca0, p1 * cj1, ca1, dsub, tau[0],
                                          exp_2d, exp_3d, lowest_exponent, num_exponents,
                                          max_taylor)
                    stokes[q] += d_i

            for c in range(n_chan):
                j0 = cj0
                j1 = cj1
                al0 = ca0
                al1 = ca1
                for li in range(n_lines):
                    bi0 = line_binv[li, a] + f0 * (line_binv[li, b] - line_binv[li, a])
                    bi1 = line_binv[li, a] + f1 * (line_binv[li, b] - line_binv[li, a])
                    x0 = (channels[c] - v0 + shift[li]) * bi0
                    x1 = (channels[c] - v1 + shift[li]) * bi1
                    phi0 = math.exp(-x0 * x0)
                    phi1 = math.exp(-x1 * x1)
                    j0 += phi0 * (line_j[li, a] + f0 * (line_j[li, b] - line_j[li, a]))
                    j1 += phi1 * (line_j[li, a] + f1 * (line_j[li, b] - line_j[li, a]))
                    al0 += phi0 * (line_a[li, a] + f0 * (line_a[li, b] - line_a[li, a]))
                    al1 += phi1 * (line_a[li, a] + f1 * (line_a[li, b] - line_a[li, a]))

                d_i, d_tau = _source_step(j0, al0, j1, al1, dsub, tau[c],
                                          exp_2d, exp_3d, lowest_exponent, num_exponents,
                                          max_taylor)
                intensity[c] += d_i
                tau[c] += d_tau
