"""Physical constants, solver parameters, and configuration loader.

All numerical values are loaded from YAML configuration files. Nothing
physical is hardcoded in the engine; this module provides a typed,
validated interface to the configuration.

References
----------
- CODATA 2014 (NIST, Sept 2015) for fundamental constants
- IAU 2009 for G and the astronomical unit
- Schöier et al. (2005), A&A 432, 369 for the LAMDA data conventions
"""

from __future__ import annotations

import hashlib
import logging
import platform
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import yaml

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhysicalConstants:
    """Fundamental physical constants (SI).

    Attributes
    ----------
    speed_of_light : float
        Speed of light in vacuum [m/s].
    planck : float
        Planck constant [J s].
    boltzmann : float
        Boltzmann constant [J/K].
    atomic_mass_unit : float
        Atomic mass unit [kg].
    gravitational : float
        Gravitational constant [m³/kg/s²].
    astronomical_unit : float
        1 astronomical unit [m].
    parsec : float
        1 parsec [m].
    solar_mass : float
        Solar mass [kg].
    cmb_temperature_K : float
        Temperature of the cosmic background radiation [K].
    """

    speed_of_light: float
    planck: float
    boltzmann: float
    atomic_mass_unit: float
    gravitational: float
    astronomical_unit: float
    parsec: float
    solar_mass: float
    cmb_temperature_K: float

    @property
    def hpip(self) -> float:
        """Line emissivity prefactor h·c / (4π·√π) [J m]."""
        return self.planck * self.speed_of_light / (4.0 * np.pi * np.sqrt(np.pi))

    @property
    def hckb(self) -> float:
        """100·h·c/k: converts level energies in cm⁻¹ to Kelvin."""
        return 100.0 * self.planck * self.speed_of_light / self.boltzmann


@dataclass(frozen=True)
class ModelConfig:
    """Parameters of the built-in physical model.

    Attributes
    ----------
    model_type : str
        'power_law_infall' or 'uniform'.
    reference_radius_au : float
        Radius at which the reference density/temperature apply [AU].
    density_ref_m3 : float
        H2 number density at the reference radius [m⁻³].
    density_index : float
        Power-law index of the density profile.
    temperature_ref_K : float
        Gas temperature at the reference radius [K].
    temperature_index : float
        Power-law index of the temperature profile.
    temperature_min_K : float
        Floor applied to the gas temperature [K].
    doppler_ms : float
        Micro-turbulent Doppler b parameter [m/s].
    central_mass_msun : float
        Mass driving free-fall infall [M_sun]. Zero means static gas.
    magnetic_field_T : tuple[float, float, float]
        Uniform magnetic field vector [T].
    gas_to_dust : float
        Gas-to-dust mass ratio.
    """

    model_type: str
    reference_radius_au: float
    density_ref_m3: float
    density_index: float
    temperature_ref_K: float
    temperature_index: float
    temperature_min_K: float
    doppler_ms: float
    central_mass_msun: float
    magnetic_field_T: tuple[float, float, float]
    gas_to_dust: float


@dataclass(frozen=True)
class GridConfig:
    """Grid point placement configuration.

    Attributes
    ----------
    num_points : int
        Number of interior (solved) grid points.
    num_sink_points : int
        Number of boundary sink points placed on the outer sphere.
    radius_au : float
        Outer radius of the model domain [AU].
    min_scale_au : float
        Innermost radius sampled by the point placement [AU].
    density_weight_exponent : float
        Exponent applied to the density when accepting candidate points.
    path_weight_directions : int
        Number of Fibonacci directions used to estimate neighbour
        solid-angle shares.
    seed : int
        Seed of the point placement random stream.
    """

    num_points: int
    num_sink_points: int
    radius_au: float
    min_scale_au: float
    density_weight_exponent: float
    path_weight_directions: int
    seed: int


@dataclass(frozen=True)
class MoleculeConfig:
    """One radiating species.

    Attributes
    ----------
    file : Path
        LAMDA-format molecular data file.
    abundance : float
        Abundance relative to H2.
    """

    file: Path
    abundance: float


@dataclass(frozen=True)
class DustConfig:
    """Dust continuum opacity configuration.

    Attributes
    ----------
    opacity_file : Path or None
        Two-column table (wavelength [µm], κ [cm²/g]). Overrides the power law.
    kappa_ref_cm2_g : float
        Power-law opacity per gram of dust at the reference frequency.
    reference_frequency_GHz : float
        Reference frequency of the power law [GHz].
    beta : float
        Opacity spectral index.
    """

    opacity_file: Path | None
    kappa_ref_cm2_g: float
    reference_frequency_GHz: float
    beta: float


@dataclass(frozen=True)
class SolverConfig:
    """Photon transport, statistical equilibrium and sweep settings.

    Attributes
    ----------
    photons_per_point : int
        Photon packages sampled per point per sweep.
    max_sweeps : int
        Iteration budget of the convergence scheduler.
    population_tolerance : float
        Relative population change below which a point counts as converged.
    convergence_fraction : float
        Fraction of converged points that ends the iteration.
    max_local_iterations : int
        Bound on the accelerated-lambda retries of one point.
    local_tolerance : float
        Relative change ending the local retries.
    min_population : float
        Populations below this are ignored in relative-change tests.
    population_floor : float
        Negative solver output is clamped to this value.
    max_consecutive_failures : int
        Sweeps a point may stay singular before the run aborts.
    max_photon_steps : int
        Step cap of a single photon walk.
    n_threads : int
        Worker threads of the sweep pool.
    seed : int
        Global seed combined with each point index.
    lte_only : bool
        Skip the non-LTE iteration and keep LTE populations.
    blending : bool
        Include overlapping-line cross terms.
    max_blend_delta_v_ms : float
        Velocity separation below which two lines blend [m/s].
    restart_file : Path or None
        Population file to start from instead of LTE.
    """

    photons_per_point: int
    max_sweeps: int
    population_tolerance: float
    convergence_fraction: float
    max_local_iterations: int
    local_tolerance: float
    min_population: float
    population_floor: float
    max_consecutive_failures: int
    max_photon_steps: int
    n_threads: int
    seed: int
    lte_only: bool
    blending: bool
    max_blend_delta_v_ms: float
    restart_file: Path | None


@dataclass(frozen=True)
class LookupTableConfig:
    """Fast exponential and error-function table settings.

    Attributes
    ----------
    fast_exp_max_taylor : int
        Order of the Taylor series used below the table range (≤ 8).
    fast_exp_num_bits : int
        Mantissa bits resolved per table axis.
    fast_exp_error_bound : float
        Documented relative error bound, validated at build time.
    erf_table_limit : float
        Upper argument of the erf table; erf is 1 beyond it.
    erf_table_points_per_unit : int
        Table resolution.
    """

    fast_exp_max_taylor: int
    fast_exp_num_bits: int
    fast_exp_error_bound: float
    erf_table_limit: float
    erf_table_points_per_unit: int


@dataclass(frozen=True)
class RaytracerConfig:
    """Image synthesis configuration.

    Attributes
    ----------
    algorithm : str
        'delaunay' (barycentric cell walk) or 'nearest' (nearest grid point).
    antialias : int
        Sub-rays per pixel.
    max_steps : int
        Cell-walk step cap of one ray.
    face_tolerance : float
        Initial edge-closeness tolerance of the ray-face test.
    velocity_step_fraction : float
        Maximum change of projected velocity per sub-step, in line widths.
    max_substeps : int
        Cap on sub-steps of one cell segment.
    nearest_step_fraction : float
        Step of the nearest-point algorithm in units of the mean spacing.
    max_polarization : float
        Maximum dust polarisation fraction.
    n_threads : int
        Worker threads of the pixel pool.
    seed : int
        Seed of the antialiasing sub-pixel streams.
    """

    algorithm: str
    antialias: int
    max_steps: int
    face_tolerance: float
    velocity_step_fraction: float
    max_substeps: int
    nearest_step_fraction: float
    max_polarization: float
    n_threads: int
    seed: int


@dataclass(frozen=True)
class ImageConfig:
    """One image to synthesize.

    A line image names a species and transition; a continuum image
    names a frequency instead.
    """

    name: str
    pixels: int
    resolution_arcsec: float
    distance_pc: float
    channels: int
    velocity_resolution_ms: float
    source_velocity_ms: float
    theta_deg: float
    phi_deg: float
    unit: str
    polarization: bool
    species: int | None = None
    transition: int | None = None
    frequency_GHz: float | None = None

    @property
    def is_line(self) -> bool:
        return self.species is not None and self.transition is not None


@dataclass(frozen=True)
class Assumption:
    """A documented model assumption.

    Attributes
    ----------
    parameter : str
        Name of the assumed parameter.
    value : str
        Assumed value (string representation).
    source : str
        Literature source or rationale.
    """

    parameter: str
    value: str
    source: str


@dataclass
class SimulationConfig:
    """Top-level simulation configuration loaded from YAML."""

    constants: PhysicalConstants
    model: ModelConfig
    grid: GridConfig
    molecules: list[MoleculeConfig]
    dust: DustConfig
    solver: SolverConfig
    lookup_tables: LookupTableConfig
    raytracer: RaytracerConfig
    images: list[ImageConfig]
    output_directory: Path
    assumptions: list[Assumption] = field(default_factory=list)


_IMAGE_UNITS = ("kelvin", "jansky_per_pixel", "si", "tau")
_RAYTRACE_ALGORITHMS = ("delaunay", "nearest")
_MODEL_TYPES = ("power_law_infall", "uniform")


# ---------------------------------------------------------------------------
# Configuration Loader
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path) -> SimulationConfig:
    """Load and validate a simulation configuration from a YAML file.

    Parameters
    ----------
    config_path : str or Path
        Path to the YAML configuration file. Relative file names inside
        it are resolved against its directory.

    Returns
    -------
    SimulationConfig
        Fully populated, typed configuration object.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    ValueError
        If required configuration keys are missing or values are invalid.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f)

    logger.info("Loading configuration from: %s", config_path)
    base_dir = config_path.resolve().parent

    try:
        config = _parse_config(raw, base_dir)
    except KeyError as exc:
        raise ValueError(f"Missing configuration key: {exc}") from exc

    _validate_config(config)
    logger.info(
        "Configuration loaded: %d species, %d images, %d assumptions registered.",
        len(config.molecules),
        len(config.images),
        len(config.assumptions),
    )

    return config


def _resolve(path: str | None, base_dir: Path) -> Path | None:
    if path is None:
        return None
    p = Path(path)
    return p if p.is_absolute() else (base_dir / p).resolve()


def _parse_config(raw: dict[str, Any], base_dir: Path) -> SimulationConfig:
    # --- Physical constants ---
    c = raw["constants"]
    constants = PhysicalConstants(
        speed_of_light=float(c["speed_of_light"]),
        planck=float(c["planck"]),
        boltzmann=float(c["boltzmann"]),
        atomic_mass_unit=float(c["atomic_mass_unit"]),
        gravitational=float(c["gravitational"]),
        astronomical_unit=float(c["astronomical_unit"]),
        parsec=float(c["parsec"]),
        solar_mass=float(c["solar_mass"]),
        cmb_temperature_K=float(c["cmb_temperature_K"]),
    )

    # --- Physical model ---
    m = raw["model"]
    bfield = tuple(float(b) for b in m["magnetic_field_T"])
    if len(bfield) != 3:
        raise ValueError(f"magnetic_field_T needs 3 components, got {len(bfield)}")
    model = ModelConfig(
        model_type=str(m["type"]),
        reference_radius_au=float(m["reference_radius_au"]),
        density_ref_m3=float(m["density_ref_m3"]),
        density_index=float(m["density_index"]),
        temperature_ref_K=float(m["temperature_ref_K"]),
        temperature_index=float(m["temperature_index"]),
        temperature_min_K=float(m["temperature_min_K"]),
        doppler_ms=float(m["doppler_ms"]),
        central_mass_msun=float(m["central_mass_msun"]),
        magnetic_field_T=bfield,
        gas_to_dust=float(m["gas_to_dust"]),
    )

    # --- Grid ---
    g = raw["grid"]
    grid = GridConfig(
        num_points=int(g["num_points"]),
        num_sink_points=int(g["num_sink_points"]),
        radius_au=float(g["radius_au"]),
        min_scale_au=float(g["min_scale_au"]),
        density_weight_exponent=float(g["density_weight_exponent"]),
        path_weight_directions=int(g["path_weight_directions"]),
        seed=int(g["seed"]),
    )

    # --- Species ---
    molecules = [
        MoleculeConfig(file=_resolve(mol["file"], base_dir), abundance=float(mol["abundance"]))
        for mol in raw["molecules"]
    ]

    # --- Dust ---
    d = raw["dust"]
    dust = DustConfig(
        opacity_file=_resolve(d.get("opacity_file"), base_dir),
        kappa_ref_cm2_g=float(d["kappa_ref_cm2_g"]),
        reference_frequency_GHz=float(d["reference_frequency_GHz"]),
        beta=float(d["beta"]),
    )

    # --- Solver ---
    s = raw["solver"]
    solver = SolverConfig(
        photons_per_point=int(s["photons_per_point"]),
        max_sweeps=int(s["max_sweeps"]),
        population_tolerance=float(s["population_tolerance"]),
        convergence_fraction=float(s["convergence_fraction"]),
        max_local_iterations=int(s["max_local_iterations"]),
        local_tolerance=float(s["local_tolerance"]),
        min_population=float(s["min_population"]),
        population_floor=float(s["population_floor"]),
        max_consecutive_failures=int(s["max_consecutive_failures"]),
        max_photon_steps=int(s["max_photon_steps"]),
        n_threads=int(s["n_threads"]),
        seed=int(s["seed"]),
        lte_only=bool(s["lte_only"]),
        blending=bool(s["blending"]),
        max_blend_delta_v_ms=float(s["max_blend_delta_v_ms"]),
        restart_file=_resolve(s.get("restart_file"), base_dir),
    )

    # --- Lookup tables ---
    lt = raw["lookup_tables"]
    lookup_tables = LookupTableConfig(
        fast_exp_max_taylor=int(lt["fast_exp_max_taylor"]),
        fast_exp_num_bits=int(lt["fast_exp_num_bits"]),
        fast_exp_error_bound=float(lt["fast_exp_error_bound"]),
        erf_table_limit=float(lt["erf_table_limit"]),
        erf_table_points_per_unit=int(lt["erf_table_points_per_unit"]),
    )

    # --- Raytracer ---
    rt = raw["raytracer"]
    raytracer = RaytracerConfig(
        algorithm=str(rt["algorithm"]),
        antialias=int(rt["antialias"]),
        max_steps=int(rt["max_steps"]),
        face_tolerance=float(rt["face_tolerance"]),
        velocity_step_fraction=float(rt["velocity_step_fraction"]),
        max_substeps=int(rt["max_substeps"]),
        nearest_step_fraction=float(rt["nearest_step_fraction"]),
        max_polarization=float(rt["max_polarization"]),
        n_threads=int(rt["n_threads"]),
        seed=int(rt["seed"]),
    )

    # --- Images ---
    images = [_parse_image(img) for img in raw.get("images", [])]

    output_directory = Path(raw.get("output", {}).get("directory", "output"))

    return SimulationConfig(
        constants=constants,
        model=model,
        grid=grid,
        molecules=molecules,
        dust=dust,
        solver=solver,
        lookup_tables=lookup_tables,
        raytracer=raytracer,
        images=images,
        output_directory=output_directory,
        assumptions=_build_assumptions_registry(model, solver),
    )


def _parse_image(img: dict[str, Any]) -> ImageConfig:
    species = img.get("species")
    transition = img.get("transition")
    frequency = img.get("frequency_GHz")
    return ImageConfig(
        name=str(img["name"]),
        pixels=int(img["pixels"]),
        resolution_arcsec=float(img["resolution_arcsec"]),
        distance_pc=float(img["distance_pc"]),
        channels=int(img.get("channels", 1)),
        velocity_resolution_ms=float(img.get("velocity_resolution_ms", 0.0)),
        source_velocity_ms=float(img.get("source_velocity_ms", 0.0)),
        theta_deg=float(img.get("theta_deg", 0.0)),
        phi_deg=float(img.get("phi_deg", 0.0)),
        unit=str(img.get("unit", "kelvin")),
        polarization=bool(img.get("polarization", False)),
        species=None if species is None else int(species),
        transition=None if transition is None else int(transition),
        frequency_GHz=None if frequency is None else float(frequency),
    )


def _build_assumptions_registry(
    model: ModelConfig,
    solver: SolverConfig,
) -> list[Assumption]:
    """Build the documented assumptions registry."""
    return [
        Assumption("Line profile", "Gaussian, thermal + turbulent b", "Standard micro-turbulent approach"),
        Assumption("Redistribution", "Complete", "Statistical equilibrium"),
        Assumption("Scattering", "Excluded", "Line physics only"),
        Assumption("Turbulent b", f"{model.doppler_ms} m/s", "Model configuration"),
        Assumption("Gas-to-dust", str(model.gas_to_dust), "Model configuration"),
        Assumption(
            "Dust temperature",
            "Gas temperature unless the model defines dust_temperature",
            "Model default",
        ),
        Assumption("Boundary points", "Fixed LTE populations, no emission", "Sink point convention"),
        Assumption(
            "Random streams",
            "Frozen per point across sweeps",
            "Deterministic Gauss-Jacobi iteration",
        ),
        Assumption("Blending", "Enabled" if solver.blending else "Disabled", "Solver configuration"),
    ]


def _validate_config(config: SimulationConfig) -> None:
    """Validate physical constraints on configuration values.

    Raises
    ------
    ValueError
        If any value is physically invalid.
    """
    c = config.constants
    if min(c.speed_of_light, c.planck, c.boltzmann, c.atomic_mass_unit) <= 0:
        raise ValueError("Physical constants must be positive.")
    if c.cmb_temperature_K < 0:
        raise ValueError("CMB temperature cannot be negative.")
    if config.model.model_type not in _MODEL_TYPES:
        raise ValueError(
            f"Unknown model type '{config.model.model_type}', expected one of {_MODEL_TYPES}"
        )
    if config.model.density_ref_m3 <= 0:
        raise ValueError("Reference density must be positive.")
    if config.model.gas_to_dust <= 0:
        raise ValueError("Gas-to-dust ratio must be positive.")
    if config.grid.num_points < 5:
        raise ValueError(f"At least 5 grid points are needed, got {config.grid.num_points}")
    if config.grid.num_sink_points < 4:
        raise ValueError("At least 4 sink points are needed to close the domain.")
    if not (0.0 < config.grid.min_scale_au < config.grid.radius_au):
        raise ValueError("Grid min_scale must be positive and smaller than the radius.")
    if not config.molecules and any(img.is_line for img in config.images):
        raise ValueError("Line images need at least one molecular species.")
    for mol in config.molecules:
        if mol.abundance < 0:
            raise ValueError(f"Negative abundance for {mol.file}")
    s = config.solver
    if s.photons_per_point < 1:
        raise ValueError("photons_per_point must be ≥ 1.")
    if s.max_sweeps < 1:
        raise ValueError("max_sweeps must be ≥ 1.")
    if not (0.0 < s.convergence_fraction <= 1.0):
        raise ValueError("convergence_fraction must be in (0, 1].")
    if s.population_tolerance <= 0 or s.local_tolerance <= 0:
        raise ValueError("Solver tolerances must be positive.")
    if s.n_threads < 1 or config.raytracer.n_threads < 1:
        raise ValueError("Thread counts must be ≥ 1.")
    if s.max_blend_delta_v_ms <= 0:
        raise ValueError("max_blend_delta_v_ms must be positive.")
    if not (1 <= config.lookup_tables.fast_exp_max_taylor <= 8):
        raise ValueError("fast_exp_max_taylor must be between 1 and 8.")
    if config.raytracer.algorithm not in _RAYTRACE_ALGORITHMS:
        raise ValueError(
            f"Unknown raytrace algorithm '{config.raytracer.algorithm}', "
            f"expected one of {_RAYTRACE_ALGORITHMS}"
        )
    if config.raytracer.antialias < 1:
        raise ValueError("antialias must be ≥ 1.")
    for img in config.images:
        if img.unit not in _IMAGE_UNITS:
            raise ValueError(f"Image '{img.name}': unknown unit '{img.unit}'")
        if not img.is_line and img.frequency_GHz is None:
            raise ValueError(
                f"Image '{img.name}' needs either species+transition or frequency_GHz"
            )
        if img.is_line and img.species >= len(config.molecules):
            raise ValueError(f"Image '{img.name}': species index {img.species} out of range")
        if img.pixels < 1 or img.channels < 1:
            raise ValueError(f"Image '{img.name}': pixels and channels must be ≥ 1")
        if img.polarization and img.is_line:
            raise ValueError(f"Image '{img.name}': polarization is only available for continuum")

    logger.debug("Configuration validation passed.")


def log_assumptions(config: SimulationConfig) -> None:
    """Log all documented model assumptions."""
    logger.info("=" * 70)
    logger.info("MODEL ASSUMPTIONS REGISTRY")
    logger.info("=" * 70)
    for i, a in enumerate(config.assumptions, 1):
        logger.info(
            "  [%02d] %-18s = %-38s | Source: %s",
            i,
            a.parameter,
            a.value,
            a.source,
        )
    logger.info("=" * 70)


def log_platform_info() -> None:
    """Log platform and library version information for reproducibility."""
    import numba
    import scipy

    logger.info("=" * 70)
    logger.info("PLATFORM INFORMATION (for reproducibility)")
    logger.info("=" * 70)
    logger.info("  Python:    %s", sys.version)
    logger.info("  Platform:  %s", platform.platform())
    logger.info("  Processor: %s", platform.processor())
    logger.info("  NumPy:     %s", np.__version__)
    logger.info("  SciPy:     %s", scipy.__version__)
    logger.info("  Numba:     %s", numba.__version__)
    logger.info("  Float64 eps: %e", np.finfo(np.float64).eps)
    logger.info("=" * 70)


def hash_array(arr: np.ndarray) -> str:
    """Compute SHA-256 hash of a NumPy array for reproducibility verification.

    Parameters
    ----------
    arr : np.ndarray
        Array to hash.

    Returns
    -------
    str
        Hex digest of the SHA-256 hash.
    """
    return hashlib.sha256(np.ascontiguousarray(arr).tobytes()).hexdigest()
