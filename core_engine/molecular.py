"""Molecular data model: levels, radiative lines and collision rates.

A :class:`MolecularData` record is immutable after load. It holds the
level structure and Einstein coefficients of one radiating species plus
one :class:`CollisionRateTable` per collision partner. Helper functions
provide the Planck function, LTE populations and dust opacities used to
initialise and evaluate the per-point population records.

Conventions
-----------
- Level energies in cm⁻¹, converted to Kelvin with HCKB = 100·h·c/k.
- Frequencies in Hz, Einstein A in s⁻¹, B in m² J⁻¹ s⁻¹ sr (intensity
  convention, B_ul = A c² / (2 h ν³), g_l B_lu = g_u B_ul).
- Collision rate coefficients in m³ s⁻¹ (downward, tabulated in T).
- Level and line indices are zero-based.

References
----------
- Schöier, F. L. et al. (2005). "An atomic and molecular database for
  analysis of submillimetre line observations." A&A 432, 369-379.
- Rybicki, G. B. & Lightman, A. P. (1979). Radiative Processes in
  Astrophysics, §1.6.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import numpy as np

from core_engine.constants import DustConfig, PhysicalConstants

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Equilibrium ortho/para ratio saturates at 3 for warm gas.
_OPR_HIGH_T: float = 3.0
_OPR_ENERGY_K: float = 170.6

# Mean molecular mass per H2 molecule in units of the atomic mass unit.
_MEAN_MOLECULAR_WEIGHT: float = 2.4

# Default helium abundance relative to H2 (He/H = 0.1).
_HELIUM_PER_H2: float = 0.2


class MolecularDataError(ValueError):
    """Raised for malformed or inconsistent molecular data."""


# ---------------------------------------------------------------------------
# Collision partners
# ---------------------------------------------------------------------------


def ortho_para_ratio(temperature: np.ndarray | float) -> np.ndarray:
    """Thermal ortho/para H2 ratio, min(3, 9·exp(−170.6 / T))."""
    t = np.maximum(np.asarray(temperature, dtype=np.float64), 1e-3)
    return np.minimum(_OPR_HIGH_T, 9.0 * np.exp(-_OPR_ENERGY_K / t))


class CollisionPartner(Enum):
    """Closed set of collision partners, numbered as in LAMDA files."""

    H2 = 1
    PARA_H2 = 2
    ORTHO_H2 = 3
    ELECTRON = 4
    H = 5
    HE = 6
    H_PLUS = 7

    def number_density(
        self,
        n_h2: np.ndarray,
        temperature: np.ndarray,
        explicit: dict[CollisionPartner, np.ndarray] | None = None,
    ) -> np.ndarray:
        """Number density of this partner [m⁻³].

        Parameters
        ----------
        n_h2 : np.ndarray
            Total H2 number density [m⁻³].
        temperature : np.ndarray
            Gas temperature [K], used for the ortho/para split.
        explicit : dict, optional
            Densities supplied directly by the physical model. An entry
            for this partner takes precedence over the derived value.

        Returns
        -------
        np.ndarray
            Same shape as ``n_h2``.
        """
        if explicit and self in explicit:
            return np.asarray(explicit[self], dtype=np.float64)

        n_h2 = np.asarray(n_h2, dtype=np.float64)
        if self is CollisionPartner.H2:
            return n_h2.copy()
        if self is CollisionPartner.PARA_H2:
            return n_h2 / (1.0 + ortho_para_ratio(temperature))
        if self is CollisionPartner.ORTHO_H2:
            opr = ortho_para_ratio(temperature)
            return n_h2 * opr / (1.0 + opr)
        if self is CollisionPartner.HE:
            return _HELIUM_PER_H2 * n_h2
        return np.zeros_like(n_h2)


@dataclass(frozen=True)
class CollisionRateTable:
    """Downward collision rates for one partner.

    Attributes
    ----------
    partner : CollisionPartner
    temperatures : np.ndarray
        Tabulated temperatures [K], strictly increasing. Shape: (n_temps,).
    upper : np.ndarray
        Upper level of each collisional transition. Shape: (n_trans,).
    lower : np.ndarray
        Lower level. Shape: (n_trans,).
    down_rates : np.ndarray
        Rate coefficients [m³/s]. Shape: (n_trans, n_temps).
    """

    partner: CollisionPartner
    temperatures: np.ndarray
    upper: np.ndarray
    lower: np.ndarray
    down_rates: np.ndarray

    @property
    def num_transitions(self) -> int:
        return int(self.upper.shape[0])

    def bin_and_coeff(self, temperature: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Temperature bin and linear interpolation coefficient.

        Temperatures below the table clamp to the first entry (coeff 0),
        above it to the last (coeff 1 in the last bin).

        Returns
        -------
        t_binlow : np.ndarray (int64)
        interp_coeff : np.ndarray (float64)
        """
        t = np.atleast_1d(np.asarray(temperature, dtype=np.float64))
        temps = self.temperatures
        if temps.shape[0] == 1:
            return np.zeros(t.shape, dtype=np.int64), np.zeros(t.shape, dtype=np.float64)

        ibin = np.clip(np.searchsorted(temps, t, side="right") - 1, 0, temps.shape[0] - 2)
        coeff = (t - temps[ibin]) / (temps[ibin + 1] - temps[ibin])
        return ibin.astype(np.int64), np.clip(coeff, 0.0, 1.0)

    def downward_rates(self, t_binlow: int, interp_coeff: float) -> np.ndarray:
        """Interpolated downward rate coefficients [m³/s]. Shape: (n_trans,)."""
        if self.temperatures.shape[0] == 1:
            return self.down_rates[:, 0].copy()
        lo = self.down_rates[:, t_binlow]
        hi = self.down_rates[:, t_binlow + 1]
        return lo + interp_coeff * (hi - lo)


# ---------------------------------------------------------------------------
# Species record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MolecularData:
    """Immutable line/level/rate data of one species.

    Attributes
    ----------
    name : str
    molecular_weight : float
        Mass in atomic mass units.
    level_energies : np.ndarray
        Level energies [cm⁻¹]. Shape: (n_levels,).
    level_weights : np.ndarray
        Statistical weights g. Shape: (n_levels,).
    line_upper, line_lower : np.ndarray
        Upper/lower level of each line. Shape: (n_lines,).
    einstein_a : np.ndarray
        Spontaneous emission rates [1/s]. Shape: (n_lines,).
    frequencies : np.ndarray
        Rest frequencies [Hz]. Shape: (n_lines,).
    einstein_b_ul, einstein_b_lu : np.ndarray
        Stimulated emission/absorption coefficients. Shape: (n_lines,).
    background : np.ndarray
        Background intensity per line [W m⁻² Hz⁻¹ sr⁻¹]. Shape: (n_lines,).
    collision_tables : tuple[CollisionRateTable, ...]
    """

    name: str
    molecular_weight: float
    level_energies: np.ndarray
    level_weights: np.ndarray
    line_upper: np.ndarray
    line_lower: np.ndarray
    einstein_a: np.ndarray
    frequencies: np.ndarray
    einstein_b_ul: np.ndarray
    einstein_b_lu: np.ndarray
    background: np.ndarray
    collision_tables: tuple[CollisionRateTable, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        n_lev = self.level_energies.shape[0]
        n_lin = self.line_upper.shape[0]
        if n_lev < 2:
            raise MolecularDataError(f"{self.name}: at least 2 levels needed, got {n_lev}")
        if self.level_weights.shape != (n_lev,):
            raise MolecularDataError(f"{self.name}: level weight count != level count")
        for arr_name in ("line_lower", "einstein_a", "frequencies", "einstein_b_ul",
                         "einstein_b_lu", "background"):
            if getattr(self, arr_name).shape != (n_lin,):
                raise MolecularDataError(f"{self.name}: {arr_name} count != line count {n_lin}")
        if n_lin and (self.line_upper.max() >= n_lev or self.line_lower.min() < 0):
            raise MolecularDataError(f"{self.name}: line level index out of range")
        if np.any(self.line_upper <= self.line_lower):
            raise MolecularDataError(f"{self.name}: line upper level must lie above lower level")
        if np.any(self.frequencies <= 0.0) or np.any(self.einstein_a < 0.0):
            raise MolecularDataError(f"{self.name}: non-positive frequency or negative A")
        for table in self.collision_tables:
            if table.down_rates.shape != (table.num_transitions, table.temperatures.shape[0]):
                raise MolecularDataError(
                    f"{self.name}: {table.partner.name} rate table shape mismatch"
                )
            if table.num_transitions and (
                table.upper.max() >= n_lev or table.lower.min() < 0
            ):
                raise MolecularDataError(
                    f"{self.name}: {table.partner.name} level index out of range"
                )
            if np.any(np.diff(table.temperatures) <= 0.0):
                raise MolecularDataError(
                    f"{self.name}: {table.partner.name} temperatures not increasing"
                )

    @property
    def num_levels(self) -> int:
        return int(self.level_energies.shape[0])

    @property
    def num_lines(self) -> int:
        return int(self.line_upper.shape[0])


def build_molecular_data(
    name: str,
    molecular_weight: float,
    level_energies: np.ndarray,
    level_weights: np.ndarray,
    line_upper: np.ndarray,
    line_lower: np.ndarray,
    einstein_a: np.ndarray,
    frequencies: np.ndarray,
    collision_tables: tuple[CollisionRateTable, ...],
    constants: PhysicalConstants,
) -> MolecularData:
    """Assemble a :class:`MolecularData`, deriving B coefficients and the CMB field.

    Raises
    ------
    MolecularDataError
        If any array is inconsistent.
    """
    level_weights = np.asarray(level_weights, dtype=np.float64)
    line_upper = np.asarray(line_upper, dtype=np.int64)
    line_lower = np.asarray(line_lower, dtype=np.int64)
    einstein_a = np.asarray(einstein_a, dtype=np.float64)
    frequencies = np.asarray(frequencies, dtype=np.float64)

    if line_upper.shape != line_lower.shape:
        raise MolecularDataError(f"{name}: upper/lower level arrays differ in length")
    if line_upper.size and (line_upper.max() >= level_weights.shape[0] or line_lower.min() < 0):
        raise MolecularDataError(f"{name}: line level index out of range")
    if np.any(frequencies <= 0.0):
        raise MolecularDataError(f"{name}: non-positive line frequency")

    c = constants.speed_of_light
    b_ul = einstein_a * c ** 2 / (2.0 * constants.planck * frequencies ** 3)
    b_lu = level_weights[line_upper] / level_weights[line_lower] * b_ul

    return MolecularData(
        name=name,
        molecular_weight=float(molecular_weight),
        level_energies=np.asarray(level_energies, dtype=np.float64),
        level_weights=level_weights,
        line_upper=line_upper,
        line_lower=line_lower,
        einstein_a=einstein_a,
        frequencies=frequencies,
        einstein_b_ul=b_ul,
        einstein_b_lu=b_lu,
        background=planck_intensity(frequencies, constants.cmb_temperature_K, constants),
        collision_tables=tuple(collision_tables),
    )


# ---------------------------------------------------------------------------
# Radiation and thermodynamics
# ---------------------------------------------------------------------------


def planck_intensity(
    frequency: np.ndarray | float,
    temperature: np.ndarray | float,
    constants: PhysicalConstants,
) -> np.ndarray:
    """Planck function B_ν(T) [W m⁻² Hz⁻¹ sr⁻¹]; zero for T ≤ 0."""
    nu = np.asarray(frequency, dtype=np.float64)
    t = np.asarray(temperature, dtype=np.float64)
    h, k, c = constants.planck, constants.boltzmann, constants.speed_of_light

    safe_t = np.where(t > 0.0, t, 1.0)
    x = h * nu / (k * safe_t)
    with np.errstate(over="ignore"):
        bnu = 2.0 * h * nu ** 3 / c ** 2 / np.expm1(np.minimum(x, 700.0))
    return np.where(t > 0.0, bnu, 0.0)


def lte_populations(
    mol: MolecularData,
    temperature: np.ndarray | float,
    constants: PhysicalConstants,
) -> np.ndarray:
    """Boltzmann level populations at the given temperature(s).

    Returns
    -------
    np.ndarray
        Shape (n_levels,) for scalar input, (n_points, n_levels) otherwise;
        each row sums to 1.
    """
    t = np.asarray(temperature, dtype=np.float64)
    scalar = t.ndim == 0
    t = np.maximum(np.atleast_1d(t), 1e-3)

    boltz = -constants.hckb * mol.level_energies[None, :] / t[:, None]
    boltz -= boltz.max(axis=1, keepdims=True)
    pops = mol.level_weights[None, :] * np.exp(boltz)
    pops /= pops.sum(axis=1, keepdims=True)
    return pops[0] if scalar else pops


def line_width(
    doppler: np.ndarray,
    temperature: np.ndarray,
    molecular_weight: float,
    constants: PhysicalConstants,
) -> np.ndarray:
    """Total Doppler b: sqrt(b_turb² + 2kT/m) [m/s]."""
    thermal = 2.0 * constants.boltzmann * temperature / (
        molecular_weight * constants.atomic_mass_unit
    )
    return np.sqrt(doppler ** 2 + thermal)


# ---------------------------------------------------------------------------
# Dust opacity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DustOpacity:
    """Dust mass opacity κ(ν) per unit dust mass.

    Either a power law κ_ref (ν / ν_ref)^β or a tabulated curve
    interpolated linearly in log-log space.
    """

    kappa_ref: float
    reference_frequency: float
    beta: float
    table_frequency: np.ndarray | None = None
    table_kappa: np.ndarray | None = None

    def kappa(self, frequency: np.ndarray | float) -> np.ndarray:
        """Opacity [m²/kg of dust]."""
        nu = np.asarray(frequency, dtype=np.float64)
        if self.table_frequency is not None:
            return np.exp(np.interp(
                np.log(nu), np.log(self.table_frequency), np.log(self.table_kappa)
            ))
        return self.kappa_ref * (nu / self.reference_frequency) ** self.beta

    def absorption(
        self,
        frequency: float,
        n_h2: np.ndarray,
        gas_to_dust: np.ndarray,
        constants: PhysicalConstants,
    ) -> np.ndarray:
        """Continuum absorption coefficient knu [1/m] per point."""
        rho_dust = _MEAN_MOLECULAR_WEIGHT * constants.atomic_mass_unit * n_h2 / gas_to_dust
        return float(self.kappa(frequency)) * rho_dust


def load_dust_opacity(config: DustConfig, constants: PhysicalConstants) -> DustOpacity:
    """Build the dust opacity from configuration.

    Raises
    ------
    FileNotFoundError
        If a configured opacity table does not exist.
    ValueError
        If the table is malformed.
    """
    # cm²/g → m²/kg
    kappa_ref = config.kappa_ref_cm2_g * 0.1
    nu_ref = config.reference_frequency_GHz * 1e9

    if config.opacity_file is None:
        return DustOpacity(kappa_ref=kappa_ref, reference_frequency=nu_ref, beta=config.beta)

    path = Path(config.opacity_file)
    if not path.exists():
        raise FileNotFoundError(f"Dust opacity table not found: {path}")

    table = np.loadtxt(path, dtype=np.float64, ndmin=2)
    if table.shape[1] < 2 or table.shape[0] < 2:
        raise ValueError(f"Dust opacity table {path} needs ≥ 2 rows of (lambda, kappa)")
    if np.any(table[:, :2] <= 0.0):
        raise ValueError(f"Dust opacity table {path} has non-positive entries")

    # wavelength [µm] → frequency [Hz], sorted ascending for interpolation
    freq = constants.speed_of_light / (table[:, 0] * 1e-6)
    order = np.argsort(freq)
    logger.info("Loaded dust opacity table %s (%d rows)", path.name, table.shape[0])

    return DustOpacity(
        kappa_ref=kappa_ref,
        reference_frequency=nu_ref,
        beta=config.beta,
        table_frequency=freq[order],
        table_kappa=table[order, 1] * 0.1,
    )
