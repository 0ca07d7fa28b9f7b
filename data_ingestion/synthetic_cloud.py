"""Built-in physical models of the emitting source.

A physical model answers, for arbitrary positions, the local H2 density,
gas and dust temperature, molecular abundances, micro-turbulent line
width, bulk velocity, magnetic field and gas-to-dust ratio. All callbacks
are vectorized over an (M, 3) array of positions in metres.

Models
------
``power_law_infall``
    Spherical core with power-law density and temperature profiles and
    free-fall infall onto a central mass:

        n(r) = n_ref (r / r_ref)^p
        T(r) = max(T_min, T_ref (r / r_ref)^q)
        v(r) = −√(2 G M / r) r̂

``uniform``
    Static sphere with constant density and temperature. Useful as an
    analytic test case (optically thin flux, LTE limit).

References
----------
- Shu, F. H. (1977). "Self-similar collapse of isothermal spheres and
  star formation." ApJ 214, 488-497.
"""

from __future__ import annotations

import logging

import numpy as np

from core_engine.constants import ModelConfig, PhysicalConstants
from core_engine.molecular import CollisionPartner

logger = logging.getLogger(__name__)


class PhysicalModel:
    """Base class for source models.

    Subclasses override the callbacks they need; the defaults describe a
    static, field-free, isothermal medium with dust at the gas temperature.
    """

    def __init__(self, abundances: np.ndarray, doppler_ms: float = 0.0,
                 gas_to_dust: float = 100.0,
                 magnetic_field_T: tuple[float, float, float] = (0.0, 0.0, 0.0)) -> None:
        self._abundances = np.asarray(abundances, dtype=np.float64)
        self._doppler = float(doppler_ms)
        self._gas_to_dust = float(gas_to_dust)
        self._bfield = np.asarray(magnetic_field_T, dtype=np.float64)

    @property
    def num_species(self) -> int:
        return int(self._abundances.shape[0])

    def density(self, positions: np.ndarray) -> np.ndarray:
        """H2 number density [m⁻³]. Shape: (M,)."""
        raise NotImplementedError

    def temperature(self, positions: np.ndarray) -> np.ndarray:
        """Gas kinetic temperature [K]. Shape: (M,)."""
        raise NotImplementedError

    def dust_temperature(self, positions: np.ndarray) -> np.ndarray:
        return self.temperature(positions)

    def abundance(self, positions: np.ndarray) -> np.ndarray:
        """Abundance of each species relative to H2. Shape: (M, n_species)."""
        return np.broadcast_to(
            self._abundances, (positions.shape[0], self._abundances.shape[0])
        ).copy()

    def doppler(self, positions: np.ndarray) -> np.ndarray:
        """Micro-turbulent Doppler b [m/s]. Shape: (M,)."""
        return np.full(positions.shape[0], self._doppler)

    def velocity(self, positions: np.ndarray) -> np.ndarray:
        """Bulk velocity [m/s]. Shape: (M, 3)."""
        return np.zeros((positions.shape[0], 3))

    def magnetic_field(self, positions: np.ndarray) -> np.ndarray:
        """Magnetic field [T]. Shape: (M, 3)."""
        return np.broadcast_to(self._bfield, (positions.shape[0], 3)).copy()

    def gas_to_dust(self, positions: np.ndarray) -> np.ndarray:
        return np.full(positions.shape[0], self._gas_to_dust)

    def partner_densities(self, positions: np.ndarray) -> dict[CollisionPartner, np.ndarray]:
        """Explicit collision-partner densities; empty means derive from H2."""
        return {}


class UniformSphere(PhysicalModel):
    """Static sphere of constant density and temperature."""

    def __init__(self, density_m3: float, temperature_K: float, abundances: np.ndarray,
                 doppler_ms: float = 0.0, gas_to_dust: float = 100.0,
                 magnetic_field_T: tuple[float, float, float] = (0.0, 0.0, 0.0)) -> None:
        super().__init__(abundances, doppler_ms, gas_to_dust, magnetic_field_T)
        self._density = float(density_m3)
        self._temperature = float(temperature_K)

    def density(self, positions: np.ndarray) -> np.ndarray:
        return np.full(positions.shape[0], self._density)

    def temperature(self, positions: np.ndarray) -> np.ndarray:
        return np.full(positions.shape[0], self._temperature)


class PowerLawInfall(PhysicalModel):
    """Power-law core collapsing onto a central point mass."""

    def __init__(self, config: ModelConfig, constants: PhysicalConstants,
                 abundances: np.ndarray, min_radius_m: float) -> None:
        super().__init__(abundances, config.doppler_ms, config.gas_to_dust,
                         config.magnetic_field_T)
        self._r_ref = config.reference_radius_au * constants.astronomical_unit
        self._n_ref = config.density_ref_m3
        self._p = config.density_index
        self._t_ref = config.temperature_ref_K
        self._q = config.temperature_index
        self._t_min = config.temperature_min_K
        self._gm = constants.gravitational * config.central_mass_msun * constants.solar_mass
        self._r_min = float(min_radius_m)

    def _radius(self, positions: np.ndarray) -> np.ndarray:
        return np.maximum(np.linalg.norm(positions, axis=1), self._r_min)

    def density(self, positions: np.ndarray) -> np.ndarray:
        return self._n_ref * (self._radius(positions) / self._r_ref) ** self._p

    def temperature(self, positions: np.ndarray) -> np.ndarray:
        t = self._t_ref * (self._radius(positions) / self._r_ref) ** self._q
        return np.maximum(t, self._t_min)

    def velocity(self, positions: np.ndarray) -> np.ndarray:
        if self._gm <= 0.0:
            return np.zeros((positions.shape[0], 3))
        r = self._radius(positions)
        speed = np.sqrt(2.0 * self._gm / r)
        return -speed[:, None] * positions / r[:, None]


def build_physical_model(
    config: ModelConfig,
    constants: PhysicalConstants,
    abundances: np.ndarray,
    min_radius_m: float,
) -> PhysicalModel:
    """Construct the configured built-in model.

    Raises
    ------
    ValueError
        If ``config.model_type`` is not recognized.
    """
    logger.info(
        "Physical model: type=%s, n_ref=%.3e m^-3, T_ref=%.1f K, b=%.0f m/s, %d species",
        config.model_type,
        config.density_ref_m3,
        config.temperature_ref_K,
        config.doppler_ms,
        len(abundances),
    )

    if config.model_type == "power_law_infall":
        return PowerLawInfall(config, constants, abundances, min_radius_m)
    if config.model_type == "uniform":
        return UniformSphere(
            density_m3=config.density_ref_m3,
            temperature_K=config.temperature_ref_K,
            abundances=abundances,
            doppler_ms=config.doppler_ms,
            gas_to_dust=config.gas_to_dust,
            magnetic_field_T=config.magnetic_field_T,
        )
    raise ValueError(
        f"Unknown model type '{config.model_type}'. "
        f"Valid options: ['power_law_infall', 'uniform']"
    )
