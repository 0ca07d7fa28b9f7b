"""Tests for image synthesis.

Continuum images of the uniform test cloud have closed-form limits: in the
optically thin case the total flux is j V / d², with V the volume covered
by the grid, and in the opaque case the central pixel shows the Planck
function of the dust.
"""

from __future__ import annotations

import dataclasses
import math

import numpy as np
import pytest
from scipy.spatial import ConvexHull

from conftest import CLOUD_RADIUS_M, CLOUD_TEMPERATURE_K
from core_engine.blends import find_blends
from core_engine.molecular import DustOpacity, planck_intensity
from core_engine.raytracer import (
    ImageSpec,
    Raytracer,
    _polarization_factors,
    rotation_matrix,
    unit_factor,
)
from line_solver.populations import init_species_states

_DISTANCE_M = 4.3e18          # ~140 pc
_FREQUENCY = 230.0e9          # Hz
_THIN_KAPPA = 0.01            # m^2/kg
_THICK_KAPPA = 1.0e7          # m^2/kg


# ===================================================================
# FIXTURES
# ===================================================================


def make_raytracer(mesh, co_molecule, constants, tables, default_config, kappa, **changes):
    dust = DustOpacity(kappa_ref=kappa, reference_frequency=_FREQUENCY, beta=0.0)
    states = init_species_states(mesh, [co_molecule], dust, constants)
    blends = find_blends([co_molecule], default_config.solver.max_blend_delta_v_ms,
                         constants.speed_of_light)
    settings = {"n_threads": 1, "antialias": 1}
    settings.update(changes)
    config = dataclasses.replace(default_config.raytracer, **settings)
    return Raytracer(mesh, [co_molecule], states, blends, tables, dust, constants, config)


def continuum_spec(pixels: int, extent_m: float, unit: str = "si",
                   polarization: bool = False, theta: float = 0.4, phi: float = 0.3) -> ImageSpec:
    return ImageSpec(
        name="cont",
        pixels=pixels,
        pixel_size_rad=extent_m / pixels / _DISTANCE_M,
        distance_m=_DISTANCE_M,
        channel_offsets=np.zeros(1),
        source_velocity=0.0,
        theta=theta,
        phi=phi,
        unit=unit,
        polarization=polarization,
        frequency=_FREQUENCY,
    )


@pytest.fixture(scope="module")
def thin_tracer(small_mesh, co_molecule, constants, tables, default_config):
    return make_raytracer(small_mesh, co_molecule, constants, tables, default_config, _THIN_KAPPA)


@pytest.fixture(scope="module")
def thick_tracer(small_mesh, co_molecule, constants, tables, default_config):
    return make_raytracer(small_mesh, co_molecule, constants, tables, default_config, _THICK_KAPPA)


def thin_emissivity(tracer, constants) -> float:
    mesh = tracer.mesh
    alpha = tracer.dust.absorption(_FREQUENCY, mesh.density, mesh.gas_to_dust, constants)[0]
    return float(alpha * planck_intensity(_FREQUENCY, CLOUD_TEMPERATURE_K, constants))


# ===================================================================
# GEOMETRY AND UNITS
# ===================================================================


class TestImageFrame:
    def test_rotation_is_orthonormal(self) -> None:
        rot = rotation_matrix(0.7, -1.2)
        np.testing.assert_allclose(rot @ rot.T, np.eye(3), atol=1e-14)

    def test_face_on_looks_along_z(self) -> None:
        rot = rotation_matrix(0.0, 0.0)
        np.testing.assert_allclose(rot[2], [0.0, 0.0, 1.0])

    def test_unit_factors(self, constants) -> None:
        spec = continuum_spec(8, CLOUD_RADIUS_M)
        assert unit_factor(spec, "si", constants) == 1.0
        kelvin = constants.speed_of_light ** 2 / (2.0 * constants.boltzmann * _FREQUENCY ** 2)
        assert unit_factor(spec, "kelvin", constants) == pytest.approx(kelvin)
        assert unit_factor(spec, "jansky_per_pixel", constants) == pytest.approx(
            spec.pixel_size_rad ** 2 / 1e-26
        )
        with pytest.raises(ValueError, match="Unknown image unit"):
            unit_factor(spec, "furlong", constants)

    def test_from_config(self, default_config, co_molecule, constants) -> None:
        line_cfg, cont_cfg = default_config.images
        line = ImageSpec.from_config(line_cfg, [co_molecule], constants)
        assert line.is_line
        assert line.frequency == co_molecule.frequencies[1]
        assert line.num_channels == 40
        np.testing.assert_allclose(line.channel_offsets, -line.channel_offsets[::-1])

        cont = ImageSpec.from_config(cont_cfg, [co_molecule], constants)
        assert not cont.is_line
        assert cont.frequency == pytest.approx(230e9)
        assert cont.polarization

    def test_from_config_rejects_missing_transition(self, default_config, co_molecule, constants) -> None:
        bad = dataclasses.replace(default_config.images[0], transition=17)
        with pytest.raises(ValueError, match="no transition"):
            ImageSpec.from_config(bad, [co_molecule], constants)

    def test_unknown_algorithm(self, small_mesh, co_molecule, constants, tables, default_config) -> None:
        with pytest.raises(ValueError, match="Unknown raytracing algorithm"):
            make_raytracer(small_mesh, co_molecule, constants, tables, default_config,
                           _THIN_KAPPA, algorithm="bogus")


# ===================================================================
# CONTINUUM LIMITS
# ===================================================================


class TestThinContinuum:
    """Optically thin flux equals emissivity times emitting volume."""

    def test_total_flux_matches_hull_volume(self, thin_tracer, small_mesh, constants) -> None:
        spec = continuum_spec(48, 2.4 * CLOUD_RADIUS_M, unit="jansky_per_pixel")
        image = thin_tracer.render(spec)

        volume = ConvexHull(small_mesh.positions).volume
        expected_jy = thin_emissivity(thin_tracer, constants) * volume / _DISTANCE_M ** 2 / 1e-26
        flux = float(image.total_flux(constants)[0])
        assert flux == pytest.approx(expected_jy, rel=0.03), (
            f"Thin flux {flux:.4e} Jy, expected {expected_jy:.4e} Jy"
        )
        assert image.tau.max() < 1e-3

    def test_nearest_algorithm_fills_bounding_sphere(
        self, small_mesh, co_molecule, constants, tables, default_config
    ) -> None:
        tracer = make_raytracer(small_mesh, co_molecule, constants, tables, default_config,
                                _THIN_KAPPA, algorithm="nearest")
        spec = continuum_spec(48, 2.4 * CLOUD_RADIUS_M, unit="jansky_per_pixel")
        image = tracer.render(spec)

        volume = 4.0 / 3.0 * math.pi * tracer.domain_radius ** 3
        expected_jy = thin_emissivity(tracer, constants) * volume / _DISTANCE_M ** 2 / 1e-26
        assert float(image.total_flux(constants)[0]) == pytest.approx(expected_jy, rel=0.03)

    def test_pixels_outside_source_are_missed(self, thin_tracer) -> None:
        spec = continuum_spec(9, 2.7 * CLOUD_RADIUS_M * 9 / 8)
        image = thin_tracer.render(spec)
        for iy, ix in ((0, 0), (0, 8), (8, 0), (8, 8)):
            assert image.intensity[iy, ix, 0] == 0.0
        assert image.num_missed >= 4
        assert image.intensity[4, 4, 0] > 0.0
        np.testing.assert_array_equal(image.num_rays, 1)

    def test_unit_conversion_is_a_scale(self, thin_tracer, constants) -> None:
        si = thin_tracer.render(continuum_spec(5, CLOUD_RADIUS_M, unit="si"))
        kelvin = thin_tracer.render(continuum_spec(5, CLOUD_RADIUS_M, unit="kelvin"))
        factor = unit_factor(si.spec, "kelvin", constants)
        np.testing.assert_allclose(kelvin.intensity, si.intensity * factor, rtol=1e-12)

    def test_tau_unit_returns_optical_depth(self, thin_tracer, constants) -> None:
        image = thin_tracer.render(continuum_spec(5, CLOUD_RADIUS_M, unit="tau"))
        np.testing.assert_array_equal(image.intensity, image.tau)
        with pytest.raises(ValueError):
            image.total_flux(constants)


class TestThickContinuum:
    """An opaque cloud radiates as a black body at the dust temperature."""

    def test_central_pixel_is_planck(self, thick_tracer, constants) -> None:
        image = thick_tracer.render(continuum_spec(5, CLOUD_RADIUS_M))
        expected = planck_intensity(_FREQUENCY, CLOUD_TEMPERATURE_K, constants)
        assert image.intensity[2, 2, 0] == pytest.approx(expected, rel=1e-4)
        assert image.tau[2, 2, 0] > 100.0

    def test_kelvin_brightness(self, thick_tracer, constants) -> None:
        image = thick_tracer.render(continuum_spec(5, CLOUD_RADIUS_M, unit="kelvin"))
        b_nu = planck_intensity(_FREQUENCY, CLOUD_TEMPERATURE_K, constants)
        rj = constants.speed_of_light ** 2 / (2.0 * constants.boltzmann * _FREQUENCY ** 2) * b_nu
        assert image.intensity[2, 2, 0] == pytest.approx(rj, rel=1e-4)
        # Rayleigh-Jeans temperature falls below the physical one at 230 GHz
        assert image.intensity[2, 2, 0] < CLOUD_TEMPERATURE_K


# ===================================================================
# POLARISATION
# ===================================================================


class TestPolarization:
    def test_no_field_is_unpolarized(self) -> None:
        factors = _polarization_factors(np.zeros((4, 3)), rotation_matrix(0.3, 0.1), 0.15)
        np.testing.assert_array_equal(factors[0], 1.0)
        np.testing.assert_array_equal(factors[1:], 0.0)

    def test_field_along_line_of_sight(self) -> None:
        bfield = np.tile([0.0, 0.0, 1e-10], (3, 1))
        factors = _polarization_factors(bfield, rotation_matrix(0.0, 0.0), 0.15)
        np.testing.assert_allclose(factors[0], 1.0 + 0.15 / 3.0)
        np.testing.assert_array_equal(factors[1:], 0.0)

    def test_field_in_sky_plane(self, small_mesh, co_molecule, constants, tables, default_config) -> None:
        mesh = dataclasses.replace(
            small_mesh, bfield=np.tile([0.0, 0.0, 1e-10], (small_mesh.num_points, 1))
        )
        tracer = make_raytracer(mesh, co_molecule, constants, tables, default_config, _THIN_KAPPA)
        p = tracer.config.max_polarization
        spec = continuum_spec(8, 2.4 * CLOUD_RADIUS_M, polarization=True,
                              theta=0.5 * math.pi, phi=0.0)
        image = tracer.render(spec)

        i_tot, q_tot, u_tot = image.stokes.sum(axis=(0, 1))
        assert i_tot > 0.0
        assert q_tot / i_tot == pytest.approx(-p / (1.0 - p / 6.0), rel=1e-9)
        assert abs(u_tot / i_tot) < 1e-10

    def test_stokes_absent_without_polarization(self, thin_tracer) -> None:
        image = thin_tracer.render(continuum_spec(4, CLOUD_RADIUS_M))
        assert image.stokes is None


# ===================================================================
# LINE IMAGES
# ===================================================================


class TestLineImage:
    """CO 2-1 from the static LTE cloud."""

    @pytest.fixture(scope="class")
    def line_image(self, thin_tracer, co_molecule):
        spec = ImageSpec(
            name="co",
            pixels=9,
            pixel_size_rad=0.3 * CLOUD_RADIUS_M / _DISTANCE_M,
            distance_m=_DISTANCE_M,
            channel_offsets=(np.arange(7) - 3.0) * 100.0,
            source_velocity=0.0,
            theta=0.3,
            phi=0.2,
            unit="kelvin",
            polarization=False,
            frequency=float(co_molecule.frequencies[1]),
            species=0,
            transition=1,
        )
        return thin_tracer.render(spec)

    def test_static_spectrum_is_symmetric(self, line_image) -> None:
        spectrum = line_image.intensity[4, 4]
        np.testing.assert_allclose(spectrum, spectrum[::-1], rtol=1e-12)
        assert spectrum[3] == pytest.approx(spectrum.max(), rel=1e-9)
        assert spectrum[0] < spectrum[3]

    def test_line_centre_is_opaque(self, line_image) -> None:
        assert line_image.tau[4, 4, 3] > 1.0
        assert line_image.tau[4, 4, 3] > line_image.tau[4, 4, 0]

    def test_corners_miss_the_source(self, line_image) -> None:
        np.testing.assert_array_equal(line_image.intensity[0, 0], 0.0)
        assert line_image.num_missed >= 4

    def test_moment0(self, line_image) -> None:
        np.testing.assert_allclose(
            line_image.moment0(), line_image.intensity.sum(axis=-1) * 100.0
        )

    def test_trace_ray_matches_render(self, thin_tracer, line_image) -> None:
        spec = line_image.spec
        z_los = rotation_matrix(spec.theta, spec.phi)[2]
        origin = 2.0 * thin_tracer.domain_radius * z_los
        intensity, tau, _, hit = thin_tracer.trace_ray(origin, -z_los, spec)
        assert hit
        factor = unit_factor(spec, "kelvin", thin_tracer.constants)
        np.testing.assert_allclose(intensity * factor, line_image.intensity[4, 4], rtol=1e-12)
        np.testing.assert_allclose(tau, line_image.tau[4, 4], rtol=1e-12)


class TestDeterminism:
    def test_antialiased_image_independent_of_threads(
        self, small_mesh, co_molecule, constants, tables, default_config
    ) -> None:
        spec = continuum_spec(6, 2.4 * CLOUD_RADIUS_M)
        images = [
            make_raytracer(small_mesh, co_molecule, constants, tables, default_config,
                           _THIN_KAPPA, antialias=4, n_threads=n).render(spec)
            for n in (1, 3)
        ]
        np.testing.assert_array_equal(images[0].intensity, images[1].intensity)
        np.testing.assert_array_equal(images[0].tau, images[1].tau)
        np.testing.assert_array_equal(images[0].num_rays, 4)


class TestBlendedLineImage:
    """A blended partner appears at its own Doppler offset."""

    def test_higher_frequency_partner_is_blueshifted(
        self, small_mesh, co_molecule, constants, tables, default_config
    ) -> None:
        c = constants.speed_of_light
        offset = 3000.0
        partner = dataclasses.replace(
            co_molecule, name="CO_shifted",
            frequencies=co_molecule.frequencies / (1.0 - offset / c),
        )
        # Only the partner emits; the imaged species has no molecules.
        abundance = np.column_stack([
            np.zeros(small_mesh.num_points), np.full(small_mesh.num_points, 1e-4)
        ])
        mesh = dataclasses.replace(small_mesh, abundance=abundance)
        molecules = [co_molecule, partner]

        dust = DustOpacity(kappa_ref=_THIN_KAPPA, reference_frequency=_FREQUENCY, beta=0.0)
        states = init_species_states(mesh, molecules, dust, constants)
        blends = find_blends(molecules, default_config.solver.max_blend_delta_v_ms, c)
        assert blends.blends_of(0, 1)[0].delta_v == pytest.approx(offset, rel=1e-9)

        config = dataclasses.replace(default_config.raytracer, n_threads=1, antialias=1)
        tracer = Raytracer(mesh, molecules, states, blends, tables, dust, constants, config)
        spec = ImageSpec(
            name="co_blend",
            pixels=5,
            pixel_size_rad=0.3 * CLOUD_RADIUS_M / _DISTANCE_M,
            distance_m=_DISTANCE_M,
            channel_offsets=(np.arange(13) - 6.0) * 500.0,
            source_velocity=0.0,
            theta=0.3,
            phi=0.2,
            unit="kelvin",
            polarization=False,
            frequency=float(co_molecule.frequencies[1]),
            species=0,
            transition=1,
        )
        spectrum = tracer.render(spec).intensity[2, 2]
        peak = spec.channel_offsets[int(np.argmax(spectrum))]
        assert peak == pytest.approx(-offset), f"Partner peaks at {peak:+.0f} m/s"
        assert spectrum[0] > 10.0 * spectrum[-1]
