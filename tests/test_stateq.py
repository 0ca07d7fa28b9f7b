"""Tests for the statistical equilibrium solver.

A two-level molecule with a vanishing molecular density sees only the
background field, so the solved ratio can be compared with the closed
form n_u / n_l = (C_lu + B_lu J) / (A + C_ul + B_ul J).
"""

from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from core_engine.molecular import (
    CollisionPartner,
    CollisionRateTable,
    build_molecular_data,
    lte_populations,
    planck_intensity,
)
from line_solver.photon import PhotonSample
from line_solver.populations import LineCoefficients, SpeciesState
from line_solver.stateq import (
    StateqStatus,
    collision_rates,
    rate_matrix,
    relative_change,
    remnant,
    solve_point,
)

_N_H2 = 1.0e9           # m^-3
_K_DOWN = 3.0e-17       # m^3/s
_TEMPERATURE = 20.0     # K
_DOPB = 200.0           # m/s
_N_PHOTONS = 64


# ===================================================================
# FIXTURES
# ===================================================================


def make_two_level(constants, einstein_a: float = 7.2e-8, with_collisions: bool = True):
    tables = ()
    if with_collisions:
        tables = (CollisionRateTable(
            partner=CollisionPartner.H2,
            temperatures=np.array([10.0, 100.0]),
            upper=np.array([1]),
            lower=np.array([0]),
            down_rates=np.array([[_K_DOWN, _K_DOWN]]),
        ),)
    return build_molecular_data(
        name="twolevel",
        molecular_weight=28.0,
        level_energies=np.array([0.0, 3.845]),
        level_weights=np.array([1.0, 3.0]),
        line_upper=np.array([1]),
        line_lower=np.array([0]),
        einstein_a=np.array([einstein_a]),
        frequencies=np.array([115.27e9]),
        collision_tables=tables,
        constants=constants,
    )


def single_point_state(mol, nmol: float = 1e-10) -> SpeciesState:
    n_part = len(mol.collision_tables)
    t_binlow = np.zeros((n_part, 1), dtype=np.int64)
    interp = np.zeros((n_part, 1))
    for k, table in enumerate(mol.collision_tables):
        t_binlow[k], interp[k] = table.bin_and_coeff(np.array([_TEMPERATURE]))
    return SpeciesState(
        pops=np.array([[0.5, 0.5]]),
        dopb=np.array([_DOPB]),
        binv=np.array([1.0 / _DOPB]),
        nmol=np.array([nmol]),
        knu=np.zeros((1, 1)),
        dust=np.zeros((1, 1)),
        t_binlow=t_binlow,
        interp_coeff=interp,
        partner_density=np.full((n_part, 1), _N_H2),
    )


def uniform_sample(intensity: float) -> PhotonSample:
    delta_v = np.linspace(-2.0 * _DOPB, 2.0 * _DOPB, _N_PHOTONS)
    return PhotonSample(
        phot=np.full((1, _N_PHOTONS), intensity),
        ds_local=np.full(_N_PHOTONS, 1e12),
        delta_v=delta_v,
        vfac_loc=np.exp(-(delta_v / _DOPB) ** 2),
    )


def empty_coeffs() -> LineCoefficients:
    z = np.zeros((1, 1))
    return LineCoefficients(line_j=z, line_a=z, cont_j=z, cont_a=z,
                            binv=np.full((1, 1), 1.0 / _DOPB), background=np.zeros(1))


_NO_BLENDS = (np.zeros(2, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0))


def solve(mol, state, sample, constants, solver):
    return solve_point(
        mol, state, 0, state.pops[0], sample, empty_coeffs(), 0, *_NO_BLENDS,
        _TEMPERATURE, constants, solver,
    )


class TestTwoLevelAnalytic:
    """Closed-form equilibrium of an optically thin two-level system."""

    def test_ratio_matches_closed_form(self, constants, default_config) -> None:
        mol = make_two_level(constants)
        state = single_point_state(mol)
        j_bg = float(mol.background[0])
        result = solve(mol, state, uniform_sample(j_bg), constants, default_config.solver)

        c_ul = _K_DOWN * _N_H2
        c_lu = c_ul * 3.0 * np.exp(-constants.hckb * 3.845 / _TEMPERATURE)
        a = mol.einstein_a[0]
        expected = (c_lu + mol.einstein_b_lu[0] * j_bg) / (
            a + c_ul + mol.einstein_b_ul[0] * j_bg
        )

        assert result.status is StateqStatus.OK
        assert result.pops[1] / result.pops[0] == pytest.approx(expected, rel=1e-8)
        assert result.pops.sum() == pytest.approx(1.0, abs=1e-12)

    def test_collision_dominated_is_lte(self, constants, default_config) -> None:
        mol = make_two_level(constants, einstein_a=1e-15)
        state = single_point_state(mol)
        result = solve(mol, state, uniform_sample(0.0), constants, default_config.solver)
        lte = lte_populations(mol, _TEMPERATURE, constants)
        np.testing.assert_allclose(result.pops, lte, rtol=1e-6)

    def test_radiation_dominated_follows_field(self, constants, default_config) -> None:
        # No collisions: excitation temperature equals the radiation temperature.
        mol = make_two_level(constants, with_collisions=False)
        state = single_point_state(mol)
        t_rad = 15.0
        j = float(planck_intensity(mol.frequencies[0], t_rad, constants))
        result = solve(mol, state, uniform_sample(j), constants, default_config.solver)
        expected = lte_populations(mol, t_rad, constants)
        # Level energies and the line frequency agree to a few parts in 1e6.
        np.testing.assert_allclose(result.pops, expected, rtol=1e-5)

    def test_converged_flag_uses_sweep_change(self, constants, default_config) -> None:
        mol = make_two_level(constants)
        state = single_point_state(mol)
        sample = uniform_sample(float(mol.background[0]))
        first = solve(mol, state, sample, constants, default_config.solver)
        assert not first.converged

        state.pops[0] = first.pops
        second = solve(mol, state, sample, constants, default_config.solver)
        assert second.converged
        assert second.max_rel_change < 1e-10

    def test_unstabilised_point_is_not_converged(self, constants, default_config) -> None:
        mol = make_two_level(constants)
        state = single_point_state(mol)
        sample = uniform_sample(float(mol.background[0]))
        state.pops[0] = solve(mol, state, sample, constants, default_config.solver).pops

        strict = dataclasses.replace(
            default_config.solver, local_tolerance=0.0, max_local_iterations=3
        )
        result = solve(mol, state, sample, constants, strict)
        assert result.status is StateqStatus.NOT_STABILISED
        assert result.iterations == 3
        assert result.max_rel_change < strict.population_tolerance
        assert not result.converged


class TestSingularMatrix:
    def test_no_transitions_reports_singular(self, constants, default_config) -> None:
        mol = make_two_level(constants, einstein_a=0.0, with_collisions=False)
        state = single_point_state(mol)
        result = solve(mol, state, uniform_sample(0.0), constants, default_config.solver)
        assert result.status is StateqStatus.SINGULAR
        assert not result.converged
        np.testing.assert_array_equal(result.pops, state.pops[0])


class TestBuildingBlocks:
    """Rate matrix layout and helper functions."""

    def test_rate_matrix_conserves_population(self, co_molecule) -> None:
        jbar = np.full(co_molecule.num_lines, 1e-17)
        colli = np.zeros((5, 5))
        colli[1, 0] = 2e-8
        colli[0, 1] = 1e-8
        m = rate_matrix(co_molecule, jbar, colli)

        # Columns of levels that cannot populate the top level sum to zero
        # once the normalisation row is excluded.
        np.testing.assert_allclose(m[:-1, :3].sum(axis=0), 0.0, atol=1e-20)
        assert m[:-1, 3].sum() == pytest.approx(-co_molecule.einstein_b_lu[3] * 1e-17)
        np.testing.assert_array_equal(m[-1], 1.0)
        assert m[1, 0] == pytest.approx(co_molecule.einstein_b_lu[0] * 1e-17 + 1e-8)

    def test_collision_detailed_balance(self, constants) -> None:
        mol = make_two_level(constants)
        state = single_point_state(mol)
        colli = collision_rates(mol, state, 0, _TEMPERATURE, constants)
        lte = lte_populations(mol, _TEMPERATURE, constants)
        assert lte[1] * colli[1, 0] == pytest.approx(lte[0] * colli[0, 1], rel=1e-12)

    def test_remnant_limits(self) -> None:
        assert remnant(np.array([0.0]))[0] == 1.0
        assert remnant(np.array([1e-10]))[0] == pytest.approx(1.0 - 5e-11)
        assert remnant(np.array([2.0]))[0] == pytest.approx((1.0 - np.exp(-2.0)) / 2.0)

    def test_relative_change_ignores_small_levels(self) -> None:
        new = np.array([0.5, 0.5, 1e-9])
        old = np.array([0.5, 0.4, 1e-12])
        assert relative_change(new, old, 1e-6) == pytest.approx(0.2)
