"""Tests for the fast exponential and erf lookup tables."""

from __future__ import annotations

import math

import numpy as np
import pytest
from scipy.integrate import quad
from scipy.special import erf

from core_engine.lookup_tables import (
    build_lookup_tables,
    calc_fast_exp_range,
    gaussian_profile_average,
    measure_fast_exp_error,
)


class TestFastExpRange:
    """Range derivation from the float32 mantissa layout."""

    def test_default_range(self) -> None:
        lowest, count = calc_fast_exp_range(3)
        assert lowest == -5
        assert count == 10

    def test_domain_is_32(self, tables) -> None:
        assert tables.fast_exp_domain == pytest.approx(32.0)


class TestFastExp:
    """Accuracy and special cases of the approximate exp(−x)."""

    def test_zero_is_exactly_one(self, tables) -> None:
        assert tables.fast_exp(0.0) == 1.0

    def test_negative_argument_is_exact(self, tables) -> None:
        for x in (-1e-6, -0.5, -3.0, -20.0):
            assert tables.fast_exp(x) == pytest.approx(math.exp(-x), rel=1e-15)

    def test_beyond_domain_is_zero(self, tables) -> None:
        assert tables.fast_exp(32.0) == 0.0
        assert tables.fast_exp(100.0) == 0.0

    def test_taylor_region(self, tables) -> None:
        x = 0.01
        assert tables.fast_exp(x) == pytest.approx(math.exp(-x), rel=4e-6)

    def test_relative_error_bound_on_dense_grid(self, tables) -> None:
        x = np.linspace(0.0, 31.999, 200_001)
        approx = tables.fast_exp_array(x)
        rel = np.abs(approx - np.exp(-x)) / np.exp(-x)
        assert rel.max() < 4e-6, f"Max relative error {rel.max():.3e}"

    def test_measured_error_below_bound(self, tables) -> None:
        assert measure_fast_exp_error(tables) < tables.error_bound

    def test_array_preserves_shape(self, tables) -> None:
        x = np.full((3, 4), 1.5)
        out = tables.fast_exp_array(x)
        assert out.shape == (3, 4)
        np.testing.assert_allclose(out, math.exp(-1.5), rtol=4e-6)

    def test_unreachable_bound_raises(self) -> None:
        with pytest.raises(ValueError):
            build_lookup_tables(error_bound=1e-12)

    def test_tables_are_read_only(self, tables) -> None:
        with pytest.raises(ValueError):
            tables.exp_table_2d[0, 0] = 2.0


class TestErfTable:
    """Tabulated error function."""

    def test_table_size(self, tables) -> None:
        assert tables.erf_table.shape == (6145,)

    def test_matches_scipy(self, tables) -> None:
        for x in (0.0, 0.1, 0.73, 1.5, 3.2, 5.9):
            assert tables.erf(x) == pytest.approx(erf(x), abs=1e-6)

    def test_odd_and_saturated(self, tables) -> None:
        assert tables.erf(-0.8) == pytest.approx(-tables.erf(0.8))
        assert tables.erf(10.0) == 1.0

    def test_profile_average_matches_quadrature(self, tables) -> None:
        xa, xb = -0.4, 1.1
        expected = quad(lambda t: math.exp(-t * t), xa, xb)[0] / (xb - xa)
        got = gaussian_profile_average(
            xa, xb, tables.erf_table, tables.erf_inv_step, tables.erf_limit
        )
        assert got == pytest.approx(expected, rel=1e-5)

    def test_profile_average_degenerate_interval(self, tables) -> None:
        got = gaussian_profile_average(
            0.5, 0.5, tables.erf_table, tables.erf_inv_step, tables.erf_limit
        )
        assert got == pytest.approx(math.exp(-0.25), rel=1e-12)
