"""Tests for blended-line detection."""

from __future__ import annotations

import numpy as np
import pytest

from core_engine.blends import find_blends
from core_engine.molecular import build_molecular_data

_THRESHOLD = 1.0e4  # m/s


def two_level(name: str, frequency: float, constants):
    return build_molecular_data(
        name=name,
        molecular_weight=28.0,
        level_energies=np.array([0.0, 3.8]),
        level_weights=np.array([1.0, 3.0]),
        line_upper=np.array([1]),
        line_lower=np.array([0]),
        einstein_a=np.array([1e-7]),
        frequencies=np.array([frequency]),
        collision_tables=(),
        constants=constants,
    )


def partner_frequency(nu0: float, delta_v: float, c: float) -> float:
    """Frequency whose offset from nu0 is delta_v, with Δv = c (ν_J − ν_I) / ν_J."""
    return nu0 / (1.0 - delta_v / c)


class TestBlendThreshold:
    """Pairs are recorded strictly below the velocity threshold."""

    def test_just_below_threshold(self, constants) -> None:
        c = constants.speed_of_light
        nu0 = 100e9
        mols = [
            two_level("A", nu0, constants),
            two_level("B", partner_frequency(nu0, 0.999 * _THRESHOLD, c), constants),
        ]
        table = find_blends(mols, _THRESHOLD, c)
        assert table.num_blends == 2
        (blend,) = table.blends_of(0, 0)
        assert blend.species == 1 and blend.line == 0
        assert blend.delta_v == pytest.approx(0.999 * _THRESHOLD, rel=1e-9)

    def test_just_above_threshold(self, constants) -> None:
        c = constants.speed_of_light
        nu0 = 100e9
        mols = [
            two_level("A", nu0, constants),
            two_level("B", partner_frequency(nu0, 1.001 * _THRESHOLD, c), constants),
        ]
        table = find_blends(mols, _THRESHOLD, c)
        assert not table.has_blends()
        assert table.blends_of(0, 0) == ()

    def test_offsets_have_opposite_signs(self, constants) -> None:
        c = constants.speed_of_light
        mols = [
            two_level("A", 100e9, constants),
            two_level("B", partner_frequency(100e9, 3e3, c), constants),
        ]
        table = find_blends(mols, _THRESHOLD, c)
        forward = table.blends_of(0, 0)[0].delta_v
        backward = table.blends_of(1, 0)[0].delta_v
        assert forward > 0.0 > backward

    def test_same_line_of_another_species(self, constants) -> None:
        mols = [two_level("A", 100e9, constants), two_level("A2", 100e9, constants)]
        table = find_blends(mols, _THRESHOLD, constants.speed_of_light)
        assert table.blends_of(0, 0)[0].delta_v == 0.0
        assert table.blends_of(1, 0)[0].species == 0

    def test_co_ladder_has_no_blends(self, co_molecule, constants) -> None:
        table = find_blends([co_molecule], _THRESHOLD, constants.speed_of_light)
        assert table.num_blends == 0


class TestBlendLayout:
    """CSR arrays over global line indices."""

    def test_csr_matches_records(self, constants) -> None:
        c = constants.speed_of_light
        mols = [
            two_level("A", 100e9, constants),
            two_level("B", 230e9, constants),
            two_level("C", partner_frequency(100e9, -2e3, c), constants),
        ]
        table = find_blends(mols, _THRESHOLD, c)
        np.testing.assert_array_equal(table.line_offsets, [0, 1, 2, 3])
        np.testing.assert_array_equal(table.blend_ptr, [0, 1, 1, 2])
        np.testing.assert_array_equal(table.blend_line, [2, 0])
        assert table.blend_dv[0] == pytest.approx(table.blends_of(0, 0)[0].delta_v)

    def test_disabled(self, constants) -> None:
        mols = [two_level("A", 100e9, constants), two_level("A2", 100e9, constants)]
        table = find_blends(mols, _THRESHOLD, constants.speed_of_light, enabled=False)
        assert table.num_blends == 0
        np.testing.assert_array_equal(table.blend_ptr, [0, 0, 0])

    def test_empty_species_list(self, constants) -> None:
        table = find_blends([], _THRESHOLD, constants.speed_of_light)
        assert table.num_blends == 0
        np.testing.assert_array_equal(table.line_offsets, [0])
