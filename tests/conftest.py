"""Pytest configuration and shared fixtures for LineRT tests."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest


# Add project root to path so imports work
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

DEFAULT_CONFIG = PROJECT_ROOT / "config" / "default_config.yaml"
CO_FILE = PROJECT_ROOT / "data" / "molecules" / "co_5lev.dat"

# Uniform test cloud
CLOUD_RADIUS_M = 1.0e15
CLOUD_DENSITY_M3 = 1.0e10
CLOUD_TEMPERATURE_K = 20.0


def pytest_configure(config: pytest.Config) -> None:
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s [%(levelname)s] %(message)s",
    )


# ===================================================================
# SHARED FIXTURES
# ===================================================================


@pytest.fixture(scope="session")
def default_config():
    from core_engine.constants import load_config

    return load_config(DEFAULT_CONFIG)


@pytest.fixture(scope="session")
def constants(default_config):
    return default_config.constants


@pytest.fixture(scope="session")
def tables():
    from core_engine.lookup_tables import build_lookup_tables

    return build_lookup_tables()


@pytest.fixture(scope="session")
def co_molecule(constants):
    from data_ingestion.lamda_loader import load_lamda

    return load_lamda(CO_FILE, constants)


@pytest.fixture(scope="session")
def uniform_model():
    from data_ingestion.synthetic_cloud import UniformSphere

    return UniformSphere(
        density_m3=CLOUD_DENSITY_M3,
        temperature_K=CLOUD_TEMPERATURE_K,
        abundances=np.array([1.0e-4]),
        doppler_ms=200.0,
    )


@pytest.fixture(scope="session")
def small_mesh(uniform_model):
    """Uniform sphere: 120 interior points, 60 sinks on the boundary."""
    from core_engine.mesh import build_mesh
    from data_ingestion.point_placement import place_points

    points = place_points(
        uniform_model.density,
        num_points=120,
        num_sink_points=60,
        radius_m=CLOUD_RADIUS_M,
        min_scale_m=1.0e-2 * CLOUD_RADIUS_M,
        seed=3,
    )
    return build_mesh(points.positions, points.is_sink, uniform_model, path_weight_directions=256)
