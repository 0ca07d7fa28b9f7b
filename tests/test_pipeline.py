"""End-to-end tests: runner, restart files, plots and the command line."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import yaml

from conftest import CO_FILE, DEFAULT_CONFIG
from core_engine.constants import load_config
from line_solver.scheduler import SchedulerState
from main import apply_overrides, main, parse_args
from simulation.io_manager import load_image, load_metadata, load_populations
from simulation.runner import SimulationRunner
from visualization.plotter import generate_all_plots


# ===================================================================
# FIXTURES
# ===================================================================


def write_small_config(directory: Path) -> Path:
    """Copy of the default configuration shrunk to a few hundred points."""
    with open(DEFAULT_CONFIG, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    raw["grid"].update(num_points=150, num_sink_points=60, path_weight_directions=128)
    raw["molecules"][0]["file"] = str(CO_FILE)
    raw["solver"].update(photons_per_point=8, max_sweeps=2, n_threads=2)
    raw["raytracer"]["n_threads"] = 2
    for image in raw["images"]:
        image["pixels"] = 6
        image["resolution_arcsec"] = 8.0
        if "channels" in image:
            image["channels"] = 5
    raw["output"]["directory"] = str(directory / "output")

    path = directory / "small.yaml"
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(raw, f)
    return path


@pytest.fixture(scope="module")
def small_run(tmp_path_factory):
    directory = tmp_path_factory.mktemp("pipeline")
    config = load_config(write_small_config(directory))
    results = SimulationRunner(config).run(save_data=True, output_dir=directory / "out")
    return config, results, directory / "out"


class TestSimulationRunner:
    """Full pipeline on a coarse grid."""

    def test_outputs_written(self, small_run) -> None:
        config, results, out = small_run
        assert (out / "populations.npz").exists()
        assert (out / "metadata.json").exists()
        for image in config.images:
            assert (out / f"image_{image.name}.npz").exists()

    def test_metadata(self, small_run) -> None:
        _, results, out = small_run
        meta = load_metadata(out)
        assert meta["num_points"] == 210
        assert meta["num_sink_points"] == 60
        assert meta["sweeps"] == results.report.sweeps <= 2
        assert meta["solver_state"] in {s.value for s in SchedulerState}
        assert meta["species"] == ["CO"]
        assert len(meta["grid_hash"]) == 64

    def test_populations_match_states(self, small_run) -> None:
        _, results, out = small_run
        pops, positions, names = load_populations(out / "populations.npz", results.mesh.positions)
        np.testing.assert_array_equal(pops[0], results.states[0].pops)
        np.testing.assert_allclose(pops[0].sum(axis=1), 1.0, atol=1e-10)

    def test_images(self, small_run) -> None:
        _, results, out = small_run
        line = load_image(out / "image_co_2-1.npz")
        assert line["intensity"].shape == (6, 6, 5)
        assert line["header"]["unit"] == "kelvin"

        dust = results.images["dust_1.3mm_pol"]
        assert dust.stokes is not None
        assert dust.intensity.shape == (6, 6, 1)
        assert np.all(np.isfinite(dust.stokes))

    def test_plots(self, small_run, tmp_path) -> None:
        _, results, _ = small_run
        saved = generate_all_plots(results, output_dir=tmp_path, dpi=60)
        names = {p.name for p in saved}
        assert "populations_CO.png" in names
        assert "co_2-1_channels.png" in names
        assert "dust_1.3mm_pol_polarization.png" in names
        assert all(p.exists() for p in saved)


class TestCommandLine:
    def test_overrides(self, tmp_path) -> None:
        config = load_config(DEFAULT_CONFIG)
        args = parse_args([
            "--points", "500", "--photons", "16", "--sweeps", "4", "--threads", "3",
            "--lte", "--restart", "old/populations.npz", "--output", str(tmp_path),
        ])
        config = apply_overrides(config, args)
        assert config.grid.num_points == 500
        assert config.solver.photons_per_point == 16
        assert config.solver.max_sweeps == 4
        assert config.solver.n_threads == 3
        assert config.raytracer.n_threads == 3
        assert config.solver.lte_only
        assert config.solver.restart_file == Path("old/populations.npz")
        assert config.output_directory == tmp_path

    def test_defaults_leave_config_untouched(self) -> None:
        config = load_config(DEFAULT_CONFIG)
        solver = config.solver
        apply_overrides(config, parse_args([]))
        assert config.solver is solver

    def test_lte_run_and_restart(self, tmp_path) -> None:
        config_path = write_small_config(tmp_path)
        first = tmp_path / "first"
        code = main(["--config", str(config_path), "--output", str(first),
                     "--lte", "--no-images", "--no-plots", "--log-level", "WARNING"])
        assert code == 0
        assert load_metadata(first)["sweeps"] == 0

        second = tmp_path / "second"
        code = main(["--config", str(config_path), "--output", str(second),
                     "--restart", str(first / "populations.npz"), "--sweeps", "1",
                     "--no-plots", "--log-level", "WARNING"])
        assert code == 0
        assert (second / "image_co_2-1.npz").exists()
        assert load_metadata(second)["sweeps"] == 1
