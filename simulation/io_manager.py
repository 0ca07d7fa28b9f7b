"""Data I/O manager: persist populations and images as NumPy arrays.

Populations are written as a restart file that :func:`load_populations`
reads back to continue an iteration; images are written one archive per
image so they can be re-plotted without re-running the solver.

File layout under output_dir/:
    populations.npz        Level populations per species plus grid positions
    image_<name>.npz       Intensity, optical depth, Stokes I/Q/U, channel velocities
    metadata.json          Run metadata (JSON)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import numpy as np

from core_engine.raytracer import ImageResult

logger = logging.getLogger(__name__)

_POPS_KEY = "pops_{:03d}"
_POSITION_RTOL = 1e-9


def save_populations(
    path: Path | str,
    pops: list[np.ndarray],
    positions: np.ndarray,
    species_names: list[str],
) -> Path:
    """Write a population restart file.

    Parameters
    ----------
    path : Path or str
        Target ``.npz`` file (parent directory created if needed).
    pops : list[np.ndarray]
        Populations per species. Shape: (N, n_levels) each.
    positions : np.ndarray
        Grid point positions [m]. Shape: (N, 3).
    species_names : list[str]

    Returns
    -------
    Path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    arrays = {_POPS_KEY.format(s): np.asarray(p, dtype=np.float64) for s, p in enumerate(pops)}
    np.savez_compressed(
        path,
        positions=np.asarray(positions, dtype=np.float64),
        species=np.array(species_names),
        **arrays,
    )
    logger.info("Saved populations of %d species at %d points to %s",
                len(pops), positions.shape[0], path)
    return path


def load_populations(
    path: Path | str,
    positions: np.ndarray | None = None,
) -> tuple[list[np.ndarray], np.ndarray, list[str]]:
    """Read a population restart file.

    Parameters
    ----------
    path : Path or str
    positions : np.ndarray, optional
        Grid of the current run; if given the stored grid must match it.

    Returns
    -------
    pops : list[np.ndarray]
    positions : np.ndarray
    species_names : list[str]

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the stored grid differs from ``positions``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Population file not found: {path}")

    with np.load(path) as npz:
        stored = npz["positions"]
        names = [str(n) for n in npz["species"]]
        pops = [npz[_POPS_KEY.format(s)] for s in range(len(names))]

    if positions is not None:
        if stored.shape != positions.shape or not np.allclose(
            stored, positions, rtol=_POSITION_RTOL, atol=0.0
        ):
            raise ValueError(
                f"Population file {path} was written for a different grid "
                f"({stored.shape[0]} points, current grid has {positions.shape[0]})"
            )

    logger.info("Loaded populations of %d species from %s", len(pops), path)
    return pops, stored, names


def save_image(output_dir: Path | str, image: ImageResult) -> Path:
    """Write one image cube as ``image_<name>.npz``."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    spec = image.spec

    path = output_dir / f"image_{spec.name}.npz"
    arrays = {
        "intensity": image.intensity,
        "tau": image.tau,
        "num_rays": image.num_rays,
        "channel_velocities": spec.channel_velocities,
    }
    if image.stokes is not None:
        arrays["stokes"] = image.stokes
    header = {
        "name": spec.name,
        "unit": spec.unit,
        "pixels": spec.pixels,
        "pixel_size_rad": spec.pixel_size_rad,
        "distance_m": spec.distance_m,
        "frequency_Hz": spec.frequency,
        "theta_rad": spec.theta,
        "phi_rad": spec.phi,
        "species": spec.species,
        "transition": spec.transition,
        "polarization": spec.polarization,
        "num_missed": image.num_missed,
    }
    np.savez_compressed(path, header=np.array(json.dumps(_sanitize_for_json(header))), **arrays)
    logger.debug("Saved %s: shape=%s", path.name, image.intensity.shape)
    return path


def load_image(path: Path | str) -> dict:
    """Read an image archive written by :func:`save_image`.

    Returns
    -------
    dict
        Keys: 'intensity', 'tau', 'num_rays', 'channel_velocities',
        'stokes' (None for unpolarised images) and 'header'.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {path}")

    with np.load(path) as npz:
        data = {k: npz[k] for k in npz.files if k != "header"}
        data["header"] = json.loads(str(npz["header"]))
    data.setdefault("stokes", None)
    return data


def save_metadata(output_dir: Path | str, metadata: dict) -> Path:
    """Write ``metadata.json`` with numpy values converted to JSON natives."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    meta_path = output_dir / "metadata.json"
    with open(meta_path, "w", encoding="utf-8") as f:
        json.dump(_sanitize_for_json(metadata), f, indent=2, ensure_ascii=False)
    return meta_path


def load_metadata(output_dir: Path | str) -> dict:
    meta_path = Path(output_dir) / "metadata.json"
    if not meta_path.exists():
        return {}
    with open(meta_path, "r", encoding="utf-8") as f:
        return json.load(f)


def _sanitize_for_json(obj: object) -> object:
    """Recursively convert NumPy types and other non-JSON types to Python natives."""
    if isinstance(obj, dict):
        return {str(k): _sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize_for_json(v) for v in obj]
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, Path):
        return str(obj)
    return obj
