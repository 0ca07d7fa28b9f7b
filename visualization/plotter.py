"""Visualization module for line images and solver diagnostics.

Generates figures using matplotlib:
- Channel maps of a line image cube
- Velocity-integrated intensity (moment 0) maps
- Continuum Stokes I with polarisation vectors
- Convergence history of the population iteration
- Radial level-population profiles
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import matplotlib

matplotlib.use("Agg")  # Non-interactive backend for headless rendering

import matplotlib.pyplot as plt
import numpy as np

from core_engine.raytracer import ImageResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Color Configuration
# ---------------------------------------------------------------------------

_IMAGE_CMAP = "inferno"
_POP_CMAP = "viridis"
_FACE = "#0f0f1a"
_DPI = 150
_MAX_PANELS = 16


def _style_axis(ax: plt.Axes) -> None:
    ax.set_facecolor(_FACE)
    ax.tick_params(colors="white")
    for spine in ax.spines.values():
        spine.set_edgecolor("#444")


def _save(fig: plt.Figure, output_path: Path | str | None, dpi: int, label: str) -> None:
    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=dpi, facecolor=fig.get_facecolor())
        logger.info("%s saved: %s", label, output_path)
    plt.close(fig)


def _extent_arcsec(image: ImageResult) -> list[float]:
    half = 0.5 * image.spec.pixels * image.spec.pixel_size_rad * 180.0 * 3600.0 / math.pi
    return [half, -half, -half, half]  # RA increases to the left


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def plot_channel_maps(
    image: ImageResult,
    output_path: Path | str | None = None,
    max_panels: int = _MAX_PANELS,
    dpi: int = _DPI,
) -> plt.Figure:
    """Grid of channel maps sharing one colour scale.

    Parameters
    ----------
    image : ImageResult
        Line image cube.
    output_path : Path or str, optional
        If provided, save figure to this path.
    max_panels : int
        At most this many channels are shown, evenly spaced.
    dpi : int
        Figure resolution.

    Returns
    -------
    matplotlib.figure.Figure
    """
    n_chan = image.spec.num_channels
    channels = np.unique(np.linspace(0, n_chan - 1, min(n_chan, max_panels)).astype(int))
    ncols = int(math.ceil(math.sqrt(channels.shape[0])))
    nrows = int(math.ceil(channels.shape[0] / ncols))

    fig, axes = plt.subplots(
        nrows, ncols, figsize=(2.6 * ncols, 2.6 * nrows), facecolor=_FACE,
        squeeze=False, sharex=True, sharey=True,
    )
    vmax = float(image.intensity.max()) or 1.0
    extent = _extent_arcsec(image)
    velocities = image.spec.channel_velocities

    for ax in axes.flat:
        _style_axis(ax)
        ax.set_visible(False)

    for ax, c in zip(axes.flat, channels):
        ax.set_visible(True)
        im = ax.imshow(
            image.intensity[:, :, c], origin="lower", cmap=_IMAGE_CMAP,
            vmin=0.0, vmax=vmax, extent=extent,
        )
        ax.text(0.05, 0.88, f"{velocities[c] / 1e3:+.2f} km/s", color="white",
                fontsize=8, transform=ax.transAxes)

    cbar = fig.colorbar(im, ax=axes.ravel().tolist(), shrink=0.8, label=image.spec.unit)
    cbar.ax.yaxis.label.set_color("white")
    cbar.ax.tick_params(colors="white")
    fig.suptitle(f"{image.spec.name}: channel maps", color="white", fontweight="bold")

    _save(fig, output_path, dpi, "Channel maps")
    return fig


def plot_moment0(
    image: ImageResult,
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """Velocity-integrated intensity map."""
    fig, ax = plt.subplots(1, 1, figsize=(7, 6), facecolor=_FACE)
    _style_axis(ax)

    mom0 = image.moment0()
    unit = f"{image.spec.unit} m/s" if image.spec.is_line else image.spec.unit
    im = ax.imshow(mom0, origin="lower", cmap=_IMAGE_CMAP, extent=_extent_arcsec(image))
    cbar = fig.colorbar(im, ax=ax, label=unit, shrink=0.8)
    cbar.ax.yaxis.label.set_color("white")
    cbar.ax.tick_params(colors="white")

    ax.set_xlabel("ΔRA [arcsec]", color="white")
    ax.set_ylabel("ΔDec [arcsec]", color="white")
    ax.set_title(f"{image.spec.name}: moment 0", fontsize=13, fontweight="bold", color="white")
    fig.tight_layout()

    _save(fig, output_path, dpi, "Moment-0 map")
    return fig


def plot_polarization(
    image: ImageResult,
    output_path: Path | str | None = None,
    stride: int = 2,
    dpi: int = _DPI,
) -> plt.Figure:
    """Stokes I with polarisation vectors of length ∝ fraction."""
    if image.stokes is None:
        raise ValueError(f"Image {image.spec.name} has no Stokes parameters")

    fig, ax = plt.subplots(1, 1, figsize=(7, 6), facecolor=_FACE)
    _style_axis(ax)

    stokes_i, stokes_q, stokes_u = np.moveaxis(image.stokes, -1, 0)
    extent = _extent_arcsec(image)
    im = ax.imshow(stokes_i, origin="lower", cmap=_IMAGE_CMAP, extent=extent)

    with np.errstate(divide="ignore", invalid="ignore"):
        frac = np.where(stokes_i > 0.0, np.hypot(stokes_q, stokes_u) / stokes_i, 0.0)
    angle = 0.5 * np.arctan2(stokes_u, stokes_q)

    n = image.spec.pixels
    pix_arcsec = abs(extent[1] - extent[0]) / n
    xs, ys = np.meshgrid(
        np.linspace(extent[0], extent[1], n), np.linspace(extent[2], extent[3], n)
    )
    sl = (slice(None, None, stride), slice(None, None, stride))
    ax.quiver(
        xs[sl], ys[sl],
        (frac * np.cos(angle))[sl], (frac * np.sin(angle))[sl],
        color="white", headwidth=0, headlength=0, headaxislength=0, pivot="middle",
        angles="xy", scale_units="xy",
        scale=max(float(frac.max()), 1e-12) / (stride * pix_arcsec),
    )

    cbar = fig.colorbar(im, ax=ax, label=f"Stokes I [{image.spec.unit}]", shrink=0.8)
    cbar.ax.yaxis.label.set_color("white")
    cbar.ax.tick_params(colors="white")
    ax.set_title(f"{image.spec.name}: polarisation", fontsize=13, fontweight="bold", color="white")
    fig.tight_layout()

    _save(fig, output_path, dpi, "Polarisation map")
    return fig


def plot_convergence(
    history: list,
    threshold: float | None = None,
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """Converged fraction and relative change per sweep.

    Parameters
    ----------
    history : list[SweepStats]
    threshold : float, optional
        Convergence fraction drawn as a reference line.
    """
    fig, ax = plt.subplots(1, 1, figsize=(10, 5), facecolor=_FACE)
    _style_axis(ax)

    sweeps = [s.sweep for s in history]
    ax.plot(sweeps, [100.0 * s.converged_fraction for s in history],
            color="#51cf66", marker="o", linewidth=1.5, label="Converged points [%]")
    if threshold is not None:
        ax.axhline(100.0 * threshold, color="#555", linestyle="--", linewidth=0.8)
    ax.set_xlabel("Sweep", color="white", fontsize=12)
    ax.set_ylabel("Converged [%]", color="white", fontsize=12)
    ax.grid(True, alpha=0.2, color="white")

    ax2 = ax.twinx()
    ax2.semilogy(sweeps, [max(s.median_rel_change, 1e-16) for s in history],
                 color="#ffd43b", linewidth=1.5, label="Median relative change")
    ax2.semilogy(sweeps, [max(s.max_rel_change, 1e-16) for s in history],
                 color="#ff6b6b", linewidth=1.0, alpha=0.7, label="Max relative change")
    ax2.tick_params(colors="white")
    ax2.set_ylabel("Relative change", color="white", fontsize=12)

    lines = ax.get_lines()[:1] + ax2.get_lines()
    legend = ax.legend(lines, [l.get_label() for l in lines], facecolor="#1a1a2e", edgecolor="#444")
    for text in legend.get_texts():
        text.set_color("white")

    ax.set_title("Population iteration", fontsize=14, fontweight="bold", color="white")
    fig.tight_layout()

    _save(fig, output_path, dpi, "Convergence history")
    return fig


def plot_population_profile(
    positions: np.ndarray,
    pops: np.ndarray,
    species_name: str,
    interior: np.ndarray | None = None,
    max_levels: int = 6,
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """Fractional level populations against radius."""
    fig, ax = plt.subplots(1, 1, figsize=(10, 6), facecolor=_FACE)
    _style_axis(ax)

    idx = interior if interior is not None else np.arange(positions.shape[0])
    radius = np.linalg.norm(positions[idx], axis=1)
    order = np.argsort(radius)
    cmap = plt.get_cmap(_POP_CMAP)
    n_show = min(max_levels, pops.shape[1])
    for lev in range(n_show):
        ax.loglog(radius[order], pops[idx][order, lev], ".", markersize=2,
                  color=cmap(lev / max(n_show - 1, 1)), label=f"level {lev}")

    ax.set_xlabel("Radius [m]", color="white", fontsize=12)
    ax.set_ylabel("Fractional population", color="white", fontsize=12)
    ax.set_title(f"{species_name} level populations", fontsize=14, fontweight="bold", color="white")
    ax.grid(True, alpha=0.2, color="white")
    legend = ax.legend(facecolor="#1a1a2e", edgecolor="#444", markerscale=4)
    for text in legend.get_texts():
        text.set_color("white")
    fig.tight_layout()

    _save(fig, output_path, dpi, "Population profile")
    return fig


def generate_all_plots(
    results: "SimulationResults",
    output_dir: Path | str = "output",
    dpi: int = _DPI,
) -> list[Path]:
    """Generate all standard plots from simulation results.

    Parameters
    ----------
    results : SimulationResults
        Full simulation results.
    output_dir : Path or str
        Directory for output plots.
    dpi : int
        Figure resolution.

    Returns
    -------
    list[Path]
        Paths to all generated plot files.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    saved: list[Path] = []

    # 1. Convergence history
    if results.report.history:
        p = output_dir / "convergence.png"
        plot_convergence(results.report.history, output_path=p, dpi=dpi)
        saved.append(p)

    # 2. Population profiles
    for mol, state in zip(results.molecules, results.states):
        p = output_dir / f"populations_{mol.name}.png"
        plot_population_profile(
            results.mesh.positions, state.pops, mol.name,
            interior=results.mesh.interior_indices, output_path=p, dpi=dpi,
        )
        saved.append(p)

    # 3. Images
    for name, image in results.images.items():
        if image.spec.is_line:
            p = output_dir / f"{name}_channels.png"
            plot_channel_maps(image, output_path=p, dpi=dpi)
            saved.append(p)
        p = output_dir / f"{name}_moment0.png"
        plot_moment0(image, output_path=p, dpi=dpi)
        saved.append(p)
        if image.stokes is not None:
            p = output_dir / f"{name}_polarization.png"
            plot_polarization(image, output_path=p, dpi=dpi)
            saved.append(p)

    logger.info("Generated %d plots in %s", len(saved), output_dir)
    return saved
