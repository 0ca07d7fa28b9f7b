"""Detection of spectrally overlapping lines.

Two lines blend when their rest frequencies, converted to a Doppler
velocity offset, differ by less than a fixed threshold:

    Δv = c (ν_J − ν_I) / ν_J

In the velocity frame of line I the partner J is centred at −Δv: a
higher-frequency partner appears blue-shifted.

The table is computed once after the molecular data are loaded. It is
kept both as per-species/per-line lists of :class:`Blend` records and as
a CSR layout over global line indices, which is what the numba kernels
consume.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from core_engine.molecular import MolecularData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Blend:
    """One overlapping partner of a line.

    Attributes
    ----------
    species : int
        Species index of the partner line.
    line : int
        Line index within that species.
    delta_v : float
        Velocity offset of the partner relative to the line [m/s].
    """

    species: int
    line: int
    delta_v: float


@dataclass(frozen=True)
class BlendTable:
    """Blend records per species and line, plus the flattened CSR form.

    Attributes
    ----------
    per_line : tuple[tuple[tuple[Blend, ...], ...], ...]
        ``per_line[s][l]`` lists the blends of line l of species s.
    line_offsets : np.ndarray
        Global index of the first line of each species. Shape: (n_species + 1,).
    blend_ptr : np.ndarray
        CSR pointer over global lines. Shape: (n_global_lines + 1,).
    blend_line : np.ndarray
        Global index of each blended partner line.
    blend_dv : np.ndarray
        Velocity offset of each partner [m/s].
    """

    per_line: tuple
    line_offsets: np.ndarray
    blend_ptr: np.ndarray
    blend_line: np.ndarray
    blend_dv: np.ndarray

    @property
    def num_blends(self) -> int:
        return int(self.blend_line.shape[0])

    def blends_of(self, species: int, line: int) -> tuple[Blend, ...]:
        return self.per_line[species][line]

    def has_blends(self) -> bool:
        return self.num_blends > 0


def find_blends(
    molecules: list[MolecularData],
    max_delta_v: float,
    speed_of_light: float,
    enabled: bool = True,
) -> BlendTable:
    """Build the blend table over all species.

    Every ordered pair of (species, line) entries with a different
    (species, line) is tested, including the same line index of another
    species. Quadratic in the total line count.

    Parameters
    ----------
    molecules : list[MolecularData]
    max_delta_v : float
        Blend threshold [m/s]; pairs with |Δv| < threshold are recorded.
    speed_of_light : float
        [m/s]
    enabled : bool
        If False, an empty table with the correct offsets is returned.

    Returns
    -------
    BlendTable
    """
    counts = [mol.num_lines for mol in molecules]
    line_offsets = np.zeros(len(molecules) + 1, dtype=np.int64)
    np.cumsum(np.asarray(counts, dtype=np.int64), out=line_offsets[1:])
    n_global = int(line_offsets[-1])

    per_line: list[list[list[Blend]]] = [[[] for _ in range(n)] for n in counts]

    if enabled and n_global > 1:
        freqs = np.concatenate([mol.frequencies for mol in molecules])
        owner = np.repeat(np.arange(len(molecules)), counts)
        local = np.concatenate([np.arange(n) for n in counts])

        # dv[I, J] = c (ν_J − ν_I) / ν_J
        dv = speed_of_light * (freqs[None, :] - freqs[:, None]) / freqs[None, :]
        hit = np.abs(dv) < max_delta_v
        np.fill_diagonal(hit, False)

        for gi, gj in zip(*np.nonzero(hit)):
            per_line[owner[gi]][local[gi]].append(
                Blend(species=int(owner[gj]), line=int(local[gj]), delta_v=float(dv[gi, gj]))
            )

    blend_ptr = np.zeros(n_global + 1, dtype=np.int64)
    blend_line: list[int] = []
    blend_dv: list[float] = []
    g = 0
    for lines in per_line:
        for entries in lines:
            for b in entries:
                blend_line.append(int(line_offsets[b.species]) + b.line)
                blend_dv.append(b.delta_v)
            g += 1
            blend_ptr[g] = len(blend_line)

    table = BlendTable(
        per_line=tuple(tuple(tuple(entries) for entries in lines) for lines in per_line),
        line_offsets=line_offsets,
        blend_ptr=blend_ptr,
        blend_line=np.asarray(blend_line, dtype=np.int64),
        blend_dv=np.asarray(blend_dv, dtype=np.float64),
    )

    if table.has_blends():
        logger.info("Found %d blended line pairs (|dv| < %.0f m/s)", table.num_blends, max_delta_v)
    else:
        logger.debug("No blended lines found.")
    return table
