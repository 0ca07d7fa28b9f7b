"""Reader for molecular data files in the LAMDA format.

File layout (lines starting with ``!`` are headers and are skipped):

    name
    molecular weight [amu]
    n_levels
    n_levels × (index, energy [cm⁻¹], weight, quantum numbers…)
    n_lines
    n_lines × (index, upper, lower, A [s⁻¹], frequency [GHz], E_u [K])
    n_partners
    per partner:
        partner id + description
        n_transitions
        n_temperatures
        temperatures [K]
        n_transitions × (index, upper, lower, rates [cm³ s⁻¹] per temperature)

Level indices are one-based in the file and zero-based in memory.

References
----------
- Schöier, F. L. et al. (2005). A&A 432, 369-379.
  https://home.strw.leidenuniv.nl/~moldata/
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from core_engine.constants import PhysicalConstants
from core_engine.molecular import (
    CollisionPartner,
    CollisionRateTable,
    MolecularData,
    MolecularDataError,
    build_molecular_data,
)

logger = logging.getLogger(__name__)

# cm³/s → m³/s
_RATE_TO_SI: float = 1e-6
_GHZ: float = 1e9


class _LineReader:
    """Sequential access to the data lines of a LAMDA file."""

    def __init__(self, lines: list[str], source: str) -> None:
        self._lines = [ln.strip() for ln in lines if ln.strip() and not ln.lstrip().startswith("!")]
        self._pos = 0
        self._source = source

    def next_line(self, what: str) -> str:
        if self._pos >= len(self._lines):
            raise MolecularDataError(f"{self._source}: unexpected end of file reading {what}")
        line = self._lines[self._pos]
        self._pos += 1
        return line

    def next_int(self, what: str) -> int:
        token = self.next_line(what).split()[0]
        try:
            return int(token)
        except ValueError as exc:
            raise MolecularDataError(f"{self._source}: bad integer for {what}: {token!r}") from exc

    def next_floats(self, what: str, count: int) -> list[float]:
        tokens = self.next_line(what).split()
        if len(tokens) < count:
            raise MolecularDataError(
                f"{self._source}: {what} needs {count} columns, got {len(tokens)}"
            )
        try:
            return [float(t) for t in tokens[:count]]
        except ValueError as exc:
            raise MolecularDataError(f"{self._source}: bad number in {what}") from exc


def load_lamda(path: str | Path, constants: PhysicalConstants) -> MolecularData:
    """Parse one LAMDA molecular data file.

    Parameters
    ----------
    path : str or Path
        LAMDA ``.dat`` file.
    constants : PhysicalConstants
        Used to derive B coefficients and the CMB background.

    Returns
    -------
    MolecularData

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    MolecularDataError
        If the file is malformed or internally inconsistent.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Molecular data file not found: {path}")

    with open(path, "r", encoding="utf-8", errors="replace") as f:
        reader = _LineReader(f.readlines(), path.name)

    name = reader.next_line("molecule name")
    molecular_weight = reader.next_floats("molecular weight", 1)[0]
    if molecular_weight <= 0.0:
        raise MolecularDataError(f"{path.name}: molecular weight must be positive")

    # --- Levels ---
    n_levels = reader.next_int("level count")
    if n_levels < 2:
        raise MolecularDataError(f"{path.name}: at least 2 levels needed, got {n_levels}")
    energies = np.empty(n_levels)
    weights = np.empty(n_levels)
    for i in range(n_levels):
        idx, energy, weight = reader.next_floats(f"level {i + 1}", 3)
        if int(idx) != i + 1:
            raise MolecularDataError(f"{path.name}: level {i + 1} listed as {int(idx)}")
        energies[i] = energy
        weights[i] = weight

    # --- Radiative lines ---
    n_lines = reader.next_int("line count")
    upper = np.empty(n_lines, dtype=np.int64)
    lower = np.empty(n_lines, dtype=np.int64)
    einstein_a = np.empty(n_lines)
    freqs = np.empty(n_lines)
    for i in range(n_lines):
        _, up, lo, a, freq_ghz = reader.next_floats(f"line {i + 1}", 5)
        upper[i] = int(up) - 1
        lower[i] = int(lo) - 1
        einstein_a[i] = a
        freqs[i] = freq_ghz * _GHZ
    _check_levels(upper, lower, n_levels, f"{path.name} lines")

    # --- Collision partners ---
    n_partners = reader.next_int("collision partner count")
    tables = []
    for _ in range(n_partners):
        tables.append(_read_partner(reader, n_levels, path.name))

    mol = build_molecular_data(
        name=name.split()[0],
        molecular_weight=molecular_weight,
        level_energies=energies,
        level_weights=weights,
        line_upper=upper,
        line_lower=lower,
        einstein_a=einstein_a,
        frequencies=freqs,
        collision_tables=tuple(tables),
        constants=constants,
    )

    logger.info(
        "Loaded %s from %s: %d levels, %d lines, %d collision partners (%s)",
        mol.name,
        path.name,
        mol.num_levels,
        mol.num_lines,
        len(tables),
        ", ".join(t.partner.name for t in tables),
    )
    return mol


def _read_partner(reader: _LineReader, n_levels: int, source: str) -> CollisionRateTable:
    header = reader.next_line("collision partner id")
    try:
        partner = CollisionPartner(int(header.split()[0]))
    except ValueError as exc:
        raise MolecularDataError(f"{source}: unknown collision partner '{header}'") from exc

    n_trans = reader.next_int(f"{partner.name} transition count")
    n_temps = reader.next_int(f"{partner.name} temperature count")
    if n_trans < 1 or n_temps < 1:
        raise MolecularDataError(f"{source}: {partner.name} needs ≥ 1 transition and temperature")
    temps = np.asarray(reader.next_floats(f"{partner.name} temperatures", n_temps))

    upper = np.empty(n_trans, dtype=np.int64)
    lower = np.empty(n_trans, dtype=np.int64)
    rates = np.empty((n_trans, n_temps))
    for i in range(n_trans):
        row = reader.next_floats(f"{partner.name} transition {i + 1}", 3 + n_temps)
        upper[i] = int(row[1]) - 1
        lower[i] = int(row[2]) - 1
        rates[i] = np.asarray(row[3:]) * _RATE_TO_SI
    _check_levels(upper, lower, n_levels, f"{source} {partner.name} rates")
    if np.any(rates < 0.0):
        raise MolecularDataError(f"{source}: negative collision rate for {partner.name}")

    return CollisionRateTable(
        partner=partner,
        temperatures=temps,
        upper=upper,
        lower=lower,
        down_rates=rates,
    )


def _check_levels(upper: np.ndarray, lower: np.ndarray, n_levels: int, what: str) -> None:
    if upper.size == 0:
        return
    if upper.max() >= n_levels or lower.max() >= n_levels or min(upper.min(), lower.min()) < 0:
        raise MolecularDataError(f"{what}: level index out of range 1..{n_levels}")
    if np.any(upper == lower):
        raise MolecularDataError(f"{what}: transition between a level and itself")


def load_molecules(
    files: list[Path],
    constants: PhysicalConstants,
) -> list[MolecularData]:
    """Load every configured species in order."""
    return [load_lamda(f, constants) for f in files]
