"""Per-species population records and the sweep double buffer.

Each species carries a :class:`SpeciesState`: level populations and the
per-point quantities that stay fixed during the iteration (line width,
molecular density, dust opacity and emissivity, collision-rate
interpolation coefficients and partner densities).

:class:`PopulationBuffers` implements the Gauss-Jacobi discipline: every
sweep reads the frozen ``snapshot`` and writes a disjoint ``next``
buffer, which becomes the snapshot when the sweep is committed.

:func:`line_coefficients` flattens all species into (n_points,
n_global_lines) arrays of emissivity and opacity prefactors for the
photon kernel. Line g of species s has global index
``line_offsets[s] + l``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from core_engine.constants import PhysicalConstants
from core_engine.mesh import Mesh
from core_engine.molecular import (
    DustOpacity,
    MolecularData,
    line_width,
    lte_populations,
    planck_intensity,
)

logger = logging.getLogger(__name__)


@dataclass
class SpeciesState:
    """Population record of one species over all grid points.

    Attributes
    ----------
    pops : np.ndarray
        Level populations. Shape: (N, n_levels); rows sum to 1.
    dopb : np.ndarray
        Total Doppler b [m/s]. Shape: (N,).
    binv : np.ndarray
        1 / dopb [s/m]. Shape: (N,).
    nmol : np.ndarray
        Molecular number density [m⁻³]. Shape: (N,).
    knu : np.ndarray
        Dust absorption coefficient per line [1/m]. Shape: (N, n_lines).
    dust : np.ndarray
        Dust source function B_ν(T_dust) per line. Shape: (N, n_lines).
    t_binlow : np.ndarray
        Collision-table temperature bin. Shape: (n_partners, N).
    interp_coeff : np.ndarray
        Temperature interpolation coefficient. Shape: (n_partners, N).
    partner_density : np.ndarray
        Collision-partner density [m⁻³]. Shape: (n_partners, N).
    """

    pops: np.ndarray
    dopb: np.ndarray
    binv: np.ndarray
    nmol: np.ndarray
    knu: np.ndarray
    dust: np.ndarray
    t_binlow: np.ndarray
    interp_coeff: np.ndarray
    partner_density: np.ndarray


def init_species_states(
    mesh: Mesh,
    molecules: list[MolecularData],
    dust: DustOpacity,
    constants: PhysicalConstants,
    restart_pops: list[np.ndarray] | None = None,
) -> list[SpeciesState]:
    """Build the population records, starting from LTE or a restart file.

    Parameters
    ----------
    mesh : Mesh
    molecules : list[MolecularData]
    dust : DustOpacity
    constants : PhysicalConstants
    restart_pops : list[np.ndarray], optional
        Populations per species, shape (N, n_levels) each.

    Returns
    -------
    list[SpeciesState]

    Raises
    ------
    ValueError
        If the restart populations do not match the mesh and species.
    """
    if mesh.num_species < len(molecules):
        raise ValueError(
            f"Model provides {mesh.num_species} abundances for {len(molecules)} species"
        )
    if restart_pops is not None and len(restart_pops) != len(molecules):
        raise ValueError(
            f"Restart file holds {len(restart_pops)} species, expected {len(molecules)}"
        )

    states = []
    for s, mol in enumerate(molecules):
        dopb = line_width(mesh.doppler, mesh.temperature, mol.molecular_weight, constants)
        nmol = mesh.abundance[:, s] * mesh.density

        knu = np.column_stack([
            dust.absorption(nu, mesh.density, mesh.gas_to_dust, constants)
            for nu in mol.frequencies
        ]) if mol.num_lines else np.zeros((mesh.num_points, 0))
        bdust = planck_intensity(
            mol.frequencies[None, :], mesh.dust_temperature[:, None], constants
        )

        n_part = len(mol.collision_tables)
        t_binlow = np.zeros((n_part, mesh.num_points), dtype=np.int64)
        interp_coeff = np.zeros((n_part, mesh.num_points))
        partner_density = np.zeros((n_part, mesh.num_points))
        for k, table in enumerate(mol.collision_tables):
            t_binlow[k], interp_coeff[k] = table.bin_and_coeff(mesh.temperature)
            partner_density[k] = table.partner.number_density(
                mesh.density, mesh.temperature, mesh.partner_density
            )

        if restart_pops is None:
            pops = lte_populations(mol, mesh.temperature, constants)
        else:
            pops = np.array(restart_pops[s], dtype=np.float64)
            if pops.shape != (mesh.num_points, mol.num_levels):
                raise ValueError(
                    f"Restart populations for {mol.name} have shape {pops.shape}, "
                    f"expected {(mesh.num_points, mol.num_levels)}"
                )

        states.append(SpeciesState(
            pops=pops,
            dopb=dopb,
            binv=1.0 / dopb,
            nmol=nmol,
            knu=knu,
            dust=bdust * knu,
            t_binlow=t_binlow,
            interp_coeff=interp_coeff,
            partner_density=partner_density,
        ))

        logger.info(
            "Species %s: b=[%.0f, %.0f] m/s, n_mol=[%.2e, %.2e] m^-3, %s populations",
            mol.name,
            dopb.min(),
            dopb.max(),
            nmol.min(),
            nmol.max(),
            "restart" if restart_pops is not None else "LTE",
        )

    return states


# ---------------------------------------------------------------------------
# Double buffer
# ---------------------------------------------------------------------------


class PopulationBuffers:
    """Snapshot/next population arrays for Gauss-Jacobi sweeps.

    ``snapshot`` is read-only while a sweep is running; workers write
    only their own rows of ``next``. :meth:`commit` swaps the two.
    """

    def __init__(self, initial: list[np.ndarray]) -> None:
        self.snapshot = [np.array(p, dtype=np.float64) for p in initial]
        self.next = [np.array(p, dtype=np.float64) for p in initial]

    def begin_sweep(self) -> None:
        """Freeze the snapshot and seed ``next`` with its values."""
        for snap, nxt in zip(self.snapshot, self.next):
            nxt.setflags(write=True)
            np.copyto(nxt, snap)
            snap.setflags(write=False)

    def commit(self) -> None:
        self.snapshot, self.next = self.next, self.snapshot
        for arr in self.next:
            arr.setflags(write=True)

    def write(self, species: int, point: int, pops: np.ndarray) -> None:
        self.next[species][point] = pops


# ---------------------------------------------------------------------------
# Flattened coefficients for the photon kernel
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineCoefficients:
    """Profile-free emissivity/opacity prefactors over global lines.

    Multiplying ``line_j``/``line_a`` by the velocity-overlap factor of a
    path element gives the line emissivity [W m⁻³ Hz⁻¹ sr⁻¹] and
    absorption coefficient [1/m].

    All arrays have shape (N, n_global_lines) except ``background``
    (n_global_lines,).
    """

    line_j: np.ndarray
    line_a: np.ndarray
    cont_j: np.ndarray
    cont_a: np.ndarray
    binv: np.ndarray
    background: np.ndarray


def species_line_terms(
    mol: MolecularData,
    state: SpeciesState,
    pops: np.ndarray,
    hpip: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Line emissivity and opacity prefactors of one species over all points."""
    n_u = pops[..., mol.line_upper]
    n_l = pops[..., mol.line_lower]
    factor = hpip * np.asarray(state.binv)[..., None] * np.asarray(state.nmol)[..., None]
    line_j = factor * n_u * mol.einstein_a
    line_a = factor * (n_l * mol.einstein_b_lu - n_u * mol.einstein_b_ul)
    return line_j, line_a


def line_coefficients(
    molecules: list[MolecularData],
    states: list[SpeciesState],
    pops: list[np.ndarray],
    constants: PhysicalConstants,
) -> LineCoefficients:
    """Flatten all species into global-line coefficient arrays."""
    n_points = states[0].binv.shape[0] if states else 0
    n_global = sum(mol.num_lines for mol in molecules)

    line_j = np.zeros((n_points, n_global))
    line_a = np.zeros((n_points, n_global))
    cont_j = np.zeros((n_points, n_global))
    cont_a = np.zeros((n_points, n_global))
    binv = np.zeros((n_points, n_global))
    background = np.zeros(n_global)

    g0 = 0
    for mol, state, p in zip(molecules, states, pops):
        g1 = g0 + mol.num_lines
        line_j[:, g0:g1], line_a[:, g0:g1] = species_line_terms(mol, state, p, constants.hpip)
        cont_j[:, g0:g1] = state.dust
        cont_a[:, g0:g1] = state.knu
        binv[:, g0:g1] = state.binv[:, None]
        background[g0:g1] = mol.background
        g0 = g1

    return LineCoefficients(
        line_j=line_j,
        line_a=line_a,
        cont_j=cont_j,
        cont_a=cont_a,
        binv=binv,
        background=background,
    )
