"""
Linearization strategies for one pressure iteration.

`PicardLinearization` hands the assembled system to the linear solver as is.
`QuasiNewtonLinearization` turns the same assembled system into an
approximate Newton step for the volume-balance residual.
"""

import abc
import logging
import pathlib
import typing

import attrs
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import ValidationError
from compflow.interfaces import PressureAssembler
from compflow.models import FluidPropertySnapshot, LinearSystem
from compflow.types import PhaseArray, Vector

logger = logging.getLogger(__name__)

__all__ = [
    "PicardProblem",
    "Linearization",
    "PicardLinearization",
    "QuasiNewtonLinearization",
    "ResidualWriter",
    "correct_residual_and_jacobian",
    "get_linearization",
]


@attrs.frozen
class PicardProblem:
    """Everything needed to assemble and linearize one pressure iteration."""

    sources: Vector
    bc_types: np.typing.NDArray
    bc_values: Vector
    dt: float
    snapshot: FluidPropertySnapshot
    initial_volume_discrepancy: Vector
    perforation_phase_to_component: np.typing.NDArray
    perforation_phase_mobility: PhaseArray
    perforation_gravity_potential: PhaseArray
    initial_cell_pressure: Vector
    """Cell pressures at the start of the timestep."""
    cell_pressure: Vector
    """Cell pressures of the current iterate."""
    well_bhp: Vector
    """Bottomhole pressures of the current iterate."""
    pore_volume: Vector
    """Cell volume times porosity."""
    surface_densities: np.typing.NDArray
    solve_index: int = 0
    iteration: int = 0

    def assemble(self, assembler: PressureAssembler) -> LinearSystem:
        """Assemble the Picard system for this iterate."""
        snapshot = self.snapshot
        return assembler.assemble(
            sources=self.sources,
            bc_types=self.bc_types,
            bc_values=self.bc_values,
            dt=self.dt,
            total_compressibility=snapshot.total_compressibility,
            volume_discrepancy=self.initial_volume_discrepancy,
            cell_phase_to_component=snapshot.cell_phase_to_component,
            face_phase_to_component=snapshot.face_phase_to_component,
            perforation_phase_to_component=self.perforation_phase_to_component,
            face_phase_mobility=snapshot.face_phase_mobility,
            perforation_phase_mobility=self.perforation_phase_mobility,
            initial_cell_pressure=self.initial_cell_pressure,
            gravity_capillary_flux=snapshot.gravity_capillary_flux,
            perforation_gravity_potential=self.perforation_gravity_potential,
            surface_densities=self.surface_densities,
        )

    @property
    def unknowns(self) -> Vector:
        """Current iterate as a linear system vector: cell pressures then bottomhole pressures."""
        return np.concatenate([self.cell_pressure, self.well_bhp]).astype(
            get_dtype(), copy=False
        )


def correct_residual_and_jacobian(
    system: LinearSystem,
    x: Vector,
    total_compressibility: Vector,
    cell_pressure: Vector,
    initial_cell_pressure: Vector,
    total_phase_volume_density: Vector,
    explicit_jacobian_term: Vector,
    pore_volume: Vector,
    dt: float,
) -> typing.Tuple[typing.Any, Vector]:
    """
    Convert an assembled Picard system into a Newton-like residual and Jacobian.

    The Picard accumulation term of cell `c` is `s·c_t·(p - p⁰)` with
    `s = V·φ/dt`. The volume balance residual wants `s·(1 - u(p))` instead,
    where `u` is the total phase volume per unit pore volume. So

        r_c = (A·x - b)_c - s·(c_t·(p - p⁰) - (1 - u))

    and its derivative replaces `s·c_t` on the diagonal by `s·e`, with `e` the
    explicit Jacobian term (`e = -du/dp`). Rows beyond the cells (well rows)
    are left as assembled.

    :param system: Assembled Picard system. Not modified.
    :param x: Current unknowns (cell pressures then bottomhole pressures).
    :param total_compressibility: `c_t` per cell.
    :param cell_pressure: Current cell pressures `p`.
    :param initial_cell_pressure: Cell pressures at the start of the timestep `p⁰`.
    :param total_phase_volume_density: `u` per cell.
    :param explicit_jacobian_term: `e` per cell.
    :param pore_volume: `V·φ` per cell.
    :param dt: Timestep.
    :return: Tuple of (corrected CSR Jacobian, corrected residual).
    """
    num_cells = cell_pressure.shape[0]
    if x.shape != (system.size,) or num_cells > system.size:
        raise ValidationError(
            f"Unknowns of length {x.shape[0]} do not match a system of size {system.size} "
            f"with {num_cells} cells."
        )

    residual = np.asarray(system.residual(x), dtype=get_dtype()).copy()
    scale = pore_volume / dt
    residual[:num_cells] -= scale * (
        total_compressibility * (cell_pressure - initial_cell_pressure)
        - (1.0 - total_phase_volume_density)
    )

    jacobian = system.matrix.tolil(copy=True)
    diagonal = jacobian.diagonal()
    diagonal[:num_cells] += scale * (explicit_jacobian_term - total_compressibility)
    jacobian.setdiag(diagonal)
    return jacobian.tocsr(), residual


@attrs.frozen
class ResidualWriter:
    """Writes quasi-Newton residuals to `residual-<solve>-<iteration>.dat` files."""

    directory: pathlib.Path = attrs.field(converter=pathlib.Path)

    def path_for(self, solve_index: int, iteration: int) -> pathlib.Path:
        return self.directory / f"residual-{solve_index}-{iteration}.dat"

    def write(self, residual: Vector, solve_index: int, iteration: int) -> pathlib.Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(solve_index, iteration)
        np.savetxt(path, residual, fmt="%.16g")
        logger.debug(f"Wrote residual to {path}")
        return path


class Linearization(abc.ABC):
    """Produces the linear system of one pressure iteration."""

    name: typing.ClassVar[str]

    @abc.abstractmethod
    def build_system(
        self, assembler: PressureAssembler, problem: PicardProblem
    ) -> LinearSystem:
        """Build the system handed to the linear solver."""
        ...

    @abc.abstractmethod
    def to_unknowns(self, solution: Vector, problem: PicardProblem) -> Vector:
        """Map the linear solver solution to absolute cell and bottomhole pressures."""
        ...


class PicardLinearization(Linearization):
    """Solves the assembled Picard system directly for the new pressures."""

    name = "picard"

    def build_system(
        self, assembler: PressureAssembler, problem: PicardProblem
    ) -> LinearSystem:
        return problem.assemble(assembler)

    def to_unknowns(self, solution: Vector, problem: PicardProblem) -> Vector:
        return solution


class QuasiNewtonLinearization(Linearization):
    """
    Solves for a pressure increment using the corrected residual and Jacobian.

    The solution of the corrected system is the increment `δ`, and the new
    unknowns are `x - δ`.
    """

    name = "quasi_newton"

    def __init__(self, residual_writer: typing.Optional[ResidualWriter] = None) -> None:
        self.residual_writer = residual_writer

    def build_system(
        self, assembler: PressureAssembler, problem: PicardProblem
    ) -> LinearSystem:
        system = problem.assemble(assembler)
        snapshot = problem.snapshot
        jacobian, residual = correct_residual_and_jacobian(
            system=system,
            x=problem.unknowns,
            total_compressibility=snapshot.total_compressibility,
            cell_pressure=problem.cell_pressure,
            initial_cell_pressure=problem.initial_cell_pressure,
            total_phase_volume_density=snapshot.total_phase_volume_density,
            explicit_jacobian_term=snapshot.explicit_jacobian_term,
            pore_volume=problem.pore_volume,
            dt=problem.dt,
        )
        if self.residual_writer is not None:
            self.residual_writer.write(
                residual, solve_index=problem.solve_index, iteration=problem.iteration
            )
        return LinearSystem(
            matrix=jacobian, rhs=residual, x=np.zeros_like(residual)
        )

    def to_unknowns(self, solution: Vector, problem: PicardProblem) -> Vector:
        return problem.unknowns - solution


def get_linearization(
    experimental_jacobian: bool,
    output_residual: bool = False,
    residual_output_dir: typing.Union[str, pathlib.Path] = ".",
) -> Linearization:
    """
    Select the linearization strategy.

    :param experimental_jacobian: Use the quasi-Newton correction.
    :param output_residual: Write quasi-Newton residuals to disk.
    :param residual_output_dir: Directory for the residual files.
    :return: The strategy.
    """
    if not experimental_jacobian:
        if output_residual:
            logger.warning(
                "Residual output is only produced by the quasi-Newton linearization; ignoring."
            )
        return PicardLinearization()
    writer = ResidualWriter(residual_output_dir) if output_residual else None
    return QuasiNewtonLinearization(residual_writer=writer)
