"""
Protocols for the collaborators of the pressure iteration.

The solver never owns these objects. It keeps references captured at setup
and assumes they are not mutated while it is alive.
"""

import typing

import numpy as np

from compflow.models import (
    FluidPropertySnapshot,
    FluidState,
    LinearSolverResult,
    LinearSystem,
    PressureSolution,
)
from compflow.types import (
    Component,
    ComponentArray,
    Phase,
    PhaseArray,
    SparseMatrix,
    Vector,
    WellType,
)


__all__ = [
    "Grid",
    "Rock",
    "FluidModel",
    "WellsModel",
    "BoundaryConditionSource",
    "PressureAssembler",
    "LinearSolver",
]


@typing.runtime_checkable
class Grid(typing.Protocol):
    """Grid topology and geometry queries."""

    @property
    def num_cells(self) -> int: ...

    @property
    def num_faces(self) -> int: ...

    def boundary_id(self, face: int) -> int:
        """Boundary id of a face, 0 for interior faces and faces without a condition."""
        ...

    def cell_centroid(self, cell: int) -> typing.Sequence[float]:
        """Centroid of a cell as a 3-vector (x, y, z)."""
        ...

    def cell_volume(self, cell: int) -> float: ...


@typing.runtime_checkable
class Rock(typing.Protocol):
    """Cell-wise rock properties."""

    def porosity(self, cell: int) -> float: ...

    def permeability(self, cell: int) -> np.typing.NDArray:
        """Permeability tensor of a cell, shape (3, 3)."""
        ...


@typing.runtime_checkable
class FluidModel(typing.Protocol):
    """Fluid equation-of-state evaluator."""

    @property
    def num_components(self) -> int: ...

    @property
    def num_phases(self) -> int: ...

    @property
    def phases(self) -> typing.Sequence[Phase]:
        """Phases in storage order."""
        ...

    @property
    def components(self) -> typing.Sequence[Component]:
        """Components in storage order."""
        ...

    def compute_state(
        self, pressure: np.typing.NDArray, composition: np.typing.NDArray
    ) -> FluidState:
        """
        Evaluate the fluid state at a point.

        :param pressure: Phase pressures, shape (num_phases,).
        :param composition: Surface volumes per component, shape (num_components,).
        :return: Saturations, mobilities and the phase-to-component matrix.
        """
        ...

    def surface_densities(self) -> np.typing.NDArray:
        """Surface density per component."""
        ...

    def phase_densities(self, phase_to_component: np.typing.NDArray) -> np.typing.NDArray:
        """
        Reservoir density per phase.

        :param phase_to_component: Phase-to-component matrix, shape (num_phases, num_components).
        """
        ...

    def compute_snapshot(
        self,
        grid: Grid,
        rock: Rock,
        gravity: np.typing.NDArray,
        cell_pressure: PhaseArray,
        face_pressure: PhaseArray,
        cell_z: ComponentArray,
        inflow_mixture: np.typing.NDArray,
        dt: float,
    ) -> FluidPropertySnapshot:
        """Compute cell and face fluid properties for the current iterate."""
        ...


@typing.runtime_checkable
class WellsModel(typing.Protocol):
    """Well topology and specification."""

    @property
    def num_wells(self) -> int: ...

    def num_perforations(self, well: int) -> int: ...

    def well_cell(self, well: int, perforation: int) -> int: ...

    def reference_depth(self, well: int) -> float: ...

    def well_type(self, well: int) -> WellType: ...

    def injection_mixture(self, cell: int) -> np.typing.NDArray:
        """Injected composition at a perforated cell, shape (num_components,)."""
        ...

    def perforation_pressure(self, cell: int) -> float:
        """Initial pressure of the perforation in a cell."""
        ...


@typing.runtime_checkable
class BoundaryConditionSource(typing.Protocol):
    """Maps boundary ids to flow conditions."""

    def flow_condition(self, boundary_id: int) -> typing.Any:
        """Flow condition for a boundary id, normally a Dirichlet or Neumann condition."""
        ...


@typing.runtime_checkable
class PressureAssembler(typing.Protocol):
    """
    Discretization of the compressible pressure equation.

    Builds the linear system for one Picard iteration and recovers pressures
    and fluxes from its solution.
    """

    def init(
        self,
        grid: Grid,
        wells: WellsModel,
        permeability: np.typing.NDArray,
        porosity: Vector,
        gravity: np.typing.NDArray,
    ) -> None: ...

    def assemble(
        self,
        *,
        sources: Vector,
        bc_types: np.typing.NDArray,
        bc_values: Vector,
        dt: float,
        total_compressibility: Vector,
        volume_discrepancy: Vector,
        cell_phase_to_component: np.typing.NDArray,
        face_phase_to_component: np.typing.NDArray,
        perforation_phase_to_component: np.typing.NDArray,
        face_phase_mobility: PhaseArray,
        perforation_phase_mobility: PhaseArray,
        initial_cell_pressure: Vector,
        gravity_capillary_flux: PhaseArray,
        perforation_gravity_potential: PhaseArray,
        surface_densities: np.typing.NDArray,
    ) -> LinearSystem: ...

    def compute_pressures_and_fluxes(self, x: Vector) -> PressureSolution: ...

    def face_transmissibilities(self) -> Vector: ...

    def explicit_timestep_limit(
        self,
        face_phase_to_component: np.typing.NDArray,
        face_phase_mobility: PhaseArray,
        face_phase_mobility_derivative: PhaseArray,
        surface_densities: np.typing.NDArray,
    ) -> float: ...

    def explicit_transport(self, dt: float, cell_z: ComponentArray) -> None:
        """Advance the cell compositions in place by one explicit step."""
        ...


@typing.runtime_checkable
class LinearSolver(typing.Protocol):
    """Sparse linear solver."""

    def solve(
        self, matrix: SparseMatrix, rhs: Vector, x0: typing.Optional[Vector] = None
    ) -> LinearSolverResult: ...
