"""Small, fully specified collaborators for exercising the pressure iteration.

The grid is a line of unit cells. Face ``f`` lies between cells ``f - 1`` and
``f``; faces 0 and ``num_cells`` are the left and right boundaries with
boundary ids 1 and 2. The assembler discretizes a linear compressible pressure
equation on it with unit transmissibilities, so the Picard iteration reaches
its fixed point after one solve.
"""

import typing

import attrs
import numpy as np
import pytest
from scipy.sparse import lil_matrix

from compflow import (
    BoundaryConditions,
    Component,
    Config,
    DirichletCondition,
    FlowBCType,
    FluidPropertySnapshot,
    FluidState,
    LinearSolverResult,
    LinearSystem,
    Phase,
    PressureSolution,
    WellType,
)

SURFACE_DENSITIES = np.array([1000.0, 800.0, 1.0])


class LineGrid:
    def __init__(self, num_cells: int, depths: typing.Optional[typing.Sequence[float]] = None):
        self._num_cells = num_cells
        self.depths = list(depths) if depths is not None else [0.0] * num_cells

    @property
    def num_cells(self) -> int:
        return self._num_cells

    @property
    def num_faces(self) -> int:
        return self._num_cells + 1

    def boundary_id(self, face: int) -> int:
        if face == 0:
            return 1
        if face == self._num_cells:
            return 2
        return 0

    def cell_centroid(self, cell: int) -> typing.Tuple[float, float, float]:
        return (cell + 0.5, 0.0, self.depths[cell])

    def cell_volume(self, cell: int) -> float:
        return 1.0


class UniformRock:
    def __init__(self, porosity: float = 0.2):
        self._porosity = porosity

    def porosity(self, cell: int) -> float:
        return self._porosity

    def permeability(self, cell: int) -> np.ndarray:
        return np.eye(3)


class SimpleFluid:
    """
    Three phase, three component fluid with one component per phase.

    The total phase volume density is `1 - c·(p - p_ref)`, so it is
    consistent with the constant total compressibility `c` and the
    volume balance residual vanishes at the Picard solution.
    """

    phases = (Phase.AQUA, Phase.LIQUID, Phase.VAPOUR)
    components = (Component.WATER, Component.OIL, Component.GAS)
    num_phases = 3

    def __init__(
        self,
        compressibility: float = 1e-3,
        volume_discrepancy: float = 0.0,
        relative_volume_discrepancy: float = 0.0,
        reference_pressure: typing.Optional[np.ndarray] = None,
        num_components: int = 3,
        components: typing.Optional[typing.Sequence[Component]] = None,
    ):
        self.compressibility = compressibility
        self.volume_discrepancy = volume_discrepancy
        self.relative_volume_discrepancy = relative_volume_discrepancy
        self.reference_pressure = reference_pressure
        self.num_components = num_components
        if components is not None:
            self.components = tuple(components)
        self.snapshot_calls = 0
        self.inflow_mixtures: typing.List[np.ndarray] = []

    def compute_state(self, pressure, composition) -> FluidState:
        composition = np.asarray(composition, dtype=float)
        total = composition.sum()
        saturation = composition / total if total > 0.0 else np.full(3, 1.0 / 3.0)
        return FluidState(
            saturation=saturation, mobility=np.ones(3), phase_to_component=np.eye(3)
        )

    def surface_densities(self) -> np.ndarray:
        return SURFACE_DENSITIES.copy()

    def phase_densities(self, phase_to_component) -> np.ndarray:
        return np.asarray(phase_to_component) @ SURFACE_DENSITIES

    def compute_snapshot(
        self,
        grid,
        rock,
        gravity,
        cell_pressure,
        face_pressure,
        cell_z,
        inflow_mixture,
        dt,
    ) -> FluidPropertySnapshot:
        self.snapshot_calls += 1
        self.inflow_mixtures.append(np.array(inflow_mixture))
        num_cells, num_faces = grid.num_cells, grid.num_faces
        pressure = cell_pressure[:, 1]
        reference = pressure if self.reference_pressure is None else self.reference_pressure
        c = self.compressibility
        return FluidPropertySnapshot(
            total_compressibility=np.full(num_cells, c),
            volume_discrepancy=np.full(num_cells, self.volume_discrepancy),
            relative_volume_discrepancy=np.full(
                num_cells, self.relative_volume_discrepancy
            ),
            cell_phase_to_component=np.tile(np.eye(3), (num_cells, 1, 1)),
            face_phase_to_component=np.tile(np.eye(3), (num_faces, 1, 1)),
            face_phase_mobility=np.ones((num_faces, 3)),
            face_phase_mobility_derivative=np.zeros((num_faces, 3)),
            gravity_capillary_flux=np.zeros((num_faces, 3)),
            explicit_jacobian_term=np.full(num_cells, c),
            total_phase_volume_density=1.0 - c * (pressure - reference),
        )


@attrs.frozen
class WellSpec:
    well_type: WellType
    cells: typing.Tuple[int, ...]
    bhp: float
    reference_depth: float = 0.0


class SimpleWells:
    def __init__(
        self,
        specs: typing.Sequence[WellSpec] = (),
        initial_pressure: float = 1e5,
        injection_mixture: typing.Sequence[float] = (0.0, 0.0, 1.0),
    ):
        self.specs = list(specs)
        self.initial_pressure = initial_pressure
        self._injection_mixture = np.asarray(injection_mixture, dtype=float)

    @property
    def num_wells(self) -> int:
        return len(self.specs)

    def num_perforations(self, well: int) -> int:
        return len(self.specs[well].cells)

    def well_cell(self, well: int, perforation: int) -> int:
        return self.specs[well].cells[perforation]

    def reference_depth(self, well: int) -> float:
        return self.specs[well].reference_depth

    def well_type(self, well: int) -> WellType:
        return self.specs[well].well_type

    def injection_mixture(self, cell: int) -> np.ndarray:
        return self._injection_mixture.copy()

    def perforation_pressure(self, cell: int) -> float:
        return self.initial_pressure


class LineAssembler:
    """Two-point discretization on a `LineGrid` with bottomhole-pressure controlled wells."""

    def __init__(
        self,
        transmissibility: float = 1.0,
        well_index: float = 1.0,
        timestep_limit: float = 5.0,
    ):
        self.transmissibility = transmissibility
        self.well_index = well_index
        self.timestep_limit = timestep_limit
        self.init_calls = 0
        self.assemble_calls: typing.List[typing.Dict[str, typing.Any]] = []
        self.transport_calls: typing.List[float] = []

    def init(self, grid, wells, permeability, porosity, gravity) -> None:
        self.init_calls += 1
        self.grid = grid
        self.wells = wells
        self.porosity = np.asarray(porosity)
        self.permeability = np.asarray(permeability)
        self.perforations = [
            (well, wells.well_cell(well, perforation))
            for well in range(wells.num_wells)
            for perforation in range(wells.num_perforations(well))
        ]

    def assemble(self, **kwargs) -> LinearSystem:
        self.assemble_calls.append(kwargs)
        n = self.grid.num_cells
        num_wells = self.wells.num_wells
        T = self.transmissibility
        WI = self.well_index
        dt = kwargs["dt"]
        bc_types = kwargs["bc_types"]
        bc_values = kwargs["bc_values"]
        ct = kwargs["total_compressibility"]
        p0 = kwargs["initial_cell_pressure"]

        A = lil_matrix((n + num_wells, n + num_wells))
        b = np.zeros(n + num_wells)
        s = self.porosity / dt
        for cell in range(n):
            A[cell, cell] += s[cell] * ct[cell]
            b[cell] += (
                s[cell] * ct[cell] * p0[cell]
                + kwargs["sources"][cell]
                - kwargs["volume_discrepancy"][cell] / dt
            )
        for face in range(1, n):
            left, right = face - 1, face
            A[left, left] += T
            A[right, right] += T
            A[left, right] -= T
            A[right, left] -= T
        for face, cell in ((0, 0), (n, n - 1)):
            if bc_types[face] == FlowBCType.PRESSURE:
                A[cell, cell] += T
                b[cell] += T * bc_values[face]
        for well, cell in self.perforations:
            A[cell, cell] += WI
            A[cell, n + well] -= WI
        for well in range(num_wells):
            A[n + well, n + well] = 1.0
            b[n + well] = self.wells.specs[well].bhp
        return LinearSystem(matrix=A.tocsr(), rhs=b, x=np.zeros(n + num_wells))

    def compute_pressures_and_fluxes(self, x) -> PressureSolution:
        n = self.grid.num_cells
        T = self.transmissibility
        bc_types = self.assemble_calls[-1]["bc_types"]
        bc_values = self.assemble_calls[-1]["bc_values"]
        pressure = np.asarray(x[:n])
        bhp = np.asarray(x[n:])

        face_pressure = np.zeros(n + 1)
        face_flux = np.zeros(n + 1)
        for face in range(1, n):
            face_pressure[face] = 0.5 * (pressure[face - 1] + pressure[face])
            face_flux[face] = T * (pressure[face - 1] - pressure[face])
        face_pressure[0] = pressure[0]
        face_pressure[n] = pressure[n - 1]
        if bc_types[0] == FlowBCType.PRESSURE:
            face_pressure[0] = bc_values[0]
            face_flux[0] = T * (bc_values[0] - pressure[0])
        if bc_types[n] == FlowBCType.PRESSURE:
            face_pressure[n] = bc_values[n]
            face_flux[n] = T * (pressure[n - 1] - bc_values[n])

        perforation_flux = np.array(
            [self.well_index * (bhp[well] - pressure[cell]) for well, cell in self.perforations]
        )
        return PressureSolution(
            cell_pressure=pressure,
            face_pressure=face_pressure,
            face_flux=face_flux,
            well_bhp=bhp,
            well_perf_fluxes=perforation_flux,
        )

    def face_transmissibilities(self) -> np.ndarray:
        return np.full(self.grid.num_faces, self.transmissibility)

    def explicit_timestep_limit(
        self,
        face_phase_to_component,
        face_phase_mobility,
        face_phase_mobility_derivative,
        surface_densities,
    ) -> float:
        return self.timestep_limit

    def explicit_transport(self, dt, cell_z) -> None:
        self.transport_calls.append(dt)
        cell_z[:, 2] += dt


class TruncatingAssembler(LineAssembler):
    """Drops the last face flux, as an assembler with an inconsistent face count would."""

    def compute_pressures_and_fluxes(self, x) -> PressureSolution:
        solution = super().compute_pressures_and_fluxes(x)
        return attrs.evolve(solution, face_flux=solution.face_flux[:-1])


class FailingLinearSolver:
    def solve(self, matrix, rhs, x0=None) -> LinearSolverResult:
        return LinearSolverResult(
            x=np.zeros_like(rhs), converged=False, iterations=7, reduction=0.5
        )


@pytest.fixture
def line_grid() -> LineGrid:
    return LineGrid(4)


@pytest.fixture
def rock() -> UniformRock:
    return UniformRock()


@pytest.fixture
def fluid() -> SimpleFluid:
    return SimpleFluid()


@pytest.fixture
def no_wells() -> SimpleWells:
    return SimpleWells()


@pytest.fixture
def assembler() -> LineAssembler:
    return LineAssembler()


@pytest.fixture
def direct_config() -> Config:
    return Config(linear_solver="direct", preconditioner=None)


@pytest.fixture
def gravity() -> np.ndarray:
    return np.array([0.0, 0.0, 9.81])


@pytest.fixture
def pressure_drop_bc() -> BoundaryConditions:
    return BoundaryConditions(
        {1: DirichletCondition(pressure=2e5), 2: DirichletCondition(pressure=1e5)}
    )


def make_state(grid: LineGrid, pressure: float = 1e5):
    """Cell pressures, face pressures, compositions and sources for a uniform initial state."""
    cell_pressure = np.full((grid.num_cells, 3), pressure)
    face_pressure = np.full((grid.num_faces, 3), pressure)
    cell_z = np.tile([0.2, 0.7, 0.1], (grid.num_cells, 1))
    src = np.zeros(grid.num_cells)
    return cell_pressure, face_pressure, cell_z, src
