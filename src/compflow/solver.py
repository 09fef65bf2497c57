"""
Compressible multi-phase pressure solver.

Runs the fixed-point (Picard) pressure iteration of one timestep, with an
optional quasi-Newton correction, and exposes the explicit (IMPES) transport
step that follows a converged pressure solve.
"""

import logging
import typing

import attrs
import numpy as np

from compflow._precision import get_dtype
from compflow.boundary_conditions import (
    FaceBoundaryConditions,
    build_face_boundary_conditions,
)
from compflow.config import Config
from compflow.convergence import ConvergenceMetrics, compute_relative_changes
from compflow.errors import (
    ComputationError,
    ConfigurationError,
    SolverError,
    StateError,
    ValidationError,
)
from compflow.interfaces import (
    BoundaryConditionSource,
    FluidModel,
    Grid,
    LinearSolver,
    PressureAssembler,
    Rock,
    WellsModel,
)
from compflow.linear_solvers import ScipyLinearSolver
from compflow.linearization import Linearization, PicardProblem, get_linearization
from compflow.models import FluidPropertySnapshot, LinearSystem, PressureSolution
from compflow.properties import compute_fluid_properties
from compflow.types import ComponentArray, Phase, PhaseArray, ReturnCode, Vector
from compflow.wells import (
    Perforations,
    build_perforations,
    check_vertical_gravity,
    compute_well_perforation_pressures,
    compute_well_potentials,
)

logger = logging.getLogger(__name__)

__all__ = ["SolveResult", "CompressibleFlowSolver"]


@attrs.frozen
class SolveResult:
    """Outcome of a pressure solve."""

    code: ReturnCode
    """One of the recoverable outcomes."""
    iterations: int
    """Number of iterations performed. 0 when the timestep was rejected up front."""
    face_flux: Vector
    """Total signed volume flux across each face."""
    well_bhp: Vector
    """Bottomhole pressure per well."""
    well_perf_pressures: Vector
    """Pressure per perforation."""
    well_perf_fluxes: Vector
    """Total volume flux per perforation, positive meaning injection."""
    metrics: typing.Optional[ConvergenceMetrics] = None
    """Relative changes of the last iteration, if any iteration ran."""

    @property
    def converged(self) -> bool:
        return self.code is ReturnCode.SOLVE_OK


class CompressibleFlowSolver:
    """
    Pressure iteration driver for compressible multi-phase, multi-component flow.

    Usage:
    ```python
    solver = CompressibleFlowSolver(assembler)
    solver.configure({"max_num_iter": 20, "num_components": 3})
    solver.prepare(grid, rock, fluid, wells, gravity, boundary_conditions)
    result = solver.solve(cell_pressure, face_pressure, cell_z, src, dt)
    if result.code is ReturnCode.SOLVE_OK:
        dt_stable = solver.stable_timestep_limit()
        solver.explicit_step(cell_z, min(dt, dt_stable))
    ```

    An instance holds mutable per-simulation state (perforation data, the last
    fluid property snapshot) and must not be shared between threads. After a
    `SolverError` or `ConfigurationError` the instance should be discarded.
    """

    def __init__(
        self,
        assembler: PressureAssembler,
        linear_solver: typing.Optional[LinearSolver] = None,
        config: typing.Optional[typing.Union[Config, typing.Mapping[str, typing.Any]]] = None,
    ) -> None:
        """
        :param assembler: Pressure equation assembler.
        :param linear_solver: Linear solver. Defaults to a `ScipyLinearSolver` built from the config.
        :param config: Optional configuration, applied with `configure`.
        """
        self.assembler = assembler
        self._user_linear_solver = linear_solver
        self.linear_solver: typing.Optional[LinearSolver] = linear_solver
        self.config: typing.Optional[Config] = None
        self.linearization: typing.Optional[Linearization] = None
        self._inflow_mixture: typing.Optional[np.typing.NDArray] = None

        self.grid: typing.Optional[Grid] = None
        self.rock: typing.Optional[Rock] = None
        self.fluid: typing.Optional[FluidModel] = None
        self.wells: typing.Optional[WellsModel] = None
        self.gravity: typing.Optional[np.typing.NDArray] = None
        self.porosity: typing.Optional[Vector] = None
        self.pore_volume: typing.Optional[Vector] = None
        self.face_boundary_conditions: typing.Optional[FaceBoundaryConditions] = None
        self.perforations: typing.Optional[Perforations] = None
        self.snapshot: typing.Optional[FluidPropertySnapshot] = None
        self._liquid_phase = 0
        self._solve_count = 0
        self._last_code: typing.Optional[ReturnCode] = None

        if config is not None:
            self.configure(config)

    def configure(
        self,
        config: typing.Optional[typing.Union[Config, typing.Mapping[str, typing.Any]]] = None,
    ) -> None:
        """
        Set the run-time parameters of the solver.

        :param config: A `Config`, or a flat parameter mapping (see `Config.from_parameters`).
        :raises ConfigurationError: If the component count is not 2 or 3, or a parameter is unknown.
        """
        if not isinstance(config, Config):
            config = Config.from_parameters(config)

        self.config = config
        self._inflow_mixture = config.inflow_mixture
        self.linearization = get_linearization(
            experimental_jacobian=config.experimental_jacobian,
            output_residual=config.output_residual,
            residual_output_dir=config.residual_output_dir,
        )
        if self._user_linear_solver is None:
            self.linear_solver = ScipyLinearSolver.from_config(config)
        logger.debug(
            f"Configured pressure solver: {config.num_components} components, "
            f"{self.linearization.name} linearization, at most {config.max_num_iter} iterations."
        )

    @property
    def inflow_mixture(self) -> np.typing.NDArray:
        """Inflow mixture in the fluid's component order once prepared, else the configured order."""
        self._require_configured()
        return self._inflow_mixture.copy()  # type: ignore[union-attr]

    @property
    def volume_discrepancy_limit(self) -> float:
        self._require_configured()
        return self.config.max_relative_voldiscr  # type: ignore[union-attr]

    def prepare(
        self,
        grid: Grid,
        rock: Rock,
        fluid: FluidModel,
        wells: WellsModel,
        gravity: typing.Sequence[float],
        boundary_conditions: BoundaryConditionSource,
    ) -> None:
        """
        Grid and rock dependent initialization. Call once per grid.

        :param grid: The grid.
        :param rock: Cell-wise permeabilities and porosities.
        :param fluid: Fluid model.
        :param wells: Well specifications.
        :param gravity: Gravity vector. Its norm is the gravity strength and
            its direction the direction of gravity.
        :param boundary_conditions: Boundary conditions by boundary id.
        :raises ConfigurationError: On an unsupported fluid or boundary condition, or
            non-vertical gravity with wells present.
        """
        config = self._require_configured()
        if fluid.num_components != config.num_components:
            raise ConfigurationError(
                f"Fluid has {fluid.num_components} components but the solver is "
                f"configured for {config.num_components}."
            )
        phases = list(fluid.phases)
        if Phase.LIQUID not in phases:
            raise ConfigurationError("Fluid model must have a liquid phase.")
        # Compositions are exchanged in the fluid's own component order.
        inflow_mixture = config.mixture_for(fluid.components)

        gravity = np.asarray(gravity, dtype=get_dtype())
        if gravity.shape != (3,):
            raise ValidationError(f"Gravity must be a 3-vector, got shape {gravity.shape}.")

        self._inflow_mixture = inflow_mixture
        self.grid = grid
        self.rock = rock
        self.fluid = fluid
        self.wells = wells
        self.gravity = gravity
        self._liquid_phase = phases.index(Phase.LIQUID)

        num_cells = grid.num_cells
        dtype = get_dtype()
        self.porosity = np.array(
            [rock.porosity(cell) for cell in range(num_cells)], dtype=dtype
        )
        volumes = np.array([grid.cell_volume(cell) for cell in range(num_cells)], dtype=dtype)
        self.pore_volume = volumes * self.porosity
        permeability = np.array(
            [rock.permeability(cell) for cell in range(num_cells)], dtype=dtype
        )
        self.assembler.init(grid, wells, permeability, self.porosity, gravity)

        self.face_boundary_conditions = build_face_boundary_conditions(
            grid, boundary_conditions
        )
        self.perforations = build_perforations(
            wells, num_phases=fluid.num_phases, num_components=fluid.num_components
        )
        if len(self.perforations) > 0:
            check_vertical_gravity(gravity)

        self.snapshot = None
        self._last_code = None
        logger.debug(
            f"Prepared pressure solver for {num_cells} cells, {grid.num_faces} faces "
            f"and {len(self.perforations)} perforations."
        )

    def face_transmissibilities(self) -> Vector:
        self._require_prepared()
        return self.assembler.face_transmissibilities()

    def volume_discrepancy_acceptable(
        self,
        cell_pressure: PhaseArray,
        face_pressure: PhaseArray,
        cell_z: ComponentArray,
        dt: float,
    ) -> bool:
        """
        Check whether the current state is within the relative volume discrepancy limit.

        :return: True if the maximum relative volume discrepancy does not exceed the limit.
        """
        config = self._require_prepared()
        snapshot = self._compute_fluid_properties(cell_pressure, face_pressure, cell_z, dt)
        relative_discrepancy = snapshot.max_relative_volume_discrepancy
        if relative_discrepancy > config.max_relative_voldiscr:
            logger.warning(f"Relative volume discrepancy too large: {relative_discrepancy}")
            return False
        logger.info(f"Relative volume discrepancy ok: {relative_discrepancy}")
        return True

    def solve(
        self,
        cell_pressure: PhaseArray,
        face_pressure: PhaseArray,
        cell_z: ComponentArray,
        src: Vector,
        dt: float,
        well_perf_pressures: typing.Optional[Vector] = None,
        well_perf_fluxes: typing.Optional[Vector] = None,
    ) -> SolveResult:
        """
        Solve for the phase pressures on cells and faces, and the total face fluxes.

        :param cell_pressure: Phase pressures per cell, shape (num_cells, num_phases). Updated in place.
        :param face_pressure: Phase pressures per face, shape (num_faces, num_phases). Updated in place.
        :param cell_z: Surface volumes per cell, shape (num_cells, num_components). Not modified.
        :param src: Explicit source rate per cell, positive for injection.
        :param dt: Timestep.
        :param well_perf_pressures: Initial perforation pressures. Defaults to the current ones.
        :param well_perf_fluxes: Initial perforation fluxes. Defaults to zero.
        :return: `SolveResult` with the outcome code and well and flux data.
        :raises ValidationError: If an argument has the wrong shape or `dt` is not positive.
        :raises SolverError: If the linear solver does not converge.
        :raises ComputationError: If the assembler returns arrays of the wrong length.
        """
        config = self._require_prepared()
        grid = typing.cast(Grid, self.grid)
        wells = typing.cast(WellsModel, self.wells)
        perforations = typing.cast(Perforations, self.perforations)
        face_bcs = typing.cast(FaceBoundaryConditions, self.face_boundary_conditions)
        linearization = typing.cast(Linearization, self.linearization)
        self._check_solve_arguments(
            cell_pressure,
            face_pressure,
            cell_z,
            src,
            dt,
            well_perf_pressures=well_perf_pressures,
            well_perf_fluxes=well_perf_fluxes,
        )

        solve_index = self._solve_count
        self._solve_count += 1
        self._last_code = None

        dtype = get_dtype()
        num_faces = grid.num_faces
        num_wells = wells.num_wells
        num_perforations = len(perforations)
        if well_perf_pressures is not None:
            perforations.pressure[:] = well_perf_pressures
        perf_fluxes = (
            np.zeros(num_perforations, dtype=dtype)
            if well_perf_fluxes is None
            else np.array(well_perf_fluxes, dtype=dtype)
        )

        # Scalar pressures are the liquid phase pressures.
        initial_cell_pressure = np.array(cell_pressure[:, self._liquid_phase], dtype=dtype)
        cell_p = initial_cell_pressure.copy()
        face_p = np.zeros(num_faces, dtype=dtype)
        face_flux = np.zeros(num_faces, dtype=dtype)
        well_bhp = np.zeros(num_wells, dtype=dtype)
        initial_volume_discrepancy = np.zeros_like(cell_p)
        surface_densities = np.asarray(self.fluid.surface_densities(), dtype=dtype)  # type: ignore[union-attr]
        weight = config.relax_weight_pressure_iteration
        metrics = None

        for iteration in range(config.max_num_iter):
            start_face_flux = face_flux.copy()
            start_face_p = face_p.copy()
            start_cell_p = cell_p.copy()
            start_perf_fluxes = perf_fluxes.copy()

            snapshot = self._compute_fluid_properties(
                cell_pressure, face_pressure, cell_z, dt
            )

            if iteration == 0:
                relative_discrepancy = snapshot.max_relative_volume_discrepancy
                if relative_discrepancy > config.max_relative_voldiscr:
                    logger.warning(
                        f"Relative volume discrepancy too large: {relative_discrepancy}"
                    )
                    return self._result(
                        ReturnCode.VOLUME_DISCREPANCY_TOO_LARGE,
                        iterations=0,
                        face_flux=face_flux,
                        well_bhp=well_bhp,
                        perf_fluxes=perf_fluxes,
                        metrics=None,
                    )
                initial_volume_discrepancy = np.array(
                    snapshot.volume_discrepancy, dtype=dtype
                )
                if config.relax_time_voldiscr > 0.0:
                    initial_volume_discrepancy *= min(
                        1.0, dt / config.relax_time_voldiscr
                    )
                # Potentials depend on geometry and the first iterate's densities only.
                perforations.gravity_potential[:] = compute_well_potentials(
                    perforations, grid, wells, self.fluid, self.gravity  # type: ignore[arg-type]
                )

            problem = PicardProblem(
                sources=np.asarray(src, dtype=dtype),
                bc_types=face_bcs.types,
                bc_values=face_bcs.values,
                dt=dt,
                snapshot=snapshot,
                initial_volume_discrepancy=initial_volume_discrepancy,
                perforation_phase_to_component=perforations.phase_to_component,
                perforation_phase_mobility=perforations.mobility,
                perforation_gravity_potential=perforations.gravity_potential,
                initial_cell_pressure=initial_cell_pressure,
                cell_pressure=cell_p,
                well_bhp=well_bhp,
                pore_volume=self.pore_volume,  # type: ignore[arg-type]
                surface_densities=surface_densities,
                solve_index=solve_index,
                iteration=iteration,
            )
            system = linearization.build_system(self.assembler, problem)
            solution = self._solve_linear_system(system, iteration)
            unknowns = linearization.to_unknowns(solution, problem)

            pressures = self.assembler.compute_pressures_and_fluxes(unknowns)
            self._check_pressure_solution(pressures)
            cell_p = np.array(pressures.cell_pressure, dtype=dtype)
            face_p = np.array(pressures.face_pressure, dtype=dtype)
            face_flux = np.array(pressures.face_flux, dtype=dtype)
            well_bhp = np.array(pressures.well_bhp, dtype=dtype)
            perf_fluxes = np.array(pressures.well_perf_fluxes, dtype=dtype)

            if weight != 1.0:
                cell_p = weight * cell_p + (1.0 - weight) * start_cell_p
                # The first iteration has no meaningful face state to blend with.
                if iteration > 0:
                    face_p = weight * face_p + (1.0 - weight) * start_face_p
                    face_flux = weight * face_flux + (1.0 - weight) * start_face_flux

            # TODO: Account for capillary pressure when copying to the phase pressures.
            cell_pressure[:, :] = cell_p[:, np.newaxis]
            face_pressure[:, :] = face_p[:, np.newaxis]

            perforations.pressure[:] = compute_well_perforation_pressures(
                perforations, num_wells, perf_fluxes, well_bhp
            )

            metrics = compute_relative_changes(
                face_flux=face_flux,
                perforation_flux=perf_fluxes,
                cell_pressure=cell_p,
                start_face_flux=start_face_flux,
                start_perforation_flux=start_perf_fluxes,
                start_cell_pressure=start_cell_p,
            )
            if iteration == 0:
                logger.info("Iteration      Rel. flux change     Rel. pressure change")
            logger.info(
                f"{iteration:6d}{metrics.flux_change:24.5g}{metrics.pressure_change:24.5g}"
            )

            if metrics.is_converged(config.flux_rel_tol, config.press_rel_tol):
                logger.info(
                    f"Pressure solver converged. Number of iterations: {iteration + 1}"
                )
                return self._result(
                    ReturnCode.SOLVE_OK,
                    iterations=iteration + 1,
                    face_flux=face_flux,
                    well_bhp=well_bhp,
                    perf_fluxes=perf_fluxes,
                    metrics=metrics,
                )

        logger.warning(
            f"Pressure solver failed to converge in {config.max_num_iter} iterations."
        )
        return self._result(
            ReturnCode.FAILED_TO_CONVERGE,
            iterations=config.max_num_iter,
            face_flux=face_flux,
            well_bhp=well_bhp,
            perf_fluxes=perf_fluxes,
            metrics=metrics,
        )

    def stable_timestep_limit(self) -> float:
        """
        Largest stable timestep for the explicit transport step.

        Only meaningful after a converged `solve`.

        :raises StateError: If the last solve did not converge.
        """
        self._require_converged()
        snapshot = typing.cast(FluidPropertySnapshot, self.snapshot)
        return float(
            self.assembler.explicit_timestep_limit(
                snapshot.face_phase_to_component,
                snapshot.face_phase_mobility,
                snapshot.face_phase_mobility_derivative,
                np.asarray(self.fluid.surface_densities()),  # type: ignore[union-attr]
            )
        )

    def explicit_step(self, cell_z: ComponentArray, dt: float) -> None:
        """
        Advance the cell compositions in place by one explicit (IMPES) step.

        :param cell_z: Surface volumes per cell. Updated in place.
        :param dt: Transport timestep.
        :raises StateError: If the last solve did not converge.
        """
        self._require_converged()
        if dt <= 0.0:
            raise ValidationError(f"Timestep must be positive, got {dt}.")
        self.assembler.explicit_transport(dt, cell_z)

    def _compute_fluid_properties(
        self,
        cell_pressure: PhaseArray,
        face_pressure: PhaseArray,
        cell_z: ComponentArray,
        dt: float,
    ) -> FluidPropertySnapshot:
        self.snapshot = compute_fluid_properties(
            grid=self.grid,  # type: ignore[arg-type]
            rock=self.rock,  # type: ignore[arg-type]
            fluid=self.fluid,  # type: ignore[arg-type]
            wells=self.wells,  # type: ignore[arg-type]
            perforations=self.perforations,  # type: ignore[arg-type]
            gravity=self.gravity,  # type: ignore[arg-type]
            cell_pressure=cell_pressure,
            face_pressure=face_pressure,
            cell_z=cell_z,
            inflow_mixture=self._inflow_mixture,  # type: ignore[arg-type]
            dt=dt,
        )
        return self.snapshot

    def _solve_linear_system(self, system: LinearSystem, iteration: int) -> Vector:
        result = self.linear_solver.solve(system.matrix, system.rhs, system.x)  # type: ignore[union-attr]
        if not result.converged:
            logger.error(f"Linear solve failed at pressure iteration {iteration}.")
            raise SolverError(
                f"Linear solver failed to converge in {result.iterations} iterations. "
                f"Residual reduction achieved is {result.reduction}"
            )
        system.x = result.x
        return result.x

    def _result(
        self,
        code: ReturnCode,
        iterations: int,
        face_flux: Vector,
        well_bhp: Vector,
        perf_fluxes: Vector,
        metrics: typing.Optional[ConvergenceMetrics],
    ) -> SolveResult:
        self._last_code = code
        return SolveResult(
            code=code,
            iterations=iterations,
            face_flux=face_flux.copy(),
            well_bhp=well_bhp.copy(),
            well_perf_pressures=self.perforations.pressure.copy(),  # type: ignore[union-attr]
            well_perf_fluxes=perf_fluxes.copy(),
            metrics=metrics,
        )

    def _check_solve_arguments(
        self,
        cell_pressure: PhaseArray,
        face_pressure: PhaseArray,
        cell_z: ComponentArray,
        src: Vector,
        dt: float,
        well_perf_pressures: typing.Optional[Vector] = None,
        well_perf_fluxes: typing.Optional[Vector] = None,
    ) -> None:
        grid = typing.cast(Grid, self.grid)
        fluid = typing.cast(FluidModel, self.fluid)
        if dt <= 0.0:
            raise ValidationError(f"Timestep must be positive, got {dt}.")
        expected = {
            "cell_pressure": (cell_pressure, (grid.num_cells, fluid.num_phases)),
            "face_pressure": (face_pressure, (grid.num_faces, fluid.num_phases)),
            "cell_z": (cell_z, (grid.num_cells, fluid.num_components)),
        }
        for name, (array, shape) in expected.items():
            if not isinstance(array, np.ndarray):
                raise ValidationError(f"{name} must be a numpy array.")
            if array.shape != shape:
                raise ValidationError(
                    f"{name} must have shape {shape}, got {array.shape}."
                )
        if np.shape(src) != (grid.num_cells,):
            raise ValidationError(
                f"src must have one value per cell ({grid.num_cells}), got shape {np.shape(src)}."
            )

        num_perforations = len(self.perforations)  # type: ignore[arg-type]
        for name, values in (
            ("well_perf_pressures", well_perf_pressures),
            ("well_perf_fluxes", well_perf_fluxes),
        ):
            if values is not None and np.shape(values) != (num_perforations,):
                raise ValidationError(
                    f"{name} must have one value per perforation ({num_perforations}), "
                    f"got shape {np.shape(values)}."
                )

    def _check_pressure_solution(self, pressures: PressureSolution) -> None:
        grid = typing.cast(Grid, self.grid)
        expected = {
            "cell_pressure": (pressures.cell_pressure, grid.num_cells),
            "face_pressure": (pressures.face_pressure, grid.num_faces),
            "face_flux": (pressures.face_flux, grid.num_faces),
            "well_bhp": (pressures.well_bhp, self.wells.num_wells),  # type: ignore[union-attr]
            "well_perf_fluxes": (pressures.well_perf_fluxes, len(self.perforations)),  # type: ignore[arg-type]
        }
        for name, (values, size) in expected.items():
            if np.shape(values) != (size,):
                raise ComputationError(
                    f"Assembler returned {name} of shape {np.shape(values)}, expected ({size},)."
                )

    def _require_configured(self) -> Config:
        if self.config is None:
            raise StateError("Solver is not configured. Call `configure` first.")
        return self.config

    def _require_prepared(self) -> Config:
        config = self._require_configured()
        if self.grid is None:
            raise StateError("Solver is not prepared. Call `prepare` first.")
        return config

    def _require_converged(self) -> None:
        self._require_prepared()
        if self._last_code is not ReturnCode.SOLVE_OK:
            raise StateError(
                "Explicit transport requires a converged pressure solve."
            )
