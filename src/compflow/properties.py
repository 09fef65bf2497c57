"""Per-iteration fluid property evaluation for cells, faces and well perforations."""

import logging

import numpy as np

from compflow.errors import ComputationError
from compflow.interfaces import FluidModel, Grid, Rock, WellsModel
from compflow.models import FluidPropertySnapshot
from compflow.types import ComponentArray, PhaseArray, WellType
from compflow.wells import Perforations

logger = logging.getLogger(__name__)

__all__ = ["compute_fluid_properties", "compute_perforation_properties"]


def compute_perforation_properties(
    perforations: Perforations,
    wells: WellsModel,
    fluid: FluidModel,
    cell_pressure: PhaseArray,
    cell_z: ComponentArray,
) -> None:
    """
    Refill the fluid state of every perforation in place.

    Injector perforations are evaluated at their own pressure with the well's
    injection mixture. Producer perforations see the fluid of the cell they
    are in, so they must be re-evaluated whenever cell pressures or
    compositions change.

    :param perforations: Perforation state to update.
    :param wells: Wells model.
    :param fluid: Fluid model.
    :param cell_pressure: Phase pressures per cell, shape (num_cells, num_phases).
    :param cell_z: Surface volumes per cell, shape (num_cells, num_components).
    """
    num_phases = fluid.num_phases
    injector = {}
    for perforation in range(len(perforations)):
        well = int(perforations.well_indices[perforation])
        cell = int(perforations.cell_indices[perforation])
        if well not in injector:
            injector[well] = wells.well_type(well) == WellType.INJECTOR

        if injector[well]:
            pressure = np.full(num_phases, perforations.pressure[perforation])
            mixture = np.asarray(wells.injection_mixture(cell))
        else:
            pressure = cell_pressure[cell]
            mixture = cell_z[cell]

        state = fluid.compute_state(pressure, mixture)
        matrix = state.phase_to_component.values
        if matrix.shape != perforations.phase_to_component.shape[1:]:
            raise ComputationError(
                f"Fluid state at perforation {perforation} has a phase-to-component matrix "
                f"of shape {matrix.shape}, expected {perforations.phase_to_component.shape[1:]}."
            )
        perforations.phase_to_component[perforation] = matrix
        perforations.mobility[perforation] = state.mobility
        perforations.saturation[perforation] = state.saturation


def compute_fluid_properties(
    grid: Grid,
    rock: Rock,
    fluid: FluidModel,
    wells: WellsModel,
    perforations: Perforations,
    gravity: np.typing.NDArray,
    cell_pressure: PhaseArray,
    face_pressure: PhaseArray,
    cell_z: ComponentArray,
    inflow_mixture: np.typing.NDArray,
    dt: float,
) -> FluidPropertySnapshot:
    """
    Recompute cell, face and perforation fluid properties for the current iterate.

    :return: The cell and face property snapshot. Perforation properties are
        written into `perforations`.
    """
    snapshot = fluid.compute_snapshot(
        grid,
        rock,
        gravity,
        cell_pressure,
        face_pressure,
        cell_z,
        inflow_mixture,
        dt,
    )
    compute_perforation_properties(
        perforations=perforations,
        wells=wells,
        fluid=fluid,
        cell_pressure=cell_pressure,
        cell_z=cell_z,
    )
    return snapshot
