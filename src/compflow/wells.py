"""Well perforation bookkeeping, gravity potentials and perforation pressures."""

import logging
import typing

import attrs
import numba
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import ConfigurationError, ValidationError
from compflow.interfaces import FluidModel, Grid, WellsModel
from compflow.models import PhaseComponentMatrix
from compflow.types import PhaseArray, Vector


logger = logging.getLogger(__name__)

__all__ = [
    "PerforationRecord",
    "Perforations",
    "build_perforations",
    "check_vertical_gravity",
    "compute_well_potentials",
    "compute_well_perforation_pressures",
]


@attrs.frozen(slots=True)
class PerforationRecord:
    """Read-only view of the state of a single perforation."""

    well: int
    cell: int
    pressure: float
    phase_to_component: PhaseComponentMatrix
    mobility: np.typing.NDArray
    saturation: np.typing.NDArray
    gravity_potential: np.typing.NDArray


@attrs.define
class Perforations:
    """
    State of all well perforations, stored as arrays over perforations.

    Perforations are numbered well by well, in the order the wells model lists
    them. The count is fixed when the object is built.
    """

    well_indices: np.typing.NDArray
    """Owning well of each perforation."""
    cell_indices: np.typing.NDArray
    """Perforated cell of each perforation."""
    pressure: Vector
    """Current perforation pressure."""
    phase_to_component: np.typing.NDArray
    """Phase-to-component matrices, shape (num_perforations, num_phases, num_components)."""
    mobility: PhaseArray
    """Phase mobilities, shape (num_perforations, num_phases)."""
    saturation: PhaseArray
    """Phase saturations, shape (num_perforations, num_phases)."""
    gravity_potential: PhaseArray
    """Phase gravity potentials, shape (num_perforations, num_phases)."""

    @classmethod
    def allocate(
        cls,
        well_indices: typing.Sequence[int],
        cell_indices: typing.Sequence[int],
        pressure: typing.Sequence[float],
        num_phases: int,
        num_components: int,
    ) -> "Perforations":
        dtype = get_dtype()
        num_perforations = len(well_indices)
        if not (len(cell_indices) == len(pressure) == num_perforations):
            raise ValidationError("Perforation wells, cells and pressures must align.")
        return cls(
            well_indices=np.asarray(well_indices, dtype=np.int64),
            cell_indices=np.asarray(cell_indices, dtype=np.int64),
            pressure=np.asarray(pressure, dtype=dtype),
            phase_to_component=np.zeros(
                (num_perforations, num_phases, num_components), dtype=dtype
            ),
            mobility=np.zeros((num_perforations, num_phases), dtype=dtype),
            saturation=np.zeros((num_perforations, num_phases), dtype=dtype),
            gravity_potential=np.zeros((num_perforations, num_phases), dtype=dtype),
        )

    def __len__(self) -> int:
        return self.well_indices.shape[0]

    def record(self, index: int) -> PerforationRecord:
        return PerforationRecord(
            well=int(self.well_indices[index]),
            cell=int(self.cell_indices[index]),
            pressure=float(self.pressure[index]),
            phase_to_component=PhaseComponentMatrix(
                self.phase_to_component[index].copy()
            ),
            mobility=self.mobility[index].copy(),
            saturation=self.saturation[index].copy(),
            gravity_potential=self.gravity_potential[index].copy(),
        )

    def __iter__(self) -> typing.Iterator[PerforationRecord]:
        for index in range(len(self)):
            yield self.record(index)


def build_perforations(
    wells: WellsModel, num_phases: int, num_components: int
) -> Perforations:
    """
    Enumerate all (well, perforation) pairs and seed their pressures.

    :param wells: Wells model.
    :param num_phases: Number of fluid phases.
    :param num_components: Number of fluid components.
    :return: `Perforations` with pressures set from the wells model.
    """
    well_indices = []
    cell_indices = []
    pressures = []
    for well in range(wells.num_wells):
        for perforation in range(wells.num_perforations(well)):
            cell = wells.well_cell(well, perforation)
            well_indices.append(well)
            cell_indices.append(cell)
            pressures.append(wells.perforation_pressure(cell))

    logger.debug(
        f"Set up {len(well_indices)} perforations for {wells.num_wells} wells."
    )
    return Perforations.allocate(
        well_indices=well_indices,
        cell_indices=cell_indices,
        pressure=pressures,
        num_phases=num_phases,
        num_components=num_components,
    )


def check_vertical_gravity(gravity: np.typing.NDArray) -> None:
    """
    Well potentials assume gravity acts along z only.

    :raises ConfigurationError: If gravity has a horizontal component.
    """
    if gravity[0] != 0.0 or gravity[1] != 0.0:
        raise ConfigurationError(
            f"Wells require gravity along the z-axis only, got gravity vector {tuple(gravity)}."
        )


def compute_well_potentials(
    perforations: Perforations,
    grid: Grid,
    wells: WellsModel,
    fluid: FluidModel,
    gravity: np.typing.NDArray,
) -> PhaseArray:
    """
    Compute the gravity potential `ρ_phase · g_z · Δz` of every perforation.

    `Δz` is the perforated cell centroid depth relative to the well reference
    depth. Densities come from the current perforation phase-to-component
    matrices, so those must be filled first.

    :param perforations: Perforation state with phase-to-component matrices set.
    :param grid: Grid providing cell centroids.
    :param wells: Wells model providing reference depths.
    :param fluid: Fluid model providing phase densities.
    :param gravity: Gravity vector, purely vertical.
    :return: Gravity potentials, shape (num_perforations, num_phases).
    """
    num_perforations = len(perforations)
    potentials = np.zeros_like(perforations.gravity_potential)
    if num_perforations == 0:
        return potentials

    check_vertical_gravity(gravity)
    for perforation in range(num_perforations):
        well = int(perforations.well_indices[perforation])
        cell = int(perforations.cell_indices[perforation])
        depth_delta = grid.cell_centroid(cell)[2] - wells.reference_depth(well)
        gh = gravity[2] * depth_delta
        rho = np.asarray(
            fluid.phase_densities(perforations.phase_to_component[perforation])
        )
        potentials[perforation, :] = rho * gh
    return potentials


@numba.njit(cache=True)
def _compute_perforation_pressures(
    perforation_wells: np.ndarray,
    perforation_fluxes: np.ndarray,
    saturation: np.ndarray,
    gravity_potential: np.ndarray,
    well_bhp: np.ndarray,
    num_wells: int,
) -> np.ndarray:
    num_perforations, num_phases = saturation.shape
    well_saturation = np.zeros((num_wells, num_phases))
    mean_saturation = np.zeros((num_wells, num_phases))
    well_flux = np.zeros(num_wells)
    perforation_count = np.zeros(num_wells)

    for perforation in range(num_perforations):
        well = perforation_wells[perforation]
        flux = perforation_fluxes[perforation]
        well_flux[well] += flux
        perforation_count[well] += 1.0
        for phase in range(num_phases):
            well_saturation[well, phase] += flux * saturation[perforation, phase]
            mean_saturation[well, phase] += saturation[perforation, phase]

    for well in range(num_wells):
        if well_flux[well] != 0.0:
            for phase in range(num_phases):
                well_saturation[well, phase] /= well_flux[well]
        elif perforation_count[well] > 0.0:
            # No net flow, fall back to the plain average.
            for phase in range(num_phases):
                well_saturation[well, phase] = (
                    mean_saturation[well, phase] / perforation_count[well]
                )

    pressures = np.empty(num_perforations)
    for perforation in range(num_perforations):
        well = perforation_wells[perforation]
        pressure = well_bhp[well]
        for phase in range(num_phases):
            pressure += (
                well_saturation[well, phase] * gravity_potential[perforation, phase]
            )
        pressures[perforation] = pressure
    return pressures


def compute_well_perforation_pressures(
    perforations: Perforations,
    num_wells: int,
    perforation_fluxes: Vector,
    well_bhp: Vector,
) -> Vector:
    """
    Compute the pressure of every perforation from its well bottomhole pressure.

    Each well gets a flux-weighted average phase saturation over its
    perforations. This assumes a well either injects or produces, not both.
    The perforation pressure is then the bottomhole pressure plus the
    saturation-weighted sum of the perforation's phase gravity potentials.

    :param perforations: Perforation state with saturations and gravity potentials set.
    :param num_wells: Number of wells.
    :param perforation_fluxes: Total volume flux per perforation.
    :param well_bhp: Bottomhole pressure per well.
    :return: Pressure per perforation.
    """
    pressures = _compute_perforation_pressures(
        np.ascontiguousarray(perforations.well_indices, dtype=np.int64),
        np.ascontiguousarray(perforation_fluxes, dtype=np.float64),
        np.ascontiguousarray(perforations.saturation, dtype=np.float64),
        np.ascontiguousarray(perforations.gravity_potential, dtype=np.float64),
        np.ascontiguousarray(well_bhp, dtype=np.float64),
        int(num_wells),
    )
    return pressures.astype(get_dtype(), copy=False)
