"""Flow boundary conditions and their per-face representation."""

import logging
import typing

import attrs
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import ConfigurationError, ValidationError
from compflow.interfaces import BoundaryConditionSource, Grid
from compflow.types import FlowBCType


logger = logging.getLogger(__name__)

__all__ = [
    "DirichletCondition",
    "NeumannCondition",
    "FlowCondition",
    "BoundaryConditions",
    "FaceBoundaryConditions",
    "build_face_boundary_conditions",
]


@attrs.frozen(slots=True)
class DirichletCondition:
    """Prescribed pressure on a boundary."""

    pressure: float
    """Boundary pressure."""


@attrs.frozen(slots=True)
class NeumannCondition:
    """Prescribed outward flux on a boundary."""

    outflux: float = 0.0
    """Outward volume flux. Only 0 (no-flow) is supported by the pressure solver."""


FlowCondition = typing.Union[DirichletCondition, NeumannCondition]


@attrs.define
class BoundaryConditions:
    """
    Flow conditions by boundary id.

    Boundary ids without an explicit condition are no-flow.

    Example:
    ```python
    bc = BoundaryConditions({1: DirichletCondition(pressure=2e7), 2: NeumannCondition()})
    ```
    """

    conditions: typing.Dict[int, FlowCondition] = attrs.field(factory=dict)
    default: FlowCondition = attrs.field(factory=NeumannCondition)
    """Condition used for boundary ids not present in `conditions`."""

    def __attrs_post_init__(self) -> None:
        if 0 in self.conditions:
            raise ValidationError(
                "Boundary id 0 is reserved for faces without a boundary condition."
            )

    def flow_condition(self, boundary_id: int) -> FlowCondition:
        return self.conditions.get(boundary_id, self.default)

    def __setitem__(self, boundary_id: int, condition: FlowCondition) -> None:
        if boundary_id == 0:
            raise ValidationError(
                "Boundary id 0 is reserved for faces without a boundary condition."
            )
        self.conditions[boundary_id] = condition


@attrs.frozen(slots=True)
class FaceBoundaryConditions:
    """Boundary condition type and value for every face of the grid."""

    types: np.typing.NDArray
    """`FlowBCType` value per face (integer array)."""
    values: np.typing.NDArray
    """Pressure (for PRESSURE faces) or flux (for FLUX faces), 0 elsewhere."""

    def __attrs_post_init__(self) -> None:
        if self.types.shape != self.values.shape:
            raise ValidationError("Boundary condition types and values must align.")
        self.types.setflags(write=False)
        self.values.setflags(write=False)

    def __len__(self) -> int:
        return self.types.shape[0]

    def type_of(self, face: int) -> FlowBCType:
        return FlowBCType(int(self.types[face]))


def build_face_boundary_conditions(
    grid: Grid, boundary_conditions: BoundaryConditionSource
) -> FaceBoundaryConditions:
    """
    Build the per-face boundary condition arrays.

    :param grid: Grid providing the boundary id of each face.
    :param boundary_conditions: Source of the flow condition for each boundary id.
    :return: `FaceBoundaryConditions` for all faces.
    :raises ConfigurationError: On a nonzero Neumann value or an unknown condition type.
    """
    num_faces = grid.num_faces
    bc_types = np.full(num_faces, FlowBCType.UNSET, dtype=np.int8)
    bc_values = np.zeros(num_faces, dtype=get_dtype())

    for face in range(num_faces):
        boundary_id = grid.boundary_id(face)
        if boundary_id == 0:
            continue

        condition = boundary_conditions.flow_condition(boundary_id)
        if isinstance(condition, DirichletCondition):
            bc_types[face] = FlowBCType.PRESSURE
            bc_values[face] = condition.pressure
        elif isinstance(condition, NeumannCondition):
            bc_types[face] = FlowBCType.FLUX
            # TODO: Fix the sign convention against face orientation once nonzero fluxes are supported.
            bc_values[face] = condition.outflux
            if condition.outflux != 0.0:
                raise ConfigurationError(
                    f"Nonzero Neumann condition on face {face} (boundary id {boundary_id}) "
                    "is not supported: flux signs and face pressures are not computed correctly for it."
                )
        else:
            raise ConfigurationError(
                f"Unhandled boundary condition type {type(condition).__name__!r} "
                f"for boundary id {boundary_id}."
            )

    logger.debug(
        f"Built boundary conditions for {num_faces} faces: "
        f"{int(np.sum(bc_types == FlowBCType.PRESSURE))} pressure, "
        f"{int(np.sum(bc_types == FlowBCType.FLUX))} flux."
    )
    return FaceBoundaryConditions(types=bc_types, values=bc_values)
