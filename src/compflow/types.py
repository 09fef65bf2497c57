import enum
import typing

import numpy as np
from scipy.sparse import csr_array, csr_matrix
from scipy.sparse.linalg import LinearOperator
from typing_extensions import TypeAlias

from compflow.errors import ConfigurationError


__all__ = [
    "Phase",
    "Component",
    "WellType",
    "FlowBCType",
    "ReturnCode",
    "Vector",
    "PhaseArray",
    "ComponentArray",
    "SparseMatrix",
    "Preconditioner",
    "PreconditionerFactory",
    "IterativeSolver",
    "IterativeSolverFunc",
    "SUPPORTED_COMPONENT_COUNTS",
    "component_layout",
]

T = typing.TypeVar("T")

Vector: TypeAlias = np.typing.NDArray[np.floating]
"""One value per cell, face, well or perforation."""
PhaseArray: TypeAlias = np.typing.NDArray[np.floating]
"""2D array of shape (n, num_phases)."""
ComponentArray: TypeAlias = np.typing.NDArray[np.floating]
"""2D array of shape (n, num_components)."""
SparseMatrix = typing.Union[csr_array, csr_matrix]


class Phase(enum.Enum):
    """Enum representing the fluid phases tracked at pressure/saturation level."""

    AQUA = "aqua"
    LIQUID = "liquid"
    VAPOUR = "vapour"


class Component(enum.Enum):
    """Enum representing the components tracked in surface volume terms."""

    WATER = "water"
    OIL = "oil"
    GAS = "gas"


class WellType(enum.Enum):
    """Whether a well injects a fixed mixture or produces the reservoir fluid."""

    INJECTOR = "injector"
    PRODUCER = "producer"


class FlowBCType(enum.IntEnum):
    """Per-face flow boundary condition type, as understood by the assembler."""

    UNSET = 0
    PRESSURE = 1
    FLUX = 2


class ReturnCode(enum.Enum):
    """Recoverable outcomes of a pressure solve."""

    SOLVE_OK = "solve_ok"
    VOLUME_DISCREPANCY_TOO_LARGE = "volume_discrepancy_too_large"
    FAILED_TO_CONVERGE = "failed_to_converge"


SUPPORTED_COMPONENT_COUNTS = (2, 3)

_COMPONENT_LAYOUTS: typing.Dict[int, typing.Tuple[Component, ...]] = {
    2: (Component.OIL, Component.GAS),
    3: (Component.WATER, Component.OIL, Component.GAS),
}


def component_layout(num_components: int) -> typing.Tuple[Component, ...]:
    """
    Ordering of the components in every composition vector for a given component count.

    :param num_components: Number of fluid components (2 or 3).
    :return: Tuple of components in storage order.
    :raises ConfigurationError: If the component count is not supported.
    """
    try:
        return _COMPONENT_LAYOUTS[num_components]
    except KeyError:
        raise ConfigurationError(
            f"Unhandled number of components: {num_components}. "
            f"Supported counts are {SUPPORTED_COMPONENT_COUNTS}."
        ) from None


PreconditionerStr = typing.Literal["ilu", "amg", "diagonal"]
PreconditionerFactory = typing.Callable[[SparseMatrix], LinearOperator]
Preconditioner = typing.Union[
    LinearOperator, PreconditionerStr, PreconditionerFactory, str
]

IterativeSolverStr = typing.Literal["gmres", "lgmres", "bicgstab", "cg", "direct"]


class IterativeSolverFunc(typing.Protocol):
    """
    Protocol for an iterative solver function.
    """

    def __call__(
        self,
        A: typing.Any,
        b: typing.Any,
        x0: typing.Optional[typing.Any],
        *,
        rtol: float,
        atol: float,
        maxiter: typing.Optional[int],
        M: typing.Optional[typing.Any],
        callback: typing.Optional[typing.Callable[..., None]],
    ) -> typing.Tuple[np.typing.NDArray, int]: ...


IterativeSolver = typing.Union[IterativeSolverFunc, IterativeSolverStr, str]
