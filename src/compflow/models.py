"""Data records exchanged between the pressure iteration and its collaborators."""

import typing

import attrs
import numpy as np
from scipy.sparse import csr_matrix, issparse

from compflow._precision import get_dtype
from compflow.errors import ValidationError
from compflow.types import PhaseArray, Vector


__all__ = [
    "PhaseComponentMatrix",
    "FluidState",
    "FluidPropertySnapshot",
    "LinearSystem",
    "LinearSolverResult",
    "PressureSolution",
]


def _as_float_array(value: typing.Any) -> np.typing.NDArray:
    return np.asarray(value, dtype=get_dtype())


@attrs.frozen(slots=True)
class PhaseComponentMatrix:
    """
    Fixed-size phase-by-component matrix.

    Entry (phase, component) is the surface volume of `component` carried by a
    unit reservoir volume of `phase`. The flattened form is phase-major, i.e.
    all components of the first phase, then all components of the second phase,
    and so on. This is the ordering used by the fluid model and the assembler.
    """

    values: np.typing.NDArray = attrs.field(converter=_as_float_array)
    """2D array of shape (num_phases, num_components)."""

    def __attrs_post_init__(self) -> None:
        if self.values.ndim != 2:
            raise ValidationError(
                f"Phase-to-component matrix must be 2D, got shape {self.values.shape}."
            )

    @classmethod
    def from_flat(
        cls, flat: typing.Sequence[float], num_phases: int, num_components: int
    ) -> "PhaseComponentMatrix":
        """
        Build a matrix from its phase-major flattened form.

        :param flat: Sequence of `num_phases * num_components` values.
        :param num_phases: Number of phases.
        :param num_components: Number of components.
        :return: The matrix.
        """
        flat = _as_float_array(flat)
        if flat.size != num_phases * num_components:
            raise ValidationError(
                f"Expected {num_phases * num_components} entries, got {flat.size}."
            )
        return cls(flat.reshape(num_phases, num_components))

    @property
    def num_phases(self) -> int:
        return self.values.shape[0]

    @property
    def num_components(self) -> int:
        return self.values.shape[1]

    def component_in_phase(self, phase: int, component: int) -> float:
        """Surface volume of `component` per reservoir volume of `phase`."""
        return float(self.values[phase, component])

    def phase_row(self, phase: int) -> np.typing.NDArray:
        """All component entries of a phase."""
        return self.values[phase]

    def flat(self) -> np.typing.NDArray:
        """Phase-major flattened copy of the matrix."""
        return self.values.ravel(order="C").copy()


def _as_matrix(value: typing.Any) -> PhaseComponentMatrix:
    if isinstance(value, PhaseComponentMatrix):
        return value
    return PhaseComponentMatrix(value)


@attrs.frozen(slots=True)
class FluidState:
    """Fluid state at a single point, as returned by the fluid model."""

    saturation: np.typing.NDArray = attrs.field(converter=_as_float_array)
    """Phase saturations, shape (num_phases,)."""
    mobility: np.typing.NDArray = attrs.field(converter=_as_float_array)
    """Phase mobilities, shape (num_phases,)."""
    phase_to_component: PhaseComponentMatrix = attrs.field(converter=_as_matrix)
    """Phase-to-component matrix at this state."""


@attrs.frozen(slots=True)
class FluidPropertySnapshot:
    """
    Cell and face fluid properties for one iteration of the pressure solve.

    Produced by the fluid model from the current pressures and compositions,
    and replaced wholesale on every iteration.
    """

    total_compressibility: Vector = attrs.field(converter=_as_float_array)
    """Total compressibility per cell."""
    volume_discrepancy: Vector = attrs.field(converter=_as_float_array)
    """Volume discrepancy per cell (pore-volume based)."""
    relative_volume_discrepancy: Vector = attrs.field(converter=_as_float_array)
    """Relative volume discrepancy per cell."""
    cell_phase_to_component: np.typing.NDArray = attrs.field(
        converter=_as_float_array
    )
    """Phase-to-component matrices per cell, shape (num_cells, num_phases, num_components)."""
    face_phase_to_component: np.typing.NDArray = attrs.field(
        converter=_as_float_array
    )
    """Phase-to-component matrices per face, shape (num_faces, num_phases, num_components)."""
    face_phase_mobility: PhaseArray = attrs.field(converter=_as_float_array)
    """Phase mobilities per face, shape (num_faces, num_phases)."""
    face_phase_mobility_derivative: PhaseArray = attrs.field(
        converter=_as_float_array
    )
    """Derivative of the face phase mobilities, shape (num_faces, num_phases)."""
    gravity_capillary_flux: PhaseArray = attrs.field(converter=_as_float_array)
    """Gravity and capillary flux contributions per face, shape (num_faces, num_phases)."""
    explicit_jacobian_term: Vector = attrs.field(converter=_as_float_array)
    """Derivative term used by the quasi-Newton correction, per cell."""
    total_phase_volume_density: Vector = attrs.field(converter=_as_float_array)
    """Total phase volume per unit pore volume, per cell."""

    @property
    def max_relative_volume_discrepancy(self) -> float:
        if self.relative_volume_discrepancy.size == 0:
            return 0.0
        return float(np.max(self.relative_volume_discrepancy))


def _as_csr(value: typing.Any) -> csr_matrix:
    if issparse(value):
        return csr_matrix(value)
    return csr_matrix(np.asarray(value, dtype=get_dtype()))


@attrs.define
class LinearSystem:
    """
    Assembled sparse linear system `matrix · x = rhs`.

    Unknowns are ordered as all cell pressures followed by one bottomhole
    pressure per well.
    """

    matrix: csr_matrix = attrs.field(converter=_as_csr)
    rhs: Vector = attrs.field(converter=_as_float_array)
    x: Vector = attrs.field(converter=_as_float_array)
    """Initial guess on input, solution vector after a solve."""

    def __attrs_post_init__(self) -> None:
        n = self.matrix.shape[0]
        if self.matrix.shape != (n, n):
            raise ValidationError(
                f"Linear system matrix must be square, got {self.matrix.shape}."
            )
        if self.rhs.shape != (n,) or self.x.shape != (n,):
            raise ValidationError(
                f"Right-hand side and solution must have length {n}."
            )

    @property
    def size(self) -> int:
        return self.matrix.shape[0]

    def residual(self, x: typing.Optional[Vector] = None) -> Vector:
        """Compute `matrix · x - rhs`, using the stored `x` if none is given."""
        x = self.x if x is None else x
        return self.matrix @ x - self.rhs


@attrs.frozen(slots=True)
class LinearSolverResult:
    """Outcome of a linear solve."""

    x: Vector = attrs.field(converter=_as_float_array)
    """Solution vector."""
    converged: bool
    """Whether the solver reached the requested tolerance."""
    iterations: int = 0
    """Number of iterations performed (0 for direct solvers)."""
    reduction: float = 0.0
    """Achieved residual reduction ||b - Ax|| / ||b||."""


@attrs.frozen(slots=True)
class PressureSolution:
    """Pressures and fluxes recovered from a linear system solution."""

    cell_pressure: Vector = attrs.field(converter=_as_float_array)
    face_pressure: Vector = attrs.field(converter=_as_float_array)
    face_flux: Vector = attrs.field(converter=_as_float_array)
    """Total (summed over phases) signed volume flux across each face."""
    well_bhp: Vector = attrs.field(converter=_as_float_array)
    """Bottomhole pressure per well."""
    well_perf_fluxes: Vector = attrs.field(converter=_as_float_array)
    """Total volume flux per perforation, positive meaning injection."""
