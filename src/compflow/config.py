import typing

import attrs
import numpy as np

from compflow.errors import ConfigurationError
from compflow.types import (
    SUPPORTED_COMPONENT_COUNTS,
    Component,
    IterativeSolver,
    Preconditioner,
    component_layout,
)

__all__ = ["Config"]


def _validate_num_components(
    instance: typing.Any, attribute: attrs.Attribute, value: int
) -> None:
    if value not in SUPPORTED_COMPONENT_COUNTS:
        raise ConfigurationError(
            f"Unhandled number of components: {value}. "
            f"Supported counts are {SUPPORTED_COMPONENT_COUNTS}."
        )


@attrs.frozen
class Config:
    """Pressure solver run configuration and parameters."""

    num_components: int = attrs.field(default=3, validator=_validate_num_components)
    """Number of fluid components. Only 2 (oil, gas) and 3 (water, oil, gas) are supported."""
    inflow_mixture_gas: float = attrs.field(default=1.0, validator=attrs.validators.ge(0))
    """Gas surface volume of the fixed inflow mixture."""
    inflow_mixture_oil: float = attrs.field(default=0.0, validator=attrs.validators.ge(0))
    """Oil surface volume of the fixed inflow mixture."""
    inflow_mixture_water: float = attrs.field(
        default=0.0, validator=attrs.validators.ge(0)
    )
    """Water surface volume of the fixed inflow mixture. Ignored with 2 components."""
    flux_rel_tol: float = attrs.field(default=1e-5, validator=attrs.validators.gt(0))
    """Relative flux change below which the iteration is considered converged."""
    press_rel_tol: float = attrs.field(default=1e-5, validator=attrs.validators.gt(0))
    """Relative pressure change below which the iteration is considered converged."""
    max_num_iter: int = attrs.field(default=15, validator=attrs.validators.ge(1))
    """Maximum number of pressure iterations per timestep."""
    max_relative_voldiscr: float = attrs.field(
        default=0.15, validator=attrs.validators.gt(0)
    )
    """
    Ceiling on the maximum relative volume discrepancy at the start of a timestep.

    Timesteps starting above this value are rejected before any linear system is
    assembled, so the caller can retry with a shorter step.
    """
    relax_time_voldiscr: float = attrs.field(
        default=0.0, validator=attrs.validators.ge(0)
    )
    """
    Relaxation time for the volume discrepancy source term. 0 disables relaxation.

    When positive, the initial volume discrepancy is scaled by `min(1, dt / relax_time_voldiscr)`.
    """
    relax_weight_pressure_iteration: float = attrs.field(
        default=1.0, validator=attrs.validators.gt(0)
    )
    """Weight `w` in `p = w * p_new + (1 - w) * p_old`. 1 disables relaxation."""
    experimental_jacobian: bool = False
    """Use the quasi-Newton correction of the Picard system instead of the plain Picard system."""
    output_residual: bool = False
    """Write the corrected residual of every quasi-Newton iteration to disk."""
    residual_output_dir: str = "."
    """Directory receiving the residual files when `output_residual` is set."""
    linear_solver: typing.Union[IterativeSolver, typing.Iterable[IterativeSolver]] = (
        "bicgstab"
    )
    """Solver(s) used by the default linear solver."""
    preconditioner: typing.Optional[Preconditioner] = "ilu"
    """Preconditioner used by the default linear solver."""
    linear_solver_rtol: float = attrs.field(
        default=1e-8, validator=attrs.validators.gt(0)
    )
    """Relative residual reduction required from the default linear solver."""
    linear_solver_max_iterations: int = attrs.field(
        default=500, validator=attrs.validators.ge(1)
    )
    """Maximum number of iterations of the default linear solver."""

    @classmethod
    def from_parameters(
        cls, parameters: typing.Optional[typing.Mapping[str, typing.Any]] = None
    ) -> "Config":
        """
        Build a configuration from a flat parameter mapping.

        Missing parameters take their defaults.

        :param parameters: Mapping of parameter names to values.
        :return: The configuration.
        :raises ConfigurationError: If a parameter is unknown or the component count is unsupported.
        """
        parameters = dict(parameters or {})
        known = {field.name for field in attrs.fields(cls)}
        unknown = sorted(set(parameters) - known)
        if unknown:
            raise ConfigurationError(f"Unknown solver parameters: {unknown}")
        return cls(**parameters)

    @property
    def components(self) -> typing.Tuple[Component, ...]:
        """Component storage order for the configured component count."""
        return component_layout(self.num_components)

    @property
    def inflow_mixture(self) -> np.typing.NDArray:
        """Inflow mixture in the configured component order."""
        return self.mixture_for(self.components)

    def mixture_for(self, components: typing.Sequence[Component]) -> np.typing.NDArray:
        """
        Inflow mixture laid out in the given component order.

        :param components: Component order of the receiving fluid model.
        :return: One surface volume per entry of `components`.
        :raises ConfigurationError: If `components` is not a permutation of the configured components.
        """
        components = tuple(components)
        if len(components) != len(set(components)) or set(components) != set(
            self.components
        ):
            raise ConfigurationError(
                f"Fluid components {[c.value for c in components]} do not match the "
                f"configured components {[c.value for c in self.components]}."
            )
        amounts = {
            Component.WATER: self.inflow_mixture_water,
            Component.OIL: self.inflow_mixture_oil,
            Component.GAS: self.inflow_mixture_gas,
        }
        return np.array([amounts[component] for component in components])
