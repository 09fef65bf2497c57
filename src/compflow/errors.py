class CompflowError(Exception):
    """Base class for all compflow-related errors."""

    pass


class ValidationError(CompflowError, ValueError):
    """Raised when input data fails validation checks."""

    pass


class ConfigurationError(ValidationError):
    """Raised when a configuration or setup request is not supported."""

    pass


class PreconditionerError(CompflowError):
    """Raised when there is an error related to preconditioners."""

    pass


class SolverError(CompflowError):
    """Raised when the linear solver fails to converge. Not recoverable."""

    pass


class ComputationError(CompflowError):
    """Raised when there is an error during numerical computations."""

    pass


class StateError(CompflowError, RuntimeError):
    """Raised when an operation is called before the solver is ready for it."""

    pass
