import logging
import threading
import typing

import attrs
import numpy as np
import pyamg  # type: ignore[import-untyped]
from scipy.sparse import csr_matrix, diags, issparse  # type: ignore[import-untyped]
from scipy.sparse.linalg import (  # type: ignore[import-untyped]
    LinearOperator,
    bicgstab,
    cg,
    gmres,
    lgmres,
    spilu,
    spsolve,
)

from compflow._precision import get_floating_point_info
from compflow.errors import PreconditionerError, ValidationError
from compflow.models import LinearSolverResult
from compflow.types import (
    IterativeSolver,
    IterativeSolverFunc,
    Preconditioner,
    PreconditionerFactory,
    SparseMatrix,
)

logger = logging.getLogger(__name__)


__all__ = [
    "build_ilu_preconditioner",
    "build_diagonal_preconditioner",
    "build_amg_preconditioner",
    "solve_linear_system",
    "preconditioner_factory",
    "solver_func",
    "list_preconditioner_factories",
    "list_solver_funcs",
    "get_preconditioner_factory",
    "get_solver_func",
    "ScipyLinearSolver",
]


def build_amg_preconditioner(
    A_csr: SparseMatrix, cycle: str = "V", **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Algebraic Multigrid (AMG) preconditioner using PyAMG.

    :param A_csr: The coefficient matrix in CSR format.
    :param cycle: Multigrid cycle type ('V', 'W', 'F').
    :param kwargs: Additional arguments for `pyamg.smoothed_aggregation_solver`.
    :return: A SciPy `LinearOperator` that represents the AMG preconditioner.
    """
    ml_solver = pyamg.smoothed_aggregation_solver(A_csr, **kwargs)
    return ml_solver.aspreconditioner(cycle=cycle)


def build_diagonal_preconditioner(A_csr: SparseMatrix) -> LinearOperator:
    """
    Creates a diagonal (Jacobi) preconditioner from the coefficient matrix.

    :param A_csr: The coefficient matrix in CSR format.
    :return: A SciPy `LinearOperator` that represents the diagonal preconditioner.
    """
    diag_elements = A_csr.diagonal()
    # Replace (near) zero pivots so the inverse exists
    epsilon = get_floating_point_info().eps
    threshold = max(1e-10, 100 * epsilon)
    diag_elements = np.where(np.abs(diag_elements) < threshold, 1.0, diag_elements)
    M_diag = diags(1.0 / diag_elements, format="csr")
    return LinearOperator(shape=A_csr.shape, matvec=M_diag.dot)  # type: ignore[arg-type]


def build_ilu_preconditioner(A_csr: SparseMatrix, **kwargs: typing.Any) -> LinearOperator:
    """
    Creates an Incomplete LU (ILU) preconditioner using `spilu`.

    :param A_csr: The coefficient matrix in CSR format. It will be
        converted to CSC for efficiency with `spilu`.
    :return: A SciPy `LinearOperator` that solves the preconditioned system.
    """
    A_csc = A_csr.tocsc()
    kwargs.setdefault("drop_tol", 1e-4)
    kwargs.setdefault("fill_factor", 10)
    ilu_factor = spilu(A_csc, **kwargs)
    return LinearOperator(shape=A_csc.shape, matvec=ilu_factor.solve)  # type: ignore[arg-type]


def _bicgstab(A, b, x0, *, rtol, atol, maxiter, M, callback):
    return bicgstab(
        A, b, x0=x0, rtol=rtol, atol=atol, maxiter=maxiter, M=M, callback=callback
    )


def _cg(A, b, x0, *, rtol, atol, maxiter, M, callback):
    return cg(A, b, x0=x0, rtol=rtol, atol=atol, maxiter=maxiter, M=M, callback=callback)


def _gmres(A, b, x0, *, rtol, atol, maxiter, M, callback):
    return gmres(
        A,
        b,
        x0=x0,
        rtol=rtol,
        atol=atol,
        maxiter=maxiter,
        M=M,
        callback=callback,
        callback_type="pr_norm",
    )


def _lgmres(
    A,
    b,
    x0,
    *,
    rtol,
    atol,
    maxiter,
    M,
    callback,
    inner_m: int = 30,
    outer_k: int = 3,
):
    """
    LGMRES solver with configurable inner/outer iteration parameters.

    :param inner_m: Number of inner GMRES iterations per restart.
    :param outer_k: Number of vectors to carry between inner GMRES iterations.
    """
    return lgmres(
        A,
        b,
        x0=x0,
        M=M,
        rtol=rtol,
        atol=atol,
        maxiter=maxiter,
        callback=callback,
        inner_m=inner_m,
        outer_k=outer_k,
    )


def _spsolve(A, b, x0, *, rtol, atol, maxiter, M, callback):
    x = spsolve(A.tocsc(), b)
    info = 0 if np.all(np.isfinite(x)) else -1
    return x, info


_preconditioner_registry_lock = threading.Lock()
_PRECONDITIONER_FACTORIES: typing.Dict[str, PreconditionerFactory] = {
    "amg": build_amg_preconditioner,
    "ilu": build_ilu_preconditioner,
    "diagonal": build_diagonal_preconditioner,
}
"""Registered preconditioner factory functions."""

_solver_registry_lock = threading.Lock()
_SOLVER_FUNCS: typing.Dict[str, IterativeSolverFunc] = {
    "bicgstab": _bicgstab,
    "gmres": _gmres,
    "lgmres": _lgmres,
    "cg": _cg,
    "direct": _spsolve,
}
"""Registered solver functions."""


@typing.overload
def preconditioner_factory(func: PreconditionerFactory) -> PreconditionerFactory: ...


@typing.overload
def preconditioner_factory(
    func: None = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Callable[[PreconditionerFactory], PreconditionerFactory]: ...


def preconditioner_factory(
    func: typing.Optional[PreconditionerFactory] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Union[
    PreconditionerFactory,
    typing.Callable[[PreconditionerFactory], PreconditionerFactory],
]:
    """
    Decorator to register a preconditioner factory function.

    A preconditioner factory takes a CSR matrix and returns a SciPy
    `LinearOperator` approximating its inverse.

    :param func: The preconditioner factory function to decorate.
    :param name: Optional name to register the preconditioner under. If not provided,
        the function's `__name__` attribute is used.
    :param override: If True, allows overriding an existing preconditioner factory
    :return: The original function, unmodified.
    """

    def decorator(func: PreconditionerFactory) -> PreconditionerFactory:
        with _preconditioner_registry_lock:
            key = name or getattr(func, "__name__", None)
            if not key:
                raise ValueError(
                    "Preconditioner factory must have a `__name__` attribute or a name must be provided."
                )
            if not override and key in _PRECONDITIONER_FACTORIES:
                raise ValueError(
                    f"Preconditioner factory '{key}' is already registered. "
                    f"Use `override=True` to replace it."
                )
            _PRECONDITIONER_FACTORIES[key] = func
        return func

    if func is not None:
        return decorator(func)
    return decorator


@typing.overload
def solver_func(func: IterativeSolverFunc) -> IterativeSolverFunc: ...


@typing.overload
def solver_func(
    func: None = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Callable[[IterativeSolverFunc], IterativeSolverFunc]: ...


def solver_func(
    func: typing.Optional[IterativeSolverFunc] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Union[
    IterativeSolverFunc,
    typing.Callable[[IterativeSolverFunc], IterativeSolverFunc],
]:
    """
    Decorator to register a solver function.

    A solver function follows SciPy's sparse iterative solver signature and
    returns `(x, info)` with `info == 0` on convergence.

    :param func: The solver function to decorate.
    :param name: Optional name to register the solver under. If not provided,
        the function's `__name__` attribute is used.
    :param override: If True, allows overriding an existing solver function.
    :return: The original function, unmodified.
    """

    def decorator(func: IterativeSolverFunc) -> IterativeSolverFunc:
        with _solver_registry_lock:
            key = name or getattr(func, "__name__", None)
            if not key:
                raise ValueError(
                    "Solver function must have a `__name__` attribute or a name must be provided."
                )
            if not override and key in _SOLVER_FUNCS:
                raise ValueError(
                    f"Solver function '{key}' is already registered. "
                    f"Use `override=True` to replace it."
                )
            _SOLVER_FUNCS[key] = func
        return func

    if func is not None:
        return decorator(func)
    return decorator


def list_preconditioner_factories() -> typing.List[str]:
    """List the names of all registered preconditioner factories."""
    with _preconditioner_registry_lock:
        return list(_PRECONDITIONER_FACTORIES.keys())


def list_solver_funcs() -> typing.List[str]:
    """List the names of all registered solver functions."""
    with _solver_registry_lock:
        return list(_SOLVER_FUNCS.keys())


def get_preconditioner_factory(name: str) -> PreconditionerFactory:
    """
    Get a registered preconditioner factory by name.

    :raises ValidationError: If the preconditioner factory is unknown.
    """
    with _preconditioner_registry_lock:
        if name not in _PRECONDITIONER_FACTORIES:
            raise ValidationError(
                f"Unknown preconditioner factory: {name!r}. "
                f"Available preconditioners: {list(_PRECONDITIONER_FACTORIES.keys())}"
            )
        return _PRECONDITIONER_FACTORIES[name]


def get_solver_func(name: str) -> IterativeSolverFunc:
    """
    Get a registered solver function by name.

    :raises ValidationError: If the solver is unknown.
    """
    with _solver_registry_lock:
        if name not in _SOLVER_FUNCS:
            raise ValidationError(
                f"Unknown solver function: {name!r}. "
                f"Available solvers: {list(_SOLVER_FUNCS.keys())}"
            )
        return _SOLVER_FUNCS[name]


def _get_preconditioner(
    A_csr: SparseMatrix, preconditioner: typing.Optional[Preconditioner]
) -> typing.Optional[LinearOperator]:
    if isinstance(preconditioner, (type(None), LinearOperator)):
        return preconditioner
    if isinstance(preconditioner, str):
        return get_preconditioner_factory(preconditioner)(A_csr)
    if callable(preconditioner):
        return preconditioner(A_csr)
    raise ValidationError(f"Invalid preconditioner specification: {preconditioner!r}")


def _get_solver_funcs(
    solver: typing.Union[IterativeSolver, typing.Iterable[IterativeSolver]],
) -> typing.List[IterativeSolverFunc]:
    if isinstance(solver, str):
        return [get_solver_func(solver)]
    if callable(solver):
        return [solver]  # type: ignore[list-item]
    if isinstance(solver, (list, tuple)):
        solver_funcs = []
        for s in solver:
            if isinstance(s, str):
                solver_funcs.append(get_solver_func(s))
            elif callable(s):
                solver_funcs.append(s)
            else:
                raise ValidationError(f"Unknown solver type in sequence: {s!r}")
        return solver_funcs
    raise TypeError("solver must be a string, callable, or a sequence of strings.")


def solve_linear_system(
    A_csr: SparseMatrix,
    b: np.typing.NDArray,
    x0: typing.Optional[np.typing.NDArray] = None,
    max_iterations: int = 500,
    rtol: float = 1e-8,
    atol: typing.Optional[float] = None,
    solver: typing.Union[IterativeSolver, typing.Iterable[IterativeSolver]] = "bicgstab",
    preconditioner: typing.Optional[Preconditioner] = "ilu",
    fallback_to_direct: bool = False,
) -> LinearSolverResult:
    """
    Solves the linear system A·x = b, trying each solver in turn.

    Solvers are tried in the given order until one converges. Non-convergence
    is reported through `LinearSolverResult.converged`, not raised.

    :param A_csr: Coefficient matrix in CSR format.
    :param b: Right-hand side vector.
    :param x0: Initial guess.
    :param max_iterations: Maximum number of iterations for each solver.
    :param rtol: Relative tolerance for convergence.
    :param atol: Absolute tolerance for convergence. Defaults to 0.
    :param solver: Solver name, callable, or sequence of them.
    :param preconditioner: Preconditioner name, factory, operator or None.
    :param fallback_to_direct: Whether to fall back to a direct solve if all solvers fail.
    :return: `LinearSolverResult` of the last solver attempted.
    :raises PreconditionerError: If the preconditioner cannot be built.
    """
    if not issparse(A_csr):
        A_csr = csr_matrix(A_csr)
    solver_funcs = _get_solver_funcs(solver)
    if all(func is _spsolve for func in solver_funcs):
        M = None
    else:
        try:
            M = _get_preconditioner(A_csr, preconditioner)
        except (ValidationError, TypeError):
            raise
        except Exception as exc:
            raise PreconditionerError(f"Error building preconditioner: {exc}") from exc

    b_norm = float(np.linalg.norm(b))
    atol = 0.0 if atol is None else atol

    def reduction_of(x: np.typing.NDArray) -> float:
        residual_norm = float(np.linalg.norm(b - A_csr @ x))
        return residual_norm / b_norm if b_norm > 0.0 else residual_norm

    result = None
    for func in solver_funcs:
        iterations = 0

        def count(_: typing.Any) -> None:
            nonlocal iterations
            iterations += 1

        x, info = func(
            A_csr,
            b,
            x0,
            rtol=rtol,
            atol=atol,
            maxiter=max_iterations,
            M=M,
            callback=count,
        )
        x = np.ascontiguousarray(x)
        result = LinearSolverResult(
            x=x, converged=info == 0, iterations=iterations, reduction=reduction_of(x)
        )
        if result.converged:
            return result
        logger.warning(
            f"Solver {getattr(func, '__name__', func)!r} failed to converge within "
            f"{max_iterations} iterations. Info: {info}"
        )

    if not fallback_to_direct or _spsolve in solver_funcs:
        return result  # type: ignore[return-value]

    logger.info("Falling back to direct solver (spsolve).")
    x, info = _spsolve(
        A_csr, b, x0, rtol=rtol, atol=atol, maxiter=None, M=None, callback=None
    )
    return LinearSolverResult(
        x=x, converged=info == 0, iterations=0, reduction=reduction_of(x)
    )


@attrs.frozen
class ScipyLinearSolver:
    """Default linear solver built on SciPy sparse solvers and PyAMG/ILU preconditioners."""

    solver: typing.Union[IterativeSolver, typing.Iterable[IterativeSolver]] = "bicgstab"
    preconditioner: typing.Optional[Preconditioner] = "ilu"
    rtol: float = 1e-8
    max_iterations: int = 500
    fallback_to_direct: bool = False

    @classmethod
    def from_config(cls, config: typing.Any) -> "ScipyLinearSolver":
        """Build the solver from a `compflow.config.Config`."""
        return cls(
            solver=config.linear_solver,
            preconditioner=config.preconditioner,
            rtol=config.linear_solver_rtol,
            max_iterations=config.linear_solver_max_iterations,
        )

    def solve(
        self,
        matrix: SparseMatrix,
        rhs: np.typing.NDArray,
        x0: typing.Optional[np.typing.NDArray] = None,
    ) -> LinearSolverResult:
        return solve_linear_system(
            A_csr=matrix,
            b=rhs,
            x0=x0,
            max_iterations=self.max_iterations,
            rtol=self.rtol,
            solver=self.solver,
            preconditioner=self.preconditioner,
            fallback_to_direct=self.fallback_to_direct,
        )
