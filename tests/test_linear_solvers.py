import numpy as np
import pytest
from scipy.sparse import diags

from compflow import (
    Config,
    LinearSolverResult,
    PreconditionerError,
    ScipyLinearSolver,
    ValidationError,
    get_preconditioner_factory,
    get_solver_func,
    list_preconditioner_factories,
    list_solver_funcs,
    preconditioner_factory,
    solve_linear_system,
    solver_func,
)


def laplacian(n: int, shift: float = 0.0):
    """1D Laplacian with an optional diagonal shift, in CSR format."""
    return diags(
        [-np.ones(n - 1), (2.0 + shift) * np.ones(n), -np.ones(n - 1)],
        offsets=[-1, 0, 1],
        format="csr",
    )


class TestSolveLinearSystem:
    @pytest.mark.parametrize(
        "solver, preconditioner",
        [
            ("bicgstab", "ilu"),
            ("gmres", "diagonal"),
            ("lgmres", "ilu"),
            ("cg", "amg"),
            ("cg", None),
            ("direct", None),
        ],
    )
    def test_solvers(self, solver, preconditioner):
        A = laplacian(30, shift=0.1)
        x_true = np.linspace(1.0, 2.0, 30)
        b = A @ x_true

        result = solve_linear_system(
            A, b, solver=solver, preconditioner=preconditioner, max_iterations=1000
        )

        assert isinstance(result, LinearSolverResult)
        assert result.converged
        np.testing.assert_allclose(result.x, x_true, rtol=1e-5)
        assert result.reduction < 1e-6

    def test_non_convergence_is_reported(self):
        A = laplacian(50)
        result = solve_linear_system(
            A, np.ones(50), solver="cg", preconditioner=None, max_iterations=1, rtol=1e-12
        )
        assert not result.converged
        assert result.iterations == 1
        assert result.reduction > 1e-12

    def test_fallback_to_direct(self):
        A = laplacian(50)
        result = solve_linear_system(
            A,
            np.ones(50),
            solver="cg",
            preconditioner=None,
            max_iterations=1,
            rtol=1e-12,
            fallback_to_direct=True,
        )
        assert result.converged
        assert result.reduction < 1e-10

    def test_solvers_tried_in_order(self):
        A = laplacian(50)
        result = solve_linear_system(
            A,
            np.ones(50),
            solver=["cg", "direct"],
            preconditioner=None,
            max_iterations=1,
            rtol=1e-12,
        )
        assert result.converged

    def test_dense_input(self):
        A = laplacian(5).toarray()
        result = solve_linear_system(A, np.ones(5), solver="direct", preconditioner=None)
        np.testing.assert_allclose(A @ result.x, np.ones(5))

    def test_preconditioner_failure(self):
        def broken(A):
            raise RuntimeError("factorization failed")

        with pytest.raises(PreconditionerError, match="factorization failed"):
            solve_linear_system(laplacian(5), np.ones(5), preconditioner=broken)

    def test_unknown_names(self):
        with pytest.raises(ValidationError):
            solve_linear_system(laplacian(5), np.ones(5), solver="qmr")
        with pytest.raises(ValidationError):
            solve_linear_system(laplacian(5), np.ones(5), preconditioner="jacobi")


class TestRegistries:
    def test_builtins_registered(self):
        assert {"bicgstab", "gmres", "lgmres", "cg", "direct"} <= set(list_solver_funcs())
        assert {"ilu", "amg", "diagonal"} <= set(list_preconditioner_factories())

    def test_register_and_override(self):
        @preconditioner_factory(name="test_identity")
        def identity(A):
            return None

        assert get_preconditioner_factory("test_identity") is identity
        with pytest.raises(ValueError):
            preconditioner_factory(identity, name="test_identity")
        preconditioner_factory(identity, name="test_identity", override=True)

    def test_register_solver(self):
        @solver_func(name="test_direct")
        def direct(A, b, x0, *, rtol, atol, maxiter, M, callback):
            return get_solver_func("direct")(
                A, b, x0, rtol=rtol, atol=atol, maxiter=maxiter, M=M, callback=callback
            )

        result = solve_linear_system(
            laplacian(5), np.ones(5), solver="test_direct", preconditioner=None
        )
        assert result.converged


class TestScipyLinearSolver:
    def test_from_config(self):
        config = Config(linear_solver="gmres", preconditioner="diagonal", linear_solver_rtol=1e-6)
        solver = ScipyLinearSolver.from_config(config)
        assert solver.solver == "gmres"
        assert solver.preconditioner == "diagonal"
        assert solver.rtol == 1e-6
        assert solver.max_iterations == 500

    def test_solve(self):
        A = laplacian(10, shift=0.5)
        b = A @ np.arange(10.0)
        result = ScipyLinearSolver().solve(A, b)
        assert result.converged
        np.testing.assert_allclose(result.x, np.arange(10.0), atol=1e-6)
