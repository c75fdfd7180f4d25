import numpy as np
import pytest
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from weakfem.errors import LinearSolverError
from weakfem.solvers import LinearSolverParameters, bicgstabl, solve_linear


def _poisson_1d(n):
    return sp.diags([-np.ones(n - 1), 2.0 * np.ones(n), -np.ones(n - 1)], [-1, 0, 1], format="csr")


def _convection_diffusion(n, peclet=20.0):
    """Upwinded 1-D convection-diffusion: non-symmetric, diagonally dominant."""
    h = 1.0 / (n + 1)
    diff = _poisson_1d(n) / h ** 2
    conv = sp.diags([-np.ones(n - 1), np.ones(n)], [-1, 0], format="csr") * (peclet / h)
    return (diff + conv).tocsr()


@pytest.mark.parametrize("s", [1, 2, 4, 8])
def test_spd_known_solution(s):
    n = 60
    A = _poisson_1d(n)
    x_true = np.sin(np.linspace(0.0, 3.0, n))
    b = A @ x_true
    res = bicgstabl(A, b, s=s, tol=1e-10, maxiter=2000)
    assert res.converged
    np.testing.assert_allclose(res.x, x_true, rtol=1e-6, atol=1e-7)
    assert np.linalg.norm(b - A @ res.x) == pytest.approx(res.residual_norm)


def test_nonsymmetric_matches_direct_solve():
    A = _convection_diffusion(80)
    b = np.random.default_rng(2).uniform(-1.0, 1.0, 80)
    res = bicgstabl(A, b, s=8, tol=1e-11)
    assert res.converged and res.passes >= 1
    x_ref = spla.spsolve(A.tocsc(), b)
    assert np.linalg.norm(res.x - x_ref) <= 1e-6 * np.linalg.norm(x_ref)


@pytest.mark.parametrize("preconditioner", ["jacobi", None])
def test_preconditioner_choice(preconditioner):
    A = _convection_diffusion(40)
    x_true = np.linspace(1.0, 2.0, 40)
    res = bicgstabl(A, A @ x_true, tol=1e-10, preconditioner=preconditioner)
    assert res.converged
    np.testing.assert_allclose(res.x, x_true, rtol=1e-5)


def test_initial_guess_is_used():
    A = _poisson_1d(30)
    x_true = np.ones(30)
    res = bicgstabl(A, A @ x_true, x0=x_true, tol=1e-12)
    assert res.converged and res.iterations == 0 and res.passes == 0


def test_zero_rhs_returns_zero():
    res = bicgstabl(_poisson_1d(10), np.zeros(10), x0=np.ones(10))
    assert res.converged and res.iterations == 0
    assert np.all(res.x == 0.0)


def test_inconsistent_system_does_not_converge():
    d = np.ones(20)
    d[7] = 0.0
    A = sp.diags(d, format="csr")
    b = np.ones(20)
    res = bicgstabl(A, b, tol=1e-8, maxiter=200, max_pass=3)
    assert not res.converged
    assert res.passes <= 3 and res.iterations <= 200
    assert res.residual_norm >= 1.0 - 1e-12

    params = LinearSolverParameters(tol=1e-8, maxiter=200, max_pass=3)
    with pytest.raises(LinearSolverError) as exc:
        solve_linear(A, b, params)
    assert exc.value.result is not None and not exc.value.result.converged


@pytest.mark.parametrize("s, maxiter, max_pass", [(8, 3, 1), (4, 13, 5), (3, 7, 20), (8, 1, 20)])
def test_step_budget_is_never_exceeded(s, maxiter, max_pass):
    n = 200
    A = _poisson_1d(n)
    b = A @ np.sin(np.linspace(0.0, 3.0, n))
    res = bicgstabl(A, b, s=s, tol=1e-14, maxiter=maxiter, max_pass=max_pass)
    assert not res.converged
    assert 1 <= res.iterations <= maxiter
    # the reported residual belongs to the returned iterate
    assert np.linalg.norm(b - A @ res.x) == pytest.approx(res.residual_norm)

    params = LinearSolverParameters(tol=1e-14, maxiter=maxiter, max_pass=max_pass, restart=s)
    with pytest.raises(LinearSolverError) as exc:
        solve_linear(A, b, params)
    assert exc.value.result.iterations <= maxiter


def test_direct_backend_and_unknown_backend():
    A = _convection_diffusion(25).tocsr()
    b = np.ones(25)
    res = solve_linear(A, b, LinearSolverParameters(backend="direct"))
    np.testing.assert_allclose(A @ res.x, b, rtol=1e-10)
    with pytest.raises(ValueError):
        solve_linear(A, b, LinearSolverParameters(backend="gmres"))


def test_bad_arguments():
    A = _poisson_1d(5)
    with pytest.raises(ValueError):
        bicgstabl(A, np.ones(5), s=0)
    with pytest.raises(ValueError):
        bicgstabl(A, np.ones(5), preconditioner="ilu")
