"""weakfem.solvers.krylov
BiCGStab(l) with restarts for the non-symmetric tangents of coupled problems.

Reference: G. Sleijpen, D. Fokkema, "BiCGstab(l) for linear equations
involving unsymmetric matrices with complex spectrum", ETNA 1 (1993).
"""
import logging
from dataclasses import dataclass

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from weakfem.errors import LinearSolverError

logger = logging.getLogger(__name__)


@dataclass
class KrylovResult:
    x: np.ndarray
    converged: bool
    iterations: int          # BiCG steps (each costs two products with A)
    passes: int
    residual_norm: float     # true ||b - A x||


def _jacobi(A):
    """Inverse diagonal of ``A`` (1 where the diagonal vanishes)."""
    if sp.issparse(A):
        d = np.asarray(A.diagonal(), dtype=float)
    elif isinstance(A, np.ndarray):
        d = np.diag(A).astype(float)
    else:
        raise TypeError("Jacobi preconditioning needs an explicit matrix")
    inv = np.ones_like(d)
    nz = np.abs(d) > 0.0
    inv[nz] = 1.0 / d[nz]
    return inv


def _bicgstabl_pass(matvec, b, x, r, ell, tol_abs, budget):
    """One restart cycle.  Returns (x, r, steps, reason)."""
    n = b.shape[0]
    rshadow = r.copy()
    r_hat = np.zeros((ell + 1, n))
    u_hat = np.zeros((ell + 1, n))
    r_hat[0] = r
    rho0, alpha, omega = 1.0, 0.0, 1.0
    steps = 0

    while steps < budget:
        rho0 = -omega * rho0
        # --- BiCG part ---------------------------------------------------
        for j in range(ell):
            if steps >= budget:
                # r_hat[0] still matches x after a partial cycle
                return x, r_hat[0], steps, "maxiter"
            rho1 = float(np.dot(r_hat[j], rshadow))
            if rho0 == 0.0 or not np.isfinite(rho1):
                return x, r_hat[0], steps, "breakdown"
            beta = alpha * rho1 / rho0
            rho0 = rho1
            u_hat[:j + 1] = r_hat[:j + 1] - beta * u_hat[:j + 1]
            u_hat[j + 1] = matvec(u_hat[j])
            sigma = float(np.dot(u_hat[j + 1], rshadow))
            if sigma == 0.0 or not np.isfinite(sigma):
                return x, r_hat[0], steps, "breakdown"
            alpha = rho0 / sigma
            r_hat[:j + 1] -= alpha * u_hat[1:j + 2]
            r_hat[j + 1] = matvec(r_hat[j])
            x = x + alpha * u_hat[0]
            steps += 1
        # --- minimal-residual part -----------------------------------------
        R = r_hat[1:].T
        gamma, *_ = np.linalg.lstsq(R, r_hat[0], rcond=None)
        if not np.all(np.isfinite(gamma)):
            return x, r_hat[0], steps, "breakdown"
        omega = float(gamma[-1])
        x = x + gamma @ r_hat[:-1]
        r_hat[0] = r_hat[0] - gamma @ r_hat[1:]
        u_hat[0] = u_hat[0] - gamma @ u_hat[1:]
        res = float(np.linalg.norm(r_hat[0]))
        if not np.isfinite(res):
            return x, r_hat[0], steps, "breakdown"
        if res <= tol_abs:
            return x, r_hat[0], steps, "converged"
        if omega == 0.0:
            return x, r_hat[0], steps, "stagnation"
    return x, r_hat[0], steps, "maxiter"


def bicgstabl(A, b, x0=None, *, s: int = 8, tol: float = 1e-6, maxiter: int = 2000,
              max_pass: int = 20, preconditioner: str | None = "jacobi") -> KrylovResult:
    """
    Solve ``A x = b`` with BiCGStab(s), restarting from the true residual.

    Convergence is declared only on the true relative residual
    ``||b - A x|| <= tol * ||b||``.  A pass ends on convergence of the
    recursive residual, breakdown or stagnation; the next pass restarts from
    the current iterate with a fresh shadow residual.
    """
    b = np.asarray(b, dtype=float)
    n = b.shape[0]
    if s < 1:
        raise ValueError("restart length s must be >= 1")
    Aop = spla.aslinearoperator(A)
    if preconditioner == "jacobi":
        minv = _jacobi(A)
    elif preconditioner is None:
        minv = np.ones(n)
    else:
        raise ValueError(f"Unknown preconditioner '{preconditioner}'")

    x = np.zeros(n) if x0 is None else np.array(x0, dtype=float)
    bnorm = float(np.linalg.norm(b))
    if bnorm == 0.0:
        return KrylovResult(np.zeros(n), True, 0, 0, 0.0)
    tol_abs = tol * bnorm

    # right preconditioning: A M^{-1} y = b, x = M^{-1} y
    def matvec(v):
        return Aop.matvec(minv * v)

    y = x / minv
    r = b - Aop.matvec(x)
    res = float(np.linalg.norm(r))
    total, passes = 0, 0
    while res > tol_abs and passes < max_pass and total < maxiter:
        passes += 1
        y, _, steps, reason = _bicgstabl_pass(matvec, b, y, r, s, tol_abs, maxiter - total)
        total += steps
        x_new = minv * y
        r_new = b - Aop.matvec(x_new)
        res_new = float(np.linalg.norm(r_new))
        logger.debug("bicgstabl pass %d: %s after %d steps, |r|/|b| = %.3e",
                     passes, reason, steps, res_new / bnorm)
        if not np.isfinite(res_new):
            break
        if res_new < res or reason == "converged":
            x, r, res = x_new, r_new, res_new
        y = x / minv
        if steps == 0:
            break
    converged = bool(res <= tol_abs)
    if not converged:
        logger.info("bicgstabl did not converge: |r|/|b| = %.3e after %d steps, %d passes",
                    res / bnorm, total, passes)
    return KrylovResult(x, converged, total, passes, res)


@dataclass
class LinearSolverParameters:
    """Sparse linear solver settings."""

    backend: str = "bicgstabl"          # "bicgstabl" or "direct"
    tol: float = 1e-6                   # relative residual
    maxiter: int = 2000
    max_pass: int = 20
    restart: int = 8                    # s in BiCGStab(s)
    preconditioner: str | None = "jacobi"


def solve_linear(A, b, params: LinearSolverParameters | None = None, x0=None) -> KrylovResult:
    """Solve ``A x = b`` with the configured backend; raise if it does not converge."""
    params = params or LinearSolverParameters()
    if params.backend == "direct":
        x = spla.spsolve(sp.csc_matrix(A), b)
        x = np.atleast_1d(np.asarray(x, dtype=float))
        res = float(np.linalg.norm(b - A @ x))
        ok = bool(np.all(np.isfinite(x)) and res <= params.tol * max(np.linalg.norm(b), 1e-300))
        result = KrylovResult(x, ok, 1, 1, res)
    elif params.backend == "bicgstabl":
        result = bicgstabl(A, b, x0, s=params.restart, tol=params.tol, maxiter=params.maxiter,
                           max_pass=params.max_pass, preconditioner=params.preconditioner)
    else:
        raise ValueError(f"Unknown linear solver backend '{params.backend}'")
    if not result.converged:
        raise LinearSolverError(
            f"{params.backend} failed: |r| = {result.residual_norm:.3e} after "
            f"{result.iterations} iterations / {result.passes} passes", result)
    return result
