r"""
nonlinear_solver.py  –  Newton / time-stepping driver for weakfem
=================================================================
Advances a compiled :class:`~weakfem.core.domain.FEMDomain` through implicit
time steps.  Each step runs Newton iterations on the assembled residual and
tangent, the linear systems being solved by BiCGStab(l) (or a direct
fallback).  Failed steps are rolled back and retried with a reduced time
step; a user supplied stopping criterion ends the run at steady state.

All heavy lifting (element loops, local tangents) happens in the compiled
kernels; this module is control logic only.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional

import numpy as np

from weakfem.assembly.global_assembler import GlobalAssembler
from weakfem.core.snapshot import Snapshot
from weakfem.errors import LinearSolverError, NonlinearConvergenceError
from weakfem.solvers.krylov import LinearSolverParameters, solve_linear
from weakfem.solvers.time_integration import ThetaScheme

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------------
#  Parameter dataclasses
# ----------------------------------------------------------------------------

@dataclass
class NewtonParameters:
    """Settings that govern a *single* Newton solve."""

    newton_tol: float = 1e-8            # ‖R‖_∞ convergence threshold
    rtol: float = 1e-10                 # ‖R‖₂ ≤ rtol·‖R₀‖₂
    increment_tol: float = 1e-10        # ‖Δx‖_∞ ≤ tol·max(1, ‖x‖_∞)
    max_newton_iter: int = 20           # hard cap on inner Newton iterations
    accept_unconverged: bool = False    # keep the last iterate instead of raising


@dataclass
class TimeStepperParameters:
    """Controls the time advancement and the step-retry policy."""

    dt: float = 1.0                     # time-step size
    max_steps: int = 1_000              # stop after this many steps
    theta: float = 1.0                  # 1.0 = backward Euler, 0.5 = CN
    dt_min: float = 1e-8                # give up below this step size
    dt_reduction: float = 0.5           # Δt ← factor·Δt after a failed step
    max_retries: int = 5                # retries of one step before DIVERGED


class DriverState(Enum):
    IDLE = "idle"
    ASSEMBLING = "assembling"
    SOLVING = "solving"
    UPDATING = "updating"
    CONVERGED = "converged"
    DIVERGED = "diverged"


class SimulationStatus(Enum):
    STEADY = "steady"
    MAX_STEPS = "max_steps"
    DIVERGED = "diverged"


@dataclass
class StepInfo:
    step: int
    t: float
    dt: float
    iterations: int
    residual_norm: float
    converged: bool


@dataclass
class SimulationResult:
    status: SimulationStatus
    steps: int
    t: float
    snapshot: Snapshot | None = None
    error: Exception | None = None
    history: List[StepInfo] = field(default_factory=list)


# ----------------------------------------------------------------------------
#  Steady-state detection
# ----------------------------------------------------------------------------

class RateStoppingCriterion:
    """
    Steady state: every designated rate is below its threshold.

    Keys of ``thresholds`` are field names (all components) or
    ``(field, component)`` pairs, e.g. ``{"T": 1e-2, ("d", 1): 1e-4}``.
    Maxima are taken over occupied control points only.
    """

    def __init__(self, thresholds: Mapping):
        if not thresholds:
            raise ValueError("RateStoppingCriterion needs at least one threshold")
        for key, tol in thresholds.items():
            if tol <= 0.0:
                raise ValueError(f"threshold for {key!r} must be positive, got {tol}")
        self.thresholds = dict(thresholds)
        self.last_maxima: Dict = {}

    @staticmethod
    def _split(key):
        if isinstance(key, tuple):
            return key[0], key[1]
        return key, None

    def check(self, maxima: Mapping) -> bool:
        """True when ``maxima[key] < threshold`` for every key."""
        return all(maxima[key] < tol for key, tol in self.thresholds.items())

    def __call__(self, snapshot: Snapshot) -> bool:
        maxima = {}
        for key in self.thresholds:
            name, comp = self._split(key)
            maxima[key] = snapshot.max_abs_rate(name, comp)
        self.last_maxima = maxima
        return self.check(maxima)

    def __repr__(self):
        return f"RateStoppingCriterion({self.thresholds!r})"


# ----------------------------------------------------------------------------
#  TimeStepper
# ----------------------------------------------------------------------------

class TimeStepper:
    r"""Implicit time stepping with Newton iterations.

    Within a step, the rate follows from the time scheme,
    :math:`x_t = x_t(x)`, and the tangent assembled by the kernels is
    :math:`\partial R/\partial x + w_t\,\partial R/\partial x_t` with
    :math:`w_t = \partial x_t/\partial x` supplied by the scheme.
    """

    def __init__(self, domain, newton: NewtonParameters | None = None,
                 time: TimeStepperParameters | None = None,
                 linear: LinearSolverParameters | None = None,
                 scheme=None):
        self.domain = domain
        self.np = newton or NewtonParameters()
        self.tp = time or TimeStepperParameters()
        self.lp = linear or LinearSolverParameters()
        self.scheme = scheme if scheme is not None else ThetaScheme(self.tp.theta)
        self.assembler = GlobalAssembler(domain)
        self.state = DriverState.IDLE
        self.step = 0
        self.history: List[StepInfo] = []

    def _set_state(self, state: DriverState) -> None:
        if state is not self.state:
            logger.debug("driver: %s -> %s", self.state.name, state.name)
            self.state = state

    def _converged(self, R, R0_norm2, dx, x) -> bool:
        p = self.np
        if np.linalg.norm(R, np.inf) <= p.newton_tol:
            return True
        if R0_norm2 > 0.0 and np.linalg.norm(R) <= p.rtol * R0_norm2:
            return True
        if dx is not None:
            return np.linalg.norm(dx, np.inf) <= p.increment_tol * max(1.0, np.linalg.norm(x, np.inf))
        return False

    # ------------------------------------------------------------------
    def update_one_step(self, dt: float | None = None) -> StepInfo:
        """
        Advance the domain by one time step of size ``dt``.

        On success the new state is committed to the control points.  On
        failure the field is rolled back to the start of the step and
        :class:`LinearSolverError` or :class:`NonlinearConvergenceError`
        propagates.
        """
        dom = self.domain
        fld = dom.field
        dt = self.tp.dt if dt is None else float(dt)
        if dt <= 0.0:
            raise ValueError(f"time step must be positive, got {dt}")
        fld.commit()
        t_old = fld.t
        t_new = t_old + dt
        dom.parameters["t"] = t_new
        w_t = self.scheme.weight(dt)

        x = fld.x.copy()
        R0_norm2 = None
        norm_R = np.inf
        dx = None
        converged = False
        it = 0
        try:
            for it in range(1, self.np.max_newton_iter + 1):
                x_t = self.scheme.rate(x, fld.x_prev, fld.x_t_prev, dt)

                self._set_state(DriverState.ASSEMBLING)
                t0 = time.perf_counter()
                R, K = self.assembler.assemble(x, x_t, w_t)
                t_asm = time.perf_counter() - t0
                norm_R = float(np.linalg.norm(R, np.inf))
                if not np.isfinite(norm_R):
                    raise NonlinearConvergenceError(
                        f"non-finite residual at Newton iteration {it}",
                        residual_norm=norm_R, iterations=it)
                if R0_norm2 is None:
                    R0_norm2 = float(np.linalg.norm(R))
                logger.debug("Newton %d: |R|_inf = %.3e (assembly %.3es)", it, norm_R, t_asm)

                if self._converged(R, R0_norm2, dx, x):
                    converged = True
                    break

                self._set_state(DriverState.SOLVING)
                dx = solve_linear(K, -R, self.lp).x

                self._set_state(DriverState.UPDATING)
                x = x + dx
            else:
                if not self.np.accept_unconverged:
                    raise NonlinearConvergenceError(
                        f"Newton did not converge in {self.np.max_newton_iter} iterations "
                        f"(|R|_inf = {norm_R:.3e}) at t = {t_new:g}",
                        residual_norm=norm_R, iterations=it)
                logger.warning("Accepting unconverged step at t = %g (|R|_inf = %.3e)", t_new, norm_R)
                x_t = self.scheme.rate(x, fld.x_prev, fld.x_t_prev, dt)
        except (LinearSolverError, NonlinearConvergenceError):
            self._set_state(DriverState.DIVERGED)
            fld.rollback()
            dom.parameters["t"] = t_old
            raise

        self._set_state(DriverState.CONVERGED)
        fld.x, fld.x_t = x, x_t
        fld.residual, fld.tangent = R, K
        fld.t, fld.dt = t_new, dt
        dom.dessemble()
        self.step += 1
        info = StepInfo(self.step, t_new, dt, it, norm_R, converged)
        self.history.append(info)
        self._set_state(DriverState.IDLE)
        return info

    def run(self, max_steps: int | None = None,
            criterion: Optional[Callable[[Snapshot], bool]] = None,
            on_step: Optional[Callable[[Snapshot], None]] = None) -> SimulationResult:
        """
        Step until ``criterion(snapshot)`` holds, ``max_steps`` is reached or
        a step cannot be completed even after the retry policy.
        """
        dom = self.domain
        tp = self.tp
        max_steps = tp.max_steps if max_steps is None else max_steps
        dom.gather()
        dt = tp.dt
        n_done = 0
        snap = None
        last_error = None
        t_start = time.perf_counter()

        while n_done < max_steps:
            retries = 0
            while True:
                try:
                    info = self.update_one_step(dt)
                    break
                except (LinearSolverError, NonlinearConvergenceError) as exc:
                    last_error = exc
                    retries += 1
                    new_dt = dt * tp.dt_reduction
                    if retries > tp.max_retries or new_dt < tp.dt_min:
                        logger.warning("Step %d failed after %d retries: %s",
                                       self.step + 1, retries - 1, exc)
                        return SimulationResult(SimulationStatus.DIVERGED, n_done, dom.field.t,
                                                snap, last_error, list(self.history))
                    logger.info("Rejecting step %d (%s); reducing dt -> %.3e and retrying.",
                                self.step + 1, type(exc).__name__, new_dt)
                    dt = new_dt

            n_done += 1
            snap = dom.snapshot(self.step)
            logger.info("Time step %d: t = %g, dt = %g, %d Newton iterations, |R|_inf = %.2e",
                        info.step, info.t, info.dt, info.iterations, info.residual_norm)
            if on_step is not None:
                on_step(snap)
            if criterion is not None and criterion(snap):
                logger.info("Steady state reached after %d steps (%.2fs)",
                            n_done, time.perf_counter() - t_start)
                return SimulationResult(SimulationStatus.STEADY, n_done, dom.field.t,
                                        snap, last_error, list(self.history))

        return SimulationResult(SimulationStatus.MAX_STEPS, n_done, dom.field.t,
                                snap, last_error, list(self.history))
