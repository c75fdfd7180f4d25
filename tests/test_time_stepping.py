import numpy as np
import pytest

from weakfem.core import FEMDomain
from weakfem.core.snapshot import ExportTransform, Snapshot
from weakfem.errors import NonlinearConvergenceError
from weakfem.solvers import (
    BackwardEuler, DriverState, LinearSolverParameters, NewtonParameters,
    RateStoppingCriterion, SimulationStatus, Static, ThetaScheme, TimeStepper,
    TimeStepperParameters,
)
from weakfem.symbolic import Bilinear, FieldVariable
from weakfem.utils.meshgen import structured_interval

DIRECT = LinearSolverParameters(backend="direct", tol=1e-12)


def _relaxation_domain(n_el=2):
    """dT/dt = 1 - T at every control point (consistent mass on both sides)."""
    T = FieldVariable("T")
    dom = FEMDomain(structured_interval(1.0, n_el))
    dom.add_workpiece("rod").assign_weak_form(Bilinear(T, T.dt) + Bilinear(T, T - 1))
    dom.discretize()
    dom.compile()
    return dom


# ---------------------------------------------------------------------------
#  Time schemes
# ---------------------------------------------------------------------------
class TestSchemes:
    def test_backward_euler(self):
        s = BackwardEuler()
        np.testing.assert_allclose(s.rate(np.array([3.0]), np.array([1.0]), np.array([9.0]), 0.5), [4.0])
        assert s.weight(0.5) == 2.0

    def test_crank_nicolson(self):
        s = ThetaScheme(0.5)
        np.testing.assert_allclose(s.rate(np.array([2.0]), np.array([0.0]), np.array([1.0]), 1.0), [3.0])
        assert s.weight(1.0) == 2.0

    def test_static(self):
        s = Static()
        assert np.all(s.rate(np.ones(3), np.zeros(3), np.ones(3), 1.0) == 0.0)
        assert s.weight(1.0) == 0.0

    @pytest.mark.parametrize("theta", [0.0, -0.5, 1.5])
    def test_bad_theta(self, theta):
        with pytest.raises(ValueError):
            ThetaScheme(theta)


# ---------------------------------------------------------------------------
#  Steady-state criterion and snapshots
# ---------------------------------------------------------------------------
def _snapshot(rate_T, rate_d, occupied=None):
    n = len(rate_T)
    return Snapshot(step=1, t=1.0, positions=np.zeros((n, 2)),
                    values={"T": np.zeros((n, 1)), "d": np.ones((n, 2))},
                    rates={"T": np.asarray(rate_T, float)[:, None], "d": np.asarray(rate_d, float)},
                    occupied=occupied)


class TestRateStoppingCriterion:
    def test_sequence_of_maxima(self):
        crit = RateStoppingCriterion({"T": 1e-2, ("d", 1): 1e-4})
        seq = [{"T": 1.0, ("d", 1): 1.0},
               {"T": 5e-3, ("d", 1): 2e-4},
               {"T": 2e-2, ("d", 1): 5e-5},
               {"T": 9e-3, ("d", 1): 9e-5}]
        assert [crit.check(m) for m in seq] == [False, False, False, True]

    def test_threshold_is_strict(self):
        crit = RateStoppingCriterion({"T": 1e-2})
        assert not crit.check({"T": 1e-2})

    def test_snapshot_component_and_occupancy(self):
        crit = RateStoppingCriterion({"T": 1e-2, ("d", 1): 1e-4})
        # d_0 is large but not designated; the large T rate sits on an unoccupied point
        snap = _snapshot([1e-3, 50.0, -2e-3],
                         [[3.0, 1e-5], [0.0, 0.0], [-7.0, -2e-5]],
                         occupied=np.array([True, False, True]))
        assert crit(snap)
        assert crit.last_maxima == {"T": pytest.approx(2e-3), ("d", 1): pytest.approx(2e-5)}
        snap.occupied = None
        assert not crit(snap)

    def test_invalid_thresholds(self):
        with pytest.raises(ValueError):
            RateStoppingCriterion({})
        with pytest.raises(ValueError):
            RateStoppingCriterion({"T": 0.0})


class TestSnapshotExport:
    def test_displace(self):
        snap = _snapshot([0.0, 0.0], [[0.0, 0.0], [0.0, 0.0]])
        snap.positions = np.array([[0.0, 0.0], [1.0, 0.0]])
        out = snap.transformed(ExportTransform.DISPLACE, field="d", scale=2.0)
        np.testing.assert_allclose(out, [[2.0, 2.0], [3.0, 2.0]])
        np.testing.assert_allclose(snap.positions, [[0.0, 0.0], [1.0, 0.0]])
        np.testing.assert_allclose(snap.transformed("none"), snap.positions)

    def test_displace_errors(self):
        snap = _snapshot([0.0], [[0.0, 0.0]])
        with pytest.raises(ValueError):
            snap.transformed(ExportTransform.DISPLACE)
        with pytest.raises(ValueError):
            snap.transformed(ExportTransform.DISPLACE, field="T")


# ---------------------------------------------------------------------------
#  Driver
# ---------------------------------------------------------------------------
def test_single_step_updates_control_points():
    dom = _relaxation_domain()
    stepper = TimeStepper(dom, time=TimeStepperParameters(dt=1.0), linear=DIRECT)
    info = stepper.update_one_step()
    assert info.converged and info.iterations == 2 and info.step == 1
    assert stepper.state is DriverState.IDLE
    assert dom.field.t == 1.0 and dom.parameters["t"] == 1.0
    np.testing.assert_allclose(dom.cps.value("T")[:, 0], 0.5, atol=1e-12)
    np.testing.assert_allclose(dom.cps.rate("T")[:, 0], 0.5, atol=1e-12)


def test_run_reaches_steady_state():
    dom = _relaxation_domain()
    stepper = TimeStepper(dom, time=TimeStepperParameters(dt=1.0), linear=DIRECT)
    seen = []
    result = stepper.run(criterion=RateStoppingCriterion({"T": 1e-3}),
                         on_step=lambda s: seen.append(s.max_abs_rate("T")))
    # backward Euler gives T_n = 1 - 2^-n, so the rate at step n is 2^-n
    assert result.status is SimulationStatus.STEADY
    assert result.steps == 10 and result.t == pytest.approx(10.0)
    np.testing.assert_allclose(seen, 0.5 ** np.arange(1, 11), rtol=1e-9)
    np.testing.assert_allclose(result.snapshot.values["T"][:, 0], 1.0 - 0.5 ** 10, rtol=1e-9)
    assert len(result.history) == 10


def test_run_stops_at_max_steps():
    dom = _relaxation_domain()
    result = TimeStepper(dom, linear=DIRECT).run(max_steps=3)
    assert result.status is SimulationStatus.MAX_STEPS and result.steps == 3


def test_static_scheme_solves_in_one_step():
    dom = _relaxation_domain()
    stepper = TimeStepper(dom, linear=DIRECT, scheme=Static())
    stepper.update_one_step()
    np.testing.assert_allclose(dom.cps.value("T")[:, 0], 1.0, atol=1e-12)
    assert np.all(dom.cps.rate("T") == 0.0)


def test_bicgstabl_inside_newton():
    dom = _relaxation_domain(n_el=8)
    stepper = TimeStepper(dom, linear=LinearSolverParameters(tol=1e-12))
    stepper.update_one_step(0.5)
    np.testing.assert_allclose(dom.cps.value("T")[:, 0], 1.0 / 3.0, rtol=1e-9)


def test_failed_step_rolls_back_and_diverges():
    dom = _relaxation_domain()
    newton = NewtonParameters(max_newton_iter=1)
    stepper = TimeStepper(dom, newton=newton, linear=DIRECT,
                          time=TimeStepperParameters(max_retries=2))
    result = stepper.run(max_steps=5)
    assert result.status is SimulationStatus.DIVERGED and result.steps == 0
    assert isinstance(result.error, NonlinearConvergenceError)
    assert stepper.state is DriverState.DIVERGED
    assert dom.field.t == 0.0
    assert np.all(dom.field.x == 0.0)


def test_dt_min_ends_retries():
    dom = _relaxation_domain()
    calls = []

    class Recording(TimeStepper):
        def update_one_step(self, dt=None):
            calls.append(dt)
            return super().update_one_step(dt)

    stepper = Recording(dom, newton=NewtonParameters(max_newton_iter=1), linear=DIRECT,
                        time=TimeStepperParameters(dt=1.0, dt_min=0.4, max_retries=10))
    result = stepper.run(max_steps=1)
    assert result.status is SimulationStatus.DIVERGED
    assert calls == [1.0, 0.5]


def test_reduced_step_is_kept_after_a_retry():
    dom = _relaxation_domain()

    class Flaky(TimeStepper):
        def update_one_step(self, dt=None):
            if dt > 0.3:
                raise NonlinearConvergenceError("step too large", residual_norm=1.0, iterations=1)
            return super().update_one_step(dt)

    stepper = Flaky(dom, linear=DIRECT, time=TimeStepperParameters(dt=1.0))
    result = stepper.run(max_steps=3)
    assert result.status is SimulationStatus.MAX_STEPS
    assert [h.dt for h in result.history] == [0.25, 0.25, 0.25]
    assert result.t == pytest.approx(0.75)
    assert isinstance(result.error, NonlinearConvergenceError)
