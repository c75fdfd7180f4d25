from .krylov import KrylovResult, LinearSolverParameters, bicgstabl, solve_linear
from .time_integration import BackwardEuler, Static, ThetaScheme
from .nonlinear_solver import (
    DriverState, NewtonParameters, RateStoppingCriterion, SimulationResult, SimulationStatus,
    StepInfo, TimeStepper, TimeStepperParameters,
)
