"""weakfem: weak forms in indicial notation compiled to numba finite-element kernels."""
import logging

from weakfem.core import FEMDomain, Mesh, Snapshot, ExportTransform
from weakfem.errors import (
    AssemblyError, LinearSolverError, MalformedFormError, NonlinearConvergenceError, WeakFEMError,
)
from weakfem.solvers import (
    BackwardEuler, LinearSolverParameters, NewtonParameters, RateStoppingCriterion,
    SimulationStatus, Static, ThetaScheme, TimeStepper, TimeStepperParameters,
)
from weakfem.symbolic import (
    Bilinear, FieldVariable, Parameter, delta, indices, parse_definitions, parse_expression,
)

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
