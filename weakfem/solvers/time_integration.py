"""weakfem.solvers.time_integration
One-step time schemes.  A scheme maps the current iterate to a rate
``x_t`` and provides the weight ``w_t = d(x_t)/dx`` used by the kernels
to scale the tangent columns of rate symbols.
"""
import numpy as np


class ThetaScheme:
    """x_t = (x - x_prev)/(theta dt) - (1 - theta)/theta * x_t_prev."""

    def __init__(self, theta: float = 1.0):
        if not 0.0 < theta <= 1.0:
            raise ValueError(f"theta must lie in (0, 1], got {theta}")
        self.theta = float(theta)

    def rate(self, x: np.ndarray, x_prev: np.ndarray, x_t_prev: np.ndarray, dt: float) -> np.ndarray:
        th = self.theta
        x_t = (x - x_prev) / (th * dt)
        if th < 1.0:
            x_t -= (1.0 - th) / th * x_t_prev
        return x_t

    def weight(self, dt: float) -> float:
        return 1.0 / (self.theta * dt)

    def __repr__(self):
        return f"{type(self).__name__}(theta={self.theta})"


class BackwardEuler(ThetaScheme):
    def __init__(self):
        super().__init__(1.0)

    def __repr__(self):
        return "BackwardEuler()"


class Static:
    """Quasi-static solve: rates vanish and rate symbols drop out of the tangent."""

    theta = None

    def rate(self, x, x_prev, x_t_prev, dt):
        return np.zeros_like(x)

    def weight(self, dt):
        return 0.0

    def __repr__(self):
        return "Static()"
