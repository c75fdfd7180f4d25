"""weakfem.errors
Exception taxonomy shared by the compiler, the assembler and the driver.

Structural faults (malformed forms, bad indexing) are fatal and raised where
they are detected.  Numerical faults (linear or Newton non-convergence) are
raised by the solvers and recovered, if at all, by the time-stepping driver.
"""


class WeakFEMError(Exception):
    """Base class for every error raised by weakfem."""


class MalformedFormError(WeakFEMError, ValueError):
    """A weak form violates the indicial grammar (index counts, ranks, ...)."""

    def __init__(self, message: str, *, form: str | None = None, index: str | None = None):
        self.form = form
        self.index = index
        where = []
        if form:
            where.append(f"form '{form}'")
        if index:
            where.append(f"index '{index}'")
        prefix = f"[{', '.join(where)}] " if where else ""
        super().__init__(prefix + message)

    def in_form(self, form: str) -> "MalformedFormError":
        """Return a copy of this error that also names the offending form."""
        if self.form is not None:
            return self
        msg = str(self)
        if msg.startswith("["):
            msg = msg.split("] ", 1)[1]
        return MalformedFormError(msg, form=form, index=self.index)


class AssemblyError(WeakFEMError, RuntimeError):
    """An element or facet cannot be assembled (missing DOF, inverted cell, ...)."""

    def __init__(self, message: str, *, body=None, region=None, entity=None):
        self.body = body
        self.region = region
        self.entity = entity
        super().__init__(message)


class LinearSolverError(WeakFEMError, RuntimeError):
    """The Krylov solver exhausted its iteration/pass budget."""

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)


class NonlinearConvergenceError(WeakFEMError, RuntimeError):
    """Newton iterations exceeded their bound without meeting the tolerance."""

    def __init__(self, message: str, *, residual_norm: float, iterations: int):
        self.residual_norm = residual_norm
        self.iterations = iterations
        super().__init__(message)
