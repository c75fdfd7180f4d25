# weakfem/jit/__init__.py
import logging

from weakfem.symbolic.linearize import linearize
from weakfem.symbolic.symbols import FieldLayout

from .backends import BACKENDS, LocalKernel, default_cache, get_codegen
from .cache import KernelCache
from .codegen import NumbaCodeGen
from .ir import KernelIR, build_kernel_ir

logger = logging.getLogger(__name__)


def compile_weak_form(expr, dim: int, internal: FieldLayout, external: FieldLayout | None = None,
                      *, name: str = "form", boundary: bool = False,
                      backend: str = "sequential", cache: KernelCache | None = None) -> LocalKernel:
    """Weak form -> linearization -> IR -> compiled :class:`LocalKernel`."""
    lin = linearize(expr, dim, internal, external, name=name, boundary=boundary)
    ir = build_kernel_ir(lin, boundary=boundary)
    logger.info("Compiling form '%s' (%d unknown symbols, %d tangent entries) for %s backend",
                name, ir.n_unknown, len(ir.tangent), backend)
    return LocalKernel(ir, backend, cache)
