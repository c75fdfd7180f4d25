# weakfem/jit/backends.py
"""Kernel backends and the callable :class:`LocalKernel` wrapper."""
import logging
from typing import Dict, Mapping

import numpy as np

from weakfem.jit.cache import KernelCache
from weakfem.jit.codegen import NumbaCodeGen
from weakfem.jit.ir import KernelIR

logger = logging.getLogger(__name__)

BACKENDS = ("sequential", "parallel")

_DEFAULT_CACHE: KernelCache | None = None


def default_cache() -> KernelCache:
    global _DEFAULT_CACHE
    if _DEFAULT_CACHE is None:
        _DEFAULT_CACHE = KernelCache()
    return _DEFAULT_CACHE


def get_codegen(backend: str, debug: bool | None = None) -> NumbaCodeGen:
    if backend not in BACKENDS:
        raise ValueError(f"Unknown kernel backend '{backend}'; choose from {BACKENDS}")
    return NumbaCodeGen(parallel=(backend == "parallel"), debug=debug)


class LocalKernel:
    """
    Element-batch evaluator of one compiled weak form.

    ``kernel(tab, x_loc, xt_loc, ext_loc, params, w_t)`` returns the element
    residuals ``F (nE, nB*n_comp)`` and tangents ``K (nE, nB*n_comp, nB*n_comp)``
    in node-major local order.
    """

    def __init__(self, ir: KernelIR, backend: str = "sequential",
                 cache: KernelCache | None = None, debug: bool | None = None):
        self.ir = ir
        self.backend = backend
        codegen = get_codegen(backend, debug)
        self.fn, self.param_order = (cache or default_cache()).get_kernel(ir, codegen)
        self.slot_source = np.array([s.source for s in ir.slots], dtype=np.int64)
        self.slot_comp = np.array([s.comp for s in ir.slots], dtype=np.int64)
        self.slot_deriv = np.array([s.deriv for s in ir.slots], dtype=np.int64)
        logger.debug("LocalKernel '%s' ready on %s backend", ir.name, backend)

    def with_backend(self, backend: str, cache: KernelCache | None = None) -> "LocalKernel":
        return LocalKernel(self.ir, backend, cache)

    def param_vector(self, params) -> np.ndarray:
        if isinstance(params, Mapping):
            missing = [p for p in self.ir.param_names if p not in params]
            if missing:
                raise KeyError(f"Form '{self.ir.name}' needs parameter(s) {missing}")
            return np.array([float(params[p]) for p in self.ir.param_names], dtype=np.float64)
        vec = np.ascontiguousarray(params, dtype=np.float64).reshape(-1)
        if vec.size != len(self.ir.param_names):
            raise ValueError(f"Expected {len(self.ir.param_names)} parameters, got {vec.size}")
        return vec

    def __call__(self, tab, x_loc, xt_loc=None, ext_loc=None, params=None, w_t: float = 0.0):
        phi = np.ascontiguousarray(tab.phi, dtype=np.float64)
        n_el, n_qp, n_b = phi.shape
        x_loc = np.ascontiguousarray(x_loc, dtype=np.float64)
        if x_loc.shape != (n_el, n_b, self.ir.n_comp):
            raise ValueError(f"x_loc has shape {x_loc.shape}, expected {(n_el, n_b, self.ir.n_comp)}")
        xt_loc = np.zeros_like(x_loc) if xt_loc is None else np.ascontiguousarray(xt_loc, dtype=np.float64)
        if ext_loc is None:
            ext_loc = np.zeros((n_el, n_b, self.ir.n_ext), dtype=np.float64)
        ext_loc = np.ascontiguousarray(ext_loc, dtype=np.float64)
        if ext_loc.shape != (n_el, n_b, self.ir.n_ext):
            raise ValueError(f"ext_loc has shape {ext_loc.shape}, expected {(n_el, n_b, self.ir.n_ext)}")
        normals = tab.normals
        if normals is None:
            if self.ir.uses_normal:
                raise ValueError(f"Form '{self.ir.name}' needs facet normals")
            normals = np.zeros((n_el, n_qp, self.ir.dim), dtype=np.float64)

        args: Dict[str, object] = {
            "phi": phi,
            "dphi": np.ascontiguousarray(tab.dphi, dtype=np.float64),
            "wdet": np.ascontiguousarray(tab.wdet, dtype=np.float64),
            "normals": np.ascontiguousarray(normals, dtype=np.float64),
            "x_loc": x_loc,
            "xt_loc": xt_loc,
            "ext_loc": ext_loc,
            "params": self.param_vector({} if params is None else params),
            "w_t": float(w_t),
            "slot_source": self.slot_source,
            "slot_comp": self.slot_comp,
            "slot_deriv": self.slot_deriv,
            "n_comp": self.ir.n_comp,
        }
        return self.fn(*[args[p] for p in self.param_order])

    def __repr__(self):
        return f"LocalKernel({self.ir.name!r}, backend={self.backend!r})"
