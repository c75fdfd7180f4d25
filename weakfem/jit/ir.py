# weakfem/jit/ir.py
"""Backend-agnostic kernel description.

A :class:`KernelIR` is what every backend lowers: the quadrature-point slot
table, the common-subexpression assignments and the residual/tangent
densities, all as printed scalar Python expressions over ``s<k>`` (slot
values) and ``t<n>`` (temporaries).  It is frozen and hashable so the
kernel cache can key on it.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Tuple

import sympy
from sympy.printing.pycode import PythonCodePrinter

from weakfem.symbolic.linearize import Linearization
from weakfem.symbolic.symbols import SymbolSlot


@dataclass(frozen=True, slots=True)
class Assign:
    """``target = code`` inside the quadrature loop."""
    target: str
    code: str


@dataclass(frozen=True, slots=True)
class KernelIR:
    name: str
    dim: int
    n_comp: int                     # internal components per control point
    n_ext: int                      # external components per control point
    slots: Tuple[SymbolSlot, ...]
    n_unknown: int
    temporaries: Tuple[Assign, ...]
    residual: Tuple[Assign, ...]    # g[k] = ...
    tangent: Tuple[Assign, ...]     # h[k, l] = ...
    param_names: Tuple[str, ...] = field(default=())
    uses_normal: bool = False
    boundary: bool = False

    def digest(self) -> str:
        return hashlib.sha256(repr(self).encode("utf-8")).hexdigest()


class _KernelPrinter(PythonCodePrinter):
    """Python printer with full double precision for floats."""

    def _print_Float(self, expr):
        return repr(float(expr))


def build_kernel_ir(lin: Linearization, *, boundary: bool = False) -> KernelIR:
    """Lower a :class:`Linearization` into a :class:`KernelIR`."""
    table = lin.table
    slots = tuple(table.slots)
    rename = {sym: sympy.Symbol(f"s{k}", real=True) for k, sym in enumerate(table.symbols)}

    res_keys = sorted(lin.residual)
    tan_keys = sorted(lin.tangent)
    exprs = [lin.residual[k].xreplace(rename) for k in res_keys]
    exprs += [lin.tangent[kl].xreplace(rename) for kl in tan_keys]

    replacements, reduced = sympy.cse(exprs, symbols=sympy.numbered_symbols("t"), optimizations="basic")
    printer = _KernelPrinter({"standard": "python3"})

    temps = tuple(Assign(str(sym), printer.doprint(rhs)) for sym, rhs in replacements)
    residual = tuple(Assign(f"g[{k}]", printer.doprint(e))
                     for k, e in zip(res_keys, reduced[:len(res_keys)]))
    tangent = tuple(Assign(f"h[{k}, {l}]", printer.doprint(e))
                    for (k, l), e in zip(tan_keys, reduced[len(res_keys):]))

    return KernelIR(
        name=lin.name,
        dim=table.dim,
        n_comp=table.internal.n_components,
        n_ext=table.external.n_components,
        slots=slots,
        n_unknown=len(table.unknown_symbols),
        temporaries=temps,
        residual=residual,
        tangent=tangent,
        param_names=tuple(table.parameter_names),
        uses_normal=table.uses_normal,
        boundary=boundary,
    )
