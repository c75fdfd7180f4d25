# weakfem/symbolic/linearize.py
"""
Residual and consistent tangent densities of a weak form.

For every unknown quadrature symbol ``s_k`` (a field component value, one of
its first derivatives or its rate) the residual density is::

    G_k = sum over pairs  d(a)/d(s_k) * b

and the tangent density is ``H_kl = dG_k / ds_l``.  A rate symbol's
dependence on the nodal unknowns is the scalar ``w_t`` supplied by the time
scheme at kernel-call time, so ``dt`` never appears in the expressions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import sympy

from weakfem.errors import MalformedFormError
from weakfem.symbolic.expand import expand_weak_form
from weakfem.symbolic.symbols import FieldLayout, SymbolTable

logger = logging.getLogger(__name__)


@dataclass
class Linearization:
    name: str
    table: SymbolTable
    residual: Dict[int, sympy.Expr] = field(default_factory=dict)
    tangent: Dict[Tuple[int, int], sympy.Expr] = field(default_factory=dict)

    @property
    def n_unknown(self) -> int:
        return len(self.table.unknown_symbols)

    def residual_vector(self) -> List[sympy.Expr]:
        return [self.residual.get(k, sympy.Integer(0)) for k in range(self.n_unknown)]

    def tangent_matrix(self) -> sympy.Matrix:
        n = self.n_unknown
        return sympy.Matrix(n, n, lambda k, l: self.tangent.get((k, l), 0))


def linearize(expr, dim: int, internal: FieldLayout, external: FieldLayout | None = None,
              *, name: str = "form", boundary: bool = False) -> Linearization:
    """Expand ``expr`` and differentiate it symbolically.

    ``boundary`` allows facet normals; domain forms using ``n{i}`` are
    rejected.
    """
    table = SymbolTable(dim, internal, external)
    pairs = expand_weak_form(expr, dim, table, name)
    if table.uses_normal and not boundary:
        raise MalformedFormError("facet normal used in a domain form", form=name)
    table.freeze()
    unknowns = table.unknown_symbols
    lin = Linearization(name, table)

    acc: Dict[int, sympy.Expr] = {}
    for a, b in pairs:
        if a == 0 or b == 0:
            continue
        grads = [sympy.diff(a, s) for s in unknowns]
        if all(g == 0 for g in grads):
            raise MalformedFormError(
                f"test quantity '{a}' does not depend on any unknown field", form=name)
        for k, g in enumerate(grads):
            if g != 0:
                acc[k] = acc.get(k, 0) + g * b

    for k, gk in acc.items():
        gk = sympy.expand(gk)
        if gk == 0:
            continue
        lin.residual[k] = gk
        for l, s in enumerate(unknowns):
            hkl = sympy.diff(gk, s)
            if hkl != 0:
                lin.tangent[(k, l)] = hkl

    logger.debug("Linearized '%s': %d unknown symbols, %d residual and %d tangent entries",
                 name, len(unknowns), len(lin.residual), len(lin.tangent))
    return lin
