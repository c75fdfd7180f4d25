# weakfem/symbolic/expand.py
"""Einstein expansion of indicial expressions into canonical sympy scalars.

Index bookkeeping follows the usual summation convention: inside one
product term an index used once is free, an index used twice is summed
over ``range(dim)`` and anything more is a malformed form.  Sums, Bilinear
pairings and definitions must agree on their free indices.
"""
from __future__ import annotations

import itertools
import logging
from collections import Counter
from typing import Dict, List, Tuple

import sympy

from weakfem.errors import MalformedFormError
from weakfem.symbolic.expressions import (
    Apply, Bilinear, Constant, Delta, Expression, FieldAccess, FieldVariable,
    NormalAccess, ParameterRef, Power, Prod, Quotient, Sum, as_expression,
)
from weakfem.symbolic.symbols import SymbolTable

logger = logging.getLogger(__name__)

_SYMPY_FUNCS = {
    "sqrt": sympy.sqrt, "exp": sympy.exp, "log": sympy.log,
    "sin": sympy.sin, "cos": sympy.cos, "tanh": sympy.tanh, "abs": sympy.Abs,
}


# ======================================================================
#  Index analysis
# ======================================================================
def _ordered_unique(seq):
    return list(dict.fromkeys(seq))


def _usage(node: Expression) -> Tuple[List, set]:
    """Return (free indices in order of appearance, indices summed inside node)."""
    free, bound = _node_usage(node)
    clash = bound.intersection(free)
    if clash:
        raise MalformedFormError(
            "index is both free and summed in the same term",
            index=sorted(i.name for i in clash)[0])
    return free, bound


def _node_usage(node: Expression) -> Tuple[List, set]:
    if isinstance(node, FieldAccess):
        f = node.field
        if len(node.comps) != f.rank:
            raise MalformedFormError(
                f"field '{f.name}' has rank {f.rank} but is accessed with "
                f"{len(node.comps)} component indices")
        if len(node.derivs) > 1:
            raise MalformedFormError(
                f"only first spatial derivatives are supported, got '{node!r}'",
                index=node.derivs[1].name)
        if node.time_order > 1:
            raise MalformedFormError(f"time derivative of order {node.time_order} in '{node!r}'")
        if node.time_order and f.external:
            raise MalformedFormError(f"external field '{f.name}' has no time derivative")
        counts = Counter(node.all_indices())
        _check_counts(counts)
        free = [i for i in _ordered_unique(node.all_indices()) if counts[i] == 1]
        return free, {i for i, c in counts.items() if c == 2}
    if isinstance(node, Delta):
        if node.i == node.j:
            return [], {node.i}
        return [node.i, node.j], set()
    if isinstance(node, NormalAccess):
        return [node.index], set()
    if isinstance(node, (Constant, ParameterRef)):
        return [], set()
    if isinstance(node, Sum):
        fa, ba = _usage(node.a)
        fb, bb = _usage(node.b)
        if set(fa) != set(fb):
            bad = sorted(i.name for i in set(fa) ^ set(fb))
            raise MalformedFormError(
                f"terms of a sum have different free indices "
                f"({[i.name for i in fa]} vs {[i.name for i in fb]})", index=bad[0])
        return fa, ba | bb
    if isinstance(node, Prod):
        occ, inner = [], set()
        for fac in node.factors():
            f, b = _usage(fac)
            occ.extend(f)
            inner |= b
        counts = Counter(occ)
        _check_counts(counts)
        clash = inner.intersection(counts)
        if clash:
            raise MalformedFormError(
                "index appears three or more times in one term",
                index=sorted(i.name for i in clash)[0])
        free = [i for i in _ordered_unique(occ) if counts[i] == 1]
        return free, inner | {i for i, c in counts.items() if c == 2}
    if isinstance(node, Quotient):
        fa, ba = _usage(node.a)
        fb, bb = _usage(node.b)
        if fb:
            raise MalformedFormError("free index in a denominator", index=fb[0].name)
        return fa, ba | bb
    if isinstance(node, Power):
        fa, ba = _usage(node.a)
        fb, bb = _usage(node.b)
        if fa or fb:
            raise MalformedFormError("free index in a power", index=(fa + fb)[0].name)
        return [], ba | bb
    if isinstance(node, Apply):
        fa, ba = _usage(node.arg)
        if fa:
            raise MalformedFormError(f"free index inside {node.func}()", index=fa[0].name)
        return [], ba
    if isinstance(node, Bilinear):
        fa, ba = _usage(node.a)
        fb, bb = _usage(node.b)
        if set(fa) != set(fb):
            bad = sorted(i.name for i in set(fa) ^ set(fb))
            raise MalformedFormError(
                f"Bilinear pairs unmatched free indices "
                f"({[i.name for i in fa]} vs {[i.name for i in fb]})", index=bad[0])
        if set(fa) & (ba | bb):
            raise MalformedFormError("index is both paired and summed inside a Bilinear",
                                     index=sorted(i.name for i in set(fa) & (ba | bb))[0])
        return [], ba | bb | set(fa)
    raise TypeError(f"Unknown expression node {type(node).__name__}")


def _check_counts(counts: Counter):
    for idx, c in counts.items():
        if c > 2:
            raise MalformedFormError("index appears three or more times in one term", index=idx.name)


def free_indices(expr) -> tuple:
    """Free indices of ``expr`` in order of first appearance (validates the tree)."""
    return tuple(_usage(as_expression(expr))[0])


# ======================================================================
#  Expansion to sympy
# ======================================================================
def _sympify_number(value):
    if isinstance(value, (bool, int)) or (isinstance(value, float) and value.is_integer()
                                          and abs(value) < 2 ** 53):
        return sympy.Integer(int(value))
    return sympy.Float(value, 17)


class EinsteinExpander:
    """Evaluate an indicial tree for concrete index values.

    ``table`` turns field accesses, parameters and normals into symbols; the
    expander itself is stateless otherwise and may be reused.
    """

    def __init__(self, dim: int, table: SymbolTable):
        self.dim = dim
        self.table = table
        self._dispatch = {
            Constant: self._visit_Constant,
            ParameterRef: self._visit_Parameter,
            FieldAccess: self._visit_FieldAccess,
            FieldVariable: self._visit_FieldAccess,
            NormalAccess: self._visit_Normal,
            Delta: self._visit_Delta,
            Sum: self._visit_Sum,
            Prod: self._visit_Prod,
            Quotient: self._visit_Quotient,
            Power: self._visit_Power,
            Apply: self._visit_Apply,
        }

    def _visit(self, node, env):
        try:
            visit = self._dispatch[type(node)]
        except KeyError:
            if isinstance(node, Bilinear):
                raise MalformedFormError("Bilinear may only appear as a top-level weak-form term") from None
            raise TypeError(f"Unknown expression node {type(node).__name__}") from None
        return visit(node, env)

    def _summed(self, bound, env, fn):
        if not bound:
            return fn(env)
        total = sympy.Integer(0)
        for vals in itertools.product(range(self.dim), repeat=len(bound)):
            sub = dict(env)
            sub.update(zip(bound, vals))
            total += fn(sub)
        return total

    # --- leaves -------------------------------------------------------
    def _visit_Constant(self, n, env):
        return _sympify_number(n.value)

    def _visit_Parameter(self, n, env):
        return self.table.parameter(n.name)

    def _visit_Normal(self, n, env):
        return self.table.normal(env[n.index])

    def _visit_Delta(self, n, env):
        if n.i == n.j and n.i not in env:
            return sympy.Integer(self.dim)
        return sympy.Integer(1 if env[n.i] == env[n.j] else 0)

    def _visit_FieldAccess(self, n, env):
        counts = Counter(n.all_indices())
        bound = [i for i, c in counts.items() if c == 2 and i not in env]

        def leaf(e):
            comps = tuple(e[i] for i in n.comps)
            deriv = e[n.derivs[0]] if n.derivs else -1
            return self.table.field(n.field, comps, deriv, n.time_order)
        return self._summed(bound, env, leaf)

    # --- operators ----------------------------------------------------
    def _visit_Sum(self, n, env):
        return self._visit(n.a, env) + self._visit(n.b, env)

    def _visit_Prod(self, n, env):
        factors = n.factors()
        occ = []
        for fac in factors:
            occ.extend(_usage(fac)[0])
        counts = Counter(occ)
        bound = [i for i in _ordered_unique(occ) if counts[i] == 2 and i not in env]

        def term(e):
            out = sympy.Integer(1)
            for fac in factors:
                out *= self._visit(fac, e)
            return out
        return self._summed(bound, env, term)

    def _visit_Quotient(self, n, env):
        return self._visit(n.a, env) / self._visit(n.b, env)

    def _visit_Power(self, n, env):
        return self._visit(n.a, env) ** self._visit(n.b, env)

    def _visit_Apply(self, n, env):
        return _SYMPY_FUNCS[n.func](self._visit(n.arg, env))

    # ------------------------------------------------------------------
    def components(self, expr) -> Dict[tuple, sympy.Expr]:
        """All components of ``expr`` keyed by the values of its free indices."""
        expr = as_expression(expr)
        free = list(_usage(expr)[0])
        out = {}
        for vals in itertools.product(range(self.dim), repeat=len(free)):
            out[vals] = self._visit(expr, dict(zip(free, vals)))
        return out

    def pairs(self, bl: Bilinear) -> List[Tuple[sympy.Expr, sympy.Expr]]:
        """Component pairs (a_c, b_c) of a Bilinear, one per contracted assignment."""
        fa, _ = _usage(bl.a)
        out = []
        for vals in itertools.product(range(self.dim), repeat=len(fa)):
            env = dict(zip(fa, vals))
            out.append((self._visit(bl.a, env), self._visit(bl.b, env)))
        return out


def expand(expr, dim: int, table: SymbolTable) -> Dict[tuple, sympy.Expr]:
    """Component-wise canonical scalars of an indicial expression."""
    return EinsteinExpander(dim, table).components(expr)


# ======================================================================
#  Weak forms
# ======================================================================
def _has_bilinear(node) -> bool:
    return node.find_first(lambda n: isinstance(n, Bilinear)) is not None


def _split_terms(expr) -> list:
    """Additive terms of a weak form, distributing scalings over inner sums."""
    if isinstance(expr, Sum):
        return _split_terms(expr.a) + _split_terms(expr.b)
    if isinstance(expr, Prod):
        factors = expr.factors()
        for k, fac in enumerate(factors):
            if isinstance(fac, Sum) and _has_bilinear(fac):
                others = factors[:k] + factors[k + 1:]
                out = []
                for t in _split_terms(fac):
                    term = t
                    for o in others:
                        term = Prod(o, term)
                    out.extend(_split_terms(term))
                return out
    if isinstance(expr, Quotient) and isinstance(expr.a, Sum) and _has_bilinear(expr.a):
        return [Quotient(t, expr.b) for t in _split_terms(expr.a)]
    return [expr]


def _extract_bilinear(term) -> Tuple[Expression, Bilinear]:
    """Return (scalar scale, Bilinear) for one additive term of a weak form."""
    if isinstance(term, Bilinear):
        return None, term
    if isinstance(term, Prod):
        bl = [f for f in term.factors() if isinstance(f, Bilinear)]
        rest = [f for f in term.factors() if not isinstance(f, Bilinear)]
        if len(bl) != 1:
            raise MalformedFormError("each weak-form term needs exactly one Bilinear factor")
        scale = None
        for f in rest:
            if f.find_first(lambda n: isinstance(n, Bilinear)) is not None:
                raise MalformedFormError("Bilinear nested inside a coefficient")
            scale = f if scale is None else Prod(scale, f)
        return scale, bl[0]
    if isinstance(term, Quotient):
        scale, bl = _extract_bilinear(term.a)
        if term.b.find_first(lambda n: isinstance(n, Bilinear)) is not None:
            raise MalformedFormError("Bilinear in a denominator")
        inv = Quotient(Constant(1), term.b)
        return (inv if scale is None else Prod(scale, inv)), bl
    if term.find_first(lambda n: isinstance(n, Bilinear)) is not None:
        raise MalformedFormError(f"Bilinear nested inside {type(term).__name__}")
    raise MalformedFormError("weak form terms must be (scaled) Bilinear pairings")


def bilinear_terms(expr, name: str = "form") -> List[Bilinear]:
    """Split a weak form into Bilinear pairings with the scaling folded into ``b``."""
    expr = as_expression(expr)
    try:
        free = free_indices(expr)
        if free:
            raise MalformedFormError("weak form has free indices", index=free[0].name)
        out = []
        for term in _split_terms(expr):
            scale, bl = _extract_bilinear(term)
            if scale is not None:
                sf, _ = _usage(scale)
                if sf:
                    raise MalformedFormError("Bilinear scaled by an indexed coefficient",
                                             index=sf[0].name)
                bl = Bilinear(bl.a, Prod(scale, bl.b))
            out.append(bl)
    except MalformedFormError as exc:
        raise exc.in_form(name) from None
    return out


def expand_weak_form(expr, dim: int, table: SymbolTable, name: str = "form"):
    """Expand a weak form into a flat list of scalar (a, b) sympy pairs."""
    expander = EinsteinExpander(dim, table)
    pairs = []
    for bl in bilinear_terms(expr, name):
        try:
            pairs.extend(expander.pairs(bl))
        except MalformedFormError as exc:
            raise exc.in_form(name) from None
    logger.debug("Expanded weak form '%s' into %d scalar pairs", name, len(pairs))
    return pairs
