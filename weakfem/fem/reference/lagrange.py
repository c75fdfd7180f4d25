from functools import lru_cache
import itertools

import sympy as sp

from .shapes import DIM, SIMPLEX


@lru_cache(maxsize=None)
def lagrange_nodes(shape: str, n: int):
    """Equispaced P_n / Q_n nodes as exact sympy Rationals (unordered lattice)."""
    if n < 1:
        raise ValueError("Polynomial order n must be >= 1.")
    dim = DIM[shape]
    if SIMPLEX[shape]:
        nodes = []
        for idx in itertools.product(range(n + 1), repeat=dim):
            if sum(idx) <= n:
                nodes.append(tuple(sp.Rational(i, n) for i in idx))
        return nodes
    ticks = [sp.Rational(2 * i, n) - 1 for i in range(n + 1)]
    return [tuple(p) for p in itertools.product(ticks, repeat=dim)]


@lru_cache(maxsize=None)
def lagrange_exponents(shape: str, n: int):
    """Monomial exponents spanning P_n (simplices) or Q_n (tensor cells)."""
    dim = DIM[shape]
    if SIMPLEX[shape]:
        return [e for e in itertools.product(range(n + 1), repeat=dim) if sum(e) <= n]
    return list(itertools.product(range(n + 1), repeat=dim))
