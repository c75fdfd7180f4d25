from functools import lru_cache
import itertools

from .lagrange import lagrange_nodes
from .shapes import DIM, SIMPLEX


@lru_cache(maxsize=None)
def serendipity_nodes(shape: str, n: int):
    """Q_n lattice nodes that lie on cell edges (corners and edge nodes only)."""
    _check(shape, n)
    dim = DIM[shape]
    # an edge node has at least dim-1 coordinates on the cell boundary
    return [p for p in lagrange_nodes(shape, n)
            if sum(1 for x in p if abs(x) == 1) >= dim - 1]


@lru_cache(maxsize=None)
def serendipity_exponents(shape: str, n: int):
    """Monomials of superlinear degree <= n.

    The superlinear degree ignores every variable that enters linearly; for
    n = 2 this gives the 8-node quad and the 20-node hex.
    """
    _check(shape, n)
    dim = DIM[shape]
    out = []
    for e in itertools.product(range(n + 1), repeat=dim):
        if sum(k for k in e if k >= 2) <= n:
            out.append(e)
    return out


def _check(shape, n):
    if SIMPLEX[shape] or shape == "line":
        raise ValueError(f"Serendipity elements are defined on quad/hex cells, not '{shape}'")
    if n != 2:
        raise ValueError("Only second-order serendipity elements are available")
