# weakfem.fem.reference
"""
Order-agnostic reference-element factory.

Bases are nodal: the sympy Vandermonde matrix of the family's monomial space
at its nodes is inverted exactly and the resulting polynomials are
lambdified once per (shape, family, order).
"""
from functools import lru_cache

import numpy as np
import sympy as sp

from .lagrange import lagrange_exponents, lagrange_nodes
from .serendipity import serendipity_exponents, serendipity_nodes
from .shapes import (CORNERS, DIM, FACET_SHAPE, FACETS, SIMPLEX, check_shape,
                     facet_tangents, facet_to_cell, supporting_corners)

FAMILIES = ("lagrange", "serendipity")
_VARS = sp.symbols("xi eta zeta")


class Ref:
    """Nodal reference element.

    ``nodes (nB, dim)`` are the reference node positions, ``entities[a]`` the
    local corners spanning the entity node ``a`` lives on.  Nodes are ordered
    corners first, then edges, faces and the interior.
    """

    def __init__(self, shape, family, order, nodes, entities, basis, variables):
        self.shape = shape
        self.family = family
        self.order = order
        self.dim = DIM[shape]
        self.nodes = np.asarray(nodes, dtype=float)
        self.entities = tuple(entities)
        self.basis = tuple(basis)
        self._phi = [sp.lambdify(variables, b, "numpy") for b in basis]
        self._dphi = [[sp.lambdify(variables, sp.diff(b, v), "numpy") for v in variables]
                      for b in basis]

    @property
    def n_basis(self) -> int:
        return len(self.basis)

    @staticmethod
    def _call(fn, points):
        return np.broadcast_to(np.asarray(fn(*points.T), dtype=float), (points.shape[0],))

    def eval(self, points) -> np.ndarray:
        """Shape-function values, (nP, nB)."""
        points = np.atleast_2d(np.asarray(points, dtype=float))
        return np.stack([self._call(f, points) for f in self._phi], axis=1)

    def grad(self, points) -> np.ndarray:
        """Reference gradients, (nP, nB, dim)."""
        points = np.atleast_2d(np.asarray(points, dtype=float))
        return np.stack([np.stack([self._call(f, points) for f in row], axis=1)
                         for row in self._dphi], axis=1)

    def __repr__(self):
        return f"Ref({self.shape}, {self.family}, order={self.order}, n_basis={self.n_basis})"


def _node_sort_key(item):
    entity, _ = item
    return (len(entity), entity)


@lru_cache(maxsize=None)
def get_reference(shape: str, family: str = "lagrange", order: int = 1) -> Ref:
    check_shape(shape)
    if family not in FAMILIES:
        raise KeyError(f"Unknown element family '{family}'; expected one of {FAMILIES}")
    if order < 1 or order > 2:
        raise ValueError(f"Element order {order} is not supported (1 or 2)")
    if family == "serendipity" and order == 1:
        family = "lagrange"

    if family == "lagrange":
        nodes, exps = lagrange_nodes(shape, order), lagrange_exponents(shape, order)
    else:
        nodes, exps = serendipity_nodes(shape, order), serendipity_exponents(shape, order)
    if len(nodes) != len(exps):
        raise RuntimeError(f"Internal error: {len(nodes)} nodes but {len(exps)} monomials "
                           f"for {family} {shape} order {order}")

    tagged = sorted(((supporting_corners(shape, np.array(p, dtype=float)), p) for p in nodes),
                    key=_node_sort_key)
    entities = [t[0] for t in tagged]
    if len(set(entities)) != len(entities):
        raise RuntimeError(f"{family} {shape} order {order} has several nodes per entity")
    nodes = [t[1] for t in tagged]

    variables = _VARS[:DIM[shape]]
    monomials = [sp.Mul(*[v ** k for v, k in zip(variables, e)]) for e in exps]
    V = sp.Matrix(len(nodes), len(monomials),
                  lambda i, j: monomials[j].subs(dict(zip(variables, nodes[i]))))
    C = V.inv(method="LU")
    basis = [sp.expand(sum(C[j, k] * monomials[j] for j in range(len(monomials))))
             for k in range(len(nodes))]
    return Ref(shape, family, order, [[float(x) for x in p] for p in nodes], entities, basis, variables)
