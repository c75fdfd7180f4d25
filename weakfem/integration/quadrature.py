"""weakfem.integration.quadrature
Quadrature rules on the reference cells, exact up to a requested total degree.

Tensor cells use Gauss-Legendre products; triangles and tetrahedra use the
collapsed (Duffy) map of a Gauss rule on the unit square/cube.
"""
# weakfem.integration.quadrature
from functools import lru_cache
import math

import numpy as np
from numpy.polynomial.legendre import leggauss


# -------------------------------------------------------------------------
# 1-D Gauss-Legendre
# -------------------------------------------------------------------------
def gauss_legendre(n_points: int):
    if n_points < 1:
        raise ValueError(n_points)
    return leggauss(n_points)  # (points, weights)


def _gl01(n_points: int):
    """Gauss-Legendre nodes and weights mapped to [0,1]."""
    xi, w = gauss_legendre(int(n_points))
    return 0.5 * (xi + 1.0), 0.5 * w


def _n_points(degree: int, extra: int = 0) -> int:
    """Points per axis for exactness up to ``degree + extra``."""
    return max(1, math.ceil((degree + extra + 1) / 2))


# -------------------------------------------------------------------------
# Tensor-product rules on [-1, 1]^d
# -------------------------------------------------------------------------
@lru_cache(maxsize=None)
def line_rule(degree: int):
    xi, wi = gauss_legendre(_n_points(degree))
    return xi[:, None], wi


@lru_cache(maxsize=None)
def quad_rule(degree: int):
    xi, wi = gauss_legendre(_n_points(degree))
    pts = np.array([[x, y] for x in xi for y in xi])
    wts = np.array([wx * wy for wx in wi for wy in wi])
    return pts, wts


@lru_cache(maxsize=None)
def hex_rule(degree: int):
    xi, wi = gauss_legendre(_n_points(degree))
    pts = np.array([[x, y, z] for x in xi for y in xi for z in xi])
    wts = np.array([wx * wy * wz for wx in wi for wy in wi for wz in wi])
    return pts, wts


# -------------------------------------------------------------------------
# Collapsed rules on the unit simplex
# -------------------------------------------------------------------------
@lru_cache(maxsize=None)
def tri_rule(degree: int):
    """Square -> triangle map (r, s) = (u, v(1-u)), Jacobian (1-u)."""
    u, w_u = _gl01(_n_points(degree, 1))
    pts, wts = [], []
    for i, ui in enumerate(u):
        for j, vj in enumerate(u):
            pts.append([ui, vj * (1.0 - ui)])
            wts.append(w_u[i] * w_u[j] * (1.0 - ui))
    return np.array(pts), np.array(wts)


@lru_cache(maxsize=None)
def tet_rule(degree: int):
    """Cube -> tet map (u, v(1-u), w(1-u)(1-v)), Jacobian (1-u)^2 (1-v)."""
    u, w_u = _gl01(_n_points(degree, 2))
    pts, wts = [], []
    for i, ui in enumerate(u):
        for j, vj in enumerate(u):
            for k, wk in enumerate(u):
                pts.append([ui, vj * (1.0 - ui), wk * (1.0 - ui) * (1.0 - vj)])
                wts.append(w_u[i] * w_u[j] * w_u[k] * (1.0 - ui) ** 2 * (1.0 - vj))
    return np.array(pts), np.array(wts)


# -------------------------------------------------------------------------
# Public API
# -------------------------------------------------------------------------
_RULES = {"line": line_rule, "quad": quad_rule, "hex": hex_rule, "tri": tri_rule, "tet": tet_rule}


def volume(element_type: str, degree: int = 2):
    """(points (nQ, dim), weights (nQ,)) on the reference cell of ``element_type``."""
    if element_type == "point":
        return np.zeros((1, 0)), np.ones(1)
    try:
        rule = _RULES[element_type]
    except KeyError:
        raise KeyError(element_type) from None
    return rule(int(degree))
