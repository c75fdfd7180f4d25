"""weakfem.fem.transform
Reference -> physical mapping and batched tabulation of shape functions.

Geometry is isoparametric: the element's control-point positions are
interpolated with the same basis as the fields.
"""
from dataclasses import dataclass

import numpy as np

from weakfem.errors import AssemblyError
from weakfem.fem.reference import Ref, facet_tangents, facet_to_cell


@dataclass
class Tabulation:
    """Per-entity quadrature data consumed by a :class:`~weakfem.jit.LocalKernel`.

    phi     (nE, nQ, nB)       shape-function values
    dphi    (nE, nQ, nB, dim)  physical gradients
    wdet    (nE, nQ)           quadrature weight x Jacobian (or surface) measure
    normals (nE, nQ, dim)      outward unit normals, facets only
    points  (nE, nQ, dim)      physical quadrature points
    """
    phi: np.ndarray
    dphi: np.ndarray
    wdet: np.ndarray
    normals: np.ndarray | None = None
    points: np.ndarray | None = None


def jacobians(X: np.ndarray, dN: np.ndarray) -> np.ndarray:
    """J[e, q, i, j] = d x_i / d xi_j for control points X (nE, nB, dim)."""
    return np.einsum("eai,qaj->eqij", X, dN)


def volume_tabulation(ref: Ref, X: np.ndarray, qpts: np.ndarray, qwts: np.ndarray,
                      element_ids=None) -> Tabulation:
    X = np.asarray(X, dtype=float)
    n_el, n_b, dim = X.shape
    if dim != ref.dim or n_b != ref.n_basis:
        raise ValueError(f"Control points of shape {X.shape} do not match {ref}")
    N = ref.eval(qpts)                 # (nQ, nB)
    dN = ref.grad(qpts)                # (nQ, nB, dim)
    J = jacobians(X, dN)
    det = np.linalg.det(J)             # (nE, nQ)
    bad = np.nonzero(np.any(det <= 0.0, axis=1))[0]
    if bad.size:
        eid = bad[0] if element_ids is None else np.asarray(element_ids)[bad[0]]
        raise AssemblyError(f"non-positive Jacobian determinant in element {int(eid)}",
                            entity=int(eid))
    invJ = np.linalg.inv(J)
    dphi = np.einsum("qaj,eqji->eqai", dN, invJ)
    phi = np.ascontiguousarray(np.broadcast_to(N, (n_el,) + N.shape))
    pts = np.einsum("qa,eai->eqi", N, X)
    return Tabulation(phi, dphi, det * qwts[None, :], None, pts)


def facet_tabulation(ref: Ref, X: np.ndarray, local_facets, fqpts: np.ndarray, fqwts: np.ndarray,
                     element_ids=None) -> Tabulation:
    """Tabulate the parent element's basis on its facets.

    ``X`` holds the owner elements' control points (nF, nB, dim) and
    ``local_facets[f]`` which face of the owner facet f is.  Normals point
    away from the owner's centroid.
    """
    X = np.asarray(X, dtype=float)
    local_facets = np.asarray(local_facets, dtype=int)
    n_f, n_b, dim = X.shape
    n_q = len(fqwts)
    phi = np.zeros((n_f, n_q, n_b))
    dphi = np.zeros((n_f, n_q, n_b, dim))
    wdet = np.zeros((n_f, n_q))
    normals = np.zeros((n_f, n_q, dim))
    points = np.zeros((n_f, n_q, dim))
    centroids = X.mean(axis=1)

    for lf in np.unique(local_facets):
        rows = np.nonzero(local_facets == lf)[0]
        cell_pts = facet_to_cell(ref.shape, int(lf), fqpts)
        N = ref.eval(cell_pts)
        dN = ref.grad(cell_pts)
        Xr = X[rows]
        J = jacobians(Xr, dN)
        det = np.linalg.det(J)
        bad = np.nonzero(np.any(det <= 0.0, axis=1))[0]
        if bad.size:
            eid = rows[bad[0]] if element_ids is None else np.asarray(element_ids)[rows[bad[0]]]
            raise AssemblyError(f"non-positive Jacobian determinant in element {int(eid)}",
                                entity=int(eid))
        invJ = np.linalg.inv(J)
        pts = np.einsum("qa,eai->eqi", N, Xr)

        T = facet_tangents(ref.shape, int(lf))           # (m, dim)
        t = np.einsum("eqij,mj->eqmi", J, T)             # physical tangents
        if T.shape[0] == 0:
            measure = np.ones(pts.shape[:2])
            nrm = np.ones(pts.shape)
        elif T.shape[0] == 1 and dim == 2:
            nrm = np.stack([t[..., 0, 1], -t[..., 0, 0]], axis=-1)
            measure = np.linalg.norm(nrm, axis=-1)
        elif T.shape[0] == 2 and dim == 3:
            nrm = np.cross(t[..., 0, :], t[..., 1, :])
            measure = np.linalg.norm(nrm, axis=-1)
        else:
            raise ValueError(f"Facets of '{ref.shape}' in {dim}-D are not supported")
        nrm = nrm / np.linalg.norm(nrm, axis=-1, keepdims=True)
        outward = np.einsum("eqi,eqi->eq", nrm, pts - centroids[rows][:, None, :])
        nrm = np.where((outward < 0.0)[..., None], -nrm, nrm)

        phi[rows] = N[None]
        dphi[rows] = np.einsum("qaj,eqji->eqai", dN, invJ)
        wdet[rows] = measure * fqwts[None, :]
        normals[rows] = nrm
        points[rows] = pts
    return Tabulation(phi, dphi, wdet, normals, points)
