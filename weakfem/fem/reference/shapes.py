# weakfem.fem.reference.shapes
"""
Reference-cell geometry: corners, edges and faces of every supported shape.

Tensor cells live on [-1, 1]^d, simplices on the unit simplex.  Hex corner
numbering follows VTK.  Facet corner tuples are only used for topology; the
outward orientation of a facet normal is fixed later from the cell centroid.
"""
import numpy as np

DIM = {"line": 1, "tri": 2, "quad": 2, "tet": 3, "hex": 3}

SIMPLEX = {"line": False, "tri": True, "quad": False, "tet": True, "hex": False}

CORNERS = {
    "line": np.array([[-1.0], [1.0]]),
    "tri": np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]),
    "quad": np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]]),
    "tet": np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]),
    "hex": np.array([[-1.0, -1.0, -1.0], [1.0, -1.0, -1.0], [1.0, 1.0, -1.0], [-1.0, 1.0, -1.0],
                     [-1.0, -1.0, 1.0], [1.0, -1.0, 1.0], [1.0, 1.0, 1.0], [-1.0, 1.0, 1.0]]),
}

FACETS = {
    "line": ((0,), (1,)),
    "tri": ((0, 1), (1, 2), (2, 0)),
    "quad": ((0, 1), (1, 2), (2, 3), (3, 0)),
    "tet": ((0, 2, 1), (0, 1, 3), (1, 2, 3), (0, 3, 2)),
    "hex": ((0, 3, 2, 1), (4, 5, 6, 7), (0, 1, 5, 4), (1, 2, 6, 5), (2, 3, 7, 6), (3, 0, 4, 7)),
}

FACET_SHAPE = {"line": "point", "tri": "line", "quad": "line", "tet": "tri", "hex": "quad"}


def n_corners(shape: str) -> int:
    return len(CORNERS[shape])


def check_shape(shape: str) -> str:
    if shape not in DIM:
        raise KeyError(f"Unknown element shape '{shape}'; expected one of {sorted(DIM)}")
    return shape


def barycentric(shape: str, points: np.ndarray) -> np.ndarray:
    """Barycentric coordinates of points inside a simplex cell, (nP, n_corners)."""
    points = np.atleast_2d(points)
    lam0 = 1.0 - points.sum(axis=1, keepdims=True)
    return np.hstack([lam0, points])


def supporting_corners(shape: str, point, tol: float = 1e-12) -> tuple:
    """Local corners spanning the smallest closed entity that contains ``point``.

    A point on a corner returns that corner, a point inside an edge the two
    edge corners, and so on up to all corners for interior points.
    """
    point = np.asarray(point, dtype=float)
    if SIMPLEX[shape]:
        lam = barycentric(shape, point[None, :])[0]
        return tuple(int(c) for c in np.nonzero(lam > tol)[0])
    on_boundary = np.abs(np.abs(point) - 1.0) < tol
    out = []
    for c, corner in enumerate(CORNERS[shape]):
        if np.all(np.abs(corner[on_boundary] - point[on_boundary]) < tol):
            out.append(c)
    return tuple(out)


def facet_to_cell(shape: str, local_facet: int, facet_points: np.ndarray) -> np.ndarray:
    """Map points of the facet reference cell into the parent reference cell.

    Facet reference cells are [-1, 1] (line), [-1, 1]^2 (quad) and the unit
    triangle (tri); the facet corners are interpolated with the linear (or
    bilinear) corner map of that facet cell.
    """
    fshape = FACET_SHAPE[shape]
    corners = CORNERS[shape][list(FACETS[shape][local_facet])]
    facet_points = np.atleast_2d(facet_points)
    if fshape == "point":
        return np.repeat(corners[:1], len(facet_points), axis=0)
    if fshape == "line":
        s = facet_points[:, 0]
        return 0.5 * (1.0 - s)[:, None] * corners[0] + 0.5 * (1.0 + s)[:, None] * corners[1]
    if fshape == "tri":
        lam = barycentric("tri", facet_points)
        return lam @ corners
    # quad facet of a hex: bilinear map with corners in quad order
    s, t = facet_points[:, 0], facet_points[:, 1]
    w = np.stack([(1 - s) * (1 - t), (1 + s) * (1 - t), (1 + s) * (1 + t), (1 - s) * (1 + t)], axis=1) / 4.0
    return w @ corners


def facet_tangents(shape: str, local_facet: int) -> np.ndarray:
    """Constant reference tangents d(cell point)/d(facet coord), (dim-1, dim).

    Only valid for affine facets (all but the hex quad-facet, which is still
    affine in the reference cell).
    """
    fshape = FACET_SHAPE[shape]
    corners = CORNERS[shape][list(FACETS[shape][local_facet])]
    if fshape == "point":
        return np.zeros((0, DIM[shape]))
    if fshape == "line":
        return 0.5 * (corners[1] - corners[0])[None, :]
    if fshape == "tri":
        return np.stack([corners[1] - corners[0], corners[2] - corners[0]])
    return 0.5 * np.stack([corners[1] - corners[0], corners[3] - corners[0]])
