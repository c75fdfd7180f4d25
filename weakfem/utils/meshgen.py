"""weakfem.utils.meshgen
Structured meshes and centroid-based facet selection for quick tests.
"""
from typing import Callable

import numpy as np

from weakfem.core.mesh import Mesh

__all__ = ["structured_interval", "structured_rectangle", "structured_brick", "select_facets"]


def structured_interval(length: float, nx: int, x0: float = 0.0) -> Mesh:
    x = np.linspace(x0, x0 + length, nx + 1)
    conn = np.column_stack([np.arange(nx), np.arange(1, nx + 1)])
    return Mesh(x[:, None], conn, "line")


def structured_rectangle(length: float, height: float, nx: int, ny: int,
                         shape: str = "quad", origin=(0.0, 0.0)) -> Mesh:
    """``nx * ny`` counter-clockwise quads (or twice as many triangles)."""
    x = np.linspace(origin[0], origin[0] + length, nx + 1)
    y = np.linspace(origin[1], origin[1] + height, ny + 1)
    X, Y = np.meshgrid(x, y)                    # row j holds y[j]
    pts = np.column_stack([X.ravel(), Y.ravel()])

    i, j = np.meshgrid(np.arange(nx), np.arange(ny))
    i, j = i.ravel(), j.ravel()
    n00 = j * (nx + 1) + i
    n10 = n00 + 1
    n11 = n10 + nx + 1
    n01 = n00 + nx + 1
    if shape == "quad":
        conn = np.column_stack([n00, n10, n11, n01])
    elif shape == "tri":
        conn = np.vstack([np.column_stack([n00, n10, n11]),
                          np.column_stack([n00, n11, n01])])
    else:
        raise ValueError(f"structured_rectangle supports 'quad' and 'tri', got '{shape}'")
    return Mesh(pts, conn, shape)


def structured_brick(lx: float, ly: float, lz: float, nx: int, ny: int, nz: int,
                     origin=(0.0, 0.0, 0.0)) -> Mesh:
    """``nx * ny * nz`` hexahedra with corners in VTK order."""
    x = np.linspace(origin[0], origin[0] + lx, nx + 1)
    y = np.linspace(origin[1], origin[1] + ly, ny + 1)
    z = np.linspace(origin[2], origin[2] + lz, nz + 1)
    Z, Y, X = np.meshgrid(z, y, x, indexing="ij")
    pts = np.column_stack([X.ravel(), Y.ravel(), Z.ravel()])

    def vid(i, j, k):
        return i + (nx + 1) * (j + (ny + 1) * k)

    k, j, i = np.meshgrid(np.arange(nz), np.arange(ny), np.arange(nx), indexing="ij")
    i, j, k = i.ravel(), j.ravel(), k.ravel()
    conn = np.column_stack([
        vid(i, j, k), vid(i + 1, j, k), vid(i + 1, j + 1, k), vid(i, j + 1, k),
        vid(i, j, k + 1), vid(i + 1, j, k + 1), vid(i + 1, j + 1, k + 1), vid(i, j + 1, k + 1),
    ])
    return Mesh(pts, conn, "hex")


def select_facets(mesh: Mesh, predicate: Callable[[np.ndarray], np.ndarray],
                  facet_ids=None) -> np.ndarray:
    """
    Facet ids whose centroid satisfies ``predicate``.

    ``predicate`` receives the ``(n, dim)`` centroid array and returns a
    boolean mask.  Only boundary facets are searched unless ``facet_ids`` is
    given.
    """
    ids = mesh.boundary_facets() if facet_ids is None else np.asarray(facet_ids, dtype=np.int64)
    if ids.size == 0:
        return ids
    mask = np.asarray(predicate(mesh.facet_centroids(ids)), dtype=bool)
    if mask.shape != ids.shape:
        raise ValueError(f"predicate returned shape {mask.shape}, expected {ids.shape}")
    return ids[mask]
