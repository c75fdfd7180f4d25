import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np

from weakfem.fem.reference.shapes import CORNERS, DIM, FACETS, check_shape

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Facet:
    """A (d-1)-dimensional face shared by up to two elements."""
    id: int
    corners: Tuple[int, ...]                 # global vertex ids in owner orientation
    owners: Tuple[Tuple[int, int], ...]      # (element id, local facet index)

    @property
    def is_boundary(self) -> bool:
        return len(self.owners) == 1


class Mesh:
    """
    Vertices, corner connectivity and the facet table of a single-shape mesh.

    Facets are identified by the sorted tuple of their global corner ids, so
    two elements share a facet exactly when they share all of its corners.
    A facet with one owner lies on the mesh boundary.
    """

    def __init__(self, vertices: np.ndarray, connectivity: np.ndarray, shape: str):
        self.shape = check_shape(shape)
        self.vertices = np.asarray(vertices, dtype=float)
        if self.vertices.ndim == 1:
            self.vertices = self.vertices[:, None]
        self.connectivity = np.asarray(connectivity, dtype=np.int64)
        self.dim = DIM[shape]
        n_c = len(CORNERS[shape])
        if self.connectivity.ndim != 2 or self.connectivity.shape[1] != n_c:
            raise ValueError(f"'{shape}' connectivity must have shape (n_elements, {n_c}), "
                             f"got {self.connectivity.shape}")
        if self.vertices.shape[1] != self.dim:
            raise ValueError(f"'{shape}' mesh needs {self.dim}-D vertices, got {self.vertices.shape[1]}-D")
        if self.connectivity.size and (self.connectivity.min() < 0
                                       or self.connectivity.max() >= len(self.vertices)):
            raise ValueError("connectivity references a vertex that does not exist")
        self.facets: List[Facet] = []
        self._facet_by_key: Dict[Tuple[int, ...], int] = {}
        self._build_facets()
        logger.debug("Mesh: %d vertices, %d %s elements, %d facets (%d on the boundary)",
                     self.n_vertices, self.n_elements, shape, len(self.facets),
                     len(self.boundary_facets()))

    def _build_facets(self):
        owners: Dict[Tuple[int, ...], list] = {}
        corners: Dict[Tuple[int, ...], Tuple[int, ...]] = {}
        for eid, conn in enumerate(self.connectivity):
            for lf, local in enumerate(FACETS[self.shape]):
                verts = tuple(int(conn[c]) for c in local)
                key = tuple(sorted(verts))
                owners.setdefault(key, []).append((eid, lf))
                corners.setdefault(key, verts)
        for key, own in owners.items():
            if len(own) > 2:
                raise ValueError(f"non-manifold mesh: facet {key} is shared by {len(own)} elements")
            fid = len(self.facets)
            self.facets.append(Facet(fid, corners[key], tuple(own)))
            self._facet_by_key[key] = fid

    # ------------------------------------------------------------------
    @property
    def n_vertices(self) -> int:
        return len(self.vertices)

    @property
    def n_elements(self) -> int:
        return len(self.connectivity)

    def facet_id(self, corner_ids) -> int:
        return self._facet_by_key[tuple(sorted(int(c) for c in corner_ids))]

    def boundary_facets(self) -> np.ndarray:
        return np.array([f.id for f in self.facets if f.is_boundary], dtype=np.int64)

    def facet_centroids(self, facet_ids=None) -> np.ndarray:
        ids = range(len(self.facets)) if facet_ids is None else facet_ids
        return np.array([self.vertices[list(self.facets[f].corners)].mean(axis=0) for f in ids])

    def element_centroids(self) -> np.ndarray:
        return self.vertices[self.connectivity].mean(axis=1)

    def __repr__(self):
        return f"Mesh({self.shape}, n_vertices={self.n_vertices}, n_elements={self.n_elements})"
