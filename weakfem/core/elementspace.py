import logging
from typing import Dict, Tuple

import numpy as np

from weakfem.core.mesh import Mesh
from weakfem.fem.reference import FACETS, Ref, get_reference

logger = logging.getLogger(__name__)


class ElementSpace:
    """
    Interpolation/quadrature descriptor plus the control points it induces.

    Corner control points are the mesh vertices themselves (control point
    ``v`` is vertex ``v``), so unused vertices become unoccupied control
    points.  Higher-order nodes are shared through the topological entity
    they live on, keyed by the sorted global corner ids of that entity.
    Positions of higher-order nodes come from the element's linear corner
    map, so geometry is never curved.
    """

    def __init__(self, mesh: Mesh, family: str = "lagrange", order: int = 1,
                 quad_order: int | None = None):
        self.mesh = mesh
        self.family = family
        self.order = order
        self.ref: Ref = get_reference(mesh.shape, family, order)
        self.geometry_ref: Ref = get_reference(mesh.shape, "lagrange", 1)
        self.quad_order = 2 * order if quad_order is None else int(quad_order)
        self._build()

    def _build(self):
        mesh, ref = self.mesh, self.ref
        corner_map = self.geometry_ref.eval(ref.nodes)      # (nB, n_corners)
        keys: Dict[Tuple[int, ...], int] = {}
        extra_pos = []
        cps = np.empty((mesh.n_elements, ref.n_basis), dtype=np.int64)
        n_v = mesh.n_vertices
        for eid, conn in enumerate(mesh.connectivity):
            for a, entity in enumerate(ref.entities):
                if len(entity) == 1:
                    cps[eid, a] = conn[entity[0]]
                    continue
                key = tuple(sorted(int(conn[c]) for c in entity))
                cp = keys.get(key)
                if cp is None:
                    cp = n_v + len(extra_pos)
                    keys[key] = cp
                    extra_pos.append(corner_map[a] @ mesh.vertices[conn])
                cps[eid, a] = cp
        self.element_cps = cps
        if extra_pos:
            self.positions = np.vstack([mesh.vertices, np.asarray(extra_pos)])
        else:
            self.positions = mesh.vertices.copy()
        logger.debug("ElementSpace %s/%d on %s: %d control points (%d on vertices)",
                     self.family, self.order, mesh.shape, len(self.positions), n_v)

    @property
    def n_control_points(self) -> int:
        return len(self.positions)

    @property
    def n_basis(self) -> int:
        return self.ref.n_basis

    def facet_nodes(self, local_facet: int) -> np.ndarray:
        """Local node indices lying on one face of the reference element."""
        face = set(FACETS[self.mesh.shape][local_facet])
        return np.array([a for a, ent in enumerate(self.ref.entities) if set(ent) <= face],
                        dtype=np.int64)

    def facet_cps(self, element: int, local_facet: int) -> np.ndarray:
        return self.element_cps[element, self.facet_nodes(local_facet)]

    def element_positions(self, elements=None) -> np.ndarray:
        """Control-point positions per element, (nE, nB, dim)."""
        cps = self.element_cps if elements is None else self.element_cps[np.asarray(elements)]
        return self.positions[cps]

    def __repr__(self):
        return (f"ElementSpace({self.mesh.shape}, {self.family}, order={self.order}, "
                f"quad_order={self.quad_order}, n_cp={self.n_control_points})")
