"""weakfem.core.dofhandler
Global degree-of-freedom numbering over the control-point arena.
"""
import logging
from typing import Tuple

import numpy as np

from weakfem.core.controlpoints import ControlPoints
from weakfem.symbolic.symbols import FieldLayout

logger = logging.getLogger(__name__)


class DofHandler:
    """
    Number the DOFs of every occupied control point.

    Control points are visited in index order and each occupied one gets
    ``layout.n_components`` consecutive DOFs: internal fields sorted by
    name, then their components row-major.  Unoccupied control points keep
    ``-1`` in :attr:`dof_map`.  The numbering is frozen once distributed.
    """

    def __init__(self, layout: FieldLayout):
        self.layout = layout
        self.dof_map: np.ndarray | None = None
        self.n_dofs = 0

    @property
    def n_comp(self) -> int:
        return self.layout.n_components

    def distribute(self, occupied: np.ndarray) -> np.ndarray:
        if self.dof_map is not None:
            raise RuntimeError("DOFs are already distributed; renumbering is not allowed")
        occupied = np.asarray(occupied, dtype=bool)
        n_cp, nc = len(occupied), self.n_comp
        dof_map = np.full((n_cp, nc), -1, dtype=np.int64)
        occ = np.nonzero(occupied)[0]
        dof_map[occ] = np.arange(len(occ) * nc, dtype=np.int64).reshape(len(occ), nc)
        self.dof_map = dof_map
        self.n_dofs = len(occ) * nc
        logger.info("Distributed %d DOFs over %d occupied control points (%d unoccupied)",
                    self.n_dofs, len(occ), n_cp - len(occ))
        return dof_map

    def _require(self):
        if self.dof_map is None:
            raise RuntimeError("DofHandler.distribute() has not been called")

    def element_dofs(self, cp_ids: np.ndarray) -> np.ndarray:
        """Global DOFs in node-major local order ``a * n_comp + c``, (nE, nB*n_comp)."""
        self._require()
        cp_ids = np.asarray(cp_ids, dtype=np.int64)
        return self.dof_map[cp_ids].reshape(cp_ids.shape[0], -1)

    def field_dofs(self, name: str, component: int | None = None) -> np.ndarray:
        """Global DOFs of one internal field (optionally one flat component)."""
        self._require()
        cols = self.dof_map[:, self.layout.slice(name)]
        if component is not None:
            cols = cols[:, component]
        return cols[cols >= 0].ravel()

    def gather(self, cps: ControlPoints) -> Tuple[np.ndarray, np.ndarray]:
        """Control-point storage -> global (x, x_t)."""
        self._require()
        mask = self.dof_map >= 0
        x = np.zeros(self.n_dofs)
        xt = np.zeros(self.n_dofs)
        x[self.dof_map[mask]] = cps.values[mask]
        xt[self.dof_map[mask]] = cps.rates[mask]
        return x, xt

    def scatter(self, x: np.ndarray, x_t: np.ndarray, cps: ControlPoints) -> None:
        """Global (x, x_t) -> control-point storage."""
        self._require()
        mask = self.dof_map >= 0
        cps.values[mask] = x[self.dof_map[mask]]
        cps.rates[mask] = x_t[self.dof_map[mask]]
