"""weakfem.assembly.global_assembler
Scatter-accumulation of element and facet kernels into the global system.
"""
import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
import scipy.sparse as sp

from weakfem.errors import AssemblyError
from weakfem.fem.reference import FACET_SHAPE
from weakfem.fem.transform import Tabulation, facet_tabulation, volume_tabulation
from weakfem.integration import quadrature
from weakfem.jit.backends import LocalKernel

logger = logging.getLogger(__name__)


@dataclass
class AssemblyBlock:
    """Everything needed to evaluate one compiled form over a batch of entities."""
    body: str
    region: str | None
    kernel: LocalKernel
    entity_ids: np.ndarray      # element ids, or facet ids for boundary blocks
    cp_ids: np.ndarray          # (nE, nB) control points of the (owner) elements
    gdofs: np.ndarray           # (nE, nB*n_comp) global DOFs, node-major
    tab: Tabulation
    rows: np.ndarray            # COO row indices of the element tangents, flattened
    cols: np.ndarray

    @property
    def label(self) -> str:
        return self.body if self.region is None else f"{self.body}/{self.region}"


def _coo_indices(gdofs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    n_el, n_loc = gdofs.shape
    rows = np.repeat(gdofs, n_loc, axis=1).ravel()
    cols = np.tile(gdofs, (1, n_loc)).ravel()
    return rows, cols


class GlobalAssembler:
    """
    Assemble the global residual and tangent of a compiled :class:`FEMDomain`.

    One :class:`AssemblyBlock` is built per work-piece domain form and per
    boundary region.  Shared control points receive the sum of every
    contribution: ``np.add.at`` for the residual and COO -> CSR duplicate
    summation for the tangent.
    """

    def __init__(self, domain):
        self.domain = domain
        if domain.dofs is None:
            raise RuntimeError("Domain must be discretized before assembly")
        self.blocks: List[AssemblyBlock] = []
        self._build_blocks()

    # ------------------------------------------------------------------
    def _check_dofs(self, gdofs, entity_ids, body, region, cp_ids):
        bad = np.nonzero(np.any(gdofs < 0, axis=1))[0]
        if bad.size:
            kind = "element" if region is None else "facet"
            ent = int(entity_ids[bad[0]])
            cps = cp_ids[bad[0]][np.any(gdofs[bad[0]].reshape(cp_ids.shape[1], -1) < 0, axis=1)]
            raise AssemblyError(
                f"{kind} {ent} of '{body}{'' if region is None else '/' + region}' references "
                f"control point(s) {cps.tolist()} without DOFs",
                body=body, region=region, entity=ent)

    def _build_blocks(self):
        dom = self.domain
        space, mesh, dofs = dom.space, dom.mesh, dom.dofs
        qpts, qwts = quadrature.volume(mesh.shape, space.quad_order)
        fqpts, fqwts = quadrature.volume(FACET_SHAPE[mesh.shape], space.quad_order)

        for wp in dom.workpieces:
            if wp.kernel is None:
                raise RuntimeError(f"Work-piece '{wp.name}' has not been compiled")
            cp_ids = space.element_cps[wp.elements]
            gdofs = dofs.element_dofs(cp_ids)
            self._check_dofs(gdofs, wp.elements, wp.name, None, cp_ids)
            tab = volume_tabulation(space.ref, space.positions[cp_ids], qpts, qwts, wp.elements)
            rows, cols = _coo_indices(gdofs)
            self.blocks.append(AssemblyBlock(wp.name, None, wp.kernel, wp.elements.copy(),
                                             cp_ids, gdofs, tab, rows, cols))

            elem_set = set(wp.elements.tolist())
            for reg in wp.regions.values():
                if reg.form is None:
                    continue
                if reg.kernel is None:
                    raise RuntimeError(f"Region '{wp.name}/{reg.name}' has not been compiled")
                owners, local = [], []
                for fid in reg.facet_ids:
                    if fid < 0 or fid >= len(mesh.facets):
                        raise AssemblyError(f"facet {int(fid)} does not exist",
                                            body=wp.name, region=reg.name, entity=int(fid))
                    own = [(e, lf) for e, lf in mesh.facets[fid].owners if e in elem_set]
                    if not own:
                        raise AssemblyError(
                            f"facet {int(fid)} of region '{wp.name}/{reg.name}' has no owner "
                            f"element in the work-piece",
                            body=wp.name, region=reg.name, entity=int(fid))
                    owners.append(own[0][0])
                    local.append(own[0][1])
                owners = np.asarray(owners, dtype=np.int64)
                cp_ids = space.element_cps[owners]
                gdofs = dofs.element_dofs(cp_ids)
                self._check_dofs(gdofs, reg.facet_ids, wp.name, reg.name, cp_ids)
                tab = facet_tabulation(space.ref, space.positions[cp_ids], local,
                                       fqpts, fqwts, owners)
                rows, cols = _coo_indices(gdofs)
                self.blocks.append(AssemblyBlock(wp.name, reg.name, reg.kernel,
                                                 reg.facet_ids.copy(), cp_ids, gdofs, tab, rows, cols))
        logger.debug("Built %d assembly blocks: %s", len(self.blocks),
                     [(b.label, len(b.entity_ids)) for b in self.blocks])

    # ------------------------------------------------------------------
    def assemble(self, x: np.ndarray, x_t: np.ndarray, w_t: float = 0.0,
                 need_matrix: bool = True):
        """Return ``(R, K)`` at state ``(x, x_t)``; ``K`` is None when not requested."""
        dom = self.domain
        n = dom.dofs.n_dofs
        n_comp = dom.dofs.n_comp
        R = np.zeros(n)
        rows, cols, data = [], [], []
        params = dom.parameters
        for blk in self.blocks:
            n_el = len(blk.entity_ids)
            if n_el == 0:
                continue
            n_b = blk.cp_ids.shape[1]
            x_loc = x[blk.gdofs].reshape(n_el, n_b, n_comp)
            xt_loc = x_t[blk.gdofs].reshape(n_el, n_b, n_comp)
            ext_loc = dom.cps.external[blk.cp_ids]
            F_e, K_e = blk.kernel(blk.tab, x_loc, xt_loc, ext_loc, params, w_t)
            np.add.at(R, blk.gdofs.ravel(), F_e.ravel())
            if need_matrix:
                rows.append(blk.rows)
                cols.append(blk.cols)
                data.append(K_e.ravel())
        K = None
        if need_matrix:
            if data:
                K = sp.coo_matrix((np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                                  shape=(n, n)).tocsr()
            else:
                K = sp.csr_matrix((n, n))
            K.sum_duplicates()
        return R, K
