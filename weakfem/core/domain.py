"""weakfem.core.domain
The explicit problem context: mesh, work-pieces, discretization, compiled
kernels, parameters and global field vectors, passed to the assembler and
the driver instead of any module-level state.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping

import numpy as np
import scipy.sparse as sp

from weakfem.core.controlpoints import ControlPoints
from weakfem.core.dofhandler import DofHandler
from weakfem.core.elementspace import ElementSpace
from weakfem.core.mesh import Mesh
from weakfem.core.snapshot import Snapshot
from weakfem.jit import compile_weak_form
from weakfem.jit.backends import LocalKernel
from weakfem.symbolic.expressions import Expression
from weakfem.symbolic.parser import parse_expression
from weakfem.symbolic.symbols import FieldLayout

logger = logging.getLogger(__name__)


def _as_form(form, namespace):
    if isinstance(form, str):
        return parse_expression(form, namespace or {})
    if not isinstance(form, Expression):
        raise TypeError(f"A weak form must be an Expression or a string, got {type(form).__name__}")
    return form


@dataclass
class BoundaryRegion:
    name: str
    facet_ids: np.ndarray
    form: Expression | None = None
    kernel: LocalKernel | None = None


class WorkPiece:
    """A mesh partition with its own domain form and boundary regions."""

    def __init__(self, domain: "FEMDomain", name: str, elements: np.ndarray):
        self.domain = domain
        self.name = name
        self.elements = np.asarray(elements, dtype=np.int64)
        self.form: Expression | None = None
        self.kernel: LocalKernel | None = None
        self.regions: Dict[str, BoundaryRegion] = {}

    def add_boundary(self, name: str, facet_ids) -> BoundaryRegion:
        if name in self.regions:
            raise ValueError(f"Work-piece '{self.name}' already has a region '{name}'")
        ids = np.asarray(facet_ids, dtype=np.int64).ravel()
        region = BoundaryRegion(name, ids)
        self.regions[name] = region
        return region

    def assign_weak_form(self, form, namespace: Mapping | None = None) -> None:
        self.form = _as_form(form, namespace)
        self.kernel = None

    def assign_boundary_weak_form(self, region: str, form, namespace: Mapping | None = None) -> None:
        try:
            reg = self.regions[region]
        except KeyError:
            raise KeyError(f"Work-piece '{self.name}' has no boundary region '{region}'") from None
        reg.form = _as_form(form, namespace)
        reg.kernel = None

    def forms(self):
        """(name, form, is_boundary, holder) for every assigned form."""
        if self.form is not None:
            yield self.name, self.form, False, self
        for reg in self.regions.values():
            if reg.form is not None:
                yield f"{self.name}/{reg.name}", reg.form, True, reg

    def __repr__(self):
        return f"WorkPiece({self.name!r}, n_elements={len(self.elements)}, regions={list(self.regions)})"


@dataclass
class GlobalField:
    """Global unknown vector, its rate and the last assembled system."""
    x: np.ndarray
    x_t: np.ndarray
    x_prev: np.ndarray
    x_t_prev: np.ndarray
    residual: np.ndarray
    tangent: sp.csr_matrix | None = None
    dt: float = 1.0
    t: float = 0.0

    @classmethod
    def zeros(cls, n: int) -> "GlobalField":
        return cls(np.zeros(n), np.zeros(n), np.zeros(n), np.zeros(n), np.zeros(n))

    def commit(self) -> None:
        self.x_prev = self.x.copy()
        self.x_t_prev = self.x_t.copy()

    def rollback(self) -> None:
        self.x = self.x_prev.copy()
        self.x_t = self.x_t_prev.copy()


class FEMDomain:
    """
    Problem context owning every piece of solver state.

    Typical life cycle::

        domain = FEMDomain(mesh)
        wp = domain.add_workpiece("body")
        wp.assign_weak_form(form)
        domain.discretize("serendipity", 2, quad_order=5)
        domain.compile()
    """

    def __init__(self, mesh: Mesh):
        self.mesh = mesh
        self.workpieces: List[WorkPiece] = []
        self.parameters: Dict[str, float] = {}
        self.space: ElementSpace | None = None
        self.cps: ControlPoints | None = None
        self.dofs: DofHandler | None = None
        self.field: GlobalField | None = None
        self.internal: FieldLayout | None = None
        self.external: FieldLayout | None = None
        self.backend = "sequential"

    @property
    def dim(self) -> int:
        return self.mesh.dim

    def add_workpiece(self, name: str | None = None, elements=None) -> WorkPiece:
        if self.space is not None:
            raise RuntimeError("Cannot add work-pieces after discretize()")
        name = name or f"workpiece{len(self.workpieces)}"
        if any(wp.name == name for wp in self.workpieces):
            raise ValueError(f"Duplicate work-piece name '{name}'")
        if elements is None:
            elements = np.arange(self.mesh.n_elements)
        wp = WorkPiece(self, name, elements)
        self.workpieces.append(wp)
        return wp

    # ------------------------------------------------------------------
    def _collect_fields(self):
        fields = {}
        for wp in self.workpieces:
            for _, form, _, _ in wp.forms():
                for f in form.fields():
                    old = fields.get(f.name)
                    if old is not None and old != f:
                        raise ValueError(f"Field '{f.name}' is declared twice with different "
                                         f"rank/kind ({old} vs {f})")
                    fields[f.name] = f
        internal = [f for f in fields.values() if not f.external]
        external = [f for f in fields.values() if f.external]
        if not internal:
            raise ValueError("No internal (solved-for) field appears in any weak form")
        return FieldLayout(internal, self.dim), FieldLayout(external, self.dim)

    def discretize(self, family: str = "lagrange", order: int = 1, quad_order: int | None = None):
        """Build the element space, control points and DOF numbering."""
        if self.space is not None:
            raise RuntimeError("Domain is already discretized")
        if not self.workpieces:
            raise ValueError("Add at least one work-piece before discretize()")
        self.internal, self.external = self._collect_fields()
        self.space = ElementSpace(self.mesh, family, order, quad_order)
        self.cps = ControlPoints(self.space.positions, self.internal, self.external)
        for wp in self.workpieces:
            self.cps.is_occupied[self.space.element_cps[wp.elements].ravel()] = True
        self.dofs = DofHandler(self.internal)
        self.dofs.distribute(self.cps.is_occupied)
        self.field = GlobalField.zeros(self.dofs.n_dofs)
        logger.info("Discretized %s with %s order %d: internal %s, external %s",
                    self.mesh, family, order, self.internal.names, self.external.names)
        return self

    def compile(self, backend: str = "sequential"):
        """Compile every assigned form for ``backend`` ("sequential" or "parallel")."""
        if self.space is None:
            raise RuntimeError("discretize() must be called before compile()")
        self.backend = backend
        for wp in self.workpieces:
            if wp.form is None:
                raise ValueError(f"Work-piece '{wp.name}' has no domain weak form")
            for name, form, boundary, holder in wp.forms():
                holder.kernel = compile_weak_form(form, self.dim, self.internal, self.external,
                                                  name=name, boundary=boundary, backend=backend)
        return self

    # ------------------------------------------------------------------
    def set_external(self, name: str, value, cp_ids=None) -> None:
        self.cps.set_external(name, value, cp_ids)

    def region_control_points(self, workpiece: WorkPiece, region: str) -> np.ndarray:
        """Control points lying on the facets of a boundary region."""
        out = set()
        elem_set = set(workpiece.elements.tolist())
        for fid in workpiece.regions[region].facet_ids:
            for eid, lf in self.mesh.facets[fid].owners:
                if eid in elem_set:
                    out.update(self.space.facet_cps(eid, lf).tolist())
        return np.array(sorted(out), dtype=np.int64)

    def gather(self) -> None:
        """Control-point storage -> global field vectors."""
        self.field.x, self.field.x_t = self.dofs.gather(self.cps)

    def dessemble(self) -> None:
        """Global field vectors -> control-point storage."""
        self.dofs.scatter(self.field.x, self.field.x_t, self.cps)

    def snapshot(self, step: int) -> Snapshot:
        self.dessemble()
        cps = self.cps
        return Snapshot(
            step=step,
            t=self.field.t,
            positions=cps.positions.copy(),
            values={n: cps.value(n).copy() for n in self.internal.names},
            rates={n: cps.rate(n).copy() for n in self.internal.names},
            external={n: cps.external_value(n).copy() for n in self.external.names},
            occupied=cps.is_occupied.copy(),
        )
