import numpy as np
import pytest

from weakfem.core import ControlPoints, DofHandler, ElementSpace, FEMDomain, Mesh
from weakfem.symbolic import Bilinear, FieldLayout, FieldVariable, indices
from weakfem.utils.meshgen import (
    select_facets, structured_brick, structured_interval, structured_rectangle,
)

i, = indices("i")


# ---------------------------------------------------------------------------
#  Mesh topology
# ---------------------------------------------------------------------------
class TestMesh:
    def test_quad_facets(self):
        mesh = structured_rectangle(2.0, 1.0, 2, 1)
        assert mesh.n_elements == 2 and mesh.n_vertices == 6
        assert len(mesh.facets) == 7
        assert len(mesh.boundary_facets()) == 6
        shared = [f for f in mesh.facets if not f.is_boundary]
        assert len(shared) == 1 and {e for e, _ in shared[0].owners} == {0, 1}

    def test_brick_counts(self):
        mesh = structured_brick(3.0, 1.0, 1.0, 3, 1, 1)
        assert mesh.n_elements == 3 and mesh.n_vertices == 16
        assert len(mesh.boundary_facets()) == 14
        np.testing.assert_allclose(mesh.element_centroids()[:, 0], [0.5, 1.5, 2.5])

    def test_facet_id_is_orientation_free(self):
        mesh = structured_rectangle(1.0, 1.0, 1, 1)
        assert mesh.facet_id([1, 0]) == mesh.facet_id([0, 1])

    def test_select_facets_by_centroid(self):
        mesh = structured_brick(2.0, 1.0, 1.0, 2, 2, 2)
        left = select_facets(mesh, lambda c: np.isclose(c[:, 0], 0.0))
        assert len(left) == 4
        np.testing.assert_allclose(mesh.facet_centroids(left)[:, 0], 0.0)

    def test_bad_connectivity(self):
        with pytest.raises(ValueError):
            Mesh(np.zeros((3, 2)), np.array([[0, 1, 5]]), "tri")
        with pytest.raises(ValueError):
            Mesh(np.zeros((4, 2)), np.array([[0, 1, 2, 3]]), "tri")
        with pytest.raises(KeyError):
            Mesh(np.zeros((4, 2)), np.array([[0, 1, 2, 3]]), "pentagon")

    def test_non_manifold_mesh_rejected(self):
        verts = np.array([[0, 0], [1, 0], [0, 1], [0, -1], [1, 1]], dtype=float)
        conn = np.array([[0, 1, 2], [0, 3, 1], [1, 0, 4]])
        with pytest.raises(ValueError):
            Mesh(verts, conn, "tri")


# ---------------------------------------------------------------------------
#  Element space / control points
# ---------------------------------------------------------------------------
class TestElementSpace:
    def test_q2_shares_edge_and_face_nodes(self):
        mesh = structured_rectangle(2.0, 1.0, 2, 1)
        space = ElementSpace(mesh, "lagrange", 2)
        # 6 vertices + 7 edges + 2 cell centres
        assert space.n_control_points == 15
        shared = set(space.element_cps[0]) & set(space.element_cps[1])
        assert len(shared) == 3

    def test_serendipity_brick(self):
        mesh = structured_brick(2.0, 1.0, 1.0, 2, 1, 1)
        space = ElementSpace(mesh, "serendipity", 2, quad_order=5)
        # 12 vertices + 20 edges
        assert space.n_control_points == 32
        assert space.n_basis == 20 and space.quad_order == 5

    def test_higher_order_positions_are_on_entities(self):
        mesh = structured_rectangle(1.0, 1.0, 1, 1)
        space = ElementSpace(mesh, "lagrange", 2)
        X = space.element_positions()[0]
        ref_nodes = space.ref.nodes
        np.testing.assert_allclose(X, 0.5 * (ref_nodes + 1.0), atol=1e-14)

    def test_facet_cps(self):
        mesh = structured_rectangle(1.0, 1.0, 1, 1)
        space = ElementSpace(mesh, "lagrange", 2)
        cps = space.facet_cps(0, 0)
        assert len(cps) == 3
        np.testing.assert_allclose(space.positions[cps][:, 1], 0.0)


# ---------------------------------------------------------------------------
#  DOF numbering
# ---------------------------------------------------------------------------
class TestDofHandler:
    def _layout(self, dim):
        return FieldLayout([FieldVariable("d", rank=1), FieldVariable("T")], dim)

    def test_dof_count_invariant(self):
        layout = self._layout(2)
        occupied = np.array([True, False, True, True, False])
        dh = DofHandler(layout)
        dh.distribute(occupied)
        assert dh.n_dofs == occupied.sum() * layout.n_components
        assert np.all(dh.dof_map[~occupied] == -1)
        assert sorted(dh.dof_map[occupied].ravel()) == list(range(dh.n_dofs))

    def test_node_major_local_order(self):
        layout = self._layout(2)
        dh = DofHandler(layout)
        dh.distribute(np.ones(4, dtype=bool))
        gd = dh.element_dofs(np.array([[3, 1]]))
        assert gd.tolist() == [[9, 10, 11, 3, 4, 5]]

    def test_field_dofs(self):
        layout = self._layout(2)
        dh = DofHandler(layout)
        dh.distribute(np.array([True, False, True]))
        assert dh.field_dofs("T").tolist() == [0, 3]
        assert dh.field_dofs("d", 1).tolist() == [2, 5]

    def test_gather_scatter(self):
        layout = self._layout(2)
        cps = ControlPoints(np.zeros((3, 2)), layout, FieldLayout([], 2))
        cps.is_occupied[[0, 2]] = True
        dh = DofHandler(layout)
        dh.distribute(cps.is_occupied)
        x = np.arange(6, dtype=float)
        dh.scatter(x, -x, cps)
        assert np.all(cps.values[1] == 0.0)
        np.testing.assert_array_equal(cps.value("T")[:, 0], [0.0, 0.0, 3.0])
        x2, xt2 = dh.gather(cps)
        np.testing.assert_array_equal(x2, x)
        np.testing.assert_array_equal(xt2, -x)

    def test_distribute_twice(self):
        dh = DofHandler(self._layout(2))
        dh.distribute(np.ones(2, dtype=bool))
        with pytest.raises(RuntimeError):
            dh.distribute(np.ones(2, dtype=bool))


def test_unused_vertices_are_unoccupied():
    mesh = structured_interval(3.0, 3)
    T = FieldVariable("T")
    dom = FEMDomain(mesh)
    wp = dom.add_workpiece("left", elements=[0])
    wp.assign_weak_form(Bilinear(T.d(i), T.d(i)))
    dom.discretize("lagrange", 2)
    # element 0 uses vertices 0, 1 and its own mid-node; everything else is unoccupied
    assert dom.cps.is_occupied.sum() == 3
    assert dom.dofs.n_dofs == 3
    assert np.all(dom.dofs.dof_map[2:4] == -1)


def test_region_control_points_follow_the_work_piece():
    mesh = structured_rectangle(3.0, 2.0, 3, 2)
    T = FieldVariable("T")
    dom = FEMDomain(mesh)
    left = dom.add_workpiece("left", elements=[0, 3])
    rest = dom.add_workpiece("rest", elements=[1, 2, 4, 5])
    bottom = select_facets(mesh, lambda c: np.isclose(c[:, 1], 0.0))
    for wp in (left, rest):
        wp.assign_weak_form(Bilinear(T.d(i), T.d(i)))
        wp.add_boundary("bottom", bottom)
    dom.discretize("lagrange", 2)

    pos = dom.space.positions
    cps = dom.region_control_points(rest, "bottom")
    # vertices and mid-edge nodes on 1 <= x <= 3, y = 0
    assert len(cps) == 5
    np.testing.assert_allclose(pos[cps, 1], 0.0)
    assert pos[cps, 0].min() == pytest.approx(1.0)

    # facets owned by the other work-piece are skipped
    cps = dom.region_control_points(left, "bottom")
    assert len(cps) == 3 and np.all(pos[cps, 0] <= 1.0 + 1e-12)
    assert cps.tolist() == sorted(cps.tolist())
