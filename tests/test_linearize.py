import numpy as np
import pytest
import sympy

from weakfem.errors import MalformedFormError
from weakfem.symbolic import (
    Bilinear, FieldLayout, FieldVariable, FacetNormal, Parameter, indices, linearize, sqrt,
)

i, j, k, m = indices("i j k m")


@pytest.fixture
def fields2d():
    u = FieldVariable("u", rank=1)
    T = FieldVariable("T")
    return u, T, FieldLayout([u, T], 2)


def test_laplace_residual_and_tangent(fields2d):
    _, T, layout = fields2d
    lin = linearize(Bilinear(T.d(i), T.d(i)), 2, layout)
    syms = lin.table.unknown_symbols
    gx = lin.table.field(T, (), 0, 0)
    gy = lin.table.field(T, (), 1, 0)
    kx, ky = syms.index(gx), syms.index(gy)
    assert lin.residual[kx] == gx and lin.residual[ky] == gy
    assert lin.tangent == {(kx, kx): 1, (ky, ky): 1}


def test_rate_enters_through_its_own_symbol(fields2d):
    _, T, layout = fields2d
    lin = linearize(1000 * Bilinear(T, T.dt), 2, layout)
    syms = lin.table.unknown_symbols
    k_T = syms.index(lin.table.field(T, (), -1, 0))
    k_Tt = syms.index(lin.table.field(T, (), -1, 1))
    assert lin.tangent == {(k_T, k_Tt): 1000}
    assert lin.table.slots[k_Tt].is_rate


def test_tangent_is_jacobian_of_residual(fields2d):
    """Central differences of G_k reproduce H_kl for a nonlinear form."""
    u, T, layout = fields2d
    form = (Bilinear(T.d(i), (1 + T * T) * T.d(i))
            + Bilinear(u[i].d(j), sqrt(1 + u[k].d(m) * u[k].d(m)) * u[i].d(j))
            + Parameter("c") * Bilinear(T, T ** 3 + u[i] * u[i] + T.dt))
    lin = linearize(form, 2, layout)
    syms = lin.table.symbols
    n_u = lin.n_unknown
    G = sympy.lambdify(syms, lin.residual_vector(), "numpy")
    H = sympy.lambdify(syms, lin.tangent_matrix(), "numpy")

    rng = np.random.default_rng(3)
    s0 = rng.uniform(-0.5, 0.5, len(syms))
    H0 = np.array(H(*s0), dtype=float)
    eps = 1e-6
    for l in range(n_u):
        sp_, sm_ = s0.copy(), s0.copy()
        sp_[l] += eps
        sm_[l] -= eps
        col = (np.array(G(*sp_), dtype=float) - np.array(G(*sm_), dtype=float)) / (2 * eps)
        np.testing.assert_allclose(H0[:, l], col, rtol=1e-6, atol=1e-7)


def test_unknowns_precede_other_slots(fields2d):
    u, T, layout = fields2d
    Te = FieldVariable("Te", external=True)
    lin = linearize(Parameter("h") * Bilinear(T, T - Te), 2, layout,
                    FieldLayout([Te], 2), boundary=True)
    kinds = [s.is_unknown for s in lin.table.slots]
    assert kinds == sorted(kinds, reverse=True)
    assert lin.table.parameter_names == ["h"]


def test_normal_only_in_boundary_forms(fields2d):
    u, T, layout = fields2d
    form = Bilinear(T, FacetNormal[i] * u[i])
    with pytest.raises(MalformedFormError):
        linearize(form, 2, layout, name="domain")
    lin = linearize(form, 2, layout, name="bdy", boundary=True)
    assert lin.table.uses_normal


def test_test_side_without_unknowns_is_rejected(fields2d):
    _, T, layout = fields2d
    Te = FieldVariable("Te", external=True)
    with pytest.raises(MalformedFormError):
        linearize(Bilinear(Te, T), 2, layout, FieldLayout([Te], 2))
