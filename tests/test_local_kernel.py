import numpy as np
import pytest

from weakfem.fem.reference import get_reference
from weakfem.fem.transform import facet_tabulation, volume_tabulation
from weakfem.integration.quadrature import volume
from weakfem.jit import compile_weak_form
from weakfem.jit.codegen import NumbaCodeGen
from weakfem.jit.ir import build_kernel_ir
from weakfem.symbolic import (
    Bilinear, FacetNormal, FieldLayout, FieldVariable, Parameter, indices, linearize,
)

i, j = indices("i j")

T = FieldVariable("T")
u = FieldVariable("u", rank=1)
Te = FieldVariable("Te", external=True)
LAYOUT_T = FieldLayout([T], 2)
LAYOUT_UT = FieldLayout([T, u], 2)
EXT = FieldLayout([Te], 2)


def _quad_tab(X, degree=2, family="lagrange", order=1):
    ref = get_reference("quad", family, order)
    qp, qw = volume("quad", degree)
    return volume_tabulation(ref, np.asarray(X, dtype=float), qp, qw)


UNIT_SQUARE = np.array([[[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]])
DISTORTED = np.array([[[0.0, 0.0], [1.2, 0.1], [1.0, 0.9], [-0.1, 1.1]],
                      [[1.2, 0.1], [2.0, 0.0], [2.1, 1.0], [1.0, 0.9]]])


def test_q1_laplace_stiffness():
    kern = compile_weak_form(Bilinear(T.d(i), T.d(i)), 2, LAYOUT_T, name="laplace")
    tab = _quad_tab(UNIT_SQUARE)
    x = np.array([[[0.3], [-1.0], [2.0], [0.5]]])
    F, K = kern(tab, x)
    expected = np.array([[4, -1, -2, -1], [-1, 4, -1, -2], [-2, -1, 4, -1], [-1, -2, -1, 4]]) / 6.0
    np.testing.assert_allclose(K[0], expected, atol=1e-13)
    np.testing.assert_allclose(F[0], expected @ x[0, :, 0], atol=1e-13)


def test_mass_with_parameter():
    kern = compile_weak_form(Parameter("rho") * Bilinear(T, T), 2, LAYOUT_T, name="mass")
    tab = _quad_tab(UNIT_SQUARE)
    _, K = kern(tab, np.zeros((1, 4, 1)), params={"rho": 36.0})
    expected = np.array([[4, 2, 1, 2], [2, 4, 2, 1], [1, 2, 4, 2], [2, 1, 2, 4]], dtype=float)
    np.testing.assert_allclose(K[0], expected, atol=1e-12)
    with pytest.raises(KeyError):
        kern(tab, np.zeros((1, 4, 1)), params={})


def _nonlinear_form():
    return (Bilinear(T.d(i), (1 + T * T) * T.d(i))
            + Bilinear(u[i].d(j), u[i].d(j) + T * u[j].d(i))
            + Bilinear(T, 10.0 * T.dt + u[i] * u[i] - Te)
            + Bilinear(u[i], 2.0 * u[i].dt))


def _random_state(n_el, n_b, n_comp, seed=1):
    rng = np.random.default_rng(seed)
    x = rng.uniform(-0.5, 0.5, (n_el, n_b, n_comp))
    xt = rng.uniform(-0.5, 0.5, (n_el, n_b, n_comp))
    ext = rng.uniform(0.0, 1.0, (n_el, n_b, 1))
    return x, xt, ext


def test_sequential_and_parallel_backends_agree():
    seq = compile_weak_form(_nonlinear_form(), 2, LAYOUT_UT, EXT, name="nl", backend="sequential")
    par = seq.with_backend("parallel")
    tab = _quad_tab(np.repeat(DISTORTED, 4, axis=0), degree=3)
    x, xt, ext = _random_state(8, 4, 3)
    F1, K1 = seq(tab, x, xt, ext, w_t=0.7)
    F2, K2 = par(tab, x, xt, ext, w_t=0.7)
    np.testing.assert_array_equal(F1, F2)
    np.testing.assert_array_equal(K1, K2)


@pytest.mark.parametrize("w_t", [0.0, 2.5])
def test_tangent_matches_finite_differences(w_t):
    """K = dF/dx + w_t dF/dx_t for a nonlinear coupled form."""
    kern = compile_weak_form(_nonlinear_form(), 2, LAYOUT_UT, EXT, name="nl_fd")
    tab = _quad_tab(DISTORTED, degree=4)
    x, xt, ext = _random_state(2, 4, 3, seed=7)
    _, K = kern(tab, x, xt, ext, w_t=w_t)
    h = 1e-6
    n_loc = 4 * 3
    for e in range(2):
        fd = np.zeros((n_loc, n_loc))
        for col in range(n_loc):
            a, c = divmod(col, 3)
            xp, xm = x.copy(), x.copy()
            xtp, xtm = xt.copy(), xt.copy()
            xp[e, a, c] += h
            xm[e, a, c] -= h
            xtp[e, a, c] += w_t * h
            xtm[e, a, c] -= w_t * h
            Fp, _ = kern(tab, xp, xtp, ext, w_t=w_t)
            Fm, _ = kern(tab, xm, xtm, ext, w_t=w_t)
            fd[:, col] = (Fp[e] - Fm[e]) / (2 * h)
        np.testing.assert_allclose(K[e], fd, rtol=1e-5, atol=1e-7)


def test_boundary_kernel_uses_outward_normals():
    """Integral of n_i u_i over the boundary equals the divergence integral."""
    ref = get_reference("quad")
    fq, fw = volume("line", 2)
    X = np.repeat(UNIT_SQUARE, 4, axis=0)
    tab = facet_tabulation(ref, X, [0, 1, 2, 3], fq, fw)
    kern = compile_weak_form(Bilinear(T, FacetNormal[i] * u[i]), 2, LAYOUT_UT,
                             name="flux", boundary=True)
    x = np.zeros((4, 4, 3))
    # u = (x, 2y) on every control point; T component 0 is unused
    x[:, :, 1] = X[:, :, 0]
    x[:, :, 2] = 2.0 * X[:, :, 1]
    F, _ = kern(tab, x)
    # sum of T test functions is 1 on every facet, so the T residuals add up to the flux
    total = F[:, 0::3].sum()
    np.testing.assert_allclose(total, 3.0, atol=1e-12)


def test_boundary_kernel_needs_normals():
    kern = compile_weak_form(Bilinear(T, FacetNormal[i] * u[i]), 2, LAYOUT_UT,
                             name="flux_bdy", boundary=True)
    with pytest.raises(ValueError):
        kern(_quad_tab(UNIT_SQUARE), np.zeros((1, 4, 3)))


def test_debug_codegen_source_is_plain_python():
    lin = linearize(Bilinear(T.d(i), T.d(i)), 2, LAYOUT_T)
    ir = build_kernel_ir(lin)
    src, order = NumbaCodeGen(parallel=True, debug=True).generate_source(ir, "kernel")
    assert "@numba.njit" not in src and "numba.prange" in src
    src2, _ = NumbaCodeGen(parallel=False, debug=False).generate_source(ir, "kernel")
    assert "@numba.njit(parallel=False, cache=True)" in src2
    assert order[0] == "phi" and "w_t" in order
    assert ir.digest() == build_kernel_ir(linearize(Bilinear(T.d(i), T.d(i)), 2, LAYOUT_T)).digest()
