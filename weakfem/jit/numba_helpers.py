import numba

from weakfem.symbolic.symbols import SRC_NORMAL, SRC_PARAM, SRC_X, SRC_XT


@numba.njit(cache=True)
def interpolate_symbols(s, e, q, phi, dphi, normals, x_loc, xt_loc, ext_loc, params,
                        slot_source, slot_comp, slot_deriv):
    """
    Fill the slot vector ``s`` at quadrature point (e, q).

    Field slots interpolate the element's control-point values with the
    shape functions (deriv < 0) or their physical derivative along deriv.
    """
    n_b = phi.shape[2]
    for k in range(s.shape[0]):
        src = slot_source[k]
        c = slot_comp[k]
        if src == SRC_PARAM:
            s[k] = params[c]
            continue
        if src == SRC_NORMAL:
            s[k] = normals[e, q, c]
            continue
        j = slot_deriv[k]
        acc = 0.0
        for a in range(n_b):
            w = phi[e, q, a] if j < 0 else dphi[e, q, a, j]
            if src == SRC_X:
                acc += w * x_loc[e, a, c]
            elif src == SRC_XT:
                acc += w * xt_loc[e, a, c]
            else:
                acc += w * ext_loc[e, a, c]
        s[k] = acc


@numba.njit(cache=True)
def accumulate_qp(Fe, Ke, g, h, B, e, q, phi, dphi, wq, w_t,
                  slot_source, slot_comp, slot_deriv, n_comp):
    """
    Add one quadrature point's contribution to the element residual/tangent.

    Unknown slot k varies with local DOF ``a * n_comp + comp_k`` through the
    basis row B[k]; a rate slot's trial variation is additionally scaled by
    the time-integration weight ``w_t``.
    """
    nu = g.shape[0]
    n_b = phi.shape[2]
    for k in range(nu):
        j = slot_deriv[k]
        for a in range(n_b):
            B[k, a] = phi[e, q, a] if j < 0 else dphi[e, q, a, j]

    for k in range(nu):
        ck = slot_comp[k]
        gk = wq * g[k]
        if gk != 0.0:
            for a in range(n_b):
                Fe[a * n_comp + ck] += gk * B[k, a]
        for l in range(nu):
            hkl = h[k, l]
            if hkl == 0.0:
                continue
            if slot_source[l] == SRC_XT:
                hkl *= w_t
            hkl *= wq
            cl = slot_comp[l]
            for a in range(n_b):
                row = a * n_comp + ck
                bka = hkl * B[k, a]
                for b in range(n_b):
                    Ke[row, b * n_comp + cl] += bka * B[l, b]
