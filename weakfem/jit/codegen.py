# weakfem/jit/codegen.py
import logging
import os

from weakfem.jit.ir import KernelIR

logger = logging.getLogger(__name__)

PARAM_ORDER = [
    "phi", "dphi", "wdet", "normals",
    "x_loc", "xt_loc", "ext_loc", "params", "w_t",
    "slot_source", "slot_comp", "slot_deriv", "n_comp",
]


def jit_debug_enabled() -> bool:
    return os.getenv("WEAKFEM_JIT_DEBUG", "").lower() in {"1", "true", "yes"}


class NumbaCodeGen:
    """
    Lower a :class:`KernelIR` into the source of a numba element kernel.

    ``parallel=True`` distributes elements over threads with ``numba.prange``;
    otherwise the element loop is a plain ``range``.  Both variants share the
    loop body and helper calls verbatim and are compiled without fastmath,
    so the two backends evaluate identical floating-point operations per
    element.
    """

    def __init__(self, parallel: bool = False, debug: bool | None = None):
        self.parallel = bool(parallel)
        self.debug = jit_debug_enabled() if debug is None else bool(debug)

    @property
    def signature(self) -> str:
        """Distinguishes cache entries produced by different generators."""
        return f"numba-{'parallel' if self.parallel else 'sequential'}-{'debug' if self.debug else 'njit'}"

    def generate_source(self, ir: KernelIR, kernel_name: str):
        """Return ``(source, param_order)`` for ``ir``."""
        unpack = [f"s{k} = s[{k}]" for k in range(len(ir.slots))]
        body = unpack + [f"{a.target} = {a.code}" for a in ir.temporaries]
        body += [f"{a.target} = {a.code}" for a in ir.residual]
        body += [f"{a.target} = {a.code}" for a in ir.tangent]
        body_block = "\n".join(f"            {line}" for line in body)

        loop = "numba.prange" if self.parallel else "range"
        decorator = ""
        if not self.debug:
            decorator = f"@numba.njit(parallel={self.parallel}, cache=True)"

        src = f"""
PARAM_ORDER = {PARAM_ORDER!r}
N_SLOTS = {len(ir.slots)}
N_UNKNOWN = {ir.n_unknown}

{decorator}
def {kernel_name}(
        {", ".join(PARAM_ORDER)}
    ):
    num_elements = wdet.shape[0]
    n_qp = wdet.shape[1]
    n_basis = phi.shape[2]
    n_loc = n_basis * n_comp

    F_values = np.zeros((num_elements, n_loc), dtype=np.float64)
    K_values = np.zeros((num_elements, n_loc, n_loc), dtype=np.float64)

    for e in {loop}(num_elements):
        s = np.zeros(N_SLOTS, dtype=np.float64)
        g = np.zeros(N_UNKNOWN, dtype=np.float64)
        h = np.zeros((N_UNKNOWN, N_UNKNOWN), dtype=np.float64)
        B = np.zeros((N_UNKNOWN, n_basis), dtype=np.float64)
        Fe = F_values[e]
        Ke = K_values[e]
        for q in range(n_qp):
            interpolate_symbols(s, e, q, phi, dphi, normals, x_loc, xt_loc, ext_loc,
                                params, slot_source, slot_comp, slot_deriv)
{body_block}
            accumulate_qp(Fe, Ke, g, h, B, e, q, phi, dphi, wdet[e, q], w_t,
                          slot_source, slot_comp, slot_deriv, n_comp)

    return F_values, K_values
""".lstrip()
        logger.debug("Generated %s kernel '%s' (%d slots, %d residual, %d tangent entries)",
                     self.signature, kernel_name, len(ir.slots), len(ir.residual), len(ir.tangent))
        return src, list(PARAM_ORDER)
