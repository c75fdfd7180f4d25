# weakfem/symbolic/symbols.py
"""Quadrature-point symbols and per-control-point field layouts.

Every scalar that a weak form can see at a quadrature point becomes one
sympy symbol: a field component value, one of its first spatial
derivatives, its rate, an external field value, a run-time parameter or a
facet-normal component.  :class:`SymbolTable` hands out those symbols and
later freezes them into the slot order used by the generated kernels.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

import sympy

# slot sources understood by weakfem.jit.numba_helpers.interpolate_symbols
SRC_X, SRC_XT, SRC_EXT, SRC_PARAM, SRC_NORMAL = 0, 1, 2, 3, 4


class FieldLayout:
    """Ordered (name -> offset, n_components) table for a set of fields.

    Fields are laid out by name; components are flattened row-major, so a
    rank-2 field ``s`` has ``s{0,1}`` at ``offset + 1`` in 3-D.
    """

    def __init__(self, fields: Iterable, dim: int):
        self.dim = dim
        self.fields = tuple(sorted(fields, key=lambda f: f.name))
        names = [f.name for f in self.fields]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate field names in layout: {names}")
        self._offsets: Dict[str, Tuple[int, int]] = {}
        off = 0
        for f in self.fields:
            n = f.n_components(dim)
            self._offsets[f.name] = (off, n)
            off += n
        self.n_components = off

    def __contains__(self, name):
        return name in self._offsets

    def offset(self, name: str) -> int:
        return self._offsets[name][0]

    def size(self, name: str) -> int:
        return self._offsets[name][1]

    def slice(self, name: str) -> slice:
        off, n = self._offsets[name]
        return slice(off, off + n)

    def flat(self, name: str, comps: Tuple[int, ...]) -> int:
        flat = 0
        for c in comps:
            flat = flat * self.dim + c
        return self.offset(name) + flat

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    def __repr__(self):
        return f"FieldLayout({self._offsets})"


@dataclass(frozen=True)
class SymbolSlot:
    """One scalar evaluated per quadrature point, in kernel slot order."""
    name: str
    source: int      # SRC_*
    comp: int        # column into x/xt/ext, parameter index or normal component
    deriv: int       # -1 for the value, j for d/dx_j

    @property
    def is_unknown(self) -> bool:
        return self.source in (SRC_X, SRC_XT)

    @property
    def is_rate(self) -> bool:
        return self.source == SRC_XT


class SymbolTable:
    """Issue canonical sympy symbols and freeze them into kernel slots."""

    def __init__(self, dim: int, internal: FieldLayout, external: FieldLayout | None = None):
        self.dim = dim
        self.internal = internal
        self.external = external if external is not None else FieldLayout((), dim)
        self._by_key: Dict[tuple, sympy.Symbol] = {}
        self._names: set = set()
        self._frozen: List[Tuple[tuple, sympy.Symbol]] | None = None

    # ------------------------------------------------------------------
    # symbol factories (used by the Einstein expander)
    # ------------------------------------------------------------------
    def _get(self, key: tuple, name: str) -> sympy.Symbol:
        sym = self._by_key.get(key)
        if sym is None:
            if self._frozen is not None:
                raise RuntimeError("SymbolTable is frozen; cannot add new symbols")
            while name in self._names:
                name += "'"
            self._names.add(name)
            sym = sympy.Symbol(name, real=True)
            self._by_key[key] = sym
        return sym

    def field(self, field, comps: Tuple[int, ...], deriv: int, time_order: int) -> sympy.Symbol:
        base = field.name + "".join(f"_{c}" for c in comps)
        if deriv >= 0:
            base += f"_x{deriv}"
        if field.external:
            if self.external is None or field.name not in self.external:
                raise KeyError(f"External field '{field.name}' is not in the external layout")
            return self._get(("e", field.name, comps, deriv), base)
        if field.name not in self.internal:
            raise KeyError(f"Field '{field.name}' is not in the internal layout")
        if time_order:
            base += "_t"
        return self._get(("u", field.name, comps, deriv, time_order), base)

    def parameter(self, name: str) -> sympy.Symbol:
        return self._get(("p", name), name)

    def normal(self, comp: int) -> sympy.Symbol:
        return self._get(("n", comp), f"n_{comp}")

    # ------------------------------------------------------------------
    # freezing into slot order
    # ------------------------------------------------------------------
    @staticmethod
    def _sort_key(key: tuple):
        kind = key[0]
        if kind == "u":                      # ('u', field, comps, deriv, time_order)
            return (0, key[1], key[2], key[4], key[3])
        if kind == "e":
            return (1, key[1], key[2], 0, key[3])
        if kind == "p":
            return (2, key[1], (), 0, 0)
        return (3, "", (key[1],), 0, 0)

    def freeze(self) -> List[SymbolSlot]:
        """Fix the slot order (unknowns first) and return the slot list."""
        if self._frozen is None:
            items = sorted(self._by_key.items(), key=lambda kv: self._sort_key(kv[0]))
            self._frozen = items
        return self.slots

    @property
    def slots(self) -> List[SymbolSlot]:
        if self._frozen is None:
            raise RuntimeError("SymbolTable.freeze() has not been called")
        params = self.parameter_names
        out = []
        for key, sym in self._frozen:
            kind = key[0]
            if kind == "u":
                src = SRC_XT if key[4] else SRC_X
                out.append(SymbolSlot(sym.name, src, self.internal.flat(key[1], key[2]), key[3]))
            elif kind == "e":
                out.append(SymbolSlot(sym.name, SRC_EXT, self.external.flat(key[1], key[2]), key[3]))
            elif kind == "p":
                out.append(SymbolSlot(sym.name, SRC_PARAM, params.index(key[1]), -1))
            else:
                out.append(SymbolSlot(sym.name, SRC_NORMAL, key[1], -1))
        return out

    @property
    def symbols(self) -> List[sympy.Symbol]:
        if self._frozen is None:
            raise RuntimeError("SymbolTable.freeze() has not been called")
        return [sym for _, sym in self._frozen]

    @property
    def unknown_symbols(self) -> List[sympy.Symbol]:
        return [sym for key, sym in (self._frozen or []) if key[0] == "u"]

    @property
    def parameter_names(self) -> List[str]:
        return sorted(key[1] for key in self._by_key if key[0] == "p")

    @property
    def uses_normal(self) -> bool:
        return any(key[0] == "n" for key in self._by_key)

    def __len__(self):
        return len(self._by_key)
