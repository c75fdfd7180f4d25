"""weakfem.symbolic.expressions
Immutable expression tree for indicial weak forms.

Leaves are field accesses (``d[i].d(j)``, ``T.dt``), Kronecker deltas,
constants, run-time parameters and facet-normal components.  Interior
nodes are the arithmetic operators, a handful of scalar functions and the
``Bilinear`` pairing.  Nothing here knows the spatial dimension; the
Einstein expansion in :mod:`weakfem.symbolic.expand` does.
"""
from __future__ import annotations

import itertools
import numbers
from typing import Iterable, Tuple

from weakfem.errors import MalformedFormError

_RESERVED_INDEX_NAMES = {"t"}
_dummy_counter = itertools.count()


class Index:
    """A named tensor index.  Equality is by name."""
    __slots__ = ("name",)

    def __init__(self, name: str):
        if not isinstance(name, str) or not name.isidentifier():
            raise ValueError(f"Index name must be an identifier, got {name!r}")
        if name in _RESERVED_INDEX_NAMES:
            raise MalformedFormError("'t' is reserved for time derivatives", index=name)
        self.name = name

    def __eq__(self, other):
        return isinstance(other, Index) and other.name == self.name

    def __hash__(self):
        return hash(("Index", self.name))

    def __repr__(self):
        return self.name

    @property
    def is_dummy(self) -> bool:
        return self.name.startswith("_")


def indices(spec: str) -> Tuple[Index, ...]:
    """``indices("i j m")`` -> ``(Index('i'), Index('j'), Index('m'))``."""
    return tuple(Index(s) for s in spec.replace(",", " ").split())


def fresh_index(base: Index | str) -> Index:
    name = base.name if isinstance(base, Index) else str(base)
    return Index(f"_{name.lstrip('_')}{next(_dummy_counter)}")


def _as_index(obj) -> Index:
    if isinstance(obj, Index):
        return obj
    if isinstance(obj, str):
        return Index(obj)
    raise TypeError(f"Expected an Index or index name, got {type(obj).__name__}")


def as_expression(obj) -> "Expression":
    if isinstance(obj, Expression):
        return obj
    if isinstance(obj, numbers.Real):
        return Constant(obj)
    if isinstance(obj, TensorDefinition):
        return obj.access(())
    raise TypeError(f"Cannot use {type(obj).__name__} in a weak-form expression")


class Expression:
    """Base class for any node of a weak-form expression."""

    def children(self) -> tuple:
        return ()

    def rebuild(self, children: tuple) -> "Expression":
        return self

    def __add__(self, other): return Sum(self, as_expression(other))
    def __radd__(self, other): return Sum(as_expression(other), self)
    def __sub__(self, other): return Sum(self, Prod(Constant(-1), as_expression(other)))
    def __rsub__(self, other): return Sum(as_expression(other), Prod(Constant(-1), self))
    def __mul__(self, other): return Prod(self, as_expression(other))
    def __rmul__(self, other): return Prod(as_expression(other), self)
    def __truediv__(self, other): return Quotient(self, as_expression(other))
    def __rtruediv__(self, other): return Quotient(as_expression(other), self)
    def __pow__(self, other): return Power(self, as_expression(other))
    def __rpow__(self, other): return Power(as_expression(other), self)
    def __neg__(self): return Prod(Constant(-1), self)
    def __pos__(self): return self

    def walk(self):
        """Pre-order traversal over the tree."""
        yield self
        for c in self.children():
            yield from c.walk()

    def find_first(self, criteria):
        for node in self.walk():
            if criteria(node):
                return node
        return None

    def substitute(self, mapping: dict) -> "Expression":
        """Rename indices according to ``mapping`` (Index -> Index)."""
        kids = self.children()
        if not kids:
            return self
        return self.rebuild(tuple(c.substitute(mapping) for c in kids))

    def fields(self) -> set:
        return {n.field for n in self.walk() if isinstance(n, FieldAccess)}


class Constant(Expression):
    def __init__(self, value):
        if not isinstance(value, numbers.Real):
            raise TypeError(f"Constant expects a real number, got {type(value).__name__}")
        self.value = value

    def __repr__(self):
        return repr(self.value)


class ParameterRef(Expression):
    """A named scalar read at run time from the domain's parameter table."""

    def __init__(self, name: str):
        self.name = name

    def __repr__(self):
        return f"Parameter({self.name})"


def Parameter(name: str) -> ParameterRef:
    return ParameterRef(name)


class FieldAccess(Expression):
    """One (possibly differentiated) component access of a field variable.

    ``field[comps].d(j)`` stores ``comps`` and the spatial derivative indices
    separately; ``.dt`` bumps the time-derivative order.
    """

    def __init__(self, field: "FieldVariable", comps: tuple = (), derivs: tuple = (), time_order: int = 0):
        self.field = field
        self.comps = tuple(comps)
        self.derivs = tuple(derivs)
        self.time_order = int(time_order)

    def children(self):
        return ()

    def substitute(self, mapping):
        return FieldAccess(self.field,
                           tuple(mapping.get(i, i) for i in self.comps),
                           tuple(mapping.get(i, i) for i in self.derivs),
                           self.time_order)

    def d(self, *idx) -> "FieldAccess":
        """Spatial partial derivative(s) along the given index/indices."""
        return FieldAccess(self.field, self.comps,
                           self.derivs + tuple(_as_index(i) for i in idx), self.time_order)

    @property
    def dt(self) -> "FieldAccess":
        """Time partial derivative."""
        return FieldAccess(self.field, self.comps, self.derivs, self.time_order + 1)

    def all_indices(self) -> Tuple[Index, ...]:
        return self.comps + self.derivs

    def __repr__(self):
        comp = ",".join(i.name for i in self.comps)
        der = ",".join([i.name for i in self.derivs] + ["t"] * self.time_order)
        if not comp and not der:
            return self.field.name
        return f"{self.field.name}{{{comp}{';' + der if der else ''}}}"


class FieldVariable(FieldAccess):
    """A named tensor-valued field.

    ``rank`` is the tensor rank (0 scalar, 1 vector, 2 matrix).  External
    fields are prescribed per control point and carry no DOFs.  A rank-0
    field can be used directly in arithmetic; higher ranks need indexing.
    """

    def __init__(self, name: str, rank: int = 0, external: bool = False):
        if not name.isidentifier():
            raise ValueError(f"Field name must be an identifier, got {name!r}")
        if rank < 0 or rank > 2:
            raise ValueError(f"Unsupported tensor rank {rank} for field '{name}'")
        self.name = name
        self.rank = int(rank)
        self.external = bool(external)
        super().__init__(self, (), (), 0)

    def __getitem__(self, idx) -> FieldAccess:
        if not isinstance(idx, tuple):
            idx = (idx,)
        return FieldAccess(self, tuple(_as_index(i) for i in idx))

    def __call__(self, *idx) -> FieldAccess:
        return self[idx] if idx else FieldAccess(self)

    def substitute(self, mapping):
        return self

    def n_components(self, dim: int) -> int:
        return dim ** self.rank

    def __eq__(self, other):
        return (isinstance(other, FieldVariable) and other.name == self.name
                and other.rank == self.rank and other.external == self.external)

    def __hash__(self):
        return hash(("FieldVariable", self.name, self.rank, self.external))

    def __repr__(self):
        kind = "external " if self.external else ""
        return f"FieldVariable({kind}{self.name}, rank={self.rank})"


def fields(spec: str, rank: int = 0, external: bool = False) -> Tuple[FieldVariable, ...]:
    """``fields("d", rank=1)`` / ``fields("T Te")`` convenience factory."""
    return tuple(FieldVariable(n, rank=rank, external=external)
                 for n in spec.replace(",", " ").split())


class NormalAccess(Expression):
    """Component ``n{i}`` of the outward unit facet normal."""

    def __init__(self, index: Index):
        self.index = _as_index(index)

    def substitute(self, mapping):
        return NormalAccess(mapping.get(self.index, self.index))

    def __repr__(self):
        return f"n{{{self.index.name}}}"


class _Normal:
    def __getitem__(self, i):
        return NormalAccess(i)

    def __call__(self, i):
        return NormalAccess(i)

    def __repr__(self):
        return "FacetNormal"


FacetNormal = _Normal()


class Delta(Expression):
    """Kronecker delta."""

    def __init__(self, i, j):
        self.i, self.j = _as_index(i), _as_index(j)

    def substitute(self, mapping):
        return Delta(mapping.get(self.i, self.i), mapping.get(self.j, self.j))

    def __repr__(self):
        return f"δ{{{self.i.name},{self.j.name}}}"


def delta(i, j) -> Delta:
    return Delta(i, j)


class Sum(Expression):
    def __init__(self, a, b):
        self.a, self.b = a, b

    def children(self):
        return (self.a, self.b)

    def rebuild(self, children):
        return Sum(*children)

    def __repr__(self):
        return f"({self.a!r} + {self.b!r})"


class Prod(Expression):
    def __init__(self, a, b):
        self.a, self.b = a, b

    def children(self):
        return (self.a, self.b)

    def rebuild(self, children):
        return Prod(*children)

    def factors(self) -> list:
        out = []
        for c in (self.a, self.b):
            out.extend(c.factors() if isinstance(c, Prod) else [c])
        return out

    def __repr__(self):
        return f"{self.a!r} * {self.b!r}"


class Quotient(Expression):
    def __init__(self, a, b):
        self.a, self.b = a, b

    def children(self):
        return (self.a, self.b)

    def rebuild(self, children):
        return Quotient(*children)

    def __repr__(self):
        return f"({self.a!r} / {self.b!r})"


class Power(Expression):
    def __init__(self, a, b):
        self.a, self.b = a, b

    def children(self):
        return (self.a, self.b)

    def rebuild(self, children):
        return Power(*children)

    def __repr__(self):
        return f"({self.a!r} ** {self.b!r})"


SUPPORTED_FUNCTIONS = ("sqrt", "exp", "log", "sin", "cos", "tanh", "abs")


class Apply(Expression):
    """A scalar function applied to an index-free argument."""

    def __init__(self, func: str, arg):
        if func not in SUPPORTED_FUNCTIONS:
            raise MalformedFormError(f"Unsupported function '{func}'")
        self.func, self.arg = func, as_expression(arg)

    def children(self):
        return (self.arg,)

    def rebuild(self, children):
        return Apply(self.func, children[0])

    def __repr__(self):
        return f"{self.func}({self.arg!r})"


def sqrt(x): return Apply("sqrt", x)
def exp(x): return Apply("exp", x)
def log(x): return Apply("log", x)
def sin(x): return Apply("sin", x)
def cos(x): return Apply("cos", x)
def tanh(x): return Apply("tanh", x)
def Abs(x): return Apply("abs", x)


class Bilinear(Expression):
    """Integrand pairing of the test quantity ``a`` with the trial quantity ``b``.

    The residual contribution for unknown x_I is ``(da/dx_I) * b`` summed over
    all contracted indices of the pair.
    """

    def __init__(self, a, b):
        self.a, self.b = as_expression(a), as_expression(b)

    def children(self):
        return (self.a, self.b)

    def rebuild(self, children):
        return Bilinear(*children)

    def __repr__(self):
        return f"Bilinear({self.a!r}, {self.b!r})"


class TensorDefinition:
    """A named indexed sub-expression, e.g. ``eps{i,j} = (d{i;j} + d{j;i})/2``.

    Accessing it with actual indices substitutes the declared ones and gives
    every summed index of the body a fresh dummy name.
    """

    def __init__(self, name: str, index_names: Iterable, body):
        from weakfem.symbolic.expand import free_indices
        self.name = name
        self.indices = tuple(_as_index(i) for i in index_names)
        self.body = as_expression(body)
        if len(set(self.indices)) != len(self.indices):
            raise MalformedFormError("repeated index on the left-hand side", form=name)
        try:
            body_free = free_indices(self.body)
        except MalformedFormError as exc:
            raise exc.in_form(name) from None
        lhs, rhs = set(self.indices), set(body_free)
        if lhs != rhs:
            bad = sorted(i.name for i in lhs ^ rhs)
            raise MalformedFormError(
                f"free indices differ between left ({sorted(i.name for i in lhs)}) and "
                f"right ({sorted(i.name for i in rhs)}) sides",
                form=name, index=bad[0])

    @property
    def rank(self) -> int:
        return len(self.indices)

    def access(self, actual: tuple) -> Expression:
        actual = tuple(_as_index(i) for i in actual)
        if len(actual) != len(self.indices):
            raise MalformedFormError(
                f"expects {len(self.indices)} indices, got {len(actual)}", form=self.name)
        mapping = dict(zip(self.indices, actual))
        declared = set(self.indices)
        for node in self.body.walk():
            for idx in _node_indices(node):
                if idx not in declared and idx not in mapping:
                    mapping[idx] = fresh_index(idx)
        return self.body.substitute(mapping)

    def __getitem__(self, idx):
        if not isinstance(idx, tuple):
            idx = (idx,)
        return self.access(idx)

    def __call__(self, *idx):
        return self.access(idx)

    # a rank-0 definition behaves like its body in arithmetic
    def __add__(self, o): return self.access(()) + o
    def __radd__(self, o): return o + self.access(())
    def __sub__(self, o): return self.access(()) - o
    def __rsub__(self, o): return o - self.access(())
    def __mul__(self, o): return self.access(()) * o
    def __rmul__(self, o): return o * self.access(())
    def __truediv__(self, o): return self.access(()) / o
    def __neg__(self): return -self.access(())

    def __repr__(self):
        return f"{self.name}{{{','.join(i.name for i in self.indices)}}} = {self.body!r}"


def _node_indices(node) -> tuple:
    if isinstance(node, FieldAccess):
        return node.all_indices()
    if isinstance(node, Delta):
        return (node.i, node.j)
    if isinstance(node, NormalAccess):
        return (node.index,)
    return ()
