# weakfem/symbolic/parser.py
"""Recursive-descent parser for the textual indicial notation.

    d{i;j}         component i of d, differentiated along j
    T{;t}          time derivative of T
    δ{i,j}         Kronecker delta (``delta{i,j}`` also accepted)
    n{i}           facet normal, unless ``n`` is bound in the namespace
    Bilinear(a, b) weak-form pairing
    a^b, a**b      powers

Names are resolved against a namespace of field variables, tensor
definitions, numbers and parameters.  Unknown names are an error.
"""
from __future__ import annotations

import numbers
import re
from typing import Dict, List, Mapping, Tuple

from weakfem.errors import MalformedFormError
from weakfem.symbolic.expressions import (
    SUPPORTED_FUNCTIONS, Apply, Bilinear, Constant, Delta, Expression, FieldAccess,
    FieldVariable, Index, NormalAccess, TensorDefinition, as_expression,
)

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<num>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
  | (?P<name>[^\W\d]\w*)
  | (?P<op>\*\*|[-+*/^(){},;=])
""", re.VERBOSE | re.UNICODE)

_DELTA_NAMES = ("δ", "delta")


def tokenize(text: str) -> List[Tuple[str, str, int]]:
    tokens, pos = [], 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise MalformedFormError(f"unexpected character {text[pos]!r} at column {pos}")
        kind = m.lastgroup
        if kind != "ws":
            tokens.append((kind, m.group(kind), pos))
        pos = m.end()
    tokens.append(("end", "", pos))
    return tokens


class _Parser:
    def __init__(self, text: str, namespace: Mapping):
        self.text = text
        self.ns = dict(namespace)
        self.tokens = tokenize(text)
        self.pos = 0

    # --- token helpers ------------------------------------------------
    def peek(self, value=None):
        kind, tok, _ = self.tokens[self.pos]
        if value is None:
            return tok if kind != "end" else None
        return tok == value and kind != "end"

    def take(self, value=None):
        kind, tok, col = self.tokens[self.pos]
        if value is not None and tok != value:
            got = tok if kind != "end" else "end of input"
            raise MalformedFormError(f"expected {value!r} but found {got!r} at column {col}")
        self.pos += 1
        return kind, tok

    def at_end(self):
        return self.tokens[self.pos][0] == "end"

    # --- grammar ------------------------------------------------------
    def expression(self) -> Expression:
        node = self.term()
        while self.peek("+") or self.peek("-"):
            _, op = self.take()
            rhs = self.term()
            node = node + rhs if op == "+" else node - rhs
        return node

    def term(self) -> Expression:
        node = self.unary()
        while self.peek("*") or self.peek("/"):
            _, op = self.take()
            rhs = self.unary()
            node = node * rhs if op == "*" else node / rhs
        return node

    def unary(self) -> Expression:
        if self.peek("-"):
            self.take()
            return -self.unary()
        if self.peek("+"):
            self.take()
            return self.unary()
        return self.power()

    def power(self) -> Expression:
        base = self.atom()
        if self.peek("^") or self.peek("**"):
            self.take()
            return base ** self.unary()
        return base

    def atom(self) -> Expression:
        kind, tok, col = self.tokens[self.pos]
        if kind == "num":
            self.take()
            value = float(tok) if any(c in tok for c in ".eE") else int(tok)
            return Constant(value)
        if tok == "(" and kind == "op":
            self.take()
            node = self.expression()
            self.take(")")
            return node
        if kind == "name":
            self.take()
            return self.name(tok, col)
        got = tok if kind != "end" else "end of input"
        raise MalformedFormError(f"unexpected {got!r} at column {col}")

    def braces(self):
        """``{i,j;k,t}`` -> ([i, j], [k], time_order)."""
        self.take("{")
        comps, derivs, t_order = [], [], 0
        target = comps
        while not self.peek("}"):
            if self.peek(";"):
                if target is derivs:
                    raise MalformedFormError("more than one ';' in an index list")
                self.take()
                target = derivs
                continue
            kind, tok = self.take()
            if kind != "name":
                raise MalformedFormError(f"expected an index name, found {tok!r}")
            if tok == "t":
                if target is not derivs:
                    raise MalformedFormError("'t' is only valid after ';'", index="t")
                t_order += 1
            else:
                target.append(Index(tok))
            if self.peek(","):
                self.take()
        self.take("}")
        return comps, derivs, t_order

    def call_args(self) -> List[Expression]:
        self.take("(")
        args = [self.expression()]
        while self.peek(","):
            self.take()
            args.append(self.expression())
        self.take(")")
        return args

    def name(self, tok: str, col: int) -> Expression:
        bound = self.ns.get(tok)
        if bound is None and self.peek("("):
            args = self.call_args()
            if tok == "Bilinear":
                if len(args) != 2:
                    raise MalformedFormError("Bilinear takes exactly two arguments")
                return Bilinear(*args)
            if tok in SUPPORTED_FUNCTIONS:
                if len(args) != 1:
                    raise MalformedFormError(f"{tok}() takes exactly one argument")
                return Apply(tok, args[0])
            raise MalformedFormError(f"unknown function '{tok}' at column {col}")
        if bound is None and tok in _DELTA_NAMES:
            comps, derivs, t_order = self.braces()
            if len(comps) != 2 or derivs or t_order:
                raise MalformedFormError("δ takes exactly two indices")
            return Delta(*comps)
        if bound is None and tok == "n":
            comps, derivs, t_order = self.braces()
            if len(comps) != 1 or derivs or t_order:
                raise MalformedFormError("the facet normal takes exactly one index")
            return NormalAccess(comps[0])
        if bound is None:
            raise MalformedFormError(f"unknown name '{tok}' at column {col}")

        if isinstance(bound, FieldVariable):
            if not self.peek("{"):
                return FieldAccess(bound)
            comps, derivs, t_order = self.braces()
            return FieldAccess(bound, tuple(comps), tuple(derivs), t_order)
        if isinstance(bound, TensorDefinition):
            if not self.peek("{"):
                return bound.access(())
            comps, derivs, t_order = self.braces()
            if derivs or t_order:
                raise MalformedFormError(f"cannot differentiate definition '{tok}'", form=tok)
            return bound.access(tuple(comps))
        if isinstance(bound, (numbers.Real, Expression)):
            return as_expression(bound)
        raise MalformedFormError(f"name '{tok}' is bound to unsupported {type(bound).__name__}")


def parse_expression(text: str, namespace: Mapping | None = None) -> Expression:
    """Parse one indicial expression."""
    p = _Parser(text, namespace or {})
    node = p.expression()
    if not p.at_end():
        _, tok, col = p.tokens[p.pos]
        raise MalformedFormError(f"trailing input {tok!r} at column {col}")
    return node


_DEF_RE = re.compile(r"^\s*([^\W\d]\w*)\s*(?:\{([^}]*)\})?\s*=(.*)$", re.UNICODE)


def parse_definitions(block: str, namespace: Mapping | None = None) -> Dict[str, object]:
    """Parse ``name{i,j} = expr`` lines into tensor definitions.

    A line without index braces, ``name = expr``, binds the plain expression
    instead, so whole weak forms can be named and combined.

    Later lines may refer to earlier ones.  Blank lines and ``#`` comments
    are ignored.  Returns a new namespace containing the input bindings
    plus every definition.
    """
    ns = dict(namespace or {})
    for lineno, raw in enumerate(block.splitlines(), 1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        m = _DEF_RE.match(line)
        if m is None:
            raise MalformedFormError(f"line {lineno}: expected 'name{{indices}} = expression'")
        name, idx, rhs = m.group(1), m.group(2), m.group(3)
        idx_names = [s.strip() for s in (idx or "").split(",") if s.strip()]
        try:
            body = parse_expression(rhs, ns)
        except MalformedFormError as exc:
            raise exc.in_form(name) from None
        definition = TensorDefinition(name, idx_names, body)
        # 'name = expr' binds a plain expression, e.g. a complete weak form
        ns[name] = definition if idx is not None else definition.body
    return ns
