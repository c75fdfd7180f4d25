from .expressions import (
    Abs, Apply, Bilinear, Constant, Delta, Expression, FacetNormal, FieldAccess, FieldVariable,
    Index, NormalAccess, Parameter, ParameterRef, Power, Prod, Quotient, Sum,
    TensorDefinition, cos, delta, exp, fields, indices, log, sin, sqrt, tanh,
)
from .expand import expand, expand_weak_form, free_indices
from .linearize import Linearization, linearize
from .parser import parse_definitions, parse_expression
from .symbols import FieldLayout, SymbolSlot, SymbolTable
