"""
Defines the core data types for the Shrimpl language.

This module provides the immutable AST (declarations and expressions), the
Program container built by the parser, and the runtime value helpers the
evaluator and the capability layer share.
"""

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union


# =================================================================
# Expressions
# =================================================================

@dataclass(frozen=True)
class Expr:
    """Base class for expression nodes. Positions never take part in equality."""
    pass


def _pos():
    return field(default=0, compare=False, repr=False)


@dataclass(frozen=True)
class NumberLit(Expr):
    value: float
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class StringLit(Expr):
    value: str
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class BoolLit(Expr):
    value: bool
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class JsonLit(Expr):
    """A constant JSON tree materialized at parse time (`json {...}`)."""
    value: Any
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class Var(Expr):
    name: str
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class Binary(Expr):
    op: str
    left: Expr
    right: Expr
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class Call(Expr):
    name: str
    args: Tuple[Expr, ...] = ()
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class MethodCall(Expr):
    class_name: str
    method_name: str
    args: Tuple[Expr, ...] = ()
    line: int = _pos()
    column: int = _pos()

    @property
    def qualified_name(self) -> str:
        return f"{self.class_name}.{self.method_name}"


@dataclass(frozen=True)
class If(Expr):
    """`if c1: e1 elif c2: e2 else: e3`. Branches are ordered (cond, body) pairs."""
    branches: Tuple[Tuple[Expr, Expr], ...]
    else_body: Optional[Expr] = None
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class Repeat(Expr):
    count: Expr
    body: Expr
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class ListLit(Expr):
    """`[a, b]`; items are evaluated, the result is a Json array."""
    items: Tuple[Expr, ...] = ()
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class MapLit(Expr):
    """`{key: expr}`; values are evaluated, the result is a Json object."""
    entries: Tuple[Tuple[str, Expr], ...] = ()
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class Try(Expr):
    """`try: body catch err: handler finally: cleanup`."""
    body: Expr
    catch_var: Optional[str] = None
    catch_body: Optional[Expr] = None
    finally_body: Optional[Expr] = None
    line: int = _pos()
    column: int = _pos()


# =================================================================
# Declarations
# =================================================================

@dataclass(frozen=True)
class ServerDecl:
    port: int
    tls: bool = False
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class ImportDecl:
    path: str
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class FunctionDef:
    name: str
    params: Tuple[str, ...]
    body: Expr
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class MethodDef:
    name: str
    params: Tuple[str, ...]
    body: Expr
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class ClassDef:
    name: str
    methods: Tuple[MethodDef, ...]
    line: int = _pos()
    column: int = _pos()

    def method(self, name: str) -> Optional[MethodDef]:
        for m in self.methods:
            if m.name == name:
                return m
        return None


@dataclass(frozen=True)
class FieldDef:
    name: str
    type_tag: str
    optional: bool = False
    primary_key: bool = False
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class ModelDef:
    """A storage entity; consumed by the persistence layer, never evaluated."""
    name: str
    fields: Tuple[FieldDef, ...]
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class EndpointDecl:
    method: str
    path: str
    body: Expr
    line: int = _pos()
    column: int = _pos()

    @property
    def path_params(self) -> Tuple[str, ...]:
        """Names of ':param' segments in declaration order."""
        return tuple(seg[1:] for seg in self.path.split("/") if seg.startswith(":") and len(seg) > 1)


@dataclass(frozen=True)
class SecretDecl:
    """`secret NAME = "ENV_KEY"`: a logical name backed by an environment key."""
    name: str
    key: str
    line: int = _pos()
    column: int = _pos()


@dataclass(frozen=True)
class TestDecl:
    """`test "name":` followed by one assertion expression per line."""
    __test__ = False  # keep pytest from collecting this class

    name: str
    assertions: Tuple[Expr, ...]
    line: int = _pos()
    column: int = _pos()


Decl = Union[ServerDecl, ImportDecl, FunctionDef, ClassDef, ModelDef, EndpointDecl, SecretDecl, TestDecl]


def _frozen_map(d: Optional[Mapping] = None) -> Mapping:
    return MappingProxyType(dict(d or {}))


@dataclass(frozen=True)
class Program:
    """A parsed Shrimpl file. Built once, read-only afterwards."""
    server: Optional[ServerDecl] = None
    endpoints: Tuple[EndpointDecl, ...] = ()
    functions: Mapping[str, FunctionDef] = field(default_factory=_frozen_map)
    classes: Mapping[str, ClassDef] = field(default_factory=_frozen_map)
    models: Mapping[str, ModelDef] = field(default_factory=_frozen_map)
    imports: Tuple[ImportDecl, ...] = ()
    secrets: Tuple[SecretDecl, ...] = ()
    tests: Tuple[TestDecl, ...] = ()
    # Every declaration in source order; drives ordered walks such as diagnostics.
    declarations: Tuple[Decl, ...] = ()

    @classmethod
    def from_declarations(cls, decls) -> 'Program':
        """Builds the keyed views from an ordered declaration list."""
        decls = tuple(decls)
        server = None
        functions: Dict[str, FunctionDef] = {}
        classes: Dict[str, ClassDef] = {}
        models: Dict[str, ModelDef] = {}
        for d in decls:
            if isinstance(d, ServerDecl):
                server = d
            elif isinstance(d, FunctionDef):
                functions[d.name] = d
            elif isinstance(d, ClassDef):
                classes[d.name] = d
            elif isinstance(d, ModelDef):
                models[d.name] = d
        return cls(
            server=server,
            endpoints=tuple(d for d in decls if isinstance(d, EndpointDecl)),
            functions=_frozen_map(functions),
            classes=_frozen_map(classes),
            models=_frozen_map(models),
            imports=tuple(d for d in decls if isinstance(d, ImportDecl)),
            secrets=tuple(d for d in decls if isinstance(d, SecretDecl)),
            tests=tuple(d for d in decls if isinstance(d, TestDecl)),
            declarations=decls,
        )

    def find_endpoint(self, method: str, path: str) -> Optional[EndpointDecl]:
        """First endpoint declared with exactly this method and path pattern."""
        for ep in self.endpoints:
            if ep.method == method and ep.path == path:
                return ep
        return None


# =================================================================
# Runtime values
# =================================================================
#
# Number -> float, String -> str, Bool -> bool, Json -> Json(data).

class Json:
    """A JSON tree value (null/bool/number/string/array/object).

    Kept distinct from `str` so a JSON document and a plain string never
    compare equal or concatenate the same way.
    """
    __slots__ = ("data",)

    def __init__(self, data: Any = None):
        self.data = data

    def __eq__(self, other):
        if not isinstance(other, Json):
            return NotImplemented
        return strict_equal(self.data, other.data)

    def __hash__(self):
        return hash(_hash_key(self.data))

    def __repr__(self) -> str:
        return f"Json({self.data!r})"


Value = Union[float, str, bool, Json]


def is_number(v: Any) -> bool:
    """True for int/float but not bool (bool subclasses int in Python)."""
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def value_kind(v: Any) -> str:
    if isinstance(v, bool):
        return "bool"
    if is_number(v):
        return "number"
    if isinstance(v, str):
        return "string"
    if isinstance(v, Json):
        return "json"
    return type(v).__name__


def _hash_key(data: Any) -> Any:
    # Consistent with strict_equal: key order is ignored and 1 hashes like 1.0.
    if isinstance(data, Json):
        return _hash_key(data.data)
    if isinstance(data, dict):
        return frozenset((k, _hash_key(v)) for k, v in data.items())
    if isinstance(data, (list, tuple)):
        return tuple(_hash_key(x) for x in data)
    return data


def strict_equal(a: Any, b: Any) -> bool:
    """Deep equality that never equates values of different kinds (True != 1)."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if is_number(a) or is_number(b):
        return is_number(a) and is_number(b) and a == b
    if isinstance(a, Json) and isinstance(b, Json):
        return strict_equal(a.data, b.data)
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(strict_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(strict_equal(x, y) for x, y in zip(a, b))
    if type(a) is not type(b):
        return False
    return a == b


def to_value(obj: Any) -> Value:
    """Normalizes a Python object into a Shrimpl value."""
    if isinstance(obj, (bool, str, Json)):
        return obj
    if is_number(obj):
        return float(obj)
    if obj is None or isinstance(obj, (dict, list, tuple)):
        return Json(to_json_data(obj))
    raise TypeError(f"Cannot convert {type(obj).__name__} to a Shrimpl value")


def to_json_data(obj: Any) -> Any:
    """Converts a value (or nested plain data holding values) into plain JSON data."""
    if isinstance(obj, Json):
        return copy.deepcopy(obj.data)
    if isinstance(obj, dict):
        return {str(k): to_json_data(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_json_data(x) for x in obj]
    return obj


# =================================================================
# Scopes
# =================================================================

class Scope:
    """Variable bindings with an optional parent used for global names.

    Calls never chain to the caller's scope: a call frame's parent is the
    globals scope only.
    """
    def __init__(self, bindings: Optional[Mapping[str, Any]] = None, parent: Optional['Scope'] = None):
        self.bindings: Dict[str, Any] = dict(bindings or {})
        self.parent = parent

    def find_owner(self, name: str) -> Optional['Scope']:
        if name in self.bindings:
            return self
        if self.parent is not None:
            return self.parent.find_owner(name)
        return None

    def __contains__(self, name: str) -> bool:
        return self.find_owner(name) is not None

    def __getitem__(self, name: str):
        owner = self.find_owner(name)
        if owner is None:
            raise KeyError(name)
        return owner.bindings[name]

    def child(self, bindings: Mapping[str, Any]) -> 'Scope':
        """A scope layered on top of this one (used for catch variables)."""
        return Scope(bindings, parent=self)

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        return f"<Scope bindings=[{keys}]>"


# =================================================================
# Tree utilities
# =================================================================

def free_variables(expr: Expr) -> FrozenSet[str]:
    """Collects every variable name referenced in `expr`.

    A catch variable is bound inside its own catch body, so references to it
    there are not free.
    """
    out: set = set()
    _collect_vars(expr, out)
    return frozenset(out)


def _collect_vars(expr: Expr, out: set):
    match expr:
        case Var(name=name):
            out.add(name)
        case Binary(left=left, right=right):
            _collect_vars(left, out)
            _collect_vars(right, out)
        case Call(args=args) | MethodCall(args=args) | ListLit(items=args):
            for a in args:
                _collect_vars(a, out)
        case MapLit(entries=entries):
            for _, v in entries:
                _collect_vars(v, out)
        case If(branches=branches, else_body=else_body):
            for cond, body in branches:
                _collect_vars(cond, out)
                _collect_vars(body, out)
            if else_body is not None:
                _collect_vars(else_body, out)
        case Repeat(count=count, body=body):
            _collect_vars(count, out)
            _collect_vars(body, out)
        case Try(body=body, catch_var=catch_var, catch_body=catch_body, finally_body=finally_body):
            _collect_vars(body, out)
            if catch_body is not None:
                inner = set(free_variables(catch_body))
                inner.discard(catch_var)
                out.update(inner)
            if finally_body is not None:
                _collect_vars(finally_body, out)
        case _:
            pass
