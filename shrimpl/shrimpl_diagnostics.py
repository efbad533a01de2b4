"""
Static diagnostics for Shrimpl programs: unused-parameter and
duplicate-endpoint warnings, plus an optional type checker driven by
function annotations (`types.functions` in the config file):

    "types": {
      "functions": {
        "add": { "params": ["number", "number"], "result": "number" }
      }
    }

Everything here is a pure function of the Program and the annotation
table; running it twice yields identical output.
"""
import enum
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from shrimpl.shrimpl_datatypes import (
    Expr, NumberLit, StringLit, BoolLit, JsonLit, Var, Binary, Call, MethodCall,
    If, Repeat, ListLit, MapLit, Try,
    EndpointDecl, FunctionDef, ClassDef, Program, free_variables,
)


@dataclass(frozen=True)
class Diagnostic:
    kind: str       # "warning" | "error"
    scope: str      # "endpoint" | "function" | "method" | "call" | "expression"
    name: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class Ty(enum.Enum):
    NUMBER = "number"
    STRING = "string"
    BOOL = "bool"
    ANY = "any"

    def __str__(self) -> str:
        return self.value


_TYPE_ALIASES = {
    "number": Ty.NUMBER, "float": Ty.NUMBER, "int": Ty.NUMBER, "integer": Ty.NUMBER,
    "string": Ty.STRING, "str": Ty.STRING,
    "bool": Ty.BOOL, "boolean": Ty.BOOL,
}

_ARITHMETIC = ("+", "-", "*", "/")


def parse_type_name(name: Optional[str]) -> Ty:
    if not isinstance(name, str):
        return Ty.ANY
    return _TYPE_ALIASES.get(name.strip().lower(), Ty.ANY)


def assignable(actual: Ty, expected: Ty) -> bool:
    return expected is Ty.ANY or actual is Ty.ANY or actual is expected


@dataclass(frozen=True)
class FunctionType:
    params: Tuple[str, ...]
    result: Optional[str] = None


def load_annotations(section: Optional[Mapping[str, Any]]) -> Dict[str, FunctionType]:
    """Reads the `types.functions` mapping; malformed entries are skipped."""
    out: Dict[str, FunctionType] = {}
    if not isinstance(section, Mapping):
        return out
    for name, entry in section.items():
        if not isinstance(entry, Mapping):
            continue
        params = entry.get("params") or []
        if not isinstance(params, (list, tuple)):
            continue
        result = entry.get("result")
        out[str(name)] = FunctionType(tuple(str(p) for p in params), result if isinstance(result, str) else None)
    return out


class TypeChecker:
    """Infers body types of annotated functions and checks them against their annotations."""

    def __init__(self, annotations: Mapping[str, FunctionType]):
        self.annotations = annotations

    def check_function(self, fn: FunctionDef) -> List[Diagnostic]:
        annot = self.annotations.get(fn.name)
        if annot is None:
            return []
        if len(annot.params) != len(fn.params):
            return [Diagnostic(
                "error", "function", fn.name,
                f"Type annotation has {len(annot.params)} params but function "
                f"'{fn.name}' has {len(fn.params)} params",
            )]
        env = {p: parse_type_name(t) for p, t in zip(fn.params, annot.params)}
        diags: List[Diagnostic] = []
        body_ty = self.infer(fn.body, env, fn.name, diags)
        if annot.result is not None:
            expected = parse_type_name(annot.result)
            if not assignable(body_ty, expected):
                diags.append(Diagnostic(
                    "error", "function", fn.name,
                    f"Return type mismatch: expected {expected}, got {body_ty}",
                ))
        return diags

    def infer(self, expr: Expr, env: Mapping[str, Ty], owner: str, diags: List[Diagnostic]) -> Ty:
        match expr:
            case NumberLit():
                return Ty.NUMBER
            case StringLit():
                return Ty.STRING
            case BoolLit():
                return Ty.BOOL
            case JsonLit() | ListLit() | MapLit():
                return Ty.ANY
            case Var(name=name):
                return env.get(name, Ty.ANY)
            case Binary(op=op, left=left, right=right) if op in _ARITHMETIC:
                lt = self.infer(left, env, owner, diags)
                rt = self.infer(right, env, owner, diags)
                if op == "+" and Ty.STRING in (lt, rt):
                    return Ty.STRING
                if not assignable(lt, Ty.NUMBER) or not assignable(rt, Ty.NUMBER):
                    diags.append(Diagnostic(
                        "warning", "expression", owner,
                        "Numeric operator used with non-number operand(s)",
                    ))
                return Ty.NUMBER
            case Binary(left=left, right=right):
                self.infer(left, env, owner, diags)
                self.infer(right, env, owner, diags)
                return Ty.BOOL
            case Call(name=name, args=args):
                return self._infer_call(name, args, env, owner, diags)
            case MethodCall():
                return Ty.ANY
            case If(branches=branches, else_body=else_body):
                tys = []
                for cond, body in branches:
                    self.infer(cond, env, owner, diags)
                    tys.append(self.infer(body, env, owner, diags))
                if else_body is not None:
                    tys.append(self.infer(else_body, env, owner, diags))
                return _join(tys)
            case Repeat(count=count, body=body):
                self.infer(count, env, owner, diags)
                return self.infer(body, env, owner, diags)
            case Try(body=body, catch_var=catch_var, catch_body=catch_body, finally_body=finally_body):
                tys = [self.infer(body, env, owner, diags)]
                if catch_body is not None:
                    catch_env = dict(env)
                    if catch_var:
                        catch_env[catch_var] = Ty.STRING
                    tys.append(self.infer(catch_body, catch_env, owner, diags))
                else:
                    # No catch: the error escapes.
                    tys.append(Ty.ANY)
                if finally_body is not None:
                    self.infer(finally_body, env, owner, diags)
                return _join(tys)
            case _:
                return Ty.ANY

    def _infer_call(self, name: str, args, env, owner: str, diags: List[Diagnostic]) -> Ty:
        annot = self.annotations.get(name)
        if annot is None:
            return Ty.ANY
        if len(annot.params) != len(args):
            diags.append(Diagnostic(
                "error", "call", name,
                f"Call to '{name}' expected {len(annot.params)} arguments but got {len(args)}",
            ))
        else:
            for idx, (arg, ty_name) in enumerate(zip(args, annot.params), start=1):
                expected = parse_type_name(ty_name)
                actual = self.infer(arg, env, owner, diags)
                if not assignable(actual, expected):
                    diags.append(Diagnostic(
                        "error", "call", name,
                        f"Argument {idx} to '{name}' has type {actual} but annotation expects {expected}",
                    ))
        return parse_type_name(annot.result)


def _join(tys: List[Ty]) -> Ty:
    if tys and all(t is tys[0] for t in tys):
        return tys[0]
    return Ty.ANY


def _unused_params(params, body: Expr) -> List[str]:
    used = free_variables(body)
    return [p for p in params if p not in used]


def build_diagnostics(program: Program, annotations: Optional[Mapping[str, Any]] = None) -> List[Diagnostic]:
    """One ordered walk over the Program's declarations.

    `annotations` may be a mapping of FunctionType or the raw
    `types.functions` section from a config file.
    """
    table = _coerce_annotations(annotations)
    checker = TypeChecker(table)
    diags: List[Diagnostic] = []
    seen_endpoints: Set[Tuple[str, str]] = set()

    for decl in program.declarations:
        match decl:
            case EndpointDecl(method=method, path=path, body=body):
                key = (method, path)
                if key in seen_endpoints:
                    diags.append(Diagnostic("warning", "endpoint", path, f"Duplicate endpoint for {method} {path}"))
                seen_endpoints.add(key)
                for param in _unused_params(decl.path_params, body):
                    diags.append(Diagnostic(
                        "warning", "endpoint", path,
                        f"Path parameter :{param} is never used in this endpoint body",
                    ))
            case FunctionDef(name=name, params=params, body=body):
                for param in _unused_params(params, body):
                    diags.append(Diagnostic(
                        "warning", "function", name,
                        f"Parameter '{param}' is never used in function body",
                    ))
                diags.extend(checker.check_function(decl))
            case ClassDef(name=class_name, methods=methods):
                for method in methods:
                    for param in _unused_params(method.params, method.body):
                        diags.append(Diagnostic(
                            "warning", "method", f"{class_name}.{method.name}",
                            f"Parameter '{param}' is never used in method body",
                        ))
    return diags


def _coerce_annotations(annotations: Optional[Mapping[str, Any]]) -> Dict[str, FunctionType]:
    if not annotations:
        return {}
    if all(isinstance(v, FunctionType) for v in annotations.values()):
        return dict(annotations)
    return load_annotations(annotations)


def split_diagnostics(diags: List[Diagnostic]) -> Dict[str, List[Dict[str, str]]]:
    """Groups diagnostics into the {"errors": [...], "warnings": [...]} document shape."""
    return {
        "errors": [d.to_dict() for d in diags if d.kind == "error"],
        "warnings": [d.to_dict() for d in diags if d.kind == "warning"],
    }


__all__ = [
    "Diagnostic",
    "Ty",
    "FunctionType",
    "TypeChecker",
    "parse_type_name",
    "assignable",
    "load_annotations",
    "build_diagnostics",
    "split_diagnostics",
]
