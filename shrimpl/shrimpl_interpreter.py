"""
The core Shrimpl interpreter: runtime errors, the builtin registry types and
the tree-walking Evaluator.

The Evaluator never reaches the network or the filesystem itself; every
effect goes through the capability table it is constructed with.
"""
import enum
import math
import os
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from shrimpl.shrimpl_datatypes import (
    Expr, NumberLit, StringLit, BoolLit, JsonLit, Var, Binary, Call, MethodCall,
    If, Repeat, ListLit, MapLit, Try, Program, Json, Scope,
    is_number, value_kind, strict_equal, to_value, to_json_data,
)
from shrimpl.shrimpl_printer import render_value

MAX_REPEAT = 10_000
MAX_CALL_DEPTH = 200

# Each Shrimpl call level costs several Python frames.
_RECURSION_LIMIT = MAX_CALL_DEPTH * 16 + 1000


# =================================================================
# Errors
# =================================================================

class ShrimplRuntimeError(RuntimeError):
    """Base class for evaluation failures. Aborts only the current evaluation."""
    kind = "RuntimeError"

    def __init__(self, message: str, node: Optional[Expr] = None):
        super().__init__(message)
        self.message = message
        self.node = node
        # Call frames (name, args) active when the error was raised, outermost first.
        self.stack: Optional[List[Tuple[str, List[Any]]]] = None

    @property
    def line(self) -> int:
        return getattr(self.node, "line", 0) if self.node is not None else 0

    @property
    def column(self) -> int:
        return getattr(self.node, "column", 0) if self.node is not None else 0


class UnknownVariable(ShrimplRuntimeError):
    kind = "UnknownVariable"


class TypeMismatch(ShrimplRuntimeError):
    kind = "TypeMismatch"


class ArityMismatch(ShrimplRuntimeError):
    kind = "ArityMismatch"


class UnknownCallable(ShrimplRuntimeError):
    kind = "UnknownCallable"


class IterationLimitExceeded(ShrimplRuntimeError):
    kind = "IterationLimitExceeded"


class BuiltinFailure(ShrimplRuntimeError):
    kind = "BuiltinFailure"


class DivisionByZero(ShrimplRuntimeError):
    kind = "DivisionByZero"


# =================================================================
# Builtin registry
# =================================================================

class FailurePolicy(enum.Enum):
    PROPAGATE = "propagate"
    ABSORB = "absorb"


@dataclass(frozen=True)
class Builtin:
    """One entry of the capability table.

    `max_args` of None means variadic. Under ABSORB, a failure becomes the
    string value "[<name> error] <message>" instead of aborting evaluation.
    """
    name: str
    invoke: Callable[..., Any]
    min_args: int = 0
    max_args: Optional[int] = 0
    policy: FailurePolicy = FailurePolicy.PROPAGATE
    doc: str = ""

    def accepts(self, count: int) -> bool:
        if count < self.min_args:
            return False
        return self.max_args is None or count <= self.max_args

    def arity_text(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args} to {self.max_args}"


CapabilityTable = Mapping[str, Builtin]


# =================================================================
# Evaluation targets
# =================================================================

@dataclass(frozen=True)
class ExprTarget:
    expr: Expr


@dataclass(frozen=True)
class FunctionTarget:
    name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class MethodTarget:
    qualified_name: str
    args: Tuple[Any, ...] = ()


Target = Union[ExprTarget, FunctionTarget, MethodTarget]


# =================================================================
# Value helpers
# =================================================================

def truthy(value: Any) -> bool:
    """Truthiness: Bool as-is, Number nonzero, String non-empty, Json always true."""
    if isinstance(value, bool):
        return value
    if is_number(value):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def canonical_text(value: Any) -> str:
    """Text used for string concatenation; matches response rendering."""
    return render_value(value)


# =================================================================
# Evaluator
# =================================================================

class Evaluator:
    """Evaluates Program targets against a capability table.

    One Evaluator may be reused across evaluations and threads; the only
    per-call state is the active call stack, kept per thread.
    """

    def __init__(self, program: Program, capabilities: Optional[CapabilityTable] = None,
                 globals: Optional[Mapping[str, Any]] = None):
        self.program = program
        self.capabilities: CapabilityTable = capabilities or {}
        self.globals = Scope({k: to_value(v) for k, v in (globals or {}).items()})
        self._local = threading.local()
        if sys.getrecursionlimit() < _RECURSION_LIMIT:
            sys.setrecursionlimit(_RECURSION_LIMIT)

    @property
    def call_stack(self) -> List[Tuple[str, List[Any]]]:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        return stack

    def _dbg(self, *parts):
        if os.environ.get("SHRIMPL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def evaluate(self, target: Target, variables: Optional[Mapping[str, Any]] = None) -> Any:
        """Public entry point. Returns a value or raises ShrimplRuntimeError."""
        self._local.stack = []
        try:
            return self._evaluate_target(target, variables)
        except RecursionError as err:
            node = target.expr if isinstance(target, ExprTarget) else None
            raise IterationLimitExceeded("Expression nesting too deep", node) from err

    def _evaluate_target(self, target: Target, variables: Optional[Mapping[str, Any]]) -> Any:
        match target:
            case ExprTarget(expr=expr):
                scope = Scope({k: to_value(v) for k, v in (variables or {}).items()}, parent=self.globals)
                return self.eval(expr, scope)
            case FunctionTarget(name=name, args=args):
                return self._call_named(name, [to_value(a) for a in args], None)
            case MethodTarget(qualified_name=qualified, args=args):
                class_name, _, method_name = qualified.partition(".")
                return self._call_method(class_name, method_name, [to_value(a) for a in args], None)
            case _:
                raise TypeError(f"Unsupported evaluation target: {target!r}")

    def eval(self, node: Expr, scope: Scope) -> Any:
        match node:
            case NumberLit(value=value):
                return float(value)
            case StringLit(value=value) | BoolLit(value=value):
                return value
            case JsonLit(value=value):
                return Json(to_json_data(value))
            case Var(name=name):
                owner = scope.find_owner(name)
                if owner is None:
                    raise UnknownVariable(f"Unknown variable '{name}'", node)
                return owner.bindings[name]
            case Binary():
                return self._eval_binary(node, scope)
            case Call(name=name, args=args):
                values = [self.eval(a, scope) for a in args]
                return self._call_named(name, values, node)
            case MethodCall(class_name=class_name, method_name=method_name, args=args):
                values = [self.eval(a, scope) for a in args]
                return self._call_method(class_name, method_name, values, node)
            case If(branches=branches, else_body=else_body):
                for cond, body in branches:
                    if truthy(self.eval(cond, scope)):
                        return self.eval(body, scope)
                if else_body is not None:
                    return self.eval(else_body, scope)
                return ""
            case Repeat():
                return self._eval_repeat(node, scope)
            case ListLit(items=items):
                return Json([to_json_data(self.eval(item, scope)) for item in items])
            case MapLit(entries=entries):
                out: Dict[str, Any] = {}
                for key, expr in entries:
                    out[key] = to_json_data(self.eval(expr, scope))
                return Json(out)
            case Try():
                return self._eval_try(node, scope)
            case _:
                raise TypeError(f"Cannot evaluate node of type {type(node).__name__}")

    # --- operators ---

    def _eval_binary(self, node: Binary, scope: Scope) -> Any:
        op = node.op
        if op == "and":
            return truthy(self.eval(node.left, scope)) and truthy(self.eval(node.right, scope))
        if op == "or":
            return truthy(self.eval(node.left, scope)) or truthy(self.eval(node.right, scope))

        left = self.eval(node.left, scope)
        right = self.eval(node.right, scope)
        match op:
            case "==":
                return strict_equal(left, right)
            case "!=":
                return not strict_equal(left, right)
            case "+":
                if isinstance(left, str) or isinstance(right, str):
                    return canonical_text(left) + canonical_text(right)
                self._require_numbers(op, left, right, node)
                return float(left + right)
            case "-" | "*" | "/":
                self._require_numbers(op, left, right, node)
                if op == "-":
                    return float(left - right)
                if op == "*":
                    return float(left * right)
                if right == 0:
                    raise DivisionByZero("Division by zero", node)
                return float(left / right)
            case "<" | "<=" | ">" | ">=":
                self._require_numbers(op, left, right, node)
                match op:
                    case "<":
                        return left < right
                    case "<=":
                        return left <= right
                    case ">":
                        return left > right
                    case _:
                        return left >= right
            case _:
                raise TypeMismatch(f"Unknown operator '{op}'", node)

    @staticmethod
    def _require_numbers(op: str, left: Any, right: Any, node: Expr):
        if not (is_number(left) and is_number(right)):
            raise TypeMismatch(
                f"Operator '{op}' expects numbers, got {value_kind(left)} and {value_kind(right)}",
                node,
            )

    # --- control flow ---

    def _eval_repeat(self, node: Repeat, scope: Scope) -> Any:
        count = self.eval(node.count, scope)
        if not is_number(count) or math.isnan(count):
            raise TypeMismatch(f"repeat count must be a number, got {value_kind(count)}", node)
        if math.isinf(count) and count > 0:
            raise IterationLimitExceeded(f"repeat count exceeds the limit of {MAX_REPEAT}", node)
        n = max(0, math.floor(count)) if not math.isinf(count) else 0
        if n > MAX_REPEAT:
            raise IterationLimitExceeded(f"repeat count {n} exceeds the limit of {MAX_REPEAT}", node)
        self._dbg("REPEAT", n)
        result: Any = ""
        for _ in range(n):
            result = self.eval(node.body, scope)
        return result

    def _eval_try(self, node: Try, scope: Scope) -> Any:
        try:
            return self.eval(node.body, scope)
        except ShrimplRuntimeError as err:
            if node.catch_body is None:
                raise
            self._dbg("CATCH", err.kind, err.message)
            catch_scope = scope.child({node.catch_var: err.message}) if node.catch_var else scope
            return self.eval(node.catch_body, catch_scope)
        finally:
            if node.finally_body is not None:
                self.eval(node.finally_body, scope)

    # --- calls ---

    def _enter(self, name: str, args: List[Any], node: Optional[Expr]):
        if len(self.call_stack) >= MAX_CALL_DEPTH:
            raise IterationLimitExceeded(
                f"Maximum call depth of {MAX_CALL_DEPTH} exceeded in '{name}'", node
            )
        self.call_stack.append((name, args))

    def _call_named(self, name: str, args: List[Any], node: Optional[Expr]) -> Any:
        builtin = self.capabilities.get(name)
        if builtin is not None:
            return self._invoke_builtin(builtin, args, node)
        fn = self.program.functions.get(name)
        if fn is None:
            raise UnknownCallable(f"Unknown function '{name}'", node)
        return self._apply(name, fn.params, fn.body, args, node)

    def _call_method(self, class_name: str, method_name: str, args: List[Any], node: Optional[Expr]) -> Any:
        qualified = f"{class_name}.{method_name}"
        builtin = self.capabilities.get(qualified)
        if builtin is not None:
            return self._invoke_builtin(builtin, args, node)
        cls = self.program.classes.get(class_name)
        if cls is None:
            raise UnknownCallable(f"Unknown class '{class_name}'", node)
        method = cls.method(method_name)
        if method is None:
            raise UnknownCallable(f"Unknown method '{qualified}'", node)
        return self._apply(qualified, method.params, method.body, args, node)

    def _apply(self, name: str, params: Sequence[str], body: Expr, args: List[Any], node: Optional[Expr]) -> Any:
        if len(args) != len(params):
            raise ArityMismatch(
                f"'{name}' expects {len(params)} argument(s), got {len(args)}", node
            )
        self._enter(name, args, node)
        try:
            self._dbg("CALL", name, [value_kind(a) for a in args])
            frame = Scope(dict(zip(params, args)), parent=self.globals)
            return self.eval(body, frame)
        except RecursionError as err:
            limit = IterationLimitExceeded(f"Expression nesting too deep in '{name}'", node)
            limit.stack = list(self.call_stack)
            raise limit from err
        except ShrimplRuntimeError as err:
            if err.stack is None:
                err.stack = list(self.call_stack)
            raise
        finally:
            self.call_stack.pop()

    def _invoke_builtin(self, builtin: Builtin, args: List[Any], node: Optional[Expr]) -> Any:
        if not builtin.accepts(len(args)):
            raise ArityMismatch(
                f"builtin '{builtin.name}' expects {builtin.arity_text()} argument(s), got {len(args)}",
                node,
            )
        self._dbg("BUILTIN", builtin.name, [value_kind(a) for a in args])
        try:
            return to_value(builtin.invoke(*args))
        except ShrimplRuntimeError as err:
            if builtin.policy is FailurePolicy.ABSORB:
                return f"[{builtin.name} error] {err.message}"
            if err.node is None:
                err.node = node
            raise
        except Exception as err:
            if builtin.policy is FailurePolicy.ABSORB:
                return f"[{builtin.name} error] {err}"
            raise BuiltinFailure(f"{builtin.name} failed: {err}", node) from err


__all__ = [
    "MAX_REPEAT",
    "MAX_CALL_DEPTH",
    "ShrimplRuntimeError",
    "UnknownVariable",
    "TypeMismatch",
    "ArityMismatch",
    "UnknownCallable",
    "IterationLimitExceeded",
    "BuiltinFailure",
    "DivisionByZero",
    "FailurePolicy",
    "Builtin",
    "CapabilityTable",
    "ExprTarget",
    "FunctionTarget",
    "MethodTarget",
    "Evaluator",
    "truthy",
]
