"""
A pretty-printer for Shrimpl syntax trees and values.

`Printer.pformat` produces canonical source text that parses back to a
structurally equal tree. `render_value` produces the response text for a
runtime value.
"""
import json
import math
import re
from typing import Any

from shrimpl.shrimpl_datatypes import (
    NumberLit, StringLit, BoolLit, JsonLit, Var, Binary, Call, MethodCall,
    If, Repeat, ListLit, MapLit, Try,
    ServerDecl, ImportDecl, FunctionDef, MethodDef, ClassDef, FieldDef, ModelDef,
    EndpointDecl, SecretDecl, TestDecl, Program, Json, is_number,
)
from shrimpl.shrimpl_lexer import KEYWORDS

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_STRING_ESCAPES = {'"': '\\"', "\\": "\\\\", "\n": "\\n", "\t": "\\t", "\r": "\\r"}


def format_number(n: Any) -> str:
    """Shortest decimal text: integral values drop the fraction (2, not 2.0)."""
    if isinstance(n, float) and (math.isnan(n) or math.isinf(n)):
        return repr(n)
    if float(n).is_integer():
        return str(int(n))
    return repr(float(n))


def quote_string(s: str) -> str:
    out = []
    for ch in s:
        if ch in _STRING_ESCAPES:
            out.append(_STRING_ESCAPES[ch])
        elif ord(ch) < 0x20:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return '"' + "".join(out) + '"'


def _plain(data: Any) -> Any:
    # Integral floats become ints so JSON output reads `2`, not `2.0`.
    if isinstance(data, bool) or data is None or isinstance(data, str):
        return data
    if is_number(data):
        return int(data) if float(data).is_integer() and not math.isinf(data) else data
    if isinstance(data, dict):
        return {k: _plain(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_plain(x) for x in data]
    return data


def render_value(value: Any) -> str:
    """Renders a runtime value as response text."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, Json):
        return json.dumps(_plain(value.data), ensure_ascii=False, indent=2)
    return str(value)


class Printer:
    """Formats Shrimpl AST nodes and Programs into valid Shrimpl source strings."""

    def __init__(self, indent_width=4):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._handlers.get(type(obj))
        if handler is None:
            raise TypeError(f"Cannot format object of type {type(obj).__name__}")
        return handler(obj, level)

    def _create_handlers(self):
        return {
            NumberLit: self._pformat_number,
            StringLit: self._pformat_string,
            BoolLit: self._pformat_bool,
            JsonLit: self._pformat_json_lit,
            Var: self._pformat_var,
            Binary: self._pformat_binary,
            Call: self._pformat_call,
            MethodCall: self._pformat_method_call,
            If: self._pformat_if,
            Repeat: self._pformat_repeat,
            ListLit: self._pformat_list,
            MapLit: self._pformat_map,
            Try: self._pformat_try,
            ServerDecl: self._pformat_server,
            ImportDecl: self._pformat_import,
            FunctionDef: self._pformat_function,
            MethodDef: self._pformat_method,
            ClassDef: self._pformat_class,
            FieldDef: self._pformat_field,
            ModelDef: self._pformat_model,
            EndpointDecl: self._pformat_endpoint,
            SecretDecl: self._pformat_secret,
            TestDecl: self._pformat_test,
            Program: self._pformat_program,
        }

    # --- expressions ---

    def _nested(self, expr, level):
        """Formats a child expression, parenthesizing anything that is not atomic."""
        text = self.pformat(expr, level)
        if isinstance(expr, (Binary, If, Repeat, Try)):
            return f"({text})"
        return text

    def _pformat_number(self, obj, level):
        return format_number(obj.value)

    def _pformat_string(self, obj, level):
        return quote_string(obj.value)

    def _pformat_bool(self, obj, level):
        return "true" if obj.value else "false"

    def _pformat_json_lit(self, obj, level):
        return "json " + self._json_text(obj.value)

    def _json_text(self, data):
        if data is None:
            return "null"
        if isinstance(data, bool):
            return "true" if data else "false"
        if is_number(data):
            return format_number(data)
        if isinstance(data, str):
            return quote_string(data)
        if isinstance(data, dict):
            inner = ", ".join(f"{quote_string(k)}: {self._json_text(v)}" for k, v in data.items())
            return "{" + inner + "}"
        if isinstance(data, (list, tuple)):
            return "[" + ", ".join(self._json_text(x) for x in data) + "]"
        raise TypeError(f"Cannot format JSON value of type {type(data).__name__}")

    def _pformat_var(self, obj, level):
        return obj.name

    def _pformat_binary(self, obj, level):
        return f"{self._nested(obj.left, level)} {obj.op} {self._nested(obj.right, level)}"

    def _args(self, args, level):
        return ", ".join(self._nested(a, level) for a in args)

    def _pformat_call(self, obj, level):
        return f"{obj.name}({self._args(obj.args, level)})"

    def _pformat_method_call(self, obj, level):
        return f"{obj.class_name}.{obj.method_name}({self._args(obj.args, level)})"

    def _pformat_if(self, obj, level):
        parts = []
        for i, (cond, body) in enumerate(obj.branches):
            keyword = "if" if i == 0 else "elif"
            parts.append(f"{keyword} {self._nested(cond, level)}: {self._nested(body, level)}")
        if obj.else_body is not None:
            parts.append(f"else: {self._nested(obj.else_body, level)}")
        return " ".join(parts)

    def _pformat_repeat(self, obj, level):
        return f"repeat {self._nested(obj.count, level)} times: {self._nested(obj.body, level)}"

    def _pformat_try(self, obj, level):
        text = f"try: {self._nested(obj.body, level)}"
        if obj.catch_body is not None:
            text += f" catch {obj.catch_var}: {self._nested(obj.catch_body, level)}"
        if obj.finally_body is not None:
            text += f" finally: {self._nested(obj.finally_body, level)}"
        return text

    def _pformat_list(self, obj, level):
        return "[" + self._args(obj.items, level) + "]"

    def _pformat_map(self, obj, level):
        entries = []
        for key, value in obj.entries:
            key_text = key if _IDENT_RE.match(key) and key not in KEYWORDS else quote_string(key)
            entries.append(f"{key_text}: {self._nested(value, level)}")
        return "{" + ", ".join(entries) + "}"

    # --- declarations ---

    def _pformat_server(self, obj, level):
        return f"server {obj.port}" + (" tls" if obj.tls else "")

    def _pformat_import(self, obj, level):
        return f"import {quote_string(obj.path)}"

    def _pformat_function(self, obj, level):
        return f"func {obj.name}({', '.join(obj.params)}): {self.pformat(obj.body, level)}"

    def _pformat_method(self, obj, level):
        indent = self._indent_char * level
        return f"{indent}{obj.name}({', '.join(obj.params)}): {self.pformat(obj.body, level)}"

    def _pformat_class(self, obj, level):
        lines = [f"class {obj.name}:"]
        lines.extend(self.pformat(m, level + 1) for m in obj.methods)
        return "\n".join(lines)

    def _pformat_field(self, obj, level):
        indent = self._indent_char * level
        text = f"{indent}{obj.name}{'?' if obj.optional else ''}: {obj.type_tag}"
        return text + (" pk" if obj.primary_key else "")

    def _pformat_model(self, obj, level):
        lines = [f"model {obj.name}:"]
        lines.extend(self.pformat(f, level + 1) for f in obj.fields)
        return "\n".join(lines)

    def _pformat_endpoint(self, obj, level):
        return f"endpoint {obj.method} {quote_string(obj.path)}: {self.pformat(obj.body, level)}"

    def _pformat_secret(self, obj, level):
        return f"secret {obj.name} = {quote_string(obj.key)}"

    def _pformat_test(self, obj, level):
        indent = self._indent_char * (level + 1)
        lines = [f"test {quote_string(obj.name)}:"]
        lines.extend(indent + self.pformat(a, level + 1) for a in obj.assertions)
        return "\n".join(lines)

    def _pformat_program(self, obj, level):
        return "\n".join(self.pformat(d, level) for d in obj.declarations) + "\n"


def pformat(obj) -> str:
    return Printer().pformat(obj)


__all__ = [
    "Printer",
    "pformat",
    "render_value",
    "format_number",
    "quote_string",
]
