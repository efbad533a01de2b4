"""
The Shrimpl runtime: process-wide context, the standard builtin library,
and the ScriptRunner-style front door (`ShrimplRunner`) that parses,
evaluates, checks and tests programs.
"""
import csv
import io
import math
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple

from shrimpl import shrimpl_http
from shrimpl.shrimpl_lexer import ParseError
from shrimpl.shrimpl_parser import parse_program, parse_expression
from shrimpl.shrimpl_datatypes import Program, EndpointDecl, Json, is_number, to_json_data
from shrimpl.shrimpl_interpreter import (
    Evaluator, Builtin, FailurePolicy, CapabilityTable,
    ExprTarget, FunctionTarget, MethodTarget,
    ShrimplRuntimeError, truthy,
)
from shrimpl.shrimpl_diagnostics import Diagnostic, build_diagnostics
from shrimpl.shrimpl_config import ShrimplConfig, load_config, apply_server_overrides
from shrimpl.shrimpl_printer import render_value, Printer
from shrimpl.shrimpl_serialize import deserialize, serialize, SerializationError

DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


def _dbg(*parts):
    if os.environ.get("SHRIMPL_DEBUG"):
        print("[DBG]", *parts, file=sys.stderr)


# ===================================================================
# 1. Process-wide state
# ===================================================================

class RuntimeContext:
    """Mutable state shared by every builtin: OpenAI settings, config store, TTL cache.

    Every read and write happens under `lock`; network calls never do.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None,
                 secrets_env: Optional[Mapping[str, str]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.lock = threading.Lock()
        self.api_key: Optional[str] = os.environ.get("SHRIMPL_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        self.system_prompt: Optional[str] = None
        self.model = DEFAULT_OPENAI_MODEL
        self.base_url = DEFAULT_OPENAI_BASE_URL
        self.clock = clock
        self._store: Dict[str, Any] = {}
        self._cache: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._secrets_env: Dict[str, str] = dict(secrets_env or {})
        for k, v in (values or {}).items():
            self._store[str(k)] = _seed_value(v)

    # --- OpenAI settings ---

    def set_api_key(self, key: str):
        with self.lock:
            self.api_key = key

    def set_system_prompt(self, prompt: str):
        with self.lock:
            self.system_prompt = prompt

    def openai_settings(self) -> Tuple[Optional[str], Optional[str], str, str]:
        with self.lock:
            return self.api_key, self.system_prompt, self.model, self.base_url

    # --- config store ---

    def config_set(self, key: str, value: Any):
        with self.lock:
            self._store[key] = value

    def config_get(self, key: str, default: Any = None) -> Any:
        with self.lock:
            return self._store.get(key, default)

    def config_has(self, key: str) -> bool:
        with self.lock:
            return key in self._store

    # --- secrets ---

    def add_secrets(self, mapping: Mapping[str, str]):
        with self.lock:
            self._secrets_env.update(mapping)

    def secret_env_key(self, name: str) -> str:
        with self.lock:
            return self._secrets_env.get(name, name)

    # --- TTL cache ---

    def cache_set(self, key: str, value: Any, ttl: Optional[float] = None):
        with self.lock:
            expires = self.clock() + ttl if ttl is not None else None
            self._cache[key] = (value, expires)

    def cache_get(self, key: str) -> Tuple[bool, Any]:
        with self.lock:
            entry = self._cache.get(key)
            if entry is None:
                return False, None
            value, expires = entry
            if expires is not None and self.clock() > expires:
                del self._cache[key]
                return False, None
            return True, value

    def cache_delete(self, key: str) -> bool:
        with self.lock:
            return self._cache.pop(key, None) is not None


def _seed_value(v: Any) -> Any:
    if isinstance(v, (bool, str, Json)):
        return v
    if is_number(v):
        return float(v)
    return Json(to_json_data(v))


# ===================================================================
# 2. Standard library
# ===================================================================

class OpenAIError(RuntimeError):
    pass


def _text(v: Any) -> str:
    return render_value(v)


def _as_number(v: Any, label: str = "value") -> float:
    if isinstance(v, bool):
        raise ValueError(f"{label} '{_text(v)}' is not a number")
    if is_number(v):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError:
            raise ValueError(f"{label} '{v}' is not a number") from None
    raise ValueError(f"{label} of kind json is not a number")


def _json_data(v: Any, label: str) -> Any:
    """Accepts a Json value or a string holding JSON text."""
    if isinstance(v, Json):
        return v.data
    if isinstance(v, str):
        try:
            return deserialize(v, fmt='json', strict=True)
        except SerializationError as e:
            raise ValueError(f"{label}: not valid JSON: {e}") from e
    raise ValueError(f"{label}: expected a JSON value, got {_text(v)!r}")


def _number_array(v: Any, label: str) -> List[float]:
    data = _json_data(v, label)
    if not isinstance(data, list):
        raise ValueError(f"{label}: JSON value is not an array")
    out = []
    for item in data:
        if isinstance(item, bool) or not (is_number(item) or isinstance(item, str)):
            raise ValueError(f"{label}: element is not a number")
        out.append(_as_number(item, f"{label}: element"))
    return out


def _numbers_from_args(args, label: str) -> List[float]:
    # sum(json [1, 2]) and sum(1, 2) are equivalent
    if len(args) == 1 and isinstance(args[0], Json):
        return _number_array(args[0], label)
    return [_as_number(a) for a in args]


def _parse_df(v: Any) -> Tuple[List[str], List[list]]:
    data = _json_data(v, "df")
    if not isinstance(data, dict):
        raise ValueError("df: not a JSON table")
    if "columns" not in data:
        raise ValueError("df: missing 'columns' field")
    if "rows" not in data:
        raise ValueError("df: missing 'rows' field")
    columns, rows = data["columns"], data["rows"]
    if not isinstance(columns, list):
        raise ValueError("df: 'columns' is not an array")
    if not isinstance(rows, list):
        raise ValueError("df: 'rows' is not an array")
    return [c if isinstance(c, str) else "" for c in columns], rows


def _csv_cell(field_text: str) -> Any:
    try:
        n = float(field_text)
    except ValueError:
        return field_text
    return n if math.isfinite(n) else field_text


class StdLib:
    """Builtin implementations. A method named `_foo` backs the builtin `foo`."""

    def __init__(self, context: RuntimeContext):
        self.context = context

    # --- strings ---
    def _len(self, x):
        if isinstance(x, Json) and isinstance(x.data, (list, dict)):
            return len(x.data)
        return len(_text(x))

    def _upper(self, x): return _text(x).upper()
    def _lower(self, x): return _text(x).lower()
    def _number(self, x): return _as_number(x)
    def _string(self, x): return _text(x)

    # --- numeric analysis ---
    def _sum(self, *args):
        return sum(_numbers_from_args(args, "sum"))

    def _avg(self, *args):
        nums = _numbers_from_args(args, "avg")
        if not nums:
            raise ValueError("avg of an empty array")
        return sum(nums) / len(nums)

    def _min(self, *args):
        nums = _numbers_from_args(args, "min")
        if not nums:
            raise ValueError("min of an empty array")
        return min(nums)

    def _max(self, *args):
        nums = _numbers_from_args(args, "max")
        if not nums:
            raise ValueError("max of an empty array")
        return max(nums)

    # --- config and environment ---
    def _config_set(self, key, value):
        self.context.config_set(_text(key), value)
        return "ok"

    def _config_get(self, key, default=""):
        return self.context.config_get(_text(key), default)

    def _config_has(self, key):
        return self.context.config_has(_text(key))

    def _env(self, name):
        return os.environ.get(_text(name), "")

    def _get_secret(self, name):
        env_key = self.context.secret_env_key(_text(name))
        value = os.environ.get(env_key)
        if value is None:
            raise LookupError(f"secret '{_text(name)}' is not set (environment variable {env_key})")
        return value

    # --- HTTP ---
    def _http_get(self, url):
        return shrimpl_http.http_get(_text(url))

    def _http_get_json(self, url):
        return Json(shrimpl_http.http_get_json(_text(url)))

    def _http_get_many(self, urls):
        data = _json_data(urls, "http_get_many")
        if not isinstance(data, list):
            raise ValueError("http_get_many: expected an array of URLs")
        return Json(shrimpl_http.http_get_many([str(u) for u in data]))

    # --- vectors / tensors ---
    def _vec(self, *args):
        out = []
        for v in args:
            try:
                out.append(_as_number(v))
            except ValueError:
                out.append(_text(v))
        return Json(out)

    def _tensor_add(self, a, b):
        xs = _number_array(a, "tensor_add a")
        ys = _number_array(b, "tensor_add b")
        if len(xs) != len(ys):
            raise ValueError("tensor_add: arrays must have the same length")
        return Json([x + y for x, y in zip(xs, ys)])

    def _tensor_dot(self, a, b):
        xs = _number_array(a, "tensor_dot a")
        ys = _number_array(b, "tensor_dot b")
        if len(xs) != len(ys):
            raise ValueError("tensor_dot: arrays must have the same length")
        return sum(x * y for x, y in zip(xs, ys))

    # --- data frames ---
    def _df_from_csv(self, url):
        text = shrimpl_http.http_get(_text(url))
        reader = csv.reader(io.StringIO(text))
        try:
            columns = next(reader)
        except StopIteration:
            raise ValueError(f"df_from_csv({_text(url)}): empty CSV document") from None
        rows = [[_csv_cell(f) for f in record] for record in reader if record]
        return Json({"columns": columns, "rows": rows})

    def _df_head(self, df, n):
        columns, rows = _parse_df(df)
        count = max(0, int(_as_number(n)))
        return Json({"columns": columns, "rows": rows[:count]})

    def _df_select(self, df, cols):
        names = [s.strip() for s in _text(cols).split(",") if s.strip()]
        if not names:
            raise ValueError("df_select: columns string must not be empty")
        columns, rows = _parse_df(df)
        indices = []
        for name in names:
            if name not in columns:
                raise ValueError(f"df_select: column '{name}' not found in dataframe")
            indices.append(columns.index(name))
        new_rows = []
        for row in rows:
            if not isinstance(row, list):
                raise ValueError("df_select: row is not an array")
            if any(i >= len(row) for i in indices):
                raise ValueError("df_select: row shorter than expected")
            new_rows.append([row[i] for i in indices])
        return Json({"columns": names, "rows": new_rows})

    # --- simple linear regression ---
    def _linreg_fit(self, xs_in, ys_in):
        xs = _number_array(xs_in, "linreg_fit xs")
        ys = _number_array(ys_in, "linreg_fit ys")
        if len(xs) != len(ys):
            raise ValueError("linreg_fit: xs and ys must have the same length")
        if len(xs) < 2:
            raise ValueError("linreg_fit: need at least 2 points")
        n = len(xs)
        mean_x = sum(xs) / n
        mean_y = sum(ys) / n
        num = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
        den = sum((x - mean_x) ** 2 for x in xs)
        if den == 0:
            raise ValueError("linreg_fit: variance of x is zero")
        a = num / den
        return Json({"kind": "linreg", "a": a, "b": mean_y - a * mean_x})

    def _linreg_predict(self, model, x):
        data = _json_data(model, "linreg_predict")
        if not isinstance(data, dict):
            raise ValueError("linreg_predict: model is not a JSON object")
        coeffs = []
        for key in ("a", "b"):
            c = data.get(key)
            if not is_number(c):
                raise ValueError(f"linreg_predict: model missing numeric '{key}'")
            coeffs.append(float(c))
        a, b = coeffs
        return a * _as_number(x) + b

    # --- TTL cache ---
    def _cache_set(self, key, value, ttl=None):
        seconds = None
        if ttl is not None:
            seconds = _as_number(ttl, "ttl")
            if seconds < 0:
                raise ValueError("cache_set: ttl must not be negative")
        self.context.cache_set(_text(key), value, seconds)
        return "ok"

    def _cache_get(self, key, default=""):
        found, value = self.context.cache_get(_text(key))
        return value if found else default

    def _cache_delete(self, key):
        self.context.cache_delete(_text(key))
        return "ok"

    # --- OpenAI ---
    def _openai_set_api_key(self, key):
        self.context.set_api_key(_text(key))
        return "ok"

    def _openai_set_system_prompt(self, prompt):
        self.context.set_system_prompt(_text(prompt))
        return "ok"

    def _openai_post(self, endpoint: str, payload: dict) -> Any:
        api_key, _, _, base_url = self.context.openai_settings()
        if not api_key:
            raise OpenAIError(
                "Missing OpenAI API key. Set SHRIMPL_OPENAI_API_KEY / OPENAI_API_KEY "
                "or call openai_set_api_key(key)."
            )
        url = f"{base_url.rstrip('/')}/{endpoint}"
        _dbg("OPENAI", endpoint, payload.get("model"))
        return shrimpl_http.http_post_json(
            url, payload, config={"headers": {"Authorization": f"Bearer {api_key}"}, "timeout": 60.0, "retries": 0}
        )

    def _chat_payload(self, message) -> dict:
        _, system_prompt, model, _ = self.context.openai_settings()
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": _text(message)})
        return {"model": model, "messages": messages}

    def _openai_chat(self, message):
        resp = self._openai_post("chat/completions", self._chat_payload(message))
        try:
            content = resp["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise OpenAIError("OpenAI response malformed: missing choices[0].message.content") from None
        return content if isinstance(content, str) else ""

    def _openai_chat_json(self, message):
        return Json(self._openai_post("chat/completions", self._chat_payload(message)))

    def _openai_mcp_call(self, server_id, tool_name, args):
        if isinstance(args, Json):
            args_data = args.data
        else:
            try:
                args_data = _json_data(args, "openai_mcp_call")
            except ValueError:
                args_data = {"raw": _text(args)}
        _, _, model, _ = self.context.openai_settings()
        payload = {
            "model": model,
            "input": (
                f"Call MCP tool '{_text(tool_name)}' on server '{_text(server_id)}' "
                f"with args: {serialize(args_data, fmt='json', pretty=False)}"
            ),
        }
        return Json(self._openai_post("responses", payload))


# name: (min_args, max_args or None for variadic, policy, doc)
BUILTIN_SPECS: Dict[str, Tuple[int, Optional[int], FailurePolicy, str]] = {
    "len": (1, 1, FailurePolicy.PROPAGATE, "len(x): length of the text of x, or item count of a JSON array/object"),
    "upper": (1, 1, FailurePolicy.PROPAGATE, "upper(x): upper-cased text"),
    "lower": (1, 1, FailurePolicy.PROPAGATE, "lower(x): lower-cased text"),
    "number": (1, 1, FailurePolicy.PROPAGATE, "number(x): parse x as a number"),
    "string": (1, 1, FailurePolicy.PROPAGATE, "string(x): canonical text of x"),
    "sum": (1, None, FailurePolicy.PROPAGATE, "sum(a, ...): total of numbers or of one JSON array"),
    "avg": (1, None, FailurePolicy.PROPAGATE, "avg(a, ...): arithmetic mean"),
    "min": (1, None, FailurePolicy.PROPAGATE, "min(a, ...): smallest number"),
    "max": (1, None, FailurePolicy.PROPAGATE, "max(a, ...): largest number"),
    "config_set": (2, 2, FailurePolicy.PROPAGATE, "config_set(key, value): store a runtime config value"),
    "config_get": (1, 2, FailurePolicy.PROPAGATE, "config_get(key, [default]): read a runtime config value"),
    "config_has": (1, 1, FailurePolicy.PROPAGATE, "config_has(key): whether a config value exists"),
    "env": (1, 1, FailurePolicy.PROPAGATE, "env(name): environment variable or \"\""),
    "get_secret": (1, 1, FailurePolicy.PROPAGATE, "get_secret(name): resolve a logical secret from the environment"),
    "http_get": (1, 1, FailurePolicy.PROPAGATE, "http_get(url): response body text"),
    "http_get_json": (1, 1, FailurePolicy.PROPAGATE, "http_get_json(url): response body parsed as JSON"),
    "http_get_many": (1, 1, FailurePolicy.PROPAGATE, "http_get_many(urls): bodies of several URLs fetched concurrently"),
    "vec": (1, None, FailurePolicy.PROPAGATE, "vec(a, ...): JSON array of the arguments"),
    "tensor_add": (2, 2, FailurePolicy.PROPAGATE, "tensor_add(a, b): element-wise sum"),
    "tensor_dot": (2, 2, FailurePolicy.PROPAGATE, "tensor_dot(a, b): dot product"),
    "df_from_csv": (1, 1, FailurePolicy.PROPAGATE, "df_from_csv(url): fetch a CSV as a {columns, rows} table"),
    "df_head": (2, 2, FailurePolicy.PROPAGATE, "df_head(df, n): first n rows"),
    "df_select": (2, 2, FailurePolicy.PROPAGATE, "df_select(df, \"a,b\"): keep the named columns"),
    "linreg_fit": (2, 2, FailurePolicy.PROPAGATE, "linreg_fit(xs, ys): least-squares line {kind, a, b}"),
    "linreg_predict": (2, 2, FailurePolicy.PROPAGATE, "linreg_predict(model, x): a*x + b"),
    "cache_set": (2, 3, FailurePolicy.PROPAGATE, "cache_set(key, value, [ttl_seconds]): store in the TTL cache"),
    "cache_get": (1, 2, FailurePolicy.PROPAGATE, "cache_get(key, [default]): read from the TTL cache"),
    "cache_delete": (1, 1, FailurePolicy.PROPAGATE, "cache_delete(key): remove a cache entry"),
    "openai_set_api_key": (1, 1, FailurePolicy.PROPAGATE, "openai_set_api_key(key)"),
    "openai_set_system_prompt": (1, 1, FailurePolicy.PROPAGATE, "openai_set_system_prompt(prompt)"),
    "openai_chat": (1, 1, FailurePolicy.ABSORB, "openai_chat(message): assistant reply text"),
    "openai_chat_json": (1, 1, FailurePolicy.ABSORB, "openai_chat_json(message): full chat completion response"),
    "openai_mcp_call": (3, 3, FailurePolicy.ABSORB, "openai_mcp_call(server_id, tool, args): responses API call"),
}


def build_capabilities(stdlib: StdLib) -> CapabilityTable:
    """The closed builtin registry handed to the Evaluator."""
    table: Dict[str, Builtin] = {}
    for name, (min_args, max_args, policy, doc) in BUILTIN_SPECS.items():
        table[name] = Builtin(
            name=name,
            invoke=getattr(stdlib, f"_{name}"),
            min_args=min_args,
            max_args=max_args,
            policy=policy,
            doc=doc,
        )
    return table


# ===================================================================
# 3. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of loading, evaluating or calling into a program."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_line: Optional[int] = None
    error_column: Optional[int] = None
    source: Optional[str] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == 'success'

    def format_error(self) -> str:
        """Formats an error message with line and column and a source excerpt, if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if not self.error_line:
            return msg
        col_info = f", col {self.error_column}" if self.error_column else ""
        out = f"Error on line {self.error_line}{col_info}: {msg}"
        if self.source:
            context = source_context(self.source, self.error_line, self.error_column)
            if context:
                out = f"{out}\n{context}"
        return out


def source_context(source: str, line: int, col: Optional[int], radius: int = 2) -> str:
    lines = source.splitlines()
    if not line or line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
        if i == line and col:
            out.append(f"  {' ' * width} | {' ' * max(col - 1, 0)}^")
    return "\n".join(out)


@dataclass
class TestOutcome:
    __test__ = False  # keep pytest from collecting this class

    name: str
    passed: bool
    assertions: int
    failures: List[str] = field(default_factory=list)


def _format_stacktrace(stack) -> str:
    if not stack:
        return ""
    frames = []
    for name, args in stack:
        rendered = " ".join(_frame_arg(a) for a in args)
        frames.append(f"({name} {rendered})" if rendered else f"({name})")
    return "Shrimpl stacktrace: " + " ".join(frames)


def _frame_arg(v: Any) -> str:
    if isinstance(v, str):
        return repr(v)
    if isinstance(v, Json):
        return "json"
    return render_value(v)


class ShrimplRunner:
    """Parses a Shrimpl program once and evaluates targets against it.

    Every public method returns an ExecutionResult (or a list of
    TestOutcome) instead of raising for parse or runtime failures.
    """

    def __init__(self, config: Optional[ShrimplConfig] = None, context: Optional[RuntimeContext] = None,
                 env_name: Optional[str] = None, base_dir=None):
        self.config = config if config is not None else load_config(env_name, base_dir)
        self.context = context or RuntimeContext(values=self.config.values, secrets_env=self.config.secrets_env)
        self.stdlib = StdLib(self.context)
        self.capabilities = build_capabilities(self.stdlib)
        self.program: Program = Program()
        self.source: str = ""
        self.evaluator = Evaluator(self.program, self.capabilities)

    # --- error packaging ---

    def _parse_failure(self, e: ParseError, source: str) -> ExecutionResult:
        return ExecutionResult(
            status='error', error_message=f"ParseError: {e.message}",
            error_line=e.line or None, error_column=e.column or None, source=source,
        )

    def _runtime_failure(self, e: ShrimplRuntimeError, source: str) -> ExecutionResult:
        msg = f"{e.kind}: {e.message}"
        trace = _format_stacktrace(e.stack)
        if trace:
            msg = f"{msg}\n{trace}"
        return ExecutionResult(
            status='error', error_message=msg,
            error_line=e.line or None, error_column=e.column or None, source=source,
        )

    def _run(self, target, variables=None, source: Optional[str] = None) -> ExecutionResult:
        src = self.source if source is None else source
        try:
            value = self.evaluator.evaluate(target, variables)
        except ShrimplRuntimeError as e:
            _dbg("RUNTIME ERROR", e.kind, e.message)
            return self._runtime_failure(e, src)
        return ExecutionResult(status='success', value=value)

    # --- public API ---

    def load(self, source: str) -> ExecutionResult:
        """Parses `source` and makes it the current program. The value is the Program."""
        try:
            program = parse_program(source)
        except ParseError as e:
            return self._parse_failure(e, source)
        program = apply_server_overrides(program, self.config)
        self.context.add_secrets({s.name: s.key for s in program.secrets})
        globals_ = {s.name: os.environ.get(s.key, "") for s in program.secrets}
        self.program = program
        self.source = source
        self.evaluator = Evaluator(program, self.capabilities, globals_)
        _dbg("LOADED", len(program.declarations), "declarations")
        return ExecutionResult(status='success', value=program)

    def handle_expression(self, source: str, variables: Optional[Mapping[str, Any]] = None) -> ExecutionResult:
        """Evaluates a standalone expression against the loaded program."""
        try:
            expr = parse_expression(source)
        except ParseError as e:
            return self._parse_failure(e, source)
        return self._run(ExprTarget(expr), variables, source)

    def call_function(self, name: str, *args) -> ExecutionResult:
        return self._run(FunctionTarget(name, tuple(args)))

    def call_method(self, qualified_name: str, *args) -> ExecutionResult:
        return self._run(MethodTarget(qualified_name, tuple(args)))

    def match_endpoint(self, method: str, path: str) -> Optional[Tuple[EndpointDecl, Dict[str, str]]]:
        """Finds the endpoint for a concrete request path, binding `:param` segments."""
        exact = self.program.find_endpoint(method, path)
        if exact is not None:
            return exact, {}
        parts = path.strip("/").split("/")
        for ep in self.program.endpoints:
            if ep.method != method:
                continue
            pattern = ep.path.strip("/").split("/")
            if len(pattern) != len(parts):
                continue
            params: Dict[str, str] = {}
            for pat, actual in zip(pattern, parts):
                if pat.startswith(":") and len(pat) > 1:
                    params[pat[1:]] = actual
                elif pat != actual:
                    break
            else:
                return ep, params
        return None

    def call_endpoint(self, method: str, path: str, variables: Optional[Mapping[str, Any]] = None) -> ExecutionResult:
        """Evaluates an endpoint body. The value is the rendered response text."""
        found = self.match_endpoint(method.upper(), path)
        if found is None:
            return ExecutionResult(status='error', error_message=f"No endpoint for {method.upper()} {path}")
        endpoint, params = found
        result = self._run(ExprTarget(endpoint.body), {**params, **(variables or {})})
        if result.ok:
            result.value = render_value(result.value)
        return result

    def diagnostics(self) -> List[Diagnostic]:
        return build_diagnostics(self.program, self.config.annotations)

    def run_tests(self) -> List[TestOutcome]:
        outcomes = []
        for test in self.program.tests:
            failures = []
            for idx, expr in enumerate(test.assertions, start=1):
                try:
                    value = self.evaluator.evaluate(ExprTarget(expr), {})
                except ShrimplRuntimeError as e:
                    failures.append(f"assertion {idx} raised error: {e.message}")
                    continue
                if not truthy(value):
                    failures.append(f"assertion {idx} evaluated to false")
            outcomes.append(TestOutcome(test.name, not failures, len(test.assertions), failures))
            _dbg("TEST", test.name, "passed" if not failures else f"failed ({len(failures)})")
        return outcomes

    def format_program(self) -> str:
        """Canonical source text of the loaded program."""
        return Printer().pformat(self.program)


__all__ = [
    "RuntimeContext",
    "StdLib",
    "OpenAIError",
    "BUILTIN_SPECS",
    "build_capabilities",
    "ExecutionResult",
    "TestOutcome",
    "ShrimplRunner",
    "source_context",
]
