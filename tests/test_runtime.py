import asyncio
import threading

import httpx
import pytest

import shrimpl.shrimpl_http as shrimpl_http
from shrimpl.shrimpl_config import ShrimplConfig
from shrimpl.shrimpl_datatypes import Json, Program
from shrimpl.shrimpl_diagnostics import FunctionType
from shrimpl.shrimpl_http import HttpError
from shrimpl.shrimpl_runtime import (
    ShrimplRunner, RuntimeContext, ExecutionResult, TestOutcome, BUILTIN_SPECS,
    DEFAULT_OPENAI_MODEL, source_context,
)


PROGRAM = '''\
server 8080
func add(a, b): a + b
func inner(x): x / 0
func outer(x): inner(x)
func fact(n): if n <= 1: 1 else: n * fact(n - 1)
class Greeter:
    hello(name): "Hello, " + name
endpoint GET "/users/:id": "user " + id
endpoint GET "/users/me": "me"
endpoint POST "/echo": {body: body, size: len(body)}
endpoint GET "/broken": 1 / 0
test "arithmetic":
    add(1, 2) == 3
    fact(5) == 120
test "failing":
    add(1, 1) == 3
    missing
    true
'''


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture(autouse=True)
def no_openai_key(monkeypatch):
    monkeypatch.delenv("SHRIMPL_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def runner():
    r = ShrimplRunner(config=ShrimplConfig())
    result = r.load(PROGRAM)
    assert result.ok, result.format_error()
    return r


def value_of(runner, source, **variables):
    result = runner.handle_expression(source, variables)
    assert result.status == "success", result.format_error()
    return result.value


def error_of(runner, source):
    result = runner.handle_expression(source)
    assert result.status == "error"
    return result.error_message


# --- Loading and formatting ---

def test_load_returns_program(runner):
    assert isinstance(runner.program, Program)
    assert runner.program.server.port == 8080
    assert set(runner.program.functions) == {"add", "inner", "outer", "fact"}


def test_load_applies_config_port():
    r = ShrimplRunner(config=ShrimplConfig(port=9000))
    assert r.load(PROGRAM).value.server.port == 9000


def test_parse_error_result_and_excerpt():
    r = ShrimplRunner(config=ShrimplConfig())
    result = r.load("server 80\nfunc f(: 1\n")
    assert result.status == "error"
    assert result.error_message.startswith("ParseError: ")
    assert (result.error_line, result.error_column) == (2, 8)
    text = result.format_error()
    lines = text.splitlines()
    assert lines[0].startswith("Error on line 2, col 8: ParseError: ")
    assert "> 2 | func f(: 1" in lines
    assert lines[-1] == "    | " + " " * 7 + "^"
    # The previous program stays loaded
    assert r.program == Program()


def test_format_error_without_position():
    assert ExecutionResult(status="error", error_message="boom").format_error() == "boom"
    assert ExecutionResult(status="success", value=1).format_error() == ""


def test_source_context_window():
    src = "a\nb\nc\nd\ne\nf\n"
    assert source_context(src, 4, None) == "  2 | b\n  3 | c\n> 4 | d\n  5 | e\n  6 | f"
    assert source_context(src, 99, 1) == ""


def test_format_program_round_trips(runner):
    text = runner.format_program()
    again = ShrimplRunner(config=ShrimplConfig())
    assert again.load(text).ok
    assert again.program == runner.program


# --- Evaluation entry points ---

def test_handle_expression(runner):
    assert value_of(runner, "add(2, 3) * 2") == 10.0
    assert value_of(runner, "Greeter.hello(who)", who="Ada") == "Hello, Ada"


def test_call_function_and_method(runner):
    assert runner.call_function("fact", 6).value == 720.0
    assert runner.call_method("Greeter.hello", "Bob").value == "Hello, Bob"


def test_runtime_error_message_with_stacktrace(runner):
    result = runner.call_function("outer", 2)
    assert result.status == "error"
    assert result.error_message == (
        "DivisionByZero: Division by zero\n"
        "Shrimpl stacktrace: (outer 2) (inner 2)"
    )
    assert result.error_line == 3


@pytest.mark.parametrize("source, prefix", [
    ("nope", "UnknownVariable: Unknown variable 'nope'"),
    ("nope()", "UnknownCallable: Unknown function 'nope'"),
    ("add(1)", "ArityMismatch: 'add' expects 2 argument(s), got 1"),
    ('"a" * 2', "TypeMismatch: Operator '*' expects numbers"),
    ("repeat 20000 times: 1", "IterationLimitExceeded: "),
    ("len()", "ArityMismatch: builtin 'len' expects 1 argument(s), got 0"),
])
def test_runtime_error_kinds(runner, source, prefix):
    assert error_of(runner, source).startswith(prefix)


def test_expression_parse_error(runner):
    result = runner.handle_expression("1 +")
    assert result.status == "error"
    assert result.error_message.startswith("ParseError: ")


# --- Endpoints ---

@pytest.mark.parametrize("method, path, variables, expected", [
    ("GET", "/users/42", None, "user 42"),
    ("GET", "/users/me", None, "me"),
    ("get", "/users/7/", None, "user 7"),
    ("POST", "/echo", {"body": "hi"}, '{\n  "body": "hi",\n  "size": 2\n}'),
])
def test_call_endpoint(runner, method, path, variables, expected):
    result = runner.call_endpoint(method, path, variables)
    assert result.ok, result.format_error()
    assert result.value == expected


def test_path_param_is_a_string(runner):
    endpoint, params = runner.match_endpoint("GET", "/users/42")
    assert endpoint.path == "/users/:id"
    assert params == {"id": "42"}


@pytest.mark.parametrize("method, path", [
    ("GET", "/missing"),
    ("POST", "/users/42"),
    ("GET", "/users/42/extra"),
])
def test_unmatched_endpoint(runner, method, path):
    result = runner.call_endpoint(method, path)
    assert result.status == "error"
    assert result.error_message == f"No endpoint for {method} {path}"


def test_endpoint_runtime_error(runner):
    result = runner.call_endpoint("GET", "/broken")
    assert result.error_message == "DivisionByZero: Division by zero"
    assert "Error on line 11" in result.format_error()


def test_long_endpoint_body_hits_nesting_limit():
    r = ShrimplRunner(config=ShrimplConfig())
    assert r.load('endpoint GET "/sum": ' + " + ".join(["1"] * 5000)).ok
    result = r.call_endpoint("GET", "/sum")
    assert result.status == "error"
    assert result.error_message == "IterationLimitExceeded: Expression nesting too deep"
    assert result.error_line == 1


def test_deeply_nested_source_is_a_parse_error():
    r = ShrimplRunner(config=ShrimplConfig())
    result = r.load('endpoint GET "/x": ' + "(" * 2000 + "1" + ")" * 2000)
    assert result.status == "error"
    assert result.error_message.startswith("ParseError: expression nested too deeply")
    assert result.error_line == 1

    result = r.handle_expression("[" * 2000 + "]" * 2000)
    assert result.error_message.startswith("ParseError: expression nested too deeply")


# --- Tests and diagnostics ---

def test_run_tests(runner):
    outcomes = runner.run_tests()
    assert outcomes == [
        TestOutcome("arithmetic", True, 2, []),
        TestOutcome("failing", False, 3, [
            "assertion 1 evaluated to false",
            "assertion 2 raised error: Unknown variable 'missing'",
        ]),
    ]


def test_diagnostics_use_config_annotations():
    cfg = ShrimplConfig(annotations={"add": FunctionType(("number", "number"), "string")})
    r = ShrimplRunner(config=cfg)
    r.load("func add(a, b): a + b\nfunc unused(x): 1\n")
    messages = [d.message for d in r.diagnostics()]
    assert messages == [
        "Return type mismatch: expected string, got number",
        "Parameter 'x' is never used in function body",
    ]


# --- Builtins ---

DF = 'json {"columns": ["a", "b"], "rows": [[1, 2], [3, 4]]}'


@pytest.mark.parametrize("source, expected", [
    ('len("hello")', 5.0),
    ("len([1, 2, 3])", 3.0),
    ("len({a: 1})", 1.0),
    ("len(12.5)", 4.0),
    ('upper("abc")', "ABC"),
    ('lower("ABC")', "abc"),
    ('number(" 2.5 ")', 2.5),
    ("string(2)", "2"),
    ('sum(1, 2, "3")', 6.0),
    ("sum([1, 2, 3])", 6.0),
    ("avg(json [2, 4])", 3.0),
    ("min(3, 1, 2)", 1.0),
    ("max([1, 5])", 5.0),
    ('vec(1, "2", "x")', Json([1.0, 2.0, "x"])),
    ("tensor_add([1, 2], [3, 4])", Json([4.0, 6.0])),
    ("tensor_dot([1, 2], [3, 4])", 11.0),
    ("linreg_predict(linreg_fit([1, 2, 3], [2, 4, 6]), 10)", 20.0),
    ("linreg_fit([1, 2], [1, 3])", Json({"kind": "linreg", "a": 2.0, "b": -1.0})),
    (f"df_head({DF}, 1)", Json({"columns": ["a", "b"], "rows": [[1, 2]]})),
    (f'df_select({DF}, " b ")', Json({"columns": ["b"], "rows": [[2], [4]]})),
    ('config_get("nope", "fallback")', "fallback"),
    ('config_get("nope")', ""),
    ('config_has("nope")', False),
    ('cache_get("nope", 0)', 0.0),
])
def test_builtins(runner, source, expected):
    result = value_of(runner, source)
    assert result == expected
    assert type(result) is type(expected)


@pytest.mark.parametrize("source, message", [
    ('number("abc")', "number failed: value 'abc' is not a number"),
    ("sum(true)", "sum failed: value 'true' is not a number"),
    ("avg([])", "avg failed: avg of an empty array"),
    ('sum(["x"])', "sum failed: sum: element 'x' is not a number"),
    ("tensor_add([1], [1, 2])", "tensor_add failed: tensor_add: arrays must have the same length"),
    ('df_select(json {"columns": ["a"], "rows": []}, "z")', "df_select failed: df_select: column 'z' not found in dataframe"),
    ('df_head(json {"rows": []}, 1)', "df_head failed: df: missing 'columns' field"),
    ("linreg_fit([1, 1], [2, 3])", "linreg_fit failed: linreg_fit: variance of x is zero"),
    ('cache_set("k", 1, -1)', "cache_set failed: cache_set: ttl must not be negative"),
])
def test_builtin_failures(runner, source, message):
    assert error_of(runner, source) == f"BuiltinFailure: {message}"


def test_config_store_is_seeded_and_shared():
    cfg = ShrimplConfig(values={"greeting": "hi", "threshold": 0.75, "limits": {"max": 3}})
    r = ShrimplRunner(config=cfg)
    r.load("func greet(): config_get(\"greeting\") + \"!\"\n")
    assert value_of(r, "greet()") == "hi!"
    assert value_of(r, 'config_get("threshold")') == 0.75
    assert value_of(r, 'config_get("limits")') == Json({"max": 3})
    assert value_of(r, 'config_set("k", 2)') == "ok"
    assert value_of(r, 'config_get("k") + 1') == 3.0
    assert value_of(r, 'config_has("k")') is True


def test_cache_expiry_uses_context_clock():
    clock = FakeClock()
    r = ShrimplRunner(config=ShrimplConfig(), context=RuntimeContext(clock=clock))
    assert value_of(r, 'cache_set("session", "abc", 10)') == "ok"
    assert value_of(r, 'cache_set("forever", 1)') == "ok"
    clock.now += 10
    assert value_of(r, 'cache_get("session")') == "abc"
    clock.now += 0.5
    assert value_of(r, 'cache_get("session", "gone")') == "gone"
    clock.now += 1e6
    assert value_of(r, 'cache_get("forever")') == 1.0
    assert value_of(r, 'cache_delete("forever")') == "ok"
    assert value_of(r, 'cache_get("forever")') == ""


def test_env_builtin(runner, monkeypatch):
    monkeypatch.setenv("SHRIMPL_TEST_VAR", "value")
    monkeypatch.delenv("SHRIMPL_UNSET_VAR", raising=False)
    assert value_of(runner, 'env("SHRIMPL_TEST_VAR")') == "value"
    assert value_of(runner, 'env("SHRIMPL_UNSET_VAR")') == ""


def test_secrets_from_program_and_config(monkeypatch):
    monkeypatch.setenv("MY_API_KEY", "s3cret")
    monkeypatch.setenv("MAPPED_KEY", "mapped")
    monkeypatch.delenv("NOPE", raising=False)
    r = ShrimplRunner(config=ShrimplConfig(secrets_env={"OPENAI": "MAPPED_KEY"}))
    r.load('secret API = "MY_API_KEY"\nendpoint GET "/k": get_secret("API") + "/" + API\n')
    assert r.call_endpoint("GET", "/k").value == "s3cret/s3cret"
    assert value_of(r, 'get_secret("OPENAI")') == "mapped"
    assert error_of(r, 'get_secret("NOPE")') == (
        "BuiltinFailure: get_secret failed: secret 'NOPE' is not set (environment variable NOPE)"
    )


def test_http_builtins(runner, monkeypatch):
    monkeypatch.setattr(shrimpl_http, "http_get", lambda url, config=None: f"body of {url}")
    monkeypatch.setattr(shrimpl_http, "http_get_json", lambda url, config=None: {"url": url})
    monkeypatch.setattr(shrimpl_http, "http_get_many", lambda urls, config=None: [u.upper() for u in urls])
    assert value_of(runner, 'http_get("http://x")') == "body of http://x"
    assert value_of(runner, 'http_get_json("http://x")') == Json({"url": "http://x"})
    assert value_of(runner, 'http_get_many(["a", "b"])') == Json(["A", "B"])


def test_http_failure_propagates(runner, monkeypatch):
    def down(url, config=None):
        raise HttpError(503, url, "unavailable")

    monkeypatch.setattr(shrimpl_http, "http_get", down)
    assert error_of(runner, 'http_get("http://x")') == (
        "BuiltinFailure: http_get failed: HTTP 503 for http://x: unavailable"
    )
    assert value_of(runner, 'try: http_get("http://x") catch e: "offline"') == "offline"


class FakeAsyncClient:
    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def request(self, method, url, headers=None):
        return httpx.Response(200, text=url[-1])


def test_http_get_many_from_async_handler(monkeypatch):
    monkeypatch.setattr(shrimpl_http.httpx, "AsyncClient", FakeAsyncClient)
    r = ShrimplRunner(config=ShrimplConfig())
    r.load('endpoint GET "/m": http_get_many(["http://h/a", "http://h/b"])\n')

    async def handler():
        return r.call_endpoint("GET", "/m")

    result = asyncio.run(handler())
    assert result.ok, result.format_error()
    assert result.value == '[\n  "a",\n  "b"\n]'


def test_df_from_csv(runner, monkeypatch):
    monkeypatch.setattr(shrimpl_http, "http_get", lambda url, config=None: "a,b\n1,x\n\n2,3.5\n")
    assert value_of(runner, 'df_from_csv("http://data.csv")') == Json({
        "columns": ["a", "b"],
        "rows": [[1.0, "x"], [2.0, 3.5]],
    })
    monkeypatch.setattr(shrimpl_http, "http_get", lambda url, config=None: "")
    assert "empty CSV document" in error_of(runner, 'df_from_csv("http://empty.csv")')


# --- OpenAI helpers ---

class FakeOpenAI:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def __call__(self, url, payload, config=None):
        self.calls.append((url, payload, config))
        return self.response


def test_openai_without_key_is_absorbed(runner):
    result = value_of(runner, 'openai_chat("hi")')
    assert result.startswith("[openai_chat error] Missing OpenAI API key.")


def test_openai_chat(runner, monkeypatch):
    fake = FakeOpenAI({"choices": [{"message": {"content": "hello back"}}]})
    monkeypatch.setattr(shrimpl_http, "http_post_json", fake)
    assert value_of(runner, 'openai_set_api_key("sk-test")') == "ok"
    assert value_of(runner, 'openai_set_system_prompt("be brief")') == "ok"
    assert value_of(runner, 'openai_chat("hi")') == "hello back"

    url, payload, config = fake.calls[0]
    assert url == "https://api.openai.com/v1/chat/completions"
    assert payload == {
        "model": DEFAULT_OPENAI_MODEL,
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ],
    }
    assert config["headers"] == {"Authorization": "Bearer sk-test"}


def test_openai_key_from_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    fake = FakeOpenAI({"id": "x", "choices": []})
    monkeypatch.setattr(shrimpl_http, "http_post_json", fake)
    r = ShrimplRunner(config=ShrimplConfig())
    assert value_of(r, 'openai_chat_json("hi")') == Json({"id": "x", "choices": []})
    assert value_of(r, 'openai_chat("hi")') == (
        "[openai_chat error] OpenAI response malformed: missing choices[0].message.content"
    )


def test_openai_mcp_call(runner, monkeypatch):
    fake = FakeOpenAI({"output": "done"})
    monkeypatch.setattr(shrimpl_http, "http_post_json", fake)
    value_of(runner, 'openai_set_api_key("sk-test")')
    result = value_of(runner, 'openai_mcp_call("srv", "lookup", json {"q": 1})')
    assert result == Json({"output": "done"})
    url, payload, _ = fake.calls[0]
    assert url.endswith("/responses")
    assert payload["input"] == "Call MCP tool 'lookup' on server 'srv' with args: {\"q\": 1}"


def test_openai_transport_failure_is_absorbed(runner, monkeypatch):
    def refuse(url, payload, config=None):
        raise HttpError(401, url)

    monkeypatch.setattr(shrimpl_http, "http_post_json", refuse)
    value_of(runner, 'openai_set_api_key("bad")')
    assert value_of(runner, 'openai_chat("hi")') == (
        "[openai_chat error] HTTP 401 for https://api.openai.com/v1/chat/completions"
    )


def test_builtin_registry_is_closed(runner):
    assert set(runner.capabilities) == set(BUILTIN_SPECS)
    for name, builtin in runner.capabilities.items():
        assert builtin.name == name
        assert builtin.doc


# --- Concurrency ---

def test_concurrent_evaluations_share_context(runner):
    errors = []

    def worker(i):
        try:
            for _ in range(20):
                assert runner.call_function("fact", 10).value == 3628800.0
                runner.handle_expression(f'config_set("k{i}", {i})')
                assert runner.handle_expression("outer(1)").status == "error"
        except AssertionError as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    for i in range(8):
        assert value_of(runner, f'config_get("k{i}")') == float(i)
