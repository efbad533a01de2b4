import pytest

from shrimpl.shrimpl_parser import parse_program, parse_expression
from shrimpl.shrimpl_datatypes import Json
from shrimpl.shrimpl_interpreter import (
    Evaluator, ExprTarget, FunctionTarget, MethodTarget, Builtin, FailurePolicy,
    ShrimplRuntimeError, UnknownVariable, TypeMismatch, ArityMismatch, UnknownCallable,
    IterationLimitExceeded, BuiltinFailure, DivisionByZero, MAX_CALL_DEPTH, truthy,
)


def evaluate(source, program="", caps=None, globals=None, **variables):
    ev = Evaluator(parse_program(program), caps, globals)
    return ev.evaluate(ExprTarget(parse_expression(source)), variables)


class Counter:
    """A builtin that records how often it was invoked."""

    def __init__(self, result="tick"):
        # result=None returns the running call count instead.
        self.calls = 0
        self.result = result

    def __call__(self, *args):
        self.calls += 1
        return self.calls if self.result is None else self.result

    def builtin(self, name="tick"):
        return {name: Builtin(name, self, 0, None)}


# --- Operators ---

@pytest.mark.parametrize("source, expected", [
    ("1 + 2 * 3", 7.0),
    ("(1 + 2) * 3", 9.0),
    ("10 / 4", 2.5),
    ("7 - 10", -3.0),
    ("-2 * 3", -6.0),
    ('"n=" + 3', "n=3"),
    ('"pi " + 3.5', "pi 3.5"),
    ('"flag " + true', "flag true"),
    ('1 + "x"', "1x"),
    ("2 < 3", True),
    ("3 <= 3", True),
    ("2 > 3", False),
    ("2 >= 3", False),
])
def test_arithmetic_and_concatenation(source, expected):
    result = evaluate(source)
    assert result == expected
    assert type(result) is type(expected)


@pytest.mark.parametrize("source, expected", [
    ("1 == 1", True),
    ('1 == "1"', False),
    ("true == 1", False),
    ('"a" != "b"', True),
    ("[1, 2] == [1, 2]", True),
    ('{a: 1} == {a: "1"}', False),
    ('json {"a": [1, 2]} == {a: [1, 2]}', True),
])
def test_equality_is_strict(source, expected):
    assert evaluate(source) is expected


def test_equal_json_values_hash_alike():
    a = Json({"a": 1, "b": [1, 2]})
    b = Json({"b": [1.0, 2.0], "a": 1.0})
    assert a == b
    assert len({a, b}) == 1
    assert Json([1, 2]) != Json([2, 1])


@pytest.mark.parametrize("source, fragment", [
    ('"a" - 1', "Operator '-' expects numbers, got string and number"),
    ("true * 2", "Operator '*' expects numbers, got bool and number"),
    ('"a" < "b"', "Operator '<' expects numbers"),
    ("[1] + 1", "Operator '+' expects numbers, got json and number"),
])
def test_type_mismatch(source, fragment):
    with pytest.raises(TypeMismatch) as exc:
        evaluate(source)
    assert fragment in exc.value.message


def test_division_by_zero():
    with pytest.raises(DivisionByZero) as exc:
        evaluate("1 / (2 - 2)")
    assert exc.value.kind == "DivisionByZero"


def test_and_or_are_lazy_and_return_bools():
    assert evaluate("false and boom()") is False
    assert evaluate("true or boom()") is True
    assert evaluate('1 and "x"') is True
    assert evaluate('0 or ""') is False


@pytest.mark.parametrize("value, expected", [
    (True, True),
    (False, False),
    (0.0, False),
    (-1.5, True),
    ("", False),
    ("0", True),
    (Json([]), True),
    (Json(None), True),
])
def test_truthiness(value, expected):
    assert truthy(value) is expected


# --- Control flow ---

def test_if_takes_first_true_branch_only():
    assert evaluate('if x > 5: "big" elif x > 1: "mid" else: boom()', x=3) == "mid"


def test_if_without_else_yields_empty_string():
    assert evaluate('if false: "never"') == ""


def test_repeat_runs_body_floor_of_count_times():
    tick = Counter()
    assert evaluate("repeat 2.7 times: tick()", caps=tick.builtin()) == "tick"
    assert tick.calls == 2


def test_repeat_returns_last_iteration_value():
    tick = Counter(result=None)
    assert evaluate("repeat 3 times: tick()", caps=tick.builtin()) == 3.0


def test_repeat_at_the_limit_is_allowed():
    tick = Counter(result=None)
    assert evaluate("repeat 10000 times: tick()", caps=tick.builtin()) == 10000.0
    assert tick.calls == 10000


@pytest.mark.parametrize("count", ["0", "-5", "0.4"])
def test_repeat_with_no_iterations_yields_empty_string(count):
    tick = Counter()
    assert evaluate(f"repeat {count} times: tick()", caps=tick.builtin()) == ""
    assert tick.calls == 0


def test_repeat_over_the_limit_fails_before_running():
    tick = Counter()
    with pytest.raises(IterationLimitExceeded):
        evaluate("repeat 10001 times: tick()", caps=tick.builtin())
    assert tick.calls == 0


def test_repeat_count_must_be_a_number():
    with pytest.raises(TypeMismatch):
        evaluate('repeat "3" times: 1')


# --- Variables and scopes ---

def test_unknown_variable_reports_position():
    with pytest.raises(UnknownVariable) as exc:
        evaluate("1 + y")
    assert exc.value.message == "Unknown variable 'y'"
    assert (exc.value.line, exc.value.column) == (1, 5)


def test_variables_are_normalized():
    assert evaluate("n + 1", n=3) == 4.0
    assert evaluate("d", d={"a": [1, 2]}) == Json({"a": [1, 2]})


def test_calls_do_not_see_caller_variables():
    with pytest.raises(UnknownVariable):
        evaluate("f()", program="func f(): x\n", x=1)


def test_globals_visible_everywhere():
    program = "func greet(name): greeting + \", \" + name\n"
    assert evaluate('greet("Ada")', program=program, globals={"greeting": "Hello"}) == "Hello, Ada"


def test_literals_build_fresh_json():
    expr = parse_expression('json {"items": [1, 2]}')
    ev = Evaluator(parse_program(""))
    first = ev.evaluate(ExprTarget(expr))
    first.data["items"].append(3)
    assert ev.evaluate(ExprTarget(expr)) == Json({"items": [1, 2]})


def test_list_and_map_literals_evaluate_items():
    assert evaluate('{total: a + b, tags: ["x", a]}', a=1, b=2) == Json({"total": 3, "tags": ["x", 1]})


# --- Calls ---

FUNCTIONS = (
    "func add(a, b): a + b\n"
    "func fact(n): if n <= 1: 1 else: n * fact(n - 1)\n"
    "func loop(n): loop(n + 1)\n"
    "func inner(x): x / 0\n"
    "func outer(x): inner(x)\n"
    "class Math:\n"
    "    twice(x): x * 2\n"
    "    quad(x): Math.twice(Math.twice(x))\n"
)


@pytest.fixture
def evaluator():
    return Evaluator(parse_program(FUNCTIONS))


def test_function_target(evaluator):
    assert evaluator.evaluate(FunctionTarget("add", (2, 3))) == 5.0
    assert evaluator.evaluate(FunctionTarget("fact", (5,))) == 120.0


def test_method_target(evaluator):
    assert evaluator.evaluate(MethodTarget("Math.quad", (3,))) == 12.0


@pytest.mark.parametrize("target, error, message", [
    (FunctionTarget("add", (1,)), ArityMismatch, "'add' expects 2 argument(s), got 1"),
    (FunctionTarget("nope"), UnknownCallable, "Unknown function 'nope'"),
    (MethodTarget("Nope.x"), UnknownCallable, "Unknown class 'Nope'"),
    (MethodTarget("Math.nope"), UnknownCallable, "Unknown method 'Math.nope'"),
])
def test_call_errors(evaluator, target, error, message):
    with pytest.raises(error) as exc:
        evaluator.evaluate(target)
    assert exc.value.message == message


def test_unbounded_recursion_hits_call_depth(evaluator):
    with pytest.raises(IterationLimitExceeded) as exc:
        evaluator.evaluate(FunctionTarget("loop", (0,)))
    assert str(MAX_CALL_DEPTH) in exc.value.message
    assert evaluator.call_stack == []


def test_error_carries_call_stack(evaluator):
    with pytest.raises(DivisionByZero) as exc:
        evaluator.evaluate(FunctionTarget("outer", (1,)))
    assert exc.value.stack == [("outer", [1.0]), ("inner", [1.0])]


# --- Builtins ---

def test_builtins_shadow_user_functions():
    caps = {
        "add": Builtin("add", lambda *a: "builtin", 0, None),
        "Math.twice": Builtin("Math.twice", lambda x: "builtin method", 1, 1),
    }
    assert evaluate("add(1, 2)", program=FUNCTIONS, caps=caps) == "builtin"
    assert evaluate("Math.twice(1)", program=FUNCTIONS, caps=caps) == "builtin method"


def test_builtin_results_are_normalized():
    caps = {
        "count": Builtin("count", lambda: 3),
        "doc": Builtin("doc", lambda: {"ok": True}),
    }
    assert evaluate("count()", caps=caps) == 3.0
    assert isinstance(evaluate("count()", caps=caps), float)
    assert evaluate("doc()", caps=caps) == Json({"ok": True})


def test_builtin_arity_is_checked():
    caps = {"one": Builtin("one", lambda x: x, 1, 1)}
    with pytest.raises(ArityMismatch) as exc:
        evaluate("one()", caps=caps)
    assert exc.value.message == "builtin 'one' expects 1 argument(s), got 0"


def fail(*args):
    raise ValueError("boom")


def test_builtin_failure_propagates_with_name():
    caps = {"fetch": Builtin("fetch", fail, 0, None)}
    with pytest.raises(BuiltinFailure) as exc:
        evaluate('"x" + fetch()', caps=caps)
    assert exc.value.message == "fetch failed: boom"
    assert (exc.value.line, exc.value.column) == (1, 7)


def test_absorbing_builtin_returns_error_text():
    caps = {"ask": Builtin("ask", fail, 0, None, FailurePolicy.ABSORB)}
    assert evaluate("ask()", caps=caps) == "[ask error] boom"


def test_runtime_errors_from_builtins_keep_their_kind():
    def strict(x):
        raise TypeMismatch("needs a number")

    caps = {"strict": Builtin("strict", strict, 1, 1)}
    with pytest.raises(TypeMismatch) as exc:
        evaluate('strict("a")', caps=caps)
    assert exc.value.line == 1


# --- Try ---

def test_try_catch_binds_error_message():
    assert evaluate('try: 1 / 0 catch e: "caught: " + e') == "caught: Division by zero"
    assert evaluate("try: missing catch e: e") == "Unknown variable 'missing'"


def test_try_success_skips_catch():
    assert evaluate("try: 41 + 1 catch e: boom()") == 42.0


def test_finally_runs_and_its_value_is_discarded():
    tick = Counter(result="cleanup")
    assert evaluate("try: 1 finally: tick()", caps=tick.builtin()) == 1.0
    assert tick.calls == 1


def test_try_without_catch_reraises_after_finally():
    tick = Counter()
    with pytest.raises(DivisionByZero):
        evaluate("try: 1 / 0 finally: tick()", caps=tick.builtin())
    assert tick.calls == 1


def test_catch_variable_does_not_leak():
    with pytest.raises(UnknownVariable):
        evaluate('(try: 1 / 0 catch e: e) + e')


def test_runtime_errors_share_a_base_class():
    for cls in (UnknownVariable, TypeMismatch, ArityMismatch, UnknownCallable,
                IterationLimitExceeded, BuiltinFailure, DivisionByZero):
        assert issubclass(cls, ShrimplRuntimeError)
