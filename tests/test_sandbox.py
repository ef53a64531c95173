from __future__ import annotations

import logging

import pytest

from ci_script.errors import ScriptExecutionError, ScriptParseError
from ci_script.sandbox import Engine, Scope, StaticModule, desugar


class Counter:
    def __init__(self):
        self.calls = []

    def bump(self, amount=1):
        self.calls.append(amount)
        return len(self.calls)

    def secret(self):
        raise AssertionError("unregistered methods must not be reachable")


def _engine(**kwargs) -> Engine:
    engine = Engine(**kwargs)
    engine.register_type(Counter, "Counter")
    engine.register_fn(Counter, "bump", Counter.bump)
    engine.register_get(Counter, "total", lambda counter: len(counter.calls))
    return engine


def _run(source, scope=None, engine=None):
    engine = engine or _engine()
    scope = scope if scope is not None else Scope()
    return engine.run(engine.compile(source), scope)


def test_desugar_rewrites_module_access_and_keywords():
    text = desugar(
        'x = env::HOME\ncargo "bench --all"\n',
        modules=["env"],
        keywords=["cargo"],
    )
    assert text == 'x = env. HOME\ncargo("bench --all")\n'


def test_desugar_keyword_inside_expressions():
    text = desugar('r = cargo "test"\nif (cargo "x").is_ok():\n    pass\n', keywords=["cargo"])
    assert text == 'r = cargo("test")\nif (cargo("x")).is_ok():\n    pass\n'


def test_desugar_leaves_unrelated_code_alone():
    source = 'd = {"a": 1}\ny = d["a"]\ncargo("ok")\nz = cargo\nq = x[1::2]\n'
    assert desugar(source, modules=["env"], keywords=["cargo"]) == source
    assert desugar("w = cargo in ok\n", keywords=["cargo"]) == "w = cargo in ok\n"


def test_basic_language_features():
    source = """
def fib(n):
    if n < 2:
        return n
    return fib(n - 1) + fib(n - 2)

total = 0
for i in range(5):
    if i == 3:
        continue
    total += i
names = ["a", "b"]
names.append("c")
a, b = 1, 2
label = f"{total}-{len(names)}-{a + b}"
d = {"k": [1, 2, 3]}
d["k"][0] = 9
result = [fib(10), label, d["k"][:2], "x" if total > 5 else "y"]
"""
    scope = Scope()
    _run(source, scope)
    assert scope.get("result") == [55, "7-3-3", [9, 2], "x"]


def test_registered_methods_and_getters():
    counter = Counter()
    scope = Scope().push_constant("C", counter)
    _run("C.bump()\nC.bump(5)\nseen = C.total\n", scope)
    assert counter.calls == [1, 5]
    assert scope.get("seen") == 2


def test_unregistered_member_is_an_error():
    scope = Scope().push_constant("C", Counter())
    with pytest.raises(ScriptExecutionError) as excinfo:
        _run("C.secret()\n", scope)
    assert "Function not found: Counter.secret" in str(excinfo.value)
    assert "(line 1)" in str(excinfo.value)


def test_unknown_variable_is_an_error():
    with pytest.raises(ScriptExecutionError) as excinfo:
        _run("x = 1\ny = nope + 1\n")
    assert "Variable not found: nope" in str(excinfo.value)
    assert excinfo.value.line == 2


def test_constants_cannot_be_reassigned():
    scope = Scope().push_constant("REPO", object())
    with pytest.raises(ScriptExecutionError):
        _run("REPO = 1\n", scope)
    scope.push("free", 1)
    _run("free = 2\n", scope)
    assert scope.get("free") == 2


@pytest.mark.parametrize(
    "source",
    [
        "import os\n",
        "from os import path\n",
        "class A:\n    pass\n",
        "f = lambda: 1\n",
        "with x:\n    pass\n",
        "try:\n    pass\nexcept Exception:\n    pass\n",
        "xs = [i for i in range(3)]\n",
        "del x\n",
        "x = ().__class__\n",
        "__import__('os')\n",
        "def f(*args):\n    pass\n",
        "def f(a=1):\n    pass\n",
        "x = {**y}\n",
    ],
)
def test_forbidden_constructs_fail_to_compile(source):
    with pytest.raises(ScriptParseError):
        _engine().compile(source)


def test_syntax_errors_report_line_not_path():
    with pytest.raises(ScriptParseError) as excinfo:
        _engine().compile("x = 1\ny = (\n")
    message = str(excinfo.value)
    assert message.startswith("Failed to parse script")
    assert "<script>" not in message
    assert "/" not in message.replace("Failed to parse script:", "")


def test_compile_file_does_not_leak_path(tmp_path):
    script = tmp_path / "secret-location" / "job.cis"
    script.parent.mkdir()
    script.write_text("x = = 1\n")
    with pytest.raises(ScriptParseError) as excinfo:
        _engine().compile_file(script)
    assert str(tmp_path) not in str(excinfo.value)


def test_str_format_is_not_reachable():
    with pytest.raises(ScriptExecutionError):
        _run('s = "{0}".format(1)\n')


def test_value_methods_are_whitelisted():
    scope = Scope()
    _run('s = " A,b ".strip().lower().split(",")\n', scope)
    assert scope.get("s") == ["a", "b"]


def test_static_modules_and_globals():
    engine = _engine()
    engine.register_static_module("cfg", StaticModule("cfg", {"LEVEL": 3}))
    engine.register_global("double", lambda value: value * 2)
    scope = Scope()
    _run("x = double(cfg::LEVEL)\n", scope, engine)
    assert scope.get("x") == 6

    with pytest.raises(ScriptExecutionError) as excinfo:
        _run("y = cfg::MISSING\n", Scope(), engine)
    assert "cfg::MISSING" in str(excinfo.value)


def test_custom_syntax_calls_handler():
    seen = []
    engine = _engine()
    engine.register_custom_syntax("shout", lambda value: seen.append(value) or len(seen))
    scope = Scope()
    _run('shout "hi"\nn = shout "again"\n', scope, engine)
    assert seen == ["hi", "again"]
    assert scope.get("n") == 2


def test_operation_budget_stops_runaway_loops():
    engine = _engine(max_operations=1000)
    with pytest.raises(ScriptExecutionError) as excinfo:
        _run("while True:\n    pass\n", engine=engine)
    assert "Too many operations" in str(excinfo.value)


def test_call_depth_is_limited():
    with pytest.raises(ScriptExecutionError) as excinfo:
        _run("def f(n):\n    return f(n + 1)\nf(0)\n")
    assert "Call stack too deep" in str(excinfo.value)


def test_host_errors_become_script_errors():
    with pytest.raises(ScriptExecutionError) as excinfo:
        _run("x = 1\ny = x / 0\n")
    assert "ZeroDivisionError" in str(excinfo.value)
    assert excinfo.value.line == 2


def test_assert_failure_message():
    with pytest.raises(ScriptExecutionError) as excinfo:
        _run('assert 1 == 2, "numbers differ"\n')
    assert "Assertion failed: numbers differ" in str(excinfo.value)


def test_print_goes_to_script_logger(caplog):
    with caplog.at_level(logging.INFO, logger="ci_script.script"):
        _run('print("hello", 42)\n')
    assert "hello 42" in caplog.text


def test_top_level_return_ends_script():
    scope = Scope()
    result = _run("x = 1\nreturn 5\nx = 2\n", scope)
    assert result == 5
    assert scope.get("x") == 1
