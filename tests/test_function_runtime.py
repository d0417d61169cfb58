"""Tests for the restricted TEXT_MANIPULATION function runtime."""

import pytest

from sflflow.errors import FunctionRuntimeError
from sflflow.function_runtime import RestrictedFunctionRuntime


@pytest.fixture
def runtime():
    return RestrictedFunctionRuntime(step_limit=5_000)


def test_function_body_with_compatibility_alias(runtime):
    assert runtime.run("return inputs.x.toUpperCase()", {"x": "hello"}) == "HELLO"


def test_single_expression_body(runtime):
    assert runtime.run("inputs.text.upper()", {"text": "abc"}) == "ABC"


def test_statements_loops_and_comprehensions(runtime):
    body = """
words = inputs.text.split()
counts = {}
for word in words:
    counts[word] = counts.get(word, 0) + 1
top = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
return [f"{w}:{n}" for w, n in top if n > 1]
"""
    assert runtime.run(body, {"text": "b a b c a b"}) == ["b:3", "a:2"]


def test_while_loop_with_break(runtime):
    body = """
i = 0
while True:
    i += 1
    if i >= 4:
        break
return i
"""
    assert runtime.run(body, {}) == 4


def test_javascript_style_helpers(runtime):
    inputs = {"tags": ["x", "y"], "title": "  Hello  "}

    assert runtime.run("inputs.tags.join(', ')", inputs) == "x, y"
    assert runtime.run("inputs.tags.length", inputs) == 2
    assert runtime.run("inputs.tags.includes('y')", inputs) is True
    assert runtime.run("inputs.title.trim().startsWith('He')", inputs) is True
    assert runtime.run("inputs.tags.indexOf('z')", inputs) == -1


def test_missing_mapping_attribute_reads_as_none(runtime):
    assert runtime.run("return inputs.nothing", {}) is None


def test_json_helpers(runtime):
    assert runtime.run("json_loads(inputs.raw)['a']", {"raw": '{"a": 1}'}) == 1
    assert runtime.run("json_dumps({'a': [1]})", {}) == '{"a": [1]}'


def test_tuples_and_sets_come_back_as_lists(runtime):
    assert runtime.run("(1, 2)", {}) == [1, 2]


def test_raised_error_is_wrapped_with_message(runtime):
    with pytest.raises(FunctionRuntimeError) as exc_info:
        runtime.run('raise ValueError("boom")', {})

    assert str(exc_info.value) == "Error in custom function: boom"
    assert exc_info.value.retryable


def test_runtime_errors_are_wrapped(runtime):
    with pytest.raises(FunctionRuntimeError, match="Error in custom function: division by zero"):
        runtime.run("return 1 / 0", {})


def test_inputs_are_not_mutated(runtime):
    inputs = {"items": [1, 2]}
    runtime.run("inputs.items.append(3)\nreturn inputs.items", inputs)

    assert inputs == {"items": [1, 2]}


@pytest.mark.parametrize("body", [
    "import os",
    "return open('/etc/passwd').read()",
    "return inputs.__class__",
    "return ().__class__.__bases__",
    "return getattr(inputs, 'x')",
    "return 'x'.format",
    "def f():\n    return 1\nreturn f()",
    "class A:\n    pass",
    "raise SystemExit()",
])
def test_disallowed_constructs_are_rejected(runtime, body):
    with pytest.raises(FunctionRuntimeError):
        runtime.run(body, {"x": 1})


def test_step_limit_stops_infinite_loops(runtime):
    with pytest.raises(FunctionRuntimeError, match="step limit"):
        runtime.run("while True:\n    pass", {})


def test_syntax_errors_are_reported(runtime):
    with pytest.raises(FunctionRuntimeError, match="invalid syntax"):
        runtime.run("return (", {})


def test_empty_body_is_rejected(runtime):
    with pytest.raises(FunctionRuntimeError, match="empty"):
        runtime.run("   ", {})


@pytest.mark.parametrize("body", [
    "s = 'x' * 1000\nwhile True:\n    s = s + s",
    "s = 'x' * 1000\nwhile True:\n    s += s",
    "items = [0] * 1000\nwhile True:\n    items.extend(items)",
    "items = [0] * 1000\nwhile True:\n    items.push(*items)",
    "return 'x'.ljust(10 ** 9)",
    "return 'x'.center(10 ** 9, '*')",
    "return '1'.zfill(10 ** 9)",
    "return ('x' * 1000).replace('x', 'y' * 10000)",
    "return f\"{'x':>1000000000}\"",
    "return '-'.join(['x' * 100000] * 20)",
])
def test_oversized_results_are_refused(runtime, body):
    with pytest.raises(FunctionRuntimeError, match="too large"):
        runtime.run(body, {})


def test_ordinary_growth_is_allowed(runtime):
    body = "s = 'ab'\nfor i in range(10):\n    s = s + s\nreturn len(s.ljust(5000).replace('a', 'aa'))"
    assert runtime.run(body, {}) == 6024
