"""Tests for workflow schema validation, cycle detection and ordering."""

import pytest

from conftest import hello_workflow, task, workflow
from sflflow.models import Workflow
from sflflow.validator import (
    check_workflow,
    execution_order,
    format_error_path,
    has_circular_dependencies,
    validate_workflow,
)


def test_valid_workflow_is_accepted():
    result = validate_workflow(hello_workflow())

    assert result.success
    assert result.errors == []
    assert result.category is None
    assert isinstance(result.data, Workflow)
    assert [t.id for t in result.data.tasks] == ["t1", "t2"]


def test_revalidating_same_document_yields_identical_data():
    doc = hello_workflow()
    assert validate_workflow(doc).data == validate_workflow(doc).data


def test_duplicate_ids_are_named_once_each():
    doc = workflow(
        task("a", "SIMULATE_PROCESS", "o1"),
        task("a", "SIMULATE_PROCESS", "o2"),
        task("b", "SIMULATE_PROCESS", "o3"),
        task("b", "SIMULATE_PROCESS", "o4"),
        task("a", "SIMULATE_PROCESS", "o5"),
    )
    result = validate_workflow(doc)

    assert not result.success
    assert result.category == "schema"
    assert result.field_errors["tasks"] == ["Duplicate task IDs found: a, b"]


def test_dangling_dependency_reported_per_index():
    doc = workflow(
        task("a", "SIMULATE_PROCESS", "o1"),
        task("b", "SIMULATE_PROCESS", "o2", dependencies=["a", "x", "y"]),
    )
    result = validate_workflow(doc)

    assert not result.success
    assert result.field_errors["tasks[1].dependencies[1]"] == [
        "Task 'b' references non-existent dependency 'x'"
    ]
    assert "tasks[1].dependencies[2]" in result.field_errors
    assert "tasks[1].dependencies[0]" not in result.field_errors


def test_missing_prompt_template_is_path_scoped():
    doc = workflow(task("p", "GEMINI_PROMPT", "out"))
    result = validate_workflow(doc)

    assert result.field_errors["tasks[0].promptTemplate"] == ["required"]
    assert "tasks[0].promptTemplate: required" in result.errors


def test_prompt_id_satisfies_prompt_requirement():
    doc = workflow(task("p", "GEMINI_GROUNDED", "out", promptId="p-1"))
    assert validate_workflow(doc).success


@pytest.mark.parametrize("task_type, field", [
    ("DATA_INPUT", "staticValue"),
    ("TEXT_MANIPULATION", "functionBody"),
    ("DISPLAY_CHART", "dataKey"),
])
def test_type_specific_payload_is_required(task_type, field):
    result = validate_workflow(workflow(task("t", task_type, "out")))

    assert not result.success
    assert result.field_errors[f"tasks[0].{field}"] == ["required"]


def test_null_static_value_is_allowed():
    assert validate_workflow(workflow(task("t", "DATA_INPUT", "out", staticValue=None))).success


def test_unknown_task_type_reported_on_type_field():
    result = validate_workflow(workflow(task("t", "SEND_EMAIL", "out")))
    assert "tasks[0].type" in result.field_errors


def test_bounds_are_enforced():
    doc = workflow(task("bad id!", "SIMULATE_PROCESS", "k" * 51), name="n" * 201)
    result = validate_workflow(doc)

    assert "name" in result.field_errors
    assert "tasks[0].id" in result.field_errors
    assert "tasks[0].outputKey" in result.field_errors


def test_task_count_bounds():
    assert "tasks" in validate_workflow(workflow()).field_errors

    many = [task(f"t{i}", "SIMULATE_PROCESS", f"o{i}") for i in range(51)]
    assert "tasks" in validate_workflow(workflow(*many)).field_errors


def test_empty_dependency_string_rejected():
    result = validate_workflow(workflow(task("t", "SIMULATE_PROCESS", "o", dependencies=[""])))
    assert "tasks[0].dependencies[0]" in result.field_errors


def test_complete_error_set_in_one_call():
    doc = workflow(
        task("a", "GEMINI_PROMPT", "o1"),
        task("a", "SIMULATE_PROCESS", "o2", dependencies=["ghost"]),
        name="",
    )
    result = validate_workflow(doc)

    assert set(result.field_errors) >= {
        "name",
        "tasks[0].promptTemplate",
        "tasks",
        "tasks[1].dependencies[0]",
    }


def test_non_mapping_document():
    result = validate_workflow(["not", "a", "workflow"])

    assert not result.success
    assert "(root)" in result.field_errors


def test_format_error_path_drops_union_tag():
    assert format_error_path(("tasks", 2, "GEMINI_PROMPT", "promptTemplate")) == "tasks[2].promptTemplate"
    assert format_error_path(("tasks", 0, "dependencies", 3)) == "tasks[0].dependencies[3]"
    assert format_error_path(()) == "(root)"


def _graph(edges):
    tasks = [
        task(node, "SIMULATE_PROCESS", f"out_{node}", dependencies=deps)
        for node, deps in edges.items()
    ]
    return validate_workflow(workflow(*tasks)).data


def test_acyclic_graphs_have_no_cycle():
    assert not has_circular_dependencies(_graph({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]}))
    assert not has_circular_dependencies(_graph({"a": []}))


@pytest.mark.parametrize("edges", [
    {"a": ["b"], "b": ["a"]},
    {"b": ["a"], "a": ["b"]},
    {"x": [], "a": ["c"], "b": ["a"], "c": ["b"]},
    {"a": ["a"]},
])
def test_back_edge_detected_from_any_start(edges):
    assert has_circular_dependencies(_graph(edges))


def test_check_workflow_reports_cycle_category():
    doc = workflow(
        task("a", "SIMULATE_PROCESS", "o1", dependencies=["b"]),
        task("b", "SIMULATE_PROCESS", "o2", dependencies=["a"]),
    )
    result = check_workflow(doc)

    assert not result.success
    assert result.category == "cycle"
    assert result.data is None


def test_check_workflow_reports_schema_category_first():
    result = check_workflow(workflow(task("a", "GEMINI_PROMPT", "o1", dependencies=["a"])))
    assert result.category == "schema"


def test_result_to_dict_uses_camel_case():
    body = validate_workflow(hello_workflow()).to_dict()

    assert body["success"] is True
    assert body["data"]["tasks"][1]["functionBody"] == "return inputs.x.toUpperCase()"
    assert body["fieldErrors"] == {}


def test_execution_order_keeps_consistent_arrays():
    tasks = _graph({"a": [], "b": ["a"], "c": [], "d": ["c", "b"]}).tasks
    assert execution_order(tasks) == tasks


def test_execution_order_hoists_dependencies():
    tasks = _graph({"report": ["fetch"], "other": [], "fetch": []}).tasks
    ordered = [t.id for t in execution_order(tasks)]

    assert ordered == ["other", "fetch", "report"]


def test_execution_order_rejects_cycles():
    tasks = _graph({"a": ["b"], "b": ["a"]}).tasks
    with pytest.raises(ValueError, match="Circular dependency"):
        execution_order(tasks)
