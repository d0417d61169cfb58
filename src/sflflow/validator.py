# ============================================================================
#  File: validator.py
#  Purpose: Structural validation, cross-reference checks and cycle
#           detection for untrusted workflow documents
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
import heapq
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import ValidationError

from sflflow.models import TaskType, Workflow

TASK_TAGS = frozenset(t.value for t in TaskType)
# Pydantic error types that carry the offending key on the union itself
TAG_ERRORS = ("union_tag_invalid", "union_tag_not_found")
#
# ============================================================================
# SECTION 2: Validation Result
# ============================================================================
# Class 2.1: ValidationResult
# ============================================================================
#
@dataclass
class ValidationResult:
    """
    Outcome of validating one workflow document.

    `errors` holds human readable "path: message" strings, `field_errors`
    groups the messages by path. `category` is "schema" or "cycle" when the
    document was rejected.
    """

    success: bool
    data: Optional[Workflow] = None
    errors: List[str] = field(default_factory=list)
    field_errors: Dict[str, List[str]] = field(default_factory=dict)
    category: Optional[str] = None

    def add_error(self, path: str, message: str) -> None:
        self.field_errors.setdefault(path, []).append(message)
        self.errors.append(f"{path}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data.to_document() if self.data is not None else None,
            "errors": list(self.errors),
            "fieldErrors": {path: list(msgs) for path, msgs in self.field_errors.items()},
            "category": self.category,
        }
#
# ============================================================================
# SECTION 3: Error Path Formatting
# ============================================================================
# Function 3.1: format_error_path
# ============================================================================
#
def format_error_path(loc: Sequence[Any]) -> str:
    """
    Renders a pydantic error location as `tasks[2].promptTemplate`.

    The discriminator tag pydantic inserts after a list index
    (`tasks, 2, GEMINI_PROMPT, promptTemplate`) is dropped.

    Args:
        loc: The `loc` tuple of a pydantic error.

    Returns:
        The dotted/indexed path, or "(root)" for document level errors.
    """
    path = ""
    previous = None
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        elif isinstance(previous, int) and part in TASK_TAGS:
            # Tagged-union branch name, not a field
            pass
        else:
            path = f"{path}.{part}" if path else str(part)
        previous = part
    return path or "(root)"


def _error_location(error: Dict[str, Any]) -> List[Any]:
    loc = list(error.get("loc", ()))
    ctx = error.get("ctx") or {}
    if error.get("type") in TAG_ERRORS:
        loc.append("type")
    elif "field" in ctx:
        loc.append(ctx["field"])
    return loc


def _error_message(error: Dict[str, Any]) -> str:
    if error.get("type") == "missing":
        return "required"
    return error.get("msg", "invalid value")
#
# ============================================================================
# SECTION 4: Validation
# ============================================================================
# Function 4.1: validate_workflow
# ============================================================================
#
def validate_workflow(doc: Any) -> ValidationResult:
    """
    Validates a workflow document field by field.

    Structural errors, duplicate task ids and dangling dependencies are all
    collected, so one call returns the complete error set for a document.
    Cycle detection is not part of this check; see `check_workflow`.

    Args:
        doc: A decoded JSON document, or an already built Workflow.

    Returns:
        ValidationResult with `data` set when the document is valid.
    """
    if isinstance(doc, Workflow):
        doc = doc.to_document()

    result = ValidationResult(success=False)
    workflow = None
    try:
        workflow = Workflow.model_validate(doc)
    except ValidationError as e:
        for error in e.errors():
            result.add_error(format_error_path(_error_location(error)), _error_message(error))

    _check_cross_references(doc, result)

    if result.errors:
        result.category = "schema"
        logger.debug(f"Workflow rejected with {len(result.errors)} schema error(s)")
        return result

    result.success = True
    result.data = workflow
    return result


# ============================================================================
# Function 4.2: _check_cross_references
# ============================================================================
def _check_cross_references(doc: Any, result: ValidationResult) -> None:
    """Duplicate ids and dangling dependencies, read from the raw document."""
    if not isinstance(doc, dict) or not isinstance(doc.get("tasks"), list):
        return

    tasks = [t for t in doc["tasks"] if isinstance(t, dict)]
    seen = set()
    duplicates: List[str] = []
    for task in tasks:
        task_id = task.get("id")
        if not isinstance(task_id, str):
            continue
        if task_id in seen and task_id not in duplicates:
            duplicates.append(task_id)
        seen.add(task_id)

    if duplicates:
        result.add_error("tasks", f"Duplicate task IDs found: {', '.join(duplicates)}")

    for i, task in enumerate(doc["tasks"]):
        if not isinstance(task, dict) or not isinstance(task.get("dependencies"), list):
            continue
        for j, dep in enumerate(task["dependencies"]):
            if isinstance(dep, str) and dep and dep not in seen:
                result.add_error(
                    f"tasks[{i}].dependencies[{j}]",
                    f"Task '{task.get('id')}' references non-existent dependency '{dep}'",
                )
#
# ============================================================================
# SECTION 5: Graph Checks
# ============================================================================
# Function 5.1: has_circular_dependencies
# ============================================================================
#
def has_circular_dependencies(workflow: Workflow) -> bool:
    """
    Three-colour depth-first search over the dependency relation.

    Every unvisited task is restarted as a new root, so a back-edge is found
    regardless of where the search begins.
    """
    task_deps = {task.id: task.dependencies for task in workflow.tasks}
    visited = set()
    recursion_stack = set()

    # =========================================================================
    # Method 5.1.1: has_cycle
    # Recursively checks for a back-edge below the current task.
    # =========================================================================
    def has_cycle(current: str) -> bool:
        if current in recursion_stack:
            return True
        if current in visited:
            return False

        visited.add(current)
        recursion_stack.add(current)

        for dependency in task_deps.get(current, []):
            if has_cycle(dependency):
                return True

        recursion_stack.discard(current)
        return False

    for task in workflow.tasks:
        if task.id not in visited:
            if has_cycle(task.id):
                logger.debug(f"Circular dependency detected involving task '{task.id}'")
                return True
    return False


# ============================================================================
# Function 5.2: check_workflow
# ============================================================================
def check_workflow(doc: Any) -> ValidationResult:
    """Schema validation followed by cycle detection."""
    result = validate_workflow(doc)
    if not result.success:
        return result

    if has_circular_dependencies(result.data):
        rejected = ValidationResult(success=False, category="cycle")
        rejected.add_error("tasks", "Workflow contains circular dependencies")
        return rejected
    return result


# ============================================================================
# Function 5.3: execution_order
# ============================================================================
def execution_order(tasks: Sequence[Any]) -> List[Any]:
    """
    Stable topological order of `tasks`.

    A task list already consistent with its dependencies comes back
    unchanged; otherwise dependencies are hoisted ahead of their dependants,
    and among ready tasks the earliest array position runs first.

    Raises:
        ValueError: if the dependencies contain a cycle.
    """
    index_of = {task.id: i for i, task in enumerate(tasks)}
    pending = {i: 0 for i in range(len(tasks))}
    dependants: Dict[int, List[int]] = {i: [] for i in range(len(tasks))}

    for i, task in enumerate(tasks):
        for dep in task.dependencies:
            if dep in index_of:
                pending[i] += 1
                dependants[index_of[dep]].append(i)

    ready = [i for i, count in pending.items() if count == 0]
    heapq.heapify(ready)
    ordered = []
    while ready:
        i = heapq.heappop(ready)
        ordered.append(tasks[i])
        for child in dependants[i]:
            pending[child] -= 1
            if pending[child] == 0:
                heapq.heappush(ready, child)

    if len(ordered) != len(tasks):
        stuck = [tasks[i].id for i, count in pending.items() if count > 0]
        raise ValueError(f"Circular dependency detected involving tasks: {', '.join(stuck)}")
    return ordered

#
#
## End of Script
