# ============================================================================
#  File:    errors.py
#  Purpose: Engine error codes, standardized messages, and exception types
# ============================================================================
# SECTION 1: Imports and Globals
# ============================================================================

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from sflflow.validator import ValidationResult

# ============================================================================
# SECTION 2: Error Codes and Messages
# ============================================================================
ERROR_CODES = {
    'E001': 'Workflow validation failed',
    'E002': 'Circular dependency detected',
    'E003': 'Missing required input',
    'E004': 'Task execution failed',
    'E005': 'LLM call failed or timed out',
    'E006': 'Queue or broker unavailable',
    'E999': 'Unknown error'
}

# ============================================================================
# Function 2.1: get_error_message
# ============================================================================
def get_error_message(code, detail=None):
    """Formats a standardized error message from an error code."""
    message = ERROR_CODES.get(code, ERROR_CODES['E999'])
    if detail:
        return f"[{code}] {message}: {str(detail)}"
    return f"[{code}] {message}"

# ============================================================================
# SECTION 3: Exception Hierarchy
# ============================================================================
class SflflowError(Exception):
    """Base class for every error raised by the engine."""
    code = 'E999'


class WorkflowRejectedError(SflflowError):
    """A workflow document failed schema validation or cycle detection."""
    code = 'E001'

    def __init__(self, result: 'ValidationResult'):
        self.result = result
        self.category = result.category
        if result.category == "cycle":
            self.code = 'E002'
        super().__init__(get_error_message(self.code, "; ".join(result.errors)))


class QueueError(SflflowError):
    """Submission, status lookup, or dequeue failed at the broker."""
    code = 'E006'


# ============================================================================
# SECTION 4: Task Errors
# ============================================================================
class TaskExecutionError(SflflowError):
    """
    A single task failed. Fatal to the task and to the current job attempt;
    `retryable` tells the worker whether another attempt may succeed.
    """
    code = 'E004'
    retryable = True

    def __init__(self, message: str, task_id: Optional[str] = None,
                 task_name: Optional[str] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.task_name = task_name
        if retryable is not None:
            self.retryable = retryable


class MissingInputError(TaskExecutionError):
    code = 'E003'

    def __init__(self, key: str, task_name: str, task_id: Optional[str] = None):
        self.key = key
        super().__init__(
            f'Missing required input key "{key}" in data store for task "{task_name}".',
            task_id=task_id, task_name=task_name,
        )


class InvalidImageDataError(TaskExecutionError):
    pass


class FunctionRuntimeError(TaskExecutionError):
    pass


class PromptNotFoundError(TaskExecutionError):
    retryable = False


class UnsupportedTaskTypeError(TaskExecutionError):
    retryable = False


class TaskTimeoutError(TaskExecutionError):
    code = 'E005'


class LLMRunnerError(TaskExecutionError):
    code = 'E005'

#
#
## End Script
