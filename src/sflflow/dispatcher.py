# ============================================================================
#  File: dispatcher.py
#  Purpose: Executes a single task according to its type
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
import asyncio
import base64
import binascii
from typing import Any, Dict, Optional

from loguru import logger

from sflflow.config import SIMULATE_PROCESS_DELAY
from sflflow.data_store import MISSING, DataStore, resolve_template, stringify_value
from sflflow.errors import (
    InvalidImageDataError,
    LLMRunnerError,
    MissingInputError,
    PromptNotFoundError,
    TaskExecutionError,
    UnsupportedTaskTypeError,
)
from sflflow.function_runtime import RestrictedFunctionRuntime
from sflflow.models import PromptDefinition, TaskType
from sflflow.prompts import build_system_instruction
from sflflow.runners import ImageInput, LLMRunner
#
# ============================================================================
# SECTION 2: Class Definition - TaskDispatcher
# ============================================================================
#
class TaskDispatcher:
    """
    Runs one task against the current Data Store and returns its result.

    The dispatcher only reads the store; writing the result under the
    task's output key is the worker's job.
    """

    def __init__(
        self,
        llm_runner: LLMRunner,
        function_runtime: Optional[RestrictedFunctionRuntime] = None,
        simulate_delay: float = SIMULATE_PROCESS_DELAY,
    ):
        self.llm_runner = llm_runner
        self.function_runtime = function_runtime or RestrictedFunctionRuntime()
        self.simulate_delay = simulate_delay
        self._handlers = {
            TaskType.DATA_INPUT.value: self._run_data_input,
            TaskType.GEMINI_PROMPT.value: self._run_prompt,
            TaskType.GEMINI_GROUNDED.value: self._run_grounded,
            TaskType.IMAGE_ANALYSIS.value: self._run_image_analysis,
            TaskType.TEXT_MANIPULATION.value: self._run_text_manipulation,
            TaskType.DISPLAY_CHART.value: self._run_display_chart,
            TaskType.SIMULATE_PROCESS.value: self._run_simulate_process,
        }

    # ========================================================================
    # Async Function 2.1: execute
    # ========================================================================
    async def execute(
        self, task, store: DataStore, linked_prompt: Optional[PromptDefinition] = None
    ) -> Any:
        """
        Executes `task` and returns its result.

        Args:
            task: A validated task variant
            store: The run's Data Store (read only here)
            linked_prompt: The prompt referenced by `task.prompt_id`, if any

        Returns:
            The task result, to be stored under `task.output_key`

        Raises:
            TaskExecutionError: or one of its subclasses, carrying the
                task id and name
        """
        task_type = getattr(task, "type", None)
        handler = self._handlers.get(getattr(task_type, "value", task_type))
        try:
            if handler is None:
                raise UnsupportedTaskTypeError(f"Unsupported task type: {task_type}")
            inputs = self.resolve_inputs(task, store)
            logger.debug(f"Dispatching task '{task.id}' ({task.type}) with inputs {list(inputs)}")
            return await handler(task, store, inputs, linked_prompt)
        except TaskExecutionError as e:
            if e.task_id is None:
                e.task_id = task.id
                e.task_name = task.name
            raise

    # ========================================================================
    # Function 2.2: resolve_inputs
    # ========================================================================
    def resolve_inputs(self, task, store: DataStore) -> Dict[str, Any]:
        """
        Looks up every input key; keys are flattened to their last segment.

        Raises:
            MissingInputError: if any key does not resolve
        """
        inputs: Dict[str, Any] = {}
        for key in task.input_keys:
            value = store.lookup(key)
            if value is MISSING:
                raise MissingInputError(key, task.name, task_id=task.id)
            inputs[key.split(".")[-1]] = value
        return inputs
    #
    # =========================================================================
    # SECTION 3: Per-type Handlers
    # =========================================================================
    #
    async def _run_data_input(self, task, store, inputs, linked_prompt):
        if isinstance(task.static_value, str):
            return resolve_template(task.static_value, store)
        return task.static_value

    async def _run_prompt(self, task, store, inputs, linked_prompt):
        prompt, system_instruction = self._prepare_prompt(task, store, linked_prompt)
        response = await self._call_runner(
            task, self.llm_runner.complete(prompt, system_instruction, task.agent_config)
        )
        return response.text

    async def _run_grounded(self, task, store, inputs, linked_prompt):
        prompt, system_instruction = self._prepare_prompt(task, store, linked_prompt)
        response = await self._call_runner(
            task, self.llm_runner.complete_grounded(prompt, system_instruction, task.agent_config)
        )
        return response.to_result()

    async def _run_image_analysis(self, task, store, inputs, linked_prompt):
        if not task.input_keys:
            raise InvalidImageDataError("Image analysis task has no input key for the image data.")
        image = _decode_image(store.lookup(task.input_keys[0]), task.input_keys[0])
        prompt, system_instruction = self._prepare_prompt(task, store, linked_prompt)
        response = await self._call_runner(
            task, self.llm_runner.complete(prompt, system_instruction, task.agent_config, image=image)
        )
        return response.text

    async def _run_text_manipulation(self, task, store, inputs, linked_prompt):
        return await asyncio.to_thread(self.function_runtime.run, task.function_body, inputs)

    async def _run_display_chart(self, task, store, inputs, linked_prompt):
        value = store.lookup(task.data_key)
        if value is MISSING:
            logger.warning(f"Chart data key '{task.data_key}' not found for task '{task.name}'")
            return None
        return value

    async def _run_simulate_process(self, task, store, inputs, linked_prompt):
        await asyncio.sleep(self.simulate_delay)
        return {"status": "ok", "message": f"Simulated process for {task.name} completed."}
    #
    # =========================================================================
    # SECTION 4: Prompt Preparation
    # =========================================================================
    #
    def _prepare_prompt(self, task, store, linked_prompt):
        """Returns (resolved prompt text, system instruction)."""
        system_instruction = task.agent_config.system_instruction if task.agent_config else None

        if task.prompt_id:
            if linked_prompt is None:
                raise PromptNotFoundError(
                    f'Linked prompt "{task.prompt_id}" not found for task "{task.name}".'
                )
            template = linked_prompt.prompt_text
            system_instruction = build_system_instruction(linked_prompt) or system_instruction
        else:
            template = task.prompt_template

        resolved = resolve_template(template, store)
        if not isinstance(resolved, str):
            resolved = stringify_value(resolved)
        return resolved, system_instruction

    async def _call_runner(self, task, call):
        try:
            return await call
        except TaskExecutionError:
            raise
        except Exception as e:
            logger.exception(f"LLM call failed for task '{task.name}': {str(e)}")
            raise LLMRunnerError(f"LLM call failed: {str(e)}", task_id=task.id, task_name=task.name) from e
#
# ============================================================================
# SECTION 5: Helpers
# ============================================================================
#
def _decode_image(descriptor: Any, key: str) -> ImageInput:
    if not isinstance(descriptor, dict):
        raise InvalidImageDataError(
            f'Input "{key}" is not valid image data. Expected an object with base64 and mimeType.'
        )
    encoded = descriptor.get("base64")
    mime_type = descriptor.get("mimeType") or descriptor.get("type")
    if not isinstance(encoded, str) or not encoded or not isinstance(mime_type, str) or not mime_type:
        raise InvalidImageDataError(
            f'Input "{key}" is not valid image data. Expected an object with base64 and mimeType.'
        )
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImageDataError(f'Input "{key}" does not contain valid base64 image data: {e}') from e
    return ImageInput(data=data, mime_type=mime_type)

#
#
## End of Script
