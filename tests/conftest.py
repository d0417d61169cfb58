"""Shared fixtures: fake LLM runner, prompt library and engine settings."""

import asyncio

import pytest

from sflflow.config_manager import EngineSettings
from sflflow.dispatcher import TaskDispatcher
from sflflow.engine import build_engine
from sflflow.job_store import InMemoryJobStore
from sflflow.models import PromptDefinition
from sflflow.prompts import InMemoryPromptLibrary
from sflflow.runners import GroundedResponse, LLMResponse


class FakeLLMRunner:
    """Records every call; replies with canned text or raises queued errors."""

    def __init__(self, text="fake completion", sources=None, delay=0.0):
        self.text = text
        self.sources = sources if sources is not None else [{"uri": "https://example.com", "title": "Example"}]
        self.delay = delay
        self.calls = []
        self.failures = []

    def fail_next(self, *errors):
        self.failures.extend(errors)

    async def _reply(self, kind, **kwargs):
        self.calls.append({"kind": kind, **kwargs})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)

    async def complete(self, prompt, system_instruction=None, config=None, image=None):
        await self._reply("complete", prompt=prompt, system_instruction=system_instruction,
                          config=config, image=image)
        return LLMResponse(text=self.text, usage={"totalTokens": 3})

    async def complete_grounded(self, prompt, system_instruction=None, config=None):
        await self._reply("grounded", prompt=prompt, system_instruction=system_instruction, config=config)
        return GroundedResponse(text=self.text, sources=list(self.sources))


def task(task_id, task_type, output_key, dependencies=(), input_keys=(), **payload):
    """Builds a task document with the common fields filled in."""
    return {
        "id": task_id,
        "name": payload.pop("name", f"Task {task_id}"),
        "description": payload.pop("description", f"Runs {task_id}"),
        "type": task_type,
        "dependencies": list(dependencies),
        "inputKeys": list(input_keys),
        "outputKey": output_key,
        **payload,
    }


def workflow(*tasks, name="S", description="d"):
    return {"name": name, "description": description, "tasks": list(tasks)}


def hello_workflow(function_body="return inputs.x.toUpperCase()"):
    return workflow(
        task("t1", "DATA_INPUT", "x", staticValue="hello"),
        task("t2", "TEXT_MANIPULATION", "y", dependencies=["t1"], input_keys=["x"],
             functionBody=function_body),
    )


@pytest.fixture
def runner():
    return FakeLLMRunner()


@pytest.fixture
def linked_prompt():
    return PromptDefinition.model_validate({
        "id": "p-1",
        "title": "Summary",
        "promptText": "Summarize {{article}}",
        "sflTenor": {
            "aiPersona": "seasoned editor",
            "targetAudience": ["students", "teachers"],
            "desiredTone": "friendly",
        },
        "sflMode": {"textualDirectives": "use bullet points"},
    })


@pytest.fixture
def prompt_library(linked_prompt):
    return InMemoryPromptLibrary([linked_prompt])


@pytest.fixture
def dispatcher(runner):
    return TaskDispatcher(runner, simulate_delay=0)


@pytest.fixture
def settings():
    return EngineSettings(
        worker_concurrency=2,
        max_attempts=3,
        backoff_base_delay=0,
        task_timeout=5,
        poll_interval=0.02,
        simulate_delay=0,
    )


@pytest.fixture
def engine(settings, runner, prompt_library):
    """An engine with in-memory storage whose workers are not started yet."""
    return build_engine(settings, llm_runner=runner, prompt_lookup=prompt_library, store=InMemoryJobStore())


@pytest.fixture
async def started_engine(engine):
    await engine.start()
    yield engine
    await engine.close()
