# ============================================================================
#  File: engine.py
#  Purpose: Composition root wiring the store, dispatcher, broadcaster and
#           job queue from one EngineSettings object
# ============================================================================
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from sflflow.broadcaster import ProgressBroadcaster
from sflflow.config_manager import EngineSettings
from sflflow.dispatcher import TaskDispatcher
from sflflow.function_runtime import RestrictedFunctionRuntime
from sflflow.job_queue import JobQueue
from sflflow.job_store import InMemoryJobStore, JobStore, RedisJobStore
from sflflow.prompts import InMemoryPromptLibrary, PromptLookup, YamlPromptLibrary
from sflflow.runners import LLMRunner


@dataclass
class Engine:
    settings: EngineSettings
    store: JobStore
    dispatcher: TaskDispatcher
    broadcaster: ProgressBroadcaster
    queue: JobQueue

    async def start(self) -> None:
        await self.queue.start()

    async def close(self) -> None:
        await self.queue.stop()
        await self.store.close()


def build_engine(
    settings: EngineSettings,
    llm_runner: Optional[LLMRunner] = None,
    prompt_lookup: Optional[PromptLookup] = None,
    store: Optional[JobStore] = None,
) -> Engine:
    """
    Builds every engine component from `settings`.

    Collaborators passed in explicitly take precedence, which is how tests
    swap in fake runners, prompt libraries and stores.
    """
    if llm_runner is None:
        from sflflow.gemini_runner import GeminiRunner
        llm_runner = GeminiRunner(api_key=settings.gemini_api_key, default_model=settings.default_model)

    if prompt_lookup is None:
        if settings.prompt_library_path:
            prompt_lookup = YamlPromptLibrary(settings.prompt_library_path)
        else:
            prompt_lookup = InMemoryPromptLibrary()

    if store is None:
        if settings.redis_url:
            store = RedisJobStore(
                settings.redis_url,
                prefix=settings.queue_name,
                keep_completed=settings.keep_completed,
                keep_failed=settings.keep_failed,
                lease_ttl=settings.lease_ttl,
            )
        else:
            store = InMemoryJobStore(keep_completed=settings.keep_completed, keep_failed=settings.keep_failed)
    logger.info(f"Using {type(store).__name__} for job storage")

    dispatcher = TaskDispatcher(
        llm_runner,
        function_runtime=RestrictedFunctionRuntime(step_limit=settings.function_step_limit),
        simulate_delay=settings.simulate_delay,
    )
    broadcaster = ProgressBroadcaster()
    queue = JobQueue(
        store,
        dispatcher,
        broadcaster,
        prompt_lookup=prompt_lookup,
        concurrency=settings.worker_concurrency,
        max_attempts=settings.max_attempts,
        backoff_base_delay=settings.backoff_base_delay,
        task_timeout=settings.task_timeout,
        poll_interval=settings.poll_interval,
        heartbeat_interval=settings.heartbeat_interval,
    )
    return Engine(settings=settings, store=store, dispatcher=dispatcher, broadcaster=broadcaster, queue=queue)

#
#
## End of Script
