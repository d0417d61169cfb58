"""Tests for job submission, the worker pool, retries and progress events."""

import asyncio

import pytest

from conftest import hello_workflow, task, workflow
from sflflow.broadcaster import QueueChannel
from sflflow.errors import LLMRunnerError, WorkflowRejectedError
from sflflow.job_store import InMemoryJobStore


async def run_job(engine, doc, user_input=None, workflow_id="wf-1"):
    job_id = await engine.queue.submit(workflow_id, doc, user_input)
    return job_id, await engine.queue.wait_for(job_id, timeout=5)


async def test_hello_workflow_completes(started_engine):
    job_id, status = await run_job(started_engine, hello_workflow())

    assert status["status"] == "completed"
    assert status["attempts"] == 1
    assert status["result"]["dataStore"]["y"] == "HELLO"
    assert status["result"]["results"] == {"t1": "hello", "t2": "HELLO"}
    assert status["result"]["workflowId"] == "wf-1"
    assert status["startedAt"] and status["finishedAt"]


async def test_throwing_function_fails_job(started_engine):
    job_id, status = await run_job(started_engine, hello_workflow('raise ValueError("boom")'))

    assert status["status"] == "failed"
    assert "result" not in status
    assert "boom" in status["failureReason"]
    assert status["failedTaskId"] == "t2"
    record = await started_engine.store.get(job_id)
    assert "y" not in record.failure_snapshot["dataStore"]
    assert record.failure_snapshot["results"] == {"t1": "hello"}


async def test_failure_aborts_remaining_tasks(started_engine, runner):
    doc = workflow(
        task("t1", "DATA_INPUT", "x", staticValue="hi"),
        task("t2", "TEXT_MANIPULATION", "y", dependencies=["t1"], name="Breaker",
             functionBody='raise RuntimeError("task two exploded")'),
        task("t3", "GEMINI_PROMPT", "z", dependencies=["t2"], promptTemplate="{{y}}"),
    )
    job_id, status = await run_job(started_engine, doc)

    assert status["status"] == "failed"
    assert status["failedTaskId"] == "t2"
    assert 'Task "Breaker" (t2) failed' in status["failureReason"]
    assert "attempt 3 of 3" in status["failureReason"]
    assert runner.calls == []
    record = await started_engine.store.get(job_id)
    assert "t3" not in record.failure_snapshot["results"]


async def test_user_input_seeds_the_data_store(started_engine):
    doc = workflow(task("t1", "DATA_INPUT", "topic", staticValue="Topic: {{userInput.topic}}"))
    _, status = await run_job(started_engine, doc, user_input={"topic": "bees"})

    assert status["result"]["dataStore"]["topic"] == "Topic: bees"
    assert status["result"]["dataStore"]["userInput"] == {"topic": "bees"}


async def test_missing_user_input_seeds_empty_object(started_engine):
    doc = workflow(
        task("t1", "TEXT_MANIPULATION", "x", input_keys=["userInput"], functionBody="return inputs.userInput.x"),
    )
    _, status = await run_job(started_engine, doc)

    assert status["status"] == "completed"
    assert status["result"]["dataStore"]["userInput"] == {}
    assert status["result"]["dataStore"]["x"] is None


async def test_runner_error_with_braces_is_reported(started_engine, runner):
    runner.fail_next(*[RuntimeError('400 {"error": "quota exceeded"}') for _ in range(3)])
    doc = workflow(task("p", "GEMINI_PROMPT", "answer", promptTemplate="hi"))
    _, status = await run_job(started_engine, doc)

    assert status["status"] == "failed"
    assert status["attempts"] == 3
    assert '{"error": "quota exceeded"}' in status["failureReason"]


async def test_transient_failure_is_retried(started_engine, runner):
    runner.fail_next(LLMRunnerError("503 from provider"))
    doc = workflow(task("p", "GEMINI_PROMPT", "answer", promptTemplate="hi"))
    _, status = await run_job(started_engine, doc)

    assert status["status"] == "completed"
    assert status["attempts"] == 2
    assert len(runner.calls) == 2


async def test_retries_exhausted(started_engine, runner):
    runner.fail_next(*[LLMRunnerError("still down") for _ in range(3)])
    doc = workflow(task("p", "GEMINI_PROMPT", "answer", promptTemplate="hi"))
    _, status = await run_job(started_engine, doc)

    assert status["status"] == "failed"
    assert status["attempts"] == 3
    assert "still down" in status["failureReason"]


async def test_non_retryable_failure_fails_immediately(started_engine, runner):
    doc = workflow(task("p", "GEMINI_PROMPT", "answer", promptId="does-not-exist"))
    _, status = await run_job(started_engine, doc)

    assert status["status"] == "failed"
    assert status["attempts"] == 1
    assert "does-not-exist" in status["failureReason"]


async def test_linked_prompts_are_resolved(started_engine, runner):
    doc = workflow(
        task("a", "DATA_INPUT", "article", staticValue="Bees dance."),
        task("p", "GEMINI_PROMPT", "summary", dependencies=["a"], promptId="p-1"),
    )
    _, status = await run_job(started_engine, doc)

    assert status["status"] == "completed"
    assert runner.calls[0]["prompt"] == "Summarize Bees dance."
    assert runner.calls[0]["system_instruction"].startswith("You will act as a seasoned editor.")


async def test_slow_task_times_out(settings, runner, prompt_library):
    from sflflow.engine import build_engine

    runner.delay = 1.0
    settings = settings.model_copy(update={"task_timeout": 0.05, "max_attempts": 1})
    engine = build_engine(settings, llm_runner=runner, prompt_lookup=prompt_library, store=InMemoryJobStore())
    await engine.start()
    try:
        _, status = await run_job(engine, workflow(task("p", "GEMINI_PROMPT", "o", promptTemplate="hi")))
    finally:
        await engine.close()

    assert status["status"] == "failed"
    assert "timed out" in status["failureReason"]


async def test_out_of_order_tasks_are_sorted(started_engine):
    doc = workflow(
        task("t2", "TEXT_MANIPULATION", "y", dependencies=["t1"], input_keys=["x"],
             functionBody="return inputs.x + '!'"),
        task("t1", "DATA_INPUT", "x", staticValue="hello"),
    )
    _, status = await run_job(started_engine, doc)

    assert status["status"] == "completed"
    assert status["result"]["dataStore"]["y"] == "hello!"


async def test_submit_rejects_cycles(engine):
    doc = workflow(
        task("a", "SIMULATE_PROCESS", "o1", dependencies=["b"]),
        task("b", "SIMULATE_PROCESS", "o2", dependencies=["a"]),
    )
    with pytest.raises(WorkflowRejectedError) as exc_info:
        await engine.queue.submit("wf", doc)

    assert exc_info.value.category == "cycle"
    assert exc_info.value.code == "E002"


async def test_submit_rejects_schema_errors(engine):
    with pytest.raises(WorkflowRejectedError) as exc_info:
        await engine.queue.submit("wf", workflow(task("p", "GEMINI_PROMPT", "o")))

    assert exc_info.value.category == "schema"
    assert "tasks[0].promptTemplate" in exc_info.value.result.field_errors


async def test_submit_returns_immediately_with_unique_ids(engine):
    first = await engine.queue.submit("wf", hello_workflow())
    second = await engine.queue.submit("wf", hello_workflow())

    assert first != second
    assert first.startswith("workflow-wf-")
    status = await engine.queue.get_status(first)
    assert status["status"] == "queued"
    assert status["attempts"] == 0


async def test_unknown_job_status_is_none(engine):
    assert await engine.queue.get_status("workflow-nope-000") is None


async def test_waiting_leaves_no_events_behind(started_engine):
    queue = started_engine.queue
    assert await queue.wait_for("workflow-nope-000", timeout=1) is None

    job_id, status = await run_job(started_engine, hello_workflow())
    assert status["status"] == "completed"
    assert (await queue.wait_for(job_id, timeout=1))["status"] == "completed"

    await queue.stop()
    stuck = await queue.submit("wf-1", hello_workflow())
    with pytest.raises(asyncio.TimeoutError):
        await queue.wait_for(stuck, timeout=0.05)
    assert queue._finished == {}


async def test_progress_events_in_order(engine):
    channel = QueueChannel()
    job_id = await engine.queue.submit("wf-1", hello_workflow())
    await engine.broadcaster.subscribe(job_id, channel)

    await engine.start()
    try:
        await engine.queue.wait_for(job_id, timeout=5)
    finally:
        await engine.close()

    events = channel.drain()
    assert [(e["type"], e.get("taskId")) for e in events] == [
        ("job_started", None),
        ("task_active", "t1"),
        ("task_completed", "t1"),
        ("task_active", "t2"),
        ("task_completed", "t2"),
        ("job_completed", None),
    ]
    assert all(e["jobId"] == job_id for e in events)
    assert events[4]["result"] == "HELLO"
    assert events[4]["status"] == "completed"


async def test_failed_task_event_carries_error(engine):
    engine.queue.max_attempts = 1
    channel = QueueChannel()
    job_id = await engine.queue.submit("wf-1", hello_workflow('raise ValueError("boom")'))
    await engine.broadcaster.subscribe(job_id, channel)

    await engine.start()
    try:
        await engine.queue.wait_for(job_id, timeout=5)
    finally:
        await engine.close()

    events = channel.drain()
    failed = [e for e in events if e["type"] == "task_failed"]
    assert failed[0]["taskId"] == "t2"
    assert "boom" in failed[0]["error"]
    assert events[-1]["type"] == "job_failed"


async def test_progress_snapshot_tracks_latest_task(started_engine):
    _, status = await run_job(started_engine, hello_workflow())

    assert status["progress"] == {
        "status": "completed",
        "taskId": "t2",
        "taskName": "Task t2",
        "currentTask": 2,
        "totalTasks": 2,
    }


async def test_concurrent_jobs_keep_separate_data_stores(started_engine):
    docs = [
        workflow(task("t1", "DATA_INPUT", "x", staticValue=f"value-{i}"))
        for i in range(4)
    ]
    job_ids = [await started_engine.queue.submit(f"wf-{i}", doc) for i, doc in enumerate(docs)]
    statuses = await asyncio.gather(*(started_engine.queue.wait_for(j, timeout=5) for j in job_ids))

    assert [s["result"]["dataStore"]["x"] for s in statuses] == [f"value-{i}" for i in range(4)]


async def test_retention_drops_oldest_completed_jobs(settings, runner, prompt_library):
    from sflflow.engine import build_engine

    engine = build_engine(
        settings, llm_runner=runner, prompt_lookup=prompt_library,
        store=InMemoryJobStore(keep_completed=1),
    )
    await engine.start()
    try:
        first, _ = await run_job(engine, hello_workflow())
        second, _ = await run_job(engine, hello_workflow())
    finally:
        await engine.close()

    assert await engine.queue.get_status(first) is None
    assert (await engine.queue.get_status(second))["status"] == "completed"
