# ============================================================================
#  File: job_queue.py
#  Purpose: Job submission, worker pool and the per-job execution loop with
#           retry/backoff and progress events
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
import asyncio
import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

from loguru import logger
from pydantic import ValidationError

from sflflow import config
from sflflow.broadcaster import ProgressBroadcaster
from sflflow.data_store import DataStore
from sflflow.dispatcher import TaskDispatcher
from sflflow.errors import (
    QueueError,
    TaskExecutionError,
    TaskTimeoutError,
    WorkflowRejectedError,
)
from sflflow.job_store import JobStore
from sflflow.jobs import EventKind, JobRecord, JobStatus, ProgressEvent
from sflflow.models import PromptDefinition, Workflow
from sflflow.prompts import PromptLookup
from sflflow.validator import check_workflow, execution_order


def new_job_id(workflow_id: str) -> str:
    return f"workflow-{workflow_id}-{uuid4().hex[:12]}"
#
# ============================================================================
# SECTION 2: Class Definition - JobQueue
# ============================================================================
# Accepts workflow executions, persists them in the job store and runs them
# on a fixed-size pool of worker coroutines. Each job is owned by exactly
# one worker; tasks inside a job run strictly one after another.
# ============================================================================
#
class JobQueue:
    def __init__(
        self,
        store: JobStore,
        dispatcher: TaskDispatcher,
        broadcaster: Optional[ProgressBroadcaster] = None,
        prompt_lookup: Optional[PromptLookup] = None,
        concurrency: int = config.WORKER_CONCURRENCY,
        max_attempts: int = config.MAX_JOB_ATTEMPTS,
        backoff_base_delay: float = config.BACKOFF_BASE_DELAY,
        task_timeout: float = config.TASK_TIMEOUT,
        poll_interval: float = config.QUEUE_POLL_INTERVAL,
        heartbeat_interval: float = config.LEASE_HEARTBEAT_INTERVAL,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.prompt_lookup = prompt_lookup
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_base_delay = backoff_base_delay
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval

        self._workers: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._finished: Dict[str, asyncio.Event] = {}

    @property
    def running(self) -> bool:
        return bool(self._workers)
    #
    # =========================================================================
    # SECTION 3: Submission API
    # =========================================================================
    # Method 3.1: submit
    # =========================================================================
    #
    async def submit(self, workflow_id: str, workflow: Any, user_input: Any = None) -> str:
        """
        Validates a workflow and enqueues it for execution.

        Returns immediately; the job runs on the worker pool.

        Args:
            workflow_id: Id of the stored workflow being executed
            workflow: Workflow document (or Workflow model)
            user_input: Value seeded into the Data Store as `userInput`

        Returns:
            The new job id

        Raises:
            WorkflowRejectedError: schema or cycle validation failed
            QueueError: the job store could not accept the job
        """
        result = check_workflow(workflow)
        if not result.success:
            logger.warning(
                f"Rejected workflow {workflow_id} ({result.category}): {len(result.errors)} error(s)"
            )
            raise WorkflowRejectedError(result)

        record = JobRecord(
            id=new_job_id(workflow_id),
            workflow_id=workflow_id,
            workflow=result.data.to_document(),
            user_input=user_input,
            max_attempts=self.max_attempts,
        )
        await self.store.enqueue(record)
        logger.info(f"Job {record.id} queued for workflow {workflow_id} ({len(result.data.tasks)} tasks)")
        return record.id

    # =========================================================================
    # Method 3.2: get_status
    # =========================================================================
    async def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Status view of a job, or None when the id is unknown."""
        record = await self.store.get(job_id)
        return record.status_view() if record is not None else None

    # =========================================================================
    # Method 3.3: wait_for
    # =========================================================================
    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Waits until a job reaches a terminal state.

        Raises:
            asyncio.TimeoutError: if `timeout` elapses first
        """
        status = await self.get_status(job_id)
        if self._is_settled(status):
            return status

        finished = self._finished.setdefault(job_id, asyncio.Event())
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while True:
                wait = self.poll_interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise asyncio.TimeoutError(f"Job {job_id} did not finish within {timeout} seconds")
                    wait = min(wait, remaining)
                try:
                    await asyncio.wait_for(finished.wait(), wait)
                except asyncio.TimeoutError:
                    pass
                status = await self.get_status(job_id)
                if self._is_settled(status):
                    return status
        finally:
            if self._finished.get(job_id) is finished:
                del self._finished[job_id]

    @staticmethod
    def _is_settled(status: Optional[Dict[str, Any]]) -> bool:
        return status is None or status["status"] in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)
    #
    # =========================================================================
    # SECTION 4: Worker Pool
    # =========================================================================
    # Method 4.1: start
    # =========================================================================
    #
    async def start(self) -> None:
        """Starts `concurrency` worker coroutines."""
        if self._workers:
            return
        self._stopping.clear()
        await self.store.requeue_stalled()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"sflflow-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} workers")

    # =========================================================================
    # Method 4.2: stop
    # =========================================================================
    async def stop(self, grace_period: float = 5.0) -> None:
        """
        Stops the workers. Idle workers exit at their next poll; a worker
        still running a job after `grace_period` is cancelled and its job
        stays on the processing list for redelivery.
        """
        if not self._workers:
            return
        self._stopping.set()
        done, pending = await asyncio.wait(self._workers, timeout=grace_period)
        for worker in pending:
            worker.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if pending:
            logger.warning(f"Cancelled {len(pending)} busy worker(s) on shutdown")
        self._workers = []
        logger.info("Workers stopped")

    async def _worker_loop(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while not self._stopping.is_set():
            try:
                record = await self.store.dequeue(self.poll_interval)
            except QueueError as e:
                logger.error(f"Worker {worker_id} could not dequeue: {str(e)}")
                await asyncio.sleep(self.poll_interval)
                continue
            if record is None:
                continue

            try:
                await self.process(record)
            except QueueError as e:
                logger.error(f"Worker {worker_id} lost job {record.id} to a store error: {str(e)}")
            except Exception as e:
                logger.exception(f"Worker {worker_id} crashed while processing job {record.id}: {str(e)}")
        logger.debug(f"Worker {worker_id} exiting")
    #
    # =========================================================================
    # SECTION 5: Job Execution
    # =========================================================================
    # Method 5.1: process
    # =========================================================================
    #
    async def process(self, record: JobRecord) -> None:
        """
        Runs one dequeued job to a terminal state, retrying whole attempts
        with exponential backoff.

        Args:
            record: The job record handed out by the store
        """
        heartbeat = asyncio.create_task(self._heartbeat(record.id), name=f"sflflow-heartbeat-{record.id}")
        try:
            await self._execute(record)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, job_id: str) -> None:
        """Keeps the store's lease on a job alive while it runs."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.store.heartbeat(job_id)
            except QueueError as e:
                logger.warning(f"Could not refresh lease on job {job_id}: {str(e)}")

    async def _execute(self, record: JobRecord) -> None:
        if record.is_terminal:
            await self.store.ack(record)
            return

        try:
            workflow = Workflow.model_validate(record.workflow)
            tasks = execution_order(workflow.tasks)
        except (ValidationError, ValueError) as e:
            failure = TaskExecutionError(f"Stored workflow is not executable: {str(e)}", retryable=False)
            record.transition(JobStatus.ACTIVE)
            record.attempts += 1
            await self._fail(record, failure, {}, DataStore())
            return

        record.transition(JobStatus.ACTIVE)
        await self.store.save(record)
        logger.info(f"Job {record.id} started ({len(tasks)} tasks)")
        await self._emit(record, EventKind.JOB_STARTED, payload={"totalTasks": len(tasks)})

        while True:
            record.attempts += 1
            await self.store.save(record)
            results: Dict[str, Any] = {}
            data_store = DataStore({"userInput": record.user_input if record.user_input is not None else {}})

            try:
                await self._run_attempt(record, tasks, data_store, results)
            except TaskExecutionError as e:
                failure = e
            except Exception as e:
                logger.exception(f"Unexpected error in job {record.id}: {str(e)}")
                failure = TaskExecutionError(str(e))
            else:
                await self._complete(record, results, data_store)
                return

            if not failure.retryable or record.attempts >= record.max_attempts:
                await self._fail(record, failure, results, data_store)
                return

            delay = self.backoff_base_delay * 2 ** (record.attempts - 1)
            logger.warning(
                f"Job {record.id} attempt {record.attempts} failed: {failure.message}. "
                f"Retrying in {delay} seconds..."
            )
            record.transition(JobStatus.ACTIVE)
            await asyncio.sleep(delay)

    # =========================================================================
    # Method 5.2: _run_attempt
    # =========================================================================
    async def _run_attempt(
        self,
        record: JobRecord,
        tasks: list,
        data_store: DataStore,
        results: Dict[str, Any],
    ) -> None:
        """Executes every task in order; the first failure aborts the attempt."""
        linked_prompts = await self._resolve_prompts(tasks)
        total = len(tasks)

        for index, task in enumerate(tasks, start=1):
            record.progress = {
                "status": "active",
                "taskId": task.id,
                "taskName": task.name,
                "currentTask": index,
                "totalTasks": total,
            }
            await self.store.save(record)
            await self._emit(record, EventKind.TASK_ACTIVE, task, {"attempt": record.attempts})

            try:
                async with asyncio.timeout(self.task_timeout):
                    result = await self.dispatcher.execute(task, data_store, linked_prompts.get(task.id))
            except TimeoutError:
                error = TaskTimeoutError(
                    f"Task '{task.name}' timed out after {self.task_timeout} seconds",
                    task_id=task.id, task_name=task.name,
                )
                await self._emit(record, EventKind.TASK_FAILED, task, {"error": error.message, "attempt": record.attempts})
                raise error
            except TaskExecutionError as e:
                await self._emit(record, EventKind.TASK_FAILED, task, {"error": e.message, "attempt": record.attempts})
                raise
            except Exception as e:
                logger.exception(f"Task '{task.id}' raised an unexpected error: {str(e)}")
                error = TaskExecutionError(str(e), task_id=task.id, task_name=task.name)
                await self._emit(record, EventKind.TASK_FAILED, task, {"error": error.message, "attempt": record.attempts})
                raise error from e

            data_store.set(task.output_key, result)
            results[task.id] = result
            logger.debug(f"Job {record.id}: task '{task.id}' completed ({index}/{total})")
            await self._emit(record, EventKind.TASK_COMPLETED, task, {"result": result, "attempt": record.attempts})

    async def _resolve_prompts(self, tasks: list) -> Dict[str, Optional[PromptDefinition]]:
        """Fetches every linked prompt before the first task runs."""
        linked: Dict[str, Optional[PromptDefinition]] = {}
        for task in tasks:
            prompt_id = getattr(task, "prompt_id", None)
            if not prompt_id or self.prompt_lookup is None:
                continue
            try:
                linked[task.id] = await self.prompt_lookup.get_prompt_by_id(prompt_id)
            except Exception as e:
                raise TaskExecutionError(
                    f'Failed to load linked prompt "{prompt_id}": {str(e)}',
                    task_id=task.id, task_name=task.name,
                ) from e
        return linked
    #
    # =========================================================================
    # SECTION 6: Terminal States
    # =========================================================================
    #
    async def _complete(self, record: JobRecord, results: Dict[str, Any], data_store: DataStore) -> None:
        record.result = {
            "workflowId": record.workflow_id,
            "status": JobStatus.COMPLETED.value,
            "results": results,
            "dataStore": data_store.snapshot(),
        }
        record.progress = {**record.progress, "status": JobStatus.COMPLETED.value}
        record.transition(JobStatus.COMPLETED)
        await self._finish(record)
        logger.info(f"Job {record.id} completed after {record.attempts} attempt(s)")
        await self._emit(record, EventKind.JOB_COMPLETED, payload={"result": record.result})

    async def _fail(
        self, record: JobRecord, failure: TaskExecutionError, results: Dict[str, Any], data_store: DataStore
    ) -> None:
        attempts = f"attempt {record.attempts} of {record.max_attempts}"
        if failure.task_id:
            reason = f'Task "{failure.task_name}" ({failure.task_id}) failed: {failure.message} ({attempts})'
        else:
            reason = f"{failure.message} ({attempts})"

        record.result = None
        record.failure_reason = reason
        record.failed_task_id = failure.task_id
        record.failure_snapshot = {"results": results, "dataStore": data_store.snapshot()}
        record.progress = {**record.progress, "status": JobStatus.FAILED.value}
        record.transition(JobStatus.FAILED)
        await self._finish(record)
        logger.error(f"Job {record.id} failed: {reason}")
        await self._emit(
            record, EventKind.JOB_FAILED,
            payload={"error": reason, "failedTaskId": failure.task_id, "attempt": record.attempts},
        )

    async def _finish(self, record: JobRecord) -> None:
        await self.store.save(record)
        await self.store.ack(record)
        finished = self._finished.pop(record.id, None)
        if finished is not None:
            finished.set()

    async def _emit(self, record: JobRecord, kind: EventKind, task=None, payload=None) -> None:
        event = ProgressEvent(
            job_id=record.id,
            kind=kind,
            task_id=task.id if task is not None else None,
            task_name=task.name if task is not None else None,
            workflow_id=record.workflow_id,
            payload=payload or {},
        )
        await self.broadcaster.publish(record.id, event)

#
#
## End of Script
