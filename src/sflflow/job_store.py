# ============================================================================
#  File: job_store.py
#  Purpose: Durable job storage and atomic hand-off to workers
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
import asyncio
import json
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Optional
from uuid import uuid4

from loguru import logger
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from sflflow.config import KEEP_COMPLETED_JOBS, KEEP_FAILED_JOBS, LEASE_TTL, QUEUE_NAME
from sflflow.errors import QueueError, get_error_message
from sflflow.jobs import JobRecord, JobStatus
#
# ============================================================================
# SECTION 2: Store Interface
# ============================================================================
# Class 2.1: JobStore
# ============================================================================
#
class JobStore(ABC):
    """
    Broker abstraction used by the job queue.

    `dequeue` must hand each queued job to exactly one caller; `ack` marks
    the hand-off finished once the job reached a terminal state and applies
    the retention policy.
    """

    def __init__(self, keep_completed: int = KEEP_COMPLETED_JOBS, keep_failed: int = KEEP_FAILED_JOBS):
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed

    @abstractmethod
    async def enqueue(self, record: JobRecord) -> None:
        ...

    @abstractmethod
    async def dequeue(self, timeout: float) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def save(self, record: JobRecord) -> None:
        ...

    @abstractmethod
    async def ack(self, record: JobRecord) -> None:
        ...

    async def heartbeat(self, job_id: str) -> None:
        """Signals that the job is still being processed by its owner."""
        pass

    async def requeue_stalled(self) -> int:
        """Returns jobs left in processing by a dead worker to the queue."""
        return 0

    async def close(self) -> None:
        pass

    def _keep_for(self, status: JobStatus) -> int:
        return self.keep_completed if status == JobStatus.COMPLETED else self.keep_failed
#
# ============================================================================
# SECTION 3: In-memory Store
# ============================================================================
# Class 3.1: InMemoryJobStore
# ============================================================================
#
class InMemoryJobStore(JobStore):
    """Single-process store backed by an asyncio queue."""

    def __init__(self, keep_completed: int = KEEP_COMPLETED_JOBS, keep_failed: int = KEEP_FAILED_JOBS):
        super().__init__(keep_completed, keep_failed)
        self._records: Dict[str, Dict[str, Any]] = {}
        self._waiting: "asyncio.Queue[str]" = asyncio.Queue()
        self._active = set()
        self._finished: Dict[JobStatus, Deque[str]] = {
            JobStatus.COMPLETED: deque(),
            JobStatus.FAILED: deque(),
        }

    async def enqueue(self, record: JobRecord) -> None:
        self._records[record.id] = record.to_dict()
        await self._waiting.put(record.id)

    async def dequeue(self, timeout: float) -> Optional[JobRecord]:
        try:
            job_id = await asyncio.wait_for(self._waiting.get(), timeout)
        except asyncio.TimeoutError:
            return None
        self._active.add(job_id)
        return await self.get(job_id)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        data = self._records.get(job_id)
        return JobRecord.from_dict(data) if data is not None else None

    async def save(self, record: JobRecord) -> None:
        self._records[record.id] = record.to_dict()

    async def ack(self, record: JobRecord) -> None:
        self._active.discard(record.id)
        if not record.is_terminal:
            return
        finished = self._finished[record.status]
        finished.append(record.id)
        while len(finished) > self._keep_for(record.status):
            expired = finished.popleft()
            self._records.pop(expired, None)
            logger.debug(f"Removed expired {record.status.value} job {expired}")
#
# ============================================================================
# SECTION 4: Redis Store
# ============================================================================
# Class 4.1: RedisJobStore
# ============================================================================
#
class RedisJobStore(JobStore):
    """
    Redis-backed store shared by any number of worker processes.

    Keys (prefix = queue name):
        {prefix}:job:{id}   JSON job record
        {prefix}:wait       ids waiting for a worker (LPUSH in, BLMOVE out)
        {prefix}:active     ids being processed
        {prefix}:completed  most recent completed ids
        {prefix}:failed     most recent failed ids
        {prefix}:lease:{id} owner of an active job, expires after lease_ttl

    Several worker processes may share one broker. A job stays on the
    active list only while its owner keeps refreshing the lease.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: str = QUEUE_NAME,
        keep_completed: int = KEEP_COMPLETED_JOBS,
        keep_failed: int = KEEP_FAILED_JOBS,
        client: Optional[aioredis.Redis] = None,
        lease_ttl: float = LEASE_TTL,
    ):
        super().__init__(keep_completed, keep_failed)
        if client is None and not redis_url:
            raise ValueError("RedisJobStore needs a redis_url or a client")
        self._owns_client = client is None
        self.redis = client or aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        self.prefix = prefix
        self.lease_ttl = lease_ttl
        self.owner = uuid4().hex

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _lease_key(self, job_id: str) -> str:
        return self._key(f"lease:{job_id}")

    # ========================================================================
    # Async Function 4.1.1: enqueue
    # ========================================================================
    async def enqueue(self, record: JobRecord) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(record.id), json.dumps(record.to_dict(), default=str))
                pipe.lpush(self._key("wait"), record.id)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Failed to enqueue job {record.id}: {e}")
            raise QueueError(get_error_message("E006", e)) from e

    # ========================================================================
    # Async Function 4.1.2: dequeue
    # ========================================================================
    async def dequeue(self, timeout: float) -> Optional[JobRecord]:
        """Atomically moves the oldest waiting id onto the active list."""
        try:
            job_id = await self.redis.blmove(
                self._key("wait"), self._key("active"), timeout, "RIGHT", "LEFT"
            )
        except RedisError as e:
            raise QueueError(get_error_message("E006", e)) from e
        if job_id is None:
            return None

        await self.heartbeat(job_id)
        record = await self.get(job_id)
        if record is None:
            logger.warning(f"Dequeued job {job_id} has no record; dropping it")
            await self._call(self.redis.lrem(self._key("active"), 0, job_id))
        return record

    async def get(self, job_id: str) -> Optional[JobRecord]:
        raw = await self._call(self.redis.get(self._job_key(job_id)))
        return JobRecord.from_dict(json.loads(raw)) if raw else None

    async def save(self, record: JobRecord) -> None:
        await self._call(self.redis.set(self._job_key(record.id), json.dumps(record.to_dict(), default=str)))

    # ========================================================================
    # Async Function 4.1.3: ack
    # ========================================================================
    async def ack(self, record: JobRecord) -> None:
        """Removes the job from processing and applies the retention policy."""
        try:
            await self.redis.lrem(self._key("active"), 0, record.id)
            await self.redis.delete(self._lease_key(record.id))
            if not record.is_terminal:
                return
            finished_key = self._key(record.status.value)
            keep = self._keep_for(record.status)
            await self.redis.lpush(finished_key, record.id)
            expired = await self.redis.lrange(finished_key, keep, -1)
            if expired:
                async with self.redis.pipeline(transaction=True) as pipe:
                    if keep > 0:
                        pipe.ltrim(finished_key, 0, keep - 1)
                    else:
                        pipe.delete(finished_key)
                    pipe.delete(*[self._job_key(job_id) for job_id in expired])
                    await pipe.execute()
                logger.debug(f"Removed {len(expired)} expired {record.status.value} job(s)")
        except RedisError as e:
            raise QueueError(get_error_message("E006", e)) from e

    # ========================================================================
    # Async Function 4.1.4: heartbeat
    # ========================================================================
    async def heartbeat(self, job_id: str) -> None:
        """Sets or extends this store's lease on an active job."""
        await self._call(
            self.redis.set(self._lease_key(job_id), self.owner, px=int(self.lease_ttl * 1000))
        )

    # ========================================================================
    # Async Function 4.1.5: requeue_stalled
    # ========================================================================
    async def requeue_stalled(self) -> int:
        """
        Moves active jobs whose lease expired back to the head of the queue.

        Jobs still leased by a live worker, in this or any other process,
        are left where they are.
        """
        active = await self._call(self.redis.lrange(self._key("active"), 0, -1))
        moved = 0
        # Newest first, so the oldest stalled job ends up next in line
        for job_id in active:
            if await self._call(self.redis.exists(self._lease_key(job_id))):
                continue
            removed = await self._call(self.redis.lrem(self._key("active"), 1, job_id))
            if not removed:
                # Another process requeued or finished it first
                continue
            await self._call(self.redis.rpush(self._key("wait"), job_id))
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} stalled job(s) from {self._key('active')}")
        return moved

    async def close(self) -> None:
        if self._owns_client:
            await self.redis.aclose()

    async def _call(self, awaitable):
        try:
            return await awaitable
        except RedisError as e:
            raise QueueError(get_error_message("E006", e)) from e

#
#
## End of Script
