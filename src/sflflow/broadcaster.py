# ============================================================================
#  File: broadcaster.py
#  Purpose: Fan-out of job progress events to subscribed channels
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from fastapi import WebSocket
from starlette.websockets import WebSocketState
from loguru import logger

from sflflow.jobs import ProgressEvent, utc_now

# ============================================================================
# SECTION 2: Channels
# ============================================================================

@runtime_checkable
class Channel(Protocol):
    """Anything that can receive progress messages."""

    @property
    def closed(self) -> bool:
        ...

    async def send(self, message: Dict[str, Any]) -> None:
        ...


class WebSocketChannel:
    """
    Channel over an accepted FastAPI WebSocket connection.
    """
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        client = websocket.client
        self.client = f"{client.host}:{client.port}" if client else "unknown_client"

    @property
    def closed(self) -> bool:
        return (
            self.websocket.client_state != WebSocketState.CONNECTED
            or self.websocket.application_state != WebSocketState.CONNECTED
        )

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_json(message)

    def __repr__(self) -> str:
        return f"WebSocketChannel({self.client})"


class QueueChannel:
    """
    In-process channel; messages are buffered on an asyncio queue until read.
    """
    def __init__(self, maxsize: int = 0):
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionError("channel is closed")
        self.queue.put_nowait(message)

    async def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return await asyncio.wait_for(self.queue.get(), timeout)

    def drain(self) -> List[Dict[str, Any]]:
        """Returns every buffered message without waiting."""
        messages = []
        while not self.queue.empty():
            messages.append(self.queue.get_nowait())
        return messages

# ============================================================================
# SECTION 3: Class Definition - ProgressBroadcaster
# ============================================================================

class ProgressBroadcaster:
    """
    Publishes job progress events to the channels subscribed to each job.

    Delivery is best effort and at most once: nothing is buffered for late
    subscribers, and channels that are closed or fail a send are pruned on
    that publish.
    """
    def __init__(self):
        self._subscriptions: Dict[str, List[Any]] = {}
        self._lock = asyncio.Lock()

    # ========================================================================
    # Async Function 3.1: subscribe
    # ========================================================================
    async def subscribe(self, job_id: str, channel: Channel) -> None:
        """
        Subscribe a channel to one job's events.

        Args:
            job_id: The job to follow
            channel: The channel that receives the events
        """
        async with self._lock:
            channels = self._subscriptions.setdefault(job_id, [])
            if channel not in channels:
                channels.append(channel)
        logger.debug(f"{channel!r} subscribed to job {job_id}")

    # =========================================================================
    # Async Function 3.2: unsubscribe
    # =========================================================================
    async def unsubscribe(self, job_id: str, channel: Channel) -> None:
        async with self._lock:
            self._remove(job_id, channel)

    # =========================================================================
    # Async Function 3.3: unsubscribe_all
    # =========================================================================
    async def unsubscribe_all(self, channel: Channel) -> None:
        """Drops every subscription held by `channel` (e.g. on disconnect)."""
        async with self._lock:
            for job_id in list(self._subscriptions):
                self._remove(job_id, channel)

    async def subscriber_count(self, job_id: str) -> int:
        async with self._lock:
            return len(self._subscriptions.get(job_id, []))

    # =========================================================================
    # Async Function 3.4: publish
    # =========================================================================
    async def publish(self, job_id: str, event: Union[ProgressEvent, Dict[str, Any]]) -> int:
        """
        Send an event to every channel subscribed to `job_id`.

        Args:
            job_id: The job the event belongs to
            event: A ProgressEvent or an already built message

        Returns:
            Number of channels the event was delivered to
        """
        if isinstance(event, ProgressEvent):
            message = event.to_message()
        else:
            message = {"jobId": job_id, "timestamp": utc_now(), **event}

        async with self._lock:
            channels = list(self._subscriptions.get(job_id, []))
        if not channels:
            return 0

        delivered = 0
        to_remove = []
        for channel in channels:
            if channel.closed:
                to_remove.append(channel)
                continue
            try:
                await channel.send(message)
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to send progress for job {job_id} to {channel!r}: {str(e)}")
                to_remove.append(channel)

        if to_remove:
            logger.warning(f"Removing {len(to_remove)} dead channel(s) from job {job_id}")
            async with self._lock:
                for channel in to_remove:
                    self._remove(job_id, channel)
        return delivered

    def _remove(self, job_id: str, channel: Channel) -> None:
        channels = self._subscriptions.get(job_id)
        if not channels:
            return
        if channel in channels:
            channels.remove(channel)
        if not channels:
            del self._subscriptions[job_id]

#
#
## End of Script
