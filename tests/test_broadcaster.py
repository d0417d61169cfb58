"""Tests for progress event fan-out."""

from sflflow.broadcaster import ProgressBroadcaster, QueueChannel
from sflflow.jobs import EventKind, ProgressEvent


class BrokenChannel:
    closed = False

    async def send(self, message):
        raise ConnectionError("peer went away")


def started_event(job_id):
    return ProgressEvent(job_id=job_id, kind=EventKind.JOB_STARTED, workflow_id="wf", payload={"totalTasks": 2})


async def test_events_reach_only_subscribers_of_that_job():
    broadcaster = ProgressBroadcaster()
    first, second = QueueChannel(), QueueChannel()
    await broadcaster.subscribe("job-1", first)
    await broadcaster.subscribe("job-2", second)

    delivered = await broadcaster.publish("job-1", started_event("job-1"))

    assert delivered == 1
    message = await first.get(timeout=1)
    assert message["type"] == "job_started"
    assert message["jobId"] == "job-1"
    assert message["status"] == "running"
    assert message["totalTasks"] == 2
    assert second.drain() == []


async def test_publish_without_subscribers_is_a_no_op():
    assert await ProgressBroadcaster().publish("nobody", started_event("nobody")) == 0


async def test_late_subscribers_get_no_backlog():
    broadcaster = ProgressBroadcaster()
    await broadcaster.publish("job-1", started_event("job-1"))

    channel = QueueChannel()
    await broadcaster.subscribe("job-1", channel)
    assert channel.drain() == []


async def test_failed_and_closed_channels_are_pruned():
    broadcaster = ProgressBroadcaster()
    healthy, closed = QueueChannel(), QueueChannel()
    closed.close()
    for channel in (healthy, closed, BrokenChannel()):
        await broadcaster.subscribe("job-1", channel)

    assert await broadcaster.publish("job-1", started_event("job-1")) == 1
    assert await broadcaster.subscriber_count("job-1") == 1


async def test_duplicate_subscription_delivers_once():
    broadcaster = ProgressBroadcaster()
    channel = QueueChannel()
    await broadcaster.subscribe("job-1", channel)
    await broadcaster.subscribe("job-1", channel)

    await broadcaster.publish("job-1", started_event("job-1"))
    assert len(channel.drain()) == 1


async def test_unsubscribe_all_drops_every_job():
    broadcaster = ProgressBroadcaster()
    channel = QueueChannel()
    await broadcaster.subscribe("job-1", channel)
    await broadcaster.subscribe("job-2", channel)

    await broadcaster.unsubscribe_all(channel)

    assert await broadcaster.subscriber_count("job-1") == 0
    assert await broadcaster.subscriber_count("job-2") == 0


async def test_plain_dict_events_are_stamped():
    broadcaster = ProgressBroadcaster()
    channel = QueueChannel()
    await broadcaster.subscribe("job-1", channel)

    await broadcaster.publish("job-1", {"type": "custom"})
    message = channel.drain()[0]

    assert message["jobId"] == "job-1"
    assert message["type"] == "custom"
    assert "timestamp" in message


def test_task_event_message_shape():
    event = ProgressEvent(
        job_id="job-1", kind=EventKind.TASK_FAILED, task_id="t2", task_name="Upper",
        payload={"error": "boom", "attempt": 1},
    )
    message = event.to_message()

    assert message["taskId"] == "t2"
    assert message["taskName"] == "Upper"
    assert message["status"] == "failed"
    assert message["error"] == "boom"
    assert "workflowId" not in message
