# ============================================================================
#  File: jobs.py
#  Purpose: Job record, job state machine and progress event types
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
#
# ============================================================================
# SECTION 2: Enumerations
# ============================================================================
#
class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# queued -> active -> (active on retry) -> completed | failed
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: frozenset({JobStatus.ACTIVE}),
    JobStatus.ACTIVE: frozenset({JobStatus.ACTIVE, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class EventKind(str, Enum):
    JOB_STARTED = "job_started"
    TASK_ACTIVE = "task_active"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"


EVENT_STATUS = {
    EventKind.JOB_STARTED: "running",
    EventKind.TASK_ACTIVE: "active",
    EventKind.TASK_COMPLETED: "completed",
    EventKind.TASK_FAILED: "failed",
    EventKind.JOB_COMPLETED: "completed",
    EventKind.JOB_FAILED: "failed",
}
#
# ============================================================================
# SECTION 3: Job Record
# ============================================================================
# Class 3.1: JobRecord
# ============================================================================
#
@dataclass
class JobRecord:
    """
    Durable record of one workflow execution request.

    `workflow` is the validated workflow document (camelCase JSON) so the
    record can be stored by any broker. `progress` holds only the latest
    progress snapshot; the individual events are not persisted.
    """

    id: str
    workflow_id: str
    workflow: Dict[str, Any]
    user_input: Any = None
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    progress: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    failed_task_id: Optional[str] = None
    failure_snapshot: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: JobStatus) -> None:
        """Moves the job to `new_status`; raises ValueError on an illegal move."""
        new_status = JobStatus(new_status)
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal job status transition {self.status.value} -> {new_status.value} for job {self.id}"
            )
        self.status = new_status
        if new_status == JobStatus.ACTIVE and self.started_at is None:
            self.started_at = utc_now()
        if new_status in TERMINAL_STATUSES:
            self.finished_at = utc_now()

    # =========================================================================
    # Method 3.1.1: serialization
    # =========================================================================
    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return {_camel(key): value for key, value in data.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRecord":
        fields = {_snake(key): value for key, value in data.items()}
        fields["status"] = JobStatus(fields.get("status", JobStatus.QUEUED))
        return cls(**fields)

    def status_view(self) -> Dict[str, Any]:
        """The public status shape returned by the queue and the HTTP API."""
        view = {
            "id": self.id,
            "workflowId": self.workflow_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "progress": dict(self.progress),
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }
        if self.result is not None:
            view["result"] = self.result
        if self.failure_reason is not None:
            view["failureReason"] = self.failure_reason
            view["failedTaskId"] = self.failed_task_id
        return view
#
# ============================================================================
# SECTION 4: Progress Events
# ============================================================================
# Class 4.1: ProgressEvent
# ============================================================================
#
@dataclass
class ProgressEvent:
    job_id: str
    kind: EventKind
    task_id: Optional[str] = None
    task_name: Optional[str] = None
    workflow_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    @property
    def status(self) -> str:
        return EVENT_STATUS[self.kind]

    def to_message(self) -> Dict[str, Any]:
        """Wire form pushed to subscribers."""
        message: Dict[str, Any] = {
            "type": self.kind.value,
            "jobId": self.job_id,
            "status": self.status,
            "timestamp": self.timestamp,
        }
        if self.workflow_id is not None:
            message["workflowId"] = self.workflow_id
        if self.task_id is not None:
            message["taskId"] = self.task_id
            message["taskName"] = self.task_name
        message.update(self.payload)
        return message


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)

#
#
## End of Script
