"""
Job records and status views.

A job is one requested action against one target account of one tenant.
Jobs sharing a target id form a group that the scheduler serializes.
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from panelrunner.errors import FailureReason

_ID_ALPHABET = string.digits + string.ascii_lowercase


class JobStatus(StrEnum):
    """Lifecycle state of a job."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

WAITING_MESSAGE = "Job is waiting in queue..."
ACTIVE_MESSAGE = "Processing..."
COMPLETED_MESSAGE = "Job completed successfully"
FAILED_MESSAGE = "Job failed"
CANCELLED_MESSAGE = "Job cancelled by user"


def generate_job_id(action_name: str, tenant_id: str, target_id: str) -> str:
    """Build a unique id from the action, tenant, target and a timestamp plus random suffix."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{action_name}-{tenant_id}-{target_id}-{int(time.time() * 1000)}-{suffix}"


@dataclass
class Job:
    """A queued or executed action request."""

    id: str
    tenant_id: str
    target_id: str
    action_name: str
    requester_id: str
    credential_ref: str
    params: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    sequence: int = 0
    message: str | None = None
    failure_reason: FailureReason | None = None
    cancelled: bool = False
    cancelled_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def view(self) -> JobView:
        """Project the record into the shape returned by status polls."""
        status = JobStatus.CANCELLED if self.cancelled else self.status

        if status == JobStatus.CANCELLED:
            message = CANCELLED_MESSAGE
        elif status == JobStatus.WAITING:
            message = WAITING_MESSAGE
        elif status == JobStatus.ACTIVE:
            message = ACTIVE_MESSAGE
        elif status == JobStatus.COMPLETED:
            message = self.message or COMPLETED_MESSAGE
        else:
            message = self.message or FAILED_MESSAGE

        return JobView(
            job_id=self.id,
            tenant_id=self.tenant_id,
            target_id=self.target_id,
            action_name=self.action_name,
            status=status,
            progress=self.progress,
            message=message,
            result=self.result,
            reason=self.failure_reason,
            start_time=self.started_at,
            end_time=self.finished_at,
            duration_ms=self.duration_ms,
        )


@dataclass(frozen=True)
class JobView:
    """Read-only status of a job as seen by pollers and viewers."""

    job_id: str
    tenant_id: str
    target_id: str
    action_name: str
    status: JobStatus
    progress: int
    message: str
    result: dict[str, Any] | None = None
    reason: FailureReason | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "jobId": self.job_id,
            "tenantId": self.tenant_id,
            "targetId": self.target_id,
            "actionName": self.action_name,
            "status": str(self.status),
            "progress": self.progress,
            "message": self.message,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.reason is not None:
            data["reason"] = str(self.reason)
        if self.start_time is not None:
            data["startTime"] = self.start_time.isoformat()
        if self.end_time is not None:
            data["endTime"] = self.end_time.isoformat()
        if self.duration_ms is not None:
            data["durationMs"] = self.duration_ms
        return data
