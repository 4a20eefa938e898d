"""
Backing stores for job records.

The in-memory queue is authoritative for scheduling; stores keep a copy of
each record so status polls survive in-memory retention trimming.
"""

from __future__ import annotations

import json
from collections import OrderedDict
from datetime import datetime
from typing import Protocol

import structlog
from redis import asyncio as aioredis

from panelrunner.errors import FailureReason
from panelrunner.orchestrator.models import Job, JobStatus

logger = structlog.get_logger(__name__)


class JobStore(Protocol):
    """Persistence for job records."""

    async def save(self, job: Job) -> None: ...

    async def load(self, job_id: str) -> Job | None: ...

    async def delete(self, job_id: str) -> None: ...


class MemoryJobStore:
    """
    Process-local job store.

    Holds at most ``max_records`` records; saving past the limit drops the
    record that was saved least recently.
    """

    def __init__(self, max_records: int = 1000) -> None:
        if max_records < 1:
            raise ValueError("max_records must be at least 1")
        self._max_records = max_records
        self._records: OrderedDict[str, dict[str, str]] = OrderedDict()

    async def save(self, job: Job) -> None:
        self._records[job.id] = serialize_job(job)
        self._records.move_to_end(job.id)
        while len(self._records) > self._max_records:
            self._records.popitem(last=False)

    async def load(self, job_id: str) -> Job | None:
        data = self._records.get(job_id)
        return deserialize_job(data) if data else None

    async def delete(self, job_id: str) -> None:
        self._records.pop(job_id, None)

    def __len__(self) -> int:
        return len(self._records)


class RedisJobStore:
    """
    Job store backed by Redis hashes.

    Each job lives under ``panelrunner:jobs:{job_id}`` and expires after
    ``ttl_seconds`` so finished records do not accumulate forever.
    """

    JOBS_KEY = "panelrunner:jobs"

    def __init__(self, redis_url: str, ttl_seconds: int = 7 * 86400) -> None:
        self._redis_url = redis_url
        self._ttl = ttl_seconds
        self._redis: aioredis.Redis | None = None
        self._log = logger.bind(component="redis_job_store")

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = await aioredis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._log.info("Connected to Redis", url=self._redis_url)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    def _client(self) -> aioredis.Redis:
        if not self._redis:
            raise RuntimeError("Not connected to Redis")
        return self._redis

    async def save(self, job: Job) -> None:
        client = self._client()
        key = f"{self.JOBS_KEY}:{job.id}"
        await client.hset(key, mapping=serialize_job(job))
        await client.expire(key, self._ttl)

    async def load(self, job_id: str) -> Job | None:
        data = await self._client().hgetall(f"{self.JOBS_KEY}:{job_id}")
        if not data:
            return None
        return deserialize_job(data)

    async def delete(self, job_id: str) -> None:
        await self._client().delete(f"{self.JOBS_KEY}:{job_id}")


def serialize_job(job: Job) -> dict[str, str]:
    """Serialize a job to a flat string mapping."""
    return {
        "id": job.id,
        "tenant_id": job.tenant_id,
        "target_id": job.target_id,
        "action_name": job.action_name,
        "requester_id": job.requester_id,
        "credential_ref": job.credential_ref,
        "params": json.dumps(job.params),
        "status": job.status,
        "progress": str(job.progress),
        "sequence": str(job.sequence),
        "message": job.message or "",
        "failure_reason": job.failure_reason or "",
        "cancelled": "1" if job.cancelled else "0",
        "cancelled_at": job.cancelled_at.isoformat() if job.cancelled_at else "",
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else "",
        "finished_at": job.finished_at.isoformat() if job.finished_at else "",
        "result": json.dumps(job.result) if job.result is not None else "",
    }


def deserialize_job(data: dict[str, str]) -> Job:
    """Deserialize a job from a flat string mapping."""

    def parse_time(key: str) -> datetime | None:
        value = data.get(key)
        return datetime.fromisoformat(value) if value else None

    return Job(
        id=data["id"],
        tenant_id=data["tenant_id"],
        target_id=data["target_id"],
        action_name=data["action_name"],
        requester_id=data["requester_id"],
        credential_ref=data["credential_ref"],
        params=json.loads(data.get("params") or "{}"),
        status=JobStatus(data["status"]),
        progress=int(data.get("progress", "0")),
        sequence=int(data.get("sequence", "0")),
        message=data.get("message") or None,
        failure_reason=(
            FailureReason(data["failure_reason"])
            if data.get("failure_reason")
            else None
        ),
        cancelled=data.get("cancelled") == "1",
        cancelled_at=parse_time("cancelled_at"),
        created_at=datetime.fromisoformat(data["created_at"]),
        started_at=parse_time("started_at"),
        finished_at=parse_time("finished_at"),
        result=json.loads(data["result"]) if data.get("result") else None,
    )
