"""
Durable scan job queue on Redis
At-least-once delivery with leases, bounded retries and exponential backoff
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator
from redis import asyncio as aioredis

from photo_extractor.core.config import RedisConfig, WorkerConfig
from photo_extractor.core.errors import JobPayloadError

logger = structlog.get_logger()

STALLED_REASON = "job stalled more than allowable limit"


class JobState:
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class ScanJobPayload(BaseModel):
    """Input of one scan job, validated before it is queued"""

    scan_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    credential_ref: str = Field(..., min_length=1)
    reference_fingerprints: List[List[float]] = Field(..., min_length=1)

    @field_validator("reference_fingerprints")
    @classmethod
    def validate_fingerprints(cls, v):
        dimensions = {len(fingerprint) for fingerprint in v}
        if 0 in dimensions:
            raise ValueError("reference fingerprints must not be empty")
        if len(dimensions) > 1:
            raise ValueError("reference fingerprints must share one dimension")
        return v


@dataclass
class Job:
    id: str
    payload: ScanJobPayload
    state: str
    attempts: int = 0
    max_attempts: int = 3
    next_retry_delay: int = 0
    created_at: Optional[float] = None
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    failed_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "Job":
        def _float(name):
            value = data.get(name)
            return float(value) if value else None

        return cls(
            id=data["id"],
            payload=ScanJobPayload.model_validate_json(data["payload"]),
            state=data.get("state", JobState.WAITING),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 1),
            next_retry_delay=int(data.get("next_retry_delay") or 0),
            created_at=_float("created_at"),
            processed_at=_float("processed_at"),
            finished_at=_float("finished_at"),
            failed_reason=data.get("failed_reason") or None,
            result=json.loads(data["result"]) if data.get("result") else None,
        )

    def to_status(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_retry_delay": self.next_retry_delay,
            "failed_reason": self.failed_reason,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
            "result": self.result,
        }


class ScanJobQueue:
    """
    Redis-backed job queue

    Keys, all under the queue name:
        job:{id}    hash with the job envelope
        waiting     list of ready job ids
        active      list of leased job ids
        delayed     zset of job ids scored by retry time
        completed   zset scored by finish time
        failed      zset scored by finish time
    """

    def __init__(self, redis: aioredis.Redis, redis_config: RedisConfig, worker_config: WorkerConfig):
        self.redis = redis
        self.name = redis_config.queue_name
        self.completed_retention = redis_config.completed_job_retention_seconds
        self.failed_retention = redis_config.failed_job_retention_seconds
        self.max_attempts = worker_config.max_retries
        self.backoff_ms = worker_config.retry_backoff_ms
        self.lease_seconds = worker_config.stall_timeout_seconds
        self.logger = logger.bind(component="job_queue", queue=self.name)

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    @staticmethod
    def validate_payload(payload) -> ScanJobPayload:
        if isinstance(payload, ScanJobPayload):
            return payload
        try:
            return ScanJobPayload.model_validate(payload)
        except ValidationError as e:
            raise JobPayloadError(f"Invalid scan job payload: {e.error_count()} error(s)") from e

    async def enqueue(self, payload) -> Job:
        """
        Queue a scan job. The scan id is the job id, so queueing the same
        scan twice returns the existing job.
        """
        payload = self.validate_payload(payload)
        job_id = payload.scan_id
        key = self._job_key(job_id)

        if not await self.redis.hsetnx(key, "id", job_id):
            self.logger.info("Job already queued", job_id=job_id)
            return await self.get_job(job_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={
                "payload": payload.model_dump_json(),
                "state": JobState.WAITING,
                "attempts": 0,
                "max_attempts": self.max_attempts,
                "next_retry_delay": 0,
                "created_at": time.time(),
            })
            pipe.lpush(self._key("waiting"), job_id)
            await pipe.execute()

        self.logger.info("Job queued", job_id=job_id, session_id=payload.session_id)
        return await self.get_job(job_id)

    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self.redis.hgetall(self._job_key(job_id))
        if not data or "payload" not in data:
            return None
        return Job.from_hash(data)

    async def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = await self.get_job(job_id)
        return job.to_status() if job else None

    async def _promote_delayed(self):
        """Move retries whose backoff has elapsed back to waiting"""
        due = await self.redis.zrangebyscore(self._key("delayed"), 0, time.time())
        for job_id in due:
            # Only the worker that removes it requeues it
            if await self.redis.zrem(self._key("delayed"), job_id):
                await self.redis.lpush(self._key("waiting"), job_id)

    async def dequeue(self, worker_id: str = "worker") -> Optional[Job]:
        """Lease the oldest ready job, or return None when there is none"""
        await self._promote_delayed()

        while True:
            job_id = await self.redis.lmove(
                self._key("waiting"), self._key("active"), "RIGHT", "LEFT"
            )
            if job_id is None:
                return None

            key = self._job_key(job_id)
            if not await self.redis.exists(key):
                await self.redis.lrem(self._key("active"), 0, job_id)
                continue

            now = time.time()
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping={
                    "state": JobState.ACTIVE,
                    "processed_at": now,
                    "lease_until": now + self.lease_seconds,
                    "worker": worker_id,
                })
                pipe.hincrby(key, "attempts", 1)
                await pipe.execute()

            job = await self.get_job(job_id)
            self.logger.info(
                "Job leased",
                job_id=job_id,
                worker=worker_id,
                attempt=job.attempts,
                max_attempts=job.max_attempts
            )
            return job

    async def heartbeat(self, job_id: str):
        """Extend the lease of an active job"""
        await self.redis.hset(
            self._job_key(job_id), "lease_until", time.time() + self.lease_seconds
        )

    async def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None):
        now = time.time()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job_id)
            pipe.hset(self._job_key(job_id), mapping={
                "state": JobState.COMPLETED,
                "finished_at": now,
                "result": json.dumps(result or {}),
            })
            pipe.zadd(self._key("completed"), {job_id: now})
            await pipe.execute()

        self.logger.info("Job completed", job_id=job_id)

    def backoff_ms_for(self, attempts: int) -> int:
        """Exponential backoff: base, 2x base, 4x base, ..."""
        return self.backoff_ms * (2 ** max(attempts - 1, 0))

    async def fail(self, job_id: str, error: str, retryable: bool = True) -> Optional[Job]:
        """
        Record a failed attempt

        The job is scheduled again after a backoff while attempts remain,
        otherwise it moves to failed.
        """
        job = await self.get_job(job_id)
        if job is None:
            return None

        now = time.time()
        key = self._job_key(job_id)

        if retryable and job.attempts < job.max_attempts:
            delay_ms = self.backoff_ms_for(job.attempts)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key("active"), 0, job_id)
                pipe.hset(key, mapping={
                    "state": JobState.WAITING,
                    "next_retry_delay": delay_ms,
                    "failed_reason": error,
                })
                pipe.zadd(self._key("delayed"), {job_id: now + delay_ms / 1000.0})
                await pipe.execute()

            self.logger.warning(
                "Job attempt failed, retry scheduled",
                job_id=job_id,
                attempt=job.attempts,
                delay_ms=delay_ms,
                error=error
            )
        else:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key("active"), 0, job_id)
                pipe.hset(key, mapping={
                    "state": JobState.FAILED,
                    "next_retry_delay": 0,
                    "failed_reason": error,
                    "finished_at": now,
                })
                pipe.zadd(self._key("failed"), {job_id: now})
                await pipe.execute()

            self.logger.error(
                "Job failed",
                job_id=job_id,
                attempts=job.attempts,
                retryable=retryable,
                error=error
            )

        return await self.get_job(job_id)

    async def remove(self, job_id: str) -> bool:
        """Drop a job that is not currently running"""
        job = await self.get_job(job_id)
        if job is None:
            return False
        if job.state == JobState.ACTIVE:
            return False

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("waiting"), 0, job_id)
            pipe.zrem(self._key("delayed"), job_id)
            pipe.zrem(self._key("completed"), job_id)
            pipe.zrem(self._key("failed"), job_id)
            pipe.delete(self._job_key(job_id))
            await pipe.execute()

        self.logger.info("Job removed", job_id=job_id)
        return True

    async def recover_stalled(
        self,
        on_failed: Optional[Callable[[Job], Awaitable[None]]] = None
    ) -> List[str]:
        """
        Requeue active jobs whose lease expired

        A stalled job that has no attempts left is failed instead, and
        on_failed is awaited with it so its scan can be closed too.
        Returns the ids of the requeued jobs.
        """
        recovered = []
        now = time.time()

        for job_id in await self.redis.lrange(self._key("active"), 0, -1):
            key = self._job_key(job_id)
            lease_until = await self.redis.hget(key, "lease_until")
            if lease_until and float(lease_until) > now:
                continue

            job = await self.get_job(job_id)
            if job is None:
                await self.redis.lrem(self._key("active"), 0, job_id)
                continue

            if job.is_final_attempt:
                failed = await self.fail(job_id, STALLED_REASON, retryable=False)
                if on_failed and failed:
                    await on_failed(failed)
                continue

            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key("active"), 0, job_id)
                pipe.hset(key, "state", JobState.STALLED)
                pipe.lpush(self._key("waiting"), job_id)
                await pipe.execute()

            recovered.append(job_id)
            self.logger.warning("Recovered stalled job", job_id=job_id, attempts=job.attempts)

        return recovered

    async def stats(self) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("waiting"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.zcard(self._key("completed"))
            pipe.zcard(self._key("failed"))
            waiting, active, delayed, completed, failed = await pipe.execute()

        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
            "total": waiting + active + delayed + completed + failed,
        }

    async def _clean_set(self, name: str, older_than: float) -> int:
        cutoff = time.time() - older_than
        job_ids = await self.redis.zrangebyscore(self._key(name), 0, cutoff)
        if not job_ids:
            return 0

        async with self.redis.pipeline(transaction=True) as pipe:
            for job_id in job_ids:
                pipe.delete(self._job_key(job_id))
            pipe.zremrangebyscore(self._key(name), 0, cutoff)
            await pipe.execute()
        return len(job_ids)

    async def clean(
        self,
        completed_older_than: Optional[float] = None,
        failed_older_than: Optional[float] = None
    ) -> Dict[str, int]:
        """Delete finished jobs past their retention"""
        completed = await self._clean_set(
            "completed",
            self.completed_retention if completed_older_than is None else completed_older_than
        )
        failed = await self._clean_set(
            "failed",
            self.failed_retention if failed_older_than is None else failed_older_than
        )

        self.logger.info("Cleaned old jobs", completed=completed, failed=failed)
        return {"completed": completed, "failed": failed}

    async def ping(self) -> bool:
        return bool(await self.redis.ping())
