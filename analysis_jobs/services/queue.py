"""
Analysis job queue.

Celery carries the messages; this module owns what Celery does not give us:
one job per analysis (dedup by job id), an attempt counter that also counts
stall redeliveries, and retention windows for finished jobs.

Registry layout (Redis):
    analysis-queue:job:<job_id>    hash: analysis_id, state, attempts, max_attempts,
                                   backoff, last_error, created_at, updated_at,
                                   lock_expires_at
    analysis-queue:completed       zset job_id -> finished epoch seconds
    analysis-queue:failed          zset job_id -> finished epoch seconds
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import redis
from kombu.exceptions import OperationalError

from analysis_jobs.core.config import QueueSettings
from analysis_jobs.core.errors import QueueUnavailableError

logger = logging.getLogger(__name__)

KEY_PREFIX = "analysis-queue"

STATE_QUEUED = "queued"
STATE_ACTIVE = "active"
STATE_DELAYED = "delayed"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

FINISHED_STATES = frozenset({STATE_COMPLETED, STATE_FAILED})

# (job_id, analysis_id) -> None; raises if the broker rejects the message
Dispatch = Callable[[str, str], None]


def job_id_for(analysis_id: str) -> str:
    return f"analysis-{analysis_id}"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_schedule: tuple[int, ...] = (30, 60, 120)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not self.backoff_schedule:
            raise ValueError("backoff_schedule must not be empty")

    def delay_for(self, attempt: int) -> int:
        """Seconds to wait after failed attempt `attempt` (1-based); clamps to the last entry."""
        idx = min(max(attempt, 1) - 1, len(self.backoff_schedule) - 1)
        return self.backoff_schedule[idx]

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> RetryPolicy:
        return cls(max_attempts=settings.max_attempts, backoff_schedule=tuple(settings.backoff_schedule))


@dataclass(frozen=True)
class Retention:
    completed_seconds: int = 24 * 60 * 60
    completed_count: int = 1000
    failed_seconds: int = 7 * 24 * 60 * 60

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> Retention:
        return cls(
            completed_seconds=settings.completed_retention_seconds,
            completed_count=settings.completed_retention_count,
            failed_seconds=settings.failed_retention_seconds,
        )


@dataclass(frozen=True)
class JobInfo:
    job_id: str
    analysis_id: str
    state: str
    attempts: int
    max_attempts: int
    backoff_schedule: tuple[int, ...]
    last_error: str | None = None

    @classmethod
    def from_hash(cls, job_id: str, data: dict[str, str]) -> JobInfo:
        backoff = tuple(int(p) for p in (data.get("backoff") or "").split(",") if p)
        return cls(
            job_id=job_id,
            analysis_id=data.get("analysis_id", ""),
            state=data.get("state", ""),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 0),
            backoff_schedule=backoff,
            last_error=data.get("last_error") or None,
        )


@dataclass(frozen=True)
class Claim:
    attempt: int
    previous_state: str | None

    @property
    def redelivered(self) -> bool:
        # the previous claim never reported back: the broker gave up on its lock
        return self.previous_state == STATE_ACTIVE


class JobRegistry:
    def __init__(
        self,
        client: redis.Redis,
        *,
        retention: Retention | None = None,
        lock_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        # client must be created with decode_responses=True
        self._client = client
        self.retention = retention or Retention()
        self.lock_seconds = lock_seconds
        self._clock = clock

    def _key(self, job_id: str) -> str:
        return f"{KEY_PREFIX}:job:{job_id}"

    def _index(self, state: str) -> str:
        return f"{KEY_PREFIX}:{state}"

    def create(self, job_id: str, analysis_id: str, policy: RetryPolicy) -> bool:
        """Register a job. Returns False when one with this id already exists."""
        key = self._key(job_id)
        if not self._client.hsetnx(key, "state", STATE_QUEUED):
            return False
        now = self._clock()
        self._client.hset(
            key,
            mapping={
                "analysis_id": analysis_id,
                "attempts": 0,
                "max_attempts": policy.max_attempts,
                "backoff": ",".join(str(s) for s in policy.backoff_schedule),
                "created_at": now,
                "updated_at": now,
            },
        )
        return True

    def discard(self, job_id: str) -> None:
        # drop index entries too, or garbage collection would later delete a re-created job
        with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(job_id))
            for state in FINISHED_STATES:
                pipe.zrem(self._index(state), job_id)
            pipe.execute()

    def get(self, job_id: str) -> JobInfo | None:
        data = self._client.hgetall(self._key(job_id))
        if not data:
            return None
        return JobInfo.from_hash(job_id, data)

    def claim(self, job_id: str, analysis_id: str) -> Claim:
        """Atomically count a delivery of the job and mark it active."""
        key = self._key(job_id)
        now = self._clock()
        with self._client.pipeline(transaction=True) as pipe:
            pipe.hget(key, "state")
            pipe.hincrby(key, "attempts", 1)
            pipe.hset(
                key,
                mapping={
                    "state": STATE_ACTIVE,
                    "analysis_id": analysis_id,
                    "updated_at": now,
                    "lock_expires_at": now + self.lock_seconds,
                },
            )
            # a claim revives a job whose finished-retention TTL was ticking
            pipe.persist(key)
            previous, attempts, _, _ = pipe.execute()
        return Claim(attempt=int(attempts), previous_state=previous)

    def mark_delayed(self, job_id: str, delay_seconds: int, error: str) -> None:
        now = self._clock()
        self._client.hset(
            self._key(job_id),
            mapping={
                "state": STATE_DELAYED,
                "last_error": error,
                "updated_at": now,
                "retry_at": now + delay_seconds,
            },
        )

    def mark_completed(self, job_id: str) -> None:
        self._finish(job_id, STATE_COMPLETED, self.retention.completed_seconds)
        self.collect_garbage()

    def mark_failed(self, job_id: str, error: str) -> None:
        self._client.hset(self._key(job_id), "last_error", error)
        self._finish(job_id, STATE_FAILED, self.retention.failed_seconds)

    def _finish(self, job_id: str, state: str, ttl: int) -> None:
        key = self._key(job_id)
        now = self._clock()
        with self._client.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={"state": state, "updated_at": now})
            pipe.hdel(key, "lock_expires_at")
            pipe.expire(key, ttl)
            pipe.zadd(self._index(state), {job_id: now})
            pipe.execute()

    def collect_garbage(self) -> int:
        """Drop finished jobs past their age window, and completed ones past the count cap."""
        now = self._clock()
        removed = 0
        for state, max_age in (
            (STATE_COMPLETED, self.retention.completed_seconds),
            (STATE_FAILED, self.retention.failed_seconds),
        ):
            index = self._index(state)
            expired = self._client.zrangebyscore(index, "-inf", now - max_age)
            removed += self._drop(index, expired)

        index = self._index(STATE_COMPLETED)
        overflow = self._client.zrange(index, 0, -(self.retention.completed_count + 1))
        removed += self._drop(index, overflow)
        return removed

    def _drop(self, index: str, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        self._client.delete(*[self._key(j) for j in job_ids])
        self._client.zrem(index, *job_ids)
        return len(job_ids)


class AnalysisQueue:
    def __init__(self, registry: JobRegistry, dispatch: Dispatch, policy: RetryPolicy | None = None) -> None:
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self._dispatch = dispatch

    def enqueue(self, analysis_id: str, *, replace_finished: bool = False) -> str:
        """
        Queue processing for an analysis. Idempotent: while a job for this
        analysis exists (pending, running or retained), the existing job id
        is returned and nothing new is sent.

        With `replace_finished`, a retained completed/failed job is dropped and
        a fresh one is queued. Callers use it when the job ended but the
        analysis record never reached a terminal status.
        """
        job_id = job_id_for(analysis_id)
        try:
            created = self.registry.create(job_id, analysis_id, self.policy)
            if not created and replace_finished:
                existing = self.registry.get(job_id)
                if existing is not None and existing.state in FINISHED_STATES:
                    logger.warning("Job %s ended %s but analysis is still open; re-queueing", job_id, existing.state)
                    self.registry.discard(job_id)
                    created = self.registry.create(job_id, analysis_id, self.policy)
        except redis.RedisError as e:
            raise QueueUnavailableError(f"Could not register job {job_id}: {e}") from e

        if not created:
            logger.info("Job %s already queued; ignoring duplicate enqueue", job_id)
            return job_id

        try:
            self._dispatch(job_id, analysis_id)
        except (OperationalError, redis.RedisError) as e:
            # leave no dedup marker behind, or the analysis could never be queued again
            try:
                self.registry.discard(job_id)
            except redis.RedisError:
                logger.exception("Could not discard registry entry for %s", job_id)
            raise QueueUnavailableError(f"Could not send job {job_id} to the broker: {e}") from e

        logger.info("Enqueued job %s for analysis %s", job_id, analysis_id)
        return job_id

    def get_job(self, analysis_id: str) -> JobInfo | None:
        return self.registry.get(job_id_for(analysis_id))
