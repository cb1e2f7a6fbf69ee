"""
Redis-backed broker queue.

Keys (all prefixed with settings.QUEUE_NAME):

    {name}:job:{token}  STRING  JSON body of the queued job
    {name}:delayed      ZSET    token → epoch seconds when it becomes ready
    {name}:ready        ZSET    token → -priority * PRIORITY_SPAN + sequence
    {name}:seq          STRING  insertion counter for FIFO tie-breaking

Idempotency: the job body is written with SET NX under its token, so a
second enqueue with the same token fails with DuplicateJobError no matter
which process sends it. The token stays taken until the job is acked;
the error names the record whose job holds it.

Ordering: the ready set is a min-heap keyed on (-priority, insertion order),
the same (priority, counter) trick a heapq-based priority queue uses, so
higher priorities pop first and equal priorities pop FIFO. Workers pop with
BZPOPMIN, which blocks until something is ready.
"""

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from broker.base import (
    AbstractBroker,
    BrokerError,
    BrokerUnavailableError,
    DuplicateJobError,
    QueuedJob,
)
from config.settings import settings

logger = logging.getLogger(__name__)

PRIORITY_SPAN = 2 ** 32
MAX_PRIORITY = 2 ** 20   # keeps -priority * PRIORITY_SPAN exact in a double


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisJobQueue(AbstractBroker):

    def __init__(self, redis_client: Redis, name: str = settings.QUEUE_NAME, clock=time.time):
        self._redis = redis_client
        self._name = name
        self._clock = clock
        self.ready_key = f"{name}:ready"
        self.delayed_key = f"{name}:delayed"
        self.seq_key = f"{name}:seq"

    def job_key(self, token: str) -> str:
        return f"{self._name}:job:{token}"

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise BrokerUnavailableError(f"Redis unavailable: {e}") from e
        except RedisError as e:
            raise BrokerError(f"Redis rejected the request: {e}") from e

    # ── Producer side ───────────────────────────────────────────

    def enqueue(
        self,
        name: str,
        payload: dict,
        idempotency_token: str,
        delay: float = 0.0,
        attempt_budget: int = 1,
        priority: int = 0,
        record_id: Optional[str] = None,
    ) -> QueuedJob:
        if attempt_budget < 1:
            raise BrokerError(f"attempt_budget must be at least 1, got {attempt_budget}")

        job = QueuedJob(
            token=idempotency_token,
            name=name,
            payload=payload,
            record_id=str(record_id) if record_id is not None else None,
            priority=max(-MAX_PRIORITY, min(MAX_PRIORITY, priority)),
            attempt_budget=attempt_budget,
        )
        try:
            body = json.dumps(asdict(job))
        except (TypeError, ValueError) as e:
            raise BrokerError(f"Job {idempotency_token} payload is not serializable: {e}") from e

        with self._translate_errors():
            if not self._redis.set(self.job_key(job.token), body, nx=True):
                holder = self._load(job.token)
                raise DuplicateJobError(job.token, holder.record_id if holder else None)
            try:
                self._schedule(job, delay)
            except RedisError:
                # body without a schedule entry would block the token forever
                self._forget(job.token)
                raise

        logger.debug(f"Queued {name} ({job.token}) with delay {delay:.1f}s")
        return job

    def _schedule(self, job: QueuedJob, delay: float) -> None:
        if delay > 0:
            self._redis.zadd(self.delayed_key, {job.token: self._clock() + delay})
        else:
            self._push_ready(job)

    def _push_ready(self, job: QueuedJob) -> None:
        seq = self._redis.incr(self.seq_key)
        self._redis.zadd(self.ready_key, {job.token: -job.priority * PRIORITY_SPAN + seq})

    def _forget(self, token: str) -> None:
        try:
            self._redis.delete(self.job_key(token))
        except RedisError as e:
            logger.warning(f"Could not clean up job body for {token}: {e}")

    # ── Consumer side ───────────────────────────────────────────

    def move_due(self, limit: int = 100) -> int:
        """Move delayed jobs whose time has come into the ready set."""
        moved = 0
        with self._translate_errors():
            tokens = self._redis.zrangebyscore(
                self.delayed_key, "-inf", self._clock(), start=0, num=limit
            )
            for raw in tokens:
                token = _decode(raw)
                # ZREM decides which worker moves it when several race
                if not self._redis.zrem(self.delayed_key, token):
                    continue
                job = self._load(token)
                if job is None:
                    continue
                self._push_ready(job)
                moved += 1
        if moved:
            logger.debug(f"Moved {moved} delayed jobs to the ready set")
        return moved

    def dequeue(self, timeout: float = 1.0) -> Optional[QueuedJob]:
        self.move_due()
        with self._translate_errors():
            popped = self._redis.bzpopmin(self.ready_key, timeout=timeout)
            if popped is None:
                return None
            _, raw_token, _ = popped
            token = _decode(raw_token)
            job = self._load(token)
        if job is None:
            logger.debug(f"Job {token} was removed before a worker picked it up")
        return job

    def _load(self, token: str) -> Optional[QueuedJob]:
        raw = self._redis.get(self.job_key(token))
        if raw is None:
            return None
        return QueuedJob(**json.loads(raw))

    def ack(self, job: QueuedJob) -> None:
        with self._translate_errors():
            current = self._load(job.token)
            if current is not None and current.record_id != job.record_id:
                logger.debug(f"Job {job.token} was requeued for record {current.record_id}, keeping it")
                return
            self._redis.delete(self.job_key(job.token))

    def retry_later(self, job: QueuedJob, delay: float) -> None:
        job.attempts_made += 1
        with self._translate_errors():
            self._redis.set(self.job_key(job.token), json.dumps(asdict(job)), xx=True)
            self._redis.zadd(self.delayed_key, {job.token: self._clock() + max(0.0, delay)})

    def remove(self, token: str) -> bool:
        with self._translate_errors():
            pipe = self._redis.pipeline()
            pipe.delete(self.job_key(token))
            pipe.zrem(self.delayed_key, token)
            pipe.zrem(self.ready_key, token)
            deleted, _, _ = pipe.execute()
        return bool(deleted)

    # ── Introspection ───────────────────────────────────────────

    def is_scheduled(self, token: str) -> bool:
        with self._translate_errors():
            return (
                self._redis.zscore(self.ready_key, token) is not None
                or self._redis.zscore(self.delayed_key, token) is not None
            )

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError:
            return False

    def depth(self) -> dict[str, int]:
        with self._translate_errors():
            return {
                "ready": self._redis.zcard(self.ready_key),
                "delayed": self._redis.zcard(self.delayed_key),
            }

    def close(self) -> None:
        self._redis.close()
