from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Sequence, Union

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from .config import Settings
from .event_log import EventLogger
from .exceptions import LeaseExpired, QueueUnavailable, UnknownJob
from .models import ErrorKind, Job, JobStatus
from .scheduler import classify_error, decide_failure

log = logging.getLogger("job-manager.queue")

# Hash fields cleared whenever a lease ends
_NO_LEASE = {"leased_by": "", "lease_token": "", "lease_expires_at": ""}


def handler_name(handler: Union[str, Callable[..., Any]]) -> str:
    if isinstance(handler, str):
        return handler
    return getattr(handler, "job_name", None) or handler.__name__


class JobQueue:
    """
    Redis-backed job queue with leases, retries and a dead-letter set.

    Keys (prefix p, queue q):
    - p:job:<id>            hash with the serialized Job
    - p:queue:q:pending     zset of job ids scored by visible_at
    - p:queue:q:leases      zset of leased job ids scored by lease expiry
    - p:queue:q:dead        zset of dead-lettered job ids scored by time of death
    - p:seq                 counter used to mint job ids

    Job ids are zero-padded sequence numbers, so pending entries with equal
    scores still come out in enqueue order.
    """

    def __init__(
        self,
        redis: Redis,
        settings: Settings,
        *,
        name: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        events: Optional[EventLogger] = None,
    ) -> None:
        self.r = redis
        self.settings = settings
        self.name = name or settings.queue_name
        self.clock = clock
        self.sleep = sleep
        self.events = events

        p = settings.key_prefix
        self.seq_key = f"{p}:seq"
        self.pending_key = f"{p}:queue:{self.name}:pending"
        self.leases_key = f"{p}:queue:{self.name}:leases"
        self.dead_key = f"{p}:queue:{self.name}:dead"
        self._job_prefix = f"{p}:job:"

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "JobQueue":
        r = Redis.from_url(settings.redis_url, decode_responses=True)
        return cls(r, settings, **kwargs)

    def job_key(self, job_id: str) -> str:
        return self._job_prefix + job_id

    @contextmanager
    def _store_errors(self) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise QueueUnavailable(str(exc)) from exc

    def _emit(self, event: str, job: Job, **extra: Any) -> None:
        if self.events is not None:
            self.events.emit(
                event,
                {"job_id": job.job_id, "status": job.status.value, "attempts": job.attempts, **extra},
            )

    # -----------------------
    # Producer side
    # -----------------------

    def enqueue(
        self,
        handler: Union[str, Callable[..., Any]],
        args: Sequence[Any] = (),
        *,
        delay: float = 0.0,
        max_retries: Optional[int] = None,
    ) -> str:
        name = handler_name(handler)
        if not name or not name.strip():
            raise ValueError("Handler name cannot be empty.")
        if isinstance(args, (str, bytes)) or not isinstance(args, (list, tuple)):
            raise ValueError("args must be a list of positional arguments.")
        if delay < 0:
            raise ValueError("delay must be >= 0 seconds")
        retries = self.settings.max_retries if max_retries is None else int(max_retries)
        if retries < 0:
            raise ValueError("max_retries must be >= 0")

        ts = self.clock()
        with self._store_errors():
            seq = self.r.incr(self.seq_key)
            job = Job(
                job_id=f"{seq:012d}",
                handler=name,
                args=list(args),
                queue=self.name,
                max_retries=retries,
                created_at=ts,
                visible_at=ts + delay,
            )
            pipe = self.r.pipeline()
            pipe.hset(self.job_key(job.job_id), mapping=job.to_mapping())
            pipe.zadd(self.pending_key, {job.job_id: job.visible_at})
            pipe.execute()

        log.info(
            "job enqueued",
            extra={"event": "job_enqueued", "job_id": job.job_id, "handler": name, "status": job.status.value},
        )
        self._emit("job_enqueued", job, handler=name)
        return job.job_id

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not been leased yet."""
        with self._store_errors():
            if self.r.zrem(self.pending_key, job_id) != 1:
                return False
            pipe = self.r.pipeline()
            pipe.hset(
                self.job_key(job_id),
                mapping={"status": JobStatus.CANCELLED.value, "finished_at": str(self.clock())},
            )
            pipe.expire(self.job_key(job_id), self.settings.finished_job_ttl_s)
            pipe.execute()
        log.info("job cancelled", extra={"event": "job_cancelled", "job_id": job_id, "status": "cancelled"})
        if self.events is not None:
            self.events.emit("job_cancelled", {"job_id": job_id, "status": "cancelled"})
        return True

    # -----------------------
    # Worker side
    # -----------------------

    def lease(self, timeout: float = 0.0, *, worker_name: Optional[str] = None) -> Optional[Job]:
        """
        Wait up to `timeout` seconds for a visible job and lease it.

        The claim is a WATCH/MULTI transaction on the pending set, so only
        one caller can move a given job into the lease set. Returns None
        when nothing became visible before the deadline.
        """
        deadline = self.clock() + max(0.0, timeout)
        with self._store_errors():
            while True:
                self.requeue_expired()
                job = self._claim(worker_name)
                if job is not None:
                    return job
                remaining = deadline - self.clock()
                if remaining <= 0:
                    return None
                self.sleep(min(self.settings.lease_poll_interval_s, remaining))

    def _claim(self, worker_name: Optional[str]) -> Optional[Job]:
        with self.r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.pending_key)
                    ts = self.clock()
                    ids = pipe.zrangebyscore(self.pending_key, "-inf", ts, start=0, num=1)
                    if not ids:
                        pipe.unwatch()
                        return None
                    job_id = ids[0]
                    token = uuid.uuid4().hex
                    expires = ts + self.settings.visibility_timeout_s
                    pipe.multi()
                    pipe.zrem(self.pending_key, job_id)
                    pipe.zadd(self.leases_key, {job_id: expires})
                    pipe.hset(
                        self.job_key(job_id),
                        mapping={
                            "status": JobStatus.RUNNING.value,
                            "started_at": str(ts),
                            "leased_by": worker_name or "",
                            "lease_token": token,
                            "lease_expires_at": str(expires),
                        },
                    )
                    pipe.hgetall(self.job_key(job_id))
                    data = pipe.execute()[-1]
                except WatchError:
                    # another worker claimed something first; look again
                    continue

                job = Job.from_mapping(data)
                log.info(
                    "job leased",
                    extra={
                        "event": "job_leased",
                        "job_id": job.job_id,
                        "worker_id": worker_name,
                        "handler": job.handler,
                        "attempts": job.attempts,
                        "status": job.status.value,
                    },
                )
                self._emit("job_leased", job, worker_id=worker_name)
                return job

    def _watch_lease(self, pipe, job_id: str, lease_token: str) -> Job:
        """WATCH the job hash and check that `lease_token` is its current lease."""
        pipe.watch(self.job_key(job_id))
        data = pipe.hgetall(self.job_key(job_id))
        if not data:
            raise UnknownJob(job_id)
        job = Job.from_mapping(data)
        if job.status != JobStatus.RUNNING:
            raise UnknownJob(job_id, "is not leased")
        if job.lease_token != lease_token:
            raise LeaseExpired(job_id)
        return job

    def acknowledge(self, job_id: str, lease_token: str, result: Any = None) -> Job:
        with self._store_errors(), self.r.pipeline() as pipe:
            while True:
                try:
                    job = self._watch_lease(pipe, job_id, lease_token)
                    job.status = JobStatus.FINISHED
                    job.finished_at = self.clock()
                    job.result = result
                    job.leased_by = job.lease_token = job.lease_expires_at = None
                    pipe.multi()
                    pipe.zrem(self.leases_key, job_id)
                    pipe.hset(self.job_key(job_id), mapping=job.to_mapping())
                    pipe.expire(self.job_key(job_id), self.settings.finished_job_ttl_s)
                    pipe.execute()
                    break
                except WatchError:
                    continue
                finally:
                    pipe.reset()

        runtime = (job.finished_at - job.started_at) if job.started_at else None
        log.info(
            "job finished",
            extra={"event": "job_finished", "job_id": job_id, "status": "finished", "runtime_s": runtime, "attempts": job.attempts},
        )
        self._emit("job_finished", job, runtime_s=runtime)
        return job

    def fail(self, job_id: str, lease_token: str, error: Union[BaseException, str]) -> Job:
        """
        Report a failed execution.

        Permanent errors and exhausted retry budgets go to the dead-letter
        set; everything else is re-queued with exponential backoff.
        """
        kind = classify_error(error)
        message = str(error) if isinstance(error, str) else f"{type(error).__name__}: {error}"
        with self._store_errors(), self.r.pipeline() as pipe:
            while True:
                try:
                    job = self._watch_lease(pipe, job_id, lease_token)
                    pipe.multi()
                    self._apply_failure(pipe, job, kind, message)
                    pipe.execute()
                    break
                except WatchError:
                    continue
                finally:
                    pipe.reset()
        self._report_failure(job)
        return job

    def _apply_failure(self, pipe, job: Job, kind: ErrorKind, message: str) -> None:
        """Queue the state changes for a failed attempt on a pipeline in MULTI mode."""
        ts = self.clock()
        job.attempts += 1
        job.last_error = message[:500]
        job.error_kind = kind
        job.leased_by = job.lease_token = job.lease_expires_at = None
        decision = decide_failure(job, kind, self.settings)

        pipe.zrem(self.leases_key, job.job_id)
        if decision.dead:
            job.status = JobStatus.DEAD
            job.finished_at = ts
            pipe.zadd(self.dead_key, {job.job_id: ts})
        else:
            job.status = JobStatus.FAILED
            job.visible_at = ts + decision.delay_s
            pipe.zadd(self.pending_key, {job.job_id: job.visible_at})
        pipe.hset(self.job_key(job.job_id), mapping=job.to_mapping())

    def _report_failure(self, job: Job) -> None:
        extra = {
            "job_id": job.job_id,
            "status": job.status.value,
            "attempts": job.attempts,
            "error": job.last_error,
        }
        if job.status == JobStatus.DEAD:
            log.error("job dead", extra={"event": "job_dead", **extra})
            self._emit("job_dead", job, error=job.last_error)
        else:
            delay = (job.visible_at or 0.0) - self.clock()
            log.warning("job failed; retry scheduled", extra={"event": "job_failed", **extra})
            self._emit("job_failed", job, error=job.last_error, retry_in_s=max(0.0, delay))

    def requeue_expired(self) -> List[str]:
        """Return jobs whose lease outlived the visibility timeout to the queue."""
        requeued: List[str] = []
        with self._store_errors():
            ids = self.r.zrangebyscore(self.leases_key, "-inf", self.clock())
            if not ids:
                return requeued
            with self.r.pipeline() as pipe:
                for job_id in ids:
                    job = self._expire_lease(pipe, job_id)
                    if job is not None:
                        requeued.append(job_id)
                        self._report_failure(job)
        return requeued

    def _expire_lease(self, pipe, job_id: str) -> Optional[Job]:
        while True:
            try:
                pipe.watch(self.leases_key, self.job_key(job_id))
                score = pipe.zscore(self.leases_key, job_id)
                if score is None or score > self.clock():
                    # acknowledged or failed in the meantime
                    return None
                data = pipe.hgetall(self.job_key(job_id))
                pipe.multi()
                if not data:
                    pipe.zrem(self.leases_key, job_id)
                    pipe.execute()
                    return None
                job = Job.from_mapping(data)
                self._apply_failure(pipe, job, ErrorKind.LEASE_EXPIRED, "lease expired")
                pipe.execute()
                return job
            except WatchError:
                continue
            finally:
                pipe.reset()

    # -----------------------
    # Inspection / dead letters
    # -----------------------

    def get(self, job_id: str) -> Optional[Job]:
        with self._store_errors():
            data = self.r.hgetall(self.job_key(job_id))
        return Job.from_mapping(data) if data else None

    def is_pending(self, job_id: str) -> bool:
        with self._store_errors():
            return self.r.zscore(self.pending_key, job_id) is not None

    def pending_count(self) -> int:
        with self._store_errors():
            return int(self.r.zcard(self.pending_key))

    def running_count(self) -> int:
        with self._store_errors():
            return int(self.r.zcard(self.leases_key))

    def dead_count(self) -> int:
        with self._store_errors():
            return int(self.r.zcard(self.dead_key))

    def dead_letters(self, limit: int = 100) -> List[Job]:
        if limit <= 0:
            return []
        with self._store_errors():
            ids = self.r.zrevrange(self.dead_key, 0, limit - 1)
            pipe = self.r.pipeline(transaction=False)
            for job_id in ids:
                pipe.hgetall(self.job_key(job_id))
            rows = pipe.execute() if ids else []
        return [Job.from_mapping(d) for d in rows if d]

    def requeue_dead(self, job_id: str) -> bool:
        """Give a dead-lettered job a fresh retry budget."""
        with self._store_errors(), self.r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.dead_key)
                    if pipe.zscore(self.dead_key, job_id) is None:
                        return False
                    ts = self.clock()
                    pipe.multi()
                    pipe.zrem(self.dead_key, job_id)
                    pipe.zadd(self.pending_key, {job_id: ts})
                    pipe.hset(
                        self.job_key(job_id),
                        mapping={
                            "status": JobStatus.QUEUED.value,
                            "attempts": "0",
                            "visible_at": str(ts),
                            "finished_at": "",
                            "last_error": "",
                            "error_kind": "",
                            **_NO_LEASE,
                        },
                    )
                    pipe.execute()
                    break
                except WatchError:
                    continue
                finally:
                    pipe.reset()
        log.info("dead job requeued", extra={"event": "job_requeued", "job_id": job_id, "status": "queued"})
        if self.events is not None:
            self.events.emit("job_requeued", {"job_id": job_id, "status": "queued"})
        return True

    def ping(self) -> bool:
        with self._store_errors():
            return bool(self.r.ping())
