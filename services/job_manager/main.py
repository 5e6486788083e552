from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

from .config import get_settings
from .event_log import get_event_logger
from .exceptions import QueueUnavailable, UnknownJob, register_exception_handlers
from .logging_config import configure_logging
from .producer import on_user_registered
from .store import JobQueue

# -----------------------
# App + state
# -----------------------
app = FastAPI(title="Mail Job Queue - Job Manager")
register_exception_handlers(app)
log = logging.getLogger("job-manager")


@lru_cache
def get_queue() -> JobQueue:
    return JobQueue.from_settings(get_settings(), events=get_event_logger())


# -----------------------
# Prometheus metrics
# -----------------------
JOBS_SUBMITTED = Counter("jobs_submitted_total", "Total jobs submitted", ["handler"])
JOBS_CANCELLED = Counter("jobs_cancelled_total", "Total jobs cancelled before running")
QUEUE_DEPTH = Gauge("queue_depth", "Jobs waiting in queue (including delayed retries)")
JOBS_INFLIGHT = Gauge("jobs_inflight", "Jobs currently leased by a worker")
JOBS_DEAD = Gauge("jobs_dead", "Jobs in the dead-letter set")
REMEDIATIONS = Counter("remediation_actions_total", "Remediation actions", ["action"])  # requeue_expired|requeue_dead

# -----------------------
# API models
# -----------------------


class SubmitJobReq(BaseModel):
    handler: str = Field(min_length=1, description="Registered handler name, e.g. send_welcome_email")
    args: List[Any] = Field(default_factory=list)
    delay_s: float = Field(default=0.0, ge=0)
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)


class UserRegisteredReq(BaseModel):
    email: str = Field(min_length=3)
    name: Optional[str] = None


# -----------------------
# Background tasks
# -----------------------


def refresh_gauges(q: JobQueue) -> None:
    QUEUE_DEPTH.set(q.pending_count())
    JOBS_INFLIGHT.set(q.running_count())
    JOBS_DEAD.set(q.dead_count())


def reap_expired_leases(q: JobQueue) -> int:
    expired = q.requeue_expired()
    if expired:
        REMEDIATIONS.labels(action="requeue_expired").inc(len(expired))
    return len(expired)


async def metrics_loop() -> None:
    """Continuously update gauges from the queue store."""

    settings = get_settings()
    while True:
        try:
            # redis-py blocks, keep it off the event loop
            await run_in_threadpool(refresh_gauges, get_queue())
        except QueueUnavailable as exc:
            log.warning("metrics refresh skipped: %s", exc)
        await asyncio.sleep(settings.metrics_interval_s)


async def lease_reaper_loop() -> None:
    """Requeue jobs whose worker stopped reporting before the visibility timeout."""

    settings = get_settings()
    while True:
        try:
            await run_in_threadpool(reap_expired_leases, get_queue())
        except QueueUnavailable as exc:
            log.warning("lease reaper skipped: %s", exc)
        await asyncio.sleep(settings.reaper_interval_s)


@app.on_event("startup")
async def startup() -> None:
    configure_logging()
    asyncio.create_task(metrics_loop())
    asyncio.create_task(lease_reaper_loop())


# -----------------------
# Routes
# -----------------------


@app.get("/healthz")
def healthz(queue: JobQueue = Depends(get_queue)):
    return {"ok": queue.ping()}


@app.get("/metrics")
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/jobs")
def submit_job(req: SubmitJobReq, queue: JobQueue = Depends(get_queue)):
    try:
        job_id = queue.enqueue(req.handler, req.args, delay=req.delay_s, max_retries=req.max_retries)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    JOBS_SUBMITTED.labels(handler=req.handler).inc()
    return {"job_id": job_id}


@app.post("/events/user-registered")
def user_registered(req: UserRegisteredReq, queue: JobQueue = Depends(get_queue)):
    job_id = on_user_registered(queue, req.email, req.name)
    JOBS_SUBMITTED.labels(handler="send_welcome_email").inc()
    return {"job_id": job_id}


@app.get("/jobs/{job_id}")
def get_job(job_id: str, queue: JobQueue = Depends(get_queue)):
    j = queue.get(job_id)
    if not j:
        raise UnknownJob(job_id)
    return {**j.view(), "pending": queue.is_pending(job_id)}


@app.delete("/jobs/{job_id}")
def cancel_job(job_id: str, queue: JobQueue = Depends(get_queue)):
    if queue.get(job_id) is None:
        raise UnknownJob(job_id)
    if not queue.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} is no longer pending.")
    JOBS_CANCELLED.inc()
    return {"job_id": job_id, "cancelled": True}


@app.get("/dead-letter")
def list_dead_letter(limit: int = Query(100, ge=0), queue: JobQueue = Depends(get_queue)):
    return {"jobs": [j.view() for j in queue.dead_letters(limit=limit)]}


@app.post("/dead-letter/{job_id}/requeue")
def requeue_dead_letter(job_id: str, queue: JobQueue = Depends(get_queue)):
    if not queue.requeue_dead(job_id):
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found in dead-letter set.")
    REMEDIATIONS.labels(action="requeue_dead").inc()
    return {"job_id": job_id, "requeued": True}
