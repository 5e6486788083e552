from __future__ import annotations

import argparse
import logging
import os
import platform
import signal
import threading
import time
from typing import Any, Callable, List, Optional

from prometheus_client import Counter, Histogram, start_http_server

from job_manager.config import get_settings
from job_manager.event_log import get_event_logger
from job_manager.exceptions import LeaseExpired, QueueUnavailable, UnknownJob
from job_manager.models import Job
from job_manager.scheduler import classify_error
from job_manager.store import JobQueue

from .handlers import HandlerRegistry, build_registry
from .logging_config import configure_logging

log = logging.getLogger("worker")

jobs_leased_total = Counter("worker_jobs_leased_total", "Jobs leased by worker")
jobs_total = Counter("worker_jobs_total", "Jobs executed by worker", ["outcome"])  # succeeded|failed
worker_job_runtime_seconds = Histogram("worker_job_runtime_seconds", "Job runtime")


def default_worker_name(index: int = 1) -> str:
    return f"worker-{platform.node()}-{os.getpid()}-{index}"


class Worker:
    """
    Leases jobs, runs the registered handler and reports the outcome.

    Handler errors are turned into queue.fail() calls and never stop the
    loop. QueueUnavailable is not caught: a worker without its store exits
    and is restarted by whatever supervises the process.
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        name: Optional[str] = None,
        lease_timeout: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.name = name or default_worker_name()
        self.lease_timeout = queue.settings.worker_lease_timeout_s if lease_timeout is None else lease_timeout
        self.stop_event = stop_event or threading.Event()

    def run(self, burst: bool = False) -> int:
        """Process jobs until stopped. In burst mode, return once nothing is visible."""
        processed = 0
        log.info("worker %s starting (queue=%s)", self.name, self.queue.name)
        while not self.stop_event.is_set():
            if self.work_once(0.0 if burst else self.lease_timeout):
                processed += 1
            elif burst:
                break
        log.info("worker %s stopped after %d job(s)", self.name, processed)
        return processed

    def work_once(self, timeout: Optional[float] = None) -> bool:
        job = self.queue.lease(self.lease_timeout if timeout is None else timeout, worker_name=self.name)
        if job is None:
            return False
        jobs_leased_total.inc()
        self.perform(job)
        return True

    def perform(self, job: Job) -> bool:
        """Run one leased job. Returns True on success."""
        start = time.time()
        try:
            handler = self.registry.get(job.handler)
            result = handler(*job.args)
        except Exception as exc:
            runtime = time.time() - start
            worker_job_runtime_seconds.observe(runtime)
            jobs_total.labels(outcome="failed").inc()
            log.warning(
                "job %s (%s) failed: %s",
                job.job_id,
                job.handler,
                exc,
                exc_info=True,
                extra={
                    "event": "job_failed",
                    "job_id": job.job_id,
                    "worker_id": self.name,
                    "handler": job.handler,
                    "runtime_s": runtime,
                    "status": classify_error(exc).value,
                    "error": str(exc),
                },
            )
            self._report(self.queue.fail, job, exc)
            return False

        runtime = time.time() - start
        worker_job_runtime_seconds.observe(runtime)
        jobs_total.labels(outcome="succeeded").inc()
        self._report(self.queue.acknowledge, job, result)
        return True

    def _report(self, report: Callable[..., Any], job: Job, value: Any) -> None:
        try:
            report(job.job_id, job.lease_token, value)
        except (LeaseExpired, UnknownJob) as exc:
            # the job was handed to another worker or is already settled
            log.warning(
                "late report for job %s ignored: %s",
                job.job_id,
                exc,
                extra={"event": "report_ignored", "job_id": job.job_id, "worker_id": self.name},
            )


def start_workers(
    count: int,
    make_queue: Callable[[], JobQueue],
    registry: HandlerRegistry,
    stop_event: Optional[threading.Event] = None,
    burst: bool = False,
) -> int:
    """Run `count` workers in threads. Returns a process exit code."""
    stop_event = stop_event or threading.Event()
    errors: List[BaseException] = []

    def _target(w: Worker) -> None:
        try:
            w.run(burst=burst)
        except QueueUnavailable as exc:
            log.error("worker %s lost the queue store: %s", w.name, exc)
            errors.append(exc)
            stop_event.set()
        except Exception as exc:
            log.exception("worker %s crashed", w.name)
            errors.append(exc)
            stop_event.set()

    threads = []
    for i in range(count):
        w = Worker(make_queue(), registry, name=default_worker_name(i + 1), stop_event=stop_event)
        t = threading.Thread(target=_target, args=(w,), name=w.name, daemon=True)
        t.start()
        threads.append(t)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        stop_event.set()
        for t in threads:
            t.join()
        log.info("all workers stopped")
    return 1 if errors else 0


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()
    ap = argparse.ArgumentParser(description="Mail job queue worker")
    ap.add_argument("--count", type=int, default=settings.worker_count, help="number of worker threads")
    ap.add_argument("--queue", default=settings.queue_name)
    ap.add_argument("--burst", action="store_true", help="exit once the queue is drained")
    args = ap.parse_args(argv)

    configure_logging(settings)
    if settings.worker_metrics_port:
        start_http_server(settings.worker_metrics_port)

    stop = threading.Event()

    def _handler(signum, frame):
        log.info("received signal %s, stopping workers", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)

    registry = build_registry()
    log.info("registered handlers: %s", ", ".join(registry.names()))
    events = get_event_logger()
    return start_workers(
        args.count,
        lambda: JobQueue.from_settings(settings, name=args.queue, events=events),
        registry,
        stop_event=stop,
        burst=args.burst,
    )


if __name__ == "__main__":
    raise SystemExit(main())
