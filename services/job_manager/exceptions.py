from fastapi import Request
from fastapi.responses import JSONResponse


class QueueError(Exception):
    """Base class for errors raised by the job queue."""


class QueueUnavailable(QueueError):
    def __init__(self, detail: str = ""):
        super().__init__(f"Queue store unavailable: {detail}" if detail else "Queue store unavailable.")


class UnknownJob(QueueError):
    def __init__(self, job_id: str, reason: str = "not found"):
        super().__init__(f"Job {job_id} {reason}.")
        self.job_id = job_id


class LeaseExpired(QueueError):
    """A report arrived for a lease that is no longer current."""

    def __init__(self, job_id: str):
        super().__init__(f"Lease on job {job_id} expired; report ignored.")
        self.job_id = job_id


class ExecutionError(Exception):
    """Raised by handlers. Subclasses decide whether the job is retried."""

    permanent = False


class TransientExecutionError(ExecutionError):
    permanent = False


class PermanentExecutionError(ExecutionError):
    permanent = True


class HandlerNotFound(ExecutionError):
    permanent = True

    def __init__(self, handler: str):
        super().__init__(f"No handler registered for {handler!r}.")
        self.handler = handler


def register_exception_handlers(app):
    @app.exception_handler(UnknownJob)
    async def unknown_job_handler(request: Request, exc: UnknownJob):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(QueueUnavailable)
    async def queue_unavailable_handler(request: Request, exc: QueueUnavailable):
        return JSONResponse(status_code=503, content={"detail": str(exc)})
