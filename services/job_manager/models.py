from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def now() -> float:
    return time.time()


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"  # last attempt failed, retry scheduled
    DEAD = "dead"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    LEASE_EXPIRED = "lease_expired"


@dataclass
class Job:
    """One unit of deferred work, as stored in the queue hash."""

    job_id: str
    handler: str
    args: List[Any] = field(default_factory=list)
    queue: str = "default"
    status: JobStatus = JobStatus.QUEUED

    # number of failed executions so far
    attempts: int = 0
    # number of retries allowed after the first attempt
    max_retries: int = 3

    created_at: float = field(default_factory=now)
    visible_at: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    leased_by: Optional[str] = None
    lease_token: Optional[str] = None
    lease_expires_at: Optional[float] = None

    result: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.FINISHED, JobStatus.DEAD, JobStatus.CANCELLED)

    def to_mapping(self) -> Dict[str, str]:
        """Flatten into a Redis hash mapping. None fields are stored as ''."""

        def s(v: Any) -> str:
            if v is None:
                return ""
            if isinstance(v, Enum):
                return v.value
            return str(v)

        return {
            "job_id": self.job_id,
            "handler": self.handler,
            "args": json.dumps(list(self.args)),
            "queue": self.queue,
            "status": s(self.status),
            "attempts": s(self.attempts),
            "max_retries": s(self.max_retries),
            "created_at": s(self.created_at),
            "visible_at": s(self.visible_at),
            "started_at": s(self.started_at),
            "finished_at": s(self.finished_at),
            "last_error": s(self.last_error),
            "error_kind": s(self.error_kind),
            "leased_by": s(self.leased_by),
            "lease_token": s(self.lease_token),
            "lease_expires_at": s(self.lease_expires_at),
            "result": json.dumps(self.result, default=str),
        }

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> "Job":
        def opt_float(key: str) -> Optional[float]:
            v = data.get(key) or ""
            return float(v) if v != "" else None

        def opt_str(key: str) -> Optional[str]:
            return data.get(key) or None

        kind = opt_str("error_kind")
        raw_result = data.get("result") or "null"
        return cls(
            job_id=data["job_id"],
            handler=data["handler"],
            args=json.loads(data.get("args") or "[]"),
            queue=data.get("queue") or "default",
            status=JobStatus(data.get("status") or JobStatus.QUEUED.value),
            attempts=int(data.get("attempts") or 0),
            max_retries=int(data.get("max_retries") or 0),
            created_at=opt_float("created_at") or 0.0,
            visible_at=opt_float("visible_at"),
            started_at=opt_float("started_at"),
            finished_at=opt_float("finished_at"),
            last_error=opt_str("last_error"),
            error_kind=ErrorKind(kind) if kind else None,
            leased_by=opt_str("leased_by"),
            lease_token=opt_str("lease_token"),
            lease_expires_at=opt_float("lease_expires_at"),
            result=json.loads(raw_result),
        )

    def view(self) -> Dict[str, Any]:
        """Public representation returned by the HTTP API."""
        return {
            "job_id": self.job_id,
            "handler": self.handler,
            "args": self.args,
            "queue": self.queue,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "visible_at": self.visible_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "leased_by": self.leased_by,
            "last_error": self.last_error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "result": self.result,
        }
