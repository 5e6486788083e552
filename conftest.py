"""Shared fixtures: an in-process Redis, a controllable clock and a queue wired to both."""
from __future__ import annotations

import fakeredis
import pytest

from job_manager.config import Settings
from job_manager.event_log import EventLogger
from job_manager.store import JobQueue


class FakeClock:
    """Stands in for time.time/time.sleep; sleeping just moves time forward."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds

    def sleep(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        key_prefix="test",
        queue_name="default",
        max_retries=3,
        backoff_base_s=1.0,
        backoff_factor=2.0,
        backoff_cap_s=30.0,
        visibility_timeout_s=60.0,
        lease_poll_interval_s=0.5,
        finished_job_ttl_s=3600,
        worker_lease_timeout_s=0.0,
        event_log_path=str(tmp_path / "events.jsonl"),
    )


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis(redis_server) -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def queue(redis, settings, clock) -> JobQueue:
    return JobQueue(redis, settings, clock=clock, sleep=clock.sleep, events=EventLogger.from_settings(settings))
