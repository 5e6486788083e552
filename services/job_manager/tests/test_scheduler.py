from job_manager.config import Settings
from job_manager.exceptions import HandlerNotFound, PermanentExecutionError, TransientExecutionError
from job_manager.models import ErrorKind, Job
from job_manager.scheduler import backoff_s, classify_error, decide_failure, should_retry


def _settings(**kw) -> Settings:
    base = dict(_env_file=None, backoff_base_s=1.0, backoff_factor=2.0, backoff_cap_s=300.0)
    base.update(kw)
    return Settings(**base)


def test_backoff_is_exponential():
    s = _settings()
    assert backoff_s(1, s) == 1.0
    assert backoff_s(2, s) == 2.0
    assert backoff_s(3, s) == 4.0


def test_backoff_is_capped_and_non_decreasing():
    s = _settings(backoff_cap_s=10.0)
    delays = [backoff_s(n, s) for n in range(1, 12)]
    assert delays == sorted(delays)
    assert max(delays) == 10.0
    assert delays[-1] == 10.0


def test_classify_error():
    assert classify_error(TransientExecutionError("timeout")) == ErrorKind.TRANSIENT
    assert classify_error(PermanentExecutionError("bad recipient")) == ErrorKind.PERMANENT
    assert classify_error(HandlerNotFound("nope")) == ErrorKind.PERMANENT
    assert classify_error(ValueError("boom")) == ErrorKind.TRANSIENT
    assert classify_error("plain message") == ErrorKind.TRANSIENT


def test_should_retry_counts_retries_after_first_attempt():
    j = Job(job_id="1", handler="h", max_retries=2)
    j.attempts = 2
    assert should_retry(j)
    j.attempts = 3
    assert not should_retry(j)


def test_decide_failure():
    s = _settings()
    j = Job(job_id="1", handler="h", max_retries=3, attempts=2)

    d = decide_failure(j, ErrorKind.TRANSIENT, s)
    assert not d.dead and d.delay_s == 2.0

    assert decide_failure(j, ErrorKind.PERMANENT, s).dead

    d = decide_failure(j, ErrorKind.LEASE_EXPIRED, s)
    assert not d.dead and d.delay_s == 0.0

    j.attempts = 4
    assert decide_failure(j, ErrorKind.TRANSIENT, s).dead
