from __future__ import annotations

import logging

import pytest
from tenacity import Retrying

from caseflow.core.config import settings
from caseflow.services.retry import RetryPolicy, with_retry


class _Flaky:
    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error or RuntimeError("boom")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_default_policy_schedule():
    policy = RetryPolicy()

    assert policy.total_attempts == 3
    assert (policy.max_retries, policy.base_delay_seconds, policy.backoff_factor) == (2, 0.5, 2.0)


def test_policy_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "PRODUCTION_SUBMIT_MAX_RETRIES", 4)
    monkeypatch.setattr(settings, "PRODUCTION_SUBMIT_BASE_DELAY_SECONDS", 0.1)
    monkeypatch.setattr(settings, "PRODUCTION_SUBMIT_BACKOFF_FACTOR", 3.0)

    policy = RetryPolicy.from_settings(retry_on=(ValueError,))

    sleeps: list[float] = []
    with pytest.raises(ValueError):
        with_retry(_Flaky(failures=10, error=ValueError("down")), policy, sleep=sleeps.append)

    assert policy.total_attempts == 5
    assert sleeps == pytest.approx([0.1, 0.3, 0.9, 2.7])
    assert policy.retry_on == (ValueError,)


def test_with_retry_recovers_after_transient_failures():
    fn = _Flaky(failures=2)
    sleeps: list[float] = []

    assert with_retry(fn, RetryPolicy(), sleep=sleeps.append) == "ok"
    assert fn.calls == 3
    assert sleeps == [0.5, 1.0]


def test_with_retry_reraises_last_error_without_trailing_sleep():
    error = RuntimeError("still down")
    fn = _Flaky(failures=10, error=error)
    sleeps: list[float] = []

    with pytest.raises(RuntimeError) as exc_info:
        with_retry(fn, RetryPolicy(), sleep=sleeps.append)

    assert exc_info.value is error
    assert fn.calls == 3
    assert sleeps == [0.5, 1.0]


def test_with_retry_does_not_retry_unlisted_errors():
    fn = _Flaky(failures=1, error=KeyError("nope"))
    sleeps: list[float] = []

    with pytest.raises(KeyError):
        with_retry(fn, RetryPolicy(retry_on=(ValueError,)), sleep=sleeps.append)

    assert fn.calls == 1
    assert sleeps == []


def test_with_retry_zero_retries_is_single_attempt():
    fn = _Flaky(failures=1)

    with pytest.raises(RuntimeError):
        with_retry(fn, RetryPolicy(max_retries=0), sleep=lambda _: None)
    assert fn.calls == 1


def test_with_retry_logs_each_backoff_and_exhaustion(caplog):
    fn = _Flaky(failures=10)

    with caplog.at_level(logging.WARNING, logger="caseflow.services.retry"):
        with pytest.raises(RuntimeError):
            with_retry(fn, RetryPolicy(), sleep=lambda _: None, label="production_submit")

    messages = [record.getMessage() for record in caplog.records]
    assert sum(message.startswith("Retrying") for message in messages) == 2
    assert any("retry_exhausted label=production_submit attempts=3" in message for message in messages)


def test_policy_builds_tenacity_controller():
    sleeps: list[float] = []
    retrying = RetryPolicy(max_retries=3, base_delay_seconds=0.25, backoff_factor=3.0).retrying(sleeps.append)

    assert isinstance(retrying, Retrying)
    with pytest.raises(RuntimeError):
        retrying(_Flaky(failures=10))
    assert sleeps == [0.25, 0.75, 2.25]
