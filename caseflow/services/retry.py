"""Retry with exponential backoff for transient request failures.

The delay after failed attempt ``n`` (0-based) is
``base_delay_seconds * backoff_factor ** n``. No delay follows the final
attempt: once the budget is spent the last error is re-raised unchanged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from caseflow.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay_seconds: float = 0.5
    backoff_factor: float = 2.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        values = {
            "max_retries": max(0, int(settings.PRODUCTION_SUBMIT_MAX_RETRIES)),
            "base_delay_seconds": max(0.0, float(settings.PRODUCTION_SUBMIT_BASE_DELAY_SECONDS)),
            "backoff_factor": max(1.0, float(settings.PRODUCTION_SUBMIT_BACKOFF_FACTOR)),
        }
        values.update(overrides)
        return cls(**values)

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def retrying(self, sleep: Callable[[float], None] = time.sleep) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.total_attempts),
            wait=wait_exponential(multiplier=self.base_delay_seconds, exp_base=self.backoff_factor),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=sleep,
            reraise=True,
        )


def with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call ``fn`` until it succeeds or ``policy`` runs out of attempts.

    Args:
        fn: Zero-argument callable performing one attempt.
        policy: Attempt budget and backoff schedule. Defaults to settings.
        sleep: Wall-clock wait between attempts; injectable for tests.
        label: Name used in log lines.

    Returns:
        Whatever ``fn`` returns on its first successful attempt.

    Raises:
        The exception from the final attempt, or any exception not listed in
        ``policy.retry_on`` as soon as it occurs.
    """
    policy = policy or RetryPolicy.from_settings()
    try:
        return policy.retrying(sleep)(fn)
    except policy.retry_on as exc:
        logger.warning(
            "retry_exhausted label=%s attempts=%d error=%s",
            label,
            policy.total_attempts,
            exc,
        )
        raise
