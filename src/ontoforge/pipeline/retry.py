"""
Retry classification and backoff for stage execution.
"""

from __future__ import annotations

from typing import Callable, Optional

import requests
from sqlalchemy.exc import OperationalError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ontoforge.config import RetryConfig
from ontoforge.errors import RunCancelled, TransientError

TRANSIENT_ERRORS = (
    TransientError,
    OperationalError,
    requests.Timeout,
    requests.ConnectionError,
)


def is_transient(exc: BaseException) -> bool:
    """True for failures worth retrying: timeouts, dropped connections, locked databases."""
    return isinstance(exc, TRANSIENT_ERRORS)


def backoff_wait(config: RetryConfig) -> wait_exponential_jitter:
    """
    Exponential growth from initial_delay by multiplier, plus up to `jitter`
    seconds of random spread, capped at max_delay.
    """
    return wait_exponential_jitter(
        initial=config.initial_delay,
        max=config.max_delay,
        exp_base=config.multiplier,
        jitter=config.jitter,
    )


def stage_retrying(
    config: RetryConfig,
    token,
    before_sleep: Optional[Callable[[RetryCallState], None]] = None,
) -> Retrying:
    """
    Retry controller for one stage.

    Transient failures are retried up to max_retries times. The backoff
    sleeps on the run's cancellation token, so a cancel or shutdown ends
    the wait early with RunCancelled. The last error is re-raised as is.
    """

    def sleep(seconds: float) -> None:
        if token.wait(seconds):
            raise RunCancelled(token.cancel_reason or "cancelled")

    return Retrying(
        stop=stop_after_attempt(config.max_retries + 1),
        wait=backoff_wait(config),
        retry=retry_if_exception(lambda e: is_transient(e) and not token.cancelled),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )
