"""Bounded exponential backoff and polling helpers built on tenacity."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .errors import ReachabilityTimeout, TransientNetworkError

T = TypeVar("T")

Sleeper = Callable[[float], None]
Clock = Callable[[], float]

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Backoff:
    """Exponential backoff schedule capped at ``cap`` seconds."""

    initial: float = 1.0
    factor: float = 2.0
    cap: float = 30.0

    def __post_init__(self) -> None:
        """Validate the schedule parameters."""
        if self.initial <= 0:
            raise ValueError("Backoff initial delay must be greater than zero.")
        if self.factor < 1:
            raise ValueError("Backoff factor must be at least 1.")
        if self.cap < self.initial:
            raise ValueError("Backoff cap must not be smaller than the initial delay.")

    def wait(self) -> wait_exponential:
        """Return the tenacity wait strategy for this schedule."""
        return wait_exponential(multiplier=self.initial, exp_base=self.factor, max=self.cap)


def retry_call(
    func: Callable[[], T],
    *,
    attempts: int,
    backoff: Backoff,
    retry_on: tuple[type[BaseException], ...] = (TransientNetworkError,),
    sleep: Sleeper = time.sleep,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Call *func* up to *attempts* times, sleeping between retryable failures.

    The final failure is re-raised unchanged so callers see the original
    error class.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1.")

    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        if on_retry is not None and exc is not None:
            on_retry(state.attempt_number, exc, delay)
        LOG.debug(
            "attempt %d/%d failed (%s); retrying in %.1fs",
            state.attempt_number,
            attempts,
            exc,
            delay,
        )

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=backoff.wait(),
        retry=retry_if_exception_type(retry_on),
        sleep=sleep,
        before_sleep=before_sleep,
        reraise=True,
    )
    return retrying(func)


def wait_until_reachable(
    probe: Callable[[], T],
    *,
    timeout: float,
    backoff: Backoff,
    describe: str,
    sleep: Sleeper = time.sleep,
    clock: Clock = time.monotonic,
) -> T:
    """Call *probe* until it stops raising :class:`TransientNetworkError`.

    Raises :class:`ReachabilityTimeout` once *timeout* seconds have elapsed.
    """
    deadline = clock() + timeout
    schedule = backoff.wait()

    # Deadline checks use *clock* rather than tenacity's own monotonic timer.
    def past_deadline(state: RetryCallState) -> bool:
        return clock() >= deadline

    def wait(state: RetryCallState) -> float:
        return max(0.0, min(schedule(state), deadline - clock()))

    retrying = Retrying(
        stop=past_deadline,
        wait=wait,
        retry=retry_if_exception_type(TransientNetworkError),
        sleep=sleep,
        before_sleep=before_sleep_log(LOG, logging.INFO),
    )
    try:
        return retrying(probe)
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        raise ReachabilityTimeout(
            f"{describe} was not reachable within {timeout:.0f}s: {last_error}"
        ) from last_error


def poll(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    *,
    interval: float,
    max_attempts: int,
    sleep: Sleeper = time.sleep,
    tolerate: tuple[type[BaseException], ...] = (TransientNetworkError,),
) -> T | None:
    """Poll *fetch* at a fixed *interval* until *done* accepts the value.

    Returns the accepted value, or ``None`` when the attempt budget runs out.
    Errors listed in *tolerate* count as a failed attempt rather than aborting.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_exception_type(tolerate) | retry_if_result(lambda value: not done(value)),
        sleep=sleep,
        before_sleep=before_sleep_log(LOG, logging.DEBUG),
        retry_error_callback=lambda state: None,
    )
    return retrying(fetch)


__all__ = ["Backoff", "poll", "retry_call", "wait_until_reachable"]
