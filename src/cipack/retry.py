# retry.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .model import Backoff, RetryPolicy
from .timeouts import TIMEOUT_EXIT_CODE

log = logging.getLogger(__name__)

DEFAULT_RETRY = RetryPolicy()

# A unit attempt receives the remaining time budget (None = unbounded)
# and returns its exit code.
Attempt = Callable[[Optional[float]], int]


@dataclass(frozen=True)
class RetryEvent:
    """
    Emitted for every attempt and every retry decision.

    kind is one of: attempt, success, waiting, exhausted, timeout.
    """
    kind: str
    attempt: int
    max_attempts: int
    backoff: str
    delay: float = 0.0
    exit_code: Optional[int] = None
    step: Optional[str] = None


@dataclass(frozen=True)
class RetryOutcome:
    exit_code: int
    attempts: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def compute_delay(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay (seconds) before the retry that follows `attempt`.

    exponential: min_time * 2^(attempt-1)
    linear:      min_time * attempt
    constant:    min_time
    The result is clamped to [min_time, max_time].
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if policy.backoff == Backoff.LINEAR:
        raw = policy.min_time * attempt
    elif policy.backoff == Backoff.CONSTANT:
        raw = policy.min_time
    else:
        raw = policy.min_time * (2 ** (attempt - 1))
    return min(max(raw, policy.min_time), policy.max_time)


def resolve_retry(*candidates: Optional[RetryPolicy]) -> RetryPolicy:
    """First non-None policy wins (pass step, job, workflow in that order)."""
    for c in candidates:
        if c is not None:
            return c
    return DEFAULT_RETRY


def run_with_retry(
    unit: Attempt,
    policy: Optional[RetryPolicy] = None,
    *,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_event: Optional[Callable[[RetryEvent], None]] = None,
    should_stop: Callable[[], bool] = lambda: False,
    name: Optional[str] = None,
) -> RetryOutcome:
    """
    Run `unit` until it exits 0 or `policy.max_attempts` attempts are used.

    A None policy or max_attempts=1 means exactly one attempt and no sleep.
    `timeout` bounds all attempts together: once it is spent the outcome is
    a timeout (exit 124) and no further attempts are made. `should_stop`
    (e.g. run cancelled) is checked after each failure and again after the
    back-off sleep, so a cancel during the wait starts no new attempt.
    """
    policy = policy or DEFAULT_RETRY
    backoff = policy.backoff.value
    deadline = time.monotonic() + timeout if timeout is not None else None

    def emit(kind: str, attempt: int, delay: float = 0.0, exit_code: Optional[int] = None) -> None:
        event = RetryEvent(
            kind=kind,
            attempt=attempt,
            max_attempts=policy.max_attempts,
            backoff=backoff,
            delay=delay,
            exit_code=exit_code,
            step=name,
        )
        log.debug(
            "retry %s", kind,
            extra={"event": kind, "step": name, "attempt": attempt,
                   "max_attempts": policy.max_attempts, "delay": delay,
                   "backoff": backoff, "exit_code": exit_code},
        )
        if on_event is not None:
            on_event(event)

    attempt = 1
    while True:
        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                emit("timeout", attempt, exit_code=TIMEOUT_EXIT_CODE)
                return RetryOutcome(TIMEOUT_EXIT_CODE, attempt - 1, timed_out=True)

        emit("attempt", attempt)
        exit_code = unit(remaining)

        if exit_code == 0:
            if attempt > 1:
                emit("success", attempt, exit_code=0)
            return RetryOutcome(0, attempt)

        if exit_code == TIMEOUT_EXIT_CODE and deadline is not None and time.monotonic() >= deadline:
            emit("timeout", attempt, exit_code=exit_code)
            return RetryOutcome(exit_code, attempt, timed_out=True)

        if attempt >= policy.max_attempts or should_stop():
            if policy.enabled:
                emit("exhausted", attempt, exit_code=exit_code)
                log.warning(
                    "%s failed after %d attempts (exit=%d)", name or "unit", attempt, exit_code,
                    extra={"event": "exhausted", "step": name, "attempts": attempt, "exit_code": exit_code},
                )
            return RetryOutcome(exit_code, attempt)

        delay = compute_delay(attempt, policy)
        if deadline is not None:
            delay = min(delay, max(0.0, deadline - time.monotonic()))
        emit("waiting", attempt, delay=delay, exit_code=exit_code)
        log.info(
            "%s attempt %d/%d failed (exit=%d), retrying in %.1fs (%s)",
            name or "unit", attempt, policy.max_attempts, exit_code, delay, backoff,
            extra={"event": "waiting", "step": name, "attempt": attempt, "delay": delay, "backoff": backoff},
        )
        sleep(delay)
        if should_stop():
            emit("exhausted", attempt, exit_code=exit_code)
            return RetryOutcome(exit_code, attempt)
        attempt += 1
