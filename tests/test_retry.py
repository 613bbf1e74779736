import time

import pytest

from cipack.errors import ValidationError
from cipack.model import Backoff, RetryPolicy
from cipack.retry import DEFAULT_RETRY, compute_delay, resolve_retry, run_with_retry
from cipack.timeouts import TIMEOUT_EXIT_CODE


def policy(backoff, min_time=1.0, max_time=60.0, attempts=5):
    return RetryPolicy(max_attempts=attempts, backoff=backoff, min_time=min_time, max_time=max_time)


class TestComputeDelay:
    def test_exponential(self):
        p = policy(Backoff.EXPONENTIAL, min_time=2)
        assert [compute_delay(a, p) for a in (1, 2, 3, 4)] == [2, 4, 8, 16]

    def test_linear(self):
        p = policy(Backoff.LINEAR, min_time=3)
        assert [compute_delay(a, p) for a in (1, 2, 3)] == [3, 6, 9]

    def test_constant(self):
        p = policy(Backoff.CONSTANT, min_time=5)
        assert [compute_delay(a, p) for a in (1, 2, 10)] == [5, 5, 5]

    @pytest.mark.parametrize("backoff", list(Backoff))
    def test_monotonic_and_clamped(self, backoff):
        p = policy(backoff, min_time=1.5, max_time=20)
        delays = [compute_delay(a, p) for a in range(1, 12)]
        assert delays == sorted(delays)
        assert all(p.min_time <= d <= p.max_time for d in delays)

    def test_clamped_at_max(self):
        p = policy(Backoff.EXPONENTIAL, min_time=1, max_time=10)
        assert compute_delay(20, p) == 10

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            compute_delay(0, DEFAULT_RETRY)

    def test_backoff_from_string(self):
        assert RetryPolicy(backoff="linear").backoff is Backoff.LINEAR


class TestPolicyValidation:
    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"min_time": -1},
        {"min_time": 10, "max_time": 5},
        {"backoff": "fibonacci"},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            RetryPolicy(**kwargs)

    def test_resolve_first_non_none(self):
        step, job = RetryPolicy(max_attempts=2), RetryPolicy(max_attempts=3)
        assert resolve_retry(step, job, None) is step
        assert resolve_retry(None, job, None) is job
        assert resolve_retry(None, None, None) is DEFAULT_RETRY
        assert DEFAULT_RETRY.max_attempts == 1


class TestRunWithRetry:
    def test_always_failing_runs_exactly_n_times(self):
        calls, sleeps = [], []
        outcome = run_with_retry(
            lambda remaining: calls.append(1) or 3,
            policy(Backoff.EXPONENTIAL, min_time=1, attempts=4),
            sleep=sleeps.append,
        )
        assert len(calls) == 4
        assert outcome.attempts == 4
        assert outcome.exit_code == 3
        assert not outcome.ok
        assert sleeps == [1, 2, 4]

    def test_succeeds_after_failures(self):
        codes = [1, 1, 0]
        outcome = run_with_retry(lambda r: codes.pop(0), policy(Backoff.CONSTANT, attempts=5), sleep=lambda s: None)
        assert outcome.ok
        assert outcome.attempts == 3

    def test_single_attempt_never_sleeps(self):
        sleeps = []
        outcome = run_with_retry(lambda r: 1, None, sleep=sleeps.append)
        assert outcome.attempts == 1
        assert sleeps == []

    def test_events(self):
        events = []
        run_with_retry(
            lambda r: 1,
            policy(Backoff.LINEAR, min_time=2, attempts=2),
            sleep=lambda s: None,
            on_event=events.append,
            name="job/step",
        )
        kinds = [e.kind for e in events]
        assert kinds == ["attempt", "waiting", "attempt", "exhausted"]
        waiting = events[1]
        assert waiting.delay == 2
        assert waiting.backoff == "linear"
        assert waiting.exit_code == 1
        assert waiting.max_attempts == 2
        assert waiting.step == "job/step"

    def test_should_stop_prevents_retry(self):
        calls = []
        outcome = run_with_retry(
            lambda r: calls.append(1) or 1,
            policy(Backoff.CONSTANT, attempts=5),
            sleep=lambda s: None,
            should_stop=lambda: True,
        )
        assert len(calls) == 1
        assert outcome.attempts == 1

    def test_stop_during_backoff_starts_no_new_attempt(self):
        calls = []
        stopped = []
        outcome = run_with_retry(
            lambda r: calls.append(1) or 1,
            policy(Backoff.CONSTANT, attempts=5),
            sleep=lambda s: stopped.append(True),
            should_stop=lambda: bool(stopped),
        )
        assert len(calls) == 1
        assert outcome.attempts == 1
        assert outcome.exit_code == 1

    def test_timeout_stops_retries(self):
        calls = []

        def unit(remaining):
            calls.append(remaining)
            time.sleep(0.05)
            return TIMEOUT_EXIT_CODE

        outcome = run_with_retry(unit, policy(Backoff.CONSTANT, min_time=0, max_time=0, attempts=5), timeout=0.005,
                                 sleep=lambda s: None)
        assert outcome.timed_out
        assert outcome.exit_code == TIMEOUT_EXIT_CODE
        assert len(calls) == 1

    def test_attempt_gets_remaining_budget(self):
        seen = []
        run_with_retry(lambda r: seen.append(r) or 0, None, timeout=30)
        assert 0 < seen[0] <= 30
