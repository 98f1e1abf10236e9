"""Retry policy and the generic retry helper."""

import pytest

from metersync.errors import RetryExhaustedError
from metersync.utils.retry import BATCH_RETRY, CONNECTION_RETRY, RetryPolicy, retry_call


class TestRetryPolicy:

    def test_batch_policy_waits_one_then_two_seconds(self):
        assert [BATCH_RETRY.delay_for(a) for a in (1, 2, 3)] == [0.0, 1.0, 2.0]

    def test_connection_policy_is_capped(self):
        assert CONNECTION_RETRY.max_attempts == 5
        assert [CONNECTION_RETRY.delay_for(a) for a in range(1, 6)] == [0.0, 2.0, 4.0, 8.0, 8.0]

    def test_invalid_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRetryCall:

    def test_returns_first_success(self):
        sleeps = []
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ConnectionError("down")
            return "ok"

        assert retry_call(flaky, BATCH_RETRY, "flaky op", sleep=sleeps.append) == "ok"
        assert len(calls) == 2
        assert sleeps == [1.0]

    def test_exhaustion_raises_with_last_error(self):
        sleeps = []

        def always_fails():
            raise ConnectionError("still down")

        with pytest.raises(RetryExhaustedError) as exc_info:
            retry_call(always_fails, BATCH_RETRY, "doomed op", sleep=sleeps.append)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert sleeps == [1.0, 2.0]

    def test_unlisted_errors_propagate_immediately(self):
        calls = []

        def broken():
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            retry_call(broken, BATCH_RETRY, "op", retry_on=(ConnectionError,), sleep=lambda s: None)
        assert len(calls) == 1

    def test_on_retry_called_between_attempts(self):
        seen = []

        with pytest.raises(RetryExhaustedError):
            retry_call(lambda: 1 / 0, BATCH_RETRY, "op", sleep=lambda s: None,
                       on_retry=lambda attempt, error: seen.append(attempt))
        assert seen == [1, 2]
