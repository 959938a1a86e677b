"""Tests for the bounded retry combinator."""

import pytest
from fakes import FakeClock

from theia_datastore.exceptions import ErrorCode, QueryError, RetryTimeoutError
from theia_datastore.retry import poll_immediate


class Flaky:
    """Callable that fails a fixed number of times before succeeding."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or QueryError.transport_failure("SELECT 1", OSError("refused"))
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestPollImmediate:
    """Tests for poll_immediate."""

    def test_first_attempt_is_immediate(self, fake_clock: FakeClock) -> None:
        """A succeeding operation runs once without sleeping."""
        operation = Flaky(0)
        result = poll_immediate(
            operation,
            interval=10,
            timeout=60,
            description="connect",
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )
        assert result == "ok"
        assert operation.calls == 1
        assert fake_clock.sleeps == []

    def test_succeeds_after_failures(self, fake_clock: FakeClock) -> None:
        """Failures are retried at the configured interval."""
        operation = Flaky(2)
        result = poll_immediate(
            operation,
            interval=10,
            timeout=60,
            description="connect",
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )
        assert result == "ok"
        assert operation.calls == 3
        assert fake_clock.sleeps == [10, 10]

    def test_timeout_bounds_attempts(self, fake_clock: FakeClock) -> None:
        """With a 10s interval and 60s bound there are seven attempts in total."""
        operation = Flaky(100)
        with pytest.raises(RetryTimeoutError) as exc_info:
            poll_immediate(
                operation,
                interval=10,
                timeout=60,
                description="connect",
                sleep=fake_clock.sleep,
                clock=fake_clock,
            )
        assert operation.calls == 7
        assert len(fake_clock.sleeps) == 6
        assert fake_clock.now <= 60

        error = exc_info.value
        assert error.error_code == ErrorCode.COMM_RETRY_EXHAUSTED
        assert error.context["attempts"] == 7
        assert error.context["operation"] == "connect"
        assert error.cause is operation.error
        assert error.__cause__ is operation.error

    def test_error_outside_retry_on_propagates(self, fake_clock: FakeClock) -> None:
        """Exceptions not listed in retry_on are not retried."""
        operation = Flaky(5, error=ValueError("bad statement"))
        with pytest.raises(ValueError, match="bad statement"):
            poll_immediate(
                operation,
                interval=1,
                timeout=10,
                description="read version",
                retry_on=(QueryError,),
                sleep=fake_clock.sleep,
                clock=fake_clock,
            )
        assert operation.calls == 1
        assert fake_clock.sleeps == []

    def test_zero_timeout_attempts_once(self, fake_clock: FakeClock) -> None:
        """A zero timeout still makes the immediate attempt."""
        operation = Flaky(1)
        with pytest.raises(RetryTimeoutError):
            poll_immediate(
                operation,
                interval=1,
                timeout=0,
                description="read version",
                sleep=fake_clock.sleep,
                clock=fake_clock,
            )
        assert operation.calls == 1
