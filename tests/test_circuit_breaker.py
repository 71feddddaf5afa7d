"""
Tests for the consecutive-failure circuit breaker.

Tests cover:
- Opening at the threshold
- Uncounted kinds ignored
- Success resets the count
- Cooldown measured from the last failure
- reset() and stats()
"""
from narration_ms.narration.circuit import CircuitBreaker
from narration_ms.narration.errors import ErrorKind

from conftest import FakeClock


class TestOpening:
    """Tests for counting failures up to the threshold."""

    def test_closed_initially(self):
        breaker = CircuitBreaker()
        assert not breaker.is_open
        assert breaker.allow_request()

    def test_opens_at_threshold(self):
        breaker = CircuitBreaker(threshold=5, clock=FakeClock())
        for _ in range(4):
            assert breaker.record_failure(ErrorKind.NETWORK)
        assert not breaker.is_open

        breaker.record_failure(ErrorKind.TIMEOUT)
        assert breaker.is_open
        assert not breaker.allow_request()

    def test_uncounted_kinds_ignored(self):
        breaker = CircuitBreaker(threshold=1)
        assert not breaker.record_failure(ErrorKind.STREAM_ERROR)
        assert not breaker.record_failure(ErrorKind.INVALID_PARAMETER)
        assert breaker.failure_count == 0
        assert breaker.allow_request()

    def test_success_resets_count(self):
        """Failures must be consecutive to open the breaker."""
        breaker = CircuitBreaker(threshold=3)
        breaker.record_failure(ErrorKind.NETWORK)
        breaker.record_failure(ErrorKind.NETWORK)
        breaker.record_success()
        breaker.record_failure(ErrorKind.NETWORK)

        assert breaker.failure_count == 1
        assert not breaker.is_open


class TestCooldown:
    """Tests for closing after the cooldown."""

    def test_stays_open_during_cooldown(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=1, cooldown_ms=300_000, clock=clock)
        breaker.record_failure(ErrorKind.NETWORK)

        clock.advance(299.0)
        assert not breaker.allow_request()

        clock.advance(1.0)
        # exactly at the cooldown is still open
        assert not breaker.allow_request()

    def test_closes_after_cooldown(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=1, cooldown_ms=300_000, clock=clock)
        breaker.record_failure(ErrorKind.NETWORK)

        clock.advance(300.5)
        assert breaker.allow_request()
        assert breaker.failure_count == 0
        assert breaker.last_failure_at is None

    def test_cooldown_counts_from_last_failure(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=2, cooldown_ms=1000, clock=clock)
        breaker.record_failure(ErrorKind.NETWORK)
        clock.advance(0.8)
        breaker.record_failure(ErrorKind.NETWORK)
        clock.advance(0.8)

        assert not breaker.allow_request()


class TestResetAndStats:
    def test_reset(self):
        breaker = CircuitBreaker(threshold=1, clock=FakeClock())
        breaker.record_failure(ErrorKind.CREDENTIALS)
        breaker.reset()

        assert not breaker.is_open
        assert breaker.failure_count == 0
        assert breaker.last_failure_at is None

    def test_stats_open(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=1, cooldown_ms=10_000, clock=clock)
        breaker.record_failure(ErrorKind.NETWORK)
        clock.advance(4.0)

        stats = breaker.stats()
        assert stats.state == "open"
        assert stats.failure_count == 1
        assert stats.retry_in_ms == 6000

    def test_stats_closed(self):
        stats = CircuitBreaker().stats()
        assert stats.state == "closed"
        assert stats.retry_in_ms is None
