"""
Circuit breaker for the remote synthesis service.

Counts consecutive countable failures. Once the count reaches the threshold
the breaker opens and every synthesis attempt is refused without touching
the network. When the cooldown has elapsed since the last failure, the next
``allow_request()`` closes the breaker again and resets the count.

    closed --(count >= threshold)--> open --(cooldown elapsed)--> closed
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from narration_ms.core.logging import get_logger, info, verbose, warn
from narration_ms.narration.errors import is_counted

_LOG = get_logger("narration-ms.circuit")


@dataclass
class CircuitStats:
    state: str
    failure_count: int
    threshold: int
    cooldown_ms: int
    last_failure_at: Optional[float]
    retry_in_ms: Optional[int]


class CircuitBreaker:
    """
    Consecutive-failure breaker.

    Args:
        threshold: Failures that open the breaker.
        cooldown_ms: Time after the last failure before the breaker closes.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown_ms: int = 300_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = int(threshold)
        self.cooldown_ms = int(cooldown_ms)
        self._clock = clock
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    @property
    def is_open(self) -> bool:
        return self._failure_count >= self.threshold

    def _cooldown_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        return (self._clock() - self._last_failure_at) * 1000.0 > self.cooldown_ms

    def allow_request(self) -> bool:
        """
        Gate a synthesis attempt.

        Closes the breaker (and resets the count) if it is open and the
        cooldown has elapsed.
        """
        if not self.is_open:
            return True
        if self._cooldown_elapsed():
            info(_LOG, "circuit_closed", failure_count=self._failure_count)
            self.reset()
            return True
        return False

    def record_failure(self, kind: str) -> bool:
        """
        Record a classified failure.

        Returns:
            True if the failure was counted.
        """
        if not is_counted(kind):
            verbose(_LOG, "circuit_failure_ignored", kind=kind)
            return False

        was_open = self.is_open
        self._failure_count += 1
        self._last_failure_at = self._clock()

        if self.is_open and not was_open:
            warn(
                _LOG,
                "circuit_open",
                failure_count=self._failure_count,
                cooldown_ms=self.cooldown_ms,
            )
        else:
            verbose(_LOG, "circuit_failure", kind=kind, failure_count=self._failure_count)
        return True

    def record_success(self) -> None:
        if self._failure_count:
            verbose(_LOG, "circuit_success_reset", failure_count=self._failure_count)
        self._failure_count = 0

    def reset(self) -> None:
        """Clear the count and the last failure time unconditionally."""
        self._failure_count = 0
        self._last_failure_at = None

    def stats(self) -> CircuitStats:
        retry_in_ms = None
        if self.is_open and self._last_failure_at is not None:
            elapsed_ms = (self._clock() - self._last_failure_at) * 1000.0
            retry_in_ms = max(0, int(self.cooldown_ms - elapsed_ms))
        return CircuitStats(
            state="open" if self.is_open else "closed",
            failure_count=self._failure_count,
            threshold=self.threshold,
            cooldown_ms=self.cooldown_ms,
            last_failure_at=self._last_failure_at,
            retry_in_ms=retry_in_ms,
        )
