"""
Timing helpers for the narration pipeline.

The remote synthesis call and the stream assembly are measured with
``timeit`` and logged with their durations.

Example:
    with timeit("synthesis") as t:
        body = await client.synthesize(text)
    print(f"Took {t.timing.ms:.1f}ms")
"""
from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Dict, Optional


@dataclass
class Timing:
    """
    Timing measurement result.

    Attributes:
        name: Identifier for what was timed (e.g., "synthesis", "stream").
        seconds: Duration in seconds.
        meta: Optional metadata dictionary for additional context.
    """
    name: str
    seconds: float
    meta: Optional[Dict[str, Any]] = None

    @property
    def ms(self) -> float:
        return self.seconds * 1000.0


class timeit:
    """
    Context manager for timing code blocks.

    Works around ``await`` expressions too, since it only reads the clock
    on enter and exit.
    """

    def __init__(self, name: str, meta: Optional[Dict[str, Any]] = None):
        self.name = name
        self.meta = meta
        self._t0: float | None = None
        self.timing: Timing | None = None

    def __enter__(self) -> "timeit":
        self._t0 = perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        t1 = perf_counter()
        assert self._t0 is not None
        self.timing = Timing(name=self.name, seconds=(t1 - self._t0), meta=self.meta)

