"""Outcome of a speak() call."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class SpeakStatus:
    PLAYING = "playing"        # playback started
    QUEUED = "queued"          # waiting in the backlog; see SpeakResult.pending
    DEFERRED = "deferred"      # blocked by autoplay policy, waiting for a gesture
    DROPPED = "dropped"        # refused before any network call
    FAILED = "failed"          # synthesis, stream or device failure
    CANCELLED = "cancelled"    # discarded by stop_all()


@dataclass
class SpeakResult:
    """
    What happened to one narration request.

    Attributes:
        status: One of the SpeakStatus constants.
        request_id: Correlation id, also present in every log line.
        error: ErrorKind for DROPPED/FAILED, else None.
        message: Human-readable detail for errors.
        resource_id: Playback resource id once audio exists.
        truncated: True if the text was cut to the length limit.
        response_time_ms: Request-to-playback latency for PLAYING.
        pending: For QUEUED, resolves with the final SpeakResult.
    """
    status: str
    request_id: str = "-"
    error: Optional[str] = None
    message: Optional[str] = None
    resource_id: Optional[str] = None
    truncated: bool = False
    response_time_ms: Optional[float] = None
    pending: Optional["asyncio.Future[SpeakResult]"] = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status in (SpeakStatus.PLAYING, SpeakStatus.QUEUED, SpeakStatus.DEFERRED)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "ok": self.ok,
            "status": self.status,
            "request_id": self.request_id,
            "truncated": self.truncated,
        }
        if self.error:
            d["error"] = self.error
            d["message"] = self.message
        if self.resource_id:
            d["resource_id"] = self.resource_id
        if self.response_time_ms is not None:
            d["response_time_ms"] = round(self.response_time_ms, 2)
        return d
