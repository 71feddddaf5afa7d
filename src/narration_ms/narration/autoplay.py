"""
Recovery from autoplay-policy rejections.

Browsers refuse programmatic playback until the user has interacted with the
page. When play() is rejected that way (or the page is hidden before the
first attempt), the resource is kept, taken out of the active set, and parked
until the next user gesture:

    BLOCKED -> WAITING_FOR_GESTURE -> RETRIED  (first gesture, one retry)
                                   -> EXPIRED  (no gesture in time)

A retry that succeeds admits the resource again and it plays. A retry that
fails, or an expiry, releases the resource as errored.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from narration_ms.core.logging import get_logger, info, verbose, warn
from narration_ms.narration.admission import PlaybackAdmissionController
from narration_ms.narration.errors import PlaybackDeviceError
from narration_ms.narration.playback import PlaybackResource, ResourceArena, ResourceState

_LOG = get_logger("narration-ms.autoplay")

GESTURE_KINDS = ("click", "keydown", "touchstart", "pointerdown")


class DeferralState(str, Enum):
    BLOCKED = "blocked"
    WAITING_FOR_GESTURE = "waiting_for_gesture"
    RETRIED = "retried"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class Deferral:
    resource: PlaybackResource
    reason: str
    state: DeferralState = DeferralState.BLOCKED
    blocked_at: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class AutoplayRecoveryManager:
    """
    Parks autoplay-blocked resources until a user gesture or a timeout.

    Args:
        arena: Owner of the resources; errored resources are finished here.
        admission: Used to leave and re-enter the active set.
        gesture_timeout_s: How long to wait for a gesture.
        on_started: Called with each resource whose retry started playback.
    """

    def __init__(
        self,
        arena: ResourceArena,
        admission: PlaybackAdmissionController,
        gesture_timeout_s: float = 30.0,
        on_started: Optional[Callable[[PlaybackResource], None]] = None,
    ):
        self.arena = arena
        self.admission = admission
        self.gesture_timeout_s = gesture_timeout_s
        self.on_started = on_started
        self._deferrals: Dict[str, Deferral] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.total_blocked = 0
        self.total_recovered = 0
        self.total_expired = 0

    @property
    def waiting_count(self) -> int:
        return sum(1 for d in self._deferrals.values() if d.state == DeferralState.WAITING_FOR_GESTURE)

    def get(self, resource_id: str) -> Optional[Deferral]:
        return self._deferrals.get(resource_id)

    def defer(self, resource: PlaybackResource, reason: str = "not_allowed") -> Deferral:
        """Park ``resource`` until the next gesture; starts its expiry timer."""
        self.admission.demote(resource)
        deferral = Deferral(resource=resource, reason=reason)
        self._deferrals[resource.id] = deferral
        self.total_blocked += 1
        warn(_LOG, "autoplay_blocked", resource_id=resource.id, reason=reason)

        loop = asyncio.get_running_loop()
        deferral.timer = loop.call_later(self.gesture_timeout_s, self._on_timeout, resource.id)
        deferral.state = DeferralState.WAITING_FOR_GESTURE
        return deferral

    def _on_timeout(self, resource_id: str) -> None:
        deferral = self._deferrals.get(resource_id)
        if deferral is None or deferral.state != DeferralState.WAITING_FOR_GESTURE:
            return
        deferral.state = DeferralState.EXPIRED
        deferral.timer = None
        task = asyncio.get_running_loop().create_task(self._expire(deferral))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _expire(self, deferral: Deferral) -> None:
        self._deferrals.pop(deferral.resource.id, None)
        self.total_expired += 1
        warn(_LOG, "autoplay_expired", resource_id=deferral.resource.id, timeout_s=self.gesture_timeout_s)
        await self.arena.finish(deferral.resource.id, ResourceState.ERRORED, stop=False)

    async def notify_gesture(self, kind: str = "click") -> int:
        """
        Retry every waiting resource once.

        Returns:
            Number of resources whose playback started.
        """
        waiting: List[Deferral] = [
            d for d in self._deferrals.values() if d.state == DeferralState.WAITING_FOR_GESTURE
        ]
        if not waiting:
            return 0

        info(_LOG, "autoplay_gesture", kind=kind, waiting=len(waiting))
        started = 0
        for deferral in waiting:
            if deferral.timer is not None:
                deferral.timer.cancel()
                deferral.timer = None
            deferral.state = DeferralState.RETRIED
            self._deferrals.pop(deferral.resource.id, None)
            if await self._retry(deferral.resource):
                started += 1
        return started

    async def _retry(self, resource: PlaybackResource) -> bool:
        if resource.id not in self.arena:
            return False
        await self.admission.admit(resource)
        try:
            await self.arena.device.play(resource.id)
        except PlaybackDeviceError as e:
            warn(_LOG, "autoplay_retry_failed", resource_id=resource.id, kind=e.kind, message=e.message)
            await self.arena.finish(resource.id, ResourceState.ERRORED)
            return False

        resource.started_at = time.monotonic()
        self.total_recovered += 1
        info(_LOG, "autoplay_recovered", resource_id=resource.id)
        if self.on_started is not None:
            self.on_started(resource)
        return True

    async def cancel_all(self) -> int:
        """Drop every deferral and release its resource."""
        deferrals = list(self._deferrals.values())
        self._deferrals.clear()
        for deferral in deferrals:
            if deferral.timer is not None:
                deferral.timer.cancel()
                deferral.timer = None
            deferral.state = DeferralState.CANCELLED
            await self.arena.finish(deferral.resource.id, ResourceState.ENDED, stop=False)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if deferrals:
            verbose(_LOG, "autoplay_cancelled", count=len(deferrals))
        return len(deferrals)
