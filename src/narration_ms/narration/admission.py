"""
Admission control for concurrently playing narration.

Two numbers share the ``max_concurrent_audio`` budget:

    - reservations: requests that passed the gate in speak() and are still
      synthesizing. Taken with try_reserve() so back-to-back requests see
      each other before any audio exists.
    - the active set: resources in PLAYING or FADING.

A request that cannot reserve a slot is queued by the caller, which then
calls make_room() so the oldest playing clip gives way to the backlog.
admit() turns a reservation into active-set membership. If the active set
is already at capacity (after a runtime capacity change, or when a resource
deferred by autoplay policy comes back), the oldest active resource is
faded out linearly in a fixed number of steps, stopped and released first.

Admission and eviction run under one asyncio.Lock, so two admissions never
pick the same victim.

Usage:
    reservation = controller.try_reserve()
    if reservation is None:
        queue.enqueue(text)
    else:
        ...synthesize...
        await controller.admit(resource, reservation)
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import numpy as np

from narration_ms.core.config import AudioSettings, Defaults
from narration_ms.core.logging import debug, get_logger, info, verbose, warn
from narration_ms.narration.playback import PlaybackResource, ResourceArena, ResourceState

_LOG = get_logger("narration-ms.admission")


@dataclass
class AdmissionStats:
    max_concurrent_audio: int
    active: int
    reserved: int
    total_admitted: int
    total_evicted: int


class Reservation:
    """A held slot. Releasing it twice has no effect."""

    _ids = itertools.count(1)

    def __init__(self) -> None:
        self.id = next(self._ids)
        self.held = True

    def __repr__(self) -> str:
        return f"Reservation(id={self.id}, held={self.held})"


def fade_levels(start: float, steps: int) -> List[float]:
    """Volume at the end of each fade step, linear from ``start`` down to 0."""
    if steps <= 0:
        return [0.0]
    return [float(v) for v in np.linspace(start, 0.0, steps + 1)[1:]]


class PlaybackAdmissionController:
    """
    Bounds the number of concurrently playing resources.

    Args:
        arena: Resource arena; its active set is the one being bounded.
        settings: Live audio settings (max_concurrent_audio, fade_out_duration_ms).
        fade_steps: Number of volume steps in an eviction fade.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        arena: ResourceArena,
        settings: AudioSettings,
        fade_steps: int = Defaults.AUDIO_FADE_STEPS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.arena = arena
        self.settings = settings
        self.fade_steps = fade_steps
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._reserved = 0
        self._total_admitted = 0
        self._total_evicted = 0
        self._slot_listeners: List[Callable[[], None]] = []
        arena.on_finished(self._on_resource_finished)

    @property
    def max_concurrent(self) -> int:
        return self.settings.max_concurrent_audio

    @property
    def active_count(self) -> int:
        return len(self.arena.active())

    @property
    def reserved(self) -> int:
        return self._reserved

    def on_slot_freed(self, listener: Callable[[], None]) -> None:
        self._slot_listeners.append(listener)

    def _notify_slot_freed(self) -> None:
        for listener in list(self._slot_listeners):
            listener()

    def _on_resource_finished(self, resource: PlaybackResource) -> None:
        self._notify_slot_freed()

    def has_capacity(self) -> bool:
        return self.active_count + self._reserved < self.max_concurrent

    def try_reserve(self) -> Optional[Reservation]:
        """
        Reserve a slot without waiting.

        Returns:
            A Reservation, or None if active + reserved is at capacity.
        """
        if not self.has_capacity():
            debug(_LOG, "reserve_denied", active=self.active_count, reserved=self._reserved)
            return None
        self._reserved += 1
        return Reservation()

    def release_reservation(self, reservation: Optional[Reservation]) -> None:
        """Give a reserved slot back (request failed or was deferred)."""
        if reservation is None or not reservation.held:
            return
        reservation.held = False
        self._reserved = max(0, self._reserved - 1)
        self._notify_slot_freed()

    def _consume(self, reservation: Optional[Reservation]) -> None:
        # Converted into active-set membership; no slot is freed
        if reservation is not None and reservation.held:
            reservation.held = False
            self._reserved = max(0, self._reserved - 1)

    async def admit(self, resource: PlaybackResource, reservation: Optional[Reservation] = None) -> None:
        """
        Add ``resource`` to the active set, evicting the oldest member first
        while the set is at capacity.
        """
        async with self._lock:
            self._consume(reservation)
            while self.active_count >= self.max_concurrent:
                victim = self.arena.active()[0]
                await self._evict(victim)

            resource.state = ResourceState.PLAYING
            self._total_admitted += 1
            info(_LOG, "admitted", resource_id=resource.id, active=self.active_count, max=self.max_concurrent)

    def demote(self, resource: PlaybackResource) -> None:
        """Take an admitted resource out of the active set without releasing it."""
        if resource.active:
            resource.state = ResourceState.PENDING
            self._notify_slot_freed()

    async def make_room(self) -> bool:
        """
        Fade out the oldest active resource if the active set is full.

        Called when a request had to be queued, so the backlog can advance
        without waiting for the oldest clip to end on its own.

        Returns:
            True if a resource was evicted.
        """
        async with self._lock:
            active = self.arena.active()
            if len(active) < self.max_concurrent:
                return False
            await self._evict(active[0])
            return True

    async def enforce_limit(self) -> int:
        """Evict oldest resources until the active set fits the current limit."""
        evicted = 0
        async with self._lock:
            while self.active_count > self.max_concurrent:
                await self._evict(self.arena.active()[0])
                evicted += 1
        return evicted

    async def fade_out(self, resource: PlaybackResource) -> None:
        """Ramp volume to 0 over fade_out_duration_ms in fade_steps steps."""
        duration_s = self.settings.fade_out_s
        if duration_s <= 0:
            return

        resource.state = ResourceState.FADING
        step_s = duration_s / self.fade_steps
        for level in fade_levels(resource.volume, self.fade_steps):
            if resource.id not in self.arena:
                # Ended on its own mid-fade
                return
            try:
                await self.arena.device.set_volume(resource.id, level)
            except Exception as e:
                # Finish without the ramp; the caller still stops and releases
                warn(_LOG, "fade_failed", resource_id=resource.id, exception=type(e).__name__, message=str(e))
                return
            resource.volume = level
            await self._sleep(step_s)
        verbose(_LOG, "fade_done", resource_id=resource.id, steps=self.fade_steps)

    async def _evict(self, victim: PlaybackResource) -> None:
        info(_LOG, "evicting", resource_id=victim.id, text_preview=victim.text_preview)
        await self.fade_out(victim)
        await self.arena.finish(victim.id, ResourceState.ENDED)
        self._total_evicted += 1

    def stats(self) -> AdmissionStats:
        return AdmissionStats(
            max_concurrent_audio=self.max_concurrent,
            active=self.active_count,
            reserved=self._reserved,
            total_admitted=self._total_admitted,
            total_evicted=self._total_evicted,
        )
