"""
Playback resources, the device interface, and the resource arena.

A PlaybackResource is one synthesized utterance on its way through the
device: PENDING (loaded, not started) -> PLAYING -> FADING -> ENDED, or
ERRORED from any live state. The ResourceArena owns every live resource by
id and is the only place a resource leaves the system: ``finish()`` makes the
terminal transition, stops the device if needed and releases the device
handle exactly once.

The device itself is abstract. The game page implements it over a WebSocket
(devices/browser.py); the CLI writes buffers to disk (devices/file_sink.py).
"""
from __future__ import annotations

import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from narration_ms.core.logging import debug, get_logger, info, verbose, warn

_LOG = get_logger("narration-ms.playback")


class ResourceState(str, Enum):
    PENDING = "pending"
    PLAYING = "playing"
    FADING = "fading"
    ENDED = "ended"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (ResourceState.ENDED, ResourceState.ERRORED)


ACTIVE_STATES = (ResourceState.PLAYING, ResourceState.FADING)


@dataclass
class PlaybackResource:
    """
    One decoded-ready audio buffer bound to a device handle.

    ``created_at`` is a monotonic timestamp; it orders eviction (oldest first).
    """
    id: str
    buffer: bytes = field(repr=False)
    volume: float
    text_preview: str = ""
    request_id: str = "-"
    state: ResourceState = ResourceState.PENDING
    created_at: float = field(default_factory=time.monotonic)
    started_at: Optional[float] = None
    released: bool = False

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "volume": round(self.volume, 3),
            "bytes": len(self.buffer),
            "text_preview": self.text_preview,
            "request_id": self.request_id,
        }


@dataclass
class DeviceEvent:
    """
    Notification from a playback device.

    kind is one of: loaded, started, ended, error, paused, gesture, visibility.
    """
    kind: str
    resource_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[DeviceEvent], Awaitable[None]]


class PlaybackDevice(ABC):
    """
    Where audio actually plays.

    ``play`` raises PlaybackBlockedError when autoplay policy rejects it and
    PlaybackDeviceError for any other failure. Devices report asynchronous
    progress (ended, error, paused, user gestures) through the event sink.
    """

    def __init__(self) -> None:
        self._sink: Optional[EventSink] = None
        self._visible = True

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        self._sink = sink

    async def emit(self, event: DeviceEvent) -> None:
        if self._sink is not None:
            await self._sink(event)

    @abstractmethod
    async def load(self, resource_id: str, buffer: bytes, volume: float) -> None: ...

    @abstractmethod
    async def play(self, resource_id: str) -> None: ...

    @abstractmethod
    async def set_volume(self, resource_id: str, volume: float) -> None: ...

    @abstractmethod
    async def stop(self, resource_id: str) -> None: ...

    @abstractmethod
    async def release(self, resource_id: str) -> None: ...

    def is_visible(self) -> bool:
        """False while the page is hidden; playback is not attempted then."""
        return self._visible

    def set_visible(self, visible: bool) -> None:
        self._visible = bool(visible)


class ResourceArena:
    """
    Live resources indexed by id, with a single removal path.

    Listeners registered with ``on_finished`` run after every removal; the
    admission controller uses this to turn a finished resource into a free
    slot.
    """

    _ids = itertools.count(1)

    def __init__(self, device: PlaybackDevice):
        self.device = device
        self._resources: Dict[str, PlaybackResource] = {}
        self._finished_listeners: List[Callable[[PlaybackResource], None]] = []

    def on_finished(self, listener: Callable[[PlaybackResource], None]) -> None:
        self._finished_listeners.append(listener)

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._resources

    def get(self, resource_id: str) -> Optional[PlaybackResource]:
        return self._resources.get(resource_id)

    def create(self, buffer: bytes, volume: float, text_preview: str = "", request_id: str = "-") -> PlaybackResource:
        resource = PlaybackResource(
            id=f"audio-{next(self._ids)}",
            buffer=buffer,
            volume=volume,
            text_preview=text_preview,
            request_id=request_id,
        )
        self._resources[resource.id] = resource
        debug(_LOG, "resource_created", resource_id=resource.id, bytes=len(buffer))
        return resource

    async def load(self, resource: PlaybackResource) -> None:
        await self.device.load(resource.id, resource.buffer, resource.volume)

    def active(self) -> List[PlaybackResource]:
        """Resources in PLAYING or FADING, oldest first."""
        live = [r for r in self._resources.values() if r.active]
        live.sort(key=lambda r: r.created_at)
        return live

    def all(self) -> List[PlaybackResource]:
        return list(self._resources.values())

    async def finish(self, resource_id: str, state: ResourceState = ResourceState.ENDED, stop: bool = True) -> bool:
        """
        Terminal transition for a resource.

        Removes it from the arena, stops it on the device if it was still
        playing, and releases the device handle. Calling again for the same
        id is a no-op. Device failures during stop or release are logged;
        the resource is gone from the arena either way.

        Returns:
            True if this call performed the transition.
        """
        resource = self._resources.pop(resource_id, None)
        if resource is None or resource.released:
            return False

        was_active = resource.active
        resource.state = state
        resource.released = True
        try:
            if stop and was_active:
                await self._device_call("stop", self.device.stop, resource_id)
        finally:
            await self._device_call("release", self.device.release, resource_id)
            info(_LOG, "resource_finished", resource_id=resource_id, state=state.value)
            for listener in list(self._finished_listeners):
                listener(resource)
        return True

    async def _device_call(self, op: str, call: Callable[[str], Awaitable[None]], resource_id: str) -> None:
        try:
            await call(resource_id)
        except Exception as e:
            warn(_LOG, "device_call_failed", op=op, resource_id=resource_id, exception=type(e).__name__, message=str(e))

    async def finish_all(self, state: ResourceState = ResourceState.ENDED) -> int:
        count = 0
        for resource_id in list(self._resources):
            if await self.finish(resource_id, state):
                count += 1
        if count:
            verbose(_LOG, "resources_finished_all", count=count)
        return count
