"""
Shared fakes and fixtures.

    - FakeStreamingBody: stands in for botocore's StreamingBody
    - FakePollyClient: records synthesize_speech() calls, can fail or stall
    - FakeDevice: in-memory playback device with autoplay rejection
    - make_manager: NarrationManager wired to the two fakes
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import pytest

from narration_ms.core.logging import LogLevel, set_level
from narration_ms.narration.errors import PlaybackBlockedError, PlaybackDeviceError
from narration_ms.narration.playback import DeviceEvent, PlaybackDevice

AUDIO = b"ID3" + b"\xff\xfb" * 6000


class FakeStreamingBody:
    def __init__(self, data: bytes = AUDIO, endless: bool = False):
        self._data = data
        self._pos = 0
        self.endless = endless
        self.reads = 0
        self.closed = False

    def read(self, amt: Optional[int] = None) -> bytes:
        self.reads += 1
        if self.endless:
            return b"\x00" * (amt or 1)
        if amt is None:
            amt = len(self._data) - self._pos
        chunk = self._data[self._pos:self._pos + amt]
        self._pos += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed = True


class FakePollyClient:
    """Synchronous, like boto3; called on a worker thread."""

    def __init__(self, audio: bytes = AUDIO, error: Optional[BaseException] = None, delay: float = 0.0):
        self.audio = audio
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.bodies: List[FakeStreamingBody] = []
        self._lock = threading.Lock()

    @property
    def texts(self) -> List[str]:
        return [c["Text"] for c in self.calls]

    def synthesize_speech(self, **params: Any) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(params)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        body = FakeStreamingBody(self.audio)
        self.bodies.append(body)
        return {"AudioStream": body, "ContentType": "audio/mpeg", "RequestCharacters": len(params["Text"])}


class FakeDevice(PlaybackDevice):
    """
    Records every device call.

    ``reject_next`` makes that many play() calls fail with an autoplay
    rejection; ``fail_play`` makes play() fail outright; ``gate`` (an
    asyncio.Event) makes play() wait until it is set. ``fail_stop`` makes
    stop() raise the raw error of a closing socket; ``fail_volume`` makes
    set_volume() raise the device error the browser device wraps it in.
    """

    def __init__(self) -> None:
        super().__init__()
        self.loaded: Dict[str, bytes] = {}
        self.played: List[str] = []
        self.volumes: Dict[str, List[float]] = defaultdict(list)
        self.stopped: List[str] = []
        self.released: List[str] = []
        self.calls: List[Tuple[str, str]] = []
        self.reject_next = 0
        self.fail_play = False
        self.gate: Optional[asyncio.Event] = None
        self.fail_stop = False
        self.fail_volume = False

    async def load(self, resource_id: str, buffer: bytes, volume: float) -> None:
        self.loaded[resource_id] = buffer

    async def play(self, resource_id: str) -> None:
        self.played.append(resource_id)
        self.calls.append(("play", resource_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.reject_next:
            self.reject_next -= 1
            raise PlaybackBlockedError("autoplay blocked", details={"reason": "not_allowed"})
        if self.fail_play:
            raise PlaybackDeviceError("decode failed")

    async def set_volume(self, resource_id: str, volume: float) -> None:
        if self.fail_volume:
            raise PlaybackDeviceError("send failed")
        self.volumes[resource_id].append(volume)

    async def stop(self, resource_id: str) -> None:
        if self.fail_stop:
            raise RuntimeError("Cannot call send once a close message has been sent")
        self.stopped.append(resource_id)

    async def release(self, resource_id: str) -> None:
        self.released.append(resource_id)
        self.calls.append(("release", resource_id))

    async def end(self, resource_id: str) -> None:
        await self.emit(DeviceEvent("ended", resource_id))


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def base_raw(**sections: Any) -> Dict[str, Any]:
    raw: Dict[str, Any] = {
        "polly": {
            "region": "us-east-1",
            "voice_id": "Matthew",
            "output_format": "mp3",
            "engine": "neural",
            "access_key_id": "AKIATESTKEY",
            "secret_access_key": "test-secret",
        },
        "audio": {
            "max_concurrent_audio": 3,
            "default_volume": 0.7,
            "fade_out_duration_ms": 0,
            "queue_processing_delay_ms": 10,
        },
        "logging": {"level": 2, "text_preview_chars": 20},
    }
    for name, values in sections.items():
        raw[name] = {**raw.get(name, {}), **values}
    return raw


@pytest.fixture(autouse=True)
def normal_log_level():
    """Every test starts at NORMAL verbosity."""
    set_level(LogLevel.NORMAL)
    yield


@pytest.fixture
def polly():
    return FakePollyClient()


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_manager(polly, device, clock):
    """
    Build a NarrationManager around the fakes.

    Keyword arguments are merged into the matching settings sections, e.g.
    ``make_manager(audio={"max_concurrent_audio": 1})``.
    """
    from narration_ms.core.config import Settings
    from narration_ms.services.narration_service import NarrationManager

    def _make(initialize: bool = True, **sections: Any) -> NarrationManager:
        settings = Settings(raw=base_raw(**sections))
        manager = NarrationManager(
            settings.get_config(),
            device,
            client_factory=lambda polly_cfg, synthesis_cfg: polly,
            clock=clock,
        )
        if initialize:
            manager.initialize()
        return manager

    return _make


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` on the running loop until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
