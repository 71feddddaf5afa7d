"""
NarrationManager - the caller-facing audio resource manager.

This module wires the narration components into one pipeline and is the
single entry point used by the API, the WebSocket device channel and the CLI.

Architecture:
    speak(text)
      -> validate / truncate
      -> client gate (READY?) -> circuit gate (closed?)
      -> backlog non-empty or no free slot? -> RequestQueue (drained later),
         fading out the oldest clip if the active set is full
      -> synthesize (Polly, raced against the deadline)
      -> StreamAssembler -> PlaybackResource
      -> PlaybackAdmissionController.admit (evicts oldest if full)
      -> device.play, with AutoplayRecoveryManager on rejection

Every outcome updates MetricsCollector; counted failures update the
CircuitBreaker. speak() never raises: failures come back classified in the
SpeakResult.

Example:
    >>> from narration_ms.core.config import NarrationConfig
    >>> from narration_ms.devices import FileSinkDevice
    >>>
    >>> manager = NarrationManager(NarrationConfig(), FileSinkDevice("out"))
    >>> manager.initialize()
    >>> result = await manager.speak("The dragon wakes.")
    >>> result.status
    'playing'
"""
from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import asdict, fields
from typing import Any, Dict, Mapping, Optional, Set

from narration_ms.core.config import NarrationConfig, PollyConfig, Settings
from narration_ms.core.logging import (
    debug,
    error,
    get_logger,
    get_request_id,
    info,
    set_request_id,
    success,
    verbose,
    warn,
)
from narration_ms.core.metrics import MetricsCollector
from narration_ms.narration.admission import PlaybackAdmissionController, Reservation
from narration_ms.narration.autoplay import AutoplayRecoveryManager
from narration_ms.narration.circuit import CircuitBreaker
from narration_ms.narration.errors import (
    CircuitOpenError,
    ClientUnavailableError,
    ErrorKind,
    InvalidInputError,
    NarrationError,
    PlaybackBlockedError,
    PlaybackDeviceError,
)
from narration_ms.narration.playback import (
    DeviceEvent,
    PlaybackDevice,
    PlaybackResource,
    ResourceArena,
    ResourceState,
)
from narration_ms.narration.queue import QueueEntry, RequestQueue
from narration_ms.narration.result import SpeakResult, SpeakStatus
from narration_ms.narration.stream import StreamAssembler
from narration_ms.narration.synthesis import ClientFactory, ClientState, SynthesisClient, build_polly_client
from narration_ms.utils.text import prepare_text, preview

_LOG = get_logger("narration-ms.service")

# Failures refused before any network call
_DROP_KINDS = frozenset({
    ErrorKind.INVALID_INPUT,
    ErrorKind.CLIENT_UNAVAILABLE,
    ErrorKind.CIRCUIT_OPEN,
})


def new_request_id() -> str:
    return str(uuid.uuid4())[:12]


class NarrationManager:
    """
    Bounded, ordered, fault-tolerant narration playback.

    Args:
        config: Validated configuration. Its ``audio`` settings object is the
            live one; configure() mutates it in place.
        device: Where audio plays.
        client_factory: Builds the Polly client (injectable for tests).
        clock: Monotonic clock for the circuit breaker.
    """

    def __init__(
        self,
        config: Optional[NarrationConfig] = None,
        device: Optional[PlaybackDevice] = None,
        client_factory: ClientFactory = build_polly_client,
        clock=time.monotonic,
    ):
        if device is None:
            raise ValueError("a playback device is required")

        self._config = config or NarrationConfig()
        self.audio = self._config.audio
        self.device = device
        self._text_preview_chars = self._config.logging.text_preview_chars
        self._max_text_length = self._config.synthesis.max_text_length

        # ─────────────────────────────────────────────────────────────────────
        # Remote side: client, breaker, stream assembly
        # ─────────────────────────────────────────────────────────────────────
        self.metrics = MetricsCollector()
        self.client = SynthesisClient(self._config.polly, self._config.synthesis, client_factory)
        self.breaker = CircuitBreaker(
            threshold=self._config.circuit.failure_threshold,
            cooldown_ms=self._config.circuit.cooldown_ms,
            clock=clock,
        )
        self.assembler = StreamAssembler(
            max_reads=self._config.stream.max_reads,
            chunk_bytes=self._config.stream.chunk_bytes,
        )
        self._last_error_at: Optional[float] = None

        # ─────────────────────────────────────────────────────────────────────
        # Playback side: arena, admission, backlog, autoplay
        # ─────────────────────────────────────────────────────────────────────
        self.arena = ResourceArena(device)
        self.admission = PlaybackAdmissionController(self.arena, self.audio)
        self.queue = RequestQueue(self.admission, self.audio, self.metrics, processor=self._process_queued)
        self.autoplay = AutoplayRecoveryManager(
            self.arena,
            self.admission,
            gesture_timeout_s=self._config.autoplay.gesture_timeout_s,
            on_started=self._on_playback_started,
        )
        self._inflight: Set[asyncio.Task] = set()
        self._evictions: Set[asyncio.Task] = set()
        self._request_started: Dict[str, float] = {}

        self.admission.on_slot_freed(self._on_slot_freed)
        self.arena.on_finished(lambda r: self._request_started.pop(r.id, None))
        device.set_event_sink(self.handle_device_event)

    @classmethod
    def from_settings(cls, settings: Settings, device: PlaybackDevice, **kwargs: Any) -> "NarrationManager":
        return cls(settings.get_config(), device, **kwargs)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> NarrationConfig:
        return self._config

    @property
    def is_ready(self) -> bool:
        return self.client.is_ready

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self, polly: PollyConfig | Mapping[str, Any] | None = None) -> bool:
        """
        (Re)build the synthesis client. Never raises.

        ``polly`` may be a full PollyConfig or a mapping of fields to override
        on the current one (e.g. credentials posted by the game page).
        """
        if isinstance(polly, Mapping):
            known = {f.name for f in fields(PollyConfig)}
            merged = asdict(self.client.polly)
            merged.update({k: str(v) for k, v in polly.items() if k in known and v is not None})
            polly = PollyConfig(**merged)
        return self.client.initialize(polly)

    async def dispose(self) -> None:
        await self.stop_all()
        self.client.dispose()

    # =========================================================================
    # Speak
    # =========================================================================

    async def speak(self, text: Any, request_id: Optional[str] = None) -> SpeakResult:
        """
        Narrate ``text``.

        Returns:
            SpeakResult with status playing, queued (with ``pending``),
            deferred, dropped, failed or cancelled.
        """
        rid = request_id or new_request_id()
        set_request_id(rid)
        started = time.monotonic()
        self.metrics.record_request()

        try:
            prepared = prepare_text(text, self._max_text_length)
        except InvalidInputError as e:
            return self._failure(rid, e)

        info(
            _LOG,
            "speak",
            chars=len(prepared.text),
            truncated=prepared.truncated,
            text_preview=preview(prepared.text, self._text_preview_chars),
        )

        gate_error = self._gate()
        if gate_error is not None:
            return self._failure(rid, gate_error, prepared.truncated)

        reservation = None
        if not len(self.queue):
            reservation = self.admission.try_reserve()
        if reservation is None:
            entry = self.queue.enqueue(prepared.text, rid, truncated=prepared.truncated)
            if self.admission.active_count >= self.admission.max_concurrent:
                task = asyncio.get_running_loop().create_task(self._make_room())
                self._evictions.add(task)
                task.add_done_callback(self._evictions.discard)
            return SpeakResult(
                status=SpeakStatus.QUEUED,
                request_id=rid,
                truncated=prepared.truncated,
                pending=entry.future,
            )

        return await self._run_tracked(prepared.text, rid, reservation, started, prepared.truncated)

    async def _make_room(self) -> None:
        try:
            await self.admission.make_room()
        except Exception as e:
            # Runs as a background task; nothing awaits its result
            warn(_LOG, "eviction_failed", exception=type(e).__name__, message=str(e))

    def _gate(self) -> Optional[NarrationError]:
        if not self.client.is_ready:
            return ClientUnavailableError(
                "synthesis client is not available",
                details={"state": self.client.state.value},
            )
        if not self.breaker.allow_request():
            self.metrics.set_circuit_open(True)
            return CircuitOpenError(
                "too many recent synthesis failures",
                details={"failure_count": self.breaker.failure_count},
            )
        self.metrics.set_circuit_open(False)
        return None

    async def _process_queued(self, entry: QueueEntry, reservation: Reservation) -> SpeakResult:
        gate_error = self._gate()
        if gate_error is not None:
            self.admission.release_reservation(reservation)
            return self._failure(entry.request_id, gate_error, entry.truncated)
        return await self._run_tracked(entry.text, entry.request_id, reservation, entry.enqueued_at, entry.truncated)

    async def _run_tracked(
        self,
        text: str,
        rid: str,
        reservation: Reservation,
        started: float,
        truncated: bool,
    ) -> SpeakResult:
        # Tracked as a task so stop_all() can cancel it
        task = asyncio.get_running_loop().create_task(self._process(text, rid, reservation, started, truncated))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                info(_LOG, "speak_cancelled")
                return SpeakResult(status=SpeakStatus.CANCELLED, request_id=rid, truncated=truncated)
            raise

    async def _process(
        self,
        text: str,
        rid: str,
        reservation: Reservation,
        started: float,
        truncated: bool,
    ) -> SpeakResult:
        try:
            try:
                body = await self.client.synthesize(text)
            except NarrationError as e:
                return self._synthesis_failed(rid, e, truncated)
            self.breaker.record_success()

            try:
                buffer = await self.assembler.assemble(body)
            except NarrationError as e:
                return self._failure(rid, e, truncated)

            resource = self.arena.create(
                buffer,
                self.audio.default_volume,
                text_preview=preview(text, self._text_preview_chars),
                request_id=rid,
            )
            self._request_started[resource.id] = started
            try:
                await self.arena.load(resource)
            except PlaybackDeviceError as e:
                await self.arena.finish(resource.id, ResourceState.ERRORED, stop=False)
                return self._failure(rid, e, truncated, resource.id)

            if not self.device.is_visible():
                self.admission.release_reservation(reservation)
                self.autoplay.defer(resource, reason="hidden")
                return SpeakResult(SpeakStatus.DEFERRED, rid, resource_id=resource.id, truncated=truncated)

            await self.admission.admit(resource, reservation)
            return await self._start_playback(resource, rid, truncated)
        finally:
            # No-op once the reservation became an active-set slot
            self.admission.release_reservation(reservation)

    async def _start_playback(self, resource: PlaybackResource, rid: str, truncated: bool) -> SpeakResult:
        try:
            await self.device.play(resource.id)
        except PlaybackBlockedError as e:
            self.autoplay.defer(resource, reason=str(e.details.get("reason", "not_allowed")))
            return SpeakResult(SpeakStatus.DEFERRED, rid, resource_id=resource.id, truncated=truncated)
        except PlaybackDeviceError as e:
            await self.arena.finish(resource.id, ResourceState.ERRORED)
            return self._failure(rid, e, truncated, resource.id)

        elapsed_ms = self._on_playback_started(resource)
        return SpeakResult(
            SpeakStatus.PLAYING,
            rid,
            resource_id=resource.id,
            truncated=truncated,
            response_time_ms=elapsed_ms,
        )

    def _on_playback_started(self, resource: PlaybackResource) -> float:
        now = time.monotonic()
        resource.started_at = now
        started = self._request_started.pop(resource.id, resource.created_at)
        elapsed_ms = (now - started) * 1000.0
        self.metrics.record_success(elapsed_ms)
        self.metrics.set_active_audio(self.admission.active_count)
        success(_LOG, "playback_started", resource_id=resource.id, response_time_ms=round(elapsed_ms, 1))
        return elapsed_ms

    def _synthesis_failed(self, rid: str, err: NarrationError, truncated: bool) -> SpeakResult:
        counted = self.breaker.record_failure(err.kind)
        if counted:
            self._last_error_at = time.time()
        self.metrics.set_circuit_open(self.breaker.is_open)
        if err.kind == ErrorKind.CREDENTIALS:
            self.client.disable(err.message)
        return self._failure(rid, err, truncated)

    def _failure(
        self,
        rid: str,
        err: NarrationError,
        truncated: bool = False,
        resource_id: Optional[str] = None,
    ) -> SpeakResult:
        status = SpeakStatus.DROPPED if err.kind in _DROP_KINDS else SpeakStatus.FAILED
        self.metrics.record_failure(err.kind)
        if resource_id is not None:
            self._request_started.pop(resource_id, None)

        fields_: Dict[str, Any] = {"kind": err.kind, "message": err.message}
        if err.kind == ErrorKind.UNKNOWN:
            fields_.update(err.details)
        if status == SpeakStatus.DROPPED:
            warn(_LOG, f"speak_{err.kind.lower()}", **fields_)
        else:
            error(_LOG, "speak_failed", **fields_)

        return SpeakResult(
            status=status,
            request_id=rid,
            error=err.kind,
            message=err.message,
            resource_id=resource_id,
            truncated=truncated,
        )

    def _on_slot_freed(self) -> None:
        self.metrics.set_active_audio(self.admission.active_count)
        self.queue.schedule_drain()

    # =========================================================================
    # Control
    # =========================================================================

    async def stop_all(self) -> Dict[str, int]:
        """
        Stop everything: backlog, in-flight synthesis, deferrals, playback.

        Safe to call repeatedly.
        """
        evictions = [t for t in self._evictions if not t.done()]
        for task in evictions:
            task.cancel()
        if evictions:
            await asyncio.gather(*evictions, return_exceptions=True)

        discarded = await self.queue.cancel_all()

        tasks = [t for t in self._inflight if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        deferred = await self.autoplay.cancel_all()
        stopped = await self.arena.finish_all(ResourceState.ENDED)
        self._request_started.clear()
        self.metrics.set_active_audio(0)

        summary = {
            "stopped": stopped,
            "discarded": discarded,
            "cancelled": len(tasks),
            "deferred": deferred,
        }
        if any(summary.values()):
            info(_LOG, "stop_all", **summary)
        else:
            debug(_LOG, "stop_all_noop")
        return summary

    async def configure(self, **partial: Any) -> Dict[str, Any]:
        """
        Update audio settings (clamped). Returns the settings that changed.

        Shrinking max_concurrent_audio evicts the oldest active resources;
        growing it lets the backlog drain.

        Raises:
            ConfigValidationError: A value is non-numeric or non-finite;
                nothing is changed.
        """
        changed = self.audio.update(**partial)
        if changed:
            info(_LOG, "settings_updated", **changed)
        if "max_concurrent_audio" in changed:
            await self.admission.enforce_limit()
            self.queue.schedule_drain()
        return changed

    async def set_volume(self, volume: float) -> float:
        """
        Set the default volume and apply it to everything playing now.

        Raises:
            ConfigValidationError: ``volume`` is non-numeric or non-finite.
        """
        self.audio.default_volume = volume
        level = self.audio.default_volume
        for resource in self.arena.active():
            if resource.state == ResourceState.PLAYING:
                try:
                    await self.device.set_volume(resource.id, level)
                except PlaybackDeviceError as e:
                    warn(_LOG, "volume_apply_failed", resource_id=resource.id, kind=e.kind, message=e.message)
                    continue
                resource.volume = level
        verbose(_LOG, "volume_set", volume=level)
        return level

    def reset_errors(self) -> None:
        self.breaker.reset()
        self._last_error_at = None
        self.metrics.set_circuit_open(False)
        info(_LOG, "errors_reset")

    async def notify_gesture(self, kind: str = "click") -> int:
        return await self.autoplay.notify_gesture(kind)

    def set_visibility(self, visible: bool) -> None:
        self.device.set_visible(visible)
        verbose(_LOG, "visibility", visible=bool(visible))

    # =========================================================================
    # Device events
    # =========================================================================

    async def handle_device_event(self, event: DeviceEvent) -> None:
        """Apply one event reported by the playback device."""
        rid = event.resource_id
        if event.kind == "ended" and rid:
            await self.arena.finish(rid, ResourceState.ENDED, stop=False)
        elif event.kind == "error" and rid:
            warn(_LOG, "device_error", resource_id=rid, message=event.data.get("message"))
            await self.arena.finish(rid, ResourceState.ERRORED, stop=False)
        elif event.kind == "paused" and rid:
            # A paused clip is never resumed; it gives its slot back
            verbose(_LOG, "device_paused", resource_id=rid, position=event.data.get("position"))
            await self.arena.finish(rid, ResourceState.ENDED, stop=False)
        elif event.kind == "gesture":
            await self.notify_gesture(str(event.data.get("kind", "click")))
        elif event.kind == "visibility":
            self.set_visibility(bool(event.data.get("visible", True)))
        else:
            debug(_LOG, "device_event", kind=event.kind, resource_id=rid)

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        stats = self.breaker.stats()
        return {
            "client_ready": self.client.is_ready,
            "client_state": self.client.state.value,
            "client_disabled": self.client.state == ClientState.DISABLED,
            "credentials_configured": self.client.credentials_configured,
            "region": self.client.region,
            "voice_id": self.client.polly.voice_id,
            "error_count": stats.failure_count,
            "last_error_at": self._last_error_at,
            "disabled_until_reset": stats.state == "open",
            "circuit": asdict(stats),
            "settings": self.audio.to_dict(),
            "metrics": self.metrics.snapshot(),
            "audio": {
                "active_audio_count": self.admission.active_count,
                "reserved_slots": self.admission.reserved,
                "queued_audio_count": len(self.queue),
                "is_processing_queue": self.queue.is_processing,
                "deferred_count": self.autoplay.waiting_count,
                "active": [r.to_dict() for r in self.arena.active()],
            },
        }

    def get_health_info(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "client_ready": self.client.is_ready,
            "circuit": "open" if self.breaker.is_open else "closed",
            "active_audio_count": self.admission.active_count,
            "queued_audio_count": len(self.queue),
            "request_id": get_request_id(),
        }


# =============================================================================
# Global Manager Singleton
# =============================================================================

_manager: Optional[NarrationManager] = None
_manager_lock = threading.Lock()


def get_manager(settings: Settings, device: Optional[PlaybackDevice] = None) -> NarrationManager:
    """
    Get or create the global NarrationManager.

    The first call decides the device; without one, the WebSocket-backed
    browser device is used. The client is initialized from settings.
    """
    global _manager
    if _manager is None:
        with _manager_lock:
            if _manager is None:
                if device is None:
                    from narration_ms.devices.browser import BrowserPlaybackDevice
                    device = BrowserPlaybackDevice(audio_format=settings.get_config().polly.output_format)
                manager = NarrationManager.from_settings(settings, device)
                manager.initialize()
                _manager = manager
    return _manager


def reset_manager() -> None:
    """Drop the global manager (tests)."""
    global _manager
    with _manager_lock:
        _manager = None
