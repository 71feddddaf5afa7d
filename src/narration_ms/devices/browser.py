"""
Playback device backed by the game page over a WebSocket.

The page connects to ``/v1/device``. Messages are JSON objects with a
``type`` field.

Server -> page:
    {"type": "play", "id", "audio": <base64>, "format", "volume"}
    {"type": "volume", "id", "volume"}
    {"type": "stop", "id"}
    {"type": "release", "id"}

Page -> server:
    {"type": "started", "id"}
    {"type": "rejected", "id", "reason": "not_allowed" | ...}
    {"type": "ended", "id"}
    {"type": "error", "id", "message"}
    {"type": "paused", "id", "position"}
    {"type": "gesture", "kind": "click" | "keydown" | "touchstart"}
    {"type": "visibility", "visible": bool}

play() waits for the page's started/rejected/error reply for that id. Other
page messages are handed to the event sink on background tasks so the
receive loop keeps reading while a handler waits on a reply.
"""
from __future__ import annotations

import asyncio
import base64
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from narration_ms.core.logging import debug, get_logger, info, warn
from narration_ms.narration.errors import PlaybackBlockedError, PlaybackDeviceError
from narration_ms.narration.playback import DeviceEvent, PlaybackDevice

_LOG = get_logger("narration-ms.device.browser")

EVENT_TYPES = ("ended", "error", "paused", "gesture", "visibility", "loaded")


class BrowserPlaybackDevice(PlaybackDevice):
    """
    Args:
        audio_format: Format label sent with each clip (matches Polly's OutputFormat).
        reply_timeout_s: How long play() waits for the page to answer.
    """

    def __init__(self, audio_format: str = "mp3", reply_timeout_s: float = 5.0):
        super().__init__()
        self.audio_format = audio_format
        self.reply_timeout_s = reply_timeout_s
        self._socket: Optional[WebSocket] = None
        self._buffers: Dict[str, bytes] = {}
        self._volumes: Dict[str, float] = {}
        self._replies: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._socket is not None

    def attach(self, websocket: WebSocket) -> None:
        if self._socket is not None:
            info(_LOG, "device_replaced")
        self._socket = websocket
        info(_LOG, "device_connected")

    def detach(self, websocket: WebSocket) -> None:
        if self._socket is not websocket:
            return
        self._socket = None
        for resource_id, fut in list(self._replies.items()):
            if not fut.done():
                fut.set_exception(PlaybackDeviceError("page disconnected", details={"id": resource_id}))
        self._replies.clear()
        info(_LOG, "device_disconnected")

    async def _send(self, message: Dict[str, Any]) -> bool:
        if self._socket is None:
            return False
        try:
            await self._socket.send_json(message)
        except (RuntimeError, WebSocketDisconnect) as e:
            # Socket closing underneath us
            raise PlaybackDeviceError(
                f"send failed: {e}",
                details={"type": message.get("type"), "id": message.get("id"), "exception": type(e).__name__},
            ) from e
        return True

    # =========================================================================
    # PlaybackDevice
    # =========================================================================

    async def load(self, resource_id: str, buffer: bytes, volume: float) -> None:
        self._buffers[resource_id] = buffer
        self._volumes[resource_id] = volume

    async def play(self, resource_id: str) -> None:
        buffer = self._buffers.get(resource_id)
        if buffer is None:
            raise PlaybackDeviceError(f"unknown resource {resource_id}")
        if self._socket is None:
            raise PlaybackDeviceError("no page connected", details={"id": resource_id})

        reply = asyncio.get_running_loop().create_future()
        self._replies[resource_id] = reply
        try:
            await self._send({
                "type": "play",
                "id": resource_id,
                "audio": base64.b64encode(buffer).decode("ascii"),
                "format": self.audio_format,
                "volume": self._volumes.get(resource_id, 1.0),
            })
            try:
                await asyncio.wait_for(reply, timeout=self.reply_timeout_s)
            except asyncio.TimeoutError:
                raise PlaybackDeviceError(
                    "page did not confirm playback",
                    details={"id": resource_id, "timeout_s": self.reply_timeout_s},
                ) from None
        finally:
            self._replies.pop(resource_id, None)

    async def set_volume(self, resource_id: str, volume: float) -> None:
        self._volumes[resource_id] = volume
        await self._send({"type": "volume", "id": resource_id, "volume": round(volume, 4)})

    async def stop(self, resource_id: str) -> None:
        await self._send({"type": "stop", "id": resource_id})

    async def release(self, resource_id: str) -> None:
        self._buffers.pop(resource_id, None)
        self._volumes.pop(resource_id, None)
        await self._send({"type": "release", "id": resource_id})

    # =========================================================================
    # Receive loop
    # =========================================================================

    async def serve(self, websocket: WebSocket) -> None:
        """Read page messages until the socket closes."""
        self.attach(websocket)
        try:
            while True:
                message = await websocket.receive_json()
                self.dispatch(message)
        except WebSocketDisconnect:
            pass
        finally:
            self.detach(websocket)

    def dispatch(self, message: Dict[str, Any]) -> None:
        kind = str(message.get("type", ""))
        resource_id = message.get("id")

        if kind in ("started", "rejected", "error") and resource_id in self._replies:
            reply = self._replies[resource_id]
            if reply.done():
                return
            if kind == "started":
                reply.set_result(True)
            elif kind == "rejected":
                reason = str(message.get("reason", "not_allowed"))
                if reason == "not_allowed":
                    reply.set_exception(PlaybackBlockedError("autoplay blocked", details={"reason": reason}))
                else:
                    reply.set_exception(PlaybackDeviceError(f"playback rejected: {reason}", details={"reason": reason}))
            else:
                reply.set_exception(PlaybackDeviceError(str(message.get("message", "playback error"))))
            return

        if kind == "started":
            debug(_LOG, "late_started", resource_id=resource_id)
            return
        if kind not in EVENT_TYPES:
            warn(_LOG, "unknown_device_message", type=kind)
            return

        data = {k: v for k, v in message.items() if k not in ("type", "id")}
        task = asyncio.get_running_loop().create_task(self.emit(DeviceEvent(kind, resource_id, data)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
