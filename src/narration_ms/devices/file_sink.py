"""
Playback device that writes each buffer to a file.

Used by the CLI and handy for inspecting what Polly returned. "Playing" a
resource writes ``<out_dir>/<resource_id>.<ext>``, reports it started, and
(unless ``auto_end`` is off) reports it ended right after, which frees its
admission slot like a finished clip would.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Set

from narration_ms.core.logging import get_logger, verbose
from narration_ms.narration.errors import PlaybackDeviceError
from narration_ms.narration.playback import DeviceEvent, PlaybackDevice

_LOG = get_logger("narration-ms.device.file")


class FileSinkDevice(PlaybackDevice):
    def __init__(self, out_dir: str | Path, extension: str = "mp3", auto_end: bool = True):
        super().__init__()
        self.out_dir = Path(out_dir)
        self.extension = extension.lstrip(".")
        self.auto_end = auto_end
        self.written: List[Path] = []
        self.volumes: Dict[str, float] = {}
        self._buffers: Dict[str, bytes] = {}
        self._tasks: Set[asyncio.Task] = set()

    async def load(self, resource_id: str, buffer: bytes, volume: float) -> None:
        self._buffers[resource_id] = buffer
        self.volumes[resource_id] = volume

    async def play(self, resource_id: str) -> None:
        buffer = self._buffers.get(resource_id)
        if buffer is None:
            raise PlaybackDeviceError(f"unknown resource {resource_id}")

        path = self.out_dir / f"{resource_id}.{self.extension}"
        try:
            await asyncio.to_thread(self._write, path, buffer)
        except OSError as e:
            raise PlaybackDeviceError(f"cannot write {path}: {e}") from e
        self.written.append(path)
        verbose(_LOG, "file_written", path=str(path), bytes=len(buffer))

        await self.emit(DeviceEvent("started", resource_id))
        if self.auto_end:
            task = asyncio.get_running_loop().create_task(self.emit(DeviceEvent("ended", resource_id)))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _write(self, path: Path, buffer: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(buffer)

    async def set_volume(self, resource_id: str, volume: float) -> None:
        if resource_id in self._buffers:
            self.volumes[resource_id] = volume

    async def stop(self, resource_id: str) -> None:
        verbose(_LOG, "file_stop", resource_id=resource_id)

    async def release(self, resource_id: str) -> None:
        self._buffers.pop(resource_id, None)

    async def drain(self) -> None:
        """Wait for pending ended notifications."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
