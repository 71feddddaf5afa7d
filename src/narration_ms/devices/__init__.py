"""
Playback devices.

    - browser.py: the game page, driven over a WebSocket
    - file_sink.py: writes each clip to disk (CLI)
"""
from .browser import BrowserPlaybackDevice
from .file_sink import FileSinkDevice

__all__ = ["BrowserPlaybackDevice", "FileSinkDevice"]
