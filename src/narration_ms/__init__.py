"""
narration-ms: Narration audio resource manager backed by Amazon Polly.

Turns game text into spoken narration while keeping playback bounded,
ordered and resilient to remote failures.

Key Features:
    - Polly synthesis with a hard deadline and classified errors
    - Circuit breaker that stops calling Polly after repeated failures
    - Bounded concurrent playback with oldest-first fade-out eviction
    - FIFO backlog drained at a paced interval
    - Autoplay-policy recovery (retry on the next user gesture)
    - Prometheus metrics and structured logs with request ids

Example Usage:
    >>> from narration_ms.core.config import NarrationConfig
    >>> from narration_ms.devices import FileSinkDevice
    >>> from narration_ms.services import NarrationManager
    >>>
    >>> manager = NarrationManager(NarrationConfig(), FileSinkDevice("out"))
    >>> manager.initialize()
    >>> result = await manager.speak("The bridge collapses behind you.")
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
