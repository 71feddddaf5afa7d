"""
Narration pipeline components.

    - synthesis.py: Polly client wrapper with deadline and error classification
    - errors.py: Error kinds and exception classification
    - circuit.py: Consecutive-failure circuit breaker
    - stream.py: Bounded response body assembly
    - playback.py: Playback resources, device interface and resource arena
    - admission.py: Concurrency limit, reservations and fade-out eviction
    - queue.py: FIFO backlog with paced draining
    - autoplay.py: Deferred playback retried on user gestures
    - result.py: SpeakResult and statuses
"""
