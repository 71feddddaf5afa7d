"""
Assembly of streamed synthesis responses into one audio buffer.

Polly returns the audio as a botocore StreamingBody. The body is read in
fixed-size chunks on a worker thread (``read`` blocks on the socket) until
it reports end of stream. The number of reads is bounded so a body that never
terminates cannot hold a request forever.
"""
from __future__ import annotations

import asyncio
from typing import Any

from botocore.exceptions import BotoCoreError

from narration_ms.core.logging import debug, get_logger, verbose, warn
from narration_ms.narration.errors import StreamError
from narration_ms.utils.timeit import timeit

_LOG = get_logger("narration-ms.stream")


class StreamAssembler:
    """
    Reads a response body into bytes.

    Args:
        max_reads: Upper bound on read() calls, including the final empty one.
        chunk_bytes: Bytes requested per read().
    """

    def __init__(self, max_reads: int = 1000, chunk_bytes: int = 8192):
        self.max_reads = max_reads
        self.chunk_bytes = chunk_bytes

    async def assemble(self, body: Any) -> bytes:
        """
        Read ``body`` to the end and return the concatenated bytes.

        The body is always closed, including when reading fails.

        Raises:
            StreamError: The read bound was hit before end of stream, or
                the stream produced no bytes at all.
        """
        chunks = []
        total = 0
        reads = 0
        complete = False

        try:
            with timeit("stream") as t:
                while reads < self.max_reads:
                    chunk = await asyncio.to_thread(body.read, self.chunk_bytes)
                    reads += 1
                    if not chunk:
                        complete = True
                        break
                    chunks.append(chunk)
                    total += len(chunk)
                    debug(_LOG, "stream_chunk", read=reads, bytes=len(chunk))
        except (OSError, ValueError, BotoCoreError) as e:
            warn(_LOG, "stream_read_failed", reads=reads, exception=type(e).__name__)
            raise StreamError(
                f"stream read failed: {e}",
                details={"reads": reads, "bytes": total, "exception": type(e).__name__},
            ) from e
        finally:
            body.close()

        if not complete:
            warn(_LOG, "stream_read_limit", reads=reads, bytes=total)
            raise StreamError(
                f"stream still incomplete after {reads} reads",
                details={"reads": reads, "bytes": total},
            )
        if total == 0:
            warn(_LOG, "stream_empty", reads=reads)
            raise StreamError("stream produced no audio bytes", details={"reads": reads})

        verbose(_LOG, "stream_done", reads=reads, bytes=total, seconds=round(t.timing.seconds, 4))
        return b"".join(chunks)
