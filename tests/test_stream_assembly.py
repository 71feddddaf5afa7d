"""
Tests for StreamAssembler.

Tests cover:
- Chunked reads concatenated in order
- Empty stream rejected
- Unterminated stream bounded by max_reads
- Body always closed
"""
import asyncio

import pytest

from narration_ms.narration.errors import ErrorKind, StreamError
from narration_ms.narration.stream import StreamAssembler

from conftest import FakeStreamingBody


class ExplodingBody(FakeStreamingBody):
    def read(self, amt=None):
        raise OSError("connection reset mid-stream")


class TestAssemble:
    """Tests for assemble()."""

    def test_reads_all_chunks(self):
        data = bytes(range(256)) * 40
        body = FakeStreamingBody(data)
        assembler = StreamAssembler(chunk_bytes=1000)

        out = asyncio.run(assembler.assemble(body))

        assert out == data
        # 11 data chunks plus the final empty read
        assert body.reads == 12
        assert body.closed

    def test_empty_stream_rejected(self):
        body = FakeStreamingBody(b"")

        with pytest.raises(StreamError) as exc_info:
            asyncio.run(StreamAssembler().assemble(body))

        assert exc_info.value.kind == ErrorKind.STREAM_ERROR
        assert body.closed

    def test_endless_stream_bounded(self):
        body = FakeStreamingBody(endless=True)

        with pytest.raises(StreamError, match="incomplete"):
            asyncio.run(StreamAssembler(max_reads=5, chunk_bytes=16).assemble(body))

        assert body.reads == 5
        assert body.closed

    def test_exact_bound_still_completes(self):
        """The terminating empty read counts toward max_reads."""
        body = FakeStreamingBody(b"x" * 32)
        out = asyncio.run(StreamAssembler(max_reads=3, chunk_bytes=16).assemble(body))
        assert out == b"x" * 32

    def test_body_closed_when_read_fails(self):
        body = ExplodingBody()
        with pytest.raises(OSError):
            asyncio.run(StreamAssembler().assemble(body))
        assert body.closed
