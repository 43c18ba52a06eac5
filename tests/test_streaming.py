"""
Tests for the SSE transport helpers.
"""

import json

import pytest
from sse_starlette.sse import ServerSentEvent

from phaseloop.models import ProtocolEvent
from phaseloop.streaming import sse_stream, to_sse


class TestToSse:
    def test_done_frame(self):
        frame = to_sse(ProtocolEvent.done("Hello world"))
        assert isinstance(frame, ServerSentEvent)
        assert frame.event == "done"
        assert json.loads(frame.data) == {"type": "done", "fullContent": "Hello world"}

    def test_chunk_frame(self):
        frame = to_sse(ProtocolEvent.chunk("Hi"))
        assert frame.event == "chunk"
        assert json.loads(frame.data) == {"type": "chunk", "content": "Hi"}


class TestSseStream:
    @pytest.mark.asyncio
    async def test_relays_events_in_order(self):
        async def events():
            yield ProtocolEvent.chunk("a")
            yield ProtocolEvent.done("a")

        frames = [f async for f in sse_stream(events())]
        assert [f.event for f in frames] == ["chunk", "done"]

    @pytest.mark.asyncio
    async def test_exception_becomes_error_frame(self):
        async def events():
            yield ProtocolEvent.chunk("a")
            raise RuntimeError("protocol crashed")

        frames = [f async for f in sse_stream(events())]
        assert [f.event for f in frames] == ["chunk", "error"]
        assert json.loads(frames[-1].data) == {"type": "error", "error": "protocol crashed"}

    @pytest.mark.asyncio
    async def test_closing_closes_source(self):
        closed = []

        async def events():
            try:
                yield ProtocolEvent.chunk("a")
                yield ProtocolEvent.chunk("b")
            finally:
                closed.append(True)

        stream = sse_stream(events())
        await stream.__anext__()
        await stream.aclose()
        assert closed == [True]
