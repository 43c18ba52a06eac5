"""
Tests for LLM stream translation and client invocation.
"""

import pytest

from phaseloop.exceptions import LLMClientError
from phaseloop.models import ProtocolEventType, StreamEvent
from phaseloop.translator import (
    ProtocolEventTranslator,
    open_stream,
    safe_messages,
)


async def agen(items):
    for item in items:
        yield item


async def collect(aiter):
    return [item async for item in aiter]


# ---------------------------------------------------------------------------
# ProtocolEventTranslator
# ---------------------------------------------------------------------------


class TestTranslate:
    @pytest.mark.asyncio
    async def test_chunks_and_done(self):
        events = await collect(
            ProtocolEventTranslator().translate(
                agen([{"chunk": "Hello"}, {"chunk": " world"}, {"done": True, "fullContent": "Hello world"}])
            )
        )
        assert [e.to_dict() for e in events] == [
            {"type": "chunk", "content": "Hello"},
            {"type": "chunk", "content": " world"},
            {"type": "done", "fullContent": "Hello world"},
        ]

    @pytest.mark.asyncio
    async def test_tool_calls_are_forwarded_in_order(self):
        raw = [
            {"chunk": "Let me look."},
            {"toolCalls": [{"index": 0, "id": "c1", "function": {"name": "A_run", "arguments": "{}"}}]},
            {"done": True, "fullContent": "Let me look."},
        ]
        events = await collect(ProtocolEventTranslator().translate(agen(raw)))
        assert [e.type for e in events] == [
            ProtocolEventType.CHUNK,
            ProtocolEventType.TOOL_CALLS,
            ProtocolEventType.DONE,
        ]
        assert events[1].calls[0]["id"] == "c1"

    @pytest.mark.asyncio
    async def test_reasoning_is_accumulated_not_forwarded(self):
        raw = [
            {"reasoningChunk": "think "},
            {"reasoningChunk": "hard"},
            {"chunk": "42"},
            {"done": True, "fullContent": "42"},
        ]
        events = await collect(ProtocolEventTranslator().translate(agen(raw)))
        assert [e.type for e in events] == [ProtocolEventType.CHUNK, ProtocolEventType.DONE]
        assert events[-1].full_reasoning == "think hard"
        assert events[-1].to_dict() == {
            "type": "done",
            "fullContent": "42",
            "fullReasoning": "think hard",
        }

    @pytest.mark.asyncio
    async def test_missing_done_is_synthesized_from_chunks(self):
        events = await collect(ProtocolEventTranslator().translate(agen([{"chunk": "a"}, {"chunk": "b"}])))
        assert events[-1].type == ProtocolEventType.DONE
        assert events[-1].full_content == "ab"

    @pytest.mark.asyncio
    async def test_events_after_done_are_dropped(self, caplog):
        raw = [{"done": True, "fullContent": "x"}, {"chunk": "late"}]
        with caplog.at_level("WARNING", logger="phaseloop.translator"):
            events = await collect(ProtocolEventTranslator().translate(agen(raw)))
        assert [e.type for e in events] == [ProtocolEventType.DONE]
        assert "after done" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_events_are_logged(self, caplog):
        with caplog.at_level("WARNING", logger="phaseloop.translator"):
            events = await collect(ProtocolEventTranslator().translate(agen([{"mystery": 1}, "junk"])))
        assert [e.type for e in events] == [ProtocolEventType.DONE]
        assert caplog.text.count("Unrecognized LLM stream event") == 2

    @pytest.mark.asyncio
    async def test_empty_chunk_is_a_chunk(self, caplog):
        raw = [{"chunk": ""}, {"chunk": "a"}, {"done": True}]
        with caplog.at_level("WARNING", logger="phaseloop.translator"):
            events = await collect(ProtocolEventTranslator().translate(agen(raw)))
        assert [e.type for e in events] == [
            ProtocolEventType.CHUNK,
            ProtocolEventType.CHUNK,
            ProtocolEventType.DONE,
        ]
        assert events[0].content == ""
        assert events[-1].full_content == "a"
        assert "Unrecognized" not in caplog.text

    @pytest.mark.asyncio
    async def test_stream_event_objects_pass_through(self):
        events = await collect(
            ProtocolEventTranslator().translate(agen([StreamEvent(chunk="hi"), StreamEvent(done=True)]))
        )
        assert events[-1].full_content == "hi"


# ---------------------------------------------------------------------------
# open_stream
# ---------------------------------------------------------------------------


class RecordingClient:
    def __init__(self, events, fail_after=None):
        self.events = events
        self.fail_after = fail_after
        self.calls = []
        self.closed = False

    async def stream_chat(self, messages, options):
        self.calls.append((messages, options))
        try:
            for i, event in enumerate(self.events):
                if self.fail_after is not None and i >= self.fail_after:
                    raise ConnectionError("connection reset")
                yield event
        finally:
            self.closed = True


class TestOpenStream:
    @pytest.mark.asyncio
    async def test_object_client(self):
        client = RecordingClient([{"chunk": "a"}, {"done": True, "fullContent": "a"}])
        messages = [{"role": "user", "content": "hi"}, {"role": "system", "content": None}]
        events = await collect(open_stream(client, messages, {"temperature": 0.3}))

        assert [e.chunk for e in events] == ["a", None]
        assert client.calls == [([{"role": "user", "content": "hi"}], {"temperature": 0.3})]

    @pytest.mark.asyncio
    async def test_callable_client(self):
        def client(messages, options):
            return agen([{"chunk": "x"}])

        events = await collect(open_stream(client, [], None))
        assert events[0].chunk == "x"

    @pytest.mark.asyncio
    async def test_coroutine_returning_stream(self):
        async def client(messages, options):
            return agen([{"chunk": "y"}])

        events = await collect(open_stream(client, [], {}))
        assert events[0].chunk == "y"

    @pytest.mark.asyncio
    async def test_failure_opening_is_wrapped(self):
        def client(messages, options):
            raise TimeoutError("upstream timeout")

        with pytest.raises(LLMClientError, match="upstream timeout") as exc_info:
            await collect(open_stream(client, [], {}))
        assert isinstance(exc_info.value.cause, TimeoutError)

    @pytest.mark.asyncio
    async def test_failure_mid_stream_is_wrapped(self):
        client = RecordingClient([{"chunk": "a"}, {"chunk": "b"}], fail_after=1)
        seen = []
        with pytest.raises(LLMClientError, match="connection reset"):
            async for event in open_stream(client, [], {}):
                seen.append(event.chunk)
        assert seen == ["a"]
        assert client.closed

    @pytest.mark.asyncio
    async def test_closing_early_closes_client_stream(self):
        client = RecordingClient([{"chunk": "a"}, {"chunk": "b"}, {"chunk": "c"}])
        stream = open_stream(client, [], {})
        first = await stream.__anext__()
        assert first.chunk == "a"
        await stream.aclose()
        assert client.closed

    @pytest.mark.asyncio
    async def test_non_stream_result_is_rejected(self):
        with pytest.raises(LLMClientError):
            await collect(open_stream(lambda m, o: 42, [], {}))


def test_safe_messages_filters_bad_entries():
    assert safe_messages(
        [
            {"role": "user", "content": "ok"},
            {"role": 1, "content": "x"},
            "nope",
            {"role": "assistant", "content": "fine", "extra": True},
        ]
    ) == [{"role": "user", "content": "ok"}, {"role": "assistant", "content": "fine"}]
