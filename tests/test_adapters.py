"""Tests for LLM streaming client adapters."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from phaseloop.adapters import AdapterConfig, BaseAdapter, OpenAIStreamingClient
from phaseloop.exceptions import LLMClientError
from phaseloop.translator import open_stream


def delta_chunk(content=None, reasoning=None, tool_calls=None):
    delta = SimpleNamespace(content=content, reasoning_content=reasoning, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=None)], usage=None)


def tool_delta(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index,
        id=id,
        type="function" if id else None,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


class FakeStream:
    """Stands in for openai.AsyncStream."""

    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


def make_client(stream, config=None):
    mock_openai = MagicMock()
    mock_openai.chat.completions.create = AsyncMock(return_value=stream)
    return OpenAIStreamingClient(mock_openai, model="gpt-4o", config=config), mock_openai


async def collect(client, options=None):
    return [e async for e in client.stream_chat([{"role": "user", "content": "hi"}], options or {})]


class TestAdapterConfig:
    """Tests for AdapterConfig."""

    def test_default_values(self):
        config = AdapterConfig()
        assert config.model == "gpt-4o"
        assert config.log_stream_chunks is False
        assert config.chunk_log_interval == 10
        assert config.on_error is None
        assert config.metadata == {}


class TestBaseAdapter:
    """Tests for BaseAdapter."""

    def test_generate_id(self):
        adapter = BaseAdapter()
        id1 = adapter._generate_id()
        id2 = adapter._generate_id()
        assert len(id1) == 36
        assert id1 != id2

    def test_handle_error_with_callback(self):
        error_handler = MagicMock()
        adapter = BaseAdapter(AdapterConfig(on_error=error_handler))
        error = ValueError("test error")
        adapter._handle_error(error, {"phase": "test"})
        error_handler.assert_called_once_with(error, {"phase": "test"})

    def test_hook_exceptions_are_contained(self):
        config = AdapterConfig(
            on_error=MagicMock(side_effect=RuntimeError("callback error")),
            on_token=MagicMock(side_effect=RuntimeError("token error")),
        )
        adapter = BaseAdapter(config)
        adapter._handle_error(ValueError("test"), {})
        adapter._invoke_on_token("tok", "s1")


class TestOpenAIStreamingClient:
    """Tests for OpenAIStreamingClient."""

    @patch("phaseloop.adapters.openai_adapter._check_openai_installed")
    def test_initialization(self, mock_check):
        mock_openai = MagicMock()
        client = OpenAIStreamingClient(mock_openai)
        assert client.openai is mock_openai
        assert client.model == "gpt-4o"
        mock_check.assert_called_once()

    @pytest.mark.asyncio
    async def test_streams_content_and_done(self):
        client, mock_openai = make_client(FakeStream([delta_chunk("Hel"), delta_chunk("lo")]))

        events = await collect(client, {"temperature": 0.3, "max_tokens": 100})

        assert events == [
            {"chunk": "Hel"},
            {"chunk": "lo"},
            {"done": True, "fullContent": "Hello"},
        ]
        kwargs = mock_openai.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["stream"] is True
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 100
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_tools_and_reasoning(self):
        chunks = [
            delta_chunk(reasoning="thinking"),
            delta_chunk(tool_calls=[tool_delta(0, id="call_1", name="A_run", arguments="")]),
            delta_chunk(tool_calls=[tool_delta(0, arguments="{}")]),
        ]
        client, mock_openai = make_client(FakeStream(chunks))
        tools = [{"type": "function", "function": {"name": "A_run"}}]

        events = await collect(client, {"tools": tools})

        assert events[0] == {"reasoningChunk": "thinking"}
        assert events[1]["toolCalls"][0] == {
            "index": 0,
            "id": "call_1",
            "type": "function",
            "function": {"name": "A_run", "arguments": ""},
        }
        assert events[2]["toolCalls"][0]["function"]["arguments"] == "{}"
        assert events[-1] == {"done": True, "fullContent": "", "fullReasoning": "thinking"}
        assert mock_openai.chat.completions.create.await_args.kwargs["tools"] == tools

    @pytest.mark.asyncio
    async def test_hooks(self):
        on_start, on_token, on_end = MagicMock(), MagicMock(), MagicMock()
        config = AdapterConfig(on_stream_start=on_start, on_token=on_token, on_stream_end=on_end)
        client, _ = make_client(FakeStream([delta_chunk("a"), delta_chunk("b")]), config)

        await collect(client)

        assert on_start.call_args.args[1:] == ("gpt-4o", "openai")
        assert [c.args[0] for c in on_token.call_args_list] == ["a", "b"]
        assert on_end.call_args.args[1:] == ("ab", 2)

    @pytest.mark.asyncio
    async def test_api_error_becomes_client_error(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        stream = FakeStream([delta_chunk("a")], error=openai.APIConnectionError(request=request))
        on_stream_error = MagicMock()
        client, _ = make_client(stream, AdapterConfig(on_stream_error=on_stream_error))

        with pytest.raises(LLMClientError, match="OpenAI request failed"):
            await collect(client)
        on_stream_error.assert_called_once()
        assert stream.closed

    @pytest.mark.asyncio
    async def test_transport_error_becomes_client_error(self):
        client, mock_openai = make_client(None)
        mock_openai.chat.completions.create = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))

        with pytest.raises(LLMClientError) as exc_info:
            await collect(client)
        assert isinstance(exc_info.value.cause, httpx.ReadTimeout)

    @pytest.mark.asyncio
    async def test_closing_early_closes_stream(self):
        stream = FakeStream([delta_chunk("a"), delta_chunk("b"), delta_chunk("c")])
        client, _ = make_client(stream)

        events = open_stream(client, [{"role": "user", "content": "hi"}], {})
        first = await events.__anext__()
        await events.aclose()

        assert first.chunk == "a"
        assert stream.closed

    @pytest.mark.asyncio
    async def test_chunks_without_choices_are_skipped(self):
        usage_only = SimpleNamespace(choices=[], usage=SimpleNamespace(total_tokens=3))
        client, _ = make_client(FakeStream([usage_only, delta_chunk("x")]))
        events = await collect(client)
        assert events == [{"chunk": "x"}, {"done": True, "fullContent": "x"}]
