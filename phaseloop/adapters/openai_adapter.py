"""OpenAI streaming client for the phase loop protocols.

Wraps ``openai.AsyncOpenAI`` chat completions and yields the protocol's
client events: content deltas as ``{"chunk"}``, ``reasoning_content``
deltas as ``{"reasoningChunk"}``, tool-call deltas as ``{"toolCalls"}``,
then one ``{"done", "fullContent"}``.

Installation:
    pip install phaseloop[openai]

Example:
    from openai import AsyncOpenAI
    from phaseloop.adapters import OpenAIStreamingClient

    client = OpenAIStreamingClient(AsyncOpenAI(), model="gpt-4o")
    context = ExecutionContext(..., llm_client=client, ...)
"""

import inspect
from typing import Any, AsyncIterator, Optional

import httpx

from phaseloop.adapters.base import AdapterConfig, BaseAdapter, logger
from phaseloop.exceptions import LLMClientError


def _check_openai_installed() -> None:
    """Check if the openai package is installed."""
    try:
        import openai  # noqa: F401
    except ImportError:
        raise ImportError(
            "OpenAIStreamingClient requires the 'openai' package. "
            "Install it with: pip install phaseloop[openai]"
        ) from None


def _tool_call_delta(tc: Any) -> dict[str, Any]:
    fn = getattr(tc, "function", None)
    return {
        "index": getattr(tc, "index", None),
        "id": getattr(tc, "id", None),
        "type": getattr(tc, "type", None),
        "function": {
            "name": getattr(fn, "name", None) if fn else None,
            "arguments": getattr(fn, "arguments", None) if fn else None,
        },
    }


async def _close(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


class OpenAIStreamingClient(BaseAdapter):
    """LLM streaming client backed by the OpenAI chat completions API.

    Args:
        openai_client: An ``openai.AsyncOpenAI`` (or compatible) instance.
            Created from ``client_kwargs`` when omitted.
        model: Model name; overrides ``config.model``.
        config: Adapter configuration and streaming hooks.
    """

    provider = "openai"

    def __init__(
        self,
        openai_client: Any = None,
        model: Optional[str] = None,
        config: Optional[AdapterConfig] = None,
        **client_kwargs: Any,
    ):
        _check_openai_installed()
        super().__init__(config)
        if openai_client is None:
            import openai

            openai_client = openai.AsyncOpenAI(**client_kwargs)
        self._openai = openai_client
        self.model = model or self._config.model

    @property
    def openai(self) -> Any:
        """The wrapped OpenAI client."""
        return self._openai

    def _request_kwargs(self, messages: list[dict[str, Any]], options: dict[str, Any]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": options.get("model") or self.model,
            "messages": messages,
            "stream": True,
        }
        if options.get("temperature") is not None:
            kwargs["temperature"] = options["temperature"]
        if options.get("max_tokens") is not None:
            kwargs["max_tokens"] = options["max_tokens"]
        if options.get("tools"):
            kwargs["tools"] = options["tools"]
        return kwargs

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        options: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream one chat completion as protocol client events.

        Raises:
            LLMClientError: The API or transport failed.
        """
        import openai

        kwargs = self._request_kwargs(messages, dict(options or {}))
        model = kwargs["model"]
        stream_id = self._generate_id()
        self._invoke_stream_start(stream_id, model)

        stream: Any = None
        chunk_count = 0
        content_parts: list[str] = []
        reasoning_parts: list[str] = []

        try:
            stream = await self._openai.chat.completions.create(**kwargs)
            async for chunk in stream:
                chunk_count += 1
                self._log_chunk(stream_id, chunk_count)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue

                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    reasoning_parts.append(reasoning)
                    yield {"reasoningChunk": reasoning}
                content = getattr(delta, "content", None)
                if content:
                    content_parts.append(content)
                    self._invoke_on_token(content, stream_id)
                    yield {"chunk": content}
                tool_calls = getattr(delta, "tool_calls", None)
                if tool_calls:
                    yield {"toolCalls": [_tool_call_delta(tc) for tc in tool_calls]}

            full_content = "".join(content_parts)
            self._invoke_stream_end(stream_id, full_content, chunk_count)
            done: dict[str, Any] = {"done": True, "fullContent": full_content}
            if reasoning_parts:
                done["fullReasoning"] = "".join(reasoning_parts)
            yield done

        except GeneratorExit:
            logger.debug("Stream %s closed after %d chunks", stream_id, chunk_count)
            self._invoke_stream_error(Exception("Generator closed"), stream_id)
            raise
        except (openai.APIError, httpx.HTTPError) as e:
            self._invoke_stream_error(e, stream_id)
            self._handle_error(e, {"phase": "stream", "stream_id": stream_id, "model": model})
            raise LLMClientError(f"OpenAI request failed: {e}", cause=e) from e
        finally:
            if stream is not None:
                try:
                    await _close(stream)
                except Exception as e:
                    logger.debug("Error closing OpenAI stream %s: %s", stream_id, e)
