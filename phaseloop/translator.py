"""
phaseloop - LLM stream to protocol event translation.

The LLM streaming client is either an object with a ``stream_chat(messages,
options)`` method or a plain callable with the same signature. Either way
it returns an async iterable of events shaped ``{"chunk"}``,
``{"reasoningChunk"}``, ``{"toolCalls"}`` or ``{"done", "fullContent"}``
(``StreamEvent`` instances are accepted too).
"""

import inspect
import logging
from typing import Any, AsyncIterable, AsyncIterator, Optional

from .exceptions import LLMClientError
from .models import ProtocolEvent, StreamEvent

logger = logging.getLogger("phaseloop.translator")


def safe_messages(messages: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Keep only messages with string role and content."""
    return [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if isinstance(m, dict) and isinstance(m.get("role"), str) and isinstance(m.get("content"), str)
    ]


async def _aclose(source: Any) -> None:
    close = getattr(source, "aclose", None)
    if close is None:
        return
    try:
        await close()
    except Exception as e:
        logger.debug("Error closing LLM stream: %s", e)


async def open_stream(
    client: Any,
    messages: list[dict[str, Any]],
    options: Optional[dict[str, Any]] = None,
) -> AsyncIterator[StreamEvent]:
    """Call the LLM client and yield normalized ``StreamEvent``s.

    Any failure raised by the client, whether opening the stream or while
    iterating it, is re-raised as ``LLMClientError``. Closing this generator
    closes the underlying client stream.
    """
    options = dict(options or {})
    stream_chat = getattr(client, "stream_chat", None)
    call = stream_chat if callable(stream_chat) else client
    if not callable(call):
        raise LLMClientError("LLM client is neither callable nor has stream_chat()")

    try:
        source = call(safe_messages(messages), options)
        if inspect.isawaitable(source) and not hasattr(source, "__aiter__"):
            source = await source
    except LLMClientError:
        raise
    except Exception as e:
        raise LLMClientError(f"LLM client failed: {e}", cause=e) from e
    if not hasattr(source, "__aiter__"):
        raise LLMClientError(f"LLM client returned {type(source).__name__}, not an async stream")

    try:
        iterator = source.__aiter__()
        while True:
            try:
                raw = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except LLMClientError:
                raise
            except Exception as e:
                raise LLMClientError(f"LLM stream failed: {e}", cause=e) from e
            yield StreamEvent.from_raw(raw)
    finally:
        await _aclose(source)


class ProtocolEventTranslator:
    """Maps LLM client events onto ``ProtocolEvent``s in arrival order.

    ``chunk`` becomes ``CHUNK``, ``toolCalls`` becomes ``TOOL_CALLS`` and
    ``done`` becomes ``DONE``. Reasoning chunks are not forwarded; they are
    accumulated into ``DONE.full_reasoning``. Exactly one ``DONE`` is
    produced: one is synthesized if the stream ends without it, and events
    arriving after it are dropped with a warning.
    """

    def __init__(self) -> None:
        self.content = ""
        self.reasoning = ""

    async def translate(self, raw_events: AsyncIterable[Any]) -> AsyncIterator[ProtocolEvent]:
        self.content = ""
        self.reasoning = ""
        done = False
        try:
            async for raw in raw_events:
                event = StreamEvent.from_raw(raw)
                if done:
                    logger.warning("Ignoring LLM stream event received after done")
                    continue
                if event.is_empty:
                    logger.warning("Unrecognized LLM stream event: %r", raw)
                    continue

                if event.reasoning_chunk:
                    self.reasoning += event.reasoning_chunk
                if event.chunk is not None:
                    self.content += event.chunk
                    yield ProtocolEvent.chunk(event.chunk)
                if event.tool_calls:
                    yield ProtocolEvent.tool_calls([f.to_dict() for f in event.tool_calls])
                if event.done:
                    done = True
                    if event.full_reasoning:
                        self.reasoning = event.full_reasoning
                    full = event.full_content if event.full_content is not None else self.content
                    yield ProtocolEvent.done(full, self.reasoning)

            if not done:
                logger.debug("LLM stream ended without done; synthesizing one")
                yield ProtocolEvent.done(self.content, self.reasoning)
        finally:
            await _aclose(raw_events)
