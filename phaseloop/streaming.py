"""
phaseloop - Server-Sent Events transport helpers.

Turns a protocol event stream into ``sse_starlette`` frames. Each frame
carries the event type as the SSE ``event`` name and the camelCase wire
dict as JSON ``data``.

Usage:
    ```python
    from sse_starlette.sse import EventSourceResponse

    @app.post("/chat")
    async def chat(request: Request):
        context = build_context(await request.json())
        events = protocol.execute_streaming(context)
        return EventSourceResponse(sse_stream(events))
    ```
"""

import json
import logging
from typing import AsyncIterable, AsyncIterator

from sse_starlette.sse import ServerSentEvent

from .models import ProtocolEvent

logger = logging.getLogger("phaseloop.streaming")


def to_sse(event: ProtocolEvent) -> ServerSentEvent:
    """Encode one protocol event as an SSE frame."""
    data = event.to_dict()
    return ServerSentEvent(data=json.dumps(data, default=str), event=data["type"])


async def sse_stream(events: AsyncIterable[ProtocolEvent]) -> AsyncIterator[ServerSentEvent]:
    """Relay ``events`` as SSE frames.

    An exception escaping the protocol becomes a final ``error`` frame
    instead of a broken connection. Closing this generator closes
    ``events``, which cancels the in-flight LLM stream.
    """
    try:
        async for event in events:
            yield to_sse(event)
    except Exception as e:
        logger.warning("Protocol stream failed: %s", e)
        yield to_sse(ProtocolEvent.failure(str(e)))
    finally:
        close = getattr(events, "aclose", None)
        if close is not None:
            await close()
