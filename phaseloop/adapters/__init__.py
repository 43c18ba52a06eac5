"""LLM streaming client adapters.

Any object with an async ``stream_chat(messages, options)`` method works as
the ``llm_client`` of an ``ExecutionContext``. The adapters here wrap
provider SDKs into that shape.

Streaming hooks are available on every adapter via ``AdapterConfig``:
- on_stream_start(stream_id, model, provider): Called when a stream begins
- on_token(token, stream_id): Called for each content token during streaming
- on_stream_end(stream_id, content, chunks): Called when a stream completes
- on_stream_error(error, stream_id): Called when a stream fails

Example:

    from openai import AsyncOpenAI
    from phaseloop.adapters import AdapterConfig, OpenAIStreamingClient

    config = AdapterConfig(on_token=lambda token, sid: print(token, end=""))
    client = OpenAIStreamingClient(AsyncOpenAI(), model="gpt-4o", config=config)
"""

from phaseloop.adapters.base import AdapterConfig, BaseAdapter
from phaseloop.adapters.openai_adapter import OpenAIStreamingClient

__all__ = [
    "AdapterConfig",
    "BaseAdapter",
    "OpenAIStreamingClient",
]
