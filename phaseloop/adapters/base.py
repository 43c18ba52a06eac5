"""Base adapter for LLM streaming clients.

Adapters turn a provider SDK's streaming response into the event shape the
protocols consume: ``{"chunk"}``, ``{"reasoningChunk"}``, ``{"toolCalls"}``
and a final ``{"done", "fullContent"}``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger("phaseloop.adapters")


@dataclass
class AdapterConfig:
    """Configuration for provider adapters.

    Attributes:
        model: Default model name when the call options carry none.
        log_stream_chunks: Whether to debug-log individual stream chunks.
            Default False to reduce noise.
        chunk_log_interval: If log_stream_chunks is True, log every Nth chunk.
            Default 10.
        on_error: Optional callback for adapter errors. Signature:
            (error: Exception, context: dict) -> None
        on_stream_start: Optional callback invoked when a stream begins.
            Signature: (stream_id: str, model: str, provider: str) -> None
        on_token: Optional callback invoked for each content token during
            streaming. Signature: (token: str, stream_id: str) -> None
        on_stream_end: Optional callback invoked when a stream completes.
            Signature: (stream_id: str, content: str, chunks: int) -> None
        on_stream_error: Optional callback invoked when a stream fails.
            Signature: (error: Exception, stream_id: str) -> None
    """

    model: str = "gpt-4o"
    log_stream_chunks: bool = False
    chunk_log_interval: int = 10
    on_error: Optional[Callable[[Exception, dict[str, Any]], None]] = None
    on_stream_start: Optional[Callable[[str, str, str], None]] = None
    on_token: Optional[Callable[[str, str], None]] = None
    on_stream_end: Optional[Callable[[str, str, int], None]] = None
    on_stream_error: Optional[Callable[[Exception, str], None]] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class BaseAdapter:
    """Base class for provider adapters.

    Subclasses implement ``stream_chat(messages, options)``; this class
    holds configuration and invokes the streaming hooks. A failing hook is
    logged and never interrupts the stream.
    """

    provider = "unknown"

    def __init__(self, config: Optional[AdapterConfig] = None):
        self._config = config or AdapterConfig()

    @property
    def config(self) -> AdapterConfig:
        """The adapter configuration."""
        return self._config

    def _call_hook(self, hook: Optional[Callable[..., Any]], *args: Any) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as e:
            logger.debug("Adapter hook %s failed: %s", getattr(hook, "__name__", hook), e)

    def _handle_error(self, error: Exception, context: dict[str, Any]) -> None:
        self._call_hook(self._config.on_error, error, context)

    def _invoke_stream_start(self, stream_id: str, model: str) -> None:
        self._call_hook(self._config.on_stream_start, stream_id, model, self.provider)

    def _invoke_on_token(self, token: str, stream_id: str) -> None:
        self._call_hook(self._config.on_token, token, stream_id)

    def _invoke_stream_end(self, stream_id: str, content: str, chunks: int) -> None:
        self._call_hook(self._config.on_stream_end, stream_id, content, chunks)

    def _invoke_stream_error(self, error: Exception, stream_id: str) -> None:
        self._call_hook(self._config.on_stream_error, error, stream_id)

    def _log_chunk(self, stream_id: str, chunk_index: int) -> None:
        if self._config.log_stream_chunks and chunk_index % self._config.chunk_log_interval == 0:
            logger.debug("Stream %s: %d chunks received", stream_id, chunk_index)

    def _generate_id(self) -> str:
        """Generate a unique ID for tracking."""
        return str(uuid.uuid4())
