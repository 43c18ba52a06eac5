"""
phaseloop - Single-pass protocol.

One LLM call per turn. Every complete tool call the model streams is
executed after the stream ends, in order, and reported in a single
``tool_results`` event before ``done``. Nothing is fed back to the model.
"""

import logging
from typing import AsyncIterator, Optional

from ..assembler import ToolCallAssembler
from ..exceptions import LLMClientError
from ..gateway import ToolExecutionGateway
from ..models import ExecutionContext, ProtocolEvent, ProtocolEventType
from ..tracing import LLM_CALL, SOURCE_SYSTEM, TraceEvent, log_trace
from ..translator import ProtocolEventTranslator, open_stream
from .base import ProtocolStrategy

logger = logging.getLogger("phaseloop.protocols.standard")


class StandardProtocol(ProtocolStrategy):
    """Stream once, then execute the requested tools as a batch."""

    def __init__(
        self,
        gateway: Optional[ToolExecutionGateway] = None,
        max_tokens: int = 8192,
    ) -> None:
        self.gateway = gateway or ToolExecutionGateway()
        self.max_tokens = max_tokens

    @property
    def name(self) -> str:
        return "standard"

    def can_handle(self, context: ExecutionContext) -> bool:
        return True

    async def execute_streaming(self, context: ExecutionContext) -> AsyncIterator[ProtocolEvent]:
        tools = context.tools.for_mode(context.mode)
        options = {"temperature": context.resolved_temperature, "max_tokens": self.max_tokens}
        definitions = tools.definitions()
        if definitions:
            options["tools"] = definitions

        await log_trace(
            context.trace_sink,
            TraceEvent(
                type=LLM_CALL,
                source=SOURCE_SYSTEM,
                project_id=context.project_id,
                request_id=context.request_id,
                summary="LLM call",
                details={"toolsOffered": len(definitions)},
            ),
        )

        assembler = ToolCallAssembler()
        done: Optional[ProtocolEvent] = None
        events = ProtocolEventTranslator().translate(
            open_stream(context.llm_client, context.transcript(), options)
        )
        try:
            async for event in events:
                if event.type == ProtocolEventType.TOOL_CALLS:
                    assembler.merge(event.calls or [])
                    yield ProtocolEvent.tool_calls(assembler.calls)
                elif event.type == ProtocolEventType.DONE:
                    done = event
                else:
                    yield event
        except LLMClientError as e:
            logger.warning("LLM client failed in turn %s: %s", context.request_id, e)
            yield ProtocolEvent.failure(str(e))
            return
        finally:
            await events.aclose()

        calls = assembler.complete_calls()
        if calls:
            logger.debug("Executing %d tool call(s) for turn %s", len(calls), context.request_id)
            results = await self.gateway.execute_all(tools, calls, context)
            yield ProtocolEvent.tool_results([r.to_dict() for r in results])

        yield done if done is not None else ProtocolEvent.done("")
