"""
phaseloop - Two-stage (Action / Tool) phase cycling protocol.

Each turn alternates between an Action phase, where the LLM streams text
and possibly a tool call, and a Tool phase, where at most one call is
executed and its result is written back into the transcript as a system
message. The loop ends when the model answers without calling a tool, or
when a budget forces one last tool-less answer.

Budgets:

- ``max_phase_cycles`` tool executions per turn.
- ``max_duplicate_attempts`` repeats of an already executed call. Calls that
  cannot run at all (malformed, over the search budget) share this ceiling.
- ``max_search_executions`` search tool executions per turn, when set.

Usage:
    ```python
    protocol = TwoStageProtocol(gateway=ToolExecutionGateway())
    async for event in protocol.execute_streaming(context):
        send(event.to_dict())
    ```
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from ..assembler import ToolCallAssembler
from ..exceptions import LLMClientError
from ..gateway import ToolExecutionGateway
from ..models import (
    ExecutionContext,
    Phase,
    PhaseState,
    ProtocolEvent,
    ProtocolEventType,
    ToolCall,
    ToolExecutionResult,
)
from ..registry import ToolRegistry
from ..signatures import SignatureBuilder, is_search_call
from ..tracing import (
    ASSISTANT_RESPONSE,
    LLM_CALL,
    PHASE_END,
    PHASE_START,
    PHASE_TRANSITION,
    SOURCE_ASSISTANT,
    SOURCE_SYSTEM,
    TraceEvent,
    log_trace,
)
from ..translator import ProtocolEventTranslator, open_stream
from .base import ProtocolStrategy

logger = logging.getLogger("phaseloop.protocols.two_stage")

DEFAULT_MAX_TOKENS = 8192
BOX_RULE = "═" * 79

NOTICE_MALFORMED = "Tool call malformed (cannot compute signature). Continue reasoning."
NOTICE_DUPLICATE = (
    "Duplicate tool call detected (already executed in this turn). "
    "Do NOT call this tool again. Use previous results."
)
NOTICE_DUPLICATES_EXCEEDED = (
    "Maximum duplicate tool call attempts exceeded. "
    "Provide final answer without further tool calls."
)
NOTICE_SKIPPED_EXCEEDED = (
    "Too many tool calls could not be executed. "
    "Provide final answer without further tool calls."
)
NOTICE_SEARCH_LIMIT = "Search limit reached for this turn. Use existing search results to proceed."


def budget_notice(max_cycles: int) -> str:
    return (
        f"Maximum tool execution cycles ({max_cycles}) reached. "
        "Provide final answer without further tool calls."
    )


def format_notice_chunk(notice: str) -> str:
    return f"\n\n**System Notice**: {notice}\n\n"


def format_tool_result(result: ToolExecutionResult) -> str:
    """Render a tool outcome as the boxed ``TOOL RESULT`` system message."""
    if result.success:
        payload: dict[str, Any] = {"ok": True, "result": result.result}
    else:
        payload = {"ok": False, "error": result.error, "details": result.details}
    body = json.dumps(payload, indent=2, default=str, ensure_ascii=False)
    return f"{BOX_RULE}\nTOOL RESULT: {result.tool_name}\n{BOX_RULE}\n{body}\n{BOX_RULE}"


@dataclass
class _ActionOutcome:
    content: str = ""
    full_content: Optional[str] = None
    full_reasoning: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    failed: bool = False

    @property
    def final_text(self) -> str:
        return self.full_content if self.full_content is not None else self.content


class TwoStageProtocol(ProtocolStrategy):
    """Phase cycle controller for one conversational turn.

    Args:
        gateway: Executes tool calls. A default gateway is created when
            omitted; share one across turns to share rate limits.
        signatures: Builds duplicate-detection signatures.
        max_tokens: Passed to the LLM client with every call.
    """

    def __init__(
        self,
        gateway: Optional[ToolExecutionGateway] = None,
        signatures: Optional[SignatureBuilder] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.gateway = gateway or ToolExecutionGateway()
        self.signatures = signatures or SignatureBuilder()
        self.max_tokens = max_tokens

    @property
    def name(self) -> str:
        return "two-stage"

    def can_handle(self, context: ExecutionContext) -> bool:
        return True

    async def execute_streaming(self, context: ExecutionContext) -> AsyncIterator[ProtocolEvent]:
        config = context.config
        tools = context.tools.for_mode(context.mode)
        state = PhaseState(messages=context.transcript())
        force_notice: Optional[str] = None

        logger.debug(
            "Starting turn %s (mode=%s, max_cycles=%d)",
            context.request_id,
            context.mode.value,
            config.max_phase_cycles,
        )

        while state.cycle_index < config.max_phase_cycles:
            outcome = _ActionOutcome()
            state.phase_index += 1
            await self._trace_phase(context, PHASE_START, Phase.ACTION, state)
            if config.emit_phase_events:
                yield ProtocolEvent.phase_marker(Phase.ACTION, state.phase_index)

            action = self._action_phase(context, state, tools, outcome, offer_tools=True)
            try:
                async for event in action:
                    yield event
            finally:
                await action.aclose()
            await self._trace_phase(context, PHASE_END, Phase.ACTION, state)

            if outcome.failed:
                return
            if outcome.tool_call is None:
                yield await self._finish(context, state, outcome)
                return

            if outcome.content:
                state.messages.append({"role": "assistant", "content": outcome.content})

            state.phase_index += 1
            await self._trace_transition(context, Phase.ACTION, Phase.TOOL, state)
            await self._trace_phase(context, PHASE_START, Phase.TOOL, state)
            if config.emit_phase_events:
                yield ProtocolEvent.phase_marker(Phase.TOOL, state.phase_index)

            events, force_notice = await self._tool_phase(context, state, tools, outcome.tool_call)
            for event in events:
                yield event
            await self._trace_phase(context, PHASE_END, Phase.TOOL, state)

            if force_notice is not None:
                break
            await self._trace_transition(context, Phase.TOOL, Phase.ACTION, state)

        if force_notice is None:
            force_notice = budget_notice(config.max_phase_cycles)
            logger.info(
                "Turn %s reached %d tool cycles; forcing final answer",
                context.request_id,
                config.max_phase_cycles,
            )
            state.inject_system_message(force_notice)
            yield ProtocolEvent.chunk(format_notice_chunk(force_notice))

        outcome = _ActionOutcome()
        state.phase_index += 1
        await self._trace_phase(context, PHASE_START, Phase.ACTION, state)
        if config.emit_phase_events:
            yield ProtocolEvent.phase_marker(Phase.ACTION, state.phase_index)
        action = self._action_phase(context, state, tools, outcome, offer_tools=False)
        try:
            async for event in action:
                yield event
        finally:
            await action.aclose()
        await self._trace_phase(context, PHASE_END, Phase.ACTION, state)

        if not outcome.failed:
            yield await self._finish(context, state, outcome)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _action_phase(
        self,
        context: ExecutionContext,
        state: PhaseState,
        tools: ToolRegistry,
        outcome: _ActionOutcome,
        offer_tools: bool,
    ) -> AsyncIterator[ProtocolEvent]:
        """Stream one LLM call; stops at the first complete tool call."""
        options: dict[str, Any] = {
            "temperature": context.resolved_temperature,
            "max_tokens": self.max_tokens,
        }
        definitions = tools.definitions() if offer_tools else []
        if definitions:
            options["tools"] = definitions

        await log_trace(
            context.trace_sink,
            TraceEvent(
                type=LLM_CALL,
                source=SOURCE_SYSTEM,
                project_id=context.project_id,
                request_id=context.request_id,
                summary=f"LLM call in phase {state.phase_index}",
                details={
                    "messages": len(state.messages),
                    "toolsOffered": len(definitions),
                    "forced": not offer_tools,
                },
            ),
        )

        assembler = ToolCallAssembler()
        translator = ProtocolEventTranslator()
        events = translator.translate(open_stream(context.llm_client, state.messages, options))
        try:
            async for event in events:
                if event.type == ProtocolEventType.CHUNK:
                    outcome.content += event.content or ""
                    yield event
                elif event.type == ProtocolEventType.TOOL_CALLS:
                    if not offer_tools:
                        logger.warning("Ignoring tool call in forced final answer")
                        continue
                    assembler.merge(event.calls or [])
                    yield ProtocolEvent.tool_calls(assembler.calls)
                    call = assembler.find_first_complete()
                    if call is not None:
                        logger.debug("Complete tool call %s (%s); closing stream", call.name, call.id)
                        outcome.tool_call = call
                        break
                elif event.type == ProtocolEventType.DONE:
                    outcome.full_content = event.full_content
                    outcome.full_reasoning = event.full_reasoning
        except LLMClientError as e:
            logger.warning("LLM client failed in turn %s: %s", context.request_id, e)
            outcome.failed = True
            yield ProtocolEvent.failure(str(e))
        finally:
            await events.aclose()

    async def _tool_phase(
        self,
        context: ExecutionContext,
        state: PhaseState,
        tools: ToolRegistry,
        tool_call: ToolCall,
    ) -> tuple[list[ProtocolEvent], Optional[str]]:
        """Decide on and run one tool call.

        Returns the events to emit and, when the turn must end, the terminal
        notice already injected into the transcript.
        """
        config = context.config
        events: list[ProtocolEvent] = []

        def notice(text: str) -> None:
            state.inject_system_message(text)
            events.append(ProtocolEvent.chunk(format_notice_chunk(text)))

        def skip(text: str) -> Optional[str]:
            state.skipped_attempt_count += 1
            if state.skipped_attempt_count >= config.max_duplicate_attempts:
                notice(NOTICE_SKIPPED_EXCEEDED)
                return NOTICE_SKIPPED_EXCEEDED
            notice(text)
            return None

        signature = self.signatures.for_tool_call(tool_call, context.project_id)
        if signature is None:
            logger.info("Malformed tool call %r in turn %s", tool_call.name, context.request_id)
            return events, skip(NOTICE_MALFORMED)

        if signature in state.blocked_signatures:
            state.duplicate_attempt_count += 1
            logger.info(
                "Duplicate tool call %s (%d/%d)",
                tool_call.name,
                state.duplicate_attempt_count,
                config.max_duplicate_attempts,
            )
            if state.duplicate_attempt_count >= config.max_duplicate_attempts:
                notice(NOTICE_DUPLICATES_EXCEEDED)
                return events, NOTICE_DUPLICATES_EXCEEDED
            notice(NOTICE_DUPLICATE)
            return events, None

        search = is_search_call(tool_call)
        if (
            search
            and config.max_search_executions is not None
            and state.search_execution_count >= config.max_search_executions
        ):
            logger.info("Search budget exhausted in turn %s", context.request_id)
            return events, skip(NOTICE_SEARCH_LIMIT)

        # tools are not preemptible; a cancelled turn discards the result
        result = await asyncio.shield(self.gateway.execute(tools, tool_call, context))

        state.blocked_signatures.add(signature)
        state.cycle_index += 1
        if search:
            state.search_execution_count += 1

        boxed = format_tool_result(result)
        state.inject_system_message(boxed)
        if config.debug_show_tool_results:
            events.append(ProtocolEvent.chunk(f"\n\n{boxed}\n\n"))
        return events, None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _finish(
        self,
        context: ExecutionContext,
        state: PhaseState,
        outcome: _ActionOutcome,
    ) -> ProtocolEvent:
        state.final_content = outcome.final_text
        state.final_reasoning = outcome.full_reasoning or ""
        state.done_emitted = True
        await self._trace_transition(context, Phase.ACTION, Phase.TERMINATED, state)
        await log_trace(
            context.trace_sink,
            TraceEvent(
                type=ASSISTANT_RESPONSE,
                source=SOURCE_ASSISTANT,
                project_id=context.project_id,
                request_id=context.request_id,
                summary=state.final_content[:200],
                details={
                    "cycles": state.cycle_index,
                    "phases": state.phase_index,
                    "duplicateAttempts": state.duplicate_attempt_count,
                },
            ),
        )
        logger.debug(
            "Turn %s done after %d cycle(s)", context.request_id, state.cycle_index
        )
        return ProtocolEvent.done(state.final_content, state.final_reasoning)

    async def _trace_phase(
        self,
        context: ExecutionContext,
        event_type: str,
        phase: Phase,
        state: PhaseState,
    ) -> None:
        await log_trace(
            context.trace_sink,
            TraceEvent(
                type=event_type,
                source=SOURCE_SYSTEM,
                project_id=context.project_id,
                request_id=context.request_id,
                details={"phase": phase.value, "index": state.phase_index, "cycle": state.cycle_index},
            ),
        )

    async def _trace_transition(
        self,
        context: ExecutionContext,
        from_phase: Phase,
        to_phase: Phase,
        state: PhaseState,
    ) -> None:
        await log_trace(
            context.trace_sink,
            TraceEvent(
                type=PHASE_TRANSITION,
                source=SOURCE_SYSTEM,
                project_id=context.project_id,
                request_id=context.request_id,
                summary=f"{from_phase.value} -> {to_phase.value}",
                details={"from": from_phase.value, "to": to_phase.value, "cycle": state.cycle_index},
            ),
        )


PhaseCycleController = TwoStageProtocol
