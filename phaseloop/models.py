"""
phaseloop - Data models for the tool-calling orchestration protocol.

Wire-facing records (protocol events, tool results, tool-call fragments)
serialize with camelCase keys so transports can forward ``to_dict()``
output unchanged. ``from_dict`` accepts both camelCase and snake_case.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .exceptions import ValidationError


class Mode(str, Enum):
    """Conversation mode of a turn."""

    PLAN = "plan"
    ACT = "act"


class Phase(str, Enum):
    """States of the phase cycle controller."""

    ACTION = "action"
    TOOL = "tool"
    TERMINATED = "terminated"


class ProtocolEventType(str, Enum):
    """Types of events on the outbound protocol stream."""

    CHUNK = "chunk"
    TOOL_CALLS = "tool_calls"
    TOOL_RESULTS = "tool_results"
    PHASE = "phase"
    DONE = "done"
    ERROR = "error"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


# ---------------------------------------------------------------------------
# Conversation & Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """A single conversation message."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        if isinstance(data, Message):
            return data
        if not isinstance(data, dict) or not isinstance(data.get("role"), str):
            raise ValidationError("messages must be objects with a string role", field="messages")
        content = data.get("content")
        return cls(role=data["role"], content=content if isinstance(content, str) else "")


@dataclass(frozen=True)
class ProtocolConfig:
    """Per-turn protocol budgets and switches.

    Attributes:
        max_phase_cycles: Maximum tool executions per turn before a final
            answer is forced. Default 3.
        max_duplicate_attempts: Duplicate (or otherwise rejected) tool call
            attempts tolerated before a final answer is forced. Default 3.
        debug_show_tool_results: Also stream the boxed tool result to the
            caller. Default False.
        emit_phase_events: Emit ``phase`` events at each phase start.
            Default False.
        max_search_executions: Per-turn ceiling on search tool executions.
            ``None`` means unlimited.
    """

    max_phase_cycles: int = 3
    max_duplicate_attempts: int = 3
    debug_show_tool_results: bool = False
    emit_phase_events: bool = False
    max_search_executions: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.max_phase_cycles, int) or self.max_phase_cycles < 0:
            raise ValidationError(
                "max_phase_cycles must be a non-negative integer", field="max_phase_cycles"
            )
        if not isinstance(self.max_duplicate_attempts, int) or self.max_duplicate_attempts < 1:
            raise ValidationError(
                "max_duplicate_attempts must be a positive integer",
                field="max_duplicate_attempts",
            )
        search = self.max_search_executions
        if search is not None and (not isinstance(search, int) or search < 0):
            raise ValidationError(
                "max_search_executions must be a non-negative integer",
                field="max_search_executions",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxPhaseCycles": self.max_phase_cycles,
            "maxDuplicateAttempts": self.max_duplicate_attempts,
            "debugShowToolResults": self.debug_show_tool_results,
            "emitPhaseEvents": self.emit_phase_events,
            "maxSearchExecutions": self.max_search_executions,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ProtocolConfig":
        data = data or {}

        def pick(snake: str, camel: str, default: Any) -> Any:
            value = data.get(snake, data.get(camel))
            return default if value is None else value

        search = data.get(
            "max_search_executions",
            data.get("maxSearchExecutions", data.get("MAX_SEARCH_EXECUTIONS_PER_TURN")),
        )
        try:
            return cls(
                max_phase_cycles=int(pick("max_phase_cycles", "maxPhaseCycles", 3)),
                max_duplicate_attempts=int(
                    pick("max_duplicate_attempts", "maxDuplicateAttempts", 3)
                ),
                debug_show_tool_results=bool(
                    pick("debug_show_tool_results", "debugShowToolResults", False)
                ),
                emit_phase_events=bool(pick("emit_phase_events", "emitPhaseEvents", False)),
                max_search_executions=None if search is None else int(search),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid protocol config: {e}") from e

    @classmethod
    def from_env(cls) -> "ProtocolConfig":
        """Create configuration from environment variables."""
        return cls(
            max_phase_cycles=_env_int("PHASELOOP_MAX_PHASE_CYCLES", 3),
            max_duplicate_attempts=_env_int("PHASELOOP_MAX_DUPLICATE_ATTEMPTS", 3),
            debug_show_tool_results=_env_bool("PHASELOOP_DEBUG_TOOL_RESULTS"),
            emit_phase_events=_env_bool("PHASELOOP_EMIT_PHASE_EVENTS"),
            max_search_executions=_env_int("PHASELOOP_MAX_SEARCH_EXECUTIONS", None),
        )


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable per-turn execution context.

    Created once per user turn. Required fields are validated and defaults
    filled in at construction; the instance is never mutated afterwards.
    ``project_id`` is the conversation scope used for duplicate detection
    and rate limiting.
    """

    messages: tuple[Message, ...]
    mode: Mode
    project_id: str
    request_id: str
    llm_client: Any
    tools: Any
    config: ProtocolConfig = field(default_factory=ProtocolConfig)
    trace_sink: Optional[Any] = None
    temperature: Optional[float] = None

    def __post_init__(self) -> None:
        from .registry import ToolRegistry

        for name in ("mode", "project_id", "request_id", "llm_client"):
            if not getattr(self, name):
                raise ValidationError(f"{name} is required", field=name)
        for name in ("messages", "tools"):
            if getattr(self, name) is None:
                raise ValidationError(f"{name} is required", field=name)

        try:
            mode = Mode(self.mode)
        except ValueError:
            raise ValidationError(f"Unknown mode: {self.mode}", field="mode") from None

        config = self.config
        if config is None:
            config = ProtocolConfig()
        elif isinstance(config, dict):
            config = ProtocolConfig.from_dict(config)

        tools = self.tools
        if not isinstance(tools, ToolRegistry):
            tools = ToolRegistry(tools)

        object.__setattr__(self, "messages", tuple(Message.from_dict(m) for m in self.messages))
        object.__setattr__(self, "mode", mode)
        object.__setattr__(self, "config", config)
        object.__setattr__(self, "tools", tools)

    @property
    def resolved_temperature(self) -> float:
        if self.temperature is not None:
            return self.temperature
        return 0.7 if self.mode == Mode.PLAN else 0.3

    def transcript(self) -> list[dict[str, str]]:
        """Return a fresh, mutable copy of the conversation messages."""
        return [m.to_dict() for m in self.messages]


# ---------------------------------------------------------------------------
# Tool Calls
# ---------------------------------------------------------------------------


@dataclass
class FunctionFragment:
    """The ``function`` part of a streamed tool-call fragment."""

    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass
class ToolCallFragment:
    """A partial tool invocation as streamed by the LLM.

    Fragments for the same logical call share either ``id`` or a stable
    ``index``. ``function.arguments`` grows across fragments.
    """

    index: Optional[int] = None
    id: Optional[str] = None
    type: Optional[str] = None
    function: FunctionFragment = field(default_factory=FunctionFragment)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.index is not None:
            data["index"] = self.index
        if self.id is not None:
            data["id"] = self.id
        if self.type is not None:
            data["type"] = self.type
        data["function"] = {
            "name": self.function.name,
            "arguments": self.function.arguments,
        }
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "ToolCallFragment":
        if isinstance(data, ToolCallFragment):
            return data
        if not isinstance(data, dict):
            raise ValidationError("tool call fragments must be objects", field="toolCalls")

        index = data.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            index = None
        call_id = data.get("id")
        if not isinstance(call_id, str) or not call_id.strip():
            call_id = None

        fn = data.get("function") if isinstance(data.get("function"), dict) else {}
        name = fn.get("name")
        arguments = fn.get("arguments")
        if arguments is not None and not isinstance(arguments, str):
            arguments = json.dumps(arguments)

        return cls(
            index=index,
            id=call_id,
            type=data.get("type"),
            function=FunctionFragment(
                name=name if isinstance(name, str) else None,
                arguments=arguments,
            ),
        )


@dataclass
class ToolCall:
    """A complete tool invocation whose ``arguments`` is valid JSON text."""

    id: str
    name: str
    arguments: str
    type: str = "function"

    def parsed_arguments(self) -> Any:
        return json.loads(self.arguments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        fn = data.get("function") or {}
        arguments = fn.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=data.get("id") or "",
            name=fn.get("name") or "",
            arguments=arguments,
            type=data.get("type") or "function",
        )


@dataclass
class ToolExecutionResult:
    """Structured outcome of one tool execution attempt."""

    tool_call_id: Optional[str]
    tool_name: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    attempts: int = 0
    timestamp: str = field(default_factory=_utcnow_iso)
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "success": self.success,
            "attempts": self.attempts,
            "timestamp": self.timestamp,
        }
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error
            if self.details is not None:
                data["details"] = self.details
        if self.cached:
            data["cached"] = True
        return data


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------


@dataclass
class StreamEvent:
    """A normalized event from the LLM streaming client.

    Exactly one of ``chunk``, ``reasoning_chunk``, ``tool_calls`` or
    ``done`` is expected to be set.
    """

    chunk: Optional[str] = None
    reasoning_chunk: Optional[str] = None
    tool_calls: Optional[list[ToolCallFragment]] = None
    done: bool = False
    full_content: Optional[str] = None
    full_reasoning: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return (
            self.chunk is None
            and self.reasoning_chunk is None
            and self.tool_calls is None
            and not self.done
        )

    @classmethod
    def from_raw(cls, raw: Any) -> "StreamEvent":
        """Create a StreamEvent from a client-provided dict (or pass one through)."""
        if isinstance(raw, StreamEvent):
            return raw
        if not isinstance(raw, dict):
            return cls()

        tool_calls = raw.get("toolCalls", raw.get("tool_calls"))
        if isinstance(tool_calls, list):
            fragments = [
                ToolCallFragment.from_dict(tc) for tc in tool_calls if isinstance(tc, dict)
            ]
        else:
            fragments = None

        return cls(
            chunk=raw.get("chunk"),
            reasoning_chunk=raw.get("reasoningChunk", raw.get("reasoning_chunk")),
            tool_calls=fragments,
            done=bool(raw.get("done", False)),
            full_content=raw.get("fullContent", raw.get("full_content")),
            full_reasoning=raw.get("fullReasoning", raw.get("full_reasoning")),
        )


@dataclass
class ProtocolEvent:
    """An event on the outbound protocol stream."""

    type: ProtocolEventType
    content: Optional[str] = None
    calls: Optional[list[dict[str, Any]]] = None
    results: Optional[list[dict[str, Any]]] = None
    phase: Optional[str] = None
    index: Optional[int] = None
    full_content: Optional[str] = None
    full_reasoning: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def chunk(cls, content: str) -> "ProtocolEvent":
        return cls(type=ProtocolEventType.CHUNK, content=content)

    @classmethod
    def tool_calls(cls, calls: list[dict[str, Any]]) -> "ProtocolEvent":
        return cls(type=ProtocolEventType.TOOL_CALLS, calls=calls)

    @classmethod
    def tool_results(cls, results: list[dict[str, Any]]) -> "ProtocolEvent":
        return cls(type=ProtocolEventType.TOOL_RESULTS, results=results)

    @classmethod
    def phase_marker(cls, phase: Phase, index: int) -> "ProtocolEvent":
        return cls(type=ProtocolEventType.PHASE, phase=phase.value, index=index)

    @classmethod
    def done(cls, full_content: str, full_reasoning: Optional[str] = None) -> "ProtocolEvent":
        return cls(
            type=ProtocolEventType.DONE,
            full_content=full_content,
            full_reasoning=full_reasoning or None,
        )

    @classmethod
    def failure(cls, error: str) -> "ProtocolEvent":
        return cls(type=ProtocolEventType.ERROR, error=error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.type == ProtocolEventType.CHUNK:
            data["content"] = self.content
        elif self.type == ProtocolEventType.TOOL_CALLS:
            data["calls"] = self.calls or []
        elif self.type == ProtocolEventType.TOOL_RESULTS:
            data["results"] = self.results or []
        elif self.type == ProtocolEventType.PHASE:
            data["phase"] = self.phase
            data["index"] = self.index
        elif self.type == ProtocolEventType.DONE:
            data["fullContent"] = self.full_content or ""
            if self.full_reasoning:
                data["fullReasoning"] = self.full_reasoning
        elif self.type == ProtocolEventType.ERROR:
            data["error"] = self.error
        return data


# ---------------------------------------------------------------------------
# Per-turn State
# ---------------------------------------------------------------------------


@dataclass
class PhaseState:
    """Mutable state of one turn, owned by the phase cycle controller."""

    messages: list[dict[str, str]] = field(default_factory=list)
    phase_index: int = 0
    cycle_index: int = 0
    blocked_signatures: set[str] = field(default_factory=set)
    duplicate_attempt_count: int = 0
    skipped_attempt_count: int = 0
    search_execution_count: int = 0
    done_emitted: bool = False
    final_content: str = ""
    final_reasoning: str = ""

    def inject_system_message(self, content: str) -> None:
        self.messages.append({"role": "system", "content": content})
