"""
phaseloop - Trace side channel.

Protocol and gateway code report orchestration milestones (phase starts,
tool calls, LLM calls) to an optional trace sink. Tracing is best effort:
a failing sink is logged locally and never affects the protocol.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

logger = logging.getLogger("phaseloop.tracing")

SOURCE_SYSTEM = "system"
SOURCE_ASSISTANT = "assistant"
SOURCE_TOOL = "tool"

PHASE_START = "orchestration_phase_start"
PHASE_END = "orchestration_phase_end"
PHASE_TRANSITION = "phase_transition"
LLM_CALL = "llm_call"
ASSISTANT_RESPONSE = "assistant_response"
TOOL_CALL = "tool_call"
TOOL_RESULT = "tool_result"


@dataclass
class TraceEvent:
    """A single side-channel trace record."""

    type: str
    source: str
    project_id: Optional[str] = None
    request_id: Optional[str] = None
    summary: Optional[str] = None
    tool_name: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "source": self.source,
            "projectId": self.project_id,
            "requestId": self.request_id,
            "details": self.details,
        }
        if self.summary is not None:
            data["summary"] = self.summary
        if self.tool_name is not None:
            data["toolName"] = self.tool_name
        return data


class TraceSink(Protocol):
    """Anything with a ``log_event`` method; sync or async."""

    def log_event(self, event: TraceEvent) -> Any: ...


async def log_trace(sink: Optional[TraceSink], event: TraceEvent) -> None:
    """Send ``event`` to ``sink``, swallowing any failure.

    Awaits the sink's result when it is awaitable. Failures are written to
    the local diagnostic logger only.
    """
    if sink is None or not callable(getattr(sink, "log_event", None)):
        return
    try:
        result = sink.log_event(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("Trace sink failed for %s: %s", event.type, e)
