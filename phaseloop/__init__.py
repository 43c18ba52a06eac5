"""
phaseloop - Tool-calling orchestration for streaming LLM conversations.

Runs a turn as alternating Action and Tool phases: the LLM streams text and
tool calls, one complete call per phase is executed through a rate-limited,
deduplicating gateway, and its result is fed back until the model answers.
"""

from .assembler import ToolCallAssembler, merge_arguments
from .cache import ToolCallCache
from .exceptions import (
    LLMClientError,
    MalformedToolCallError,
    PhaseLoopError,
    ToolActionError,
    ToolError,
    ToolNotFoundError,
    ValidationError,
)
from .gateway import (
    DUPLICATE_BLOCKED,
    DUPLICATE_TOOL_CALL,
    MALFORMED_TOOL_CALL,
    TOOL_CALL_TOO_FREQUENT,
    GatewaySettings,
    RetryPolicy,
    RetryStrategy,
    ToolExecutionGateway,
)
from .models import (
    ExecutionContext,
    FunctionFragment,
    Message,
    Mode,
    Phase,
    PhaseState,
    ProtocolConfig,
    ProtocolEvent,
    ProtocolEventType,
    StreamEvent,
    ToolCall,
    ToolCallFragment,
    ToolExecutionResult,
)
from .protocols import (
    PhaseCycleController,
    ProtocolStrategy,
    StandardProtocol,
    TwoStageProtocol,
    create_protocol,
)
from .registry import ToolRegistry, ToolSpec
from .signatures import CANONICAL_RULES, CanonicalRule, SignatureBuilder, split_function_name
from .streaming import sse_stream, to_sse
from .tracing import TraceEvent, TraceSink, log_trace
from .translator import ProtocolEventTranslator, open_stream

__version__ = "0.1.0"

__all__ = [
    # Assembly & signatures
    "ToolCallAssembler",
    "merge_arguments",
    "SignatureBuilder",
    "CanonicalRule",
    "CANONICAL_RULES",
    "split_function_name",
    # Gateway
    "ToolExecutionGateway",
    "ToolCallCache",
    "GatewaySettings",
    "RetryPolicy",
    "RetryStrategy",
    "MALFORMED_TOOL_CALL",
    "TOOL_CALL_TOO_FREQUENT",
    "DUPLICATE_TOOL_CALL",
    "DUPLICATE_BLOCKED",
    # Protocols
    "ProtocolStrategy",
    "TwoStageProtocol",
    "PhaseCycleController",
    "StandardProtocol",
    "create_protocol",
    "ProtocolEventTranslator",
    "open_stream",
    # Models
    "ExecutionContext",
    "Message",
    "Mode",
    "Phase",
    "PhaseState",
    "ProtocolConfig",
    "ProtocolEvent",
    "ProtocolEventType",
    "StreamEvent",
    "ToolCall",
    "ToolCallFragment",
    "FunctionFragment",
    "ToolExecutionResult",
    # Tools & tracing
    "ToolRegistry",
    "ToolSpec",
    "TraceEvent",
    "TraceSink",
    "log_trace",
    # Transport
    "to_sse",
    "sse_stream",
    # Exceptions
    "PhaseLoopError",
    "ValidationError",
    "LLMClientError",
    "ToolError",
    "ToolNotFoundError",
    "ToolActionError",
    "MalformedToolCallError",
]
