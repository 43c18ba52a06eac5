"""
phaseloop - Custom exceptions for error handling.
"""

from typing import Any, Optional


class PhaseLoopError(Exception):
    """Base exception for all phaseloop errors."""

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PhaseLoopError):
    """Raised when an execution context or configuration is invalid."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field


class LLMClientError(PhaseLoopError):
    """Raised when the LLM streaming client fails (network, HTTP, timeout).

    Fatal to the current turn.
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause


class ToolError(PhaseLoopError):
    """Base class for tool resolution and invocation errors."""

    pass


class ToolNotFoundError(ToolError):
    """Raised when a tool name is not present in the registry."""

    def __init__(self, tool: str, **kwargs: Any) -> None:
        super().__init__(f'Tool "{tool}" not found in tool registry', **kwargs)
        self.tool = tool


class ToolActionError(ToolError):
    """Raised when a tool exists but the requested action is not callable."""

    def __init__(self, tool: str, action: str, **kwargs: Any) -> None:
        super().__init__(f'Tool "{tool}" action "{action}" is not callable', **kwargs)
        self.tool = tool
        self.action = action


class MalformedToolCallError(ToolError):
    """Raised when a tool call's name or arguments cannot be parsed."""

    pass
