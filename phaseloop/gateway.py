"""
phaseloop - Tool execution gateway.

Every tool invocation from the protocol goes through
``ToolExecutionGateway.execute``: the call is parsed, rate limited, checked
against recent identical calls, then run with retries. The gateway never
raises for a tool failure; it returns a ``ToolExecutionResult`` the LLM can
read.

Error codes carried in ``ToolExecutionResult.error``:

- ``MALFORMED_TOOL_CALL``: name or arguments could not be parsed.
- ``TOOL_CALL_TOO_FREQUENT``: rate window exhausted for this call.
- ``DUPLICATE_BLOCKED``: same request already ran this call inside the
  soft-stop window.

A successful reuse of a recent result carries ``DUPLICATE_TOOL_CALL`` in
``result["warning"]``.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .cache import ToolCallCache
from .exceptions import MalformedToolCallError, ToolActionError, ToolNotFoundError
from .models import ExecutionContext, ToolCall, ToolExecutionResult, _utcnow_iso
from .registry import ToolRegistry
from .signatures import SignatureBuilder, split_function_name
from .tracing import SOURCE_TOOL, TOOL_CALL, TOOL_RESULT, TraceEvent, log_trace

logger = logging.getLogger("phaseloop.gateway")

MALFORMED_TOOL_CALL = "MALFORMED_TOOL_CALL"
TOOL_CALL_TOO_FREQUENT = "TOOL_CALL_TOO_FREQUENT"
DUPLICATE_TOOL_CALL = "DUPLICATE_TOOL_CALL"
DUPLICATE_BLOCKED = "DUPLICATE_BLOCKED"

SUMMARY_MAX_CHARS = 500

_NON_RETRYABLE_MESSAGE = re.compile(r"not found|does not exist|no such|ENOENT", re.IGNORECASE)


def _env_float_ms(name: str, default_seconds: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default_seconds
    return int(value) / 1000.0


@dataclass
class GatewaySettings:
    """Gateway limits.

    Attributes:
        rate_window_seconds: Trailing window for rate limiting and result
            reuse. Default 10s.
        max_calls_per_window: Invocations of one call allowed per window.
            Default 3.
        softstop_window_seconds: Per-request window in which a repeated call
            is refused outright. 0 disables it.
        max_attempts: Attempts per execution, including the first.
        retry_base_delay: First backoff delay in seconds.
        cache_max_entries: Upper bound on tracked calls.
    """

    rate_window_seconds: float = 10.0
    max_calls_per_window: int = 3
    softstop_window_seconds: float = 0.0
    max_attempts: int = 3
    retry_base_delay: float = 0.25
    cache_max_entries: int = 1024

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        """Create settings from environment variables."""
        return cls(
            rate_window_seconds=_env_float_ms("TOOL_RATE_WINDOW_MS", 10.0),
            max_calls_per_window=int(os.getenv("TOOL_RATE_MAX_CALLS", "3")),
            softstop_window_seconds=_env_float_ms("TOOL_SOFTSTOP_WINDOW_MS", 0.0),
            max_attempts=int(os.getenv("TOOL_MAX_ATTEMPTS", "3")),
        )


class RetryStrategy(str, Enum):
    """Backoff shape between attempts."""

    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


def default_is_retryable(error: BaseException) -> bool:
    """Resolution, parse and missing-resource failures are permanent."""
    if isinstance(error, (ToolNotFoundError, ToolActionError, MalformedToolCallError, TypeError)):
        return False
    return not _NON_RETRYABLE_MESSAGE.search(str(error))


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 2.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    is_retryable: Callable[[BaseException], bool] = field(default=default_is_retryable)

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        if self.strategy == RetryStrategy.NONE:
            return 0.0
        if self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay
        elif self.strategy == RetryStrategy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay * (2 ** (attempt - 1))
        return min(delay, self.max_delay)


def _summarize(result: Any) -> str:
    try:
        text = json.dumps(result, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        text = str(result)
    if len(text) > SUMMARY_MAX_CHARS:
        return text[:SUMMARY_MAX_CHARS] + "..."
    return text


class ToolExecutionGateway:
    """Rate-limited, deduplicating, retrying tool executor.

    Args:
        cache: Shared ``ToolCallCache``. One is created from ``settings``
            when omitted.
        settings: ``GatewaySettings``; defaults to ``GatewaySettings()``.
        retry_policy: Overrides the policy derived from ``settings``.
        signatures: ``SignatureBuilder`` used for rate keys.
        trace_sink: Fallback sink when the context carries none.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        cache: Optional[ToolCallCache] = None,
        settings: Optional[GatewaySettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        signatures: Optional[SignatureBuilder] = None,
        trace_sink: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or GatewaySettings()
        # an empty cache is falsy; only a missing one gets the default
        if cache is None:
            cache = ToolCallCache(
                ttl_seconds=max(self.settings.rate_window_seconds, self.settings.softstop_window_seconds),
                max_entries=self.settings.cache_max_entries,
            )
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=max(1, self.settings.max_attempts),
            base_delay=self.settings.retry_base_delay,
        )
        self.signatures = signatures or SignatureBuilder()
        self._trace_sink = trace_sink
        self._sleep = sleep

    async def execute(
        self,
        tools: ToolRegistry,
        tool_call: ToolCall,
        context: ExecutionContext,
    ) -> ToolExecutionResult:
        """Run one complete tool call and return its structured outcome."""
        sink = context.trace_sink or self._trace_sink

        try:
            tool_name, action = split_function_name(tool_call.name)
            params = json.loads(tool_call.arguments or "{}")
            if not isinstance(params, dict):
                raise MalformedToolCallError("Tool call arguments must be a JSON object")
        except (MalformedToolCallError, ValueError, TypeError) as e:
            logger.warning("Malformed tool call %r: %s", tool_call.name, e)
            return ToolExecutionResult(
                tool_call_id=tool_call.id,
                tool_name=str(tool_call.name or ""),
                success=False,
                error=MALFORMED_TOOL_CALL,
                details={"message": str(e)},
                attempts=0,
            )

        label = f"{tool_name}.{action}" if action else tool_name
        key = self.signatures.build(tool_name, action, params, context.project_id)
        if key is None:
            return ToolExecutionResult(
                tool_call_id=tool_call.id,
                tool_name=label,
                success=False,
                error=MALFORMED_TOOL_CALL,
                details={"message": "Tool call arguments cannot be canonicalized"},
                attempts=0,
            )

        await log_trace(
            sink,
            TraceEvent(
                type=TOOL_CALL,
                source=SOURCE_TOOL,
                project_id=context.project_id,
                request_id=context.request_id,
                tool_name=label,
                summary=f"Calling {label}",
                details={"toolCallId": tool_call.id, "arguments": params},
            ),
        )

        result = self._admit(key, label, tool_call, context)
        if result is None:
            result = await self._run_with_retries(tools, tool_name, action, params, label, tool_call, context)
            if result.success:
                self.cache.store_success(key, result.result, result.timestamp)
                if self.settings.softstop_window_seconds > 0:
                    self.cache.mark_softstop(context.request_id, key)

        await log_trace(
            sink,
            TraceEvent(
                type=TOOL_RESULT,
                source=SOURCE_TOOL,
                project_id=context.project_id,
                request_id=context.request_id,
                tool_name=label,
                summary=f"{label} {'succeeded' if result.success else 'failed'}",
                details=result.to_dict(),
            ),
        )
        return result

    async def execute_all(
        self,
        tools: ToolRegistry,
        tool_calls: list[ToolCall],
        context: ExecutionContext,
    ) -> list[ToolExecutionResult]:
        """Execute calls one after another, preserving order."""
        results = []
        for tool_call in tool_calls:
            results.append(await self.execute(tools, tool_call, context))
        return results

    def _admit(
        self,
        key: str,
        label: str,
        tool_call: ToolCall,
        context: ExecutionContext,
    ) -> Optional[ToolExecutionResult]:
        """Apply rate limit, soft-stop and reuse; ``None`` means execute."""
        settings = self.settings
        self.cache.prune()
        with self.cache.lock_for(key):
            recent = self.cache.recent_invocations(key, settings.rate_window_seconds)
            if len(recent) >= settings.max_calls_per_window:
                oldest = min(recent)
                cooldown = max(0.0, settings.rate_window_seconds - (self.cache.now() - oldest))
                logger.warning(
                    "Rate limited %s: %d calls in %.1fs", label, len(recent), settings.rate_window_seconds
                )
                return ToolExecutionResult(
                    tool_call_id=tool_call.id,
                    tool_name=label,
                    success=False,
                    error=TOOL_CALL_TOO_FREQUENT,
                    details={
                        "cooldown_seconds": round(cooldown, 3),
                        "window_seconds": settings.rate_window_seconds,
                        "max_calls": settings.max_calls_per_window,
                    },
                    attempts=0,
                )
            self.cache.record_invocation(key)

            if settings.softstop_window_seconds > 0 and self.cache.softstop_hit(
                context.request_id, key, settings.softstop_window_seconds
            ):
                logger.info("Soft-stop blocked repeated %s in request %s", label, context.request_id)
                return ToolExecutionResult(
                    tool_call_id=tool_call.id,
                    tool_name=label,
                    success=False,
                    error=DUPLICATE_BLOCKED,
                    details={
                        "message": "This call already ran in this request. Use its previous result.",
                        "window_seconds": settings.softstop_window_seconds,
                    },
                    attempts=0,
                )

            previous = self.cache.last_success(key, settings.rate_window_seconds)
            if previous is not None:
                logger.info("Reusing recent result for %s", label)
                return ToolExecutionResult(
                    tool_call_id=tool_call.id,
                    tool_name=label,
                    success=True,
                    result={
                        "warning": DUPLICATE_TOOL_CALL,
                        "message": (
                            "You already called this tool with the same parameters a moment ago. "
                            "Reuse the previous result instead of calling it again."
                        ),
                        "previous_timestamp": previous.iso_timestamp,
                        "previous_summary": _summarize(previous.result),
                    },
                    attempts=0,
                    cached=True,
                )
        return None

    async def _run_with_retries(
        self,
        tools: ToolRegistry,
        tool_name: str,
        action: str,
        params: dict[str, Any],
        label: str,
        tool_call: ToolCall,
        context: ExecutionContext,
    ) -> ToolExecutionResult:
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                value = await tools.invoke(tool_name, action, params, context)
            except Exception as e:
                retryable = policy.is_retryable(e)
                if not retryable or attempt >= policy.max_attempts:
                    logger.info("%s failed after %d attempt(s): %s", label, attempt, e)
                    return ToolExecutionResult(
                        tool_call_id=tool_call.id,
                        tool_name=label,
                        success=False,
                        error=str(e) or type(e).__name__,
                        details={"type": type(e).__name__, "retryable": retryable},
                        attempts=attempt,
                    )
                delay = policy.delay_for(attempt)
                logger.warning(
                    "%s attempt %d/%d failed: %s; retrying in %.2fs",
                    label,
                    attempt,
                    policy.max_attempts,
                    e,
                    delay,
                )
                await self._sleep(delay)
                continue

            logger.info("%s succeeded on attempt %d", label, attempt)
            return ToolExecutionResult(
                tool_call_id=tool_call.id,
                tool_name=label,
                success=True,
                result=value,
                attempts=attempt,
                timestamp=_utcnow_iso(),
            )
