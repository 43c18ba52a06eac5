"""
phaseloop - Canonical tool-call signatures for duplicate detection.

Two tool calls that differ only in JSON key order, ``None`` values, or
optional parameters set to their default must produce the same signature.
Defaults are declared per action in ``CANONICAL_RULES``; actions without a
rule only get key ordering and ``None`` stripping.
"""

import json
import logging
import posixpath
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .exceptions import MalformedToolCallError
from .models import ToolCall

logger = logging.getLogger("phaseloop.signatures")

SEARCH_ACTIONS = frozenset({"search_files"})


@dataclass(frozen=True)
class CanonicalRule:
    """Outcome-equivalence rules for one ``(tool, action)`` pair.

    Attributes:
        defaults: Parameters whose value equals the declared default are
            dropped from the signature.
        path_keys: Parameters normalized as POSIX paths (``./src/`` -> ``src``).
        ignored_keys: Parameters that never affect the outcome.
    """

    defaults: Mapping[str, Any] = field(default_factory=dict)
    path_keys: frozenset = frozenset()
    ignored_keys: frozenset = frozenset()


CANONICAL_RULES: dict[tuple[str, str], CanonicalRule] = {
    ("FileSystemTool", "list_files"): CanonicalRule(
        defaults={"path": ".", "recursive": False, "no_ignore": False, "include_hidden": False},
        path_keys=frozenset({"path"}),
    ),
    ("FileSystemTool", "search_files"): CanonicalRule(
        defaults={"path": ".", "no_ignore": False, "case_sensitive": False, "file_pattern": "*"},
        path_keys=frozenset({"path"}),
    ),
    ("FileSystemTool", "read_file"): CanonicalRule(path_keys=frozenset({"path"})),
    ("DatabaseTool", "list_subtasks_by_status"): CanonicalRule(defaults={"limit": 50}),
    ("DatabaseTool", "search_subtasks_by_keyword"): CanonicalRule(defaults={"limit": 20}),
}

_NO_RULE = CanonicalRule()


def split_function_name(name: Any) -> tuple[str, str]:
    """Split ``Tool_action`` at the first underscore.

    ``"FileSystemTool_list_files"`` -> ``("FileSystemTool", "list_files")``.
    A name without an underscore yields an empty action.
    """
    if not isinstance(name, str) or not name.strip():
        raise MalformedToolCallError("Tool call has no function name")
    tool, _, action = name.strip().partition("_")
    if not tool:
        raise MalformedToolCallError(f"Tool call name has no tool prefix: {name}")
    return tool, action


def is_search_call(tool_call: ToolCall) -> bool:
    try:
        _, action = split_function_name(tool_call.name)
    except MalformedToolCallError:
        return False
    return action in SEARCH_ACTIONS


def normalize_path(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    cleaned = value.strip().replace("\\", "/")
    if not cleaned:
        return "."
    return posixpath.normpath(cleaned)


def _equals_default(value: Any, default: Any) -> bool:
    # keep False and 0 distinct
    if isinstance(value, bool) != isinstance(default, bool):
        return False
    return value == default


class SignatureBuilder:
    """Computes canonical, order-independent signatures for tool calls.

    ``build`` returns ``None`` rather than raising when a call cannot be
    parsed; callers treat that as "cannot deduplicate".
    """

    def __init__(self, rules: Optional[Mapping[tuple[str, str], CanonicalRule]] = None) -> None:
        self._rules = dict(CANONICAL_RULES if rules is None else rules)

    def rule_for(self, tool_name: str, action: str) -> CanonicalRule:
        return self._rules.get((tool_name, action), _NO_RULE)

    def normalize_params(
        self, tool_name: str, action: str, params: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Drop ``None``, ignored and default-valued parameters; normalize paths."""
        rule = self.rule_for(tool_name, action)
        normalized: dict[str, Any] = {}
        for key, value in params.items():
            if value is None or key in rule.ignored_keys:
                continue
            if key in rule.path_keys:
                value = normalize_path(value)
            if key in rule.defaults and _equals_default(value, rule.defaults[key]):
                continue
            normalized[key] = value
        return normalized

    def build(
        self,
        tool_name: str,
        action: str,
        params: Any,
        scope_id: Optional[str],
    ) -> Optional[str]:
        """Return the canonical signature string, or ``None`` if unparseable."""
        if not isinstance(tool_name, str) or not tool_name:
            return None
        if isinstance(params, str):
            try:
                params = json.loads(params) if params.strip() else {}
            except ValueError:
                return None
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return None

        try:
            return json.dumps(
                {
                    "tool": tool_name,
                    "action": action or "",
                    "params": self.normalize_params(tool_name, action or "", params),
                    "scope": scope_id,
                },
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=False,
            )
        except (TypeError, ValueError):
            return None

    def for_tool_call(self, tool_call: ToolCall, scope_id: Optional[str]) -> Optional[str]:
        """Signature of a complete tool call; ``None`` when it is malformed."""
        try:
            tool_name, action = split_function_name(tool_call.name)
            params = json.loads(tool_call.arguments or "{}")
        except (MalformedToolCallError, ValueError, TypeError) as e:
            logger.debug("Cannot compute signature for %r: %s", tool_call.name, e)
            return None
        return self.build(tool_name, action, params, scope_id)
