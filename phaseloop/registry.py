"""
phaseloop - Tool registry.

Maps tool names to tool objects exposing action methods, and carries the
function definitions offered to the LLM. Function names follow the
``<Tool>_<action>`` convention (``FileSystemTool_list_files`` resolves to
``registry["FileSystemTool"].list_files``).

Usage:
    ```python
    registry = ToolRegistry(
        {"FileSystemTool": FileSystemTool(root)},
        specs=[
            ToolSpec(
                name="FileSystemTool_list_files",
                description="List files under a directory.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": {"type": "string"},
                        "recursive": {"type": "boolean", "default": False},
                    },
                    "required": ["path"],
                },
            )
        ],
    )
    ```
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Optional, Union

from .exceptions import ToolActionError, ToolNotFoundError
from .models import Mode


@dataclass
class ToolSpec:
    """Definition of one tool action the LLM may call.

    Provides the LLM with a description and parameter schema so it knows
    *what* the action does and *what arguments* it accepts.
    """

    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {
            "type": "object",
            "properties": {},
            "required": [],
        }
    )

    def to_schema(self) -> dict:
        """Return the definition as a JSON-schema dict for the LLM."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def tools_to_openai_format(specs: list[ToolSpec]) -> list[dict]:
    """Convert tool definitions to OpenAI function-calling format."""
    return [{"type": "function", "function": spec.to_schema()} for spec in specs]


class ToolRegistry:
    """Name -> tool object mapping used by the execution gateway."""

    def __init__(
        self,
        tools: Optional[Mapping[str, Any]] = None,
        specs: Optional[list[ToolSpec]] = None,
    ) -> None:
        self._tools: dict[str, Any] = dict(tools or {})
        self._specs: list[ToolSpec] = list(specs or [])

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    @property
    def specs(self) -> list[ToolSpec]:
        return list(self._specs)

    def get(self, name: str) -> Any:
        return self._tools.get(name)

    def register(
        self,
        name: str,
        tool: Any,
        specs: Optional[list[ToolSpec]] = None,
    ) -> None:
        self._tools[name] = tool
        if specs:
            self._specs.extend(specs)

    def resolve(self, tool: str, action: str) -> Callable[..., Any]:
        """Return the callable for ``tool.action``.

        Raises:
            ToolNotFoundError: The tool is not registered.
            ToolActionError: The tool has no public callable ``action``.
        """
        instance = self._tools.get(tool)
        if instance is None:
            raise ToolNotFoundError(tool)

        if not action:
            if callable(instance):
                return instance
            raise ToolActionError(tool, action)

        if action.startswith("_"):
            raise ToolActionError(tool, action)

        fn = getattr(instance, action, None)
        if fn is None and isinstance(instance, Mapping):
            fn = instance.get(action)
        if not callable(fn):
            raise ToolActionError(tool, action)
        return fn

    async def invoke(
        self,
        tool: str,
        action: str,
        params: dict[str, Any],
        context: Any = None,
    ) -> Any:
        """Call ``tool.action(**params, context=context)``; sync actions are supported."""
        fn = self.resolve(tool, action)
        kwargs = dict(params)
        kwargs["context"] = context
        result = fn(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def for_mode(self, mode: Union[Mode, str]) -> "ToolRegistry":
        """Tools available in ``mode``; plan mode exposes none."""
        if Mode(mode) == Mode.PLAN:
            return ToolRegistry()
        return self

    def definitions(self) -> list[dict]:
        """Function definitions in OpenAI format, for the LLM client."""
        return tools_to_openai_format(self._specs)
