"""
phaseloop - Streaming tool-call assembly.

LLM backends stream tool calls as fragments: an ``id`` and ``index`` on the
first delta, then argument text growing over later deltas. Some backends
send true increments, others re-send the whole argument string each time.
``ToolCallAssembler`` merges both kinds into complete ``ToolCall`` objects.

Usage:
    ```python
    assembler = ToolCallAssembler()
    async for event in stream:
        if event.tool_calls:
            assembler.merge(event.tool_calls)
            call = assembler.find_first_complete()
            if call:
                break
    ```
"""

import json
from dataclasses import replace
from typing import Any, Iterable, Optional, Union

from .exceptions import ValidationError
from .models import FunctionFragment, ToolCall, ToolCallFragment

FragmentInput = Union[ToolCallFragment, dict[str, Any]]


def merge_arguments(
    existing: Optional[str],
    incoming: Optional[str],
    incremental: bool = False,
) -> tuple[Optional[str], bool]:
    """Safe-append ``incoming`` argument text onto ``existing``.

    Returns the merged text and whether the entry is now known to stream
    true increments. A prefix-extension in either direction keeps the longer
    string (re-sent argument text); anything else is concatenated and marks
    the entry incremental, after which fragments are always appended.
    """
    if not incoming:
        return existing, incremental
    if not existing:
        return incoming, incremental
    if incremental:
        return existing + incoming, True
    if incoming.startswith(existing):
        return incoming, False
    if existing.startswith(incoming):
        return existing, False
    return existing + incoming, True


def merge_fragment(
    existing: Optional[ToolCallFragment],
    patch: ToolCallFragment,
    incremental: bool = False,
) -> tuple[ToolCallFragment, bool]:
    """Shallow-merge ``patch`` into ``existing``; arguments use safe append."""
    if existing is None:
        return replace(patch, function=replace(patch.function)), incremental

    arguments, incremental = merge_arguments(
        existing.function.arguments, patch.function.arguments, incremental
    )
    merged = ToolCallFragment(
        index=patch.index if patch.index is not None else existing.index,
        id=patch.id or existing.id,
        type=patch.type or existing.type,
        function=FunctionFragment(
            name=patch.function.name or existing.function.name,
            arguments=arguments,
        ),
    )
    return merged, incremental


def is_complete(fragment: ToolCallFragment) -> bool:
    """True when the name is non-empty and the arguments parse as JSON."""
    name = fragment.function.name
    arguments = fragment.function.arguments
    if not isinstance(name, str) or not name.strip():
        return False
    if not isinstance(arguments, str) or not arguments.strip():
        return False
    try:
        json.loads(arguments)
    except ValueError:
        return False
    return True


class ToolCallAssembler:
    """Merges streamed tool-call fragments for one Action phase.

    Fragments are keyed by ``id`` when present, else through an
    ``index -> id`` side table, else by the index itself as a temporary key.
    A temporary entry is re-keyed in place once its id shows up, so
    insertion order (the tie-break for ``find_first_complete``) is kept.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ToolCallFragment] = {}
        self._index_to_id: dict[int, str] = {}
        self._incremental: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def fragments(self) -> list[ToolCallFragment]:
        return list(self._entries.values())

    @property
    def calls(self) -> list[dict[str, Any]]:
        """Merged fragments in wire form, for caller visibility."""
        return [entry.to_dict() for entry in self._entries.values()]

    def reset(self) -> None:
        self._entries.clear()
        self._index_to_id.clear()
        self._incremental.clear()

    def merge(self, fragments: Iterable[FragmentInput]) -> list[ToolCallFragment]:
        """Merge incoming fragments and return the current entries in order."""
        for raw in fragments:
            try:
                fragment = ToolCallFragment.from_dict(raw)
            except ValidationError:
                continue

            key = self._resolve_key(fragment)
            if key is None:
                continue

            merged, incremental = merge_fragment(
                self._entries.get(key), fragment, key in self._incremental
            )
            self._entries[key] = merged
            if incremental:
                self._incremental.add(key)

        return self.fragments

    def find_first_complete(self) -> Optional[ToolCall]:
        """Return the first complete tool call in insertion order, if any."""
        for fragment in self._entries.values():
            if is_complete(fragment):
                return self._to_call(fragment)
        return None

    def complete_calls(self) -> list[ToolCall]:
        """All complete tool calls, in insertion order."""
        return [self._to_call(f) for f in self._entries.values() if is_complete(f)]

    @staticmethod
    def _to_call(fragment: ToolCallFragment) -> ToolCall:
        call_id = fragment.id or f"call_{fragment.index if fragment.index is not None else 0}"
        return ToolCall(
            id=call_id,
            name=fragment.function.name.strip(),
            arguments=fragment.function.arguments,
            type="function",
        )

    def _resolve_key(self, fragment: ToolCallFragment) -> Optional[str]:
        index = fragment.index
        if fragment.id:
            if index is not None:
                if index not in self._index_to_id:
                    self._rekey(self._temporary_key(index), fragment.id)
                self._index_to_id[index] = fragment.id
            return fragment.id
        if index is not None:
            if index in self._index_to_id:
                return self._index_to_id[index]
            return self._temporary_key(index)
        return None

    @staticmethod
    def _temporary_key(index: int) -> str:
        return f"#{index}"

    def _rekey(self, old: str, new: str) -> None:
        if old not in self._entries or new in self._entries:
            return
        self._entries = {(new if k == old else k): v for k, v in self._entries.items()}
        if old in self._incremental:
            self._incremental.discard(old)
            self._incremental.add(new)
