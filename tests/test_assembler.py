"""
Tests for streaming tool-call assembly.

Covers:
  - Safe-append argument merging (re-sent and incremental streams)
  - Key resolution by id, index side table and temporary index keys
  - First-complete selection and id fallback
"""

import json

import pytest

from phaseloop.assembler import ToolCallAssembler, is_complete, merge_arguments
from phaseloop.models import FunctionFragment, ToolCallFragment


def frag(index=None, id=None, name=None, arguments=None):
    data = {"function": {}}
    if index is not None:
        data["index"] = index
    if id is not None:
        data["id"] = id
    if name is not None:
        data["function"]["name"] = name
    if arguments is not None:
        data["function"]["arguments"] = arguments
    return data


# ---------------------------------------------------------------------------
# merge_arguments
# ---------------------------------------------------------------------------


class TestMergeArguments:
    def test_empty_incoming_keeps_existing(self):
        assert merge_arguments('{"a"', "") == ('{"a"', False)
        assert merge_arguments('{"a"', None) == ('{"a"', False)

    def test_empty_existing_takes_incoming(self):
        assert merge_arguments(None, '{"a"') == ('{"a"', False)

    def test_resent_prefix_extension_keeps_longer(self):
        assert merge_arguments('{"path"', '{"path": "src"}') == ('{"path": "src"}', False)

    def test_shorter_resend_keeps_existing(self):
        assert merge_arguments('{"path": "src"}', '{"path"') == ('{"path": "src"}', False)

    def test_true_increment_concatenates_and_marks_incremental(self):
        merged, incremental = merge_arguments('{"path": ', '"src"}')
        assert merged == '{"path": "src"}'
        assert incremental is True

    def test_incremental_entry_always_appends(self):
        merged, incremental = merge_arguments('{"a": {', '{"b": 1}}', incremental=True)
        assert merged == '{"a": {{"b": 1}}'
        assert incremental is True


# ---------------------------------------------------------------------------
# ToolCallAssembler
# ---------------------------------------------------------------------------


class TestToolCallAssembler:
    def test_incremental_fragments_by_index(self):
        assembler = ToolCallAssembler()
        assembler.merge([frag(index=0, id="call_1", name="FileSystemTool_list_files", arguments="")])
        assembler.merge([frag(index=0, arguments='{"path": ')])
        assert assembler.find_first_complete() is None

        assembler.merge([frag(index=0, arguments='"src"}')])
        call = assembler.find_first_complete()

        assert call is not None
        assert call.id == "call_1"
        assert call.name == "FileSystemTool_list_files"
        assert json.loads(call.arguments) == {"path": "src"}
        assert len(assembler) == 1

    def test_resent_cumulative_arguments(self):
        assembler = ToolCallAssembler()
        assembler.merge([frag(index=0, id="c1", name="DatabaseTool_get", arguments='{"id"')])
        assembler.merge([frag(index=0, arguments='{"id": 4')])
        assembler.merge([frag(index=0, arguments='{"id": 42}')])

        call = assembler.find_first_complete()
        assert call.arguments == '{"id": 42}'

    def test_temporary_index_key_rekeyed_when_id_arrives(self):
        assembler = ToolCallAssembler()
        assembler.merge([frag(index=0, name="A_run", arguments="{")])
        assembler.merge([frag(index=1, id="second", name="B_run", arguments="{}")])
        assembler.merge([frag(index=0, id="first", arguments="}")])

        entries = assembler.fragments
        assert [e.id for e in entries] == ["first", "second"]
        call = assembler.find_first_complete()
        assert call.id == "first"
        assert call.name == "A_run"

    def test_first_complete_in_insertion_order(self):
        assembler = ToolCallAssembler()
        assembler.merge(
            [
                frag(index=0, id="a", name="A_run", arguments='{"x": '),
                frag(index=1, id="b", name="B_run", arguments="{}"),
            ]
        )
        assert assembler.find_first_complete().id == "b"

        assembler.merge([frag(index=0, arguments="1}")])
        assert assembler.find_first_complete().id == "a"
        assert [c.id for c in assembler.complete_calls()] == ["a", "b"]

    def test_missing_id_falls_back_to_index(self):
        assembler = ToolCallAssembler()
        assembler.merge([frag(index=3, name="A_run", arguments="{}")])
        assert assembler.find_first_complete().id == "call_3"

    def test_fragment_without_id_or_index_is_ignored(self):
        assembler = ToolCallAssembler()
        assembler.merge([frag(name="A_run", arguments="{}"), "not a fragment"])
        assert len(assembler) == 0

    def test_name_keeps_last_non_empty(self):
        assembler = ToolCallAssembler()
        assembler.merge([frag(index=0, id="x", name="A_run")])
        assembler.merge([frag(index=0, name="", arguments="{}")])
        assert assembler.find_first_complete().name == "A_run"

    def test_nested_arguments_split_anywhere(self):
        full = '{"filters": {"status": "open", "tags": ["a", "b"]}, "limit": 5}'
        for split in range(1, len(full)):
            assembler = ToolCallAssembler()
            assembler.merge([frag(index=0, id="c", name="DatabaseTool_query", arguments=full[:split])])
            assembler.merge([frag(index=0, arguments=full[split:])])
            call = assembler.find_first_complete()
            assert call is not None, split
            assert json.loads(call.arguments) == json.loads(full)

    def test_calls_and_reset(self):
        assembler = ToolCallAssembler()
        assembler.merge([frag(index=0, id="x", name="A_run", arguments="{}")])
        assert assembler.calls == [
            {"index": 0, "id": "x", "function": {"name": "A_run", "arguments": "{}"}}
        ]
        assembler.reset()
        assert assembler.calls == []
        assert assembler.find_first_complete() is None

    def test_accepts_fragment_objects(self):
        assembler = ToolCallAssembler()
        assembler.merge(
            [ToolCallFragment(index=0, id="x", function=FunctionFragment("A_run", '{"k": 1}'))]
        )
        assert assembler.find_first_complete().arguments == '{"k": 1}'


class TestIsComplete:
    @pytest.mark.parametrize(
        "name,arguments,expected",
        [
            ("A_run", "{}", True),
            ("A_run", '{"a": 1', False),
            ("", "{}", False),
            ("A_run", "", False),
            ("A_run", None, False),
        ],
    )
    def test_completeness(self, name, arguments, expected):
        fragment = ToolCallFragment(index=0, function=FunctionFragment(name, arguments))
        assert is_complete(fragment) is expected
