"""Tests for coba.stream: chunk folding and partial argument parsing."""

from coba.messages import AIMessage, ToolCall, ToolCallChunk
from coba.stream import (
    accumulate,
    finalize,
    has_tool_calls,
    parse_partial_json,
    preview_tool_calls,
)


def _fold(chunks):
    partial = None
    for c in chunks:
        partial = accumulate(partial, c)
    return partial


class TestAccumulate:
    def test_text_concatenates_and_keeps_first_id(self):
        a, b = AIMessage(text="Hel"), AIMessage(text="lo")
        merged = _fold([a, b])
        assert merged.text == "Hello"
        assert merged.id == a.id

    def test_inputs_not_mutated(self):
        first = AIMessage(tool_call_chunks=[ToolCallChunk(0, "c1", "readFile", '{"file')])
        second = AIMessage(tool_call_chunks=[ToolCallChunk(0, None, None, 'Name": "a"}')])
        accumulate(accumulate(None, first), second)
        assert first.tool_call_chunks[0].args == '{"file'
        assert second.tool_call_chunks[0].id is None

    def test_tool_chunks_merged_by_index(self):
        merged = _fold(
            [
                AIMessage(tool_call_chunks=[ToolCallChunk(0, "c1", "readFile", '{"fileName"')]),
                AIMessage(tool_call_chunks=[ToolCallChunk(1, "c2", "listDirectory", "")]),
                AIMessage(tool_call_chunks=[ToolCallChunk(0, None, None, ': "a.txt"}')]),
                AIMessage(tool_call_chunks=[ToolCallChunk(1, None, None, '{"directory": "."}')]),
            ]
        )
        assert [c.index for c in merged.tool_call_chunks] == [0, 1]
        assert merged.tool_call_chunks[0].args == '{"fileName": "a.txt"}'
        assert merged.tool_call_chunks[1].name == "listDirectory"
        assert has_tool_calls(merged)

    def test_complete_tool_calls_appended(self):
        tc = ToolCall("c9", "readFile", {"fileName": "x"})
        merged = _fold([AIMessage(text="a"), AIMessage(tool_calls=[tc])])
        assert merged.tool_calls == [tc]


class TestFinalize:
    def test_parses_arguments(self):
        partial = _fold(
            [
                AIMessage(text="Let me look."),
                AIMessage(tool_call_chunks=[ToolCallChunk(0, "c1", "readFile", '{"fileName":')]),
                AIMessage(tool_call_chunks=[ToolCallChunk(0, None, None, ' "src/a.py"}')]),
            ]
        )
        final = finalize(partial)
        assert final.text == "Let me look."
        assert final.tool_calls == [ToolCall("c1", "readFile", {"fileName": "src/a.py"})]
        assert final.tool_call_chunks == []
        assert final.id == partial.id

    def test_invalid_json_kept_raw(self):
        final = finalize(AIMessage(tool_call_chunks=[ToolCallChunk(0, "c1", "readFile", "{oops")]))
        tc = final.tool_calls[0]
        assert tc.args == {}
        assert tc.invalid_args == "{oops"

    def test_non_object_args_rejected(self):
        final = finalize(AIMessage(tool_call_chunks=[ToolCallChunk(0, "c1", "readFile", "[1, 2]")]))
        assert final.tool_calls[0].invalid_args == "[1, 2]"

    def test_missing_id_generated(self):
        final = finalize(AIMessage(tool_call_chunks=[ToolCallChunk(0, None, "readFile", "{}")]))
        assert final.tool_calls[0].id.startswith("call_")

    def test_empty_args_mean_no_arguments(self):
        final = finalize(AIMessage(tool_call_chunks=[ToolCallChunk(0, "c1", "listDirectory", "")]))
        assert final.tool_calls[0].args == {}
        assert final.tool_calls[0].invalid_args is None


class TestPartialJson:
    def test_complete_object(self):
        assert parse_partial_json('{"a": 1}') == {"a": 1}

    def test_open_string_closed(self):
        assert parse_partial_json('{"fileName": "sr') == {"fileName": "sr"}

    def test_nested_containers_closed(self):
        assert parse_partial_json('{"args": ["-l", "-a"') == {"args": ["-l", "-a"]}

    def test_trailing_comma(self):
        assert parse_partial_json('{"a": 1,') == {"a": 1}

    def test_dangling_key_not_parsable_yet(self):
        assert parse_partial_json('{"a": ') is None

    def test_empty(self):
        assert parse_partial_json("") == {}

    def test_preview_uses_placeholder_ids(self):
        partial = AIMessage(tool_call_chunks=[ToolCallChunk(0, None, "writeFile", '{"fileName": "a')])
        (preview,) = preview_tool_calls(partial)
        assert preview.id == "pending-0"
        assert preview.args == {"fileName": "a"}
