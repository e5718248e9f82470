"""Tests for coba.prepare: filtering, trimming and the tool-result rewrite."""

from coba.messages import (
    AIMessage,
    ErrorMessage,
    HumanMessage,
    SystemMessage,
    ToolCall,
    ToolProgressMessage,
    ToolResultMessage,
)
from coba.prepare import (
    estimate_tokens,
    group_into_turns,
    prepare,
    trim_by_count,
    trim_by_tokens,
)


def _tool_turn(call_id, name="readFile", content="ok"):
    tc = ToolCall(call_id, name, {"fileName": "a.txt"})
    return [
        AIMessage(tool_calls=[tc]),
        ToolProgressMessage(tool_call=tc, status="success", content=content),
        ToolResultMessage(tool_call_id=call_id, name=name, content=content),
    ]


def _history():
    return [
        HumanMessage("first question"),
        *_tool_turn("c1"),
        AIMessage("first answer"),
        HumanMessage("second question"),
        *_tool_turn("c2"),
        AIMessage("second answer"),
    ]


class TestVisibility:
    def test_ui_entries_dropped(self, make_session):
        messages = [
            HumanMessage("hi"),
            ErrorMessage("ERROR: boom"),
            AIMessage(""),
            *_tool_turn("c1"),
        ]
        out = prepare(messages, make_session(), system_prompt="sys")
        assert isinstance(out[0], SystemMessage)
        assert out[0].text == "sys"
        assert [type(m) for m in out[1:]] == [HumanMessage, AIMessage, ToolResultMessage]

    def test_fresh_system_prompt_each_call(self, make_session):
        out = prepare([SystemMessage("stale"), HumanMessage("hi")], make_session(), system_prompt="sys")
        assert [m.text for m in out] == ["sys", "hi"]

    def test_builds_prompt_from_session(self, make_session):
        out = prepare([HumanMessage("hi")], make_session())
        assert "--- Project Context ---" in out[0].text


class TestGrouping:
    def test_tool_calls_grouped_with_results(self):
        tc1, tc2 = ToolCall("a", "readFile"), ToolCall("b", "listDirectory")
        messages = [
            HumanMessage("q"),
            AIMessage(tool_calls=[tc1, tc2]),
            ToolResultMessage("a", "readFile", "1"),
            ToolResultMessage("b", "listDirectory", "2"),
            AIMessage("done"),
        ]
        groups = group_into_turns(messages)
        assert [len(g) for g in groups] == [1, 3, 1]


class TestTrimming:
    def test_count_keeps_groups_whole(self):
        history = [m for m in _history() if not isinstance(m, ToolProgressMessage)]
        trimmed = trim_by_count(history, 4)
        # Newest groups: answer (1) + tool group (2) + human (1).
        assert trimmed[0].text == "second question"
        assert len(trimmed) == 4
        assert isinstance(trimmed[1], AIMessage) and trimmed[1].tool_calls
        assert isinstance(trimmed[2], ToolResultMessage)

    def test_count_never_splits_a_group(self):
        history = [m for m in _history() if not isinstance(m, ToolProgressMessage)]
        trimmed = trim_by_count(history, 2)
        for i, msg in enumerate(trimmed):
            if isinstance(msg, ToolResultMessage):
                assert isinstance(trimmed[i - 1], AIMessage) and trimmed[i - 1].tool_calls

    def test_last_human_always_kept(self):
        messages = [HumanMessage("x" * 4000)]
        assert trim_by_tokens(messages, 10) == messages
        assert trim_by_count(messages, 0) == messages

    def test_unlimited(self):
        history = _history()
        assert trim_by_count(history, None) is history
        assert trim_by_tokens(history, None) is history

    def test_zero_budget_still_trims(self):
        messages = [HumanMessage("old"), AIMessage("reply"), HumanMessage("new")]
        assert trim_by_tokens(messages, 0) == [messages[2]]

    def test_token_budget(self, make_session):
        messages = [HumanMessage("word " * 300), AIMessage("ok"), HumanMessage("latest")]
        budget = estimate_tokens(messages[1]) + estimate_tokens(messages[2])
        assert trim_by_tokens(messages, budget) == messages[1:]

    def test_context_size_accounts_for_system_prompt(self, make_session):
        session = make_session(context_size=60)
        messages = [HumanMessage("word " * 100), AIMessage("ok"), HumanMessage("latest")]
        out = prepare(messages, session, system_prompt="short system prompt")
        assert [m.text for m in out[1:]] == ["ok", "latest"]

    def test_idempotent(self, make_session):
        session = make_session(max_messages=5)
        once = prepare(_history(), session, system_prompt="sys")
        twice = prepare(once[1:], session, system_prompt="sys")
        assert twice[1:] == once[1:]
        assert len(once) == 6

    def _mid_turn(self, body="a"):
        tc1 = ToolCall("c1", "readFile", {"fileName": "a.txt"})
        tc2 = ToolCall("c2", "readFile", {"fileName": "b.txt"})
        return [
            HumanMessage("hello"),
            AIMessage("hi there"),
            HumanMessage("read a and b"),
            AIMessage(tool_calls=[tc1, tc2]),
            ToolResultMessage("c1", "readFile", body),
            ToolResultMessage("c2", "readFile", "b"),
        ]

    def test_count_keeps_current_tool_turn(self):
        messages = self._mid_turn()
        assert trim_by_count(messages, 2) == messages[2:]

    def test_tokens_keep_current_tool_turn(self, make_session):
        messages = self._mid_turn(body="line\n" * 500)
        out = prepare(messages, make_session(context_size=50), system_prompt="sys")
        assert out[1:] == messages[2:]

    def test_result_is_a_suffix(self):
        messages = [
            HumanMessage("q1"),
            AIMessage("x " * 400),
            HumanMessage("q2"),
            AIMessage("short"),
            HumanMessage("q3"),
        ]
        budget = sum(estimate_tokens(m) for m in messages[2:]) + estimate_tokens(messages[0])
        trimmed = trim_by_tokens(messages, budget)
        # The first question fits the budget but sits behind a reply that does not.
        assert trimmed == messages[2:]


class TestToolTransform:
    def test_results_become_ai_text(self, make_session):
        out = prepare(
            _tool_turn("c1", content="file body"),
            make_session(),
            system_prompt="sys",
            transform_tool_messages=True,
        )
        assert not any(isinstance(m, ToolResultMessage) for m in out)
        assert out[-1].text == "Result of tool call readFile:\n\nfile body"

    def test_empty_result_placeholder(self, make_session):
        out = prepare(
            _tool_turn("c1", content=""),
            make_session(),
            system_prompt="sys",
            transform_tool_messages=True,
        )
        assert out[-1].text.endswith("ERROR: No content returned from tool.")
