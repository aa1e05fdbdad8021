"""
Tests for conversation history.
"""

from src.turnloop.history import ConversationHistory, Message, ToolCallRecord


def tool_exchange(turn_id, call_id="call_1"):
    return [
        Message(
            role="assistant",
            content="",
            turn_id=turn_id,
            tool_calls=[ToolCallRecord(id=call_id, name="get_current_time", arguments={"timezone": "UTC"})],
        ),
        Message(role="tool", content='{"time": "12:00"}', turn_id=turn_id, tool_call_id=call_id, name="get_current_time"),
    ]


class TestConversationHistory:
    """Tests for ConversationHistory."""

    def test_system_prompt_first(self):
        history = ConversationHistory(system_prompt="Be brief.")
        history.add_user_message("Hello", turn_id=1)
        messages = history.get_messages()
        assert messages[0] == {"role": "system", "content": "Be brief."}
        assert messages[1] == {"role": "user", "content": "Hello"}

    def test_no_system_prompt(self):
        history = ConversationHistory()
        history.add_user_message("Hello")
        assert history.get_messages() == [{"role": "user", "content": "Hello"}]

    def test_order_preserved(self):
        history = ConversationHistory()
        history.add_user_message("one", turn_id=1)
        history.add_assistant_message("two", turn_id=1)
        history.add_user_message("three", turn_id=2)
        assert [m.content for m in history.messages] == ["one", "two", "three"]
        assert len(history) == 3

    def test_tool_exchange_openai_format(self):
        history = ConversationHistory()
        history.add_user_message("What time is it?", turn_id=1)
        history.add_messages(tool_exchange(1))
        messages = history.get_messages()

        assistant = messages[1]
        assert assistant["role"] == "assistant"
        assert assistant["content"] is None
        assert assistant["tool_calls"][0]["id"] == "call_1"
        assert assistant["tool_calls"][0]["function"]["name"] == "get_current_time"
        assert assistant["tool_calls"][0]["function"]["arguments"] == '{"timezone": "UTC"}'

        tool = messages[2]
        assert tool == {"role": "tool", "content": '{"time": "12:00"}', "tool_call_id": "call_1"}

    def test_interrupted_flag_in_snapshot(self):
        history = ConversationHistory()
        history.add_assistant_message("It is", turn_id=3, interrupted=True)
        snapshot = history.snapshot()
        assert snapshot[0]["interrupted"] is True
        assert snapshot[0]["turn_id"] == 3

    def test_snapshot_is_a_copy(self):
        history = ConversationHistory()
        history.add_user_message("Hello")
        snapshot = history.snapshot()
        snapshot.append({"role": "user", "content": "injected"})
        assert len(history) == 1

    def test_rolling_window(self):
        history = ConversationHistory(max_messages=4)
        for i in range(10):
            history.add_user_message(f"msg {i}")
        assert [m.content for m in history.messages] == ["msg 6", "msg 7", "msg 8", "msg 9"]

    def test_trim_never_orphans_tool_results(self):
        history = ConversationHistory(max_messages=3)
        history.add_user_message("q1", turn_id=1)
        history.add_messages(tool_exchange(1))
        history.add_assistant_message("a1", turn_id=1)
        history.add_user_message("q2", turn_id=2)
        # Window of 3 would start at the tool message; it is dropped with its call.
        assert history.messages[0].role != "tool"
        assert [m.content for m in history.messages] == ["a1", "q2"]

    def test_clear(self):
        history = ConversationHistory(system_prompt="x")
        history.add_user_message("Hello")
        history.clear()
        assert len(history) == 0
        assert history.get_messages() == [{"role": "system", "content": "x"}]
