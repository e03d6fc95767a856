import pytest

from tool_relay.exceptions import HistoryError
from tool_relay.history import ConversationHistory
from tool_relay.llm import ToolInvocation


def test_tool_entry_must_follow_invocation():
    history = ConversationHistory()
    history.append("user", "list files")

    with pytest.raises(HistoryError):
        history.append("tool", "a.txt", tool_call_id="call_1")


def test_tool_entry_answers_invocation_once():
    history = ConversationHistory()
    history.append("user", "list files")
    history.append("assistant", "(Executing tools...)", invocations=[ToolInvocation(id="call_1", name="list_directory")])

    assert history.pending_call_ids() == ["call_1"]
    entry = history.append("tool", "a.txt", tool_call_id="call_1")
    assert entry.tool_name == "list_directory"
    assert history.pending_call_ids() == []

    with pytest.raises(HistoryError):
        history.append("tool", "again", tool_call_id="call_1")


def test_only_assistant_may_carry_invocations():
    with pytest.raises(HistoryError):
        ConversationHistory().append("user", "hi", invocations=[ToolInvocation(id="x", name="y")])


def test_unknown_role_rejected():
    with pytest.raises(HistoryError):
        ConversationHistory().append("narrator", "once upon a time")


def test_to_messages_preserves_order_and_invocations():
    history = ConversationHistory()
    invocation = ToolInvocation(id="call_1", name="read_file", arguments={"file_path": "a"})
    history.append("system", "be brief")
    history.append("user", "read a")
    history.append("assistant", "", invocations=[invocation])
    history.append("tool", "contents", tool_call_id="call_1", tool_name="read_file")

    messages = history.to_messages()

    assert [m.role for m in messages] == ["system", "user", "assistant", "tool"]
    assert messages[2].invocations == [invocation]
    assert messages[3].tool_call_id == "call_1"
    assert len(history) == 4
    assert history.to_dict()["messages"][2]["invocations"][0]["name"] == "read_file"
