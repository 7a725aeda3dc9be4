"""Tests for the conversation store."""

import pytest

from open_agent.api.conversation import ConversationStore
from open_agent.api.models import Message, TextBlock, ToolResultBlock, ToolUseBlock
from open_agent.errors import InvalidInputError


def _tool_turn(*ids: str) -> Message:
    return Message.assistant([ToolUseBlock(i, "add", {}) for i in ids])


class TestCausalOrder:
    def test_tool_result_without_call_rejected(self):
        store = ConversationStore([Message.user("hi")])
        with pytest.raises(InvalidInputError, match="No pending tool call"):
            store.append(Message.tool_result("call_1", "add", 3))

    def test_tool_result_answers_pending_call(self):
        store = ConversationStore([Message.user("hi"), _tool_turn("call_1")])
        store.append(Message.tool_result("call_1", "add", 3))
        assert len(store) == 3

    def test_call_answered_only_once(self):
        store = ConversationStore([Message.user("hi"), _tool_turn("call_1")])
        store.append(Message.tool_result("call_1", "add", 3))
        with pytest.raises(InvalidInputError):
            store.append(Message.tool_result("call_1", "add", 4))

    def test_pending_tool_calls(self):
        store = ConversationStore([Message.user("hi"), _tool_turn("a", "b")])
        assert [tu.id for tu in store.pending_tool_calls()] == ["a", "b"]
        store.append(Message.tool_result("a", "add", 1))
        assert [tu.id for tu in store.pending_tool_calls()] == ["b"]
        store.append(Message.tool_result("b", "add", 2))
        assert store.pending_tool_calls() == []

    def test_stale_calls_not_pending_after_new_user_turn(self):
        store = ConversationStore([Message.user("hi"), _tool_turn("a")])
        store.append(Message.tool_result("a", "add", 1))
        store.append(Message.assistant([TextBlock("done")]))
        store.append(Message.user("again"))
        assert store.pending_tool_calls() == []


class TestMutation:
    def test_replace_tool_result(self):
        store = ConversationStore([Message.user("hi"), _tool_turn("a")])
        store.append(Message.tool_result("a", "add", 1, is_error=True))
        new = store.replace_tool_result("a", {"redacted": True})
        block = new.content[0]
        assert isinstance(block, ToolResultBlock)
        assert block.content == {"redacted": True}
        assert block.is_error
        assert store.last is new

    def test_replace_missing_result(self):
        with pytest.raises(InvalidInputError):
            ConversationStore().replace_tool_result("nope", 1)

    def test_truncate(self):
        store = ConversationStore([Message.system("sys")] + [Message.user(str(i)) for i in range(5)])
        dropped = store.truncate(2)
        assert dropped == 3
        assert [m.text for m in store] == ["sys", "3", "4"]

    def test_clear(self):
        store = ConversationStore([Message.user("hi")])
        store.clear()
        assert len(store) == 0
        assert store.last is None

    def test_messages_snapshot(self):
        store = ConversationStore([Message.user("hi")])
        snapshot = store.messages
        store.append(Message.user("again"))
        assert len(snapshot) == 1
