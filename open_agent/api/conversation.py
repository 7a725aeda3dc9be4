"""Append-only conversation history owned by a single session."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from open_agent.api.models import Message, Role, ToolResultBlock, ToolUseBlock
from open_agent.context import truncate_messages
from open_agent.errors import InvalidInputError

logger = logging.getLogger(__name__)


class ConversationStore:
    """Ordered sequence of immutable Messages.

    Causal order is enforced on append: a ``tool`` turn must answer a call
    issued by an earlier assistant turn and not answered yet. Besides
    appending, the store can be replaced wholesale (truncation) and a stored
    tool result can be swapped before the next request is built.
    """

    def __init__(self, messages: list[Message] | None = None) -> None:
        self._messages: list[Message] = []
        for message in messages or []:
            self.append(message)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def append(self, message: Message) -> None:
        if message.role == Role.TOOL:
            if not message.tool_call_id:
                raise InvalidInputError("Tool messages need a tool_call_id")
            if message.tool_call_id not in self._unanswered_ids():
                raise InvalidInputError(
                    f"No pending tool call with id {message.tool_call_id!r}"
                )
        self._messages.append(message)

    def pending_tool_calls(self) -> list[ToolUseBlock]:
        """Tool calls of the latest assistant turn that have no result yet."""
        answered: set[str] = set()
        for message in reversed(self._messages):
            if message.role == Role.TOOL and message.tool_call_id:
                answered.add(message.tool_call_id)
            elif message.role == Role.ASSISTANT:
                return [tu for tu in message.tool_uses if tu.id not in answered]
            else:
                break
        return []

    def _unanswered_ids(self) -> set[str]:
        return {tu.id for tu in self.pending_tool_calls()}

    def replace_tool_result(self, tool_call_id: str, content: Any) -> Message:
        """Swap the content of a stored tool result. Returns the new message."""
        for i in range(len(self._messages) - 1, -1, -1):
            message = self._messages[i]
            if message.role == Role.TOOL and message.tool_call_id == tool_call_id:
                old = next(b for b in message.content if isinstance(b, ToolResultBlock))
                new = Message.tool_result(tool_call_id, old.tool_name, content, old.is_error)
                self._messages[i] = new
                return new
        raise InvalidInputError(f"No tool result with id {tool_call_id!r}")

    def truncate(self, keep: int, preserve_system: bool = True) -> int:
        """Keep the ``keep`` most recent messages. Returns how many were dropped."""
        before = len(self._messages)
        self._messages = truncate_messages(self._messages, keep, preserve_system)
        dropped = before - len(self._messages)
        if dropped:
            logger.debug("Truncated history: dropped %d of %d messages", dropped, before)
        return dropped

    def clear(self) -> None:
        self._messages.clear()
