"""Context-window helpers: token estimation and history truncation.

Nothing here runs automatically. Callers decide between exchanges when to
measure and when to cut the history.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from open_agent.api.models import (
    ImageBlock,
    Message,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

# Characters of overhead per message for role formatting (~2 tokens)
_ROLE_OVERHEAD_CHARS = 8
# Characters of overhead per conversation (~4 tokens)
_CONVERSATION_OVERHEAD_CHARS = 16


def _block_chars(block: Any) -> int:
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolUseBlock):
        return len(block.name) + len(block.id) + len(json.dumps(block.input))
    if isinstance(block, ToolResultBlock):
        content = block.content if isinstance(block.content, str) else json.dumps(block.content)
        return len(block.tool_call_id) + len(content)
    if isinstance(block, ImageBlock):
        return len(block.url)
    return 0


def _message_chars(message: Message) -> int:
    return _ROLE_OVERHEAD_CHARS + sum(_block_chars(b) for b in message.content)


def estimate_tokens(messages: Sequence[Message]) -> int:
    """Rough token count using the chars/4 heuristic.

    Good to roughly +/-20% for English text. Returns 0 for an empty history.
    """
    if not messages:
        return 0
    total = _CONVERSATION_OVERHEAD_CHARS
    for message in messages:
        total += _message_chars(message)
    return (total + 3) // 4


def truncate_messages(
    messages: Sequence[Message],
    keep: int,
    preserve_system: bool = True,
) -> list[Message]:
    """Return the last ``keep`` messages, optionally pinning a leading system turn.

    With ``preserve_system`` and a system message at index 0, the result is
    that message plus the ``keep`` most recent ones.
    """
    if len(messages) <= keep:
        return list(messages)
    has_system = preserve_system and messages[0].role == Role.SYSTEM
    recent = list(messages[len(messages) - keep:]) if keep > 0 else []
    if has_system:
        return [messages[0]] + recent
    return recent


def is_approaching_limit(
    messages: Sequence[Message],
    limit: int,
    margin: float = 0.9,
) -> bool:
    """True when the estimate exceeds ``limit * margin``."""
    return estimate_tokens(messages) > int(limit * margin)


class TokenEstimator:
    """Estimator that calibrates its chars-per-token ratio from usage reports.

    Starts at chars/4 and moves toward the observed ratio with an
    exponential moving average (alpha=0.1) each time calibrate() is fed the
    prompt_tokens a response reported.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25
        self._samples: int = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, messages: Sequence[Message]) -> int:
        chars = sum(_message_chars(m) for m in messages)
        return int(chars * self._ratio)

    def calibrate(self, messages: Sequence[Message], prompt_tokens: int) -> None:
        chars = sum(_message_chars(m) for m in messages)
        if chars <= 0 or prompt_tokens <= 0:
            return
        observed = prompt_tokens / chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1
