"""Chat-completion chunk parsing and tool-call reassembly.

parse_chunk() maps one decoded ``data:`` payload to a Delta. The
DeltaAggregator turns a sequence of Deltas into finalized content blocks:
text is passed through as it arrives, tool calls are buffered per index
and only surface once the turn's finish marker closes them.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from open_agent.api.models import ContentBlock, TextBlock, ToolUseBlock
from open_agent.errors import ApiError, ProtocolDecodeError

logger = logging.getLogger(__name__)


@dataclass
class ToolCallDelta:
    """One fragment of a streamed tool call."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class Delta:
    """Normalized content of one chat-completion chunk."""

    text: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


@dataclass
class _Accumulator:
    index: int
    id: str = ""
    name: str = ""
    parts: list[str] = field(default_factory=list)

    @property
    def arguments(self) -> str:
        return "".join(self.parts)


def parse_chunk(data: dict[str, Any]) -> Delta | None:
    """Parse a chat-completion chunk into a Delta.

    Only the first choice is read. Returns None for chunks that carry
    nothing (role-only preambles, empty keepalives).
    """
    if not isinstance(data, dict):
        raise ProtocolDecodeError(f"Expected a JSON object chunk, got {type(data).__name__}")

    if "error" in data and data["error"]:
        error = data["error"]
        if not isinstance(error, dict):
            error = {"message": str(error)}
        return Delta(error=error)

    usage = data.get("usage") or None
    choices = data.get("choices") or []
    if not choices:
        return Delta(usage=usage) if usage else None

    choice = choices[0] or {}
    delta = choice.get("delta") or {}
    finish_reason = choice.get("finish_reason") or None

    tool_calls: list[ToolCallDelta] = []
    for position, raw in enumerate(delta.get("tool_calls") or []):
        if not isinstance(raw, dict):
            raise ProtocolDecodeError(f"Expected a tool call object, got {type(raw).__name__}")
        index = raw.get("index", position)
        # bool is an int subclass
        if not isinstance(index, int) or isinstance(index, bool):
            raise ProtocolDecodeError(f"Invalid tool call index: {index!r}")
        function = raw.get("function") or {}
        if not isinstance(function, dict):
            raise ProtocolDecodeError(f"Expected a function object, got {type(function).__name__}")
        tool_calls.append(
            ToolCallDelta(
                index=index,
                id=raw.get("id") or "",
                name=function.get("name") or "",
                arguments=function.get("arguments") or "",
            )
        )

    text = delta.get("content") or ""
    if not text and not tool_calls and finish_reason is None and usage is None:
        return None
    return Delta(
        text=text,
        tool_calls=tool_calls,
        finish_reason=finish_reason,
        usage=usage,
    )


class DeltaAggregator:
    """Reassembles one assistant turn from streamed deltas.

    Accumulator entries are keyed by the tool call's positional index. The
    first non-empty id and name win; argument fragments are concatenated in
    arrival order and parsed as JSON only when the turn finishes.
    """

    def __init__(self) -> None:
        self._entries: dict[int, _Accumulator] = {}
        self.finish_reason: str | None = None
        self.usage: dict[str, Any] | None = None

    @property
    def done(self) -> bool:
        return self.finish_reason is not None

    @property
    def open_indices(self) -> list[int]:
        return sorted(self._entries)

    def feed(self, delta: Delta) -> list[ContentBlock]:
        """Consume one delta, return blocks that are final as a result."""
        if delta.error is not None:
            self.discard()
            message = delta.error.get("message") or "unknown error"
            code = delta.error.get("code")
            status = code if isinstance(code, int) else None
            raise ApiError(f"Stream error: {message}", status_code=status, error=delta.error)

        if delta.usage:
            self.usage = delta.usage

        blocks: list[ContentBlock] = []
        if delta.text:
            blocks.append(TextBlock(delta.text))

        for fragment in delta.tool_calls:
            entry = self._entries.get(fragment.index)
            if entry is None:
                entry = self._entries[fragment.index] = _Accumulator(fragment.index)
            if fragment.id and not entry.id:
                entry.id = fragment.id
            if fragment.name and not entry.name:
                entry.name = fragment.name
            if fragment.arguments:
                entry.parts.append(fragment.arguments)

        if delta.finish_reason is not None:
            self.finish_reason = delta.finish_reason
            blocks.extend(self._finalize())
        return blocks

    def finish(self) -> list[ContentBlock]:
        """Called at end of stream.

        Open tool calls without a finish marker are a decode error. A
        text-only stream that just stops is accepted.
        """
        if self._entries and not self.done:
            indices = self.open_indices
            self.discard()
            raise ProtocolDecodeError(
                f"Stream ended with unfinished tool calls at indices {indices}"
            )
        if not self.done:
            logger.debug("Stream ended without a finish_reason")
        return []

    def discard(self) -> None:
        """Drop open accumulator entries without finalizing them."""
        if self._entries:
            logger.debug("Discarding %d open tool-call accumulators", len(self._entries))
        self._entries.clear()

    def _finalize(self) -> list[ToolUseBlock]:
        entries = [self._entries[i] for i in sorted(self._entries)]
        self._entries.clear()

        blocks: list[ToolUseBlock] = []
        for entry in entries:
            if not entry.name:
                raise ProtocolDecodeError(f"Tool call at index {entry.index} has no name")
            buffer = entry.arguments
            if buffer.strip():
                try:
                    arguments = json.loads(buffer)
                except json.JSONDecodeError as e:
                    raise ProtocolDecodeError(
                        f"Invalid JSON arguments for tool call {entry.name!r}: {e}",
                        tool=entry.name,
                        arguments=buffer,
                    ) from e
            else:
                arguments = {}
            blocks.append(
                ToolUseBlock(
                    id=entry.id or f"call_{entry.index}",
                    name=entry.name,
                    input=arguments,
                )
            )
        return blocks
