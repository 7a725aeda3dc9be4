"""Messages, content blocks and their chat-completions wire format.

Messages are immutable once built; the conversation store replaces them
wholesale instead of editing them in place.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Union

from open_agent.errors import InvalidInputError


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ImageDetail(StrEnum):
    LOW = "low"
    HIGH = "high"
    AUTO = "auto"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ImageBlock:
    """Image input, either a remote URL or an inline ``data:`` URI."""

    url: str
    detail: ImageDetail = ImageDetail.AUTO

    @classmethod
    def from_url(cls, url: str, detail: ImageDetail = ImageDetail.AUTO) -> ImageBlock:
        """Validate and wrap an http(s) URL or a base64 data URI."""
        if not url:
            raise InvalidInputError("Image URL cannot be empty")
        if url.startswith(("http://", "https://")):
            return cls(url=url, detail=ImageDetail(detail))
        if url.startswith("data:"):
            if ";base64," not in url:
                raise InvalidInputError("Data URI must be in format: data:image/TYPE;base64,DATA")
            mime_type = url[len("data:"):].split(";", 1)[0]
            if not mime_type.startswith("image/"):
                raise InvalidInputError("Data URI MIME type must start with 'image/'")
            return cls(url=url, detail=ImageDetail(detail))
        raise InvalidInputError("Image URL must start with http://, https://, or data:")

    @classmethod
    def from_base64(
        cls,
        data: str,
        mime_type: str,
        detail: ImageDetail = ImageDetail.AUTO,
    ) -> ImageBlock:
        if not data:
            raise InvalidInputError("Base64 image data cannot be empty")
        if not mime_type:
            raise InvalidInputError("MIME type cannot be empty")
        if not mime_type.startswith("image/"):
            raise InvalidInputError(
                "MIME type must start with 'image/' (e.g., 'image/png', 'image/jpeg')"
            )
        return cls(url=f"data:{mime_type};base64,{data}", detail=ImageDetail(detail))


@dataclass(frozen=True)
class ToolUseBlock:
    """A finalized tool invocation requested by the model."""

    id: str
    name: str
    input: Any


@dataclass(frozen=True)
class ToolResultBlock:
    tool_call_id: str
    tool_name: str
    content: Any
    is_error: bool = False


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


@dataclass(frozen=True)
class Message:
    """One role-tagged turn in the conversation.

    - content: ordered content blocks.
    - tool_call_id: set on ``tool`` turns, names the call being answered.
    - meta: local annotations (e.g. ``interrupted``); never sent on the wire.
    """

    role: Role
    content: tuple[ContentBlock, ...] = ()
    tool_call_id: str | None = None
    meta: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(Role.SYSTEM, (TextBlock(text),))

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(Role.USER, (TextBlock(text),))

    @classmethod
    def user_with_blocks(cls, blocks: list[ContentBlock]) -> Message:
        return cls(Role.USER, tuple(blocks))

    @classmethod
    def user_with_image(
        cls,
        text: str,
        image_url: str,
        detail: ImageDetail = ImageDetail.AUTO,
    ) -> Message:
        return cls(Role.USER, (TextBlock(text), ImageBlock.from_url(image_url, detail)))

    @classmethod
    def user_with_base64_image(
        cls,
        text: str,
        data: str,
        mime_type: str,
        detail: ImageDetail = ImageDetail.AUTO,
    ) -> Message:
        return cls(Role.USER, (TextBlock(text), ImageBlock.from_base64(data, mime_type, detail)))

    @classmethod
    def assistant(cls, blocks: list[ContentBlock], **meta: Any) -> Message:
        return cls(Role.ASSISTANT, tuple(blocks), meta=dict(meta))

    @classmethod
    def tool_result(
        cls,
        tool_call_id: str,
        tool_name: str,
        content: Any,
        is_error: bool = False,
    ) -> Message:
        block = ToolResultBlock(tool_call_id, tool_name, content, is_error)
        return cls(Role.TOOL, (block,), tool_call_id=tool_call_id)

    @property
    def text(self) -> str:
        """Concatenated text of all TextBlocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def with_text(self, text: str) -> Message:
        """Copy with every TextBlock collapsed into one block holding ``text``.

        Non-text blocks (images) keep their relative order after the text.
        """
        others = tuple(b for b in self.content if not isinstance(b, TextBlock))
        return replace(self, content=(TextBlock(text),) + others)


# ---------------------------------------------------------------------------
# Wire format (OpenAI chat-completions)
# ---------------------------------------------------------------------------


def message_to_payload(message: Message) -> dict[str, Any]:
    """Serialize one Message into a chat-completions ``messages[]`` entry."""
    payload: dict[str, Any] = {"role": str(message.role)}

    if message.role == Role.TOOL:
        result = next(
            (b for b in message.content if isinstance(b, ToolResultBlock)),
            None,
        )
        payload["tool_call_id"] = message.tool_call_id
        payload["content"] = _result_to_text(result.content if result else "")
        return payload

    if message.role == Role.ASSISTANT:
        tool_uses = message.tool_uses
        text = message.text
        payload["content"] = text if text or not tool_uses else None
        if tool_uses:
            payload["tool_calls"] = [
                {
                    "id": tu.id,
                    "type": "function",
                    "function": {
                        "name": tu.name,
                        "arguments": json.dumps(tu.input, ensure_ascii=False),
                    },
                }
                for tu in tool_uses
            ]
        return payload

    images = [b for b in message.content if isinstance(b, ImageBlock)]
    if not images:
        payload["content"] = message.text
        return payload

    # Vision input goes out as content parts, preserving block order
    parts: list[dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            parts.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageBlock):
            parts.append({
                "type": "image_url",
                "image_url": {"url": block.url, "detail": str(block.detail)},
            })
    payload["content"] = parts
    return payload


def _result_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)
