"""Lifecycle hooks: ordered, short-circuiting policy checks.

Three points in an exchange are hookable:

- user_prompt_submit: once per send(), before the first request.
- pre_tool_use: before each automatic tool execution.
- post_tool_use: after each automatic tool result is stored.

Handlers for a point run in registration order. A handler returns None to
defer to the next one, or a HookDecision; the first decision wins and the
remaining handlers are skipped. Handlers may be plain functions or
coroutines. Exceptions raised by a handler are not swallowed.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from open_agent.api.models import Message

logger = logging.getLogger(__name__)


class HookEvent(StrEnum):
    USER_PROMPT_SUBMIT = "user_prompt_submit"
    PRE_TOOL_USE = "pre_tool_use"
    POST_TOOL_USE = "post_tool_use"


class HookAction(StrEnum):
    CONTINUE = "continue"
    BLOCK = "block"
    MODIFY_INPUT = "modify_input"
    MODIFY_PROMPT = "modify_prompt"


@dataclass(frozen=True)
class HookDecision:
    """Outcome of a hook handler.

    For post_tool_use, ``modify_input`` carries the replacement tool result.
    """

    action: HookAction
    reason: str | None = None
    value: Any = None

    @classmethod
    def proceed(cls) -> HookDecision:
        return cls(HookAction.CONTINUE)

    @classmethod
    def block(cls, reason: str) -> HookDecision:
        return cls(HookAction.BLOCK, reason=reason)

    @classmethod
    def modify_input(cls, value: Any, reason: str) -> HookDecision:
        return cls(HookAction.MODIFY_INPUT, reason=reason, value=value)

    @classmethod
    def modify_prompt(cls, prompt: str, reason: str) -> HookDecision:
        return cls(HookAction.MODIFY_PROMPT, reason=reason, value=prompt)

    @property
    def blocked(self) -> bool:
        return self.action == HookAction.BLOCK


@dataclass(frozen=True)
class UserPromptSubmitEvent:
    prompt: str
    history: tuple[Message, ...] = ()


@dataclass(frozen=True)
class PreToolUseEvent:
    tool_name: str
    tool_input: Any
    tool_use_id: str
    history: tuple[Message, ...] = ()


@dataclass(frozen=True)
class PostToolUseEvent:
    tool_name: str
    tool_input: Any
    tool_use_id: str
    tool_result: Any
    is_error: bool = False
    history: tuple[Message, ...] = ()


HookPayload = Union[UserPromptSubmitEvent, PreToolUseEvent, PostToolUseEvent]
HookHandler = Callable[[Any], Union[HookDecision, None, Awaitable[HookDecision | None]]]


class Hooks:
    """Ordered handler lists per lifecycle point."""

    def __init__(self) -> None:
        self._handlers: dict[HookEvent, list[HookHandler]] = defaultdict(list)

    def on(self, event: HookEvent | str, handler: HookHandler) -> Hooks:
        """Append a handler for ``event``. Returns self for chaining."""
        event = HookEvent(event)
        self._handlers[event].append(handler)
        logger.debug(
            "Registered %s hook: %s",
            event,
            getattr(handler, "__qualname__", repr(handler)),
        )
        return self

    def handlers(self, event: HookEvent | str) -> list[HookHandler]:
        return list(self._handlers.get(HookEvent(event), []))

    def __len__(self) -> int:
        return sum(len(h) for h in self._handlers.values())

    async def _run(self, event: HookEvent, payload: HookPayload) -> HookDecision | None:
        for handler in self._handlers.get(event, []):
            decision = handler(payload)
            if inspect.isawaitable(decision):
                decision = await decision
            if decision is not None:
                logger.debug(
                    "%s hook %s decided %s",
                    event,
                    getattr(handler, "__qualname__", repr(handler)),
                    decision.action,
                )
                return decision
        return None

    async def run_user_prompt_submit(self, payload: UserPromptSubmitEvent) -> HookDecision | None:
        return await self._run(HookEvent.USER_PROMPT_SUBMIT, payload)

    async def run_pre_tool_use(self, payload: PreToolUseEvent) -> HookDecision | None:
        return await self._run(HookEvent.PRE_TOOL_USE, payload)

    async def run_post_tool_use(self, payload: PostToolUseEvent) -> HookDecision | None:
        return await self._run(HookEvent.POST_TOOL_USE, payload)

    def __repr__(self) -> str:
        counts = ", ".join(f"{e}={len(self._handlers.get(e, []))}" for e in HookEvent)
        return f"Hooks({counts})"
