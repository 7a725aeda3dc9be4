"""Session controller: one conversation against a streaming endpoint.

A Session owns its conversation history, its cancellation token and its
HTTP connection. Usage is pull-based:

    async with Session(options) as session:
        await session.send("What is 2+2?")
        while (block := await session.receive()) is not None:
            ...

send() appends the user turn; receive() returns the next content block or
None at end of turn. With ``auto_execute_tools`` the tool loop runs inside
receive(): tool calls are executed, their results appended, and the request
is re-issued until the model answers in text. In manual mode tool calls are
returned to the caller, who answers them with add_tool_result() and then
calls resume().

Interrupt semantics:
- interrupt() sets the token; any waiting point (next chunk, retry sleep,
  tool handler, hook) raises ExchangeInterrupted and the response is closed.
- Text already surfaced is kept as an assistant turn flagged
  ``meta["interrupted"] = True``.
- Open tool-call accumulators are discarded. Tool calls already stored but
  not answered get a synthetic error result so the history stays valid.
- The session is IDLE afterwards and accepts a new send(). When another
  task is still blocked in receive(), send() and close() wait for that
  receive() to return None first.
- Cancelling the task that awaits receive() (for example with
  ``asyncio.wait_for``) ends the exchange the same way and re-raises
  CancelledError.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import aclosing, contextmanager
from enum import StrEnum
from typing import Any

import httpx

from open_agent.api.aggregator import DeltaAggregator, parse_chunk
from open_agent.api.conversation import ConversationStore
from open_agent.api.framer import MalformedLinePolicy, SSEEvent, SSEFramer
from open_agent.api.models import (
    ContentBlock,
    Message,
    Role,
    TextBlock,
    ToolUseBlock,
    message_to_payload,
)
from open_agent.api.tools import Tool, ToolRegistry
from open_agent.cancellation import CancellationToken
from open_agent.config import AgentOptions
from open_agent.errors import (
    ApiError,
    ExchangeInterrupted,
    InvalidInputError,
    InvalidStateError,
    OpenAgentError,
    PolicyBlockedError,
    ProtocolDecodeError,
    RequestTimeout,
    ToolExecutionError,
    ToolIterationLimitExceeded,
    TransportError,
    UnknownToolError,
)
from open_agent.hooks import (
    HookAction,
    PostToolUseEvent,
    PreToolUseEvent,
    UserPromptSubmitEvent,
)
from open_agent.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    TOOL_EXECUTING = "tool_executing"
    CANCELLED = "cancelled"


@contextmanager
def _translate_http_errors() -> Iterator[None]:
    """Map httpx failures onto the TransportError family."""
    try:
        yield
    except httpx.TimeoutException as e:
        raise RequestTimeout(f"Request timed out: {e}") from e
    except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
        raise TransportError(f"Unusable endpoint: {e}", recoverable=False) from e
    except httpx.RequestError as e:
        raise TransportError(f"HTTP error: {e}") from e


class Session:
    """A stateful conversation with a chat-completions endpoint."""

    def __init__(
        self,
        options: AgentOptions,
        *,
        http_client: httpx.AsyncClient | None = None,
        limiter: asyncio.Semaphore | None = None,
    ) -> None:
        self._options = options
        self._registry = ToolRegistry(options.tools)
        self._hooks = options.hooks
        self._store = ConversationStore()
        self._http = http_client
        self._owns_http = http_client is None
        self._limiter = limiter
        self._token = CancellationToken()
        self._state = SessionState.IDLE
        self._cycle: AsyncIterator[ContentBlock] | None = None
        self._receiving: asyncio.Future[None] | None = None
        self._partial: list[TextBlock] = []
        self._aggregator: DeltaAggregator | None = None
        self._iterations = 0
        self._fatal: TransportError | None = None
        self._last_usage: dict[str, Any] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(self._options.timeout))
            self._owns_http = True
        logger.debug("Session started: model=%s base_url=%s", self._options.model, self._options.base_url)

    async def close(self) -> None:
        """Stop any exchange in flight and release the HTTP client."""
        if self._cycle is not None:
            self._token.cancel()
            await self._abort()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None
        if self._fatal is None:
            self._fatal = TransportError("Session is closed", recoverable=False)
        logger.debug("Session closed")

    async def __aenter__(self) -> Session:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def options(self) -> AgentOptions:
        return self._options

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> tuple[Message, ...]:
        return self._store.messages

    @property
    def cancel_token(self) -> CancellationToken:
        """Token of the current exchange. Safe to hand to other tasks or threads."""
        return self._token

    @property
    def last_usage(self) -> dict[str, Any] | None:
        """Usage block reported by the most recent stream, if any."""
        return self._last_usage

    def get_tool(self, name: str) -> Tool | None:
        return self._registry.lookup(name)

    def clear_history(self) -> None:
        self._require_idle("clear history")
        self._store.clear()

    def truncate_history(self, keep: int, preserve_system: bool = True) -> int:
        self._require_idle("truncate history")
        return self._store.truncate(keep, preserve_system)

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def send(self, prompt: str | Message) -> None:
        """Append a user turn and arm the next exchange.

        Raises InvalidStateError while a previous exchange is undrained or
        manual tool results are missing, and PolicyBlockedError when a
        user_prompt_submit hook refuses the prompt.
        """
        self._raise_if_poisoned()
        if self._token.cancelled:
            await self._abort()
            self._token = CancellationToken()
        if self._cycle is not None:
            raise InvalidStateError("Previous exchange has not been fully received")
        pending = self._store.pending_tool_calls()
        if pending:
            raise InvalidStateError(
                f"Tool results missing for {[tu.id for tu in pending]}; "
                "call add_tool_result() before sending"
            )

        message = Message.user(prompt) if isinstance(prompt, str) else prompt
        if message.role != Role.USER:
            raise InvalidInputError(f"send() takes a user message, got {message.role}")

        decision = await self._hooks.run_user_prompt_submit(
            UserPromptSubmitEvent(prompt=message.text, history=self._store.messages)
        )
        if decision is not None:
            if decision.blocked:
                logger.warning("Prompt blocked by hook: %s", decision.reason)
                raise PolicyBlockedError(decision.reason or "")
            if decision.action == HookAction.MODIFY_PROMPT:
                logger.info("Prompt rewritten by hook: %s", decision.reason)
                message = message.with_text(str(decision.value))

        if self._http is None:
            await self.start()
        self._store.append(message)
        self._iterations = 0
        self._begin()

    async def resume(self) -> None:
        """Re-issue the request after manual tool results, without a new user turn."""
        self._raise_if_poisoned()
        if self._token.cancelled:
            await self._abort()
            self._token = CancellationToken()
        if self._cycle is not None:
            raise InvalidStateError("Previous exchange has not been fully received")
        if self._store.pending_tool_calls():
            raise InvalidStateError("Tool results are still missing")
        last = self._store.last
        if last is None or last.role != Role.TOOL:
            raise InvalidStateError("Nothing to resume: the last turn is not a tool result")
        if self._http is None:
            await self.start()
        self._begin()

    def add_tool_result(self, tool_call_id: str, content: Any, is_error: bool = False) -> None:
        """Answer a tool call surfaced in manual mode."""
        pending = {tu.id: tu for tu in self._store.pending_tool_calls()}
        tool_use = pending.get(tool_call_id)
        if tool_use is None:
            raise InvalidInputError(f"No pending tool call with id {tool_call_id!r}")
        self._store.append(Message.tool_result(tool_call_id, tool_use.name, content, is_error))
        if len(pending) == 1 and self._cycle is None:
            self._state = SessionState.IDLE

    async def receive(self) -> ContentBlock | None:
        """Next content block of the current exchange, or None at end of turn."""
        self._raise_if_poisoned()
        if self._receiving is not None:
            raise InvalidStateError("receive() is already waiting in another task")
        if self._cycle is None:
            return None
        if self._token.cancelled:
            await self._abort()
            return None
        try:
            return await self._step(self._cycle)
        except asyncio.CancelledError:
            # The caller's task was cancelled (e.g. a deadline); the generator is gone
            self._cycle = None
            self._settle("Tool execution cancelled", interrupted=True)
            self._state = SessionState.IDLE
            raise
        except StopAsyncIteration:
            self._cycle = None
            if self._state != SessionState.TOOL_PENDING:
                self._state = SessionState.IDLE
            return None
        except ExchangeInterrupted:
            await self._abort()
            return None
        except Exception as e:
            self._cycle = None
            self._settle(f"Tool execution aborted: {type(e).__name__}", failed=True)
            self._state = SessionState.IDLE
            if isinstance(e, TransportError) and not e.recoverable:
                self._fatal = e
            if isinstance(e, OpenAgentError):
                logger.warning("Exchange failed: %s", e)
            raise

    def interrupt(self) -> bool:
        """Cancel the exchange in flight. No-op when idle or already cancelled."""
        if self._cycle is None and self._state != SessionState.TOOL_PENDING:
            return False
        if not self._token.cancel():
            return False
        logger.info("Exchange interrupted")
        self._state = SessionState.CANCELLED
        return True

    async def stream(self) -> AsyncIterator[ContentBlock]:
        """Drain the current exchange as an async iterator."""
        while (block := await self.receive()) is not None:
            yield block

    async def ask(self, prompt: str | Message) -> list[ContentBlock]:
        """send() followed by a full drain."""
        await self.send(prompt)
        return [block async for block in self.stream()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        self._partial = []
        self._cycle = self._run_exchange()
        self._state = SessionState.STREAMING

    def _raise_if_poisoned(self) -> None:
        if self._fatal is not None:
            raise type(self._fatal)(self._fatal.message, recoverable=False)

    def _require_idle(self, what: str) -> None:
        if self._cycle is not None:
            raise InvalidStateError(f"Cannot {what} while an exchange is in flight")

    async def _step(self, cycle: AsyncIterator[ContentBlock]) -> ContentBlock:
        done = asyncio.get_running_loop().create_future()
        self._receiving = done
        try:
            return await cycle.__anext__()
        finally:
            self._receiving = None
            if not done.done():
                done.set_result(None)

    async def _abort(self) -> None:
        if self._receiving is not None:
            # A receive() in another task is still inside the generator; it
            # observes the cancelled token and settles the store itself.
            await asyncio.shield(self._receiving)
        cycle, self._cycle = self._cycle, None
        self._settle("Tool execution cancelled", interrupted=True)
        self._state = SessionState.IDLE
        if cycle is not None:
            await cycle.aclose()

    def _settle(self, reason: str, **meta: Any) -> None:
        """Leave the store consistent after an exchange ends early."""
        if self._aggregator is not None:
            self._aggregator.discard()
            self._aggregator = None
        for tool_use in self._store.pending_tool_calls():
            self._store.append(
                Message.tool_result(
                    tool_use.id,
                    tool_use.name,
                    {"error": reason, "tool": tool_use.name, "id": tool_use.id},
                    is_error=True,
                )
            )
        if self._partial:
            text = "".join(b.text for b in self._partial)
            self._store.append(Message.assistant([TextBlock(text)], **meta))
            self._partial = []

    def _commit(self, blocks: list[ContentBlock]) -> None:
        self._partial = []
        if blocks:
            self._store.append(Message.assistant(blocks))

    async def _run_exchange(self) -> AsyncIterator[ContentBlock]:
        while True:
            self._state = SessionState.STREAMING
            self._partial = []
            tool_uses: list[ToolUseBlock] = []
            async with aclosing(self._stream_turn()) as turn:
                async for block in turn:
                    if isinstance(block, TextBlock):
                        self._partial.append(block)
                        yield block
                    elif isinstance(block, ToolUseBlock):
                        tool_uses.append(block)

            text = "".join(b.text for b in self._partial)
            text_blocks: list[ContentBlock] = [TextBlock(text)] if text else []

            if not tool_uses:
                self._commit(text_blocks)
                return

            if not self._options.auto_execute_tools:
                self._commit(text_blocks + tool_uses)
                self._state = SessionState.TOOL_PENDING
                for tool_use in tool_uses:
                    yield tool_use
                return

            unknown = [tu.name for tu in tool_uses if tu.name not in self._registry]
            if unknown:
                self._commit(text_blocks)
                raise UnknownToolError(unknown[0])
            if self._iterations >= self._options.max_tool_iterations:
                self._commit(text_blocks)
                raise ToolIterationLimitExceeded(self._options.max_tool_iterations)

            self._commit(text_blocks + tool_uses)
            self._iterations += 1
            self._state = SessionState.TOOL_EXECUTING
            logger.debug(
                "Tool round %d/%d: %s",
                self._iterations,
                self._options.max_tool_iterations,
                [tu.name for tu in tool_uses],
            )
            for tool_use in tool_uses:
                await self._execute_tool_use(tool_use)

    async def _execute_tool_use(self, tool_use: ToolUseBlock) -> None:
        tool_input = tool_use.input
        decision = await self._token.run(
            self._hooks.run_pre_tool_use(
                PreToolUseEvent(
                    tool_name=tool_use.name,
                    tool_input=tool_input,
                    tool_use_id=tool_use.id,
                    history=self._store.messages,
                )
            )
        )
        if decision is not None and decision.blocked:
            logger.warning("Tool %s blocked by hook: %s", tool_use.name, decision.reason)
            self._store.append(
                Message.tool_result(
                    tool_use.id,
                    tool_use.name,
                    {
                        "error": "Tool execution blocked by hook",
                        "reason": decision.reason,
                        "tool": tool_use.name,
                        "id": tool_use.id,
                    },
                    is_error=True,
                )
            )
            return
        if decision is not None and decision.action == HookAction.MODIFY_INPUT:
            logger.info("Tool %s input rewritten by hook: %s", tool_use.name, decision.reason)
            tool_input = decision.value

        is_error = False
        try:
            result = await self._token.run(self._registry.execute(tool_use.name, tool_input))
        except ToolExecutionError as e:
            logger.warning("Tool %s failed: %s", tool_use.name, e)
            result = {"error": str(e), "tool": tool_use.name, "id": tool_use.id}
            is_error = True
        self._store.append(Message.tool_result(tool_use.id, tool_use.name, result, is_error))

        decision = await self._token.run(
            self._hooks.run_post_tool_use(
                PostToolUseEvent(
                    tool_name=tool_use.name,
                    tool_input=tool_input,
                    tool_use_id=tool_use.id,
                    tool_result=result,
                    is_error=is_error,
                    history=self._store.messages,
                )
            )
        )
        if decision is not None and decision.action == HookAction.MODIFY_INPUT:
            logger.info("Tool %s result overridden by hook: %s", tool_use.name, decision.reason)
            self._store.replace_tool_result(tool_use.id, decision.value)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @property
    def _endpoint(self) -> str:
        return f"{self._options.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._options.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if self._options.system_prompt:
            messages.append({"role": "system", "content": self._options.system_prompt})
        messages.extend(message_to_payload(m) for m in self._store)

        payload: dict[str, Any] = {
            "model": self._options.model,
            "messages": messages,
            "stream": True,
            "max_tokens": self._options.max_tokens,
            "temperature": self._options.temperature,
        }
        if self._options.top_p is not None:
            payload["top_p"] = self._options.top_p
        if len(self._registry):
            payload["tools"] = self._registry.definitions()
        return payload

    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        if self._http is None or self._http.is_closed:
            raise TransportError("HTTP client is closed", recoverable=False)
        with _translate_http_errors():
            request = self._http.build_request(
                "POST", self._endpoint, json=payload, headers=self._headers()
            )
            response = await self._token.run(self._http.send(request, stream=True))
            if response.status_code != 200:
                body = await response.aread()
                await response.aclose()
                raise ApiError(
                    f"API error ({response.status_code}): "
                    f"{body.decode(errors='replace')[:500]}",
                    status_code=response.status_code,
                )
        return response

    async def _stream_turn(self) -> AsyncIterator[ContentBlock]:
        """One request/response round: yields text and finalized tool calls."""
        payload = self._build_payload()
        framer = SSEFramer(self._options.malformed_line_policy)
        aggregator = self._aggregator = DeltaAggregator()

        acquired = False
        if self._limiter is not None:
            await self._token.run(self._limiter.acquire())
            acquired = True
        try:
            response = await retry_with_backoff(
                lambda: self._open_stream(payload),
                self._options.retry,
                token=self._token,
            )
            try:
                chunks = self._token.guard(response.aiter_bytes())
                with _translate_http_errors():
                    async with aclosing(chunks):
                        async for chunk in chunks:
                            for block in self._consume(framer.feed(chunk), aggregator):
                                yield block
                            if framer.finished:
                                break
                for block in self._consume(framer.close(), aggregator):
                    yield block
                for block in aggregator.finish():
                    yield block
            finally:
                await response.aclose()
        finally:
            if acquired:
                self._limiter.release()
            if self._aggregator is aggregator:
                self._aggregator = None
        self._last_usage = aggregator.usage or self._last_usage
        logger.debug("Turn finished: finish_reason=%s", aggregator.finish_reason)

    def _consume(self, events: list[SSEEvent], aggregator: DeltaAggregator) -> Iterator[ContentBlock]:
        for event in events:
            if event.type != "data":
                continue
            data = self._decode_payload(event)
            if data is None:
                continue
            delta = parse_chunk(data)
            if delta is not None:
                yield from aggregator.feed(delta)

    def _decode_payload(self, event: SSEEvent) -> dict[str, Any] | None:
        try:
            return json.loads(event.data)
        except json.JSONDecodeError as e:
            if self._options.malformed_line_policy == MalformedLinePolicy.ABORT:
                raise ProtocolDecodeError(f"Invalid JSON in event payload: {e}") from e
            logger.warning("Skipping event with invalid JSON payload: %.200r", event.data)
            return None

    def __repr__(self) -> str:
        return (
            f"Session(model={self._options.model!r}, state={self._state}, "
            f"turns={len(self._store)})"
        )


async def query(
    prompt: str | Message,
    options: AgentOptions,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncIterator[ContentBlock]:
    """One-shot exchange without keeping a session around."""
    async with Session(options, http_client=http_client) as session:
        await session.send(prompt)
        async for block in session.stream():
            yield block
