"""Test fixtures: a scripted chat-completions endpoint behind httpx.MockTransport."""

import asyncio
import json
from typing import Any

import httpx
import pytest
import pytest_asyncio

from open_agent.api.session import Session
from open_agent.config import AgentOptions
from open_agent.retry import RetryPolicy

BASE_URL = "http://llm.test/v1"

# ---------------------------------------------------------------------------
# Chunk builders
# ---------------------------------------------------------------------------


def chunk(
    content: str | None = None,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str | None = None,
    usage: dict[str, int] | None = None,
) -> dict[str, Any]:
    """One chat.completion.chunk object."""
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    data: dict[str, Any] = {
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        data["usage"] = usage
    return data


def tool_call(
    index: int,
    id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict[str, Any]:
    """One tool_calls[] fragment."""
    call: dict[str, Any] = {"index": index}
    if id:
        call["id"] = id
        call["type"] = "function"
    function: dict[str, Any] = {}
    if name:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    if function:
        call["function"] = function
    return call


def sse_body(*chunks: dict[str, Any], done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def text_reply(text: str) -> bytes:
    return sse_body(chunk(content=text), chunk(finish_reason="stop"))


def tool_reply(name: str, arguments: dict[str, Any], call_id: str = "call_1") -> bytes:
    return sse_body(
        chunk(tool_calls=[tool_call(0, id=call_id, name=name, arguments=json.dumps(arguments))]),
        chunk(finish_reason="tool_calls"),
    )


# ---------------------------------------------------------------------------
# Scripted endpoint
# ---------------------------------------------------------------------------


class HangingStream(httpx.AsyncByteStream):
    """Yields the given chunks, then blocks until the response is closed."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks
        self.closed = False
        self.waiting = asyncio.Event()

    async def __aiter__(self):
        for c in self.chunks:
            yield c
        self.waiting.set()
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class ScriptedEndpoint:
    """Replays scripted replies in order and records every request body.

    A reply is raw SSE bytes, an httpx.Response, an AsyncByteStream, or an
    exception to raise from the transport.
    """

    def __init__(self):
        self.replies: list[Any] = []
        self.requests: list[dict[str, Any]] = []
        self.headers: list[httpx.Headers] = []
        self.urls: list[str] = []

    def add(self, *replies: Any) -> "ScriptedEndpoint":
        self.replies.extend(replies)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.headers.append(request.headers)
        self.urls.append(str(request.url))
        if not self.replies:
            raise AssertionError("Unexpected request: no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        headers = {"content-type": "text/event-stream"}
        if isinstance(reply, httpx.AsyncByteStream):
            return httpx.Response(200, stream=reply, headers=headers)
        return httpx.Response(200, content=reply, headers=headers)


@pytest.fixture
def endpoint() -> ScriptedEndpoint:
    return ScriptedEndpoint()


@pytest_asyncio.fixture
async def http_client(endpoint):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler))
    yield client
    await client.aclose()


@pytest.fixture
def make_options():
    """Factory for AgentOptions pointing at the scripted endpoint, no retry sleeps."""

    def _make(**overrides: Any) -> AgentOptions:
        values: dict[str, Any] = {
            "model": "test-model",
            "base_url": BASE_URL,
            "retry": RetryPolicy(max_attempts=1, initial_delay=0.0, jitter=0.0),
        }
        values.update(overrides)
        return AgentOptions(**values)

    return _make


@pytest_asyncio.fixture
async def make_session(http_client, make_options):
    """Factory for Sessions wired to the scripted endpoint. Closed on teardown."""
    sessions: list[Session] = []

    def _make(**overrides: Any) -> Session:
        session = Session(make_options(**overrides), http_client=http_client)
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        await session.close()


async def drain(session: Session) -> list:
    """Receive until end of turn."""
    blocks = []
    while (block := await session.receive()) is not None:
        blocks.append(block)
    return blocks
