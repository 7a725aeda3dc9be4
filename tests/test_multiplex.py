"""Tests for running many sessions on one event loop."""

import asyncio
import json
from contextlib import aclosing

import httpx
import pytest
import pytest_asyncio

from open_agent.api.multiplex import ExchangeResult, SessionPool
from open_agent.api.models import Role, TextBlock
from open_agent.api.session import SessionState
from open_agent.errors import ApiError
from tests.conftest import text_reply


class _EchoStream(httpx.AsyncByteStream):
    """Replies after ``delay`` seconds and tracks how many streams are open."""

    def __init__(self, body: bytes, delay: float, tracker: dict):
        self.body = body
        self.delay = delay
        self.tracker = tracker

    async def __aiter__(self):
        self.tracker["active"] += 1
        self.tracker["peak"] = max(self.tracker["peak"], self.tracker["active"])
        await asyncio.sleep(self.delay)
        yield self.body

    async def aclose(self) -> None:
        self.tracker["active"] -= 1


@pytest.fixture
def tracker() -> dict:
    return {"active": 0, "peak": 0}


@pytest_asyncio.fixture
async def echo_client(tracker):
    """Echoes the last user message; prompts starting with 'slow' take longer, 'fail' gets a 400."""

    def handler(request: httpx.Request) -> httpx.Response:
        prompt = json.loads(request.content)["messages"][-1]["content"]
        if prompt.startswith("fail"):
            return httpx.Response(400, json={"error": {"message": "bad request"}})
        delay = 0.05 if prompt.startswith("slow") else 0.0
        stream = _EchoStream(text_reply(f"echo: {prompt}"), delay, tracker)
        return httpx.Response(200, stream=stream, headers={"content-type": "text/event-stream"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    yield client
    await client.aclose()


async def _collect(pool: SessionPool, jobs) -> list:
    return [item async for item in pool.run(jobs)]


class TestSessionPool:
    @pytest.mark.asyncio
    async def test_runs_all_jobs(self, echo_client, make_options):
        async with SessionPool(4, http_client=echo_client) as pool:
            jobs = {i: (pool.session(make_options()), f"prompt {i}") for i in range(3)}
            results = dict(await _collect(pool, jobs))
        assert set(results) == {0, 1, 2}
        for i, result in results.items():
            assert result.ok
            assert result.blocks == [TextBlock(f"echo: prompt {i}")]

    @pytest.mark.asyncio
    async def test_completion_order(self, echo_client, make_options):
        async with SessionPool(4, http_client=echo_client) as pool:
            jobs = {
                "slow": (pool.session(make_options()), "slow one"),
                "fast": (pool.session(make_options()), "fast one"),
            }
            order = [key for key, _ in await _collect(pool, jobs)]
        assert order == ["fast", "slow"]

    @pytest.mark.asyncio
    async def test_limiter_bounds_in_flight_requests(self, echo_client, make_options, tracker):
        async with SessionPool(2, http_client=echo_client) as pool:
            jobs = {i: (pool.session(make_options()), f"slow {i}") for i in range(6)}
            results = await _collect(pool, jobs)
        assert len(results) == 6
        assert tracker["peak"] == 2
        assert tracker["active"] == 0

    @pytest.mark.asyncio
    async def test_errors_captured_per_job(self, echo_client, make_options):
        async with SessionPool(4, http_client=echo_client) as pool:
            jobs = {
                "good": (pool.session(make_options()), "hello"),
                "bad": (pool.session(make_options()), "fail please"),
            }
            results = dict(await _collect(pool, jobs))
        assert results["good"].text == "echo: hello"
        assert isinstance(results["bad"].error, ApiError)
        assert not results["bad"].ok

    @pytest.mark.asyncio
    async def test_session_reused_across_runs(self, echo_client, make_options):
        async with SessionPool(2, http_client=echo_client) as pool:
            session = pool.session(make_options())
            await _collect(pool, {"a": (session, "first")})
            await _collect(pool, {"b": (session, "second")})
        assert [m.text for m in session.history] == [
            "first",
            "echo: first",
            "second",
            "echo: second",
        ]

    @pytest.mark.asyncio
    async def test_same_session_twice_rejected(self, echo_client, make_options):
        async with SessionPool(2, http_client=echo_client) as pool:
            session = pool.session(make_options())
            with pytest.raises(ValueError, match="one exchange"):
                await _collect(pool, {"a": (session, "x"), "b": (session, "y")})

    @pytest.mark.asyncio
    async def test_stopping_early_leaves_sessions_idle(self, echo_client, make_options):
        async with SessionPool(4, http_client=echo_client) as pool:
            sessions = {key: pool.session(make_options()) for key in ("fast", "slow1", "slow2")}
            jobs = {key: (session, f"{key} job") for key, session in sessions.items()}
            async with aclosing(pool.run(jobs)) as results:
                async for key, result in results:
                    assert key == "fast"
                    assert result.ok
                    break

            for key in ("slow1", "slow2"):
                session = sessions[key]
                assert session.state == SessionState.IDLE
                assert [m.role for m in session.history] == [Role.USER]
                assert await session.ask("hello") == [TextBlock("echo: hello")]

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            SessionPool(0)

    def test_result_text(self):
        result = ExchangeResult(blocks=[TextBlock("a"), TextBlock("b")])
        assert result.text == "ab"
        assert result.ok
