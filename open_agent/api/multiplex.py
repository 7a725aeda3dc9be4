"""Driving many sessions from one event loop.

Stream state is not handed to other threads. Concurrency comes from
cooperative scheduling: each exchange is a task on the running loop, results
are collected in completion order, and a shared semaphore bounds how many
sessions have a request in flight at once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Hashable, Mapping
from dataclasses import dataclass, field

import httpx

from open_agent.api.models import ContentBlock, Message, TextBlock
from open_agent.api.session import Session
from open_agent.config import AgentOptions

logger = logging.getLogger(__name__)


@dataclass
class ExchangeResult:
    """Outcome of one send/drain cycle."""

    blocks: list[ContentBlock] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))


class SessionPool:
    """Creates sessions that share one concurrency limiter."""

    def __init__(
        self,
        max_concurrent: int = 4,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._limiter = asyncio.Semaphore(max_concurrent)
        self._http = http_client
        self._sessions: list[Session] = []

    def session(self, options: AgentOptions) -> Session:
        session = Session(options, http_client=self._http, limiter=self._limiter)
        self._sessions.append(session)
        return session

    async def close(self) -> None:
        for session in self._sessions:
            await session.close()
        self._sessions.clear()

    async def __aenter__(self) -> SessionPool:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def run(
        self,
        jobs: Mapping[Hashable, tuple[Session, str | Message]],
    ) -> AsyncIterator[tuple[Hashable, ExchangeResult]]:
        """Run one exchange per session and yield ``(key, result)`` as each finishes.

        Errors are captured per job; one failing session does not stop the
        others. A session may appear in at most one job per call. Closing
        the iterator early cancels the exchanges still running and leaves
        their sessions idle.
        """
        sessions = [s for s, _ in jobs.values()]
        if len({id(s) for s in sessions}) != len(sessions):
            raise ValueError("Each session can run only one exchange at a time")

        async def _drive(key: Hashable, session: Session, prompt: str | Message):
            result = ExchangeResult()
            try:
                result.blocks = await session.ask(prompt)
            except Exception as e:
                logger.warning("Exchange %r failed: %s", key, e)
                result.error = e
            return key, result

        tasks = [
            asyncio.ensure_future(_drive(key, session, prompt))
            for key, (session, prompt) in jobs.items()
        ]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            # Cancelled exchanges settle their sessions before this returns
            await asyncio.gather(*tasks, return_exceptions=True)
