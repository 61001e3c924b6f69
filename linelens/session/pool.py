from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Optional

import structlog

from ..config import EngineConfig
from ..engine.results import EvalResult
from .manager import SessionInfo, WorkerSession

logger = structlog.get_logger()


class IsolatedEngine:
    """Engine contract backed by one worker process per context id.

    Sessions are kept in most-recently-used order; once more than
    ``max_contexts`` exist the least recently used idle one is disposed. A
    session counts as busy from the start of a call until it returns,
    including while its worker is still being spawned.
    """

    def __init__(self, config: Optional[EngineConfig] = None, *, max_contexts: Optional[int] = None) -> None:
        self._config = config or EngineConfig()
        self._max_contexts = max_contexts if max_contexts is not None else self._config.max_contexts
        self._sessions: OrderedDict[str, WorkerSession] = OrderedDict()
        self._evictions: set[asyncio.Task[None]] = set()

    @property
    def config(self) -> EngineConfig:
        return self._config

    def context_ids(self) -> list[str]:
        """Live context ids, least recently used first."""
        return list(self._sessions)

    def get_session(self, context_id: str) -> WorkerSession:
        """Resolve or lazily create the session for ``context_id``."""
        session = self._sessions.get(context_id)
        if session is None:
            session = WorkerSession(context_id, self._config)
            self._sessions[context_id] = session
            logger.debug("Created session", context_id=context_id, live=len(self._sessions))
            self._evict(keep=context_id)
        else:
            self._sessions.move_to_end(context_id)
        return session

    def _evict(self, keep: str) -> None:
        while len(self._sessions) > self._max_contexts:
            victim = next(
                (cid for cid, s in self._sessions.items() if cid != keep and not s.busy),
                None,
            )
            if victim is None:
                break
            session = self._sessions.pop(victim)
            task = asyncio.create_task(session.dispose())
            self._evictions.add(task)
            task.add_done_callback(self._evictions.discard)
            logger.info("Evicted least recently used session", context_id=victim)

    async def evaluate(self, context_id: str, code: str, timeout_ms: Optional[int] = None) -> EvalResult:
        """Evaluate ``code`` in the worker owning ``context_id``. Never raises."""
        return await self.get_session(context_id).execute(code, timeout_ms)

    async def reset(self, context_id: str) -> None:
        session = self._sessions.get(context_id)
        if session is not None:
            await session.reset()

    async def dispose(self, context_id: str) -> None:
        session = self._sessions.pop(context_id, None)
        if session is not None:
            await session.dispose()

    def peek_console(self, context_id: str) -> list[str]:
        session = self._sessions.get(context_id)
        return session.peek_console() if session is not None else []

    def info(self) -> list[SessionInfo]:
        return [session.info for session in self._sessions.values()]

    async def close(self) -> None:
        """Shut every worker down."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.shutdown("engine closed") for session in sessions))
        if self._evictions:
            await asyncio.gather(*self._evictions)
