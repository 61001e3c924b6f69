"""Session-related test fixtures."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import psutil

from linelens.config import EngineConfig
from linelens.session.manager import WORKER_MODULE, WorkerSession
from linelens.session.pool import IsolatedEngine


def session_config(**overrides) -> EngineConfig:
    """Config for worker-backed tests."""
    values = dict(
        default_timeout_ms=3000,
        grace_ms=300,
        ready_timeout=10.0,
        shutdown_timeout=2.0,
    )
    values.update(overrides)
    return EngineConfig(**values)


def live_workers(session_id: Optional[str] = None) -> list[psutil.Process]:
    """Worker processes started by this test process that are still running."""
    workers = []
    for proc in psutil.Process().children(recursive=True):
        try:
            if proc.status() == psutil.STATUS_ZOMBIE:
                continue
            cmdline = proc.cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if WORKER_MODULE in cmdline and (session_id is None or session_id in cmdline):
            workers.append(proc)
    return workers


@asynccontextmanager
async def create_session(session_id: str = "doc-1", **overrides) -> AsyncGenerator[WorkerSession, None]:
    """Create a started session with automatic cleanup."""
    session = WorkerSession(session_id, session_config(**overrides))
    try:
        await session.start()
        yield session
    finally:
        await session.shutdown()


@asynccontextmanager
async def create_isolated_engine(max_contexts: int = 50, **overrides) -> AsyncGenerator[IsolatedEngine, None]:
    """Create an isolated engine with automatic cleanup."""
    engine = IsolatedEngine(session_config(**overrides), max_contexts=max_contexts)
    try:
        yield engine
    finally:
        await engine.close()
