from __future__ import annotations

import asyncio
import contextlib
import itertools
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import structlog

from ..config import EngineConfig
from ..engine.results import UNDEFINED, EvalResult, Failure, FailureKind, Success
from ..protocol.messages import (
    Action,
    ExecuteMessage,
    ReadyMessage,
    ResultMessage,
    ShutdownMessage,
)
from ..protocol.transport import PipeTransport, ProtocolError

logger = structlog.get_logger()

WORKER_MODULE = "linelens.subprocess.worker"
PROJECT_ROOT = Path(__file__).resolve().parents[2]


class SessionError(Exception):
    """A worker process could not be started."""


class SessionState(str, Enum):
    """Session lifecycle states."""

    UNSTARTED = "unstarted"
    RUNNING = "running"
    DEAD = "dead"


@dataclass
class SessionInfo:
    """Information about a session."""

    session_id: str
    state: SessionState
    created_at: float
    last_used_at: float
    pid: Optional[int] = None
    execution_count: int = 0
    error_count: int = 0
    respawn_count: int = 0
    memory_usage: int = 0


Reply = Union[ResultMessage, Failure]


@dataclass
class _WorkerHandle:
    """One worker process generation and the requests waiting on it."""

    process: asyncio.subprocess.Process
    transport: PipeTransport
    pending: dict[int, asyncio.Future[Reply]] = field(default_factory=dict)
    receive_task: Optional[asyncio.Task[None]] = None
    stderr_task: Optional[asyncio.Task[None]] = None
    closing: bool = False
    disposed: bool = False
    exited: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid


def result_from_message(message: ResultMessage) -> EvalResult:
    """Rebuild an ``EvalResult`` from a worker reply."""
    if not message.ok:
        if message.error is None:
            return Failure(
                FailureKind.INTERNAL,
                "Worker reported a failure without details",
                console_output=list(message.console),
                elapsed_ms=message.elapsed_ms,
            )
        try:
            kind = FailureKind(message.error.kind)
        except ValueError:
            kind = FailureKind.INTERNAL
        return Failure(
            kind,
            message.error.message,
            console_output=list(message.console),
            traceback=message.error.traceback,
            elapsed_ms=message.elapsed_ms,
        )

    return Success(
        value=message.result if message.has_result else UNDEFINED,
        rendered_type=message.type_name,
        console_output=list(message.console),
        produced_from_statement=message.from_statement,
        rendered=message.rendered,
        elapsed_ms=message.elapsed_ms,
    )


class WorkerSession:
    """Evaluates snippets for one context inside a dedicated worker process.

    The process is spawned lazily and respawned on the next call after it
    dies; a respawned worker starts from an empty scope.
    """

    def __init__(self, session_id: Optional[str] = None, config: Optional[EngineConfig] = None) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self._config = config or EngineConfig()
        self._ids = itertools.count(1)
        self._handle: Optional[_WorkerHandle] = None
        self._state = SessionState.UNSTARTED
        self._lock = asyncio.Lock()
        self._active = 0
        self._disposed = False
        self._last_console: list[str] = []
        now = time.time()
        self._info = SessionInfo(
            session_id=self.session_id,
            state=self._state,
            created_at=now,
            last_used_at=now,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def info(self) -> SessionInfo:
        """Get session information."""
        self._info.state = self._state
        self._info.pid = self.pid
        return self._info

    @property
    def pid(self) -> Optional[int]:
        if self._handle is None or self._handle.exited:
            return None
        return self._handle.pid

    @property
    def pending_count(self) -> int:
        return len(self._handle.pending) if self._handle is not None else 0

    @property
    def busy(self) -> bool:
        """Whether a call is in progress, including one still spawning the worker."""
        return self._active > 0 or self.pending_count > 0

    @property
    def is_alive(self) -> bool:
        return (
            self._state is SessionState.RUNNING
            and self._handle is not None
            and self._handle.process.returncode is None
        )

    # --- Lifecycle ---------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker if it is not already running.

        Raises:
            SessionError: If the worker does not become ready
        """
        await self._ensure_running()

    async def _ensure_running(self) -> _WorkerHandle:
        async with self._lock:
            if self._disposed:
                raise SessionError("session disposed")
            if self.is_alive and self._handle is not None and not self._handle.exited:
                return self._handle

            if self._state is SessionState.DEAD:
                self._info.respawn_count += 1
                logger.info("Respawning worker", session_id=self.session_id, respawns=self._info.respawn_count)

            try:
                handle = await self._spawn()
            except SessionError:
                self._state = SessionState.DEAD
                raise

            if self._disposed:
                # Disposed while the worker was starting
                handle.disposed = True
                await self._kill(handle)
                self._state = SessionState.DEAD
                raise SessionError("session disposed")

            self._handle = handle
            self._state = SessionState.RUNNING
            return handle

    def _worker_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._config.to_env())
        python_path = env.get("PYTHONPATH")
        env["PYTHONPATH"] = (
            f"{PROJECT_ROOT}{os.pathsep}{python_path}" if python_path else str(PROJECT_ROOT)
        )
        return env

    async def _spawn(self) -> _WorkerHandle:
        try:
            process = await asyncio.create_subprocess_exec(
                self._config.python_path,
                "-m",
                WORKER_MODULE,
                self.session_id,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._worker_env(),
            )
        except OSError as e:
            logger.error("Failed to spawn worker", session_id=self.session_id, error=str(e))
            raise SessionError(f"Failed to spawn worker: {e}") from e

        handle = _WorkerHandle(
            process=process,
            transport=PipeTransport(process, use_msgpack=self._config.use_msgpack),
        )
        handle.stderr_task = asyncio.create_task(self._drain_stderr(handle))

        try:
            message = await handle.transport.receive_message(timeout=self._config.ready_timeout)
        except (asyncio.TimeoutError, ProtocolError) as e:
            await self._kill(handle)
            raise SessionError(f"Worker failed to become ready: {e!r}") from e

        if not isinstance(message, ReadyMessage):
            await self._kill(handle)
            raise SessionError(f"Expected ready message, got {message.type}")

        self._info.memory_usage = message.memory_usage
        handle.receive_task = asyncio.create_task(self._receive_loop(handle))
        logger.info("Session started", session_id=self.session_id, pid=message.pid)
        return handle

    async def _receive_loop(self, handle: _WorkerHandle) -> None:
        """Route replies to their waiting requests until the worker goes away."""
        while True:
            try:
                message = await handle.transport.receive_message()
            except ProtocolError as e:
                logger.debug("Worker stream ended", session_id=self.session_id, error=str(e))
                break

            if not isinstance(message, ResultMessage):
                logger.warning("Unexpected message from worker", session_id=self.session_id, type=message.type)
                continue

            future = handle.pending.pop(message.id, None)
            if future is None:
                logger.debug("Dropping reply without a waiting request", session_id=self.session_id, id=message.id)
                continue
            if not future.done():
                future.set_result(message)

        await self._reap(handle)

    async def _reap(self, handle: _WorkerHandle) -> None:
        try:
            code = await asyncio.wait_for(handle.process.wait(), timeout=self._config.shutdown_timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                handle.process.kill()
            code = await handle.process.wait()

        handle.exited = True
        if not handle.closing:
            logger.warning("Worker exited", session_id=self.session_id, pid=handle.pid, code=code)

        pending = list(handle.pending.values())
        handle.pending.clear()
        for future in pending:
            if not future.done():
                future.set_result(Failure(FailureKind.INTERNAL, f"worker exited (code {code})"))

        if self._handle is handle:
            self._state = SessionState.DEAD

    async def _drain_stderr(self, handle: _WorkerHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than the stream limit
                continue
            if not line:
                break
            logger.debug("worker", session_id=self.session_id, line=line.decode(errors="replace").rstrip())

    async def _kill(self, handle: _WorkerHandle) -> None:
        handle.closing = True
        if handle.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                handle.process.kill()
        with contextlib.suppress(ProtocolError, ConnectionError):
            await handle.transport.close()

        tasks = [task for task in (handle.receive_task, handle.stderr_task) if task is not None]
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=self._config.shutdown_timeout)
            for task in still_running:
                task.cancel()
        if handle.receive_task is None:
            # Never got as far as the receive loop
            await self._reap(handle)

    async def shutdown(self, reason: str = "requested") -> None:
        """Ask the worker to exit, killing it if it does not comply.

        The session is finished afterwards; a worker still being spawned is
        killed as soon as it is ready.
        """
        self._disposed = True
        handle = self._handle
        if handle is None or handle.exited:
            return

        handle.closing = True
        try:
            await handle.transport.send_message(ShutdownMessage(reason=reason))
            await asyncio.wait_for(handle.process.wait(), timeout=self._config.shutdown_timeout)
        except (ProtocolError, ConnectionError, asyncio.TimeoutError) as e:
            logger.warning("Session did not shut down gracefully", session_id=self.session_id, error=repr(e))
        await self._kill(handle)
        self._state = SessionState.DEAD
        logger.info("Session shut down", session_id=self.session_id, reason=reason)

    async def dispose(self) -> None:
        """Kill the worker; requests still in flight are dropped unresolved.

        The session is finished afterwards; a worker still being spawned is
        killed as soon as it is ready.
        """
        self._disposed = True
        handle = self._handle
        if handle is None:
            return
        handle.disposed = True
        handle.pending.clear()
        await self._kill(handle)
        self._state = SessionState.DEAD
        logger.debug("Session disposed", session_id=self.session_id)

    # --- Requests ----------------------------------------------------------------

    async def _request(self, action: Action, code: str, budget_ms: int) -> Reply:
        try:
            handle = await self._ensure_running()
        except SessionError as e:
            return Failure(FailureKind.INTERNAL, str(e))

        request_id = next(self._ids)
        future: asyncio.Future[Reply] = asyncio.get_running_loop().create_future()
        handle.pending[request_id] = future

        try:
            await handle.transport.send_message(
                ExecuteMessage(id=request_id, action=action, code=code, timeout=budget_ms)
            )
        except (ProtocolError, ConnectionError) as e:
            handle.pending.pop(request_id, None)
            return Failure(FailureKind.INTERNAL, f"Failed to reach worker: {e}")

        try:
            return await asyncio.wait_for(future, timeout=(budget_ms + self._config.grace_ms) / 1000.0)
        except asyncio.TimeoutError:
            handle.pending.pop(request_id, None)
            if handle.disposed:
                return Failure(FailureKind.INTERNAL, "session disposed")
            logger.warning(
                "Worker did not reply before deadline, killing it",
                session_id=self.session_id,
                pid=handle.pid,
                timeout_ms=budget_ms,
            )
            await self._kill(handle)
            if self._handle is handle:
                self._state = SessionState.DEAD
            return Failure(FailureKind.TIMEOUT, f"Execution timed out after {budget_ms}ms")

    async def execute(self, code: str, timeout_ms: Optional[int] = None) -> EvalResult:
        """Evaluate ``code`` in the worker. Never raises."""
        budget = self._config.resolve_timeout(timeout_ms)
        started = time.monotonic()

        self._active += 1
        try:
            reply = await self._request(Action.EXEC, code, budget)
        finally:
            self._active -= 1
        if isinstance(reply, Failure):
            result: EvalResult = Failure(
                reply.kind,
                reply.message,
                console_output=reply.console_output,
                traceback=reply.traceback,
                elapsed_ms=(time.monotonic() - started) * 1000.0,
            )
        else:
            result = result_from_message(reply)

        self._last_console = list(result.console_output)
        self._info.last_used_at = time.time()
        self._info.execution_count += 1
        if not result.ok:
            self._info.error_count += 1
        return result

    async def reset(self) -> None:
        """Give the context a fresh scope; a worker that is not running has one already."""
        self._last_console = []
        if not self.is_alive:
            return
        self._active += 1
        try:
            reply = await self._request(Action.RESET, "", self._config.default_timeout_ms)
        finally:
            self._active -= 1
        if isinstance(reply, Failure) or not reply.ok:
            logger.warning("Reset did not complete", session_id=self.session_id)

    def peek_console(self) -> list[str]:
        """Output captured by the most recent evaluation."""
        return list(self._last_console)
