"""Integration tests for worker-backed sessions."""

import asyncio
import os
import signal
import time

import pytest

from linelens.engine.results import FailureKind
from linelens.session.manager import SessionState, WorkerSession
from tests.fixtures.messages import assert_failure, assert_statement, assert_value
from tests.fixtures.sessions import create_session, live_workers, session_config


@pytest.mark.integration
class TestSessionLifecycle:
    """Test session lifecycle management."""

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self):
        async with create_session() as session:
            assert session.state is SessionState.RUNNING
            assert session.pid is not None
            assert session.info.memory_usage > 0
        assert session.state is SessionState.DEAD

    @pytest.mark.asyncio
    async def test_lazy_start(self):
        session = WorkerSession("lazy", session_config())
        try:
            assert session.state is SessionState.UNSTARTED
            assert_value(await session.execute("1 + 2"), 3)
            assert session.state is SessionState.RUNNING
        finally:
            await session.shutdown()

    @pytest.mark.asyncio
    async def test_bad_interpreter_is_internal_failure(self):
        session = WorkerSession("broken", session_config(python_path="/nonexistent/python"))
        result = await session.execute("1")
        assert_failure(result, FailureKind.INTERNAL)
        assert session.state is SessionState.DEAD


@pytest.mark.integration
class TestSessionExecution:
    """Test evaluation through a worker."""

    @pytest.mark.asyncio
    async def test_declaration_then_redeclaration(self):
        async with create_session() as session:
            assert_statement(await session.execute("a = 5"))
            assert_value(await session.execute("a = 10"), 10)

    @pytest.mark.asyncio
    async def test_console_output(self):
        async with create_session() as session:
            result = await session.execute("print('x')")
            assert result.console_output == ["x"]
            assert session.peek_console() == ["x"]

    @pytest.mark.asyncio
    async def test_unserializable_value_is_rendered(self):
        async with create_session() as session:
            await session.execute("def f():\n    return 1")
            result = await session.execute("f")
            assert result.ok
            assert result.rendered == "[Function f]"
            assert result.rendered_type == "function"

    @pytest.mark.asyncio
    async def test_runtime_and_syntax_errors(self):
        async with create_session() as session:
            assert_failure(await session.execute("1 / 0"), FailureKind.RUNTIME, "ZeroDivisionError")
            assert_failure(await session.execute("def ("), FailureKind.SYNTAX)
            assert_failure(await session.execute("import os"), FailureKind.RUNTIME, "ImportError")

    @pytest.mark.asyncio
    async def test_reset(self):
        async with create_session() as session:
            await session.execute("a = 5")
            await session.reset()
            assert (await session.execute("typeof('a')")).value == "undefined"

    @pytest.mark.asyncio
    async def test_execution_counts(self):
        async with create_session() as session:
            await session.execute("1")
            await session.execute("1 / 0")
            assert session.info.execution_count == 2
            assert session.info.error_count == 1


@pytest.mark.integration
class TestSessionFailures:
    """Test timeout and crash handling."""

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_cooperative_timeout_keeps_worker(self):
        async with create_session() as session:
            pid = session.pid
            await session.execute("a = 1")
            result = await session.execute("while True: pass", timeout_ms=300)
            assert_failure(result, FailureKind.TIMEOUT)
            assert session.pid == pid
            assert_value(await session.execute("a + 1"), 2)

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_uninterruptible_work_kills_worker(self):
        async with create_session() as session:
            pid = session.pid
            await session.execute("a = 1")
            result = await session.execute("sum(range(10**12))", timeout_ms=300)
            assert_failure(result, FailureKind.TIMEOUT)

            # Next call respawns with an empty scope
            assert_failure(await session.execute("a"), FailureKind.RUNTIME, "NameError")
            assert session.pid != pid
            assert session.info.respawn_count == 1

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_worker_killed_mid_request(self):
        async with create_session() as session:
            await session.execute("a = 1")
            pending = asyncio.create_task(session.execute("while True: pass", timeout_ms=10_000))
            await asyncio.sleep(0.3)
            os.kill(session.pid, signal.SIGKILL)

            result = await pending
            assert_failure(result, FailureKind.INTERNAL, "worker exited")
            assert session.state is SessionState.DEAD

            assert_failure(await session.execute("a"), FailureKind.RUNTIME, "NameError")
            assert session.state is SessionState.RUNNING

    @pytest.mark.asyncio
    async def test_dispose(self):
        session = WorkerSession("doc", session_config())
        await session.start()
        pid = session.pid
        await session.dispose()
        assert session.state is SessionState.DEAD
        assert session.pending_count == 0
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_dispose_while_spawning(self):
        session = WorkerSession("spawning-doc", session_config())
        pending = asyncio.create_task(session.execute("1"))
        await asyncio.sleep(0)
        assert session.busy

        await session.dispose()
        result = await pending

        assert_failure(result, FailureKind.INTERNAL, "session disposed")
        assert session.pid is None
        assert session.state is SessionState.DEAD
        assert live_workers("spawning-doc") == []

    @pytest.mark.asyncio
    async def test_disposed_session_does_not_respawn(self):
        session = WorkerSession("finished-doc", session_config())
        await session.start()
        await session.dispose()
        assert_failure(await session.execute("1"), FailureKind.INTERNAL, "session disposed")
        assert live_workers("finished-doc") == []


@pytest.mark.integration
class TestSessionTiming:
    """Test that timeouts come back within timeout plus grace."""

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_cooperative_timeout_elapsed(self):
        async with create_session(grace_ms=300) as session:
            started = time.monotonic()
            result = await session.execute("while True: pass", timeout_ms=300)
            wall_ms = (time.monotonic() - started) * 1000

            assert_failure(result, FailureKind.TIMEOUT)
            assert 300 <= result.elapsed_ms <= 300 + 300 + 500
            assert wall_ms <= 300 + 300 + 500

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_killed_worker_timeout_elapsed(self):
        async with create_session(grace_ms=300) as session:
            started = time.monotonic()
            result = await session.execute("sum(range(10**12))", timeout_ms=300)
            wall_ms = (time.monotonic() - started) * 1000

            assert_failure(result, FailureKind.TIMEOUT)
            assert 300 + 300 <= result.elapsed_ms <= 300 + 300 + 1000
            assert wall_ms <= 300 + 300 + 1000
