"""Unit tests for ThreadedExecutor and deadlines."""

import threading
import time

import pytest

from linelens.engine.executor import (
    Deadline,
    EvaluationTimeout,
    ThreadedExecutor,
    _create_deadline_tracer,
)


@pytest.mark.unit
class TestDeadline:
    """Test Deadline bookkeeping."""

    def test_remaining_and_expiry(self):
        deadline = Deadline(10_000)
        assert 0 < deadline.remaining() <= 10.0
        assert not deadline.expired()

    def test_expire_forces_zero_budget(self):
        deadline = Deadline(10_000)
        deadline.expire()
        assert deadline.expired()
        assert deadline.remaining() == 0.0

    def test_elapsed(self):
        deadline = Deadline(1000)
        time.sleep(0.01)
        assert deadline.elapsed_ms() >= 10


@pytest.mark.unit
class TestDeadlineTracer:
    """Test the trace function in isolation."""

    def test_raises_once_expired(self):
        deadline = Deadline(10_000)
        deadline.expire()
        tracer = _create_deadline_tracer(deadline, check_interval=1)
        with pytest.raises(EvaluationTimeout):
            tracer(None, "line", None)

    def test_quiet_before_deadline(self):
        tracer = _create_deadline_tracer(Deadline(10_000), check_interval=1)
        assert tracer(None, "line", None) is tracer
        assert tracer(None, "call", None) is tracer

    def test_not_an_exception_subclass(self):
        assert not issubclass(EvaluationTimeout, Exception)


@pytest.mark.unit
class TestThreadedExecutor:
    """Test ThreadedExecutor functionality."""

    @pytest.mark.asyncio
    async def test_returns_value(self):
        executor = ThreadedExecutor()
        outcome = await executor.run(lambda: 2 + 2, Deadline(1000))
        assert outcome.value == 4
        assert outcome.error is None
        assert not outcome.timed_out

    @pytest.mark.asyncio
    async def test_runs_off_the_loop_thread(self):
        executor = ThreadedExecutor()
        outcome = await executor.run(lambda: threading.current_thread().name, Deadline(1000), name="doc")
        assert outcome.value == "exec-doc"

    @pytest.mark.asyncio
    async def test_captures_error(self):
        executor = ThreadedExecutor()
        outcome = await executor.run(lambda: 1 / 0, Deadline(1000))
        assert isinstance(outcome.error, ZeroDivisionError)

    @pytest.mark.asyncio
    async def test_infinite_loop_times_out(self):
        def spin():
            while True:
                pass

        executor = ThreadedExecutor(grace_ms=200)
        started = time.monotonic()
        outcome = await executor.run(spin, Deadline(200))
        assert outcome.timed_out
        assert not outcome.abandoned
        assert time.monotonic() - started < 2.0

    @pytest.mark.asyncio
    async def test_except_exception_cannot_swallow_timeout(self):
        def stubborn():
            while True:
                try:
                    while True:
                        pass
                except Exception:
                    pass

        executor = ThreadedExecutor(grace_ms=200)
        outcome = await executor.run(stubborn, Deadline(200))
        assert outcome.timed_out

    @pytest.mark.asyncio
    async def test_blocked_thread_is_abandoned(self):
        release = threading.Event()
        executor = ThreadedExecutor(grace_ms=100)
        try:
            outcome = await executor.run(lambda: release.wait(5), Deadline(100))
            assert outcome.timed_out
            assert outcome.abandoned
        finally:
            release.set()
