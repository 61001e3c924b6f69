"""Thread-based execution of snippet code with a wall-clock deadline."""

from __future__ import annotations

import asyncio
import contextvars
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger()


class EvaluationTimeout(BaseException):
    """Raised inside snippet frames once the deadline has passed.

    Derives from ``BaseException`` so ``except Exception`` in user code cannot
    swallow it.
    """


class Deadline:
    """Wall-clock budget for one evaluation, shared with the execution thread."""

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        self._started = time.monotonic()
        self._expires_at = self._started + timeout_ms / 1000.0
        self._forced = threading.Event()

    def remaining(self) -> float:
        """Seconds left, never negative."""
        if self._forced.is_set():
            return 0.0
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self._forced.is_set() or time.monotonic() >= self._expires_at

    def expire(self) -> None:
        """Force expiry so an abandoned thread stops at its next check."""
        self._forced.set()

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000.0


def _create_deadline_tracer(deadline: Deadline, check_interval: int = 100) -> Callable[[Any, str, Any], Any]:
    """Create a trace function that raises ``EvaluationTimeout`` past the deadline.

    Args:
        deadline: The deadline to check
        check_interval: Check every N line events

    Returns:
        Trace function for ``sys.settrace``
    """
    event_count = 0

    def tracer(frame: Any, event: str, arg: Any) -> Any:  # type: ignore[misc]
        nonlocal event_count

        # Returning the tracer installs it in the new frame
        if event == "call":
            return tracer

        if event == "line":
            event_count += 1
            if event_count >= check_interval:
                event_count = 0
                if deadline.expired():
                    # Keep checking on every line until the frame unwinds
                    event_count = check_interval
                    raise EvaluationTimeout(f"Execution timed out after {deadline.timeout_ms}ms")

        return tracer

    return tracer


@dataclass
class ExecutionOutcome:
    """What happened to one job on the execution thread."""

    value: Any = None
    error: Optional[BaseException] = None
    timed_out: bool = False
    abandoned: bool = False


class ThreadedExecutor:
    """Runs synchronous snippet jobs on a daemon thread under a deadline tracer.

    The tracer only fires between Python line events; a job stuck inside a
    single C call is abandoned once ``timeout + grace`` has passed and keeps
    its thread until the call returns.
    """

    def __init__(self, *, grace_ms: int = 200, check_interval: int = 100) -> None:
        self._grace = grace_ms / 1000.0
        self._check_interval = check_interval

    async def run(self, job: Callable[[], Any], deadline: Deadline, name: str = "snippet") -> ExecutionOutcome:
        loop = asyncio.get_running_loop()
        done: asyncio.Future[ExecutionOutcome] = loop.create_future()
        tracer = _create_deadline_tracer(deadline, self._check_interval)
        # The job sees the caller's context variables, e.g. its output buffer
        job_context = contextvars.copy_context()

        def resolve(outcome: ExecutionOutcome) -> None:
            if not done.done():
                done.set_result(outcome)

        def target() -> None:
            outcome = ExecutionOutcome()
            sys.settrace(tracer)
            try:
                outcome.value = job_context.run(job)
            except EvaluationTimeout:
                outcome.timed_out = True
            except BaseException as e:
                outcome.error = e
            finally:
                sys.settrace(None)
            try:
                loop.call_soon_threadsafe(resolve, outcome)
            except RuntimeError:
                # Loop already closed; the caller gave up on this job
                logger.debug("Dropped outcome of abandoned job", thread=name)

        thread = threading.Thread(target=target, name=f"exec-{name}", daemon=True)
        thread.start()

        try:
            return await asyncio.wait_for(
                asyncio.shield(done), timeout=deadline.remaining() + self._grace
            )
        except asyncio.TimeoutError:
            deadline.expire()
            logger.warning(
                "Execution thread did not yield before deadline, abandoning it",
                thread=thread.name,
                timeout_ms=deadline.timeout_ms,
            )
            return ExecutionOutcome(timed_out=True, abandoned=True)
