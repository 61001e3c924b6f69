from __future__ import annotations

import asyncio
import logging
import math
import sys
from typing import Any, Optional

import psutil
import structlog

# stdout carries protocol frames; logs go to stderr
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(colors=False),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    cache_logger_on_first_use=True,
)

from ..config import EngineConfig
from ..engine.engine import EvaluationEngine
from ..engine.results import EvalResult
from ..protocol.messages import (
    Action,
    ErrorInfo,
    ExecuteMessage,
    ReadyMessage,
    ResultMessage,
    ShutdownMessage,
)
from ..protocol.transport import MessageTransport, ProtocolError

logger = structlog.get_logger()


_SCALARS = (str, int, bool, type(None))
_MSGPACK_INT_RANGE = (-(2**63), 2**64)


def _transferable(value: Any, seen: Optional[set[int]] = None) -> bool:
    """Whether ``value`` crosses both wire encodings and comes back equal.

    Only exact built-in types qualify: str / int / float / bool / None, lists
    and tuples of them, and dicts with str keys. Subclasses, non-finite
    floats, out-of-range ints, non-str keys and cycles are rendered only.
    """
    kind = type(value)
    if kind in _SCALARS:
        if kind is int:
            low, high = _MSGPACK_INT_RANGE
            return low <= value < high
        return True
    if kind is float:
        return math.isfinite(value)
    if kind not in (list, tuple, dict):
        return False

    seen = set() if seen is None else seen
    if id(value) in seen:
        return False
    seen.add(id(value))
    try:
        if kind is dict:
            return all(
                type(key) is str and _transferable(item, seen) for key, item in value.items()
            )
        return all(_transferable(item, seen) for item in value)
    finally:
        seen.discard(id(value))


def build_result_message(request_id: int, result: EvalResult) -> ResultMessage:
    """Translate an engine result into its wire form."""
    if not result.ok:
        return ResultMessage(
            id=request_id,
            ok=False,
            error=ErrorInfo(kind=result.kind.value, message=result.message, traceback=result.traceback),
            console=list(result.console_output),
            elapsed_ms=result.elapsed_ms,
        )

    try:
        has_result = not result.produced_from_statement and _transferable(result.value)
    except RecursionError:
        has_result = False
    return ResultMessage(
        id=request_id,
        ok=True,
        result=result.value if has_result else None,
        has_result=has_result,
        rendered=result.rendered,
        type_name=result.rendered_type,
        from_statement=result.produced_from_statement,
        console=list(result.console_output),
        elapsed_ms=result.elapsed_ms,
    )


class SubprocessWorker:
    """Hosts one evaluation context and serves requests from the parent.

    Requests are handled one at a time in arrival order.
    """

    def __init__(
        self,
        transport: MessageTransport,
        session_id: str,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._transport = transport
        self._session_id = session_id
        self._config = config or EngineConfig()
        self._engine = EvaluationEngine(self._config, max_contexts=1)
        self._process = psutil.Process()
        self._running = False

    @property
    def engine(self) -> EvaluationEngine:
        return self._engine

    async def start(self) -> None:
        """Announce readiness to the parent."""
        self._running = True
        ready = ReadyMessage(
            session_id=self._session_id,
            pid=self._process.pid,
            memory_usage=self._process.memory_info().rss,
        )
        await self._transport.send_message(ready)

    async def handle(self, message: ExecuteMessage) -> ResultMessage:
        """Serve one request and build its reply."""
        if message.action == Action.RESET:
            self._engine.reset(self._session_id)
            logger.debug("Context reset", session_id=self._session_id, id=message.id)
            return ResultMessage(id=message.id, ok=True, from_statement=True)

        result = await self._engine.evaluate(self._session_id, message.code, message.timeout)
        return build_result_message(message.id, result)

    async def run(self) -> None:
        """Main request loop."""
        await self.start()

        while self._running:
            try:
                message = await self._transport.receive_message()
            except ProtocolError as e:
                logger.info("Parent closed the connection", error=str(e))
                break

            if isinstance(message, ShutdownMessage):
                logger.info("Shutdown requested", reason=message.reason)
                break

            if not isinstance(message, ExecuteMessage):
                logger.warning("Ignoring unexpected message", type=message.type, id=message.id)
                continue

            reply = await self.handle(message)
            await self._transport.send_message(reply)

        self._running = False

    async def stop(self) -> None:
        self._running = False
        self._engine.close()
        await self._transport.close()


async def main() -> None:
    """Main entry point for subprocess worker."""
    if len(sys.argv) < 2:
        logger.error("Session ID required")
        sys.exit(1)

    session_id = sys.argv[1]
    config = EngineConfig.from_env()
    loop = asyncio.get_running_loop()

    logger.info("worker_start", session_id=session_id, pid=psutil.Process().pid, python_version=sys.version)

    reader = asyncio.StreamReader()
    reader_protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: reader_protocol, sys.stdin.buffer)

    writer_transport, writer_protocol = await loop.connect_write_pipe(
        lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader()),
        sys.stdout.buffer,
    )
    writer = asyncio.StreamWriter(writer_transport, writer_protocol, reader, loop)

    # Keep stray writes from corrupting the frame stream
    sys.stdout = sys.stderr

    transport = MessageTransport(reader=reader, writer=writer, use_msgpack=config.use_msgpack)
    worker = SubprocessWorker(transport, session_id, config)

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    finally:
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
