"""In-process snippet evaluation engine.

Owns the registry of per-document contexts and runs each snippet through the
classify / declare / rewrite / expression / statement ladder under a deadline.
``evaluate`` never raises: every failure comes back as a ``Failure``.

Anything that can run snippet-defined code, including rendering the value and
the error message, happens on the execution thread under the same deadline.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import traceback
import types
from collections import OrderedDict
from typing import Any, Optional

import structlog

from ..config import EngineConfig
from ..formatting import UNDEFINED, format_error, format_value, type_name
from .classifier import VALUE_SLOT, SnippetKind, classify
from .context import SNIPPET_FILENAME, ExecutionContext, compile_snippet
from .events import EngineEvent, EngineEventType, EngineListener
from .executor import Deadline, ThreadedExecutor
from .results import EvalResult, Failure, FailureKind, Success

logger = structlog.get_logger()


def _snippet_traceback(error: BaseException) -> str:
    """Traceback limited to the frames that belong to the snippet itself."""
    frames = [
        frame
        for frame in traceback.extract_tb(error.__traceback__)
        if frame.filename == SNIPPET_FILENAME
    ]
    lines = ["Traceback (most recent call last):\n", *traceback.format_list(frames)] if frames else []
    lines.extend(traceback.format_exception_only(type(error), error))
    return "".join(lines)


class _Failed(Exception):
    """Carries a ready-made ``Failure`` out of the execution helpers."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(failure.message)
        self.failure = failure


class EvaluationEngine:
    """Evaluates snippets against persistent, per-document contexts."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        max_contexts: Optional[int] = None,
        default_timeout_ms: Optional[int] = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._max_contexts = max_contexts if max_contexts is not None else self._config.max_contexts
        self._default_timeout_ms = (
            default_timeout_ms if default_timeout_ms is not None else self._config.default_timeout_ms
        )
        self._contexts: OrderedDict[str, ExecutionContext] = OrderedDict()
        self._listeners: list[EngineListener] = []
        self._executor = ThreadedExecutor(
            grace_ms=self._config.grace_ms,
            check_interval=self._config.check_interval,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    # --- Listener API ------------------------------------------------------------

    def add_listener(self, fn: EngineListener) -> None:
        """Register a listener for engine events.

        Listeners run synchronously on the caller's thread after the event has
        happened. They must not block; exceptions they raise are logged and
        otherwise ignored.
        """
        if fn not in self._listeners:
            self._listeners.append(fn)

    def remove_listener(self, fn: EngineListener) -> None:
        """Unregister a previously added listener."""
        with contextlib.suppress(ValueError):
            self._listeners.remove(fn)

    def _emit(self, event_type: EngineEventType, context_id: str, result: Optional[EvalResult] = None) -> None:
        if not self._listeners:
            return
        event = EngineEvent(event_type, context_id, result)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                # Listeners must never break evaluation; log and continue
                logger.warning(
                    "engine_listener_error",
                    event=event_type.value,
                    error=str(e),
                    listener=getattr(listener, "__name__", str(listener)),
                )

    # --- Registry ----------------------------------------------------------------

    def context_ids(self) -> list[str]:
        """Live context ids, least recently used first."""
        return list(self._contexts)

    def get_context(self, context_id: str) -> ExecutionContext:
        """Resolve or lazily create the context for ``context_id``."""
        context = self._contexts.get(context_id)
        if context is None:
            context = ExecutionContext(context_id)
            self._contexts[context_id] = context
            logger.debug("Created context", context_id=context_id, live=len(self._contexts))
            self._evict(keep=context_id)
        else:
            self._contexts.move_to_end(context_id)
        return context

    def _evict(self, keep: str) -> None:
        while len(self._contexts) > self._max_contexts:
            victim = next(
                (cid for cid, ctx in self._contexts.items() if cid != keep and not ctx.busy),
                None,
            )
            if victim is None:
                break
            self._contexts.pop(victim).close()
            logger.info("Evicted least recently used context", context_id=victim)
            self._emit(EngineEventType.CONTEXT_DISPOSED, victim)

    def reset(self, context_id: str) -> None:
        """Give ``context_id`` a fresh scope while keeping it registered."""
        context = self._contexts.get(context_id)
        if context is not None:
            context.reset()
            self._emit(EngineEventType.CONTEXT_CLEARED, context_id)

    def dispose(self, context_id: str) -> None:
        """Remove ``context_id`` from the registry entirely."""
        context = self._contexts.pop(context_id, None)
        if context is not None:
            context.close()
            logger.debug("Disposed context", context_id=context_id)
            self._emit(EngineEventType.CONTEXT_DISPOSED, context_id)

    def peek_console(self, context_id: str) -> list[str]:
        """Output captured by the most recent evaluation on ``context_id``."""
        context = self._contexts.get(context_id)
        return context.snapshot_output() if context is not None else []

    def close(self) -> None:
        """Dispose every context."""
        for context_id in list(self._contexts):
            self.dispose(context_id)

    # --- Evaluation --------------------------------------------------------------

    async def evaluate(self, context_id: str, code: str, timeout_ms: Optional[int] = None) -> EvalResult:
        """Evaluate ``code`` against the context for ``context_id``."""
        budget = timeout_ms if timeout_ms is not None and timeout_ms > 0 else self._default_timeout_ms
        deadline = Deadline(budget)

        try:
            context = self.get_context(context_id)
        except Exception as e:
            logger.error("Failed to resolve context", context_id=context_id, error=str(e))
            result: EvalResult = Failure(FailureKind.INTERNAL, format_error(e), elapsed_ms=deadline.elapsed_ms())
            self._emit(EngineEventType.EXECUTION_ERROR, context_id, result)
            return result

        context.busy = True
        try:
            with context.capture_output():
                try:
                    result = await self._evaluate_in(context, code or "", deadline)
                except _Failed as failed:
                    result = failed.failure
                except Exception as e:
                    logger.error("Evaluation engine fault", context_id=context_id, error=str(e))
                    result = self._failure(context, FailureKind.INTERNAL, e, deadline)
        finally:
            context.busy = False

        logger.debug(
            "Evaluated snippet",
            context_id=context_id,
            ok=result.ok,
            kind=None if result.ok else result.kind.value,
            elapsed_ms=round(result.elapsed_ms, 2),
        )
        self._emit(
            EngineEventType.EXECUTION_SUCCESS if result.ok else EngineEventType.EXECUTION_ERROR,
            context_id,
            result,
        )
        return result

    async def _evaluate_in(self, context: ExecutionContext, code: str, deadline: Deadline) -> EvalResult:
        if not code.strip():
            return await self._success(context, UNDEFINED, deadline, from_statement=True)

        classification = classify(code)

        if classification.kind is SnippetKind.DECLARATION:
            names = classification.bound_names
            if context.declared_names.isdisjoint(names):
                return await self._declare(context, code, names, deadline)
            return await self._redeclare(context, code, names, deadline)

        if classification.kind is SnippetKind.EXPRESSION:
            try:
                code_obj = compile_snippet(code, "eval")
            except SyntaxError:
                return await self._statement(context, code, deadline)
            except Exception as e:
                return self._failure(context, FailureKind.RUNTIME, e, deadline)
            value = await self._run(context, code_obj, deadline)
            return await self._success(context, value, deadline)

        return await self._statement(context, code, deadline)

    async def _declare(
        self, context: ExecutionContext, code: str, names: list[str], deadline: Deadline
    ) -> EvalResult:
        code_obj = self._compile(context, code, deadline)
        await self._run(context, code_obj, deadline)
        context.declared_names.update(names)
        return await self._success(context, UNDEFINED, deadline, from_statement=True)

    async def _redeclare(
        self, context: ExecutionContext, code: str, names: list[str], deadline: Deadline
    ) -> EvalResult:
        code_obj = self._compile(context, code, deadline, as_assignment=True)
        try:
            await self._run(context, code_obj, deadline)
            # def / class leave no value slot: the rebound object is the value
            value = context.scope.get(VALUE_SLOT, context.scope.get(names[0], UNDEFINED))
        finally:
            context.scope.pop(VALUE_SLOT, None)
        context.declared_names.update(names)
        return await self._success(context, value, deadline)

    async def _statement(self, context: ExecutionContext, code: str, deadline: Deadline) -> EvalResult:
        code_obj = self._compile(context, code, deadline)
        await self._run(context, code_obj, deadline)
        return await self._success(context, UNDEFINED, deadline, from_statement=True)

    def _compile(
        self,
        context: ExecutionContext,
        source: str,
        deadline: Deadline,
        *,
        as_assignment: bool = False,
    ) -> types.CodeType:
        try:
            return compile_snippet(source, "exec", as_assignment)
        except SyntaxError as e:
            raise _Failed(self._failure(context, FailureKind.SYNTAX, e, deadline))
        except Exception as e:
            raise _Failed(self._failure(context, FailureKind.RUNTIME, e, deadline))

    async def _run(self, context: ExecutionContext, code_obj: types.CodeType, deadline: Deadline) -> Any:
        """Execute ``code_obj`` in the context scope and await an awaitable result."""
        scope = context.scope
        outcome = await self._executor.run(lambda: eval(code_obj, scope), deadline, name=context.id)

        if outcome.timed_out:
            raise _Failed(self._timeout(context, deadline))
        if outcome.error is not None:
            raise _Failed(await self._runtime_failure(context, outcome.error, deadline))

        value = outcome.value
        if inspect.isawaitable(value):
            # Only cooperative suspension is bounded here; synchronous work
            # inside the awaited coroutine runs on the loop without the tracer.
            try:
                value = await asyncio.wait_for(value, timeout=deadline.remaining())
            except asyncio.TimeoutError:
                raise _Failed(self._timeout(context, deadline))
            except Exception as e:
                raise _Failed(await self._runtime_failure(context, e, deadline))
        return value

    # --- Result construction -----------------------------------------------------

    async def _success(
        self,
        context: ExecutionContext,
        value: Any,
        deadline: Deadline,
        *,
        from_statement: bool = False,
    ) -> Success:
        if value is UNDEFINED:
            rendered_type, rendered = type_name(value), format_value(value)
        else:
            max_length = self._config.max_value_length
            outcome = await self._executor.run(
                lambda: (type_name(value), format_value(value, max_length)),
                deadline,
                name=f"{context.id}-render",
            )
            if outcome.timed_out:
                raise _Failed(self._timeout(context, deadline))
            if outcome.error is not None:
                raise _Failed(self._failure(context, FailureKind.INTERNAL, outcome.error, deadline))
            rendered_type, rendered = outcome.value

        return Success(
            value=value,
            rendered_type=rendered_type,
            console_output=context.snapshot_output(),
            produced_from_statement=from_statement,
            rendered=rendered,
            elapsed_ms=deadline.elapsed_ms(),
        )

    async def _runtime_failure(self, context: ExecutionContext, error: BaseException, deadline: Deadline) -> Failure:
        """``Failure(runtime)`` for an error raised by snippet code.

        The message comes from the error's own ``__str__``, so it is rendered
        on the execution thread under the remaining budget.
        """
        outcome = await self._executor.run(
            lambda: (format_error(error), _snippet_traceback(error)),
            deadline,
            name=f"{context.id}-error",
        )
        if outcome.timed_out:
            return self._timeout(context, deadline)
        if outcome.error is not None:
            message, trace = type(error).__name__, None
        else:
            message, trace = outcome.value
        return Failure(
            kind=FailureKind.RUNTIME,
            message=message,
            console_output=context.snapshot_output(),
            traceback=trace,
            elapsed_ms=deadline.elapsed_ms(),
        )

    def _failure(
        self,
        context: ExecutionContext,
        kind: FailureKind,
        error: BaseException,
        deadline: Deadline,
    ) -> Failure:
        return Failure(
            kind=kind,
            message=format_error(error),
            console_output=context.snapshot_output(),
            traceback=_snippet_traceback(error),
            elapsed_ms=deadline.elapsed_ms(),
        )

    def _timeout(self, context: ExecutionContext, deadline: Deadline) -> Failure:
        return Failure(
            kind=FailureKind.TIMEOUT,
            message=f"Execution timed out after {deadline.timeout_ms}ms",
            console_output=context.snapshot_output(),
            elapsed_ms=deadline.elapsed_ms(),
        )
