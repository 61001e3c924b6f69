#!/usr/bin/env python3
"""linelens - live inline evaluation of Python snippets."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import structlog

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from linelens.config import EngineConfig
from linelens.engine.engine import EvaluationEngine
from linelens.engine.results import EvalResult
from linelens.session.pool import IsolatedEngine

logging.basicConfig(level=logging.INFO, format="%(message)s")

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

DOCUMENT = [
    "a = 5",
    "a = 10",
    "arr = [n * 2 for n in [1, 2, 3]]",
    "print('total', sum(arr))",
    "def double(n):\n    return n * 2",
    "double",
    "items = []\nitems.append(items)",
    "items",
    "1 / 0",
    "import os",
    "typeof('open')",
    "while True: pass",
]


def show(code: str, result: EvalResult) -> None:
    first_line = code.splitlines()[0]
    if result.ok:
        marker = "" if result.produced_from_statement else f"  => {result.rendered} ({result.rendered_type})"
        print(f"{first_line:<40}{marker}")
    else:
        print(f"{first_line:<40}  !! {result.kind.value}: {result.message}")
    for line in result.console_output:
        print(f"{'':<40}  | {line}")


async def demo_in_process(config: EngineConfig) -> None:
    """Evaluate a document with the in-process engine."""
    print("=== In-process engine ===\n")
    engine = EvaluationEngine(config)
    try:
        for code in DOCUMENT:
            show(code, await engine.evaluate("demo.py", code, timeout_ms=500))
    finally:
        engine.close()


async def demo_isolated(config: EngineConfig) -> None:
    """Evaluate the same document in a worker process."""
    print("\n=== Isolated engine ===\n")
    engine = IsolatedEngine(config)
    try:
        for code in DOCUMENT:
            show(code, await engine.evaluate("demo.py", code, timeout_ms=500))
        # Uninterruptible work: the worker is killed and respawned
        show("sum(range(10**12))", await engine.evaluate("demo.py", "sum(range(10**12))", timeout_ms=500))
        show("a", await engine.evaluate("demo.py", "a"))
    finally:
        await engine.close()


async def main() -> None:
    """Main entry point."""
    print("linelens - live inline evaluation")
    print("=" * 40)

    config = EngineConfig.from_env()
    try:
        await demo_in_process(config)
        await demo_isolated(config)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
    except Exception as e:
        logger.error("Demo error", error=str(e), exc_info=True)


if __name__ == "__main__":
    asyncio.run(main())
