"""Pytest configuration and shared fixtures for the linelens test suite."""

import logging
import sys
from pathlib import Path
from typing import Generator

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from linelens.config import EngineConfig
from linelens.engine.engine import EvaluationEngine


# Configure logging for tests
logging.basicConfig(level=logging.WARNING)


@pytest.fixture
def config() -> EngineConfig:
    """Config with short budgets so timeout paths stay fast."""
    return EngineConfig(
        default_timeout_ms=2000,
        grace_ms=200,
        ready_timeout=10.0,
        shutdown_timeout=2.0,
    )


@pytest.fixture
def engine(config: EngineConfig) -> Generator[EvaluationEngine, None, None]:
    """In-process engine that's properly cleaned up."""
    engine = EvaluationEngine(config)
    yield engine
    engine.close()


@pytest.fixture
def snippets() -> dict[str, str]:
    """Collection of test snippets."""
    return {
        "simple": "1 + 2",
        "print": "print('x')",
        "error": "1 / 0",
        "infinite_loop": "while True: pass",
        "syntax": "def (",
        "declaration": "a = 5",
        "comprehension": "arr = [n * 2 for n in [1, 2]]",
        "circular": "a = []\na.append(a)",
        "async": "async def f():\n    return 7",
    }


# Test markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Component integration tests")
    config.addinivalue_line("markers", "slow: Tests that take >1s")


# Timeout configuration
def pytest_collection_modifyitems(config, items):
    """Modify test collection to add timeout based on markers."""
    for item in items:
        if item.get_closest_marker("slow"):
            item.add_marker(pytest.mark.timeout(30))
        elif item.get_closest_marker("unit"):
            item.add_marker(pytest.mark.timeout(5))
        else:
            item.add_marker(pytest.mark.timeout(15))
