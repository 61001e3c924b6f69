"""Configuration for engine and worker behavior."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from typing import Mapping, Optional

import structlog

logger = structlog.get_logger()

ENV_PREFIX = "LINELENS_"


@dataclass
class EngineConfig:
    """Configuration shared by the in-process engine and the isolation tier.

    Every field can be overridden from the environment as
    ``LINELENS_<FIELD_NAME>`` (for example ``LINELENS_DEFAULT_TIMEOUT_MS``).
    """

    # Evaluation
    default_timeout_ms: int = 5000
    max_contexts: int = 50
    max_value_length: int = 100

    # Deadline enforcement
    grace_ms: int = 200
    check_interval: int = 100

    # Worker processes
    ready_timeout: float = 10.0
    shutdown_timeout: float = 2.0
    use_msgpack: bool = True
    python_path: str = field(default_factory=lambda: sys.executable)

    def resolve_timeout(self, timeout_ms: Optional[int]) -> int:
        """Per-call budget, falling back to the default for missing or non-positive values."""
        if timeout_ms is None or timeout_ms <= 0:
            return self.default_timeout_ms
        return int(timeout_ms)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
        """Build a config from defaults overridden by ``LINELENS_*`` variables.

        Unparseable values are ignored with a warning.
        """
        env = os.environ if environ is None else environ
        config = cls()
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            current = getattr(config, f.name)
            try:
                if isinstance(current, bool):
                    value: object = raw.strip().lower() in {"1", "true", "yes"}
                elif isinstance(current, int):
                    value = int(raw)
                elif isinstance(current, float):
                    value = float(raw)
                else:
                    value = raw
            except ValueError:
                logger.warning("Ignoring invalid config value", key=ENV_PREFIX + f.name.upper(), value=raw)
                continue
            setattr(config, f.name, value)
        return config

    def to_env(self) -> dict[str, str]:
        """Environment variables that reproduce this config in a worker process."""
        env: dict[str, str] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            env[ENV_PREFIX + f.name.upper()] = str(value).lower() if isinstance(value, bool) else str(value)
        return env
