"""Engine lifecycle events delivered to registered listeners."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .results import EvalResult


class EngineEventType(str, Enum):
    EXECUTION_SUCCESS = "execution:success"
    EXECUTION_ERROR = "execution:error"
    CONTEXT_CLEARED = "context:cleared"
    CONTEXT_DISPOSED = "context:disposed"


@dataclass(frozen=True)
class EngineEvent:
    """One event; ``result`` is set for the execution events only."""

    type: EngineEventType
    context_id: str
    result: Optional[EvalResult] = None


EngineListener = Callable[[EngineEvent], None]
