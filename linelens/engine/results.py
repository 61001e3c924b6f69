"""Evaluation result model shared by the in-process and isolated engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from ..formatting import UNDEFINED


class FailureKind(str, Enum):
    """Why an evaluation did not produce a value."""

    SYNTAX = "syntax"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Success:
    """A snippet ran to completion.

    ``produced_from_statement`` is true when the snippet ran as a statement or
    first-time declaration; ``value`` is then ``UNDEFINED``.
    """

    value: Any = UNDEFINED
    rendered_type: str = "undefined"
    console_output: list[str] = field(default_factory=list)
    produced_from_statement: bool = False
    rendered: str = "undefined"
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """A snippet failed to parse, raised, timed out, or its host broke."""

    kind: FailureKind
    message: str
    console_output: list[str] = field(default_factory=list)
    traceback: Optional[str] = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return False


EvalResult = Union[Success, Failure]

__all__ = ["UNDEFINED", "EvalResult", "Failure", "FailureKind", "Success"]
