"""Bounded, human-readable rendering of evaluated values.

Everything in this module is pure and never raises: unsupported or hostile
values degrade to a short placeholder instead.
"""

from __future__ import annotations

import inspect
from typing import Any

DEFAULT_MAX_LENGTH = 100
ELLIPSIS = "..."
CIRCULAR = "[Circular]"

_OPENERS = {"[": "]", "(": ")", "{": "}"}
_CLOSERS = set(_OPENERS.values())


class _Undefined:
    """Marker for "no value", distinct from ``None``."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


def type_name(value: Any) -> str:
    """Short type label for a value, as shown next to a result."""
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "None"
    if inspect.isclass(value):
        return "class"
    if _is_function(value):
        return "function"
    return type(value).__name__


def format_error(error: BaseException) -> str:
    """Render an exception as ``"<Kind>: <message>"``."""
    try:
        message = str(error)
    except Exception:
        message = "<unprintable message>"
    kind = type(error).__name__
    return f"{kind}: {message}" if message else kind


def format_value(value: Any, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Render ``value`` as text no longer than ``max_length`` plus closing marks."""
    try:
        text = _render(value, set())
    except RecursionError:
        text = _placeholder(value)
    except Exception:
        text = _placeholder(value)
    return _truncate(text, max_length)


def _render(value: Any, seen: set[int]) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None or isinstance(value, (bool, int, float, complex)):
        return repr(value)
    if isinstance(value, (str, bytes)):
        return repr(value)
    if isinstance(value, BaseException):
        return format_error(value)
    if inspect.isclass(value):
        return f"[Class {getattr(value, '__qualname__', value.__name__)}]"
    if _is_function(value):
        return f"[Function {_function_name(value)}]"
    if isinstance(value, (dict, list, tuple, set, frozenset)):
        if id(value) in seen:
            return CIRCULAR
        seen.add(id(value))
        return _render_container(value, seen)
    try:
        return repr(value)
    except Exception:
        return _placeholder(value)


def _render_container(value: Any, seen: set[int]) -> str:
    if isinstance(value, dict):
        items = ", ".join(
            f"{_render(key, seen)}: {_render(item, seen)}" for key, item in value.items()
        )
        return "{" + items + "}"
    if isinstance(value, list):
        return "[" + ", ".join(_render(item, seen) for item in value) + "]"
    if isinstance(value, tuple):
        if len(value) == 1:
            return "(" + _render(value[0], seen) + ",)"
        return "(" + ", ".join(_render(item, seen) for item in value) + ")"
    # set / frozenset
    if not value:
        return f"{type(value).__name__}()"
    body = "{" + ", ".join(_render(item, seen) for item in value) + "}"
    return body if isinstance(value, set) else f"frozenset({body})"


def _is_function(value: Any) -> bool:
    return (
        inspect.isfunction(value)
        or inspect.isbuiltin(value)
        or inspect.ismethod(value)
        or inspect.ismethoddescriptor(value)
    )


def _function_name(value: Any) -> str:
    name = getattr(value, "__name__", None)
    if not name or name == "<lambda>":
        return "anonymous"
    return name


def _placeholder(value: Any) -> str:
    return f"[Unserializable {type(value).__name__}]"


def _truncate(text: str, max_length: int) -> str:
    if max_length <= 0 or len(text) <= max_length:
        return text
    head = text[:max_length]
    return head + ELLIPSIS + _closing_marks(head)


def _closing_marks(head: str) -> str:
    """Best-effort closers for brackets and quotes left open in ``head``."""
    stack: list[str] = []
    quote: str | None = None
    escaped = False
    for char in head:
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in _CLOSERS and stack and stack[-1] == char:
            stack.pop()
    closers = "".join(reversed(stack))
    return (quote or "") + closers
