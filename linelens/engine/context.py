"""Per-document execution surface.

A context owns a fresh scope built from an explicit allow-list, the set of
names it has seen declared, and the buffer that receives diagnostic writes.
Host capabilities (file and process access, imports, dynamic code) are never
placed in the scope.

Snippet source is compiled through RestrictedPython's transformer, so
attribute, item, iteration and unpacking operations in snippet code go
through the guard functions installed in every scope.
"""

from __future__ import annotations

import ast
import builtins
import contextlib
import contextvars
import datetime
import functools
import json
import math
import operator
import re
import statistics
import types
from typing import Any, Dict, Iterator, Optional

import structlog
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.transformer import RestrictingNodeTransformer

from ..formatting import type_name
from .classifier import VALUE_SLOT, rewrite_as_assignment

logger = structlog.get_logger()

SNIPPET_FILENAME = "<snippet>"

# Compiled snippets kept for reuse, keyed on source and mode.
COMPILE_CACHE_SIZE = 100

SAFE_BUILTIN_NAMES = frozenset(
    {
        # Types and constructors
        "bool", "bytes", "bytearray", "complex", "dict", "float", "frozenset",
        "int", "list", "object", "range", "set", "slice", "str", "tuple", "type",
        # Functions
        "abs", "all", "any", "ascii", "bin", "callable", "chr", "divmod",
        "enumerate", "filter", "format", "hash", "hex", "id", "isinstance",
        "issubclass", "iter", "len", "map", "max", "min", "next", "oct", "ord",
        "pow", "repr", "reversed", "round", "sorted", "sum", "zip",
        "aiter", "anext",
        # Class machinery
        "__build_class__", "classmethod", "property", "staticmethod", "super",
        # Exceptions
        "ArithmeticError", "AssertionError", "AttributeError", "Exception",
        "IndexError", "KeyError", "LookupError", "NameError",
        "NotImplementedError", "OverflowError", "RecursionError",
        "RuntimeError", "StopAsyncIteration", "StopIteration", "TypeError",
        "UnicodeError", "ValueError", "ZeroDivisionError",
        # Constants
        "Ellipsis", "NotImplemented",
    }
)

# Modules exposed as attribute-limited namespaces.
SAFE_MODULES: Dict[str, tuple[Any, frozenset[str]]] = {
    "math": (
        math,
        frozenset(
            name for name in dir(math) if not name.startswith("_")
        ),
    ),
    "json": (json, frozenset({"dumps", "loads", "JSONDecodeError"})),
    "re": (
        re,
        frozenset(
            {
                "compile", "escape", "findall", "finditer", "fullmatch", "match",
                "search", "split", "sub", "subn", "IGNORECASE", "MULTILINE",
                "DOTALL", "VERBOSE", "ASCII", "I", "M", "S", "X", "error",
            }
        ),
    ),
    "datetime": (
        datetime,
        frozenset({"date", "datetime", "time", "timedelta", "timezone", "MINYEAR", "MAXYEAR"}),
    ),
    "statistics": (
        statistics,
        frozenset({"mean", "median", "mode", "stdev", "variance", "pstdev", "pvariance"}),
    ),
}


# Frame, code and traceback handles on generators, coroutines and exceptions.
INTROSPECTION_ATTRIBUTES = frozenset(
    {
        "gi_frame", "gi_code", "gi_yieldfrom",
        "cr_frame", "cr_code", "cr_await", "cr_origin",
        "ag_frame", "ag_code", "ag_await",
        "f_back", "f_builtins", "f_code", "f_globals", "f_locals", "f_trace",
        "tb_frame", "tb_next",
        "co_code",
    }
)

_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "@=": operator.imatmul,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "^=": operator.ixor,
    "|=": operator.ior,
}

_MISSING = object()


class SnippetAccessError(PermissionError):
    """Raised when snippet code is rejected by the restricting compiler."""


class SnippetPolicy(RestrictingNodeTransformer):
    """RestrictedPython policy for snippets.

    On top of the stock rules it refuses frame and code handles and admits
    ``async def`` and ``await``; awaitables are driven by the engine. The
    engine's own value slot passes the underscore-name check.
    """

    def check_name(self, node: ast.AST, name: Optional[str], allow_magic_methods: bool = False) -> None:
        if name == VALUE_SLOT:
            return
        super().check_name(node, name, allow_magic_methods=allow_magic_methods)

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        if node.attr in INTROSPECTION_ATTRIBUTES:
            self.error(node, f'"{node.attr}" is a restricted name that snippets may not access.')
            return node
        return super().visit_Attribute(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AST:
        return self.visit_FunctionDef(node)

    def visit_Await(self, node: ast.Await) -> ast.AST:
        return self.node_contents_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> ast.AST:
        return self.node_contents_visit(node)


def restrict(tree: ast.AST) -> ast.AST:
    """Run ``tree`` through ``SnippetPolicy`` in place.

    Raises:
        SnippetAccessError: If the policy rejects any node
    """
    errors: list[str] = []
    warnings: list[str] = []
    used_names: Dict[str, bool] = {}
    SnippetPolicy(errors, warnings, used_names).visit(tree)
    if errors:
        raise SnippetAccessError("; ".join(errors))
    return tree


@functools.lru_cache(maxsize=COMPILE_CACHE_SIZE)
def compile_snippet(source: str, mode: str, as_assignment: bool = False) -> types.CodeType:
    """Parse, restrict and compile snippet source with top-level await enabled.

    With ``as_assignment`` a variable declaration is compiled in its
    value-surfacing form (see ``rewrite_as_assignment``). Results are cached;
    code objects are immutable and safe to share between contexts.

    Raises:
        SyntaxError: If the source does not parse in ``mode``
        SnippetAccessError: If the source is rejected by the policy
    """
    tree: Optional[ast.AST] = rewrite_as_assignment(source) if as_assignment else None
    if tree is None:
        tree = ast.parse(source, SNIPPET_FILENAME, mode)
    restrict(tree)
    return compile(
        tree,
        SNIPPET_FILENAME,
        mode,
        flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
        dont_inherit=True,
    )


def guarded_getattr(obj: Any, name: str) -> Any:
    """``_getattr_`` guard: ``safer_getattr`` plus the introspection handles."""
    if name in INTROSPECTION_ATTRIBUTES:
        raise AttributeError(f"access to attribute '{name}' is not allowed")
    if name in ("format", "format_map") and (
        isinstance(obj, str) or (isinstance(obj, type) and issubclass(obj, str))
    ):
        raise NotImplementedError(f"Using {name}() on a str is not safe.")
    value = safer_getattr(obj, name, _MISSING)
    if value is _MISSING:
        raise AttributeError(f"{type(obj).__name__!r} object has no attribute {name!r}")
    return value


def guarded_inplacevar(op: str, target: Any, value: Any) -> Any:
    operation = _INPLACE_OPERATORS.get(op)
    if operation is None:
        raise SnippetAccessError(f"augmented assignment {op!r} is not allowed")
    return operation(target, value)


def guarded_apply(func: Any, *args: Any, **kwargs: Any) -> Any:
    return func(*args, **kwargs)


# Output of the evaluation running in the current execution context. Stale
# threads keep the buffer they were started with.
_active_output: contextvars.ContextVar[Optional[tuple[ExecutionContext, list[str]]]] = contextvars.ContextVar(
    "linelens_active_output", default=None
)


class ConsoleWriter:
    """``print`` replacement that appends one entry per call to the owning buffer.

    Holds the context rather than the buffer so the buffer can be swapped or
    cleared without rebuilding the scope.
    """

    def __init__(self, context: ExecutionContext, prefix: str = "") -> None:
        self._context = context
        self._prefix = prefix

    def __call__(self, *args: Any, sep: Optional[str] = " ", end: Optional[str] = "\n", **_: Any) -> None:
        sep = " " if sep is None else sep
        end = "\n" if end is None else end
        text = sep.join(str(arg) for arg in args) + end
        if text.endswith("\n"):
            text = text[:-1]
        self._context.write(self._prefix + text)

    def _call_print(self, *args: Any, **kwargs: Any) -> None:
        """Target of compiled ``print(...)`` calls."""
        self(*args, **kwargs)


class Console:
    """``console.log`` style writers for snippets pasted from other languages."""

    def __init__(self, context: ExecutionContext) -> None:
        self.log = ConsoleWriter(context)
        self.info = ConsoleWriter(context)
        self.debug = ConsoleWriter(context)
        self.warn = ConsoleWriter(context, prefix="[warn] ")
        self.error = ConsoleWriter(context, prefix="[error] ")

    def __repr__(self) -> str:
        return "<console>"


def _make_typeof(context: ExecutionContext) -> Any:
    def typeof(name: str) -> str:
        """Type label of a bound name, or ``"undefined"`` if it is unbound."""
        scope = context.scope
        if name in scope:
            return type_name(scope[name])
        safe_builtins = scope.get("__builtins__", {})
        if name in safe_builtins:
            return type_name(safe_builtins[name])
        return "undefined"

    return typeof


class ExecutionContext:
    """Isolated evaluation surface bound to one logical document."""

    def __init__(self, context_id: str) -> None:
        self.id = context_id
        self.declared_names: set[str] = set()
        self.output_buffer: list[str] = []
        self.busy = False
        self.scope: Dict[str, Any] = {}
        self._build_scope()

    def _build_scope(self) -> None:
        safe_builtins: Dict[str, Any] = {
            name: getattr(builtins, name)
            for name in SAFE_BUILTIN_NAMES
            if hasattr(builtins, name)
        }
        writer = ConsoleWriter(self)
        console = Console(self)
        facades = {
            name: types.SimpleNamespace(
                **{attr: getattr(module, attr) for attr in exported if hasattr(module, attr)}
            )
            for name, (module, exported) in SAFE_MODULES.items()
        }
        host_objects = (writer, console, *facades.values())

        def guarded_write(obj: Any) -> Any:
            if any(obj is host for host in host_objects):
                raise SnippetAccessError(f"cannot modify host object of type {type(obj).__name__}")
            return obj

        safe_builtins["print"] = writer
        safe_builtins["console"] = console
        safe_builtins["typeof"] = _make_typeof(self)
        safe_builtins.update(facades)

        self.scope = {
            "__name__": "__main__",
            "__doc__": None,
            "__builtins__": safe_builtins,
            "__metaclass__": type,
            "_getattr_": guarded_getattr,
            "_getitem_": default_guarded_getitem,
            "_getiter_": default_guarded_getiter,
            "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
            "_unpack_sequence_": guarded_unpack_sequence,
            "_inplacevar_": guarded_inplacevar,
            "_apply_": guarded_apply,
            "_write_": guarded_write,
            "_print_": lambda _getattr=None: writer,
            "_print": writer,
        }

    def write(self, text: str) -> None:
        active = _active_output.get()
        if active is not None and active[0] is self:
            active[1].append(text)
        else:
            self.output_buffer.append(text)

    @contextlib.contextmanager
    def capture_output(self) -> Iterator[list[str]]:
        """Start a fresh buffer owned by the evaluation running in this block.

        Writes from threads started inside the block keep landing in this
        buffer even after the block exits, so they never leak into a later
        evaluation's output.
        """
        self.output_buffer = []
        token = _active_output.set((self, self.output_buffer))
        try:
            yield self.output_buffer
        finally:
            _active_output.reset(token)

    def clear_output(self) -> None:
        self.output_buffer = []

    def snapshot_output(self) -> list[str]:
        return list(self.output_buffer)

    def reset(self) -> None:
        """Forget declared names, rebuild the scope and empty the buffer."""
        self.declared_names.clear()
        self.clear_output()
        self._build_scope()
        logger.debug("Context reset", context_id=self.id)

    def close(self) -> None:
        """Drop scope references; the context must not be used afterwards."""
        self.scope.clear()
        self.declared_names.clear()
        self.output_buffer = []

    def __repr__(self) -> str:
        return f"ExecutionContext(id={self.id!r}, declared={sorted(self.declared_names)!r})"
