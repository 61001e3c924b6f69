"""Snippet classification and the redeclaration rewrite.

A snippet is one of:

- ``DECLARATION``: a single binding statement with an initializer
  (``x = 1``, ``x: int = 1``, ``a, (b, *rest) = data``, ``a = b = 0``,
  ``def f(): ...``, ``async def f(): ...``, ``class C: ...``).
- ``EXPRESSION``: anything that parses in ``eval`` mode.
- ``STATEMENT``: everything else, including code that does not parse at all.
  Whether such code actually runs is left to the executor.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

import structlog

logger = structlog.get_logger()

# Holds the right-hand side value while a redeclaration is rebound.
VALUE_SLOT = "__linelens_value__"


class SnippetKind(str, Enum):
    EXPRESSION = "expression"
    DECLARATION = "declaration"
    STATEMENT = "statement"


@dataclass(frozen=True)
class Classification:
    kind: SnippetKind
    bound_names: list[str] = field(default_factory=list)


def classify(code: str) -> Classification:
    """Classify ``code``. Never raises."""
    try:
        tree = ast.parse(code, mode="exec")
    except (SyntaxError, ValueError, RecursionError, MemoryError):
        return Classification(SnippetKind.STATEMENT)

    try:
        names = declared_names(tree)
        if names:
            return Classification(SnippetKind.DECLARATION, names)
        ast.parse(code, mode="eval")
        return Classification(SnippetKind.EXPRESSION)
    except (SyntaxError, ValueError, RecursionError, MemoryError):
        return Classification(SnippetKind.STATEMENT)
    except Exception as e:
        logger.debug("Snippet classification failed", error=str(e))
        return Classification(SnippetKind.STATEMENT)


def declared_names(tree: ast.Module) -> list[str]:
    """Names bound by a single-declaration module, else an empty list."""
    if len(tree.body) != 1:
        return []
    node = tree.body[0]

    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
        return [node.name]

    if isinstance(node, ast.AnnAssign):
        if node.value is None or not isinstance(node.target, ast.Name):
            return []
        return [node.target.id]

    if isinstance(node, ast.Assign):
        if not all(_is_binding_pattern(target) for target in node.targets):
            return []
        names: list[str] = []
        for target in node.targets:
            for name in _pattern_names(target):
                if name not in names:
                    names.append(name)
        return names

    return []


def _is_binding_pattern(target: ast.expr) -> bool:
    if isinstance(target, ast.Name):
        return True
    if isinstance(target, ast.Starred):
        return _is_binding_pattern(target.value)
    if isinstance(target, (ast.Tuple, ast.List)):
        return all(_is_binding_pattern(element) for element in target.elts)
    return False


def _pattern_names(target: ast.expr) -> Iterator[str]:
    if isinstance(target, ast.Name):
        yield target.id
    elif isinstance(target, ast.Starred):
        yield from _pattern_names(target.value)
    elif isinstance(target, (ast.Tuple, ast.List)):
        for element in target.elts:
            yield from _pattern_names(element)


def rewrite_as_assignment(code: str) -> Optional[ast.Module]:
    """Rewrite a variable declaration into a value-surfacing assignment.

    ``x: int = expr`` and ``a, b = expr`` become::

        __linelens_value__ = expr
        a, b = __linelens_value__

    so the right-hand side is evaluated exactly once and left in
    ``VALUE_SLOT`` for the caller to collect. Returns ``None`` for ``def`` and
    ``class`` declarations, which are rebound by running them unchanged.
    """
    tree = ast.parse(code, mode="exec")
    node = tree.body[0]

    if isinstance(node, ast.AnnAssign):
        targets: list[ast.expr] = [node.target]
        value = node.value
    elif isinstance(node, ast.Assign):
        targets = list(node.targets)
        value = node.value
    else:
        return None

    hold = ast.Assign(targets=[ast.Name(id=VALUE_SLOT, ctx=ast.Store())], value=value)
    bind = ast.Assign(targets=targets, value=ast.Name(id=VALUE_SLOT, ctx=ast.Load()))
    ast.copy_location(hold, node)
    ast.copy_location(bind, node)
    module = ast.Module(body=[hold, bind], type_ignores=[])
    return ast.fix_missing_locations(module)
