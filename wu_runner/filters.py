"""Include/exclude filter rules for discovered updates.

Rules are given as ``action:predicate`` strings, for example::

    exclude:like(update.title, '*Preview*')
    exclude:update.can_request_user_input
    include:True

The predicate is a Python expression evaluated with ``update`` bound to the
candidate and a handful of helpers in scope. Rules are checked in order and the
first matching predicate decides; an update matched by no rule is excluded.
"""

from __future__ import annotations

import ast
import fnmatch
import re
from dataclasses import dataclass
from enum import Enum
from types import CodeType
from typing import Any, Dict, Iterable, List, Optional

from .models import Update

DEFAULT_FILTERS = ["include:True"]


class FilterRuleError(ValueError):
    """A filter rule could not be parsed or evaluated."""


class FilterAction(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


def like(text: Optional[str], pattern: str) -> bool:
    """Case-insensitive wildcard match (``*``, ``?``, ``[...]``)."""
    return fnmatch.fnmatchcase((text or "").lower(), pattern.lower())


def match(text: Optional[str], regex: str) -> bool:
    """Case-insensitive regular expression search."""
    return re.search(regex, text or "", re.IGNORECASE) is not None


_PREDICATE_GLOBALS: Dict[str, Any] = {
    "__builtins__": {},
    "like": like,
    "match": match,
    "len": len,
    "any": any,
    "all": all,
    "str": str,
    "int": int,
}


@dataclass(frozen=True)
class FilterRule:
    action: FilterAction
    expression: str
    code: CodeType

    def matches(self, update: Update) -> bool:
        try:
            return bool(eval(self.code, dict(_PREDICATE_GLOBALS, update=update)))
        except Exception as e:
            raise FilterRuleError(
                f"Filter '{self}' failed on update '{update.title}': {e}"
            ) from e

    def __str__(self) -> str:
        return f"{self.action.value}:{self.expression}"


def _reject_private_names(text: str, tree: ast.AST) -> None:
    # underscore names reach interpreter internals such as like.__globals__
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            name = node.attr
        elif isinstance(node, ast.Name):
            name = node.id
        else:
            continue
        if name.startswith("_"):
            raise FilterRuleError(f"Filter '{text}' uses private name '{name}'")


def parse_filter_rule(text: str) -> FilterRule:
    """Compile a single ``action:predicate`` string."""
    action_text, sep, expression = text.partition(":")
    if not sep:
        raise FilterRuleError(
            f"Filter '{text}' must have the form action:predicate"
        )
    try:
        action = FilterAction(action_text.strip().lower())
    except ValueError:
        raise FilterRuleError(
            f"Filter '{text}' has unknown action '{action_text.strip()}' "
            "(expected include or exclude)"
        ) from None
    expression = expression.strip()
    if not expression:
        raise FilterRuleError(f"Filter '{text}' has an empty predicate")
    try:
        tree = ast.parse(expression, "<filter>", "eval")
    except SyntaxError as e:
        raise FilterRuleError(f"Filter '{text}' has invalid syntax: {e.msg}") from e
    _reject_private_names(text, tree)
    code = compile(tree, "<filter>", "eval")
    return FilterRule(action, expression, code)


def parse_filter_rules(texts: Iterable[str]) -> List[FilterRule]:
    return [parse_filter_rule(t) for t in texts]


def include(rules: Iterable[FilterRule], update: Update) -> bool:
    for rule in rules:
        if rule.matches(update):
            return rule.action is FilterAction.INCLUDE
    return False
