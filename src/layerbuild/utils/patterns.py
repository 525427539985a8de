"""
Glob pattern handling for ignore rules and COPY/RUN source selection.

Patterns are matched with fnmatch against POSIX relative paths. A pattern that
matches a directory also matches everything below it.
"""

import fnmatch
import logging
from typing import Iterable, List, Tuple

from ..exceptions import IgnoreRuleError

logger = logging.getLogger(__name__)

_SELECT_ALL = {"", ".", "/", "./", "**", "*"}


def _ancestors(path: str) -> List[str]:
    """'a/b/c.txt' -> ['a', 'a/b']"""
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


def _has_balanced_brackets(pattern: str) -> bool:
    depth = 0
    for ch in pattern:
        if ch == "[":
            if depth:
                return False
            depth = 1
        elif ch == "]" and depth:
            depth = 0
    return depth == 0


def normalize_rule(rule: str) -> str:
    """
    Validate an ignore rule and return its normalized form

    Args:
        rule: raw glob pattern relative to the context root

    Returns:
        normalized pattern ('/' separators, no leading './' or '/');
        a trailing '/' is kept to mark a directory-only rule

    Raises:
        IgnoreRuleError: for empty patterns, '..' segments, '!' exceptions
            or unbalanced character classes
    """
    if not isinstance(rule, str):
        raise IgnoreRuleError(f"Ignore rule must be a string, got {type(rule).__name__}")
    normalized = rule.strip().replace("\\", "/")
    if not normalized:
        raise IgnoreRuleError("Ignore rule must not be empty")
    if normalized.startswith("!"):
        raise IgnoreRuleError(f"Exception rules are not supported: '{rule}'")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.lstrip("/")
    if not normalized or normalized == "/":
        raise IgnoreRuleError(f"Ignore rule '{rule}' would exclude the whole context")
    if ".." in normalized.rstrip("/").split("/"):
        raise IgnoreRuleError(f"Ignore rule '{rule}' must not leave the context root")
    if not _has_balanced_brackets(normalized):
        raise IgnoreRuleError(f"Ignore rule '{rule}' has an unbalanced '['")
    return normalized


def normalize_rules(rules: Iterable[str]) -> Tuple[str, ...]:
    """Normalize a collection of rules, dropping duplicates but keeping first-seen order."""
    seen = {}
    for rule in rules:
        seen.setdefault(normalize_rule(rule), None)
    return tuple(seen)


def _match_one(candidate: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(candidate, pattern):
        return True
    # '**/name' also matches 'name' at the root
    if pattern.startswith("**/") and fnmatch.fnmatchcase(candidate, pattern[3:]):
        return True
    return False


def is_ignored(path: str, rules: Iterable[str], is_dir: bool = False) -> bool:
    """
    Check whether a relative path is excluded by any (normalized) rule

    Args:
        path: POSIX path relative to the context root
        rules: normalized ignore rules
        is_dir: whether the path itself is a directory
    """
    ancestors = _ancestors(path)
    for rule in rules:
        dir_only = rule.endswith("/")
        pattern = rule.rstrip("/")
        if (not dir_only or is_dir) and _match_one(path, pattern):
            return True
        if any(_match_one(parent, pattern) for parent in ancestors):
            return True
    return False


def normalize_source(pattern: str) -> str:
    """Normalize a COPY/RUN source pattern to the context-relative form used for matching."""
    normalized = pattern.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.strip("/")
    return normalized


def select_paths(paths: Iterable[str], patterns: Iterable[str]) -> List[str]:
    """
    Select the paths referred to by source patterns

    A pattern selects a path when it equals the path, names one of its parent
    directories, or glob-matches the path or one of its parents. '.' and '/'
    select everything. The result keeps the input order.
    """
    normalized = [normalize_source(p) for p in patterns]
    if any(p in _SELECT_ALL for p in normalized):
        return list(paths)

    selected = []
    for path in paths:
        candidates = [path] + _ancestors(path)
        if any(_match_one(c, p) for p in normalized for c in candidates):
            selected.append(path)
    return selected
