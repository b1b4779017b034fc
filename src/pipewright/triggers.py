# triggers.py
from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable

from .errors import ConfigError
from .model import Event, TriggerRule


def compile_branch_pattern(pattern: str) -> re.Pattern:
    """
    Translate a branch glob into an anchored, case-sensitive regex.

      *       any run of characters except "/"
      **      any run of characters, "/" included
      ?       one character except "/"
      [...]   character class ("[!...]" negates)

    Raises ConfigError for patterns that cannot be matched reliably.
    """
    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigError("Branch pattern must be a non-empty string", pattern=repr(pattern))
    return _compile(pattern)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 2 if pattern.startswith("[!", i) else i + 1)
            if end == -1:
                raise ConfigError("Unterminated character class in branch pattern", pattern=pattern)
            body = pattern[i + 1 : end]
            if body.startswith("!"):
                body = "^" + body[1:]
            if not body or body == "^":
                raise ConfigError("Empty character class in branch pattern", pattern=pattern)
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = end
        elif c == "]":
            raise ConfigError("Unbalanced ']' in branch pattern", pattern=pattern)
        else:
            out.append(re.escape(c))
        i += 1

    try:
        return re.compile("".join(out) + r"\Z")
    except re.error as e:
        raise ConfigError(f"Invalid branch pattern: {e}", pattern=pattern) from e


def validate_rules(rules: Iterable[TriggerRule]) -> None:
    """Compile every pattern once so a bad one fails before anything runs."""
    for rule in rules:
        for pattern in rule.branches or ():
            compile_branch_pattern(pattern)


def branch_matches(pattern: str, branch: str) -> bool:
    regex = compile_branch_pattern(pattern)
    return pattern == branch or regex.match(branch) is not None


def should_run(event: Event, rules: Iterable[TriggerRule]) -> bool:
    """True on the first rule of the event's kind whose branch pattern matches."""
    rules = tuple(rules)
    validate_rules(rules)
    for rule in rules:
        if rule.kind != event.kind:
            continue
        if rule.branches is None:
            return True
        for pattern in rule.branches:
            if branch_matches(pattern, event.target_branch):
                return True
    return False
