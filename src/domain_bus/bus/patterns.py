"""Topic pattern compiler.

Turns an AMQP-style binding pattern into a matcher for event types:

- literal segment matches exactly that token;
- ``*`` matches exactly one token;
- ``#`` matches zero or more whole tokens.

``#`` must be able to disappear entirely while the dots around it still
line up, so its regex shape depends on where it sits in the pattern:
a lone ``#`` matches anything, a leading one becomes an optional prefix
``(words\\.)?``, a trailing one an optional suffix ``(\\.words)?`` and
one in the middle an optional infix ``\\.(words\\.)?`` that keeps a
single separator when it collapses (``a.#.b`` matches ``a.b``).

The infix form deliberately differs from the literal ``(\\.words\\.)?``
substitution some in-process routers use: that one matches ``ab`` and
misses ``a.b``, whereas the broker binds the other way round.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

_WORD = r"[a-zA-Z0-9_-]+"
_WORDS = rf"{_WORD}(?:\.{_WORD})*"


@dataclass(frozen=True)
class Matcher:
    """Compiled pattern; call it with an event type."""

    pattern: str
    regex: re.Pattern[str]

    def __call__(self, event_type: str) -> bool:
        return self.regex.fullmatch(event_type) is not None


def _segments(pattern: str) -> list[str]:
    # "#.#" means the same as "#"
    parts: list[str] = []
    for part in pattern.split("."):
        if part == "#" and parts and parts[-1] == "#":
            continue
        parts.append(part)
    return parts


def pattern_to_regex(pattern: str) -> str:
    """Translate *pattern* into a regular expression source string."""
    parts = _segments(pattern)

    if parts == ["#"]:
        return ".*"

    pieces: list[str] = []
    last = len(parts) - 1
    for i, part in enumerate(parts):
        if part == "#":
            if i == 0:
                pieces.append(rf"(?:{_WORDS}\.)?")
            elif i == last:
                pieces.append(rf"(?:\.{_WORDS})?")
            else:
                pieces.append(rf"\.(?:{_WORDS}\.)?")
            continue

        if i > 0 and parts[i - 1] != "#":
            pieces.append(r"\.")
        pieces.append(_WORD if part == "*" else re.escape(part))

    return "".join(pieces)


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> Matcher:
    """Compile *pattern* into a ``Matcher`` (cached)."""
    return Matcher(pattern=pattern, regex=re.compile(pattern_to_regex(pattern)))


def matches(pattern: str, event_type: str) -> bool:
    """Convenience: does *event_type* match *pattern*?"""
    return compile_pattern(pattern)(event_type)
