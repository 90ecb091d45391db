from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, Sequence

from . import config
from .errors import ConfigError, NoMatchingChapters
from .log import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class ChapterManifestEntry:
    path: str
    ordinal: int
    content: str
    name: str | None = None

    @property
    def posix_path(self) -> str:
        return PurePosixPath(self.path.replace("\\", "/")).as_posix()


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate a shell glob into a regex over POSIX chapter paths.

    `*` and `?` also match `/`; `**` must be a whole path component and
    matches zero or more directories.
    """
    if not isinstance(pattern, str) or not pattern:
        raise ConfigError(f"include pattern must be a non-empty string: {pattern!r}")
    parts: list[str] = []
    i = 0
    length = len(pattern)
    while i < length:
        ch = pattern[i]
        if ch == "*":
            stars = 1
            while i + stars < length and pattern[i + stars] == "*":
                stars += 1
            if stars == 1:
                parts.append(".*")
                i += 1
                continue
            if stars > 2:
                raise ConfigError(f"invalid include pattern {pattern!r}: wildcards are either regular `*` or recursive `**`")
            before_ok = i == 0 or pattern[i - 1] == "/"
            after = i + 2
            after_ok = after == length or pattern[after] == "/"
            if not (before_ok and after_ok):
                raise ConfigError(f"invalid include pattern {pattern!r}: recursive wildcards must form a single path component")
            if after == length:
                parts.append(".*")
                i = after
            else:
                parts.append("(?:.*/)?")
                i = after + 1
            continue
        if ch == "?":
            parts.append(".")
            i += 1
            continue
        if ch == "[":
            end, translated = _translate_class(pattern, i)
            parts.append(translated)
            i = end
            continue
        parts.append(re.escape(ch))
        i += 1
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


def validate_patterns(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    return [compile_pattern(pattern) for pattern in patterns]


def resolve_chapters(
    chapters: Sequence[ChapterManifestEntry],
    include: Sequence[str] | None = None,
) -> list[ChapterManifestEntry]:
    """Chapters matched by any include pattern, in book order."""
    patterns = list(include or config.DEFAULT_INCLUDE)
    compiled = validate_patterns(patterns)
    selected: list[ChapterManifestEntry] = []
    seen: set[str] = set()
    for entry in sorted(chapters, key=lambda item: item.ordinal):
        path = entry.posix_path
        if path in seen:
            continue
        if any(regex.match(path) for regex in compiled):
            selected.append(entry)
            seen.add(path)
    if not selected:
        raise NoMatchingChapters(
            f"no chapters match include patterns {patterns}; verify the filenames and filters"
        )
    LOGGER.debug("Resolved %d of %d chapters for %s", len(selected), len(chapters), patterns)
    return selected


def _translate_class(pattern: str, start: int) -> tuple[int, str]:
    i = start + 1
    negate = False
    if i < len(pattern) and pattern[i] == "!":
        negate = True
        i += 1
    members: list[str] = []
    # a leading `]` is a literal member
    if i < len(pattern) and pattern[i] == "]":
        members.append(re.escape("]"))
        i += 1
    while i < len(pattern) and pattern[i] != "]":
        if i + 2 < len(pattern) and pattern[i + 1] == "-" and pattern[i + 2] != "]":
            low, high = pattern[i], pattern[i + 2]
            if low > high:
                raise ConfigError(f"invalid include pattern {pattern!r}: bad character range {low}-{high}")
            members.append(f"{re.escape(low)}-{re.escape(high)}")
            i += 3
            continue
        members.append(re.escape(pattern[i]))
        i += 1
    if i >= len(pattern) or not members:
        raise ConfigError(f"invalid include pattern {pattern!r}: unclosed character class")
    prefix = "^" if negate else ""
    return i + 1, f"[{prefix}{''.join(members)}]"
