"""Filename → target matching.

Patterns are shell globs (fnmatch, case-sensitive). The matcher keeps the
configured order and the first matching pattern wins; a name matching no
pattern maps to nothing and is ignored by callers.
"""
from fnmatch import fnmatchcase
from typing import Iterable, Optional

from dumpsync.core.config import TargetDatabase


def matches_pattern(filename: str, pattern: str) -> bool:
    """True when filename matches the glob pattern. Empty patterns match nothing."""
    if not pattern:
        return False
    return fnmatchcase(filename, pattern)


def first_matching_pattern(filename: str, patterns: Iterable[str]) -> Optional[str]:
    """Return the first pattern the filename satisfies, or None."""
    for pattern in patterns:
        if matches_pattern(filename, pattern):
            return pattern
    return None


class TargetMatcher:
    """Ordered (pattern, target) pairs, first match wins."""

    def __init__(self, targets: Iterable[TargetDatabase]):
        self._pairs: list[tuple[str, str]] = [(t.file_pattern, t.name) for t in targets]

    @property
    def pairs(self) -> list[tuple[str, str]]:
        return list(self._pairs)

    def target_for(self, filename: str) -> Optional[str]:
        """Name of the first target whose pattern matches filename."""
        for pattern, target in self._pairs:
            if matches_pattern(filename, pattern):
                return target
        return None

    def all_targets_for(self, filename: str) -> list[str]:
        """Every target whose pattern matches, in configured order."""
        return [target for pattern, target in self._pairs if matches_pattern(filename, pattern)]
