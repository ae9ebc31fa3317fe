"""Path allowlist for requests forwarded to the local server.

Patterns are regular expressions compiled once at startup. A path is
allowed when any pattern matches anywhere in it (``re.search``); anchor a
pattern with ``^`` to require a prefix match. An empty allowlist allows
every path.

Example:
    allowlist = PathAllowlist(["^/webhooks/", "^/status$"])

    if allowlist.allow("/webhooks/github"):
        forward_request()
    else:
        return 403  # Forbidden
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from socket2me.core.exceptions import ConfigurationError


@dataclass(frozen=True)
class PathCheckResult:
    """Result of an allowlist check."""

    allowed: bool
    matched_pattern: str | None
    reason: str


class PathAllowlist:
    """Immutable set of compiled path patterns with OR semantics."""

    __slots__ = ("_patterns",)

    def __init__(self, patterns: Iterable[str | re.Pattern[str]] = ()) -> None:
        compiled: list[re.Pattern[str]] = []
        for pattern in patterns:
            if isinstance(pattern, re.Pattern):
                compiled.append(pattern)
                continue
            try:
                compiled.append(re.compile(str(pattern)))
            except re.error as e:
                raise ConfigurationError(
                    f"Invalid regex pattern in allowed_paths: {pattern!r} - {e}"
                ) from e
        self._patterns: tuple[re.Pattern[str], ...] = tuple(compiled)

    @property
    def patterns(self) -> tuple[str, ...]:
        """Source strings of the compiled patterns, in order."""
        return tuple(p.pattern for p in self._patterns)

    @property
    def allows_everything(self) -> bool:
        return not self._patterns

    def allow(self, path: str) -> bool:
        """Quick check if a path may be forwarded."""
        if not self._patterns:
            return True
        return any(p.search(path) for p in self._patterns)

    def check(self, path: str) -> PathCheckResult:
        """Check a path and report which pattern (if any) matched."""
        if not self._patterns:
            return PathCheckResult(
                allowed=True,
                matched_pattern=None,
                reason="No allowlist configured",
            )

        for pattern in self._patterns:
            if pattern.search(path):
                return PathCheckResult(
                    allowed=True,
                    matched_pattern=pattern.pattern,
                    reason="Path matches allowlist",
                )

        return PathCheckResult(
            allowed=False,
            matched_pattern=None,
            reason="Path not in allowlist",
        )

    def __len__(self) -> int:
        return len(self._patterns)

    def __repr__(self) -> str:
        return f"PathAllowlist({list(self.patterns)!r})"


def create_path_allowlist(patterns: Iterable[str] | None = None) -> PathAllowlist:
    """Create a path allowlist, treating ``None`` as "allow everything".

    Raises:
        ConfigurationError: If any pattern is not a valid regular expression
    """
    return PathAllowlist(patterns or ())
