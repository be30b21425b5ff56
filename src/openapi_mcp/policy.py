"""Method and path allowlist enforcement."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import FrozenSet, Optional, Pattern, Tuple

from .errors import PolicyError


DEFAULT_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class PolicyConfig:
    allowed_methods: FrozenSet[str] = DEFAULT_METHODS
    allowed_path_patterns: Tuple[str, ...] = ()


def wildcard_to_regex(pattern: str) -> Pattern[str]:
    """Compile a glob where ``*`` matches any sequence; everything else is literal."""
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


class PolicyEnforcer:
    def __init__(self) -> None:
        self._compiled_key: Optional[Tuple[str, ...]] = None
        self._compiled: Tuple[Pattern[str], ...] = ()

    def matchers(self, patterns: Tuple[str, ...]) -> Tuple[Pattern[str], ...]:
        if patterns != self._compiled_key:
            self._compiled = tuple(wildcard_to_regex(pattern) for pattern in patterns)
            self._compiled_key = patterns
        return self._compiled

    def check(self, config: PolicyConfig, method: str, path: str) -> None:
        normalized = str(method or "").upper()
        allowed = {item.upper() for item in config.allowed_methods} or DEFAULT_METHODS
        if normalized not in allowed:
            raise PolicyError("method", normalized)

        if not config.allowed_path_patterns:
            return
        if not any(matcher.fullmatch(path) for matcher in self.matchers(config.allowed_path_patterns)):
            raise PolicyError("path", path)
