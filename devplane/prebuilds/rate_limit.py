"""Per-repository prebuild rate limit configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

DEFAULT_RATE_LIMIT_COUNT = 50
DEFAULT_RATE_LIMIT_PERIOD_SECONDS = 50


@dataclass(frozen=True, slots=True)
class PrebuildRateLimit:
    """At most ``limit`` unaborted prebuilds per clone URL within ``period`` seconds."""

    limit: int = DEFAULT_RATE_LIMIT_COUNT
    period: int = DEFAULT_RATE_LIMIT_PERIOD_SECONDS

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any]) -> "PrebuildRateLimit":
        return cls(
            limit=int(value.get("limit", DEFAULT_RATE_LIMIT_COUNT)),
            period=int(value.get("period", DEFAULT_RATE_LIMIT_PERIOD_SECONDS)),
        )


def get_rate_limit_for_clone_url(
    rate_limits: Optional[Mapping[str, Mapping[str, Any]]],
    clone_url: str,
) -> PrebuildRateLimit:
    """Return the limit configured for ``clone_url``, then ``*``, then the default."""

    rate_limits = rate_limits or {}
    configured = rate_limits.get(clone_url) or rate_limits.get("*")
    if not configured:
        return PrebuildRateLimit()
    return PrebuildRateLimit.from_mapping(configured)


__all__ = [
    "DEFAULT_RATE_LIMIT_COUNT",
    "DEFAULT_RATE_LIMIT_PERIOD_SECONDS",
    "PrebuildRateLimit",
    "get_rate_limit_for_clone_url",
]
