"""
Privacy modes.

- standard: every provider and engine, both cache tiers
- secure: every provider and engine, but nothing is persisted (L1 only)
- offline: local providers and local OCR engines only
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PrivacyMode(str, Enum):
    STANDARD = "standard"
    SECURE = "secure"
    OFFLINE = "offline"

    @classmethod
    def parse(cls, value: "PrivacyMode | str | None") -> "PrivacyMode":
        """Accept enum members, their string values, or None (standard)."""
        if value is None:
            return cls.STANDARD
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown privacy mode '{value}'. "
                f"Available: {', '.join(m.value for m in cls)}"
            )


@dataclass(frozen=True)
class PrivacyPolicy:
    """What a privacy mode permits."""
    allow_online: bool
    allow_persistence: bool
    description: str


POLICIES: dict[PrivacyMode, PrivacyPolicy] = {
    PrivacyMode.STANDARD: PrivacyPolicy(
        allow_online=True,
        allow_persistence=True,
        description="All providers and engines; translations cached on disk",
    ),
    PrivacyMode.SECURE: PrivacyPolicy(
        allow_online=True,
        allow_persistence=False,
        description="No history or persistent cache is written",
    ),
    PrivacyMode.OFFLINE: PrivacyPolicy(
        allow_online=False,
        allow_persistence=True,
        description="Local models and local OCR only; no network calls",
    ),
}


def get_policy(mode: PrivacyMode | str | None) -> PrivacyPolicy:
    return POLICIES[PrivacyMode.parse(mode)]


def is_provider_allowed(mode: PrivacyMode | str | None, is_online: bool) -> bool:
    """Whether a provider with the given online flag may be called in ``mode``."""
    return get_policy(mode).allow_online or not is_online


def is_ocr_engine_allowed(mode: PrivacyMode | str | None, is_online: bool) -> bool:
    return get_policy(mode).allow_online or not is_online


def allows_persistence(mode: PrivacyMode | str | None) -> bool:
    return get_policy(mode).allow_persistence
