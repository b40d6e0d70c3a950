"""
Priority scheduling and circuit breaking for translation providers.

Priority resolution:
1. An explicit, ordered override list is used as given
2. Otherwise the static default order for the operating mode

Circuit breaking: a provider with ``skip_threshold`` (3) consecutive failures
is skipped until it succeeds again or the dispatcher finds every provider
skipped and resets all counters for one more pass.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from screentrans.privacy import PrivacyMode, is_provider_allowed
from screentrans.translate.registry import ProviderRegistry

logger = logging.getLogger(__name__)

# Subtitle mode puts the low-latency online services first
DEFAULT_PRIORITY = {
    "normal": ["local-llm", "openai", "deepl"],
    "subtitle": ["openai", "deepl", "local-llm"],
}

SKIP_THRESHOLD = 3


class PriorityScheduler:
    """Resolves provider order and tracks consecutive failures."""

    def __init__(
        self,
        registry: ProviderRegistry,
        skip_threshold: int = SKIP_THRESHOLD,
        default_priority: Optional[dict[str, list[str]]] = None,
    ):
        self.registry = registry
        self.skip_threshold = skip_threshold
        self.default_priority = default_priority or DEFAULT_PRIORITY
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Priority
    # ------------------------------------------------------------------

    def resolve_priority(
        self,
        mode: str = "normal",
        user_override: Optional[Iterable[str]] = None,
        privacy_mode: PrivacyMode | str | None = None,
    ) -> list[str]:
        """Ordered provider IDs for ``mode``, filtered by privacy and registry state.

        Online providers never appear in offline mode, even when the override
        asks for them. Unknown and disabled IDs are dropped.
        """
        override = list(user_override or [])
        if override:
            base = override
        else:
            base = self.default_priority.get(mode) or self.default_priority["normal"]

        order: list[str] = []
        for pid in base:
            if pid in order:
                continue
            if pid not in self.registry:
                logger.warning("Ignoring unknown provider in priority list: %s", pid)
                continue
            if not self.registry.is_enabled(pid):
                continue
            if not is_provider_allowed(privacy_mode, self.registry.descriptor(pid).is_online):
                logger.debug("Provider %s excluded by %s mode", pid, PrivacyMode.parse(privacy_mode).value)
                continue
            order.append(pid)
        return order

    # ------------------------------------------------------------------
    # Circuit breaking
    # ------------------------------------------------------------------

    def should_skip(self, provider_id: str) -> bool:
        with self._lock:
            return self._failures.get(provider_id, 0) >= self.skip_threshold

    def record_failure(self, provider_id: str) -> int:
        with self._lock:
            count = self._failures.get(provider_id, 0) + 1
            self._failures[provider_id] = count
        if count == self.skip_threshold:
            logger.warning("Provider %s failed %d times in a row, skipping it", provider_id, count)
        return count

    def record_success(self, provider_id: str) -> None:
        with self._lock:
            self._failures[provider_id] = 0

    def failure_count(self, provider_id: str) -> int:
        with self._lock:
            return self._failures.get(provider_id, 0)

    def has_failures(self) -> bool:
        with self._lock:
            return any(count > 0 for count in self._failures.values())

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._failures)
