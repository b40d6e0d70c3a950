"""
Engine context: the single owner of process-wide engine state.

One EngineContext holds the privacy mode, the provider registry, the
scheduler's failure counters, both cache tiers, the protection filter, the
translation dispatcher and the OCR tier manager. Collaborators receive it
(or the parts they need) by reference; nothing lives in module globals.

Lifecycle:
1. EngineContext(settings, key_manager) - cheap, builds nothing
2. init() - builds every component from settings; idempotent
3. reset() - clears failure counters, L1 and the privacy override
   without touching persisted L2 entries

Tests create a fresh context per test with ``persist=False``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from screentrans.cache import DAY_SECONDS, L1Cache, L2Cache, TranslationCacheTier
from screentrans.config import CACHE_FILE, SETTINGS_FILE, Settings
from screentrans.keys import KeyManager
from screentrans.ocr.manager import OCRTierManager, create_default_manager
from screentrans.privacy import PrivacyMode
from screentrans.protection import ProtectionFilter, create_custom_filter
from screentrans.store import JsonFileStore, KeyValueStore, MemoryStore
from screentrans.translate.dispatcher import TranslationDispatcher
from screentrans.translate.registry import ProviderRegistry, create_default_registry
from screentrans.translate.scheduler import PriorityScheduler

logger = logging.getLogger(__name__)


class EngineContext:
    """Explicitly constructed owner of the dispatch engine's shared state.

    Usage:
        ctx = EngineContext(Settings.load()).init()
        result = await ctx.dispatcher.translate("Hello", target_lang="zh")
        ctx.set_privacy_mode("offline")
        ctx.reset()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        key_manager: Optional[KeyManager] = None,
        store: Optional[KeyValueStore] = None,
        persist: bool = True,
        registry: Optional[ProviderRegistry] = None,
        ocr: Optional[OCRTierManager] = None,
    ):
        self.settings = settings or Settings()
        self.key_manager = key_manager
        self.persist = persist
        self.privacy_mode = PrivacyMode.parse(self.settings.privacy_mode)

        self.store = store
        self.registry = registry
        self.ocr = ocr
        self.scheduler: Optional[PriorityScheduler] = None
        self.cache: Optional[TranslationCacheTier] = None
        self.protection: Optional[ProtectionFilter] = None
        self.dispatcher: Optional[TranslationDispatcher] = None
        self._initialized = False

    @classmethod
    def from_settings_file(
        cls,
        path: Path = SETTINGS_FILE,
        use_keyring: bool = True,
        **kwargs,
    ) -> "EngineContext":
        return cls(Settings.load(path), KeyManager(use_keyring=use_keyring), **kwargs)

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> "EngineContext":
        """Build all components from settings. Safe to call more than once."""
        if self._initialized:
            return self

        settings = self.settings
        if self.store is None:
            self.store = JsonFileStore(CACHE_FILE) if self.persist else MemoryStore()

        if self.registry is None:
            self.registry = create_default_registry(
                settings.translation.provider_configs, key_manager=self.key_manager
            )
        for entry in settings.translation.providers:
            if entry.id in self.registry and not entry.enabled:
                self.registry.set_enabled(entry.id, False)

        self.scheduler = PriorityScheduler(self.registry)
        self.cache = TranslationCacheTier(
            l1=L1Cache(settings.cache.l1_capacity),
            l2=L2Cache(
                self.store,
                ttl_seconds=settings.cache.l2_ttl_days * DAY_SECONDS,
                capacity=settings.cache.l2_capacity,
            ),
        )
        self.protection = self._build_protection()
        self.dispatcher = TranslationDispatcher(
            self.registry,
            self.scheduler,
            self.cache,
            protection=self.protection,
            privacy=lambda: self.privacy_mode,
            user_priority=settings.provider_priority(),
        )

        if self.ocr is None:
            self.ocr = create_default_manager(
                settings.ocr.engine_configs,
                key_manager=self.key_manager,
                default_engine=settings.ocr.default_engine,
                recognition_language=settings.ocr.recognition_language,
                upscale_min_size=settings.ocr.upscale_min_size,
                upscale_factor=settings.ocr.upscale_factor,
                max_upscale_factor=settings.ocr.max_upscale_factor,
            )
        self.ocr.set_privacy_mode(self.privacy_mode)

        self._initialized = True
        logger.debug(
            "Engine context ready: %d providers, %d OCR engines, %s mode",
            len(self.registry.ids()), len(self.ocr.ids()), self.privacy_mode.value,
        )
        return self

    def _build_protection(self) -> ProtectionFilter:
        custom = []
        for entry in self.settings.protection.custom_filters:
            try:
                custom.append(create_custom_filter(**entry))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping invalid custom filter %r: %s", entry.get("name"), e)
        return ProtectionFilter(
            custom_filters=custom,
            enabled=self.settings.protection.enabled,
            disabled=self.settings.protection.disabled,
        )

    def reset(self) -> None:
        """Forget transient state: failure counters, L1 and the privacy override."""
        if not self._initialized:
            return
        self.scheduler.reset()
        self.cache.l1.clear()
        self.set_privacy_mode(self.settings.privacy_mode)
        logger.debug("Engine context reset")

    def _require(self) -> None:
        if not self._initialized:
            raise RuntimeError("EngineContext.init() must be called first")

    # ------------------------------------------------------------------
    # Shared state
    # ------------------------------------------------------------------

    def set_privacy_mode(self, mode: PrivacyMode | str) -> PrivacyMode:
        """Change the process-wide privacy mode.

        Requests already in flight keep the mode they snapshotted at entry.
        """
        self.privacy_mode = PrivacyMode.parse(mode)
        if self.ocr is not None:
            self.ocr.set_privacy_mode(self.privacy_mode)
        logger.info("Privacy mode: %s", self.privacy_mode.value)
        return self.privacy_mode

    def update_provider_config(self, provider_id: str, config: dict) -> None:
        self._require()
        self.registry.update_config(provider_id, config)
