"""
Provider registry.

Holds one provider instance per ID together with its descriptor. The
instance is built from its factory and config dict at registration, since
capability flags are instance properties; it is rebuilt only after the
provider is registered again. Updating the config recomputes the
descriptor's ``configured`` flag. Providers are never removed, only disabled.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional

from screentrans.errors import UnknownProvider
from screentrans.translate.base import Provider, ProviderDescriptor

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[dict], Provider]


class ProviderRegistry:
    """Provider instances keyed by ID.

    Usage:
        registry = ProviderRegistry()
        registry.register(LocalLLMProvider.describe(), LocalLLMProvider)
        registry.get("local-llm")
    """

    def __init__(self):
        self._descriptors: dict[str, ProviderDescriptor] = {}
        self._factories: dict[str, ProviderFactory] = {}
        self._configs: dict[str, dict[str, Any]] = {}
        self._instances: dict[str, Provider] = {}
        self._disabled: set[str] = set()
        self._lock = threading.RLock()

    def register(
        self,
        descriptor: ProviderDescriptor,
        factory: ProviderFactory,
        config: Optional[dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            if descriptor.id in self._factories:
                logger.warning("Provider %s already registered, replacing", descriptor.id)
                self._instances.pop(descriptor.id, None)
            self._descriptors[descriptor.id] = replace(descriptor)
            self._factories[descriptor.id] = factory
            self._configs[descriptor.id] = dict(config or {})
            self._refresh(descriptor.id)

    def register_provider(self, provider: Provider) -> None:
        """Register an already-built instance (tests, embedding hosts)."""
        self.register(provider.descriptor(), lambda _config: provider, provider.config)
        with self._lock:
            self._instances[provider.id] = provider
            self._refresh(provider.id)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._factories

    def ids(self) -> list[str]:
        return list(self._factories)

    def get(self, provider_id: str) -> Provider:
        with self._lock:
            if provider_id not in self._factories:
                raise UnknownProvider(provider_id)
            instance = self._instances.get(provider_id)
            if instance is None:
                instance = self._factories[provider_id](dict(self._configs[provider_id]))
                self._instances[provider_id] = instance
            return instance

    def _refresh(self, provider_id: str) -> None:
        instance = self.get(provider_id)
        fresh = instance.descriptor()
        self._descriptors[provider_id] = replace(
            self._descriptors[provider_id],
            configured=fresh.configured,
            supports_streaming=fresh.supports_streaming,
            supports_batch=fresh.supports_batch,
            supports_chat=fresh.supports_chat,
        )

    def descriptor(self, provider_id: str) -> ProviderDescriptor:
        if provider_id not in self._descriptors:
            raise UnknownProvider(provider_id)
        return self._descriptors[provider_id]

    def descriptors(self) -> list[ProviderDescriptor]:
        return list(self._descriptors.values())

    def is_configured(self, provider_id: str) -> bool:
        if provider_id not in self._descriptors:
            return False
        return self._descriptors[provider_id].configured

    def missing_config(self, provider_id: str) -> list[str]:
        return self.get(provider_id).missing_config()

    def update_config(self, provider_id: str, config: dict[str, Any]) -> None:
        """Merge ``config`` into the provider's settings and recompute ``configured``."""
        with self._lock:
            if provider_id not in self._factories:
                raise UnknownProvider(provider_id)
            self._configs[provider_id].update(config)
            instance = self._instances.get(provider_id)
            if instance is not None:
                instance.update_config(**config)
            self._refresh(provider_id)
        logger.debug("Updated config for %s", provider_id)

    def set_enabled(self, provider_id: str, enabled: bool) -> None:
        if provider_id not in self._factories:
            raise UnknownProvider(provider_id)
        if enabled:
            self._disabled.discard(provider_id)
        else:
            self._disabled.add(provider_id)

    def is_enabled(self, provider_id: str) -> bool:
        return provider_id in self._factories and provider_id not in self._disabled


# ============================================================================
# Built-in providers
# ============================================================================

BUILTIN_PROVIDERS = ("local-llm", "openai", "deepseek", "deepl", "google-translate", "dummy")


def provider_class(provider_id: str) -> type[Provider]:
    """Resolve a built-in provider class by ID (lazy imports)."""
    if provider_id == "local-llm":
        from screentrans.translate.llm import LocalLLMProvider
        return LocalLLMProvider
    elif provider_id == "openai":
        from screentrans.translate.llm import OpenAIProvider
        return OpenAIProvider
    elif provider_id == "deepseek":
        from screentrans.translate.llm import DeepSeekProvider
        return DeepSeekProvider
    elif provider_id == "deepl":
        from screentrans.translate.online import DeepLProvider
        return DeepLProvider
    elif provider_id == "google-translate":
        from screentrans.translate.online import GoogleTranslateProvider
        return GoogleTranslateProvider
    elif provider_id == "dummy":
        from screentrans.translate.base import DummyProvider
        return DummyProvider
    else:
        raise UnknownProvider(provider_id)


def create_default_registry(
    configs: Optional[dict[str, dict[str, Any]]] = None,
    provider_ids: Iterable[str] = BUILTIN_PROVIDERS,
    key_manager=None,
) -> ProviderRegistry:
    """Build a registry with the built-in providers.

    Args:
        configs: Per-provider config dicts from settings
        provider_ids: Which built-ins to register
        key_manager: Optional KeyManager used to fill missing credentials
    """
    configs = configs or {}
    registry = ProviderRegistry()
    for pid in provider_ids:
        cls = provider_class(pid)
        config = dict(configs.get(pid, {}))
        if key_manager is not None:
            config = key_manager.fill_config(pid, config)
        registry.register(cls.describe(), cls, config)
    return registry
