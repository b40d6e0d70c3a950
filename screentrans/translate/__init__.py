"""
Translation side of the dispatch engine.

This module provides:
- Provider interface and descriptors
- Provider registry with lazily built built-in providers
- Priority scheduler with circuit breaking
- TranslationDispatcher: protect, cache, fall back, restore
"""

from screentrans.translate.base import (
    ConnectionStatus,
    DummyProvider,
    Provider,
    ProviderDescriptor,
    ProviderResult,
)
from screentrans.translate.registry import (
    BUILTIN_PROVIDERS,
    ProviderRegistry,
    create_default_registry,
)
from screentrans.translate.scheduler import PriorityScheduler

__all__ = [
    "ConnectionStatus",
    "DummyProvider",
    "Provider",
    "ProviderDescriptor",
    "ProviderResult",
    "BUILTIN_PROVIDERS",
    "ProviderRegistry",
    "create_default_registry",
    "PriorityScheduler",
]


# Lazy import for the dispatcher (pulls in cache and protection)
def __getattr__(name):
    if name in ("TranslationDispatcher", "DispatchResult"):
        from screentrans.translate import dispatcher
        return getattr(dispatcher, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
