"""
Project-wide configuration and directory structure.

Module Contents:
    APP_NAME: Application name for display purposes
    DATA_DIR: Main data directory (override with SCREENTRANS_HOME)
    CACHE_DIR: Directory for the persistent translation cache
    SETTINGS_FILE: JSON settings file read by the CLI
    CACHE_FILE: JSON store backing the L2 cache
    Settings: Externally supplied configuration for the engine

Example:
    >>> from screentrans.config import Settings, SETTINGS_FILE
    >>> settings = Settings.load(SETTINGS_FILE)
    >>> settings.privacy_mode
    'standard'
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Application name for display and identification
APP_NAME = "screentrans"

# Main data directory (settings, key file, cache)
DATA_DIR = Path(os.getenv("SCREENTRANS_HOME", Path.home() / ".screentrans"))

# Cache directory for persisted translations
CACHE_DIR = DATA_DIR / "cache"

SETTINGS_FILE = DATA_DIR / "settings.json"

CACHE_FILE = CACHE_DIR / "translations.json"


def ensure_dirs() -> None:
    """Create the data directories if they do not exist yet."""
    for d in (DATA_DIR, CACHE_DIR):
        d.mkdir(parents=True, exist_ok=True)


# ============================================================================
# Settings
# ============================================================================

@dataclass
class ProviderEntry:
    """One row of the user's provider priority list."""
    id: str
    enabled: bool = True
    priority: int = 0


@dataclass
class TranslationSettings:
    source_lang: str = "auto"
    target_lang: str = "zh"
    lock_target_lang: bool = False
    template: str = "natural"
    enable_fallback: bool = True
    use_cache: bool = True
    timeout: float = 30.0
    providers: list[ProviderEntry] = field(default_factory=list)
    provider_configs: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class OCRSettings:
    default_engine: str = "rapid-ocr"
    recognition_language: str = "auto"
    upscale_min_size: int = 300
    upscale_factor: float = 2.0
    max_upscale_factor: float = 3.0
    timeout: float = 30.0
    engine_configs: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class CacheSettings:
    l1_capacity: int = 100
    l2_ttl_days: float = 7.0
    l2_capacity: int = 200


@dataclass
class ProtectionSettings:
    enabled: bool = True
    disabled: list[str] = field(default_factory=list)
    custom_filters: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Settings:
    """All engine configuration, as read from ``settings.json``."""
    privacy_mode: str = "standard"
    translation: TranslationSettings = field(default_factory=TranslationSettings)
    ocr: OCRSettings = field(default_factory=OCRSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    protection: ProtectionSettings = field(default_factory=ProtectionSettings)

    def provider_priority(self) -> Optional[list[str]]:
        """Enabled providers in priority order, or None to use the mode default."""
        if not self.translation.providers:
            return None
        enabled = [p for p in self.translation.providers if p.enabled]
        return [p.id for p in sorted(enabled, key=lambda p: p.priority)]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        data = dict(data or {})
        translation = dict(data.get("translation") or {})
        translation["providers"] = [
            p if isinstance(p, ProviderEntry) else ProviderEntry(**_known(ProviderEntry, p))
            for p in translation.get("providers", [])
        ]
        return cls(
            privacy_mode=data.get("privacy_mode", "standard"),
            translation=TranslationSettings(**_known(TranslationSettings, translation)),
            ocr=OCRSettings(**_known(OCRSettings, data.get("ocr") or {})),
            cache=CacheSettings(**_known(CacheSettings, data.get("cache") or {})),
            protection=ProtectionSettings(**_known(ProtectionSettings, data.get("protection") or {})),
        )

    @classmethod
    def load(cls, path: Path = SETTINGS_FILE) -> "Settings":
        """Load settings from JSON, returning defaults if the file is missing."""
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            with open(path, "r", encoding="utf-8") as f:
                return cls.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, TypeError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", path, e)
            return cls()

    def save(self, path: Path = SETTINGS_FILE) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, ensure_ascii=False, indent=2)


def _known(cls, data: dict) -> dict:
    """Keep only keys that are fields of ``cls`` (settings files outlive versions)."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}
