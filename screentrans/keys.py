"""
Credential management for providers and OCR engines.

Keys are looked up in order:
1. Environment variable (preferred for CI and scripted use)
2. OS keychain via keyring
3. Local key file (<DATA_DIR>/keys.json, mode 0600)

Usage:
    from screentrans.keys import KeyManager

    km = KeyManager()
    km.set_key("deepl", "xxxx:fx")
    key = km.get_key("deepl")
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from screentrans.config import DATA_DIR

logger = logging.getLogger(__name__)


# Credential name -> environment variable
SERVICES = {
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "deepl": "DEEPL_API_KEY",
    "google-translate": "GOOGLE_TRANSLATE_API_KEY",
    "ocrspace": "OCRSPACE_API_KEY",
    "google-vision": "GOOGLE_VISION_API_KEY",
    "azure-ocr": "AZURE_OCR_API_KEY",
    "baidu-ocr": "BAIDU_OCR_API_KEY",
    "baidu-ocr-secret": "BAIDU_OCR_SECRET_KEY",
}

# (provider or engine id, config field) -> credential name
CONFIG_FIELDS = {
    ("openai", "api_key"): "openai",
    ("deepseek", "api_key"): "deepseek",
    ("deepl", "api_key"): "deepl",
    ("google-translate", "api_key"): "google-translate",
    ("ocrspace", "api_key"): "ocrspace",
    ("google-vision", "api_key"): "google-vision",
    ("azure-ocr", "api_key"): "azure-ocr",
    ("baidu-ocr", "api_key"): "baidu-ocr",
    ("baidu-ocr", "secret_key"): "baidu-ocr-secret",
}


def env_var_for(service: str) -> str:
    return SERVICES.get(service, service.upper().replace("-", "_") + "_API_KEY")


@dataclass
class KeyInfo:
    """Where a credential comes from, for display."""
    service: str
    is_set: bool
    source: str  # 'env', 'keyring', 'config', 'none'
    masked_value: str


class KeyManager:
    """Resolve and store credentials.

    Priority order for retrieval: environment, OS keychain, key file.
    """

    SERVICE_NAME = "screentrans"

    def __init__(self, config_file: Optional[Path] = None, use_keyring: bool = True):
        self.config_file = Path(config_file) if config_file else DATA_DIR / "keys.json"
        self._keyring_available = use_keyring and self._check_keyring()

    def _check_keyring(self) -> bool:
        try:
            import keyring
            keyring.get_keyring()
            return True
        except Exception as e:
            logger.debug("keyring unavailable: %s", e)
            return False

    def _read_file(self) -> dict[str, str]:
        if not self.config_file.exists():
            return {}
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read key file %s: %s", self.config_file, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_file(self, data: dict[str, str]) -> None:
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
        self.config_file.chmod(0o600)

    def _lookup(self, service: str) -> tuple[Optional[str], str]:
        service = service.lower()

        if env_val := os.getenv(env_var_for(service)):
            return env_val, "env"

        if self._keyring_available:
            try:
                import keyring
                if key := keyring.get_password(self.SERVICE_NAME, service):
                    return key, "keyring"
            except Exception as e:
                logger.debug("keyring lookup failed for %s: %s", service, e)

        if key := self._read_file().get(service):
            return key, "config"

        return None, "none"

    def get_key(self, service: str) -> Optional[str]:
        """Get the credential for ``service``, or None if it is not stored anywhere."""
        return self._lookup(service)[0]

    def set_key(self, service: str, key: str, use_keyring: bool = True) -> str:
        """Store a credential. Returns the location used ('keyring' or 'config')."""
        service = service.lower()

        if use_keyring and self._keyring_available:
            try:
                import keyring
                keyring.set_password(self.SERVICE_NAME, service, key)
                return "keyring"
            except Exception as e:
                logger.warning("keyring write failed, using key file: %s", e)

        data = self._read_file()
        data[service] = key
        self._write_file(data)
        return "config"

    def delete_key(self, service: str) -> bool:
        service = service.lower()
        deleted = False

        if self._keyring_available:
            try:
                import keyring
                keyring.delete_password(self.SERVICE_NAME, service)
                deleted = True
            except Exception as e:
                logger.debug("keyring delete failed for %s: %s", service, e)

        data = self._read_file()
        if service in data:
            del data[service]
            self._write_file(data)
            deleted = True

        return deleted

    def get_key_info(self, service: str) -> KeyInfo:
        key, source = self._lookup(service)
        return KeyInfo(
            service=service.lower(),
            is_set=key is not None,
            source=source,
            masked_value=self.mask_key(key) if key else "",
        )

    def list_keys(self) -> list[KeyInfo]:
        return [self.get_key_info(service) for service in SERVICES]

    @staticmethod
    def mask_key(key: str) -> str:
        """Mask a key for display (first 4 and last 4 characters)."""
        if len(key) <= 12:
            return "*" * len(key)
        return f"{key[:4]}...{key[-4:]}"

    def fill_config(self, backend_id: str, config: dict) -> dict:
        """Return ``config`` with missing credential fields filled from storage."""
        filled = dict(config)
        for (owner, field_name), service in CONFIG_FIELDS.items():
            if owner == backend_id and not filled.get(field_name):
                if key := self.get_key(service):
                    filled[field_name] = key
        return filled
