"""
Tests for settings, credential storage and key-value stores.
"""

import json

import pytest

from screentrans.config import ProviderEntry, Settings
from screentrans.keys import KeyManager
from screentrans.store import JsonFileStore, MemoryStore


@pytest.fixture
def keys(tmp_path, monkeypatch):
    for var in ("DEEPL_API_KEY", "OPENAI_API_KEY", "BAIDU_OCR_API_KEY", "BAIDU_OCR_SECRET_KEY"):
        monkeypatch.delenv(var, raising=False)
    return KeyManager(tmp_path / "keys.json", use_keyring=False)


class TestSettings:
    """Test settings persistence."""

    def test_round_trip(self, tmp_path):
        """Test saved settings load back equal."""
        settings = Settings(privacy_mode="secure")
        settings.translation.target_lang = "ja"
        settings.translation.providers = [ProviderEntry("openai", True, 2), ProviderEntry("deepl", True, 1)]
        settings.ocr.engine_configs = {"llm-vision": {"model": "qwen-vl"}}
        path = tmp_path / "settings.json"

        settings.save(path)
        loaded = Settings.load(path)

        assert loaded == settings

    def test_missing_file_gives_defaults(self, tmp_path):
        """Test loading a missing file returns defaults."""
        assert Settings.load(tmp_path / "nope.json") == Settings()

    def test_corrupt_file_gives_defaults(self, tmp_path):
        """Test an unreadable file is ignored."""
        path = tmp_path / "settings.json"
        path.write_text("{not json", encoding="utf-8")
        assert Settings.load(path) == Settings()

    def test_unknown_keys_ignored(self):
        """Test settings from newer versions still load."""
        settings = Settings.from_dict({
            "privacy_mode": "offline",
            "future_option": 1,
            "translation": {"target_lang": "en", "new_flag": True},
        })
        assert settings.privacy_mode == "offline"
        assert settings.translation.target_lang == "en"

    def test_provider_priority(self):
        """Test the priority list is sorted and skips disabled entries."""
        settings = Settings()
        assert settings.provider_priority() is None

        settings.translation.providers = [
            ProviderEntry("deepl", True, 3),
            ProviderEntry("openai", False, 1),
            ProviderEntry("local-llm", True, 2),
        ]
        assert settings.provider_priority() == ["local-llm", "deepl"]


class TestKeyManager:
    """Test credential lookup without the OS keychain."""

    def test_set_and_get_from_file(self, keys):
        """Test keys are stored in the key file."""
        assert keys.set_key("deepl", "abc:fx") == "config"
        assert keys.get_key("deepl") == "abc:fx"
        assert json.loads(keys.config_file.read_text())["deepl"] == "abc:fx"

    def test_env_wins(self, keys, monkeypatch):
        """Test environment variables take precedence over the file."""
        keys.set_key("openai", "from-file")
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")

        info = keys.get_key_info("openai")

        assert keys.get_key("openai") == "from-env"
        assert info.source == "env"

    def test_delete(self, keys):
        """Test deleting removes the key."""
        keys.set_key("deepl", "secret")
        assert keys.delete_key("deepl")
        assert keys.get_key("deepl") is None
        assert not keys.delete_key("deepl")

    def test_mask(self):
        """Test masking keeps only the ends of long keys."""
        assert KeyManager.mask_key("sk-1234567890abcdef") == "sk-1...cdef"
        assert KeyManager.mask_key("short") == "*****"

    def test_fill_config(self, keys):
        """Test missing credential fields are filled, present ones kept."""
        keys.set_key("baidu-ocr", "api")
        keys.set_key("baidu-ocr-secret", "secret")

        filled = keys.fill_config("baidu-ocr", {"api_key": ""})
        kept = keys.fill_config("baidu-ocr", {"api_key": "explicit"})

        assert filled == {"api_key": "api", "secret_key": "secret"}
        assert kept["api_key"] == "explicit"

    def test_list_keys(self, keys):
        """Test every known service is listed."""
        keys.set_key("deepl", "secret-value-long")
        infos = {info.service: info for info in keys.list_keys()}

        assert infos["deepl"].is_set
        assert infos["deepl"].source == "config"
        assert not infos["openai"].is_set


class TestStores:
    """Test key-value stores."""

    def test_memory_store(self):
        """Test the in-memory store."""
        store = MemoryStore()
        store.set("k", {"a": 1})
        assert store.get("k") == {"a": 1}
        store.delete("k")
        assert store.get("k", "default") == "default"

    def test_json_store_persists(self, tmp_path):
        """Test a second store over the same file sees earlier writes."""
        path = tmp_path / "cache" / "store.json"
        JsonFileStore(path).set("k", ["v"])
        assert JsonFileStore(path).get("k") == ["v"]

    def test_json_store_corrupt_file(self, tmp_path):
        """Test a corrupt file reads as empty and is overwritten on write."""
        path = tmp_path / "store.json"
        path.write_text("garbage", encoding="utf-8")
        store = JsonFileStore(path)

        assert store.get("k") is None
        store.set("k", 1)
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": 1}
