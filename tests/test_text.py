"""
Tests for text heuristics, templates and privacy modes.
"""

import pytest

from screentrans.privacy import (
    PrivacyMode,
    allows_persistence,
    get_policy,
    is_ocr_engine_allowed,
    is_provider_allowed,
)
from screentrans.templates import (
    DEFAULT_TEMPLATE,
    build_system_prompt,
    get_template,
    guess_target_from_prompt,
    language_name,
)
from screentrans.text import (
    clean_text,
    clean_translation_output,
    detect_language,
    should_translate_text,
)


class TestDetectLanguage:
    """Test script-based language detection."""

    @pytest.mark.parametrize("text,expected", [
        ("Hello world", "en"),
        ("你好世界", "zh"),
        ("こんにちは世界", "ja"),
        ("안녕하세요", "ko"),
        ("Привет мир", "ru"),
        ("مرحبا", "ar"),
        ("", "auto"),
        ("   ", "auto"),
    ])
    def test_detect(self, text, expected):
        """Test the dominant script decides the language."""
        assert detect_language(text) == expected


class TestShouldTranslate:
    """Test the worth-translating filter."""

    @pytest.mark.parametrize("text", ["", " ", "a", "12345", "3.14 + 2", "---", "ok", "译：你好"])
    def test_rejected(self, text):
        """Test trivial text is not sent to a provider."""
        assert not should_translate_text(text)

    @pytest.mark.parametrize("text", ["Hello", "你好", "Version 2 released"])
    def test_accepted(self, text):
        """Test real text is translated."""
        assert should_translate_text(text)


class TestCleanOutput:
    """Test model output cleanup."""

    def test_strips_label(self):
        """Test a leading label is removed."""
        assert clean_translation_output("Translation: 你好") == "你好"
        assert clean_translation_output("译文：你好") == "你好"

    def test_strips_quotes_and_notes(self):
        """Test wrapping quotes and trailing notes are removed."""
        assert clean_translation_output("“你好”") == "你好"
        assert clean_translation_output("你好 (Note: greeting)") == "你好"

    def test_echo_is_empty(self):
        """Test output equal to the source counts as no translation."""
        assert clean_translation_output(" Hello ", source="Hello") == ""

    def test_clean_text(self):
        """Test OCR text normalization."""
        assert clean_text("a\r\nb   c\n\n\n\nd ") == "a\nb c\n\nd"
        assert clean_text("") == ""


class TestTemplates:
    """Test prompt templates."""

    def test_render_language_name(self):
        """Test the target language is rendered by name."""
        assert "Japanese" in build_system_prompt("natural", "ja")
        assert "the same language as the source" in build_system_prompt("natural", "auto")

    def test_unknown_template_falls_back(self):
        """Test unknown template IDs use the default."""
        assert get_template("nope").id == DEFAULT_TEMPLATE

    def test_placeholder_instruction(self):
        """Test every prompt asks the model to keep placeholders."""
        assert "<<NAME_000>>" in build_system_prompt("ocr", "zh")

    def test_guess_target(self):
        """Test the target language is read back from a prompt."""
        assert guess_target_from_prompt("Translate into Chinese (Traditional).") == "zh-TW"
        assert guess_target_from_prompt("Translate into German") == "de"
        assert guess_target_from_prompt("Do something") == "zh"

    def test_language_name(self):
        """Test unknown codes are returned as-is."""
        assert language_name("en") == "English"
        assert language_name("xx") == "xx"


class TestPrivacy:
    """Test privacy mode policies."""

    def test_parse(self):
        """Test modes parse from strings, enums and None."""
        assert PrivacyMode.parse("OFFLINE") is PrivacyMode.OFFLINE
        assert PrivacyMode.parse(PrivacyMode.SECURE) is PrivacyMode.SECURE
        assert PrivacyMode.parse(None) is PrivacyMode.STANDARD
        with pytest.raises(ValueError):
            PrivacyMode.parse("paranoid")

    def test_policies(self):
        """Test what each mode allows."""
        assert is_provider_allowed("standard", is_online=True)
        assert is_provider_allowed("secure", is_online=True)
        assert not is_provider_allowed("offline", is_online=True)
        assert is_provider_allowed("offline", is_online=False)
        assert not is_ocr_engine_allowed("offline", is_online=True)
        assert allows_persistence("standard")
        assert not allows_persistence("secure")
        assert allows_persistence("offline")

    def test_policy_descriptions(self):
        """Test every mode has a description for status output."""
        for mode in PrivacyMode:
            assert get_policy(mode).description
        assert "network" in get_policy("offline").description
