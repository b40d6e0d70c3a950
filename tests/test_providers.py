"""
Tests for the built-in providers' offline logic (no network).
"""

import asyncio
import json

import pytest

from screentrans.translate.base import DummyProvider, ProviderDescriptor
from screentrans.translate.llm import DeepSeekProvider, LocalLLMProvider, OpenAIProvider, parse_sse_line
from screentrans.translate.online import DeepLProvider, GoogleTranslateProvider


class TestDummyProvider:
    """Test the offline dummy provider."""

    @pytest.mark.parametrize("mode,expected", [
        ("echo", "hello big world"),
        ("upper", "HELLO BIG WORLD"),
        ("prefix", "[de] hello big world"),
        ("reverse", "world big hello"),
    ])
    def test_modes(self, mode, expected):
        """Test each transformation mode."""
        provider = DummyProvider(mode=mode)
        result = asyncio.run(provider.translate("hello big world", target_lang="de"))

        assert result.success
        assert result.text == expected

    def test_fail_mode(self):
        """Test the failing mode."""
        result = asyncio.run(DummyProvider({"mode": "fail"}).translate("hello"))
        assert not result.success

    def test_descriptor(self):
        """Test the descriptor reflects class metadata and capabilities."""
        desc = DummyProvider().descriptor()

        assert isinstance(desc, ProviderDescriptor)
        assert desc.id == "dummy"
        assert not desc.is_online
        assert desc.configured
        assert desc.supports_batch


class TestLLMProviders:
    """Test shared LLM helpers."""

    def test_parse_response(self):
        """Test fences and labels are stripped."""
        provider = LocalLLMProvider()
        assert provider.parse_response("```\n你好\n```") == "你好"
        assert provider.parse_response("Translation: 你好") == "你好"
        assert provider.parse_response("  你好  ") == "你好"

    def test_build_messages(self):
        """Test the system prompt precedes the user text."""
        messages = LocalLLMProvider().build_messages("Hello", "ja", "Be brief")
        assert messages == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hello"},
        ]

    def test_default_system_prompt(self):
        """Test a missing system prompt falls back to the default template."""
        messages = LocalLLMProvider().build_messages("Hello", "ja")
        assert "Japanese" in messages[0]["content"]

    def test_capabilities(self):
        """Test LLM providers stream, batch and chat."""
        desc = LocalLLMProvider().descriptor()
        assert desc.supports_streaming and desc.supports_batch and desc.supports_chat
        assert not desc.is_online

    def test_online_providers_need_keys(self):
        """Test hosted models require an API key."""
        assert not OpenAIProvider().configured()
        assert OpenAIProvider({"api_key": "sk-test"}).configured()
        assert DeepSeekProvider.describe().is_online

    def test_missing_key_connection_test(self):
        """Test the connection test reports missing credentials without a call."""
        status = asyncio.run(DeepLProvider().test_connection())
        assert not status.success
        assert "api_key" in status.message


class TestSSE:
    """Test server-sent-event parsing."""

    def test_content_delta(self):
        """Test the content delta is extracted."""
        payload = {"choices": [{"delta": {"content": "你好"}}]}
        assert parse_sse_line("data: " + json.dumps(payload)) == "你好"

    @pytest.mark.parametrize("line", [
        "",
        ": keep-alive",
        "data: [DONE]",
        "data: {broken",
        'data: {"choices": []}',
        'data: {"choices": [{"delta": {}}]}',
    ])
    def test_ignored_lines(self, line):
        """Test non-content lines yield nothing."""
        assert parse_sse_line(line) == ""


class TestOnlineProviders:
    """Test request helpers of the machine translation APIs."""

    def test_deepl_endpoint(self):
        """Test free-tier keys use the free endpoint."""
        assert DeepLProvider({"api_key": "abc:fx"}).base_url == DeepLProvider.FREE_URL
        assert DeepLProvider({"api_key": "abc"}).base_url == DeepLProvider.PRO_URL
        assert DeepLProvider({"api_key": "abc", "use_free_api": True}).base_url == DeepLProvider.FREE_URL

    def test_deepl_languages(self):
        """Test DeepL language code conversion."""
        provider = DeepLProvider()
        assert provider.convert_lang("auto") is None
        assert provider.convert_lang("zh-TW") == "ZH"
        assert provider.convert_lang("en", is_target=True) == "EN-US"
        assert provider.convert_lang("en") == "EN"

    def test_google_languages(self):
        """Test Google language code conversion."""
        provider = GoogleTranslateProvider()
        assert provider.convert_lang("zh") == "zh-CN"
        assert provider.convert_lang("") == "auto"
        assert provider.convert_lang("ja") == "ja"

    def test_google_parse_response(self):
        """Test sentence segments are joined and the detected language kept."""
        data = [[["你好，", "Hello, ", None], ["世界", "world", None]], None, "en"]
        result = GoogleTranslateProvider.parse_response(data)

        assert result.success
        assert result.text == "你好，世界"
        assert result.metadata["detected_source_lang"] == "en"

    def test_google_parse_malformed(self):
        """Test malformed responses fail."""
        assert not GoogleTranslateProvider.parse_response(None).success
        assert not GoogleTranslateProvider.parse_response([[]]).success
