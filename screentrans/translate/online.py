"""
Cloud machine-translation providers (no LLM involved).

- DeepLProvider: DeepL REST API; free keys (ending in ':fx') use the free host
- GoogleTranslateProvider: keyless Google endpoint used by the web widget

Neither streams; the dispatcher emits their result as a single chunk.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import aiohttp

from screentrans.translate.base import ConnectionStatus, Provider, ProviderResult

logger = logging.getLogger(__name__)


class DeepLProvider(Provider):
    """DeepL translation API.

    Usage:
        provider = DeepLProvider({"api_key": "xxxx:fx"})
        result = await provider.translate("Hello", target_lang="de")
    """

    id = "deepl"
    display_name = "DeepL"
    description = "DeepL professional translation API"
    is_online = True
    tier = 3
    priority = 4
    required_config = ("api_key",)
    default_config = {
        "api_key": "",
        "use_free_api": False,
        "formality": "default",
        "timeout": 15.0,
    }

    FREE_URL = "https://api-free.deepl.com/v2"
    PRO_URL = "https://api.deepl.com/v2"

    # Targets that need a regional variant
    _TARGET_VARIANTS = {"en": "EN-US", "pt": "PT-BR"}

    @property
    def base_url(self) -> str:
        key = self.config.get("api_key") or ""
        if self.config.get("use_free_api") or key.endswith(":fx"):
            return self.FREE_URL
        return self.PRO_URL

    def convert_lang(self, code: str, is_target: bool = False) -> Optional[str]:
        if not code or code == "auto":
            return None
        if is_target and code in self._TARGET_VARIANTS:
            return self._TARGET_VARIANTS[code]
        return code.split("-")[0].upper()

    def _headers(self) -> dict:
        return {"Authorization": f"DeepL-Auth-Key {self.config['api_key']}"}

    async def translate(
        self,
        text: str,
        source_lang: str = "auto",
        target_lang: str = "zh",
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        if not text or not text.strip():
            return ProviderResult.fail("empty text")

        form = {"text": text, "target_lang": self.convert_lang(target_lang, is_target=True)}
        if source := self.convert_lang(source_lang):
            form["source_lang"] = source
        if self.config.get("formality") not in (None, "", "default"):
            form["formality"] = self.config["formality"]

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    f"{self.base_url}/translate", data=form, headers=self._headers()
                ) as response:
                    if response.status == 403:
                        return ProviderResult.fail("invalid or expired API key")
                    if response.status == 456:
                        return ProviderResult.fail("quota exceeded")
                    if response.status != 200:
                        return ProviderResult.fail(f"HTTP {response.status}")
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            return ProviderResult.fail(f"network error: {e}")

        translations = data.get("translations") or []
        if not translations:
            return ProviderResult.fail("no translation returned")
        first = translations[0]
        return ProviderResult.ok(
            first.get("text", ""),
            detected_source_lang=(first.get("detected_source_language") or "").lower(),
        )

    async def test_connection(self) -> ConnectionStatus:
        status = await super().test_connection()
        if not status.success:
            return status
        timeout = aiohttp.ClientTimeout(total=5)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(f"{self.base_url}/usage", headers=self._headers()) as response:
                    if response.status != 200:
                        return ConnectionStatus(False, f"HTTP {response.status}")
                    usage = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            return ConnectionStatus(False, f"connection failed: {e}")
        used = usage.get("character_count", 0)
        limit = usage.get("character_limit", 0)
        return ConnectionStatus(True, f"connected, {used}/{limit} characters used")


class GoogleTranslateProvider(Provider):
    """Google Translate through the keyless web endpoint.

    Note: unofficial and rate-limited; prefer a configured provider where
    quality or reliability matter.
    """

    id = "google-translate"
    display_name = "Google Translate"
    description = "Google Translate web endpoint (no key needed)"
    is_online = True
    tier = 3
    priority = 5
    default_config = {
        "url": "https://translate.googleapis.com/translate_a/single",
        "timeout": 10.0,
    }

    _LANG_CODES = {"zh": "zh-CN", "zh-TW": "zh-TW"}

    def convert_lang(self, code: str) -> str:
        if not code:
            return "auto"
        return self._LANG_CODES.get(code, code)

    async def translate(
        self,
        text: str,
        source_lang: str = "auto",
        target_lang: str = "zh",
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        if not text or not text.strip():
            return ProviderResult.fail("empty text")

        params = {
            "client": "gtx",
            "sl": self.convert_lang(source_lang),
            "tl": self.convert_lang(target_lang),
            "dt": "t",
            "ie": "UTF-8",
            "oe": "UTF-8",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                # Long texts go in the body to stay under URL length limits
                if len(text) > 1500:
                    request = session.post(self.config["url"], params=params, data={"q": text})
                else:
                    request = session.get(self.config["url"], params={**params, "q": text})
                async with request as response:
                    if response.status != 200:
                        return ProviderResult.fail(f"HTTP {response.status}")
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            return ProviderResult.fail(f"network error: {e}")

        return self.parse_response(data)

    @staticmethod
    def parse_response(data: Any) -> ProviderResult:
        """Join sentence segments from the nested-list response."""
        try:
            segments = data[0] or []
            translated = "".join(seg[0] for seg in segments if seg and seg[0])
        except (IndexError, TypeError):
            return ProviderResult.fail("malformed response")
        if not translated:
            return ProviderResult.fail("no translation returned")
        detected = data[2] if len(data) > 2 and isinstance(data[2], str) else None
        return ProviderResult.ok(translated, detected_source_lang=detected)
