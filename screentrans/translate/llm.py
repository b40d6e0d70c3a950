"""
LLM-based translation providers.

This module provides:
- LocalLLMProvider: any OpenAI-compatible local server (LM Studio, Ollama,
  llama.cpp), spoken to directly over aiohttp; works in offline mode
- OpenAIProvider: the official OpenAI SDK (async client)
- DeepSeekProvider: DeepSeek's OpenAI-compatible cloud API

All three support streaming, chat and joined-batch translation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC
from typing import Any, Optional

import aiohttp

from screentrans.templates import build_system_prompt
from screentrans.translate.base import (
    ChunkSink,
    ConnectionStatus,
    Provider,
    ProviderResult,
    emit,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 2048


class BaseLLMProvider(Provider, ABC):
    """Shared prompt construction and response parsing for chat models."""

    @property
    def supports_streaming(self) -> bool:
        return True

    @property
    def supports_batch(self) -> bool:
        return True

    @property
    def supports_chat(self) -> bool:
        return True

    def build_messages(
        self,
        text: str,
        target_lang: str,
        system_prompt: Optional[str] = None,
    ) -> list[dict]:
        return [
            {"role": "system", "content": system_prompt or build_system_prompt(None, target_lang)},
            {"role": "user", "content": text},
        ]

    def parse_response(self, response: str) -> str:
        """Strip code fences and 'Translation:' style labels."""
        cleaned = response.strip()

        if cleaned.startswith("```"):
            lines = cleaned.split("\n")
            if lines[-1].strip() == "```":
                lines = lines[1:-1]
            else:
                lines = lines[1:]
            cleaned = "\n".join(lines)

        prefixes = ["Translation:", "Translated text:", "Here is the translation:"]
        for prefix in prefixes:
            if cleaned.lower().startswith(prefix.lower()):
                cleaned = cleaned[len(prefix):].strip()

        return cleaned.strip()


# ============================================================================
# Local OpenAI-compatible server
# ============================================================================

class LocalLLMProvider(BaseLLMProvider):
    """Local model server with an OpenAI-compatible HTTP API.

    Usage:
        provider = LocalLLMProvider({"endpoint": "http://localhost:1234/v1"})
        result = await provider.translate("Hello", target_lang="ja")
    """

    id = "local-llm"
    display_name = "Local LLM"
    description = "Local model server (LM Studio, Ollama); private and free"
    is_online = False
    tier = 1
    priority = 1
    required_config = ("endpoint",)
    default_config = {
        "endpoint": "http://localhost:1234/v1",
        "model": "",
        "timeout": 30.0,
    }

    @property
    def endpoint(self) -> str:
        return str(self.config["endpoint"]).rstrip("/")

    def _payload(self, messages: list[dict], stream: bool = False, **options: Any) -> dict:
        payload = {
            "messages": messages,
            "temperature": options.get("temperature", DEFAULT_TEMPERATURE),
            "max_tokens": options.get("max_tokens", DEFAULT_MAX_TOKENS),
            "stream": stream,
        }
        if self.config.get("model"):
            payload["model"] = self.config["model"]
        return payload

    def _client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout)

    async def _complete(self, messages: list[dict], **options: Any) -> ProviderResult:
        url = f"{self.endpoint}/chat/completions"
        try:
            async with aiohttp.ClientSession(timeout=self._client_timeout()) as session:
                async with session.post(url, json=self._payload(messages, **options)) as response:
                    if response.status != 200:
                        body = await response.text()
                        return ProviderResult.fail(f"HTTP {response.status}: {body[:200]}")
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            return ProviderResult.fail(f"network error: {e}")

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            return ProviderResult.fail("malformed response")
        if not content.strip():
            return ProviderResult.fail("empty response")
        return ProviderResult.ok(content, model=data.get("model"), usage=data.get("usage"))

    async def translate(
        self,
        text: str,
        source_lang: str = "auto",
        target_lang: str = "zh",
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        if not text or not text.strip():
            return ProviderResult.fail("empty text")
        result = await self._complete(self.build_messages(text, target_lang, system_prompt))
        if result.success:
            result.text = self.parse_response(result.text)
        return result

    async def translate_stream(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        on_chunk: Optional[ChunkSink],
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        if not text or not text.strip():
            return ProviderResult.fail("empty text")

        messages = self.build_messages(text, target_lang, system_prompt)
        url = f"{self.endpoint}/chat/completions"
        parts: list[str] = []
        try:
            async with aiohttp.ClientSession(timeout=self._client_timeout()) as session:
                async with session.post(url, json=self._payload(messages, stream=True)) as response:
                    if response.status != 200:
                        return ProviderResult.fail(f"HTTP {response.status}")
                    async for raw in response.content:
                        chunk = parse_sse_line(raw.decode("utf-8", errors="replace"))
                        if chunk:
                            parts.append(chunk)
                            await emit(on_chunk, chunk)
        except aiohttp.ClientError as e:
            return ProviderResult.fail(f"network error: {e}")

        full = "".join(parts).strip()
        if not full:
            return ProviderResult.fail("empty response")
        return ProviderResult.ok(full)

    async def chat(self, messages: list[dict], **options: Any) -> ProviderResult:
        options.setdefault("temperature", 0.7)
        return await self._complete(messages, **options)

    async def list_models(self) -> list[str]:
        url = f"{self.endpoint}/models"
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5)) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                data = await response.json(content_type=None)
        return [m["id"] for m in data.get("data", []) if "id" in m]

    async def test_connection(self) -> ConnectionStatus:
        try:
            models = await self.list_models()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return ConnectionStatus(False, f"connection failed: {e}")
        return ConnectionStatus(True, f"connected, {len(models)} model(s) available", models)


def parse_sse_line(line: str) -> str:
    """Extract the content delta from one server-sent-events line.

    Returns an empty string for keep-alives, ``[DONE]`` and malformed data.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return ""
    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return ""
    try:
        payload = json.loads(data)
        return payload["choices"][0].get("delta", {}).get("content") or ""
    except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
        return ""


# ============================================================================
# OpenAI SDK providers
# ============================================================================

class OpenAIProvider(BaseLLMProvider):
    """OpenAI chat models through the official async SDK.

    Usage:
        provider = OpenAIProvider({"api_key": "sk-...", "model": "gpt-4o-mini"})
        result = await provider.translate("Hello", target_lang="fr")
    """

    id = "openai"
    display_name = "OpenAI"
    description = "OpenAI GPT models"
    is_online = True
    tier = 2
    priority = 2
    required_config = ("api_key",)
    default_config = {
        "api_key": "",
        "model": "gpt-4o-mini",
        "base_url": None,
        "timeout": 30.0,
    }

    env_var = "OPENAI_API_KEY"

    def __init__(self, config: Optional[dict[str, Any]] = None):
        super().__init__(config)
        self._client = None

    def update_config(self, **changes: Any) -> None:
        super().update_config(**changes)
        self._client = None

    def _get_client(self):
        """Lazy initialization of the async OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ImportError(
                    "OpenAI library required. Install with: pip install openai"
                )

            if not self.config.get("api_key"):
                raise ValueError(
                    f"API key required for {self.display_name}. Set {self.env_var} "
                    f"or run: screentrans keys set {self.id}"
                )

            kwargs = {
                "api_key": self.config["api_key"],
                "timeout": self.timeout,
                "max_retries": 0,
            }
            if self.config.get("base_url"):
                kwargs["base_url"] = self.config["base_url"]
            self._client = AsyncOpenAI(**kwargs)

        return self._client

    async def _create(self, messages: list[dict], stream: bool = False, **options: Any):
        client = self._get_client()
        return await client.chat.completions.create(
            model=self.config["model"],
            messages=messages,
            temperature=options.get("temperature", DEFAULT_TEMPERATURE),
            max_tokens=options.get("max_tokens", DEFAULT_MAX_TOKENS),
            stream=stream,
        )

    async def translate(
        self,
        text: str,
        source_lang: str = "auto",
        target_lang: str = "zh",
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        if not text or not text.strip():
            return ProviderResult.fail("empty text")
        response = await self._create(self.build_messages(text, target_lang, system_prompt))
        content = response.choices[0].message.content or ""
        if not content.strip():
            return ProviderResult.fail("empty response")
        return ProviderResult.ok(self.parse_response(content), model=self.config["model"])

    async def translate_stream(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        on_chunk: Optional[ChunkSink],
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        if not text or not text.strip():
            return ProviderResult.fail("empty text")
        stream = await self._create(
            self.build_messages(text, target_lang, system_prompt), stream=True
        )
        parts: list[str] = []
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content or ""
            if delta:
                parts.append(delta)
                await emit(on_chunk, delta)
        full = "".join(parts).strip()
        if not full:
            return ProviderResult.fail("empty response")
        return ProviderResult.ok(full, model=self.config["model"])

    async def chat(self, messages: list[dict], **options: Any) -> ProviderResult:
        options.setdefault("temperature", 0.7)
        response = await self._create(messages, **options)
        content = response.choices[0].message.content or ""
        if not content:
            return ProviderResult.fail("empty response")
        return ProviderResult.ok(content, model=self.config["model"])

    async def list_models(self) -> list[str]:
        page = await self._get_client().models.list()
        return [m.id for m in page.data]

    async def test_connection(self) -> ConnectionStatus:
        status = await super().test_connection()
        if not status.success:
            return status
        try:
            models = await self.list_models()
        except Exception as e:
            return ConnectionStatus(False, f"connection failed: {e}")
        return ConnectionStatus(True, f"connected, {len(models)} model(s) available", models)


class DeepSeekProvider(OpenAIProvider):
    """DeepSeek chat API (OpenAI-compatible)."""

    id = "deepseek"
    display_name = "DeepSeek"
    description = "DeepSeek chat models"
    priority = 3
    default_config = {
        "api_key": "",
        "model": "deepseek-chat",
        "base_url": "https://api.deepseek.com",
        "timeout": 30.0,
    }

    env_var = "DEEPSEEK_API_KEY"
