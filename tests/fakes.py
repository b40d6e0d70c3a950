"""
Fakes for the test suite.

FakeProvider and FakeEngine stand in for real backends: no network, every
call recorded, behavior chosen per test.
"""

import io
from typing import Callable, Optional, Union

from PIL import Image

from screentrans.cache import TranslationCacheTier, L1Cache, L2Cache
from screentrans.ocr.base import EngineResult, OCREngine
from screentrans.store import MemoryStore
from screentrans.translate.base import Provider, ProviderResult
from screentrans.translate.dispatcher import TranslationDispatcher
from screentrans.translate.registry import ProviderRegistry
from screentrans.translate.scheduler import PriorityScheduler

Reply = Callable[[str, str], Union[str, ProviderResult]]


class FakeProvider(Provider):
    """Provider whose replies come from a function (default: '[target] text')."""

    def __init__(
        self,
        provider_id: str = "fake",
        reply: Optional[Reply] = None,
        is_online: bool = False,
        batch: bool = False,
        streaming: bool = False,
        required: tuple = (),
        config: Optional[dict] = None,
    ):
        super().__init__(config)
        self.id = provider_id
        self.display_name = provider_id.title()
        self.is_online = is_online
        self.required_config = required
        self._batch = batch
        self._streaming = streaming
        self.reply = reply or (lambda text, target: f"[{target}] {text}")
        self.calls: list[str] = []
        self.prompts: list[Optional[str]] = []

    @property
    def supports_batch(self) -> bool:
        return self._batch

    @property
    def supports_streaming(self) -> bool:
        return self._streaming

    def descriptor(self):
        desc = super().descriptor()
        desc.id = self.id
        desc.display_name = self.display_name
        desc.is_online = self.is_online
        desc.required_config_keys = list(self.required_config)
        return desc

    async def translate(self, text, source_lang="auto", target_lang="zh", system_prompt=None):
        self.calls.append(text)
        self.prompts.append(system_prompt)
        out = self.reply(text, target_lang)
        if isinstance(out, ProviderResult):
            return out
        return ProviderResult.ok(out)

    async def translate_stream(self, text, source_lang, target_lang, on_chunk, system_prompt=None):
        if not self._streaming:
            return await super().translate_stream(text, source_lang, target_lang, on_chunk, system_prompt)
        result = await self.translate(text, source_lang, target_lang, system_prompt)
        if result.success:
            # Deliver in small pieces so placeholders straddle chunk boundaries
            for i in range(0, len(result.text), 3):
                chunk = result.text[i:i + 3]
                maybe = on_chunk(chunk)
                if maybe is not None:
                    await maybe
        return result


def failing(message: str = "backend down") -> Reply:
    return lambda text, target: ProviderResult.fail(message)


class FakeEngine(OCREngine):
    """OCR engine returning fixed text, or failing."""

    def __init__(
        self,
        engine_id: str,
        tier: int = 1,
        priority: int = 0,
        text: str = "Hello world",
        fail: bool = False,
        is_online: bool = False,
        configured: bool = True,
        platform: Optional[str] = None,
    ):
        super().__init__({"api_key": "k" if configured else ""})
        self.id = engine_id
        self.display_name = engine_id
        self.tier = tier
        self.priority = priority
        self.text = text
        self.fail = fail
        self.is_online = is_online
        self.required_config = ("api_key",) if is_online else ()
        self.platform_restriction = platform
        self.calls = 0
        self.languages: list[str] = []

    async def recognize(self, image, language="zh-Hans"):
        self.calls += 1
        self.languages.append(language)
        if self.fail:
            return EngineResult.fail(f"{self.id} failed")
        return EngineResult.ok(self.text, confidence=0.8)


def make_dispatcher(*providers: Provider, order=None, store=None):
    """Dispatcher over ``providers`` tried in the given (or registration) order."""
    registry = ProviderRegistry()
    for provider in providers:
        registry.register_provider(provider)
    order = order or [p.id for p in providers]
    scheduler = PriorityScheduler(registry, default_priority={"normal": order, "subtitle": order})
    cache = TranslationCacheTier(L1Cache(), L2Cache(store if store is not None else MemoryStore()))
    return TranslationDispatcher(registry, scheduler, cache)


def png_bytes(width: int = 400, height: int = 400, color=(255, 255, 255)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


