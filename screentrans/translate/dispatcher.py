"""
Translation dispatcher: the one entry point for every translation request.

Flow for a single request:
1. Protect non-translatable spans (URLs, code, placeholders, ...)
2. Look the protected text up in L1, then L2 (L2 is skipped in secure mode)
3. On a miss, walk the resolved provider order; the first success wins
4. Restore protected spans, write through to the cache tiers

Failures inside providers are converted into the error taxonomy in
screentrans.errors and reported on DispatchResult; they never propagate.
Streaming, batch and chat variants share the same provider loop.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from screentrans.cache import CacheEntry, TranslationCacheTier
from screentrans.errors import (
    AllProvidersExhausted,
    BatchShapeMismatch,
    DispatchError,
    NoEligibleProvider,
    ProviderCallFailed,
    ProviderNotConfigured,
    UnknownProvider,
)
from screentrans.privacy import PrivacyMode, is_provider_allowed
from screentrans.protection import ProtectedSpan, ProtectionFilter, restore, validate_placeholders
from screentrans.templates import DEFAULT_TEMPLATE, build_system_prompt, guess_target_from_prompt
from screentrans.text import detect_language
from screentrans.translate.base import (
    ChunkSink,
    ConnectionStatus,
    Provider,
    ProviderResult,
    emit,
)
from screentrans.translate.registry import ProviderRegistry
from screentrans.translate.scheduler import PriorityScheduler

logger = logging.getLogger(__name__)

# One extra pass after a global counter reset, never more
MAX_EXTRA_PASSES = 1

# Slack on top of the provider's own HTTP timeout
TIMEOUT_GRACE = 5.0

BATCH_SEPARATOR = "[[[SEG-{n}]]]"


@dataclass
class DispatchResult:
    """Outcome of a dispatched translation.

    Attributes:
        success: Whether a translation was produced
        text: Translated text with protected spans restored
        error: Human-readable error when success is False
        error_kind: Error class name (e.g. 'AllProvidersExhausted')
        provider_id: Provider that produced the text (or the cached text)
        from_cache: True when served from L1/L2 without a provider call
        attempted: Provider IDs actually invoked, in order
        source_lang: Detected or declared source language
    """
    success: bool
    text: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    provider_id: Optional[str] = None
    from_cache: bool = False
    attempted: list[str] = field(default_factory=list)
    source_lang: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: DispatchError, **kwargs) -> "DispatchResult":
        return cls(success=False, error=str(error), error_kind=error.kind, **kwargs)


@dataclass
class TranslateRequest:
    """A request with its privacy mode snapshotted at entry."""
    text: str
    source_lang: str = "auto"
    target_lang: str = "zh"
    template: str = DEFAULT_TEMPLATE
    mode: str = "normal"
    privacy_mode: PrivacyMode = PrivacyMode.STANDARD
    use_cache: bool = True
    enable_fallback: bool = True
    priority: Optional[list[str]] = None


ProviderCall = Callable[[Provider], Awaitable[ProviderResult]]


class _RestoringSink:
    """Restores placeholders in streamed chunks before they reach the caller.

    A chunk that ends inside a placeholder is held back until the placeholder
    is complete.
    """

    def __init__(self, spans: list[ProtectedSpan], sink: Optional[ChunkSink]):
        self.spans = spans
        self.sink = sink
        self._pending = ""

    async def push(self, chunk: str) -> None:
        if not self.spans:
            await emit(self.sink, chunk)
            return
        self._pending += chunk
        cut = self._pending.rfind("<<")
        if cut != -1 and ">>" not in self._pending[cut:]:
            ready, self._pending = self._pending[:cut], self._pending[cut:]
        elif self._pending.endswith("<"):
            ready, self._pending = self._pending[:-1], "<"
        else:
            ready, self._pending = self._pending, ""
        if ready:
            await emit(self.sink, restore(ready, self.spans))

    async def flush(self) -> None:
        if self._pending:
            pending, self._pending = self._pending, ""
            await emit(self.sink, restore(pending, self.spans))


class TranslationDispatcher:
    """Facade over protection, cache, scheduler and providers.

    Usage:
        dispatcher = TranslationDispatcher(registry, scheduler, cache)
        result = await dispatcher.translate("Hello", target_lang="zh")
        if result.success:
            print(result.text, result.provider_id, result.from_cache)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        scheduler: PriorityScheduler,
        cache: TranslationCacheTier,
        protection: Optional[ProtectionFilter] = None,
        privacy: Callable[[], PrivacyMode] = lambda: PrivacyMode.STANDARD,
        user_priority: Optional[list[str]] = None,
    ):
        self.registry = registry
        self.scheduler = scheduler
        self.cache = cache
        self.protection = protection or ProtectionFilter()
        self._privacy = privacy
        self.user_priority = user_priority

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _request(self, text: str, privacy_mode=None, priority=None, **options) -> TranslateRequest:
        mode = PrivacyMode.parse(privacy_mode if privacy_mode is not None else self._privacy())
        return TranslateRequest(
            text=text,
            privacy_mode=mode,
            priority=list(priority) if priority else None,
            **options,
        )

    def _protect(self, text: str) -> tuple[str, list[ProtectedSpan]]:
        try:
            return self.protection.protect(text)
        except Exception as e:
            logger.warning("Protection failed, translating unprotected text: %s", e)
            return text, []

    def _cache_get(self, key: str, req: TranslateRequest) -> Optional[CacheEntry]:
        if not req.use_cache:
            return None
        try:
            return self.cache.get(key, req.privacy_mode)
        except Exception as e:
            logger.warning("Cache lookup failed, treating as miss: %s", e)
            return None

    def _cache_set(self, key: str, entry: CacheEntry, req: TranslateRequest) -> None:
        if not req.use_cache:
            return
        try:
            self.cache.set(key, entry, req.privacy_mode)
        except Exception as e:
            logger.warning("Cache write failed: %s", e)

    def _source_lang(self, req: TranslateRequest) -> str:
        if req.source_lang and req.source_lang != "auto":
            return req.source_lang
        return detect_language(req.text)

    def _check_placeholders(self, processed: str, raw: str, provider_id: Optional[str]) -> list[str]:
        missing = validate_placeholders(processed, raw)
        if missing:
            logger.warning(
                "Provider %s dropped %d placeholder(s): %s",
                provider_id, len(missing), ", ".join(missing),
            )
        return missing

    def _resolve(self, req: TranslateRequest) -> tuple[list[str], list[str]]:
        order = self.scheduler.resolve_priority(
            req.mode, req.priority or self.user_priority, req.privacy_mode
        )
        eligible, unconfigured = [], []
        for pid in order:
            if self.registry.is_configured(pid):
                eligible.append(pid)
            else:
                logger.debug("Skipping %s: not configured", pid)
                unconfigured.append(pid)
        return eligible, unconfigured

    def candidates(self, req: TranslateRequest) -> list[str]:
        """Resolved order minus unconfigured providers (never retried, never counted)."""
        return self._resolve(req)[0]

    async def _invoke(self, provider_id: str, call: ProviderCall) -> ProviderResult:
        provider = self.registry.get(provider_id)
        try:
            result = await asyncio.wait_for(call(provider), timeout=provider.timeout + TIMEOUT_GRACE)
        except asyncio.TimeoutError:
            return ProviderResult.fail("timed out")
        except Exception as e:
            logger.debug("Provider %s raised", provider_id, exc_info=True)
            return ProviderResult.fail(str(e) or type(e).__name__)
        if result.success and not (result.text or "").strip():
            return ProviderResult.fail("empty response")
        return result

    async def _dispatch(self, req: TranslateRequest, call: ProviderCall) -> DispatchResult:
        """Walk providers in priority order with circuit breaking.

        When every provider is skipped and failures are on record, counters
        are reset and the list is tried exactly once more.
        """
        candidates, unconfigured = self._resolve(req)
        if not candidates and unconfigured and req.priority:
            # Explicitly requested providers that cannot run
            pid = unconfigured[0]
            error = ProviderNotConfigured(pid, self.registry.missing_config(pid))
            logger.warning("Cannot translate: %s", error)
            return DispatchResult.from_error(error, provider_id=pid)
        if not candidates:
            reason = "no available provider"
            if req.privacy_mode is PrivacyMode.OFFLINE:
                reason += " (offline mode allows local providers only)"
            elif unconfigured:
                details = [str(ProviderNotConfigured(p, self.registry.missing_config(p))) for p in unconfigured]
                reason += f" ({'; '.join(details)})"
            return DispatchResult.from_error(NoEligibleProvider(reason))

        attempted: list[str] = []
        last_error: Optional[ProviderCallFailed] = None

        for extra_pass in range(MAX_EXTRA_PASSES + 1):
            tried = 0
            for pid in candidates:
                if self.scheduler.should_skip(pid):
                    logger.debug("Circuit open for %s, skipping", pid)
                    continue
                tried += 1
                attempted.append(pid)
                logger.debug("Trying provider %s", pid)

                result = await self._invoke(pid, call)
                if result.success:
                    self.scheduler.record_success(pid)
                    return DispatchResult(
                        success=True,
                        text=result.text,
                        provider_id=pid,
                        attempted=attempted,
                        metadata=result.metadata,
                    )

                self.scheduler.record_failure(pid)
                last_error = ProviderCallFailed(pid, result.error or "unknown error")
                logger.warning("Provider %s failed: %s", pid, last_error.message)
                if not req.enable_fallback:
                    return DispatchResult.from_error(last_error, provider_id=pid, attempted=attempted)

            if tried == 0 and self.scheduler.has_failures() and extra_pass < MAX_EXTRA_PASSES:
                logger.info("Every provider is circuit-broken; resetting counters for one more pass")
                self.scheduler.reset()
                continue
            break

        error = AllProvidersExhausted(attempted, last_error.message if last_error else None)
        return DispatchResult.from_error(error, attempted=attempted)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def translate(
        self,
        text: str,
        *,
        source_lang: str = "auto",
        target_lang: str = "zh",
        template: str = DEFAULT_TEMPLATE,
        mode: str = "normal",
        privacy_mode: PrivacyMode | str | None = None,
        use_cache: bool = True,
        enable_fallback: bool = True,
        priority: Optional[list[str]] = None,
    ) -> DispatchResult:
        """Translate one text with protection, caching and provider fallback."""
        return await self._translate(
            self._request(
                text,
                privacy_mode=privacy_mode,
                priority=priority,
                source_lang=source_lang,
                target_lang=target_lang,
                template=template,
                mode=mode,
                use_cache=use_cache,
                enable_fallback=enable_fallback,
            ),
            sink=None,
            streaming=False,
        )

    async def translate_stream(
        self,
        text: str,
        on_chunk: Optional[ChunkSink],
        *,
        source_lang: str = "auto",
        target_lang: str = "zh",
        template: str = DEFAULT_TEMPLATE,
        mode: str = "normal",
        privacy_mode: PrivacyMode | str | None = None,
        use_cache: bool = True,
        enable_fallback: bool = True,
        priority: Optional[list[str]] = None,
    ) -> DispatchResult:
        """Like translate(), but pushes text to ``on_chunk`` as it arrives.

        Providers that cannot stream deliver their whole result as one chunk;
        a cache hit is delivered as one chunk too.
        """
        return await self._translate(
            self._request(
                text,
                privacy_mode=privacy_mode,
                priority=priority,
                source_lang=source_lang,
                target_lang=target_lang,
                template=template,
                mode=mode,
                use_cache=use_cache,
                enable_fallback=enable_fallback,
            ),
            sink=on_chunk,
            streaming=True,
        )

    async def _translate(
        self,
        req: TranslateRequest,
        sink: Optional[ChunkSink],
        streaming: bool,
    ) -> DispatchResult:
        if not req.text or not req.text.strip():
            return DispatchResult(success=False, error="empty text", error_kind="EmptyText")

        processed, spans = self._protect(req.text)
        key = self.cache.make_key(processed, req.target_lang, req.template)

        cached = self._cache_get(key, req)
        if cached is not None:
            restored = restore(cached.translated_text, spans)
            if streaming:
                await emit(sink, restored)
            return DispatchResult(
                success=True,
                text=restored,
                provider_id=cached.provider_id,
                from_cache=True,
                source_lang=cached.source_lang_detected,
            )

        system_prompt = build_system_prompt(req.template, req.target_lang)

        async def call(provider: Provider) -> ProviderResult:
            if not streaming:
                return await provider.translate(
                    processed, req.source_lang, req.target_lang, system_prompt
                )
            restoring = _RestoringSink(spans, sink)
            if provider.supports_streaming:
                result = await provider.translate_stream(
                    processed, req.source_lang, req.target_lang, restoring.push, system_prompt
                )
            else:
                result = await provider.translate(
                    processed, req.source_lang, req.target_lang, system_prompt
                )
                if result.success:
                    await restoring.push(result.text)
            if result.success:
                await restoring.flush()
            return result

        outcome = await self._dispatch(req, call)
        outcome.source_lang = self._source_lang(req)
        if not outcome.success:
            return outcome

        raw = outcome.text
        missing = self._check_placeholders(processed, raw, outcome.provider_id)
        if missing:
            outcome.metadata = {**outcome.metadata, "missing_placeholders": missing}
        outcome.text = restore(raw, spans)
        self._cache_set(
            key,
            CacheEntry(
                translated_text=raw,
                source_lang_detected=outcome.source_lang,
                provider_id=outcome.provider_id,
            ),
            req,
        )
        return outcome

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def translate_batch(
        self,
        texts: list[str],
        *,
        source_lang: str = "auto",
        target_lang: str = "zh",
        template: str = DEFAULT_TEMPLATE,
        mode: str = "normal",
        privacy_mode: PrivacyMode | str | None = None,
        use_cache: bool = True,
        priority: Optional[list[str]] = None,
    ) -> list[DispatchResult]:
        """Translate several texts with one provider call where possible.

        Texts are joined with a unique separator and split afterwards. If the
        provider returns a different number of segments, every item is
        translated on its own through translate(); results keep input order.
        """
        options = dict(
            source_lang=source_lang,
            target_lang=target_lang,
            template=template,
            mode=mode,
            privacy_mode=privacy_mode,
            use_cache=use_cache,
            priority=priority,
        )
        results: list[Optional[DispatchResult]] = [None] * len(texts)
        pending: list[tuple[int, str, list[ProtectedSpan], str]] = []
        req = self._request(
            "\n".join(texts),
            privacy_mode=privacy_mode,
            priority=priority,
            source_lang=source_lang,
            target_lang=target_lang,
            template=template,
            mode=mode,
            use_cache=use_cache,
        )

        for i, text in enumerate(texts):
            if not text or not text.strip():
                results[i] = DispatchResult(success=True, text=text or "")
                continue
            processed, spans = self._protect(text)
            key = self.cache.make_key(processed, target_lang, template)
            cached = self._cache_get(key, req)
            if cached is not None:
                results[i] = DispatchResult(
                    success=True,
                    text=restore(cached.translated_text, spans),
                    provider_id=cached.provider_id,
                    from_cache=True,
                    source_lang=cached.source_lang_detected,
                )
            else:
                pending.append((i, processed, spans, key))

        if len(pending) > 1:
            try:
                await self._translate_joined(req, pending, results)
            except BatchShapeMismatch as e:
                logger.info("Batch split failed (%s); translating items one by one", e)
                for i, *_ in pending:
                    results[i] = None

        for i, result in enumerate(results):
            if result is None:
                results[i] = await self.translate(texts[i], **options)
        return results

    async def _translate_joined(
        self,
        req: TranslateRequest,
        pending: list[tuple[int, str, list[ProtectedSpan], str]],
        results: list[Optional[DispatchResult]],
    ) -> None:
        provider_id = self._batch_provider(req)
        if provider_id is None:
            logger.debug("No batch-capable provider; translating items one by one")
            return

        separator = unique_separator([processed for _, processed, _, _ in pending])
        joined = f"\n{separator}\n".join(processed for _, processed, _, _ in pending)
        system_prompt = (
            build_system_prompt(req.template, req.target_lang)
            + f" The input has several segments separated by lines containing only {separator}."
            " Translate each segment and keep every separator line unchanged."
        )

        async def call(provider: Provider) -> ProviderResult:
            return await provider.translate(joined, req.source_lang, req.target_lang, system_prompt)

        result = await self._invoke(provider_id, call)
        if not result.success:
            self.scheduler.record_failure(provider_id)
            logger.warning("Batch call to %s failed: %s", provider_id, result.error)
            return

        segments = split_segments(result.text, separator, expected=len(pending))
        self.scheduler.record_success(provider_id)
        for (i, processed, spans, key), segment in zip(pending, segments):
            source_lang = req.source_lang if req.source_lang != "auto" else None
            missing = self._check_placeholders(processed, segment, provider_id)
            results[i] = DispatchResult(
                success=True,
                text=restore(segment, spans),
                provider_id=provider_id,
                attempted=[provider_id],
                source_lang=source_lang,
                metadata={"missing_placeholders": missing} if missing else {},
            )
            self._cache_set(
                key,
                CacheEntry(
                    translated_text=segment,
                    source_lang_detected=source_lang or "auto",
                    provider_id=provider_id,
                ),
                req,
            )

    def _batch_provider(self, req: TranslateRequest) -> Optional[str]:
        for pid in self.candidates(req):
            if self.scheduler.should_skip(pid):
                continue
            if self.registry.descriptor(pid).supports_batch:
                return pid
        return None

    # ------------------------------------------------------------------
    # Chat and diagnostics
    # ------------------------------------------------------------------

    async def chat_completion(
        self,
        messages: list[dict],
        *,
        mode: str = "normal",
        privacy_mode: PrivacyMode | str | None = None,
        priority: Optional[list[str]] = None,
        **options,
    ) -> DispatchResult:
        """General chat through the first chat-capable provider.

        When no provider can chat, the last user message is translated
        instead, with the target language guessed from the system prompt.
        """
        req = self._request("", privacy_mode=privacy_mode, priority=priority, mode=mode)
        chat_ids = [
            pid for pid in self.candidates(req)
            if self.registry.descriptor(pid).supports_chat
        ]
        if chat_ids:
            chat_req = TranslateRequest(
                text="", mode=mode, privacy_mode=req.privacy_mode, priority=chat_ids,
            )

            async def call(provider: Provider) -> ProviderResult:
                return await provider.chat(messages, **options)

            outcome = await self._dispatch(chat_req, call)
            if outcome.success:
                return outcome
            logger.info("Chat providers failed, falling back to translation")

        system = next((m.get("content", "") for m in messages if m.get("role") == "system"), "")
        user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"), ""
        )
        return await self.translate(
            user,
            target_lang=guess_target_from_prompt(system),
            mode=mode,
            privacy_mode=req.privacy_mode,
            priority=priority,
        )

    async def test_provider(self, provider_id: str) -> ConnectionStatus:
        """Check a provider's configuration and, if complete, its connection."""
        try:
            provider = self.registry.get(provider_id)
        except UnknownProvider as e:
            return ConnectionStatus(False, str(e))
        missing = provider.missing_config()
        if missing:
            return ConnectionStatus(False, f"missing config: {', '.join(missing)}")
        try:
            return await provider.test_connection()
        except Exception as e:
            return ConnectionStatus(False, f"connection failed: {e}")

    def provider_status(self, privacy_mode: PrivacyMode | str | None = None) -> list[dict]:
        mode = PrivacyMode.parse(privacy_mode if privacy_mode is not None else self._privacy())
        status = []
        for desc in self.registry.descriptors():
            status.append({
                "id": desc.id,
                "name": desc.display_name,
                "online": desc.is_online,
                "configured": desc.configured,
                "enabled": self.registry.is_enabled(desc.id),
                "allowed": is_provider_allowed(mode, desc.is_online),
                "failures": self.scheduler.failure_count(desc.id),
                "streaming": desc.supports_streaming,
            })
        return status


def unique_separator(texts: list[str]) -> str:
    """A separator token that occurs in none of ``texts``."""
    n = 0
    while True:
        separator = BATCH_SEPARATOR.format(n=n)
        if not any(separator in text for text in texts):
            return separator
        n += 1


def split_segments(text: str, separator: str, expected: int) -> list[str]:
    """Split joined provider output back into segments.

    Raises:
        BatchShapeMismatch: if the segment count differs from ``expected``
    """
    parts = [p.strip() for p in re.split(r"\s*" + re.escape(separator) + r"\s*", text.strip())]
    if len(parts) != expected:
        raise BatchShapeMismatch(expected, len(parts))
    return parts
