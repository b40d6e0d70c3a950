"""
OCR tier manager.

Engines are grouped into tiers by intent, not just priority number:
1. Tier 1, local and fast: handles the overwhelming majority of captures
2. Tier 2, local vision model: deep recognition for complex layouts,
   handwriting or low-quality captures
3. Tier 3, cloud APIs: last resort, needs credentials, never used offline

recognize() tries the requested (or default) engine first. On failure it
walks every other engine that is available here, allowed by the privacy
mode and, for online engines, credentialed; sorted by (tier, priority).
The first success is returned with ``fallback=True`` and its tier.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from screentrans.errors import OcrAllEnginesFailed, OcrEngineUnavailable, UnknownEngine
from screentrans.ocr.base import EngineDescriptor, EngineResult, OCREngine
from screentrans.ocr.preprocess import DEFAULT_FACTOR, DEFAULT_MIN_SIZE, MAX_FACTOR, upscale_image
from screentrans.privacy import PrivacyMode, is_ocr_engine_allowed

logger = logging.getLogger(__name__)

# Translation language code -> OCR language code
LANGUAGE_MAP = {
    "zh": "zh-Hans",
    "zh-CN": "zh-Hans",
    "zh-TW": "zh-Hant",
    "zh-HK": "zh-Hant",
    "en": "en",
    "ja": "ja",
    "ko": "ko",
    "fr": "fr",
    "de": "de",
    "es": "es",
    "ru": "ru",
    "ar": "ar",
    "hi": "hi",
    "vi": "vi",
    "th": "th",
}

DEFAULT_OCR_LANGUAGE = "zh-Hans"

# Added to an engine's own timeout before the manager gives up on it
ENGINE_TIMEOUT_GRACE = 5.0


def detect_platform() -> str:
    return sys.platform


@dataclass
class OCRResult:
    """Outcome of OCRTierManager.recognize."""
    success: bool
    text: str = ""
    confidence: float = 0.0
    engine_used: Optional[str] = None
    fallback: bool = False
    tier: Optional[int] = None
    language: Optional[str] = None
    duration_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    engines_tried: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


class OCRTierManager:
    """Registry of OCR engines with privacy gating and tiered fallback.

    Usage:
        manager = OCRTierManager([RapidOCREngine(), LLMVisionEngine()])
        await manager.init()
        result = await manager.recognize(png_bytes, source_language="ja")
    """

    def __init__(
        self,
        engines: Iterable[OCREngine] = (),
        default_engine: str = "rapid-ocr",
        privacy_mode: PrivacyMode | str | None = None,
        recognition_language: str = "auto",
        upscale_min_size: int = DEFAULT_MIN_SIZE,
        upscale_factor: float = DEFAULT_FACTOR,
        max_upscale_factor: float = MAX_FACTOR,
        platform: Optional[str] = None,
    ):
        self._engines: dict[str, OCREngine] = {}
        for engine in engines:
            self.register(engine)
        self.current_engine = default_engine
        self.privacy_mode = PrivacyMode.parse(privacy_mode)
        self.recognition_language = recognition_language
        self.upscale_min_size = upscale_min_size
        self.upscale_factor = upscale_factor
        self.max_upscale_factor = max_upscale_factor
        self.platform = platform
        self.initialized = False

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, engine: OCREngine) -> None:
        if engine.id in self._engines:
            logger.warning("OCR engine %s already registered, replacing", engine.id)
        self._engines[engine.id] = engine

    def __contains__(self, engine_id: str) -> bool:
        return engine_id in self._engines

    def ids(self) -> list[str]:
        return list(self._engines)

    def get(self, engine_id: str) -> OCREngine:
        if engine_id not in self._engines:
            raise UnknownEngine(engine_id)
        return self._engines[engine_id]

    def update_config(self, engine_id: str, config: dict[str, Any]) -> None:
        self.get(engine_id).update_config(**config)

    # ------------------------------------------------------------------
    # Platform and privacy
    # ------------------------------------------------------------------

    def detect_platform(self) -> str:
        if self.platform is None:
            self.platform = detect_platform()
            logger.debug("Detected platform: %s", self.platform)
        return self.platform

    def is_available(self, engine: OCREngine) -> bool:
        return engine.is_available(self.detect_platform())

    def is_allowed(self, engine: OCREngine) -> bool:
        return is_ocr_engine_allowed(self.privacy_mode, engine.is_online)

    def is_usable(self, engine: OCREngine) -> bool:
        """Available, privacy-permitted and, for online engines, credentialed."""
        if not self.is_available(engine) or not self.is_allowed(engine):
            return False
        return not engine.is_online or engine.configured()

    def _ordered(self, engines: Iterable[OCREngine]) -> list[OCREngine]:
        return sorted(engines, key=lambda e: (e.tier, e.priority))

    def find_allowed_engine(self) -> Optional[str]:
        candidates = [e for e in self._engines.values() if self.is_usable(e)]
        ordered = self._ordered(candidates)
        return ordered[0].id if ordered else None

    def set_privacy_mode(self, mode: PrivacyMode | str) -> None:
        """Switch privacy mode, moving the default engine if it is no longer allowed."""
        self.privacy_mode = PrivacyMode.parse(mode)
        logger.info("OCR privacy mode set to %s", self.privacy_mode.value)

        current = self._engines.get(self.current_engine)
        if current is not None and not self.is_allowed(current):
            replacement = self.find_allowed_engine()
            if replacement:
                logger.info("Switching default OCR engine to %s for %s mode", replacement, self.privacy_mode.value)
                self.current_engine = replacement
                self.initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, engine_id: Optional[str] = None) -> None:
        """Detect the platform, settle on a usable default engine and initialize it.

        An engine that fails to initialize is not fatal here; recognize()
        falls back past it.
        """
        self.detect_platform()
        if engine_id:
            self.get(engine_id)
            self.current_engine = engine_id

        current = self._engines.get(self.current_engine)
        if current is None or not self.is_usable(current):
            replacement = self.find_allowed_engine()
            if replacement is None:
                raise OcrEngineUnavailable(
                    self.current_engine, f"no OCR engine usable in {self.privacy_mode.value} mode"
                )
            if replacement != self.current_engine:
                logger.info("Default OCR engine %s not usable, using %s", self.current_engine, replacement)
            self.current_engine = replacement
            current = self._engines[replacement]

        try:
            await current.init()
        except OcrEngineUnavailable as e:
            logger.warning("%s", e)
        self.initialized = True

    async def switch_engine(self, engine_id: str) -> None:
        engine = self.get(engine_id)
        if not self.is_available(engine):
            raise OcrEngineUnavailable(engine_id, f"not available on {self.detect_platform()}")
        if not self.is_allowed(engine):
            raise OcrEngineUnavailable(engine_id, f"not allowed in {self.privacy_mode.value} mode")
        await engine.init()
        self.current_engine = engine_id
        self.initialized = True
        logger.info("Switched OCR engine to %s", engine_id)

    # ------------------------------------------------------------------
    # Recognition
    # ------------------------------------------------------------------

    def resolve_language(
        self,
        language: Optional[str] = None,
        source_language: Optional[str] = None,
    ) -> str:
        """explicit -> configured recognition language -> mapped source language -> zh-Hans"""
        if language and language != "auto":
            return language
        if self.recognition_language and self.recognition_language != "auto":
            return self.recognition_language
        if source_language and source_language != "auto":
            return LANGUAGE_MAP.get(source_language, source_language)
        return DEFAULT_OCR_LANGUAGE

    def fallback_candidates(self, exclude: Iterable[str] = ()) -> list[OCREngine]:
        excluded = set(exclude)
        candidates = []
        for engine in self._engines.values():
            if engine.id in excluded:
                continue
            if not self.is_usable(engine):
                if engine.is_online and not engine.configured():
                    logger.debug("Skipping %s: credentials not configured", engine.id)
                continue
            candidates.append(engine)
        return self._ordered(candidates)

    def _prepare(self, engine: OCREngine, image: bytes, prepared: dict[str, bytes]) -> bytes:
        if not engine.needs_preprocessing:
            return image
        if "upscaled" not in prepared:
            try:
                prepared["upscaled"] = upscale_image(
                    image, self.upscale_min_size, self.upscale_factor, self.max_upscale_factor
                )
            except Exception:
                logger.exception("Pre-processing failed, using original image")
                prepared["upscaled"] = image
        return prepared["upscaled"]

    async def _attempt(self, engine: OCREngine, image: bytes, language: str) -> EngineResult:
        try:
            if not engine.initialized:
                await engine.init()
            return await asyncio.wait_for(
                engine.recognize(image, language), engine.timeout + ENGINE_TIMEOUT_GRACE
            )
        except OcrEngineUnavailable as e:
            return EngineResult.fail(e.reason)
        except asyncio.TimeoutError:
            return EngineResult.fail("timed out")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("OCR engine %s raised", engine.id)
            return EngineResult.fail(str(e) or type(e).__name__)

    def _result(
        self,
        engine: OCREngine,
        outcome: EngineResult,
        language: str,
        started: float,
        tried: list[str],
        fallback: bool,
    ) -> OCRResult:
        return OCRResult(
            success=True,
            text=outcome.text,
            confidence=outcome.confidence,
            engine_used=engine.id,
            fallback=fallback,
            tier=engine.tier,
            language=language,
            duration_ms=int((time.monotonic() - started) * 1000),
            engines_tried=list(tried),
            metadata=outcome.metadata,
        )

    async def recognize(
        self,
        image: bytes,
        *,
        engine: Optional[str] = None,
        language: Optional[str] = None,
        source_language: Optional[str] = None,
        fallback: bool = True,
    ) -> OCRResult:
        """Recognize text in ``image``.

        Args:
            image: Encoded image bytes
            engine: Engine ID to try first (default: current engine)
            language: Explicit OCR language; 'auto' or None to resolve
            source_language: Source language of the surrounding translation
            fallback: Try other engines when the first one fails

        An unregistered ``engine`` yields a failed result with
        ``error_kind="UnknownEngine"``.
        """
        if not self.initialized:
            try:
                await self.init()
            except OcrEngineUnavailable as e:
                return OCRResult(False, error=str(e), error_kind=e.kind)

        try:
            primary = self.get(engine or self.current_engine)
        except UnknownEngine as e:
            logger.error("Cannot recognize: %s", e)
            return OCRResult(False, error=str(e), error_kind=e.kind, engines_tried=[e.engine_id])
        ocr_language = self.resolve_language(language, source_language)
        started = time.monotonic()
        prepared: dict[str, bytes] = {}
        tried: list[str] = []
        last_error: Optional[str] = None

        if not self.is_available(primary):
            last_error = f"{primary.id} not available on {self.detect_platform()}"
        elif not self.is_allowed(primary):
            last_error = f"{primary.id} not allowed in {self.privacy_mode.value} mode"
        else:
            logger.debug("Recognizing with %s (language %s)", primary.id, ocr_language)
            tried.append(primary.id)
            outcome = await self._attempt(primary, self._prepare(primary, image, prepared), ocr_language)
            if outcome.success:
                return self._result(primary, outcome, ocr_language, started, tried, fallback=False)
            last_error = outcome.error
        logger.warning("OCR engine %s failed: %s", primary.id, last_error)

        if fallback:
            for candidate in self.fallback_candidates(exclude=[primary.id]):
                logger.info("Trying fallback OCR engine %s (tier %d)", candidate.id, candidate.tier)
                tried.append(candidate.id)
                outcome = await self._attempt(candidate, self._prepare(candidate, image, prepared), ocr_language)
                if outcome.success:
                    return self._result(candidate, outcome, ocr_language, started, tried, fallback=True)
                last_error = outcome.error
                logger.warning("Fallback OCR engine %s failed: %s", candidate.id, last_error)

        error = OcrAllEnginesFailed(tried or [primary.id], last_error)
        return OCRResult(
            success=False,
            engine_used=primary.id,
            language=ocr_language,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=f"{error}: {last_error}" if last_error else str(error),
            error_kind=error.kind,
            engines_tried=error.engines,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def descriptors(self) -> list[EngineDescriptor]:
        return [e.descriptor(self.detect_platform()) for e in self._ordered(self._engines.values())]

    def engine_status(self) -> dict[str, dict[str, Any]]:
        status = {}
        for desc in self.descriptors():
            status[desc.id] = {
                "id": desc.id,
                "name": desc.display_name,
                "description": desc.description,
                "tier": desc.tier,
                "priority": desc.priority,
                "is_online": desc.is_online,
                "available": desc.available,
                "configured": desc.configured,
                "allowed_by_privacy": is_ocr_engine_allowed(self.privacy_mode, desc.is_online),
                "current": desc.id == self.current_engine,
            }
        return status

    def available_engines(self) -> list[EngineDescriptor]:
        return [
            d for d in self.descriptors()
            if d.available and is_ocr_engine_allowed(self.privacy_mode, d.is_online)
        ]


def create_default_manager(
    engine_configs: Optional[dict[str, dict[str, Any]]] = None,
    key_manager=None,
    **options: Any,
) -> OCRTierManager:
    """Manager with every built-in engine, credentials filled from ``key_manager``."""
    from screentrans.ocr.engines import BUILTIN_ENGINES

    engine_configs = engine_configs or {}
    engines = []
    for engine_id, cls in BUILTIN_ENGINES.items():
        config = dict(engine_configs.get(engine_id, {}))
        if key_manager is not None:
            config = key_manager.fill_config(engine_id, config)
        engines.append(cls(config))
    return OCRTierManager(engines, **options)
