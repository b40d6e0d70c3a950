"""
Capture -> recognize -> translate pipeline.

This module orchestrates one screen-translation cycle:
1. Capture an image (external collaborator)
2. Skip the cycle if the image fingerprint is unchanged
3. Recognize text through the OCR tier manager
4. Skip the cycle if the recognized text is unchanged
5. Surface trivial text as-is (digits, punctuation, fragments)
6. Translate through the dispatcher, flipping the target when the source
   is already in the target language

Design Philosophy:
- One cycle at a time per orchestrator (asyncio.Lock); later requests queue
- A CancelToken is checked between stages; results that arrive after a
  cancel are discarded
- A failed cycle reports one error and leaves last_good_text untouched
- The subtitle loop only ends on cancel, never on "no text" or "unchanged"
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from screentrans.config import Settings
from screentrans.context import EngineContext
from screentrans.ocr.manager import OCRResult
from screentrans.ocr.preprocess import image_fingerprint
from screentrans.text import clean_translation_output, detect_language, should_translate_text
from screentrans.translate.base import ChunkSink

logger = logging.getLogger(__name__)

Capture = Callable[[], Union[Optional[bytes], Awaitable[Optional[bytes]]]]
ResultCallback = Callable[["PipelineResult"], Union[None, Awaitable[None]]]

SUBTITLE_ENGINE = "rapid-ocr"


class PipelineState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    RECOGNIZING = "recognizing"
    TRANSLATING = "translating"
    RESULT = "result"
    ERROR = "error"
    LISTENING = "listening"


class CancelToken:
    """Cooperative abort flag shared by a caller and a running pipeline."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancel."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


@dataclass
class PipelineConfig:
    """Per-orchestrator translation options."""
    source_lang: str = "auto"
    target_lang: str = "zh"
    lock_target_lang: bool = False
    template: str = "natural"
    mode: str = "normal"
    use_cache: bool = True
    enable_fallback: bool = True
    ocr_engine: Optional[str] = None
    ocr_language: Optional[str] = None
    subtitle_interval: float = 0.5
    priority: Optional[list[str]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        t = settings.translation
        return cls(
            source_lang=t.source_lang,
            target_lang=t.target_lang,
            lock_target_lang=t.lock_target_lang,
            template=t.template,
            use_cache=t.use_cache,
            enable_fallback=t.enable_fallback,
        )


@dataclass
class PipelineResult:
    """Result of one pipeline cycle.

    ``text`` is the recognized (or given) source text, ``translated`` the
    output. Skipped cycles succeed without doing any work.
    """
    success: bool
    text: str = ""
    translated: str = ""
    skipped: bool = False
    aborted: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    provider_id: Optional[str] = None
    engine: Optional[str] = None
    from_cache: bool = False
    source_lang: Optional[str] = None
    target_lang: Optional[str] = None
    last_good_text: Optional[str] = None
    ocr: Optional[OCRResult] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class PipelineSession:
    """De-duplication memory between cycles."""
    last_image_fingerprint: Optional[str] = None
    last_recognized_text: Optional[str] = None
    last_good_text: Optional[str] = None

    def forget_inputs(self) -> None:
        self.last_image_fingerprint = None
        self.last_recognized_text = None

    def reset(self) -> None:
        self.forget_inputs()
        self.last_good_text = None


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def flip_target(target_lang: str) -> str:
    return "en" if target_lang.startswith("zh") else "zh"


class PipelineOrchestrator:
    """Runs capture/recognize/translate cycles against an EngineContext.

    Usage:
        ctx = EngineContext(settings).init()
        pipeline = PipelineOrchestrator(ctx)
        result = await pipeline.run_from_image(png_bytes)
        print(result.translated)
    """

    def __init__(
        self,
        context: EngineContext,
        config: Optional[PipelineConfig] = None,
        on_state: Optional[Callable[[PipelineState], None]] = None,
    ):
        self.context = context.init()
        self.config = config or PipelineConfig.from_settings(context.settings)
        self.on_state = on_state or (lambda state: None)
        self.session = PipelineSession()
        self.state = PipelineState.IDLE
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: PipelineState) -> None:
        self.state = state
        self.on_state(state)

    def reset(self) -> None:
        self.session.reset()
        self._set_state(PipelineState.IDLE)

    def set_mode(self, mode: str) -> None:
        """Switch between 'normal' and 'subtitle'; clears de-duplication memory."""
        if mode != self.config.mode:
            self.config.mode = mode
            self.session.reset()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _aborted(self, text: str = "") -> PipelineResult:
        logger.debug("Cycle aborted")
        self._set_state(PipelineState.IDLE)
        return PipelineResult(
            success=False, text=text, aborted=True, error="aborted",
            last_good_text=self.session.last_good_text,
        )

    def _failed(self, error: str, error_kind: Optional[str] = None, **kwargs: Any) -> PipelineResult:
        logger.warning("Cycle failed: %s", error)
        self._set_state(PipelineState.ERROR)
        result = PipelineResult(
            success=False, error=error, error_kind=error_kind,
            last_good_text=self.session.last_good_text, **kwargs,
        )
        self._set_state(PipelineState.IDLE)
        return result

    def _done(self, result: PipelineResult) -> PipelineResult:
        result.last_good_text = self.session.last_good_text
        self._set_state(PipelineState.RESULT)
        self._set_state(PipelineState.IDLE)
        return result

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def run_from_capture(
        self,
        capture: Capture,
        *,
        cancel: Optional[CancelToken] = None,
        engine: Optional[str] = None,
    ) -> PipelineResult:
        """Capture an image and run a full cycle on it.

        A user-initiated capture always runs: de-duplication memory is cleared
        first.
        """
        async with self._lock:
            self.session.forget_inputs()
            self._set_state(PipelineState.CAPTURING)
            try:
                image = await _call(capture)
            except Exception as e:
                logger.exception("Capture failed")
                return self._failed(f"capture failed: {e}", "CaptureFailed")
            if cancel is not None and cancel.cancelled:
                return self._aborted()
            if not image:
                return self._failed("capture returned no image", "CaptureFailed")
            return await self._process_image(image, cancel, engine or self.config.ocr_engine, self.config.mode)

    async def run_from_image(
        self,
        image: bytes,
        *,
        cancel: Optional[CancelToken] = None,
        engine: Optional[str] = None,
    ) -> PipelineResult:
        async with self._lock:
            return await self._process_image(image, cancel, engine or self.config.ocr_engine, self.config.mode)

    async def run_from_text(
        self,
        text: str,
        *,
        cancel: Optional[CancelToken] = None,
        on_chunk: Optional[ChunkSink] = None,
        target_lang: Optional[str] = None,
    ) -> PipelineResult:
        """Translate text that did not come from OCR (selection, clipboard)."""
        async with self._lock:
            return await self._translate_text(
                text, cancel, self.config.mode, on_chunk=on_chunk, target_lang=target_lang
            )

    async def process_subtitle_frame(
        self,
        image: bytes,
        *,
        cancel: Optional[CancelToken] = None,
    ) -> PipelineResult:
        """One subtitle cycle: fast local OCR and the subtitle provider order.

        Falls back to the configured engine when the fast local engine is not
        registered.
        """
        engine = SUBTITLE_ENGINE if SUBTITLE_ENGINE in self.context.ocr else self.config.ocr_engine
        async with self._lock:
            return await self._process_image(image, cancel, engine, "subtitle")

    async def run_subtitle_loop(
        self,
        frame_source: Capture,
        cancel: CancelToken,
        on_result: Optional[ResultCallback] = None,
        interval: Optional[float] = None,
    ) -> int:
        """Process frames until ``cancel`` is set. Returns the number of frames handled.

        Unchanged frames, empty frames and failed cycles keep the loop going;
        ``on_result`` only hears about cycles that were not skipped.
        """
        interval = self.config.subtitle_interval if interval is None else interval
        frames = 0
        logger.info("Subtitle loop started")
        while not cancel.cancelled:
            self._set_state(PipelineState.LISTENING)
            try:
                image = await _call(frame_source)
            except Exception:
                logger.exception("Frame capture failed")
                image = None

            if image and not cancel.cancelled:
                try:
                    result = await self.process_subtitle_frame(image, cancel=cancel)
                    frames += 1
                    if result.aborted:
                        break
                    if on_result is not None and not result.skipped:
                        await _call(on_result, result)
                except Exception:
                    logger.exception("Subtitle frame failed")

            if await cancel.wait(interval):
                break
        self._set_state(PipelineState.IDLE)
        logger.info("Subtitle loop stopped after %d frame(s)", frames)
        return frames

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _process_image(
        self,
        image: bytes,
        cancel: Optional[CancelToken],
        engine: Optional[str],
        mode: str,
    ) -> PipelineResult:
        try:
            return await self._recognize_and_translate(image, cancel, engine, mode)
        except Exception as e:
            logger.exception("Cycle raised")
            self.session.forget_inputs()
            return self._failed(str(e) or type(e).__name__, getattr(e, "kind", type(e).__name__))

    async def _recognize_and_translate(
        self,
        image: bytes,
        cancel: Optional[CancelToken],
        engine: Optional[str],
        mode: str,
    ) -> PipelineResult:
        fingerprint = image_fingerprint(image)
        if fingerprint == self.session.last_image_fingerprint:
            logger.debug("Image unchanged, skipping cycle")
            return PipelineResult(
                success=True, skipped=True,
                text=self.session.last_recognized_text or "",
                last_good_text=self.session.last_good_text,
            )
        self.session.last_image_fingerprint = fingerprint

        if cancel is not None and cancel.cancelled:
            return self._aborted()
        self._set_state(PipelineState.RECOGNIZING)
        ocr = await self.context.ocr.recognize(
            image,
            engine=engine,
            language=self.config.ocr_language,
            source_language=self.config.source_lang,
        )
        if cancel is not None and cancel.cancelled:
            return self._aborted()
        if not ocr.success:
            # Let the next identical frame try again
            self.session.last_image_fingerprint = None
            return self._failed(ocr.error or "recognition failed", ocr.error_kind, engine=ocr.engine_used, ocr=ocr)

        text = ocr.text.strip()
        if not text:
            self.session.last_recognized_text = ""
            return self._done(PipelineResult(success=True, engine=ocr.engine_used, ocr=ocr))

        if text == self.session.last_recognized_text:
            logger.debug("Recognized text unchanged, skipping translation")
            self._set_state(PipelineState.IDLE)
            return PipelineResult(
                success=True, skipped=True, text=text, engine=ocr.engine_used, ocr=ocr,
                last_good_text=self.session.last_good_text,
            )
        self.session.last_recognized_text = text

        result = await self._translate_text(text, cancel, mode)
        if not result.success:
            self.session.last_recognized_text = None
        result.engine = ocr.engine_used
        result.ocr = ocr
        return result

    def _resolve_target(self, source_lang: str, target_lang: str) -> str:
        if source_lang == target_lang and not self.config.lock_target_lang:
            flipped = flip_target(target_lang)
            logger.debug("Source already in %s, translating to %s instead", target_lang, flipped)
            return flipped
        return target_lang

    async def _translate_text(
        self,
        text: str,
        cancel: Optional[CancelToken],
        mode: str,
        on_chunk: Optional[ChunkSink] = None,
        target_lang: Optional[str] = None,
    ) -> PipelineResult:
        if not should_translate_text(text):
            return self._done(PipelineResult(success=True, text=text, translated=text))
        if cancel is not None and cancel.cancelled:
            return self._aborted(text)

        cfg = self.config
        source_lang = detect_language(text) if cfg.source_lang == "auto" else cfg.source_lang
        target = self._resolve_target(source_lang, target_lang or cfg.target_lang)

        self._set_state(PipelineState.TRANSLATING)
        options = dict(
            source_lang=cfg.source_lang,
            target_lang=target,
            template=cfg.template,
            mode=mode,
            use_cache=cfg.use_cache,
            enable_fallback=cfg.enable_fallback,
            priority=cfg.priority,
        )
        dispatcher = self.context.dispatcher
        if on_chunk is not None:
            outcome = await dispatcher.translate_stream(text, on_chunk, **options)
        else:
            outcome = await dispatcher.translate(text, **options)

        if cancel is not None and cancel.cancelled:
            return self._aborted(text)
        if not outcome.success:
            return self._failed(
                outcome.error or "translation failed", outcome.error_kind,
                text=text, source_lang=source_lang, target_lang=target,
            )

        translated = clean_translation_output(outcome.text, source=text) or outcome.text.strip()
        self.session.last_good_text = translated
        return self._done(PipelineResult(
            success=True,
            text=text,
            translated=translated,
            provider_id=outcome.provider_id,
            from_cache=outcome.from_cache,
            source_lang=source_lang,
            target_lang=target,
        ))
