"""
Tests for the OCR tier.

Tests cover:
- Tiered fallback order and reporting
- Privacy gating, credentials and platform restrictions
- Recognition language resolution
- Engine initialization and switching
- Image fingerprinting and upscaling
- Response parsing helpers of the built-in engines
"""

import asyncio
import io

import pytest
from PIL import Image

from fakes import FakeEngine, png_bytes
from screentrans.errors import OcrEngineUnavailable, UnknownEngine
from screentrans.ocr.base import EngineResult, image_mime, to_data_url
from screentrans.ocr.engines import (
    BUILTIN_ENGINES,
    NO_TEXT_MARKER,
    AzureOCREngine,
    BaiduOCREngine,
    LLMVisionEngine,
    WindowsOCREngine,
    create_engine,
)
from screentrans.ocr.manager import OCRTierManager, create_default_manager
from screentrans.ocr.preprocess import image_fingerprint, upscale_factor, upscale_image


def run(coro):
    return asyncio.run(coro)


def manager(*engines, default="a", privacy=None, **options):
    return OCRTierManager(engines, default_engine=default, privacy_mode=privacy, platform="linux", **options)


class ExplodingEngine(FakeEngine):
    async def recognize(self, image, language="zh-Hans"):
        self.calls += 1
        raise RuntimeError("model crashed")


class TestFallback:
    """Test tiered fallback."""

    def test_primary_success(self):
        """Test a working primary engine is used without fallback."""
        a = FakeEngine("a", tier=1)
        b = FakeEngine("b", tier=2)
        result = run(manager(a, b).recognize(png_bytes()))

        assert result.success
        assert result.text == "Hello world"
        assert result.engine_used == "a"
        assert result.fallback is False
        assert result.tier == 1
        assert b.calls == 0

    def test_falls_back_by_tier(self):
        """Test a failing tier 1 engine hands over to tier 2, and tier 3 is not reached."""
        a = FakeEngine("a", tier=1, fail=True)
        c = FakeEngine("c", tier=3, is_online=True)
        b = FakeEngine("b", tier=2)
        result = run(manager(a, c, b).recognize(png_bytes()))

        assert result.success
        assert result.engine_used == "b"
        assert result.fallback is True
        assert result.tier == 2
        assert result.engines_tried == ["a", "b"]
        assert c.calls == 0

    def test_priority_orders_within_tier(self):
        """Test engines in the same tier are tried by priority."""
        a = FakeEngine("a", tier=1, fail=True)
        late = FakeEngine("late", tier=2, priority=5)
        early = FakeEngine("early", tier=2, priority=1)
        result = run(manager(a, late, early).recognize(png_bytes()))

        assert result.engine_used == "early"
        assert late.calls == 0

    def test_all_engines_fail(self):
        """Test the error names every engine tried."""
        a = FakeEngine("a", fail=True)
        b = FakeEngine("b", tier=2, fail=True)
        result = run(manager(a, b).recognize(png_bytes()))

        assert not result.success
        assert result.error_kind == "OcrAllEnginesFailed"
        assert result.engines_tried == ["a", "b"]
        assert "b failed" in result.error

    def test_fallback_disabled(self):
        """Test fallback=False only tries the requested engine."""
        a = FakeEngine("a", fail=True)
        b = FakeEngine("b", tier=2)
        result = run(manager(a, b).recognize(png_bytes(), fallback=False))

        assert not result.success
        assert b.calls == 0

    def test_raising_engine_is_a_failure(self):
        """Test an engine exception becomes a failed attempt."""
        a = ExplodingEngine("a")
        b = FakeEngine("b", tier=2)
        result = run(manager(a, b).recognize(png_bytes()))

        assert result.engine_used == "b"
        assert a.calls == 1

    def test_explicit_engine(self):
        """Test a requested engine is tried before the default."""
        a = FakeEngine("a", text="from a")
        b = FakeEngine("b", tier=2, text="from b")
        result = run(manager(a, b).recognize(png_bytes(), engine="b"))

        assert result.text == "from b"
        assert a.calls == 0

    def test_unknown_engine_fails(self):
        """Test an unknown engine ID is a failed result, not a fallback."""
        a = FakeEngine("a")
        result = run(manager(a).recognize(png_bytes(), engine="nope"))

        assert not result.success
        assert result.error_kind == "UnknownEngine"
        assert "nope" in result.error
        assert a.calls == 0

    def test_unknown_engine_lookup_raises(self):
        """Test direct lookup of an unknown engine raises."""
        with pytest.raises(UnknownEngine):
            manager(FakeEngine("a")).get("nope")

    def test_preprocessing_error_uses_original(self, monkeypatch):
        """Test an unexpected upscaling error falls back to the original image."""
        import screentrans.ocr.manager as manager_module

        def broken(*args, **kwargs):
            raise RuntimeError("codec crashed")

        monkeypatch.setattr(manager_module, "upscale_image", broken)
        a = FakeEngine("a")
        image = png_bytes(50, 50)
        result = run(manager(a).recognize(image))

        assert result.success
        assert a.calls == 1


class TestGating:
    """Test privacy, credential and platform gating."""

    def test_offline_excludes_online_fallback(self):
        """Test offline mode never reaches a cloud engine."""
        a = FakeEngine("a", fail=True)
        cloud = FakeEngine("cloud", tier=3, is_online=True)
        result = run(manager(a, cloud, privacy="offline").recognize(png_bytes()))

        assert not result.success
        assert cloud.calls == 0

    def test_unconfigured_cloud_engine_skipped(self):
        """Test an online engine without credentials is not tried."""
        a = FakeEngine("a", fail=True)
        cloud = FakeEngine("cloud", tier=3, is_online=True, configured=False)
        result = run(manager(a, cloud).recognize(png_bytes()))

        assert not result.success
        assert cloud.calls == 0
        assert result.engines_tried == ["a"]

    def test_platform_restricted_engine_skipped(self):
        """Test a win32-only engine is unavailable on linux."""
        windows = FakeEngine("windows", platform="win32")
        b = FakeEngine("b", tier=2)
        result = run(manager(windows, b, default="windows").recognize(png_bytes(), engine="windows"))

        assert result.engine_used == "b"
        assert windows.calls == 0

    def test_privacy_switch_moves_default_engine(self):
        """Test switching to offline replaces an online default engine."""
        local = FakeEngine("local", tier=1)
        cloud = FakeEngine("cloud", tier=3, is_online=True)
        mgr = manager(local, cloud, default="cloud")

        mgr.set_privacy_mode("offline")

        assert mgr.current_engine == "local"

    def test_init_without_usable_engine(self):
        """Test init fails when the privacy mode rules out every engine."""
        cloud = FakeEngine("cloud", tier=3, is_online=True)
        mgr = manager(cloud, default="cloud", privacy="offline")

        with pytest.raises(OcrEngineUnavailable):
            run(mgr.init())

        result = run(mgr.recognize(png_bytes()))
        assert not result.success
        assert result.error_kind == "OcrEngineUnavailable"

    def test_init_picks_best_usable_engine(self):
        """Test an unregistered default is replaced by the best usable engine."""
        b = FakeEngine("b", tier=2)
        a = FakeEngine("a", tier=1)
        mgr = manager(b, a, default="missing")

        run(mgr.init())

        assert mgr.current_engine == "a"
        assert mgr.initialized

    def test_switch_engine_rejects_disallowed(self):
        """Test switching to an online engine in offline mode fails."""
        mgr = manager(FakeEngine("a"), FakeEngine("cloud", is_online=True), privacy="offline")

        with pytest.raises(OcrEngineUnavailable):
            run(mgr.switch_engine("cloud"))

    def test_engine_status(self):
        """Test status rows carry availability and privacy flags."""
        mgr = manager(FakeEngine("a"), FakeEngine("cloud", tier=3, is_online=True), privacy="offline")
        status = mgr.engine_status()

        assert status["a"]["current"] is True
        assert status["a"]["allowed_by_privacy"] is True
        assert status["cloud"]["allowed_by_privacy"] is False
        assert [d.id for d in mgr.available_engines()] == ["a"]


class TestLanguage:
    """Test OCR language resolution."""

    def test_explicit_language_wins(self):
        """Test an explicit language overrides everything."""
        mgr = manager(FakeEngine("a"), recognition_language="ko")
        assert mgr.resolve_language("ja", "en") == "ja"

    def test_configured_language(self):
        """Test the configured recognition language beats the source language."""
        mgr = manager(FakeEngine("a"), recognition_language="ko")
        assert mgr.resolve_language(None, "en") == "ko"

    def test_mapped_source_language(self):
        """Test translation source codes are mapped to OCR codes."""
        mgr = manager(FakeEngine("a"))
        assert mgr.resolve_language("auto", "zh-TW") == "zh-Hant"
        assert mgr.resolve_language(None, "ja") == "ja"

    def test_default_language(self):
        """Test the default is simplified Chinese."""
        mgr = manager(FakeEngine("a"))
        assert mgr.resolve_language() == "zh-Hans"

    def test_language_reaches_engine(self):
        """Test the resolved language is passed to the engine."""
        a = FakeEngine("a")
        run(manager(a).recognize(png_bytes(), source_language="en"))
        assert a.languages == ["en"]


class TestPreprocess:
    """Test fingerprints and upscaling."""

    def test_fingerprint_stable(self):
        """Test identical bytes give identical fingerprints."""
        data = png_bytes(320, 240)
        assert image_fingerprint(data) == image_fingerprint(bytes(data))

    def test_fingerprint_changes(self):
        """Test different images give different fingerprints."""
        assert image_fingerprint(png_bytes(color=(0, 0, 0))) != image_fingerprint(png_bytes(color=(255, 0, 0)))
        assert image_fingerprint(b"abc") != image_fingerprint(b"abcd")

    def test_upscale_factor(self):
        """Test the factor grows with smaller images and is capped."""
        assert upscale_factor(400, 400) == 1.0
        assert upscale_factor(500, 200) == 2.0
        assert upscale_factor(100, 400) == 3.0
        assert upscale_factor(20, 20) == 3.0

    def test_upscale_small_image(self):
        """Test a small capture is enlarged."""
        upscaled = upscale_image(png_bytes(100, 150))
        with Image.open(io.BytesIO(upscaled)) as img:
            assert img.size == (300, 450)

    def test_large_image_untouched(self):
        """Test a large capture is returned as-is."""
        data = png_bytes(400, 300)
        assert upscale_image(data) is data

    def test_invalid_image_returned_unchanged(self):
        """Test undecodable bytes are passed through."""
        assert upscale_image(b"not an image") == b"not an image"


class TestEngines:
    """Test built-in engine helpers."""

    def test_builtin_registry(self):
        """Test every tier is represented."""
        tiers = {cls.tier for cls in BUILTIN_ENGINES.values()}
        assert tiers == {1, 2, 3}
        assert "rapid-ocr" in BUILTIN_ENGINES

    def test_create_engine_unknown(self):
        """Test unknown IDs raise UnknownEngine."""
        with pytest.raises(UnknownEngine):
            create_engine("nope")

    def test_windows_engine_platform(self):
        """Test the Windows engine is only available on win32."""
        assert not WindowsOCREngine().is_available("linux")

    def test_cloud_engines_need_credentials(self):
        """Test cloud engines report missing keys."""
        assert not BaiduOCREngine({"api_key": "k"}).configured()
        assert BaiduOCREngine({"api_key": "k", "secret_key": "s"}).configured()
        assert "endpoint" in AzureOCREngine({"api_key": "k"}).missing_config()

    def test_azure_read_result(self):
        """Test Azure read results are joined line by line."""
        data = {"analyzeResult": {"readResults": [
            {"lines": [{"text": "Hello"}, {"text": "world"}]},
            {"lines": [{"text": "page two"}]},
        ]}}
        assert AzureOCREngine.parse_read_result(data) == "Hello\nworld\npage two"
        assert AzureOCREngine.parse_read_result({}) == ""

    def test_vision_no_text_marker(self):
        """Test the vision engine maps its no-text marker to empty output."""
        engine = LLMVisionEngine()
        assert engine.clean_output(NO_TEXT_MARKER) == ""
        assert engine.clean_output("```\nHello\n```") == "Hello"

    def test_engine_result_cleans_text(self):
        """Test recognized text is normalized."""
        result = EngineResult.ok("Hello   world\r\n\n\n\nBye")
        assert result.text == "Hello world\n\nBye"

    def test_image_mime(self):
        """Test image types are sniffed from magic bytes."""
        assert image_mime(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
        assert image_mime(png_bytes(10, 10)) == "image/png"
        assert to_data_url(b"\xff\xd8\xff").startswith("data:image/jpeg;base64,")

    def test_default_manager_fills_credentials(self, tmp_path, monkeypatch):
        """Test the default manager pulls engine keys from the key manager."""
        from screentrans.keys import KeyManager

        monkeypatch.setenv("OCRSPACE_API_KEY", "space-key")
        mgr = create_default_manager(key_manager=KeyManager(tmp_path / "keys.json", use_keyring=False))

        assert mgr.get("ocrspace").configured()
        assert set(mgr.ids()) == set(BUILTIN_ENGINES)
