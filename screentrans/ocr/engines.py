"""
OCR engine implementations.

Tier 1 (local, fast):
- RapidOCREngine: PP-OCR models through rapidocr-onnxruntime
- WindowsOCREngine: the Windows.Media.Ocr API via winocr (win32 only)

Tier 2 (local, heavy):
- LLMVisionEngine: a vision model behind an OpenAI-compatible endpoint

Tier 3 (cloud, need credentials, never used offline):
- OCRSpaceEngine, GoogleVisionEngine, AzureOCREngine, BaiduOCREngine
"""

from __future__ import annotations

import asyncio
import importlib.util
import io
import logging
import re
import time
from typing import Any, Optional

import aiohttp

from screentrans.errors import OcrEngineUnavailable, UnknownEngine
from screentrans.ocr.base import (
    TIER_CLOUD,
    TIER_LOCAL,
    TIER_VISION,
    EngineResult,
    OCREngine,
    to_base64,
    to_data_url,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Tier 1: local engines
# ============================================================================

class RapidOCREngine(OCREngine):
    """Local PP-OCR recognition, millisecond latency.

    Usage:
        engine = RapidOCREngine()
        await engine.init()
        result = await engine.recognize(png_bytes)
    """

    id = "rapid-ocr"
    display_name = "RapidOCR"
    description = "Local OCR based on PP-OCRv4, fast"
    tier = TIER_LOCAL
    priority = 1

    def __init__(self, config: Optional[dict[str, Any]] = None):
        super().__init__(config)
        self._ocr = None

    def is_available(self, platform: Optional[str] = None) -> bool:
        return super().is_available(platform) and (
            self._ocr is not None or importlib.util.find_spec("rapidocr_onnxruntime") is not None
        )

    async def init(self) -> None:
        if self._ocr is not None:
            return
        try:
            from rapidocr_onnxruntime import RapidOCR
        except ImportError:
            raise OcrEngineUnavailable(
                self.id, "rapidocr-onnxruntime not installed. Install with: pip install rapidocr-onnxruntime"
            )
        # Model loading takes a moment; keep it off the event loop
        loop = asyncio.get_running_loop()
        self._ocr = await loop.run_in_executor(None, RapidOCR)
        await super().init()

    def _run(self, image: bytes) -> EngineResult:
        import numpy as np
        from PIL import Image

        with Image.open(io.BytesIO(image)) as img:
            rgb = np.array(img.convert("RGB"))
        res, _ = self._ocr(rgb)
        if not res:
            return EngineResult.ok("", confidence=0.0, lines=[])

        lines = []
        scores = []
        for item in res:
            # item: (box, text, score)
            text = str(item[1]).strip()
            if not text:
                continue
            lines.append({"text": text, "box": item[0], "score": float(item[2])})
            scores.append(float(item[2]))
        confidence = sum(scores) / len(scores) if scores else 0.0
        return EngineResult.ok("\n".join(l["text"] for l in lines), confidence=confidence, lines=lines)

    async def recognize(self, image: bytes, language: str = "zh-Hans") -> EngineResult:
        await self.init()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._run, image)


class WindowsOCREngine(OCREngine):
    """Built-in Windows 10+ OCR (Windows.Media.Ocr)."""

    id = "windows-ocr"
    display_name = "Windows OCR"
    description = "System OCR on Windows 10 and later"
    tier = TIER_LOCAL
    priority = 3
    platform_restriction = "win32"

    def is_available(self, platform: Optional[str] = None) -> bool:
        return super().is_available(platform) and importlib.util.find_spec("winocr") is not None

    async def init(self) -> None:
        if not self.supports_platform():
            raise OcrEngineUnavailable(self.id, "Windows OCR is only available on Windows")
        if importlib.util.find_spec("winocr") is None:
            raise OcrEngineUnavailable(self.id, "winocr not installed. Install with: pip install winocr")
        await super().init()

    async def recognize(self, image: bytes, language: str = "zh-Hans") -> EngineResult:
        await self.init()
        import winocr
        from PIL import Image

        with Image.open(io.BytesIO(image)) as img:
            pil = img.convert("RGBA")
        result = await winocr.recognize_pil(pil, language)
        lines = [line.text for line in result.lines]
        return EngineResult.ok("\n".join(lines) or result.text, confidence=0.9, lines=lines)


# ============================================================================
# Tier 2: local vision model
# ============================================================================

VISION_SYSTEM_PROMPT = """You are an OCR engine. Extract ALL text from the image exactly as it appears.
Rules:
1. Output ONLY the extracted text, nothing else
2. Preserve the original layout and line breaks
3. Do not translate or interpret the text
4. If no text is found, output: [NO TEXT DETECTED]"""

NO_TEXT_MARKER = "[NO TEXT DETECTED]"

_VISION_PREFIX = re.compile(
    r"^(Here is the extracted text:|The text in the image is:|OCR Result:)\s*", re.IGNORECASE
)
_LANGUAGE_HINTS = {"zh-Hans": "Chinese", "zh-Hant": "Chinese", "en": "English", "ja": "Japanese", "ko": "Korean"}


class LLMVisionEngine(OCREngine):
    """Vision-capable model on a local OpenAI-compatible server (LM Studio, Ollama).

    Slower than tier 1 but handles complex layouts, handwriting and blur.
    """

    id = "llm-vision"
    display_name = "LLM Vision"
    description = "Local vision model for complex layouts, handwriting or blur"
    tier = TIER_VISION
    priority = 2
    required_config = ("endpoint",)
    default_config = {
        "endpoint": "http://localhost:1234/v1",
        "model": "",
        "timeout": 30.0,
        "max_tokens": 4096,
        "temperature": 0.1,
    }

    VISION_MODEL_HINTS = ("llava", "vision", "qwen", "vl")

    @property
    def endpoint(self) -> str:
        return str(self.config["endpoint"]).rstrip("/")

    def build_system_prompt(self, language: str) -> str:
        hint = _LANGUAGE_HINTS.get(language)
        if hint:
            return f"{VISION_SYSTEM_PROMPT}\n5. The text is likely in {hint}"
        return VISION_SYSTEM_PROMPT

    async def init(self) -> None:
        if self._initialized:
            return
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5)) as session:
                async with session.get(f"{self.endpoint}/models") as response:
                    response.raise_for_status()
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OcrEngineUnavailable(self.id, f"vision endpoint unreachable: {e}")

        models = [m.get("id", "") for m in data.get("data", [])]
        if not any(hint in m.lower() for m in models for hint in self.VISION_MODEL_HINTS):
            logger.warning("No vision model loaded at %s; load one such as Qwen-VL or LLaVA", self.endpoint)
        await super().init()

    def clean_output(self, text: str) -> str:
        cleaned = _VISION_PREFIX.sub("", (text or "").strip())
        if cleaned.startswith("```"):
            cleaned = re.sub(r"^```\w*\n?|```$", "", cleaned).strip()
        if NO_TEXT_MARKER in cleaned:
            return ""
        return cleaned

    async def recognize(self, image: bytes, language: str = "zh-Hans") -> EngineResult:
        await self.init()
        payload = {
            "messages": [
                {"role": "system", "content": self.build_system_prompt(language)},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Please extract and output all text from this image."},
                        {"type": "image_url", "image_url": {"url": to_data_url(image)}},
                    ],
                },
            ],
            "max_tokens": self.config["max_tokens"],
            "temperature": self.config["temperature"],
        }
        if self.config.get("model"):
            payload["model"] = self.config["model"]

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(f"{self.endpoint}/chat/completions", json=payload) as response:
                    if response.status != 200:
                        return EngineResult.fail(f"HTTP {response.status}")
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            return EngineResult.fail(f"network error: {e}")

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            return EngineResult.fail("malformed response")
        return EngineResult.ok(self.clean_output(content), confidence=0.95)


# ============================================================================
# Tier 3: cloud APIs
# ============================================================================

class CloudOCREngine(OCREngine):
    """Shared settings for credentialed online engines."""

    is_online = True
    tier = TIER_CLOUD
    required_config = ("api_key",)

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout)


class OCRSpaceEngine(CloudOCREngine):
    """OCR.space parse API (generous free tier)."""

    id = "ocrspace"
    display_name = "OCR.space"
    description = "Online OCR, 25000 free requests per month"
    priority = 10
    default_config = {"api_key": "", "language": "", "timeout": 30.0}

    URL = "https://api.ocr.space/parse/image"

    LANGUAGES = {
        "zh-Hans": "chs", "zh-Hant": "cht", "en": "eng", "ja": "jpn", "ko": "kor",
        "fr": "fre", "de": "ger", "es": "spa", "ru": "rus", "ar": "ara",
        "hi": "hin", "vi": "vie", "th": "tha",
    }

    async def recognize(self, image: bytes, language: str = "zh-Hans") -> EngineResult:
        form = {
            "apikey": self.config["api_key"],
            "language": self.config.get("language") or self.LANGUAGES.get(language, "chs"),
            "base64Image": to_data_url(image),
            "isOverlayRequired": "false",
            "detectOrientation": "true",
            "scale": "true",
            "OCREngine": "2",
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(self.URL, data=form) as response:
                    if response.status != 200:
                        return EngineResult.fail(f"HTTP {response.status}")
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            return EngineResult.fail(f"network error: {e}")

        if data.get("IsErroredOnProcessing"):
            message = data.get("ErrorMessage") or "processing failed"
            if isinstance(message, list):
                message = "; ".join(message)
            return EngineResult.fail(str(message))
        parsed = data.get("ParsedResults") or []
        text = "\n".join(r.get("ParsedText", "") for r in parsed)
        return EngineResult.ok(text, confidence=0.9)


class GoogleVisionEngine(CloudOCREngine):
    """Google Cloud Vision TEXT_DETECTION."""

    id = "google-vision"
    display_name = "Google Cloud Vision"
    description = "Best accuracy, 200+ languages"
    priority = 11
    default_config = {"api_key": "", "language_hints": ["zh", "en", "ja"], "timeout": 30.0}

    URL = "https://vision.googleapis.com/v1/images:annotate"

    async def recognize(self, image: bytes, language: str = "zh-Hans") -> EngineResult:
        hints = list(self.config.get("language_hints") or [])
        if language and language not in hints:
            hints.insert(0, language)
        body = {
            "requests": [{
                "image": {"content": to_base64(image)},
                "features": [{"type": "TEXT_DETECTION", "maxResults": 1}],
                "imageContext": {"languageHints": hints},
            }]
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(self.URL, params={"key": self.config["api_key"]}, json=body) as response:
                    data = await response.json(content_type=None)
                    if response.status != 200:
                        message = (data.get("error") or {}).get("message") if isinstance(data, dict) else None
                        return EngineResult.fail(message or f"HTTP {response.status}")
        except aiohttp.ClientError as e:
            return EngineResult.fail(f"network error: {e}")

        first = (data.get("responses") or [{}])[0]
        if "error" in first:
            return EngineResult.fail(first["error"].get("message", "request failed"))
        annotations = first.get("textAnnotations") or []
        text = annotations[0].get("description", "") if annotations else ""
        return EngineResult.ok(text, confidence=0.95)


class AzureOCREngine(CloudOCREngine):
    """Azure Computer Vision Read API (asynchronous, polled)."""

    id = "azure-ocr"
    display_name = "Azure OCR"
    description = "Microsoft Read API, 5000 free requests per month"
    priority = 12
    required_config = ("api_key", "endpoint")
    default_config = {
        "api_key": "",
        "endpoint": "",
        "timeout": 30.0,
        "max_polls": 10,
        "poll_interval": 1.0,
    }

    async def recognize(self, image: bytes, language: str = "zh-Hans") -> EngineResult:
        url = f"{str(self.config['endpoint']).rstrip('/')}/vision/v3.2/read/analyze"
        headers = {
            "Content-Type": "application/octet-stream",
            "Ocp-Apim-Subscription-Key": self.config["api_key"],
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(url, data=image, headers=headers) as response:
                    if response.status != 202:
                        return EngineResult.fail(f"HTTP {response.status}")
                    operation = response.headers.get("Operation-Location")
                if not operation:
                    return EngineResult.fail("missing Operation-Location header")

                poll_headers = {"Ocp-Apim-Subscription-Key": self.config["api_key"]}
                for _ in range(int(self.config["max_polls"])):
                    await asyncio.sleep(float(self.config["poll_interval"]))
                    async with session.get(operation, headers=poll_headers) as response:
                        data = await response.json(content_type=None)
                    status = data.get("status")
                    if status == "succeeded":
                        return EngineResult.ok(self.parse_read_result(data), confidence=0.9)
                    if status == "failed":
                        return EngineResult.fail("analysis failed")
        except aiohttp.ClientError as e:
            return EngineResult.fail(f"network error: {e}")
        return EngineResult.fail("timed out waiting for analysis")

    @staticmethod
    def parse_read_result(data: dict) -> str:
        pages = (data.get("analyzeResult") or {}).get("readResults") or []
        return "\n".join(line.get("text", "") for page in pages for line in page.get("lines", []))


class BaiduOCREngine(CloudOCREngine):
    """Baidu accurate OCR; strongest on Chinese text."""

    id = "baidu-ocr"
    display_name = "Baidu OCR"
    description = "Best Chinese recognition, fast inside China"
    priority = 13
    required_config = ("api_key", "secret_key")
    default_config = {"api_key": "", "secret_key": "", "timeout": 30.0}

    TOKEN_URL = "https://aip.baidubce.com/oauth/2.0/token"
    OCR_URL = "https://aip.baidubce.com/rest/2.0/ocr/v1/accurate_basic"

    # Refresh a day before the token actually expires
    TOKEN_MARGIN = 86400

    def __init__(self, config: Optional[dict[str, Any]] = None):
        super().__init__(config)
        self._token: Optional[str] = None
        self._token_expires = 0.0

    def update_config(self, **changes: Any) -> None:
        super().update_config(**changes)
        self._token = None

    async def _access_token(self, session: aiohttp.ClientSession) -> str:
        if self._token and time.time() < self._token_expires:
            return self._token
        params = {
            "grant_type": "client_credentials",
            "client_id": self.config["api_key"],
            "client_secret": self.config["secret_key"],
        }
        async with session.post(self.TOKEN_URL, params=params) as response:
            data = await response.json(content_type=None)
        if "access_token" not in data:
            raise OcrEngineUnavailable(self.id, data.get("error_description") or "could not obtain access token")
        self._token = data["access_token"]
        self._token_expires = time.time() + int(data.get("expires_in", 0)) - self.TOKEN_MARGIN
        return self._token

    async def recognize(self, image: bytes, language: str = "zh-Hans") -> EngineResult:
        form = {"image": to_base64(image), "detect_direction": "true", "paragraph": "true"}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                token = await self._access_token(session)
                async with session.post(self.OCR_URL, params={"access_token": token}, data=form) as response:
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            return EngineResult.fail(f"network error: {e}")
        except OcrEngineUnavailable as e:
            return EngineResult.fail(e.reason)

        if data.get("error_code"):
            return EngineResult.fail(f"{data.get('error_code')}: {data.get('error_msg', '')}")
        words = [item.get("words", "") for item in data.get("words_result") or []]
        return EngineResult.ok("\n".join(words), confidence=0.95)


# ============================================================================
# Built-in engines
# ============================================================================

BUILTIN_ENGINES: dict[str, type[OCREngine]] = {
    RapidOCREngine.id: RapidOCREngine,
    WindowsOCREngine.id: WindowsOCREngine,
    LLMVisionEngine.id: LLMVisionEngine,
    OCRSpaceEngine.id: OCRSpaceEngine,
    GoogleVisionEngine.id: GoogleVisionEngine,
    AzureOCREngine.id: AzureOCREngine,
    BaiduOCREngine.id: BaiduOCREngine,
}


def create_engine(engine_id: str, config: Optional[dict[str, Any]] = None) -> OCREngine:
    if engine_id not in BUILTIN_ENGINES:
        raise UnknownEngine(engine_id)
    return BUILTIN_ENGINES[engine_id](config)
