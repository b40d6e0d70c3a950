"""
Tiered OCR engines.

Tier 1: local and fast (RapidOCR, Windows OCR)
Tier 2: local vision model behind an OpenAI-compatible endpoint
Tier 3: cloud OCR APIs (OCR.space, Google Vision, Azure, Baidu)
"""

from screentrans.ocr.base import EngineDescriptor, EngineResult, OCREngine
from screentrans.ocr.manager import LANGUAGE_MAP, OCRResult, OCRTierManager

__all__ = [
    "EngineDescriptor",
    "EngineResult",
    "OCREngine",
    "LANGUAGE_MAP",
    "OCRResult",
    "OCRTierManager",
]
