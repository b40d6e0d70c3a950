"""
screentrans: translation & recognition dispatch engine for screen translation.

Turns text, screenshots and clipboard selections into translated output by
routing them through interchangeable backends:
1. Translation providers (local LLM endpoints, OpenAI, DeepL, ...)
2. OCR engines grouped into tiers (local fast, local vision model, cloud)
3. A two-tier cache and a protection filter around every provider call

License: MIT
"""

__version__ = "0.1.0"

from screentrans.context import EngineContext
from screentrans.pipeline import PipelineOrchestrator, PipelineResult
from screentrans.privacy import PrivacyMode
from screentrans.translate.dispatcher import DispatchResult, TranslationDispatcher

__all__ = [
    "EngineContext",
    "PipelineOrchestrator",
    "PipelineResult",
    "PrivacyMode",
    "DispatchResult",
    "TranslationDispatcher",
]
