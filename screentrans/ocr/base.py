"""
Base OCR engine interface.

This module defines:
- Abstract OCREngine interface that every recognition backend implements
- EngineDescriptor: static metadata the tier manager sorts and filters on
- EngineResult: outcome of a single engine call

Engines take raw image bytes (PNG or JPEG) and a resolved OCR language code.
Like translation providers they report backend errors through
EngineResult.fail; the tier manager converts anything that escapes.
"""

from __future__ import annotations

import base64
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from screentrans.text import clean_text

# Tier numbers
TIER_LOCAL = 1
TIER_VISION = 2
TIER_CLOUD = 3


@dataclass
class EngineDescriptor:
    """Static metadata about an OCR engine.

    Attributes:
        id: Manager key (e.g. 'rapid-ocr', 'ocrspace')
        tier: 1 local fast, 2 local vision model, 3 cloud API
        priority: Order within the tier
        platform_restriction: sys.platform value the engine needs, or None
        configured: Whether required credentials are present
        available: Whether the engine can run here (platform, dependencies)
    """
    id: str
    display_name: str
    is_online: bool = False
    tier: int = TIER_LOCAL
    priority: int = 0
    required_config_keys: list[str] = field(default_factory=list)
    configured: bool = True
    platform_restriction: Optional[str] = None
    available: bool = True
    description: str = ""


@dataclass
class EngineResult:
    """Result of a single engine call."""
    success: bool
    text: str = ""
    confidence: float = 0.0
    error: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, text: str, confidence: float = 0.9, **metadata: Any) -> "EngineResult":
        return cls(success=True, text=clean_text(text), confidence=confidence, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "EngineResult":
        return cls(success=False, error=error, metadata=metadata)


def image_mime(data: bytes) -> str:
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def to_data_url(data: bytes) -> str:
    return f"data:{image_mime(data)};base64,{to_base64(data)}"


class OCREngine(ABC):
    """Abstract base class for all OCR engines.

    Subclasses set the class-level metadata and implement recognize().
    """

    id: ClassVar[str] = "base"
    display_name: ClassVar[str] = "Base OCR"
    description: ClassVar[str] = ""
    is_online: ClassVar[bool] = False
    tier: ClassVar[int] = TIER_LOCAL
    priority: ClassVar[int] = 0
    platform_restriction: ClassVar[Optional[str]] = None
    required_config: ClassVar[tuple[str, ...]] = ()
    default_config: ClassVar[dict[str, Any]] = {}

    def __init__(self, config: Optional[dict[str, Any]] = None):
        self.config: dict[str, Any] = {**self.default_config, **(config or {})}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def timeout(self) -> float:
        return float(self.config.get("timeout") or 30.0)

    @property
    def needs_preprocessing(self) -> bool:
        """Local engines get upscaled input; cloud services scale internally."""
        return not self.is_online

    def missing_config(self) -> list[str]:
        return [key for key in self.required_config if not self.config.get(key)]

    def configured(self) -> bool:
        return not self.missing_config()

    def update_config(self, **changes: Any) -> None:
        self.config.update(changes)

    def supports_platform(self, platform: Optional[str] = None) -> bool:
        if self.platform_restriction is None:
            return True
        return (platform or sys.platform) == self.platform_restriction

    def is_available(self, platform: Optional[str] = None) -> bool:
        """Whether the engine can run on ``platform``. Subclasses add dependency checks."""
        return self.supports_platform(platform)

    def descriptor(self, platform: Optional[str] = None) -> EngineDescriptor:
        return EngineDescriptor(
            id=self.id,
            display_name=self.display_name,
            is_online=self.is_online,
            tier=self.tier,
            priority=self.priority,
            required_config_keys=list(self.required_config),
            configured=self.configured(),
            platform_restriction=self.platform_restriction,
            available=self.is_available(platform),
            description=self.description,
        )

    async def init(self) -> None:
        """Prepare the engine (load models, check endpoints). Idempotent."""
        self._initialized = True

    @abstractmethod
    async def recognize(self, image: bytes, language: str = "zh-Hans") -> EngineResult:
        """Extract text from ``image``.

        Args:
            image: Encoded image bytes
            language: OCR language code (see manager.LANGUAGE_MAP)
        """
        pass
