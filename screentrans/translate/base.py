"""
Base provider interface and implementations.

This module defines:
- Abstract Provider interface that every translation backend implements
- ProviderDescriptor: static metadata the registry and scheduler read
- DummyProvider for testing (echo or simple transformations, no network)

Design Philosophy:
- Providers return ProviderResult instead of raising for backend errors;
  the dispatcher converts anything that does escape into ProviderCallFailed
- Streaming and chat are optional capabilities with safe defaults
- Configuration is a plain dict validated against ``required_config``
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Optional, Union

ChunkSink = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class ProviderDescriptor:
    """Static metadata about a provider.

    Attributes:
        id: Registry key (e.g. 'local-llm', 'deepl')
        display_name: Human-readable name
        is_online: Whether the provider needs the internet
        tier: Rank group (1 local, 2 cloud LLM, 3 cloud MT)
        priority: Order within the tier
        required_config_keys: Config fields that must be non-empty
        configured: Whether the current config satisfies required_config_keys
    """
    id: str
    display_name: str
    is_online: bool = True
    tier: int = 1
    priority: int = 0
    required_config_keys: list[str] = field(default_factory=list)
    configured: bool = False
    supports_streaming: bool = False
    supports_batch: bool = False
    supports_chat: bool = False
    description: str = ""


@dataclass
class ProviderResult:
    """Result of a single provider call."""
    success: bool
    text: str = ""
    error: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, text: str, **metadata: Any) -> "ProviderResult":
        return cls(success=True, text=text, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "ProviderResult":
        return cls(success=False, error=error, metadata=metadata)


@dataclass
class ConnectionStatus:
    success: bool
    message: str = ""
    models: list[str] = field(default_factory=list)


async def emit(sink: Optional[ChunkSink], chunk: str) -> None:
    """Send a chunk to a sink that may be a plain function or a coroutine function."""
    if sink is None or not chunk:
        return
    maybe = sink(chunk)
    if maybe is not None and hasattr(maybe, "__await__"):
        await maybe


class Provider(ABC):
    """Abstract base class for all translation providers.

    Subclasses set the class-level metadata and implement translate().
    Everything else has a working default.
    """

    id: ClassVar[str] = "base"
    display_name: ClassVar[str] = "Base"
    description: ClassVar[str] = ""
    is_online: ClassVar[bool] = True
    tier: ClassVar[int] = 1
    priority: ClassVar[int] = 0
    required_config: ClassVar[tuple[str, ...]] = ()
    default_config: ClassVar[dict[str, Any]] = {}

    def __init__(self, config: Optional[dict[str, Any]] = None):
        self.config: dict[str, Any] = {**self.default_config, **(config or {})}

    @property
    def name(self) -> str:
        return self.id

    @property
    def supports_streaming(self) -> bool:
        return False

    @property
    def supports_batch(self) -> bool:
        """Whether joined multi-segment text survives a round trip."""
        return False

    @property
    def supports_chat(self) -> bool:
        return False

    @property
    def timeout(self) -> float:
        return float(self.config.get("timeout") or 30.0)

    def missing_config(self) -> list[str]:
        return [key for key in self.required_config if not self.config.get(key)]

    def configured(self) -> bool:
        return not self.missing_config()

    def update_config(self, **changes: Any) -> None:
        self.config.update(changes)

    @classmethod
    def describe(cls, configured: bool = False) -> ProviderDescriptor:
        return ProviderDescriptor(
            id=cls.id,
            display_name=cls.display_name,
            is_online=cls.is_online,
            tier=cls.tier,
            priority=cls.priority,
            required_config_keys=list(cls.required_config),
            configured=configured,
            description=cls.description,
        )

    def descriptor(self) -> ProviderDescriptor:
        """Descriptor reflecting this instance's config and capabilities."""
        desc = self.describe(configured=self.configured())
        desc.supports_streaming = self.supports_streaming
        desc.supports_batch = self.supports_batch
        desc.supports_chat = self.supports_chat
        return desc

    @abstractmethod
    async def translate(
        self,
        text: str,
        source_lang: str = "auto",
        target_lang: str = "zh",
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        """Translate ``text`` into ``target_lang``.

        Args:
            text: Source text (already protected by the dispatcher)
            source_lang: Source language code or 'auto'
            target_lang: Target language code
            system_prompt: Rendered template instruction, for LLM providers
        """
        pass

    async def translate_stream(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        on_chunk: Optional[ChunkSink],
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        """Streaming translation. Non-streaming providers emit one chunk."""
        result = await self.translate(text, source_lang, target_lang, system_prompt)
        if result.success:
            await emit(on_chunk, result.text)
        return result

    async def chat(self, messages: list[dict], **options: Any) -> ProviderResult:
        raise NotImplementedError(f"{self.id} does not support chat")

    async def test_connection(self) -> ConnectionStatus:
        missing = self.missing_config()
        if missing:
            return ConnectionStatus(False, f"missing config: {', '.join(missing)}")
        return ConnectionStatus(True, "configured")

    async def list_models(self) -> list[str]:
        return []


class DummyProvider(Provider):
    """Offline provider for tests and dry runs.

    Modes:
    - echo: return input unchanged
    - upper: uppercase the input
    - prefix: prepend the target language code, e.g. "[zh] text"
    - reverse: reverse word order
    - fail: always fail
    """

    id = "dummy"
    display_name = "Dummy"
    description = "Offline test provider"
    is_online = False
    tier = 1
    priority = 99

    def __init__(self, config: Optional[dict[str, Any]] = None, mode: str = "echo"):
        super().__init__(config)
        self.mode = self.config.get("mode", mode)
        self.calls: list[str] = []

    @property
    def supports_batch(self) -> bool:
        return True

    async def translate(
        self,
        text: str,
        source_lang: str = "auto",
        target_lang: str = "zh",
        system_prompt: Optional[str] = None,
    ) -> ProviderResult:
        self.calls.append(text)
        if self.mode == "fail":
            return ProviderResult.fail("dummy failure")
        if self.mode == "upper":
            translated = text.upper()
        elif self.mode == "prefix":
            translated = f"[{target_lang}] {text}"
        elif self.mode == "reverse":
            translated = " ".join(reversed(text.split()))
        else:
            translated = text
        return ProviderResult.ok(translated, provider=self.id)
