"""
Error taxonomy for the dispatch engine.

Provider and engine failures are caught at the dispatcher / OCR manager
boundary and converted into one of these classes. Public results carry the
class name in their ``error_kind`` field so callers can tell exhaustion
apart from "nothing was eligible".
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch engine errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class UnknownProvider(DispatchError, KeyError):
    """No provider is registered under the requested ID."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"unknown provider: {provider_id}")

    def __str__(self) -> str:
        return self.args[0]


class ProviderNotConfigured(DispatchError):
    """Required credentials or endpoint settings are missing. Never retried."""

    def __init__(self, provider_id: str, missing: list[str] | None = None):
        self.provider_id = provider_id
        self.missing = list(missing or [])
        detail = f" (missing: {', '.join(self.missing)})" if self.missing else ""
        super().__init__(f"provider '{provider_id}' is not configured{detail}")


class ProviderCallFailed(DispatchError):
    """Network, timeout or backend error from a single provider call."""

    def __init__(self, provider_id: str, message: str):
        self.provider_id = provider_id
        self.message = message
        super().__init__(f"{provider_id}: {message}")


class AllProvidersExhausted(DispatchError):
    """Every eligible provider failed or was skipped."""

    def __init__(self, attempted: list[str], last_error: str | None = None):
        self.attempted = list(attempted)
        self.last_error = last_error
        tried = ", ".join(self.attempted) or "none"
        message = f"all providers failed (tried: {tried})"
        if last_error:
            message += f"; last error: {last_error}"
        super().__init__(message)


class NoEligibleProvider(DispatchError):
    """Nothing is configured, or the privacy mode excludes every candidate."""

    def __init__(self, reason: str = "no available provider"):
        super().__init__(reason)


class BatchShapeMismatch(DispatchError):
    """Split batch output does not line up with the input items."""

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(f"batch returned {received} segments, expected {expected}")


class UnknownEngine(DispatchError, KeyError):
    def __init__(self, engine_id: str):
        self.engine_id = engine_id
        super().__init__(f"unknown OCR engine: {engine_id}")

    def __str__(self) -> str:
        return self.args[0]


class OcrEngineUnavailable(DispatchError):
    """Engine exists but cannot run here (platform, privacy mode, credentials)."""

    def __init__(self, engine_id: str, reason: str):
        self.engine_id = engine_id
        self.reason = reason
        super().__init__(f"OCR engine '{engine_id}' unavailable: {reason}")


class OcrAllEnginesFailed(DispatchError):
    def __init__(self, engines: list[str], last_error: str | None = None):
        self.engines = list(engines)
        self.last_error = last_error
        super().__init__(f"all OCR engines failed (tried: {', '.join(self.engines) or 'none'})")
