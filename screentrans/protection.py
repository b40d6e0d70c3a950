"""
Protection filter for content that must survive translation untouched.

Before text is sent to a provider, substrings matching the enabled filters
(code, URLs, emails, paths, template placeholders, version strings, colors)
are swapped for placeholders such as ``<<URL_000>>``. After the provider
answers, the placeholders are replaced with the original substrings.

Design:
- Each filter has a unique prefix, so placeholders say what they hide
- Filters run in declaration order: larger structures first (code blocks
  before inline code, URLs before paths)
- User filters override built-in filters with the same name
- restore(protect(text)) == text for every input
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"<<([A-Z]+)_(\d{3,})>>")


@dataclass
class ProtectedSpan:
    """A substring taken out of the text and the placeholder standing in for it."""
    placeholder_token: str
    original_substring: str


@dataclass
class FilterRule:
    """A named regex whose matches are protected from translation."""
    name: str
    pattern: str
    prefix: str
    description: str = ""
    enabled: bool = True
    builtin: bool = False
    flags: int = 0
    _compiled: Optional[re.Pattern] = field(default=None, init=False, repr=False, compare=False)

    @property
    def compiled(self) -> re.Pattern:
        if self._compiled is None:
            self._compiled = re.compile(self.pattern, self.flags)
        return self._compiled

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "pattern": self.pattern,
            "prefix": self.prefix,
            "description": self.description,
            "enabled": self.enabled,
        }


# ============================================================================
# Built-in Filters
# ============================================================================

DEFAULT_FILTERS: tuple[FilterRule, ...] = (
    FilterRule("code_block", r"```[\s\S]*?```", "CODEBLK", "Fenced code blocks", builtin=True),
    FilterRule("inline_code", r"`[^`\n]+`", "CODE", "Inline code", builtin=True),
    FilterRule("url", r"https?://[^\s<>\"'\]）》]+", "URL", "Web addresses", builtin=True),
    FilterRule("email", r"[\w.-]+@[\w.-]+\.\w{2,}", "EMAIL", "Email addresses", builtin=True),
    FilterRule(
        "file_path", r"(?:/[\w.-]+)+/?|[A-Z]:\\[\w\\.-]+", "PATH",
        "Unix and Windows file paths", builtin=True,
    ),
    FilterRule("placeholder_curly", r"\{\{[^}]+\}\}", "VAR", "Template variables like {{name}}", builtin=True),
    FilterRule("placeholder_percent", r"%\w+%", "ENV", "Variables like %PATH%", builtin=True),
    FilterRule("html_tag", r"(?<!<)</?[a-zA-Z][^>]*>", "TAG", "HTML tags", enabled=False, builtin=True),
    FilterRule("markdown_link", r"\[([^\]]+)\]\([^)]+\)", "LINK", "Markdown links", enabled=False, builtin=True),
    FilterRule("version_number", r"v?\d+\.\d+(?:\.\d+)?(?:-[\w.]+)?", "VER", "Version numbers", builtin=True),
    FilterRule("hex_color", r"#[0-9a-fA-F]{3,8}\b", "COLOR", "Hex color codes", builtin=True),
)


def _prefix_for(name: str) -> str:
    prefix = re.sub(r"[^A-Za-z]", "", name).upper()
    return prefix or "CUSTOM"


def create_custom_filter(
    name: str,
    pattern: str,
    description: str = "",
    prefix: str | None = None,
    enabled: bool = True,
) -> FilterRule:
    """Build a user filter, rejecting empty names and invalid regexes.

    Raises:
        ValueError: if the name is empty or the pattern does not compile
    """
    if not name or not name.strip():
        raise ValueError("Filter name is required")
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValueError(f"Invalid regex for filter '{name}': {e}") from e
    return FilterRule(
        name=name.strip(),
        pattern=pattern,
        prefix=_prefix_for(prefix or name),
        description=description,
        enabled=enabled,
    )


def validate_filter(rule: FilterRule) -> list[str]:
    """Return a list of problems with a filter (empty if it is usable)."""
    problems = []
    if not rule.name:
        problems.append("missing name")
    if not rule.pattern:
        problems.append("missing pattern")
    else:
        try:
            compiled = re.compile(rule.pattern, rule.flags)
        except re.error as e:
            problems.append(f"invalid regex: {e}")
        else:
            if compiled.match(""):
                problems.append("pattern matches the empty string")
    if not re.fullmatch(r"[A-Z]+", rule.prefix or ""):
        problems.append("prefix must be uppercase letters")
    return problems


def merge_filters(
    defaults: Iterable[FilterRule],
    user_filters: Iterable[FilterRule] = (),
) -> list[FilterRule]:
    """Combine filter lists; a user filter replaces a default with the same name."""
    merged: dict[str, FilterRule] = {rule.name: rule for rule in defaults}
    for rule in user_filters:
        merged[rule.name] = rule
    return list(merged.values())


# ============================================================================
# Protection
# ============================================================================

class SpanRegistry:
    """Hands out placeholders for one piece of text.

    Placeholders that already occur literally in the source are never
    reused, so restoring cannot clobber text the user actually wrote.
    """

    def __init__(self, source: str = ""):
        self.source = source
        self.spans: list[ProtectedSpan] = []
        self._counters: dict[str, int] = {}

    def register(self, prefix: str, original: str) -> str:
        count = self._counters.get(prefix, 0)
        placeholder = f"<<{prefix}_{count:03d}>>"
        while placeholder in self.source:
            count += 1
            placeholder = f"<<{prefix}_{count:03d}>>"
        self._counters[prefix] = count + 1
        self.spans.append(ProtectedSpan(placeholder, original))
        return placeholder


class ProtectionFilter:
    """Protects and restores non-translatable substrings.

    Usage:
        pf = ProtectionFilter()
        processed, spans = pf.protect("See https://example.com")
        # processed == "See <<URL_000>>"
        pf.restore(translated, spans)
    """

    def __init__(
        self,
        custom_filters: Iterable[FilterRule] = (),
        enabled: bool = True,
        disabled: Iterable[str] = (),
    ):
        self.enabled = enabled
        disabled = set(disabled)
        rules = merge_filters(DEFAULT_FILTERS, custom_filters)
        self.rules = [
            replace(rule, enabled=False) if rule.name in disabled else rule
            for rule in rules
        ]

    @property
    def active_rules(self) -> list[FilterRule]:
        return [rule for rule in self.rules if rule.enabled]

    def protect(self, text: str) -> tuple[str, list[ProtectedSpan]]:
        """Replace protected substrings with placeholders.

        A failing filter never aborts the request: the text is returned
        unprotected instead.
        """
        if not self.enabled or not text:
            return text, []

        registry = SpanRegistry(text)
        result = text
        try:
            for rule in self.active_rules:
                result = rule.compiled.sub(
                    lambda m, prefix=rule.prefix: registry.register(prefix, m.group(0)),
                    result,
                )
        except re.error as e:
            logger.warning("Protection filter failed, sending text unprotected: %s", e)
            return text, []
        return result, registry.spans

    def restore(self, text: str, spans: list[ProtectedSpan]) -> str:
        return restore(text, spans)


def restore(text: str, spans: list[ProtectedSpan]) -> str:
    """Put original substrings back in place of their placeholders.

    Spans are restored newest first, since a later filter may have matched
    text that contains an earlier placeholder. Models sometimes insert spaces
    inside the angle brackets, so those variants are accepted too.
    """
    result = text
    for span in reversed(spans):
        if span.placeholder_token in result:
            result = result.replace(span.placeholder_token, span.original_substring)
            continue
        inner = span.placeholder_token[2:-2]
        loose = re.compile(r"<<\s*" + re.escape(inner) + r"\s*>>")
        result = loose.sub(lambda _m, s=span.original_substring: s, result)
    return result


def extract_placeholders(text: str) -> list[str]:
    return [m.group(0) for m in PLACEHOLDER_PATTERN.finditer(text)]


def validate_placeholders(processed: str, translated: str) -> list[str]:
    """Placeholders present in the protected source but lost in the translation."""
    missing = set(extract_placeholders(processed)) - set(extract_placeholders(translated))
    return sorted(missing)
