"""
Lightweight text heuristics used around provider calls.

- detect_language: script-based guess of the source language
- should_translate_text: filters out text not worth a provider call
- clean_translation_output: strips labels and quotes models like to add
- clean_text: normalizes OCR output
"""

from __future__ import annotations

import re

_SCRIPT_PATTERNS = (
    ("zh", re.compile(r"[\u4e00-\u9fa5]")),
    ("ja", re.compile(r"[\u3040-\u30ff]")),
    ("ko", re.compile(r"[\uac00-\ud7af]")),
    ("ar", re.compile(r"[\u0600-\u06ff]")),
    ("ru", re.compile(r"[\u0400-\u04ff]")),
    ("th", re.compile(r"[\u0e00-\u0e7f]")),
)


def detect_language(text: str) -> str:
    """Guess the language of ``text`` from the scripts it contains.

    Kana wins over CJK ideographs, since Japanese text mixes both.
    Returns "auto" for empty input and "en" when no script matches.
    """
    if not text or not text.strip():
        return "auto"

    counts = {lang: len(p.findall(text)) for lang, p in _SCRIPT_PATTERNS}
    if counts["ja"] > 0:
        return "ja"
    lang, count = max(counts.items(), key=lambda kv: kv[1])
    if count > 0:
        return lang
    return "en"


_NOT_WORTH = re.compile(r"^[\d\s\W_]+$", re.UNICODE)
_TRANSLATION_MARK = re.compile(r"^译[：:]")


def should_translate_text(text: str) -> bool:
    """Whether ``text`` deserves a provider call.

    Rejects empty or whitespace-only text, pure digits/punctuation/symbols,
    our own "译:" output echoed back, and Latin-only text with fewer than
    three letters.
    """
    if not text:
        return False
    stripped = text.strip()
    if len(stripped) < 2:
        return False
    if _NOT_WORTH.match(stripped):
        return False
    if _TRANSLATION_MARK.match(stripped):
        return False
    if detect_language(stripped) == "en":
        letters = re.findall(r"[A-Za-z]", stripped)
        if len(letters) < 3:
            return False
    return True


_OUTPUT_PREFIX = re.compile(
    r"^\s*(?:翻译|译文|Translation|Translated text|Here is the translation)\s*[：:]\s*",
    re.IGNORECASE,
)
_QUOTES = "\"'“”‘’「」『』"
_TRAILING_NOTE = re.compile(r"\s*[（(](?:注|Note|Translator'?s note)[^）)]*[）)]\s*$", re.IGNORECASE)


def clean_translation_output(output: str, source: str | None = None) -> str:
    """Strip labels, wrapping quotes and trailing notes from model output.

    Returns an empty string when what is left is just the source text.
    """
    if not output:
        return ""
    cleaned = output.strip()
    cleaned = _OUTPUT_PREFIX.sub("", cleaned, count=1)
    cleaned = _TRAILING_NOTE.sub("", cleaned)
    if len(cleaned) >= 2 and cleaned[0] in _QUOTES and cleaned[-1] in _QUOTES:
        cleaned = cleaned[1:-1]
    cleaned = cleaned.strip()
    if source is not None and cleaned == source.strip():
        return ""
    return cleaned


def clean_text(text: str) -> str:
    """Normalize recognized text: CRLF, runs of spaces, blank-line runs."""
    if not text:
        return ""
    result = text.replace("\r\n", "\n").replace("\r", "\n")
    result = re.sub(r"[ \t]+", " ", result)
    result = re.sub(r"\n{3,}", "\n\n", result)
    return result.strip()
