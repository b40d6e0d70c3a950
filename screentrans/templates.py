"""
Translation prompt templates and language names.

Each template carries a system instruction with a ``{target_lang}`` slot that
is filled with a human-readable language name before a provider is called.
"""

from __future__ import annotations

from dataclasses import dataclass

LANGUAGE_NAMES = {
    "zh": "Chinese (Simplified)",
    "zh-TW": "Chinese (Traditional)",
    "en": "English",
    "ja": "Japanese",
    "ko": "Korean",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "ru": "Russian",
    "pt": "Portuguese",
    "it": "Italian",
    "ar": "Arabic",
    "hi": "Hindi",
    "th": "Thai",
    "vi": "Vietnamese",
}

AUTO_LANGUAGE = "the same language as the source"

_PRESERVE = (
    "Keep every placeholder of the form <<NAME_000>> exactly as it appears. "
    "Output only the translation, with no explanations or notes."
)


@dataclass(frozen=True)
class Template:
    id: str
    name: str
    description: str
    system_prompt: str

    def render(self, target_lang: str) -> str:
        return self.system_prompt.format(target_lang=language_name(target_lang))


TEMPLATES: dict[str, Template] = {
    t.id: t
    for t in (
        Template(
            "natural", "Natural", "Fluent, idiomatic translation",
            "You are a professional translator. Translate the user's text into "
            "{target_lang}. Make it read naturally, as a native speaker would write it. "
            + _PRESERVE,
        ),
        Template(
            "precise", "Precise", "Faithful, literal translation",
            "You are a precise translator. Translate the user's text into {target_lang} "
            "as faithfully as possible, keeping terminology, numbers and structure. "
            + _PRESERVE,
        ),
        Template(
            "formal", "Formal", "Formal register for business or academic text",
            "You are a translator for formal documents. Translate the user's text into "
            "{target_lang} using a formal, professional register. " + _PRESERVE,
        ),
        Template(
            "ocr", "OCR", "Tolerates recognition errors in captured text",
            "You translate text captured from the screen by OCR. The text may contain "
            "broken lines or misrecognized characters; infer the intended meaning and "
            "translate it into {target_lang}. Join lines that belong to one sentence. "
            + _PRESERVE,
        ),
        Template(
            "creative", "Creative", "Free translation for literary text",
            "You are a literary translator. Translate the user's text into {target_lang}, "
            "keeping its tone and style; you may adapt idioms freely. " + _PRESERVE,
        ),
    )
}

DEFAULT_TEMPLATE = "natural"


def language_name(code: str) -> str:
    if not code or code == "auto":
        return AUTO_LANGUAGE
    return LANGUAGE_NAMES.get(code, code)


def get_template(template_id: str | None) -> Template:
    """Look up a template, falling back to the default for unknown IDs."""
    return TEMPLATES.get(template_id or DEFAULT_TEMPLATE, TEMPLATES[DEFAULT_TEMPLATE])


def build_system_prompt(template_id: str | None, target_lang: str) -> str:
    return get_template(template_id).render(target_lang)


def guess_target_from_prompt(system_prompt: str, default: str = "zh") -> str:
    """Find which language a system prompt asks for, by language name."""
    lowered = system_prompt.lower()
    # Longest names first so "Chinese (Traditional)" wins over "Chinese".
    for code, name in sorted(LANGUAGE_NAMES.items(), key=lambda kv: -len(kv[1])):
        if name.lower() in lowered:
            return code
    if "chinese" in lowered:
        return "zh"
    return default
