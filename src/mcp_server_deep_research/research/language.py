"""Language detection and per-language prompt instructions."""

import re
from typing import Protocol

DEFAULT_LANGUAGE = "en"

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "ja": "Japanese",
    "zh": "Chinese",
    "ko": "Korean",
    "ru": "Russian",
    "ar": "Arabic",
    "hi": "Hindi",
    "th": "Thai",
}

# Checked in order; the first match wins.
LANGUAGE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("en", re.compile(r"^[a-zA-Z0-9\s.,?!;:'\"\-()]+$")),
    ("es", re.compile(r"¿|á|é|í|ó|ú|ñ|¡")),
    ("fr", re.compile(r"ç|à|â|é|è|ê|ë|î|ï|ô|œ|ù|û|ü|ÿ")),
    ("de", re.compile(r"ä|ö|ü|ß")),
    ("it", re.compile(r"à|è|é|ì|ò|ù")),
    ("pt", re.compile(r"ã|õ|á|é|í|ó|ú|â|ê|ô|ç")),
    ("ja", re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff\uff66-\uff9f]")),
    ("zh", re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf\U00020000-\U0002ceaf]")),
    ("ko", re.compile(r"[\uac00-\ud7af\u1100-\u11ff\u3130-\u318f\ua960-\ua97f\ud7b0-\ud7ff]")),
    ("ru", re.compile(r"[\u0400-\u04ff]")),
    ("ar", re.compile(r"[\u0600-\u06ff]")),
    ("hi", re.compile(r"[\u0900-\u097f]")),
]

THAI_PATTERN = re.compile(r"[\u0e00-\u0e7f]")

LANGUAGE_GUIDANCE: dict[str, str] = {
    "zh": "在中文和英文之间添加适当的空格来提升可读性",
    "ja": "日本語で回答する際は、専門用語には適宜英語を併記してください。",
    "ko": "한국어로 응답할 때는 전문 용어에 영어를 함께 표기해 주세요.",
    "th": "เมื่อตอบเป็นภาษาไทย กรุณาใช้คำศัพท์ที่เข้าใจง่ายและเพิ่มคำศัพท์ภาษาอังกฤษสำหรับคำศัพท์เฉพาะทาง",
}


class LanguageDetector(Protocol):
    """Strategy that maps free text to a language code."""

    def detect(self, text: str) -> str: ...


class ScriptRangeDetector:
    """Detects a language from the Unicode scripts used in the text.

    The primary locale wins when its share of characters exceeds
    ``primary_threshold``; otherwise the first matching pattern decides.
    """

    def __init__(
        self,
        primary: str = "th",
        primary_pattern: re.Pattern[str] = THAI_PATTERN,
        primary_threshold: float = 0.1,
        patterns: list[tuple[str, re.Pattern[str]]] | None = None,
        default: str = DEFAULT_LANGUAGE,
    ):
        self.primary = primary
        self.primary_pattern = primary_pattern
        self.primary_threshold = primary_threshold
        self.patterns = patterns if patterns is not None else LANGUAGE_PATTERNS
        self.default = default

    def detect(self, text: str) -> str:
        if not text:
            return self.default

        primary_count = len(self.primary_pattern.findall(text))
        if primary_count and primary_count / len(text) > self.primary_threshold:
            return self.primary

        for code, pattern in self.patterns:
            if code == self.primary:
                continue
            if pattern.search(text):
                return code

        return self.default


_default_detector: LanguageDetector = ScriptRangeDetector()


def detect_language(text: str, detector: LanguageDetector | None = None) -> str:
    """Detect the language code of ``text``, defaulting to English."""
    return (detector or _default_detector).detect(text)


def language_name(language: str) -> str:
    """Full language name for a code; names pass through unchanged."""
    return LANGUAGE_NAMES.get(language, language)


def get_language_instructions(language: str) -> str:
    """Instruction appended to prompts so the model answers in ``language``."""
    code = language
    if language not in LANGUAGE_NAMES:
        code = next((c for c, name in LANGUAGE_NAMES.items() if name.lower() == language.lower()), language)

    instructions = f"Respond in {language_name(code)}."
    guidance = LANGUAGE_GUIDANCE.get(code)
    if guidance:
        instructions += f" {guidance}"
    return instructions
