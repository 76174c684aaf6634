from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional
import re

from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException

DetectorFactory.seed = 0


@dataclass
class LanguageGuess:
    """Represents a detected language code with confidence."""

    code: str
    confidence: float


_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+", re.UNICODE)
_LATIN_RANGES = ((0x0041, 0x007A), (0x00C0, 0x024F), (0x1E00, 0x1EFF))
_CYRILLIC_RANGES = ((0x0400, 0x04FF), (0x0500, 0x052F), (0x2DE0, 0x2DFF), (0xA640, 0xA69F))

# Prompt-facing names; prompts ask for a language by name, not by tag
LANGUAGE_NAMES = {
    "en": "English",
    "ru": "Russian",
    "uz": "Uzbek",
    "uz-Latn": "Uzbek (Latin script)",
    "uz-Cyrl": "Uzbek (Cyrillic script)",
    "kk": "Kazakh",
    "tr": "Turkish",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
    "it": "Italian",
    "pt": "Portuguese",
    "uk": "Ukrainian",
    "pl": "Polish",
    "ar": "Arabic",
    "zh-Cn": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
}

# Short answers are too small for a trustworthy guess
MIN_DETECTION_CHARS = 20


def normalize_language_code(code: Optional[str]) -> Optional[str]:
    """Normalize language tags to a consistent casing (for example uz-Cyrl)."""
    if not code:
        return None
    cleaned = code.replace("_", "-").strip()
    if not cleaned:
        return None
    parts = cleaned.split("-")
    base = parts[0].lower()
    script_parts = [p.title() for p in parts[1:]]
    return "-".join([base, *script_parts]) if script_parts else base


def _char_in_ranges(ch: str, ranges: tuple[tuple[int, int], ...]) -> bool:
    code_point = ord(ch)
    return any(start <= code_point <= end for start, end in ranges)


def _script_counts(text: str) -> tuple[int, int]:
    latin_count = 0
    cyrillic_count = 0
    for ch in text:
        if _char_in_ranges(ch, _CYRILLIC_RANGES):
            cyrillic_count += 1
        elif _char_in_ranges(ch, _LATIN_RANGES):
            latin_count += 1
    return latin_count, cyrillic_count


def _prepare_texts(texts: Iterable[str], max_chars: int = 4000) -> str:
    collected: list[str] = []
    total = 0
    for raw in texts:
        if not raw:
            continue
        cleaned = _URL_RE.sub(" ", str(raw))
        cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
        if not cleaned:
            continue
        if max_chars > 0 and total + len(cleaned) > max_chars:
            cleaned = cleaned[: max_chars - total]
        collected.append(cleaned)
        total += len(cleaned)
        if max_chars > 0 and total >= max_chars:
            break
    return " ".join(collected).strip()


def _refine_language(code: str, sample_text: str) -> str:
    normalized = normalize_language_code(code)
    if not normalized:
        return code
    if normalized.split("-")[0] == "uz":
        latin, cyrillic = _script_counts(sample_text)
        if cyrillic and cyrillic >= latin:
            return "uz-Cyrl"
        if latin:
            return "uz-Latn"
    return normalized


def detect_language(texts: Iterable[str], *, min_confidence: float = 0.55) -> Optional[LanguageGuess]:
    """Detect language from a collection of text fragments.

    Returns None when the text is too short or detection is below
    ``min_confidence``.
    """
    merged = _prepare_texts(texts)
    if len(merged) < MIN_DETECTION_CHARS:
        return None
    try:
        candidates = detect_langs(merged)
    except LangDetectException:
        return None
    for candidate in candidates:
        if candidate.prob >= min_confidence:
            return LanguageGuess(_refine_language(candidate.lang, merged), candidate.prob)
    return None


def language_name(code: Optional[str], fallback: str = "English") -> str:
    """Human-readable name for a language tag, used inside prompts."""
    normalized = normalize_language_code(code)
    if not normalized:
        return fallback
    if normalized in LANGUAGE_NAMES:
        return LANGUAGE_NAMES[normalized]
    return LANGUAGE_NAMES.get(normalized.split("-")[0], fallback)


def choose_feedback_language(student_answer: str, question: str, fallback: str = "English") -> str:
    """Language for grading feedback: the student's answer, else the question's."""
    for sample in (student_answer, question):
        guess = detect_language([sample])
        if guess:
            return language_name(guess.code, fallback)
    return fallback


__all__ = [
    "LanguageGuess",
    "choose_feedback_language",
    "detect_language",
    "language_name",
    "normalize_language_code",
]
