"""
Language Detector.

Wraps langdetect with length guards and a bounded TTL cache keyed by
content hash. Codes are reported as ISO 639-3.
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException

from docsorter.models.analysis import LanguageResult, SignalSource
from docsorter.services.errors import DetectorError

logger = logging.getLogger(__name__)

# Same text, same answer
DetectorFactory.seed = 0

# langdetect (ISO 639-1) -> ISO 639-3
ISO_639_3 = {
    "af": "afr", "ar": "ara", "bg": "bul", "bn": "ben", "ca": "cat", "cs": "ces",
    "cy": "cym", "da": "dan", "de": "deu", "el": "ell", "en": "eng", "es": "spa",
    "et": "est", "fa": "fas", "fi": "fin", "fr": "fra", "gu": "guj", "he": "heb",
    "hi": "hin", "hr": "hrv", "hu": "hun", "id": "ind", "it": "ita", "ja": "jpn",
    "kn": "kan", "ko": "kor", "lt": "lit", "lv": "lav", "mk": "mkd", "ml": "mal",
    "mr": "mar", "ne": "nep", "nl": "nld", "no": "nor", "pa": "pan", "pl": "pol",
    "pt": "por", "ro": "ron", "ru": "rus", "sk": "slk", "sl": "slv", "so": "som",
    "sq": "sqi", "sv": "swe", "sw": "swa", "ta": "tam", "te": "tel", "th": "tha",
    "tl": "tgl", "tr": "tur", "uk": "ukr", "ur": "urd", "vi": "vie",
    "zh-cn": "cmn", "zh-tw": "cmn",
}

LANGUAGE_NAMES = {
    "afr": "Afrikaans", "ara": "Arabic", "bul": "Bulgarian", "ben": "Bengali",
    "cat": "Catalan", "ces": "Czech", "cym": "Welsh", "dan": "Danish",
    "deu": "German", "ell": "Greek", "eng": "English", "spa": "Spanish",
    "est": "Estonian", "fas": "Persian", "fin": "Finnish", "fra": "French",
    "guj": "Gujarati", "heb": "Hebrew", "hin": "Hindi", "hrv": "Croatian",
    "hun": "Hungarian", "ind": "Indonesian", "ita": "Italian", "jpn": "Japanese",
    "kan": "Kannada", "kor": "Korean", "lit": "Lithuanian", "lav": "Latvian",
    "mkd": "Macedonian", "mal": "Malayalam", "mar": "Marathi", "nep": "Nepali",
    "nld": "Dutch", "nor": "Norwegian", "pan": "Punjabi", "pol": "Polish",
    "por": "Portuguese", "ron": "Romanian", "rus": "Russian", "slk": "Slovak",
    "slv": "Slovenian", "som": "Somali", "sqi": "Albanian", "swe": "Swedish",
    "swa": "Swahili", "tam": "Tamil", "tel": "Telugu", "tha": "Thai",
    "tgl": "Tagalog", "tur": "Turkish", "ukr": "Ukrainian", "urd": "Urdu",
    "vie": "Vietnamese", "cmn": "Chinese (Mandarin)",
}

DEFAULT_CONFIDENCE = 0.1
MAX_CANDIDATES = 3


def to_iso_639_3(code: str) -> str:
    return ISO_639_3.get(code, code)


def name_for(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def rank_languages(text: str) -> list[tuple[str, float]]:
    """
    Ranked (ISO 639-3 code, probability) pairs, highest first.

    Both Chinese variants collapse onto cmn, so probabilities of codes that
    map to the same language are summed.

    Raises:
        LangDetectException: the text has no usable features
    """
    ranked: dict[str, float] = {}
    for candidate in detect_langs(text):
        code = to_iso_639_3(candidate.lang)
        ranked[code] = ranked.get(code, 0.0) + candidate.prob
    return sorted(ranked.items(), key=lambda item: item[1], reverse=True)


class LanguageDetector:
    """Language identification with length guards and a TTL cache."""

    def __init__(self, min_length: int = 10, max_length: int = 10000,
                 cache_ttl: float = 300.0, max_cache_size: int = 1000,
                 fallback_language: str = "eng",
                 clock: Callable[[], float] = time.monotonic):
        self.min_length = min_length
        self.max_length = max_length
        self.cache_ttl = cache_ttl
        self.max_cache_size = max_cache_size
        self.fallback_language = fallback_language
        self._clock = clock
        self._cache: OrderedDict[str, tuple[float, LanguageResult]] = OrderedDict()
        self._lock = threading.Lock()

    def _cache_key(self, text: str) -> str:
        options = json.dumps({
            "min_length": self.min_length,
            "max_length": self.max_length,
            "fallback": self.fallback_language,
        }, sort_keys=True)
        return hashlib.sha256(f"{text}\x00{options}".encode("utf-8")).hexdigest()

    def _cache_get(self, key: str) -> Optional[LanguageResult]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, result = entry
            if self._clock() - stored_at >= self.cache_ttl:
                del self._cache[key]
                return None
            return result

    def _cache_put(self, key: str, result: LanguageResult) -> None:
        with self._lock:
            self._cache.pop(key, None)
            while len(self._cache) >= self.max_cache_size:
                # Oldest-inserted first
                self._cache.popitem(last=False)
            self._cache[key] = (self._clock(), result)

    def _fallback(self, warnings: list[str]) -> LanguageResult:
        return LanguageResult(
            language=self.fallback_language,
            language_name=name_for(self.fallback_language),
            confidence=DEFAULT_CONFIDENCE,
            candidates=(),
            warnings=tuple(warnings),
            source=SignalSource.default,
        )

    def detect(self, text: str) -> LanguageResult:
        """
        Detect the dominant language of text.

        Text shorter than min_length yields the fallback language at low
        confidence. Text longer than max_length is truncated before scoring.

        Raises:
            DetectorError: if scoring fails unexpectedly
        """
        clean = re.sub(r"\s+", " ", text or "").strip()
        key = self._cache_key(clean)

        cached = self._cache_get(key)
        if cached is not None:
            logger.debug(f"Language cache hit: {cached.language}")
            return LanguageResult(
                language=cached.language,
                language_name=cached.language_name,
                confidence=cached.confidence,
                candidates=cached.candidates,
                warnings=cached.warnings,
                from_cache=True,
                source=cached.source,
            )

        warnings: list[str] = []
        if len(clean) < self.min_length:
            warnings.append(f"Text too short for reliable detection ({len(clean)} < {self.min_length})")
            result = self._fallback(warnings)
            self._cache_put(key, result)
            return result

        sample = clean
        if len(clean) > self.max_length:
            sample = clean[:self.max_length]
            warnings.append(f"Text truncated for analysis ({len(clean)} > {self.max_length})")

        try:
            ranked = rank_languages(sample)
        except LangDetectException:
            ranked = []
        except Exception as e:
            raise DetectorError(f"Language identification failed: {e}") from e

        if not ranked:
            warnings.append("No language features found")
            result = self._fallback(warnings)
            self._cache_put(key, result)
            return result

        best_code, confidence = ranked[0]
        result = LanguageResult(
            language=best_code,
            language_name=name_for(best_code),
            confidence=min(1.0, confidence),
            candidates=tuple(ranked[:MAX_CANDIDATES]),
            warnings=tuple(warnings),
            source=SignalSource.heuristic,
        )
        self._cache_put(key, result)
        logger.debug(f"Detected language {best_code} ({confidence:.2f})")
        return result

    def cleanup(self) -> int:
        """Drop expired cache entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (stored_at, _) in self._cache.items() if now - stored_at >= self.cache_ttl]
            for key in expired:
                del self._cache[key]
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            size = len(self._cache)
        return {
            "cache_size": size,
            "max_cache_size": self.max_cache_size,
            "cache_ttl": self.cache_ttl,
            "supported_languages": sorted(set(ISO_639_3.values())),
        }


class NullLanguageDetector:
    """Selected when language detection is disabled."""

    def detect(self, text: str) -> None:
        return None

    def stats(self) -> dict:
        return {"enabled": False}
