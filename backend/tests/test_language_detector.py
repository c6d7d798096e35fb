"""Tests for the language detector."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from langdetect.lang_detect_exception import LangDetectException

from docsorter.models.analysis import SignalSource
from docsorter.services.errors import DetectorError
from docsorter.services.language_detector import (
    LanguageDetector,
    NullLanguageDetector,
    rank_languages,
    to_iso_639_3,
)

ENGLISH = "The invoice is attached and the payment is due within thirty days of the date on this letter."
GERMAN = "Die Rechnung ist nicht bezahlt und wir werden sie mit der Post an Ihre Adresse senden."
FRENCH = "Le contrat est signé par les deux parties et la facture sera envoyée avec le bon de livraison."
POLISH = "Faktura została wystawiona dla naszej firmy i należy ją zapłacić w ciągu trzydziestu dni od daty otrzymania."
SWEDISH = "Fakturan ska betalas inom trettio dagar efter att den har skickats till kunden och vi tackar för ert köp."


def fake_langs(*pairs):
    return [SimpleNamespace(lang=lang, prob=prob) for lang, prob in pairs]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCodes:
    def test_maps_to_iso_639_3(self):
        assert to_iso_639_3("en") == "eng"
        assert to_iso_639_3("pl") == "pol"
        assert to_iso_639_3("zh-tw") == "cmn"

    def test_unknown_code_passes_through(self):
        assert to_iso_639_3("xx") == "xx"

    def test_chinese_variants_are_merged(self):
        with patch("docsorter.services.language_detector.detect_langs",
                   return_value=fake_langs(("zh-cn", 0.5), ("zh-tw", 0.3), ("ja", 0.2))):
            ranked = rank_languages("文本")

        assert ranked[0] == ("cmn", pytest.approx(0.8))
        assert ranked[1] == ("jpn", pytest.approx(0.2))


class TestLanguageDetector:
    def test_detects_english(self):
        result = LanguageDetector().detect(ENGLISH)

        assert result.language == "eng"
        assert result.language_name == "English"
        assert 0.0 < result.confidence <= 1.0
        assert result.source == SignalSource.heuristic
        assert result.from_cache is False

    @pytest.mark.parametrize("text, code, name", [
        (GERMAN, "deu", "German"),
        (FRENCH, "fra", "French"),
        (POLISH, "pol", "Polish"),
        (SWEDISH, "swe", "Swedish"),
    ])
    def test_detects_languages_beyond_western_europe(self, text, code, name):
        result = LanguageDetector().detect(text)

        assert result.language == code
        assert result.language_name == name
        assert result.candidates[0][0] == code

    def test_candidates_ranked_and_limited(self):
        langs = fake_langs(("nl", 0.5), ("af", 0.3), ("de", 0.1), ("en", 0.1))
        with patch("docsorter.services.language_detector.detect_langs", return_value=langs):
            result = LanguageDetector().detect("Dit is een korte zin in het Nederlands.")

        assert result.language == "nld"
        assert result.confidence == pytest.approx(0.5)
        assert [code for code, _ in result.candidates] == ["nld", "afr", "deu"]

    def test_short_text_falls_back(self):
        result = LanguageDetector(min_length=10).detect("Hi there")

        assert result.language == "eng"
        assert result.confidence == pytest.approx(0.1)
        assert result.source == SignalSource.default
        assert "too short" in result.warnings[0]

    def test_long_text_is_truncated_with_warning(self):
        with patch("docsorter.services.language_detector.detect_langs",
                   return_value=fake_langs(("en", 0.99))) as mock_detect:
            result = LanguageDetector(max_length=40).detect(ENGLISH * 3)

        assert any("truncated" in w for w in result.warnings)
        assert len(mock_detect.call_args.args[0]) == 40

    def test_text_without_letters_falls_back(self):
        result = LanguageDetector().detect("12345 67890 11111")

        assert result.language == "eng"
        assert result.source == SignalSource.default
        assert result.warnings == ("No language features found",)

    def test_library_failure_without_features_falls_back(self):
        with patch("docsorter.services.language_detector.detect_langs",
                   side_effect=LangDetectException(0, "No features in text.")):
            result = LanguageDetector().detect(ENGLISH)

        assert result.source == SignalSource.default

    def test_unexpected_failure_raises_detector_error(self):
        with patch("docsorter.services.language_detector.detect_langs", side_effect=RuntimeError("boom")):
            with pytest.raises(DetectorError):
                LanguageDetector().detect(ENGLISH)

    def test_repeat_detection_hits_cache(self):
        detector = LanguageDetector()

        first = detector.detect(ENGLISH)
        second = detector.detect(ENGLISH)

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.language == first.language
        assert second.confidence == first.confidence

    def test_cache_entries_expire(self):
        clock = FakeClock()
        detector = LanguageDetector(cache_ttl=300, clock=clock)
        detector.detect(ENGLISH)

        clock.now += 301

        assert detector.detect(ENGLISH).from_cache is False

    def test_cleanup_drops_expired_entries(self):
        clock = FakeClock()
        detector = LanguageDetector(cache_ttl=10, clock=clock)
        detector.detect(ENGLISH)
        detector.detect(GERMAN)

        clock.now += 11

        assert detector.cleanup() == 2
        assert detector.stats()["cache_size"] == 0

    def test_cache_is_bounded(self):
        detector = LanguageDetector(max_cache_size=2)
        for text in (ENGLISH, GERMAN, FRENCH):
            detector.detect(text)

        assert detector.stats()["cache_size"] == 2
        # Oldest entry was evicted
        assert detector.detect(ENGLISH).from_cache is False

    def test_stats_lists_supported_languages(self):
        supported = LanguageDetector().stats()["supported_languages"]

        assert {"eng", "pol", "swe", "cmn"} <= set(supported)

    def test_null_detector(self):
        detector = NullLanguageDetector()

        assert detector.detect(ENGLISH) is None
        assert detector.stats() == {"enabled": False}
