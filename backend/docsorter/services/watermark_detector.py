"""
Watermark Detector.

Finds words and short lines that repeat across page-like segments of a
document (headers, "CONFIDENTIAL" stamps, running footers) and can strip
the confident ones from the text.
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from docsorter.models.analysis import WatermarkHit
from docsorter.services.errors import DetectorError

logger = logging.getLogger(__name__)


# Applied in order; each pass splits every segment produced so far
SEGMENT_SEPARATORS = (
    re.compile(r"\f"),
    re.compile(r"\n\s*\n\s*\n"),
    re.compile(r"Page \d+", re.IGNORECASE),
    re.compile(r"---+"),
    re.compile(r"\*\*\*+"),
)

MIN_HIT_CONFIDENCE = 0.3
DEFAULT_FILTER_CONFIDENCE = 0.5

WATERMARK_TYPES = (
    ("confidentiality", ("confidential", "proprietary")),
    ("draft", ("draft", "preliminary")),
    ("copyright", ("copyright", "©")),
    ("watermark", ("watermark", "stamp")),
    ("pagination", ("page",)),
)


def normalize_token(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s]", "", text.lower())).strip()


def extract_words(text: str) -> list[str]:
    return [w for w in re.sub(r"[^\w\s]", " ", text).split() if w]


def classify_watermark_type(text: str) -> str:
    lowered = text.lower()
    for watermark_type, keywords in WATERMARK_TYPES:
        if any(keyword in lowered for keyword in keywords):
            return watermark_type
    return "unknown"


@dataclass
class _Occurrence:
    display: str
    count: int = 0
    segments: set = field(default_factory=set)


class WatermarkDetector:
    """
    Repeated-content detector.

    A candidate is flagged when it occurs at least min_occurrences times and
    appears in at least page_overlap_threshold of all segments.
    """

    def __init__(self, min_occurrences: int = 3, page_overlap_threshold: float = 0.5,
                 min_length: int = 5, max_length: int = 100,
                 filter_confidence: float = DEFAULT_FILTER_CONFIDENCE):
        # A single occurrence can never be a watermark
        self.min_occurrences = max(2, min_occurrences)
        self.page_overlap_threshold = page_overlap_threshold
        self.min_length = min_length
        self.max_length = max_length
        self.filter_confidence = filter_confidence
        self.stats = {"documents_processed": 0, "watermarks_detected": 0}

    def split_segments(self, text: str) -> list[str]:
        segments = [text or ""]
        for separator in SEGMENT_SEPARATORS:
            next_segments = []
            for segment in segments:
                next_segments.extend(p for p in separator.split(segment) if p.strip())
            segments = next_segments
        return [s for s in segments if len(s.strip()) >= self.min_length]

    def _accepts(self, normalized: str) -> bool:
        return self.min_length <= len(normalized) <= self.max_length

    def _count(self, segments: list[str]) -> dict[str, _Occurrence]:
        frequency: dict[str, _Occurrence] = {}

        def add(display: str, normalized: str, index: int) -> None:
            entry = frequency.setdefault(normalized, _Occurrence(display=display))
            entry.count += 1
            entry.segments.add(index)

        for index, segment in enumerate(segments):
            for word in extract_words(segment):
                normalized = normalize_token(word)
                if self._accepts(normalized):
                    add(word, normalized, index)

            # Whole lines catch multi-word stamps such as "Confidential Draft"
            for line in segment.splitlines():
                line = line.strip()
                normalized = normalize_token(line)
                if " " in normalized and self._accepts(normalized):
                    add(line, normalized, index)

        return frequency

    def _position(self, display: str, segments: list[str]) -> str:
        positions = []
        needle = display.lower()
        for segment in segments:
            offset = segment.lower().find(needle)
            if offset == -1:
                continue
            ratio = offset / len(segment)
            positions.append("top" if ratio < 0.2 else "bottom" if ratio > 0.8 else "middle")
        if not positions:
            return "middle"
        return Counter(positions).most_common(1)[0][0]

    def detect(self, text: str) -> list[WatermarkHit]:
        """
        Detect repeated content.

        Returns:
            Hits sorted by confidence, highest first. Empty when the text has
            fewer than two segments.

        Raises:
            DetectorError: if analysis fails unexpectedly
        """
        try:
            segments = self.split_segments(text)
            self.stats["documents_processed"] += 1
            if len(segments) < 2:
                return []

            total = len(segments)
            hits = []
            for normalized, occurrence in self._count(segments).items():
                if occurrence.count < self.min_occurrences:
                    continue
                coverage = len(occurrence.segments) / total
                if coverage < self.page_overlap_threshold:
                    continue

                confidence = (
                    min(occurrence.count / total, 1.0) * 0.4
                    + coverage * 0.4
                    + min(len(normalized) / 20, 1.0) * 0.2
                )
                if confidence < MIN_HIT_CONFIDENCE:
                    continue

                hits.append(WatermarkHit(
                    text=occurrence.display,
                    count=occurrence.count,
                    segments=len(occurrence.segments),
                    coverage=coverage,
                    confidence=confidence,
                    type=classify_watermark_type(occurrence.display),
                    position=self._position(occurrence.display, segments),
                ))
        except Exception as e:
            raise DetectorError(f"Watermark detection failed: {e}") from e

        hits.sort(key=lambda hit: hit.confidence, reverse=True)
        self.stats["watermarks_detected"] += len(hits)
        logger.debug(f"Watermark detection: {len(hits)} hits across {total} segments")
        return hits

    def filter(self, text: str, hits: list[WatermarkHit],
               min_confidence: Optional[float] = None) -> str:
        """
        Remove confident watermarks from text and collapse whitespace.

        Hits below min_confidence are left in place since repeated content
        is often legitimate.
        """
        if min_confidence is None:
            min_confidence = self.filter_confidence
        filtered = text or ""
        removable = [hit for hit in hits if hit.confidence >= min_confidence]
        # Longer phrases first so their words are removed as a unit
        for hit in sorted(removable, key=lambda h: len(h.text), reverse=True):
            pattern = re.escape(hit.text)
            if re.match(r"\w", hit.text):
                pattern = r"\b" + pattern
            if re.search(r"\w$", hit.text):
                pattern = pattern + r"\b"
            filtered = re.sub(pattern, "", filtered, flags=re.IGNORECASE)
        return re.sub(r"\s+", " ", filtered).strip()

    def overall_confidence(self, hits: list[WatermarkHit]) -> float:
        if not hits:
            return 0.0
        return sum(hit.confidence for hit in hits) / len(hits)


class NullWatermarkDetector:
    """Selected when watermark detection is disabled."""

    def __init__(self):
        self.stats = {"enabled": False}

    def detect(self, text: str) -> list[WatermarkHit]:
        return []

    def filter(self, text: str, hits: list[WatermarkHit], min_confidence: Optional[float] = None) -> str:
        return text
