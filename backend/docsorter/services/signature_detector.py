"""
Signature / Handwriting Detector.

Runs word-level OCR through the OCR worker pool and scores the transcript
for handwriting indicators: low OCR confidence, irregular word spacing,
signature phrases and lowercase-dominant text.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Optional

from PIL import Image

from docsorter.models.analysis import HandwritingVerdict, SignalSource
from docsorter.services.errors import DetectorError
from docsorter.services.ocr_pool import OCRWorkerPool

logger = logging.getLogger(__name__)


IMAGE_SUFFIXES = frozenset({".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".gif", ".webp"})

SIGNATURE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"signature", r"signed", r"sign here", r"authorized by", r"manuscript", r"cursive", r"script")
]

# Below these the verdict needs a human
DEFAULT_CONFIDENCE_THRESHOLDS = {
    "signature": 0.15,
    "handwritten": 0.25,
    "printed": 0.7,
    "mixed": 0.4,
}

TYPE_CONFIDENCE = {
    "signature": 0.8,
    "handwritten": 0.6,
    "mixed": 0.4,
    "printed": 0.8,
}

LOW_WORD_CONFIDENCE = 50  # tesseract scale 0-100
LOW_CONFIDENCE_RATIO = 0.3
REVIEW_LOW_CONFIDENCE_RATIO = 0.5


def resolve_image(source_ref: Any) -> Optional[Any]:
    """Return something OCR can read, or None if source_ref is not an image."""
    if isinstance(source_ref, Image.Image):
        return source_ref
    if isinstance(source_ref, (str, Path)):
        path = Path(source_ref)
        if path.suffix.lower() in IMAGE_SUFFIXES and path.is_file():
            return path
    return None


def words_from_ocr(data: dict) -> list[dict]:
    """Flatten image_to_data output into recognized words with boxes."""
    words = []
    texts = data.get("text", [])
    for i, raw in enumerate(texts):
        text = (raw or "").strip()
        if not text:
            continue
        try:
            conf = float(data["conf"][i])
        except (KeyError, IndexError, TypeError, ValueError):
            conf = -1.0
        if conf < 0:
            continue
        left = int(data.get("left", [0] * len(texts))[i])
        width = int(data.get("width", [0] * len(texts))[i])
        words.append({
            "text": text,
            "conf": conf,
            "x0": left,
            "x1": left + width,
            "line": (data.get("block_num", [0] * len(texts))[i], data.get("line_num", [0] * len(texts))[i]),
        })
    return words


def _spacing_irregular(words: list[dict]) -> bool:
    spacings = []
    for prev, curr in zip(words, words[1:]):
        # Gaps are only meaningful between words on the same line
        if prev["line"] == curr["line"]:
            spacings.append(curr["x0"] - prev["x1"])
    if not spacings:
        return False
    mean = sum(spacings) / len(spacings)
    variance = sum((s - mean) ** 2 for s in spacings) / len(spacings)
    return variance > mean * 0.5


class SignatureDetector:
    """Classifies OCR output as signature, handwritten, mixed or printed."""

    def __init__(self, pool: OCRWorkerPool, confidence_thresholds: Optional[dict] = None):
        self.pool = pool
        self.confidence_thresholds = {**DEFAULT_CONFIDENCE_THRESHOLDS, **(confidence_thresholds or {})}

    def score(self, words: list[dict]) -> HandwritingVerdict:
        """Score recognized words. Pure; no OCR."""
        text = " ".join(w["text"] for w in words)
        if not text.strip():
            return HandwritingVerdict(source=SignalSource.heuristic)

        total = len(words)
        low_ratio = sum(1 for w in words if w["conf"] < LOW_WORD_CONFIDENCE) / total
        irregular = _spacing_irregular(words)
        has_patterns = any(p.search(text) for p in SIGNATURE_PATTERNS)
        lower_count = len(re.findall(r"[a-z]", text))
        printed_count = len(re.findall(r"[A-Z0-9]", text))
        lowercase_dominant = lower_count > printed_count

        indicators = sum([low_ratio > LOW_CONFIDENCE_RATIO, irregular, has_patterns, lowercase_dominant])

        if has_patterns and indicators >= 2:
            verdict_type = "signature"
        elif indicators >= 2:
            verdict_type = "handwritten"
        elif indicators == 1:
            verdict_type = "mixed"
        else:
            verdict_type = "printed"

        has_handwriting = verdict_type != "printed"
        confidence = TYPE_CONFIDENCE[verdict_type]
        requires_review = has_handwriting and (
            confidence < self.confidence_thresholds[verdict_type]
            or low_ratio > REVIEW_LOW_CONFIDENCE_RATIO
        )

        return HandwritingVerdict(
            has_handwriting=has_handwriting,
            type=verdict_type,
            confidence=confidence,
            requires_manual_review=requires_review,
            indicators={
                "low_confidence_ratio": round(low_ratio, 4),
                "spacing_irregular": irregular,
                "has_signature_patterns": has_patterns,
                "lowercase_dominant": lowercase_dominant,
            },
            word_count=total,
            source=SignalSource.heuristic,
        )

    async def analyze(self, source_ref: Any) -> HandwritingVerdict:
        """
        OCR an image and score it.

        Non-image references get the default verdict without touching OCR.

        Raises:
            DetectorError: if OCR fails
        """
        image = resolve_image(source_ref)
        if image is None:
            return HandwritingVerdict()

        try:
            data = await self.pool.submit(image)
        except Exception as e:
            raise DetectorError(f"OCR failed: {e}") from e

        verdict = self.score(words_from_ocr(data))
        logger.debug(f"Handwriting verdict: {verdict.type} ({verdict.confidence:.2f}), review={verdict.requires_manual_review}")
        return verdict


class NullSignatureDetector:
    """Selected when signature detection is disabled."""

    async def analyze(self, source_ref: Any) -> HandwritingVerdict:
        return HandwritingVerdict()
