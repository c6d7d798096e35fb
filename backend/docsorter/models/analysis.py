"""
Core data model for document analysis.

Signals are produced per extraction stage and reconciled by the merge
engine into one immutable AnalysisRecord per document.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

UNCLASSIFIED = "Unclassified"


class FieldName(str, Enum):
    type = "type"
    date = "date"
    amount = "amount"
    client_name = "clientName"
    title = "title"


# Merge order; also the order fields appear in serialized records
RECORD_FIELDS = (
    FieldName.type,
    FieldName.date,
    FieldName.client_name,
    FieldName.amount,
    FieldName.title,
)


class SignalSource(str, Enum):
    heuristic = "heuristic"
    ai = "ai"
    cache = "cache"
    default = "default"


class RecordSource(str, Enum):
    regex = "regex"
    ai = "ai"
    hybrid = "hybrid"


@dataclass(frozen=True)
class DocumentText:
    """Already-extracted text of one document."""

    text: str
    source_ref: Any = None


@dataclass(frozen=True)
class AnalysisOptions:
    """Per-call engine options. None means "use the configured default"."""

    force_ai: bool = False
    confidence_threshold: Optional[float] = None
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    batch_delay_ms: Optional[int] = None

    def cache_key_parts(self) -> dict:
        """Options that change the gateway answer and therefore the cache key."""
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }


@dataclass(frozen=True)
class Signal:
    """One extracted field value with its confidence and provenance."""

    field: FieldName
    value: Any
    confidence: float
    source: SignalSource


@dataclass(frozen=True)
class WatermarkHit:
    """A token or phrase repeated across page-like segments."""

    text: str
    count: int
    segments: int
    coverage: float
    confidence: float
    type: str  # confidentiality, draft, copyright, watermark, pagination, unknown
    position: str  # top, middle, bottom

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "count": self.count,
            "segments": self.segments,
            "coverage": round(self.coverage, 4),
            "confidence": round(self.confidence, 4),
            "type": self.type,
            "position": self.position,
        }


@dataclass(frozen=True)
class HandwritingVerdict:
    """Outcome of handwriting / signature analysis."""

    has_handwriting: bool = False
    type: str = "printed"  # signature, handwritten, mixed, printed
    confidence: float = 0.0
    requires_manual_review: bool = False
    indicators: dict = field(default_factory=dict)
    word_count: int = 0
    source: SignalSource = SignalSource.default

    def to_dict(self) -> dict:
        return {
            "has_handwriting": self.has_handwriting,
            "type": self.type,
            "confidence": round(self.confidence, 4),
            "requires_manual_review": self.requires_manual_review,
            "indicators": dict(self.indicators),
            "word_count": self.word_count,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class LanguageResult:
    """Detected language with ranked candidates."""

    language: str
    language_name: str
    confidence: float
    candidates: tuple = ()
    warnings: tuple = ()
    from_cache: bool = False
    source: SignalSource = SignalSource.heuristic

    def to_dict(self) -> dict:
        return {
            "language": self.language,
            "language_name": self.language_name,
            "confidence": round(self.confidence, 4),
            "candidates": [{"language": code, "score": round(score, 4)} for code, score in self.candidates],
            "warnings": list(self.warnings),
            "from_cache": self.from_cache,
        }


@dataclass(frozen=True)
class AnalysisRecord:
    """Final per-document result. Owned by the caller after return."""

    type: str = UNCLASSIFIED
    date: Optional[str] = None
    client_name: Optional[str] = None
    amount: Optional[float] = None
    title: Optional[str] = None
    overall_confidence: float = 0.0
    field_confidences: dict = field(default_factory=dict)
    field_sources: dict = field(default_factory=dict)
    source: RecordSource = RecordSource.regex
    language: Optional[LanguageResult] = None
    watermarks: tuple = ()
    handwriting: HandwritingVerdict = field(default_factory=HandwritingVerdict)
    snippets: tuple = ()
    raw_text: str = ""
    source_ref: Any = None
    ai_invoked: bool = False
    processing_ms: int = 0

    def to_dict(self) -> dict:
        """Serialize to a plain mapping of named fields."""
        return {
            "type": self.type,
            "date": self.date,
            "clientName": self.client_name,
            "amount": self.amount,
            "title": self.title,
            "overallConfidence": round(self.overall_confidence, 4),
            "fieldConfidences": {k: round(v, 4) for k, v in self.field_confidences.items()},
            "fieldSources": {k: v.value for k, v in self.field_sources.items()},
            "source": self.source.value,
            "language": self.language.to_dict() if self.language else None,
            "watermarks": [hit.to_dict() for hit in self.watermarks],
            "handwriting": self.handwriting.to_dict(),
            "snippets": list(self.snippets),
            "rawText": self.raw_text,
            "sourceRef": None if self.source_ref is None else str(self.source_ref),
            "aiInvoked": self.ai_invoked,
            "processingMs": self.processing_ms,
        }
