"""
Merge Engine.

Reconciles heuristic and AI signals field by field and builds the final
AnalysisRecord with per-field provenance.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from docsorter.models.analysis import (
    RECORD_FIELDS,
    UNCLASSIFIED,
    AnalysisRecord,
    DocumentText,
    FieldName,
    HandwritingVerdict,
    LanguageResult,
    RecordSource,
    Signal,
    SignalSource,
    WatermarkHit,
)

logger = logging.getLogger(__name__)

AI_SOURCES = frozenset({SignalSource.ai, SignalSource.cache})


@dataclass
class MergeResult:
    """Winning signal per field and the derived summary values."""

    chosen: dict[FieldName, Signal] = field(default_factory=dict)
    overall_confidence: float = 0.0
    source: RecordSource = RecordSource.regex


def pick(heuristic: Optional[Signal], ai: Optional[Signal]) -> Optional[Signal]:
    """AI wins only with strictly higher confidence; ties stay heuristic."""
    if heuristic is None:
        return ai
    if ai is None:
        return heuristic
    return ai if ai.confidence > heuristic.confidence else heuristic


def record_source(chosen: dict[FieldName, Signal]) -> RecordSource:
    sources = {signal.source for signal in chosen.values()}
    if not sources & AI_SOURCES:
        return RecordSource.regex
    if sources <= AI_SOURCES:
        return RecordSource.ai
    return RecordSource.hybrid


def merge_signals(heuristic: dict[FieldName, Signal],
                  ai: Optional[dict[FieldName, Signal]] = None) -> MergeResult:
    """
    Pick one signal per field.

    overall_confidence is the mean confidence of the chosen signals,
    clamped to [0, 1].
    """
    ai = ai or {}
    chosen = {}
    for field_name in RECORD_FIELDS:
        winner = pick(heuristic.get(field_name), ai.get(field_name))
        if winner is not None:
            chosen[field_name] = winner

    if chosen:
        overall = sum(s.confidence for s in chosen.values()) / len(chosen)
    else:
        overall = 0.0

    return MergeResult(
        chosen=chosen,
        overall_confidence=max(0.0, min(1.0, overall)),
        source=record_source(chosen),
    )


class MergeEngine:
    """Builds AnalysisRecords."""

    def build_record(self, document: DocumentText, merged: MergeResult,
                     language: Optional[LanguageResult] = None,
                     watermarks: tuple[WatermarkHit, ...] = (),
                     handwriting: Optional[HandwritingVerdict] = None,
                     snippets: tuple[str, ...] = (),
                     ai_invoked: bool = False,
                     processing_ms: int = 0) -> AnalysisRecord:
        values: dict[FieldName, Any] = {name: s.value for name, s in merged.chosen.items()}
        amount = values.get(FieldName.amount)

        return AnalysisRecord(
            type=values.get(FieldName.type) or UNCLASSIFIED,
            date=values.get(FieldName.date),
            client_name=values.get(FieldName.client_name),
            amount=float(amount) if amount is not None else None,
            title=values.get(FieldName.title),
            overall_confidence=merged.overall_confidence,
            field_confidences={name.value: s.confidence for name, s in merged.chosen.items()},
            field_sources={name.value: s.source for name, s in merged.chosen.items()},
            source=merged.source,
            language=language,
            watermarks=tuple(watermarks),
            handwriting=handwriting or HandwritingVerdict(),
            snippets=tuple(snippets),
            raw_text=document.text or "",
            source_ref=document.source_ref,
            ai_invoked=ai_invoked,
            processing_ms=processing_ms,
        )

    def merge(self, document: DocumentText, heuristic: dict[FieldName, Signal],
              ai: Optional[dict[FieldName, Signal]] = None, **extras) -> AnalysisRecord:
        merged = merge_signals(heuristic, ai)
        logger.debug(
            f"Merged {len(merged.chosen)} fields: source={merged.source.value}, "
            f"overall={merged.overall_confidence:.2f}"
        )
        return self.build_record(document, merged, **extras)

    def fallback_record(self, document: DocumentText, processing_ms: int = 0) -> AnalysisRecord:
        """Record used when every stage failed: raw text only, Unclassified."""
        return AnalysisRecord(
            type=UNCLASSIFIED,
            overall_confidence=0.0,
            source=RecordSource.regex,
            raw_text=document.text or "",
            source_ref=document.source_ref,
            processing_ms=processing_ms,
        )
