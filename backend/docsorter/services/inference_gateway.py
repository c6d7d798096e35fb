"""
Inference Gateway.

Confidence-gated, cache-first access to the inference backend. Answers are
mapped onto the same Signal shape as the heuristic extractor.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from docsorter.models.analysis import (
    AnalysisOptions,
    FieldName,
    LanguageResult,
    Signal,
    SignalSource,
)
from docsorter.services.inference_client import InferenceClient
from docsorter.services.prompts import build_metadata_prompt, parse_metadata_response
from docsorter.services.result_cache import ResultCache, make_cache_key

logger = logging.getLogger(__name__)

# Bump when the prompt changes so stale answers are not reused
PROMPT_VERSION = 1

# Only pass a language hint the detector is reasonably sure about
MIN_LANGUAGE_HINT_CONFIDENCE = 0.5

_RESPONSE_FIELDS = (
    (FieldName.type, "docType", "docTypeConfidence"),
    (FieldName.date, "date", "dateConfidence"),
    (FieldName.client_name, "clientName", "clientConfidence"),
    (FieldName.amount, "amount", "amountConfidence"),
    (FieldName.title, "title", "titleConfidence"),
)


@dataclass
class GatewayResult:
    """Signals produced by one gateway call."""

    signals: dict[FieldName, Signal] = field(default_factory=dict)
    snippets: list[str] = field(default_factory=list)
    source: SignalSource = SignalSource.ai
    usage: dict[str, Any] = field(default_factory=dict)


def signals_from_metadata(metadata: dict[str, Any], source: SignalSource) -> dict[FieldName, Signal]:
    signals = {}
    for field_name, value_key, confidence_key in _RESPONSE_FIELDS:
        value = metadata.get(value_key)
        if value is None:
            continue
        confidence = max(0.0, min(1.0, float(metadata.get(confidence_key) or 0.0)))
        signals[field_name] = Signal(field_name, value, confidence, source)
    return signals


class InferenceGateway:
    """Decides when to call the backend and remembers its answers."""

    def __init__(self, client: InferenceClient, cache: ResultCache,
                 confidence_threshold: float = 0.5, use_ai: bool = True):
        self.client = client
        self.cache = cache
        self.confidence_threshold = confidence_threshold
        self.use_ai = use_ai
        self.stats = {"calls": 0, "cache_hits": 0, "failures": 0}

    def should_invoke(self, heuristic_confidence: float, options: Optional[AnalysisOptions] = None) -> bool:
        """Gate: AI enabled and (forced, or heuristics below threshold)."""
        if not self.use_ai:
            return False
        options = options or AnalysisOptions()
        if options.force_ai:
            return True
        threshold = self.confidence_threshold if options.confidence_threshold is None else options.confidence_threshold
        return heuristic_confidence < threshold

    def cache_key(self, text: str, options: Optional[AnalysisOptions] = None) -> str:
        options = options or AnalysisOptions()
        parts = options.cache_key_parts()
        parts["model"] = parts["model"] or self.client.model
        parts["prompt_version"] = PROMPT_VERSION
        return make_cache_key(text, parts)

    def _cache_get(self, key: str) -> Optional[dict]:
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed, continuing without cache: {e}")
            return None

    def _cache_set(self, key: str, value: dict) -> None:
        try:
            self.cache.set(key, value)
        except Exception as e:
            logger.warning(f"Cache write failed, result not cached: {e}")

    async def infer(self, text: str, options: Optional[AnalysisOptions] = None,
                    language: Optional[LanguageResult] = None,
                    bypass_concurrency: bool = False) -> GatewayResult:
        """
        Get AI signals for a document, from cache when possible.

        Raises:
            GatewayError: CapacityExceeded, RetriesExhausted, MalformedResponse
                or a rejected request. Nothing is cached on failure.
        """
        options = options or AnalysisOptions()
        key = self.cache_key(text, options)

        cached = self._cache_get(key)
        if cached is not None:
            self.stats["cache_hits"] += 1
            logger.debug(f"Inference cache hit {key[:12]}")
            return GatewayResult(
                signals=signals_from_metadata(cached, SignalSource.cache),
                snippets=list(cached.get("snippets", [])),
                source=SignalSource.cache,
            )

        language_code = language_name = None
        if language is not None and language.source == SignalSource.heuristic \
                and language.confidence >= MIN_LANGUAGE_HINT_CONFIDENCE:
            language_code, language_name = language.language, language.language_name

        messages = build_metadata_prompt(text, language_code=language_code, language_name=language_name)

        self.stats["calls"] += 1
        try:
            response = await self.client.chat(
                messages,
                model=options.model,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                bypass_concurrency=bypass_concurrency,
            )
            metadata = parse_metadata_response(response["content"]).model_dump()
        except Exception:
            self.stats["failures"] += 1
            raise

        self._cache_set(key, metadata)
        return GatewayResult(
            signals=signals_from_metadata(metadata, SignalSource.ai),
            snippets=list(metadata.get("snippets", [])),
            source=SignalSource.ai,
            usage=response.get("usage", {}),
        )
