"""
Classification Engine.

Per-document pipeline:
1. Heuristic extraction (always)
2. Language detection (advisory, feeds the prompt hint)
3. Confidence gate -> inference gateway (cache first)
4. Watermark and handwriting detectors (concurrent, advisory)
5. Merge into an AnalysisRecord

Only ExtractionError from the upstream text extractor escapes. Every other
failure degrades the record instead of failing the document.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from docsorter.config import Settings
from docsorter.models.analysis import (
    AnalysisOptions,
    AnalysisRecord,
    DocumentText,
    FieldName,
    HandwritingVerdict,
    LanguageResult,
    Signal,
    SignalSource,
    UNCLASSIFIED,
    WatermarkHit,
)
from docsorter.services.batch_driver import BatchDriver, BatchItemResult
from docsorter.services.errors import DetectorError, ExtractionError, GatewayError
from docsorter.services.heuristic_extractor import ClientDirectory, HeuristicExtractor
from docsorter.services.inference_client import InferenceClient
from docsorter.services.inference_gateway import GatewayResult, InferenceGateway
from docsorter.services.language_detector import LanguageDetector, NullLanguageDetector
from docsorter.services.merge_engine import MergeEngine
from docsorter.services.ocr_pool import OCRWorkerPool
from docsorter.services.result_cache import ResultCache
from docsorter.services.signature_detector import NullSignatureDetector, SignatureDetector
from docsorter.services.watermark_detector import NullWatermarkDetector, WatermarkDetector

logger = logging.getLogger(__name__)

TextExtractor = Callable[[Any], Union[str, Awaitable[str]]]


class ClassificationEngine:
    """Confidence-gated multi-signal document classifier."""

    def __init__(self, extractor: HeuristicExtractor, gateway: InferenceGateway,
                 merge_engine: Optional[MergeEngine] = None,
                 batch_driver: Optional[BatchDriver] = None,
                 language_detector: Optional[Union[LanguageDetector, NullLanguageDetector]] = None,
                 watermark_detector: Optional[Union[WatermarkDetector, NullWatermarkDetector]] = None,
                 signature_detector: Optional[Union[SignatureDetector, NullSignatureDetector]] = None,
                 ocr_pool: Optional[OCRWorkerPool] = None):
        self.extractor = extractor
        self.gateway = gateway
        self.merge_engine = merge_engine or MergeEngine()
        self.batch_driver = batch_driver or BatchDriver(group_size=gateway.client.max_concurrent)
        self.language_detector = language_detector or NullLanguageDetector()
        self.watermark_detector = watermark_detector or NullWatermarkDetector()
        self.signature_detector = signature_detector or NullSignatureDetector()
        self.ocr_pool = ocr_pool

    @classmethod
    def from_settings(cls, settings: Settings,
                      client_directory: Optional[ClientDirectory] = None) -> "ClassificationEngine":
        """Wire every component from one Settings object."""
        directory = client_directory
        if directory is None:
            directory = ClientDirectory.from_file(Path(settings.client_directory_path))

        cache = ResultCache(
            max_size=settings.cache_max_size,
            max_age=settings.cache_max_age_seconds,
            compression_threshold=settings.cache_compression_threshold,
            snapshot_path=settings.cache_snapshot_path or None,
        )
        client = InferenceClient.from_config(settings.get_inference_config())
        gateway = InferenceGateway(
            client,
            cache,
            confidence_threshold=settings.ai_confidence_threshold,
            use_ai=settings.use_ai,
        )

        if settings.enable_language_detection:
            language_detector = LanguageDetector(
                min_length=settings.language_min_length,
                max_length=settings.language_max_length,
                cache_ttl=settings.language_cache_ttl_seconds,
                max_cache_size=settings.language_cache_max_size,
            )
        else:
            language_detector = NullLanguageDetector()

        if settings.enable_watermark_detection:
            watermark_detector = WatermarkDetector(
                **settings.get_watermark_options(),
                filter_confidence=settings.watermark_filter_confidence,
            )
        else:
            watermark_detector = NullWatermarkDetector()

        ocr_pool = None
        if settings.enable_signature_detection:
            ocr_pool = OCRWorkerPool(max_workers=settings.ocr_worker_pool_size, config=settings.tesseract_config)
            signature_detector = SignatureDetector(ocr_pool)
        else:
            signature_detector = NullSignatureDetector()

        return cls(
            extractor=HeuristicExtractor(directory),
            gateway=gateway,
            batch_driver=BatchDriver(group_size=settings.ai_batch_size, delay_ms=settings.ai_batch_delay_ms),
            language_detector=language_detector,
            watermark_detector=watermark_detector,
            signature_detector=signature_detector,
            ocr_pool=ocr_pool,
        )

    @property
    def cache(self) -> ResultCache:
        return self.gateway.cache

    async def start(self) -> None:
        """Reload the cache snapshot and start the OCR workers."""
        self.cache.load()
        if self.ocr_pool is not None:
            await self.ocr_pool.start()
        logger.info("Classification engine started")

    async def close(self) -> None:
        """Stop the OCR workers and write the cache snapshot."""
        if self.ocr_pool is not None:
            await self.ocr_pool.stop()
        self.cache.save()
        logger.info("Classification engine stopped")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _detect_language(self, text: str) -> Optional[LanguageResult]:
        try:
            return self.language_detector.detect(text)
        except Exception as e:
            logger.error(f"Language detection failed: {e}")
            return None

    async def _detect_watermarks(self, text: str) -> tuple[WatermarkHit, ...]:
        try:
            return tuple(self.watermark_detector.detect(text))
        except Exception as e:
            logger.error(f"Watermark detection failed: {e}")
            return ()

    async def _detect_handwriting(self, source_ref: Any) -> HandwritingVerdict:
        try:
            return await self.signature_detector.analyze(source_ref)
        except Exception as e:
            logger.error(f"Handwriting detection failed: {e}")
            return HandwritingVerdict()

    async def _infer(self, text: str, options: AnalysisOptions, language: Optional[LanguageResult],
                     bypass_concurrency: bool) -> Optional[GatewayResult]:
        try:
            return await self.gateway.infer(text, options, language=language, bypass_concurrency=bypass_concurrency)
        except GatewayError as e:
            logger.warning(f"AI fallback unavailable, using heuristics only: {type(e).__name__}: {e}")
        except Exception as e:
            logger.error(f"Unexpected inference failure, using heuristics only: {e}")
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze(self, document: DocumentText, options: Optional[AnalysisOptions] = None,
                      bypass_concurrency: bool = False) -> AnalysisRecord:
        """
        Classify one document. Never raises.

        Args:
            document: extracted text plus an opaque source reference
            options: per-call overrides (force_ai, threshold, model, ...)
            bypass_concurrency: wait for an inference slot instead of
                failing fast; used by the batch path

        Returns:
            AnalysisRecord, Unclassified with raw text if everything failed
        """
        options = options or AnalysisOptions()
        started = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        if not document.text or not document.text.strip():
            return self.merge_engine.fallback_record(document, processing_ms=elapsed_ms())

        try:
            text = document.text
            try:
                heuristics = self.extractor.extract(text)
                heuristic_signals = heuristics.signals
                heuristic_confidence = heuristics.overall_confidence
            except Exception as e:
                logger.error(f"Heuristic extraction failed: {e}")
                heuristic_signals = {
                    FieldName.type: Signal(FieldName.type, UNCLASSIFIED, 0.0, SignalSource.default),
                }
                heuristic_confidence = 0.0

            language = self._detect_language(text)

            gateway_result = None
            ai_invoked = self.gateway.should_invoke(heuristic_confidence, options)
            if ai_invoked:
                gateway_result = await self._infer(text, options, language, bypass_concurrency)

            watermarks, handwriting = await asyncio.gather(
                self._detect_watermarks(text),
                self._detect_handwriting(document.source_ref),
            )

            return self.merge_engine.merge(
                document,
                heuristic_signals,
                gateway_result.signals if gateway_result else None,
                language=language,
                watermarks=watermarks,
                handwriting=handwriting,
                snippets=tuple(gateway_result.snippets) if gateway_result else (),
                ai_invoked=ai_invoked,
                processing_ms=elapsed_ms(),
            )
        except Exception as e:
            logger.error(f"Analysis failed for {document.source_ref!r}, returning raw record: {e}")
            return self.merge_engine.fallback_record(document, processing_ms=elapsed_ms())

    async def analyze_batch(self, documents: Sequence[DocumentText],
                            options: Optional[AnalysisOptions] = None) -> list[BatchItemResult[AnalysisRecord]]:
        """Classify documents in ceiling-sized groups. Output follows input order."""
        options = options or AnalysisOptions()

        async def worker(document: DocumentText) -> AnalysisRecord:
            return await self.analyze(document, options, bypass_concurrency=True)

        return await self.batch_driver.run(documents, worker, delay_ms=options.batch_delay_ms)

    async def analyze_file(self, handle: Any, extract: TextExtractor,
                           options: Optional[AnalysisOptions] = None,
                           source_ref: Any = None) -> AnalysisRecord:
        """
        Extract text with the given collaborator, then classify it.

        source_ref defaults to the handle; pass a decoded image to let the
        handwriting detector see the page.

        Raises:
            ExtractionError: the extractor failed; there is nothing to classify
        """
        try:
            text = extract(handle)
            if inspect.isawaitable(text):
                text = await text
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"Text extraction failed for {handle!r}: {e}") from e

        return await self.analyze(DocumentText(text=text or "", source_ref=handle if source_ref is None else source_ref), options)

    def filter_watermarks(self, text: str,
                          min_confidence: Optional[float] = None) -> tuple[str, list[WatermarkHit]]:
        """
        Detect watermarks and return (filtered_text, hits).

        A detector failure leaves the text untouched with no hits.
        """
        try:
            hits = self.watermark_detector.detect(text)
        except DetectorError as e:
            logger.error(f"Watermark detection failed: {e}")
            return text, []
        return self.watermark_detector.filter(text, hits, min_confidence=min_confidence), hits

    def stats(self) -> dict:
        return {
            "cache": self.cache.stats,
            "gateway": dict(self.gateway.stats),
            "language": self.language_detector.stats(),
            "watermarks": dict(self.watermark_detector.stats),
            "inference_active_requests": self.gateway.client.active_requests,
        }
