from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from docsorter.config import get_settings
from docsorter.models.analysis import AnalysisOptions, DocumentText
from docsorter.models.schemas import (
    AnalyzeRequest,
    BatchAnalyzeRequest,
    BatchAnalyzeResponse,
    BatchItemResponse,
    CacheStatsResponse,
)
from docsorter.services.classification_engine import ClassificationEngine
from docsorter.services.text_extractor import UploadedDocument, UploadTextExtractor

router = APIRouter()


def get_engine(request: Request) -> ClassificationEngine:
    """Engine built by the application lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Classification engine not ready")
    return engine


def _options(options) -> AnalysisOptions:
    return options.to_options() if options else AnalysisOptions()


@router.post("/analyze")
async def analyze_document(payload: AnalyzeRequest, engine: ClassificationEngine = Depends(get_engine)):
    """Classify one already-extracted document."""
    record = await engine.analyze(
        DocumentText(text=payload.text, source_ref=payload.source_ref),
        _options(payload.options),
    )
    return record.to_dict()


@router.post("/analyze/file")
async def analyze_file(file: UploadFile = File(..., description="Plain-text or image document"),
                       force_ai: bool = False,
                       engine: ClassificationEngine = Depends(get_engine)):
    """Extract text from an uploaded file and classify it. Extraction failures are 422."""
    max_size = 50 * 1024 * 1024  # 50MB
    content = await file.read()
    if len(content) > max_size:
        raise HTTPException(status_code=400, detail="File too large (max 50MB)")

    upload = UploadedDocument(
        filename=file.filename or "upload",
        content_type=file.content_type or "application/octet-stream",
        content=content,
    )
    extractor = UploadTextExtractor(get_settings().tesseract_config)
    record = await engine.analyze_file(
        upload,
        extractor,
        AnalysisOptions(force_ai=force_ai),
        source_ref=upload.image if upload.is_image else upload.filename,
    )
    data = record.to_dict()
    data["sourceRef"] = upload.filename
    return data


@router.post("/analyze/batch", response_model=BatchAnalyzeResponse)
async def analyze_batch(payload: BatchAnalyzeRequest, engine: ClassificationEngine = Depends(get_engine)):
    """Classify many documents. Results follow request order; one failure does not fail the batch."""
    documents = [DocumentText(text=d.text, source_ref=d.source_ref) for d in payload.documents]
    outcomes = await engine.analyze_batch(documents, _options(payload.options))

    results = []
    for outcome in outcomes:
        if outcome.ok:
            results.append(BatchItemResponse(index=outcome.index, record=outcome.value.to_dict()))
        else:
            results.append(BatchItemResponse(index=outcome.index, error=str(outcome.error)))

    succeeded = sum(1 for r in results if r.error is None)
    return BatchAnalyzeResponse(results=results, succeeded=succeeded, failed=len(results) - succeeded)


class WatermarkRequest(BaseModel):
    text: str
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


@router.post("/watermarks")
async def detect_watermarks(payload: WatermarkRequest, engine: ClassificationEngine = Depends(get_engine)):
    """Report repeated content and return the text with confident watermarks removed."""
    filtered_text, hits = engine.filter_watermarks(payload.text, min_confidence=payload.min_confidence)
    return {
        "watermarks": [hit.to_dict() for hit in hits],
        "filtered_text": filtered_text,
    }


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(engine: ClassificationEngine = Depends(get_engine)):
    return CacheStatsResponse(**engine.cache.stats)


@router.delete("/cache")
async def clear_cache(engine: ClassificationEngine = Depends(get_engine)):
    cleared = len(engine.cache)
    engine.cache.clear()
    return {"message": f"Cleared {cleared} cached results"}
