import re
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any

from docsorter.models.analysis import AnalysisOptions


def _clamp_confidence(v: Any) -> float:
    if isinstance(v, bool):
        return 0.0
    try:
        value = float(v)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))


# Inference response payload
class InferenceMetadata(BaseModel):
    """Fields the inference backend must return, after cleanup."""
    clientName: Optional[str]
    clientConfidence: float
    date: Optional[str]
    dateConfidence: float
    docType: Optional[str]
    docTypeConfidence: float
    snippets: List[str]
    amount: Optional[float] = None
    amountConfidence: float = 0.0
    title: Optional[str] = None
    titleConfidence: float = 0.0

    @field_validator('clientConfidence', 'dateConfidence', 'docTypeConfidence',
                     'amountConfidence', 'titleConfidence', mode='before')
    @classmethod
    def clamp_confidence(cls, v):
        return _clamp_confidence(v)

    @field_validator('clientName', mode='before')
    @classmethod
    def clean_client_name(cls, v):
        if not isinstance(v, str):
            return None
        cleaned = v.strip()
        return cleaned if 0 < len(cleaned) < 200 else None

    @field_validator('docType', mode='before')
    @classmethod
    def clean_doc_type(cls, v):
        if not isinstance(v, str):
            return None
        cleaned = v.strip()
        return cleaned if 0 < len(cleaned) < 100 else None

    @field_validator('title', mode='before')
    @classmethod
    def clean_title(cls, v):
        if not isinstance(v, str):
            return None
        cleaned = v.strip()
        return cleaned if 0 < len(cleaned) < 200 else None

    @field_validator('date', mode='before')
    @classmethod
    def clean_date(cls, v):
        if not isinstance(v, str) or not v.strip():
            return None
        # Same normalizer as the heuristics; impossible calendar dates are dropped
        from docsorter.services.heuristic_extractor import normalize_date
        return normalize_date(v)

    @field_validator('amount', mode='before')
    @classmethod
    def clean_amount(cls, v):
        if v is None or isinstance(v, bool):
            return None
        if isinstance(v, str):
            v = re.sub(r"[^\d.\-]", "", v)
            if not v:
                return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None

    @field_validator('snippets', mode='before')
    @classmethod
    def clean_snippets(cls, v):
        if not isinstance(v, list):
            return []
        snippets = [s.strip() for s in v if isinstance(s, str) and s.strip()]
        return [s for s in snippets if len(s) < 500][:5]


# Request schemas
class AnalysisOptionsIn(BaseModel):
    force_ai: bool = False
    confidence_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    model: Optional[str] = Field(None, min_length=1, max_length=100)
    max_tokens: Optional[int] = Field(None, ge=1, le=8192)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    batch_delay_ms: Optional[int] = Field(None, ge=0, le=60000)

    def to_options(self) -> AnalysisOptions:
        return AnalysisOptions(**self.model_dump())


class AnalyzeRequest(BaseModel):
    text: str
    source_ref: Optional[str] = None
    options: Optional[AnalysisOptionsIn] = None


class BatchDocument(BaseModel):
    text: str
    source_ref: Optional[str] = None


class BatchAnalyzeRequest(BaseModel):
    documents: List[BatchDocument] = Field(..., min_length=1, max_length=500)
    options: Optional[AnalysisOptionsIn] = None


# Response schemas
class BatchItemResponse(BaseModel):
    index: int
    record: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class BatchAnalyzeResponse(BaseModel):
    results: List[BatchItemResponse]
    succeeded: int
    failed: int


class InferenceHealth(BaseModel):
    reachable: bool
    base_url: str
    model: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    inference: Optional[InferenceHealth] = None


class CacheStatsResponse(BaseModel):
    size: int
    max_size: int
    hits: int
    misses: int
    sets: int
    evictions: int
    hit_rate: float
    compressed_entries: int
    persistent: bool
