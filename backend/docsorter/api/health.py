from fastapi import APIRouter, Depends

from docsorter.api.analyze import get_engine
from docsorter.models.schemas import HealthResponse, InferenceHealth
from docsorter.services.classification_engine import ClassificationEngine
from docsorter.services.inference_client import health_payload

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(engine: ClassificationEngine = Depends(get_engine)):
    """Health check endpoint that also probes the inference backend."""
    client = engine.gateway.client
    reachable = await client.check_health() if engine.gateway.use_ai else False

    return HealthResponse(
        **health_payload(),
        inference=InferenceHealth(
            reachable=reachable,
            base_url=client.base_url,
            model=client.model,
        ),
    )
