from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docsorter.api import analyze, health
from docsorter.config import get_settings
from docsorter.services.classification_engine import ClassificationEngine
from docsorter.services.errors import ExtractionError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    engine = ClassificationEngine.from_settings(get_settings())
    await engine.start()
    app.state.engine = engine
    logger.info("Application started")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await engine.close()
    app.state.engine = None
    logger.info("Application shutdown")


app = FastAPI(
    title="DocSorter API",
    description="Confidence-gated document classification",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(ExtractionError)
async def extraction_error_handler(request: Request, exc: ExtractionError):
    logger.error(f"Text extraction failed on {request.url.path}: {exc}")
    return JSONResponse(status_code=422, content={"detail": str(exc)})


app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(analyze.router, prefix="/api", tags=["analyze"])


@app.get("/")
async def root():
    return {"message": "DocSorter API"}
