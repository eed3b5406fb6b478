"""
FastAPI endpoints for the reverse image search API
"""
import base64
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .. import __version__
from ..core.config import AppConfig
from ..core.exceptions import (
    ConfigurationError, DecodeError, InferenceError, ShapeMismatchError
)
from ..models.schemas import BuildReport, HealthResponse, ImageData, IndexStats
from ..services.search_service import ImageSearchService
from .dependencies import get_config, get_service

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tiff": "image/tiff",
    ".webp": "image/webp",
}

router = APIRouter()


def mime_type_for(path: str) -> str:
    return MIME_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


def _raise_for_error(action: str, exc: Exception):
    """Translate service errors into HTTP errors"""
    if isinstance(exc, DecodeError):
        raise HTTPException(status_code=422, detail=f"Invalid image: {exc}")
    if isinstance(exc, ConfigurationError):
        raise HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (InferenceError, ShapeMismatchError)):
        raise HTTPException(status_code=502, detail=f"{action} failed: {exc}")
    raise exc


@router.get("/")
async def root():
    """Root endpoint"""
    return {"message": "Image Search API", "version": __version__}


@router.get("/health", response_model=HealthResponse)
async def health_check(service: ImageSearchService = Depends(get_service)):
    """Health check endpoint"""
    stats = service.index_stats()
    model_loaded = bool(getattr(service.engine, "is_loaded", False))

    return HealthResponse(
        status="healthy" if service.model_available else "degraded",
        version=__version__,
        model_available=service.model_available,
        model_loaded=model_loaded,
        index_exists=stats.exists,
        total_images=stats.total_images,
        uptime_seconds=time.time() - service.started_at,
    )


@router.post("/search", response_model=List[ImageData])
async def search_images(
    image: Optional[UploadFile] = File(None),
    threshold: Optional[float] = Form(None, ge=-1.0, le=1.0),
    top_k: Optional[int] = Form(None, ge=1),
    service: ImageSearchService = Depends(get_service),
    cfg: AppConfig = Depends(get_config)
):
    """
    Find indexed images visually similar to the uploaded one

    Args:
        image: Query image file (multipart field "image")
        threshold: Optional similarity cutoff override
        top_k: Optional result limit override
    """
    if image is None:
        raise HTTPException(status_code=400, detail="Image file not sent.")

    content = await image.read()
    if not content:
        raise HTTPException(status_code=400, detail="Image file not sent.")
    if len(content) > cfg.api.max_upload_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail=f"Image exceeds {cfg.api.max_upload_mb} MB")

    try:
        outcome = await run_in_threadpool(service.search, content, threshold, top_k)
    except (DecodeError, ConfigurationError, InferenceError, ShapeMismatchError) as e:
        logger.error(f"Search failed: {e}")
        _raise_for_error("Search", e)

    results = []
    for match in outcome.matches:
        if not match.path or not os.path.isfile(match.path):
            continue

        with open(match.path, 'rb') as f:
            data = f.read()

        results.append(ImageData(
            name=os.path.basename(match.path),
            type=mime_type_for(match.path),
            image=base64.b64encode(data).decode('ascii'),
            path=match.path,
            similarity=match.similarity,
        ))

    if not results:
        return JSONResponse(
            status_code=404,
            content={"error": "Image not found.", "status": outcome.status.value, "status_code": 404}
        )

    return results


@router.post("/index/rebuild", response_model=BuildReport)
async def rebuild_index(service: ImageSearchService = Depends(get_service)):
    """Rebuild the index from the images directory"""
    try:
        report = await run_in_threadpool(service.build_index)
    except (ConfigurationError, InferenceError, ShapeMismatchError) as e:
        logger.error(f"Index rebuild failed: {e}")
        _raise_for_error("Index rebuild", e)

    logger.info(f"Index rebuild finished: {report.status.value}, {report.indexed} images")
    return report


@router.get("/index", response_model=IndexStats)
async def index_stats(service: ImageSearchService = Depends(get_service)):
    """Get persisted index statistics"""
    return service.index_stats()


def create_app(config: Optional[AppConfig] = None,
               service: Optional[ImageSearchService] = None) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        config: Configuration; loaded from IMAGE_SEARCH_CONFIG (or config.yaml) if omitted
        service: Prebuilt service, mainly for tests; created from config if omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management"""
        cfg = app.state.config
        if app.state.service is None:
            app.state.service = ImageSearchService.from_config(cfg)
        app.state.service.started_at = time.time()

        cfg.paths.model_path.mkdir(parents=True, exist_ok=True)
        if not app.state.service.model_available:
            logger.warning(f"Model not found: {cfg.paths.model_file_path}")

        logger.info("Image Search API startup complete")
        yield

        app.state.service.close()
        logger.info("Image Search API shutting down")

    if config is None:
        config = AppConfig.load(os.environ.get("IMAGE_SEARCH_CONFIG", "config.yaml"))

    app = FastAPI(
        title="Image Search API",
        description="Reverse image search over CLIP image embeddings",
        version=__version__,
        lifespan=lifespan
    )
    app.state.config = config
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "status_code": exc.status_code}
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        logger.error(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "status_code": 500}
        )

    return app
