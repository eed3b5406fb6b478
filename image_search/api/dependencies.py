"""
FastAPI dependencies for dependency injection
"""
from fastapi import HTTPException, Request

from ..core.config import AppConfig
from ..services.search_service import ImageSearchService


def get_service(request: Request) -> ImageSearchService:
    """Get the search service attached to the running app"""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Search service not available")
    return service


def get_config(request: Request) -> AppConfig:
    """Get configuration"""
    config = getattr(request.app.state, "config", None)
    if config is None:
        raise HTTPException(status_code=503, detail="Configuration not available")
    return config
