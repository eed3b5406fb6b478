"""
Main FastAPI application entry point
"""
import os

import uvicorn

from image_search.api.endpoints import create_app
from image_search.core.config import AppConfig
from image_search.core.logging_config import setup_logging

config = AppConfig.load(os.environ.get("IMAGE_SEARCH_CONFIG", "config.yaml"))
setup_logging(config.log_level)

app = create_app(config)

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.api.host,
        port=config.api.port,
        log_level=config.log_level.lower()
    )
