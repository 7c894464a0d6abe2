# =============================================================================
# FastAPI Application — CV Ingestion Service
# =============================================================================
#
# Run the three processes:
#   API:     uvicorn app.main:app
#   Workers: celery -A app.workers.celery_app worker -l info
#   Reaper:  celery -A app.workers.celery_app beat -l info
#
# Logging: stdlib logging, root level from settings.log_level. Every module
# logs through logging.getLogger(__name__).
# =============================================================================

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api import uploads
from app.config import settings
from app.db.engine import init_db
from app.models.responses import HealthResponse

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await init_db()
    logger.info("%s %s started", settings.app_name, settings.app_version)
    yield


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Build the application. Tests pass use_lifespan=False to skip DB setup."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Accepts CV uploads and processes them asynchronously: text "
            "extraction, chunking, embedding storage and profile analysis."
        ),
        lifespan=lifespan if use_lifespan else None,
    )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=settings.app_version, service=settings.app_name)

    app.include_router(uploads.router)
    return app


app = create_app()
