"""FastAPI application for the exam marking service."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Union

import fitz  # PyMuPDF
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded  # type: ignore[import-not-found]

from scanmark.config import get_settings
from scanmark.middleware.logging import RequestLoggingMiddleware
from scanmark.middleware.rate_limit import get_limiter, rate_limit_exceeded_handler
from scanmark.middleware.request_id import RequestIDMiddleware
from scanmark.routers import marking
from scanmark.services.gemini_client import get_gemini_client

VERSION = "1.0.0"
COMMIT_HASH = "development"

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Validate configuration on startup."""
    try:
        settings = get_settings()
        logging.getLogger().setLevel(settings.log_level)

        logger.info(f"Starting Exam Marking API v{VERSION}")
        logger.info(f"Model: {settings.model_name}")
        logger.info(f"Marking concurrency: {settings.marking_concurrency}")
        logger.info("Environment validation: OK")
    except Exception as e:
        logger.error(f"Startup validation failed: {e}")
        raise

    yield

    logger.info("Shutting down Exam Marking API")


app = FastAPI(
    title="Exam Marking API",
    description="Marks scanned exam papers and returns annotated pages",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# slowapi reads the limiter from app state
app.state.limiter = get_limiter()
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Added last runs first: request ID is set before the logging middleware reads it
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=None)
async def health_check() -> Union[Dict[str, Any], Response]:
    """
    Report whether the PDF renderer and the Gemini client are usable.

    Status Codes:
        200: All services healthy
        503: One or more services unavailable
    """
    services: Dict[str, str] = {}
    overall_healthy = True

    try:
        services["pdf_renderer"] = f"healthy (PyMuPDF {fitz.VersionBind})"
    except Exception as e:
        services["pdf_renderer"] = f"unhealthy: {e}"
        overall_healthy = False

    try:
        if get_gemini_client():
            services["gemini_api"] = "healthy"
        else:
            services["gemini_api"] = "unhealthy: client is None"
            overall_healthy = False
    except Exception as e:
        services["gemini_api"] = f"unhealthy: {e}"
        overall_healthy = False

    response_data: Dict[str, Any] = {
        "status": "healthy" if overall_healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": services,
    }

    if not overall_healthy:
        return Response(
            content=json.dumps(response_data),
            status_code=503,
            media_type="application/json",
        )
    return response_data


@app.get("/version")
async def version_info() -> Dict[str, str]:
    """Version number and commit hash."""
    return {
        "version": VERSION,
        "commit_hash": COMMIT_HASH,
    }


app.include_router(marking.router)
