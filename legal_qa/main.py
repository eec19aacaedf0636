# =============================================================================
# FastAPI Application Entry Point
# =============================================================================
#
# Run with:
#   uvicorn legal_qa.main:app --reload
#
# STARTUP:
#   1. Configure logging (DEBUG when settings.debug)
#   2. Load the tag keyword table once; a malformed table fails startup
#   3. Seed the tags table (best effort; the DB may not be up yet)
#
# SHUTDOWN:
#   Wait briefly for in-flight background tasks (pipelines, side tasks,
#   webhooks) so they are not cut off mid-write.
#
# ERROR MAPPING:
#   ValidationError       → 400
#   PermissionDeniedError → 403
#   NotFoundError         → 404
#   ProviderError         → 502
#   PersistenceError      → 503
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from legal_qa.api import queries, realtime, responses
from legal_qa.api.deps import get_repository
from legal_qa.config import settings
from legal_qa.errors import (
    LegalQAError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from legal_qa.models.responses import HealthResponse
from legal_qa.services.tagger import get_tag_catalog
from legal_qa.workers.background import get_background_runner

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_SHUTDOWN_DRAIN_SECONDS = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    catalog = get_tag_catalog()
    logger.info("Loaded %d tag definitions", len(catalog))

    try:
        seeded = await get_repository().ensure_tags(catalog.definitions.values())
        logger.info("Tag table seeded (%d tags)", seeded)
    except (PersistenceError, OSError) as e:
        logger.warning("Could not seed tags at startup: %s", e)

    yield

    runner = get_background_runner()
    if runner.pending:
        logger.info("Waiting for %d background tasks", runner.pending)
    await runner.drain(timeout=_SHUTDOWN_DRAIN_SECONDS)


app = FastAPI(
    title=settings.app_name,
    description=(
        "Answers legal questions asked as text, voice or documents, and keeps "
        "a semantic index of past answers for context, similarity search and "
        "clustering."
    ),
    version=settings.app_version,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_CODES: dict[type[LegalQAError], int] = {
    ValidationError: 400,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    ProviderError: 502,
    PersistenceError: 503,
}


@app.exception_handler(LegalQAError)
async def legal_qa_error_handler(request: Request, exc: LegalQAError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)),
        500,
    )
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)


app.include_router(queries.router)
app.include_router(responses.router)
app.include_router(realtime.router)
