from __future__ import annotations

"""
FastAPI application for program search.

Routes are thin: they validate input, call the core and wrap the result in
the response envelope::

    {"success": bool, "data": ..., "error": {"code", "message"}, "meta": {...}}

- GET  /health          liveness
- POST /search          run a search (503 CACHE_LOADING while the cache warms)
- GET  /schema          schema description, optionally for one program type
- GET  /cache           cache statistics
- POST /cache/refresh   force a refresh with the caller's bearer token
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .cache import get_store
from .config import ACCESS_TOKEN_ENV, HealthResponse, SearchRequest
from .errors import (
    CacheNotReadyError,
    InvalidSearchRequest,
    MissingCredentialsError,
    ProgramSearchError,
    SchemaConfigError,
)
from .schema_registry import get_registry
from .search import execute_search

app = FastAPI(title="Program Search")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# =============================================================================
# Envelope helpers
# =============================================================================

def _meta(request_id: str, started: float) -> dict:
    return {
        "request_id": request_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "processing_time_ms": int((time.perf_counter() - started) * 1000),
    }


def _request_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _ok(data: Any, request_id: str, started: float) -> JSONResponse:
    return JSONResponse({"success": True, "data": data, "meta": _meta(request_id, started)})


def _fail(status: int, code: str, message: str, request_id: str, started: float) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": {"code": code, "message": message}, "meta": _meta(request_id, started)},
        status_code=status,
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _fail(422, InvalidSearchRequest.code, str(exc.errors()), _request_id("invalid"), time.perf_counter())


# =============================================================================
# Startup
# =============================================================================

@app.on_event("startup")
def startup_event() -> None:
    logger.info("Starting app warmup...")
    get_registry()
    logger.info("Warmup complete.")


# =============================================================================
# Routes
# =============================================================================

@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


@app.post("/search")
async def search(req: SearchRequest) -> JSONResponse:
    started = time.perf_counter()
    request_id = _request_id("search")
    logger.info("[{}] search query={!r} program_type={} page={}", request_id, req.query, req.program_type, req.page)
    try:
        response = await execute_search(req)
    except CacheNotReadyError as e:
        return _fail(503, e.code, str(e), request_id, started)
    except InvalidSearchRequest as e:
        return _fail(422, e.code, str(e), request_id, started)
    except MissingCredentialsError as e:
        logger.error("[{}] {}", request_id, e)
        return _fail(500, e.code, f"Server is missing {ACCESS_TOKEN_ENV}", request_id, started)
    except ProgramSearchError as e:
        logger.exception("[{}] search failed: {}", request_id, e)
        return _fail(500, "INTERNAL_ERROR", str(e), request_id, started)
    logger.info("[{}] search completed: {} results, {} facets", request_id, response.total_count, len(response.facets))
    return _ok(response.model_dump(mode="json"), request_id, started)


@app.get("/schema")
def schema(program_type: Optional[str] = Query(default=None, alias="programType")) -> JSONResponse:
    started = time.perf_counter()
    request_id = _request_id("schema")
    try:
        data = get_registry().build_schema_response(program_type)
    except SchemaConfigError as e:
        logger.error("[{}] {}", request_id, e)
        return _fail(500, e.code, str(e), request_id, started)
    return _ok(data, request_id, started)


@app.get("/cache")
def cache_status() -> JSONResponse:
    started = time.perf_counter()
    return _ok(get_store().stats().model_dump(mode="json"), _request_id("cache"), started)


@app.post("/cache/refresh")
async def cache_refresh(
    authorization: Optional[str] = Header(default=None),
    full: bool = Query(default=False),
) -> JSONResponse:
    started = time.perf_counter()
    request_id = _request_id("cache")
    if not authorization or not authorization.startswith("Bearer "):
        return _fail(401, "UNAUTHORIZED", "Missing or invalid Authorization header", request_id, started)

    token = authorization[len("Bearer "):]
    store = get_store()
    try:
        if full:
            await store.refresh_full(token)
        else:
            await store.refresh(token)
    except ProgramSearchError as e:
        logger.error("[{}] cache refresh failed: {}", request_id, e)
        return _fail(500, "REFRESH_FAILED", str(e), request_id, started)
    return _ok(store.stats().model_dump(mode="json"), request_id, started)
