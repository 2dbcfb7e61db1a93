"""
FastAPI Application — Entry Point

Study-material ingestion and retrieval API.

Routes only write material rows and enqueue process-material jobs; the
Celery workers in materialflow.queue do the extraction, OCR, segmentation
and indexing. Everything is versioned under /api/v1/:

  /api/v1/materials      register, re-upload, poll processing status
  /api/v1/retrieval      semantic search over indexed chunks
  /api/v1/admin          operator controls (role: admin)

Cross-cutting:
  - OIDC JWT auth, checked per route through api.deps
  - X-Request-ID echoed (or minted) on every response, one log line per request
  - Domain errors map to the ErrorResponse envelope via _DOMAIN_ERRORS
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from materialflow.api.v1.admin import router as admin_router
from materialflow.api.v1.materials import router as materials_router
from materialflow.api.v1.retrieval import router as retrieval_router
from materialflow.core.config import settings
from materialflow.core.exceptions import (
    JobNotFoundError,
    MaterialFlowError,
    MaterialNotFoundError,
    QueueUnavailableError,
)
from materialflow.db.session import check_db_health, dispose_engine
from materialflow.schemas.common import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

API_PREFIX = "/api/v1"

# exception type → (HTTP status, error_code, client message or None for exc.message)
_DOMAIN_ERRORS: dict[type[MaterialFlowError], tuple[int, str, str | None]] = {
    MaterialNotFoundError: (status.HTTP_404_NOT_FOUND, "MATERIAL_NOT_FOUND", None),
    JobNotFoundError:      (status.HTTP_404_NOT_FOUND, "JOB_NOT_FOUND", None),
    QueueUnavailableError: (
        status.HTTP_503_SERVICE_UNAVAILABLE, "QUEUE_UNAVAILABLE",
        "The job queue is unavailable. Retry shortly.",
    ),
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "API starting | env=%s embedding_model=%s ocr_backend=%s stale_after=%dmin",
        settings.app_env, settings.embedding_model, settings.ocr_backend, settings.stale_after_minutes,
    )
    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database unreachable at startup | detail=%s", db_health.get("detail"))
        raise RuntimeError(f"DB unavailable: {db_health}")
    logger.info("Startup checks passed | auth_issuer=%s", settings.auth_issuer or "<unset>")

    yield

    logger.info("API shutting down")
    await dispose_engine()


def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: list[ErrorDetail] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error_code=code,
        message=message,
        details=details or [],
        request_id=request.headers.get("X-Request-ID"),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Installers
# ---------------------------------------------------------------------------

def _install_middleware(app: FastAPI) -> None:
    # added innermost first
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )
    if settings.is_production and settings.allowed_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request_id,
        )
        return response


def _install_error_handlers(app: FastAPI) -> None:

    async def domain_error(request: Request, exc: MaterialFlowError) -> JSONResponse:
        mapped = next(cls for cls in type(exc).__mro__ if cls in _DOMAIN_ERRORS)
        status_code, code, message = _DOMAIN_ERRORS[mapped]
        if status_code >= 500:
            logger.error("Request failed | path=%s code=%s error=%s", request.url.path, code, exc)
        return _error_response(request, status_code, code, message or exc.message)

    for exc_type in _DOMAIN_ERRORS:
        app.add_exception_handler(exc_type, domain_error)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        return _error_response(
            request, status.HTTP_422_UNPROCESSABLE_ENTITY,
            "VALIDATION_ERROR", "Request validation failed.", details,
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        """Never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )


def _install_probes(app: FastAPI) -> None:
    """Unauthenticated liveness / readiness endpoints for the load balancer."""

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "materialflow-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe: database reachable")
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        ready = db_status["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ready else "not_ready", "database": db_status},
        )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    docs_enabled = not settings.is_production
    app = FastAPI(
        title="MaterialFlow",
        description=(
            "Study-material ingestion pipeline: extraction with OCR fallback, "
            "segmentation, chunk embeddings and semantic retrieval."
        ),
        version="1.0.0",
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )

    _install_middleware(app)
    _install_error_handlers(app)

    for router in (materials_router, retrieval_router, admin_router):
        app.include_router(router, prefix=API_PREFIX)

    _install_probes(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "materialflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
