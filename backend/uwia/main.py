"""
FastAPI Application — Entry Point

Enhanced UWIA: large-document processing and consolidated answer fusion
for insurance-claim PDFs.

Architecture:
  - Session routes live under /enhanced-uwia (mounted at the root)
  - Session and chunk state in PostgreSQL (schema uwia)
  - Large documents are chunked by Celery workers; the API only publishes
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — open in development, restricted otherwise
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB
  4. Request logging — one structured line per request with latency

Error mapping:
  UwiaError.error_code ──HTTP_ERROR_MAP──▶ status + ErrorResponse envelope
  RequestValidationError                ─▶ 422 VALIDATION_ERROR
  anything else                         ─▶ 500 INTERNAL_ERROR (no stack trace)
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
from fastapi.responses import JSONResponse

from uwia.api.v1.enhanced_uwia import router as enhanced_uwia_router
from uwia.core.config import settings
from uwia.core.exceptions import UwiaError
from uwia.db.session import check_db_health
from uwia.schemas.sessions import HTTP_ERROR_MAP, ErrorDetail, ErrorResponse, SessionErrors

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify DB connectivity, log the size thresholds in force.
    Shutdown: dispose of the connection pool.
    """
    logger.info(
        "Starting Enhanced UWIA | env=%s thresholds_mb=%.0f/%.0f/%.0f memory_limit_mb=%d",
        settings.app_env,
        settings.no_chunking_max_mb, settings.medium_max_mb, settings.large_max_mb,
        settings.memory_limit_mb,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    logger.info("Database: connected")
    if settings.staging_backend.lower() == "s3":
        logger.info("Upload staging: s3://%s/%s", settings.s3_bucket, settings.s3_prefix)
    else:
        logger.info("Upload staging: %s (%s)", settings.upload_staging_dir, settings.staging_backend)

    yield

    logger.info("Shutting down Enhanced UWIA")
    from uwia.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Enhanced UWIA",
        description=(
            "Size-adaptive processing of insurance-claim PDFs with keyword retrieval "
            "and consolidated, field-ordered underwriting answers."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(UwiaError)
    async def domain_exception_handler(request: Request, exc: UwiaError):
        """Map a domain error to its HTTP status via error_code."""
        request_id  = request.headers.get("X-Request-ID")
        status_code = HTTP_ERROR_MAP.get(exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)

        log = logger.error if status_code >= 500 else logger.info
        log(
            "Domain error | code=%s status=%d path=%s message=%s",
            exc.error_code, status_code, request.url.path, exc.message,
        )
        return JSONResponse(
            status_code=status_code,
            content=SessionErrors.from_domain_error(exc, request_id).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=HTTP_ERROR_MAP["VALIDATION_ERROR"],
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=SessionErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(enhanced_uwia_router)

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by the load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "enhanced-uwia"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "uwia.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
