"""
FastAPI Application — Entry Point

Document Processing Service

Routes:
  POST /webhooks/ocr/callback                      OCR engine callbacks (HMAC-signed)
  POST /documents/{id}/retry-processing            operator retry of a FAILED document
  GET  /documents/{id}/processing-status           status projection
  GET  /ocr/queue-statistics                       engine queue statistics
  GET  /health, /ready                             probes

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Request logging — one structured line per request with latency

Error responses:
  ProcessingError          → its status_code, {"error", "error_code"}
  RequestValidationError   → 422
  anything else            → 500, no stack trace in the body
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docproc.api.v1.documents import router as documents_router
from docproc.api.v1.ocr import router as ocr_router
from docproc.api.v1.webhooks import router as webhooks_router
from docproc.core.config import settings
from docproc.core.errors import ProcessingError
from docproc.db.session import check_db_health
from docproc.ocr.client import close_http_client
from docproc.resilience.circuit_breaker import all_circuit_breakers

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
    logger.info(
        "Starting document processing service | env=%s ocr_service=%s idempotency=%s",
        settings.app_env, settings.ocr_service_url, settings.idempotency_backend,
    )

    yield

    logger.info("Shutting down document processing service")
    await close_http_client()
    from docproc.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Processing Service",
        description=(
            "Submits documents to the OCR engine, tracks their processing state "
            "and receives signed completion callbacks."
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

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
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

    @app.exception_handler(ProcessingError)
    async def processing_error_handler(request: Request, exc: ProcessingError):
        if exc.status_code >= 500:
            logger.error(
                "Processing error | path=%s code=%s error=%s",
                request.url.path, exc.error_code, exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {"loc": (), "msg": "Invalid request"}
        field = " → ".join(str(loc) for loc in first["loc"])
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error":      f"{field}: {first['msg']}" if field else first["msg"],
                "error_code": "REQUEST_VALIDATION_ERROR",
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error":      "An unexpected error occurred.",
                "error_code": "INTERNAL_ERROR",
                "request_id": request_id,
            },
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(webhooks_router)
    app.include_router(documents_router)
    app.include_router(ocr_router)

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
        return {"status": "ok", "service": "document-processing"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description=(
            "Returns 200 only if the database is reachable. "
            "Circuit breaker state is reported but does not affect readiness."
        ),
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        breakers = [
            {**asdict(snap), "state": snap.state.value}
            for snap in (b.snapshot() for b in all_circuit_breakers())
        ]
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status, "circuit_breakers": breakers},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status, "circuit_breakers": breakers},
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
        "docproc.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
