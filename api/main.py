# ============================================================
# Face Catalog
# api/main.py
# ============================================================
# FastAPI application entry point.
#
# Responsibilities:
#   - Create and configure the FastAPI app instance
#   - Lifespan handler: build the catalog, restore its snapshot,
#     load the face analyzer; save + release on shutdown
#   - Register all routers under the API prefix
#   - Middleware stack (request id, metrics, API key, CORS)
#   - Global exception handlers (catalog, validation, HTTP, generic)
#
# Run with:
#   face-catalog                      (settings.api host / port / workers)
#   uvicorn api.main:app --reload     (development)
# ============================================================

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.metrics import CATALOG_ERRORS
from api.routers import assets, faces, health, people
from api.schemas.responses import ErrorDetail, ErrorResponse
from core.catalog.errors import CatalogError, ErrorKind, ModelUnavailable
from core.catalog.service import FaceCatalog
from utils.logger import get_logger, setup_from_settings

# Configure logger from settings before any other logging
setup_from_settings()

logger = get_logger(__name__)

_KIND_TO_STATUS = {
    ErrorKind.NOT_FOUND:     status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFLICT:      status.HTTP_409_CONFLICT,
    ErrorKind.UNAVAILABLE:   status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.INTERNAL:      status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Internal and unavailable errors can carry ids, lock keys or library
# output; clients get a fixed message and the details stay in the logs.
_PUBLIC_MESSAGES = {
    ErrorKind.UNAVAILABLE: "The service is temporarily unavailable; retry later.",
    ErrorKind.INTERNAL:    "Internal server error.",
}


# ============================================================
# Lifespan: catalog / analyzer setup and teardown
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    On startup:
      - Build the FaceCatalog from settings (unless a test already
        attached one to ``app.state.catalog``)
      - Restore the snapshot when ``storage.snapshot_path`` exists
      - Load the InsightFace analyzer if enabled; identification
        answers 503 when it is missing
      - Create the worker pool used by ``run_blocking``

    On shutdown:
      - Save the snapshot and release the analyzer
    """
    from config.settings import settings  # noqa: PLC0415

    logger.info("=" * 60)
    logger.info(f"{settings.app_name} API: starting up")
    logger.info("=" * 60)
    logger.info(f"Settings loaded | env={settings.environment} v={settings.app_version}")

    app.state.executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="catalog")

    catalog = getattr(app.state, "catalog", None)
    owns_catalog = catalog is None
    snapshot_path = settings.storage.snapshot_path

    if owns_catalog:
        catalog = FaceCatalog.from_settings(settings)
        if snapshot_path is not None and snapshot_path.exists():
            try:
                catalog.load(snapshot_path)
            except (OSError, ValueError) as exc:
                logger.error(f"Failed to restore snapshot {snapshot_path}: {exc}; starting empty")
        else:
            logger.info("Face catalog: starting fresh")

        if settings.analyzer.enabled:
            catalog.analyzer = _load_analyzer(settings)
        else:
            logger.info("Face analyzer disabled (ANALYZER_ENABLED=false).")

        app.state.catalog = catalog

    logger.info("Startup complete.")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down...")

    if owns_catalog:
        if snapshot_path is not None:
            try:
                catalog.save(snapshot_path)
            except OSError as exc:
                logger.error(f"Failed to save snapshot to {snapshot_path}: {exc}")

        analyzer = catalog.analyzer
        if analyzer is not None and hasattr(analyzer, "release"):
            analyzer.release()
            logger.info("Released: analyzer")

    app.state.executor.shutdown(wait=False)
    logger.info("Shutdown complete.")


def _load_analyzer(settings):
    from core.analyzer.insightface_analyzer import InsightFaceAnalyzer  # noqa: PLC0415

    cfg = settings.analyzer
    analyzer = InsightFaceAnalyzer(
        model_pack=cfg.model_pack,
        model_root=cfg.model_root,
        embedding_dim=settings.embedding.dim,
        providers=cfg.providers,
        det_size=tuple(cfg.det_size),
        det_score_thresh=cfg.det_score_thresh,
        ctx_id=cfg.ctx_id,
    )
    try:
        analyzer.load_model()
    except (RuntimeError, OSError) as exc:
        logger.error(f"Failed to load face analyzer: {exc}")
        return None
    logger.success(f"Analyzer loaded: {analyzer.model_name!r}")
    return analyzer


# ============================================================
# App factory
# ============================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Separated into a factory function so tests can create isolated
    app instances and attach their own catalog before startup.
    """
    from config.settings import settings  # noqa: PLC0415

    api_prefix = settings.api.api_prefix

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "# Face Catalog API\n\n"
            "Multi-account catalog of faces found in image assets:\n"
            "- **Faces**: create, list, reassign and delete faces\n"
            "- **Identification**: rank the known people an uploaded image shows\n"
            "- **People**: clusters of faces, with naming, merging and hiding\n\n"
            "The account comes from the API key (or `X-Account-ID` when "
            "authentication is off)."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
        debug=settings.api.debug,
    )

    from api.middleware.cors import configure_middleware  # noqa: PLC0415
    configure_middleware(app)

    app.include_router(health.router, prefix=api_prefix)
    app.include_router(assets.router, prefix=api_prefix)
    app.include_router(faces.router,  prefix=api_prefix)
    app.include_router(people.router, prefix=api_prefix)

    _register_exception_handlers(app)

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        return JSONResponse(
            content={
                "message": settings.app_name,
                "docs":    "/docs",
                "redoc":   "/redoc",
                "health":  f"{api_prefix}/health",
            }
        )

    logger.info(f"FastAPI app created | version={settings.app_version} prefix={api_prefix}")
    return app


# ============================================================
# Exception handlers
# ============================================================

def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers on *app*."""

    @app.exception_handler(CatalogError)
    async def catalog_exception_handler(request: Request, exc: CatalogError) -> JSONResponse:
        """Map catalog error kinds onto HTTP statuses."""
        status_code = _KIND_TO_STATUS[exc.kind]
        CATALOG_ERRORS.labels(kind=exc.kind.value, code=exc.code).inc()

        if exc.kind is ErrorKind.INTERNAL:
            logger.opt(exception=exc).error(f"Internal catalog error on {request.url}: {exc.message}")
        else:
            logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

        headers = {}
        if isinstance(exc, ModelUnavailable) and exc.retry_after:
            headers["Retry-After"] = str(max(1, int(round(exc.retry_after))))

        message = _PUBLIC_MESSAGES.get(exc.kind, exc.message)

        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=exc.kind.value,
                message=message,
                details=[ErrorDetail(message=message, code=exc.code)],
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(),
            headers=headers or None,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Return a structured 422 for Pydantic / FastAPI validation errors."""
        details = [
            ErrorDetail(
                field=".".join(str(part) for part in error.get("loc", [])) or None,
                message=error.get("msg", "Validation error"),
                code=error.get("type", "validation_error"),
            )
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ErrorResponse(
                error="validation_error",
                message="One or more request fields failed validation.",
                details=details,
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=_status_to_error_code(exc.status_code),
                message=str(exc.detail),
                details=[],
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all handler: no stack traces leak to clients."""
        logger.exception(f"Unhandled exception on {request.url}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="internal_server_error",
                message="An unexpected error occurred. Please try again later.",
                details=[],
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(),
        )


def _status_to_error_code(status_code: int) -> str:
    """Map an HTTP status code to a short machine-readable error string."""
    mapping = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        408: "request_timeout",
        409: "conflict",
        413: "payload_too_large",
        422: "unprocessable_entity",
        500: "internal_server_error",
        503: "service_unavailable",
        504: "gateway_timeout",
    }
    return mapping.get(status_code, f"http_{status_code}")


# ============================================================
# App instance (module-level for Uvicorn)
# ============================================================

app = create_app()


def run() -> None:
    """Serve the app with uvicorn using ``settings.api``."""
    import uvicorn  # noqa: PLC0415

    from config.settings import settings  # noqa: PLC0415

    cfg = settings.api
    uvicorn.run(
        "api.main:app",
        host=cfg.host,
        port=cfg.port,
        workers=cfg.workers,
        reload=cfg.debug,
        log_level="debug" if cfg.debug else "info",
    )


if __name__ == "__main__":
    run()
