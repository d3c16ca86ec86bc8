# HTTP middleware stack: CORS, request correlation and Prometheus.
#
# Registration order matters; Starlette runs the last added middleware
# first. Outermost to innermost:
#
#   RequestIDMiddleware   correlation id, access log, timing header
#   MetricsMiddleware     request counters / latency by route template
#   APIKeyMiddleware      key -> account (api.middleware.auth)
#   CORSMiddleware

from __future__ import annotations

import re
import time
import uuid
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from api.metrics import ACTIVE_REQUESTS, REQUEST_COUNT, REQUEST_LATENCY
from utils.logger import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
TIMING_HEADER = "X-Processing-Ms"

# Client ids end up in log lines; anything else is replaced.
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

_UNMATCHED_ROUTE = "<unmatched>"


def configure_cors(app: FastAPI) -> None:
    from config.settings import settings  # noqa: PLC0415

    origins = settings.api.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", REQUEST_ID_HEADER, "X-API-Key", "X-Account-ID"],
        expose_headers=[REQUEST_ID_HEADER, TIMING_HEADER, "Retry-After"],
        max_age=600,
    )
    logger.info(f"CORS origins: {origins}")


def resolve_request_id(candidate: Optional[str]) -> str:
    """Use the caller's id when it is log-safe, otherwise mint one."""
    if candidate and _REQUEST_ID_RE.match(candidate):
        return candidate
    return uuid.uuid4().hex


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tag the request with a correlation id.

    The id is stored on ``request.state.request_id`` (error bodies echo
    it), bound into every log record emitted while the request runs,
    and returned in the ``X-Request-ID`` header together with the
    processing time.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        started = time.perf_counter()
        with logger.contextualize(request_id=request_id):
            response: Response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            logger.debug(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"({elapsed_ms:.1f} ms)"
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[TIMING_HEADER] = f"{elapsed_ms:.1f}"
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Prometheus request metrics.

    Requests are labelled by route template (``/api/v1/faces/{face_id}``)
    so ids never explode label cardinality; unmatched paths share one
    label. Scrapes of the metrics endpoint are not counted.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.endswith("/metrics"):
            return await call_next(request)

        ACTIVE_REQUESTS.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            endpoint = getattr(route, "path", None) or _UNMATCHED_ROUTE
            REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=str(status_code)).inc()
            ACTIVE_REQUESTS.dec()


def configure_middleware(app: FastAPI) -> None:
    """Install the middleware stack on *app* (innermost first)."""
    from api.middleware.auth import APIKeyMiddleware  # noqa: PLC0415
    from config.settings import settings  # noqa: PLC0415

    api_keys = settings.api.api_keys

    configure_cors(app)
    app.add_middleware(APIKeyMiddleware, api_keys=api_keys)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    logger.info(
        f"Middleware configured | auth={'api-key' if api_keys else 'X-Account-ID header'}"
    )
