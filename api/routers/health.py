# ============================================================
# Face Catalog
# api/routers/health.py
# ============================================================
# GET /api/v1/health   liveness + readiness check
# GET /api/v1/metrics  Prometheus exposition
#
# The catalog is required; the analyzer is optional (identify
# and detect answer 503 without it, everything else works).
# ============================================================

from __future__ import annotations

import time
from typing import Dict

from fastapi import APIRouter, Request, Response

from api.metrics import CONTENT_TYPE_LATEST, generate_latest
from api.schemas.responses import (
    ComponentHealth,
    ComponentStatus,
    HealthResponse,
)
from utils.circuit_breaker import CircuitState
from utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])

_START_TIME: float = time.perf_counter()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description=(
        "Overall API status plus per-component readiness. "
        "'degraded' means the catalog works but no analyzer is loaded."
    ),
)
async def health_check(request: Request) -> HealthResponse:
    from config.settings import settings  # noqa: PLC0415

    uptime = time.perf_counter() - _START_TIME
    state = request.app.state

    components: Dict[str, ComponentHealth] = {
        "catalog": _catalog_health(getattr(state, "catalog", None)),
        "analyzer": _analyzer_health(getattr(state, "catalog", None)),
    }

    if components["catalog"].status == ComponentStatus.DOWN:
        overall = ComponentStatus.DOWN
    elif components["analyzer"].status != ComponentStatus.OK:
        overall = ComponentStatus.DEGRADED
    else:
        overall = ComponentStatus.OK

    logger.debug(f"Health check: overall={overall.value} uptime={uptime:.1f}s")

    return HealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        uptime_seconds=uptime,
        components=components,
    )


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _catalog_health(catalog) -> ComponentHealth:
    if catalog is None:
        return ComponentHealth(
            status=ComponentStatus.DOWN, loaded=False, detail="Catalog not initialised."
        )
    counts = catalog.stats()
    return ComponentHealth(
        status=ComponentStatus.OK,
        loaded=True,
        detail=f"{counts['faces']} faces, {counts['persons']} people",
    )


def _analyzer_health(catalog) -> ComponentHealth:
    analyzer = getattr(catalog, "analyzer", None) if catalog is not None else None
    if analyzer is None:
        return ComponentHealth(
            status=ComponentStatus.DEGRADED, loaded=False, detail="No face analyzer configured."
        )
    if not getattr(analyzer, "is_loaded", True):
        return ComponentHealth(
            status=ComponentStatus.DEGRADED,
            loaded=False,
            detail="Analyzer exists but model is not loaded.",
        )
    breaker = catalog.engine.breaker
    if breaker.state != CircuitState.CLOSED:
        return ComponentHealth(
            status=ComponentStatus.DEGRADED,
            loaded=True,
            detail=f"Circuit breaker {breaker.state.value} after {breaker.failure_count} failure(s).",
        )
    return ComponentHealth(status=ComponentStatus.OK, loaded=True, detail=None)
