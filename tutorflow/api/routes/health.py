"""
Health and Metrics Routes
=========================

- GET /health         → Liveness (process is serving)
- GET /health/ready   → Aggregated readiness; 503 when a dependency is unhealthy
- GET /metrics        → Prometheus exposition
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from tutorflow.infra.health import HealthChecker, HealthStatus

router = APIRouter(tags=["health"])

def _get_checker(request: Request) -> HealthChecker:
    checker = getattr(request.app.state, "health_checker", None)
    if checker is None:
        raise RuntimeError("HealthChecker is not initialised; is the app lifespan running?")
    return checker

@router.get("/health")
async def health(request: Request):
    settings = request.app.state.settings
    return {
        "status": HealthStatus.HEALTHY.value,
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }

@router.get("/health/ready")
async def ready(request: Request):
    """Run every registered check (briefly cached)."""
    report = await _get_checker(request).check()
    status_code = 503 if report.status is HealthStatus.UNHEALTHY else 200
    return JSONResponse(report.to_dict(), status_code=status_code)

@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        return Response(b"", media_type=CONTENT_TYPE_LATEST)
    return Response(orchestrator.metrics.export_prometheus(), media_type=CONTENT_TYPE_LATEST)
