"""
TutorFlow Main Application
==========================

Layers, initialized in dependency order during lifespan startup and torn
down in reverse on shutdown:
  Telemetry     (structured logging, Prometheus metrics)
  Resilience    (rate limiter, circuit breakers, retry policy)
  Upstream      (httpx chat-completions client)
  Orchestration (TutorOrchestrator pipeline, response cache, quality gate)
  API           (FastAPI routes, request-id middleware, exception handling)

Run with:
    uvicorn tutorflow.api.main:app
"""

from __future__ import annotations

import math
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from tutorflow.api.middleware.cache import ResponseCache
from tutorflow.api.middleware.intent import IntentDetector
from tutorflow.api.middleware.orchestrator import TutorOrchestrator
from tutorflow.api.middleware.prompts import PromptBuilder
from tutorflow.api.middleware.quality import CacheTTLs, QualityAssessor, QualityThresholds
from tutorflow.api.routes import health as health_routes
from tutorflow.api.routes import tutor as tutor_routes
from tutorflow.core.circuit_breaker import CircuitBreakerRegistry
from tutorflow.core.config import Settings, get_settings
from tutorflow.core.exceptions import CircuitOpenError, TutorFlowError
from tutorflow.core.rate_limiter import TokenBucketRateLimiter
from tutorflow.infra.health import HealthChecker, make_cache_check, make_upstream_check
from tutorflow.infra.telemetry.logger import (
    clear_request_context,
    get_logger,
    set_request_context,
    setup_logging,
)
from tutorflow.infra.telemetry.metrics import PipelineMetrics, get_metrics
from tutorflow.infra.upstream import UpstreamClient

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# ── Wiring ───────────────────────────────────────────────────────────────────

def build_orchestrator(
    settings: Settings, metrics: PipelineMetrics | None = None
) -> TutorOrchestrator:
    """Translate settings into a fully wired orchestrator (owns its httpx client)."""
    metrics = metrics or get_metrics()
    upstream = UpstreamClient(
        settings.UPSTREAM_BASE_URL,
        settings.UPSTREAM_API_KEY.get_secret_value(),
        rate_limiter=TokenBucketRateLimiter(settings.rate_limit_tiers()),
        breakers=CircuitBreakerRegistry(settings.breaker_config()),
        retry_policy=settings.retry_policy(),
        chat_path=settings.UPSTREAM_CHAT_PATH,
        timeout_s=settings.UPSTREAM_TIMEOUT_S,
        metrics=metrics,
    )
    assessor = QualityAssessor(
        settings.quality_weights(),
        QualityThresholds(
            very_high=settings.QUALITY_THRESHOLD_VERY_HIGH,
            high=settings.QUALITY_THRESHOLD_HIGH,
            moderate=settings.QUALITY_THRESHOLD_MODERATE,
        ),
        CacheTTLs(
            long_s=settings.CACHE_TTL_LONG_S,
            medium_s=settings.CACHE_TTL_MEDIUM_S,
            short_s=settings.CACHE_TTL_SHORT_S,
        ),
        min_headers=settings.QUALITY_MIN_HEADERS,
    )
    return TutorOrchestrator(
        upstream,
        intent_detector=IntentDetector(
            parameter_overrides=settings.MODEL_PARAMETER_OVERRIDES,
            strict_free_chat=settings.STRICT_FREE_CHAT,
        ),
        prompt_builder=PromptBuilder(max_history=settings.MAX_HISTORY_MESSAGES),
        cache=ResponseCache(settings.CACHE_CAPACITY),
        assessor=assessor,
        metrics=metrics,
        model=settings.UPSTREAM_MODEL,
        max_task_length=settings.MAX_TASK_LENGTH,
        max_history=settings.MAX_HISTORY_MESSAGES,
    )

def _health_checker(orchestrator: TutorOrchestrator) -> HealthChecker:
    checker = HealthChecker()
    checker.register("upstream", make_upstream_check(orchestrator))
    checker.register("cache", make_cache_check(orchestrator))
    return checker

# ── Exception Handling ───────────────────────────────────────────────────────

async def tutorflow_exception_handler(request: Request, exc: TutorFlowError) -> JSONResponse:
    """Map TutorFlowError onto its HTTP status with a stable JSON body."""
    headers: dict[str, str] = {}
    if isinstance(exc, CircuitOpenError):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_s)))
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

# ── App Factory ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings | None = None,
    orchestrator: TutorOrchestrator | None = None,
) -> FastAPI:
    """Build the FastAPI app. An injected orchestrator is used as-is and never closed."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(
            level=settings.LOG_LEVEL,
            json_output=settings.LOG_JSON,
            log_dir=settings.LOG_DIR,
            environment=settings.ENVIRONMENT,
        )
        owned = orchestrator is None
        orch = orchestrator or build_orchestrator(settings)
        app.state.orchestrator = orch
        app.state.health_checker = _health_checker(orch)
        logger.info(
            "app_started",
            app_name=settings.APP_NAME,
            environment=settings.ENVIRONMENT,
            model=orch.model,
            upstream=orch.upstream.endpoint,
        )
        try:
            yield
        finally:
            if owned:
                await orch.upstream.aclose()
            logger.info("app_stopped", cache=str(orch.cache.get_stats()))

    app = FastAPI(
        title=settings.APP_NAME,
        description="Resilient orchestration of LLM tutoring calls",
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.middleware("http")
    async def request_context(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        set_request_context(request_id=request_id, caller=request.headers.get("X-Caller-Key"))
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    app.add_exception_handler(TutorFlowError, tutorflow_exception_handler)

    app.include_router(tutor_routes.router, prefix=settings.API_PREFIX)
    app.include_router(health_routes.router)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
            "process": f"{settings.API_PREFIX}/tutor/process",
        }

    return app

app = create_app()

__all__ = ["app", "build_orchestrator", "create_app"]
