"""
Tutor Orchestrator: Unified Facade
===================================

Runs every tutoring request through a fixed, strictly sequential pipeline:

   1. validate_input           6. upstream_call
   2. enrich_context           7. parse
   3. select_intent            8. validate (or safe default)
   4. assert_structured_mode   9. repair
   5. cache_check             10. assess_quality
                              11. cache_write

Failure policy:
- Stages 1-6 fail fast: InvalidInputError, RateLimitedError,
  CircuitOpenError and UpstreamError reach the caller unchanged
- Stages 7-11 never raise: malformed output, schema failures and
  unexpected exceptions all become the canonical safe default
- Safe defaults are never cached; only the quality gate admits cache writes
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import replace
from typing import Any

from tutorflow.core.circuit_breaker import CircuitState
from tutorflow.core.exceptions import (
    InvalidInputError,
    PipelineInternalError,
    SchemaInvalidError,
    TutorFlowError,
)
from tutorflow.core.rate_limiter import RateLimitTier
from tutorflow.infra.health import HealthStatus
from tutorflow.infra.telemetry.logger import get_logger
from tutorflow.infra.telemetry.metrics import PipelineMetrics
from tutorflow.infra.upstream import ChatMessage, UpstreamClient

from .cache import ResponseCache, fingerprint
from .intent import IntentContext, IntentDetector, ResponseType, UserLevel
from .parser import Malformed, Parsed, parse_model_output
from .pipeline import PipelineContext, PipelineStage, ProcessResult, TutorRequest
from .prompts import JSON_CONTRACT, PromptBuilder, PromptInputs
from .quality import QualityAssessor, QualityReport, QualityTier
from .renderer import analyze_structure, estimate_reading_time, render_markdown, repair_markdown
from .schema import (
    SAFE_DEFAULT_CONTENT,
    FormattedResponse,
    ProcessingMetadata,
    RequiredResponseStructure,
    ResponseMetadata,
    SafeDefaultReason,
    ValidationResult,
    build_safe_default,
    validate_response_structure,
    validate_structured_answer,
)

logger = get_logger(__name__)

HISTORY_ROLES = frozenset({"user", "assistant", "system"})
FREE_CHAT_WARNING = "Structured output bypassed for free chat; returned raw model text"

HEALTHY_SUCCESS_RATE = 0.8
MIN_SUCCESS_RATE = 0.5

class TutorOrchestrator:
    """
    Single entry point for tutoring requests.

    Usage:
        orchestrator = TutorOrchestrator(upstream_client, model="deepseek-chat")
        result = await orchestrator.process(TutorRequest(task="Explain recursion"))
        result.markdown          # rendered answer
        result.structured        # RequiredResponseStructure, always schema-valid
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        *,
        intent_detector: IntentDetector | None = None,
        prompt_builder: PromptBuilder | None = None,
        cache: ResponseCache[ProcessResult] | None = None,
        assessor: QualityAssessor | None = None,
        metrics: PipelineMetrics | None = None,
        model: str = "deepseek-chat",
        max_task_length: int = 4000,
        max_history: int = 10,
    ):
        self.upstream = upstream
        self.intent_detector = intent_detector or IntentDetector()
        self.prompt_builder = prompt_builder or PromptBuilder(max_history=max_history)
        self.cache: ResponseCache[ProcessResult] = cache or ResponseCache()
        self.assessor = assessor or QualityAssessor()
        self.metrics = metrics or upstream.metrics or PipelineMetrics()
        self.model = model
        self.max_task_length = max_task_length
        self.max_history = max_history

        if self.upstream.metrics is None:
            self.upstream.metrics = self.metrics

        self._lock = threading.Lock()
        self._total_requests = 0
        self._completed = 0
        self._cache_hits = 0
        self._safe_defaults: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()

    # ── Main Entry Point ─────────────────────────────────────────────

    async def process(self, request: TutorRequest) -> ProcessResult:
        """Run one request through all stages; see module docstring for the failure policy."""
        ctx = PipelineContext(request=request)
        log = logger.bind(pipeline_id=ctx.request_id)
        with self._lock:
            self._total_requests += 1

        try:
            result = await self._run(ctx)
        except TutorFlowError as exc:
            self._record_error(exc.error_code, ctx)
            log.warning(
                "pipeline_rejected",
                error_code=exc.error_code,
                stages_completed=len(ctx.stages_completed),
            )
            raise
        except Exception as exc:
            self._record_error("INTERNAL_ERROR", ctx)
            log.error("pipeline_crashed", exc=exc, stages_completed=len(ctx.stages_completed))
            raise PipelineInternalError(f"Unexpected pipeline failure: {type(exc).__name__}") from exc

        if result.from_cache:
            outcome = "cache_hit"
        elif result.degraded:
            outcome = "degraded"
        else:
            outcome = "success"
        self.metrics.record_request(outcome=outcome, latency_s=result.latency_ms / 1000)
        with self._lock:
            self._completed += 1
            if result.from_cache:
                self._cache_hits += 1

        log.info(
            "pipeline_completed",
            outcome=outcome,
            response_type=result.response_type.value,
            quality=result.quality,
            latency_ms=result.latency_ms,
        )
        return result

    async def _run(self, ctx: PipelineContext) -> ProcessResult:
        request = ctx.request

        with ctx.stage(PipelineStage.VALIDATE_INPUT):
            declared, user_level, tier = self._validate(request)

        with ctx.stage(PipelineStage.ENRICH_CONTEXT):
            self._enrich(ctx, user_level)

        with ctx.stage(PipelineStage.SELECT_INTENT):
            intent = self.intent_detector.detect(
                ctx.task or "",
                declared=declared,
                context=IntentContext(
                    subject=request.subject, topic=request.topic, user_level=ctx.user_level
                ),
            )
            ctx.set_once("intent", intent)
            ctx.set_once("model", self.model)
            inputs = PromptInputs(
                task=ctx.task or "",
                response_type=intent.response_type,
                structured=intent.structured_output,
                audience=ctx.audience,
                tone=ctx.tone,
                subject=request.subject,
                topic=request.topic,
                user_level=ctx.user_level,
            )
            ctx.set_once("messages", tuple(self.prompt_builder.build(inputs, ctx.history or ())))
            ctx.set_once(
                "cache_key",
                fingerprint(ctx.task or "", ctx.audience, ctx.tone, intent.response_type.value),
            )

        with ctx.stage(PipelineStage.ASSERT_STRUCTURED_MODE):
            if intent.structured_output:
                system = ctx.messages[0] if ctx.messages else None
                if system is None or system.role != "system" or JSON_CONTRACT not in system.content:
                    raise PipelineInternalError(
                        "structured output requested but prompt has no JSON contract",
                        stage=PipelineStage.ASSERT_STRUCTURED_MODE.value,
                    )
                ctx.optimizations.append("json_mode")
            else:
                ctx.warnings.append(FREE_CHAT_WARNING)

        with ctx.stage(PipelineStage.CACHE_CHECK):
            cached = self.cache.get(ctx.cache_key or "")
            self.metrics.record_cache_lookup(hit=cached is not None)
            if cached is not None:
                ctx.fill_from_cache(cached)

        if ctx.cached is not None:
            for stage in (
                PipelineStage.UPSTREAM_CALL,
                PipelineStage.PARSE,
                PipelineStage.VALIDATE,
                PipelineStage.REPAIR,
                PipelineStage.ASSESS_QUALITY,
                PipelineStage.CACHE_WRITE,
            ):
                ctx.skip(stage, "cache_hit")
            return replace(
                ctx.cached,
                request_id=ctx.request_id,
                structured=self._mark_cache_hit(ctx),
                from_cache=True,
                latency_ms=round(ctx.elapsed_ms, 2),
                stage_latencies=dict(ctx.stage_latencies),
            )

        with ctx.stage(PipelineStage.UPSTREAM_CALL):
            response = await self.upstream.complete(
                ctx.model or self.model,
                ctx.messages or (),
                intent.parameters,
                caller_key=request.caller_key,
                tier=tier,
                json_mode=intent.structured_output,
            )
            ctx.set_once("upstream", response)

        try:
            return self._finish(ctx)
        except SchemaInvalidError as exc:
            logger.warning(
                "response_schema_invalid", pipeline_id=ctx.request_id, errors=len(exc.errors)
            )
            return self._safe_default(ctx, SafeDefaultReason.SCHEMA_INVALID)
        except Exception as exc:
            logger.error("post_processing_failed", exc=exc, pipeline_id=ctx.request_id)
            return self._safe_default(ctx, SafeDefaultReason.INTERNAL_ERROR)

    # ── Stages 1-2 ───────────────────────────────────────────────────

    def _validate(
        self, request: TutorRequest
    ) -> tuple[ResponseType | None, UserLevel | None, RateLimitTier]:
        task = request.task.strip() if isinstance(request.task, str) else ""
        if not task:
            raise InvalidInputError("Task must not be empty", field="task")
        if len(task) > self.max_task_length:
            raise InvalidInputError(
                f"Task exceeds {self.max_task_length} characters", field="task"
            )

        try:
            tier = RateLimitTier(str(request.tier).strip().lower())
        except ValueError:
            raise InvalidInputError(
                f"Unknown rate-limit tier '{request.tier}'", field="tier"
            ) from None

        for idx, message in enumerate(request.history):
            if message.role not in HISTORY_ROLES:
                raise InvalidInputError(
                    f"History message {idx} has invalid role '{message.role}'", field="history"
                )
            if not isinstance(message.content, str):
                raise InvalidInputError(
                    f"History message {idx} content must be text", field="history"
                )

        declared = ResponseType.parse(request.response_type) if request.response_type else None
        user_level = UserLevel.parse(request.user_level) if request.user_level else None
        return declared, user_level, tier

    def _enrich(self, ctx: PipelineContext, user_level: UserLevel | None) -> None:
        request = ctx.request
        ctx.set_once("task", request.task.strip())
        ctx.audience = (request.audience or "").strip() or None
        ctx.tone = (request.tone or "").strip() or None
        ctx.user_level = user_level

        turns = tuple(
            ChatMessage(role=m.role, content=m.content.strip())
            for m in request.history
            if m.role != "system" and m.content.strip()
        )
        if self.max_history <= 0:
            turns = ()
        elif len(turns) > self.max_history:
            ctx.optimizations.append(f"history_trimmed:{len(turns) - self.max_history}")
            turns = turns[-self.max_history:]
        ctx.set_once("history", turns)

    # ── Stages 7-11 ──────────────────────────────────────────────────

    def _finish(self, ctx: PipelineContext) -> ProcessResult:
        intent = ctx.intent
        raw = ctx.upstream.text if ctx.upstream else ""

        with ctx.stage(PipelineStage.PARSE):
            parsed = parse_model_output(raw)

        validation: ValidationResult | None = None
        match parsed:
            case Parsed(answer=answer, strategy=strategy):
                ctx.set_once("answer", answer)
                if strategy != "whole_text":
                    ctx.warnings.append(f"JSON answer extracted from surrounding text ({strategy})")
                with ctx.stage(PipelineStage.VALIDATE):
                    validation = validate_structured_answer(answer)
                    markdown = render_markdown(answer) if validation.is_valid else ""
                if not validation.is_valid:
                    logger.warning(
                        "structured_answer_invalid",
                        pipeline_id=ctx.request_id,
                        errors=len(validation.errors),
                    )
                    return self._safe_default(ctx, SafeDefaultReason.SCHEMA_INVALID)
                ctx.warnings.extend(validation.warnings)

            case Malformed() if not intent.structured_output and raw.strip():
                ctx.skip(PipelineStage.VALIDATE, "free_chat_raw_text")
                markdown = raw.strip()

            case Malformed(reason=reason, errors=errors):
                logger.warning(
                    "model_output_rejected",
                    pipeline_id=ctx.request_id,
                    reason=reason.value,
                    errors=len(errors),
                )
                return self._safe_default(ctx, reason)

        with ctx.stage(PipelineStage.REPAIR):
            markdown, repairs = repair_markdown(markdown)
            ctx.optimizations.extend(f"repair:{r}" for r in repairs)
            ctx.set_once("markdown", markdown)
            ctx.set_once("structure", analyze_structure(markdown))

        with ctx.stage(PipelineStage.ASSESS_QUALITY):
            report = self.assessor.assess(markdown, ctx.structure)
            ctx.set_once("quality", report)
            structured = validate_response_structure(
                self._assemble(ctx, report, validation)
            )
            ctx.set_once("structured", structured)

        result = ProcessResult(
            request_id=ctx.request_id,
            markdown=markdown,
            structured=structured,
            quality=report.score,
            quality_tier=report.tier,
            response_type=intent.response_type,
            cache_key=ctx.cache_key,
            latency_ms=round(ctx.elapsed_ms, 2),
            stage_latencies=dict(ctx.stage_latencies),
        )

        with ctx.stage(PipelineStage.CACHE_WRITE):
            if report.cacheable and ctx.cache_key:
                if self.cache.set(ctx.cache_key, result, report.ttl_s):
                    self.metrics.record_cache_write(report.tier.value)
            else:
                logger.debug(
                    "cache_write_skipped", pipeline_id=ctx.request_id, tier=report.tier.value
                )

        return replace(
            result,
            latency_ms=round(ctx.elapsed_ms, 2),
            stage_latencies=dict(ctx.stage_latencies),
        )

    def _assemble(
        self,
        ctx: PipelineContext,
        report: QualityReport,
        validation: ValidationResult | None,
    ) -> RequiredResponseStructure:
        intent = ctx.intent
        return RequiredResponseStructure(
            formatted_response=FormattedResponse(
                content=ctx.markdown,
                metadata=ResponseMetadata(
                    response_type=intent.response_type.value,
                    difficulty=ctx.user_level.value if ctx.user_level else None,
                    estimated_read_time=estimate_reading_time(ctx.markdown),
                ),
                structure=ctx.structure,
            ),
            quality_assessment=report.to_assessment(),
            processing_metadata=ProcessingMetadata(
                processing_time=round(ctx.elapsed_ms, 2),
                steps_completed=[*ctx.stages_completed, PipelineStage.ASSESS_QUALITY.value],
                warnings=list(ctx.warnings),
                optimizations=list(ctx.optimizations),
            ),
            validation_result=validation,
        )

    def _mark_cache_hit(self, ctx: PipelineContext) -> RequiredResponseStructure:
        """Cached structure with this run's steps and the cache_hit marker."""
        structured = ctx.cached.structured
        original = structured.processing_metadata
        metadata = ProcessingMetadata(
            processing_time=round(ctx.elapsed_ms, 2),
            steps_completed=list(ctx.stages_completed),
            warnings=list(original.warnings),
            optimizations=[
                *original.optimizations,
                *(o for o in ctx.optimizations if o not in original.optimizations),
            ],
        )
        return structured.model_copy(update={"processing_metadata": metadata})

    def _safe_default(self, ctx: PipelineContext, reason: SafeDefaultReason) -> ProcessResult:
        response_type = ctx.intent.response_type if ctx.intent else ResponseType.EXPLANATION
        with self._lock:
            self._safe_defaults[reason.value] += 1
        self.metrics.record_safe_default(reason.value)
        return ProcessResult(
            request_id=ctx.request_id,
            markdown=SAFE_DEFAULT_CONTENT,
            structured=build_safe_default(reason, response_type.value),
            quality=QualityReport.zero().score,
            quality_tier=QualityTier.LOW,
            response_type=response_type,
            degraded=True,
            cache_key=ctx.cache_key,
            latency_ms=round(ctx.elapsed_ms, 2),
            stage_latencies=dict(ctx.stage_latencies),
        )

    # ── Observability ────────────────────────────────────────────────

    def _record_error(self, code: str, ctx: PipelineContext) -> None:
        with self._lock:
            self._errors[code] += 1
        self.metrics.record_request(outcome=code.lower(), latency_s=ctx.elapsed_ms / 1000)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._total_requests
            errors = sum(self._errors.values())
            core = {
                "total_requests": total,
                "completed": self._completed,
                "cache_hits": self._cache_hits,
                "errors": dict(self._errors),
                "safe_defaults": dict(self._safe_defaults),
                "error_rate": round(errors / max(1, total), 4),
            }
        return {
            **core,
            "cache": self.cache.get_stats(),
            "circuit_breakers": self.upstream.breakers.get_stats(),
            "rate_limiter": self.upstream.rate_limiter.get_stats(),
            "intent": self.intent_detector.get_stats(),
            "quality": self.assessor.get_stats(),
            "metrics": self.metrics.get_summary(),
        }

    def health(self) -> dict[str, Any]:
        """Provider health: breaker state plus upstream success rate."""
        breaker = self.upstream.breakers.get(self.upstream.endpoint)
        rate = self.metrics.upstream_success_rate
        if breaker.state is CircuitState.OPEN or (rate is not None and rate < MIN_SUCCESS_RATE):
            status = HealthStatus.UNHEALTHY
        elif rate is not None and rate < HEALTHY_SUCCESS_RATE:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return {
            "status": status,
            "circuit_state": breaker.state.value,
            "success_rate": round(rate, 4) if rate is not None else None,
            "model": self.model,
        }
