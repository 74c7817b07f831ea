"""
Tutor Pipeline: Contracts
==========================

Data contracts shared by the orchestrator's strictly sequential stages.

Design principles:
- ``TutorRequest`` and ``ProcessResult`` are immutable
- ``PipelineContext`` lives for one request only and is append-only: each
  authoritative field is written once, by the stage that owns it
- The single sanctioned bulk write is the cache short-circuit
- Every stage runs inside ``PipelineContext.stage()``, which records its
  latency and status and logs the transition
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from tutorflow.infra.telemetry.logger import get_logger
from tutorflow.infra.upstream import ChatMessage, UpstreamResponse

from .intent import DetectedIntent, ResponseType, UserLevel
from .quality import QualityReport, QualityTier
from .schema import ContentStructure, RequiredResponseStructure, StructuredAnswer

logger = get_logger(__name__)

# ── Stages ───────────────────────────────────────────────────────────────────

class PipelineStage(StrEnum):
    VALIDATE_INPUT = "validate_input"
    ENRICH_CONTEXT = "enrich_context"
    SELECT_INTENT = "select_intent"
    ASSERT_STRUCTURED_MODE = "assert_structured_mode"
    CACHE_CHECK = "cache_check"
    UPSTREAM_CALL = "upstream_call"
    PARSE = "parse"
    VALIDATE = "validate"
    REPAIR = "repair"
    ASSESS_QUALITY = "assess_quality"
    CACHE_WRITE = "cache_write"

STAGE_ORDER: tuple[PipelineStage, ...] = tuple(PipelineStage)

class StageStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

class ContextOverwriteError(RuntimeError):
    """A stage tried to replace a field another stage already set."""

# ── Request / Result ─────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class TutorRequest:
    """Inbound request from the collaborator."""

    task: str
    audience: str | None = None
    tone: str | None = None
    response_type: str | ResponseType | None = None
    history: tuple[ChatMessage, ...] = ()
    subject: str | None = None
    topic: str | None = None
    user_level: str | UserLevel | None = None
    caller_key: str = "anonymous"
    tier: str = "normal"

@dataclass(frozen=True, slots=True)
class ProcessResult:
    """What ``TutorOrchestrator.process`` returns on every non-error exit."""

    request_id: str
    markdown: str
    structured: RequiredResponseStructure
    quality: float                            # 0.0-1.0
    quality_tier: QualityTier
    response_type: ResponseType
    from_cache: bool = False
    degraded: bool = False
    cache_key: str | None = None
    latency_ms: float = 0.0
    stage_latencies: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "markdown": self.markdown,
            "structured": self.structured.model_dump(by_alias=True),
            "quality": self.quality,
            "quality_tier": self.quality_tier.value,
            "response_type": self.response_type.value,
            "from_cache": self.from_cache,
            "degraded": self.degraded,
            "cache_key": self.cache_key,
            "latency_ms": self.latency_ms,
            "stage_latencies": dict(self.stage_latencies),
        }

# ── Context ──────────────────────────────────────────────────────────────────

@dataclass(slots=True)
class PipelineContext:
    """Per-request mutable state. Never shared across requests."""

    request: TutorRequest
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started: float = field(default_factory=time.perf_counter)

    # enrich_context
    task: str | None = None
    audience: str | None = None
    tone: str | None = None
    user_level: UserLevel | None = None
    history: tuple[ChatMessage, ...] | None = None

    # select_intent
    intent: DetectedIntent | None = None
    model: str | None = None
    messages: tuple[ChatMessage, ...] | None = None
    cache_key: str | None = None

    # upstream_call
    upstream: UpstreamResponse | None = None

    # parse / validate / repair / assess
    answer: StructuredAnswer | None = None
    markdown: str | None = None
    structure: ContentStructure | None = None
    structured: RequiredResponseStructure | None = None
    quality: QualityReport | None = None

    # cache short-circuit
    cached: ProcessResult | None = None

    stages_completed: list[str] = field(default_factory=list)
    stage_latencies: dict[str, float] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    optimizations: list[str] = field(default_factory=list)

    def set_once(self, name: str, value: Any) -> None:
        """Write an authoritative field; raise if it was already written."""
        if getattr(self, name) is not None:
            raise ContextOverwriteError(f"PipelineContext.{name} is already set")
        setattr(self, name, value)

    def fill_from_cache(self, result: ProcessResult) -> None:
        """Cache short-circuit: the only bulk write permitted on the context."""
        if self.upstream is not None or self.structured is not None:
            raise ContextOverwriteError("cache short-circuit after upstream results exist")
        self.cached = result
        self.markdown = result.markdown
        self.structured = result.structured
        self.optimizations.append("cache_hit")

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    @contextmanager
    def stage(self, name: PipelineStage) -> Iterator[None]:
        """Time one stage; on success record it as completed."""
        t0 = time.perf_counter()
        try:
            yield
        except Exception:
            self.stage_latencies[name.value] = round((time.perf_counter() - t0) * 1000, 2)
            logger.debug("stage_failed", stage=name.value, status=StageStatus.FAILED.value)
            raise
        latency = round((time.perf_counter() - t0) * 1000, 2)
        self.stage_latencies[name.value] = latency
        self.stages_completed.append(name.value)
        logger.debug(
            "stage_completed",
            stage=name.value,
            status=StageStatus.COMPLETED.value,
            latency_ms=latency,
        )

    def skip(self, name: PipelineStage, reason: str) -> None:
        logger.debug("stage_skipped", stage=name.value, status=StageStatus.SKIPPED.value, reason=reason)
