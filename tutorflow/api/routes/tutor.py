"""
Tutor API Routes
================

Exposes the tutoring pipeline via REST endpoints:
- POST /tutor/process    → Run a request through the full pipeline
- POST /tutor/classify   → Detect the intent of a task (dry run, no upstream call)
- GET  /tutor/stats      → Orchestrator observability dashboard
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, Field

from tutorflow.api.middleware.intent import IntentContext, UserLevel
from tutorflow.api.middleware.orchestrator import TutorOrchestrator
from tutorflow.api.middleware.pipeline import TutorRequest
from tutorflow.infra.upstream import ChatMessage

router = APIRouter(prefix="/tutor", tags=["tutor"])

# ── Request Schemas ──────────────────────────────────────────────────────────

class HistoryMessage(BaseModel):
    role: str
    content: str

class ProcessRequest(BaseModel):
    task: str
    audience: str | None = None
    tone: str | None = None
    response_type: str | None = None
    history: list[HistoryMessage] = Field(default_factory=list)
    subject: str | None = None
    topic: str | None = None
    user_level: str | None = None
    tier: str = "normal"

class ClassifyRequest(BaseModel):
    task: str = Field(..., min_length=1, max_length=10_000)
    response_type: str | None = None
    subject: str | None = None
    topic: str | None = None
    user_level: str | None = None

# ── Helpers ──────────────────────────────────────────────────────────────────

def _get_orchestrator(request: Request) -> TutorOrchestrator:
    """Get the orchestrator the lifespan hook put on app state."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("TutorOrchestrator is not initialised; is the app lifespan running?")
    return orchestrator

def _caller_key(request: Request, header_value: str | None) -> str:
    if header_value and header_value.strip():
        return header_value.strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return "anonymous"

# ── Endpoints ────────────────────────────────────────────────────────────────

@router.post("/process")
async def tutor_process(
    body: ProcessRequest,
    request: Request,
    x_caller_key: str | None = Header(default=None),
) -> dict[str, Any]:
    """
    Process a tutoring request through the full pipeline.

    Always answers with a schema-valid structure; degraded answers carry
    ``degraded: true`` and the canonical safe default.
    """
    orchestrator = _get_orchestrator(request)
    result = await orchestrator.process(
        TutorRequest(
            task=body.task,
            audience=body.audience,
            tone=body.tone,
            response_type=body.response_type,
            history=tuple(ChatMessage(role=m.role, content=m.content) for m in body.history),
            subject=body.subject,
            topic=body.topic,
            user_level=body.user_level,
            caller_key=_caller_key(request, x_caller_key),
            tier=body.tier,
        )
    )
    return result.to_dict()

@router.post("/classify")
async def tutor_classify(body: ClassifyRequest, request: Request) -> dict[str, Any]:
    """Detect the response type and sampling parameters without calling upstream."""
    orchestrator = _get_orchestrator(request)
    intent = orchestrator.intent_detector.detect(
        body.task,
        declared=body.response_type,
        context=IntentContext(
            subject=body.subject,
            topic=body.topic,
            user_level=UserLevel.parse(body.user_level) if body.user_level else None,
        ),
    )
    return intent.to_dict()

@router.get("/stats")
async def tutor_stats(request: Request) -> dict[str, Any]:
    orchestrator = _get_orchestrator(request)
    return orchestrator.get_stats()
