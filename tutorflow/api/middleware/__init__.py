"""
Tutor Middleware Layer
======================

Turns a free-text tutoring request into a schema-valid, cached,
quality-scored structured answer.

Modules:
- schema:        Response models, validation and the canonical safe default
- parser:        JSON extraction from raw model text
- renderer:      StructuredAnswer to Markdown, plus structure analysis
- quality:       Heuristic quality score and cache TTL gate
- cache:         TTL + LRU response cache keyed by request fingerprint
- intent:        Response-type detection and sampling parameters
- prompts:       System prompt and message assembly
- pipeline:      Request, context and result contracts
- orchestrator:  Unified facade running the stages in order
"""

from .cache import ResponseCache, fingerprint
from .intent import DetectedIntent, IntentDetector, ResponseType, UserLevel
from .orchestrator import TutorOrchestrator
from .parser import Malformed, Parsed, parse_model_output
from .pipeline import PipelineStage, ProcessResult, TutorRequest
from .prompts import PromptBuilder
from .quality import QualityAssessor, QualityReport, QualityTier
from .renderer import render_markdown
from .schema import RequiredResponseStructure, StructuredAnswer, build_safe_default

__all__ = [
    "DetectedIntent",
    "IntentDetector",
    "Malformed",
    "Parsed",
    "PipelineStage",
    "ProcessResult",
    "PromptBuilder",
    "QualityAssessor",
    "QualityReport",
    "QualityTier",
    "RequiredResponseStructure",
    "ResponseCache",
    "ResponseType",
    "StructuredAnswer",
    "TutorOrchestrator",
    "TutorRequest",
    "UserLevel",
    "build_safe_default",
    "fingerprint",
    "parse_model_output",
    "render_markdown",
]
