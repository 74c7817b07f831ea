"""
Intent Detector
===============

Classifies a tutoring request into one of five response types and binds the
sampling parameters and output mode that go with it.

Design:
- A declared response type always wins (aliases ``practice`` and ``concept``
  are accepted)
- Otherwise keyword heuristics score each type; ties break on table order
- Short messages with no educational signal fall through to free chat,
  unless the caller declared a subject or topic
- Parameter table is immutable after construction; the detector only keeps
  counters behind a lock
"""

from __future__ import annotations

import re
import threading
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any

from tutorflow.core.exceptions import InvalidInputError
from tutorflow.infra.upstream import SamplingParameters

# ── Enums ────────────────────────────────────────────────────────────────────

class ResponseType(StrEnum):
    EXPLANATION = "explanation"
    STUDY_PLAN = "study_plan"
    PRACTICE_SET = "practice_set"
    CONCEPT_ANALYSIS = "concept_analysis"
    FREE_CHAT = "free_chat"

    @classmethod
    def parse(cls, value: str | ResponseType) -> ResponseType:
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        key = _RESPONSE_TYPE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise InvalidInputError(
                f"Unknown response type '{value}'", field="response_type"
            ) from None

_RESPONSE_TYPE_ALIASES = {
    "practice": "practice_set",
    "concept": "concept_analysis",
    "plan": "study_plan",
    "chat": "free_chat",
}

class UserLevel(StrEnum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

    @classmethod
    def parse(cls, value: str | UserLevel) -> UserLevel:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Unknown user level '{value}'", field="user_level") from None

# ── Data Contracts ───────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class IntentContext:
    """Declared context supplied by the caller."""

    subject: str | None = None
    topic: str | None = None
    user_level: UserLevel | None = None

    @property
    def has_subject_matter(self) -> bool:
        return bool((self.subject or "").strip() or (self.topic or "").strip())

@dataclass(frozen=True, slots=True)
class DetectedIntent:
    response_type: ResponseType
    confidence: float                       # 0.0-1.0
    parameters: SamplingParameters
    structured_output: bool
    source: str                             # declared | keywords | fallback
    matched: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "response_type": self.response_type.value,
            "confidence": round(self.confidence, 3),
            "structured_output": self.structured_output,
            "source": self.source,
            "matched": list(self.matched),
            "parameters": {
                "temperature": self.parameters.temperature,
                "top_p": self.parameters.top_p,
                "max_tokens": self.parameters.max_tokens,
            },
        }

# ── Parameter Table ──────────────────────────────────────────────────────────

DEFAULT_PARAMETERS: dict[ResponseType, SamplingParameters] = {
    ResponseType.EXPLANATION: SamplingParameters(temperature=0.3, top_p=0.85, max_tokens=2000),
    ResponseType.STUDY_PLAN: SamplingParameters(temperature=0.3, top_p=0.9, max_tokens=3000),
    ResponseType.PRACTICE_SET: SamplingParameters(temperature=0.5, top_p=0.95, max_tokens=3500),
    ResponseType.CONCEPT_ANALYSIS: SamplingParameters(temperature=0.2, top_p=0.85, max_tokens=4000),
    ResponseType.FREE_CHAT: SamplingParameters(temperature=0.6, top_p=0.9, max_tokens=1500),
}

# ── Keyword Heuristics ───────────────────────────────────────────────────────

# Checked in this order; earlier entries win ties.
_KEYWORDS: tuple[tuple[ResponseType, frozenset[str]], ...] = (
    (ResponseType.STUDY_PLAN, frozenset({
        "study plan", "schedule", "roadmap", "learning path", "curriculum",
        "prepare for", "revision plan", "week by week", "timetable", "syllabus",
    })),
    (ResponseType.PRACTICE_SET, frozenset({
        "practice", "exercise", "exercises", "quiz", "problems", "questions on",
        "test me", "worksheet", "drill", "mock exam",
    })),
    (ResponseType.CONCEPT_ANALYSIS, frozenset({
        "compare", "difference between", "analyze", "analyse", "relationship",
        "in depth", "deep dive", "break down", "why does", "trade-off",
    })),
    (ResponseType.EXPLANATION, frozenset({
        "explain", "what is", "what are", "how does", "how do", "define",
        "describe", "teach me", "solve", "calculate", "understand",
    })),
)

_WORD_RE = re.compile(r"\w+")
SHORT_MESSAGE_WORDS = 6

def _matches(text: str, phrase: str) -> bool:
    if " " in phrase or "-" in phrase:
        return phrase in text
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None

# ── Detector ─────────────────────────────────────────────────────────────────

class IntentDetector:
    """
    Keyword and context based intent detection.

    Usage:
        detector = IntentDetector()
        intent = detector.detect("Explain recursion", context=IntentContext(subject="CS"))
        intent.response_type    # ResponseType.EXPLANATION
        intent.parameters       # SamplingParameters(temperature=0.3, ...)
    """

    def __init__(
        self,
        *,
        parameter_overrides: Mapping[str, Mapping[str, float]] | None = None,
        strict_free_chat: bool = False,
    ):
        self.strict_free_chat = strict_free_chat
        self._parameters = self._apply_overrides(dict(DEFAULT_PARAMETERS), parameter_overrides or {})
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        self._sources: Counter[str] = Counter()

    @staticmethod
    def _apply_overrides(
        table: dict[ResponseType, SamplingParameters],
        overrides: Mapping[str, Mapping[str, float]],
    ) -> dict[ResponseType, SamplingParameters]:
        for name, values in overrides.items():
            rtype = ResponseType.parse(name)
            changes: dict[str, Any] = {}
            for key, value in values.items():
                if key not in ("temperature", "top_p", "max_tokens"):
                    raise ValueError(f"Unknown model parameter '{key}' for {rtype.value}")
                changes[key] = int(value) if key == "max_tokens" else float(value)
            table[rtype] = replace(table[rtype], **changes)
        return table

    def parameters_for(self, response_type: ResponseType) -> SamplingParameters:
        return self._parameters[response_type]

    def detect(
        self,
        text: str,
        *,
        declared: str | ResponseType | None = None,
        context: IntentContext | None = None,
    ) -> DetectedIntent:
        context = context or IntentContext()

        if declared:
            rtype = ResponseType.parse(declared)
            return self._finish(rtype, 1.0, "declared", ())

        lower = text.lower()
        best: ResponseType | None = None
        best_hits: tuple[str, ...] = ()
        for rtype, phrases in _KEYWORDS:
            hits = tuple(sorted(p for p in phrases if _matches(lower, p)))
            if len(hits) > len(best_hits):
                best, best_hits = rtype, hits

        if best is not None:
            confidence = min(0.95, 0.6 + 0.1 * len(best_hits))
            return self._finish(best, confidence, "keywords", best_hits)

        words = len(_WORD_RE.findall(text))
        if words <= SHORT_MESSAGE_WORDS and "?" not in text and not context.has_subject_matter:
            return self._finish(ResponseType.FREE_CHAT, 0.7, "fallback", ())

        return self._finish(ResponseType.EXPLANATION, 0.5, "fallback", ())

    def _finish(
        self, rtype: ResponseType, confidence: float, source: str, matched: tuple[str, ...]
    ) -> DetectedIntent:
        with self._lock:
            self._counts[rtype.value] += 1
            self._sources[source] += 1
        return DetectedIntent(
            response_type=rtype,
            confidence=confidence,
            parameters=self._parameters[rtype],
            structured_output=rtype is not ResponseType.FREE_CHAT or self.strict_free_chat,
            source=source,
            matched=matched,
        )

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "by_type": dict(self._counts),
                "by_source": dict(self._sources),
                "total": sum(self._counts.values()),
            }
