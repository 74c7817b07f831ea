"""
Quality Assessor
================

Scores rendered Markdown without ground truth and decides whether, and for
how long, the result may be cached.

Design:
- Four weighted checks (title, TL;DR summary, header count, closed fences)
  whose weights sum to 1.0
- A step function maps the score to a tier, and the tier to a cache TTL
- LOW tier maps to TTL 0: the assessor is the only gate for cache writes
- Weights, thresholds and TTLs are injected, never read from the environment
"""

from __future__ import annotations

import math
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

from tutorflow.infra.telemetry.logger import get_logger

from .renderer import analyze_structure
from .schema import ContentStructure, QualityAssessment, QualityBreakdown

logger = get_logger(__name__)

# ── Configuration ────────────────────────────────────────────────────────────

class QualityTier(StrEnum):
    VERY_HIGH = "very_high"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"

@dataclass(frozen=True, slots=True)
class QualityWeights:
    title: float = 0.25
    summary: float = 0.25
    headers: float = 0.25
    fences: float = 0.25

    def __post_init__(self) -> None:
        values = (self.title, self.summary, self.headers, self.fences)
        if any(v < 0 for v in values):
            raise ValueError("quality weights must be non-negative")
        if not math.isclose(math.fsum(values), 1.0, abs_tol=1e-6):
            raise ValueError(f"quality weights must sum to 1.0 (got {math.fsum(values):.4f})")

@dataclass(frozen=True, slots=True)
class QualityThresholds:
    very_high: float = 0.9
    high: float = 0.75
    moderate: float = 0.5

    def __post_init__(self) -> None:
        if not 1.0 >= self.very_high >= self.high >= self.moderate >= 0.0:
            raise ValueError("quality thresholds must be non-increasing within [0, 1]")

@dataclass(frozen=True, slots=True)
class CacheTTLs:
    long_s: float = 3600.0
    medium_s: float = 1800.0
    short_s: float = 300.0

# ── Report ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class QualityReport:
    """Outcome of one assessment. ``ttl_s == 0`` means do not cache."""

    score: float                                  # 0.0-1.0
    tier: QualityTier
    ttl_s: float
    checks: dict[str, bool] = field(default_factory=dict)
    breakdown: QualityBreakdown = field(default_factory=QualityBreakdown)
    recommendations: tuple[str, ...] = ()

    @property
    def cacheable(self) -> bool:
        return self.ttl_s > 0

    def to_assessment(self) -> QualityAssessment:
        return QualityAssessment(
            overall_score=round(self.score * 100),
            breakdown=self.breakdown,
            recommendations=list(self.recommendations),
        )

    @classmethod
    def zero(cls) -> QualityReport:
        """Report attached to degraded and safe-default results."""
        return cls(score=0.0, tier=QualityTier.LOW, ttl_s=0.0)

# ── Assessor ─────────────────────────────────────────────────────────────────

class QualityAssessor:
    """
    Heuristic quality scorer.

    Usage:
        assessor = QualityAssessor()
        report = assessor.assess(markdown, structure)
        if report.cacheable:
            cache.set(key, result, report.ttl_s)
    """

    RECOMMENDATIONS: ClassVar[dict[str, str]] = {
        "title": "Start the answer with a level-1 title",
        "summary": "Add a one-line TL;DR summary below the title",
        "headers": "Organise the answer under more section headers",
        "fences": "Close every code fence",
    }

    def __init__(
        self,
        weights: QualityWeights | None = None,
        thresholds: QualityThresholds | None = None,
        ttls: CacheTTLs | None = None,
        *,
        min_headers: int = 3,
    ):
        self.weights = weights or QualityWeights()
        self.thresholds = thresholds or QualityThresholds()
        self.ttls = ttls or CacheTTLs()
        self.min_headers = min_headers

        self._lock = threading.Lock()
        self._assessed = 0
        self._score_total = 0.0
        self._tiers: Counter[str] = Counter()

    def tier_for(self, score: float) -> tuple[QualityTier, float]:
        """Step function: score -> (tier, cache TTL in seconds)."""
        if score >= self.thresholds.very_high:
            return QualityTier.VERY_HIGH, self.ttls.long_s
        if score >= self.thresholds.high:
            return QualityTier.HIGH, self.ttls.medium_s
        if score >= self.thresholds.moderate:
            return QualityTier.MODERATE, self.ttls.short_s
        return QualityTier.LOW, 0.0

    def assess(self, markdown: str, structure: ContentStructure | None = None) -> QualityReport:
        structure = structure or analyze_structure(markdown)
        checks = self._run_checks(markdown, structure)

        weights = {
            "title": self.weights.title,
            "summary": self.weights.summary,
            "headers": self.weights.headers,
            "fences": self.weights.fences,
        }
        score = round(math.fsum(weights[name] for name, ok in checks.items() if ok), 4)
        tier, ttl_s = self.tier_for(score)

        report = QualityReport(
            score=score,
            tier=tier,
            ttl_s=ttl_s,
            checks=checks,
            breakdown=self._breakdown(checks, structure),
            recommendations=tuple(
                self.RECOMMENDATIONS[name] for name, ok in checks.items() if not ok
            ),
        )

        with self._lock:
            self._assessed += 1
            self._score_total += score
            self._tiers[tier.value] += 1

        logger.debug("quality_assessed", score=score, tier=tier.value, ttl_s=ttl_s)
        return report

    def _run_checks(self, markdown: str, structure: ContentStructure) -> dict[str, bool]:
        return {
            "title": any(h.level == 1 for h in structure.headers),
            "summary": any(
                line.lstrip().startswith("> **TL;DR**") for line in markdown.split("\n")
            ),
            "headers": len(structure.headers) >= self.min_headers,
            "fences": all(block.is_valid for block in structure.code_blocks),
        }

    def _breakdown(self, checks: dict[str, bool], structure: ContentStructure) -> QualityBreakdown:
        if self.min_headers > 0:
            header_ratio = min(1.0, len(structure.headers) / self.min_headers)
        else:
            header_ratio = 1.0

        blocks = structure.code_blocks
        formatting = (
            sum(1 for b in blocks if b.is_valid) / len(blocks) if blocks else 1.0
        )

        sections = structure.sections
        consistency = (
            sum(1 for s in sections if s.word_count > 0) / len(sections) if sections else 0.0
        )

        educational = (
            (35 if blocks else 0)
            + (30 if structure.lists else 0)
            + (35 if len(sections) >= 2 else 0)
        )

        return QualityBreakdown(
            structure=round(header_ratio * 100),
            consistency=round(consistency * 100),
            formatting=round(formatting * 100),
            completeness=50 * checks["title"] + 50 * checks["summary"],
            educational=educational,
        )

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            mean = self._score_total / self._assessed if self._assessed else 0.0
            return {
                "assessed": self._assessed,
                "mean_score": round(mean, 4),
                "tiers": dict(self._tiers),
            }
