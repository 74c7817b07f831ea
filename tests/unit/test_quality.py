"""Quality gate tests: checks, score tiers and cache TTLs."""

import pytest

from tutorflow.api.middleware.quality import (
    CacheTTLs,
    QualityAssessor,
    QualityReport,
    QualityThresholds,
    QualityTier,
    QualityWeights,
)

FULL = (
    "# Recursion\n\n"
    "> **TL;DR**: Calls itself.\n\n"
    "## Base case\n\nStop at one.\n\n"
    "```python\nreturn 1\n```\n\n"
    "## Recursive step\n\nShrink the input."
)


class TestQualityAssessor:

    def setup_method(self):
        self.assessor = QualityAssessor()

    def test_all_checks_pass(self):
        report = self.assessor.assess(FULL)
        assert report.score == 1.0
        assert report.tier == QualityTier.VERY_HIGH
        assert report.ttl_s == 3600
        assert report.cacheable
        assert report.recommendations == ()
        assert report.checks == {"title": True, "summary": True, "headers": True, "fences": True}

    def test_missing_summary_is_high(self):
        report = self.assessor.assess(FULL.replace("> **TL;DR**: Calls itself.\n\n", ""))
        assert report.score == 0.75
        assert report.tier == QualityTier.HIGH
        assert report.ttl_s == 1800
        assert report.recommendations == ("Add a one-line TL;DR summary below the title",)

    def test_title_only_is_moderate(self):
        report = self.assessor.assess("# Just a title\n\nSome text.")
        assert report.score == 0.5
        assert report.tier == QualityTier.MODERATE
        assert report.ttl_s == 300

    def test_plain_text_is_low_and_not_cacheable(self):
        report = self.assessor.assess("Hello! How can I help you today?")
        assert report.score == 0.25
        assert report.tier == QualityTier.LOW
        assert report.ttl_s == 0
        assert not report.cacheable
        assert len(report.recommendations) == 3

    def test_unclosed_fence_fails_fences_check(self):
        report = self.assessor.assess(FULL + "\n\n```js\nopen(")
        assert report.checks["fences"] is False
        assert report.score == 0.75

    def test_min_headers_is_configurable(self):
        lenient = QualityAssessor(min_headers=1)
        assert lenient.assess("# Title\n\n> **TL;DR**: x").score == 1.0

    def test_custom_weights(self):
        assessor = QualityAssessor(QualityWeights(title=0.7, summary=0.1, headers=0.1, fences=0.1))
        report = assessor.assess("# Title only")
        assert report.score == pytest.approx(0.8)
        assert report.tier == QualityTier.HIGH

    @pytest.mark.parametrize(
        ("score", "tier", "ttl"),
        [
            (1.0, QualityTier.VERY_HIGH, 3600),
            (0.9, QualityTier.VERY_HIGH, 3600),
            (0.8999, QualityTier.HIGH, 1800),
            (0.75, QualityTier.HIGH, 1800),
            (0.5, QualityTier.MODERATE, 300),
            (0.4999, QualityTier.LOW, 0),
            (0.0, QualityTier.LOW, 0),
        ],
    )
    def test_tier_boundaries(self, score, tier, ttl):
        assert self.assessor.tier_for(score) == (tier, ttl)

    def test_custom_ttls(self):
        assessor = QualityAssessor(ttls=CacheTTLs(long_s=60, medium_s=30, short_s=10))
        assert assessor.tier_for(0.95) == (QualityTier.VERY_HIGH, 60)

    def test_assessment_scales_to_percent(self):
        assessment = self.assessor.assess(FULL).to_assessment()
        assert assessment.overall_score == 100
        assert assessment.breakdown.completeness == 100
        assert assessment.breakdown.formatting == 100

    def test_stats(self):
        self.assessor.assess(FULL)
        self.assessor.assess("plain")
        stats = self.assessor.get_stats()
        assert stats["assessed"] == 2
        assert stats["mean_score"] == pytest.approx(0.625)
        assert stats["tiers"] == {"very_high": 1, "low": 1}


class TestQualityConfig:

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            QualityWeights(title=0.5, summary=0.5, headers=0.5, fences=0.5)

    def test_weights_must_be_non_negative(self):
        with pytest.raises(ValueError):
            QualityWeights(title=1.5, summary=-0.5, headers=0.0, fences=0.0)

    def test_thresholds_must_be_non_increasing(self):
        with pytest.raises(ValueError):
            QualityThresholds(very_high=0.5, high=0.75, moderate=0.25)

    def test_zero_report(self):
        report = QualityReport.zero()
        assert report.score == 0.0
        assert report.tier == QualityTier.LOW
        assert not report.cacheable


def _document(*, title: bool, summary: bool, sections: int, code: bool) -> str:
    parts = []
    if title:
        parts.append("# Recursion")
    if summary:
        parts.append("> **TL;DR**: Calls itself.")
    parts += [f"## Part {i}\n\nBody {i}." for i in range(sections)]
    if code:
        parts.append("```python\nreturn 1\n```")
    return "\n\n".join(parts)


class TestMonotonicity:

    def setup_method(self):
        self.assessor = QualityAssessor()

    @pytest.mark.parametrize("title", [False, True])
    @pytest.mark.parametrize("summary", [False, True])
    @pytest.mark.parametrize("sections", [0, 1, 2, 3])
    @pytest.mark.parametrize("code", [False, True])
    def test_more_structure_never_scores_lower(self, title, summary, sections, code):
        base = dict(title=title, summary=summary, sections=sections, code=code)
        score = self.assessor.assess(_document(**base)).score

        richer = [
            {**base, "title": True},
            {**base, "summary": True},
            {**base, "sections": sections + 1},
            {**base, "code": True},
        ]
        for variant in richer:
            assert self.assessor.assess(_document(**variant)).score >= score

    def test_tier_ttl_is_non_decreasing_in_score(self):
        ttls = [self.assessor.tier_for(step / 100)[1] for step in range(101)]
        assert ttls == sorted(ttls)
