"""Tests for findings, scores, recommendations and the result summary."""

from compass.api.services.analyzers import AnalyzerKind, NamingAnalyzer, Severity, TaggingAnalyzer, Violation
from compass.api.services.findings_store import Finding
from compass.api.services.resource_graph import FetchResult, SubscriptionError
from compass.api.services.results import (
    build_findings,
    build_recommendations,
    build_summary,
    finding_from_violation,
    weighted_score,
)
from tests.fixtures import SUB_A, SUB_B, make_resource


def _violation(rule: str = "MissingRequiredTags", severity: Severity = Severity.HIGH, missing=()) -> Violation:
    return Violation(
        resource_id="/subscriptions/x/resourceGroups/rg/providers/t/vm-01",
        resource_name="vm-01",
        resource_type="Microsoft.Compute/virtualMachines",
        rule=rule,
        severity=severity,
        message="something is wrong",
        suggestion="vm-prod-01" if rule == "MissingEnvironmentIndicator" else None,
        missing_tags=tuple(missing),
    )


def _finding(resource: str, category: str = "Tagging", severity: str = "Medium", effort: str = "Medium") -> Finding:
    return Finding(
        resource_id=f"/r/{resource}",
        resource_name=resource,
        resource_type="Microsoft.Compute/virtualMachines",
        category=category,
        rule="MissingRequiredTags",
        severity=severity,
        issue="missing tags",
        estimated_effort=effort,
    )


class TestFindingFromViolation:
    def test_naming_suggestion(self):
        finding = finding_from_violation(AnalyzerKind.NAMING, _violation("MissingEnvironmentIndicator"))

        assert finding.category == "NamingConvention"
        assert finding.recommendation == "Suggested name: vm-prod-01"
        assert finding.estimated_effort == "High"

    def test_tagging_missing_tags(self):
        finding = finding_from_violation(AnalyzerKind.TAGGING, _violation(missing=["Owner", "CostCenter"]))

        assert finding.recommendation == "Add missing tags: Owner, CostCenter"
        assert finding.estimated_effort == "Medium"
        assert finding.severity == "High"

    def test_tagging_many_missing_tags_is_high_effort(self):
        finding = finding_from_violation(AnalyzerKind.TAGGING, _violation(missing=["a", "b", "c", "d"]))
        assert finding.estimated_effort == "High"

    def test_tagging_without_missing_tags(self):
        finding = finding_from_violation(AnalyzerKind.TAGGING, _violation("EmptyTagValues", Severity.MEDIUM))
        assert finding.recommendation == "Review and fix tag values"


class TestWeightedScore:
    def test_equal_weights(self):
        scores = {AnalyzerKind.NAMING: 80.0, AnalyzerKind.TAGGING: 60.0}
        weights = {AnalyzerKind.NAMING: 0.5, AnalyzerKind.TAGGING: 0.5}
        assert weighted_score(scores, weights) == 70.0

    def test_renormalized_over_analyzers_that_ran(self):
        weights = {AnalyzerKind.NAMING: 0.3, AnalyzerKind.TAGGING: 0.7}
        assert weighted_score({AnalyzerKind.NAMING: 42.0}, weights) == 42.0

    def test_uneven_weights(self):
        scores = {AnalyzerKind.NAMING: 100.0, AnalyzerKind.TAGGING: 50.0}
        weights = {AnalyzerKind.NAMING: 0.25, AnalyzerKind.TAGGING: 0.75}
        assert weighted_score(scores, weights) == 62.5

    def test_zero_weights_use_plain_mean(self):
        scores = {AnalyzerKind.NAMING: 90.0, AnalyzerKind.TAGGING: 30.0}
        assert weighted_score(scores, {}) == 60.0

    def test_no_scores_is_fully_compliant(self):
        assert weighted_score({}, {AnalyzerKind.NAMING: 1.0}) == 100.0


class TestRecommendations:
    def test_high_severity_makes_high_priority(self):
        recommendations = build_recommendations([_finding("a", severity="High")])

        assert len(recommendations) == 1
        assert recommendations[0]["priority"] == "High"
        assert recommendations[0]["title"] == "Implement Comprehensive Tagging Strategy"

    def test_many_findings_make_high_priority(self):
        findings = [_finding(f"r{i}", severity="Low") for i in range(11)]
        assert build_recommendations(findings)[0]["priority"] == "High"

    def test_few_low_findings_are_medium_priority(self):
        findings = [_finding(f"r{i}", severity="Low") for i in range(3)]
        assert build_recommendations(findings)[0]["priority"] == "Medium"

    def test_effort_is_most_common(self):
        findings = [
            _finding("a", effort="Low"),
            _finding("b", effort="Low"),
            _finding("c", effort="High"),
        ]
        assert build_recommendations(findings)[0]["estimated_effort"] == "Low"

    def test_one_per_category_in_fixed_order(self):
        findings = [_finding("a", category="Tagging"), _finding("b", category="NamingConvention")]

        recommendations = build_recommendations(findings)

        assert [r["category"] for r in recommendations] == ["NamingConvention", "Tagging"]
        assert recommendations[0]["affected_resources"] == 1

    def test_no_findings_no_recommendations(self):
        assert build_recommendations([]) == []


class TestSummary:
    def test_summary(self):
        resources = [
            make_resource("vm-prod-001", tags={"Environment": "prod"}),
            make_resource("web server!"),
        ]
        results = [NamingAnalyzer().analyze(resources), TaggingAnalyzer().analyze(resources)]
        findings = build_findings(results)
        fetch = FetchResult(
            resources=resources,
            errors=[SubscriptionError(SUB_B, "InsufficientPermission", "forbidden", 403)],
            succeeded_subscriptions=[SUB_A],
        )

        summary = build_summary(results, findings, resources, fetch, overall_score=55.0)

        assert summary["overall_score"] == 55.0
        assert summary["finding_count"] == len(findings)
        assert summary["resource_count"] == 2
        assert set(summary["scores"]) == {"NamingConvention", "Tagging"}
        assert sum(summary["distributions"]["by_severity"].values()) == len(findings)
        assert summary["distributions"]["by_resource_type"] == {"Microsoft.Compute/virtualMachines": 2}
        assert summary["subscriptions"]["failed"][0]["reason"] == "InsufficientPermission"
        assert "pattern_distribution" in summary["naming"]
        assert "tag_coverage" in summary["tagging"]

    def test_summary_without_fetch(self):
        summary = build_summary([], [], [], None, overall_score=100.0)

        assert summary["recommendations"] == []
        assert "subscriptions" not in summary
