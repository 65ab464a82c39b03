"""Turn analyzer output into stored findings, scores and a result summary."""

from collections import Counter
from collections.abc import Mapping, Sequence

from compass.api.services.analyzers import AnalysisResult, AnalyzerKind, Violation
from compass.api.services.analyzers.base import SEVERITY_ORDER, Severity
from compass.api.services.analyzers.naming import RULE_EFFORT
from compass.api.services.findings_store import Finding
from compass.api.services.resource_graph import FetchResult, ResourceSnapshot

# More than this many findings in a category makes its recommendation High priority
HIGH_PRIORITY_FINDING_COUNT = 10
# Tagging findings missing more tags than this take High effort
HIGH_EFFORT_MISSING_TAGS = 3

RECOMMENDATION_TITLES = {
    AnalyzerKind.NAMING: "Standardize Naming Conventions",
    AnalyzerKind.TAGGING: "Implement Comprehensive Tagging Strategy",
}

RECOMMENDATION_DESCRIPTIONS = {
    AnalyzerKind.NAMING: (
        "{count} naming issues across {resources} resources. Adopt a consistent naming "
        "convention with resource type prefixes and environment indicators."
    ),
    AnalyzerKind.TAGGING: (
        "{count} tagging issues across {resources} resources. Define required tags and "
        "enforce them with Azure Policy."
    ),
}

EFFORT_RANK = {"Low": 0, "Medium": 1, "High": 2}


def finding_from_violation(kind: AnalyzerKind, violation: Violation) -> Finding:
    if kind == AnalyzerKind.NAMING:
        recommendation = f"Suggested name: {violation.suggestion}" if violation.suggestion else None
        effort = RULE_EFFORT.get(violation.rule, "Medium")
    else:
        if violation.missing_tags:
            recommendation = f"Add missing tags: {', '.join(violation.missing_tags)}"
        else:
            recommendation = "Review and fix tag values"
        effort = "High" if len(violation.missing_tags) > HIGH_EFFORT_MISSING_TAGS else "Medium"

    return Finding(
        resource_id=violation.resource_id,
        resource_name=violation.resource_name,
        resource_type=violation.resource_type,
        category=kind.value,
        rule=violation.rule,
        severity=violation.severity.value,
        issue=violation.message,
        recommendation=recommendation,
        estimated_effort=effort,
    )


def build_findings(results: Sequence[AnalysisResult]) -> list[Finding]:
    return [
        finding_from_violation(result.kind, violation)
        for result in results
        for violation in result.violations
    ]


def weighted_score(scores: Mapping[AnalyzerKind, float], weights: Mapping[AnalyzerKind, float]) -> float:
    """Weighted mean of analyzer scores, renormalized over the analyzers that ran.

    Falls back to the plain mean when every analyzer that ran has weight 0.
    An assessment with no analyzer scores is fully compliant.
    """
    if not scores:
        return 100.0
    total_weight = sum(weights.get(kind, 0.0) for kind in scores)
    if total_weight <= 0:
        return round(sum(scores.values()) / len(scores), 2)
    score = sum(score * weights.get(kind, 0.0) for kind, score in scores.items()) / total_weight
    return round(min(max(score, 0.0), 100.0), 2)


def _recommendation(kind: AnalyzerKind, findings: list[Finding]) -> dict:
    severities = {f.severity for f in findings}
    high = bool(severities & {Severity.CRITICAL.value, Severity.HIGH.value})
    priority = "High" if high or len(findings) > HIGH_PRIORITY_FINDING_COUNT else "Medium"

    efforts = Counter(f.estimated_effort or "Medium" for f in findings)
    effort = sorted(efforts.items(), key=lambda kv: (-kv[1], -EFFORT_RANK.get(kv[0], 1)))[0][0]

    affected = len({f.resource_id for f in findings})
    return {
        "category": kind.value,
        "title": RECOMMENDATION_TITLES[kind],
        "description": RECOMMENDATION_DESCRIPTIONS[kind].format(count=len(findings), resources=affected),
        "priority": priority,
        "estimated_effort": effort,
        "affected_resources": affected,
    }


def build_recommendations(findings: Sequence[Finding]) -> list[dict]:
    """One recommendation per category that produced findings."""
    by_category: dict[AnalyzerKind, list[Finding]] = {}
    for finding in findings:
        by_category.setdefault(AnalyzerKind(finding.category), []).append(finding)
    return [
        _recommendation(kind, by_category[kind])
        for kind in AnalyzerKind
        if kind in by_category
    ]


def build_summary(
    results: Sequence[AnalysisResult],
    findings: Sequence[Finding],
    resources: Sequence[ResourceSnapshot],
    fetch: FetchResult | None,
    overall_score: float,
) -> dict:
    """Result summary stored on the assessment."""
    by_severity = {severity.value: 0 for severity in SEVERITY_ORDER}
    for finding in findings:
        by_severity[finding.severity] = by_severity.get(finding.severity, 0) + 1

    summary = {
        "scores": {result.kind.value: result.score for result in results},
        "overall_score": overall_score,
        "recommendations": build_recommendations(findings),
        "distributions": {
            "by_category": dict(Counter(f.category for f in findings)),
            "by_severity": by_severity,
            "by_resource_type": dict(Counter(r.resource_type for r in resources).most_common()),
        },
        "finding_count": len(findings),
        "resource_count": len(resources),
        "skipped_resources": sum(len(result.skipped) for result in results),
    }

    for result in results:
        if result.kind == AnalyzerKind.NAMING:
            summary["naming"] = {
                key: result.metrics[key]
                for key in (
                    "pattern_distribution",
                    "overall_consistency",
                    "environment_indicator_percentage",
                    "resource_type_prefix_percentage",
                )
                if key in result.metrics
            }
        elif result.kind == AnalyzerKind.TAGGING:
            summary["tagging"] = {
                key: result.metrics[key]
                for key in ("tag_coverage", "required_tag_coverage", "required_tag_compliance", "tag_usage")
                if key in result.metrics
            }

    if fetch is not None:
        summary["subscriptions"] = {
            "succeeded": list(fetch.succeeded_subscriptions),
            "failed": [
                {"subscription_id": e.subscription_id, "reason": e.reason, "message": e.message}
                for e in fetch.errors
            ],
            "skipped_rows": fetch.skipped_rows,
        }

    return summary
