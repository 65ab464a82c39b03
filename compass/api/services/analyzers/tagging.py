"""Tagging analyzer.

Computes tag coverage, flags resources missing required tags, empty tag
values and inconsistent tag-key casing, and tallies tag usage frequency.
Tag keys are compared case-insensitively.
"""

import logging
from collections import Counter
from collections.abc import Sequence
from enum import Enum

from compass.api.services.analyzers.base import (
    AnalysisResult,
    AnalyzerKind,
    ResourceBreakdown,
    Severity,
    Violation,
    partition_resources,
    percentage,
)
from compass.api.services.resource_graph import ResourceSnapshot
from compass.schemas.preferences import PolicyPreferences

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_TAGS = ("Environment", "Owner", "Project", "CostCenter", "Department")

# Without client preferences, required tags are only enforced on these types
TAG_REQUIRED_RESOURCE_TYPES = frozenset({
    "microsoft.compute/virtualmachines",
    "microsoft.storage/storageaccounts",
    "microsoft.sql/servers",
    "microsoft.web/sites",
    "microsoft.keyvault/vaults",
    "microsoft.network/virtualnetworks",
})

# A required tag carried by fewer resources than this is reported estate-wide
ESTATE_MISSING_THRESHOLD = 30.0


class TaggingRule(str, Enum):
    NO_TAGS = "NoTags"
    MISSING_REQUIRED_TAGS = "MissingRequiredTags"
    EMPTY_TAG_VALUES = "EmptyTagValues"
    INCONSISTENT_TAG_NAMING = "InconsistentTagNaming"


RULE_SEVERITY: dict[TaggingRule, Severity] = {
    TaggingRule.NO_TAGS: Severity.HIGH,
    TaggingRule.MISSING_REQUIRED_TAGS: Severity.MEDIUM,
    TaggingRule.EMPTY_TAG_VALUES: Severity.MEDIUM,
    TaggingRule.INCONSISTENT_TAG_NAMING: Severity.LOW,
}

PENALTY_POINTS = {Severity.CRITICAL: 15, Severity.HIGH: 10, Severity.MEDIUM: 5, Severity.LOW: 2}


def missing_tags(tags: dict[str, str], required: Sequence[str]) -> list[str]:
    """Required tags absent from ``tags``, compared case-insensitively."""
    present = {key.strip().lower() for key in tags}
    return [tag for tag in required if tag.lower() not in present]


class TaggingAnalyzer:
    """Score tag coverage against default or client tagging policy."""

    kind = AnalyzerKind.TAGGING

    def analyze(
        self,
        resources: Sequence[ResourceSnapshot],
        preferences: PolicyPreferences | None = None,
    ) -> AnalysisResult:
        valid, skipped = partition_resources(resources)
        for item in skipped:
            logger.warning(f"Tagging analysis skipped resource {item.resource_id}: {item.reason}")

        use_preferences = preferences is not None and preferences.has_tagging_preferences
        required = preferences.effective_required_tags() if use_preferences else list(DEFAULT_REQUIRED_TAGS)
        enforcement = preferences.tagging_enforcement_level() if use_preferences else "moderate"

        if not valid:
            return AnalysisResult(
                kind=self.kind,
                score=100.0,
                skipped=skipped,
                metrics={"total_resources": 0, "required_tags": required},
            )

        canonical_keys = self._canonical_keys(valid)
        violations: list[Violation] = []
        coverage_by_resource: dict[str, float | None] = {}

        for resource in valid:
            applies = use_preferences or resource.resource_type.lower() in TAG_REQUIRED_RESOURCE_TYPES
            resource_required = required if applies else []
            absent = missing_tags(resource.tags, resource_required)

            if resource_required:
                present_count = len(resource_required) - len(absent)
                coverage_by_resource[resource.resource_id] = round(
                    percentage(present_count, len(resource_required)), 2
                )
            else:
                coverage_by_resource[resource.resource_id] = None

            violations.extend(
                self._resource_violations(resource, absent, canonical_keys, enforcement)
            )

        breakdown = self._breakdown(valid, violations, coverage_by_resource)
        metrics = self._metrics(valid, required, coverage_by_resource, canonical_keys)
        metrics["enforcement_level"] = enforcement
        metrics["mode"] = "client_preferences" if use_preferences else "default"

        score = self._score(metrics, violations, use_preferences, enforcement)
        logger.info(
            f"Tagging analysis: {len(valid)} resources, {len(violations)} violations, "
            f"coverage {metrics['tag_coverage']}%, score {score}"
        )

        return AnalysisResult(
            kind=self.kind,
            score=score,
            violations=violations,
            resource_breakdown=breakdown,
            skipped=skipped,
            metrics=metrics,
        )

    # =========================================================================
    # Rules
    # =========================================================================

    def _violation(
        self,
        resource: ResourceSnapshot,
        rule: TaggingRule,
        message: str,
        suggestion: str | None = None,
        absent: Sequence[str] = (),
    ) -> Violation:
        return Violation(
            resource_id=resource.resource_id,
            resource_name=resource.name,
            resource_type=resource.resource_type,
            rule=rule.value,
            severity=RULE_SEVERITY[rule],
            message=message,
            suggestion=suggestion,
            missing_tags=tuple(absent),
        )

    def _resource_violations(
        self,
        resource: ResourceSnapshot,
        absent: list[str],
        canonical_keys: dict[str, str],
        enforcement: str,
    ) -> list[Violation]:
        report_missing = enforcement != "none"

        if not resource.tags:
            return [self._violation(
                resource,
                TaggingRule.NO_TAGS,
                "Resource has no tags",
                f"Add tags: {', '.join(absent)}" if absent else None,
                absent if report_missing else (),
            )]

        found = []
        if absent and report_missing:
            found.append(self._violation(
                resource,
                TaggingRule.MISSING_REQUIRED_TAGS,
                f"Missing required tags: {', '.join(absent)}",
                f"Add tags: {', '.join(absent)}",
                absent,
            ))

        empty = sorted(key for key, value in resource.tags.items() if not str(value or "").strip())
        if empty:
            found.append(self._violation(
                resource,
                TaggingRule.EMPTY_TAG_VALUES,
                f"Tags with empty values: {', '.join(empty)}",
                "Set a value for each tag or remove it",
            ))

        inconsistent = sorted(
            key for key in resource.tags if canonical_keys.get(key.lower(), key) != key
        )
        if inconsistent:
            renames = ", ".join(f"{key} -> {canonical_keys[key.lower()]}" for key in inconsistent)
            found.append(self._violation(
                resource,
                TaggingRule.INCONSISTENT_TAG_NAMING,
                f"Tag keys differ in casing from the rest of the estate: {', '.join(inconsistent)}",
                f"Rename {renames}",
            ))

        return found

    # =========================================================================
    # Aggregation
    # =========================================================================

    def _canonical_keys(self, resources: list[ResourceSnapshot]) -> dict[str, str]:
        """Most used spelling of each tag key, keyed by its lowercase form."""
        spellings: dict[str, Counter] = {}
        for resource in resources:
            for key in resource.tags:
                spellings.setdefault(key.lower(), Counter())[key] += 1
        return {
            lowered: sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
            for lowered, counter in spellings.items()
        }

    def _breakdown(
        self,
        resources: list[ResourceSnapshot],
        violations: list[Violation],
        coverage_by_resource: dict[str, float | None],
    ) -> dict[str, ResourceBreakdown]:
        counts = Counter(v.resource_id for v in violations)
        return {
            r.resource_id: ResourceBreakdown(
                resource_id=r.resource_id,
                resource_name=r.name,
                compliant=counts[r.resource_id] == 0,
                violation_count=counts[r.resource_id],
                coverage=coverage_by_resource[r.resource_id],
            )
            for r in resources
        }

    def _metrics(
        self,
        resources: list[ResourceSnapshot],
        required: list[str],
        coverage_by_resource: dict[str, float | None],
        canonical_keys: dict[str, str],
    ) -> dict:
        total = len(resources)
        tagged = sum(1 for r in resources if r.tags)

        usage = Counter()
        for resource in resources:
            for lowered in {key.lower() for key in resource.tags}:
                usage[canonical_keys[lowered]] += 1

        applicable = [c for c in coverage_by_resource.values() if c is not None]
        required_coverage = sum(applicable) / len(applicable) if applicable else 100.0

        per_tag = {}
        applicable_ids = {rid for rid, c in coverage_by_resource.items() if c is not None}
        applicable_resources = [r for r in resources if r.resource_id in applicable_ids]
        for tag in required:
            carrying = sum(1 for r in applicable_resources if not missing_tags(r.tags, [tag]))
            tag_percentage = round(percentage(carrying, len(applicable_resources)), 2) if applicable_resources else 100.0
            per_tag[tag] = {
                "resources_with_tag": carrying,
                "percentage": tag_percentage,
                "missing_estate_wide": bool(applicable_resources) and tag_percentage < ESTATE_MISSING_THRESHOLD,
            }

        return {
            "total_resources": total,
            "tagged_resources": tagged,
            "untagged_resources": total - tagged,
            "tag_coverage": round(percentage(tagged, total), 2),
            "required_tags": list(required),
            "required_tag_coverage": round(required_coverage, 2),
            "required_tag_compliance": per_tag,
            "tag_usage": [
                {"tag": tag, "count": count, "percentage": round(percentage(count, total), 2)}
                for tag, count in sorted(usage.items(), key=lambda kv: (-kv[1], kv[0]))
            ],
        }

    def _score(
        self,
        metrics: dict,
        violations: list[Violation],
        use_preferences: bool,
        enforcement: str,
    ) -> float:
        penalty = sum(PENALTY_POINTS[v.severity] for v in violations)
        if use_preferences and enforcement == "strict":
            penalty *= 1.5
        penalty = min(penalty, 100.0)

        coverage = metrics["tag_coverage"]
        required_coverage = metrics["required_tag_coverage"]

        if use_preferences:
            score = coverage * 0.3 + required_coverage * 0.4 + (100 - penalty) * 0.3
        else:
            score = coverage * 0.4 + required_coverage * 0.3 + (100 - penalty) * 0.3
        return round(min(max(score, 0.0), 100.0), 2)
