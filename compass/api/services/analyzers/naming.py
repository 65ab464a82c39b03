"""Naming convention analyzer.

Without client naming preferences every resource is checked against the
default rule set: allowed characters, maximum length, resource-type prefix,
and consistency with the dominant pattern of its resource type. With
preferences, names are also checked against the client's allowed patterns
and environment-indicator requirement.
"""

import logging
import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
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

MAX_NAME_LENGTH = 63
MIN_TYPE_CONSISTENCY = 70.0
INVALID_CHARACTERS = re.compile(r"[^a-zA-Z0-9\-_.]")
UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

# Recommended prefixes per resource type; the first one is suggested
RESOURCE_TYPE_PREFIXES: dict[str, tuple[str, ...]] = {
    # Compute
    "microsoft.compute/virtualmachines": ("vm",),
    "microsoft.compute/availabilitysets": ("avail", "as"),
    "microsoft.compute/virtualmachinescalesets": ("vmss",),
    "microsoft.compute/disks": ("disk",),
    # Storage
    "microsoft.storage/storageaccounts": ("st", "stor", "storage"),
    # Networking
    "microsoft.network/virtualnetworks": ("vnet",),
    "microsoft.network/subnets": ("snet", "subnet"),
    "microsoft.network/networkinterfaces": ("nic",),
    "microsoft.network/networksecuritygroups": ("nsg",),
    "microsoft.network/publicipaddresses": ("pip", "ip"),
    "microsoft.network/loadbalancers": ("lb", "lbe", "lbi"),
    "microsoft.network/applicationgateways": ("agw", "appgw"),
    # Web
    "microsoft.web/sites": ("app", "web"),
    "microsoft.web/serverfarms": ("plan", "asp"),
    # Database
    "microsoft.sql/servers": ("sql", "sqlsrv"),
    "microsoft.sql/servers/databases": ("sqldb", "db"),
    "microsoft.documentdb/databaseaccounts": ("cosmos", "cdb"),
    # Management
    "microsoft.resources/resourcegroups": ("rg",),
    "microsoft.keyvault/vaults": ("kv", "vault"),
    # Containers
    "microsoft.containerregistry/registries": ("cr", "acr"),
    "microsoft.containerservice/managedclusters": ("aks", "k8s"),
}

COMMON_ENVIRONMENTS = ("dev", "test", "staging", "stage", "prod", "production", "qa", "uat")


class NamingRule(str, Enum):
    INVALID_CHARACTERS = "InvalidCharacters"
    NAME_TOO_LONG = "NameTooLong"
    MISSING_RESOURCE_TYPE_PREFIX = "MissingResourceTypePrefix"
    INCONSISTENT_PATTERN = "InconsistentPattern"
    CLIENT_PREFERENCE_VIOLATION = "ClientPreferenceViolation"
    MISSING_ENVIRONMENT_INDICATOR = "MissingEnvironmentIndicator"


RULE_SEVERITY: dict[NamingRule, Severity] = {
    NamingRule.INVALID_CHARACTERS: Severity.HIGH,
    NamingRule.NAME_TOO_LONG: Severity.MEDIUM,
    NamingRule.MISSING_RESOURCE_TYPE_PREFIX: Severity.MEDIUM,
    NamingRule.INCONSISTENT_PATTERN: Severity.LOW,
    NamingRule.CLIENT_PREFERENCE_VIOLATION: Severity.MEDIUM,
    NamingRule.MISSING_ENVIRONMENT_INDICATOR: Severity.HIGH,
}

# Estimated remediation effort per rule (renaming a resource usually means redeploying it)
RULE_EFFORT: dict[str, str] = {
    NamingRule.INVALID_CHARACTERS.value: "High",
    NamingRule.NAME_TOO_LONG.value: "Medium",
    NamingRule.MISSING_RESOURCE_TYPE_PREFIX.value: "Medium",
    NamingRule.INCONSISTENT_PATTERN.value: "Low",
    NamingRule.CLIENT_PREFERENCE_VIOLATION.value: "Medium",
    NamingRule.MISSING_ENVIRONMENT_INDICATOR.value: "High",
}

STANDARD_RULES = {
    NamingRule.INVALID_CHARACTERS.value,
    NamingRule.NAME_TOO_LONG.value,
    NamingRule.MISSING_RESOURCE_TYPE_PREFIX.value,
}


def classify_naming_pattern(name: str) -> str:
    """Classify a resource name into one of the known naming patterns."""
    if not name:
        return "Other"
    if UUID_PATTERN.match(name):
        return "UUID"
    if "_" in name:
        return "Snake_case"
    if "-" in name:
        return "Kebab-case"

    letters = [c for c in name if c.isalpha()]
    if letters and all(c.isupper() for c in letters):
        return "Uppercase"
    if all(c.islower() for c in letters):
        return "Lowercase"
    if name[0].isupper():
        return "PascalCase"
    if name[0].islower():
        return "CamelCase"
    return "Other"


def _words(name: str) -> list[str]:
    return [w for w in re.split(r"[-_\s]+", name) if w]


def convert_to_pattern(name: str, pattern: str | None) -> str:
    """Rewrite ``name`` in the given naming pattern (best effort)."""
    target = (pattern or "").lower()
    if target == "uppercase":
        return name.upper()
    if target == "kebab-case":
        return re.sub(r"[_\s]+", "-", name).lower()
    if target == "snake_case":
        return re.sub(r"[-\s]+", "_", name).lower()
    if target == "camelcase":
        words = _words(name)
        if not words:
            return name
        return words[0].lower() + "".join(w[0].upper() + w[1:].lower() for w in words[1:])
    if target == "pascalcase":
        return "".join(w[0].upper() + w[1:].lower() for w in _words(name))
    return name.lower()


def environment_indicator(name: str, patterns: Sequence[str]) -> str | None:
    """Return the first environment fragment contained in the name."""
    lowered = name.lower()
    for env in patterns:
        if env.lower() in lowered:
            return env
    return None


@dataclass(frozen=True)
class TypePatternStats:
    resource_type: str
    total: int
    most_common_pattern: str
    consistency: float
    distribution: dict[str, int]


class NamingAnalyzer:
    """Score resource names against default or client naming policy."""

    kind = AnalyzerKind.NAMING

    def analyze(
        self,
        resources: Sequence[ResourceSnapshot],
        preferences: PolicyPreferences | None = None,
    ) -> AnalysisResult:
        valid, skipped = partition_resources(resources)
        for item in skipped:
            logger.warning(f"Naming analysis skipped resource {item.resource_id}: {item.reason}")

        if not valid:
            return AnalysisResult(
                kind=self.kind,
                score=100.0,
                skipped=skipped,
                metrics={"total_resources": 0, "mode": "default"},
            )

        use_preferences = preferences is not None and preferences.has_naming_preferences
        patterns = {r.resource_id: classify_naming_pattern(r.name) for r in valid}
        type_stats = self._analyze_types(valid, patterns)

        violations: list[Violation] = []
        for resource in valid:
            pattern = patterns[resource.resource_id]
            violations.extend(self._standard_violations(resource))
            if use_preferences:
                violations.extend(self._preference_violations(resource, pattern, preferences))
            else:
                stats = type_stats[resource.resource_type.lower()]
                violation = self._inconsistency_violation(resource, pattern, stats)
                if violation:
                    violations.append(violation)

        breakdown = self._breakdown(valid, violations)
        metrics = self._metrics(valid, patterns, type_stats, preferences)

        if use_preferences:
            score = self._preference_score(valid, patterns, violations, preferences, metrics)
            metrics["mode"] = "client_preferences"
        else:
            compliant = sum(1 for item in breakdown.values() if item.compliant)
            score = percentage(compliant, len(valid))
            metrics["mode"] = "default"

        score = round(min(max(score, 0.0), 100.0), 2)
        logger.info(
            f"Naming analysis: {len(valid)} resources, {len(violations)} violations, "
            f"score {score} ({metrics['mode']})"
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

    def _violation(self, resource: ResourceSnapshot, rule: NamingRule, message: str, suggestion: str) -> Violation:
        return Violation(
            resource_id=resource.resource_id,
            resource_name=resource.name,
            resource_type=resource.resource_type,
            rule=rule.value,
            severity=RULE_SEVERITY[rule],
            message=message,
            suggestion=suggestion,
        )

    def _standard_violations(self, resource: ResourceSnapshot) -> list[Violation]:
        name = resource.name
        found = []

        if INVALID_CHARACTERS.search(name):
            found.append(self._violation(
                resource,
                NamingRule.INVALID_CHARACTERS,
                "Resource name contains invalid characters",
                INVALID_CHARACTERS.sub("", name),
            ))

        if len(name) > MAX_NAME_LENGTH:
            found.append(self._violation(
                resource,
                NamingRule.NAME_TOO_LONG,
                f"Resource name exceeds {MAX_NAME_LENGTH} characters ({len(name)})",
                name[:MAX_NAME_LENGTH],
            ))

        prefixes = RESOURCE_TYPE_PREFIXES.get(resource.resource_type.lower())
        if prefixes and not any(name.lower().startswith(prefix) for prefix in prefixes):
            found.append(self._violation(
                resource,
                NamingRule.MISSING_RESOURCE_TYPE_PREFIX,
                f"Resource name doesn't start with recommended prefix: {', '.join(prefixes)}",
                f"{prefixes[0]}-{name.lower()}",
            ))

        return found

    def _inconsistency_violation(
        self, resource: ResourceSnapshot, pattern: str, stats: TypePatternStats
    ) -> Violation | None:
        if stats.total < 2 or stats.consistency >= MIN_TYPE_CONSISTENCY:
            return None
        if pattern == stats.most_common_pattern:
            return None
        return self._violation(
            resource,
            NamingRule.INCONSISTENT_PATTERN,
            f"Name uses {pattern} while most {resource.resource_type} resources use "
            f"{stats.most_common_pattern} ({stats.consistency:.0f}% consistency)",
            convert_to_pattern(resource.name, stats.most_common_pattern),
        )

    def _preference_violations(
        self, resource: ResourceSnapshot, pattern: str, preferences: PolicyPreferences
    ) -> list[Violation]:
        found = []

        allowed = preferences.effective_naming_patterns()
        if allowed and pattern not in allowed:
            found.append(self._violation(
                resource,
                NamingRule.CLIENT_PREFERENCE_VIOLATION,
                f"Name uses {pattern}; client allows {', '.join(allowed)}",
                convert_to_pattern(resource.name, allowed[0]),
            ))

        expected = preferences.expected_environment_patterns()
        if expected and environment_indicator(resource.name, expected) is None:
            found.append(self._violation(
                resource,
                NamingRule.MISSING_ENVIRONMENT_INDICATOR,
                "Missing required environment indicator",
                f"{resource.name}-{expected[0]}",
            ))

        return found

    # =========================================================================
    # Aggregation
    # =========================================================================

    def _analyze_types(
        self, resources: list[ResourceSnapshot], patterns: dict[str, str]
    ) -> dict[str, TypePatternStats]:
        by_type: dict[str, Counter] = {}
        for resource in resources:
            by_type.setdefault(resource.resource_type.lower(), Counter())[patterns[resource.resource_id]] += 1

        stats = {}
        for resource_type, counter in sorted(by_type.items()):
            # Ties resolve alphabetically so the result never depends on input order
            most_common, count = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[0]
            total = sum(counter.values())
            stats[resource_type] = TypePatternStats(
                resource_type=resource_type,
                total=total,
                most_common_pattern=most_common,
                consistency=round(percentage(count, total), 2),
                distribution=dict(sorted(counter.items())),
            )
        return stats

    def _breakdown(
        self, resources: list[ResourceSnapshot], violations: list[Violation]
    ) -> dict[str, ResourceBreakdown]:
        counts = Counter(v.resource_id for v in violations)
        return {
            r.resource_id: ResourceBreakdown(
                resource_id=r.resource_id,
                resource_name=r.name,
                compliant=counts[r.resource_id] == 0,
                violation_count=counts[r.resource_id],
            )
            for r in resources
        }

    def _metrics(
        self,
        resources: list[ResourceSnapshot],
        patterns: dict[str, str],
        type_stats: dict[str, TypePatternStats],
        preferences: PolicyPreferences | None,
    ) -> dict:
        total = len(resources)
        distribution = Counter(patterns.values())
        top_pattern, top_count = sorted(distribution.items(), key=lambda kv: (-kv[1], kv[0]))[0]

        env_patterns = (preferences.expected_environment_patterns() if preferences else []) or list(COMMON_ENVIRONMENTS)
        with_env = sum(1 for r in resources if environment_indicator(r.name, env_patterns))
        with_prefix = sum(
            1 for r in resources
            if any(r.name.lower().startswith(p) for p in RESOURCE_TYPE_PREFIXES.get(r.resource_type.lower(), ()))
        )

        return {
            "total_resources": total,
            "pattern_distribution": {
                pattern: {"count": count, "percentage": round(percentage(count, total), 2)}
                for pattern, count in sorted(distribution.items(), key=lambda kv: (-kv[1], kv[0]))
            },
            "overall_consistency": round(percentage(top_count, total), 2),
            "dominant_pattern": top_pattern,
            "environment_indicator_percentage": round(percentage(with_env, total), 2),
            "resource_type_prefix_percentage": round(percentage(with_prefix, total), 2),
            "type_consistency": {
                t: {"most_common_pattern": s.most_common_pattern, "consistency": s.consistency, "total": s.total}
                for t, s in type_stats.items()
            },
        }

    def _preference_score(
        self,
        resources: list[ResourceSnapshot],
        patterns: dict[str, str],
        violations: list[Violation],
        preferences: PolicyPreferences,
        metrics: dict,
    ) -> float:
        total = len(resources)

        allowed = preferences.effective_naming_patterns()
        if allowed:
            matching = sum(1 for r in resources if patterns[r.resource_id] in allowed)
            preference_compliance = percentage(matching, total)
        else:
            preference_compliance = metrics["overall_consistency"]
        metrics["client_preference_compliance"] = round(preference_compliance, 2)

        expected = preferences.expected_environment_patterns()
        if expected:
            with_env = sum(1 for r in resources if environment_indicator(r.name, expected))
            env_percentage = percentage(with_env, total)
            level = (preferences.environment_indicator_level or "").lower()
            threshold = 90.0 if level == "required" else 70.0
            env_compliance = 100.0 if env_percentage >= threshold else env_percentage
        else:
            env_compliance = 100.0
        metrics["environment_compliance"] = round(env_compliance, 2)

        standard_offenders = {v.resource_id for v in violations if v.rule in STANDARD_RULES}
        standard_penalty = min(percentage(len(standard_offenders), total), 100.0)

        return preference_compliance * 0.5 + env_compliance * 0.25 + (100 - standard_penalty) * 0.25
