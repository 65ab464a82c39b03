"""Shared analyzer types.

Analyzers are pure: the same ``(resources, preferences)`` pair always gives
the same ``AnalysisResult``. Resources that cannot be evaluated are skipped
and listed in ``AnalysisResult.skipped`` rather than aborting the pass.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from compass.api.services.resource_graph import ResourceSnapshot
from compass.schemas.preferences import PolicyPreferences


class Severity(str, Enum):
    """Finding severity. Assigned per rule, never per resource."""

    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


SEVERITY_ORDER = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW]


class AnalyzerKind(str, Enum):
    """Closed set of analyzers. The value doubles as the finding category."""

    NAMING = "NamingConvention"
    TAGGING = "Tagging"


@dataclass(frozen=True)
class Violation:
    """One rule broken by one resource."""

    resource_id: str
    resource_name: str
    resource_type: str
    rule: str
    severity: Severity
    message: str
    suggestion: str | None = None
    missing_tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class SkippedResource:
    resource_id: str | None
    reason: str


@dataclass(frozen=True)
class ResourceBreakdown:
    """Per-resource outcome of one analyzer."""

    resource_id: str
    resource_name: str
    compliant: bool
    violation_count: int
    coverage: float | None = None


@dataclass
class AnalysisResult:
    kind: AnalyzerKind
    score: float
    violations: list[Violation] = field(default_factory=list)
    resource_breakdown: dict[str, ResourceBreakdown] = field(default_factory=dict)
    skipped: list[SkippedResource] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def total_resources(self) -> int:
        return len(self.resource_breakdown)

    @property
    def compliant_resources(self) -> int:
        return sum(1 for item in self.resource_breakdown.values() if item.compliant)

    def severity_counts(self) -> dict[str, int]:
        counts = {severity.value: 0 for severity in SEVERITY_ORDER}
        for violation in self.violations:
            counts[violation.severity.value] += 1
        return counts


class Analyzer(Protocol):
    """Capability every analyzer kind implements."""

    kind: AnalyzerKind

    def analyze(
        self,
        resources: Sequence[ResourceSnapshot],
        preferences: PolicyPreferences | None = None,
    ) -> AnalysisResult:
        ...


def skip_reason(resource: Any) -> str | None:
    """Return why a resource cannot be analyzed, or None if it can."""
    if not isinstance(resource, ResourceSnapshot):
        return f"unexpected resource record {type(resource).__name__}"
    if not isinstance(resource.name, str) or not resource.name.strip():
        return "resource has no name"
    if not isinstance(resource.resource_type, str) or not resource.resource_type.strip():
        return "resource has no type"
    if not isinstance(resource.tags, dict):
        return "resource tags are not a key/value map"
    if any(not isinstance(key, str) for key in resource.tags):
        return "resource has non-string tag keys"
    return None


def partition_resources(
    resources: Sequence[Any],
) -> tuple[list[ResourceSnapshot], list[SkippedResource]]:
    """Split resources into analyzable ones and skipped ones."""
    valid: list[ResourceSnapshot] = []
    skipped: list[SkippedResource] = []
    for resource in resources:
        reason = skip_reason(resource)
        if reason is None:
            valid.append(resource)
        else:
            skipped.append(SkippedResource(getattr(resource, "resource_id", None), reason))
    return valid, skipped


def percentage(part: int | float, whole: int | float) -> float:
    if not whole:
        return 0.0
    return part / whole * 100
