"""Policy analyzers.

Dispatch is over the closed ``AnalyzerKind`` enum; each kind maps to one
analyzer implementing ``analyze(resources, preferences)``.
"""

from compass.api.services.analyzers.base import (
    AnalysisResult,
    Analyzer,
    AnalyzerKind,
    ResourceBreakdown,
    Severity,
    SkippedResource,
    Violation,
)
from compass.api.services.analyzers.naming import NamingAnalyzer
from compass.api.services.analyzers.tagging import TaggingAnalyzer
from compass.models.assessment import AssessmentType

ANALYZERS: dict[AnalyzerKind, Analyzer] = {
    AnalyzerKind.NAMING: NamingAnalyzer(),
    AnalyzerKind.TAGGING: TaggingAnalyzer(),
}

ANALYZERS_BY_ASSESSMENT_TYPE: dict[AssessmentType, tuple[AnalyzerKind, ...]] = {
    AssessmentType.NAMING_CONVENTION: (AnalyzerKind.NAMING,),
    AssessmentType.TAGGING: (AnalyzerKind.TAGGING,),
    AssessmentType.GOVERNANCE_FULL: (AnalyzerKind.NAMING, AnalyzerKind.TAGGING),
    AssessmentType.FULL: (AnalyzerKind.NAMING, AnalyzerKind.TAGGING),
}


def get_analyzer(kind: AnalyzerKind) -> Analyzer:
    return ANALYZERS[kind]


def analyzers_for(assessment_type: AssessmentType | str) -> tuple[AnalyzerKind, ...]:
    """Analyzer kinds an assessment type runs, in execution order."""
    return ANALYZERS_BY_ASSESSMENT_TYPE[AssessmentType(assessment_type)]


__all__ = [
    "ANALYZERS",
    "AnalysisResult",
    "Analyzer",
    "AnalyzerKind",
    "NamingAnalyzer",
    "ResourceBreakdown",
    "Severity",
    "SkippedResource",
    "TaggingAnalyzer",
    "Violation",
    "analyzers_for",
    "get_analyzer",
]
