"""Tests for the naming and tagging analyzers."""

import pytest

from compass.api.services.analyzers import (
    AnalyzerKind,
    NamingAnalyzer,
    Severity,
    TaggingAnalyzer,
    analyzers_for,
)
from compass.api.services.analyzers.naming import classify_naming_pattern, convert_to_pattern
from compass.api.services.analyzers.tagging import DEFAULT_REQUIRED_TAGS, missing_tags
from compass.schemas.preferences import PolicyPreferences
from tests.fixtures import make_resource

NIC = "Microsoft.Network/networkInterfaces"


class TestNamingPatterns:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("vm-prod-001", "Kebab-case"),
            ("vm_prod_001", "Snake_case"),
            ("VMPROD", "Uppercase"),
            ("vmprod01", "Lowercase"),
            ("VmProd", "PascalCase"),
            ("vmProd", "CamelCase"),
            ("0d3c6f8e-5d0a-4a4e-9d1b-2f7f3c1b9a10", "UUID"),
        ],
    )
    def test_classify_naming_pattern(self, name, expected):
        assert classify_naming_pattern(name) == expected

    def test_convert_to_pattern(self):
        assert convert_to_pattern("web_front_end", "Kebab-case") == "web-front-end"
        assert convert_to_pattern("web-front-end", "PascalCase") == "WebFrontEnd"
        assert convert_to_pattern("web-front-end", "CamelCase") == "webFrontEnd"


class TestNamingAnalyzer:
    """Test suite for NamingAnalyzer."""

    def test_default_rules(self):
        resources = [
            make_resource("vm-prod-001"),
            make_resource("vm-test-002"),
            make_resource("web server!"),
        ]

        result = NamingAnalyzer().analyze(resources)

        rules = sorted(v.rule for v in result.violations)
        assert rules == ["InconsistentPattern", "InvalidCharacters", "MissingResourceTypePrefix"]
        assert all(v.resource_name == "web server!" for v in result.violations)
        assert result.score == pytest.approx(66.67)
        assert result.metrics["mode"] == "default"
        assert result.compliant_resources == 2

    def test_severity_is_fixed_per_rule(self):
        result = NamingAnalyzer().analyze([make_resource("bad name"), make_resource("vm-ok")])
        by_rule = {v.rule: v.severity for v in result.violations}
        assert by_rule["InvalidCharacters"] == Severity.HIGH
        assert by_rule["MissingResourceTypePrefix"] == Severity.MEDIUM

    def test_long_name(self):
        result = NamingAnalyzer().analyze([make_resource("vm-" + "a" * 70)])
        violation = next(v for v in result.violations if v.rule == "NameTooLong")
        assert len(violation.suggestion) == 63

    def test_client_preferences(self):
        preferences = PolicyPreferences(allowed_naming_patterns=["Kebab-case"], environment_indicators=True)
        resources = [make_resource("vm-prod-001"), make_resource("vmbackup01")]

        result = NamingAnalyzer().analyze(resources, preferences)

        rules = sorted(v.rule for v in result.violations)
        assert rules == ["ClientPreferenceViolation", "MissingEnvironmentIndicator"]
        assert result.metrics["mode"] == "client_preferences"
        assert result.metrics["client_preference_compliance"] == 50.0
        assert result.score == 62.5

    def test_empty_inventory_scores_100(self):
        result = NamingAnalyzer().analyze([])
        assert result.score == 100.0
        assert result.violations == []

    def test_malformed_resource_is_skipped(self):
        resources = [make_resource("vm-prod-001"), {"name": "not a snapshot"}]

        result = NamingAnalyzer().analyze(resources)

        assert result.total_resources == 1
        assert len(result.skipped) == 1
        assert result.score == 100.0

    def test_is_deterministic(self):
        resources = [make_resource("vm-prod-001"), make_resource("VmBackup"), make_resource("web_01")]
        analyzer = NamingAnalyzer()
        assert analyzer.analyze(resources) == analyzer.analyze(resources)
        assert analyzer.analyze(resources).score == analyzer.analyze(list(reversed(resources))).score


class TestTaggingAnalyzer:
    """Test suite for TaggingAnalyzer."""

    def test_missing_required_tag_with_preferences(self):
        preferences = PolicyPreferences(required_tags=["env", "owner"])
        resource = make_resource("vm-prod-001", tags={"env": "prod"})

        result = TaggingAnalyzer().analyze([resource], preferences)

        assert len(result.violations) == 1
        violation = result.violations[0]
        assert violation.rule == "MissingRequiredTags"
        assert violation.missing_tags == ("owner",)
        assert result.metrics["required_tag_coverage"] == 50.0
        assert result.resource_breakdown[resource.resource_id].coverage == 50.0

    def test_required_tags_are_case_insensitive(self):
        assert missing_tags({"ENV": "prod", "Owner": "ops"}, ["env", "owner", "project"]) == ["project"]

    def test_untagged_resource_gets_single_violation(self):
        result = TaggingAnalyzer().analyze([make_resource("vm-prod-001")])

        assert len(result.violations) == 1
        violation = result.violations[0]
        assert violation.rule == "NoTags"
        assert violation.severity == Severity.HIGH
        assert violation.missing_tags == DEFAULT_REQUIRED_TAGS

    def test_default_required_tags_only_apply_to_listed_types(self):
        result = TaggingAnalyzer().analyze([make_resource("nic-01", resource_type=NIC, tags={"app": "web"})])
        assert result.violations == []
        assert result.score == 100.0

    def test_empty_values_and_inconsistent_keys(self):
        resources = [
            make_resource("nic-01", resource_type=NIC, tags={"Environment": "prod"}),
            make_resource("nic-02", resource_type=NIC, tags={"Environment": "dev"}),
            make_resource("nic-03", resource_type=NIC, tags={"environment": "test", "Owner": ""}),
        ]

        result = TaggingAnalyzer().analyze(resources)

        rules = sorted(v.rule for v in result.violations)
        assert rules == ["EmptyTagValues", "InconsistentTagNaming"]
        assert all(v.resource_name == "nic-03" for v in result.violations)
        usage = {item["tag"]: item["count"] for item in result.metrics["tag_usage"]}
        assert usage == {"Environment": 3, "Owner": 1}

    def test_no_enforcement_suppresses_missing_tags(self):
        preferences = PolicyPreferences(required_tags=["env"], enforce_tag_compliance=False)
        result = TaggingAnalyzer().analyze([make_resource("vm-01", tags={"app": "x"})], preferences)
        assert result.violations == []

    def test_estate_wide_missing_tag(self):
        preferences = PolicyPreferences(required_tags=["CostCenter"])
        resources = [make_resource(f"vm-{i}", tags={"app": "x"}) for i in range(4)]

        result = TaggingAnalyzer().analyze(resources, preferences)

        assert result.metrics["required_tag_compliance"]["CostCenter"]["missing_estate_wide"] is True

    def test_is_idempotent(self):
        resources = [make_resource("vm-01", tags={"Owner": "ops"}), make_resource("vm-02")]
        analyzer = TaggingAnalyzer()
        assert analyzer.analyze(resources) == analyzer.analyze(resources)


def test_assessment_type_dispatch():
    assert analyzers_for("NamingConvention") == (AnalyzerKind.NAMING,)
    assert analyzers_for("Tagging") == (AnalyzerKind.TAGGING,)
    assert analyzers_for("Full") == (AnalyzerKind.NAMING, AnalyzerKind.TAGGING)
