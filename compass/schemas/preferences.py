"""Client policy preferences used by the analyzers.

An empty ``PolicyPreferences()`` means "use the built-in default policy".
"""

import json
import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from compass.models.preferences import ClientPreferences

logger = logging.getLogger(__name__)

ENVIRONMENT_INDICATOR = "Environment indicator"

DEFAULT_ENVIRONMENT_PATTERNS = ["dev", "test", "prod"]

ORGANIZATION_METHOD_PATTERNS = {
    "environment": ["dev", "test", "staging", "prod", "production"],
    "application": ["app", "web", "api", "db", "cache"],
    "business-unit": ["hr", "finance", "ops", "sales", "marketing"],
}

NAMING_STYLE_PATTERNS = {
    "standardized": ["Kebab-case", "Lowercase"],
    "legacy": ["Other", "Uppercase", "Lowercase"],
    "mixed": [],
}

TAGGING_ENFORCEMENT = {
    "comprehensive": "strict",
    "basic": "moderate",
    "minimal": "light",
    "custom": "custom",
}


def _unique(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def _json_list(raw: str | None, field_name: str) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed client preference '{field_name}': {raw[:100]}")
        return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


class PolicyPreferences(BaseModel):
    """Naming, tagging and compliance preferences of one client."""

    model_config = ConfigDict(frozen=True)

    # Naming
    allowed_naming_patterns: list[str] = Field(default_factory=list)
    required_naming_elements: list[str] = Field(default_factory=list)
    environment_indicators: bool = False
    environment_indicator_level: str | None = None
    naming_style: str | None = None
    organization_method: str | None = None

    # Tagging
    required_tags: list[str] = Field(default_factory=list)
    selected_tags: list[str] = Field(default_factory=list)
    custom_tags: list[str] = Field(default_factory=list)
    enforce_tag_compliance: bool = True
    tagging_approach: str | None = None

    # Compliance
    compliance_frameworks: list[str] = Field(default_factory=list)
    selected_compliances: list[str] = Field(default_factory=list)
    no_specific_requirements: bool = False

    @classmethod
    def from_model(cls, row: "ClientPreferences") -> "PolicyPreferences":
        """Build preferences from the stored ClientPreferences row."""
        return cls(
            allowed_naming_patterns=_json_list(row.allowed_naming_patterns, "allowed_naming_patterns"),
            required_naming_elements=_json_list(row.required_naming_elements, "required_naming_elements"),
            environment_indicators=bool(row.environment_indicators),
            environment_indicator_level=row.environment_indicator_level,
            naming_style=row.naming_style,
            organization_method=row.organization_method,
            required_tags=_json_list(row.required_tags, "required_tags"),
            selected_tags=_json_list(row.selected_tags, "selected_tags"),
            custom_tags=_json_list(row.custom_tags, "custom_tags"),
            enforce_tag_compliance=bool(row.enforce_tag_compliance),
            tagging_approach=row.tagging_approach,
            compliance_frameworks=_json_list(row.compliance_frameworks, "compliance_frameworks"),
            selected_compliances=_json_list(row.selected_compliances, "selected_compliances"),
            no_specific_requirements=bool(row.no_specific_requirements),
        )

    # -------------------------------------------------------------------------
    # Naming
    # -------------------------------------------------------------------------

    @property
    def has_naming_preferences(self) -> bool:
        return bool(
            self.allowed_naming_patterns
            or self.required_naming_elements
            or self.naming_style
            or self.environment_indicators_required()
        )

    def effective_naming_patterns(self) -> list[str]:
        """Allowed patterns, including those implied by the naming style."""
        patterns = list(self.allowed_naming_patterns)
        if self.naming_style:
            patterns.extend(NAMING_STYLE_PATTERNS.get(self.naming_style.lower(), []))
        return _unique(patterns)

    def environment_indicators_required(self) -> bool:
        return (
            self.environment_indicators
            or (self.environment_indicator_level or "").lower() == "required"
            or ENVIRONMENT_INDICATOR in self.required_naming_elements
        )

    def expected_environment_patterns(self) -> list[str]:
        """Name fragments that count as an environment indicator."""
        if not self.environment_indicators_required():
            return []
        method = (self.organization_method or "").lower()
        return list(ORGANIZATION_METHOD_PATTERNS.get(method, DEFAULT_ENVIRONMENT_PATTERNS))

    # -------------------------------------------------------------------------
    # Tagging
    # -------------------------------------------------------------------------

    @property
    def has_tagging_preferences(self) -> bool:
        return bool(self.required_tags or self.selected_tags or self.custom_tags or self.tagging_approach)

    def effective_required_tags(self) -> list[str]:
        """Required, selected and custom tags, de-duplicated case-insensitively."""
        tags: list[str] = []
        seen: set[str] = set()
        for tag in [*self.required_tags, *self.selected_tags, *self.custom_tags]:
            key = tag.strip().lower()
            if key and key not in seen:
                seen.add(key)
                tags.append(tag.strip())
        return tags

    def tagging_enforcement_level(self) -> str:
        """none, strict, moderate, light or custom."""
        if not self.enforce_tag_compliance:
            return "none"
        return TAGGING_ENFORCEMENT.get((self.tagging_approach or "").lower(), "moderate")
