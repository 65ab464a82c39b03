"""Per-client policy preference model."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from compass.core.database import Base


class ClientPreferences(Base):
    """Naming, tagging and compliance preferences for a client.

    List-valued columns hold JSON arrays.
    """

    __tablename__ = "client_preferences"
    __table_args__ = (
        UniqueConstraint("client_id", "organization_id", name="uq_client_preferences"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id: Mapped[str] = mapped_column(String(36), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Naming
    allowed_naming_patterns: Mapped[str | None] = mapped_column(Text)  # ["Kebab-case", "Lowercase"]
    required_naming_elements: Mapped[str | None] = mapped_column(Text)  # ["Environment indicator"]
    environment_indicators: Mapped[bool] = mapped_column(Boolean, default=False)
    environment_indicator_level: Mapped[str | None] = mapped_column(String(20))  # required, recommended, optional
    naming_style: Mapped[str | None] = mapped_column(String(20))  # standardized, mixed, legacy
    organization_method: Mapped[str | None] = mapped_column(String(30))  # environment, application, business-unit

    # Tagging
    required_tags: Mapped[str | None] = mapped_column(Text)
    selected_tags: Mapped[str | None] = mapped_column(Text)
    custom_tags: Mapped[str | None] = mapped_column(Text)
    enforce_tag_compliance: Mapped[bool] = mapped_column(Boolean, default=True)
    tagging_approach: Mapped[str | None] = mapped_column(String(20))  # comprehensive, basic, minimal, custom

    # Compliance
    compliance_frameworks: Mapped[str | None] = mapped_column(Text)
    selected_compliances: Mapped[str | None] = mapped_column(Text)
    no_specific_requirements: Mapped[bool] = mapped_column(Boolean, default=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<ClientPreferences client={self.client_id}>"
