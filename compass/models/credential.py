"""Delegated OAuth credential model."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from compass.core.database import Base


class OAuthCredential(Base):
    """Access and refresh token pair for one (client, organization).

    ``status`` is ``Active`` until the identity provider rejects the refresh
    token (``Invalid``) or the consent is withdrawn (``Revoked``).
    """

    __tablename__ = "oauth_credentials"
    __table_args__ = (
        UniqueConstraint("client_id", "organization_id", name="uq_oauth_client_org"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(36), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    scope: Mapped[str | None] = mapped_column(String(1000))
    status: Mapped[str] = mapped_column(String(20), default="Active")
    last_error: Mapped[str | None] = mapped_column(Text)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<OAuthCredential client={self.client_id} org={self.organization_id} {self.status}>"
