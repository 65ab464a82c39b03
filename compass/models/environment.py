"""MSP client and Azure environment models."""

import json
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from compass.core.database import Base


class Client(Base):
    """MSP client (sub-tenant) owned by an organization."""

    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Client {self.name}>"


class AzureEnvironment(Base):
    """A named set of subscriptions plus the tenant they live in.

    Owned by an organization directly, or by one of its clients. Only the
    connection-test fields are written by the assessment engine.
    """

    __tablename__ = "azure_environments"
    __table_args__ = (
        Index("idx_azure_environments_org", "organization_id"),
        Index("idx_azure_environments_client", "client_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str | None] = mapped_column(String(36))
    client_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("clients.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    subscription_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    service_principal_id: Mapped[str | None] = mapped_column(String(36))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    last_connection_test_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_connection_test_ok: Mapped[bool | None] = mapped_column(Boolean)
    last_connection_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<AzureEnvironment {self.name} ({self.tenant_id})>"

    @property
    def subscription_ids(self) -> list[str]:
        return json.loads(self.subscription_ids_json or "[]")

    @subscription_ids.setter
    def subscription_ids(self, value: list[str]) -> None:
        self.subscription_ids_json = json.dumps(list(value))
