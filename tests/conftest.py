"""Shared test fixtures."""

import os

# Keep module-level engine and scheduler away from disk and background jobs
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ALLOW_PLATFORM_CREDENTIAL_FALLBACK", "false")

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from compass.core.config import Settings
from compass.core.database import Base, session_scope
from compass.models import (
    AzureEnvironment,
    Client,
    LicensePlan,
    OrganizationSubscription,
    UsageCounter,
)
from tests.fixtures import CLIENT_ID, ENV_ID, ORG_ID, SUB_A, SUB_B


@pytest.fixture
def engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """get_db_context-style unit of work bound to the test engine."""
    return session_scope(sessionmaker(autocommit=False, autoflush=False, bind=engine))


@pytest.fixture
def db_session(engine):
    """A plain session for assertions; expire_on_commit off for convenience."""
    session = sessionmaker(bind=engine, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        scheduler_enabled=False,
        allow_platform_credential_fallback=False,
        oauth_client_id="compass-app",
        oauth_client_secret="not-a-secret",
        resource_graph_base_delay=0.0,
        resource_graph_max_delay=0.0,
        max_parallel_subscriptions=2,
    )


@pytest.fixture
def seed(session_factory):
    """Factory creating an organization with a plan, a client and an environment."""

    def _seed(
        organization_id: str = ORG_ID,
        max_assessments: int | None = 10,
        usage: int = 0,
        subscription_status: str = "Active",
        subscription_ids: list[str] | None = None,
        with_client: bool = True,
        with_plan: bool = True,
        environment_id: str = ENV_ID,
        client_id: str = CLIENT_ID,
    ) -> dict:
        with session_factory() as db:
            if with_plan:
                plan = LicensePlan(
                    id=str(uuid.uuid4()),
                    name=f"plan-{uuid.uuid4().hex[:8]}",
                    max_assessments_per_month=max_assessments,
                    max_subscriptions=5,
                    max_environments=3,
                    includes_api_access=True,
                )
                db.add(plan)
                db.flush()
                db.add(OrganizationSubscription(
                    organization_id=organization_id,
                    plan_id=plan.id,
                    status=subscription_status,
                    started_at=datetime.utcnow() - timedelta(days=10),
                ))
            if usage:
                now = datetime.utcnow()
                db.add(UsageCounter(
                    organization_id=organization_id,
                    metric_type="AssessmentRun",
                    billing_period=f"{now.year:04d}-{now.month:02d}",
                    count=usage,
                ))
            if with_client:
                db.add(Client(id=client_id, organization_id=organization_id, name="Contoso"))
                db.flush()
            environment = AzureEnvironment(
                id=environment_id,
                organization_id=organization_id,
                client_id=client_id if with_client else None,
                name="Contoso Production",
                tenant_id="55555555-5555-5555-5555-555555555555",
            )
            environment.subscription_ids = [SUB_A, SUB_B] if subscription_ids is None else subscription_ids
            db.add(environment)
        return {
            "organization_id": organization_id,
            "client_id": client_id if with_client else None,
            "environment_id": environment_id,
        }

    return _seed


