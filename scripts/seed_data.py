#!/usr/bin/env python3
"""Seed database with sample data for development/testing.

Creates license plans, one organization on the Professional plan, a client
with naming/tagging preferences and an Azure environment, then prints a
bearer token for calling the API as that organization.
"""

import json
import sys
import uuid
from datetime import datetime
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from compass.core.auth import jwt_manager
from compass.core.database import SessionLocal, init_db
from compass.models import (
    AzureEnvironment,
    Client,
    ClientPreferences,
    LicensePlan,
    OrganizationSubscription,
)

ORGANIZATION_ID = "00000000-0000-0000-0000-00000000a001"


def seed_plans(db):
    """Create the standard license plans."""
    plans = [
        LicensePlan(name="Starter", max_assessments_per_month=5, max_subscriptions=3, max_environments=1),
        LicensePlan(
            name="Professional",
            max_assessments_per_month=50,
            max_subscriptions=20,
            max_environments=5,
            includes_api_access=True,
            includes_custom_branding=True,
        ),
        LicensePlan(
            name="Enterprise",
            max_assessments_per_month=None,
            max_subscriptions=None,
            max_environments=None,
            includes_api_access=True,
            includes_white_label=True,
            includes_custom_branding=True,
            includes_priority_support=True,
        ),
    ]
    db.add_all(plans)
    db.flush()
    return {plan.name: plan for plan in plans}


def seed_organization(db, plan):
    """Create an organization subscription, a client and its environment."""
    db.add(OrganizationSubscription(
        organization_id=ORGANIZATION_ID,
        plan_id=plan.id,
        status="Active",
        started_at=datetime.utcnow(),
    ))

    client = Client(id=str(uuid.uuid4()), organization_id=ORGANIZATION_ID, name="Contoso Ltd")
    db.add(client)
    db.flush()

    db.add(ClientPreferences(
        client_id=client.id,
        organization_id=ORGANIZATION_ID,
        allowed_naming_patterns=json.dumps(["Kebab-case"]),
        environment_indicators=True,
        required_tags=json.dumps(["Environment", "Owner", "CostCenter"]),
        enforce_tag_compliance=True,
        tagging_approach="comprehensive",
    ))

    environment = AzureEnvironment(
        id=str(uuid.uuid4()),
        organization_id=ORGANIZATION_ID,
        client_id=client.id,
        name="Contoso Production",
        tenant_id="11111111-1111-1111-1111-111111111111",
    )
    environment.subscription_ids = [str(uuid.uuid4()), str(uuid.uuid4())]
    db.add(environment)
    db.commit()
    return client, environment


def main():
    """Seed the database."""
    print("Initializing database...")
    init_db()

    print("Seeding data...")
    db = SessionLocal()

    try:
        # Check if data already exists
        existing = db.query(LicensePlan).first()
        if existing:
            print("Database already seeded. Clear data/ folder to re-seed.")
            return

        plans = seed_plans(db)
        print(f"  ✓ Created {len(plans)} license plans")

        client, environment = seed_organization(db, plans["Professional"])
        print(f"  ✓ Created client {client.name} ({client.id})")
        print(f"  ✓ Created environment {environment.name} ({environment.id})")

        token = jwt_manager.create_access_token("seed-user", ORGANIZATION_ID, roles=["admin"])
        print(f"\nBearer token for organization {ORGANIZATION_ID} (valid with this JWT_SECRET_KEY):\n{token}")
        print("\nSeeding complete! Run 'uvicorn compass.main:app --reload' to start.")

    finally:
        db.close()


if __name__ == "__main__":
    main()
