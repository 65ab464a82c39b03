"""Persistence for assessment resources and findings."""

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from compass.api.services.resource_graph import ResourceSnapshot
from compass.core.database import SessionFactory, get_db_context
from compass.core.errors import PersistenceError
from compass.models.assessment import AssessmentFinding, AssessmentResource

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
MAX_CAUSE_LENGTH = 500


def _cause(error: SQLAlchemyError) -> str:
    """Class and driver message of a database error, truncated."""
    detail = str(getattr(error, "orig", None) or error)
    return f"{error.__class__.__name__}: {detail}"[:MAX_CAUSE_LENGTH]


@dataclass(frozen=True)
class Finding:
    """A finding ready to be stored."""

    resource_id: str
    resource_name: str
    resource_type: str
    category: str
    rule: str
    severity: str
    issue: str
    recommendation: str | None = None
    estimated_effort: str | None = None
    id: int | None = None


class FindingsStore:
    """Writes and reads the resources and findings of assessment runs."""

    def __init__(self, session_factory: SessionFactory = get_db_context) -> None:
        self._session_factory = session_factory

    def save_resources(self, assessment_id: str, resources: Sequence[ResourceSnapshot]) -> int:
        """Store the inventory snapshot of a run in one transaction.

        Raises:
            PersistenceError: If the write fails; nothing is stored then
        """
        try:
            with self._session_factory() as db:
                db.add_all([
                    AssessmentResource(
                        assessment_id=assessment_id,
                        resource_id=r.resource_id,
                        name=r.name,
                        resource_type=r.resource_type,
                        resource_group=r.resource_group,
                        location=r.location,
                        subscription_id=r.subscription_id,
                        kind=r.kind,
                        sku=r.sku,
                        tags_json=json.dumps(r.tags) if r.tags else None,
                    )
                    for r in resources
                ])
        except SQLAlchemyError as e:
            logger.error(f"Failed to store resources for assessment {assessment_id}: {e}")
            raise PersistenceError(f"Failed to store resources: {_cause(e)}") from e

        logger.debug(f"Stored {len(resources)} resources for assessment {assessment_id}")
        return len(resources)

    def save_findings(self, assessment_id: str, findings: Sequence[Finding]) -> int:
        """Store all findings of a run in one transaction.

        Raises:
            PersistenceError: If the write fails; nothing is stored then
        """
        try:
            with self._session_factory() as db:
                db.add_all([
                    AssessmentFinding(
                        assessment_id=assessment_id,
                        resource_id=f.resource_id,
                        resource_name=f.resource_name,
                        resource_type=f.resource_type,
                        category=f.category,
                        rule=f.rule,
                        severity=f.severity,
                        issue=f.issue,
                        recommendation=f.recommendation,
                        estimated_effort=f.estimated_effort,
                    )
                    for f in findings
                ])
        except SQLAlchemyError as e:
            logger.error(f"Failed to store findings for assessment {assessment_id}: {e}")
            raise PersistenceError(f"Failed to store findings: {_cause(e)}") from e

        logger.debug(f"Stored {len(findings)} findings for assessment {assessment_id}")
        return len(findings)

    def get_findings(
        self,
        assessment_id: str,
        category: str | None = None,
        severity: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Finding], int]:
        """Return one page of findings and the total matching count."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        with self._session_factory() as db:
            query = db.query(AssessmentFinding).filter(AssessmentFinding.assessment_id == assessment_id)

            # Apply filters
            if category:
                query = query.filter(AssessmentFinding.category == category)
            if severity:
                query = query.filter(AssessmentFinding.severity == severity)

            total = query.count()
            rows = query.order_by(AssessmentFinding.id.asc()).offset(offset).limit(limit).all()
            return [
                Finding(
                    resource_id=row.resource_id,
                    resource_name=row.resource_name,
                    resource_type=row.resource_type,
                    category=row.category,
                    rule=row.rule,
                    severity=row.severity,
                    issue=row.issue,
                    recommendation=row.recommendation,
                    estimated_effort=row.estimated_effort,
                    id=row.id,
                )
                for row in rows
            ], total

    def get_resources(self, assessment_id: str) -> list[ResourceSnapshot]:
        with self._session_factory() as db:
            rows = (
                db.query(AssessmentResource)
                .filter(AssessmentResource.assessment_id == assessment_id)
                .order_by(AssessmentResource.id.asc())
                .all()
            )
            return [
                ResourceSnapshot(
                    resource_id=row.resource_id,
                    name=row.name,
                    resource_type=row.resource_type,
                    subscription_id=row.subscription_id,
                    resource_group=row.resource_group,
                    location=row.location,
                    tags=row.tags,
                    sku=row.sku,
                    kind=row.kind,
                )
                for row in rows
            ]

    def count_findings(self, assessment_id: str) -> int:
        with self._session_factory() as db:
            return db.query(AssessmentFinding).filter(AssessmentFinding.assessment_id == assessment_id).count()

    def delete_for_assessment(self, assessment_id: str) -> int:
        """Remove resources and findings of a run. Returns rows deleted."""
        with self._session_factory() as db:
            findings = (
                db.query(AssessmentFinding)
                .filter(AssessmentFinding.assessment_id == assessment_id)
                .delete(synchronize_session=False)
            )
            resources = (
                db.query(AssessmentResource)
                .filter(AssessmentResource.assessment_id == assessment_id)
                .delete(synchronize_session=False)
            )
        return findings + resources
