"""License gate: plan limits, feature flags and usage counting.

Usage is counted per (organization, metric, billing period). The billing
period is the UTC calendar month (``YYYY-MM``) unless the plan sets a
``billing_anchor_day``, in which case a period starts on that day of the
month and is labelled by the month it starts in.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from compass.core.config import Settings, get_settings
from compass.core.database import SessionFactory, get_db_context
from compass.core.errors import FailureReason, LimitReachedError
from compass.models.assessment import Assessment
from compass.models.environment import AzureEnvironment
from compass.models.license import LicensePlan, OrganizationSubscription, UsageCounter

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("Active", "Trial")


class MetricType(str, Enum):
    ASSESSMENT_RUN = "AssessmentRun"
    API_CALL = "APICall"


class Feature(str, Enum):
    API_ACCESS = "api-access"
    WHITE_LABEL = "white-label"
    CUSTOM_BRANDING = "custom-branding"
    PRIORITY_SUPPORT = "priority-support"
    UNLIMITED_ASSESSMENTS = "unlimited-assessments"


@dataclass(frozen=True)
class Admission:
    """Outcome of a license check. ``max_allowed`` None means unlimited."""

    allowed: bool
    reason_code: str | None = None
    current_usage: int = 0
    max_allowed: int | None = None
    message: str | None = None


def billing_period(now: datetime, anchor_day: int | None = None) -> str:
    """Billing period label for ``now``."""
    if not anchor_day or anchor_day <= 1:
        return f"{now.year:04d}-{now.month:02d}"
    if now.day >= anchor_day:
        return f"{now.year:04d}-{now.month:02d}"
    # Before the anchor day the period started last month
    if now.month == 1:
        return f"{now.year - 1:04d}-12"
    return f"{now.year:04d}-{now.month - 1:02d}"


def usage_status(current: int, limit: int | None, warning: float = 0.8, critical: float = 0.9) -> str:
    """Threshold label for a usage figure."""
    if limit is None:
        return "ok"
    if limit <= 0:
        return "exceeded"
    ratio = current / limit
    if ratio >= 1.0:
        return "exceeded"
    if ratio >= critical:
        return "critical"
    if ratio >= warning:
        return "warning"
    return "ok"


class LicenseGate:
    """Answers admission and feature questions for an organization."""

    def __init__(
        self,
        session_factory: SessionFactory = get_db_context,
        settings: Settings | None = None,
        clock=datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self._clock = clock

    # =========================================================================
    # Lookups
    # =========================================================================

    def _subscription(self, db: Session, organization_id: str) -> tuple[OrganizationSubscription, LicensePlan] | None:
        row = (
            db.query(OrganizationSubscription, LicensePlan)
            .join(LicensePlan, OrganizationSubscription.plan_id == LicensePlan.id)
            .filter(OrganizationSubscription.organization_id == organization_id)
            .order_by(OrganizationSubscription.started_at.desc())
            .first()
        )
        return tuple(row) if row else None

    def _inactive_reason(self, subscription: OrganizationSubscription) -> str | None:
        if subscription.status not in ACTIVE_SUBSCRIPTION_STATUSES:
            return FailureReason.SUBSCRIPTION_EXPIRED.value
        if (
            subscription.status == "Trial"
            and subscription.trial_ends_at is not None
            and subscription.trial_ends_at <= self._clock()
        ):
            return FailureReason.SUBSCRIPTION_EXPIRED.value
        return None

    def _current_usage(self, db: Session, organization_id: str, metric: str, period: str) -> int:
        counter = (
            db.query(UsageCounter)
            .filter(
                UsageCounter.organization_id == organization_id,
                UsageCounter.metric_type == metric,
                UsageCounter.billing_period == period,
            )
            .first()
        )
        return counter.count if counter else 0

    def _period_for(self, plan: LicensePlan | None) -> str:
        return billing_period(self._clock(), plan.billing_anchor_day if plan else None)

    # =========================================================================
    # Admission
    # =========================================================================

    def can_start_assessment(self, organization_id: str) -> Admission:
        """Check whether the organization may start another assessment."""
        with self._session_factory() as db:
            found = self._subscription(db, organization_id)
            if found is None:
                return Admission(
                    allowed=False,
                    reason_code=FailureReason.NO_SUBSCRIPTION.value,
                    message="Organization has no subscription",
                )
            subscription, plan = found

            inactive = self._inactive_reason(subscription)
            if inactive:
                return Admission(
                    allowed=False,
                    reason_code=inactive,
                    message=f"Subscription is {subscription.status.lower()}",
                )

            current = self._current_usage(
                db, organization_id, MetricType.ASSESSMENT_RUN.value, self._period_for(plan)
            )
            limit = plan.max_assessments_per_month
            if limit is None:
                return Admission(allowed=True, current_usage=current)

            if current >= limit:
                logger.info(f"Organization {organization_id} reached assessment limit ({current}/{limit})")
                return Admission(
                    allowed=False,
                    reason_code=FailureReason.LIMIT_REACHED.value,
                    current_usage=current,
                    max_allowed=limit,
                    message=f"Monthly assessment limit reached ({current}/{limit})",
                )
            return Admission(allowed=True, current_usage=current, max_allowed=limit)

    def can_add_subscriptions(self, organization_id: str, current_count: int, additional: int = 1) -> Admission:
        """Check the plan's cap on Azure subscriptions per environment."""
        with self._session_factory() as db:
            found = self._subscription(db, organization_id)
            if found is None:
                return Admission(allowed=False, reason_code=FailureReason.NO_SUBSCRIPTION.value)
            _, plan = found
            limit = plan.max_subscriptions
            if limit is None or current_count + additional <= limit:
                return Admission(allowed=True, current_usage=current_count, max_allowed=limit)
            return Admission(
                allowed=False,
                reason_code=FailureReason.LIMIT_REACHED.value,
                current_usage=current_count,
                max_allowed=limit,
                message=f"Plan allows {limit} subscriptions",
            )

    def can_create_environment(self, organization_id: str) -> Admission:
        with self._session_factory() as db:
            found = self._subscription(db, organization_id)
            if found is None:
                return Admission(allowed=False, reason_code=FailureReason.NO_SUBSCRIPTION.value)
            _, plan = found
            current = (
                db.query(AzureEnvironment)
                .filter(
                    AzureEnvironment.organization_id == organization_id,
                    AzureEnvironment.is_active.is_(True),
                )
                .count()
            )
            limit = plan.max_environments
            if limit is None or current < limit:
                return Admission(allowed=True, current_usage=current, max_allowed=limit)
            return Admission(
                allowed=False,
                reason_code=FailureReason.LIMIT_REACHED.value,
                current_usage=current,
                max_allowed=limit,
                message=f"Plan allows {limit} environments",
            )

    def check_feature(self, organization_id: str, feature: Feature | str) -> bool:
        """Whether the organization's active plan includes ``feature``."""
        feature = Feature(feature)
        with self._session_factory() as db:
            found = self._subscription(db, organization_id)
            if found is None:
                return False
            subscription, plan = found
            if self._inactive_reason(subscription):
                return False

            flags = {
                Feature.API_ACCESS: plan.includes_api_access,
                Feature.WHITE_LABEL: plan.includes_white_label,
                Feature.CUSTOM_BRANDING: plan.includes_custom_branding,
                Feature.PRIORITY_SUPPORT: plan.includes_priority_support,
                Feature.UNLIMITED_ASSESSMENTS: plan.max_assessments_per_month is None,
            }
            return bool(flags[feature])

    # =========================================================================
    # Usage
    # =========================================================================

    def record_usage(
        self,
        organization_id: str,
        metric_type: MetricType | str = MetricType.ASSESSMENT_RUN,
        limit: int | None = None,
    ) -> int:
        """Atomically increment the usage counter and return the new count.

        The increment is a single ``UPDATE ... SET count = count + 1``; with
        ``limit`` set it also requires ``count < limit``, so concurrent
        callers that all passed admission cannot push the counter past the
        plan limit. The first use of a period inserts the row, and an insert
        that loses a race against a concurrent insert is retried once as an
        update.

        Raises:
            LimitReachedError: ``limit`` is set and already used up
        """
        metric = MetricType(metric_type).value

        with self._session_factory() as db:
            found = self._subscription(db, organization_id)
            period = self._period_for(found[1] if found else None)

        for attempt in range(2):
            try:
                with self._session_factory() as db:
                    count = self._increment(db, organization_id, metric, period, limit)
            except IntegrityError:
                if attempt == 1:
                    raise
                logger.debug(f"Usage counter insert raced for {organization_id}/{metric}, retrying")
                continue
            if count is None:
                logger.info(f"Organization {organization_id} refused {metric}: limit {limit} reached")
                raise LimitReachedError(limit, limit)
            return count

        raise RuntimeError("Unexpected usage counter failure")

    def release_usage(self, organization_id: str, metric_type: MetricType | str = MetricType.ASSESSMENT_RUN) -> None:
        """Undo one ``record_usage`` whose work was never created."""
        metric = MetricType(metric_type).value
        with self._session_factory() as db:
            found = self._subscription(db, organization_id)
            period = self._period_for(found[1] if found else None)
            db.execute(
                update(UsageCounter)
                .where(
                    UsageCounter.organization_id == organization_id,
                    UsageCounter.metric_type == metric,
                    UsageCounter.billing_period == period,
                    UsageCounter.count > 0,
                )
                .values(count=UsageCounter.count - 1, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )

    def _increment(
        self, db: Session, organization_id: str, metric: str, period: str, limit: int | None
    ) -> int | None:
        """New count, or None when the counter already sits at ``limit``."""
        filters = (
            UsageCounter.organization_id == organization_id,
            UsageCounter.metric_type == metric,
            UsageCounter.billing_period == period,
        )
        statement = update(UsageCounter).where(*filters)
        if limit is not None:
            statement = statement.where(UsageCounter.count < limit)
        result = db.execute(
            statement
            .values(count=UsageCounter.count + 1, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return int(db.query(UsageCounter.count).filter(*filters).scalar())

        if db.query(UsageCounter.id).filter(*filters).first() is not None:
            return None
        if limit is not None and limit < 1:
            return None
        db.add(UsageCounter(
            organization_id=organization_id,
            metric_type=metric,
            billing_period=period,
            count=1,
            updated_at=self._clock(),
        ))
        db.flush()
        return 1

    def get_usage_report(self, organization_id: str) -> dict:
        """Usage against plan limits with threshold status."""
        warning = self.settings.usage_warning_threshold
        critical = self.settings.usage_critical_threshold

        with self._session_factory() as db:
            found = self._subscription(db, organization_id)
            plan = found[1] if found else None
            period = self._period_for(plan)

            assessments = self._current_usage(db, organization_id, MetricType.ASSESSMENT_RUN.value, period)
            api_calls = self._current_usage(db, organization_id, MetricType.API_CALL.value, period)
            environments = (
                db.query(AzureEnvironment)
                .filter(
                    AzureEnvironment.organization_id == organization_id,
                    AzureEnvironment.is_active.is_(True),
                )
                .count()
            )
            completed = (
                db.query(Assessment)
                .filter(Assessment.organization_id == organization_id, Assessment.status == "Completed")
                .count()
            )

            def metric(current: int, limit: int | None) -> dict:
                return {
                    "current": current,
                    "limit": limit,
                    "percentage": round(current / limit * 100, 1) if limit else None,
                    "status": usage_status(current, limit, warning, critical),
                }

            report = {
                "organization_id": organization_id,
                "billing_period": period,
                "plan": plan.name if plan else None,
                "subscription_status": found[0].status if found else None,
                "assessments": metric(assessments, plan.max_assessments_per_month if plan else 0),
                "environments": metric(environments, plan.max_environments if plan else 0),
                "api_calls": {"current": api_calls},
                "completed_assessments_total": completed,
            }

        report["features"] = {
            feature.value: self.check_feature(organization_id, feature) if plan else False
            for feature in Feature
        }
        return report
