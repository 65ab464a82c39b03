"""Assessment orchestrator.

Admits assessment requests against the license gate, then runs each
assessment as its own ``asyncio.Task`` through a fixed pipeline:

    resolve credential -> fetch inventory -> store resources
        -> analyze -> persist findings -> score -> Completed

Lifecycle: ``Pending -> InProgress -> {Completed | Failed}``. Terminal
states are final. Every failure is written to the assessment as
``failure_reason`` plus detail; background runs never raise to the caller.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from compass.api.services.analyzers import AnalysisResult, AnalyzerKind, analyzers_for, get_analyzer
from compass.api.services.credential_vault import (
    CredentialSource,
    CredentialVault,
    PlatformCredential,
    TokenResult,
    get_credential_vault,
)
from compass.api.services.findings_store import Finding, FindingsStore
from compass.api.services.license_gate import LicenseGate, MetricType
from compass.api.services.resource_graph import FetchResult, ResourceGraphClient, ResourceSnapshot
from compass.api.services.results import build_findings, build_summary, weighted_score
from compass.core.config import Settings, get_settings
from compass.core.database import SessionFactory, get_db_context
from compass.core.errors import (
    AssessmentCancelledError,
    AssessmentNotFoundError,
    AssessmentNotReadyError,
    CompassError,
    CredentialInvalidError,
    CredentialMissingError,
    EnvironmentNotFoundError,
    FailureReason,
    InsufficientPermissionError,
    InvalidRequestError,
    InvalidStateTransition,
    LimitReachedError,
    ProviderUnavailableError,
    SubscriptionInactiveError,
)
from compass.models.assessment import Assessment, AssessmentStatus, AssessmentType
from compass.models.environment import AzureEnvironment, Client
from compass.models.preferences import ClientPreferences
from compass.schemas.assessment import (
    AssessmentCreate,
    AssessmentResultResponse,
    AssessmentStatusResponse,
    ConnectionTestResponse,
    FindingListResponse,
    FindingResponse,
    RecommendationResponse,
)
from compass.schemas.preferences import PolicyPreferences

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    AssessmentStatus.PENDING: {AssessmentStatus.IN_PROGRESS, AssessmentStatus.FAILED},
    AssessmentStatus.IN_PROGRESS: {AssessmentStatus.COMPLETED, AssessmentStatus.FAILED},
    AssessmentStatus.COMPLETED: set(),
    AssessmentStatus.FAILED: set(),
}

# All subscriptions failing for one of these reasons fails the run with it
_CREDENTIAL_FETCH_ERRORS = {
    FailureReason.CREDENTIAL_INVALID.value: CredentialInvalidError,
    FailureReason.INSUFFICIENT_PERMISSION.value: InsufficientPermissionError,
}


def _describe(error: CompassError) -> str:
    if error.remediation_hint:
        return f"{error.message}. {error.remediation_hint}"
    return error.message


@dataclass(frozen=True)
class AuthContext:
    """Caller identity passed into every orchestrator operation."""

    organization_id: str
    customer_id: str | None = None
    roles: tuple[str, ...] = ()


# =============================================================================
# Pipeline stage results
# =============================================================================

@dataclass(frozen=True)
class RunPlan:
    assessment_id: str
    organization_id: str
    client_id: str | None
    environment_id: str
    subscription_ids: list[str]
    assessment_type: AssessmentType
    use_client_preferences: bool


@dataclass(frozen=True)
class CredentialStage:
    access_token: str
    source: CredentialSource
    # Set when the platform fallback covered for an unusable delegated token
    delegated_error: CompassError | None = None


@dataclass(frozen=True)
class FetchStage:
    result: FetchResult

    @property
    def resources(self) -> list[ResourceSnapshot]:
        return self.result.resources


@dataclass
class AnalysisStage:
    results: list[AnalysisResult] = field(default_factory=list)
    overall_score: float = 100.0

    def score_of(self, kind: AnalyzerKind) -> float | None:
        for result in self.results:
            if result.kind == kind:
                return result.score
        return None


class AssessmentOrchestrator:
    """Coordinates the credential vault, fetcher, analyzers and stores."""

    def __init__(
        self,
        session_factory: SessionFactory = get_db_context,
        vault: CredentialVault | None = None,
        fetcher: ResourceGraphClient | None = None,
        license_gate: LicenseGate | None = None,
        findings_store: FindingsStore | None = None,
        platform_credential: PlatformCredential | None = None,
        settings: Settings | None = None,
        clock=datetime.utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.vault = vault or get_credential_vault()
        self.fetcher = fetcher or ResourceGraphClient(self.settings)
        self.license_gate = license_gate or LicenseGate(session_factory, self.settings)
        self.findings_store = findings_store or FindingsStore(session_factory)
        self.platform_credential = platform_credential
        if self.platform_credential is None and self.settings.allow_platform_credential_fallback:
            self.platform_credential = PlatformCredential(self.settings)
        self._clock = clock

        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    # =========================================================================
    # Admission
    # =========================================================================

    def _visible_environment(self, db: Session, context: AuthContext, environment_id: str) -> AzureEnvironment:
        environment = db.query(AzureEnvironment).filter(AzureEnvironment.id == environment_id).first()
        if environment is None or not environment.is_active:
            raise EnvironmentNotFoundError(f"Environment '{environment_id}' not found")

        owner = environment.organization_id
        if owner is None and environment.client_id:
            client = db.query(Client).filter(Client.id == environment.client_id).first()
            owner = client.organization_id if client else None
        if owner != context.organization_id:
            # Other organizations' environments are indistinguishable from missing ones
            raise EnvironmentNotFoundError(f"Environment '{environment_id}' not found")
        return environment

    def _resolve_subscriptions(self, environment: AzureEnvironment, requested: list[str] | None) -> list[str]:
        configured = environment.subscription_ids
        if requested is None:
            subscription_ids = configured
        else:
            unknown = [s for s in requested if configured and s not in configured]
            if unknown:
                raise InvalidRequestError(
                    f"Subscriptions not configured on environment '{environment.name}': {', '.join(unknown)}"
                )
            subscription_ids = requested
        subscription_ids = list(dict.fromkeys(subscription_ids))
        if not subscription_ids:
            raise InvalidRequestError(f"Environment '{environment.name}' has no subscription IDs configured")
        return subscription_ids

    async def start_assessment(self, context: AuthContext, request: AssessmentCreate) -> str:
        """Admit and schedule an assessment, returning its id immediately.

        Raises:
            EnvironmentNotFoundError: Unknown, inactive or foreign environment
            InvalidRequestError: No subscriptions to assess, or client mismatch
            LimitReachedError: Plan quota used up; no assessment is created
            SubscriptionInactiveError: No plan, or the plan expired
        """
        logger.info(
            f"Starting {request.assessment_type.value} assessment for environment "
            f"{request.environment_id} in organization {context.organization_id}"
        )

        with self._session_factory() as db:
            environment = self._visible_environment(db, context, request.environment_id)
            if request.client_id and environment.client_id and request.client_id != environment.client_id:
                raise InvalidRequestError("client_id does not match the environment's client")
            client_id = environment.client_id or request.client_id
            subscription_ids = self._resolve_subscriptions(environment, request.subscription_ids)
            environment_name = environment.name

        admission = self.license_gate.can_start_assessment(context.organization_id)
        if not admission.allowed:
            logger.info(f"Assessment rejected for {context.organization_id}: {admission.reason_code}")
            if admission.reason_code == FailureReason.LIMIT_REACHED.value:
                raise LimitReachedError(admission.current_usage, admission.max_allowed or 0)
            raise SubscriptionInactiveError(
                FailureReason(admission.reason_code),
                admission.message or "Organization subscription is not active",
            )

        # Counted first: the conditional increment is what enforces the limit
        # when concurrent requests all passed the admission check
        self.license_gate.record_usage(
            context.organization_id, MetricType.ASSESSMENT_RUN, limit=admission.max_allowed
        )
        try:
            with self._session_factory() as db:
                assessment = Assessment(
                    organization_id=context.organization_id,
                    client_id=client_id,
                    environment_id=request.environment_id,
                    name=request.name or f"{environment_name} {request.assessment_type.value}",
                    assessment_type=request.assessment_type.value,
                    status=AssessmentStatus.PENDING.value,
                    use_client_preferences=request.use_client_preferences,
                    subscription_ids_json=json.dumps(subscription_ids),
                    options_json=json.dumps(request.options) if request.options else None,
                    created_by=context.customer_id,
                    created_at=self._clock(),
                )
                db.add(assessment)
                db.flush()
                assessment_id = assessment.id
        except SQLAlchemyError:
            self.license_gate.release_usage(context.organization_id, MetricType.ASSESSMENT_RUN)
            raise

        self._launch(assessment_id)
        logger.info(f"Assessment {assessment_id} queued ({len(subscription_ids)} subscriptions)")
        return assessment_id

    # =========================================================================
    # State machine
    # =========================================================================

    def _transition(self, db: Session, assessment: Assessment, target: AssessmentStatus, **fields) -> None:
        current = AssessmentStatus(assessment.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(f"Assessment {assessment.id} cannot move from {current.value} to {target.value}")

        assessment.status = target.value
        for name, value in fields.items():
            setattr(assessment, name, value)
        if target == AssessmentStatus.IN_PROGRESS:
            assessment.started_at = self._clock()
        elif target.is_terminal:
            assessment.completed_at = self._clock()
        logger.debug(f"Assessment {assessment.id}: {current.value} -> {target.value}")

    def _fail(
        self,
        assessment_id: str,
        reason: FailureReason,
        detail: str,
        remediation_hint: str | None = None,
    ) -> None:
        """Mark the assessment Failed unless it already reached a terminal state."""
        with self._session_factory() as db:
            assessment = db.query(Assessment).filter(Assessment.id == assessment_id).first()
            if assessment is None:
                return
            if AssessmentStatus(assessment.status).is_terminal:
                logger.debug(f"Assessment {assessment_id} already {assessment.status}, not failing")
                return
            self._transition(
                db,
                assessment,
                AssessmentStatus.FAILED,
                failure_reason=reason.value,
                failure_detail=detail,
                remediation_hint=remediation_hint,
            )
        logger.warning(f"Assessment {assessment_id} failed ({reason.value}): {detail}")

    def _ensure_terminal(self, assessment_id: str, reason: FailureReason, detail: str) -> None:
        try:
            self._fail(assessment_id, reason, detail)
        except SQLAlchemyError as e:
            logger.error(f"Could not record final state of assessment {assessment_id}: {e}")

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _launch(self, assessment_id: str) -> None:
        with self._session_factory() as db:
            assessment = db.query(Assessment).filter(Assessment.id == assessment_id).one()
            self._transition(db, assessment, AssessmentStatus.IN_PROGRESS)

        self._cancel_events[assessment_id] = asyncio.Event()
        task = asyncio.create_task(self._run(assessment_id), name=f"assessment-{assessment_id}")
        self._tasks[assessment_id] = task
        task.add_done_callback(lambda t: self._on_task_done(assessment_id, t))

    def _on_task_done(self, assessment_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(assessment_id, None)
        self._cancel_events.pop(assessment_id, None)
        # A task cancelled before its first step never reached its own handlers
        if task.cancelled():
            self._ensure_terminal(assessment_id, FailureReason.CANCELLED, "Assessment cancelled")

    async def process_pending(self) -> int:
        """Launch assessments left Pending, e.g. by a restart. Returns how many."""
        with self._session_factory() as db:
            pending_ids = [
                row.id
                for row in db.query(Assessment.id)
                .filter(Assessment.status == AssessmentStatus.PENDING.value)
                .order_by(Assessment.created_at.asc())
                .all()
            ]

        launched = 0
        for assessment_id in pending_ids:
            if assessment_id in self._tasks:
                continue
            try:
                self._launch(assessment_id)
                launched += 1
            except InvalidStateTransition as e:
                logger.debug(f"Skipping pending assessment {assessment_id}: {e}")

        if launched:
            logger.info(f"Launched {launched} pending assessments")
        return launched

    def fail_stale_assessments(self) -> int:
        """Fail InProgress assessments no task in this process is running."""
        cutoff = self._clock() - timedelta(minutes=self.settings.stale_assessment_timeout_minutes)
        with self._session_factory() as db:
            stale_ids = [
                row.id
                for row in db.query(Assessment.id)
                .filter(
                    Assessment.status == AssessmentStatus.IN_PROGRESS.value,
                    Assessment.started_at < cutoff,
                )
                .all()
                if row.id not in self._tasks
            ]

        for assessment_id in stale_ids:
            self._fail(
                assessment_id,
                FailureReason.INTERRUPTED,
                f"Assessment did not finish within {self.settings.stale_assessment_timeout_minutes} minutes",
                "Start the assessment again",
            )
        return len(stale_ids)

    async def shutdown(self) -> None:
        """Cancel every running assessment and wait for them to settle."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info(f"Cancelling {len(tasks)} running assessments")
        for event in self._cancel_events.values():
            event.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _run(self, assessment_id: str) -> None:
        cancel_event = self._cancel_events.get(assessment_id) or asyncio.Event()
        try:
            plan = self._load_plan(assessment_id)
            credential = await self._resolve_credential(plan)
            self._check_cancelled(cancel_event)

            fetch = await self._fetch_inventory(plan, credential, cancel_event)
            self._check_cancelled(cancel_event)

            self.findings_store.save_resources(assessment_id, fetch.resources)
            analysis = self._analyze(plan, fetch.resources)
            self._check_cancelled(cancel_event)

            findings = build_findings(analysis.results)
            self.findings_store.save_findings(assessment_id, findings)
            self._complete(plan, credential, fetch, analysis, findings)
        except asyncio.CancelledError:
            self._ensure_terminal(assessment_id, FailureReason.CANCELLED, "Assessment cancelled")
            raise
        except CompassError as e:
            self._ensure_terminal_with_hint(assessment_id, e)
        except Exception as e:
            logger.exception(f"Assessment {assessment_id} failed unexpectedly")
            self._ensure_terminal(assessment_id, FailureReason.INTERNAL_ERROR, f"{e.__class__.__name__}: {e}")
        finally:
            self._ensure_terminal(assessment_id, FailureReason.INTERNAL_ERROR, "Assessment ended without a result")

    def _ensure_terminal_with_hint(self, assessment_id: str, error: CompassError) -> None:
        try:
            self._fail(assessment_id, error.reason, error.message, error.remediation_hint)
        except SQLAlchemyError as e:
            logger.error(f"Could not record failure of assessment {assessment_id}: {e}")

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise AssessmentCancelledError("Assessment cancelled")

    def _load_plan(self, assessment_id: str) -> RunPlan:
        with self._session_factory() as db:
            assessment = db.query(Assessment).filter(Assessment.id == assessment_id).first()
            if assessment is None:
                raise AssessmentNotFoundError(f"Assessment {assessment_id} not found")
            return RunPlan(
                assessment_id=assessment.id,
                organization_id=assessment.organization_id,
                client_id=assessment.client_id,
                environment_id=assessment.environment_id,
                subscription_ids=assessment.subscription_ids,
                assessment_type=AssessmentType(assessment.assessment_type),
                use_client_preferences=bool(assessment.use_client_preferences),
            )

    async def _resolve_credential(self, plan: RunPlan) -> CredentialStage:
        """Delegated token first, then the platform credential when allowed."""
        delegated: TokenResult | None = None
        if plan.client_id:
            delegated = await self.vault.get_token(plan.client_id, plan.organization_id)
            if delegated.is_valid:
                return CredentialStage(delegated.access_token, CredentialSource.OAUTH)
            logger.warning(
                f"Delegated credential for client {plan.client_id} unusable: {delegated.status.value}"
            )

        platform: TokenResult | None = None
        if self.settings.allow_platform_credential_fallback and self.platform_credential is not None:
            platform = await self.platform_credential.get_token()
            if platform.is_valid:
                logger.info(f"Assessment {plan.assessment_id} using platform credential")
                delegated_error = delegated.to_error() if delegated is not None else None
                if delegated_error is not None:
                    self._record_connection_error(plan.environment_id, _describe(delegated_error))
                return CredentialStage(platform.access_token, CredentialSource.PLATFORM, delegated_error)

        failing = delegated or platform
        if failing is None:
            error = CredentialMissingError("No client credential configured and platform fallback is disabled")
        else:
            error = failing.to_error()
        self._record_connection_error(plan.environment_id, error.message)
        raise error

    async def _fetch_inventory(
        self, plan: RunPlan, credential: CredentialStage, cancel_event: asyncio.Event
    ) -> FetchStage:
        result = await self.fetcher.fetch_resources(plan.subscription_ids, credential.access_token, cancel_event)

        if result.all_failed:
            reasons = result.error_reasons()
            detail = "; ".join(f"{e.subscription_id}: {e.reason}" for e in result.errors)
            self._record_connection_error(plan.environment_id, detail)
            if len(reasons) == 1:
                error_class = _CREDENTIAL_FETCH_ERRORS.get(next(iter(reasons)))
                if error_class is not None:
                    raise error_class(f"All subscriptions failed: {detail}")
            raise ProviderUnavailableError(f"All subscriptions failed: {detail}")

        if result.is_partial:
            logger.warning(
                f"Assessment {plan.assessment_id}: {len(result.errors)} of "
                f"{len(plan.subscription_ids)} subscriptions failed, continuing with the rest"
            )
        return FetchStage(result)

    def _load_preferences(self, plan: RunPlan) -> PolicyPreferences | None:
        if not plan.use_client_preferences or not plan.client_id:
            return None
        with self._session_factory() as db:
            row = (
                db.query(ClientPreferences)
                .filter(
                    ClientPreferences.client_id == plan.client_id,
                    ClientPreferences.organization_id == plan.organization_id,
                    ClientPreferences.is_active.is_(True),
                )
                .first()
            )
            if row is None:
                logger.info(f"No preferences for client {plan.client_id}, using default rules")
                return None
            return PolicyPreferences.from_model(row)

    def _analyze(self, plan: RunPlan, resources: list[ResourceSnapshot]) -> AnalysisStage:
        preferences = self._load_preferences(plan)
        stage = AnalysisStage()
        for kind in analyzers_for(plan.assessment_type):
            stage.results.append(get_analyzer(kind).analyze(resources, preferences))

        weights = {
            AnalyzerKind.NAMING: self.settings.naming_score_weight,
            AnalyzerKind.TAGGING: self.settings.tagging_score_weight,
        }
        stage.overall_score = (
            weighted_score({r.kind: r.score for r in stage.results}, weights) if resources else 100.0
        )
        return stage

    def _complete(
        self,
        plan: RunPlan,
        credential: CredentialStage,
        fetch: FetchStage,
        analysis: AnalysisStage,
        findings: list[Finding],
    ) -> None:
        summary = build_summary(analysis.results, findings, fetch.resources, fetch.result, analysis.overall_score)
        with self._session_factory() as db:
            assessment = db.query(Assessment).filter(Assessment.id == plan.assessment_id).one()
            self._transition(
                db,
                assessment,
                AssessmentStatus.COMPLETED,
                overall_score=analysis.overall_score,
                naming_score=analysis.score_of(AnalyzerKind.NAMING),
                tagging_score=analysis.score_of(AnalyzerKind.TAGGING),
                resource_count=len(fetch.resources),
                result_summary_json=json.dumps(summary),
                credential_source=credential.source.value,
                remediation_hint=credential.delegated_error.remediation_hint if credential.delegated_error else None,
            )
        logger.info(
            f"Assessment {plan.assessment_id} completed: score {analysis.overall_score}, "
            f"{len(fetch.resources)} resources, {len(findings)} findings"
        )

    def _record_connection_error(self, environment_id: str, message: str) -> None:
        with self._session_factory() as db:
            environment = db.query(AzureEnvironment).filter(AzureEnvironment.id == environment_id).first()
            if environment is not None:
                environment.last_connection_error = message[:2000]

    # =========================================================================
    # Queries and management
    # =========================================================================

    def _visible_assessment(self, db: Session, context: AuthContext, assessment_id: str) -> Assessment:
        assessment = (
            db.query(Assessment)
            .filter(
                Assessment.id == assessment_id,
                Assessment.organization_id == context.organization_id,
            )
            .first()
        )
        if assessment is None:
            raise AssessmentNotFoundError(f"Assessment {assessment_id} not found")
        return assessment

    def get_status(self, context: AuthContext, assessment_id: str) -> AssessmentStatusResponse:
        with self._session_factory() as db:
            return AssessmentStatusResponse.model_validate(self._visible_assessment(db, context, assessment_id))

    def list_assessments(
        self, context: AuthContext, client_id: str | None = None, limit: int = 50
    ) -> list[AssessmentStatusResponse]:
        with self._session_factory() as db:
            query = db.query(Assessment).filter(Assessment.organization_id == context.organization_id)
            if client_id:
                query = query.filter(Assessment.client_id == client_id)
            rows = query.order_by(Assessment.created_at.desc()).limit(limit).all()
            return [AssessmentStatusResponse.model_validate(row) for row in rows]

    def get_result(self, context: AuthContext, assessment_id: str) -> AssessmentResultResponse:
        """Result of a completed assessment.

        Raises:
            AssessmentNotReadyError: Unless the assessment is Completed
        """
        with self._session_factory() as db:
            assessment = self._visible_assessment(db, context, assessment_id)
            if assessment.status != AssessmentStatus.COMPLETED.value:
                raise AssessmentNotReadyError(assessment_id, assessment.status)

            summary = assessment.result_summary
            recommendations = summary.pop("recommendations", [])
            return AssessmentResultResponse(
                id=assessment.id,
                status=assessment.status,
                overall_score=assessment.overall_score or 0.0,
                naming_score=assessment.naming_score,
                tagging_score=assessment.tagging_score,
                resource_count=assessment.resource_count or 0,
                finding_count=summary.get("finding_count", 0),
                credential_source=assessment.credential_source,
                completed_at=assessment.completed_at,
                recommendations=[RecommendationResponse(**r) for r in recommendations],
                metrics=summary,
            )

    def get_findings(
        self,
        context: AuthContext,
        assessment_id: str,
        category: str | None = None,
        severity: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> FindingListResponse:
        with self._session_factory() as db:
            self._visible_assessment(db, context, assessment_id)

        findings, total = self.findings_store.get_findings(assessment_id, category, severity, limit, offset)
        return FindingListResponse(
            total=total,
            limit=limit,
            offset=offset,
            findings=[
                FindingResponse(
                    id=f.id,
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
            ],
        )

    def cancel_assessment(self, context: AuthContext, assessment_id: str) -> bool:
        """Request cancellation. Returns False when the run already finished."""
        with self._session_factory() as db:
            assessment = self._visible_assessment(db, context, assessment_id)
            status = AssessmentStatus(assessment.status)
        if status.is_terminal:
            return False

        task = self._tasks.get(assessment_id)
        if task is None:
            self._fail(assessment_id, FailureReason.CANCELLED, "Assessment cancelled")
            return True

        logger.info(f"Cancelling assessment {assessment_id}")
        event = self._cancel_events.get(assessment_id)
        if event is not None:
            event.set()
        task.cancel()
        return True

    def delete_assessment(self, context: AuthContext, assessment_id: str) -> None:
        """Delete an assessment with its resources and findings.

        Raises:
            InvalidStateTransition: While the assessment is running
        """
        with self._session_factory() as db:
            assessment = self._visible_assessment(db, context, assessment_id)
            if assessment.status == AssessmentStatus.IN_PROGRESS.value or assessment_id in self._tasks:
                raise InvalidStateTransition(f"Assessment {assessment_id} is running; cancel it first")
            db.delete(assessment)
        logger.info(f"Deleted assessment {assessment_id}")

    def cancel_organization(self, organization_id: str) -> int:
        """Cancel every running assessment of an organization being removed."""
        with self._session_factory() as db:
            running = [
                row.id
                for row in db.query(Assessment.id)
                .filter(
                    Assessment.organization_id == organization_id,
                    Assessment.status.in_([AssessmentStatus.PENDING.value, AssessmentStatus.IN_PROGRESS.value]),
                )
                .all()
            ]
        context = AuthContext(organization_id=organization_id)
        return sum(1 for assessment_id in running if self.cancel_assessment(context, assessment_id))

    async def test_environment_connection(self, context: AuthContext, environment_id: str) -> ConnectionTestResponse:
        """Check that the environment's subscriptions are readable and record the outcome."""
        with self._session_factory() as db:
            environment = self._visible_environment(db, context, environment_id)
            plan = RunPlan(
                assessment_id="connection-test",
                organization_id=context.organization_id,
                client_id=environment.client_id,
                environment_id=environment.id,
                subscription_ids=environment.subscription_ids,
                assessment_type=AssessmentType.FULL,
                use_client_preferences=False,
            )

        source: str | None = None
        error: str | None = None
        remediation_hint: str | None = None
        try:
            credential = await self._resolve_credential(plan)
        except CompassError as e:
            success = False
            error = e.message
            remediation_hint = e.remediation_hint
        else:
            source = credential.source.value
            success = await self.fetcher.test_connection(plan.subscription_ids, credential.access_token)
            if not success:
                error = "Subscriptions could not be queried with the resolved credential"
            elif credential.delegated_error is not None:
                # Reachable through the platform fallback, but the delegated consent needs attention
                error = _describe(credential.delegated_error)
                remediation_hint = credential.delegated_error.remediation_hint

        tested_at = self._clock()
        with self._session_factory() as db:
            environment = db.query(AzureEnvironment).filter(AzureEnvironment.id == environment_id).one()
            environment.last_connection_test_at = tested_at
            environment.last_connection_test_ok = success
            environment.last_connection_error = error

        logger.info(f"Connection test for environment {environment_id}: {'ok' if success else error}")
        return ConnectionTestResponse(
            environment_id=environment_id,
            success=success,
            credential_source=source,
            error=error,
            remediation_hint=remediation_hint,
            tested_at=tested_at,
        )


@lru_cache
def get_orchestrator() -> AssessmentOrchestrator:
    """Process-wide orchestrator shared by the API and the scheduler."""
    return AssessmentOrchestrator()
