"""Tests for the assessment orchestrator."""

import asyncio
import json
import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from compass.api.services.credential_vault import CredentialSource, TokenResult, TokenStatus
from compass.api.services.findings_store import FindingsStore
from compass.api.services.license_gate import Admission, LicenseGate
from compass.api.services.orchestrator import AssessmentOrchestrator, AuthContext
from compass.api.services.resource_graph import FetchResult, SubscriptionError
from compass.core.errors import (
    AssessmentNotFoundError,
    AssessmentNotReadyError,
    CredentialInvalidError,
    EnvironmentNotFoundError,
    InvalidRequestError,
    InvalidStateTransition,
    LimitReachedError,
    SubscriptionInactiveError,
)
from compass.models import Assessment, AssessmentFinding, AssessmentResource, AzureEnvironment, UsageCounter
from compass.schemas.assessment import AssessmentCreate
from tests.fixtures import CLIENT_ID, ENV_ID, ORG_ID, OTHER_ORG_ID, SUB_A, SUB_B, SUB_C, make_resource

CONTEXT = AuthContext(organization_id=ORG_ID, customer_id="user-1")


def _inventory() -> FetchResult:
    return FetchResult(
        resources=[
            make_resource("vm-prod-001", tags={"Environment": "prod", "Owner": "ops"}),
            make_resource("web server!", subscription_id=SUB_B),
        ],
        succeeded_subscriptions=[SUB_A, SUB_B],
    )


@pytest.fixture
def vault():
    vault = MagicMock()
    vault.get_token = AsyncMock(
        return_value=TokenResult(status=TokenStatus.VALID, access_token="delegated-token")
    )
    return vault


@pytest.fixture
def fetcher():
    fetcher = MagicMock()
    fetcher.fetch_resources = AsyncMock(return_value=_inventory())
    fetcher.test_connection = AsyncMock(return_value=True)
    return fetcher


@pytest.fixture
def make_orchestrator(session_factory, settings, vault, fetcher):
    def _make(**overrides) -> AssessmentOrchestrator:
        kwargs = {
            "session_factory": session_factory,
            "vault": vault,
            "fetcher": fetcher,
            "license_gate": LicenseGate(session_factory, settings),
            "findings_store": FindingsStore(session_factory),
            "settings": settings,
        }
        kwargs.update(overrides)
        return AssessmentOrchestrator(**kwargs)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


async def _run(orchestrator: AssessmentOrchestrator, request: AssessmentCreate, context: AuthContext = CONTEXT) -> str:
    """Start an assessment and wait for its background task."""
    assessment_id = await orchestrator.start_assessment(context, request)
    task = orchestrator._tasks.get(assessment_id)
    if task is not None:
        await asyncio.gather(task, return_exceptions=True)
    return assessment_id


def _insert_assessment(db_session, status: str, started_at: datetime | None = None) -> str:
    assessment = Assessment(
        id=str(uuid.uuid4()),
        organization_id=ORG_ID,
        client_id=CLIENT_ID,
        environment_id=ENV_ID,
        assessment_type="Full",
        status=status,
        subscription_ids_json=json.dumps([SUB_A]),
        started_at=started_at,
    )
    db_session.add(assessment)
    db_session.commit()
    return assessment.id


class TestStartAssessment:
    """Test suite for admission."""

    @pytest.mark.asyncio
    async def test_limit_reached_creates_nothing(self, orchestrator, seed, db_session):
        seed(max_assessments=5, usage=5)

        with pytest.raises(LimitReachedError) as exc_info:
            await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))

        assert exc_info.value.to_dict()["reason"] == "LimitReached"
        assert db_session.query(Assessment).count() == 0
        assert db_session.query(UsageCounter).one().count == 5

    @pytest.mark.asyncio
    async def test_expired_subscription(self, orchestrator, seed):
        seed(subscription_status="Expired")

        with pytest.raises(SubscriptionInactiveError):
            await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))

    @pytest.mark.asyncio
    async def test_foreign_environment_is_not_found(self, orchestrator, seed):
        seed(organization_id=OTHER_ORG_ID)

        with pytest.raises(EnvironmentNotFoundError):
            await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_rejected(self, orchestrator, seed):
        seed()

        with pytest.raises(InvalidRequestError):
            await orchestrator.start_assessment(
                CONTEXT, AssessmentCreate(environment_id=ENV_ID, subscription_ids=[SUB_C])
            )

    @pytest.mark.asyncio
    async def test_client_mismatch_is_rejected(self, orchestrator, seed):
        seed()

        with pytest.raises(InvalidRequestError):
            await orchestrator.start_assessment(
                CONTEXT, AssessmentCreate(environment_id=ENV_ID, client_id=str(uuid.uuid4()))
            )

    @pytest.mark.asyncio
    async def test_environment_without_subscriptions(self, orchestrator, seed):
        seed(subscription_ids=[])

        with pytest.raises(InvalidRequestError):
            await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))

    @pytest.mark.asyncio
    async def test_admission_counts_usage(self, orchestrator, seed, db_session):
        seed(max_assessments=1)

        await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        assert db_session.query(UsageCounter).one().count == 1
        with pytest.raises(LimitReachedError):
            await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))

    @pytest.mark.asyncio
    async def test_request_admitted_after_limit_was_used_up_creates_nothing(self, orchestrator, seed, db_session):
        # Another request took the last slot between the admission check and the increment
        seed(max_assessments=1, usage=1)
        admitted = Admission(allowed=True, current_usage=0, max_allowed=1)

        with patch.object(orchestrator.license_gate, "can_start_assessment", return_value=admitted):
            with pytest.raises(LimitReachedError):
                await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))

        assert db_session.query(Assessment).count() == 0
        assert db_session.query(UsageCounter).one().count == 1


class TestPipeline:
    """Test suite for background assessment runs."""

    @pytest.mark.asyncio
    async def test_completed_run(self, orchestrator, seed, vault, fetcher, db_session):
        seed()

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        status = orchestrator.get_status(CONTEXT, assessment_id)
        assert status.status == "Completed"
        assert status.credential_source == "oauth"
        assert status.resource_count == 2
        assert 0 <= status.overall_score < 100
        assert status.started_at is not None and status.completed_at is not None

        vault.get_token.assert_awaited_once_with(CLIENT_ID, ORG_ID)
        subscription_ids, token, _ = fetcher.fetch_resources.await_args.args
        assert subscription_ids == [SUB_A, SUB_B]
        assert token == "delegated-token"

        assert db_session.query(AssessmentResource).count() == 2
        result = orchestrator.get_result(CONTEXT, assessment_id)
        assert result.finding_count == db_session.query(AssessmentFinding).count()
        assert result.finding_count > 0
        assert {r.category for r in result.recommendations} <= {"NamingConvention", "Tagging"}
        assert result.metrics["subscriptions"]["succeeded"] == [SUB_A, SUB_B]

    @pytest.mark.asyncio
    async def test_findings_are_paged_and_filtered(self, orchestrator, seed):
        seed()
        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        naming = orchestrator.get_findings(CONTEXT, assessment_id, category="NamingConvention", limit=1)

        assert naming.total >= 1
        assert len(naming.findings) == 1
        assert naming.findings[0].category == "NamingConvention"
        assert naming.findings[0].assessment_id == assessment_id

    @pytest.mark.asyncio
    async def test_naming_only_assessment(self, orchestrator, seed):
        seed()

        assessment_id = await _run(
            orchestrator, AssessmentCreate(environment_id=ENV_ID, assessment_type="NamingConvention")
        )

        result = orchestrator.get_result(CONTEXT, assessment_id)
        assert result.tagging_score is None
        assert result.overall_score == result.naming_score

    @pytest.mark.asyncio
    async def test_empty_inventory_scores_100(self, orchestrator, seed, fetcher):
        seed()
        fetcher.fetch_resources.return_value = FetchResult(succeeded_subscriptions=[SUB_A, SUB_B])

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        result = orchestrator.get_result(CONTEXT, assessment_id)
        assert result.overall_score == 100.0
        assert result.finding_count == 0
        assert result.recommendations == []

    @pytest.mark.asyncio
    async def test_invalid_credential_fails_without_fetching(self, orchestrator, seed, vault, fetcher, db_session):
        seed()
        vault.get_token.return_value = TokenResult(status=TokenStatus.INVALID, message="refresh token rejected")

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        status = orchestrator.get_status(CONTEXT, assessment_id)
        assert status.status == "Failed"
        assert status.failure_reason == "CredentialInvalid"
        assert status.remediation_hint
        fetcher.fetch_resources.assert_not_awaited()
        assert db_session.get(AzureEnvironment, ENV_ID).last_connection_error == "refresh token rejected"

    @pytest.mark.asyncio
    async def test_missing_credential(self, orchestrator, seed, vault):
        seed()
        vault.get_token.return_value = TokenResult(status=TokenStatus.MISSING)

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        assert orchestrator.get_status(CONTEXT, assessment_id).failure_reason == "CredentialMissing"

    @pytest.mark.asyncio
    async def test_platform_fallback(self, make_orchestrator, settings, seed, vault):
        seed()
        vault.get_token.return_value = TokenResult(status=TokenStatus.MISSING)
        platform = MagicMock()
        platform.get_token = AsyncMock(return_value=TokenResult(
            status=TokenStatus.VALID, source=CredentialSource.PLATFORM, access_token="platform-token"
        ))
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"allow_platform_credential_fallback": True}),
            platform_credential=platform,
        )

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        status = orchestrator.get_status(CONTEXT, assessment_id)
        assert status.status == "Completed"
        assert status.credential_source == "platform-default"

    @pytest.mark.asyncio
    async def test_platform_fallback_keeps_delegated_problem_visible(
        self, make_orchestrator, settings, seed, vault, db_session
    ):
        seed()
        vault.get_token.return_value = TokenResult(status=TokenStatus.INVALID, message="refresh token rejected")
        platform = MagicMock()
        platform.get_token = AsyncMock(return_value=TokenResult(
            status=TokenStatus.VALID, source=CredentialSource.PLATFORM, access_token="platform-token"
        ))
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"allow_platform_credential_fallback": True}),
            platform_credential=platform,
        )

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        status = orchestrator.get_status(CONTEXT, assessment_id)
        assert status.status == "Completed"
        assert status.credential_source == "platform-default"
        assert status.remediation_hint == CredentialInvalidError.remediation_hint
        error = db_session.get(AzureEnvironment, ENV_ID).last_connection_error
        assert error.startswith("refresh token rejected")
        assert CredentialInvalidError.remediation_hint in error

    @pytest.mark.asyncio
    async def test_all_subscriptions_forbidden(self, orchestrator, seed, fetcher):
        seed()
        fetcher.fetch_resources.return_value = FetchResult(errors=[
            SubscriptionError(SUB_A, "InsufficientPermission", "forbidden", 403),
            SubscriptionError(SUB_B, "InsufficientPermission", "forbidden", 403),
        ])

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        assert orchestrator.get_status(CONTEXT, assessment_id).failure_reason == "InsufficientPermission"

    @pytest.mark.asyncio
    async def test_mixed_failures_are_provider_unavailable(self, orchestrator, seed, fetcher):
        seed()
        fetcher.fetch_resources.return_value = FetchResult(errors=[
            SubscriptionError(SUB_A, "InsufficientPermission", "forbidden", 403),
            SubscriptionError(SUB_B, "Timeout", "timed out"),
        ])

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        assert orchestrator.get_status(CONTEXT, assessment_id).failure_reason == "ProviderUnavailable"

    @pytest.mark.asyncio
    async def test_partial_failure_still_completes(self, orchestrator, seed, fetcher):
        seed()
        partial = _inventory()
        partial.succeeded_subscriptions = [SUB_A]
        partial.errors = [SubscriptionError(SUB_B, "InsufficientPermission", "forbidden", 403)]
        fetcher.fetch_resources.return_value = partial

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        result = orchestrator.get_result(CONTEXT, assessment_id)
        assert result.metrics["subscriptions"]["failed"][0]["subscription_id"] == SUB_B

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, orchestrator, seed, fetcher):
        seed()
        fetcher.fetch_resources.side_effect = RuntimeError("boom")

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        status = orchestrator.get_status(CONTEXT, assessment_id)
        assert status.status == "Failed"
        assert status.failure_reason == "InternalError"
        assert "boom" in status.failure_detail

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_cause(self, make_orchestrator, seed):
        seed()
        broken_session = MagicMock(
            side_effect=OperationalError("INSERT INTO assessment_resources", {}, Exception("disk I/O error"))
        )
        orchestrator = make_orchestrator(findings_store=FindingsStore(broken_session))

        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        status = orchestrator.get_status(CONTEXT, assessment_id)
        assert status.status == "Failed"
        assert status.failure_reason == "PersistenceError"
        assert "disk I/O error" in status.failure_detail


class TestManagement:
    @pytest.mark.asyncio
    async def test_result_not_ready(self, orchestrator, seed, db_session):
        seed()
        assessment_id = _insert_assessment(db_session, "Pending")

        with pytest.raises(AssessmentNotReadyError):
            orchestrator.get_result(CONTEXT, assessment_id)

    @pytest.mark.asyncio
    async def test_other_organization_cannot_read(self, orchestrator, seed):
        seed()
        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        with pytest.raises(AssessmentNotFoundError):
            orchestrator.get_status(AuthContext(organization_id=OTHER_ORG_ID), assessment_id)

    @pytest.mark.asyncio
    async def test_cancel_running_assessment(self, orchestrator, seed, fetcher):
        seed()
        started = asyncio.Event()

        async def slow_fetch(*args):
            started.set()
            await asyncio.sleep(30)

        fetcher.fetch_resources.side_effect = slow_fetch
        assessment_id = await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))
        task = orchestrator._tasks[assessment_id]
        await started.wait()

        with pytest.raises(InvalidStateTransition):
            orchestrator.delete_assessment(CONTEXT, assessment_id)

        assert orchestrator.cancel_assessment(CONTEXT, assessment_id) is True
        await asyncio.gather(task, return_exceptions=True)

        status = orchestrator.get_status(CONTEXT, assessment_id)
        assert status.status == "Failed"
        assert status.failure_reason == "Cancelled"
        assert orchestrator.cancel_assessment(CONTEXT, assessment_id) is False

    @pytest.mark.asyncio
    async def test_cancel_organization(self, orchestrator, seed, fetcher):
        seed()
        seed(organization_id=OTHER_ORG_ID, environment_id="env-2", client_id="client-2")
        release = asyncio.Event()

        async def blocked_fetch(*args):
            await release.wait()
            return _inventory()

        fetcher.fetch_resources.side_effect = blocked_fetch
        other_context = AuthContext(organization_id=OTHER_ORG_ID)
        first = await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))
        second = await orchestrator.start_assessment(CONTEXT, AssessmentCreate(environment_id=ENV_ID))
        other = await orchestrator.start_assessment(other_context, AssessmentCreate(environment_id="env-2"))
        tasks = dict(orchestrator._tasks)
        await asyncio.sleep(0)

        assert orchestrator.cancel_organization(ORG_ID) == 2
        await asyncio.gather(tasks[first], tasks[second], return_exceptions=True)
        assert not tasks[other].done()

        release.set()
        await asyncio.gather(tasks[other], return_exceptions=True)

        for assessment_id in (first, second):
            status = orchestrator.get_status(CONTEXT, assessment_id)
            assert status.status == "Failed"
            assert status.failure_reason == "Cancelled"
        assert orchestrator.get_status(other_context, other).status == "Completed"

    @pytest.mark.asyncio
    async def test_delete_cascades(self, orchestrator, seed, db_session):
        seed()
        assessment_id = await _run(orchestrator, AssessmentCreate(environment_id=ENV_ID))

        orchestrator.delete_assessment(CONTEXT, assessment_id)

        assert db_session.query(Assessment).count() == 0
        assert db_session.query(AssessmentResource).count() == 0
        assert db_session.query(AssessmentFinding).count() == 0

    @pytest.mark.asyncio
    async def test_process_pending(self, orchestrator, seed, db_session):
        seed()
        assessment_id = _insert_assessment(db_session, "Pending")

        assert await orchestrator.process_pending() == 1
        await asyncio.gather(*orchestrator._tasks.values(), return_exceptions=True)

        assert orchestrator.get_status(CONTEXT, assessment_id).status == "Completed"

    def test_fail_stale_assessments(self, orchestrator, seed, db_session):
        seed()
        stale = _insert_assessment(db_session, "InProgress", started_at=datetime.utcnow() - timedelta(days=1))
        fresh = _insert_assessment(db_session, "InProgress", started_at=datetime.utcnow())

        assert orchestrator.fail_stale_assessments() == 1

        assert orchestrator.get_status(CONTEXT, stale).failure_reason == "Interrupted"
        assert orchestrator.get_status(CONTEXT, fresh).status == "InProgress"

    def test_list_assessments(self, orchestrator, seed, db_session):
        seed()
        _insert_assessment(db_session, "Pending")
        _insert_assessment(db_session, "Completed")

        assert len(orchestrator.list_assessments(CONTEXT)) == 2
        assert orchestrator.list_assessments(AuthContext(organization_id=OTHER_ORG_ID)) == []


class TestConnectionTest:
    @pytest.mark.asyncio
    async def test_success_is_recorded(self, orchestrator, seed, db_session):
        seed()

        response = await orchestrator.test_environment_connection(CONTEXT, ENV_ID)

        assert response.success is True
        assert response.credential_source == "oauth"
        environment = db_session.get(AzureEnvironment, ENV_ID)
        assert environment.last_connection_test_ok is True
        assert environment.last_connection_error is None

    @pytest.mark.asyncio
    async def test_credential_failure_is_recorded(self, orchestrator, seed, vault, fetcher, db_session):
        seed()
        vault.get_token.return_value = TokenResult(status=TokenStatus.MISSING, message="no consent yet")

        response = await orchestrator.test_environment_connection(CONTEXT, ENV_ID)

        assert response.success is False
        assert response.error == "no consent yet"
        fetcher.test_connection.assert_not_awaited()
        assert db_session.get(AzureEnvironment, ENV_ID).last_connection_test_ok is False

    @pytest.mark.asyncio
    async def test_fallback_success_reports_delegated_problem(
        self, make_orchestrator, settings, seed, vault, db_session
    ):
        seed()
        vault.get_token.return_value = TokenResult(status=TokenStatus.INVALID, message="refresh token rejected")
        platform = MagicMock()
        platform.get_token = AsyncMock(return_value=TokenResult(
            status=TokenStatus.VALID, source=CredentialSource.PLATFORM, access_token="platform-token"
        ))
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"allow_platform_credential_fallback": True}),
            platform_credential=platform,
        )

        response = await orchestrator.test_environment_connection(CONTEXT, ENV_ID)

        assert response.success is True
        assert response.credential_source == "platform-default"
        assert response.remediation_hint == CredentialInvalidError.remediation_hint
        environment = db_session.get(AzureEnvironment, ENV_ID)
        assert environment.last_connection_test_ok is True
        assert environment.last_connection_error.startswith("refresh token rejected")
