"""Assessment API routes."""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from compass.api.services.orchestrator import AssessmentOrchestrator, AuthContext, get_orchestrator
from compass.core.auth import User, get_auth_context, get_current_user, require_roles
from compass.core.errors import (
    AssessmentNotFoundError,
    AssessmentNotReadyError,
    EnvironmentNotFoundError,
    InvalidRequestError,
    InvalidStateTransition,
    LimitReachedError,
    SubscriptionInactiveError,
)
from compass.schemas.assessment import (
    AssessmentCreate,
    AssessmentResultResponse,
    AssessmentStatusResponse,
    FindingListResponse,
)

router = APIRouter(
    prefix="/api/v1/assessments",
    tags=["assessments"],
    dependencies=[Depends(get_current_user)],
)


def _not_found(error: AssessmentNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def start_assessment(
    request: AssessmentCreate,
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    """Start an assessment. Runs in the background; poll the status endpoint."""
    try:
        assessment_id = await orchestrator.start_assessment(context, request)
    except LimitReachedError as e:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=e.to_dict())
    except SubscriptionInactiveError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.to_dict())
    except EnvironmentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())
    except InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.to_dict())

    return {
        "assessment_id": assessment_id,
        "status": "Started",
        "message": "Assessment has been queued for processing",
    }


@router.post("/cancel-running")
async def cancel_running_assessments(
    current_user: User = Depends(require_roles(["admin"])),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    """Cancel every Pending or InProgress assessment of the caller's organization.

    Called before an organization is removed so no run outlives it.
    """
    cancelled = orchestrator.cancel_organization(current_user.organization_id)
    return {"organization_id": current_user.organization_id, "cancelled": cancelled}


@router.get("", response_model=list[AssessmentStatusResponse])
async def list_assessments(
    client_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    """List the organization's assessments, newest first."""
    return orchestrator.list_assessments(context, client_id=client_id, limit=limit)


@router.get("/{assessment_id}", response_model=AssessmentStatusResponse)
async def get_assessment_status(
    assessment_id: str,
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    try:
        return orchestrator.get_status(context, assessment_id)
    except AssessmentNotFoundError as e:
        raise _not_found(e)


@router.get("/{assessment_id}/result", response_model=AssessmentResultResponse)
async def get_assessment_result(
    assessment_id: str,
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    """Scores, recommendations and metrics of a completed assessment."""
    try:
        return orchestrator.get_result(context, assessment_id)
    except AssessmentNotFoundError as e:
        raise _not_found(e)
    except AssessmentNotReadyError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": e.message, "status": e.status},
        )


@router.get("/{assessment_id}/findings", response_model=FindingListResponse)
async def get_assessment_findings(
    assessment_id: str,
    category: str | None = Query(default=None, pattern="^(NamingConvention|Tagging)$"),
    severity: str | None = Query(default=None, pattern="^(Critical|High|Medium|Low)$"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    """Findings of an assessment with optional filtering.

    Args:
        category: Filter by finding category
        severity: Filter by severity (Critical, High, Medium, Low)
        limit: Maximum results to return
        offset: Pagination offset
    """
    try:
        return orchestrator.get_findings(
            context,
            assessment_id,
            category=category,
            severity=severity,
            limit=limit,
            offset=offset,
        )
    except AssessmentNotFoundError as e:
        raise _not_found(e)


@router.post("/{assessment_id}/cancel")
async def cancel_assessment(
    assessment_id: str,
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    try:
        cancelled = orchestrator.cancel_assessment(context, assessment_id)
    except AssessmentNotFoundError as e:
        raise _not_found(e)
    if not cancelled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Assessment already finished")
    return {"assessment_id": assessment_id, "cancelled": True}


@router.delete("/{assessment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_assessment(
    assessment_id: str,
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.delete_assessment(context, assessment_id)
    except AssessmentNotFoundError as e:
        raise _not_found(e)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
