"""Azure environment API routes."""

from fastapi import APIRouter, Depends, HTTPException, status

from compass.api.services.orchestrator import AssessmentOrchestrator, AuthContext, get_orchestrator
from compass.core.auth import get_auth_context, get_current_user
from compass.core.errors import EnvironmentNotFoundError
from compass.schemas.assessment import ConnectionTestResponse

router = APIRouter(
    prefix="/api/v1/environments",
    tags=["environments"],
    dependencies=[Depends(get_current_user)],
)


@router.post("/{environment_id}/test-connection", response_model=ConnectionTestResponse)
async def test_environment_connection(
    environment_id: str,
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    """Check that the environment's subscriptions can be queried.

    The outcome is stored on the environment as its last connection test.
    """
    try:
        return await orchestrator.test_environment_connection(context, environment_id)
    except EnvironmentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
