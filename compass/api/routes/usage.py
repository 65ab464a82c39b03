"""License usage API routes."""

from fastapi import APIRouter, Depends

from compass.api.services.orchestrator import AssessmentOrchestrator, AuthContext, get_orchestrator
from compass.core.auth import get_auth_context, get_current_user

router = APIRouter(
    prefix="/api/v1/usage",
    tags=["usage"],
    dependencies=[Depends(get_current_user)],
)


@router.get("")
async def get_usage(
    context: AuthContext = Depends(get_auth_context),
    orchestrator: AssessmentOrchestrator = Depends(get_orchestrator),
):
    """Usage against plan limits for the current billing period."""
    return orchestrator.license_gate.get_usage_report(context.organization_id)
