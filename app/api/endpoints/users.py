from fastapi import APIRouter, Depends

from app.core.dependencies import get_current_user, get_ledger_service
from app.models.user import User
from app.schemas.deployment import DeploymentResponse, UserSummaryResponse
from app.services.ledger import LedgerService

router = APIRouter()


@router.get("/me", response_model=UserSummaryResponse)
async def get_me(
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
):
    """Balance and bot counts for the authenticated user."""
    summary = await ledger.get_user_summary(current_user.id)
    user = summary.user
    return UserSummaryResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        name=user.name,
        coins=summary.balance,
        total_bots=summary.total_deployments,
        active_bots=summary.active_deployments,
        inactive_bots=summary.inactive_deployments,
        active_deployment=(
            DeploymentResponse.model_validate(summary.active_deployment)
            if summary.active_deployment
            else None
        ),
    )
