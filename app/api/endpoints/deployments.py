from fastapi import APIRouter, Depends, status

from app.core.constants import INITIATOR_USER
from app.core.dependencies import get_current_user, get_deployment_service
from app.models.user import User
from app.schemas.deployment import DeployRequest, DeployResponse, DeploymentResponse
from app.services.deployment_service import DeploymentService

router = APIRouter()


@router.get("/", response_model=list[DeploymentResponse])
async def list_deployments(
    current_user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    """List the authenticated user's deployments, newest first."""
    return await service.list_for_user(current_user.id)


@router.post("/", response_model=DeployResponse, status_code=status.HTTP_201_CREATED)
async def deploy(
    payload: DeployRequest,
    current_user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    """
    Deploy a bot for the authenticated user.

    - **session_id**: Bot session secret (only a truncated preview is stored)
    - **app_name**: Optional display name (defaults to msb-<username>)

    Charges the daily coin cost on success.
    """
    result = await service.deploy(current_user.id, payload.session_id, payload.app_name)
    return DeployResponse(handle=result.handle, coins_remaining=result.balance)


@router.delete("/{handle}", response_model=DeploymentResponse)
async def stop_deployment(
    handle: str,
    current_user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Stop one of the authenticated user's bots. Stopping twice is a no-op."""
    return await service.stop(handle, initiator=INITIATOR_USER, owner_id=current_user.id)


@router.delete("/{handle}/record", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deployment_record(
    handle: str,
    current_user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Permanently delete a stopped bot's record."""
    await service.delete_record(handle, owner_id=current_user.id)
