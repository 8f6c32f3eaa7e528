from datetime import date

from fastapi import APIRouter, Body, Depends, status

from app.core.constants import INITIATOR_ADMIN
from app.core.exceptions import AuthorizationError
from app.core.dependencies import (
    get_billing_scheduler,
    get_deployment_service,
    get_ledger_service,
    get_payment_workflow,
    require_admin,
)
from app.core.security import verify_admin_key
from app.schemas.admin import (
    AdminAuth,
    AdminStatsResponse,
    AdminUserResponse,
    BillingRunResponse,
    TopupRequest,
    TopupResponse,
)
from app.schemas.deployment import AdminDeploymentResponse, DeploymentResponse
from app.schemas.payment import AdminPaymentRequestResponse, PaymentRequestResponse
from app.services.billing import BillingScheduler
from app.services.deployment_service import DeploymentService
from app.services.ledger import LedgerService
from app.services.payments import PaymentApprovalWorkflow

router = APIRouter()

admin_only = [Depends(require_admin)]


def _admin_user(user, active_bots: int) -> AdminUserResponse:
    return AdminUserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        name=user.name,
        phone=user.phone,
        coins=user.coins,
        created_at=user.created_at,
        active_bots=active_bots or 0,
    )


@router.post("/auth")
async def admin_auth(payload: AdminAuth):
    """Check an operator key before the client stores it for X-Admin-Key."""
    if not verify_admin_key(payload.password):
        raise AuthorizationError("Invalid admin password.")
    return {"success": True}


@router.get("/users", response_model=list[AdminUserResponse], dependencies=admin_only)
async def list_users(ledger: LedgerService = Depends(get_ledger_service)):
    rows = await ledger.admin_list_users()
    return [_admin_user(user, active_bots) for user, active_bots in rows]


@router.post(
    "/users/{username}/topup", response_model=TopupResponse, dependencies=admin_only
)
async def topup_user(
    username: str,
    payload: TopupRequest,
    ledger: LedgerService = Depends(get_ledger_service),
):
    """Credit a user's balance directly (recorded as a topup transaction)."""
    new_coins = await ledger.admin_topup(username, payload.amount)
    return TopupResponse(new_coins=new_coins)


@router.delete(
    "/users/{username}", status_code=status.HTTP_204_NO_CONTENT, dependencies=admin_only
)
async def delete_user(
    username: str,
    ledger: LedgerService = Depends(get_ledger_service),
    deployments: DeploymentService = Depends(get_deployment_service),
):
    """Stop a user's bots and remove the user with all of their records."""
    await ledger.admin_delete_user(username, deployments)


@router.get(
    "/deployments", response_model=list[AdminDeploymentResponse], dependencies=admin_only
)
async def list_all_deployments(
    service: DeploymentService = Depends(get_deployment_service),
):
    rows = await service.list_all()
    return [
        AdminDeploymentResponse(
            **DeploymentResponse.model_validate(deployment).model_dump(),
            username=username,
            email=email,
        )
        for deployment, username, email in rows
    ]


@router.delete(
    "/deployments/{handle}", response_model=DeploymentResponse, dependencies=admin_only
)
async def admin_stop_deployment(
    handle: str,
    service: DeploymentService = Depends(get_deployment_service),
):
    """Stop any bot (status becomes stopped_by_admin)."""
    return await service.stop(handle, initiator=INITIATOR_ADMIN)


@router.get("/stats", response_model=AdminStatsResponse, dependencies=admin_only)
async def stats(ledger: LedgerService = Depends(get_ledger_service)):
    data = await ledger.admin_stats()
    data["recent_users"] = [
        _admin_user(user, active_bots) for user, active_bots in data["recent_users"]
    ]
    return AdminStatsResponse(**data)


@router.get(
    "/payment-requests",
    response_model=list[AdminPaymentRequestResponse],
    dependencies=admin_only,
)
async def list_payment_requests(
    workflow: PaymentApprovalWorkflow = Depends(get_payment_workflow),
):
    """All payment requests, pending first."""
    rows = await workflow.list_all()
    return [
        AdminPaymentRequestResponse(
            **PaymentRequestResponse.model_validate(request).model_dump(),
            screenshot=request.screenshot,
            username=username,
            email=email,
        )
        for request, username, email in rows
    ]


@router.post(
    "/payment-requests/{request_id}/approve",
    response_model=PaymentRequestResponse,
    dependencies=admin_only,
)
async def approve_payment_request(
    request_id: int,
    workflow: PaymentApprovalWorkflow = Depends(get_payment_workflow),
):
    """Approve a pending request and credit the requested coins."""
    return await workflow.approve(request_id)


@router.post(
    "/payment-requests/{request_id}/reject",
    response_model=PaymentRequestResponse,
    dependencies=admin_only,
)
async def reject_payment_request(
    request_id: int,
    workflow: PaymentApprovalWorkflow = Depends(get_payment_workflow),
):
    return await workflow.reject(request_id)


@router.post("/billing/run", response_model=BillingRunResponse, dependencies=admin_only)
async def run_billing(
    period: date | None = Body(default=None, embed=True),
    billing: BillingScheduler = Depends(get_billing_scheduler),
):
    """Run the daily billing pass now (already-billed deployments are skipped)."""
    report = await billing.run_period(period)
    return BillingRunResponse(
        period=report.period,
        charged=report.charged,
        deactivated=report.deactivated,
        skipped=report.skipped,
        failed=report.failed,
    )
