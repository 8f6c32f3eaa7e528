from fastapi import APIRouter, Depends, status

from app.core.dependencies import get_current_user, get_payment_workflow
from app.models.user import User
from app.schemas.payment import (
    PaymentRequestCreate,
    PaymentRequestCreated,
    PaymentRequestResponse,
)
from app.services.payments import PaymentApprovalWorkflow

router = APIRouter()


@router.post("/", response_model=PaymentRequestCreated, status_code=status.HTTP_201_CREATED)
async def submit_payment_request(
    payload: PaymentRequestCreate,
    current_user: User = Depends(get_current_user),
    workflow: PaymentApprovalWorkflow = Depends(get_payment_workflow),
):
    """
    Submit a coin top-up request for operator review.

    Only one pending request is allowed per user (409 otherwise).
    """
    request = await workflow.submit(
        user_id=current_user.id,
        package=payload.package,
        amount_usd=payload.amount_usd,
        coins=payload.coins,
        screenshot=payload.screenshot,
        note=payload.note,
    )
    return PaymentRequestCreated(id=request.id)


@router.get("/", response_model=list[PaymentRequestResponse])
async def list_payment_requests(
    current_user: User = Depends(get_current_user),
    workflow: PaymentApprovalWorkflow = Depends(get_payment_workflow),
):
    """The authenticated user's 10 most recent payment requests."""
    return await workflow.list_for_user(current_user.id)
