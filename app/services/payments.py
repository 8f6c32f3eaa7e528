"""Top-up requests submitted by users and reviewed by an operator."""
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from app.core.constants import (
    PAYMENT_APPROVED,
    PAYMENT_PENDING,
    PAYMENT_REJECTED,
    TX_TOPUP,
)
from app.core.exceptions import (
    AlreadyReviewedError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from app.core.logging import app_logger, log_coin_movement
from app.models.payment_request import PaymentRequest
from app.models.transaction import Transaction
from app.models.user import User

PENDING_EXISTS = "You already have a pending payment request. Wait for admin to review it."


class PaymentApprovalWorkflow:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def submit(
        self,
        user_id: int,
        package: str,
        amount_usd: float,
        coins: int,
        screenshot: str | None = None,
        note: str | None = None,
    ) -> PaymentRequest:
        """
        Create a pending top-up request. A user may have only one pending request.

        Raises:
            ValidationError: Missing package or non-positive amounts
            NotFoundError: Unknown user
            ConflictError: A pending request already exists
        """
        package = (package or "").strip()
        if not package or not amount_usd or amount_usd <= 0 or not coins or coins <= 0:
            raise ValidationError("Missing required fields.")

        if await self.db.get(User, user_id) is None:
            raise NotFoundError("User not found.")

        pending = await self.db.execute(
            select(PaymentRequest.id).where(
                PaymentRequest.user_id == user_id,
                PaymentRequest.status == PAYMENT_PENDING,
            )
        )
        if pending.first() is not None:
            raise ConflictError(PENDING_EXISTS)

        request = PaymentRequest(
            user_id=user_id,
            package=package,
            amount_usd=amount_usd,
            coins=coins,
            screenshot=screenshot or None,
            note=note or None,
            status=PAYMENT_PENDING,
        )
        self.db.add(request)
        try:
            await self.db.commit()
        except IntegrityError as e:
            # Lost a race with a concurrent submit for the same user
            await self.db.rollback()
            raise ConflictError(PENDING_EXISTS) from e
        await self.db.refresh(request)
        return request

    async def _review(self, request_id: int, new_status: str) -> PaymentRequest:
        """Move a pending request to new_status exactly once (not committed)."""
        result = await self.db.execute(
            update(PaymentRequest)
            .where(PaymentRequest.id == request_id, PaymentRequest.status == PAYMENT_PENDING)
            .values(status=new_status, reviewed_at=func.now())
            .execution_options(synchronize_session=False)
        )
        request = await self.db.get(PaymentRequest, request_id, populate_existing=True)
        if request is None:
            raise NotFoundError("Request not found.")
        if result.rowcount != 1:
            raise AlreadyReviewedError()
        return request

    async def approve(self, request_id: int) -> PaymentRequest:
        """
        Approve a pending request: credit the owner and append a ``topup``
        transaction in the same commit as the status change.

        Raises:
            NotFoundError: Unknown request
            AlreadyReviewedError: Request is no longer pending
        """
        try:
            request = await self._review(request_id, PAYMENT_APPROVED)
            credited = await self.db.execute(
                update(User)
                .where(User.id == request.user_id)
                .values(coins=User.coins + request.coins)
                .returning(User.coins)
                .execution_options(synchronize_session=False)
            )
            balance = credited.scalar_one()
            self.db.add(
                Transaction(
                    user_id=request.user_id,
                    amount=request.coins,
                    type=TX_TOPUP,
                    description=f"Payment approved: {request.package} (+{request.coins} coins)",
                )
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(request)
        log_coin_movement(
            request.user_id, request.coins, TX_TOPUP, balance,
            f"Payment approved: {request.package} (+{request.coins} coins)",
        )
        return request

    async def reject(self, request_id: int) -> PaymentRequest:
        """
        Reject a pending request. No ledger effect.

        Raises:
            NotFoundError: Unknown request
            AlreadyReviewedError: Request is no longer pending
        """
        try:
            request = await self._review(request_id, PAYMENT_REJECTED)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(request)
        app_logger.info(f"Payment request {request_id} rejected")
        return request

    async def list_for_user(self, user_id: int, limit: int = 10) -> list[PaymentRequest]:
        result = await self.db.execute(
            select(PaymentRequest)
            .where(PaymentRequest.user_id == user_id)
            .order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[tuple[PaymentRequest, str, str]]:
        """All requests with owner username and email; pending first, then newest."""
        pending_first = case((PaymentRequest.status == PAYMENT_PENDING, 0), else_=1)
        result = await self.db.execute(
            select(PaymentRequest, User.username, User.email)
            .join(User, User.id == PaymentRequest.user_id)
            .order_by(pending_first, PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
        )
        return [tuple(row) for row in result.all()]
