"""Accounts and the coin ledger: registration, balances, top-ups, projections."""
from dataclasses import dataclass

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.constants import INITIATOR_ADMIN, STATUS_RUNNING, TX_CREDIT, TX_TOPUP
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging import app_logger, log_coin_movement
from app.core.security import get_password_hash, verify_password
from app.models.deployment import Deployment
from app.models.payment_request import PaymentRequest
from app.models.transaction import Transaction
from app.models.user import User
from app.services.deployment_service import DeploymentService


@dataclass
class UserSummary:
    user: User
    balance: int
    total_deployments: int
    active_deployments: int
    active_deployment: Deployment | None

    @property
    def inactive_deployments(self) -> int:
        return self.total_deployments - self.active_deployments


def _active_bots_subquery():
    return (
        select(func.count(Deployment.id))
        .where(Deployment.user_id == User.id, Deployment.status == STATUS_RUNNING)
        .correlate(User)
        .scalar_subquery()
    )


class LedgerService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: int) -> User:
        user = await self.db.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    async def get_user_by_username(self, username: str) -> User:
        result = await self.db.execute(
            select(User)
            .where(User.username == username)
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found.")
        return user

    async def register_user(
        self,
        username: str,
        email: str,
        name: str,
        password: str,
        phone: str | None = None,
        welcome_bonus: int = settings.WELCOME_BONUS_COINS,
    ) -> User:
        """Create an account seeded with the welcome bonus (recorded as a credit)."""
        username_taken = await self.db.execute(select(User.id).where(User.username == username))
        if username_taken.first() is not None:
            raise ConflictError("Username already taken.")
        email_taken = await self.db.execute(select(User.id).where(User.email == email))
        if email_taken.first() is not None:
            raise ConflictError("Email already registered.")

        user = User(
            username=username,
            email=email,
            name=name,
            phone=phone or None,
            hashed_password=get_password_hash(password),
            coins=welcome_bonus,
        )
        self.db.add(user)
        try:
            await self.db.flush()
            if welcome_bonus:
                self.db.add(
                    Transaction(
                        user_id=user.id,
                        amount=welcome_bonus,
                        type=TX_CREDIT,
                        description="Welcome bonus",
                    )
                )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError("Username or email already registered.") from e

        await self.db.refresh(user)
        if welcome_bonus:
            log_coin_movement(user.id, welcome_bonus, TX_CREDIT, user.coins, "Welcome bonus")
        return user

    async def authenticate(self, login: str, password: str) -> User | None:
        """Resolve a username or email plus password to a user, or None."""
        login = login.strip()
        result = await self.db.execute(
            select(User).where(or_(User.username == login, User.email == login.lower()))
        )
        user = result.scalars().first()
        if user is None or not verify_password(password, user.hashed_password):
            return None
        return user

    async def get_user_summary(self, user_id: int) -> UserSummary:
        user = await self.get_user(user_id)
        total = await self.db.scalar(
            select(func.count(Deployment.id)).where(Deployment.user_id == user_id)
        )
        active_result = await self.db.execute(
            select(Deployment).where(
                Deployment.user_id == user_id, Deployment.status == STATUS_RUNNING
            )
        )
        active = active_result.scalars().first()
        return UserSummary(
            user=user,
            balance=user.coins,
            total_deployments=total or 0,
            active_deployments=1 if active else 0,
            active_deployment=active,
        )

    async def list_transactions(self, user_id: int, limit: int = 20) -> list[Transaction]:
        """Most recent ledger entries first."""
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def ledger_balance(self, user_id: int) -> int:
        """Balance derived from the ledger; equals users.coins when consistent."""
        total = await self.db.scalar(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == user_id
            )
        )
        return int(total)

    async def admin_topup(self, username: str, amount: int) -> int:
        """Credit a user directly; returns the new balance."""
        if not amount or amount <= 0:
            raise ValidationError("Amount must be positive.")
        user = await self.get_user_by_username(username)

        try:
            result = await self.db.execute(
                update(User)
                .where(User.id == user.id)
                .values(coins=User.coins + amount)
                .returning(User.coins)
                .execution_options(synchronize_session=False)
            )
            new_balance = result.scalar_one()
            self.db.add(
                Transaction(
                    user_id=user.id,
                    amount=amount,
                    type=TX_TOPUP,
                    description=f"Admin top-up: +{amount} coins",
                )
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log_coin_movement(user.id, amount, TX_TOPUP, new_balance, f"Admin top-up: +{amount} coins")
        return new_balance

    async def admin_list_users(self, limit: int | None = None) -> list[tuple[User, int]]:
        """Users with their running-bot count, newest first."""
        query = (
            select(User, _active_bots_subquery().label("active_bots"))
            .order_by(User.created_at.desc(), User.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return [tuple(row) for row in result.all()]

    async def admin_stats(self) -> dict:
        return {
            "total_users": await self.db.scalar(select(func.count(User.id))) or 0,
            "active_bots": await self.db.scalar(
                select(func.count(Deployment.id)).where(Deployment.status == STATUS_RUNNING)
            ) or 0,
            "total_deployments": await self.db.scalar(select(func.count(Deployment.id))) or 0,
            "total_coins": await self.db.scalar(
                select(func.coalesce(func.sum(User.coins), 0))
            ) or 0,
            "recent_users": await self.admin_list_users(limit=10),
        }

    async def admin_delete_user(self, username: str, deployments: DeploymentService) -> None:
        """Stop a user's running bots, then remove the user and all their records."""
        user = await self.get_user_by_username(username)
        user_id = user.id

        running = await deployments.get_running_for_user(user_id)
        if running is not None:
            await deployments.stop(running.handle, initiator=INITIATOR_ADMIN)

        try:
            await self.db.execute(delete(PaymentRequest).where(PaymentRequest.user_id == user_id))
            await self.db.execute(delete(Transaction).where(Transaction.user_id == user_id))
            await self.db.execute(delete(Deployment).where(Deployment.user_id == user_id))
            await self.db.execute(delete(User).where(User.id == user_id))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        app_logger.info(f"Deleted user {username} and all their records")
