"""Deployment lifecycle: provision, charge and record, stop, delete."""
import asyncio
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from app.config import settings
from app.core.constants import (
    INITIATOR_USER,
    STATUS_RUNNING,
    STOP_STATUS_BY_INITIATOR,
    TX_DEPLOY,
)
from app.core.exceptions import (
    AlreadyRunningError,
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    ProvisioningError,
    SupervisorError,
    ValidationError,
)
from app.core.logging import app_logger, log_coin_movement
from app.models.deployment import Deployment
from app.models.transaction import Transaction
from app.models.user import User
from app.services.provisioner import TemplateProvisioner, session_preview
from app.services.supervisor import ProcessSupervisor


def current_billing_period(tz_name: str = settings.BILLING_TIMEZONE) -> date:
    """Return the billing period (calendar date) that is current in tz_name."""
    return datetime.now(ZoneInfo(tz_name)).date()


def new_handle() -> str:
    """Allocate a collision-resistant external handle for a deployment."""
    return f"bot-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass
class DeployResult:
    handle: str
    balance: int


class DeploymentService:
    """Orchestrates the deployment lifecycle over one database session."""

    def __init__(
        self,
        db: AsyncSession,
        supervisor: ProcessSupervisor,
        provisioner: TemplateProvisioner,
        daily_cost: int = settings.DAILY_COIN_COST,
        provisioning_timeout_seconds: int = settings.PROVISIONING_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.supervisor = supervisor
        self.provisioner = provisioner
        self.daily_cost = daily_cost
        self.provisioning_timeout_seconds = provisioning_timeout_seconds

    # ----- lookups -----

    async def get_by_handle(self, handle: str) -> Deployment | None:
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.handle == handle)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_running_for_user(self, user_id: int) -> Deployment | None:
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.user_id == user_id, Deployment.status == STATUS_RUNNING)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: int) -> list[Deployment]:
        """A user's deployments, newest first."""
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.user_id == user_id)
            .order_by(Deployment.deployed_at.desc(), Deployment.id.desc())
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[tuple[Deployment, str, str]]:
        """Every deployment with its owner's username and email, newest first."""
        result = await self.db.execute(
            select(Deployment, User.username, User.email)
            .join(User, User.id == Deployment.user_id)
            .order_by(Deployment.deployed_at.desc(), Deployment.id.desc())
        )
        return [tuple(row) for row in result.all()]

    # ----- deploy -----

    async def deploy(
        self,
        user_id: int,
        session_secret: str,
        display_name: str | None = None,
    ) -> DeployResult:
        """
        Provision a bot for a user and charge the first period.

        Slow side effects (template copy, supervisor registration) happen
        before the single commit that debits the balance, appends the
        ``deploy`` transaction and inserts the running deployment. Any failure
        before that commit removes the partial working tree and leaves the
        ledger untouched.

        Raises:
            ValidationError: Empty session secret
            NotFoundError: Unknown user
            InsufficientFundsError: Balance below the daily cost
            AlreadyRunningError: A running or in-flight deployment exists
            ProvisioningError: Template copy or supervisor registration failed
        """
        session_secret = (session_secret or "").strip()
        if not session_secret:
            raise ValidationError("sessionId is required.")

        user = await self.db.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFoundError("User not found.")
        self._ensure_affordable(user.coins)

        handle = new_handle()
        app_name = (display_name or "").strip() or f"msb-{user.username}"
        env = self._bot_env(user, session_secret)

        await self._claim(user_id, handle)
        try:
            # Checked while holding the claim: a finished deploy releases the
            # claim in the same commit that inserts its running row.
            existing = await self.get_running_for_user(user_id)
            if existing is not None:
                raise AlreadyRunningError(handle=existing.handle)
            # End the read transaction; nothing stays open while provisioning
            await self.db.rollback()
        except Exception:
            await self._release_claim(user_id, handle)
            raise

        await self._provision(user_id, handle, env)
        balance = await self._commit_deploy(user_id, handle, app_name, session_secret)

        app_logger.info(
            f"Deployed {handle} ({app_name}) for user {user_id}; balance now {balance}"
        )
        return DeployResult(handle=handle, balance=balance)

    def _ensure_affordable(self, coins: int) -> None:
        if coins < self.daily_cost:
            raise InsufficientFundsError(
                f"Not enough coins. You need {self.daily_cost} coin(s) to deploy. "
                "Contact admin to top up."
            )

    def _bot_env(self, user: User, session_secret: str) -> dict[str, str]:
        return {
            "SESSION_ID": session_secret,
            "OWNER_NUMBER": user.phone or "",
            "BOT_NAME": settings.BOT_NAME,
            "PREFIX": settings.BOT_PREFIX,
            "MODE": settings.BOT_MODE,
            "TIME_ZONE": settings.BOT_TIME_ZONE,
        }

    async def _claim(self, user_id: int, handle: str) -> None:
        """Mark the user as provisioning; only one claim may be live at a time."""
        now = datetime.now(timezone.utc)
        stale_cutoff = now - timedelta(seconds=2 * self.provisioning_timeout_seconds)
        result = await self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                or_(
                    User.provisioning_handle.is_(None),
                    User.provisioning_started_at < stale_cutoff,
                ),
            )
            .values(provisioning_handle=handle, provisioning_started_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            raise AlreadyRunningError("A deployment for this account is already in progress.")

    async def _release_claim(self, user_id: int, handle: str) -> None:
        try:
            await self.db.execute(
                update(User)
                .where(User.id == user_id, User.provisioning_handle == handle)
                .values(provisioning_handle=None, provisioning_started_at=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            # The claim expires on its own after the stale cutoff
            await self.db.rollback()
            app_logger.error(f"Could not release deploy claim {handle} for user {user_id}: {e}")

    async def _start_instance(
        self, build: asyncio.Future, handle: str, env: dict[str, str]
    ) -> None:
        # Shielded: a timeout must not detach us from the copy still running
        working_dir = await asyncio.shield(build)
        await self.supervisor.start(handle, working_dir, env)

    async def _provision(self, user_id: int, handle: str, env: dict[str, str]) -> None:
        cancel = threading.Event()
        build = asyncio.ensure_future(
            asyncio.to_thread(self.provisioner.provision, handle, env, cancel)
        )
        try:
            await asyncio.wait_for(
                self._start_instance(build, handle, env),
                timeout=self.provisioning_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            app_logger.error(
                f"Provisioning {handle} timed out after {self.provisioning_timeout_seconds}s"
            )
            cancel.set()
            # The worker thread removes its own partial tree; wait until it has
            await asyncio.gather(build, return_exceptions=True)
            await self._discard_instance(handle, stop_process=True)
            await self._release_claim(user_id, handle)
            raise ProvisioningError("Deployment failed: provisioning timed out.") from e
        except Exception as e:
            app_logger.error(f"Provisioning {handle} failed: {e}")
            await self._discard_instance(handle, stop_process=False)
            await self._release_claim(user_id, handle)
            raise ProvisioningError("Deployment failed.") from e

    async def _discard_instance(self, handle: str, stop_process: bool) -> None:
        """Best-effort teardown of a provisioned-but-unrecorded instance."""
        if stop_process:
            try:
                await self.supervisor.stop(handle)
            except SupervisorError as e:
                app_logger.error(f"Could not stop orphaned process {handle}: {e}")
        await asyncio.to_thread(self.provisioner.remove, handle)

    async def _commit_deploy(
        self,
        user_id: int,
        handle: str,
        app_name: str,
        session_secret: str,
    ) -> int:
        """Debit, record and insert in one transaction; undo side effects on failure."""
        try:
            result = await self.db.execute(
                update(User)
                .where(User.id == user_id, User.coins >= self.daily_cost)
                .values(
                    coins=User.coins - self.daily_cost,
                    provisioning_handle=None,
                    provisioning_started_at=None,
                )
                .returning(User.coins)
                .execution_options(synchronize_session=False)
            )
            balance = result.scalar_one_or_none()
            if balance is None:
                raise InsufficientFundsError(
                    f"Not enough coins. You need {self.daily_cost} coin(s) to deploy. "
                    "Contact admin to top up."
                )

            self.db.add(
                Transaction(
                    user_id=user_id,
                    amount=-self.daily_cost,
                    type=TX_DEPLOY,
                    description=f"Bot deployed: {app_name}",
                )
            )
            self.db.add(
                Deployment(
                    user_id=user_id,
                    handle=handle,
                    app_name=app_name,
                    session_preview=session_preview(session_secret),
                    status=STATUS_RUNNING,
                    last_billed_period=current_billing_period(),
                )
            )
            await self.db.commit()
            log_coin_movement(user_id, -self.daily_cost, TX_DEPLOY, balance, f"Bot deployed: {app_name}")
            return balance
        except InsufficientFundsError:
            await self.db.rollback()
            await self._discard_instance(handle, stop_process=True)
            await self._release_claim(user_id, handle)
            raise
        except IntegrityError as e:
            await self.db.rollback()
            winner = await self.get_running_for_user(user_id)
            await self._discard_instance(handle, stop_process=True)
            await self._release_claim(user_id, handle)
            raise AlreadyRunningError(handle=winner.handle if winner else None) from e
        except SQLAlchemyError:
            await self.db.rollback()
            app_logger.error(f"Store failure while recording {handle}; discarding instance")
            await self._discard_instance(handle, stop_process=True)
            await self._release_claim(user_id, handle)
            raise

    # ----- stop / delete -----

    async def stop(
        self,
        handle: str,
        initiator: str = INITIATOR_USER,
        owner_id: int | None = None,
    ) -> Deployment:
        """
        Stop a deployment. Idempotent: an already-stopped deployment is returned
        unchanged. Supervisor errors are logged and never block the status change.

        Args:
            handle: Deployment handle
            initiator: ``user``, ``admin`` or ``scheduler``; selects the final status
            owner_id: When given, the deployment must belong to this user

        Raises:
            NotFoundError: Unknown handle (or not owned by owner_id)
        """
        new_status = STOP_STATUS_BY_INITIATOR.get(initiator)
        if new_status is None:
            raise ValidationError(f"Unknown stop initiator: {initiator}")

        deployment = await self.get_by_handle(handle)
        if deployment is None or (owner_id is not None and deployment.user_id != owner_id):
            raise NotFoundError("Bot not found.")
        if deployment.status != STATUS_RUNNING:
            return deployment

        try:
            await self.supervisor.stop(deployment.process_name)
        except SupervisorError as e:
            app_logger.error(f"Supervisor stop failed for {handle}: {e}")

        await self.db.execute(
            update(Deployment)
            .where(Deployment.id == deployment.id, Deployment.status == STATUS_RUNNING)
            .values(status=new_status, stopped_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(deployment)

        app_logger.info(f"Stopped {handle} ({initiator}); status {deployment.status}")
        return deployment

    async def delete_record(self, handle: str, owner_id: int | None = None) -> None:
        """
        Permanently delete a stopped deployment and its working tree.

        Raises:
            NotFoundError: Unknown handle (or not owned by owner_id)
            ConflictError: The deployment is still running
        """
        deployment = await self.get_by_handle(handle)
        if deployment is None or (owner_id is not None and deployment.user_id != owner_id):
            raise NotFoundError("Bot not found.")
        if deployment.status == STATUS_RUNNING:
            raise ConflictError("Stop the bot before deleting.")

        await self.db.execute(
            delete(Deployment).where(
                Deployment.id == deployment.id, Deployment.status != STATUS_RUNNING
            )
        )
        await self.db.commit()
        await asyncio.to_thread(self.provisioner.remove, handle)
