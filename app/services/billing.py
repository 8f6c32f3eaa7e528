"""
Periodic billing:
  - run_period: charge every running deployment the daily cost, or deactivate it
    (status stopped_no_coins) when its owner can no longer pay.
  - start_billing_scheduler / shutdown_billing_scheduler: APScheduler cron job that
    fires run_period once per day.

Each deployment is handled in its own session and transaction; one failing item
never aborts the rest of the batch. A per-deployment watermark
(``last_billed_period``) makes a second run for the same period a no-op.
"""
from dataclasses import dataclass, field
from datetime import date

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.constants import INITIATOR_SCHEDULER, STATUS_RUNNING, TX_DAILY
from app.core.logging import app_logger, log_coin_movement
from app.models.deployment import Deployment
from app.models.transaction import Transaction
from app.models.user import User
from app.services.deployment_service import DeploymentService, current_billing_period
from app.services.provisioner import TemplateProvisioner
from app.services.supervisor import ProcessSupervisor

BILLING_JOB_ID = "daily_billing_v1"

# Per-item outcomes
CHARGED = "charged"
DEACTIVATED = "deactivated"
SKIPPED = "skipped"


@dataclass
class BillingReport:
    period: date
    charged: int = 0
    deactivated: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[str] = field(default_factory=list)


class BillingScheduler:
    """Charges or deactivates running deployments once per billing period."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        supervisor: ProcessSupervisor,
        provisioner: TemplateProvisioner | None = None,
        daily_cost: int = settings.DAILY_COIN_COST,
    ):
        self.session_factory = session_factory
        self.supervisor = supervisor
        self.provisioner = provisioner or TemplateProvisioner()
        self.daily_cost = daily_cost

    async def run_period(self, period: date | None = None) -> BillingReport:
        period = period or current_billing_period()
        report = BillingReport(period=period)
        app_logger.info(f"[BILLING] Daily coin deduction for {period.isoformat()}...")

        async with self.session_factory() as db:
            result = await db.execute(
                select(Deployment.id, Deployment.handle)
                .where(Deployment.status == STATUS_RUNNING)
                .order_by(Deployment.id)
            )
            batch = result.all()

        for deployment_id, handle in batch:
            try:
                outcome = await self.process_deployment(deployment_id, period)
            except Exception as e:
                report.failed += 1
                report.failures.append(handle)
                app_logger.exception(f"[BILLING] Failed to bill {handle}: {e}")
                continue

            if outcome == CHARGED:
                report.charged += 1
            elif outcome == DEACTIVATED:
                report.deactivated += 1
            else:
                report.skipped += 1

        app_logger.info(
            f"[BILLING] {period.isoformat()}: charged={report.charged} "
            f"deactivated={report.deactivated} skipped={report.skipped} failed={report.failed}"
        )
        return report

    async def process_deployment(self, deployment_id: int, period: date) -> str:
        """Bill a single deployment in its own session; returns the outcome."""
        async with self.session_factory() as db:
            try:
                return await self._process(db, deployment_id, period)
            except Exception:
                await db.rollback()
                raise

    async def _process(self, db: AsyncSession, deployment_id: int, period: date) -> str:
        row = (
            await db.execute(
                select(Deployment, User.coins)
                .join(User, User.id == Deployment.user_id)
                .where(Deployment.id == deployment_id)
            )
        ).one_or_none()
        if row is None:
            return SKIPPED
        deployment, coins = row

        if deployment.status != STATUS_RUNNING or deployment.last_billed_period == period:
            return SKIPPED

        if coins < self.daily_cost:
            service = DeploymentService(db, self.supervisor, self.provisioner, daily_cost=self.daily_cost)
            await service.stop(deployment.handle, initiator=INITIATOR_SCHEDULER)
            app_logger.info(f"[BILLING] Stopped {deployment.handle}: insufficient coins")
            return DEACTIVATED

        # Watermark first: only one run per period gets past this update
        stamped = await db.execute(
            update(Deployment)
            .where(
                Deployment.id == deployment.id,
                Deployment.status == STATUS_RUNNING,
                or_(
                    Deployment.last_billed_period.is_(None),
                    Deployment.last_billed_period != period,
                ),
            )
            .values(last_billed_period=period)
            .execution_options(synchronize_session=False)
        )
        if stamped.rowcount != 1:
            await db.rollback()
            return SKIPPED

        debited = await db.execute(
            update(User)
            .where(User.id == deployment.user_id, User.coins >= self.daily_cost)
            .values(coins=User.coins - self.daily_cost)
            .returning(User.coins)
            .execution_options(synchronize_session=False)
        )
        balance = debited.scalar_one_or_none()
        if balance is None:
            # Balance changed under us; leave it for the next period's run
            await db.rollback()
            return SKIPPED

        db.add(
            Transaction(
                user_id=deployment.user_id,
                amount=-self.daily_cost,
                type=TX_DAILY,
                description=f"Daily renewal: {deployment.display_name}",
            )
        )
        await db.commit()
        log_coin_movement(
            deployment.user_id, -self.daily_cost, TX_DAILY, balance,
            f"Daily renewal: {deployment.display_name}",
        )
        return CHARGED


_scheduler: AsyncIOScheduler | None = None


def start_billing_scheduler(billing: BillingScheduler) -> AsyncIOScheduler:
    """Register the daily billing job and start the scheduler (idempotent)."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        return _scheduler

    _scheduler = AsyncIOScheduler(timezone=settings.BILLING_TIMEZONE)
    _scheduler.add_job(
        billing.run_period,
        CronTrigger(
            hour=settings.BILLING_CRON_HOUR,
            minute=settings.BILLING_CRON_MINUTE,
            timezone=settings.BILLING_TIMEZONE,
        ),
        id=BILLING_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    app_logger.info(
        f"[BILLING] Scheduler started: daily at {settings.BILLING_CRON_HOUR:02d}:"
        f"{settings.BILLING_CRON_MINUTE:02d} {settings.BILLING_TIMEZONE}"
    )
    return _scheduler


def shutdown_billing_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        app_logger.info("[BILLING] Scheduler stopped")
    _scheduler = None
