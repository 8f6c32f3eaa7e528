from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AuthorizationError
from app.core.security import verify_admin_key
from app import database
from app.database import get_db
from app.models.user import User
from app.services.billing import BillingScheduler
from app.services.deployment_service import DeploymentService
from app.services.ledger import LedgerService
from app.services.payments import PaymentApprovalWorkflow
from app.services.provisioner import TemplateProvisioner
from app.services.supervisor import Pm2Supervisor, ProcessSupervisor


async def get_current_user(request: Request) -> User:
    """
    Get current authenticated user from request state.

    UserInjectionMiddleware has already parsed the JWT and loaded the user.
    This dependency simply retrieves it and raises 401 if not present.

    Args:
        request: FastAPI request object with user in state

    Returns:
        User: The authenticated user

    Raises:
        HTTPException: 401 if user is not authenticated
    """
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    """Reject operator routes unless X-Admin-Key matches the configured key."""
    if not verify_admin_key(x_admin_key):
        raise AuthorizationError("Forbidden")


def get_supervisor() -> ProcessSupervisor:
    return Pm2Supervisor()


def get_provisioner() -> TemplateProvisioner:
    return TemplateProvisioner()


async def get_deployment_service(
    db: AsyncSession = Depends(get_db),
    supervisor: ProcessSupervisor = Depends(get_supervisor),
    provisioner: TemplateProvisioner = Depends(get_provisioner),
) -> DeploymentService:
    return DeploymentService(db, supervisor, provisioner)


async def get_ledger_service(db: AsyncSession = Depends(get_db)) -> LedgerService:
    return LedgerService(db)


async def get_payment_workflow(db: AsyncSession = Depends(get_db)) -> PaymentApprovalWorkflow:
    return PaymentApprovalWorkflow(db)


def get_billing_scheduler(
    supervisor: ProcessSupervisor = Depends(get_supervisor),
    provisioner: TemplateProvisioner = Depends(get_provisioner),
) -> BillingScheduler:
    # Looked up at call time so the session factory can be swapped (tests)
    return BillingScheduler(database.AsyncSessionLocal, supervisor, provisioner)
