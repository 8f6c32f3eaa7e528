from app.database import Base

# Import all models here for Alembic to detect them
from app.models.user import User
from app.models.deployment import Deployment
from app.models.transaction import Transaction
from app.models.payment_request import PaymentRequest

__all__ = ["Base", "User", "Deployment", "Transaction", "PaymentRequest"]
