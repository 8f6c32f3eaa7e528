from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.constants import PAYMENT_PENDING
from app.database import Base

_PENDING_ONLY = text(f"status = '{PAYMENT_PENDING}'")


class PaymentRequest(Base):
    __tablename__ = "payment_requests"
    __table_args__ = (
        Index(
            "uq_payment_requests_one_pending_per_user",
            "user_id",
            unique=True,
            postgresql_where=_PENDING_ONLY,
            sqlite_where=_PENDING_ONLY,
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    package = Column(String(100), nullable=False)
    amount_usd = Column(Float, nullable=False)
    coins = Column(Integer, nullable=False)
    screenshot = Column(String(1024), nullable=True)  # Evidence reference (URL or file id)
    note = Column(String(500), nullable=True)
    status = Column(String(16), nullable=False, default=PAYMENT_PENDING)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="payment_requests")
