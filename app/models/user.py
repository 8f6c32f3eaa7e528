from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("coins >= 0", name="ck_users_coins_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(32), nullable=True)
    hashed_password = Column(String(255), nullable=False)
    coins = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Deploy claim: set while a deployment for this user is being provisioned
    provisioning_handle = Column(String(64), nullable=True)
    provisioning_started_at = Column(DateTime(timezone=True), nullable=True)

    deployments = relationship("Deployment", back_populates="user")
    transactions = relationship("Transaction", back_populates="user")
    payment_requests = relationship("PaymentRequest", back_populates="user")
