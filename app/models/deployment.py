from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.constants import DEPLOYMENT_STATUSES, STATUS_RUNNING
from app.database import Base

_RUNNING_ONLY = text(f"status = '{STATUS_RUNNING}'")
_KNOWN_STATUS = "status IN (" + ", ".join(f"'{s}'" for s in DEPLOYMENT_STATUSES) + ")"


class Deployment(Base):
    __tablename__ = "deployments"
    __table_args__ = (
        # At most one running deployment per user, enforced by the store
        Index(
            "uq_deployments_one_running_per_user",
            "user_id",
            unique=True,
            postgresql_where=_RUNNING_ONLY,
            sqlite_where=_RUNNING_ONLY,
        ),
        CheckConstraint(_KNOWN_STATUS, name="ck_deployments_status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    handle = Column(String(64), unique=True, nullable=False, index=True)
    app_name = Column(String(100), nullable=True)
    session_preview = Column(String(64), nullable=True)  # Display only, never the raw secret
    status = Column(String(20), nullable=False, default=STATUS_RUNNING)
    deployed_at = Column(DateTime(timezone=True), server_default=func.now())
    stopped_at = Column(DateTime(timezone=True), nullable=True)
    last_billed_period = Column(Date, nullable=True)

    user = relationship("User", back_populates="deployments")

    @property
    def process_name(self) -> str:
        # Supervisor names are global on the host; only the handle is unique
        return self.handle

    @property
    def display_name(self) -> str:
        return self.app_name or self.handle
