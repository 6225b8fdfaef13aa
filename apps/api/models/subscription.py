"""Subscription model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


PLAN_MONTHLY = "monthly"
PLAN_YEARLY = "yearly"

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_CANCELLED = "cancelled"
SUBSCRIPTION_EXPIRED = "expired"
SUBSCRIPTION_PENDING = "pending"


class Subscription(Base):
    """Paid PRO plan purchase for an account."""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    plan_type = Column(String, nullable=False)  # monthly, yearly
    status = Column(String, nullable=False, default=SUBSCRIPTION_PENDING, index=True)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    payment_id = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    amount = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")

    def is_active(self, now: datetime = None) -> bool:
        current = now or datetime.now(timezone.utc)
        end_date = self.end_date
        if end_date is not None and end_date.tzinfo is None:
            end_date = end_date.replace(tzinfo=timezone.utc)
        return self.status == SUBSCRIPTION_ACTIVE and end_date is not None and end_date > current
