"""User (account) model."""

from sqlalchemy import CheckConstraint, Column, String, DateTime, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


TIER_FREE = "free"
TIER_PRO = "pro"


class User(Base):
    """Account holding credentials, tier and credit balance."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_users_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)  # stored lower-cased
    password_hash = Column(String, nullable=False)
    name = Column(String, nullable=False)
    profile_picture = Column(String, nullable=True)
    tier = Column(String, nullable=False, default=TIER_FREE)  # free, pro
    tier_expiry = Column(DateTime(timezone=True), nullable=True)
    credits_remaining = Column(Integer, nullable=False, default=3)
    last_credit_reset = Column(DateTime(timezone=True), nullable=True)
    refresh_token_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    edit_records = relationship("EditRecord", back_populates="user", cascade="all, delete-orphan")
    history_entries = relationship("HistoryEntry", back_populates="user", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")
