"""EditRecord model for tracked photo operations."""

from sqlalchemy import Boolean, Column, String, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)
IN_PROGRESS_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)

OUTCOME_ENHANCED = "enhanced"
OUTCOME_FALLBACK_NO_CHANGE = "fallback_no_change"


class EditRecord(Base):
    """One submitted photo operation and its lifecycle."""

    __tablename__ = "edit_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    operation_type = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)  # pending, processing, completed, failed
    original_ref = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    result_ref = Column(String, nullable=True)
    parameters = Column(JSON, nullable=True)
    outcome = Column(String, nullable=True)  # enhanced, fallback_no_change
    processing_time_ms = Column(Integer, nullable=False, default=0)
    charged_credits = Column(Integer, nullable=False, default=0)
    credit_shortfall = Column(Boolean, nullable=False, default=False)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="edit_records")
