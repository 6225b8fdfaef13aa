"""HistoryEntry model for the append-only edit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class HistoryEntry(Base):
    """Immutable record of a completed edit."""

    __tablename__ = "edit_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    # Not a foreign key: entries outlive the edit record they describe.
    edit_record_id = Column(String, nullable=False, unique=True, index=True)
    operation_type = Column(String, nullable=False)
    parameters = Column(JSON, nullable=True)
    original_ref = Column(String, nullable=False)
    result_ref = Column(String, nullable=False)
    processing_time_ms = Column(Integer, nullable=False, default=0)
    cost = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="history_entries")
