"""SyncState model for tracking per-source import progress."""
from datetime import datetime
from sqlalchemy import Boolean, Column, Integer, String, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from fitlog.database import Base


class SyncState(Base):
    """
    SyncState model tracking the import state of one user and source.

    ``last_import_after`` is the newest activity start seen by the last
    completed run; the next run uses it as its lower bound so only new
    activities are fetched. A paused run keeps its continuation token here
    until a later invocation finishes it.
    """
    __tablename__ = "sync_state"
    __table_args__ = (UniqueConstraint("user_id", "source", name="uq_sync_state_user_source"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source = Column(String(32), nullable=False, default="strava")

    last_import_after = Column(Integer, nullable=True)  # Unix seconds
    last_run_at = Column(DateTime, nullable=True)
    last_status = Column(String(20), nullable=True)  # success, partial, paused, failed, in_progress
    last_error = Column(Text, nullable=True)
    last_error_code = Column(String(50), nullable=True)

    # Resume support
    import_in_progress = Column(Boolean, default=False, nullable=False)
    import_started_at = Column(DateTime, nullable=True)
    import_continue_token = Column(Text, nullable=True)

    # Running totals across all runs
    total_imported = Column(Integer, default=0, nullable=False)
    total_duplicates = Column(Integer, default=0, nullable=False)
    total_updated = Column(Integer, default=0, nullable=False)
    total_failed = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="sync_states")

    def __repr__(self):
        return f"<SyncState(user_id={self.user_id}, source={self.source}, last_status={self.last_status})>"
