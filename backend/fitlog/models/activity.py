"""Canonical activity model shared by every import source."""
import enum
from datetime import datetime
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from fitlog.database import Base

NAME_MAX_LENGTH = 255
NOTES_MAX_LENGTH = 5000


class ActivityType(str, enum.Enum):
    """Closed set of activity categories stored in ``activities.type``."""

    RUN = "run"
    RIDE = "ride"
    SWIM = "swim"
    WALK = "walk"
    HIKE = "hike"
    STRENGTH = "strength"
    YOGA = "yoga"
    SOCCER = "soccer"
    OTHER = "other"


class Activity(Base):
    """
    Activity model representing one workout, whatever its source.

    Imported rows are unique per (user, source, source_id). Manually entered
    rows have no source_id and are kept unique by their dedup_hash instead.
    """
    __tablename__ = "activities"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "source_id", name="uq_activities_external"),
        Index(
            "uq_activities_manual_dedup",
            "user_id",
            "dedup_hash",
            unique=True,
            sqlite_where=text("source_id IS NULL"),
            postgresql_where=text("source_id IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Source tracking
    source = Column(String(32), nullable=False, default="manual")
    source_id = Column(String(100), nullable=True)
    external_url = Column(Text, nullable=True)

    # Activity details
    type = Column(String(32), nullable=False, index=True)
    name = Column(String(NAME_MAX_LENGTH), nullable=False)
    notes = Column(Text, nullable=True)

    # Local time for display, UTC for sorting
    start_local = Column(DateTime, nullable=False)
    start_utc = Column(DateTime, nullable=False, index=True)
    end_utc = Column(DateTime, nullable=True)
    timezone = Column(String(64), nullable=True)
    timezone_offset = Column(Integer, nullable=False, default=0)  # Minutes from UTC

    duration_minutes = Column(Integer, nullable=False, default=0)
    elapsed_minutes = Column(Integer, nullable=False, default=0)
    distance_m = Column(Float, nullable=True)

    # Derived summary, metadata flags and the original provider record
    payload = Column(JSON, nullable=True)

    dedup_hash = Column(String(64), nullable=False, index=True)
    content_hash = Column(String(64), nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="activities")

    def __repr__(self):
        return f"<Activity(id={self.id}, source={self.source}, source_id={self.source_id}, type={self.type})>"
