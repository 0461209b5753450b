"""User model holding the athlete's stored Strava credentials."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from fitlog.database import Base


class User(Base):
    """
    User model representing an athlete with a connected Strava account.

    Tokens are written by the OAuth flow, which lives outside this service.
    The import pipeline only reads them.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    strava_id = Column(Integer, unique=True, nullable=True, index=True)
    access_token = Column(String, nullable=True)
    refresh_token = Column(String, nullable=True)
    token_expiry = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    activities = relationship("Activity", back_populates="user", cascade="all, delete-orphan")
    import_runs = relationship("ImportRun", back_populates="user", cascade="all, delete-orphan")
    sync_states = relationship("SyncState", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, strava_id={self.strava_id})>"

    @property
    def is_strava_connected(self) -> bool:
        """Check if the user has stored Strava credentials."""
        return bool(self.access_token)

    @property
    def is_token_expired(self) -> bool:
        """Check if the access token has expired."""
        if self.token_expiry is None:
            return False
        return datetime.utcnow() >= self.token_expiry
