"""Import run ledger models."""
import uuid
from datetime import datetime
from sqlalchemy import Boolean, CheckConstraint, Column, Integer, String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from fitlog.database import Base


def _new_run_id() -> str:
    return uuid.uuid4().hex


class ImportRun(Base):
    """
    One invocation of the import pipeline.

    Created before the first page is fetched and never modified afterwards.
    """
    __tablename__ = "import_runs"

    id = Column(String(32), primary_key=True, default=_new_run_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source = Column(String(32), nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    requested_after = Column(Integer, nullable=True)
    requested_per_page = Column(Integer, nullable=False)
    resumed = Column(Boolean, default=False, nullable=False)

    # Relationships
    user = relationship("User", back_populates="import_runs")
    pages = relationship(
        "ImportPageLog",
        back_populates="run",
        order_by="ImportPageLog.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<ImportRun(id={self.id}, user_id={self.user_id}, source={self.source})>"


class ImportPageLog(Base):
    """
    Audit entry for one fetched page. Append-only.
    """
    __tablename__ = "import_page_logs"
    __table_args__ = (
        CheckConstraint(
            "fetched >= imported + duplicates + updated + failed",
            name="ck_import_page_logs_counts",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(32), ForeignKey("import_runs.id"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)

    # Request details
    requested_after = Column(Integer, nullable=True)
    requested_per_page = Column(Integer, nullable=False)
    requested_cursor = Column(JSON, nullable=True)

    # Outcome counts
    fetched = Column(Integer, default=0, nullable=False)
    imported = Column(Integer, default=0, nullable=False)
    duplicates = Column(Integer, default=0, nullable=False)
    updated = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)
    errors = Column(JSON, nullable=True)

    # Timing
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)

    # Relationships
    run = relationship("ImportRun", back_populates="pages")

    def __repr__(self):
        return f"<ImportPageLog(run_id={self.run_id}, page={self.page_number}, fetched={self.fetched})>"
