"""
Deduplicating writes of normalized activities.

Each record is written inside its own SAVEPOINT, so a failure rolls back that
record only and the rest of the page carries on. Uniqueness is enforced by the
database: ``(user_id, source, source_id)`` for imported activities and
``(user_id, dedup_hash)`` for manual ones. A concurrent import of the same
activity loses the INSERT race and is classified against the winning row.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fitlog.models import Activity
from fitlog.services.normalizer import CanonicalRecord

logger = logging.getLogger(__name__)

MAX_DISTANCE_M = 1_000_000
MAX_HEART_RATE = 300

# Columns overwritten when an existing row changed upstream
UPDATABLE_COLUMNS = (
    "type",
    "name",
    "notes",
    "start_local",
    "start_utc",
    "end_utc",
    "timezone",
    "timezone_offset",
    "duration_minutes",
    "elapsed_minutes",
    "distance_m",
    "external_url",
    "payload",
    "dedup_hash",
    "content_hash",
)


class UpsertStatus(str, enum.Enum):
    IMPORTED = "imported"
    DUPLICATE = "duplicate"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of writing one record. Failures are data, not exceptions."""

    status: UpsertStatus
    external_id: Optional[str] = None
    activity_id: Optional[int] = None
    reason: Optional[str] = None
    stage: Optional[str] = None
    name: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not UpsertStatus.FAILED

    @classmethod
    def failed(
        cls,
        reason: str,
        stage: str,
        external_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "UpsertResult":
        return cls(UpsertStatus.FAILED, external_id=external_id, reason=reason, stage=stage, name=name)

    def failure_entry(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "name": self.name,
            "stage": self.stage,
            "reason": self.reason,
        }


def validate_record(record: CanonicalRecord) -> List[str]:
    """Return the reasons ``record`` cannot be stored; empty when valid."""
    problems = []

    if record.distance_m is not None and not 0 <= record.distance_m <= MAX_DISTANCE_M:
        problems.append(f"distance {record.distance_m:g}m outside [0, {MAX_DISTANCE_M}]")

    if record.duration_minutes < 0 or record.elapsed_minutes < 0:
        problems.append("negative duration")

    if record.end_utc is not None and record.end_utc < record.start_utc:
        problems.append("activity ends before it starts")

    summary = record.payload.get("summary") or {}
    average_hr = (summary.get("heart_rate") or {}).get("average")
    if average_hr is not None and not 0 < average_hr < MAX_HEART_RATE:
        problems.append(f"average heart rate {average_hr:g} outside (0, {MAX_HEART_RATE})")

    calories = summary.get("calories")
    if calories is not None and calories < 0:
        problems.append("negative calories")

    return problems


class ActivityUpserter:
    """
    Writes canonical records into ``activities``.

    Args:
        db: Session the writes go through; the caller owns commit
    """

    def __init__(self, db: Session):
        self.db = db

    def upsert(self, record: CanonicalRecord) -> UpsertResult:
        """
        Insert or update one record and classify what happened.

        Returns:
            IMPORTED for a new row, UPDATED when the stored content differed,
            DUPLICATE when it was identical, FAILED with a reason otherwise.
            Calling twice with the same record yields IMPORTED then DUPLICATE.
        """
        problems = validate_record(record)
        if problems:
            return UpsertResult.failed(
                "validation: " + "; ".join(problems),
                stage="validate",
                external_id=record.source_id,
                name=record.name,
            )

        try:
            with self.db.begin_nested():
                return self._write(record)
        except SQLAlchemyError as exc:
            logger.warning(
                "Failed to store activity %s/%s: %s",
                record.source,
                record.source_id,
                exc.__class__.__name__,
            )
            return UpsertResult.failed(
                f"store: {exc.__class__.__name__}: {getattr(exc, 'orig', exc)}",
                stage="store",
                external_id=record.source_id,
                name=record.name,
            )
        except Exception as exc:
            logger.warning(
                "Unexpected error storing activity %s/%s",
                record.source,
                record.source_id,
                exc_info=True,
            )
            return UpsertResult.failed(
                f"store: {exc.__class__.__name__}: {exc}",
                stage="store",
                external_id=record.source_id,
                name=record.name,
            )

    def _write(self, record: CanonicalRecord) -> UpsertResult:
        existing = self._find_existing(record)

        if existing is None:
            inserted = self._insert_if_absent(record)
            if inserted:
                return UpsertResult(UpsertStatus.IMPORTED, external_id=record.source_id, activity_id=inserted)
            # Another invocation inserted the same activity first
            existing = self._find_existing(record)
            if existing is None:
                raise SQLAlchemyError("conflicting row disappeared after insert")

        if existing.content_hash == record.content_hash:
            return UpsertResult(UpsertStatus.DUPLICATE, external_id=record.source_id, activity_id=existing.id)

        row = record.as_row()
        for column in UPDATABLE_COLUMNS:
            setattr(existing, column, row[column])
        self.db.flush()
        return UpsertResult(UpsertStatus.UPDATED, external_id=record.source_id, activity_id=existing.id)

    def _find_existing(self, record: CanonicalRecord) -> Optional[Activity]:
        query = select(Activity).where(Activity.user_id == record.user_id)
        if record.source_id is not None:
            query = query.where(
                Activity.source == record.source,
                Activity.source_id == record.source_id,
            )
        else:
            query = query.where(
                Activity.source_id.is_(None),
                Activity.dedup_hash == record.dedup_hash,
            )
        return self.db.execute(query).scalars().first()

    def _insert_if_absent(self, record: CanonicalRecord) -> Optional[int]:
        """INSERT .. ON CONFLICT DO NOTHING. Returns the new id, or None on conflict."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise SQLAlchemyError(f"Unsupported database dialect for upsert: {dialect}")

        stmt = insert(Activity).values(**record.as_row())
        if record.source_id is not None:
            stmt = stmt.on_conflict_do_nothing(index_elements=["user_id", "source", "source_id"])
        else:
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["user_id", "dedup_hash"],
                index_where=Activity.source_id.is_(None),
            )
        stmt = stmt.returning(Activity.id)

        return self.db.execute(stmt).scalar_one_or_none()
