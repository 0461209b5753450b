"""Append-only audit log of import runs and their pages."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fitlog.models import ImportPageLog, ImportRun
from fitlog.services.cursor import ContinuationCursor
from fitlog.services.upserter import UpsertResult, UpsertStatus

logger = logging.getLogger(__name__)


@dataclass
class PageStats:
    """Per-page outcome counts built from UpsertResults."""

    fetched: int = 0
    imported: int = 0
    duplicates: int = 0
    updated: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, result: UpsertResult) -> None:
        if result.status is UpsertStatus.IMPORTED:
            self.imported += 1
        elif result.status is UpsertStatus.DUPLICATE:
            self.duplicates += 1
        elif result.status is UpsertStatus.UPDATED:
            self.updated += 1
        else:
            self.failed += 1
            self.failures.append(result.failure_entry())

    @property
    def succeeded(self) -> int:
        return self.imported + self.duplicates + self.updated


class ImportLedger:
    """
    Writes ImportRun and ImportPageLog rows.

    ``record_page`` commits, which also commits the activity writes made for
    that page in the same session. A page's log row therefore survives any
    failure on a later page.
    """

    def __init__(self, db: Session):
        self.db = db

    def start_run(
        self,
        user_id: int,
        source: str,
        after: Optional[int],
        per_page: int,
        resumed: bool = False,
    ) -> ImportRun:
        run = ImportRun(
            user_id=user_id,
            source=source,
            requested_after=after,
            requested_per_page=per_page,
            resumed=resumed,
        )
        self.db.add(run)
        self.db.commit()
        logger.info("Started import run %s (source=%s, resumed=%s)", run.id, source, resumed)
        return run

    def record_page(
        self,
        run: ImportRun,
        cursor: ContinuationCursor,
        per_page: int,
        stats: PageStats,
        started_at: datetime,
    ) -> ImportPageLog:
        """Persist the audit entry for one page and commit."""
        completed_at = datetime.utcnow()
        entry = ImportPageLog(
            run_id=run.id,
            page_number=cursor.page,
            requested_after=cursor.after,
            requested_per_page=per_page,
            requested_cursor={"page": cursor.page, "last_seen_id": cursor.last_seen_id},
            fetched=stats.fetched,
            imported=stats.imported,
            duplicates=stats.duplicates,
            updated=stats.updated,
            failed=stats.failed,
            errors=stats.failures or None,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((completed_at - started_at).total_seconds() * 1000),
        )
        self.db.add(entry)
        self.db.commit()

        logger.info(
            "Run %s page %d: fetched=%d imported=%d duplicates=%d updated=%d failed=%d",
            run.id,
            cursor.page,
            stats.fetched,
            stats.imported,
            stats.duplicates,
            stats.updated,
            stats.failed,
        )
        return entry

    def pages_for_run(self, run_id: str) -> List[ImportPageLog]:
        query = (
            select(ImportPageLog)
            .where(ImportPageLog.run_id == run_id)
            .order_by(ImportPageLog.id)
        )
        return list(self.db.execute(query).scalars())
