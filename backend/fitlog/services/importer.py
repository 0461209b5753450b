"""
Import run orchestration.

One ``ImportOrchestrator.run`` call is one invocation: it fetches pages
sequentially, normalizes and upserts each record, logs every page, and stops
when the provider is exhausted (COMPLETED), when time, rate limits or run
limits say so (PAUSED, with a continuation token), or on a structural error
(ABORTED).

    STARTING -> FETCHING_PAGE -> PROCESSING_PAGE -> LOGGING_PAGE
        -> FETCHING_PAGE | STOPPING -> COMPLETED | PAUSED | ABORTED

The time budget is checked before each fetch only, so a page that has been
fetched is always processed and logged before the run pauses.
"""
import enum
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fitlog.config import settings
from fitlog.errors import (
    CredentialsInvalid,
    ImportAborted,
    ImportInProgress,
    IngestError,
    InvalidParameter,
    NormalizationError,
    NotConnected,
    ProviderSchemaError,
)
from fitlog.logging_config import sanitize_for_log
from fitlog.models import ImportRun, SyncState, User
from fitlog.services.cursor import ContinuationCursor, decode_cursor, encode_cursor
from fitlog.services.ledger import ImportLedger, PageStats
from fitlog.services.normalizer import SOURCE_STRAVA, normalize_activity
from fitlog.services.strava import StravaActivityFetcher
from fitlog.services.upserter import ActivityUpserter, UpsertResult

logger = logging.getLogger(__name__)

_AFTER_RE = re.compile(r"^\d{1,10}$")


class RunState(str, enum.Enum):
    STARTING = "starting"
    FETCHING_PAGE = "fetching_page"
    PROCESSING_PAGE = "processing_page"
    LOGGING_PAGE = "logging_page"
    STOPPING = "stopping"
    COMPLETED = "completed"
    PAUSED = "paused"
    ABORTED = "aborted"


@dataclass
class ImportResult:
    """Totals for one invocation and how it ended."""

    run_id: Optional[str] = None
    state: RunState = RunState.STARTING
    imported: int = 0
    duplicates: int = 0
    updated: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    pages_processed: int = 0
    continuation_token: Optional[str] = None
    pause_reason: Optional[str] = None

    @property
    def paused(self) -> bool:
        return self.state is RunState.PAUSED

    def add_page(self, stats: PageStats) -> None:
        self.imported += stats.imported
        self.duplicates += stats.duplicates
        self.updated += stats.updated
        self.failures.extend(stats.failures)
        self.pages_processed += 1

    def as_response(self) -> Dict[str, Any]:
        return {
            "status": self.state.value,
            "run_id": self.run_id,
            "imported": self.imported,
            "duplicates": self.duplicates,
            "updated": self.updated,
            "failed": self.failures,
            "pages_processed": self.pages_processed,
            "continuation_token": self.continuation_token if self.paused else None,
            "paused": self.paused,
        }


def parse_after(after: Optional[str]) -> Optional[int]:
    """
    Validate the ``after`` lower bound: unix seconds, at most 10 digits,
    not in the future.
    """
    if after is None or after == "":
        return None
    text = str(after).strip()
    if not _AFTER_RE.match(text):
        raise InvalidParameter("Invalid after parameter - must be unix timestamp")
    value = int(text)
    if value > int(time.time()):
        raise InvalidParameter("Invalid after parameter - must not be in the future")
    return value


def _external_id(raw: Any) -> Optional[str]:
    external_id = raw.get("id") if isinstance(raw, dict) else None
    return str(external_id) if external_id is not None else None


def clamp_per_page(per_page: Optional[int]) -> int:
    if not per_page:
        return settings.IMPORT_DEFAULT_PER_PAGE
    return min(max(int(per_page), 1), settings.IMPORT_MAX_PER_PAGE)


def ensure_credentials(user: User) -> str:
    """Return the user's Strava access token or raise if it cannot be used."""
    if not user.is_strava_connected:
        raise NotConnected(
            "Strava account not connected. Please connect your account first.",
            {"connect_url": "/settings/integrations/strava"},
        )
    if user.is_token_expired:
        # Token refresh belongs to the OAuth flow, not to the importer
        raise CredentialsInvalid("Strava access token expired. Please reconnect your account.")
    return user.access_token


class ImportOrchestrator:
    """
    Drives one import invocation for one user.

    Args:
        db: Session shared by the ledger, the upserter and sync state
        fetcher: Page source for the user's activities
        time_budget_s: Wall-clock budget for the invocation
        cursor_secret: Key used to sign continuation tokens
        max_pages: Pages per invocation before pausing
        max_activities: Records per invocation before pausing
        lock_seconds: How long a started import blocks a fresh one
        clock: Monotonic clock in seconds
    """

    def __init__(
        self,
        db: Session,
        fetcher: StravaActivityFetcher,
        time_budget_s: Optional[float] = None,
        cursor_secret: Optional[str] = None,
        max_pages: Optional[int] = None,
        max_activities: Optional[int] = None,
        lock_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        source: str = SOURCE_STRAVA,
    ):
        self.db = db
        self.fetcher = fetcher
        self.ledger = ImportLedger(db)
        self.upserter = ActivityUpserter(db)
        self.time_budget_s = settings.IMPORT_TIME_BUDGET_SECONDS if time_budget_s is None else time_budget_s
        self.cursor_secret = cursor_secret or settings.CURSOR_SECRET
        self.max_pages = max_pages or settings.IMPORT_MAX_PAGES
        self.max_activities = max_activities or settings.IMPORT_MAX_ACTIVITIES
        self.lock_seconds = settings.IMPORT_LOCK_SECONDS if lock_seconds is None else lock_seconds
        self.clock = clock
        self.source = source
        self.state = RunState.STARTING
        self._started = 0.0

    def _transition(self, state: RunState) -> None:
        logger.debug("Import state %s -> %s", self.state.value, state.value)
        self.state = state

    def _remaining_ms(self) -> int:
        return max(0, int((self.time_budget_s - (self.clock() - self._started)) * 1000))

    async def run(
        self,
        user: User,
        after: Optional[int] = None,
        per_page: Optional[int] = None,
        continuation_token: Optional[str] = None,
    ) -> ImportResult:
        """
        Import activities for ``user``.

        Args:
            user: Owner of the imported activities
            after: Lower-bound unix timestamp; defaults to the last completed
                run's high-water mark
            per_page: Page size hint, clamped to the allowed range
            continuation_token: Token from a paused run

        Returns:
            ImportResult for this invocation

        Raises:
            CursorDecodeError: Continuation token is invalid
            ImportInProgress: Another invocation for this user started recently
            ImportAborted: A structural error stopped the run
        """
        self._started = self.clock()
        self.state = RunState.STARTING
        per_page = clamp_per_page(per_page)

        resumed = continuation_token is not None
        if resumed:
            cursor = decode_cursor(continuation_token, self.cursor_secret)

        sync_state = self._load_sync_state(user)
        if not resumed:
            self._check_not_running(sync_state)
            if after is None:
                after = sync_state.last_import_after
            cursor = ContinuationCursor.start(after)

        sync_state.import_in_progress = True
        sync_state.import_started_at = datetime.utcnow()
        sync_state.last_status = "in_progress"
        self.db.commit()

        run = self.ledger.start_run(user.id, self.source, cursor.after, per_page, resumed=resumed)
        result = ImportResult(run_id=run.id)

        try:
            cursor = await self._loop(user, run, cursor, per_page, result)
        except IngestError as exc:
            self._transition(RunState.ABORTED)
            self.db.rollback()
            self._finish_aborted(sync_state, result, exc)
            logger.error("Import aborted: %s", sanitize_for_log({
                "user_id": user.id,
                "run_id": run.id,
                "code": exc.code,
                "error": exc.message,
            }))
            raise ImportAborted(exc, run.id) from exc
        except Exception:
            self.db.rollback()
            self._finish_aborted(sync_state, result, None)
            raise

        if self.state is RunState.PAUSED:
            result.state = RunState.PAUSED
            result.continuation_token = encode_cursor(cursor, self.cursor_secret)
        else:
            self._transition(RunState.COMPLETED)
            result.state = RunState.COMPLETED

        self._finish(sync_state, result, cursor)
        logger.info("Import %s: %s", result.state.value, sanitize_for_log({
            "user_id": user.id,
            "run_id": run.id,
            "imported": result.imported,
            "duplicates": result.duplicates,
            "updated": result.updated,
            "failed": len(result.failures),
            "pages": result.pages_processed,
            "pause_reason": result.pause_reason,
            "duration_ms": int((self.clock() - self._started) * 1000),
        }))
        return result

    async def _loop(
        self,
        user: User,
        run: ImportRun,
        cursor: ContinuationCursor,
        per_page: int,
        result: ImportResult,
    ) -> ContinuationCursor:
        records_seen = 0

        while True:
            stop_reason = self._stop_reason(result.pages_processed, records_seen)
            if stop_reason:
                self._pause(result, stop_reason)
                return cursor

            self._transition(RunState.FETCHING_PAGE)
            page_started_at = datetime.utcnow()
            try:
                page = await self.fetcher.fetch(cursor, per_page, self._remaining_ms(), clock=self.clock)
            except IngestError as exc:
                if not exc.retryable:
                    raise
                self._pause(result, exc.code)
                return cursor

            self._transition(RunState.PROCESSING_PAGE)
            stats, normalization_failures, start_epochs = self._process_page(user, page.records)

            self._transition(RunState.LOGGING_PAGE)
            self.ledger.record_page(run, cursor, per_page, stats, page_started_at)
            result.add_page(stats)
            records_seen += stats.fetched

            if stats.fetched and normalization_failures == stats.fetched:
                raise ProviderSchemaError(
                    "No activity on the page could be normalized",
                    {"page": cursor.page, "sample": stats.failures[0]["reason"]},
                )

            cursor = page.next_cursor.with_high_water(start_epochs)

            if page.exhausted:
                self._transition(RunState.STOPPING)
                return cursor

    def _process_page(self, user: User, records: List[Dict]) -> tuple:
        stats = PageStats(fetched=len(records))
        normalization_failures = 0
        start_epochs = []

        for raw in records:
            try:
                record = normalize_activity(raw, user.id)
            except NormalizationError as exc:
                normalization_failures += 1
                stats.add(UpsertResult.failed(
                    f"normalize: {exc.message}",
                    stage="normalize",
                    external_id=_external_id(raw),
                    name=raw.get("name") if isinstance(raw, dict) else None,
                ))
                continue
            except Exception as exc:
                normalization_failures += 1
                logger.warning("Unexpected error normalizing activity %s", _external_id(raw), exc_info=True)
                stats.add(UpsertResult.failed(
                    f"normalize: {exc.__class__.__name__}: {exc}",
                    stage="normalize",
                    external_id=_external_id(raw),
                    name=raw.get("name") if isinstance(raw, dict) else None,
                ))
                continue

            outcome = self.upserter.upsert(record)
            stats.add(outcome)
            if outcome.ok:
                start_epochs.append(record.start_epoch)

        return stats, normalization_failures, start_epochs

    def _stop_reason(self, pages_processed: int, records_seen: int) -> Optional[str]:
        if self.clock() - self._started >= self.time_budget_s:
            return "TIME_BUDGET"
        if pages_processed >= self.max_pages:
            return "MAX_PAGES"
        if records_seen >= self.max_activities:
            return "MAX_ACTIVITIES"
        return None

    def _pause(self, result: ImportResult, reason: str) -> None:
        self._transition(RunState.STOPPING)
        self._transition(RunState.PAUSED)
        result.pause_reason = reason
        logger.info("Pausing import run %s: %s", result.run_id, reason)

    def _load_sync_state(self, user: User) -> SyncState:
        query = select(SyncState).where(SyncState.user_id == user.id, SyncState.source == self.source)
        sync_state = self.db.execute(query).scalars().first()
        if sync_state is None:
            sync_state = SyncState(user_id=user.id, source=self.source)
            self.db.add(sync_state)
            self.db.flush()
        return sync_state

    def _check_not_running(self, sync_state: SyncState) -> None:
        if not sync_state.import_in_progress or sync_state.import_started_at is None:
            return
        running_for = datetime.utcnow() - sync_state.import_started_at
        if running_for < timedelta(seconds=self.lock_seconds):
            raise ImportInProgress("Import already in progress. Please wait or provide continuation_token.")

    def _add_totals(self, sync_state: SyncState, result: ImportResult) -> None:
        sync_state.total_imported = (sync_state.total_imported or 0) + result.imported
        sync_state.total_duplicates = (sync_state.total_duplicates or 0) + result.duplicates
        sync_state.total_updated = (sync_state.total_updated or 0) + result.updated
        sync_state.total_failed = (sync_state.total_failed or 0) + len(result.failures)

    def _finish(self, sync_state: SyncState, result: ImportResult, cursor: ContinuationCursor) -> None:
        sync_state.last_run_at = datetime.utcnow()
        self._add_totals(sync_state, result)

        if result.paused:
            sync_state.last_status = "paused"
            sync_state.import_continue_token = result.continuation_token
        else:
            if cursor.high_water is not None:
                sync_state.last_import_after = cursor.high_water
            sync_state.last_status = "partial" if result.failures else "success"
            sync_state.import_in_progress = False
            sync_state.import_continue_token = None

        if result.failures:
            sync_state.last_error = result.failures[0]["reason"]
            sync_state.last_error_code = "PARTIAL_FAILURE"
        else:
            sync_state.last_error = None
            sync_state.last_error_code = None

        self.db.commit()

    def _finish_aborted(self, sync_state: SyncState, result: ImportResult, exc: Optional[IngestError]) -> None:
        sync_state.last_run_at = datetime.utcnow()
        sync_state.last_status = "failed"
        sync_state.last_error = exc.message if exc else "Unexpected import error"
        sync_state.last_error_code = exc.code if exc else "UNKNOWN"
        sync_state.import_in_progress = False
        sync_state.import_continue_token = None
        self._add_totals(sync_state, result)
        self.db.commit()
