"""Imports router for triggering Strava imports and reading their audit trail."""
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from fitlog.config import settings
from fitlog.database import get_db
from fitlog.dependencies import get_current_user, get_strava_client
from fitlog.errors import IngestError
from fitlog.models import ImportRun, SyncState, User
from fitlog.services.importer import (
    ImportOrchestrator,
    clamp_per_page,
    ensure_credentials,
    parse_after,
)
from fitlog.services.ledger import ImportLedger
from fitlog.services.normalizer import SOURCE_STRAVA
from fitlog.services.rate_limit import RateLimitGovernor
from fitlog.services.strava import StravaActivityFetcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{settings.API_PREFIX}/imports", tags=["imports"])


def _error(exc: IngestError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.post("/strava")
async def import_strava_activities(
    after: Optional[str] = Query(None, description="Only import activities after this unix timestamp"),
    per_page: Optional[int] = Query(None, description="Activities per page (1-100)"),
    continuation_token: Optional[str] = Query(None, description="Token returned by a paused import"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: httpx.AsyncClient = Depends(get_strava_client),
):
    """
    Import activities from Strava for the authenticated user.

    Runs for at most the configured time budget. When the budget, a rate
    limit or a run limit stops the import early, the response has
    ``paused: true`` and a ``continuation_token`` to call again with.
    """
    try:
        after_ts = parse_after(after)
        access_token = ensure_credentials(user)

        fetcher = StravaActivityFetcher(
            client,
            access_token,
            governor=RateLimitGovernor(
                max_retries=settings.STRAVA_MAX_RETRIES,
                base_backoff_ms=settings.STRAVA_BACKOFF_BASE_MS,
                max_backoff_ms=settings.STRAVA_BACKOFF_MAX_MS,
            ),
            max_retries=settings.STRAVA_MAX_RETRIES,
            keyset_param=settings.STRAVA_KEYSET_PARAM,
        )
        orchestrator = ImportOrchestrator(db, fetcher)
        result = await orchestrator.run(
            user,
            after=after_ts,
            per_page=clamp_per_page(per_page),
            continuation_token=continuation_token,
        )
    except IngestError as e:
        raise _error(e)
    except Exception as e:
        logger.exception("Strava import failed for user %s", user.id)
        raise HTTPException(
            status_code=500,
            detail={"code": "IMPORT_FAILED", "message": f"Import failed: {e.__class__.__name__}"},
        )

    return result.as_response()


@router.get("/strava/status")
async def get_import_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Get Strava import status for the authenticated user.

    Returns the last run's outcome, running totals and any pending
    continuation token.
    """
    sync_state = (
        db.query(SyncState)
        .filter(SyncState.user_id == user.id, SyncState.source == SOURCE_STRAVA)
        .first()
    )

    if not sync_state:
        return {
            "connected": user.is_strava_connected,
            "has_imported": False,
            "last_status": None,
            "totals": {"imported": 0, "duplicates": 0, "updated": 0, "failed": 0},
        }

    return {
        "connected": user.is_strava_connected,
        "has_imported": sync_state.last_run_at is not None,
        "last_status": sync_state.last_status,
        "last_run_at": sync_state.last_run_at.isoformat() if sync_state.last_run_at else None,
        "last_import_after": sync_state.last_import_after,
        "last_error": sync_state.last_error,
        "last_error_code": sync_state.last_error_code,
        "import_in_progress": sync_state.import_in_progress,
        "continuation_token": sync_state.import_continue_token,
        "totals": {
            "imported": sync_state.total_imported,
            "duplicates": sync_state.total_duplicates,
            "updated": sync_state.total_updated,
            "failed": sync_state.total_failed,
        },
    }


@router.get("/runs/{run_id}")
async def get_import_run(
    run_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get one import run and its per-page audit entries."""
    run = db.query(ImportRun).filter(ImportRun.id == run_id, ImportRun.user_id == user.id).first()

    if not run:
        raise HTTPException(status_code=404, detail="Import run not found")

    pages = ImportLedger(db).pages_for_run(run.id)

    return {
        "id": run.id,
        "source": run.source,
        "started_at": run.started_at.isoformat(),
        "requested_after": run.requested_after,
        "requested_per_page": run.requested_per_page,
        "resumed": run.resumed,
        "pages": [
            {
                "page_number": page.page_number,
                "requested_cursor": page.requested_cursor,
                "fetched": page.fetched,
                "imported": page.imported,
                "duplicates": page.duplicates,
                "updated": page.updated,
                "failed": page.failed,
                "errors": page.errors or [],
                "completed_at": page.completed_at.isoformat(),
                "duration_ms": page.duration_ms,
            }
            for page in pages
        ],
    }
