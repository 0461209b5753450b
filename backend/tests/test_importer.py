import calendar
import time
from datetime import datetime

import httpx
import pytest

from fitlog.errors import (
    CredentialsInvalid,
    CursorDecodeError,
    ImportAborted,
    ImportInProgress,
    InvalidParameter,
    NotConnected,
)
from fitlog.models import Activity, ImportPageLog, ImportRun, SyncState
from fitlog.services import importer as importer_module
from fitlog.services.cursor import decode_cursor
from fitlog.services.importer import (
    ImportOrchestrator,
    RunState,
    clamp_per_page,
    ensure_credentials,
    parse_after,
)
from fitlog.services.ledger import ImportLedger
from fitlog.services.strava import StravaActivityFetcher
from fitlog.services.upserter import ActivityUpserter

CURSOR_SECRET = "importer-secret"


def _epoch(raw):
    return calendar.timegm(time.strptime(raw["start_date"], "%Y-%m-%dT%H:%M:%SZ"))


def _sync_state(db, user):
    return db.query(SyncState).filter(SyncState.user_id == user.id).one()


@pytest.fixture()
def orchestrator(db, clock, clocked_sleeper):
    def build(http, **kwargs):
        fetcher = StravaActivityFetcher(http, "strava-access-token", sleep=clocked_sleeper)
        kwargs.setdefault("time_budget_s", 9)
        return ImportOrchestrator(db, fetcher, cursor_secret=CURSOR_SECRET, clock=clock, **kwargs)

    return build


@pytest.mark.asyncio
async def test_bad_record_is_reported_and_run_continues(db, user, strava, make_activity, orchestrator):
    strava.pages[1] = [make_activity(1), make_activity(2, distance=-5), make_activity(3)]
    strava.pages[2] = [make_activity(4)]

    async with strava.client() as http:
        result = await orchestrator(http).run(user, per_page=3)

    assert result.state is RunState.COMPLETED
    assert result.imported == 3
    assert result.pages_processed == 2
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure["external_id"] == "2"
    assert failure["stage"] == "validate"
    assert "distance" in failure["reason"]

    assert sorted(a.source_id for a in db.query(Activity).all()) == ["1", "3", "4"]

    pages = ImportLedger(db).pages_for_run(result.run_id)
    assert [p.page_number for p in pages] == [1, 2]
    assert (pages[0].fetched, pages[0].imported, pages[0].failed) == (3, 2, 1)
    assert pages[0].errors[0]["external_id"] == "2"
    assert pages[1].requested_cursor == {"page": 2, "last_seen_id": "3"}

    state = _sync_state(db, user)
    assert state.last_status == "partial"
    assert state.last_error_code == "PARTIAL_FAILURE"
    assert state.import_in_progress is False
    assert state.total_imported == 3
    assert state.total_failed == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "malformed",
    [{"timezone": 5}, {"photo_count": "2"}, {"workout_type": [1]}, {"kudos_count": 2.5}],
)
async def test_malformed_field_fails_only_that_record(db, user, strava, make_activity, orchestrator, malformed):
    strava.pages[1] = [make_activity(1), make_activity(2, **malformed), make_activity(3)]

    async with strava.client() as http:
        result = await orchestrator(http).run(user)

    assert result.state is RunState.COMPLETED
    assert result.imported == 2
    assert len(result.failures) == 1
    assert result.failures[0]["external_id"] == "2"
    assert result.failures[0]["stage"] == "normalize"
    assert sorted(a.source_id for a in db.query(Activity).all()) == ["1", "3"]


@pytest.mark.asyncio
async def test_unexpected_normalizer_error_fails_only_that_record(db, user, strava, make_activity, orchestrator, monkeypatch):
    original = importer_module.normalize_activity

    def explode_on_second(raw, user_id):
        if raw["id"] == 2:
            raise KeyError("summary")
        return original(raw, user_id)

    monkeypatch.setattr(importer_module, "normalize_activity", explode_on_second)
    strava.pages[1] = [make_activity(1), make_activity(2), make_activity(3)]

    async with strava.client() as http:
        result = await orchestrator(http).run(user)

    assert result.state is RunState.COMPLETED
    assert result.imported == 2
    assert result.failures[0]["external_id"] == "2"
    assert "KeyError" in result.failures[0]["reason"]


@pytest.mark.asyncio
async def test_unexpected_store_error_fails_only_that_record(db, user, strava, make_activity, orchestrator, monkeypatch):
    original = ActivityUpserter._write

    def fail_on_second(self, record):
        if record.source_id == "2":
            raise ValueError("payload is not serializable")
        return original(self, record)

    monkeypatch.setattr(ActivityUpserter, "_write", fail_on_second)
    strava.pages[1] = [make_activity(1), make_activity(2), make_activity(3)]

    async with strava.client() as http:
        result = await orchestrator(http).run(user)

    assert result.state is RunState.COMPLETED
    assert result.imported == 2
    assert len(result.failures) == 1
    assert result.failures[0]["stage"] == "store"
    assert "payload is not serializable" in result.failures[0]["reason"]
    assert sorted(a.source_id for a in db.query(Activity).all()) == ["1", "3"]
    assert _sync_state(db, user).last_status == "partial"


@pytest.mark.asyncio
async def test_completed_run_advances_high_water_mark(db, user, strava, make_activity, orchestrator):
    records = [make_activity(1), make_activity(2), make_activity(3)]
    strava.pages[1] = records

    async with strava.client() as http:
        result = await orchestrator(http).run(user)

    assert result.state is RunState.COMPLETED
    assert result.as_response()["continuation_token"] is None
    assert result.as_response()["paused"] is False

    state = _sync_state(db, user)
    assert state.last_status == "success"
    assert state.last_import_after == _epoch(records[2])
    assert state.import_continue_token is None
    assert state.last_run_at is not None


@pytest.mark.asyncio
async def test_rerun_is_idempotent(db, user, strava, make_activity, orchestrator):
    records = [make_activity(1), make_activity(2), make_activity(3)]
    strava.pages[1] = records

    async with strava.client() as http:
        first = await orchestrator(http).run(user)
        second = await orchestrator(http).run(user)

    assert first.imported == 3
    assert (second.imported, second.duplicates, second.updated) == (0, 3, 0)
    assert db.query(Activity).count() == 3

    # The second run starts from the newest activity seen by the first
    assert strava.params[-1]["after"] == str(_epoch(records[2]))
    assert _sync_state(db, user).total_duplicates == 3


@pytest.mark.asyncio
async def test_changed_upstream_activity_is_updated(db, user, strava, make_activity, orchestrator):
    strava.pages[1] = [make_activity(1), make_activity(2)]

    async with strava.client() as http:
        await orchestrator(http).run(user)
        strava.pages[1] = [make_activity(1), make_activity(2, name="Long Run")]
        result = await orchestrator(http).run(user, after=0)

    assert (result.imported, result.duplicates, result.updated) == (0, 1, 1)
    assert db.query(Activity).filter(Activity.source_id == "2").one().name == "Long Run"


@pytest.mark.asyncio
async def test_time_budget_pauses_and_token_resumes(db, user, strava, make_activity, orchestrator, clock):
    strava.pages[1] = [make_activity(1), make_activity(2)]
    strava.pages[2] = [make_activity(3), make_activity(4)]
    strava.pages[3] = [make_activity(5)]
    strava.on_request = lambda request: clock.advance(5)

    async with strava.client() as http:
        paused = await orchestrator(http).run(user, per_page=2)

        assert paused.state is RunState.PAUSED
        assert paused.pause_reason == "TIME_BUDGET"
        assert paused.pages_processed == 2
        assert paused.imported == 4
        assert paused.continuation_token

        cursor = decode_cursor(paused.continuation_token, CURSOR_SECRET)
        assert cursor.page == 3
        assert cursor.last_seen_id == "4"

        state = _sync_state(db, user)
        assert state.last_status == "paused"
        assert state.import_in_progress is True
        assert state.import_continue_token == paused.continuation_token
        assert state.last_import_after is None

        resumed = await orchestrator(http).run(user, per_page=2, continuation_token=paused.continuation_token)

    assert resumed.state is RunState.COMPLETED
    assert resumed.imported == 1
    assert resumed.duplicates == 0
    assert strava.params[-1]["page"] == "3"
    assert db.query(Activity).count() == 5

    state = _sync_state(db, user)
    assert state.last_status == "success"
    assert state.import_in_progress is False
    assert state.import_continue_token is None
    assert state.last_import_after == _epoch(make_activity(5))
    assert state.total_imported == 5

    runs = db.query(ImportRun).order_by(ImportRun.started_at).all()
    assert [r.resumed for r in runs] == [False, True]


@pytest.mark.asyncio
async def test_rate_limit_pauses_without_losing_position(db, user, strava, make_activity, orchestrator, clocked_sleeper):
    strava.pages[1] = [make_activity(1), make_activity(2)]
    strava.queue = [
        httpx.Response(200, json=[make_activity(1), make_activity(2)]),
        httpx.Response(429, headers={"Retry-After": "120"}),
    ]

    async with strava.client() as http:
        result = await orchestrator(http).run(user, per_page=2)

    assert result.state is RunState.PAUSED
    assert result.pause_reason == "RATE_LIMITED"
    assert result.imported == 2
    assert clocked_sleeper.calls == []
    assert decode_cursor(result.continuation_token, CURSOR_SECRET).page == 2


@pytest.mark.asyncio
async def test_rate_limit_retries_honor_retry_after_then_pause(db, user, strava, orchestrator, clocked_sleeper):
    strava.queue = [httpx.Response(429, headers={"Retry-After": "1"}) for _ in range(4)]

    async with strava.client() as http:
        result = await orchestrator(http).run(user)

    assert result.state is RunState.PAUSED
    assert result.pause_reason == "RATE_LIMITED"
    assert clocked_sleeper.calls == [1.0, 1.0, 1.0]
    assert len(strava.requests) == 4
    assert decode_cursor(result.continuation_token, CURSOR_SECRET).page == 1


@pytest.mark.asyncio
async def test_slow_provider_pauses_inside_the_time_budget(db, user, strava, orchestrator, clock):
    strava.queue = [httpx.ReadTimeout] * 4
    strava.on_request = lambda request: clock.advance(5)
    started = clock()

    async with strava.client() as http:
        result = await orchestrator(http, time_budget_s=9).run(user)

    # One request may start near the end of the budget, nothing after it
    assert clock() - started <= 9 + 5
    assert result.state is RunState.PAUSED
    assert result.pause_reason == "PROVIDER_TIMEOUT"
    assert len(strava.requests) == 1
    assert result.continuation_token
    assert _sync_state(db, user).last_status == "paused"


@pytest.mark.asyncio
async def test_page_limit_pauses(db, user, strava, make_activity, orchestrator):
    strava.pages[1] = [make_activity(1)]
    strava.pages[2] = [make_activity(2)]

    async with strava.client() as http:
        result = await orchestrator(http, max_pages=1).run(user, per_page=1)

    assert result.state is RunState.PAUSED
    assert result.pause_reason == "MAX_PAGES"
    assert result.pages_processed == 1
    assert len(strava.requests) == 1


@pytest.mark.asyncio
async def test_revoked_credentials_abort_the_run(db, user, strava, make_activity, orchestrator):
    strava.queue = [httpx.Response(401, json={"message": "Authorization Error"})]

    async with strava.client() as http:
        with pytest.raises(ImportAborted) as excinfo:
            await orchestrator(http).run(user)

    error = excinfo.value
    assert error.code == "STRAVA_CREDENTIALS_INVALID"
    assert error.status_code == 403
    assert error.to_detail()["run_id"] == error.run_id

    state = _sync_state(db, user)
    assert state.last_status == "failed"
    assert state.last_error_code == "STRAVA_CREDENTIALS_INVALID"
    assert state.import_in_progress is False
    assert db.query(ImportRun).filter(ImportRun.id == error.run_id).count() == 1


@pytest.mark.asyncio
async def test_unreadable_page_aborts_after_logging_it(db, user, strava, orchestrator):
    strava.pages[1] = [{"id": 1, "start_date": None}, {"unexpected": "shape"}]

    async with strava.client() as http:
        with pytest.raises(ImportAborted) as excinfo:
            await orchestrator(http).run(user)

    assert excinfo.value.code == "PROVIDER_SCHEMA_CHANGED"

    pages = ImportLedger(db).pages_for_run(excinfo.value.run_id)
    assert len(pages) == 1
    assert (pages[0].fetched, pages[0].failed) == (2, 2)
    assert {e["stage"] for e in pages[0].errors} == {"normalize"}
    assert _sync_state(db, user).last_status == "failed"


@pytest.mark.asyncio
async def test_empty_feed_completes(db, user, strava, orchestrator):
    async with strava.client() as http:
        result = await orchestrator(http).run(user)

    assert result.state is RunState.COMPLETED
    assert result.pages_processed == 1
    assert db.query(ImportPageLog).one().fetched == 0


@pytest.mark.asyncio
async def test_invalid_token_is_rejected_before_any_work(db, user, strava, orchestrator):
    async with strava.client() as http:
        with pytest.raises(CursorDecodeError):
            await orchestrator(http).run(user, continuation_token="not-a-token")

    assert strava.requests == []
    assert db.query(SyncState).count() == 0
    assert db.query(ImportRun).count() == 0


@pytest.mark.asyncio
async def test_recent_import_blocks_a_fresh_one(db, user, strava, orchestrator):
    db.add(SyncState(
        user_id=user.id,
        source="strava",
        import_in_progress=True,
        import_started_at=datetime.utcnow(),
    ))
    db.commit()

    async with strava.client() as http:
        with pytest.raises(ImportInProgress):
            await orchestrator(http).run(user)

    assert strava.requests == []


@pytest.mark.asyncio
async def test_stale_lock_does_not_block(db, user, strava, orchestrator):
    db.add(SyncState(
        user_id=user.id,
        source="strava",
        import_in_progress=True,
        import_started_at=datetime(2020, 1, 1),
    ))
    db.commit()

    async with strava.client() as http:
        result = await orchestrator(http).run(user)

    assert result.state is RunState.COMPLETED


def test_parse_after():
    assert parse_after(None) is None
    assert parse_after("") is None
    assert parse_after("1700000000") == 1700000000

    for bad in ("abc", "-5", "12345678901", "1.5", str(int(time.time()) + 3600)):
        with pytest.raises(InvalidParameter):
            parse_after(bad)


def test_clamp_per_page():
    assert clamp_per_page(None) == 30
    assert clamp_per_page(0) == 30
    assert clamp_per_page(-4) == 1
    assert clamp_per_page(50) == 50
    assert clamp_per_page(500) == 100


def test_ensure_credentials(db, user):
    assert ensure_credentials(user) == "strava-access-token"

    user.token_expiry = datetime(2020, 1, 1)
    with pytest.raises(CredentialsInvalid):
        ensure_credentials(user)

    user.access_token = None
    with pytest.raises(NotConnected):
        ensure_credentials(user)
