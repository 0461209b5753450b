import os
from datetime import datetime, timedelta

import httpx
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["CURSOR_SECRET"] = "test-cursor-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"

from fitlog.database import Base, build_engine, get_db  # noqa: E402
from fitlog.dependencies import get_current_user, get_strava_client  # noqa: E402
from fitlog.main import app  # noqa: E402
from fitlog.models import User  # noqa: E402

STRAVA_TEST_BASE = "https://strava.test/api/v3"
BASE_START = datetime(2024, 3, 1, 15, 0, 0)

engine = build_engine(os.environ["DATABASE_URL"], poolclass=StaticPool)
# expire_on_commit=False keeps fixtures from reopening a transaction on the
# shared in-memory connection while a request is running.
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def override_get_current_user(db: Session = Depends(get_db)) -> User:
    return db.query(User).order_by(User.id).first()


def reset_database() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def strava_activity(activity_id: int, **overrides) -> dict:
    """A Strava summary activity as returned by /athlete/activities."""
    start = BASE_START + timedelta(hours=activity_id)
    data = {
        "id": activity_id,
        "name": f"Morning Run {activity_id}",
        "description": None,
        "type": "Run",
        "sport_type": "Run",
        "start_date": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "start_date_local": (start - timedelta(hours=8)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "timezone": "(GMT-08:00) America/Los_Angeles",
        "distance": 10000.0,
        "moving_time": 3000,
        "elapsed_time": 3120,
        "total_elevation_gain": 52.0,
        "average_speed": 3.333,
        "max_speed": 4.8,
        "average_heartrate": 151.2,
        "max_heartrate": 174.0,
        "has_heartrate": True,
        "device_watts": False,
        "manual": False,
        "private": False,
        "trainer": False,
        "workout_type": 0,
        "device_name": "Garmin Forerunner 265",
        "gear_id": "g123",
        "achievement_count": 2,
        "kudos_count": 5,
        "comment_count": 0,
        "photo_count": 0,
        "map": {"summary_polyline": "ciwmEt~rqU@hAOPgEIO"},
    }
    data.update(overrides)
    return data


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stands in for asyncio.sleep and remembers every wait."""

    def __init__(self, clock: FakeClock = None):
        self.calls = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


class StravaStub:
    """
    Fake Strava activities endpoint.

    Queued responses are served first; after that, ``pages[n]`` answers a
    request for page ``n`` (empty list when missing). Queue items may be an
    httpx.Response or an httpx exception class to raise.
    """

    def __init__(self):
        self.pages = {}
        self.queue = []
        self.requests = []
        self.on_request = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)

        if self.queue:
            item = self.queue.pop(0)
            if isinstance(item, type) and issubclass(item, Exception):
                raise item("simulated failure", request=request)
            return item

        page = int(request.url.params.get("page", "1"))
        return httpx.Response(200, json=self.pages.get(page, []))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handler),
            base_url=STRAVA_TEST_BASE,
        )

    @property
    def params(self):
        return [dict(r.url.params) for r in self.requests]


@pytest.fixture(autouse=True)
def _prepare_db():
    reset_database()


@pytest.fixture()
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def user(db):
    athlete = User(
        strava_id=4242,
        access_token="strava-access-token",
        refresh_token="strava-refresh-token",
        token_expiry=datetime.utcnow() + timedelta(hours=6),
    )
    db.add(athlete)
    db.commit()
    return athlete


@pytest.fixture()
def make_activity():
    return strava_activity


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def sleeper():
    return SleepRecorder()


@pytest.fixture()
def clocked_sleeper(clock):
    return SleepRecorder(clock)


@pytest.fixture()
def strava():
    return StravaStub()


@pytest.fixture()
def client(strava):
    async def override_strava_client():
        async with strava.client() as http_client:
            yield http_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_strava_client] = override_strava_client
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
