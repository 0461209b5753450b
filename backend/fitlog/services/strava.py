"""Strava API client for paginated activity retrieval."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from fitlog.config import settings
from fitlog.errors import (
    CredentialsInvalid,
    FetchFailed,
    FetchTimeout,
    ProviderSchemaError,
    RateLimited,
)
from fitlog.services.cursor import ContinuationCursor
from fitlog.services.rate_limit import Abort, RateLimitGovernor, RateLimitState, Wait

logger = logging.getLogger(__name__)

ACTIVITIES_PATH = "/athlete/activities"

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


def build_http_client(timeout: Optional[float] = None, **kwargs) -> httpx.AsyncClient:
    """
    Build the AsyncClient used for Strava requests.

    Every request is bounded by ``timeout`` seconds (connect, read, write and
    pool), so a stalled provider cannot hold an invocation open.
    """
    timeout = settings.STRAVA_REQUEST_TIMEOUT_SECONDS if timeout is None else timeout
    return httpx.AsyncClient(
        base_url=settings.STRAVA_API_BASE,
        timeout=httpx.Timeout(timeout),
        **kwargs,
    )


@dataclass
class Page:
    """One page of raw provider records and the cursor that follows it."""

    records: List[Dict]
    next_cursor: ContinuationCursor
    exhausted: bool
    rate_limit: RateLimitState = field(default_factory=RateLimitState)


class Deadline:
    """Point on a monotonic clock by which a fetch has to finish. No limit when ``remaining_ms`` is None."""

    def __init__(self, clock: Clock, remaining_ms: Optional[int] = None):
        self.clock = clock
        self.at = None if remaining_ms is None else clock() + remaining_ms / 1000

    def remaining_ms(self) -> Optional[int]:
        if self.at is None:
            return None
        return max(0, int((self.at - self.clock()) * 1000))

    def expired(self) -> bool:
        return self.remaining_ms() == 0


class StravaActivityFetcher:
    """
    Fetches athlete activities from the Strava API one page at a time.

    Args:
        client: AsyncClient pointed at the Strava API base URL
        access_token: Athlete's bearer token
        governor: Rate-limit governor consulted on every response
        sleep: Coroutine used to wait between retries
        max_retries: Retries for timeouts and server errors
        keyset_param: Query parameter that takes the last-seen activity id.
            When set and the cursor has a last-seen id, it replaces ``page``.
        clock: Monotonic clock the run budget is measured on
        request_timeout_s: Upper bound on one request; a retry is only
            started when this much time is left after its wait
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        governor: Optional[RateLimitGovernor] = None,
        sleep: Sleep = asyncio.sleep,
        max_retries: int = 3,
        keyset_param: Optional[str] = None,
        clock: Clock = time.monotonic,
        request_timeout_s: Optional[float] = None,
    ):
        self.client = client
        self.access_token = access_token
        self.governor = governor or RateLimitGovernor()
        self.sleep = sleep
        self.max_retries = max_retries
        self.keyset_param = keyset_param or None
        self.clock = clock
        self.request_timeout_s = (
            settings.STRAVA_REQUEST_TIMEOUT_SECONDS if request_timeout_s is None else request_timeout_s
        )

    def build_params(self, cursor: ContinuationCursor, per_page: int) -> Dict[str, int | str]:
        """
        Query parameters for the page at ``cursor``.

        Id-based pagination is preferred because it is stable when activities
        are added or removed between calls.
        """
        params: Dict[str, int | str] = {"per_page": int(per_page)}

        if self.keyset_param and cursor.last_seen_id is not None:
            params[self.keyset_param] = cursor.last_seen_id
        else:
            params["page"] = cursor.page

        if cursor.after:
            params["after"] = int(cursor.after)

        return params

    async def fetch(
        self,
        cursor: ContinuationCursor,
        per_page: int,
        remaining_ms: Optional[int] = None,
        clock: Optional[Clock] = None,
    ) -> Page:
        """
        Fetch the page at ``cursor``.

        Args:
            cursor: Position to fetch
            per_page: Requested page size
            remaining_ms: Time left in the run budget. Requests, retries and
                waits all have to finish inside it.
            clock: Clock the budget is measured on; defaults to the fetcher's

        Returns:
            Page with the raw records, the cursor after it and whether the
            feed is exhausted

        Raises:
            RateLimited: Rate-limit retries exhausted or the wait does not fit
            FetchTimeout: Request timed out on every attempt, or the budget
                ran out before a response arrived
            FetchFailed: Server or transport error (retryable) or an
                unexpected client error (not retryable)
            CredentialsInvalid: Token rejected by Strava
            ProviderSchemaError: Response body is not a list of activities
        """
        params = self.build_params(cursor, per_page)
        deadline = Deadline(clock or self.clock, remaining_ms)
        response = await self._get_with_retries(params, deadline)

        try:
            records = response.json()
        except ValueError as exc:
            raise ProviderSchemaError("Strava returned a non-JSON activity list") from exc

        if not isinstance(records, list):
            raise ProviderSchemaError(
                "Strava activity list is not an array",
                {"type": type(records).__name__},
            )

        last_seen_id = None
        if records and isinstance(records[-1], dict) and records[-1].get("id") is not None:
            last_seen_id = str(records[-1]["id"])

        exhausted = len(records) < per_page
        logger.info(
            "Fetched %d activities (page=%s, per_page=%d, exhausted=%s)",
            len(records),
            params.get("page", "-"),
            per_page,
            exhausted,
        )

        return Page(
            records=records,
            next_cursor=cursor.advance(last_seen_id),
            exhausted=exhausted,
            rate_limit=self.governor.last_state,
        )

    def _request_timeout(self, deadline: Deadline):
        remaining_ms = deadline.remaining_ms()
        if remaining_ms is None:
            return httpx.USE_CLIENT_DEFAULT
        return min(self.request_timeout_s, remaining_ms / 1000)

    async def _get_with_retries(self, params: Dict, deadline: Deadline) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        rate_limited_attempts = 0
        failed_attempts = 0

        while True:
            if deadline.expired():
                raise FetchTimeout("Time budget ran out before Strava responded")

            try:
                response = await self.client.get(
                    ACTIVITIES_PATH,
                    headers=headers,
                    params=params,
                    timeout=self._request_timeout(deadline),
                )
            except httpx.TimeoutException as exc:
                error = FetchTimeout(f"Strava request timed out after {failed_attempts + 1} attempts")
                await self._retry_or_raise(failed_attempts, deadline, error, exc)
                failed_attempts += 1
                continue
            except httpx.TransportError as exc:
                error = FetchFailed(f"Strava transport error: {exc}", retryable=True)
                await self._retry_or_raise(failed_attempts, deadline, error, exc)
                failed_attempts += 1
                continue

            decision = self.governor.decide(response, rate_limited_attempts, self._wait_budget_ms(deadline))
            if isinstance(decision, Wait):
                rate_limited_attempts += 1
                await self.sleep(decision.ms / 1000)
                continue
            if isinstance(decision, Abort):
                raise RateLimited(f"Strava rate limit: {decision.reason}", self.governor.last_state)

            if response.status_code in (401, 403):
                raise CredentialsInvalid("Strava access was revoked. Please reconnect your account.")

            if response.status_code >= 500:
                error = FetchFailed(
                    f"Strava API error: {response.status_code}",
                    status=response.status_code,
                    retryable=True,
                )
                await self._retry_or_raise(failed_attempts, deadline, error)
                failed_attempts += 1
                continue

            if response.status_code >= 400:
                raise FetchFailed(f"Strava API error: {response.status_code}", status=response.status_code)

            return response

    def _wait_budget_ms(self, deadline: Deadline) -> Optional[int]:
        """Time that can go to waiting while leaving room for one more full request."""
        remaining_ms = deadline.remaining_ms()
        if remaining_ms is None:
            return None
        return max(0, remaining_ms - int(self.request_timeout_s * 1000))

    async def _retry_or_raise(
        self,
        attempt: int,
        deadline: Deadline,
        error: FetchFailed | FetchTimeout,
        cause: Optional[Exception] = None,
    ) -> None:
        """Sleep before retry ``attempt + 1``, or raise ``error`` if out of retries or time."""
        if attempt >= self.max_retries:
            raise error from cause

        wait_ms = self.governor.backoff_ms(attempt)
        wait_budget_ms = self._wait_budget_ms(deadline)
        if wait_budget_ms is not None and wait_ms > wait_budget_ms:
            logger.warning("%s, no time left for another attempt", error.message)
            raise error from cause

        logger.warning("%s, retrying in %dms (attempt %d)", error.message, wait_ms, attempt + 1)
        await self.sleep(wait_ms / 1000)
