"""
Continuation cursors for resumable imports.

A cursor records where a paused run stopped. It is handed to the caller as an
opaque signed token and read back at the start of the next invocation, which
may run in a different process.
"""
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Optional

from itsdangerous import BadData, URLSafeSerializer

from fitlog.errors import CursorDecodeError

CURSOR_VERSION = 1
_SALT = "import-cursor"
_FIELDS = ("v", "page", "last_seen_id", "after", "high_water")


@dataclass(frozen=True)
class ContinuationCursor:
    """
    Position in the provider's activity feed.

    Attributes:
        page: Next page number to request (1-based)
        last_seen_id: External id of the last record processed, if any
        after: Lower-bound unix timestamp the run was started with
        high_water: Newest activity start (unix seconds) seen so far
        version: Cursor layout version
    """

    page: int = 1
    last_seen_id: Optional[str] = None
    after: Optional[int] = None
    high_water: Optional[int] = None
    version: int = CURSOR_VERSION

    @classmethod
    def start(cls, after: Optional[int] = None) -> "ContinuationCursor":
        return cls(page=1, after=after, high_water=after)

    def advance(self, last_seen_id: Optional[str]) -> "ContinuationCursor":
        """Cursor for the page after the one just fetched."""
        return replace(
            self,
            page=self.page + 1,
            last_seen_id=last_seen_id if last_seen_id is not None else self.last_seen_id,
        )

    def with_high_water(self, start_epochs: Iterable[int]) -> "ContinuationCursor":
        """Copy with ``high_water`` raised to the newest of ``start_epochs``."""
        high_water = self.high_water
        for epoch in start_epochs:
            if high_water is None or epoch > high_water:
                high_water = epoch
        return replace(self, high_water=high_water)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "v": self.version,
            "page": self.page,
            "last_seen_id": self.last_seen_id,
            "after": self.after,
            "high_water": self.high_water,
        }


def _serializer(secret: str) -> URLSafeSerializer:
    return URLSafeSerializer(secret, salt=_SALT)


def encode_cursor(cursor: ContinuationCursor, secret: str) -> str:
    """Serialize and sign a cursor into an opaque URL-safe token."""
    return _serializer(secret).dumps(cursor.as_dict())


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data[key]
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise CursorDecodeError(f"Invalid continue token: bad {key}")
    return value


def decode_cursor(token: str, secret: str) -> ContinuationCursor:
    """
    Verify and parse a continuation token.

    Raises:
        CursorDecodeError: If the token is malformed, tampered with, or was
            written by an unsupported cursor version. Never falls back to a
            default position.
    """
    if not token or not isinstance(token, str):
        raise CursorDecodeError("Invalid continue token")

    try:
        data = _serializer(secret).loads(token)
    except BadData as exc:
        raise CursorDecodeError("Invalid continue token") from exc

    if not isinstance(data, dict) or set(data) != set(_FIELDS):
        raise CursorDecodeError("Invalid continue token: unexpected layout")

    if data["v"] != CURSOR_VERSION:
        raise CursorDecodeError(
            f"Unsupported continue token version: {data['v']!r}",
            {"supported_version": CURSOR_VERSION},
        )

    page = data["page"]
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise CursorDecodeError("Invalid continue token: bad page")

    last_seen_id = data["last_seen_id"]
    if last_seen_id is not None and not isinstance(last_seen_id, str):
        raise CursorDecodeError("Invalid continue token: bad last_seen_id")

    return ContinuationCursor(
        page=page,
        last_seen_id=last_seen_id,
        after=_optional_int(data, "after"),
        high_water=_optional_int(data, "high_water"),
        version=CURSOR_VERSION,
    )
