"""
Map Strava activity records into the canonical activity shape.

Everything here is pure: no database, no network. The importer calls
``normalize_activity`` once per fetched record.
"""
import hashlib
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fitlog.errors import NormalizationError
from fitlog.models.activity import NAME_MAX_LENGTH, NOTES_MAX_LENGTH, ActivityType

SOURCE_STRAVA = "strava"
STRAVA_ACTIVITY_URL = "https://www.strava.com/activities/{id}"

METERS_PER_KM = 1000.0
METERS_PER_MILE = 1609.344
METERS_TO_FEET = 3.28084
MPS_TO_KMH = 3.6
MPS_TO_MPH = 2.23694
# kJ of mechanical work to kcal burned
KJ_TO_KCAL = 1.05

# Strava race workout_type values (run, ride)
RACE_WORKOUT_TYPES = {1, 11}

# Strava sport_type / type labels to internal categories
ACTIVITY_TYPE_MAP = {
    # Running
    "Run": ActivityType.RUN,
    "TrailRun": ActivityType.RUN,
    "VirtualRun": ActivityType.RUN,
    # Cycling
    "Ride": ActivityType.RIDE,
    "VirtualRide": ActivityType.RIDE,
    "EBikeRide": ActivityType.RIDE,
    "EMountainBikeRide": ActivityType.RIDE,
    "MountainBikeRide": ActivityType.RIDE,
    "GravelRide": ActivityType.RIDE,
    "Velomobile": ActivityType.RIDE,
    "Handcycle": ActivityType.RIDE,
    # Water
    "Swim": ActivityType.SWIM,
    # Walking / hiking
    "Walk": ActivityType.WALK,
    "Hike": ActivityType.HIKE,
    "Snowshoe": ActivityType.HIKE,
    # Gym
    "Workout": ActivityType.STRENGTH,
    "WeightTraining": ActivityType.STRENGTH,
    "Crossfit": ActivityType.STRENGTH,
    "HighIntensityIntervalTraining": ActivityType.STRENGTH,
    # Flexibility
    "Yoga": ActivityType.YOGA,
    "Pilates": ActivityType.YOGA,
    # Team sports
    "Soccer": ActivityType.SOCCER,
}
# Labels not listed above (Rowing, AlpineSki, Tennis, ...) land here
DEFAULT_ACTIVITY_TYPE = ActivityType.OTHER

_TZ_OFFSET_RE = re.compile(r"GMT([+-])(\d{1,2}):(\d{2})")


@dataclass
class CanonicalRecord:
    """A normalized activity, ready to be written by the upserter."""

    user_id: int
    source: str
    source_id: Optional[str]
    type: ActivityType
    name: str
    notes: Optional[str]
    start_local: datetime
    start_utc: datetime
    end_utc: Optional[datetime]
    timezone: Optional[str]
    timezone_offset: int
    duration_minutes: int
    elapsed_minutes: int
    distance_m: Optional[float]
    external_url: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    dedup_hash: str = ""
    content_hash: str = ""

    @property
    def start_epoch(self) -> int:
        return int(self.start_utc.replace(tzinfo=timezone.utc).timestamp())

    def as_row(self) -> Dict[str, Any]:
        """Column values for the ``activities`` table."""
        return {
            "user_id": self.user_id,
            "source": self.source,
            "source_id": self.source_id,
            "type": self.type.value,
            "name": self.name,
            "notes": self.notes,
            "start_local": self.start_local,
            "start_utc": self.start_utc,
            "end_utc": self.end_utc,
            "timezone": self.timezone,
            "timezone_offset": self.timezone_offset,
            "duration_minutes": self.duration_minutes,
            "elapsed_minutes": self.elapsed_minutes,
            "distance_m": self.distance_m,
            "external_url": self.external_url,
            "payload": self.payload,
            "dedup_hash": self.dedup_hash,
            "content_hash": self.content_hash,
        }


def map_activity_type(label: Optional[str]) -> ActivityType:
    """Map a provider sport label to an ActivityType, defaulting to OTHER."""
    if not label:
        return DEFAULT_ACTIVITY_TYPE
    return ACTIVITY_TYPE_MAP.get(str(label).strip(), DEFAULT_ACTIVITY_TYPE)


def parse_timezone_offset(tz_label: Optional[str]) -> int:
    """
    Parse Strava's timezone label into minutes east of UTC.

    "(GMT-08:00) America/Los_Angeles" -> -480. Unknown formats give 0.
    """
    if not tz_label:
        return 0
    if not isinstance(tz_label, str):
        raise NormalizationError(f"Field timezone is not a string: {tz_label!r}")
    match = _TZ_OFFSET_RE.search(tz_label)
    if not match:
        return 0
    sign, hours, minutes = match.groups()
    offset = int(hours) * 60 + int(minutes)
    return -offset if sign == "-" else offset


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """Parse an ISO-8601 timestamp into a naive datetime in its own clock."""
    if not isinstance(value, str) or not value:
        raise NormalizationError(f"Missing or invalid {field_name}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise NormalizationError(f"Unparseable {field_name}: {value!r}") from exc
    if parsed.tzinfo is not None:
        # start_date carries Z and is UTC; start_date_local carries a fake Z
        # and is wall-clock time. Either way the clock value is what we keep.
        parsed = parsed.replace(tzinfo=None)
    return parsed


def _number(external: Dict[str, Any], key: str) -> Optional[float]:
    value = external.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise NormalizationError(f"Field {key} is not numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise NormalizationError(f"Field {key} is not numeric: {value!r}") from exc
    if math.isnan(number) or math.isinf(number):
        raise NormalizationError(f"Field {key} is not finite")
    return number


def _count(external: Dict[str, Any], key: str) -> Optional[int]:
    value = external.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise NormalizationError(f"Field {key} is not an integer: {value!r}")
    return value


def _positive(value: Optional[float]) -> bool:
    return value is not None and value > 0


def _whole_minutes(seconds: Optional[float]) -> int:
    if not seconds or seconds <= 0:
        return 0
    return int(math.ceil(seconds / 60))


def format_pace(seconds: Optional[float], meters: Optional[float], unit: str = "km") -> Optional[str]:
    """
    Format pace as "m:ss" per km or per mile.

    Returns None unless both duration and distance are positive.
    """
    if not _positive(seconds) or not _positive(meters):
        return None
    divisor = METERS_PER_KM if unit == "km" else METERS_PER_MILE
    total_seconds = int(round(seconds / (meters / divisor)))
    minutes, secs = divmod(total_seconds, 60)
    return f"{minutes}:{secs:02d}"


def _truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    text = str(text)
    return text[:limit] if len(text) > limit else text


def _fingerprint(parts: Dict[str, Any]) -> str:
    encoded = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def dedup_fingerprint(user_id: int, activity_type: ActivityType, start_utc: datetime) -> str:
    """Key identifying "the same workout" for one owner: start time and type."""
    return _fingerprint({
        "user_id": user_id,
        "type": ActivityType(activity_type).value,
        "start_utc": start_utc.replace(microsecond=0).isoformat(),
    })


def content_fingerprint(record: CanonicalRecord) -> str:
    """Hash of every canonical field; changes whenever the stored row would."""
    return _fingerprint({
        "user_id": record.user_id,
        "source": record.source,
        "source_id": record.source_id,
        "type": record.type.value,
        "name": record.name,
        "notes": record.notes,
        "start_local": record.start_local.isoformat(),
        "start_utc": record.start_utc.isoformat(),
        "end_utc": record.end_utc.isoformat() if record.end_utc else None,
        "timezone": record.timezone,
        "timezone_offset": record.timezone_offset,
        "duration_minutes": record.duration_minutes,
        "elapsed_minutes": record.elapsed_minutes,
        "distance_m": record.distance_m,
        "summary": record.payload.get("summary"),
        "metadata": record.payload.get("metadata"),
    })


def _summary(external: Dict[str, Any], distance: Optional[float], seconds: Optional[float]) -> Dict[str, Any]:
    average_speed = _number(external, "average_speed")
    if not _positive(average_speed) and _positive(distance) and _positive(seconds):
        average_speed = distance / seconds
    if not _positive(average_speed):
        average_speed = None

    elevation = _number(external, "total_elevation_gain")

    calories = _number(external, "calories")
    if calories is None:
        kilojoules = _number(external, "kilojoules")
        calories = round(kilojoules * KJ_TO_KCAL) if kilojoules is not None else None
    else:
        calories = round(calories)

    average_hr = _number(external, "average_heartrate")
    max_hr = _number(external, "max_heartrate")
    average_watts = _number(external, "average_watts")
    weighted_watts = _number(external, "weighted_average_watts")
    max_watts = _number(external, "max_watts")

    return {
        "distance_km": round(distance / METERS_PER_KM, 2) if distance is not None else None,
        "distance_mi": round(distance / METERS_PER_MILE, 2) if distance is not None else None,
        "pace_per_km": format_pace(seconds, distance, "km"),
        "pace_per_mi": format_pace(seconds, distance, "mi"),
        "speed_kmh": round(average_speed * MPS_TO_KMH, 1) if average_speed else None,
        "speed_mph": round(average_speed * MPS_TO_MPH, 1) if average_speed else None,
        "elevation_gain_m": elevation,
        "elevation_gain_ft": round(elevation * METERS_TO_FEET) if elevation is not None else None,
        "calories": calories,
        "heart_rate": {
            "average": average_hr,
            "max": max_hr,
            "has_data": bool(external.get("has_heartrate")) or average_hr is not None,
        },
        "power": {
            "average": average_watts,
            "weighted": weighted_watts,
            "max": max_watts,
            "has_data": bool(external.get("device_watts")) or average_watts is not None,
        },
    }


def _metadata(external: Dict[str, Any]) -> Dict[str, Any]:
    activity_map = external.get("map") or {}
    return {
        "is_manual": bool(external.get("manual")),
        "is_private": bool(external.get("private")),
        "is_indoor": bool(external.get("trainer")),
        "is_race": _count(external, "workout_type") in RACE_WORKOUT_TYPES,
        "device": external.get("device_name"),
        "gear_id": external.get("gear_id"),
        "achievements": _count(external, "achievement_count"),
        "kudos": _count(external, "kudos_count"),
        "comments": _count(external, "comment_count"),
        "suffer_score": external.get("suffer_score"),
        "has_photos": (_count(external, "photo_count") or 0) > 0,
        "has_gps": bool(activity_map.get("summary_polyline")) if isinstance(activity_map, dict) else False,
    }


def normalize_activity(external: Dict[str, Any], user_id: int) -> CanonicalRecord:
    """
    Map one Strava activity into a CanonicalRecord.

    Args:
        external: Raw activity dict from the Strava API
        user_id: Owner of the imported activity

    Returns:
        CanonicalRecord with derived summary metrics and fingerprints

    Raises:
        NormalizationError: If the record lacks an id or start time, or a
            field has the wrong type
    """
    if not isinstance(external, dict):
        raise NormalizationError("Activity record is not an object")

    external_id = external.get("id")
    if external_id is None or external_id == "" or isinstance(external_id, bool):
        raise NormalizationError("Activity record has no id")
    source_id = str(external_id)

    tz_label = external.get("timezone")
    tz_offset = parse_timezone_offset(tz_label)

    start_utc = parse_timestamp(external.get("start_date"), "start_date")
    if external.get("start_date_local"):
        start_local = parse_timestamp(external.get("start_date_local"), "start_date_local")
    else:
        start_local = start_utc + timedelta(minutes=tz_offset)

    moving = _number(external, "moving_time")
    elapsed = _number(external, "elapsed_time")
    distance = _number(external, "distance")

    duration_seconds = moving if _positive(moving) else elapsed
    end_seconds = elapsed if _positive(elapsed) else moving
    end_utc = start_utc + timedelta(seconds=end_seconds) if end_seconds is not None else None

    sport_label = external.get("sport_type") or external.get("type")
    activity_type = map_activity_type(external.get("sport_type"))
    if activity_type is DEFAULT_ACTIVITY_TYPE:
        activity_type = map_activity_type(external.get("type"))

    name = external.get("name") or f"{sport_label or 'Workout'} Activity"

    record = CanonicalRecord(
        user_id=user_id,
        source=SOURCE_STRAVA,
        source_id=source_id,
        type=activity_type,
        name=_truncate(name, NAME_MAX_LENGTH),
        notes=_truncate(external.get("description"), NOTES_MAX_LENGTH),
        start_local=start_local,
        start_utc=start_utc,
        end_utc=end_utc,
        timezone=_truncate(tz_label, 64),
        timezone_offset=tz_offset,
        duration_minutes=_whole_minutes(duration_seconds),
        elapsed_minutes=_whole_minutes(elapsed),
        distance_m=distance,
        external_url=STRAVA_ACTIVITY_URL.format(id=source_id),
        payload={
            "version": str(external.get("version") or "1"),
            "summary": _summary(external, distance, duration_seconds),
            "metadata": _metadata(external),
            "original": external,
        },
    )
    record.dedup_hash = dedup_fingerprint(user_id, activity_type, start_utc)
    record.content_hash = content_fingerprint(record)
    return record
