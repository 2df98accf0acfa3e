from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

STATUS_ONLINE = "online"
STATUS_RECENTLY_OFFLINE = "recently-offline"
STATUS_OFFLINE_WEEK = "offline-week"
STATUS_OFFLINE_MONTH = "offline-month"
STATUS_ABANDONED = "abandoned"
STATUS_NEVER_SEEN = "never-seen"


@dataclass(frozen=True)
class TimeWindows:
    """Upper bounds (inclusive) of each last-contact age bucket."""

    online: timedelta = timedelta(minutes=3)
    recently_offline: timedelta = timedelta(days=1)
    offline_week: timedelta = timedelta(days=7)
    offline_month: timedelta = timedelta(days=30)


DEFAULT_WINDOWS = TimeWindows()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: object) -> datetime | None:
    """Parse a backend timestamp, returning None for anything unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return _as_utc(parsed)


def format_timestamp(value: datetime | None) -> str | None:
    if not isinstance(value, datetime):
        return None
    return _as_utc(value).isoformat()


def device_age(last_seen: datetime, now: datetime) -> timedelta:
    age = _as_utc(now) - _as_utc(last_seen)
    if age < timedelta(0):
        return timedelta(0)
    return age


def classify_age(age: timedelta, windows: TimeWindows = DEFAULT_WINDOWS) -> str:
    if age <= windows.online:
        return STATUS_ONLINE
    if age <= windows.recently_offline:
        return STATUS_RECENTLY_OFFLINE
    if age <= windows.offline_week:
        return STATUS_OFFLINE_WEEK
    if age <= windows.offline_month:
        return STATUS_OFFLINE_MONTH
    return STATUS_ABANDONED


def classify_last_seen(
    last_seen: datetime | None,
    now: datetime,
    windows: TimeWindows = DEFAULT_WINDOWS,
) -> str:
    if last_seen is None:
        return STATUS_NEVER_SEEN
    return classify_age(device_age(last_seen, now), windows)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
