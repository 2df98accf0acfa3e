from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fleetdeck_core.fleet.timewindow import (
    STATUS_ABANDONED,
    STATUS_NEVER_SEEN,
    STATUS_OFFLINE_MONTH,
    STATUS_OFFLINE_WEEK,
    STATUS_ONLINE,
    STATUS_RECENTLY_OFFLINE,
    TimeWindows,
    classify_last_seen,
    device_age,
    parse_timestamp,
)


@pytest.mark.core
@pytest.mark.parametrize(
    ("age", "expected"),
    [
        (timedelta(milliseconds=179_999), STATUS_ONLINE),
        (timedelta(milliseconds=180_000), STATUS_ONLINE),
        (timedelta(milliseconds=180_001), STATUS_RECENTLY_OFFLINE),
        (timedelta(days=1), STATUS_RECENTLY_OFFLINE),
        (timedelta(days=1, milliseconds=1), STATUS_OFFLINE_WEEK),
        (timedelta(days=7), STATUS_OFFLINE_WEEK),
        (timedelta(days=7, seconds=1), STATUS_OFFLINE_MONTH),
        (timedelta(days=30), STATUS_OFFLINE_MONTH),
        (timedelta(days=30, seconds=1), STATUS_ABANDONED),
    ],
)
def test_classify_last_seen_boundaries(now, age, expected):
    assert classify_last_seen(now - age, now) == expected


@pytest.mark.core
def test_classify_never_seen(now):
    assert classify_last_seen(None, now) == STATUS_NEVER_SEEN


@pytest.mark.core
def test_future_timestamps_count_as_online(now):
    assert device_age(now + timedelta(minutes=10), now) == timedelta(0)
    assert classify_last_seen(now + timedelta(minutes=10), now) == STATUS_ONLINE


@pytest.mark.core
def test_custom_windows(now):
    windows = TimeWindows(online=timedelta(minutes=10))
    assert classify_last_seen(now - timedelta(minutes=5), now, windows) == (
        STATUS_ONLINE
    )


@pytest.mark.core
def test_parse_timestamp_formats(now):
    assert parse_timestamp("2024-06-01T12:00:00Z") == now
    assert parse_timestamp("2024-06-01T14:00:00+02:00") == now
    assert parse_timestamp(1717243200) == now
    assert parse_timestamp(datetime(2024, 6, 1, 12, 0)) == now
    assert parse_timestamp(now) == now


@pytest.mark.core
def test_parse_timestamp_rejects_garbage():
    assert parse_timestamp("not-a-date") is None
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None
    assert parse_timestamp(True) is None
    assert parse_timestamp({"at": "now"}) is None


@pytest.mark.core
def test_parse_timestamp_is_utc():
    parsed = parse_timestamp("2024-01-01T00:00:00")
    assert parsed is not None
    assert parsed.tzinfo == timezone.utc
