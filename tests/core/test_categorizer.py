from __future__ import annotations

from datetime import timedelta

import pytest

from fleetdeck_core.fleet.categorizer import (
    ATTENTION_BUCKETS,
    categorize_fleet,
    last_seen_sort_key,
    summarize_fleet,
)
from fleetdeck_core.fleet.types import (
    STATUS_NEVER_SEEN,
    STATUS_OFFLINE_MONTH,
    STATUS_OFFLINE_WEEK,
    STATUS_RECENTLY_OFFLINE,
    STATUS_STUCK_UPDATE,
)


def _mixed_fleet(make_device):
    return [
        make_device(1, seen_ago=timedelta(seconds=20)),
        make_device(
            2,
            seen_ago=timedelta(minutes=2),
            release_id=5,
            target_release_id=7,
        ),
        make_device(3, seen_ago=timedelta(hours=2)),
        make_device(4, seen_ago=timedelta(days=3)),
        make_device(5, seen_ago=timedelta(days=10)),
        make_device(6, seen_ago=timedelta(days=40)),
        make_device(7, seen_ago=None),
    ]


def _ids(bucket):
    return [device.id for device in bucket.devices]


@pytest.mark.core
def test_buckets_partition_attention_devices(make_device, now):
    categories = categorize_fleet(_mixed_fleet(make_device), now)

    assert [bucket.name for bucket in categories.buckets] == list(ATTENTION_BUCKETS)
    assert _ids(categories.get(STATUS_STUCK_UPDATE)) == [2]
    assert _ids(categories.get(STATUS_RECENTLY_OFFLINE)) == [3]
    assert _ids(categories.get(STATUS_OFFLINE_WEEK)) == [4]
    assert _ids(categories.get(STATUS_OFFLINE_MONTH)) == [5]
    assert _ids(categories.get(STATUS_NEVER_SEEN)) == [7]

    seen = [device.id for bucket in categories.buckets for device in bucket.devices]
    assert len(seen) == len(set(seen))
    # online (1) and abandoned (6) devices need no attention
    assert 1 not in seen
    assert 6 not in seen
    assert categories.total_attention == 5


@pytest.mark.core
def test_bucket_sorted_by_last_seen_desc(make_device, now):
    devices = [
        make_device(10, seen_ago=timedelta(hours=5)),
        make_device(11, seen_ago=timedelta(minutes=10)),
        make_device(12, seen_ago=timedelta(hours=2)),
        make_device(13, seen_ago=timedelta(hours=2)),
    ]
    categories = categorize_fleet(devices, now)
    assert _ids(categories.get(STATUS_RECENTLY_OFFLINE)) == [11, 12, 13, 10]


@pytest.mark.core
def test_never_seen_sorts_last(make_device, now):
    seen = make_device(1, seen_ago=timedelta(hours=1))
    never = make_device(2, seen_ago=None)
    assert sorted([never, seen], key=last_seen_sort_key) == [seen, never]


@pytest.mark.core
def test_display_cap_truncates_but_counts_all(make_device, now):
    devices = [
        make_device(idx, seen_ago=timedelta(hours=1, minutes=idx))
        for idx in range(1, 16)
    ]
    bucket = categorize_fleet(devices, now, display_cap=10).get(
        STATUS_RECENTLY_OFFLINE
    )
    assert bucket.total == 15
    assert len(bucket.devices) == 10
    assert bucket.has_more is True
    assert _ids(bucket) == list(range(1, 11))

    small = categorize_fleet(devices[:3], now).get(STATUS_RECENTLY_OFFLINE)
    assert small.has_more is False


@pytest.mark.core
def test_invalid_display_cap(make_device, now):
    with pytest.raises(ValueError):
        categorize_fleet([make_device(1)], now, display_cap=0)


@pytest.mark.core
def test_hidden_devices_are_dropped(make_device, now):
    devices = [
        make_device(1, seen_ago=timedelta(hours=2), approved=False),
        make_device(2, seen_ago=timedelta(hours=2), archived=True),
        make_device(3, seen_ago=timedelta(hours=2), has_token=False),
        make_device(4, seen_ago=timedelta(hours=2)),
    ]
    categories = categorize_fleet(devices, now)
    assert _ids(categories.get(STATUS_RECENTLY_OFFLINE)) == [4]


@pytest.mark.core
def test_categorization_is_deterministic(make_device, now):
    devices = _mixed_fleet(make_device)
    first = categorize_fleet(devices, now).to_dict()
    second = categorize_fleet(list(reversed(devices)), now).to_dict()
    assert first == second


@pytest.mark.core
def test_superset_recategorized_without_memory(make_device, now):
    devices = _mixed_fleet(make_device)
    first_page = categorize_fleet(devices[:3], now)
    full = categorize_fleet(devices, now)
    assert first_page.total_attention == 2
    assert full.total_attention == 5


@pytest.mark.core
def test_malformed_device_degrades_to_never_seen(make_device, now):
    broken = make_device(1, seen_ago=None, last_seen="yesterday")
    healthy = make_device(2, seen_ago=timedelta(hours=2))
    categories = categorize_fleet([broken, healthy], now)
    assert _ids(categories.get(STATUS_NEVER_SEEN)) == [1]
    assert _ids(categories.get(STATUS_RECENTLY_OFFLINE)) == [2]


@pytest.mark.core
def test_outdated_decoration_on_offline_device(make_device, now):
    device = make_device(
        1,
        seen_ago=timedelta(days=3),
        release_id=5,
        target_release_id=7,
    )
    payload = categorize_fleet([device], now).to_dict()
    week = next(b for b in payload["buckets"] if b["name"] == STATUS_OFFLINE_WEEK)
    assert week["devices"][0]["outdated"] is True
    assert week["total"] == 1


@pytest.mark.core
def test_stuck_devices_within_grace_are_not_flagged(make_device, now):
    fresh = make_device(
        1,
        release_id=5,
        target_release_id=7,
        target_set_ago=timedelta(minutes=10),
    )
    overdue = make_device(
        2,
        release_id=5,
        target_release_id=7,
        target_set_ago=timedelta(minutes=45),
    )
    unknown = make_device(3, release_id=5, target_release_id=7)
    categories = categorize_fleet(
        [fresh, overdue, unknown],
        now,
        outdated_grace=timedelta(minutes=30),
    )
    assert sorted(_ids(categories.get(STATUS_STUCK_UPDATE))) == [2, 3]


@pytest.mark.core
def test_summary_counts_and_exclusions(make_device, now):
    devices = [
        make_device(1, seen_ago=timedelta(minutes=1)),
        make_device(2, seen_ago=timedelta(hours=3), release_id=1, target_release_id=2),
        make_device(3, seen_ago=None),
        make_device(4, archived=True),
        make_device(5, labels={"env": "lab"}),
    ]
    summary = summarize_fleet(devices, now, exclude_labels=["env=lab"])
    assert summary.to_dict() == {
        "total": 3,
        "online": 1,
        "offline": 1,
        "never_seen": 1,
        "outdated": 1,
        "archived": 1,
    }
