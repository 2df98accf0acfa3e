"""Partition a fleet snapshot into operator attention buckets.

Categorization is stateless: every call works only from the devices it is
given, so a paginated listing can be re-categorized as each page arrives.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from fleetdeck_core.fleet.filters import has_any_label, visible_in_fleet_views
from fleetdeck_core.fleet.status import (
    POLICY_ONLINE_GATED,
    DeviceAssessment,
    assess_device,
    is_outdated,
    rules_for_policy,
)
from fleetdeck_core.fleet.timewindow import (
    DEFAULT_WINDOWS,
    TimeWindows,
    device_age,
    format_timestamp,
)
from fleetdeck_core.fleet.types import (
    STATUS_NEVER_SEEN,
    STATUS_OFFLINE_MONTH,
    STATUS_OFFLINE_WEEK,
    STATUS_ONLINE,
    STATUS_RECENTLY_OFFLINE,
    STATUS_STUCK_UPDATE,
    Device,
    device_to_dict,
)
from fleetdeck_core.logging import get_logger

logger = get_logger(__name__)

ATTENTION_BUCKETS: tuple[str, ...] = (
    STATUS_STUCK_UPDATE,
    STATUS_RECENTLY_OFFLINE,
    STATUS_OFFLINE_WEEK,
    STATUS_OFFLINE_MONTH,
    STATUS_NEVER_SEEN,
)
DEFAULT_DISPLAY_CAP = 10


@dataclass(frozen=True)
class Bucket:
    name: str
    total: int
    devices: tuple[Device, ...]
    outdated_ids: frozenset[int] = frozenset()

    @property
    def has_more(self) -> bool:
        return self.total > len(self.devices)

    def to_dict(self) -> dict[str, Any]:
        items = []
        for device in self.devices:
            item = device_to_dict(device)
            item["outdated"] = device.id in self.outdated_ids
            items.append(item)
        return {
            "name": self.name,
            "total": self.total,
            "has_more": self.has_more,
            "devices": items,
        }


@dataclass(frozen=True)
class FleetCategories:
    generated_at: datetime
    buckets: tuple[Bucket, ...]

    def get(self, name: str) -> Bucket:
        for bucket in self.buckets:
            if bucket.name == name:
                return bucket
        raise KeyError(name)

    @property
    def total_attention(self) -> int:
        return sum(bucket.total for bucket in self.buckets)

    def counts(self) -> dict[str, int]:
        return {bucket.name: bucket.total for bucket in self.buckets}

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": format_timestamp(self.generated_at),
            "total_attention": self.total_attention,
            "buckets": [bucket.to_dict() for bucket in self.buckets],
        }


@dataclass(frozen=True)
class FleetSummary:
    total: int
    online: int
    offline: int
    never_seen: int
    outdated: int
    archived: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "online": self.online,
            "offline": self.offline,
            "never_seen": self.never_seen,
            "outdated": self.outdated,
            "archived": self.archived,
        }


def last_seen_sort_key(device: Device) -> tuple[int, float, str, int]:
    """Most recent contact first; devices never seen go last."""
    if not isinstance(device.last_seen, datetime):
        return (1, 0.0, device.serial_number, device.id)
    return (0, -device.last_seen.timestamp(), device.serial_number, device.id)


def assess_fleet(
    devices: Iterable[Device],
    now: datetime,
    *,
    windows: TimeWindows = DEFAULT_WINDOWS,
    policy: str = POLICY_ONLINE_GATED,
) -> list[DeviceAssessment]:
    rules = rules_for_policy(policy)
    results: list[DeviceAssessment] = []
    for device in devices:
        try:
            results.append(assess_device(device, now, windows=windows, rules=rules))
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "Device classification degraded",
                extra={"device_id": device.id, "error_message": str(exc)},
            )
            results.append(
                DeviceAssessment(
                    device=device,
                    status=STATUS_NEVER_SEEN,
                    window=STATUS_NEVER_SEEN,
                    outdated=False,
                )
            )
    return results


def categorize_fleet(
    devices: Iterable[Device],
    now: datetime,
    *,
    display_cap: int = DEFAULT_DISPLAY_CAP,
    outdated_grace: timedelta | None = None,
    windows: TimeWindows = DEFAULT_WINDOWS,
    policy: str = POLICY_ONLINE_GATED,
) -> FleetCategories:
    if display_cap < 1:
        raise ValueError("display_cap must be >= 1")
    visible = [device for device in devices if visible_in_fleet_views(device)]
    grouped: dict[str, list[Device]] = {name: [] for name in ATTENTION_BUCKETS}
    outdated_ids: set[int] = set()
    for assessment in assess_fleet(visible, now, windows=windows, policy=policy):
        status = assessment.status
        if status == STATUS_STUCK_UPDATE and _within_grace(
            assessment.device, now, outdated_grace
        ):
            status = STATUS_ONLINE
        if assessment.outdated:
            outdated_ids.add(assessment.device.id)
        if status in grouped:
            grouped[status].append(assessment.device)

    buckets: list[Bucket] = []
    for name in ATTENTION_BUCKETS:
        members = sorted(grouped[name], key=last_seen_sort_key)
        shown = tuple(members[:display_cap])
        buckets.append(
            Bucket(
                name=name,
                total=len(members),
                devices=shown,
                outdated_ids=frozenset(
                    device.id for device in shown if device.id in outdated_ids
                ),
            )
        )
    return FleetCategories(generated_at=now, buckets=tuple(buckets))


def summarize_fleet(
    devices: Iterable[Device],
    now: datetime,
    *,
    exclude_labels: Sequence[str] = (),
    windows: TimeWindows = DEFAULT_WINDOWS,
) -> FleetSummary:
    total = online = offline = never_seen = outdated = archived = 0
    for device in devices:
        if exclude_labels and has_any_label(device.labels, exclude_labels):
            continue
        if device.archived:
            archived += 1
            continue
        total += 1
        if device.last_seen is None:
            never_seen += 1
        elif device_age(device.last_seen, now) <= windows.online:
            online += 1
        else:
            offline += 1
        if is_outdated(device):
            outdated += 1
    return FleetSummary(
        total=total,
        online=online,
        offline=offline,
        never_seen=never_seen,
        outdated=outdated,
        archived=archived,
    )


def _within_grace(
    device: Device,
    now: datetime,
    grace: timedelta | None,
) -> bool:
    if grace is None or device.target_release_id_set_at is None:
        return False
    return device_age(device.target_release_id_set_at, now) < grace
