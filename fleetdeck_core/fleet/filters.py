from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from fleetdeck_core.fleet.status import is_outdated
from fleetdeck_core.fleet.timewindow import device_age, parse_timestamp
from fleetdeck_core.fleet.types import Device

# The backend's own online filter uses a wider window than the classifier.
BACKEND_ONLINE_WINDOW = timedelta(minutes=5)


def parse_label(raw: str) -> tuple[str, str]:
    if "=" not in raw:
        raise ValueError(f"Label filter must be key=value: {raw}")
    key, value = raw.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError(f"Label filter must be key=value: {raw}")
    return key, value.strip()


def has_label(labels: Mapping[str, str], raw: str) -> bool:
    key, value = parse_label(raw)
    return labels.get(key) == value


def has_any_label(labels: Mapping[str, str], filters: Iterable[str]) -> bool:
    return any(has_label(labels, raw) for raw in filters)


def visible_in_fleet_views(device: Device) -> bool:
    return device.approved and device.has_token and not device.archived


@dataclass(frozen=True)
class DeviceQuery:
    """Device listing filters understood by the backend."""

    approved: bool | None = None
    online: bool | None = None
    outdated: bool | None = None
    outdated_minutes: int | None = None
    search: str | None = None
    labels: tuple[str, ...] = ()
    exclude_labels: tuple[str, ...] = ()
    release_id: int | None = None
    distribution_id: int | None = None
    offset: int = 0
    limit: int = 100

    def __post_init__(self) -> None:
        for raw in self.labels + self.exclude_labels:
            parse_label(raw)
        if self.limit < 1 or self.limit > 1000:
            raise ValueError("limit must be between 1 and 1000")
        if self.offset < 0:
            raise ValueError("offset must be >= 0")

    def to_params(self) -> list[tuple[str, Any]]:
        params: list[tuple[str, Any]] = []
        for name in ("approved", "online", "outdated"):
            value = getattr(self, name)
            if value is not None:
                params.append((name, "true" if value else "false"))
        if self.outdated_minutes is not None:
            params.append(("outdated_minutes", self.outdated_minutes))
        if self.search and self.search.strip():
            params.append(("search", self.search.strip()))
        params.extend(("labels", raw) for raw in self.labels)
        params.extend(("exclude_labels", raw) for raw in self.exclude_labels)
        if self.release_id is not None:
            params.append(("release_id", self.release_id))
        if self.distribution_id is not None:
            params.append(("distribution_id", self.distribution_id))
        params.append(("offset", self.offset))
        params.append(("limit", self.limit))
        return params

    def page(self, offset: int) -> "DeviceQuery":
        return DeviceQuery(
            approved=self.approved,
            online=self.online,
            outdated=self.outdated,
            outdated_minutes=self.outdated_minutes,
            search=self.search,
            labels=self.labels,
            exclude_labels=self.exclude_labels,
            release_id=self.release_id,
            distribution_id=self.distribution_id,
            offset=offset,
            limit=self.limit,
        )

    def matches(self, device: Device, now: datetime) -> bool:
        """Apply the same filters to a device from a local snapshot."""
        if device.archived:
            return False
        if self.approved is not None and device.approved != self.approved:
            return False
        if self.online is not None:
            seen = parse_timestamp(device.last_seen)
            online = (
                seen is not None and device_age(seen, now) <= BACKEND_ONLINE_WINDOW
            )
            if online != self.online:
                return False
        if self.outdated is not None:
            if self.outdated != self._is_outdated(device, now):
                return False
        if self.search and self.search.strip():
            if self.search.strip().lower() not in device.serial_number.lower():
                return False
        if self.labels and not all(
            has_label(device.labels, raw) for raw in self.labels
        ):
            return False
        if self.exclude_labels and has_any_label(device.labels, self.exclude_labels):
            return False
        if self.release_id is not None and device.release_id != self.release_id:
            return False
        if self.distribution_id is not None:
            release = device.release
            if release is None or release.distribution_id != self.distribution_id:
                return False
        return True

    def _is_outdated(self, device: Device, now: datetime) -> bool:
        if not is_outdated(device):
            return False
        if self.outdated_minutes is None or device.target_release_id_set_at is None:
            return True
        grace = timedelta(minutes=self.outdated_minutes)
        return device_age(device.target_release_id_set_at, now) >= grace
