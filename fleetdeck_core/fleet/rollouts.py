from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from fleetdeck_core.errors import EmptyCanaryError
from fleetdeck_core.fleet.filters import has_any_label
from fleetdeck_core.fleet.timewindow import device_age
from fleetdeck_core.fleet.types import Device, Distribution, Release, RolloutStats

DEFAULT_CANARY_SIZE = 10
CANARY_RECENT_PING = timedelta(minutes=5)


@dataclass(frozen=True)
class CanaryPlan:
    distribution_id: int
    release_id: int
    device_ids: tuple[int, ...]
    selected_by: str


def _release_distributions(releases: Iterable[Release]) -> dict[int, int]:
    return {release.id: release.distribution_id for release in releases}


def compute_rollout(
    distribution_id: int,
    devices: Iterable[Device],
    releases: Iterable[Release],
) -> RolloutStats:
    release_dist = _release_distributions(releases)
    total = 0
    updated = 0
    for device in devices:
        if device.archived:
            continue
        target = device.target_release_id
        if target is None or release_dist.get(target) != distribution_id:
            continue
        total += 1
        if (
            device.release_id is not None
            and device.release_id == device.target_release_id
        ):
            updated += 1
    return RolloutStats(
        distribution_id=distribution_id,
        total_devices=total,
        updated_devices=updated,
        pending_devices=total - updated,
    )


def compute_rollouts(
    distributions: Iterable[Distribution],
    devices: Sequence[Device],
    releases: Sequence[Release],
) -> dict[int, RolloutStats]:
    return {
        distribution.id: compute_rollout(distribution.id, devices, releases)
        for distribution in distributions
    }


def _network_score(device: Device) -> int:
    if device.network is None or device.network.network_score is None:
        return 0
    return device.network.network_score


def _in_distribution(
    device: Device,
    distribution_id: int,
    release_dist: dict[int, int],
) -> bool:
    if device.release_id is None:
        return False
    return release_dist.get(device.release_id) == distribution_id


def plan_canary(
    release: Release,
    devices: Iterable[Device],
    releases: Iterable[Release],
    now: datetime,
    *,
    canary_labels: Sequence[str] | None = None,
    size: int = DEFAULT_CANARY_SIZE,
) -> CanaryPlan:
    """Pick the devices that receive a new release before the full rollout.

    Only devices already converged on their current target are eligible. With
    canary labels every matching device is used; otherwise the best-connected,
    most recently active devices are sampled.
    """
    release_dist = _release_distributions(releases)
    release_dist[release.id] = release.distribution_id
    eligible = [
        device
        for device in devices
        if not device.archived
        and device.approved
        and device.release_id == device.target_release_id
        and _in_distribution(device, release.distribution_id, release_dist)
    ]

    if canary_labels:
        chosen = [
            device for device in eligible if has_any_label(device.labels, canary_labels)
        ]
        chosen.sort(key=lambda device: device.id)
        selected_by = "labels"
    else:
        recent = [
            device
            for device in eligible
            if device.last_seen is not None
            and device_age(device.last_seen, now) <= CANARY_RECENT_PING
        ]
        recent.sort(
            key=lambda device: (
                -_network_score(device),
                -device.last_seen.timestamp(),
                device.id,
            )
        )
        chosen = recent[: max(1, size)]
        selected_by = "activity"

    if not chosen:
        raise EmptyCanaryError("Canary release contains no devices, aborting.")
    return CanaryPlan(
        distribution_id=release.distribution_id,
        release_id=release.id,
        device_ids=tuple(device.id for device in chosen),
        selected_by=selected_by,
    )
