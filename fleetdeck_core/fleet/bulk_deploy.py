"""Validate and execute a target-release assignment across selected devices.

A bulk deploy writes ``target_release_id`` on every selected device directly.
It skips the canary phase a release-level deployment goes through, so results
always carry a caution flag for the caller to surface.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Protocol, Sequence

from fleetdeck_core.errors import (
    MixedDistributionsError,
    NoDistributionError,
    NoEligibleReleaseError,
    ValidationError,
)
from fleetdeck_core.fleet.releases import deploy_targets
from fleetdeck_core.fleet.types import Device, Release, release_to_dict
from fleetdeck_core.logging import get_logger

logger = get_logger(__name__)

ERROR_NO_DISTRIBUTION = NoDistributionError.code
ERROR_MIXED_DISTRIBUTIONS = MixedDistributionsError.code
ERROR_NO_ELIGIBLE_RELEASES = NoEligibleReleaseError.code

CANARY_BYPASS_WARNING = (
    "Bulk deploy assigns the release directly and bypasses the canary phase; "
    "use with caution."
)

_ERRORS: dict[str, type[ValidationError]] = {
    ERROR_NO_DISTRIBUTION: NoDistributionError,
    ERROR_MIXED_DISTRIBUTIONS: MixedDistributionsError,
    ERROR_NO_ELIGIBLE_RELEASES: NoEligibleReleaseError,
}

_MESSAGES = {
    ERROR_NO_DISTRIBUTION: (
        "Selected devices have no release; no distribution to deploy."
    ),
    ERROR_MIXED_DISTRIBUTIONS: (
        "Selected devices run different distributions; narrow the selection."
    ),
    ERROR_NO_ELIGIBLE_RELEASES: "Distribution has no published, non-yanked release.",
}


class TargetReleaseWriter(Protocol):
    def set_target_release(
        self,
        device_ids: Sequence[int],
        release_id: int,
    ) -> Sequence[int] | None:
        ...


@dataclass(frozen=True)
class BulkDeployPlan:
    device_ids: tuple[int, ...]
    distribution_ids: tuple[int, ...]
    eligible_releases: tuple[Release, ...]
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def distribution_id(self) -> int | None:
        if len(self.distribution_ids) == 1:
            return self.distribution_ids[0]
        return None

    @property
    def message(self) -> str | None:
        if self.error is None:
            return None
        return _MESSAGES[self.error]

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise _ERRORS[self.error](_MESSAGES[self.error])

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_ids": list(self.device_ids),
            "distribution_id": self.distribution_id,
            "distribution_ids": list(self.distribution_ids),
            "eligible_releases": [
                release_to_dict(release) for release in self.eligible_releases
            ],
            "error": self.error,
            "message": self.message,
            "bypasses_canary": True,
            "warning": CANARY_BYPASS_WARNING,
        }


@dataclass(frozen=True)
class BulkDeployResult:
    release_id: int
    requested_ids: tuple[int, ...]
    applied_ids: tuple[int, ...] | None
    bypasses_canary: bool = True
    warning: str = CANARY_BYPASS_WARNING

    @property
    def failed_ids(self) -> tuple[int, ...]:
        if self.applied_ids is None:
            return ()
        applied = set(self.applied_ids)
        return tuple(item for item in self.requested_ids if item not in applied)

    @property
    def partial(self) -> bool:
        return bool(self.failed_ids)

    @property
    def confirmed(self) -> bool:
        """Whether the backend reported per-device results for the write."""
        return self.applied_ids is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "release_id": self.release_id,
            "requested_ids": list(self.requested_ids),
            "applied_ids": None if self.applied_ids is None else list(self.applied_ids),
            "failed_ids": list(self.failed_ids),
            "partial": self.partial,
            "confirmed": self.confirmed,
            "bypasses_canary": self.bypasses_canary,
            "warning": self.warning,
        }


@dataclass(frozen=True)
class BulkDeployVerification:
    release_id: int
    applied_ids: tuple[int, ...]
    pending_ids: tuple[int, ...]
    missing_ids: tuple[int, ...]

    @property
    def complete(self) -> bool:
        return not self.pending_ids and not self.missing_ids


def selected_devices(
    selected_ids: Iterable[int],
    devices: Iterable[Device],
) -> list[Device]:
    by_id = {device.id: device for device in devices}
    seen: set[int] = set()
    results: list[Device] = []
    for device_id in selected_ids:
        if device_id in seen:
            continue
        seen.add(device_id)
        device = by_id.get(device_id)
        if device is not None:
            results.append(device)
    return results


def _current_distribution(
    device: Device,
    release_dist: dict[int, int],
) -> int | None:
    if device.release_id is None:
        return None
    if device.release_id in release_dist:
        return release_dist[device.release_id]
    if device.release is not None:
        return device.release.distribution_id
    return None


def validate_bulk_deploy(
    selected_ids: Iterable[int],
    devices: Iterable[Device],
    releases: Sequence[Release],
) -> BulkDeployPlan:
    chosen = selected_devices(selected_ids, devices)
    release_dist = {release.id: release.distribution_id for release in releases}
    distribution_ids: list[int] = []
    for device in chosen:
        distribution_id = _current_distribution(device, release_dist)
        if distribution_id is not None and distribution_id not in distribution_ids:
            distribution_ids.append(distribution_id)
    distribution_ids.sort()
    device_ids = tuple(device.id for device in chosen)

    if not distribution_ids:
        return BulkDeployPlan(
            device_ids=device_ids,
            distribution_ids=(),
            eligible_releases=(),
            error=ERROR_NO_DISTRIBUTION,
        )
    if len(distribution_ids) > 1:
        return BulkDeployPlan(
            device_ids=device_ids,
            distribution_ids=tuple(distribution_ids),
            eligible_releases=(),
            error=ERROR_MIXED_DISTRIBUTIONS,
        )
    eligible = tuple(deploy_targets(releases, distribution_ids[0]))
    return BulkDeployPlan(
        device_ids=device_ids,
        distribution_ids=tuple(distribution_ids),
        eligible_releases=eligible,
        error=None if eligible else ERROR_NO_ELIGIBLE_RELEASES,
    )


def execute_bulk_deploy(
    plan: BulkDeployPlan,
    release_id: int,
    writer: TargetReleaseWriter,
) -> BulkDeployResult:
    plan.raise_for_error()
    if release_id not in {release.id for release in plan.eligible_releases}:
        raise ValidationError(
            f"Release {release_id} is not a deploy target for this selection"
        )
    logger.warning(
        "Bulk deploy bypasses canary",
        extra={
            "release_id": release_id,
            "distribution_id": plan.distribution_id,
            "device_count": len(plan.device_ids),
        },
    )
    applied = writer.set_target_release(plan.device_ids, release_id)
    result = BulkDeployResult(
        release_id=release_id,
        requested_ids=plan.device_ids,
        applied_ids=None if applied is None else tuple(int(item) for item in applied),
    )
    if result.partial:
        logger.warning(
            "Bulk deploy partially applied",
            extra={
                "release_id": release_id,
                "failed_device_ids": list(result.failed_ids),
            },
        )
    return result


def verify_bulk_deploy(
    result: BulkDeployResult,
    devices: Iterable[Device],
) -> BulkDeployVerification:
    """Re-derive per-device outcome of a bulk deploy from a fresh snapshot."""
    by_id = {device.id: device for device in devices}
    applied: list[int] = []
    pending: list[int] = []
    missing: list[int] = []
    for device_id in result.requested_ids:
        device = by_id.get(device_id)
        if device is None:
            missing.append(device_id)
        elif device.target_release_id == result.release_id:
            applied.append(device_id)
        else:
            pending.append(device_id)
    return BulkDeployVerification(
        release_id=result.release_id,
        applied_ids=tuple(applied),
        pending_ids=tuple(pending),
        missing_ids=tuple(missing),
    )
