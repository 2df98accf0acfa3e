from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping

from fleetdeck_core.errors import ValidationError
from fleetdeck_core.fleet.types import Release, RolloutStats

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class DistributionReleases:
    distribution_id: int
    name: str
    releases: tuple[Release, ...]


def newest_first_key(release: Release) -> tuple[datetime, int]:
    return (release.created_at or _EPOCH, release.id)


def sort_newest_first(releases: Iterable[Release]) -> list[Release]:
    return sorted(releases, key=newest_first_key, reverse=True)


def deployable(release: Release) -> bool:
    return not release.draft and not release.yanked


def deploy_targets(releases: Iterable[Release], distribution_id: int) -> list[Release]:
    return sort_newest_first(
        release
        for release in releases
        if release.distribution_id == distribution_id and deployable(release)
    )


def latest_release(
    releases: Iterable[Release],
    distribution_id: int,
) -> Release | None:
    """Latest non-yanked release; new drafts start from its packages."""
    candidates = sort_newest_first(
        release
        for release in releases
        if release.distribution_id == distribution_id and not release.yanked
    )
    return candidates[0] if candidates else None


def ensure_mutable(release: Release) -> None:
    if not release.draft:
        raise ValidationError(
            f"Release {release.version} is published; "
            "packages can only change on drafts"
        )


def ensure_deployable(release: Release) -> None:
    if release.draft:
        raise ValidationError(f"Release {release.version} is still a draft")
    if release.yanked:
        raise ValidationError(f"Release {release.version} has been yanked")


def releases_by_distribution(
    releases: Iterable[Release],
    rollouts: Mapping[int, RolloutStats] | None = None,
) -> list[DistributionReleases]:
    """Group published releases per distribution for release pickers.

    Distributions with no published release, or with no devices when rollout
    stats are supplied, are left out. Groups are ordered by their newest
    release.
    """
    grouped: dict[int, list[Release]] = {}
    names: dict[int, str] = {}
    for release in releases:
        grouped.setdefault(release.distribution_id, []).append(release)
        if release.distribution_name:
            names[release.distribution_id] = release.distribution_name
    results: list[DistributionReleases] = []
    for distribution_id, items in grouped.items():
        published = sort_newest_first(item for item in items if deployable(item))
        if not published:
            continue
        if rollouts is not None:
            stats = rollouts.get(distribution_id)
            if stats is None or stats.total_devices == 0:
                continue
        results.append(
            DistributionReleases(
                distribution_id=distribution_id,
                name=names.get(distribution_id, "Unknown"),
                releases=tuple(published),
            )
        )
    results.sort(key=lambda group: newest_first_key(group.releases[0]), reverse=True)
    return results
