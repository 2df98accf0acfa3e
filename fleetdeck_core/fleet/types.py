from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, TypeVar

from fleetdeck_core.fleet.timewindow import (
    STATUS_ABANDONED,
    STATUS_NEVER_SEEN,
    STATUS_OFFLINE_MONTH,
    STATUS_OFFLINE_WEEK,
    STATUS_ONLINE,
    STATUS_RECENTLY_OFFLINE,
    format_timestamp,
    parse_timestamp,
)
from fleetdeck_core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

STATUS_STUCK_UPDATE = "stuck-update"

DEVICE_STATUSES: tuple[str, ...] = (
    STATUS_NEVER_SEEN,
    STATUS_STUCK_UPDATE,
    STATUS_ONLINE,
    STATUS_RECENTLY_OFFLINE,
    STATUS_OFFLINE_WEEK,
    STATUS_OFFLINE_MONTH,
    STATUS_ABANDONED,
)

DEPLOYMENT_IN_PROGRESS = "InProgress"
DEPLOYMENT_DONE = "Done"
DEPLOYMENT_FAILED = "Failed"
DEPLOYMENT_CANCELED = "Canceled"

DEPLOYMENT_STATUSES: tuple[str, ...] = (
    DEPLOYMENT_IN_PROGRESS,
    DEPLOYMENT_DONE,
    DEPLOYMENT_FAILED,
    DEPLOYMENT_CANCELED,
)
TERMINAL_DEPLOYMENT_STATUSES = frozenset(
    {DEPLOYMENT_DONE, DEPLOYMENT_FAILED, DEPLOYMENT_CANCELED}
)

_DEPLOYMENT_STATUS_ALIASES = {
    "in_progress": DEPLOYMENT_IN_PROGRESS,
    "inprogress": DEPLOYMENT_IN_PROGRESS,
    "done": DEPLOYMENT_DONE,
    "failed": DEPLOYMENT_FAILED,
    "canceled": DEPLOYMENT_CANCELED,
    "cancelled": DEPLOYMENT_CANCELED,
}


@dataclass(frozen=True)
class DeviceNetwork:
    network_score: int | None = None
    download_speed_mbps: float | None = None
    upload_speed_mbps: float | None = None
    source: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class IpAddressInfo:
    ip_address: str
    country: str | None = None
    country_code: str | None = None
    region: str | None = None
    city: str | None = None
    isp: str | None = None


@dataclass(frozen=True)
class Release:
    id: int
    distribution_id: int
    version: str
    draft: bool = False
    yanked: bool = False
    created_at: datetime | None = None
    distribution_name: str | None = None
    distribution_architecture: str | None = None


@dataclass(frozen=True)
class Distribution:
    id: int
    name: str
    architecture: str = ""
    description: str | None = None
    num_packages: int | None = None


@dataclass(frozen=True)
class Device:
    id: int
    serial_number: str
    last_seen: datetime | None = None
    release_id: int | None = None
    target_release_id: int | None = None
    approved: bool = True
    has_token: bool = True
    archived: bool = False
    labels: dict[str, str] = field(default_factory=dict)
    network: DeviceNetwork | None = None
    ip_address: IpAddressInfo | None = None
    release: Release | None = None
    target_release: Release | None = None
    target_release_id_set_at: datetime | None = None
    created_on: datetime | None = None
    note: str | None = None


@dataclass(frozen=True)
class Deployment:
    id: int
    release_id: int
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DEPLOYMENT_STATUSES


@dataclass(frozen=True)
class DeploymentDevice:
    device_id: int
    serial_number: str
    release_id: int | None
    target_release_id: int | None
    last_ping: datetime | None = None
    added_at: datetime | None = None
    services_healthy: bool | None = None


@dataclass(frozen=True)
class RolloutStats:
    distribution_id: int
    total_devices: int
    updated_devices: int
    pending_devices: int

    @property
    def progress_percent(self) -> int:
        if self.total_devices <= 0:
            return 0
        return round(self.updated_devices / self.total_devices * 100)

    def to_dict(self) -> dict[str, int]:
        return {
            "distribution_id": self.distribution_id,
            "total_devices": self.total_devices,
            "updated_devices": self.updated_devices,
            "pending_devices": self.pending_devices,
            "progress_percent": self.progress_percent,
        }


def normalize_deployment_status(value: object) -> str:
    text = str(value or "").strip()
    if text in DEPLOYMENT_STATUSES:
        return text
    alias = _DEPLOYMENT_STATUS_ALIASES.get(text.lower().replace(" ", ""))
    if alias is None:
        raise ValueError(f"Unknown deployment status: {value!r}")
    return alias


def release_from_dict(payload: dict[str, Any]) -> Release:
    return Release(
        id=int(payload["id"]),
        distribution_id=int(payload["distribution_id"]),
        version=str(payload.get("version", "")),
        draft=bool(payload.get("draft", False)),
        yanked=bool(payload.get("yanked", False)),
        created_at=parse_timestamp(payload.get("created_at")),
        distribution_name=_coerce_optional_str(payload.get("distribution_name")),
        distribution_architecture=_coerce_optional_str(
            payload.get("distribution_architecture")
        ),
    )


def distribution_from_dict(payload: dict[str, Any]) -> Distribution:
    return Distribution(
        id=int(payload["id"]),
        name=str(payload.get("name", "")),
        architecture=str(payload.get("architecture") or ""),
        description=_coerce_optional_str(payload.get("description")),
        num_packages=_coerce_optional_int(payload.get("num_packages")),
    )


def device_from_dict(payload: dict[str, Any]) -> Device:
    release = payload.get("release")
    target_release = payload.get("target_release")
    return Device(
        id=int(payload["id"]),
        serial_number=str(payload.get("serial_number", "")),
        last_seen=parse_timestamp(payload.get("last_seen")),
        release_id=_coerce_optional_int(payload.get("release_id")),
        target_release_id=_coerce_optional_int(payload.get("target_release_id")),
        approved=bool(payload.get("approved", False)),
        has_token=bool(payload.get("has_token", False)),
        archived=bool(payload.get("archived", False)),
        labels=_coerce_labels(payload.get("labels")),
        network=_network_from_dict(payload.get("network")),
        ip_address=_ip_from_dict(payload.get("ip_address")),
        release=release_from_dict(release) if isinstance(release, dict) else None,
        target_release=(
            release_from_dict(target_release)
            if isinstance(target_release, dict)
            else None
        ),
        target_release_id_set_at=parse_timestamp(
            payload.get("target_release_id_set_at")
        ),
        created_on=parse_timestamp(payload.get("created_on")),
        note=_coerce_optional_str(payload.get("note")),
    )


def deployment_from_dict(payload: dict[str, Any]) -> Deployment:
    return Deployment(
        id=int(payload["id"]),
        release_id=int(payload["release_id"]),
        status=normalize_deployment_status(payload.get("status")),
        created_at=parse_timestamp(payload.get("created_at")),
        updated_at=parse_timestamp(payload.get("updated_at")),
    )


def deployment_device_from_dict(payload: dict[str, Any]) -> DeploymentDevice:
    healthy = payload.get("services_healthy")
    return DeploymentDevice(
        device_id=int(payload["device_id"]),
        serial_number=str(payload.get("serial_number", "")),
        release_id=_coerce_optional_int(payload.get("release_id")),
        target_release_id=_coerce_optional_int(payload.get("target_release_id")),
        last_ping=parse_timestamp(payload.get("last_ping")),
        added_at=parse_timestamp(payload.get("added_at")),
        services_healthy=healthy if isinstance(healthy, bool) else None,
    )


def rollout_from_dict(payload: dict[str, Any]) -> RolloutStats:
    return RolloutStats(
        distribution_id=int(payload["distribution_id"]),
        total_devices=int(payload.get("total_devices") or 0),
        updated_devices=int(payload.get("updated_devices") or 0),
        pending_devices=int(payload.get("pending_devices") or 0),
    )


def device_to_dict(device: Device) -> dict[str, Any]:
    return {
        "id": device.id,
        "serial_number": device.serial_number,
        "last_seen": format_timestamp(device.last_seen),
        "release_id": device.release_id,
        "target_release_id": device.target_release_id,
        "approved": device.approved,
        "has_token": device.has_token,
        "archived": device.archived,
        "labels": dict(device.labels),
        "network_score": device.network.network_score if device.network else None,
        "release_version": device.release.version if device.release else None,
        "target_release_id_set_at": format_timestamp(
            device.target_release_id_set_at
        ),
    }


def release_to_dict(release: Release) -> dict[str, Any]:
    return {
        "id": release.id,
        "distribution_id": release.distribution_id,
        "version": release.version,
        "draft": release.draft,
        "yanked": release.yanked,
        "created_at": format_timestamp(release.created_at),
        "distribution_name": release.distribution_name,
    }


def _network_from_dict(value: object) -> DeviceNetwork | None:
    if not isinstance(value, dict):
        return None
    score = _coerce_optional_int(value.get("network_score"))
    if score is not None:
        score = max(0, min(5, score))
    return DeviceNetwork(
        network_score=score,
        download_speed_mbps=_coerce_optional_float(value.get("download_speed_mbps")),
        upload_speed_mbps=_coerce_optional_float(value.get("upload_speed_mbps")),
        source=_coerce_optional_str(value.get("source")),
        updated_at=parse_timestamp(value.get("updated_at")),
    )


def _ip_from_dict(value: object) -> IpAddressInfo | None:
    if not isinstance(value, dict):
        return None
    address = _coerce_optional_str(value.get("ip_address"))
    if address is None:
        return None
    return IpAddressInfo(
        ip_address=address,
        country=_coerce_optional_str(value.get("country")),
        country_code=_coerce_optional_str(value.get("country_code")),
        region=_coerce_optional_str(value.get("region")),
        city=_coerce_optional_str(value.get("city")),
        isp=_coerce_optional_str(value.get("isp")),
    )


def _coerce_labels(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): str(item) for key, item in value.items()}


def _coerce_optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_optional_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_many(items: object, parser: Callable[[dict[str, Any]], T]) -> list[T]:
    """Parse a list of payloads, skipping entries that cannot be parsed."""
    if not isinstance(items, list):
        return []
    results: list[T] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            results.append(parser(item))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Skipped malformed payload",
                extra={"error_message": f"{parser.__name__}: {exc}"},
            )
    return results
