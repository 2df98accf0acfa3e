from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

import fsspec

from fleetdeck_core.fleet.timewindow import format_timestamp, parse_timestamp, utc_now
from fleetdeck_core.fleet.types import (
    Device,
    Distribution,
    Release,
    device_from_dict,
    distribution_from_dict,
    parse_many,
    release_from_dict,
)


@dataclass(frozen=True)
class FleetSnapshot:
    devices: tuple[Device, ...] = ()
    releases: tuple[Release, ...] = ()
    distributions: tuple[Distribution, ...] = ()
    captured_at: datetime = field(default_factory=utc_now)


def load_snapshot(uri: str) -> FleetSnapshot:
    fs, path = fsspec.core.url_to_fs(uri)
    if not fs.exists(path):
        raise FileNotFoundError(f"Fleet snapshot not found: {uri}")
    with fs.open(path, "rb") as handle:
        payload = json.loads(handle.read().decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Fleet snapshot must be a JSON object: {uri}")
    return snapshot_from_dict(payload)


def save_snapshot(uri: str, snapshot: FleetSnapshot) -> str:
    fs, path = fsspec.core.url_to_fs(uri)
    parent = "/".join(path.split("/")[:-1])
    if parent:
        fs.makedirs(parent, exist_ok=True)
    payload = snapshot_to_dict(snapshot)
    with fs.open(path, "wb") as handle:
        handle.write(
            json.dumps(payload, ensure_ascii=True, default=_json_default).encode(
                "utf-8"
            )
        )
    return uri


def snapshot_from_dict(payload: dict[str, Any]) -> FleetSnapshot:
    return FleetSnapshot(
        devices=tuple(parse_many(payload.get("devices"), device_from_dict)),
        releases=tuple(parse_many(payload.get("releases"), release_from_dict)),
        distributions=tuple(
            parse_many(payload.get("distributions"), distribution_from_dict)
        ),
        captured_at=parse_timestamp(payload.get("captured_at")) or utc_now(),
    )


def snapshot_to_dict(snapshot: FleetSnapshot) -> dict[str, Any]:
    return {
        "captured_at": format_timestamp(snapshot.captured_at),
        "devices": [asdict(device) for device in snapshot.devices],
        "releases": [asdict(release) for release in snapshot.releases],
        "distributions": [
            asdict(distribution) for distribution in snapshot.distributions
        ],
    }


def _json_default(value: object) -> object:
    if isinstance(value, datetime):
        return format_timestamp(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
