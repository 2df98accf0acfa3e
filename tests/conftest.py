import os
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from fleetdeck_core.config import get_config
from fleetdeck_core.fleet.types import Device, DeviceNetwork, Distribution, Release

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fleet_env(monkeypatch: pytest.MonkeyPatch):
    def set_default(name: str, value: str) -> None:
        if not os.getenv(name):
            monkeypatch.setenv(name, value)

    set_default("ENV", "test")
    set_default("LOG_LEVEL", "INFO")
    set_default("FLEETDECK_API_URL", "http://fleet.test/api")
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def make_device(now: datetime) -> Callable[..., Device]:
    def factory(
        device_id: int,
        *,
        seen_ago: timedelta | None = timedelta(seconds=30),
        release_id: int | None = 1,
        target_release_id: int | None = 1,
        network_score: int | None = None,
        labels: dict[str, str] | None = None,
        target_set_ago: timedelta | None = None,
        **overrides,
    ) -> Device:
        fields = {
            "id": device_id,
            "serial_number": f"SN-{device_id:04d}",
            "last_seen": None if seen_ago is None else now - seen_ago,
            "release_id": release_id,
            "target_release_id": target_release_id,
            "labels": labels or {},
            "network": (
                DeviceNetwork(network_score=network_score)
                if network_score is not None
                else None
            ),
            "target_release_id_set_at": (
                None if target_set_ago is None else now - target_set_ago
            ),
        }
        fields.update(overrides)
        return Device(**fields)

    return factory


@pytest.fixture
def make_release(now: datetime) -> Callable[..., Release]:
    def factory(
        release_id: int,
        distribution_id: int = 1,
        *,
        age: timedelta | None = None,
        draft: bool = False,
        yanked: bool = False,
        version: str | None = None,
    ) -> Release:
        created_at = now - (age if age is not None else timedelta(days=release_id))
        return Release(
            id=release_id,
            distribution_id=distribution_id,
            version=version or f"1.0.{release_id}",
            draft=draft,
            yanked=yanked,
            created_at=created_at,
            distribution_name=f"dist-{distribution_id}",
        )

    return factory


@pytest.fixture
def distributions() -> list[Distribution]:
    return [
        Distribution(id=1, name="dist-1", architecture="arm64"),
        Distribution(id=2, name="dist-2", architecture="amd64"),
    ]
