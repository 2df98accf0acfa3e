from __future__ import annotations

import dataclasses
import importlib
import logging
from datetime import datetime, timedelta, timezone

import httpx
from fastapi.testclient import TestClient

from fleetdeck_core.backend import BackendClient
from fleetdeck_core.config import get_config
from fleetdeck_core.fleet.snapshot import FleetSnapshot, save_snapshot
from fleetdeck_core.fleet.timewindow import utc_now
from fleetdeck_core.fleet.types import Device, Distribution, Release


def _write_fleet(path) -> str:
    now = utc_now()
    releases = (
        Release(1, 1, "1.0.1", created_at=now - timedelta(days=9)),
        Release(2, 1, "1.0.2", created_at=now - timedelta(days=2)),
        Release(3, 1, "1.0.3", draft=True, created_at=now - timedelta(days=1)),
        Release(20, 2, "2.0.0", created_at=now - timedelta(days=3)),
    )
    devices = (
        Device(1, "SN-0001", now - timedelta(seconds=20), 1, 1),
        Device(2, "SN-0002", now - timedelta(seconds=40), 1, 2),
        Device(3, "SN-0003", now - timedelta(hours=2), 1, 1),
        Device(4, "SN-0004", None, 1, 1),
        Device(5, "EDGE-0005", now - timedelta(minutes=1), 20, 20),
    )
    distributions = (
        Distribution(1, "gateway", "arm64"),
        Distribution(2, "kiosk", "amd64"),
    )
    snapshot = FleetSnapshot(devices, releases, distributions, captured_at=now)
    return save_snapshot(str(path / "fleet.json"), snapshot)


def _load_service(monkeypatch, tmp_path, *, api_url=None, snapshot=None):
    if snapshot is None:
        uri = _write_fleet(tmp_path)
    else:
        uri = save_snapshot(str(tmp_path / "fleet.json"), snapshot)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("FLEETDECK_SNAPSHOT_URI", uri)
    if api_url:
        monkeypatch.setenv("FLEETDECK_API_URL", api_url)
    else:
        monkeypatch.delenv("FLEETDECK_API_URL", raising=False)
    get_config.cache_clear()

    import fleetdeck_api.console_service as service

    importlib.reload(service)
    return service


def test_console_health(monkeypatch, tmp_path):
    service = _load_service(monkeypatch, tmp_path)
    client = TestClient(service.app)
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["service"] == "fleetdeck-console"


def test_console_read_endpoints(monkeypatch, tmp_path):
    service = _load_service(monkeypatch, tmp_path)
    client = TestClient(service.app)

    resp = client.get("/fleet/attention")
    assert resp.status_code == 200
    body = resp.json()
    assert [bucket["name"] for bucket in body["buckets"]] == [
        "stuck-update",
        "recently-offline",
        "offline-week",
        "offline-month",
        "never-seen",
    ]
    assert body["total_attention"] == 3
    stuck = body["buckets"][0]
    assert [device["id"] for device in stuck["devices"]] == [2]
    assert stuck["devices"][0]["outdated"] is True
    assert body["buckets"][4]["devices"][0]["last_seen"] is None

    resp = client.get("/fleet/summary")
    assert resp.status_code == 200
    assert resp.json() == {
        "total": 5,
        "online": 3,
        "offline": 1,
        "never_seen": 1,
        "outdated": 1,
        "archived": 0,
    }

    resp = client.get("/fleet/rollouts")
    assert resp.status_code == 200
    rollouts = resp.json()
    assert [item["distribution_name"] for item in rollouts] == ["gateway", "kiosk"]
    assert rollouts[0]["total_devices"] == 4
    assert rollouts[0]["pending_devices"] == 1

    resp = client.get("/fleet/releases")
    assert resp.status_code == 200
    groups = resp.json()
    assert [group["distribution_id"] for group in groups] == [1, 2]
    assert [release["id"] for release in groups[0]["releases"]] == [2, 1]

    resp = client.get("/fleet/devices", params={"search": "edge"})
    assert resp.status_code == 200
    assert [device["id"] for device in resp.json()] == [5]


def test_console_bulk_deploy_validation(monkeypatch, tmp_path):
    service = _load_service(monkeypatch, tmp_path)
    client = TestClient(service.app)

    resp = client.post("/fleet/bulk-deploy/validate", json={"device_ids": [1, 3]})
    assert resp.status_code == 200
    plan = resp.json()
    assert plan["error"] is None
    assert plan["distribution_id"] == 1
    assert [release["id"] for release in plan["eligible_releases"]] == [2, 1]
    assert plan["bypasses_canary"] is True

    resp = client.post("/fleet/bulk-deploy/validate", json={"device_ids": [1, 5]})
    assert resp.status_code == 200
    assert resp.json()["error"] == "mixed-distributions"

    resp = client.post("/fleet/bulk-deploy/validate", json={"device_ids": []})
    assert resp.status_code == 422


def test_console_mutations_need_backend(monkeypatch, tmp_path):
    service = _load_service(monkeypatch, tmp_path)
    client = TestClient(service.app)

    resp = client.post(
        "/fleet/bulk-deploy",
        json={"device_ids": [1], "release_id": 2},
    )
    assert resp.status_code == 503

    resp = client.get("/deployments/2")
    assert resp.status_code == 503


def test_console_bulk_deploy_and_deployment(monkeypatch, tmp_path):
    service = _load_service(monkeypatch, tmp_path, api_url="http://fleet.test/api")
    writes = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "PUT" and path == "/api/devices/release":
            writes.append(request.content)
            return httpx.Response(200, json={"updated_devices": [1]})
        if path == "/api/releases/2/deployment":
            return httpx.Response(
                200,
                json={
                    "id": 3,
                    "release_id": 2,
                    "status": "InProgress",
                    "created_at": utc_now().isoformat(),
                },
            )
        if path == "/api/releases/2/deployment/devices":
            return httpx.Response(
                200,
                json=[
                    {
                        "device_id": 1,
                        "serial_number": "SN-0001",
                        "release_id": 2,
                        "target_release_id": 2,
                    }
                ],
            )
        return httpx.Response(404, text="not found")

    class _MockBackend(BackendClient):
        @classmethod
        def from_config(cls, config):
            return cls(config.api_url, transport=httpx.MockTransport(handler))

    monkeypatch.setattr(service, "BackendClient", _MockBackend)
    client = TestClient(service.app)

    resp = client.post(
        "/fleet/bulk-deploy",
        json={"device_ids": [1, 2], "release_id": 2},
        headers={"x-correlation-id": "abc"},
    )
    assert resp.status_code == 200
    result = resp.json()
    assert result["partial"] is True
    assert result["failed_ids"] == [2]
    assert len(writes) == 1

    resp = client.post(
        "/fleet/bulk-deploy",
        json={"device_ids": [1, 5], "release_id": 2},
    )
    assert resp.status_code == 409

    resp = client.post(
        "/fleet/bulk-deploy",
        json={"device_ids": [1], "release_id": 3},
    )
    assert resp.status_code == 400
    assert len(writes) == 1

    resp = client.get("/deployments/2")
    assert resp.status_code == 200
    view = resp.json()
    assert view["deployment"]["status"] == "InProgress"
    assert view["phase"] == "full-rollout"
    assert view["counts"]["updated"] == 1

    resp = client.get("/deployments/7")
    assert resp.status_code == 404


def test_device_search_is_scoped_to_the_request(monkeypatch, tmp_path):
    service = _load_service(monkeypatch, tmp_path)
    client = TestClient(service.app)

    resp = client.get("/fleet/devices", params={"search": "SN-0001"})
    assert [device["id"] for device in resp.json()] == [1]

    resp = client.get("/fleet/devices")
    assert resp.status_code == 200
    assert [device["id"] for device in resp.json()] == [1, 2, 3, 4, 5]
    assert service._get_console().search_term is None


def test_snapshot_is_classified_at_capture_time(monkeypatch, tmp_path):
    captured_at = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    snapshot = FleetSnapshot(
        devices=(
            Device(1, "SN-0001", captured_at - timedelta(minutes=1), 1, 2),
            Device(2, "SN-0002", captured_at - timedelta(minutes=1), 2, 2),
        ),
        releases=(
            Release(1, 1, "1.0.1", created_at=captured_at - timedelta(days=9)),
            Release(2, 1, "1.0.2", created_at=captured_at - timedelta(days=2)),
        ),
        distributions=(Distribution(1, "gateway", "arm64"),),
        captured_at=captured_at,
    )
    service = _load_service(monkeypatch, tmp_path, snapshot=snapshot)
    client = TestClient(service.app)

    body = client.get("/fleet/attention").json()
    counts = {bucket["name"]: bucket["total"] for bucket in body["buckets"]}
    assert counts["stuck-update"] == 1
    assert counts["offline-month"] == 0
    assert client.get("/fleet/summary").json()["online"] == 2


def test_console_applies_configured_log_level(monkeypatch, tmp_path):
    service = _load_service(monkeypatch, tmp_path)
    config = dataclasses.replace(get_config(), log_level="WARNING")
    monkeypatch.setattr(service, "_get_config", lambda: config)
    root = logging.getLogger()
    previous = root.level
    try:
        TestClient(service.app).get("/fleet/summary")
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)
