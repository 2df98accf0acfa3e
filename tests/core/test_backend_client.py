from __future__ import annotations

import json

import httpx
import pytest

from fleetdeck_core.backend import BackendClient
from fleetdeck_core.config import get_config
from fleetdeck_core.errors import AuthError, RemoteCallError
from fleetdeck_core.fleet.filters import DeviceQuery
from fleetdeck_core.fleet.types import DEPLOYMENT_IN_PROGRESS


def _device_payload(device_id, **extra):
    payload = {
        "id": device_id,
        "serial_number": f"SN-{device_id}",
        "last_seen": "2024-06-01T11:59:00Z",
        "release_id": 1,
        "target_release_id": 1,
        "approved": True,
        "has_token": True,
        "labels": {"site": "north"},
    }
    payload.update(extra)
    return payload


def _client(handler) -> BackendClient:
    return BackendClient(
        "http://fleet.test/api/",
        token="secret",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.core
def test_list_devices_sends_query_params():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[_device_payload(1)])

    query = DeviceQuery(
        approved=True,
        outdated=True,
        outdated_minutes=30,
        labels=("site=north", "ring=beta"),
        exclude_labels=("env=lab",),
        limit=50,
    )
    with _client(handler) as client:
        devices = client.list_devices(query)

    assert [device.id for device in devices] == [1]
    request = seen[0]
    assert request.url.path == "/api/devices"
    assert request.headers["Authorization"] == "Bearer secret"
    params = request.url.params
    assert params["approved"] == "true"
    assert params["outdated"] == "true"
    assert params["outdated_minutes"] == "30"
    assert params.get_list("labels") == ["site=north", "ring=beta"]
    assert params.get_list("exclude_labels") == ["env=lab"]
    assert params["limit"] == "50"
    assert params["offset"] == "0"


@pytest.mark.core
def test_iter_devices_paginates_until_short_page():
    offsets = []

    def handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        offsets.append(offset)
        ids = {0: [1, 2], 2: [3, 4], 4: [5]}[offset]
        return httpx.Response(200, json=[_device_payload(i) for i in ids])

    with _client(handler) as client:
        devices = client.list_all_devices(DeviceQuery(limit=2))

    assert [device.id for device in devices] == [1, 2, 3, 4, 5]
    assert offsets == [0, 2, 4]


@pytest.mark.core
def test_malformed_devices_are_skipped():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[_device_payload(1), {"serial_number": "no-id"}, "junk"],
        )

    with _client(handler) as client:
        devices = client.list_devices()
    assert [device.id for device in devices] == [1]


@pytest.mark.core
def test_set_target_release_payload_and_result():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append((request.method, request.url.path, json.loads(request.content)))
        if len(bodies) == 1:
            return httpx.Response(200)
        return httpx.Response(200, json={"updated_devices": [1]})

    with _client(handler) as client:
        assert client.set_target_release([1, 2], 7) is None
        assert client.set_target_release([1, 2], 7) == [1]

    assert bodies[0] == (
        "PUT",
        "/api/devices/release",
        {"devices": [1, 2], "target_release_id": 7},
    )


@pytest.mark.core
def test_approval_endpoints():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        return httpx.Response(204)

    with _client(handler) as client:
        client.approve_device(3)
        client.revoke_device(3)

    assert calls == [
        ("POST", "/api/devices/3/approval"),
        ("DELETE", "/api/devices/3/approval"),
    ]


@pytest.mark.core
def test_error_mapping():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/releases/1"):
            return httpx.Response(404, text="missing")
        if request.url.path.endswith("/distributions"):
            return httpx.Response(401, text="nope")
        return httpx.Response(409, text="release is a draft")

    with _client(handler) as client:
        assert client.get_release(1) is None
        with pytest.raises(AuthError):
            client.list_distributions()
        with pytest.raises(RemoteCallError) as excinfo:
            client.set_target_release([1], 2)
    assert excinfo.value.status_code == 409


@pytest.mark.core
def test_transport_errors_become_remote_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _client(handler) as client:
        with pytest.raises(RemoteCallError) as excinfo:
            client.list_releases()
    assert excinfo.value.status_code is None


@pytest.mark.core
def test_deployment_calls():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/deployment/devices"):
            return httpx.Response(
                200,
                json=[
                    {
                        "device_id": 4,
                        "serial_number": "SN-4",
                        "release_id": 8,
                        "target_release_id": 9,
                        "last_ping": "2024-06-01T11:58:00Z",
                    }
                ],
            )
        if request.method == "POST" and path.endswith("/deployment"):
            body = json.loads(request.content)
            assert body == {"canary_device_labels": ["ring=canary"]}
        return httpx.Response(
            200,
            json={"id": 2, "release_id": 9, "status": "InProgress"},
        )

    with _client(handler) as client:
        deployment = client.deploy_release(9, ["ring=canary"])
        assert deployment.status == DEPLOYMENT_IN_PROGRESS
        assert client.get_deployment(9).id == 2
        members = client.deployment_devices(9)
    assert members[0].target_release_id == 9


@pytest.mark.core
def test_malformed_deployment_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": 2, "status": "Paused"})

    with _client(handler) as client:
        with pytest.raises(RemoteCallError):
            client.confirm_full_rollout(9)


@pytest.mark.core
def test_from_config(monkeypatch):
    monkeypatch.setenv("FLEETDECK_API_URL", "http://fleet.test/api/")
    monkeypatch.setenv("FLEETDECK_API_TOKEN", "t0ken")
    get_config.cache_clear()
    client = BackendClient.from_config(get_config())
    try:
        assert str(client._client.base_url).rstrip("/") == "http://fleet.test/api"
    finally:
        client.close()


@pytest.mark.core
def test_default_listing_uses_configured_page_size(monkeypatch):
    monkeypatch.setenv("FLEETDECK_API_URL", "http://fleet.test/api")
    monkeypatch.setenv("PAGE_SIZE", "2")
    get_config.cache_clear()
    config = get_config()
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        params = request.url.params
        requests.append((params["limit"], params["offset"]))
        ids = {"0": [1, 2], "2": [3]}[params["offset"]]
        return httpx.Response(200, json=[_device_payload(i) for i in ids])

    class _MockBackend(BackendClient):
        def __init__(self, base_url, **kwargs):
            kwargs["transport"] = httpx.MockTransport(handler)
            super().__init__(base_url, **kwargs)

    with _MockBackend.from_config(config) as client:
        devices = client.list_all_devices()

    assert [device.id for device in devices] == [1, 2, 3]
    assert requests == [("2", "0"), ("2", "2")]


@pytest.mark.core
def test_release_lifecycle_calls():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, request.url.path, body))
        if request.url.path == "/api/distributions/3/releases":
            return httpx.Response(201, json={"id": 12})
        return httpx.Response(204)

    with _client(handler) as client:
        assert client.create_release(3, "1.2.0", [5, 6]) == 12
        client.publish_release(12)
        client.yank_release(12)
        client.archive_device(4)

    assert calls == [
        (
            "POST",
            "/api/distributions/3/releases",
            {"version": "1.2.0", "packages": [5, 6]},
        ),
        ("POST", "/api/releases/12", {"draft": False}),
        ("POST", "/api/releases/12", {"yanked": True}),
        ("DELETE", "/api/devices/4", None),
    ]


@pytest.mark.core
def test_release_package_calls():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, request.url.path, body))
        return httpx.Response(204)

    with _client(handler) as client:
        client.add_packages(12, [7])
        client.replace_package(12, 7, 8)
        client.remove_package(12, 8)

    assert calls == [
        ("POST", "/api/releases/12/packages", {"packages": [7]}),
        ("PUT", "/api/releases/12/packages/7", {"package_id": 8}),
        ("DELETE", "/api/releases/12/packages/8", None),
    ]


@pytest.mark.core
def test_rollout_stats_and_missing_release():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/distributions/1/rollout":
            return httpx.Response(
                200,
                json={
                    "distribution_id": 1,
                    "total_devices": 4,
                    "updated_devices": 3,
                    "pending_devices": 1,
                },
            )
        if path == "/api/distributions/2/rollout":
            return httpx.Response(200, json=[])
        return httpx.Response(404, text="missing")

    with _client(handler) as client:
        stats = client.rollout_stats(1)
        assert stats.progress_percent == 75
        assert client.rollout_stats(2).total_devices == 0
        assert client.get_release(99) is None
