from __future__ import annotations

from typing import Any, Iterator, Sequence

import httpx

from fleetdeck_core.config import Config
from fleetdeck_core.errors import AuthError, RemoteCallError
from fleetdeck_core.fleet.filters import DeviceQuery
from fleetdeck_core.fleet.types import (
    Deployment,
    DeploymentDevice,
    Device,
    Distribution,
    Release,
    RolloutStats,
    deployment_device_from_dict,
    deployment_from_dict,
    device_from_dict,
    distribution_from_dict,
    parse_many,
    release_from_dict,
    rollout_from_dict,
)
from fleetdeck_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_PAGE_SIZE = 100
USER_AGENT = "FleetDeck/1.0"


class BackendClient:
    """Thin client over the fleet management API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_S,
        page_size: int = DEFAULT_PAGE_SIZE,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._page_size = page_size
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config) -> "BackendClient":
        if not config.api_url:
            raise ValueError("FLEETDECK_API_URL is required for backend access")
        return cls(
            config.api_url,
            token=config.api_token,
            timeout=config.request_timeout_s,
            page_size=config.page_size,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BackendClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        payload: Any = None,
    ) -> Any:
        try:
            response = self._client.request(method, path, params=params, json=payload)
        except httpx.HTTPError as exc:
            logger.warning(
                "Backend request failed",
                extra={"error_message": str(exc), "status": f"{method} {path}"},
            )
            raise RemoteCallError(f"{method} {path} failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise AuthError(f"{method} {path} rejected: HTTP {response.status_code}")
        if response.status_code >= 400:
            body = response.text[:500]
            logger.warning(
                "Backend request rejected",
                extra={
                    "status": f"{method} {path}",
                    "error_code": response.status_code,
                    "error_message": body,
                },
            )
            raise RemoteCallError(
                f"HTTP {response.status_code}: {body}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    # Devices

    def list_devices(self, query: DeviceQuery | None = None) -> list[Device]:
        query = query or DeviceQuery(limit=self._page_size)
        payload = self._request("GET", "/devices", params=query.to_params())
        return parse_many(payload, device_from_dict)

    def iter_devices(self, query: DeviceQuery | None = None) -> Iterator[Device]:
        query = query or DeviceQuery(limit=self._page_size)
        offset = query.offset
        while True:
            page = self.list_devices(query.page(offset))
            yield from page
            if len(page) < query.limit:
                return
            offset += len(page)

    def list_all_devices(self, query: DeviceQuery | None = None) -> list[Device]:
        return list(self.iter_devices(query))

    def approve_device(self, device_id: int) -> None:
        self._request("POST", f"/devices/{device_id}/approval")

    def revoke_device(self, device_id: int) -> None:
        self._request("DELETE", f"/devices/{device_id}/approval")

    def archive_device(self, device_id: int) -> None:
        self._request("DELETE", f"/devices/{device_id}")

    def set_target_release(
        self,
        device_ids: Sequence[int],
        release_id: int,
    ) -> list[int] | None:
        payload = self._request(
            "PUT",
            "/devices/release",
            payload={"devices": list(device_ids), "target_release_id": release_id},
        )
        if isinstance(payload, dict):
            applied = payload.get("updated_devices", payload.get("devices"))
            if isinstance(applied, list):
                return [int(item) for item in applied]
        return None

    # Distributions and releases

    def list_distributions(self) -> list[Distribution]:
        payload = self._request("GET", "/distributions")
        return parse_many(payload, distribution_from_dict)

    def rollout_stats(self, distribution_id: int) -> RolloutStats:
        payload = self._request("GET", f"/distributions/{distribution_id}/rollout")
        if not isinstance(payload, dict):
            return RolloutStats(distribution_id, 0, 0, 0)
        return rollout_from_dict(payload)

    def list_releases(self, distribution_id: int | None = None) -> list[Release]:
        if distribution_id is None:
            payload = self._request("GET", "/releases")
        else:
            payload = self._request(
                "GET", f"/distributions/{distribution_id}/releases"
            )
        return parse_many(payload, release_from_dict)

    def get_release(self, release_id: int) -> Release | None:
        try:
            payload = self._request("GET", f"/releases/{release_id}")
        except RemoteCallError as exc:
            if exc.status_code == 404:
                return None
            raise
        if not isinstance(payload, dict):
            return None
        return release_from_dict(payload)

    def create_release(
        self,
        distribution_id: int,
        version: str,
        package_ids: Sequence[int],
    ) -> int | None:
        payload = self._request(
            "POST",
            f"/distributions/{distribution_id}/releases",
            payload={"version": version, "packages": list(package_ids)},
        )
        if isinstance(payload, dict) and "id" in payload:
            return int(payload["id"])
        if isinstance(payload, int):
            return payload
        return None

    def publish_release(self, release_id: int) -> None:
        self._request("POST", f"/releases/{release_id}", payload={"draft": False})

    def yank_release(self, release_id: int) -> None:
        self._request("POST", f"/releases/{release_id}", payload={"yanked": True})

    def add_packages(self, release_id: int, package_ids: Sequence[int]) -> None:
        self._request(
            "POST",
            f"/releases/{release_id}/packages",
            payload={"packages": list(package_ids)},
        )

    def replace_package(
        self,
        release_id: int,
        package_id: int,
        new_package_id: int,
    ) -> None:
        self._request(
            "PUT",
            f"/releases/{release_id}/packages/{package_id}",
            payload={"package_id": new_package_id},
        )

    def remove_package(self, release_id: int, package_id: int) -> None:
        self._request("DELETE", f"/releases/{release_id}/packages/{package_id}")

    # Deployments

    def deploy_release(
        self,
        release_id: int,
        canary_device_labels: Sequence[str] | None = None,
    ) -> Deployment:
        body = None
        if canary_device_labels:
            body = {"canary_device_labels": list(canary_device_labels)}
        payload = self._request(
            "POST", f"/releases/{release_id}/deployment", payload=body
        )
        return _deployment_payload(payload, release_id)

    def get_deployment(self, release_id: int) -> Deployment | None:
        payload = self._request("GET", f"/releases/{release_id}/deployment")
        if not isinstance(payload, dict):
            return None
        return deployment_from_dict(payload)

    def deployment_devices(self, release_id: int) -> list[DeploymentDevice]:
        payload = self._request("GET", f"/releases/{release_id}/deployment/devices")
        return parse_many(payload, deployment_device_from_dict)

    def confirm_full_rollout(self, release_id: int) -> Deployment:
        payload = self._request("POST", f"/releases/{release_id}/deployment/confirm")
        return _deployment_payload(payload, release_id)


def _deployment_payload(payload: Any, release_id: int) -> Deployment:
    if not isinstance(payload, dict):
        raise RemoteCallError(
            f"Malformed deployment response for release {release_id}"
        )
    try:
        return deployment_from_dict(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise RemoteCallError(
            f"Malformed deployment response for release {release_id}: {exc}"
        ) from exc
