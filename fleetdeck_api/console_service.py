import os
import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from fleetdeck_core.backend import BackendClient
from fleetdeck_core.config import get_config
from fleetdeck_core.console import FleetConsole, FleetSource, SnapshotSource
from fleetdeck_core.errors import (
    AuthError,
    InvalidTransitionError,
    MixedDistributionsError,
    NoEligibleReleaseError,
    RemoteCallError,
    ValidationError,
)
from fleetdeck_core.fleet import (
    FleetCategories,
    FleetSummary,
    build_deployment_view,
    releases_by_distribution,
    validate_bulk_deploy,
)
from fleetdeck_core.fleet.timewindow import utc_now
from fleetdeck_core.fleet.types import device_to_dict, release_to_dict
from fleetdeck_core.logging import configure_logging, get_logger
from fleetdeck_core.polling import READ_CATEGORIES

SERVICE_NAME = "fleetdeck-console"

configure_logging(
    service=SERVICE_NAME,
    env=os.getenv("ENV"),
    version=os.getenv("FLEETDECK_VERSION"),
)
logger = get_logger(__name__)

_console: FleetConsole | None = None
_backend: BackendClient | None = None
_console_lock = threading.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    _shutdown_console()


app = FastAPI(lifespan=lifespan)


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    commit: str
    timestamp: str


class DeviceResponse(BaseModel):
    id: int
    serial_number: str
    last_seen: str | None = None
    release_id: int | None = None
    target_release_id: int | None = None
    approved: bool
    has_token: bool
    archived: bool
    labels: dict[str, str] = Field(default_factory=dict)
    network_score: int | None = None
    release_version: str | None = None
    target_release_id_set_at: str | None = None
    outdated: bool = False


class BucketResponse(BaseModel):
    name: str
    total: int
    has_more: bool
    devices: list[DeviceResponse]


class AttentionResponse(BaseModel):
    generated_at: str | None
    total_attention: int
    buckets: list[BucketResponse]


class SummaryResponse(BaseModel):
    total: int
    online: int
    offline: int
    never_seen: int
    outdated: int
    archived: int


class RolloutResponse(BaseModel):
    distribution_id: int
    distribution_name: str | None = None
    total_devices: int
    updated_devices: int
    pending_devices: int
    progress_percent: int


class ReleaseResponse(BaseModel):
    id: int
    distribution_id: int
    version: str
    draft: bool
    yanked: bool
    created_at: str | None = None
    distribution_name: str | None = None


class DistributionReleasesResponse(BaseModel):
    distribution_id: int
    name: str
    releases: list[ReleaseResponse]


class BulkDeployValidateRequest(BaseModel):
    device_ids: list[int] = Field(min_length=1)


class BulkDeployRequest(BaseModel):
    device_ids: list[int] = Field(min_length=1)
    release_id: int


class BulkDeployPlanResponse(BaseModel):
    device_ids: list[int]
    distribution_id: int | None = None
    distribution_ids: list[int]
    eligible_releases: list[ReleaseResponse]
    error: str | None = None
    message: str | None = None
    bypasses_canary: bool
    warning: str


class BulkDeployResultResponse(BaseModel):
    release_id: int
    requested_ids: list[int]
    applied_ids: list[int] | None = None
    failed_ids: list[int]
    partial: bool
    confirmed: bool
    bypasses_canary: bool
    warning: str


class DeploymentDeviceResponse(BaseModel):
    device_id: int
    serial_number: str
    release_id: int | None = None
    target_release_id: int | None = None
    last_ping: str | None = None
    services_healthy: bool | None = None
    convergence: str


class DeploymentResponse(BaseModel):
    id: int
    release_id: int
    status: str
    created_at: str | None = None
    updated_at: str | None = None


class DeploymentViewResponse(BaseModel):
    deployment: DeploymentResponse
    phase: str
    canary_complete: bool
    canary_timed_out: bool
    counts: dict[str, int]
    devices: list[DeploymentDeviceResponse]
    observed_at: str | None


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "")
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    env = os.getenv("ENV", "dev").lower()
    if env in {"dev", "local", "test"}:
        return ["*"]
    return []


_cors = _cors_origins()
if _cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _get_config():
    return get_config()


def _get_console() -> FleetConsole:
    global _console, _backend
    with _console_lock:
        if _console is not None:
            return _console
        config = _get_config()
        configure_logging(
            service=SERVICE_NAME,
            env=config.env,
            version=os.getenv("FLEETDECK_VERSION"),
            level=config.log_level,
        )
        backend = BackendClient.from_config(config) if config.api_url else None
        source: FleetSource
        clock = utc_now
        if config.snapshot_uri:
            snapshot = SnapshotSource.from_uri(config.snapshot_uri)
            source, clock = snapshot, snapshot.clock
        else:
            source = backend
        _backend = backend
        _console = FleetConsole.from_config(
            config, source, backend=backend, clock=clock
        )
        return _console


def _shutdown_console() -> None:
    global _console, _backend
    with _console_lock:
        console, backend = _console, _backend
        _console = None
        _backend = None
    if console is not None:
        console.stop()
    if backend is not None:
        backend.close()


def _require_backend() -> BackendClient:
    _get_console()
    if _backend is None:
        raise HTTPException(status_code=503, detail="Fleet backend not configured")
    return _backend


def _ensure_fresh(console: FleetConsole) -> None:
    model = console.store.get(READ_CATEGORIES)
    if model is not None and not model.stale:
        age_s = (utc_now() - model.updated_at).total_seconds()
        if age_s < _get_config().poll_interval_s:
            return
    try:
        console.refresher.refresh()
    except (RemoteCallError, AuthError) as exc:
        if model is None:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        logger.warning(
            "Serving previous fleet snapshot",
            extra={"error_message": str(exc), "read_model": READ_CATEGORIES},
        )


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(
        exc,
        (MixedDistributionsError, NoEligibleReleaseError, InvalidTransitionError),
    ):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def _attention_response(categories: FleetCategories) -> AttentionResponse:
    payload = categories.to_dict()
    return AttentionResponse(
        generated_at=payload["generated_at"],
        total_attention=payload["total_attention"],
        buckets=[
            BucketResponse(
                name=bucket["name"],
                total=bucket["total"],
                has_more=bucket["has_more"],
                devices=[DeviceResponse(**item) for item in bucket["devices"]],
            )
            for bucket in payload["buckets"]
        ],
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service=SERVICE_NAME,
        version=os.getenv("FLEETDECK_VERSION", "dev"),
        commit=os.getenv("GIT_COMMIT", "unknown"),
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    )


@app.get("/fleet/attention", response_model=AttentionResponse)
def fleet_attention() -> AttentionResponse:
    console = _get_console()
    _ensure_fresh(console)
    categories = console.refresher.categories()
    if categories is None:
        raise HTTPException(status_code=503, detail="Fleet snapshot not ready")
    return _attention_response(categories)


@app.get("/fleet/summary", response_model=SummaryResponse)
def fleet_summary() -> SummaryResponse:
    console = _get_console()
    _ensure_fresh(console)
    summary: FleetSummary | None = console.refresher.summary()
    if summary is None:
        raise HTTPException(status_code=503, detail="Fleet snapshot not ready")
    return SummaryResponse(**summary.to_dict())


@app.get("/fleet/devices", response_model=list[DeviceResponse])
def fleet_devices(search: str | None = None) -> list[DeviceResponse]:
    console = _get_console()
    _ensure_fresh(console)
    return [
        DeviceResponse(**device_to_dict(device))
        for device in console.find_devices(search)
    ]


@app.get("/fleet/rollouts", response_model=list[RolloutResponse])
def fleet_rollouts() -> list[RolloutResponse]:
    console = _get_console()
    _ensure_fresh(console)
    names = {item.id: item.name for item in console.refresher.distributions()}
    rollouts = console.refresher.rollouts()
    return [
        RolloutResponse(distribution_name=names.get(key), **stats.to_dict())
        for key, stats in sorted(rollouts.items())
    ]


@app.get("/fleet/releases", response_model=list[DistributionReleasesResponse])
def fleet_releases() -> list[DistributionReleasesResponse]:
    console = _get_console()
    _ensure_fresh(console)
    groups = releases_by_distribution(
        console.refresher.releases(),
        console.refresher.rollouts(),
    )
    return [
        DistributionReleasesResponse(
            distribution_id=group.distribution_id,
            name=group.name,
            releases=[
                ReleaseResponse(**release_to_dict(release))
                for release in group.releases
            ],
        )
        for group in groups
    ]


@app.post("/fleet/bulk-deploy/validate", response_model=BulkDeployPlanResponse)
def bulk_deploy_validate(
    payload: BulkDeployValidateRequest,
) -> BulkDeployPlanResponse:
    console = _get_console()
    _ensure_fresh(console)
    plan = validate_bulk_deploy(
        payload.device_ids,
        console.refresher.devices(),
        console.refresher.releases(),
    )
    return BulkDeployPlanResponse(**plan.to_dict())


@app.post("/fleet/bulk-deploy", response_model=BulkDeployResultResponse)
def bulk_deploy(
    request: Request,
    payload: BulkDeployRequest,
) -> BulkDeployResultResponse:
    _require_backend()
    console = _get_console()
    _ensure_fresh(console)
    plan = validate_bulk_deploy(
        payload.device_ids,
        console.refresher.devices(),
        console.refresher.releases(),
    )
    try:
        result = console.reconciler.bulk_deploy(plan, payload.release_id)
    except (ValidationError, RemoteCallError, AuthError) as exc:
        raise _http_error(exc) from exc
    logger.info(
        "Bulk deploy requested",
        extra={
            "request_id": str(uuid.uuid4()),
            "correlation_id": request.headers.get("x-correlation-id"),
            "release_id": payload.release_id,
            "device_count": len(plan.device_ids),
        },
    )
    return BulkDeployResultResponse(**result.to_dict())


@app.get("/deployments/{release_id}", response_model=DeploymentViewResponse)
def deployment_status(release_id: int) -> DeploymentViewResponse:
    backend = _require_backend()
    try:
        deployment = backend.get_deployment(release_id)
        if deployment is None:
            raise HTTPException(status_code=404, detail="Deployment not found")
        devices = backend.deployment_devices(release_id)
    except (RemoteCallError, AuthError) as exc:
        if isinstance(exc, RemoteCallError) and exc.status_code == 404:
            raise HTTPException(
                status_code=404, detail="Deployment not found"
            ) from exc
        raise _http_error(exc) from exc
    view = build_deployment_view(
        deployment,
        devices,
        utc_now(),
        canary_timeout=_get_config().canary_timeout(),
    )
    return DeploymentViewResponse(**view.to_dict())
