"""Live fleet read models backed by polling and mutation-driven invalidation.

``FleetRefresher`` recomputes every derived view from one full refetch and
publishes it into a ``SnapshotStore``. ``Reconciler`` forwards operator
mutations to the backend and invalidates the read models they touch, so the
next refresh replaces them. ``FleetConsole`` wires both to a polling
scheduler and a debounced search box.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Protocol, Sequence

from fleetdeck_core.config import Config
from fleetdeck_core.errors import RemoteCallError
from fleetdeck_core.fleet.bulk_deploy import (
    BulkDeployPlan,
    BulkDeployResult,
    execute_bulk_deploy,
)
from fleetdeck_core.fleet.categorizer import (
    DEFAULT_DISPLAY_CAP,
    FleetCategories,
    FleetSummary,
    categorize_fleet,
    summarize_fleet,
)
from fleetdeck_core.fleet.deployments import (
    DEFAULT_CANARY_TIMEOUT,
    DeploymentMonitor,
    DeploymentView,
    ensure_full_rollout_allowed,
)
from fleetdeck_core.fleet.filters import DeviceQuery
from fleetdeck_core.fleet.releases import ensure_deployable, ensure_mutable
from fleetdeck_core.fleet.rollouts import (
    DEFAULT_CANARY_SIZE,
    compute_rollouts,
    plan_canary,
)
from fleetdeck_core.fleet.snapshot import FleetSnapshot, load_snapshot
from fleetdeck_core.fleet.status import POLICY_ONLINE_GATED
from fleetdeck_core.fleet.timewindow import utc_now
from fleetdeck_core.fleet.types import (
    Deployment,
    Device,
    Distribution,
    Release,
    RolloutStats,
)
from fleetdeck_core.logging import get_logger
from fleetdeck_core.polling import (
    DEFAULT_DEBOUNCE_S,
    DEFAULT_POLL_INTERVAL_S,
    READ_CATEGORIES,
    READ_DEVICES,
    READ_DISTRIBUTIONS,
    READ_RELEASES,
    READ_ROLLOUTS,
    READ_SUMMARY,
    Debouncer,
    PollingScheduler,
    SnapshotStore,
    deployment_key,
)

if TYPE_CHECKING:
    from fleetdeck_core.backend import BackendClient

logger = get_logger(__name__)

DEVICE_MUTATION_MODELS = (READ_DEVICES, READ_SUMMARY, READ_CATEGORIES)
BULK_DEPLOY_MODELS = (READ_DEVICES, READ_CATEGORIES, READ_ROLLOUTS)
DEPLOYMENT_MODELS = (READ_DEVICES, READ_ROLLOUTS)
RELEASE_MUTATION_MODELS = (READ_RELEASES,)


class FleetSource(Protocol):
    def list_all_devices(self, query: DeviceQuery | None = None) -> list[Device]:
        ...

    def list_releases(self, distribution_id: int | None = None) -> list[Release]:
        ...

    def list_distributions(self) -> list[Distribution]:
        ...


class SnapshotSource:
    """Serve a saved fleet snapshot through the backend read interface."""

    def __init__(self, snapshot: FleetSnapshot) -> None:
        self.snapshot = snapshot

    @classmethod
    def from_uri(cls, uri: str) -> "SnapshotSource":
        return cls(load_snapshot(uri))

    def list_all_devices(self, query: DeviceQuery | None = None) -> list[Device]:
        if query is None:
            return list(self.snapshot.devices)
        now = self.snapshot.captured_at
        return [
            device for device in self.snapshot.devices if query.matches(device, now)
        ]

    def list_releases(self, distribution_id: int | None = None) -> list[Release]:
        return [
            release
            for release in self.snapshot.releases
            if distribution_id is None or release.distribution_id == distribution_id
        ]

    def list_distributions(self) -> list[Distribution]:
        return list(self.snapshot.distributions)

    def clock(self) -> datetime:
        """Classify against the capture time, not the wall clock."""
        return self.snapshot.captured_at


@dataclass(frozen=True)
class FleetState:
    devices: tuple[Device, ...]
    releases: tuple[Release, ...]
    distributions: tuple[Distribution, ...]
    categories: FleetCategories
    summary: FleetSummary
    rollouts: dict[int, RolloutStats]
    sequence: int
    refreshed_at: datetime


class FleetRefresher:
    def __init__(
        self,
        source: FleetSource,
        store: SnapshotStore,
        *,
        display_cap: int = DEFAULT_DISPLAY_CAP,
        outdated_grace: timedelta | None = None,
        exclude_labels: Sequence[str] = (),
        policy: str = POLICY_ONLINE_GATED,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._store = store
        self._display_cap = display_cap
        self._outdated_grace = outdated_grace
        self._exclude_labels = tuple(exclude_labels)
        self._policy = policy
        self._clock = clock

    def refresh(self) -> FleetState:
        ticket = self._store.begin()
        started = time.monotonic()
        devices = tuple(self._source.list_all_devices())
        releases = tuple(self._source.list_releases())
        distributions = tuple(self._source.list_distributions())
        now = self._clock()
        state = FleetState(
            devices=devices,
            releases=releases,
            distributions=distributions,
            categories=categorize_fleet(
                devices,
                now,
                display_cap=self._display_cap,
                outdated_grace=self._outdated_grace,
                policy=self._policy,
            ),
            summary=summarize_fleet(
                devices,
                now,
                exclude_labels=self._exclude_labels,
            ),
            rollouts=compute_rollouts(distributions, devices, releases),
            sequence=ticket,
            refreshed_at=now,
        )
        accepted = [
            self._store.publish(READ_DEVICES, ticket, state.devices),
            self._store.publish(READ_RELEASES, ticket, state.releases),
            self._store.publish(READ_DISTRIBUTIONS, ticket, state.distributions),
            self._store.publish(READ_CATEGORIES, ticket, state.categories),
            self._store.publish(READ_SUMMARY, ticket, state.summary),
            self._store.publish(READ_ROLLOUTS, ticket, state.rollouts),
        ]
        logger.info(
            "Fleet refreshed",
            extra={
                "sequence": ticket,
                "device_count": len(devices),
                "bucket_counts": state.categories.counts(),
                "duration_ms": int((time.monotonic() - started) * 1000),
                "status": "published" if all(accepted) else "stale",
            },
        )
        return state

    def categories(self) -> FleetCategories | None:
        return self._store.value(READ_CATEGORIES)

    def summary(self) -> FleetSummary | None:
        return self._store.value(READ_SUMMARY)

    def rollouts(self) -> dict[int, RolloutStats]:
        return self._store.value(READ_ROLLOUTS, {})

    def devices(self) -> tuple[Device, ...]:
        return self._store.value(READ_DEVICES, ())

    def releases(self) -> tuple[Release, ...]:
        return self._store.value(READ_RELEASES, ())

    def distributions(self) -> tuple[Distribution, ...]:
        return self._store.value(READ_DISTRIBUTIONS, ())


class Reconciler:
    """Apply operator mutations and invalidate the read models they change.

    A mutation only returns once the backend has acknowledged it, and the
    affected read models are invalidated before it returns. Remote failures
    propagate to the caller.
    """

    def __init__(
        self,
        backend: "BackendClient",
        store: SnapshotStore,
        *,
        on_invalidate: Callable[[], None] | None = None,
        canary_size: int = DEFAULT_CANARY_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._store = store
        self._on_invalidate = on_invalidate
        self._canary_size = canary_size
        self._clock = clock

    def approve_device(self, device_id: int) -> None:
        self._backend.approve_device(device_id)
        logger.info("Device approved", extra={"device_id": device_id})
        self._invalidate(DEVICE_MUTATION_MODELS)

    def revoke_device(self, device_id: int) -> None:
        self._backend.revoke_device(device_id)
        logger.info("Device approval revoked", extra={"device_id": device_id})
        self._invalidate(DEVICE_MUTATION_MODELS)

    def bulk_deploy(self, plan: BulkDeployPlan, release_id: int) -> BulkDeployResult:
        try:
            result = execute_bulk_deploy(plan, release_id, self._backend)
        except RemoteCallError:
            # a failed batch write may still have reached some devices
            self._invalidate(BULK_DEPLOY_MODELS)
            raise
        self._invalidate(BULK_DEPLOY_MODELS)
        return result

    def deploy_release(
        self,
        release: Release,
        *,
        canary_labels: Sequence[str] | None = None,
    ) -> Deployment:
        ensure_deployable(release)
        devices = self._store.value(READ_DEVICES)
        if devices is not None:
            plan_canary(
                release,
                devices,
                self._store.value(READ_RELEASES, ()),
                self._clock(),
                canary_labels=canary_labels,
                size=self._canary_size,
            )
        deployment = self._backend.deploy_release(release.id, canary_labels)
        logger.info(
            "Deployment started",
            extra={
                "deployment_id": deployment.id,
                "release_id": release.id,
                "distribution_id": release.distribution_id,
            },
        )
        self._invalidate((*DEPLOYMENT_MODELS, deployment_key(release.id)))
        return deployment

    def confirm_full_rollout(self, release_id: int) -> Deployment:
        deployment = self._backend.get_deployment(release_id)
        if deployment is None:
            raise RemoteCallError(
                f"No deployment found for release {release_id}", status_code=404
            )
        devices = self._backend.deployment_devices(release_id)
        if not ensure_full_rollout_allowed(deployment, devices):
            return deployment
        confirmed = self._backend.confirm_full_rollout(release_id)
        logger.info(
            "Full rollout confirmed",
            extra={"deployment_id": confirmed.id, "release_id": release_id},
        )
        self._invalidate((*DEPLOYMENT_MODELS, deployment_key(release_id)))
        return confirmed

    def add_packages(self, release_id: int, package_ids: Sequence[int]) -> None:
        self._mutable_release(release_id)
        self._backend.add_packages(release_id, package_ids)
        logger.info(
            "Release packages added",
            extra={"release_id": release_id, "package_ids": list(package_ids)},
        )
        self._invalidate(RELEASE_MUTATION_MODELS)

    def replace_package(
        self,
        release_id: int,
        package_id: int,
        new_package_id: int,
    ) -> None:
        self._mutable_release(release_id)
        self._backend.replace_package(release_id, package_id, new_package_id)
        logger.info(
            "Release package replaced",
            extra={
                "release_id": release_id,
                "package_ids": [package_id, new_package_id],
            },
        )
        self._invalidate(RELEASE_MUTATION_MODELS)

    def remove_package(self, release_id: int, package_id: int) -> None:
        self._mutable_release(release_id)
        self._backend.remove_package(release_id, package_id)
        logger.info(
            "Release package removed",
            extra={"release_id": release_id, "package_ids": [package_id]},
        )
        self._invalidate(RELEASE_MUTATION_MODELS)

    def _mutable_release(self, release_id: int) -> Release:
        release = self._backend.get_release(release_id)
        if release is None:
            raise RemoteCallError(f"Release {release_id} not found", status_code=404)
        ensure_mutable(release)
        return release

    def _invalidate(self, keys: Sequence[str]) -> None:
        self._store.invalidate(*keys)
        if self._on_invalidate is not None:
            self._on_invalidate()


class FleetConsole:
    """Fleet read models refreshed on an interval and after every mutation."""

    def __init__(
        self,
        source: FleetSource,
        *,
        backend: "BackendClient | None" = None,
        store: SnapshotStore | None = None,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        search_debounce_s: float = DEFAULT_DEBOUNCE_S,
        display_cap: int = DEFAULT_DISPLAY_CAP,
        outdated_grace: timedelta | None = None,
        exclude_labels: Sequence[str] = (),
        canary_size: int = DEFAULT_CANARY_SIZE,
        canary_timeout: timedelta = DEFAULT_CANARY_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store or SnapshotStore()
        self.refresher = FleetRefresher(
            source,
            self.store,
            display_cap=display_cap,
            outdated_grace=outdated_grace,
            exclude_labels=exclude_labels,
            clock=clock,
        )
        self.scheduler = PollingScheduler(
            self.refresher.refresh,
            interval_s,
            name="fleet-refresh",
        )
        self.reconciler = (
            Reconciler(
                backend,
                self.store,
                on_invalidate=self.scheduler.trigger,
                canary_size=canary_size,
                clock=clock,
            )
            if backend is not None
            else None
        )
        self._backend = backend
        self._interval_s = interval_s
        self._canary_timeout = canary_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._search_term: str | None = None
        self._search = Debouncer(self._apply_search, search_debounce_s)
        self._monitors: dict[int, DeploymentMonitor] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        source: FleetSource,
        *,
        backend: "BackendClient | None" = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "FleetConsole":
        return cls(
            source,
            backend=backend,
            clock=clock,
            interval_s=config.poll_interval_s,
            search_debounce_s=config.search_debounce_s(),
            display_cap=config.display_cap,
            outdated_grace=config.outdated_grace(),
            exclude_labels=config.excluded_labels,
            canary_size=config.canary_size,
            canary_timeout=config.canary_timeout(),
        )

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self._search.cancel()
        self.scheduler.stop()
        with self._lock:
            monitors = list(self._monitors.values())
            self._monitors.clear()
        for monitor in monitors:
            monitor.stop()

    def __enter__(self) -> "FleetConsole":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    @property
    def search_term(self) -> str | None:
        with self._lock:
            return self._search_term

    def search(self, term: str) -> None:
        self._search(term)

    def flush_search(self) -> None:
        self._search.flush()

    def _apply_search(self, term: str) -> None:
        with self._lock:
            self._search_term = term.strip() or None
        self.scheduler.trigger()

    def search_results(self) -> list[Device]:
        return self.find_devices(self.search_term)

    def find_devices(self, search: str | None = None) -> list[Device]:
        """Filter the current device snapshot without touching the search box."""
        devices = self.refresher.devices()
        search = (search or "").strip()
        if not search:
            return list(devices)
        query = DeviceQuery(search=search)
        now = self._clock()
        return [device for device in devices if query.matches(device, now)]

    def watch_deployment(
        self,
        release_id: int,
        on_update: Callable[[DeploymentView], None] | None = None,
    ) -> DeploymentMonitor:
        if self._backend is None:
            raise ValueError("Deployment monitoring requires a backend client")

        def publish(view: DeploymentView) -> None:
            key = deployment_key(release_id)
            self.store.publish(key, self.store.begin(), view)
            if on_update is not None:
                on_update(view)

        monitor = DeploymentMonitor(
            release_id,
            self._backend,
            interval_s=self._interval_s,
            canary_timeout=self._canary_timeout,
            clock=self._clock,
            on_update=publish,
        )
        with self._lock:
            previous = self._monitors.pop(release_id, None)
            self._monitors[release_id] = monitor
        if previous is not None:
            previous.stop()
        monitor.start()
        return monitor
