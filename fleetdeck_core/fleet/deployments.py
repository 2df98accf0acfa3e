"""Deployment lifecycle tracking.

A deployment starts ``InProgress`` and ends in exactly one of ``Done``,
``Failed`` or ``Canceled``. While in progress it moves through two phases
that the backend does not store: the canary phase, where a small sample of
devices receives the release, and the full rollout, once every canary device
has converged.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Protocol, Sequence

from fleetdeck_core.errors import InvalidTransitionError, ValidationError
from fleetdeck_core.fleet.timewindow import device_age, format_timestamp, utc_now
from fleetdeck_core.fleet.types import (
    DEPLOYMENT_DONE,
    DEPLOYMENT_IN_PROGRESS,
    DEPLOYMENT_STATUSES,
    TERMINAL_DEPLOYMENT_STATUSES,
    Deployment,
    DeploymentDevice,
)
from fleetdeck_core.logging import get_logger
from fleetdeck_core.polling.scheduler import DEFAULT_POLL_INTERVAL_S, PollingScheduler

logger = get_logger(__name__)

CONVERGENCE_UPDATED = "updated"
CONVERGENCE_UPDATING = "updating"
CONVERGENCE_PENDING = "pending"
CONVERGENCE_STATES = (CONVERGENCE_UPDATED, CONVERGENCE_UPDATING, CONVERGENCE_PENDING)

PHASE_CANARY = "canary"
PHASE_FULL_ROLLOUT = "full-rollout"

RECENT_PING_WINDOW = timedelta(minutes=5)
DEFAULT_CANARY_TIMEOUT = timedelta(minutes=30)

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    DEPLOYMENT_IN_PROGRESS: TERMINAL_DEPLOYMENT_STATUSES,
}


class DeploymentSource(Protocol):
    def get_deployment(self, release_id: int) -> Deployment | None:
        ...

    def deployment_devices(self, release_id: int) -> list[DeploymentDevice]:
        ...


class DeploymentStateMachine:
    def __init__(self, status: str = DEPLOYMENT_IN_PROGRESS) -> None:
        if status not in DEPLOYMENT_STATUSES:
            raise ValueError(f"Unknown deployment status: {status}")
        self._status = status

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_DEPLOYMENT_STATUSES

    def can_transition(self, status: str) -> bool:
        return status in VALID_TRANSITIONS.get(self._status, frozenset())

    def transition(self, status: str) -> bool:
        """Apply ``status``; returns False when nothing changed."""
        if status not in DEPLOYMENT_STATUSES:
            raise ValueError(f"Unknown deployment status: {status}")
        if status == self._status:
            return False
        if not self.can_transition(status):
            raise InvalidTransitionError(
                f"Deployment cannot move from {self._status} to {status}"
            )
        self._status = status
        return True


def device_convergence(device: DeploymentDevice, now: datetime) -> str:
    if device.release_id == device.target_release_id:
        return CONVERGENCE_UPDATED
    if (
        device.last_ping is not None
        and device_age(device.last_ping, now) <= RECENT_PING_WINDOW
    ):
        return CONVERGENCE_UPDATING
    return CONVERGENCE_PENDING


def convergence_summary(
    devices: Iterable[DeploymentDevice],
    now: datetime,
) -> dict[str, int]:
    counts = {state: 0 for state in CONVERGENCE_STATES}
    for device in devices:
        counts[device_convergence(device, now)] += 1
    return counts


def canary_complete(
    deployment: Deployment | None,
    devices: Sequence[DeploymentDevice],
) -> bool:
    if deployment is None or deployment.status != DEPLOYMENT_IN_PROGRESS:
        return False
    if not devices:
        return False
    return all(device.release_id == device.target_release_id for device in devices)


def deployment_phase(
    deployment: Deployment,
    devices: Sequence[DeploymentDevice],
) -> str:
    if deployment.status != DEPLOYMENT_IN_PROGRESS:
        return deployment.status
    if canary_complete(deployment, devices):
        return PHASE_FULL_ROLLOUT
    return PHASE_CANARY


def canary_timed_out(
    deployment: Deployment,
    devices: Sequence[DeploymentDevice],
    now: datetime,
    timeout: timedelta = DEFAULT_CANARY_TIMEOUT,
) -> bool:
    if deployment.status != DEPLOYMENT_IN_PROGRESS or deployment.created_at is None:
        return False
    if canary_complete(deployment, devices):
        return False
    return device_age(deployment.created_at, now) > timeout


def ensure_full_rollout_allowed(
    deployment: Deployment,
    devices: Sequence[DeploymentDevice],
) -> bool:
    """Check a full-rollout confirmation; returns False if already done."""
    if deployment.is_terminal:
        if deployment.status in TERMINAL_DEPLOYMENT_STATUSES - {DEPLOYMENT_DONE}:
            raise InvalidTransitionError(
                f"Deployment is {deployment.status}; it cannot be rolled out"
            )
        return False
    if not devices:
        raise ValidationError("No canary devices found in deployment")
    if not canary_complete(deployment, devices):
        raise ValidationError(
            "Cannot confirm full rollout: canary devices have not completed updating"
        )
    return True


@dataclass(frozen=True)
class DeploymentView:
    deployment: Deployment
    phase: str
    devices: tuple[DeploymentDevice, ...]
    convergence: dict[int, str]
    counts: dict[str, int]
    canary_complete: bool
    canary_timed_out: bool
    observed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment": {
                "id": self.deployment.id,
                "release_id": self.deployment.release_id,
                "status": self.deployment.status,
                "created_at": format_timestamp(self.deployment.created_at),
                "updated_at": format_timestamp(self.deployment.updated_at),
            },
            "phase": self.phase,
            "canary_complete": self.canary_complete,
            "canary_timed_out": self.canary_timed_out,
            "counts": dict(self.counts),
            "devices": [
                {
                    "device_id": device.device_id,
                    "serial_number": device.serial_number,
                    "release_id": device.release_id,
                    "target_release_id": device.target_release_id,
                    "last_ping": format_timestamp(device.last_ping),
                    "services_healthy": device.services_healthy,
                    "convergence": self.convergence[device.device_id],
                }
                for device in self.devices
            ],
            "observed_at": format_timestamp(self.observed_at),
        }


def build_deployment_view(
    deployment: Deployment,
    devices: Sequence[DeploymentDevice],
    now: datetime,
    *,
    canary_timeout: timedelta = DEFAULT_CANARY_TIMEOUT,
) -> DeploymentView:
    convergence = {
        device.device_id: device_convergence(device, now) for device in devices
    }
    counts = {state: 0 for state in CONVERGENCE_STATES}
    for state in convergence.values():
        counts[state] += 1
    return DeploymentView(
        deployment=deployment,
        phase=deployment_phase(deployment, devices),
        devices=tuple(devices),
        convergence=convergence,
        counts=counts,
        canary_complete=canary_complete(deployment, devices),
        canary_timed_out=canary_timed_out(deployment, devices, now, canary_timeout),
        observed_at=now,
    )


class DeploymentMonitor:
    """Poll one release's deployment until it reaches a terminal status."""

    def __init__(
        self,
        release_id: int,
        source: DeploymentSource,
        *,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        canary_timeout: timedelta = DEFAULT_CANARY_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
        on_update: Callable[[DeploymentView], None] | None = None,
        scheduler: PollingScheduler | None = None,
    ) -> None:
        self.release_id = release_id
        self._source = source
        self._canary_timeout = canary_timeout
        self._clock = clock
        self._on_update = on_update
        self._lock = threading.Lock()
        self._machine: DeploymentStateMachine | None = None
        self._view: DeploymentView | None = None
        self._scheduler = scheduler or PollingScheduler(
            self.poll_once,
            interval_s,
            name=f"deployment-{release_id}",
        )

    @property
    def view(self) -> DeploymentView | None:
        with self._lock:
            return self._view

    @property
    def status(self) -> str | None:
        with self._lock:
            return self._machine.status if self._machine else None

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._machine is not None and self._machine.is_terminal

    @property
    def polling(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self.finished:
            return
        self._scheduler.start()

    def stop(self) -> None:
        self._scheduler.stop()

    def poll_once(self) -> DeploymentView | None:
        if self.finished:
            self._scheduler.stop()
            return self.view
        deployment = self._source.get_deployment(self.release_id)
        if deployment is None:
            return None
        devices = self._source.deployment_devices(self.release_id)
        view = build_deployment_view(
            deployment,
            devices,
            self._clock(),
            canary_timeout=self._canary_timeout,
        )
        with self._lock:
            if self._machine is not None and self._machine.is_terminal:
                return self._view
            if self._machine is None:
                self._machine = DeploymentStateMachine(deployment.status)
                changed = True
            else:
                changed = self._machine.transition(deployment.status)
            self._view = view
            terminal = self._machine.is_terminal
        if changed:
            logger.info(
                "Deployment status observed",
                extra={
                    "deployment_id": deployment.id,
                    "release_id": deployment.release_id,
                    "status": deployment.status,
                },
            )
        if self._on_update is not None:
            self._on_update(view)
        if terminal:
            self._scheduler.stop()
        return view
