"""Resolve one status per device.

Resolution walks an ordered table of guarded rules; the first rule whose
guard holds decides the status. When no rule matches the device falls back to
its raw time-window bucket.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from fleetdeck_core.fleet.timewindow import (
    DEFAULT_WINDOWS,
    TimeWindows,
    classify_last_seen,
)
from fleetdeck_core.fleet.types import (
    STATUS_NEVER_SEEN,
    STATUS_ONLINE,
    STATUS_STUCK_UPDATE,
    Device,
)

POLICY_ONLINE_GATED = "online-gated"
POLICY_DRIFT_ANY = "drift-any"
POLICIES = (POLICY_ONLINE_GATED, POLICY_DRIFT_ANY)


@dataclass(frozen=True)
class RuleContext:
    device: Device
    window: str


@dataclass(frozen=True)
class StatusRule:
    status: str
    guard: Callable[[RuleContext], bool]


@dataclass(frozen=True)
class DeviceAssessment:
    device: Device
    status: str
    window: str
    outdated: bool


def is_outdated(device: Device) -> bool:
    if device.release_id is None or device.target_release_id is None:
        return False
    return device.release_id != device.target_release_id


def _never_seen(ctx: RuleContext) -> bool:
    return ctx.window == STATUS_NEVER_SEEN


def _online_drift(ctx: RuleContext) -> bool:
    return ctx.window == STATUS_ONLINE and is_outdated(ctx.device)


def _seen_drift(ctx: RuleContext) -> bool:
    return is_outdated(ctx.device)


STATUS_RULES: tuple[StatusRule, ...] = (
    StatusRule(status=STATUS_NEVER_SEEN, guard=_never_seen),
    StatusRule(status=STATUS_STUCK_UPDATE, guard=_online_drift),
)

# Offline drift is reported as stuck as well; kept for views that want it.
DRIFT_ANY_RULES: tuple[StatusRule, ...] = (
    StatusRule(status=STATUS_NEVER_SEEN, guard=_never_seen),
    StatusRule(status=STATUS_STUCK_UPDATE, guard=_seen_drift),
)


def rules_for_policy(policy: str) -> tuple[StatusRule, ...]:
    if policy == POLICY_ONLINE_GATED:
        return STATUS_RULES
    if policy == POLICY_DRIFT_ANY:
        return DRIFT_ANY_RULES
    allowed = ", ".join(POLICIES)
    raise ValueError(f"policy must be one of: {allowed}")


def assess_device(
    device: Device,
    now: datetime,
    *,
    windows: TimeWindows = DEFAULT_WINDOWS,
    rules: tuple[StatusRule, ...] = STATUS_RULES,
) -> DeviceAssessment:
    window = classify_last_seen(device.last_seen, now, windows)
    ctx = RuleContext(device=device, window=window)
    status = window
    for rule in rules:
        if rule.guard(ctx):
            status = rule.status
            break
    return DeviceAssessment(
        device=device,
        status=status,
        window=window,
        outdated=is_outdated(device),
    )


def resolve_status(
    device: Device,
    now: datetime,
    *,
    windows: TimeWindows = DEFAULT_WINDOWS,
    policy: str = POLICY_ONLINE_GATED,
) -> str:
    return assess_device(
        device,
        now,
        windows=windows,
        rules=rules_for_policy(policy),
    ).status
