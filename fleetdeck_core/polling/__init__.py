from fleetdeck_core.polling.scheduler import (
    DEFAULT_DEBOUNCE_S,
    DEFAULT_POLL_INTERVAL_S,
    Debouncer,
    PollingScheduler,
)
from fleetdeck_core.polling.snapshots import (
    READ_CATEGORIES,
    READ_DEPLOYMENT,
    READ_DEVICES,
    READ_DISTRIBUTIONS,
    READ_MODELS,
    READ_RELEASES,
    READ_ROLLOUTS,
    READ_SUMMARY,
    ReadModel,
    SnapshotStore,
    deployment_key,
)

__all__ = [
    "DEFAULT_DEBOUNCE_S",
    "DEFAULT_POLL_INTERVAL_S",
    "Debouncer",
    "PollingScheduler",
    "READ_CATEGORIES",
    "READ_DEPLOYMENT",
    "READ_DEVICES",
    "READ_DISTRIBUTIONS",
    "READ_MODELS",
    "READ_RELEASES",
    "READ_ROLLOUTS",
    "READ_SUMMARY",
    "ReadModel",
    "SnapshotStore",
    "deployment_key",
]
