from fleetdeck_core.fleet.bulk_deploy import (
    CANARY_BYPASS_WARNING,
    BulkDeployPlan,
    BulkDeployResult,
    BulkDeployVerification,
    execute_bulk_deploy,
    validate_bulk_deploy,
    verify_bulk_deploy,
)
from fleetdeck_core.fleet.categorizer import (
    ATTENTION_BUCKETS,
    Bucket,
    FleetCategories,
    FleetSummary,
    categorize_fleet,
    summarize_fleet,
)
from fleetdeck_core.fleet.deployments import (
    DeploymentMonitor,
    DeploymentStateMachine,
    DeploymentView,
    build_deployment_view,
    canary_complete,
    canary_timed_out,
    convergence_summary,
    deployment_phase,
    device_convergence,
    ensure_full_rollout_allowed,
)
from fleetdeck_core.fleet.filters import DeviceQuery, visible_in_fleet_views
from fleetdeck_core.fleet.releases import (
    DistributionReleases,
    deploy_targets,
    deployable,
    ensure_deployable,
    ensure_mutable,
    latest_release,
    releases_by_distribution,
)
from fleetdeck_core.fleet.rollouts import (
    CanaryPlan,
    compute_rollout,
    compute_rollouts,
    plan_canary,
)
from fleetdeck_core.fleet.snapshot import FleetSnapshot, load_snapshot, save_snapshot
from fleetdeck_core.fleet.status import (
    STATUS_RULES,
    DeviceAssessment,
    assess_device,
    is_outdated,
    resolve_status,
)
from fleetdeck_core.fleet.timewindow import (
    DEFAULT_WINDOWS,
    TimeWindows,
    classify_last_seen,
    parse_timestamp,
)
from fleetdeck_core.fleet.types import (
    Deployment,
    DeploymentDevice,
    Device,
    Distribution,
    Release,
    RolloutStats,
)

__all__ = [
    "ATTENTION_BUCKETS",
    "Bucket",
    "BulkDeployPlan",
    "BulkDeployResult",
    "BulkDeployVerification",
    "CANARY_BYPASS_WARNING",
    "CanaryPlan",
    "DEFAULT_WINDOWS",
    "Deployment",
    "DeploymentDevice",
    "DeploymentMonitor",
    "DeploymentStateMachine",
    "DeploymentView",
    "Device",
    "DeviceAssessment",
    "DeviceQuery",
    "Distribution",
    "DistributionReleases",
    "FleetCategories",
    "FleetSnapshot",
    "FleetSummary",
    "Release",
    "RolloutStats",
    "STATUS_RULES",
    "TimeWindows",
    "assess_device",
    "build_deployment_view",
    "canary_complete",
    "canary_timed_out",
    "categorize_fleet",
    "classify_last_seen",
    "compute_rollout",
    "compute_rollouts",
    "convergence_summary",
    "deploy_targets",
    "deployable",
    "deployment_phase",
    "device_convergence",
    "ensure_deployable",
    "ensure_full_rollout_allowed",
    "ensure_mutable",
    "execute_bulk_deploy",
    "is_outdated",
    "latest_release",
    "load_snapshot",
    "parse_timestamp",
    "plan_canary",
    "releases_by_distribution",
    "resolve_status",
    "save_snapshot",
    "summarize_fleet",
    "validate_bulk_deploy",
    "verify_bulk_deploy",
    "visible_in_fleet_views",
]
