from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import time
from datetime import timedelta
from typing import Any

from fleetdeck_core.backend import BackendClient
from fleetdeck_core.console import (
    FleetRefresher,
    FleetSource,
    FleetState,
    SnapshotSource,
)
from fleetdeck_core.fleet import (
    DeploymentMonitor,
    DeploymentView,
    FleetSnapshot,
    deploy_targets,
    execute_bulk_deploy,
    save_snapshot,
    validate_bulk_deploy,
)
from fleetdeck_core.fleet.timewindow import utc_now
from fleetdeck_core.fleet.types import release_to_dict
from fleetdeck_core.polling import SnapshotStore

DEFAULT_API_URL = "http://localhost:8080/api"
CONSOLE_APP = "fleetdeck_api.console_service:app"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _resolve_api_url(value: str | None) -> str:
    return value or os.getenv("FLEETDECK_API_URL", DEFAULT_API_URL)


def _backend(args: argparse.Namespace) -> BackendClient:
    return BackendClient(
        _resolve_api_url(args.api_url),
        token=os.getenv("FLEETDECK_API_TOKEN"),
        timeout=float(os.getenv("REQUEST_TIMEOUT_S", "30")),
    )


def _source(args: argparse.Namespace) -> FleetSource:
    if args.snapshot:
        return SnapshotSource.from_uri(args.snapshot)
    return _backend(args)


def _close(source: object) -> None:
    if isinstance(source, BackendClient):
        source.close()


def _refresh(args: argparse.Namespace) -> FleetState:
    source = _source(args)
    clock = source.clock if isinstance(source, SnapshotSource) else utc_now
    try:
        refresher = FleetRefresher(
            source,
            SnapshotStore(),
            display_cap=args.display_cap,
            outdated_grace=_outdated_grace(args),
            exclude_labels=args.exclude_label or (),
            clock=clock,
        )
        return refresher.refresh()
    finally:
        _close(source)


def _outdated_grace(args: argparse.Namespace) -> timedelta | None:
    if args.outdated_minutes is None:
        return None
    return timedelta(minutes=args.outdated_minutes)


def cmd_attention(args: argparse.Namespace) -> int:
    state = _refresh(args)
    _print_json(state.categories.to_dict())
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    state = _refresh(args)
    _print_json(state.summary.to_dict())
    return 0


def cmd_rollouts(args: argparse.Namespace) -> int:
    state = _refresh(args)
    names = {item.id: item.name for item in state.distributions}
    payload = []
    for distribution_id, stats in sorted(state.rollouts.items()):
        item = stats.to_dict()
        item["distribution_name"] = names.get(distribution_id)
        payload.append(item)
    _print_json(payload)
    return 0


def cmd_deploy_targets(args: argparse.Namespace) -> int:
    source = _source(args)
    try:
        releases = source.list_releases(args.distribution_id)
    finally:
        _close(source)
    targets = deploy_targets(releases, args.distribution_id)
    _print_json([release_to_dict(release) for release in targets])
    return 0


def cmd_bulk_deploy(args: argparse.Namespace) -> int:
    backend = _backend(args)
    try:
        devices = backend.list_all_devices()
        releases = backend.list_releases()
        plan = validate_bulk_deploy(args.device_ids, devices, releases)
        if args.dry_run or args.release_id is None:
            _print_json(plan.to_dict())
            return 0 if plan.ok else 1
        print(f"Warning: {plan.to_dict()['warning']}", file=sys.stderr)
        result = execute_bulk_deploy(plan, args.release_id, backend)
    finally:
        backend.close()
    _print_json(result.to_dict())
    return 1 if result.partial else 0


def cmd_watch_deployment(args: argparse.Namespace) -> int:
    backend = _backend(args)

    def report(view: DeploymentView) -> None:
        _print_json(view.to_dict())

    monitor = DeploymentMonitor(
        args.release_id,
        backend,
        interval_s=args.interval,
        on_update=report,
    )
    try:
        if args.once:
            if monitor.poll_once() is None:
                print("Error: deployment not found", file=sys.stderr)
                return 1
            return 0
        monitor.start()
        while not monitor.finished:
            time.sleep(min(args.interval, 1.0))
    except KeyboardInterrupt:
        return 130
    finally:
        monitor.stop()
        backend.close()
    return 0


def cmd_snapshot(args: argparse.Namespace) -> int:
    backend = _backend(args)
    try:
        snapshot = FleetSnapshot(
            devices=tuple(backend.list_all_devices()),
            releases=tuple(backend.list_releases()),
            distributions=tuple(backend.list_distributions()),
            captured_at=utc_now(),
        )
    finally:
        backend.close()
    uri = save_snapshot(args.output, snapshot)
    _print_json({"uri": uri, "devices": len(snapshot.devices)})
    return 0


def _uvicorn_cmd(target: str, host: str, port: int, log_level: str) -> list[str]:
    return [
        "uvicorn",
        target,
        "--host",
        host,
        "--port",
        str(port),
        "--log-level",
        log_level,
    ]


def cmd_serve(args: argparse.Namespace) -> int:
    command = _uvicorn_cmd(CONSOLE_APP, args.host, args.port, args.log_level)
    if args.dry_run:
        print(" ".join(command))
        return 0
    env = dict(os.environ)
    env.setdefault("ENV", "local")
    if args.api_url:
        env["FLEETDECK_API_URL"] = args.api_url
    if args.snapshot:
        env["FLEETDECK_SNAPSHOT_URI"] = args.snapshot
    proc = subprocess.Popen(command, env=env)
    try:
        return proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait(timeout=5)
        return 0


def _add_read_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--snapshot", help="Read a saved fleet snapshot (fsspec URI)")
    parser.add_argument(
        "--display-cap",
        type=int,
        default=_env_int("DISPLAY_CAP", 10),
    )
    parser.add_argument(
        "--outdated-minutes",
        type=int,
        default=_env_int("OUTDATED_MINUTES", 30),
    )
    parser.add_argument(
        "--exclude-label",
        action="append",
        help="key=value label to leave out of the summary",
    )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetdeck")
    parser.add_argument("--api-url")
    subparsers = parser.add_subparsers(dest="command")

    attention_parser = subparsers.add_parser(
        "attention", help="Devices needing attention, by bucket"
    )
    _add_read_options(attention_parser)
    attention_parser.set_defaults(func=cmd_attention)

    summary_parser = subparsers.add_parser("summary", help="Fleet health counts")
    _add_read_options(summary_parser)
    summary_parser.set_defaults(func=cmd_summary)

    rollouts_parser = subparsers.add_parser(
        "rollouts", help="Rollout progress per distribution"
    )
    _add_read_options(rollouts_parser)
    rollouts_parser.set_defaults(func=cmd_rollouts)

    targets_parser = subparsers.add_parser(
        "deploy-targets", help="Deployable releases of a distribution"
    )
    targets_parser.add_argument("distribution_id", type=int)
    targets_parser.add_argument("--snapshot")
    targets_parser.set_defaults(func=cmd_deploy_targets)

    bulk_parser = subparsers.add_parser(
        "bulk-deploy", help="Assign a release to selected devices"
    )
    bulk_parser.add_argument("device_ids", type=int, nargs="+")
    bulk_parser.add_argument("--release-id", type=int)
    bulk_parser.add_argument("--dry-run", action="store_true")
    bulk_parser.set_defaults(func=cmd_bulk_deploy)

    watch_parser = subparsers.add_parser(
        "watch-deployment", help="Follow a deployment until it finishes"
    )
    watch_parser.add_argument("release_id", type=int)
    watch_parser.add_argument("--interval", type=float, default=5.0)
    watch_parser.add_argument("--once", action="store_true")
    watch_parser.set_defaults(func=cmd_watch_deployment)

    snapshot_parser = subparsers.add_parser(
        "snapshot", help="Save the current fleet to a snapshot file"
    )
    snapshot_parser.add_argument("output", help="Destination fsspec URI")
    snapshot_parser.set_defaults(func=cmd_snapshot)

    serve_parser = subparsers.add_parser("serve", help="Run the console API service")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8090)
    serve_parser.add_argument("--log-level", default="info")
    serve_parser.add_argument("--snapshot", help="Serve a saved fleet snapshot")
    serve_parser.add_argument("--dry-run", action="store_true")
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 2
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
