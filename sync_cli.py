"""Command line helper for the Cipex offline sync engine."""

from __future__ import annotations

import argparse
import logging
import sys
import time

import settings
from core.connectivity import ConnectivityMonitor
from core.local_store import LocalStore
from core.logging_config import configure_logging
from core.offline_queue import PendingActionQueue
from core.sync_service import SyncConfigurationError, SyncReport, build_coordinator


def _load_settings(args: argparse.Namespace) -> settings.SyncSettings:
    return settings.load_sync_settings(args.settings)


def _print_report(report: SyncReport) -> int:
    print(f"Status        : {report.status}")
    if report.pulled:
        print(f"Pulled        : {', '.join(report.pulled)}")
    for name, message in report.pull_errors.items():
        print(f"Pull failed   : {name} ({message})")
    print(f"Flushed       : {report.flushed}")
    if report.flush_error:
        print(f"Flush halted  : {report.flush_error}")
    if report.resynced:
        print("Cache rebuilt from remote data.")
    print(f"Pending       : {report.pending}")
    return 0 if report.ok else 1


def command_status(args: argparse.Namespace) -> int:
    sync_settings = _load_settings(args)
    store = LocalStore()
    queue = PendingActionQueue()
    print(f"Endpoint      : {sync_settings.endpoint_url or 'not configured'}")
    print(f"Pending       : {len(queue)}")
    for collection in sync_settings.collection_members():
        print(f"{collection.value:<14}: {len(store.get(collection))} record(s)")
    return 0


def command_pending(args: argparse.Namespace) -> int:
    actions = PendingActionQueue().dequeue_all()
    if not actions:
        print("No pending actions.")
        return 0
    for action in actions:
        print(f"{action.enqueued_at}  {action.action.value:<7} {action.collection.value}/{action.id}")
    return 0


def command_sync(args: argparse.Namespace) -> int:
    try:
        coordinator = build_coordinator(_load_settings(args))
    except SyncConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return _print_report(coordinator.sync())


def command_resync(args: argparse.Namespace) -> int:
    try:
        coordinator = build_coordinator(_load_settings(args))
    except SyncConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    report = coordinator.resync()
    if not report.resynced:
        print("Pending actions could not all be flushed; local cache kept.")
    return _print_report(report)


def command_watch(args: argparse.Namespace) -> int:
    sync_settings = _load_settings(args)
    monitor: ConnectivityMonitor

    try:
        coordinator = build_coordinator(sync_settings, is_online=lambda: monitor.online)
    except SyncConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    monitor = ConnectivityMonitor(
        coordinator.gateway.is_reachable,
        coordinator.request_sync,
        interval_seconds=sync_settings.connectivity_interval_seconds,
        initially_online=False,
    )
    monitor.start()
    print("Watching connectivity. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cipex offline sync tool")
    parser.add_argument(
        "--settings",
        default=settings.SYNC_SETTINGS_PATH,
        help="Path to sync_settings.json",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show cached record and pending counts")
    status_parser.set_defaults(func=command_status)

    pending_parser = subparsers.add_parser("pending", help="List queued actions in replay order")
    pending_parser.set_defaults(func=command_pending)

    sync_parser = subparsers.add_parser("sync", help="Pull remote data and flush pending actions")
    sync_parser.set_defaults(func=command_sync)

    resync_parser = subparsers.add_parser(
        "resync",
        help="Flush everything, then rebuild the local cache from the remote store",
    )
    resync_parser.set_defaults(func=command_resync)

    watch_parser = subparsers.add_parser(
        "watch",
        help="Sync automatically whenever the network comes back",
    )
    watch_parser.set_defaults(func=command_watch)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
