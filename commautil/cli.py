"""Command line entry point for commautil."""
from __future__ import annotations

import argparse
import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, NoReturn

from . import __version__, jobs, service, transports
from .backup import BackupEngine, perform_automated_backup, read_metadata
from .config import get_cfg, path_setting
from .errors import CommaUtilError
from .network_registry import TYPE_LABELS, NetworkRegistry
from .route_catalog import RouteCatalog
from .transfer import TransferEngine

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

log = logging.getLogger("commautil")


def configure_logging(cfg: Dict[str, Any] | None = None) -> None:
    cfg = cfg if cfg is not None else get_cfg()
    logging_cfg = cfg.get("logging", {})
    level_name = "DEBUG" if logging_cfg.get("dev_mode") else str(logging_cfg.get("level", "INFO"))
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    raw_log_file = str(logging_cfg.get("log_file") or "").strip()
    log_file = Path(raw_log_file) if raw_log_file else path_setting("config_dir", cfg) / "commautil.log"
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            return
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=1024 * 1024, backupCount=3, encoding="utf-8"
        )
    except OSError as exc:
        print(f"[commautil] WARN: file logging disabled ({exc})", file=sys.stderr)
        return
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)


def _bool_arg(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


class _Parser(argparse.ArgumentParser):
    """Usage errors exit 1 like every other failure."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="commautil",
        description="Route sync, device backups and scheduled jobs for comma devices.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    actions = parser.add_mutually_exclusive_group(required=True)
    actions.add_argument("--backup", action="store_true", help="create a device backup")
    actions.add_argument("--route-sync", action="store_true", help="sync every route to --network")
    actions.add_argument("--sync-single-route", metavar="ROUTE", help="sync one route to --network")
    actions.add_argument("--list-routes", action="store_true", help="list routes with details")
    actions.add_argument("--cleanup-routes", metavar="DAYS", type=float, help="delete route files older than DAYS")
    actions.add_argument("--transfer-backup", metavar="DIR", type=Path, help="push a backup bundle to --network")
    actions.add_argument("--fetch-backup", metavar="DIR", type=Path, help="pull the backup from --network into DIR")
    actions.add_argument("--restore-device", metavar="BUNDLE", type=Path, help="restore a backup bundle")
    actions.add_argument("--prune-backups", action="store_true", help="keep only the newest backups")
    actions.add_argument("--test-connections", action="store_true", help="probe configured network locations")
    actions.add_argument("--set-job", metavar="TYPE", choices=sorted(jobs.JOB_MARKERS), help="schedule a boot job")
    actions.add_argument("--remove-job", metavar="TYPE", choices=sorted(jobs.JOB_MARKERS), help="remove a boot job")
    actions.add_argument("--run-jobs", action="store_true", help="run stored boot jobs")
    actions.add_argument("--install-service", action="store_true", help="install and start the route sync service")
    actions.add_argument("--remove-service", action="store_true", help="stop and disable the route sync service")

    parser.add_argument("--network", metavar="ID", help="network location id")
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--auto-concat", type=_bool_arg, default=None)
    parser.add_argument("--yes", action="store_true", help="do not prompt before restoring")
    return parser


def _require_network(parser: argparse.ArgumentParser, args: argparse.Namespace, flag: str) -> str:
    if not args.network:
        parser.error(f"{flag} requires --network")
    return args.network


def _confirm_restore(metadata: Dict[str, Any]) -> bool:
    print(f"Backup {metadata.get('backup_id', '?')} from {metadata.get('timestamp', '?')}")
    for entry in metadata.get("directories", []):
        print(f"  {entry.get('type')}: {entry.get('files')} files")
    answer = input("Restore these components over the live device? (y/N): ")
    return answer.strip().lower() == "y"


def _run_backup(args: argparse.Namespace) -> int:
    if args.network:
        result = perform_automated_backup(args.network)
        print(json.dumps(result.status()))
        return 0
    result = BackupEngine().create_backup("interactive")
    print(f"Backup created: {result.path}")
    return 0


def _run_route_sync(args: argparse.Namespace) -> int:
    summary = TransferEngine().sync_all_routes(
        args.network,
        retention_days=args.retention_days,
        auto_concat=args.auto_concat,
    )
    print(
        f"Route sync: {len(summary.processed)} synced, "
        f"{len(summary.skipped)} skipped, {len(summary.failed)} failed"
    )
    for route, error in summary.failed.items():
        print(f"  {route}: {error}")
    return 0 if summary.ok else 1


def _list_routes() -> int:
    catalog = RouteCatalog()
    for details in catalog.refresh_cache():
        print(
            f"{details.route}  {details.timestamp}  {details.duration}  "
            f"{details.segments} segments  {details.size}"
        )
    stats = catalog.stats()
    print(f"{stats.routes} routes, {stats.segments} segments, {stats.size}")
    return 0


def _restore(args: argparse.Namespace) -> int:
    read_metadata(args.restore_device)
    confirm = None if args.yes else _confirm_restore
    result = BackupEngine().restore_backup(args.restore_device, confirm=confirm)
    if result.cancelled:
        return 1
    if not result.ok:
        print(f"Restore failed at {result.failed}: {result.error}")
        if result.restored:
            print(f"Already restored: {', '.join(result.restored)}")
        if result.not_attempted:
            print(f"Not attempted: {', '.join(result.not_attempted)}")
        return 1
    return 0


def _test_connections() -> int:
    statuses = transports.test_all_connections(NetworkRegistry())
    ok = True
    for location_type, status in statuses.items():
        label = TYPE_LABELS.get(location_type, location_type)
        if status is None:
            print(f"{label}: not configured")
            continue
        print(f"{label}: {status}")
        ok = ok and status == transports.VALID
    return 0 if ok else 1


def _dispatch(parser: argparse.ArgumentParser, args: argparse.Namespace) -> int:
    if args.backup:
        return _run_backup(args)
    if args.route_sync:
        _require_network(parser, args, "--route-sync")
        return _run_route_sync(args)
    if args.sync_single_route:
        network = _require_network(parser, args, "--sync-single-route")
        result = TransferEngine().sync_single_route(args.sync_single_route, network)
        if not result.ok:
            print(f"Sync failed: {result.error}")
            return 1
        print(f"Synced {result.route} to {result.destination}")
        return 0
    if args.list_routes:
        return _list_routes()
    if args.cleanup_routes is not None:
        removed = RouteCatalog().cleanup_route_files(args.cleanup_routes)
        print(f"Removed {len(removed)} route files")
        return 0
    if args.transfer_backup:
        network = _require_network(parser, args, "--transfer-backup")
        remote = TransferEngine().transfer_backup(args.transfer_backup, network)
        print(f"Backup transferred to {remote}")
        return 0
    if args.fetch_backup:
        network = _require_network(parser, args, "--fetch-backup")
        dest = TransferEngine().fetch_backup(args.fetch_backup, network)
        print(f"Backup fetched to {dest}")
        return 0
    if args.restore_device:
        return _restore(args)
    if args.prune_backups:
        summary = BackupEngine().cleanup_old_backups()
        print(f"Removed {len(summary.removed)} backups, kept {len(summary.kept)}")
        return 0
    if args.test_connections:
        return _test_connections()
    if args.set_job:
        network = _require_network(parser, args, "--set-job")
        jobs.JobScheduler().set_job(args.set_job, network)
        return 0
    if args.remove_job:
        jobs.JobScheduler().remove_job(args.remove_job)
        return 0
    if args.run_jobs:
        results = jobs.run_jobs()
        return 0 if all(code == 0 for code in results.values()) else 1
    if args.install_service:
        service.enable_service(args.network)
        return 0
    if args.remove_service:
        service.disable_service()
        return 0
    parser.error("no action given")
    return 1


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    try:
        return _dispatch(parser, args)
    except CommaUtilError as exc:
        log.error("%s", exc)
        print(f"[commautil] ERROR: {exc}", file=sys.stderr, flush=True)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
