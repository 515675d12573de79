"""Concatenate routes and push them, or device backups, to network locations.

A route transfer runs ``idle -> concatenating -> uploading -> done|failed``.
When a stale :class:`TransferState` is found the operator may resume, which
re-runs the whole pipeline; the stored progress checkpoint is informational
and never used to skip stages.
"""
from __future__ import annotations

import logging
import shutil
import tarfile
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

from . import device
from .concat import CAMERA_FILES, concatenate
from .config import get_cfg, path_setting, route_sync_settings
from .errors import CommaUtilError, TransferError
from .json_store import JsonStore
from .network_registry import NetworkLocation, NetworkRegistry
from .route_catalog import RouteCatalog, format_size
from .transports import Transport, transport_for, verify_network_connectivity

LOG = logging.getLogger("commautil.transfer")
SYNC_LOG = logging.getLogger("commautil.route_sync")

PHASE_IDLE = "idle"
PHASE_RESUMING = "resuming"
PHASE_CONCATENATING = "concatenating"
PHASE_UPLOADING = "uploading"
PHASE_DONE = "done"
PHASE_FAILED = "failed"

ARTIFACT_NAMES: tuple[str, ...] = ("rlog", "qlog", *CAMERA_FILES)
_CONCAT_CHECKPOINTS: tuple[tuple[str, int], ...] = (("rlog", 25), ("qlog", 50), ("video", 75))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TransferState:
    route: str
    network_id: str
    progress: int
    timestamp: str

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TransferState":
        return cls(
            route=str(payload.get("route", "")),
            network_id=str(payload.get("network_id", "")),
            progress=int(payload.get("progress", 0)),
            timestamp=str(payload.get("timestamp", "")),
        )


class TransferStateStore:
    """One ``transfer_<route>.json`` document per in-flight route transfer."""

    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = Path(state_dir) if state_dir is not None else path_setting("config_dir") / "state"

    def _store(self, route: str) -> JsonStore:
        return JsonStore(self.state_dir / f"transfer_{route}.json", default=None)

    def save(self, route: str, network_id: str, progress: int) -> TransferState:
        state = TransferState(route=route, network_id=network_id, progress=progress, timestamp=_now_iso())
        self._store(route).save(asdict(state))
        return state

    def load(self, route: str) -> TransferState | None:
        payload = self._store(route).load()
        if not isinstance(payload, dict):
            return None
        return TransferState.from_dict(payload)

    def clear(self, route: str) -> None:
        self._store(route).delete()

    def list(self) -> List[TransferState]:
        states = []
        for path in sorted(self.state_dir.glob("transfer_*.json")):
            payload = JsonStore(path).load()
            if isinstance(payload, dict):
                states.append(TransferState.from_dict(payload))
        return states


class TransferLog:
    """Append-only JSON array of completed transfers."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path is not None else path_setting("config_dir") / "transfer_logs.json"
        self._store = JsonStore(self.path, default=[])

    def append(self, route: str, status: str, destination: str, size: str, duration: int) -> Dict[str, Any]:
        entry = {
            "timestamp": _now_iso(),
            "route": route,
            "status": status,
            "destination": destination,
            "size": size,
            "duration": duration,
        }

        def _mutate(payload: Any) -> List[Dict[str, Any]]:
            entries = payload if isinstance(payload, list) else []
            entries.append(entry)
            return entries

        self._store.update(_mutate)
        return entry

    def entries(self, route: str | None = None) -> List[Dict[str, Any]]:
        payload = self._store.load()
        if not isinstance(payload, list):
            return []
        if route is None:
            return payload
        return [entry for entry in payload if isinstance(entry, dict) and entry.get("route") == route]

    def prune_old_log(self, days: float | None = None, *, now: float | None = None) -> bool:
        """Delete the whole log file once it has not been written for ``days`` days."""

        if days is None:
            days = float(get_cfg().get("transfer", {}).get("log_retention_days", 30))
        now = time.time() if now is None else now
        try:
            age = now - self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        if age <= days * 86400:
            return False
        return self._store.delete()


class RouteSyncStatus:
    """Last successful sync time per route."""

    def __init__(self, path: Path | None = None) -> None:
        if path is None:
            path = path_setting("transfer_state_dir") / "route_sync_status.json"
        self.path = Path(path)
        self._store = JsonStore(self.path, default={})

    def last_sync(self, route: str) -> datetime | None:
        payload = self._store.load()
        if not isinstance(payload, dict):
            return None
        entry = payload.get(route)
        if not isinstance(entry, dict):
            return None
        return _parse_iso(str(entry.get("last_sync", "")))

    def record(self, route: str, when: datetime | None = None) -> None:
        stamp = (when or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")

        def _mutate(payload: Any) -> Dict[str, Any]:
            status = payload if isinstance(payload, dict) else {}
            status[route] = {"last_sync": stamp}
            return status

        self._store.update(_mutate)

    def days_since_sync(self, route: str, *, now: datetime | None = None) -> int | None:
        last = self.last_sync(route)
        if last is None:
            return None
        now = now or datetime.now(timezone.utc)
        return int((now - last).total_seconds() // 86400)

    def recently_synced(self, route: str, retention_days: int, *, now: datetime | None = None) -> bool:
        days = self.days_since_sync(route, now=now)
        return days is not None and days < retention_days


@dataclass
class TransferResult:
    route: str
    ok: bool
    phase: str
    destination: str = ""
    files: List[Path] = field(default_factory=list)
    size_bytes: int = 0
    duration: int = 0
    error: str = ""
    resumed: bool = False
    retention_cleaned: bool = False
    retention_error: str = ""


@dataclass
class SyncSummary:
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


ResumePolicy = Callable[[TransferState], bool]


class TransferEngine:
    def __init__(
        self,
        *,
        catalog: RouteCatalog | None = None,
        registry: NetworkRegistry | None = None,
        states: TransferStateStore | None = None,
        transfer_log: TransferLog | None = None,
        sync_status: RouteSyncStatus | None = None,
        temp_dir: Path | None = None,
        device_id: str | None = None,
        transport_factory: Callable[[NetworkLocation], Transport] = transport_for,
    ) -> None:
        self.catalog = catalog or RouteCatalog()
        self.registry = registry or NetworkRegistry()
        self.states = states or TransferStateStore()
        self.transfer_log = transfer_log or TransferLog()
        self.sync_status = sync_status or RouteSyncStatus()
        self.temp_dir = Path(temp_dir) if temp_dir is not None else path_setting("transfer_tmp_dir")
        self._device_id = device_id
        self.transport_factory = transport_factory

    @property
    def device_id(self) -> str:
        if self._device_id is None:
            self._device_id = device.get_device_id()
        return self._device_id

    def output_dir_for(self, route_id: str) -> Path:
        return self.catalog.routes_dir / "concatenated" / route_id

    def remote_route_path(self, location: NetworkLocation, route_id: str) -> str:
        return f"{location.path.rstrip('/')}/{self.device_id}/{route_id}"

    def remote_backup_path(self, location: NetworkLocation) -> str:
        return f"{location.path.rstrip('/')}/{self.device_id}/backups"

    def _cleanup(self, route_id: str, output_dir: Path) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)
        shutil.rmtree(output_dir, ignore_errors=True)
        self.states.clear(route_id)

    def _upload_segments(self, transport: Transport, segments: List[Path], remote: str) -> List[Path]:
        sent: List[Path] = []
        for segment in segments:
            files = sorted(path for path in segment.iterdir() if path.is_file())
            if not files:
                continue
            target = f"{remote}/{segment.name}"
            transport.mkdir(target)
            transport.upload(files, target)
            sent.extend(files)
        return sent

    def transfer_route(
        self,
        route_id: str,
        location: NetworkLocation,
        *,
        resume: ResumePolicy | bool = False,
        auto_concat: bool = True,
        retention_days: int | None = None,
    ) -> TransferResult:
        """Push one route to ``location``; failures are returned, not raised."""

        output_dir = self.output_dir_for(route_id)
        result = TransferResult(route=route_id, ok=False, phase=PHASE_IDLE)

        previous = self.states.load(route_id)
        if previous is not None:
            print(f"[transfer] found previous transfer state for {route_id} ({previous.progress}%)", flush=True)
            wants_resume = resume(previous) if callable(resume) else bool(resume)
            if wants_resume:
                result.phase = PHASE_RESUMING
                result.resumed = True
                print("[transfer] resuming transfer (restarting pipeline)", flush=True)
            else:
                self.states.clear(route_id)

        start = time.monotonic()
        try:
            segments = self.catalog.segments(route_id)
            if not segments:
                raise TransferError(f"No route segments found for route {route_id}.")

            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            output_dir.mkdir(parents=True, exist_ok=True)
            self.states.save(route_id, location.location_id, 0)

            files: List[Path] = []
            if auto_concat:
                result.phase = PHASE_CONCATENATING
                print(f"[transfer] concatenating segments for route {route_id}", flush=True)
                for kind, checkpoint in _CONCAT_CHECKPOINTS:
                    concatenate(
                        route_id,
                        kind,
                        output_dir,
                        catalog=self.catalog,
                        work_dir=self.temp_dir,
                    )
                    self.states.save(route_id, location.location_id, checkpoint)
                files = [output_dir / name for name in ARTIFACT_NAMES if (output_dir / name).is_file()]

            remote_path = self.remote_route_path(location, route_id)
            result.destination = remote_path
            result.phase = PHASE_UPLOADING
            transport = self.transport_factory(location)
            print(
                f"[transfer] syncing route {route_id} via {location.protocol.upper()} to {remote_path}",
                flush=True,
            )
            transport.mkdir(remote_path)
            if auto_concat:
                transport.upload(files, remote_path)
            else:
                files = self._upload_segments(transport, segments, remote_path)
        except (CommaUtilError, OSError) as exc:
            print(f"[transfer] ERROR: {route_id} failed while {result.phase}: {exc}", flush=True)
            LOG.error("transfer of %s failed while %s: %s", route_id, result.phase, exc)
            result.error = str(exc)
            result.phase = PHASE_FAILED
            self._cleanup(route_id, output_dir)
            return result

        result.files = files
        result.size_bytes = sum(path.stat().st_size for path in files if path.exists())
        result.duration = int(time.monotonic() - start)
        self.transfer_log.append(
            route_id,
            "success",
            result.destination,
            format_size(result.size_bytes),
            result.duration,
        )
        self._cleanup(route_id, output_dir)

        days_since = self.sync_status.days_since_sync(route_id)
        self.sync_status.record(route_id)
        if retention_days and days_since is not None and days_since > retention_days:
            try:
                removed = self.catalog.remove_route(route_id)
            except (CommaUtilError, OSError) as exc:
                result.retention_error = str(exc)
                print(f"[transfer] WARN: retention cleanup of {route_id} failed: {exc}", flush=True)
                LOG.warning("retention cleanup of %s failed: %s", route_id, exc)
            else:
                result.retention_cleaned = True
                SYNC_LOG.info("removed %d segments of %s after retention of %d days", removed, route_id, retention_days)

        result.ok = True
        result.phase = PHASE_DONE
        print(f"[transfer] sync complete for route {route_id}", flush=True)
        return result

    def sync_single_route(self, route_id: str, location_id: str) -> TransferResult:
        location = self.registry.get(location_id)
        settings = route_sync_settings()
        return self.transfer_route(
            route_id,
            location,
            auto_concat=bool(settings.get("auto_concat", True)),
            retention_days=int(settings.get("retention_days", 30)),
        )

    def sync_all_routes(
        self,
        location_id: str,
        *,
        retention_days: int | None = None,
        auto_concat: bool | None = None,
    ) -> SyncSummary:
        """Unattended sync of every route not synced within the retention window."""

        if device.is_onroad():
            raise TransferError("Cannot sync routes while onroad.")
        settings = route_sync_settings()
        if retention_days is None:
            retention_days = int(settings.get("retention_days", 30))
        if auto_concat is None:
            auto_concat = bool(settings.get("auto_concat", True))

        location = self.registry.get(location_id)
        try:
            verify_network_connectivity(location)
        except CommaUtilError as exc:
            raise TransferError(f"Route sync location not reachable: {exc}") from exc

        self.transfer_log.prune_old_log()
        SYNC_LOG.info("starting route sync to %s (%s)", location.label, location.location_id)

        summary = SyncSummary()
        for route_id in self.catalog.list_routes():
            if self.sync_status.recently_synced(route_id, retention_days):
                SYNC_LOG.info("route %s already synced recently, skipping", route_id)
                summary.skipped.append(route_id)
                continue
            result = self.transfer_route(
                route_id,
                location,
                resume=False,
                auto_concat=auto_concat,
                retention_days=retention_days,
            )
            if result.ok:
                summary.processed.append(route_id)
                SYNC_LOG.info("synced %s to %s", route_id, result.destination)
            else:
                summary.failed[route_id] = result.error
                SYNC_LOG.error("failed to sync %s: %s", route_id, result.error)

        SYNC_LOG.info(
            "route sync completed: %d processed, %d skipped, %d failed",
            len(summary.processed),
            len(summary.skipped),
            len(summary.failed),
        )
        return summary

    def transfer_backup(self, bundle_dir: Path, location_id: str) -> str:
        """Push ``bundle_dir`` to ``<path>/<device_id>/backups``; returns the remote path."""

        bundle_dir = Path(bundle_dir)
        if not bundle_dir.is_dir():
            raise TransferError(f"Backup directory not found: {bundle_dir}")
        location = self.registry.get(location_id)
        verify_network_connectivity(location)
        remote_path = self.remote_backup_path(location)
        print(f"[transfer] transferring backup to {location.protocol.upper()} location {remote_path}", flush=True)
        transport = self.transport_factory(location)
        transport.upload_backup(bundle_dir, remote_path)
        print("[transfer] backup transfer completed", flush=True)
        return remote_path

    def fetch_backup(self, dest_dir: Path, location_id: str) -> Path:
        """Pull the remote backup into ``dest_dir`` and unpack it there."""

        dest_dir = Path(dest_dir)
        location = self.registry.get(location_id)
        remote_path = self.remote_backup_path(location)
        print(f"[transfer] fetching backup from {location.protocol.upper()} location {remote_path}", flush=True)
        transport = self.transport_factory(location)
        transport.download_backup(remote_path, dest_dir)

        archive = dest_dir / "backup.tar.gz"
        if archive.exists():
            try:
                with tarfile.open(archive, "r:gz") as tar:
                    tar.extractall(dest_dir, filter="data")
            except (tarfile.TarError, OSError) as exc:
                raise TransferError(f"Failed to unpack fetched backup: {exc}") from exc
            archive.unlink()
        print("[transfer] backup fetched successfully", flush=True)
        return dest_dir
