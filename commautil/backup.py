"""Device backups: per-component tar bundles with JSON metadata.

A bundle is a directory ``<device_id>_<YYYYmmdd_HHMMSS>`` holding one
``<component>/backup.tar.gz`` per source directory plus ``metadata.json``.
Retention is applied only when :func:`cleanup_old_backups` is called; creating
a backup never prunes older bundles on its own.
"""
from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List

from . import __version__, device
from .config import get_cfg, path_setting
from .errors import BackupError, RestoreError, ServiceError
from .route_catalog import directory_size, format_size
from .service import remount_root
from .transfer import TransferEngine

METADATA_FILE = "metadata.json"
ARCHIVE_NAME = "backup.tar.gz"
MAX_BACKUP_COUNT = 5
COMPONENTS: tuple[str, ...] = ("ssh", "persist", "params", "commautil")
BACKUP_MODES: tuple[str, ...] = ("interactive", "silent")

_SSH_KEY_MODES = {"github": 0o600, "github.pub": 0o644, "config": 0o644}


@dataclass
class ComponentStats:
    type: str
    files: int
    size: int


@dataclass
class BackupResult:
    backup_id: str
    path: Path
    metadata: Dict[str, Any]
    components: List[ComponentStats] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def status(self) -> Dict[str, str]:
        return {"status": "success", "backup_path": str(self.path)}


@dataclass
class RetentionSummary:
    removed: List[str]
    kept: List[str]


@dataclass
class RestoreResult:
    bundle: Path
    restored: List[str] = field(default_factory=list)
    failed: str | None = None
    error: str = ""
    not_attempted: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.failed is None

    @property
    def partial(self) -> bool:
        return self.failed is not None and bool(self.restored)


def _backup_sources(cfg: Dict[str, Any] | None = None) -> Dict[str, Path]:
    cfg = cfg or get_cfg()
    raw = cfg.get("backup", {}).get("sources", {}) or {}
    return {name: Path(str(raw[name])) for name in COMPONENTS if raw.get(name)}


def _count_files(path: Path) -> int:
    return sum(len(files) for _root, _dirs, files in os.walk(path))


class BackupEngine:
    def __init__(
        self,
        backup_dir: Path | None = None,
        *,
        sources: Dict[str, Path] | None = None,
        max_count: int | None = None,
        device_id: str | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        cfg = get_cfg()
        backup_cfg = cfg.get("backup", {})
        self.backup_dir = Path(backup_dir) if backup_dir is not None else path_setting("backup_dir", cfg)
        self.sources = dict(sources) if sources is not None else _backup_sources(cfg)
        self.max_count = int(max_count if max_count is not None else backup_cfg.get("max_count", MAX_BACKUP_COUNT))
        self.owner = str(backup_cfg.get("owner", "") or "")
        self.ssh_persist_dir = str(backup_cfg.get("ssh_persist_dir", "") or "")
        self._device_id = device_id
        self._clock = clock

    @property
    def device_id(self) -> str:
        if self._device_id is None:
            self._device_id = device.get_device_id()
        return self._device_id

    def _archive_filter(self, info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        # The commautil state dir may contain the backup root itself.
        if self.backup_dir.name and f"/{self.backup_dir.name}/" in f"/{info.name}/":
            return None
        return info

    def _archive_component(self, name: str, source: Path, bundle: Path) -> ComponentStats:
        target_dir = bundle / name
        target_dir.mkdir(parents=True, exist_ok=True)
        archive = target_dir / ARCHIVE_NAME
        try:
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(source, arcname=source.name, filter=self._archive_filter)
        except (tarfile.TarError, OSError) as exc:
            raise BackupError(f"Failed to archive {name} from {source}: {exc}") from exc
        return ComponentStats(type=name, files=_count_files(source), size=directory_size(source))

    def create_backup(self, mode: str = "interactive") -> BackupResult:
        if mode not in BACKUP_MODES:
            raise BackupError(f"Invalid backup mode: {mode}")
        verbose = mode == "interactive"

        stamp = self._clock()
        backup_id = f"{self.device_id}_{stamp.strftime('%Y%m%d_%H%M%S')}"
        bundle = self.backup_dir / backup_id
        try:
            bundle.mkdir(parents=True, exist_ok=False)
        except FileExistsError as exc:
            raise BackupError(f"Backup {backup_id} already exists") from exc
        except OSError as exc:
            raise BackupError(f"Unable to create backup directory {bundle}: {exc}") from exc

        result = BackupResult(backup_id=backup_id, path=bundle, metadata={})
        try:
            for name in COMPONENTS:
                source = self.sources.get(name)
                if source is None or not source.is_dir():
                    if verbose:
                        print(f"[backup] skipping {name}: {source} not found", flush=True)
                    result.skipped.append(name)
                    continue
                if verbose:
                    print(f"[backup] archiving {name} from {source}", flush=True)
                result.components.append(self._archive_component(name, source, bundle))

            metadata = {
                "backup_id": backup_id,
                "device_id": self.device_id,
                "timestamp": stamp.astimezone().isoformat(timespec="seconds"),
                "script_version": __version__,
                "agnos_version": device.get_agnos_version(),
                "directories": [
                    {"type": stats.type, "files": stats.files, "size": stats.size}
                    for stats in result.components
                ],
                "total_size": format_size(directory_size(bundle)),
            }
            (bundle / METADATA_FILE).write_text(json.dumps(metadata, indent=4) + "\n", encoding="utf-8")
        except (BackupError, OSError) as exc:
            shutil.rmtree(bundle, ignore_errors=True)
            if isinstance(exc, BackupError):
                raise
            raise BackupError(f"Failed to write backup metadata: {exc}") from exc

        result.metadata = metadata
        if verbose:
            print(f"[backup] backup completed: {bundle} ({metadata['total_size']})", flush=True)
        return result

    def list_backups(self) -> List[Path]:
        """Bundle directories, newest first by mtime."""

        if not self.backup_dir.is_dir():
            return []
        bundles = [child for child in self.backup_dir.iterdir() if child.is_dir()]
        bundles.sort(key=lambda path: (path.stat().st_mtime, path.name), reverse=True)
        return bundles

    def latest_backup(self) -> Path | None:
        for bundle in self.list_backups():
            if (bundle / METADATA_FILE).is_file():
                return bundle
        return None

    def status(self) -> Dict[str, Any]:
        latest = self.latest_backup()
        metadata = read_metadata(latest) if latest else None
        total = directory_size(self.backup_dir) if self.backup_dir.is_dir() else 0
        return {
            "latest": str(latest) if latest else None,
            "timestamp": metadata.get("timestamp") if metadata else None,
            "count": len(self.list_backups()),
            "max_count": self.max_count,
            "total_size": format_size(total),
        }

    def cleanup_old_backups(self, keep_count: int | None = None) -> RetentionSummary:
        keep_count = self.max_count if keep_count is None else keep_count
        bundles = self.list_backups()
        kept = bundles[: max(keep_count, 0)]
        removed = []
        for bundle in bundles[len(kept):]:
            print(f"[backup] removing old backup: {bundle.name}", flush=True)
            shutil.rmtree(bundle)
            removed.append(bundle.name)
        return RetentionSummary(removed=removed, kept=[bundle.name for bundle in kept])

    def _chown(self, path: Path) -> None:
        if not self.owner:
            return
        try:
            subprocess.run(["chown", "-R", self.owner, str(path)], check=True, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise RestoreError("chown not available") from exc
        except subprocess.CalledProcessError as exc:
            raise RestoreError(f"chown failed for {path}: {(exc.stderr or '').strip()}") from exc

    def _fix_ssh_permissions(self, ssh_dir: Path) -> None:
        for name, mode in _SSH_KEY_MODES.items():
            target = ssh_dir / name
            if target.exists():
                os.chmod(target, mode)
        if self.ssh_persist_dir:
            persist = Path(self.ssh_persist_dir)
            persist.mkdir(parents=True, exist_ok=True)
            for path in ssh_dir.iterdir():
                if path.name == "config" or path.name.startswith("github"):
                    shutil.copy2(path, persist / path.name)
            os.chmod(persist, 0o700)
        restart_ssh_agent(ssh_dir / "github")

    def restore_backup(
        self,
        bundle: Path,
        *,
        confirm: Callable[[Dict[str, Any]], bool] | None = None,
    ) -> RestoreResult:
        """Extract each component over its live path, stopping at the first failure.

        Components restored before a failure stay restored.
        """

        bundle = Path(bundle)
        metadata = read_metadata(bundle)
        result = RestoreResult(bundle=bundle)
        if confirm is not None and not confirm(metadata):
            result.cancelled = True
            print("[backup] restore cancelled", flush=True)
            return result

        pending = [name for name in COMPONENTS if (bundle / name / ARCHIVE_NAME).is_file()]
        try:
            remount_root("rw")
        except ServiceError as exc:
            raise RestoreError(f"Unable to remount / read-write: {exc}") from exc
        try:
            self._restore_components(bundle, pending, result)
        finally:
            try:
                remount_root("ro")
            except ServiceError as exc:
                print(f"[backup] WARN: unable to remount / read-only: {exc}", flush=True)
        if result.failed is not None:
            return result

        print(f"[backup] restore completed ({', '.join(result.restored) or 'nothing restored'})", flush=True)
        return result

    def _restore_components(self, bundle: Path, pending: List[str], result: RestoreResult) -> None:
        for index, name in enumerate(pending):
            live_path = self.sources.get(name)
            if live_path is None:
                result.not_attempted.append(name)
                continue
            print(f"[backup] restoring {name} to {live_path}", flush=True)
            try:
                live_path.parent.mkdir(parents=True, exist_ok=True)
                with tarfile.open(bundle / name / ARCHIVE_NAME, "r:gz") as tar:
                    tar.extractall(live_path.parent, filter="tar")
                self._chown(live_path)
                if name == "ssh":
                    self._fix_ssh_permissions(live_path)
            except (tarfile.TarError, OSError, RestoreError) as exc:
                result.failed = name
                result.error = str(exc)
                result.not_attempted.extend(pending[index + 1:])
                print(f"[backup] ERROR: restore of {name} failed: {exc}", flush=True)
                return
            result.restored.append(name)


def read_metadata(bundle: Path) -> Dict[str, Any]:
    path = Path(bundle) / METADATA_FILE
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise BackupError(f"Invalid backup: {path} not found") from exc
    except (OSError, ValueError) as exc:
        raise BackupError(f"Unreadable backup metadata {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise BackupError(f"Backup metadata {path} is not an object")
    return payload


_AGENT_VAR = re.compile(r"(SSH_AUTH_SOCK|SSH_AGENT_PID)=([^;]+);")


def restart_ssh_agent(key_path: Path) -> Dict[str, str]:
    """Replace any running ssh-agent and load ``key_path`` into the new one."""

    subprocess.run(["pkill", "-f", "ssh-agent"], check=False, capture_output=True)
    try:
        started = subprocess.run(["ssh-agent", "-s"], check=True, capture_output=True, text=True)
    except (FileNotFoundError, subprocess.CalledProcessError) as exc:
        print(f"[backup] WARN: unable to start ssh-agent: {exc}", flush=True)
        return {}
    agent_env = dict(_AGENT_VAR.findall(started.stdout or ""))
    if not key_path.exists():
        print("[backup] WARN: ssh agent restarted but no key found to add", flush=True)
        return agent_env
    env = dict(os.environ)
    env.update(agent_env)
    try:
        subprocess.run(["ssh-add", str(key_path)], check=True, capture_output=True, text=True, env=env)
    except (FileNotFoundError, subprocess.CalledProcessError) as exc:
        print(f"[backup] WARN: ssh-add failed: {exc}", flush=True)
    return agent_env


def perform_automated_backup(
    network_id: str,
    *,
    engine: BackupEngine | None = None,
    transfer_engine: TransferEngine | None = None,
) -> BackupResult:
    """Create a silent backup and push it to ``network_id``; raises on any failure."""

    if not network_id:
        raise BackupError("Missing network ID for automated backup")
    if device.is_onroad():
        raise BackupError("Cannot perform backup while device is onroad")
    transfer_engine = transfer_engine or TransferEngine()
    transfer_engine.registry.verify()
    transfer_engine.registry.get(network_id)

    engine = engine or BackupEngine()
    result = engine.create_backup("silent")
    transfer_engine.transfer_backup(result.path, network_id)
    return result
