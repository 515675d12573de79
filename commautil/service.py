"""systemd unit management for the background route sync service."""
from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Any, Dict

from .config import get_cfg, path_setting, route_sync_settings
from .errors import ServiceError
from .network_registry import NetworkRegistry

UNIT_CONFIG_VERSION = 1
_ENV_PREFIX = "Environment="


def _service_cfg() -> Dict[str, Any]:
    return dict(get_cfg().get("service", {}))


def unit_name() -> str:
    return str(_service_cfg().get("name", "comma-route-sync.service"))


def unit_path() -> Path:
    return path_setting("systemd_dir") / unit_name()


def _bool_text(value: Any) -> str:
    return "true" if value in (True, "true", "1", 1) else "false"


def render_unit(location_id: str, settings: Dict[str, Any] | None = None, now: float | None = None) -> str:
    """Return the unit file text for syncing to ``location_id``."""

    settings = settings if settings is not None else route_sync_settings()
    service = _service_cfg()
    command = str(get_cfg().get("jobs", {}).get("command", "commautil"))
    retention = int(settings.get("retention_days", 30))
    auto_concat = _bool_text(settings.get("auto_concat", True))
    delay = int(settings.get("startup_delay", 60))
    stamp = int(now if now is not None else time.time())
    return (
        "[Unit]\n"
        "Description=Comma Route Sync Service\n"
        "After=network-online.target\n"
        "Wants=network-online.target\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"User={service.get('user', 'comma')}\n"
        f"Environment=PYTHONPATH={service.get('pythonpath', '/data/openpilot')}\n"
        f"Environment=ROUTE_SYNC_LOCATION_ID={location_id}\n"
        f"Environment=ROUTE_SYNC_RETENTION_DAYS={retention}\n"
        f"Environment=ROUTE_SYNC_AUTO_CONCAT={auto_concat}\n"
        f"ExecStartPre=/bin/sleep {delay}\n"
        f"ExecStart={command} --route-sync --network {location_id} "
        f"--retention-days {retention} --auto-concat {auto_concat}\n"
        "Restart=on-failure\n"
        "RestartSec=60\n"
        f"Environment=ROUTE_SYNC_CONFIG_VERSION={UNIT_CONFIG_VERSION}\n"
        f"Environment=ROUTE_SYNC_LAST_UPDATE={stamp}\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


def _run(cmd: list[str], *, check: bool = True) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, check=check, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise ServiceError(f"{cmd[0]} not available") from exc
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or exc.stdout or "").strip()
        raise ServiceError(f"{' '.join(cmd)} failed ({exc.returncode}) {detail}".rstrip()) from exc


def _systemctl(*args: str, check: bool = True) -> subprocess.CompletedProcess:
    return _run(["systemctl", *args], check=check)


def remount_root(mode: str) -> None:
    """Remount / as ``rw`` or ``ro``; a no-op when ``service.remount_root`` is off."""

    if not _service_cfg().get("remount_root", True):
        return
    _run(["mount", "-o", f"remount,{mode}", "/"])


def write_unit(location_id: str, settings: Dict[str, Any] | None = None) -> Path:
    path = unit_path()
    text = render_unit(location_id, settings)
    remount_root("rw")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_path, 0o644)
        tmp_path.replace(path)
        _systemctl("daemon-reload")
    except OSError as exc:
        raise ServiceError(f"Unable to write {path}: {exc}") from exc
    finally:
        remount_root("ro")
    print(f"[service] wrote {path}", flush=True)
    return path


def read_unit_config(path: Path | None = None) -> Dict[str, str]:
    """Parse the ``ROUTE_SYNC_*`` environment entries of an installed unit."""

    path = path or unit_path()
    if not path.exists():
        return {}
    values: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.startswith(_ENV_PREFIX):
            continue
        key, _, value = line[len(_ENV_PREFIX):].partition("=")
        if key.startswith("ROUTE_SYNC_"):
            values[key] = value
    return values


def _current_location_id(registry: NetworkRegistry | None) -> str:
    registry = registry or NetworkRegistry()
    location = registry.get_by_type("route_sync")
    return location.location_id if location else ""


def service_needs_update(registry: NetworkRegistry | None = None) -> bool:
    current = read_unit_config()
    if not current.get("ROUTE_SYNC_LOCATION_ID"):
        return True
    settings = route_sync_settings()
    expected = {
        "ROUTE_SYNC_RETENTION_DAYS": str(int(settings.get("retention_days", 30))),
        "ROUTE_SYNC_AUTO_CONCAT": _bool_text(settings.get("auto_concat", True)),
        "ROUTE_SYNC_LOCATION_ID": _current_location_id(registry),
    }
    return any(current.get(key) != value for key, value in expected.items())


def is_active() -> bool:
    return _systemctl("is-active", "--quiet", unit_name(), check=False).returncode == 0


def is_enabled() -> bool:
    return _systemctl("is-enabled", "--quiet", unit_name(), check=False).returncode == 0


def _resolve_location(location_id: str | None, registry: NetworkRegistry | None) -> str:
    location_id = location_id or _current_location_id(registry)
    if not location_id:
        raise ServiceError("No route sync location configured")
    return location_id


def update_service(location_id: str | None = None, *, registry: NetworkRegistry | None = None) -> Path:
    location_id = _resolve_location(location_id, registry)
    if is_active():
        _systemctl("stop", unit_name())
    path = write_unit(location_id)
    if is_enabled():
        _systemctl("start", unit_name())
    return path


def enable_service(location_id: str | None = None, *, registry: NetworkRegistry | None = None) -> None:
    location_id = _resolve_location(location_id, registry)
    if not unit_path().exists() or service_needs_update(registry):
        write_unit(location_id)
    _systemctl("enable", unit_name())
    _systemctl("start", unit_name())
    print(f"[service] {unit_name()} enabled and started", flush=True)


def disable_service() -> None:
    _systemctl("stop", unit_name())
    _systemctl("disable", unit_name())
    print(f"[service] {unit_name()} disabled and stopped", flush=True)
