"""Device identity and state probes read from the params store."""
from __future__ import annotations

from pathlib import Path

from .config import get_cfg, path_setting

UNKNOWN_DEVICE = "unknown_device"


def _read_param(name: str) -> str:
    path = path_setting("params_dir") / name
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return ""


def get_device_id() -> str:
    return _read_param("HardwareSerial") or UNKNOWN_DEVICE


def is_onroad() -> bool:
    return _read_param("IsOnroad").startswith("1")


def get_agnos_version() -> str:
    version_file = Path(str(get_cfg().get("paths", {}).get("version_file", "/VERSION")))
    try:
        return version_file.read_text(encoding="utf-8").strip()
    except OSError:
        return ""
