#!/usr/bin/env python3
"""
Unified configuration loader for commautil.

Load order (first found wins):
  1) COMMAUTIL_CONFIG (env, absolute or relative to CWD)
  2) /data/commautil/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, MutableMapping

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

from .errors import ConfigPersistenceError

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.preserve_quotes = True

ROUTE_SYNC_LIMITS: Dict[str, tuple[int, int]] = {
    "startup_delay": (0, 3600),
    "retention_days": (1, 90),
}

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "config_dir": "/data/commautil",
        # Empty entries are derived from config_dir by path_setting().
        "credentials_dir": "",
        "transfer_state_dir": "",
        "jobs_dir": "",
        "network_config": "",
        "routes_dir": "/data/media/0/realdata",
        "concat_dir": "/data/tmp/concat_tmp",
        "transfer_tmp_dir": "/tmp/route_transfer",
        "network_restore_dir": "/tmp/network_restore",
        "backup_dir": "/data/device_backup",
        "launch_env": "/data/openpilot/launch_env.sh",
        "systemd_dir": "/etc/systemd/system",
        "params_dir": "/data/params/d",
        "secret_file": "/data/params/d/GithubSshKeys",
        "version_file": "/VERSION",
    },
    "backup": {
        "max_count": 5,
        "owner": "comma:comma",
        "sources": {
            "ssh": "/home/comma/.ssh",
            "persist": "/persist/comma",
            "params": "/data/params/d",
            "commautil": "/data/commautil",
        },
        "ssh_persist_dir": "/usr/default/home/comma/.ssh",
    },
    "route_sync": {
        "enabled": False,
        "startup_delay": 60,
        "retention_days": 30,
        "auto_concat": True,
    },
    "routes": {
        "segment_seconds": 60,
        "cache_ttl_seconds": 300,
        "storage_limit_gb": 50,
        "storage_cleanup_days": 30,
    },
    "transfer": {
        "log_retention_days": 30,
    },
    "timeouts": {
        "ssh_connect": 5,
        "probe": 60,
        "command": 300,
    },
    "jobs": {
        "command": "/data/commautil/bin/commautil",
    },
    "service": {
        "name": "comma-route-sync.service",
        "user": "comma",
        "pythonpath": "/data/openpilot",
        "remount_root": True,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
        "log_file": "",
    },
}

_DERIVED_PATHS: Dict[str, str] = {
    "credentials_dir": "credentials",
    "transfer_state_dir": "transfer_state",
    "jobs_dir": "jobs",
    "network_config": "network_locations.json",
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None
_primary_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARNING: ignoring unreadable {path}: {exc}", flush=True)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("COMMAUTIL_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().absolute())
    search.extend(
        [
            Path("/data/commautil/config.yaml"),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        if candidate in seen:
            continue
        seen.add(candidate)
        ordered.append(candidate)
    return ordered


def _resolve_primary_path(search: list[Path], active: Path | None) -> Path:
    env_cfg = os.getenv("COMMAUTIL_CONFIG")
    if env_cfg:
        return Path(env_cfg).expanduser().absolute()
    if active is not None:
        return active
    return search[0]


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "COMMAUTIL_LOG_LEVEL" in os.environ:
        value = os.environ["COMMAUTIL_LOG_LEVEL"].strip().upper()
        if value:
            cfg.setdefault("logging", {})["level"] = value
    # Paths
    path_env = {
        "COMMAUTIL_CONFIG_DIR": "config_dir",
        "ROUTES_DIR": "routes_dir",
        "BACKUP_DIR": "backup_dir",
        "LAUNCH_ENV_FILE": "launch_env",
    }
    for env_key, key in path_env.items():
        value = os.environ.get(env_key, "").strip()
        if value:
            cfg.setdefault("paths", {})[key] = value

    # Values the systemd unit exports for the sync service.
    sync_env = {
        "ROUTE_SYNC_RETENTION_DAYS": ("retention_days", int),
        "ROUTE_SYNC_STARTUP_DELAY": ("startup_delay", int),
        "ROUTE_SYNC_AUTO_CONCAT": ("auto_concat", _parse_bool),
        "ROUTE_SYNC_LOCATION_ID": ("location_id", str),
    }
    for env_key, (key, caster) in sync_env.items():
        if env_key in os.environ:
            try:
                cfg.setdefault("route_sync", {})[key] = caster(os.environ[env_key])
            except ValueError:
                print(f"[config] WARNING: ignoring invalid {env_key}", flush=True)


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path, _primary_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # commautil/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _primary_config_path = _resolve_primary_path(search, active)

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def primary_config_path() -> Path:
    if _primary_config_path is None:
        get_cfg()
    assert _primary_config_path is not None
    return _primary_config_path


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def path_setting(key: str, cfg: Dict[str, Any] | None = None) -> Path:
    """Return a configured path, deriving state locations from ``config_dir``."""

    cfg = cfg if cfg is not None else get_cfg()
    paths_cfg = cfg.get("paths", {})
    raw = str(paths_cfg.get(key) or "").strip()
    if raw:
        return Path(raw)
    if key in _DERIVED_PATHS:
        return Path(str(paths_cfg.get("config_dir", "."))) / _DERIVED_PATHS[key]
    raise KeyError(f"unknown path setting: {key}")


def route_sync_settings(cfg: Dict[str, Any] | None = None) -> Dict[str, Any]:
    cfg = cfg if cfg is not None else get_cfg()
    merged = dict(_DEFAULTS["route_sync"])
    merged.update(cfg.get("route_sync", {}) or {})
    return merged


def validate_route_sync_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise a route_sync payload, raising ``ValueError`` on out-of-range values."""

    if not isinstance(settings, dict):
        raise ValueError("route_sync settings payload must be a mapping")
    normalized: Dict[str, Any] = {}
    for key, value in settings.items():
        if key in ROUTE_SYNC_LIMITS:
            try:
                number = int(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{key} must be an integer") from exc
            low, high = ROUTE_SYNC_LIMITS[key]
            if not low <= number <= high:
                raise ValueError(f"{key} must be between {low} and {high}")
            normalized[key] = number
        elif key in {"enabled", "auto_concat"}:
            normalized[key] = _parse_bool(value)
        elif key == "location_id":
            normalized[key] = str(value)
        else:
            raise ValueError(f"unknown route_sync setting: {key}")
    return normalized


def _load_yaml_for_update(path: Path) -> MutableMapping[str, Any]:
    if not path.exists():
        return CommentedMap()
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = _ROUND_TRIP_YAML.load(handle)
    except Exception as exc:
        raise ConfigPersistenceError(f"Unable to read configuration: {exc}") from exc
    if data is None:
        return CommentedMap()
    if not isinstance(data, MutableMapping):
        raise ConfigPersistenceError("Configuration root must be a mapping")
    return data


def _dump_yaml(path: Path, payload: MutableMapping[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to create configuration directory: {exc}") from exc
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            _ROUND_TRIP_YAML.dump(payload, handle)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to write configuration: {exc}") from exc


def _persist_settings_section(section: str, settings: Dict[str, Any]) -> Dict[str, Any]:
    primary_path = primary_config_path()
    updated = _load_yaml_for_update(primary_path)

    target = updated.get(section)
    if not isinstance(target, MutableMapping):
        target = CommentedMap()
        updated[section] = target
    for key, value in settings.items():
        target[key] = value

    _dump_yaml(primary_path, updated)
    return reload_cfg().get(section, {})


def update_route_sync_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    try:
        normalized = validate_route_sync_settings(settings)
    except ValueError as exc:
        raise ConfigPersistenceError(str(exc)) from exc
    return _persist_settings_section("route_sync", normalized)
