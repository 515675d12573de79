from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from commautil import config as config_module

_OVERRIDE_ENV = (
    "DEV",
    "COMMAUTIL_LOG_LEVEL",
    "COMMAUTIL_CONFIG_DIR",
    "ROUTES_DIR",
    "BACKUP_DIR",
    "LAUNCH_ENV_FILE",
    "ROUTE_SYNC_RETENTION_DAYS",
    "ROUTE_SYNC_STARTUP_DELAY",
    "ROUTE_SYNC_AUTO_CONCAT",
    "ROUTE_SYNC_LOCATION_ID",
)


def reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setattr(config_module, "_primary_config_path", None, raising=False)


@pytest.fixture
def device_env(tmp_path: Path, monkeypatch) -> SimpleNamespace:
    """Point every commautil path into ``tmp_path`` and fake a parked device."""

    env = SimpleNamespace(
        root=tmp_path,
        config_path=tmp_path / "config.yaml",
        config_dir=tmp_path / "commautil",
        routes_dir=tmp_path / "realdata",
        backup_dir=tmp_path / "device_backup",
        params_dir=tmp_path / "params",
        launch_env=tmp_path / "openpilot" / "launch_env.sh",
        systemd_dir=tmp_path / "systemd",
        transfer_tmp_dir=tmp_path / "route_transfer",
        concat_dir=tmp_path / "concat_tmp",
        version_file=tmp_path / "VERSION",
        sources={
            "ssh": tmp_path / "home" / ".ssh",
            "persist": tmp_path / "persist" / "comma",
            "params": tmp_path / "params",
            "commautil": tmp_path / "commautil",
        },
    )
    env.params_dir.mkdir(parents=True)
    (env.params_dir / "HardwareSerial").write_text("abc123\n", encoding="utf-8")
    (env.params_dir / "IsOnroad").write_text("0", encoding="utf-8")
    (env.params_dir / "GithubSshKeys").write_text("ssh-ed25519 AAAAtestkey device\n", encoding="utf-8")
    env.version_file.write_text("11.4\n", encoding="utf-8")

    source_lines = "\n".join(f'    {name}: "{path}"' for name, path in env.sources.items())
    env.config_path.write_text(
        f"""
paths:
  config_dir: "{env.config_dir}"
  routes_dir: "{env.routes_dir}"
  backup_dir: "{env.backup_dir}"
  params_dir: "{env.params_dir}"
  secret_file: "{env.params_dir / 'GithubSshKeys'}"
  launch_env: "{env.launch_env}"
  systemd_dir: "{env.systemd_dir}"
  transfer_tmp_dir: "{env.transfer_tmp_dir}"
  concat_dir: "{env.concat_dir}"
  version_file: "{env.version_file}"
backup:
  owner: ""
  ssh_persist_dir: ""
  sources:
{source_lines}
jobs:
  command: /usr/local/bin/commautil
service:
  remount_root: false
""",
        encoding="utf-8",
    )

    for key in _OVERRIDE_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("COMMAUTIL_CONFIG", str(env.config_path))
    reset_config_state(monkeypatch)
    return env
