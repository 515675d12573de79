from __future__ import annotations

import subprocess

import pytest

from commautil import service
from commautil.errors import ServiceError
from commautil.network_registry import NetworkRegistry, build_smb_location


class FakeSystemctl:
    def __init__(self, *, active: bool = False, enabled: bool = False, fail: str | None = None):
        self.active = active
        self.enabled = enabled
        self.fail = fail
        self.calls: list[list[str]] = []

    def __call__(self, cmd, check=False, **kwargs):
        self.calls.append(list(cmd))
        verb = cmd[1] if len(cmd) > 1 else ""
        returncode = 0
        if verb == "is-active":
            returncode = 0 if self.active else 3
        elif verb == "is-enabled":
            returncode = 0 if self.enabled else 1
        elif verb == self.fail:
            returncode = 1
        if check and returncode:
            raise subprocess.CalledProcessError(returncode, cmd, output="", stderr="Access denied")
        return subprocess.CompletedProcess(cmd, returncode, "", "")


def _register_location() -> str:
    location = build_smb_location(
        "route_sync", server="nas", share="drives", username="comma", password="pw", label="NAS"
    )
    NetworkRegistry().upsert(location)
    return location.location_id


def test_render_unit_contains_settings(device_env) -> None:
    text = service.render_unit(
        "loc1", {"retention_days": 14, "auto_concat": False, "startup_delay": 90}, now=1700000000
    )

    assert "Description=Comma Route Sync Service" in text
    assert "User=comma" in text
    assert "Environment=ROUTE_SYNC_LOCATION_ID=loc1" in text
    assert "ExecStartPre=/bin/sleep 90" in text
    assert (
        "ExecStart=/usr/local/bin/commautil --route-sync --network loc1 --retention-days 14 --auto-concat false"
        in text
    )
    assert "Environment=ROUTE_SYNC_LAST_UPDATE=1700000000" in text
    assert text.endswith("WantedBy=multi-user.target\n")


def test_write_and_read_unit_config(device_env, monkeypatch) -> None:
    fake = FakeSystemctl()
    monkeypatch.setattr(service.subprocess, "run", fake)

    path = service.write_unit("loc1")

    assert path == device_env.systemd_dir / "comma-route-sync.service"
    assert path.stat().st_mode & 0o777 == 0o644
    assert ["systemctl", "daemon-reload"] in fake.calls
    config = service.read_unit_config()
    assert config["ROUTE_SYNC_LOCATION_ID"] == "loc1"
    assert config["ROUTE_SYNC_RETENTION_DAYS"] == "30"
    assert config["ROUTE_SYNC_AUTO_CONCAT"] == "true"
    assert config["ROUTE_SYNC_CONFIG_VERSION"] == "1"
    assert "PYTHONPATH" not in config


def test_service_needs_update_tracks_location(device_env, monkeypatch) -> None:
    monkeypatch.setattr(service.subprocess, "run", FakeSystemctl())
    assert service.service_needs_update() is True

    location_id = _register_location()
    service.write_unit(location_id)
    assert service.service_needs_update() is False

    monkeypatch.setattr(service, "route_sync_settings", lambda: {"retention_days": 7, "auto_concat": True})
    assert service.service_needs_update() is True


def test_update_service_restarts_when_enabled(device_env, monkeypatch) -> None:
    fake = FakeSystemctl(active=True, enabled=True)
    monkeypatch.setattr(service.subprocess, "run", fake)
    location_id = _register_location()

    service.update_service()

    verbs = [call[1] for call in fake.calls]
    assert verbs == ["is-active", "stop", "daemon-reload", "is-enabled", "start"]
    assert service.read_unit_config()["ROUTE_SYNC_LOCATION_ID"] == location_id


def test_enable_requires_location(device_env, monkeypatch) -> None:
    monkeypatch.setattr(service.subprocess, "run", FakeSystemctl())

    with pytest.raises(ServiceError, match="No route sync location"):
        service.enable_service()


def test_systemctl_failure_raises(device_env, monkeypatch) -> None:
    monkeypatch.setattr(service.subprocess, "run", FakeSystemctl(fail="stop"))

    with pytest.raises(ServiceError, match="Access denied"):
        service.disable_service()


def test_remount_root_follows_setting(device_env, monkeypatch) -> None:
    fake = FakeSystemctl()
    monkeypatch.setattr(service.subprocess, "run", fake)

    service.remount_root("rw")
    assert fake.calls == []

    monkeypatch.setattr(service, "_service_cfg", lambda: {"remount_root": True})
    service.remount_root("ro")
    assert fake.calls == [["mount", "-o", "remount,ro", "/"]]
