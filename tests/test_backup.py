from __future__ import annotations

import json
import os
import subprocess
import tarfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from commautil import backup
from commautil.backup import BackupEngine, perform_automated_backup, read_metadata
from commautil.errors import BackupError, RegistryError, RestoreError, ServiceError


def _populate_sources(device_env) -> None:
    ssh_dir = device_env.sources["ssh"]
    ssh_dir.mkdir(parents=True)
    (ssh_dir / "github").write_text("PRIVATE", encoding="utf-8")
    (ssh_dir / "github.pub").write_text("PUBLIC", encoding="utf-8")
    persist = device_env.sources["persist"]
    persist.mkdir(parents=True)
    (persist / "id_rsa").write_text("persist-key", encoding="utf-8")


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        self.now += timedelta(minutes=1)
        return self.now


def test_create_backup_writes_components_and_metadata(device_env) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock())

    result = engine.create_backup("silent")

    assert result.backup_id == "abc123_20240101_120100"
    assert (result.path / "ssh" / "backup.tar.gz").is_file()
    assert (result.path / "persist" / "backup.tar.gz").is_file()
    # The params fixture directory exists; commautil state dir does not yet.
    assert "commautil" in result.skipped
    metadata = read_metadata(result.path)
    assert metadata["device_id"] == "abc123"
    assert metadata["agnos_version"] == "11.4"
    ssh_entry = next(entry for entry in metadata["directories"] if entry["type"] == "ssh")
    assert ssh_entry["files"] == 2
    assert result.status() == {"status": "success", "backup_path": str(result.path)}
    with tarfile.open(result.path / "ssh" / "backup.tar.gz") as tar:
        assert sorted(tar.getnames()) == [".ssh", ".ssh/github", ".ssh/github.pub"]


def test_invalid_mode_rejected(device_env) -> None:
    with pytest.raises(BackupError, match="Invalid backup mode"):
        BackupEngine().create_backup("loud")


def test_retention_keeps_newest(device_env) -> None:
    engine = BackupEngine()
    device_env.backup_dir.mkdir(parents=True)
    base = 1_700_000_000
    for index in range(7):
        bundle = device_env.backup_dir / f"abc123_{index}"
        bundle.mkdir()
        os.utime(bundle, (base + index, base + index))

    summary = engine.cleanup_old_backups()

    assert sorted(summary.removed) == ["abc123_0", "abc123_1"]
    remaining = sorted(path.name for path in device_env.backup_dir.iterdir())
    assert remaining == [f"abc123_{index}" for index in range(2, 7)]
    assert summary.kept[0] == "abc123_6"


def test_creating_backups_never_prunes(device_env) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock(), max_count=1)

    engine.create_backup("silent")
    engine.create_backup("silent")

    assert len(engine.list_backups()) == 2


def test_restore_round_trip(device_env, monkeypatch) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock())
    bundle = engine.create_backup("silent").path
    (device_env.sources["ssh"] / "github").write_text("CHANGED", encoding="utf-8")
    agent_calls = []
    monkeypatch.setattr(backup, "restart_ssh_agent", lambda key: agent_calls.append(key) or {})

    result = engine.restore_backup(bundle, confirm=lambda metadata: True)

    assert result.ok
    assert "ssh" in result.restored and "persist" in result.restored
    github = device_env.sources["ssh"] / "github"
    assert github.read_text(encoding="utf-8") == "PRIVATE"
    assert oct(github.stat().st_mode & 0o777) == oct(0o600)
    assert agent_calls == [github]


def test_restore_remounts_root_around_extraction(device_env, monkeypatch) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock())
    bundle = engine.create_backup("silent").path
    monkeypatch.setattr(backup, "restart_ssh_agent", lambda key: {})
    modes = []

    def fake_remount(mode):
        modes.append((mode, (device_env.sources["ssh"] / "github").read_text(encoding="utf-8")))

    (device_env.sources["ssh"] / "github").write_text("CHANGED", encoding="utf-8")
    monkeypatch.setattr(backup, "remount_root", fake_remount)

    result = engine.restore_backup(bundle)

    assert result.ok
    assert modes == [("rw", "CHANGED"), ("ro", "PRIVATE")]


def test_restore_remounts_read_only_after_failure(device_env, monkeypatch) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock())
    bundle = engine.create_backup("silent").path
    (bundle / "ssh" / "backup.tar.gz").write_bytes(b"not a tarball")
    modes = []
    monkeypatch.setattr(backup, "remount_root", modes.append)

    result = engine.restore_backup(bundle)

    assert result.failed == "ssh"
    assert modes == ["rw", "ro"]


def test_restore_aborts_when_root_stays_read_only(device_env, monkeypatch) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock())
    bundle = engine.create_backup("silent").path

    def fake_remount(mode):
        raise ServiceError("mount -o remount,rw / failed (32) permission denied")

    monkeypatch.setattr(backup, "remount_root", fake_remount)

    with pytest.raises(RestoreError, match="read-write"):
        engine.restore_backup(bundle)
    assert (device_env.sources["ssh"] / "github").read_text(encoding="utf-8") == "PRIVATE"


def test_restore_can_be_cancelled(device_env) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock())
    bundle = engine.create_backup("silent").path

    result = engine.restore_backup(bundle, confirm=lambda metadata: False)

    assert result.cancelled and not result.ok
    assert result.restored == []


def test_partial_restore_reports_failure(device_env, monkeypatch) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock())
    bundle = engine.create_backup("silent").path
    engine.owner = "comma:comma"
    monkeypatch.setattr(backup, "restart_ssh_agent", lambda key: {})
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        if cmd[-1] == str(device_env.sources["persist"]):
            raise subprocess.CalledProcessError(1, cmd, output="", stderr="Operation not permitted")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(backup.subprocess, "run", fake_run)

    result = engine.restore_backup(bundle)

    assert result.restored == ["ssh"]
    assert result.failed == "persist"
    assert result.partial
    assert "Operation not permitted" in result.error
    assert result.not_attempted == ["params"]


def test_read_metadata_requires_file(tmp_path: Path) -> None:
    with pytest.raises(BackupError, match="Invalid backup"):
        read_metadata(tmp_path)


def test_automated_backup_requires_network_config(device_env) -> None:
    with pytest.raises(BackupError, match="Missing network ID"):
        perform_automated_backup("")
    with pytest.raises(RegistryError):
        perform_automated_backup("deadbeef")


def test_automated_backup_refused_onroad(device_env) -> None:
    (device_env.params_dir / "IsOnroad").write_text("1", encoding="utf-8")

    with pytest.raises(BackupError, match="onroad"):
        perform_automated_backup("deadbeef")


def test_automated_backup_pushes_bundle(device_env) -> None:
    _populate_sources(device_env)
    pushed = []

    class FakeTransferEngine:
        class registry:
            @staticmethod
            def verify():
                return None

            @staticmethod
            def get(location_id):
                return location_id

        def transfer_backup(self, bundle, location_id):
            pushed.append((bundle, location_id))
            return "/remote/abc123/backups"

    result = perform_automated_backup(
        "loc-1", engine=BackupEngine(clock=Clock()), transfer_engine=FakeTransferEngine()
    )

    assert pushed == [(result.path, "loc-1")]
    assert json.loads((result.path / "metadata.json").read_text())["backup_id"] == result.backup_id


def test_status_reports_latest_bundle(device_env) -> None:
    _populate_sources(device_env)
    engine = BackupEngine(clock=Clock())
    assert engine.status()["latest"] is None

    created = engine.create_backup("silent")
    (device_env.backup_dir / "partial_bundle").mkdir()
    old = created.path.stat().st_mtime - 10
    os.utime(created.path, (old, old))

    status = engine.status()
    assert engine.latest_backup() == created.path
    assert status["latest"] == str(created.path)
    assert status["count"] == 2
    assert status["max_count"] == 5
