from __future__ import annotations

import os
import subprocess

import pytest

from commautil import jobs
from commautil.errors import JobError
from commautil.jobs import JobScheduler, JobStore, run_jobs

LAUNCH_ENV = "#!/usr/bin/env bash\nexport PASSIVE=0\n"


@pytest.fixture
def scheduler(device_env) -> JobScheduler:
    device_env.launch_env.parent.mkdir(parents=True)
    device_env.launch_env.write_text(LAUNCH_ENV, encoding="utf-8")
    os.chmod(device_env.launch_env, 0o755)
    return JobScheduler()


def test_set_job_appends_marked_block(device_env, scheduler) -> None:
    scheduler.set_job("backup", "loc123")

    text = device_env.launch_env.read_text(encoding="utf-8")
    assert text == (
        LAUNCH_ENV
        + "### Start CommaUtility Backup\n"
        + "/usr/local/bin/commautil --backup --network loc123\n"
        + "### End CommaUtility Backup\n"
    )
    assert device_env.launch_env.stat().st_mode & 0o777 == 0o755


def test_set_job_is_idempotent(device_env, scheduler) -> None:
    scheduler.set_job("route_sync", "loc123", startup_delay=45)
    first = device_env.launch_env.read_bytes()

    scheduler.set_job("route_sync", "loc123", startup_delay=45)

    assert device_env.launch_env.read_bytes() == first
    assert first.count(b"### Start CommaUtilityRoute Sync") == 1
    assert b"sleep 45 && /usr/local/bin/commautil --route-sync --network loc123" in first


def test_set_job_replaces_previous_location(device_env, scheduler) -> None:
    scheduler.set_job("backup", "old")
    scheduler.set_job("route_sync", "sync")
    scheduler.set_job("backup", "new")

    assert scheduler.get_job("backup") == "new"
    assert scheduler.get_job("route_sync") == "sync"
    assert device_env.launch_env.read_text(encoding="utf-8").count("--backup") == 1


def test_remove_job_restores_original(device_env, scheduler) -> None:
    scheduler.set_job("backup", "loc123")

    scheduler.remove_job("backup")

    assert device_env.launch_env.read_text(encoding="utf-8") == LAUNCH_ENV
    assert not scheduler.has_job("backup")
    assert JobStore().load("backup") is None


def test_unknown_job_type(device_env, scheduler) -> None:
    with pytest.raises(JobError, match="Invalid job type"):
        scheduler.set_job("reboot", "loc123")


def test_run_jobs_executes_stored_definitions(device_env, scheduler, monkeypatch) -> None:
    scheduler.set_job("backup", "b1")
    scheduler.set_job("route_sync", "r1", startup_delay=5)
    calls = []
    sleeps = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0 if "--backup" in cmd else 3)

    monkeypatch.setattr(jobs.subprocess, "run", fake_run)

    results = run_jobs(sleep=sleeps.append)

    assert results == {"backup": 0, "route_sync": 3}
    assert calls[0] == ["/usr/local/bin/commautil", "--backup", "--network", "b1"]
    assert calls[1] == ["/usr/local/bin/commautil", "--route-sync", "--network", "r1"]
    assert sleeps == [5]
