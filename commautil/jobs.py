"""Boot-time jobs for unattended backups and route sync.

Each job is stored twice: as a marker-delimited block appended to the
openpilot launch environment script, and as a JSON job definition in the jobs
directory that :func:`run_jobs` can execute without parsing shell text.
"""
from __future__ import annotations

import os
import re
import shlex
import subprocess
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from .config import get_cfg, path_setting, route_sync_settings
from .errors import JobError
from .json_store import JsonStore

JOB_MARKERS: Dict[str, tuple[str, str]] = {
    "backup": ("### Start CommaUtility Backup", "### End CommaUtility Backup"),
    "route_sync": ("### Start CommaUtilityRoute Sync", "### End CommaUtilityRoute Sync"),
}
JOB_FLAGS: Dict[str, str] = {
    "backup": "--backup",
    "route_sync": "--route-sync",
}

_NETWORK_ARG = re.compile(r"--network\s+(\S+)")


@dataclass
class JobDefinition:
    job_type: str
    location_id: str
    argv: List[str] = field(default_factory=list)
    startup_delay: int = 0
    updated: str = ""

    def command_line(self) -> str:
        command = shlex.join(self.argv)
        if self.job_type == "route_sync":
            return f"sleep {self.startup_delay} && {command}"
        return command


def _markers(job_type: str) -> tuple[str, str]:
    try:
        return JOB_MARKERS[job_type]
    except KeyError as exc:
        raise JobError(f"Invalid job type: {job_type}") from exc


def build_job(job_type: str, location_id: str, *, startup_delay: int | None = None) -> JobDefinition:
    _markers(job_type)
    if not location_id:
        raise JobError("A network location id is required")
    executable = str(get_cfg().get("jobs", {}).get("command", "commautil"))
    if job_type == "route_sync" and startup_delay is None:
        startup_delay = int(route_sync_settings().get("startup_delay", 60))
    return JobDefinition(
        job_type=job_type,
        location_id=location_id,
        argv=[executable, JOB_FLAGS[job_type], "--network", location_id],
        startup_delay=int(startup_delay or 0),
        updated=datetime.now(timezone.utc).isoformat(timespec="seconds"),
    )


def strip_block(text: str, job_type: str) -> str:
    """Remove every ``start``..``end`` marker block for ``job_type`` from ``text``."""

    start_marker, end_marker = _markers(job_type)
    kept: List[str] = []
    inside = False
    for line in text.splitlines(keepends=True):
        if not inside and line.startswith(start_marker):
            inside = True
            continue
        if inside:
            if line.startswith(end_marker):
                inside = False
            continue
        kept.append(line)
    return "".join(kept)


def render_block(job: JobDefinition) -> str:
    start_marker, end_marker = _markers(job.job_type)
    return f"{start_marker}\n{job.command_line()}\n{end_marker}\n"


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(text)
    if path.exists():
        os.chmod(tmp_path, path.stat().st_mode & 0o7777)
    tmp_path.replace(path)


class JobStore:
    """One ``<job_type>.json`` job definition per scheduled job."""

    def __init__(self, jobs_dir: Path | None = None) -> None:
        self.jobs_dir = Path(jobs_dir) if jobs_dir is not None else path_setting("jobs_dir")

    def _store(self, job_type: str) -> JsonStore:
        _markers(job_type)
        return JsonStore(self.jobs_dir / f"{job_type}.json", default=None)

    def save(self, job: JobDefinition) -> None:
        self._store(job.job_type).save(asdict(job))

    def load(self, job_type: str) -> JobDefinition | None:
        payload = self._store(job_type).load()
        if not isinstance(payload, dict):
            return None
        try:
            return JobDefinition(
                job_type=str(payload["job_type"]),
                location_id=str(payload["location_id"]),
                argv=[str(arg) for arg in payload.get("argv", [])],
                startup_delay=int(payload.get("startup_delay", 0)),
                updated=str(payload.get("updated", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise JobError(f"Unreadable job definition for {job_type}: {exc}") from exc

    def delete(self, job_type: str) -> bool:
        return self._store(job_type).delete()

    def jobs(self) -> List[JobDefinition]:
        found = []
        for job_type in JOB_MARKERS:
            job = self.load(job_type)
            if job is not None:
                found.append(job)
        return found


class JobScheduler:
    def __init__(self, launch_env: Path | None = None, store: JobStore | None = None) -> None:
        self.launch_env = Path(launch_env) if launch_env is not None else path_setting("launch_env")
        self.store = store or JobStore()

    def _read(self) -> str:
        try:
            return self.launch_env.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def set_job(self, job_type: str, location_id: str, *, startup_delay: int | None = None) -> JobDefinition:
        """Replace the job block for ``job_type``; repeated calls yield identical files."""

        job = build_job(job_type, location_id, startup_delay=startup_delay)
        text = strip_block(self._read(), job_type)
        if text and not text.endswith("\n"):
            text += "\n"
        _write_text_atomic(self.launch_env, text + render_block(job))
        self.store.save(job)
        print(f"[jobs] updated {job_type} job in {self.launch_env}", flush=True)
        return job

    def remove_job(self, job_type: str) -> None:
        _markers(job_type)
        if self.launch_env.exists():
            _write_text_atomic(self.launch_env, strip_block(self._read(), job_type))
        self.store.delete(job_type)
        print(f"[jobs] {job_type} job removed from {self.launch_env}", flush=True)

    def get_job(self, job_type: str) -> str | None:
        """Location id embedded in the launch env block, if the block exists."""

        start_marker, end_marker = _markers(job_type)
        inside = False
        for line in self._read().splitlines():
            if line.startswith(start_marker):
                inside = True
                continue
            if inside and line.startswith(end_marker):
                break
            if inside:
                match = _NETWORK_ARG.search(line)
                if match:
                    return match.group(1)
        return None

    def has_job(self, job_type: str) -> bool:
        return self.get_job(job_type) is not None


def run_jobs(store: JobStore | None = None, *, sleep=time.sleep) -> Dict[str, int]:
    """Run every stored job in turn and return each job's exit status."""

    store = store or JobStore()
    results: Dict[str, int] = {}
    for job in store.jobs():
        if job.startup_delay:
            print(f"[jobs] waiting {job.startup_delay}s before {job.job_type}", flush=True)
            sleep(job.startup_delay)
        print(f"[jobs] running {job.job_type}: {shlex.join(job.argv)}", flush=True)
        try:
            completed = subprocess.run(job.argv, check=False)
        except FileNotFoundError:
            print(f"[jobs] {job.argv[0]} not available", flush=True)
            results[job.job_type] = 127
            continue
        results[job.job_type] = completed.returncode
        if completed.returncode != 0:
            print(f"[jobs] {job.job_type} exited with {completed.returncode}", flush=True)
    return results
