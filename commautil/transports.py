"""SMB and SSH transports for pushing routes and backups to network locations."""
from __future__ import annotations

import os
import shlex
import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import Dict, Sequence

from .config import get_cfg
from .credentials import decrypt_credentials
from .errors import CredentialError, TransportError
from .network_registry import LOCATION_TYPES, NetworkLocation, NetworkRegistry

VALID = "Valid"


def _timeouts() -> Dict[str, int]:
    return dict(get_cfg().get("timeouts", {}))


def _output_text(result: subprocess.CompletedProcess | subprocess.CalledProcessError) -> str:
    parts = [result.stdout or "", result.stderr or ""]
    return "\n".join(part.strip() for part in parts if part and part.strip())


class Transport:
    """Minimal protocol for network location backends."""

    def __init__(self, location: NetworkLocation) -> None:
        self.location = location
        self._password: str | None = None

    def password(self) -> str:
        if self._password is None:
            if not self.location.credential_file or not Path(self.location.credential_file).exists():
                raise CredentialError("Credential file not found")
            password = decrypt_credentials(Path(self.location.credential_file))
            if not password:
                raise CredentialError("Failed to decrypt credentials")
            self._password = password
        return self._password

    def test_connection(self) -> str:  # pragma: no cover - interface only
        raise NotImplementedError

    def mkdir(self, remote: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def upload(self, files: Sequence[Path], remote: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def upload_backup(self, bundle_dir: Path, remote: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def download_backup(self, remote: str, dest_dir: Path) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def _run(
        self,
        cmd: Sequence[str],
        *,
        env: Dict[str, str] | None = None,
        check: bool = True,
        timeout: int | None = None,
    ) -> subprocess.CompletedProcess:
        run_env = None
        if env:
            run_env = dict(os.environ)
            run_env.update(env)
        try:
            return subprocess.run(
                list(cmd),
                check=check,
                capture_output=True,
                text=True,
                env=run_env,
                timeout=timeout or _timeouts().get("command", 300),
            )
        except FileNotFoundError as exc:
            raise TransportError(f"{cmd[0]} not available") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransportError(f"{cmd[0]} timed out after {exc.timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            detail = _output_text(exc)
            message = f"{cmd[0]} failed ({exc.returncode})"
            if detail:
                message = f"{message}: {detail}"
            raise TransportError(message) from exc


class SmbTransport(Transport):
    COLLISION = "NT_STATUS_OBJECT_NAME_COLLISION"

    def _service(self) -> str:
        return f"//{self.location.server}/{self.location.share}"

    def _smbclient(self, command: str, *, check: bool = True, timeout: int | None = None) -> subprocess.CompletedProcess:
        cmd = ["smbclient", self._service(), "-U", self.location.username, "-c", command]
        return self._run(cmd, env={"PASSWD": self.password()}, check=check, timeout=timeout)

    def test_connection(self) -> str:
        try:
            result = self._smbclient("ls", check=False, timeout=_timeouts().get("probe", 60))
        except (CredentialError, TransportError) as exc:
            return str(exc)
        if result.returncode == 0:
            return VALID
        return _output_text(result) or f"smbclient exited with {result.returncode}"

    def mkdir(self, remote: str) -> None:
        """Create ``remote`` one component at a time; existing components are fine."""

        current = ""
        for part in [p for p in remote.strip("/").split("/") if p]:
            current = f"{current}/{part}" if current else part
            result = self._smbclient(f'mkdir "{current}"', check=False)
            output = _output_text(result)
            if self.COLLISION in output:
                continue
            if result.returncode != 0 or "NT_STATUS_" in output:
                raise TransportError(f"Failed to create remote directory {current}: {output}")

    def upload(self, files: Sequence[Path], remote: str) -> None:
        for path in files:
            print(f"[transfer] uploading {path.name}", flush=True)
            self._smbclient(f'cd "{remote}"; put "{path}" "{path.name}"')

    def upload_backup(self, bundle_dir: Path, remote: str) -> None:
        with tempfile.TemporaryDirectory(prefix="commautil-backup-") as tmp:
            archive = Path(tmp) / "backup.tar.gz"
            with tarfile.open(archive, "w:gz") as tar:
                # Same layout as the SSH variant: bundle contents at the archive root.
                tar.add(bundle_dir, arcname=".")
            self.mkdir(remote)
            self.upload([archive], remote)

    def download_backup(self, remote: str, dest_dir: Path) -> None:
        probe = self._smbclient(f'cd "{remote}"', check=False)
        if probe.returncode != 0:
            raise TransportError("Remote backup directory not found")
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / "backup.tar.gz"
        self._smbclient(f'cd "{remote}"; get backup.tar.gz "{target}"')


class SshTransport(Transport):
    def _destination(self) -> str:
        return f"{self.location.username}@{self.location.server}"

    def _ssh_command(self) -> list[str]:
        cmd = ["ssh", "-p", str(self.location.port)]
        cmd.extend(["-o", f"ConnectTimeout={_timeouts().get('ssh_connect', 5)}"])
        if self.location.auth_type == "key":
            cmd.extend(["-o", "BatchMode=yes", "-i", self.location.key_path])
        else:
            cmd = ["sshpass", "-e", *cmd]
        return cmd

    def _env(self) -> Dict[str, str] | None:
        if self.location.auth_type == "password":
            return {"SSHPASS": self.password()}
        return None

    def _rsync(self, options: Sequence[str], sources: Sequence[str], target: str) -> None:
        remote_shell = shlex.join(self._ssh_command())
        cmd = ["rsync", *options, "-e", remote_shell, "--", *sources, target]
        self._run(cmd, env=self._env())

    def test_connection(self) -> str:
        try:
            cmd = [*self._ssh_command(), self._destination(), "exit"]
            result = self._run(cmd, env=self._env(), check=False, timeout=_timeouts().get("probe", 60))
        except (CredentialError, TransportError) as exc:
            return str(exc)
        if result.returncode == 0:
            return VALID
        return "Connection failed"

    def mkdir(self, remote: str) -> None:
        cmd = [*self._ssh_command(), self._destination(), f"mkdir -p {shlex.quote(remote)}"]
        try:
            self._run(cmd, env=self._env())
        except TransportError as exc:
            raise TransportError(f"Failed to create remote directory: {exc}") from exc

    def upload(self, files: Sequence[Path], remote: str) -> None:
        self._rsync(["-av", "--delete"], [str(path) for path in files], f"{self._destination()}:{remote}/")

    def upload_backup(self, bundle_dir: Path, remote: str) -> None:
        self.mkdir(remote)
        self._rsync(["-az"], [f"{bundle_dir}/"], f"{self._destination()}:{remote}/")

    def download_backup(self, remote: str, dest_dir: Path) -> None:
        dest_dir.mkdir(parents=True, exist_ok=True)
        self._rsync(["-az"], [f"{self._destination()}:{remote}/"], f"{dest_dir}/")


def transport_for(location: NetworkLocation) -> Transport:
    if location.protocol == "smb":
        return SmbTransport(location)
    if location.protocol == "ssh":
        return SshTransport(location)
    raise TransportError(f"Invalid transfer type: {location.protocol}")


def test_connection(location: NetworkLocation) -> str:
    """Return ``"Valid"`` when ``location`` is reachable, otherwise a diagnostic."""

    return transport_for(location).test_connection()


def test_all_connections(registry: NetworkRegistry) -> Dict[str, str | None]:
    """Probe each configured location type; ``None`` marks an unconfigured type."""

    statuses: Dict[str, str | None] = {}
    for location_type in LOCATION_TYPES:
        location = registry.get_by_type(location_type)
        statuses[location_type] = test_connection(location) if location else None
    return statuses


def verify_network_connectivity(location: NetworkLocation) -> None:
    status = test_connection(location)
    if status != VALID:
        raise TransportError(f"{location.protocol.upper()} connection failed: {status}")

