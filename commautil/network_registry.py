"""Registry of remote SMB/SSH endpoints used for route sync and device backups.

The registry is a JSON document ``{"locations": [...]}``.  It holds at most one
location per type (``route_sync`` or ``device_backup``); adding a location of a
type that is already configured replaces it.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator

from .config import path_setting
from .credentials import encrypt_credentials
from .errors import LocationNotFoundError, RegistryError
from .json_store import JsonStore

LOCATION_TYPES: tuple[str, ...] = ("route_sync", "device_backup")
PROTOCOLS: tuple[str, ...] = ("smb", "ssh")
AUTH_TYPES: tuple[str, ...] = ("password", "key")
DEFAULT_SSH_PORT = 22

TYPE_LABELS = {
    "route_sync": "Route Sync",
    "device_backup": "Device Backup",
}


def generate_location_id(seed: str) -> str:
    return hashlib.md5(seed.encode("utf-8")).hexdigest()


@dataclass
class NetworkLocation:
    label: str
    type: str
    protocol: str
    server: str
    username: str
    path: str = ""
    share: str = ""
    port: int = DEFAULT_SSH_PORT
    credential_file: str = ""
    key_path: str = ""
    auth_type: str = "password"
    location_id: str = ""
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if self.type not in LOCATION_TYPES:
            raise RegistryError(f"invalid location type: {self.type!r}")
        if self.protocol not in PROTOCOLS:
            raise RegistryError(f"invalid protocol: {self.protocol!r}")
        if self.protocol == "ssh" and self.auth_type not in AUTH_TYPES:
            raise RegistryError(f"invalid auth type: {self.auth_type!r}")
        if not self.location_id:
            self.location_id = generate_location_id(self.seed())

    def seed(self) -> str:
        if self.protocol == "smb":
            return f"{self.server}_{self.share}_{self.label}_{self.type}"
        return f"{self.server}_{self.port}_{self.label}_{self.type}"

    @property
    def uses_password(self) -> bool:
        return self.protocol == "smb" or self.auth_type == "password"

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "NetworkLocation":
        if not isinstance(payload, dict):
            raise RegistryError("location entry must be an object")
        known = {
            "label",
            "type",
            "protocol",
            "server",
            "username",
            "path",
            "share",
            "port",
            "credential_file",
            "key_path",
            "auth_type",
            "location_id",
        }
        try:
            port = int(payload.get("port") or DEFAULT_SSH_PORT)
        except (TypeError, ValueError) as exc:
            raise RegistryError(f"invalid port: {payload.get('port')!r}") from exc
        try:
            return cls(
                label=str(payload.get("label", "")),
                type=str(payload["type"]),
                protocol=str(payload.get("protocol", "smb")),
                server=str(payload["server"]),
                username=str(payload.get("username", "")),
                path=str(payload.get("path") or ""),
                share=str(payload.get("share") or ""),
                port=port,
                credential_file=str(payload.get("credential_file") or ""),
                key_path=str(payload.get("key_path") or ""),
                auth_type=str(payload.get("auth_type") or "password"),
                location_id=str(payload.get("location_id") or ""),
                extra={k: v for k, v in payload.items() if k not in known},
            )
        except KeyError as exc:
            raise RegistryError(f"location entry missing {exc.args[0]!r}") from exc

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "server": self.server,
        }
        if self.protocol == "smb":
            payload["share"] = self.share
        else:
            payload["port"] = self.port
        payload["path"] = self.path
        payload["username"] = self.username
        if self.uses_password:
            payload["credential_file"] = self.credential_file
        else:
            payload["key_path"] = self.key_path
        payload["label"] = self.label
        payload["type"] = self.type
        payload["protocol"] = self.protocol
        if self.protocol == "ssh":
            payload["auth_type"] = self.auth_type
        payload["location_id"] = self.location_id
        payload.update(self.extra)
        return payload


def credential_file_for(
    location_type: str, protocol: str, server: str, share_or_port: str | int
) -> Path:
    name = f"{protocol}_{location_type}_{server}_{share_or_port}"
    return path_setting("credentials_dir") / name


def build_smb_location(
    location_type: str,
    *,
    server: str,
    share: str,
    username: str,
    password: str,
    label: str,
    path: str = "",
) -> NetworkLocation:
    """Encrypt ``password`` and return an SMB location referencing it."""

    cred_file = credential_file_for(location_type, "smb", server, share)
    encrypt_credentials(password, cred_file)
    return NetworkLocation(
        label=label,
        type=location_type,
        protocol="smb",
        server=server,
        share=share,
        path=path,
        username=username,
        credential_file=str(cred_file),
    )


def build_ssh_location(
    location_type: str,
    *,
    server: str,
    username: str,
    label: str,
    path: str,
    port: int = DEFAULT_SSH_PORT,
    password: str | None = None,
    key_path: str | None = None,
) -> NetworkLocation:
    if (password is None) == (key_path is None):
        raise RegistryError("SSH locations need exactly one of password or key_path")
    if password is not None:
        cred_file = credential_file_for(location_type, "ssh", server, port)
        encrypt_credentials(password, cred_file)
        return NetworkLocation(
            label=label,
            type=location_type,
            protocol="ssh",
            server=server,
            port=port,
            path=path,
            username=username,
            credential_file=str(cred_file),
            auth_type="password",
        )
    return NetworkLocation(
        label=label,
        type=location_type,
        protocol="ssh",
        server=server,
        port=port,
        path=path,
        username=username,
        key_path=str(key_path),
        auth_type="key",
    )


class NetworkRegistry:
    """Repository over the network locations document."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path is not None else path_setting("network_config")
        self._store = JsonStore(self.path, default={"locations": []})

    def verify(self) -> None:
        """Raise ``RegistryError`` unless the registry file exists and parses."""

        if not self.path.exists():
            raise RegistryError(
                "Network configuration file not found. Configure network locations first."
            )
        self._raw_locations(strict=True)

    def init(self) -> None:
        if not self.path.exists():
            self._store.save({"locations": []})

    def _raw_locations(self, *, strict: bool = False) -> list[Dict[str, Any]]:
        if strict:
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise RegistryError(
                    f"Network configuration file is corrupted: {exc}"
                ) from exc
        else:
            payload = self._store.load()
        if not isinstance(payload, dict):
            raise RegistryError("Network configuration root must be an object")
        locations = payload.get("locations", [])
        if not isinstance(locations, list):
            raise RegistryError("Network configuration 'locations' must be a list")
        return locations

    def locations(self) -> Iterator[NetworkLocation]:
        for entry in self._raw_locations():
            yield NetworkLocation.from_dict(entry)

    def get(self, location_id: str) -> NetworkLocation:
        for location in self.locations():
            if location.location_id == location_id:
                return location
        raise LocationNotFoundError(f"Network location not found: {location_id}")

    def get_by_type(self, location_type: str) -> NetworkLocation | None:
        for location in self.locations():
            if location.type == location_type:
                return location
        return None

    def label_for(self, location_id: str) -> str:
        try:
            return self.get(location_id).label
        except LocationNotFoundError:
            return ""

    def upsert(self, location: NetworkLocation) -> NetworkLocation | None:
        """Store ``location``, replacing any entry of the same type.

        Returns the replaced location, if there was one.
        """

        replaced: list[NetworkLocation] = []

        def _mutate(payload: Any) -> Dict[str, Any]:
            if not isinstance(payload, dict):
                payload = {"locations": []}
            kept = []
            for entry in payload.get("locations", []) or []:
                if isinstance(entry, dict) and entry.get("type") == location.type:
                    replaced.append(NetworkLocation.from_dict(entry))
                    continue
                kept.append(entry)
            kept.append(location.to_dict())
            payload["locations"] = kept
            return payload

        self._store.update(_mutate)
        previous = replaced[0] if replaced else None
        # A replaced location's credentials are orphaned unless the new entry reuses them.
        if previous and previous.credential_file and previous.credential_file != location.credential_file:
            Path(previous.credential_file).unlink(missing_ok=True)
        return previous

    def delete(self, location_type: str) -> NetworkLocation:
        removed: list[NetworkLocation] = []

        def _mutate(payload: Any) -> Dict[str, Any]:
            if not isinstance(payload, dict):
                payload = {"locations": []}
            kept = []
            for entry in payload.get("locations", []) or []:
                if isinstance(entry, dict) and entry.get("type") == location_type:
                    removed.append(NetworkLocation.from_dict(entry))
                    continue
                kept.append(entry)
            payload["locations"] = kept
            return payload

        self._store.update(_mutate)
        if not removed:
            raise LocationNotFoundError(
                f"No {TYPE_LABELS.get(location_type, location_type)} location configured."
            )
        location = removed[0]
        if location.credential_file:
            Path(location.credential_file).unlink(missing_ok=True)
        return location
