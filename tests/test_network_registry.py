from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from commautil.credentials import decrypt_credentials
from commautil.errors import LocationNotFoundError, RegistryError
from commautil.network_registry import (
    NetworkLocation,
    NetworkRegistry,
    build_smb_location,
    build_ssh_location,
)


def _smb(label: str = "NAS") -> NetworkLocation:
    return build_smb_location(
        "route_sync",
        server="nas.local",
        share="drives",
        username="comma",
        password="pw",
        label=label,
        path="routes",
    )


def test_location_id_is_md5_of_seed(device_env) -> None:
    location = _smb()

    expected = hashlib.md5(b"nas.local_drives_NAS_route_sync").hexdigest()
    assert location.location_id == expected
    assert decrypt_credentials(Path(location.credential_file)) == "pw"


def test_one_location_per_type(device_env) -> None:
    registry = NetworkRegistry()
    registry.init()
    first = _smb("NAS")
    second = _smb("Other NAS")

    assert registry.upsert(first) is None
    previous = registry.upsert(second)

    assert previous is not None and previous.location_id == first.location_id
    route_sync = [loc for loc in registry.locations() if loc.type == "route_sync"]
    assert [loc.label for loc in route_sync] == ["Other NAS"]
    assert registry.get(second.location_id).server == "nas.local"
    with pytest.raises(LocationNotFoundError):
        registry.get(first.location_id)


def test_ssh_key_location_serialisation(device_env) -> None:
    registry = NetworkRegistry()
    location = build_ssh_location(
        "device_backup",
        server="backup.local",
        username="pi",
        label="Pi",
        path="/srv/backups",
        port=2222,
        key_path="/home/comma/.ssh/id_ed25519",
    )
    registry.upsert(location)

    raw = json.loads(registry.path.read_text(encoding="utf-8"))["locations"][0]
    assert raw["port"] == 2222
    assert raw["auth_type"] == "key"
    assert raw["key_path"] == "/home/comma/.ssh/id_ed25519"
    assert "credential_file" not in raw
    assert registry.get_by_type("device_backup").port == 2222
    assert registry.get_by_type("route_sync") is None


def test_ssh_location_requires_one_auth_method(device_env) -> None:
    with pytest.raises(RegistryError):
        build_ssh_location("device_backup", server="h", username="u", label="l", path="/p")


def test_delete_removes_credentials(device_env) -> None:
    registry = NetworkRegistry()
    location = _smb()
    registry.upsert(location)

    removed = registry.delete("route_sync")

    assert removed.location_id == location.location_id
    assert not Path(location.credential_file).exists()
    assert list(registry.locations()) == []
    with pytest.raises(LocationNotFoundError, match="No Route Sync location configured"):
        registry.delete("route_sync")


def test_verify_reports_missing_and_corrupt(device_env) -> None:
    registry = NetworkRegistry()
    with pytest.raises(RegistryError, match="not found"):
        registry.verify()

    registry.path.parent.mkdir(parents=True, exist_ok=True)
    registry.path.write_text("{broken", encoding="utf-8")
    with pytest.raises(RegistryError, match="corrupted"):
        registry.verify()


def test_invalid_type_rejected() -> None:
    with pytest.raises(RegistryError):
        NetworkLocation(label="x", type="route_backup", protocol="smb", server="s", username="u")


def test_label_for(device_env) -> None:
    registry = NetworkRegistry()
    location = _smb("Garage NAS")
    registry.upsert(location)

    assert registry.label_for(location.location_id) == "Garage NAS"
    assert registry.label_for("unknown") == ""
