from __future__ import annotations

import stat

import pytest

from commautil.credentials import decrypt_credentials, encrypt_credentials
from commautil.errors import CredentialError


def test_round_trip_uses_device_secret(device_env) -> None:
    target = device_env.config_dir / "credentials" / "smb_route_sync_nas_share"

    encrypt_credentials("hunter2", target)

    assert decrypt_credentials(target) == "hunter2"
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert b"hunter2" not in target.read_bytes()


def test_each_file_gets_its_own_salt(device_env) -> None:
    first = encrypt_credentials("same", device_env.root / "one")
    second = encrypt_credentials("same", device_env.root / "two")

    assert first.read_bytes().splitlines()[0] != second.read_bytes().splitlines()[0]


def test_wrong_secret_fails(device_env) -> None:
    target = encrypt_credentials("hunter2", device_env.root / "cred")
    other_secret = device_env.root / "other_secret"
    other_secret.write_text("a different key\n", encoding="utf-8")

    with pytest.raises(CredentialError, match="Failed to decrypt credentials"):
        decrypt_credentials(target, secret_file=other_secret)


def test_missing_secret_and_missing_file(device_env) -> None:
    with pytest.raises(CredentialError, match="Credential file not found"):
        decrypt_credentials(device_env.root / "absent")

    with pytest.raises(CredentialError):
        encrypt_credentials("pw", device_env.root / "cred", secret_file=device_env.root / "no_secret")


def test_malformed_file(device_env) -> None:
    broken = device_env.root / "broken"
    broken.write_text("onlyoneline\n", encoding="utf-8")

    with pytest.raises(CredentialError, match="malformed"):
        decrypt_credentials(broken)
