"""Encrypt network passwords with a key derived from a device-local secret file."""
from __future__ import annotations

import base64
import hashlib
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from .config import path_setting
from .errors import CredentialError

_SALT_BYTES = 16
_KDF_ITERATIONS = 100_000


def _read_secret(secret_file: Path | None) -> bytes:
    path = secret_file or path_setting("secret_file")
    try:
        secret = path.read_bytes()
    except OSError as exc:
        raise CredentialError(f"device secret unavailable at {path}: {exc}") from exc
    if not secret.strip():
        raise CredentialError(f"device secret at {path} is empty")
    return secret


def derive_key(secret: bytes, salt: bytes) -> bytes:
    key_material = hashlib.pbkdf2_hmac("sha256", secret, salt, _KDF_ITERATIONS, dklen=32)
    return base64.urlsafe_b64encode(key_material)


def encrypt_credentials(password: str, output: Path, *, secret_file: Path | None = None) -> Path:
    """Write ``password`` encrypted to ``output`` (mode 0600) and return the path.

    The file holds the base64 salt on the first line and the Fernet token on
    the second, so every credential file carries its own derivation salt.
    """

    secret = _read_secret(secret_file)
    salt = os.urandom(_SALT_BYTES)
    token = Fernet(derive_key(secret, salt)).encrypt(password.encode("utf-8"))

    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = output.with_name(output.name + ".tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(base64.b64encode(salt) + b"\n" + token + b"\n")
    os.replace(tmp_path, output)
    return output


def decrypt_credentials(path: Path, *, secret_file: Path | None = None) -> str:
    try:
        lines = Path(path).read_bytes().splitlines()
    except OSError as exc:
        raise CredentialError(f"Credential file not found: {path}") from exc
    if len(lines) < 2:
        raise CredentialError(f"Credential file is malformed: {path}")

    secret = _read_secret(secret_file)
    try:
        salt = base64.b64decode(lines[0], validate=True)
        plaintext = Fernet(derive_key(secret, salt)).decrypt(lines[1].strip())
    except (InvalidToken, ValueError) as exc:
        raise CredentialError("Failed to decrypt credentials") from exc
    return plaintext.decode("utf-8")
