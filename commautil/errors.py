"""Error hierarchy shared by commautil subsystems."""
from __future__ import annotations


class CommaUtilError(RuntimeError):
    """Base exception for commautil operational failures."""


class ConfigPersistenceError(CommaUtilError):
    """Raised when configuration changes cannot be persisted."""


class CredentialError(CommaUtilError):
    """Raised when credentials cannot be encrypted or decrypted."""


class RegistryError(CommaUtilError):
    """Raised when the network location registry is invalid."""


class LocationNotFoundError(RegistryError):
    """Raised when a location id or type has no registry entry."""


class RouteNotFoundError(CommaUtilError):
    """Raised when a route has no segment directories."""


class ConcatError(CommaUtilError):
    """Raised when segment concatenation fails for one file kind."""


class TransportError(CommaUtilError):
    """Raised when an SMB or SSH command fails."""


class TransferError(CommaUtilError):
    """Raised when a route or backup transfer cannot complete."""


class BackupError(CommaUtilError):
    """Raised when a backup bundle cannot be created or read."""


class RestoreError(BackupError):
    """Raised when restoring a bundle fails part way."""


class JobError(CommaUtilError):
    """Raised for unknown job types or unreadable job definitions."""


class ServiceError(CommaUtilError):
    """Raised when the systemd unit cannot be written or controlled."""


__all__ = [
    "BackupError",
    "CommaUtilError",
    "ConcatError",
    "ConfigPersistenceError",
    "CredentialError",
    "JobError",
    "LocationNotFoundError",
    "RegistryError",
    "RestoreError",
    "RouteNotFoundError",
    "ServiceError",
    "TransferError",
    "TransportError",
]
