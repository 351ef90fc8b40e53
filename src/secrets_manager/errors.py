"""Exception taxonomy shared by every stage of the pipeline."""

from __future__ import annotations


class SecretsManagerError(Exception):
    """Base class for all secrets-manager failures."""


class ConfigError(SecretsManagerError):
    """Raised when the configuration or its rules are unusable.

    Fatal to the run: nothing is transferred once resolution fails.
    """


class IntegrityError(SecretsManagerError):
    """Raised when a checksum does not match its recorded value."""


class CipherError(SecretsManagerError):
    """Raised when encryption or decryption fails (wrong passphrase, corrupt data)."""


class LinkError(SecretsManagerError):
    """Raised when a symlink cannot be created without clobbering something."""


class ManifestError(SecretsManagerError):
    """Raised when a checksum manifest cannot be written.

    Fatal to the run: the export tree itself is unusable.
    """
