# src/secret_mirror/exceptions.py
"""Custom exceptions for the secret-mirror application."""

from typing import List, Sequence


class SecretMirrorError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigError(SecretMirrorError):
    """Raised for configuration-related issues."""

    pass


class InvalidKeyError(SecretMirrorError):
    """Raised when a queue key cannot be split into namespace and name."""

    pass


class ClusterError(SecretMirrorError):
    """Raised by cluster backends when a read or write fails."""

    pass


class NotFoundError(ClusterError):
    """Raised when a requested secret does not exist."""

    pass


class AlreadyExistsError(ClusterError):
    """Raised when creating a secret that already exists."""

    pass


class MirrorError(SecretMirrorError):
    """
    Raised when one or more mirror rules for a source secret failed.

    Attributes:
        errors (List[Exception]): The individual per-rule failures.
    """

    def __init__(self, errors: Sequence[Exception]) -> None:
        self.errors: List[Exception] = list(errors)
        details: str = "; ".join(str(e) for e in self.errors)
        super().__init__(f"failed to mirror secret: [{details}]")
