"""Error taxonomy for user identity operations."""

from collections.abc import Mapping, Sequence
from typing import Any


class HubUserError(Exception):
    """Base class for all failures surfaced to the command layer."""


class ServiceError(HubUserError):
    """Opaque failure reported by (or while reaching) the account service."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ValidationError(ServiceError):
    """Account service rejected the request with field-level errors.

    Args:
        errors: Mapping of field name to messages, or a plain list of messages
        status: HTTP status code, when known
    """

    def __init__(
        self,
        errors: Mapping[str, Any] | Sequence[Any],
        status: int | None = None,
    ) -> None:
        super().__init__("account service rejected the request", status=status)
        self.errors = errors


class AuthenticationFailed(HubUserError):
    """Local password did not open the vault record."""


class ProtocolError(HubUserError):
    """Account service answered with a payload shape we do not recognize."""


class StorageError(HubUserError):
    """Filesystem failure while reading or writing local state."""


class CryptoError(HubUserError):
    """Key, CSR or certificate material could not be produced or used."""


class DecodeError(CryptoError):
    """PEM input could not be decoded."""


class NotAuthenticatedError(HubUserError):
    """No token or certificate is available for the current user."""


class InvalidTransitionError(HubUserError):
    """Provisioning state machine was asked to make an illegal transition."""
