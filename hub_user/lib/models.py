"""Credential, session and vault models for user provisioning."""

import base64
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import StorageError


@dataclass(frozen=True)
class Token:
    """Bearer token issued by the account service."""

    value: str

    def __repr__(self) -> str:
        return "Token(value=<redacted>)"


@dataclass(frozen=True)
class CertificateIdentity:
    """Client certificate and its private key, both PEM encoded."""

    certificate_pem: bytes
    private_key_pem: bytes
    subject_org: str

    def __repr__(self) -> str:
        return f"CertificateIdentity(subject_org={self.subject_org!r})"


Credential = Token | CertificateIdentity


@dataclass(frozen=True)
class AccountSession:
    """Account details returned by register, peer auth and whoami."""

    email: str
    username: str


class AuthMode(str, Enum):
    """How `authenticate` talks to the account service."""

    TOKEN = "token"
    LEGACY_PEER = "legacy-peer"


class ProvisioningState(str, Enum):
    """Named states of the provisioning state machine."""

    UNAUTHENTICATED = "unauthenticated"
    REGISTERING = "registering"
    AUTHENTICATING = "authenticating"
    AWAITING_LOCAL_PASSWORD = "awaiting_local_password"
    SIGNING = "signing"
    SEALING = "sealing"
    AUTHENTICATED_TOKEN = "authenticated_token"
    AUTHENTICATED_CERTIFICATE = "authenticated_certificate"
    DEAUTHENTICATING = "deauthenticating"


VAULT_RECORD_VERSION = 1


@dataclass(frozen=True)
class VaultRecord:
    """Encrypted-at-rest form of a certificate identity.

    ciphertext carries the AES-GCM tag; salt and Scrypt cost parameters are
    stored alongside so the record opens with nothing but the local password.
    """

    salt: bytes
    nonce: bytes
    ciphertext: bytes
    n: int
    r: int
    p: int
    kdf: str = "scrypt"
    version: int = VAULT_RECORD_VERSION

    def header(self) -> bytes:
        """Canonical bytes of the non-secret parameters, bound as AEAD associated data."""
        return json.dumps(
            {
                "version": self.version,
                "kdf": self.kdf,
                "n": self.n,
                "r": self.r,
                "p": self.p,
                "salt": _b64e(self.salt),
            },
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")

    def to_json(self) -> str:
        """Serialize record to a JSON document."""
        return json.dumps(
            {
                "version": self.version,
                "kdf": self.kdf,
                "n": self.n,
                "r": self.r,
                "p": self.p,
                "salt": _b64e(self.salt),
                "nonce": _b64e(self.nonce),
                "ciphertext": _b64e(self.ciphertext),
            },
            indent=2,
        )

    @classmethod
    def from_json(cls, document: str) -> "VaultRecord":
        """Parse a JSON document produced by to_json.

        Raises:
            StorageError: If the document is not a well-formed vault record
        """
        try:
            data: dict[str, Any] = json.loads(document)
            return cls(
                version=int(data["version"]),
                kdf=str(data["kdf"]),
                n=int(data["n"]),
                r=int(data["r"]),
                p=int(data["p"]),
                salt=_b64d(data["salt"]),
                nonce=_b64d(data["nonce"]),
                ciphertext=_b64d(data["ciphertext"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"malformed vault record: {e}") from e


@dataclass
class ExportResult:
    """Result from certificate export."""

    archive_path: Path


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.b64decode(text, validate=True)
