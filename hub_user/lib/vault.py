"""Password-protected at-rest storage for the user certificate and key."""

import os
import stat
import tempfile
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .cert_utils import deserialize_certificate, deserialize_private_key
from .errors import AuthenticationFailed, CryptoError, StorageError
from .logging_config import LOGGER
from .models import VAULT_RECORD_VERSION, VaultRecord

SALT_SIZE = 16
NONCE_SIZE = 12
KEY_LENGTH = 32
# Plaintext is len(cert) || cert || key
LENGTH_PREFIX_SIZE = 4
# Scrypt needs about 128 * n * r bytes; records asking for more are refused unread
MAX_SCRYPT_MEMORY = 2**30
MAX_SCRYPT_P = 16


class CredentialVault:
    """Seals certificate/key pairs under a local password and owns the vault file."""

    def __init__(self, n: int = 2**15, r: int = 8, p: int = 1) -> None:
        """Initialize vault with Scrypt cost parameters.

        Args:
            n: CPU/memory cost, a power of two greater than 1
            r: Block size
            p: Parallelization
        """
        if n < 2 or n & (n - 1):
            raise ValueError("scrypt n must be a power of two greater than 1")
        if not scrypt_cost_within_limits(n, r, p):
            raise ValueError("scrypt cost exceeds the supported memory ceiling")
        self.n = n
        self.r = r
        self.p = p

    def seal(self, certificate_pem: bytes, private_key_pem: bytes, local_password: str) -> VaultRecord:
        """Encrypt certificate and key under a key derived from local_password.

        Args:
            certificate_pem: PEM encoded X.509 certificate
            private_key_pem: PEM encoded EC private key
            local_password: Password chosen for this machine only

        Returns:
            VaultRecord holding ciphertext, salt and KDF parameters

        Raises:
            CryptoError: If either PEM does not decode or the password is empty
        """
        if not local_password:
            raise CryptoError("local password must not be empty")

        # Both must decode before anything gets encrypted
        deserialize_certificate(certificate_pem)
        deserialize_private_key(private_key_pem)

        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        unsealed = VaultRecord(
            salt=salt,
            nonce=nonce,
            ciphertext=b"",
            n=self.n,
            r=self.r,
            p=self.p,
        )
        key = _derive_key(local_password, salt, self.n, self.r, self.p)
        plaintext = len(certificate_pem).to_bytes(LENGTH_PREFIX_SIZE, "big") + certificate_pem + private_key_pem
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, unsealed.header())

        return VaultRecord(
            salt=salt,
            nonce=nonce,
            ciphertext=ciphertext,
            n=self.n,
            r=self.r,
            p=self.p,
        )

    def open(self, record: VaultRecord, local_password: str) -> tuple[bytes, bytes]:
        """Decrypt a record back to (certificate_pem, private_key_pem).

        Raises:
            AuthenticationFailed: Wrong password, tampered or unsupported record
        """
        if record.version != VAULT_RECORD_VERSION or record.kdf != "scrypt":
            raise AuthenticationFailed(f"unsupported vault record (version={record.version}, kdf={record.kdf})")

        if not scrypt_cost_within_limits(record.n, record.r, record.p):
            raise AuthenticationFailed(
                f"vault record scrypt cost out of range (n={record.n}, r={record.r}, p={record.p})"
            )

        try:
            key = _derive_key(local_password, record.salt, record.n, record.r, record.p)
            plaintext = AESGCM(key).decrypt(record.nonce, record.ciphertext, record.header())
        except (InvalidTag, ValueError, MemoryError) as e:
            raise AuthenticationFailed("invalid local password or corrupted vault record") from e

        cert_length = int.from_bytes(plaintext[:LENGTH_PREFIX_SIZE], "big")
        body = plaintext[LENGTH_PREFIX_SIZE:]
        if cert_length > len(body):
            raise AuthenticationFailed("corrupted vault record")
        return body[:cert_length], body[cert_length:]

    def persist(self, record: VaultRecord, destination_path: Path) -> None:
        """Write record atomically: temp file in the same directory, then rename.

        Raises:
            StorageError: If the record could not be written; any previous
                record at destination_path is left untouched
        """
        atomic_write(destination_path, record.to_json().encode("utf-8"))
        LOGGER.info("Vault record written to %s", destination_path)

    def load(self, destination_path: Path) -> VaultRecord | None:
        """Read a vault record, or None when no record is stored.

        Raises:
            StorageError: If the file cannot be read or is not a vault record
        """
        try:
            document = destination_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"cannot read vault record {destination_path}: {e}") from e
        return VaultRecord.from_json(document)

    def erase(self, destination_path: Path) -> None:
        """Remove the stored record; a missing record is not an error."""
        try:
            destination_path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"cannot remove vault record {destination_path}: {e}") from e
        LOGGER.info("Vault record removed from %s", destination_path)


def atomic_write(path: Path, data: bytes) -> None:
    """Replace path with data so readers see either the old or the new file.

    The file is created with owner-only permissions.

    Raises:
        StorageError: On any filesystem failure; the temp file is cleaned up
    """
    tmp_path: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile("wb", delete=False, dir=path.parent, prefix=f".{path.name}.") as tmp:
            tmp_path = Path(tmp.name)
            os.chmod(tmp.name, stat.S_IRUSR | stat.S_IWUSR)
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as e:
        raise StorageError(f"cannot write {path}: {e}") from e
    finally:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)


def scrypt_cost_within_limits(n: int, r: int, p: int) -> bool:
    """True when (n, r, p) are positive and stay under the memory ceiling."""
    if n < 2 or r < 1 or p < 1 or p > MAX_SCRYPT_P:
        return False
    return 128 * n * r <= MAX_SCRYPT_MEMORY

def _derive_key(password: str, salt: bytes, n: int, r: int, p: int) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=n, r=r, p=p)
    return kdf.derive(password.encode("utf-8"))
