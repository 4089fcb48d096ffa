"""Provisioning state machine for the user's token or certificate identity."""

import io
import tarfile
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .account_service import AccountService
from .cert_utils import (
    build_csr,
    certificate_matches_key,
    deserialize_certificate,
    encode_csr_base64,
    extract_subject_org,
    generate_private_key,
    serialize_private_key,
)
from .config import HubConfig
from .errors import (
    CryptoError,
    HubUserError,
    InvalidTransitionError,
    NotAuthenticatedError,
    ProtocolError,
)
from .logging_config import LOGGER
from .models import (
    AccountSession,
    AuthMode,
    CertificateIdentity,
    Credential,
    ExportResult,
    ProvisioningState,
    Token,
)
from .settings import SettingsStore
from .terminal import Terminal
from .vault import CredentialVault, atomic_write

S = ProvisioningState

_AT_REST = frozenset({S.UNAUTHENTICATED, S.AUTHENTICATED_TOKEN, S.AUTHENTICATED_CERTIFICATE})

# Failures before key generation return to whichever resting state we came from.
TRANSITIONS: dict[ProvisioningState, frozenset[ProvisioningState]] = {
    S.UNAUTHENTICATED: frozenset({S.REGISTERING, S.AUTHENTICATING, S.DEAUTHENTICATING}),
    S.AUTHENTICATED_TOKEN: frozenset({S.REGISTERING, S.AUTHENTICATING, S.DEAUTHENTICATING}),
    S.AUTHENTICATED_CERTIFICATE: frozenset({S.REGISTERING, S.AUTHENTICATING, S.DEAUTHENTICATING}),
    S.REGISTERING: _AT_REST | {S.AWAITING_LOCAL_PASSWORD},
    S.AUTHENTICATING: _AT_REST | {S.AWAITING_LOCAL_PASSWORD},
    S.AWAITING_LOCAL_PASSWORD: _AT_REST | {S.SIGNING},
    S.SIGNING: frozenset({S.SEALING, S.DEAUTHENTICATING}),
    S.SEALING: frozenset({S.AUTHENTICATED_CERTIFICATE, S.DEAUTHENTICATING}),
    S.DEAUTHENTICATING: frozenset({S.UNAUTHENTICATED}),
}


class UserProvisioner:
    """Drives register, authenticate, deauthorize and export for one local user.

    A certificate identity is built in several fallible steps (sign, seal,
    persist, settings update). Once a key has been generated, every exit
    other than reaching AUTHENTICATED_CERTIFICATE rolls back through
    deauthorize(), so the home directory never holds a half-provisioned
    identity.
    """

    def __init__(
        self,
        config: HubConfig,
        service: AccountService,
        settings: SettingsStore,
        terminal: Terminal,
        vault: CredentialVault | None = None,
    ) -> None:
        """Initialize provisioner with explicit collaborators.

        Args:
            config: Home directory, description and KDF settings
            service: Account service client
            settings: Store for token, email and org
            terminal: Prompts and user-facing messages
            vault: Credential vault (built from config when omitted)
        """
        self.config = config
        self.service = service
        self.settings = settings
        self.terminal = terminal
        self.vault = vault or CredentialVault(n=config.scrypt_n, r=config.scrypt_r, p=config.scrypt_p)
        self.state = self._stored_state()

    def register(self, username: str, email: str, password: str) -> CertificateIdentity:
        """Create an account, then provision a certificate identity for it.

        Raises:
            ValidationError: Service rejected the registration
            ProtocolError: Service answered with an unexpected account
        """
        prior = self._begin(S.REGISTERING)
        try:
            data = self.service.register(username, email, password)
            session = _session_from(data)
            if session is None or session != AccountSession(email=email, username=username):
                raise ProtocolError("account service returned an unexpected account for registration")
        except BaseException:
            self._transition(prior)
            raise

        self.terminal.info("Account created")
        return self._provision_certificate(session, password, prior)

    def authenticate(
        self,
        identifier: str,
        password: str,
        mode: AuthMode = AuthMode.TOKEN,
        note: str | None = None,
    ) -> Credential:
        """Authenticate with the account service and store the resulting credential.

        Token mode stores the issued token. Legacy peer mode, and a token-mode
        login answered with account details instead of a token, continue into
        certificate provisioning.

        Args:
            identifier: Username or email address
            password: Account password
            mode: AuthMode.TOKEN or AuthMode.LEGACY_PEER
            note: Note for the generated token (defaults to config.description)

        Returns:
            The Token or CertificateIdentity now stored locally
        """
        mode = AuthMode(mode)
        prior = self._begin(S.AUTHENTICATING)
        try:
            if mode is AuthMode.LEGACY_PEER:
                data = self.service.peer_auth(identifier, password)
            else:
                data = self.service.login(identifier, password, note or self.config.description)
            outcome = _classify_auth_response(data)
        except BaseException:
            self._transition(prior)
            raise

        if isinstance(outcome, Token):
            return self._store_token(outcome)
        return self._provision_certificate(outcome, password, prior)

    def deauthorize(self) -> None:
        """Forget the local credential: erase the vault and the stored identity fields.

        Idempotent, and never contacts the account service. Both the vault and
        the settings are attempted even when one fails; the first failure is
        raised once both have run.
        """
        self._transition(S.DEAUTHENTICATING)
        failures: list[HubUserError] = []
        try:
            for remove in (self._erase_vault, self._clear_identity_fields):
                try:
                    remove()
                except HubUserError as e:
                    LOGGER.error("Deauthorize step failed: %s", e, extra={"state": self.state.value})
                    failures.append(e)
        except BaseException:
            self._resync()
            raise

        if failures:
            self._resync()
            raise failures[0]
        self._transition(S.UNAUTHENTICATED)

    def export(self, local_password: str, destination_dir: Path | str | None = None) -> ExportResult:
        """Write cert.pem and key.pem from the vault into a compressed archive.

        Args:
            local_password: Password that protects the vault
            destination_dir: Output directory (defaults to the home directory)

        Returns:
            ExportResult with the archive path

        Raises:
            NotAuthenticatedError: No certificate identity is stored
            AuthenticationFailed: Wrong local password; nothing is written
        """
        record = self.vault.load(self.config.vault_path)
        if record is None:
            raise NotAuthenticatedError("no user certificate is stored")

        certificate_pem, private_key_pem = self.vault.open(record, local_password)

        directory = Path(destination_dir) if destination_dir else self.config.home_dir
        archive_path = directory / self.config.export_filename
        atomic_write(archive_path, build_cert_archive(certificate_pem, private_key_pem))
        LOGGER.info("Exported user certificate to %s", archive_path)
        return ExportResult(archive_path=archive_path)

    def current_credential(self) -> Credential:
        """Resolve the credential for API calls: configured token, stored token, then vault.

        Raises:
            NotAuthenticatedError: Nothing is stored
            AuthenticationFailed: Wrong local password for the vault
        """
        if self.config.token:
            return Token(self.config.token)

        token = self.settings.get("token")
        if token:
            return Token(token)

        record = self.vault.load(self.config.vault_path)
        if record is None:
            raise NotAuthenticatedError("not authenticated; run the auth command first")

        local_password = self.terminal.password("Local user password:")
        certificate_pem, private_key_pem = self.vault.open(record, local_password)
        cert = deserialize_certificate(certificate_pem)
        return CertificateIdentity(
            certificate_pem=certificate_pem,
            private_key_pem=private_key_pem,
            subject_org=extract_subject_org(cert),
        )

    def who_am_i(self) -> AccountSession:
        """Ask the account service who the current credential belongs to."""
        data = self.service.me(self.current_credential())
        session = _session_from(data)
        if session is None:
            raise ProtocolError("account service response has no username and email")
        return session

    def _store_token(self, token: Token) -> Token:
        # Vault before token: at most one credential on disk at every step
        try:
            self._erase_vault()
            self.settings.put("token", token.value)
        except BaseException:
            LOGGER.warning("Storing token failed, keeping what is on disk")
            self._resync()
            raise
        self._transition(S.AUTHENTICATED_TOKEN)
        self.terminal.info("Success")
        return token

    def _provision_certificate(
        self,
        session: AccountSession,
        account_password: str,
        prior: ProvisioningState,
    ) -> CertificateIdentity:
        """Generate a key, have it signed, and seal the result under a local password."""
        self._transition(S.AWAITING_LOCAL_PASSWORD)
        try:
            self._explain_local_password()
            local_password = self.terminal.password("Please enter a local password:")
            if not local_password:
                raise CryptoError("local password must not be empty")
        except BaseException:
            self._transition(prior)
            raise

        key = generate_private_key()
        with self._pending_identity():
            self._transition(S.SIGNING)
            csr = build_csr(key, session.username)
            data = self.service.sign(
                session.email,
                account_password,
                encode_csr_base64(csr),
                self.config.description,
            )
            certificate_pem = _certificate_from(data)
            cert = deserialize_certificate(certificate_pem)
            if not certificate_matches_key(cert, key):
                raise CryptoError("issued certificate does not match the generated key")
            subject_org = extract_subject_org(cert)

            self._transition(S.SEALING)
            private_key_pem = serialize_private_key(key)
            record = self.vault.seal(certificate_pem, private_key_pem, local_password)
            self.vault.persist(record, self.config.vault_path)
            self.settings.put("email", session.email)
            self.settings.put("org", session.username)
            self.settings.delete("token")
            self._transition(S.AUTHENTICATED_CERTIFICATE)

        self.terminal.info("Certificate created successfully.")
        return CertificateIdentity(
            certificate_pem=certificate_pem,
            private_key_pem=private_key_pem,
            subject_org=subject_org,
        )

    @contextmanager
    def _pending_identity(self) -> Iterator[None]:
        """Roll back to UNAUTHENTICATED unless the block completes."""
        try:
            yield
        except BaseException:
            LOGGER.warning(
                "Certificate provisioning failed in state %s, rolling back",
                self.state.value,
                extra={"state": self.state.value},
            )
            self._rollback()
            raise

    def _rollback(self) -> None:
        try:
            self.deauthorize()
        except HubUserError as e:
            LOGGER.error("Rollback failed: %s", e)

    def _erase_vault(self) -> None:
        self.vault.erase(self.config.vault_path)

    def _clear_identity_fields(self) -> None:
        self.settings.clear("token", "email", "org")

    def _explain_local_password(self) -> None:
        for line in (
            "",
            "Client-side SSL certificates can be used to authenticate CLI requests.",
            "",
            "The next step will create an SSL certificate and store it in your",
            f"'{self.config.home_dir}' directory. A password is required to protect it. This password",
            "does not need to be your account password. It will never be sent to the account service",
            "or any other computer. If you lose it, you will need to authenticate again",
            "and create a new certificate.",
            "",
        ):
            self.terminal.info(line)

    def _begin(self, state: ProvisioningState) -> ProvisioningState:
        prior = self.state
        self._transition(state)
        return prior

    def _transition(self, state: ProvisioningState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"cannot move from {self.state.value} to {state.value}")
        LOGGER.info(
            "Provisioning state %s -> %s",
            self.state.value,
            state.value,
            extra={"from_state": self.state.value, "to_state": state.value},
        )
        self.state = state

    def _resync(self) -> None:
        """Re-derive the resting state from local storage after a failed step."""
        self.state = self._stored_state()
        LOGGER.info("Provisioning state resynced to %s", self.state.value, extra={"state": self.state.value})

    def _stored_state(self) -> ProvisioningState:
        if self.settings.get("token"):
            return S.AUTHENTICATED_TOKEN
        if self.config.vault_path.exists():
            return S.AUTHENTICATED_CERTIFICATE
        return S.UNAUTHENTICATED


def build_cert_archive(certificate_pem: bytes, private_key_pem: bytes) -> bytes:
    """Build a gzip-compressed tar holding cert.pem and key.pem."""
    buffer = io.BytesIO()
    now = time.time()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in (("cert.pem", certificate_pem), ("key.pem", private_key_pem)):
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mode = 0o600
            info.mtime = now
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def _session_from(data: Mapping[str, Any]) -> AccountSession | None:
    email = data.get("email")
    username = data.get("username")
    if isinstance(email, str) and isinstance(username, str):
        return AccountSession(email=email, username=username)
    return None


def _classify_auth_response(data: Mapping[str, Any]) -> Token | AccountSession:
    """Map an auth response to a Token or, for certificate issuance, an AccountSession.

    Raises:
        ProtocolError: Payload is neither shape
    """
    token = data.get("token")
    if isinstance(token, str) and token:
        return Token(token)

    session = _session_from(data)
    if session is not None:
        return session

    raise ProtocolError("account service response has neither a token nor account details")


def _certificate_from(data: Mapping[str, Any]) -> bytes:
    cert = data.get("cert")
    if not isinstance(cert, str) or not cert:
        raise ProtocolError("account service response has no signed certificate")
    return cert.encode("utf-8")
