"""Account service client: register, login, peer auth, certificate signing, whoami."""

import json
import ssl
import tempfile
import urllib.error
import urllib.request
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from .errors import CryptoError, ProtocolError, ServiceError, ValidationError
from .logging_config import LOGGER
from .models import CertificateIdentity, Credential, Token


class AccountService(Protocol):
    """Operations the provisioning state machine needs from the account service.

    Each method returns the response `data` object.
    """

    def register(self, username: str, email: str, password: str) -> Mapping[str, Any]: ...

    def login(self, identifier: str, password: str, note: str | None = None) -> Mapping[str, Any]: ...

    def peer_auth(self, identifier: str, password: str) -> Mapping[str, Any]: ...

    def sign(self, email: str, password: str, csr_base64: str, description: str) -> Mapping[str, Any]: ...

    def me(self, credential: Credential) -> Mapping[str, Any]: ...


class HttpAccountService:
    """JSON-over-HTTPS implementation of AccountService using urllib."""

    def __init__(self, api_url: str, timeout: float = 30.0) -> None:
        """Initialize HTTP client.

        Args:
            api_url: Base URL of the account service API
            timeout: Per-request timeout in seconds
        """
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def register(self, username: str, email: str, password: str) -> Mapping[str, Any]:
        return self._request(
            "POST",
            "/users/register",
            {"username": username, "email": email, "password": password},
        )

    def login(self, identifier: str, password: str, note: str | None = None) -> Mapping[str, Any]:
        body = {"username_or_email": identifier, "password": password}
        if note:
            body["note"] = note
        return self._request("POST", "/users/login", body)

    def peer_auth(self, identifier: str, password: str) -> Mapping[str, Any]:
        return self._request(
            "POST",
            "/users/auth",
            {"username_or_email": identifier, "password": password},
        )

    def sign(self, email: str, password: str, csr_base64: str, description: str) -> Mapping[str, Any]:
        return self._request(
            "POST",
            "/users/sign",
            {
                "email": email,
                "password": password,
                "csr": csr_base64,
                "description": description,
            },
        )

    def me(self, credential: Credential) -> Mapping[str, Any]:
        if isinstance(credential, Token):
            return self._request(
                "GET",
                "/users/me",
                headers={"Authorization": f"token {credential.value}"},
            )

        with tempfile.TemporaryDirectory(prefix="hub-user-") as tmp_dir:
            return self._request("GET", "/users/me", context=_client_ssl_context(credential, Path(tmp_dir)))

    def _request(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        context: ssl.SSLContext | None = None,
    ) -> Mapping[str, Any]:
        """Send one request and return the `data` object of the JSON response.

        Raises:
            ValidationError: Service answered with a JSON `errors` object
            ServiceError: Any other HTTP failure, timeout or connection error
            ProtocolError: Response is not JSON or carries no `data` object
        """
        url = f"{self.api_url}{path}"
        request_headers = {"Accept": "application/json", **(headers or {})}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            request_headers["Content-Type"] = "application/json"

        LOGGER.info("%s %s", method, url, extra={"method": method, "path": path})
        req = urllib.request.Request(url, data=data, headers=request_headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout, context=context) as response:
                raw = response.read()
        except urllib.error.HTTPError as e:
            LOGGER.info("%s %s returned HTTP %s", method, path, e.code, extra={"path": path, "status": e.code})
            raise _error_from_response(e) from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise ServiceError(f"cannot reach account service at {url}: {e}") from e

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProtocolError(f"account service returned non-JSON response for {path}") from e

        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise ProtocolError(f"account service response for {path} has no data object")
        return payload["data"]


def _error_from_response(error: urllib.error.HTTPError) -> ServiceError:
    """Map an HTTP error response to ValidationError or ServiceError."""
    try:
        payload = json.loads(error.read().decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, OSError):
        payload = None

    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, (dict, list)):
            return ValidationError(errors, status=error.code)
        if isinstance(errors, str):
            return ValidationError([errors], status=error.code)

    return ServiceError(f"account service returned HTTP {error.code}", status=error.code)


def _client_ssl_context(identity: CertificateIdentity, workdir: Path) -> ssl.SSLContext:
    """Build a client TLS context presenting the user certificate.

    ssl only loads key material from files, so the pair is written to an
    owner-only temporary directory that the caller removes.
    """
    cert_path = workdir / "cert.pem"
    key_path = workdir / "key.pem"
    cert_path.write_bytes(identity.certificate_pem)
    key_path.touch(mode=0o600)
    key_path.write_bytes(identity.private_key_pem)

    context = ssl.create_default_context()
    try:
        context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    except ssl.SSLError as e:
        raise CryptoError(f"cannot load user certificate for peer auth: {e}") from e
    return context
