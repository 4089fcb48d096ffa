"""Tests for HttpAccountService."""

import io
import json
import ssl
import urllib.error
from collections.abc import Generator
from unittest.mock import MagicMock, patch

import pytest

from hub_user.lib.account_service import HttpAccountService
from hub_user.lib.cert_utils import generate_private_key, serialize_private_key
from hub_user.lib.errors import CryptoError, ProtocolError, ServiceError, ValidationError
from hub_user.lib.models import CertificateIdentity, Token


@pytest.fixture
def mock_urlopen() -> Generator[MagicMock]:
    with patch("hub_user.lib.account_service.urllib.request.urlopen") as mock:
        mock.return_value.__enter__.return_value.read.return_value = b'{"data": {}}'
        yield mock


@pytest.fixture
def service() -> HttpAccountService:
    return HttpAccountService("https://hub.test/", timeout=5)


def _respond(mock_urlopen: MagicMock, payload: object) -> None:
    mock_urlopen.return_value.__enter__.return_value.read.return_value = json.dumps(payload).encode()


def _sent_request(mock_urlopen: MagicMock):
    return mock_urlopen.call_args.args[0]


def _http_error(status: int, body: bytes) -> urllib.error.HTTPError:
    return urllib.error.HTTPError("https://hub.test/users/login", status, "error", {}, io.BytesIO(body))


class TestRequests:
    """Request shapes for each account operation."""

    def test_register_posts_account_fields(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """register() posts username, email and password as JSON."""
        _respond(mock_urlopen, {"data": {"email": "a@x.com", "username": "alice"}})

        data = service.register("alice", "a@x.com", "pw123456")

        request = _sent_request(mock_urlopen)
        assert request.full_url == "https://hub.test/users/register"
        assert request.get_method() == "POST"
        assert request.get_header("Content-type") == "application/json"
        assert json.loads(request.data) == {"username": "alice", "email": "a@x.com", "password": "pw123456"}
        assert data == {"email": "a@x.com", "username": "alice"}
        assert mock_urlopen.call_args.kwargs["timeout"] == 5

    def test_login_includes_note(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """login() sends the token note when given."""
        _respond(mock_urlopen, {"data": {"token": "nhu_secret"}})

        assert service.login("alice", "pw", "laptop") == {"token": "nhu_secret"}

        request = _sent_request(mock_urlopen)
        assert request.full_url == "https://hub.test/users/login"
        assert json.loads(request.data) == {"username_or_email": "alice", "password": "pw", "note": "laptop"}

    def test_login_without_note(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """No note key is sent when the note is empty."""
        service.login("alice", "pw")
        assert "note" not in json.loads(_sent_request(mock_urlopen).data)

    def test_peer_auth_posts_to_auth(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """peer_auth() uses the legacy auth endpoint."""
        service.peer_auth("a@x.com", "pw")

        request = _sent_request(mock_urlopen)
        assert request.full_url == "https://hub.test/users/auth"
        assert json.loads(request.data) == {"username_or_email": "a@x.com", "password": "pw"}

    def test_sign_posts_csr_and_description(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """sign() sends email, password, base64 CSR and description."""
        _respond(mock_urlopen, {"data": {"cert": "-----BEGIN CERTIFICATE-----"}})

        service.sign("a@x.com", "pw", "Q1NS", "tester@laptop")

        request = _sent_request(mock_urlopen)
        assert request.full_url == "https://hub.test/users/sign"
        assert json.loads(request.data) == {
            "email": "a@x.com",
            "password": "pw",
            "csr": "Q1NS",
            "description": "tester@laptop",
        }

    def test_me_with_token_sets_authorization(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """Token credentials go in the Authorization header of a GET."""
        _respond(mock_urlopen, {"data": {"username": "alice", "email": "a@x.com"}})

        service.me(Token("nhu_secret"))

        request = _sent_request(mock_urlopen)
        assert request.get_method() == "GET"
        assert request.full_url == "https://hub.test/users/me"
        assert request.get_header("Authorization") == "token nhu_secret"
        assert request.data is None

    def test_me_with_certificate_uses_client_context(
        self,
        service: HttpAccountService,
        mock_urlopen: MagicMock,
        user_pems: tuple[bytes, bytes],
    ) -> None:
        """Certificate credentials are presented through a TLS client context."""
        cert_pem, key_pem = user_pems

        service.me(CertificateIdentity(cert_pem, key_pem, "alice"))

        assert isinstance(mock_urlopen.call_args.kwargs["context"], ssl.SSLContext)
        assert _sent_request(mock_urlopen).get_header("Authorization") is None

    def test_me_with_mismatched_certificate(
        self,
        service: HttpAccountService,
        mock_urlopen: MagicMock,
        user_pems: tuple[bytes, bytes],
    ) -> None:
        """A key that does not belong to the certificate cannot be loaded."""
        cert_pem, _ = user_pems
        stranger = serialize_private_key(generate_private_key())

        with pytest.raises(CryptoError):
            service.me(CertificateIdentity(cert_pem, stranger, "alice"))
        mock_urlopen.assert_not_called()


class TestErrors:
    """Error mapping for failed requests."""

    def test_field_errors_become_validation_error(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """A JSON errors object maps to ValidationError with the fields."""
        mock_urlopen.side_effect = _http_error(422, b'{"errors": {"email": ["has already been taken"]}}')

        with pytest.raises(ValidationError) as exc_info:
            service.register("alice", "a@x.com", "pw")

        assert exc_info.value.errors == {"email": ["has already been taken"]}
        assert exc_info.value.status == 422

    def test_string_error_becomes_validation_error(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """A plain error string is wrapped in a list."""
        mock_urlopen.side_effect = _http_error(401, b'{"errors": "Authentication failed"}')

        with pytest.raises(ValidationError) as exc_info:
            service.login("alice", "wrong")

        assert exc_info.value.errors == ["Authentication failed"]

    def test_opaque_http_error_is_service_error(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """HTTP failures without an errors body are opaque ServiceErrors."""
        mock_urlopen.side_effect = _http_error(502, b"<html>bad gateway</html>")

        with pytest.raises(ServiceError) as exc_info:
            service.login("alice", "pw")

        assert not isinstance(exc_info.value, ValidationError)
        assert exc_info.value.status == 502

    def test_connection_failure_is_service_error(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """Unreachable service raises ServiceError."""
        mock_urlopen.side_effect = urllib.error.URLError("connection refused")

        with pytest.raises(ServiceError, match="cannot reach"):
            service.login("alice", "pw")

    def test_timeout_is_service_error(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """Transport timeouts surface as ServiceError."""
        mock_urlopen.side_effect = TimeoutError("timed out")

        with pytest.raises(ServiceError):
            service.login("alice", "pw")

    def test_non_json_response_is_protocol_error(self, service: HttpAccountService, mock_urlopen: MagicMock) -> None:
        """A 200 that is not JSON is a protocol error."""
        mock_urlopen.return_value.__enter__.return_value.read.return_value = b"<html>ok</html>"

        with pytest.raises(ProtocolError):
            service.login("alice", "pw")

    @pytest.mark.parametrize("payload", [{"token": "x"}, {"data": "x"}, ["data"]])
    def test_missing_data_object_is_protocol_error(
        self,
        service: HttpAccountService,
        mock_urlopen: MagicMock,
        payload: object,
    ) -> None:
        """Responses must wrap their result in a data object."""
        _respond(mock_urlopen, payload)

        with pytest.raises(ProtocolError, match="no data object"):
            service.login("alice", "pw")
