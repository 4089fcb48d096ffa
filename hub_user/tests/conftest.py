"""Test fixtures for hub_user tests."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePrivateKey

from hub_user.lib.cert_utils import (
    build_csr,
    generate_private_key,
    serialize_certificate,
    serialize_private_key,
)
from hub_user.lib.config import HubConfig
from hub_user.lib.provisioning import UserProvisioner
from hub_user.lib.settings import SettingsStore
from hub_user.lib.vault import CredentialVault
from hub_user.tests.fakes import ScriptedTerminal, SigningCA


@pytest.fixture(scope="session")
def signing_ca() -> SigningCA:
    """Return issuing CA shared across tests."""
    return SigningCA()


@pytest.fixture
def hub_config(tmp_path: Path) -> HubConfig:
    """Return config rooted in a temporary home with cheap Scrypt cost."""
    return HubConfig(
        home_dir=tmp_path / "hub",
        api_url="https://hub.test",
        description="tester@laptop",
        scrypt_n=2**4,  # Faster for tests
    )


@pytest.fixture
def vault(hub_config: HubConfig) -> CredentialVault:
    """Return vault with the test Scrypt cost."""
    return CredentialVault(n=hub_config.scrypt_n, r=hub_config.scrypt_r, p=hub_config.scrypt_p)


@pytest.fixture
def settings(hub_config: HubConfig) -> SettingsStore:
    """Return settings store in the temporary home."""
    return SettingsStore(hub_config.settings_path)


@pytest.fixture
def terminal() -> ScriptedTerminal:
    """Return scripted terminal."""
    return ScriptedTerminal()


@pytest.fixture
def account_service(signing_ca: SigningCA) -> MagicMock:
    """Return mocked account service whose `sign` issues real certificates."""
    service = MagicMock()
    service.sign.side_effect = signing_ca.sign
    return service


@pytest.fixture
def provisioner(
    hub_config: HubConfig,
    account_service: MagicMock,
    settings: SettingsStore,
    terminal: ScriptedTerminal,
    vault: CredentialVault,
) -> UserProvisioner:
    """Return provisioner wired to the fakes above."""
    return UserProvisioner(
        config=hub_config,
        service=account_service,
        settings=settings,
        terminal=terminal,
        vault=vault,
    )


@pytest.fixture
def user_key() -> EllipticCurvePrivateKey:
    """Generate EC private key for a user."""
    return generate_private_key()


@pytest.fixture
def user_cert(signing_ca: SigningCA, user_key: EllipticCurvePrivateKey) -> x509.Certificate:
    """Return certificate for O=alice issued by the test CA."""
    return signing_ca.issue(build_csr(user_key, "alice"))


@pytest.fixture
def user_pems(user_cert: x509.Certificate, user_key: EllipticCurvePrivateKey) -> tuple[bytes, bytes]:
    """Return (certificate_pem, private_key_pem) for alice."""
    return serialize_certificate(user_cert), serialize_private_key(user_key)
