"""Hub user configuration dataclass."""

import getpass
import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_API_URL = "https://api.nerves-hub.org"


def default_description() -> str:
    """Describe this client as user@hostname for tokens and certificates."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


@dataclass
class HubConfig:
    """Configuration for the provisioning state machine.

    Everything the core needs from the process environment is carried here,
    so tests can build one against a temporary directory.
    """

    home_dir: Path = field(default_factory=lambda: Path.home() / ".hub")
    api_url: str = DEFAULT_API_URL
    description: str = field(default_factory=default_description)
    token: str | None = None
    timeout: float = 30.0
    scrypt_n: int = 2**15
    scrypt_r: int = 8
    scrypt_p: int = 1
    vault_filename: str = "user.vault"
    settings_filename: str = "settings.json"
    export_filename: str = "hub-certs.tar.gz"

    @property
    def vault_path(self) -> Path:
        """Location of the encrypted certificate/key record."""
        return self.home_dir / self.vault_filename

    @property
    def settings_path(self) -> Path:
        """Location of the non-secret settings file."""
        return self.home_dir / self.settings_filename

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "HubConfig":
        """Build configuration from HUB_HOME, HUB_API_URL and HUB_TOKEN/NH_TOKEN.

        Args:
            environ: Environment mapping (defaults to os.environ)

        Returns:
            HubConfig with environment overrides applied
        """
        env = os.environ if environ is None else environ
        config = cls()

        home = env.get("HUB_HOME")
        if home:
            config.home_dir = Path(home).expanduser()

        api_url = env.get("HUB_API_URL")
        if api_url:
            config.api_url = api_url.rstrip("/")

        token = env.get("HUB_TOKEN") or env.get("NH_TOKEN")
        if token:
            config.token = token

        return config
