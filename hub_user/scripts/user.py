#!/usr/bin/env python3
"""Manage your hub user account: whoami, register, auth, deauth, cert export.

Users are authenticated to the hub API with an access token presented in each
request. The token can be supplied with the HUB_TOKEN (or NH_TOKEN)
environment variable, or created with `hub-user auth` and saved in the
settings file under $HUB_HOME.

Legacy authentication presents a client certificate instead. `hub-user auth
--use-peer-auth` generates a key, has the account service sign it, and stores
certificate and key in $HUB_HOME encrypted under a local password.
"""

import argparse
import logging
import sys
from collections.abc import Sequence

from hub_user.lib.account_service import HttpAccountService
from hub_user.lib.config import HubConfig
from hub_user.lib.errors import HubUserError
from hub_user.lib.logging_config import LOGGER, set_log_level
from hub_user.lib.models import AuthMode
from hub_user.lib.provisioning import UserProvisioner
from hub_user.lib.settings import SettingsStore
from hub_user.lib.terminal import ConsoleTerminal, Terminal


def whoami(provisioner: UserProvisioner, terminal: Terminal, args: argparse.Namespace) -> None:
    session = provisioner.who_am_i()
    terminal.info(f"username: {session.username}")
    terminal.info(f"email:    {session.email}")


def register(provisioner: UserProvisioner, terminal: Terminal, args: argparse.Namespace) -> None:
    email = terminal.prompt("Email address:")
    username = terminal.prompt("Username:")
    password = terminal.password("Account password:").strip()
    confirm = terminal.password("Account password (confirm):").strip()

    if password != confirm:
        raise HubUserError("Entered passwords do not match")

    terminal.info("Registering account...")
    provisioner.register(username, email, password)


def auth(provisioner: UserProvisioner, terminal: Terminal, args: argparse.Namespace) -> None:
    identifier = terminal.prompt("Username or email address:")
    password = terminal.password("Account password:").strip()
    terminal.info("Authenticating...")

    mode = AuthMode.LEGACY_PEER if args.use_peer_auth else AuthMode.TOKEN
    provisioner.authenticate(identifier, password, mode=mode, note=args.note)


def deauth(provisioner: UserProvisioner, terminal: Terminal, args: argparse.Namespace) -> None:
    if terminal.confirm("Deauthorize the current user?"):
        provisioner.deauthorize()
        terminal.info("User deauthorized")


def cert_export(provisioner: UserProvisioner, terminal: Terminal, args: argparse.Namespace) -> None:
    password = terminal.password("Local user password:")
    result = provisioner.export(password, args.path)
    terminal.info(f"User certs exported to: {result.archive_path}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all user subcommands."""
    parser = argparse.ArgumentParser(prog="hub-user", description="Manage your hub user account")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Emit JSON diagnostic logs to stderr",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("whoami", help="Show the current user").set_defaults(handler=whoami)
    subparsers.add_parser("register", help="Create an account and a user certificate").set_defaults(
        handler=register
    )

    auth_parser = subparsers.add_parser("auth", help="Authenticate and store a token or certificate")
    auth_parser.add_argument(
        "--note",
        default=None,
        help="Note for the generated access token (default: user@hostname)",
    )
    auth_parser.add_argument(
        "--use-peer-auth",
        action="store_true",
        help="Use client certificate authentication instead of a token (legacy)",
    )
    auth_parser.set_defaults(handler=auth)

    subparsers.add_parser("deauth", help="Forget the local credential").set_defaults(handler=deauth)

    cert_parser = subparsers.add_parser("cert", help="User certificate operations")
    cert_subparsers = cert_parser.add_subparsers(dest="cert_command", required=True)
    export_parser = cert_subparsers.add_parser("export", help="Export cert.pem and key.pem as tar.gz")
    export_parser.add_argument(
        "--path",
        default=None,
        help="Directory for the exported archive (default: $HUB_HOME)",
    )
    export_parser.set_defaults(handler=cert_export)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run one user subcommand.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    args = build_parser().parse_args(argv)
    if args.verbose:
        set_log_level(logging.INFO)

    terminal = ConsoleTerminal()
    try:
        config = HubConfig.from_env()
        terminal.info(f"API endpoint: {config.api_url}")

        provisioner = UserProvisioner(
            config=config,
            service=HttpAccountService(config.api_url, timeout=config.timeout),
            settings=SettingsStore(config.settings_path),
            terminal=terminal,
        )
        args.handler(provisioner, terminal, args)
        return 0

    except HubUserError as e:
        LOGGER.error("%s failed: %s", args.command, e, extra={"command": args.command})
        terminal.render_error(e)
        return 1
    except (KeyboardInterrupt, EOFError):
        terminal.error("Aborted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
