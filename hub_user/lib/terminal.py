"""Terminal interaction: prompts, masked passwords and error rendering."""

import getpass
import sys
from collections.abc import Mapping
from typing import Protocol, TextIO

from .errors import HubUserError, ValidationError


class Terminal(Protocol):
    """What the provisioning state machine and commands need from the user's terminal."""

    def prompt(self, message: str) -> str: ...

    def password(self, message: str) -> str: ...

    def confirm(self, message: str) -> bool: ...

    def info(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...

    def render_error(self, error: HubUserError) -> None: ...


class ConsoleTerminal:
    """Terminal backed by stdin/stdout, with getpass for passwords."""

    def __init__(self, out: TextIO | None = None, err: TextIO | None = None) -> None:
        self.out = out or sys.stdout
        self.err = err or sys.stderr

    def prompt(self, message: str) -> str:
        return input(f"{message} ").strip()

    def password(self, message: str) -> str:
        return getpass.getpass(f"{message} ")

    def confirm(self, message: str) -> bool:
        answer = input(f"{message} [y/N] ").strip().lower()
        return answer in ("y", "yes")

    def info(self, message: str) -> None:
        print(message, file=self.out)

    def error(self, message: str) -> None:
        print(message, file=self.err)

    def render_error(self, error: HubUserError) -> None:
        for line in format_error(error):
            self.error(line)


def format_error(error: HubUserError) -> list[str]:
    """Render an error as display lines; validation errors are shown field by field."""
    if isinstance(error, ValidationError):
        lines = ["Account service rejected the request:"]
        if isinstance(error.errors, Mapping):
            for field, messages in error.errors.items():
                if isinstance(messages, (list, tuple)):
                    messages = ", ".join(str(m) for m in messages)
                lines.append(f"  {field}: {messages}")
        else:
            lines.extend(f"  {message}" for message in error.errors)
        return lines

    return [f"Error: {error}"]
