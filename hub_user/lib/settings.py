"""Non-secret account settings persisted as JSON in the hub home directory."""

import json
from pathlib import Path

from .errors import StorageError
from .vault import atomic_write

RECOGNIZED_KEYS = frozenset({"token", "email", "org"})


class SettingsStore:
    """Key/value store for the stored token, email and org."""

    def __init__(self, path: Path) -> None:
        """Initialize settings store.

        Args:
            path: JSON file holding the settings (created on first write)
        """
        self.path = path

    def get(self, key: str) -> str | None:
        """Return stored value for key, or None."""
        _check_key(key)
        return self._read().get(key)

    def put(self, key: str, value: str) -> None:
        """Store value for key."""
        _check_key(key)
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        """Remove key if present."""
        self.clear(key)

    def clear(self, *keys: str) -> None:
        """Remove the given keys (all recognized keys when none are given)."""
        for key in keys:
            _check_key(key)
        data = self._read()
        targets = keys or tuple(RECOGNIZED_KEYS)
        if not any(key in data for key in targets):
            return
        for key in targets:
            data.pop(key, None)
        self._write(data)

    def _read(self) -> dict[str, str]:
        try:
            document = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageError(f"cannot read settings {self.path}: {e}") from e

        try:
            data = json.loads(document)
        except json.JSONDecodeError as e:
            raise StorageError(f"malformed settings file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"malformed settings file {self.path}: expected an object")
        return data

    def _write(self, data: dict[str, str]) -> None:
        atomic_write(self.path, json.dumps(data, indent=2, sort_keys=True).encode("utf-8"))


def _check_key(key: str) -> None:
    if key not in RECOGNIZED_KEYS:
        raise ValueError(f"unknown settings key: {key}")
