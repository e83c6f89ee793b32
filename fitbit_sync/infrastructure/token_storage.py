"""Infrastructure implementations of secret persistence."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from fitbit_sync.domain.token_storage import SecretStore
from fitbit_sync.infrastructure.json_files import write_json_atomic
from fitbit_sync.infrastructure.log_utils import log_message


class JsonFileSecretStore(SecretStore):
    """Persist secrets as a flat JSON object readable only by the owner.

    Every change replaces the whole file atomically, so a token set written
    through :meth:`set_many` is either fully stored or not stored at all.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._read().get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, str]) -> None:
        with self._lock:
            data = self._read()
            data.update(values)
            self._write(data)

    def clear(self, keys: Iterable[str]) -> None:
        with self._lock:
            data = self._read()
            removed = [key for key in keys if data.pop(key, None) is not None]
            if removed or self._path.exists():
                self._write(data)

    def _read(self) -> Dict[str, object]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            log_message(f"Failed to read secrets from {self._path}: {exc}", "WARN")
            return {}
        if not isinstance(data, dict):
            log_message(f"Ignoring malformed secret file {self._path}.", "WARN")
            return {}
        return data

    def _write(self, data: Dict[str, object]) -> None:
        write_json_atomic(self._path, data, what="Fitbit tokens")


__all__ = ["JsonFileSecretStore"]
