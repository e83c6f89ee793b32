"""Owner-only JSON documents written through a temporary file and ``os.replace``."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from fitbit_sync.domain.exceptions import StateStoreError
from fitbit_sync.infrastructure import log_utils

FILE_MODE = 0o600


def write_json_atomic(path: Path, document: Any, *, what: str) -> None:
    """Replace ``path`` with ``document``; readers see the old or the new file, never a mix.

    Any ``OSError`` is raised as :class:`StateStoreError`.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    except OSError as exc:
        log_utils.error(f"Cannot write {what} to {path}: {exc}")
        raise StateStoreError(f"Cannot write {what} to {path}: {exc}") from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, FILE_MODE)
        os.replace(tmp_name, path)
    except OSError as exc:
        _discard(tmp_name)
        log_utils.error(f"Cannot write {what} to {path}: {exc}")
        raise StateStoreError(f"Cannot write {what} to {path}: {exc}") from exc
    except BaseException:
        _discard(tmp_name)
        raise


def _discard(tmp_name: str) -> None:
    try:
        os.unlink(tmp_name)
    except OSError:
        pass


__all__ = ["FILE_MODE", "write_json_atomic"]
