"""JSON-file persistence for per-metric cursors and seen identifiers."""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from fitbit_sync.domain.dedup_ledger import SyncStateRepository
from fitbit_sync.domain.metrics import MetricKind
from fitbit_sync.infrastructure import log_utils
from fitbit_sync.infrastructure.json_files import write_json_atomic


class JsonFileSyncStateStore(SyncStateRepository):
    """Keeps ``{"cursors": {...}, "seen": {...}}`` in a single JSON document.

    Every save rewrites the document through a temporary file and
    ``os.replace`` so a crash never leaves a half-written state file.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._document: Optional[Dict[str, Dict[str, Any]]] = None

    @property
    def path(self) -> Path:
        return self._path

    def load_seen(self, metric: MetricKind) -> List[str]:
        with self._lock:
            stored = self._load().get("seen", {}).get(metric.value, [])
        return [str(item) for item in stored] if isinstance(stored, list) else []

    def save_seen(self, metric: MetricKind, identifiers: Sequence[str]) -> None:
        with self._lock:
            document = self._load()
            document.setdefault("seen", {})[metric.value] = list(identifiers)
            self._flush(document)

    def load_cursor(self, metric: MetricKind) -> Optional[datetime]:
        with self._lock:
            raw = self._load().get("cursors", {}).get(metric.value)
        if not raw:
            return None
        try:
            value = datetime.fromisoformat(str(raw))
        except ValueError:
            log_utils.warn(f"Discarding unparsable cursor for {metric.value}: {raw!r}")
            return None
        if value.tzinfo is None:
            log_utils.warn(f"Discarding naive cursor for {metric.value}: {raw!r}")
            return None
        return value

    def save_cursor(self, metric: MetricKind, timestamp: datetime) -> None:
        with self._lock:
            document = self._load()
            document.setdefault("cursors", {})[metric.value] = timestamp.isoformat()
            self._flush(document)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._document is not None:
            return self._document
        document: Dict[str, Dict[str, Any]] = {"cursors": {}, "seen": {}}
        if self._path.exists():
            try:
                with self._path.open("r", encoding="utf-8") as handle:
                    raw = json.load(handle)
            except (OSError, ValueError) as exc:
                log_utils.warn(f"Sync state file {self._path} unreadable, starting fresh: {exc}")
                raw = {}
            if isinstance(raw, dict):
                for section in ("cursors", "seen"):
                    if isinstance(raw.get(section), dict):
                        document[section] = raw[section]
        self._document = document
        return document

    def _flush(self, document: Dict[str, Dict[str, Any]]) -> None:
        write_json_atomic(self._path, document, what="sync state")


__all__ = ["JsonFileSyncStateStore"]
