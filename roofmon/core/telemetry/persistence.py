from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

from roofmon.core.config.io import atomic_write_json, read_json_file
from roofmon.core.errors import PersistenceError
from roofmon.core.telemetry.redaction import telemetry_redact


class SnapshotStore:
    """Capability interface for the best-effort local snapshot of recent errors/alerts."""

    def save(self, *, errors: List[Dict[str, Any]], alerts: List[Dict[str, Any]]) -> None:
        return None

    def load(self) -> Optional[Dict[str, Any]]:
        return None


class NullSnapshotStore(SnapshotStore):
    pass


class JsonSnapshotStore(SnapshotStore):
    """
    Local JSON key-value snapshot: {"errors": [...], "alerts": [...], "timestamp": ...}.
    Never authoritative; a failed write raises PersistenceError for the caller to log.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def save(self, *, errors: List[Dict[str, Any]], alerts: List[Dict[str, Any]]) -> None:
        payload = {"errors": telemetry_redact(errors), "alerts": telemetry_redact(alerts), "timestamp": time.time()}
        try:
            with self._lock:
                atomic_write_json(self.path, payload)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(path=self.path, error=str(e)) from e

    def load(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            rr = read_json_file(self.path)
        if not rr.ok:
            return None
        return rr.data
