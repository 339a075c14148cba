"""
knowledge_base/storage/json_backend.py

Embedded single-file store.

The whole store is one JSON document kept in memory and rewritten
atomically (temp file + rename) after every change, so a crash leaves
either the old or the new file, never a torn one. The in-memory copy is
only replaced once the rename succeeded. Suited to small
installs and to tests; the SQLite backend is the desktop default.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from knowledge_base.core.logger import get_logger
from knowledge_base.storage.base import Filters, Record, StorageBackend, matches

logger = get_logger(__name__)

_FORMAT_VERSION = 1


class JsonFileBackend(StorageBackend):
    """StorageBackend persisting every namespace into a single JSON file."""

    name = "json"

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data: Optional[Dict[str, Dict[str, Record]]] = None

    # ── File handling ──────────────────────────────────────────────────────────

    def _state(self) -> Dict[str, Dict[str, Record]]:
        """Return the in-memory state, reading the file on first access."""
        if self._data is None:
            if self._path.exists():
                raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
                self._data = raw.get("namespaces", {})
                logger.info("Loaded JSON store '%s' (%d namespace(s)).", self._path, len(self._data))
            else:
                self._data = {}
        return self._data

    def _commit(self, state: Dict[str, Dict[str, Record]]) -> None:
        """Write ``state`` to disk, then make it the in-memory state."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": _FORMAT_VERSION, "namespaces": state}
        fd, tmp = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False)
            os.replace(tmp, self._path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        self._data = state

    def _with_bucket(self, namespace: str, bucket: Dict[str, Record]) -> Dict[str, Dict[str, Record]]:
        state = dict(self._state())
        state[namespace] = bucket
        return state

    # ── Primitives ─────────────────────────────────────────────────────────────

    def _load(self, namespace: str, filters: Filters) -> List[Record]:
        with self._lock:
            records = self._state().get(namespace, {}).values()
            return [dict(r) for r in records if matches(r, filters)]

    def _get(self, namespace: str, record_id: str) -> Optional[Record]:
        with self._lock:
            record = self._state().get(namespace, {}).get(record_id)
            return dict(record) if record is not None else None

    def _save_many(self, namespace: str, records: List[Record]) -> None:
        with self._lock:
            bucket = dict(self._state().get(namespace, {}))
            for record in records:
                # Round-trip through JSON so stored values never alias caller objects.
                bucket[record["id"]] = json.loads(json.dumps(record))
            self._commit(self._with_bucket(namespace, bucket))

    def _delete(self, namespace: str, record_id: str) -> bool:
        with self._lock:
            bucket = dict(self._state().get(namespace, {}))
            if bucket.pop(record_id, None) is None:
                return False
            self._commit(self._with_bucket(namespace, bucket))
            return True

    def _delete_where(self, namespace: str, filters: Filters) -> int:
        with self._lock:
            bucket = self._state().get(namespace, {})
            kept = {rid: r for rid, r in bucket.items() if not matches(r, filters)}
            removed = len(bucket) - len(kept)
            if removed:
                self._commit(self._with_bucket(namespace, kept))
            return removed

    def _clear(self, namespace: Optional[str]) -> None:
        with self._lock:
            state = {} if namespace is None else {
                ns: bucket for ns, bucket in self._state().items() if ns != namespace
            }
            self._commit(state)

    def _namespaces(self) -> List[str]:
        with self._lock:
            return sorted(ns for ns, bucket in self._state().items() if bucket)

    def _info(self) -> Dict[str, Any]:
        size = self._path.stat().st_size if self._path.exists() else 0
        return {"location": str(self._path), "size_bytes": size}
