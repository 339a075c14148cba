"""
knowledge_base/storage/sqlite_backend.py

Desktop database store on top of the standard library's sqlite3.

Records are kept as JSON text in a single ``records`` table keyed by
(namespace, id); equality filters are pushed down with ``json_extract``.
A fresh connection is opened per operation so worker threads never
share one, and WAL mode lets readers proceed during a write.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from knowledge_base.core.logger import get_logger
from knowledge_base.models.entities import now_ms
from knowledge_base.storage.base import Filters, Record, StorageBackend

logger = get_logger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS records (
  namespace TEXT NOT NULL,
  id TEXT NOT NULL,
  data TEXT NOT NULL,
  updated_at INTEGER NOT NULL,
  PRIMARY KEY (namespace, id)
);

CREATE INDEX IF NOT EXISTS idx_records_namespace ON records(namespace);
"""


def _where(namespace: str, filters: Filters) -> Tuple[str, List[Any]]:
    clauses = ["namespace = ?"]
    params: List[Any] = [namespace]
    for key, value in filters.items():
        if not key.replace("_", "").isalnum():
            raise ValueError(f"Invalid filter field: {key!r}")
        if value is None:
            clauses.append(f"json_extract(data, '$.{key}') IS NULL")
        else:
            clauses.append(f"json_extract(data, '$.{key}') = ?")
            # JSON booleans come back from json_extract as 0/1.
            params.append(int(value) if isinstance(value, bool) else value)
    return " AND ".join(clauses), params


class SQLiteBackend(StorageBackend):
    """StorageBackend persisting records into a SQLite database file."""

    name = "sqlite"

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as con:
            con.executescript(SCHEMA_SQL)
        logger.info("SQLite store ready at '%s'.", self._path)

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self._path), timeout=30)
        con.execute("PRAGMA foreign_keys=ON")
        return con

    # ── Primitives ─────────────────────────────────────────────────────────────

    def _load(self, namespace: str, filters: Filters) -> List[Record]:
        where, params = _where(namespace, filters)
        with closing(self._connect()) as con:
            rows = con.execute(
                f"SELECT data FROM records WHERE {where} ORDER BY rowid", params
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def _get(self, namespace: str, record_id: str) -> Optional[Record]:
        with closing(self._connect()) as con:
            row = con.execute(
                "SELECT data FROM records WHERE namespace = ? AND id = ?",
                (namespace, record_id),
            ).fetchone()
        return json.loads(row[0]) if row else None

    def _save_many(self, namespace: str, records: List[Record]) -> None:
        rows = [
            (
                namespace,
                record["id"],
                json.dumps(record, ensure_ascii=False),
                int(record.get("updated_at") or now_ms()),
            )
            for record in records
        ]
        with closing(self._connect()) as con, con:
            con.executemany(
                "INSERT INTO records (namespace, id, data, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(namespace, id) DO UPDATE SET "
                "data = excluded.data, updated_at = excluded.updated_at",
                rows,
            )

    def _delete(self, namespace: str, record_id: str) -> bool:
        with closing(self._connect()) as con, con:
            cur = con.execute(
                "DELETE FROM records WHERE namespace = ? AND id = ?",
                (namespace, record_id),
            )
            return cur.rowcount > 0

    def _delete_where(self, namespace: str, filters: Filters) -> int:
        where, params = _where(namespace, filters)
        with closing(self._connect()) as con, con:
            cur = con.execute(f"DELETE FROM records WHERE {where}", params)
            return cur.rowcount

    def _clear(self, namespace: Optional[str]) -> None:
        with closing(self._connect()) as con, con:
            if namespace is None:
                con.execute("DELETE FROM records")
            else:
                con.execute("DELETE FROM records WHERE namespace = ?", (namespace,))

    def _namespaces(self) -> List[str]:
        with closing(self._connect()) as con:
            rows = con.execute(
                "SELECT DISTINCT namespace FROM records ORDER BY namespace"
            ).fetchall()
        return [row[0] for row in rows]

    def _info(self) -> Dict[str, Any]:
        size = self._path.stat().st_size if self._path.exists() else 0
        return {"location": str(self._path), "size_bytes": size}
