"""
knowledge_base/storage/base.py

Abstract interface for the persistence adapter.

Design goals:
  - Every backend implements the same small capability set over
    namespaced records (load / get / save / delete / clear / info).
  - The higher-level contract the rest of the app uses (history,
    settings, storage info) is written once here on top of it.
  - Blocking I/O runs in a worker thread so callers can await it from
    the event loop; backend failures surface as StorageError.

A record is a plain JSON-serialisable dict with a string ``id``. Writes
are last-writer-wins per (namespace, id); a single save or delete is
atomic, nothing spans several records.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from knowledge_base.core.constants import NS_HISTORY, NS_SETTINGS
from knowledge_base.core.exceptions import StorageError, ValidationError
from knowledge_base.core.logger import get_logger
from knowledge_base.models.entities import Setting, now_ms

logger = get_logger(__name__)

Record = Dict[str, Any]
Filters = Dict[str, Any]
T = TypeVar("T")


def matches(record: Record, filters: Filters) -> bool:
    """Equality match on every filter key."""
    return all(record.get(key) == value for key, value in filters.items())


class StorageBackend(ABC):
    """
    Contract every persistence backend must fulfil.

    Subclasses implement the synchronous ``_``-prefixed primitives; the
    public coroutine API wraps them.
    """

    #: Short backend identifier reported by get_storage_info().
    name: str = "abstract"

    # ── Primitives (blocking) ──────────────────────────────────────────────────

    @abstractmethod
    def _load(self, namespace: str, filters: Filters) -> List[Record]:
        """Return every record of ``namespace`` matching ``filters``."""

    @abstractmethod
    def _get(self, namespace: str, record_id: str) -> Optional[Record]:
        """Return one record or None."""

    @abstractmethod
    def _save_many(self, namespace: str, records: List[Record]) -> None:
        """Upsert records by id."""

    @abstractmethod
    def _delete(self, namespace: str, record_id: str) -> bool:
        """Delete one record; True when something was removed."""

    @abstractmethod
    def _delete_where(self, namespace: str, filters: Filters) -> int:
        """Delete all matching records; returns how many were removed."""

    @abstractmethod
    def _clear(self, namespace: Optional[str]) -> None:
        """Remove every record of ``namespace`` (or of every namespace)."""

    @abstractmethod
    def _namespaces(self) -> List[str]:
        """Namespaces that currently hold at least one record."""

    @abstractmethod
    def _info(self) -> Dict[str, Any]:
        """Backend-specific details (location, size on disk...)."""

    # ── Capability API (async) ─────────────────────────────────────────────────

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"{self.name} storage: {fn.__name__} failed: {exc}") from exc

    async def load(self, namespace: str, filters: Optional[Filters] = None) -> List[Record]:
        return await self._run(self._load, namespace, dict(filters or {}))

    async def get(self, namespace: str, record_id: str) -> Optional[Record]:
        return await self._run(self._get, namespace, record_id)

    async def save(self, namespace: str, record: Record) -> None:
        await self.save_many(namespace, [record])

    async def save_many(self, namespace: str, records: Iterable[Record]) -> None:
        batch = list(records)
        for record in batch:
            if not record.get("id"):
                raise ValidationError(f"Cannot save a '{namespace}' record without an id.")
        if batch:
            await self._run(self._save_many, namespace, batch)

    async def delete(self, namespace: str, record_id: str) -> bool:
        return await self._run(self._delete, namespace, record_id)

    async def delete_where(self, namespace: str, filters: Filters) -> int:
        return await self._run(self._delete_where, namespace, dict(filters))

    async def clear(self, namespace: Optional[str] = None) -> None:
        await self._run(self._clear, namespace)

    async def namespaces(self) -> List[str]:
        return await self._run(self._namespaces)

    # ── Conversation history ───────────────────────────────────────────────────

    async def load_history(self) -> List[Record]:
        """All history items, most recently updated first."""
        items = await self.load(NS_HISTORY)
        return sorted(items, key=lambda r: r.get("updated_at", 0), reverse=True)

    async def save_history(self, items: Iterable[Record]) -> None:
        """Make the stored history equal to ``items``."""
        items = list(items)
        keep = {item.get("id") for item in items}
        for existing in await self.load(NS_HISTORY):
            if existing["id"] not in keep:
                await self.delete(NS_HISTORY, existing["id"])
        await self.save_many(NS_HISTORY, items)

    async def save_item(self, item: Record) -> None:
        await self.save(NS_HISTORY, item)

    async def delete_item(self, item_id: str) -> bool:
        return await self.delete(NS_HISTORY, item_id)

    async def clear_all(self) -> None:
        """Drop the whole conversation history."""
        await self.clear(NS_HISTORY)

    # ── Settings ───────────────────────────────────────────────────────────────

    async def save_setting(self, key: str, value: Any) -> None:
        await self.save(NS_SETTINGS, Setting(key=key, value=value, updated_at=now_ms()).to_record())

    async def load_setting(self, key: str, default: Any = None) -> Any:
        record = await self.get(NS_SETTINGS, key)
        if record is None:
            return default
        return record.get("value", default)

    # ── Diagnostics ────────────────────────────────────────────────────────────

    async def get_storage_info(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for namespace in await self.namespaces():
            counts[namespace] = len(await self.load(namespace))
        info = await self._run(self._info)
        return {"backend": self.name, "records": counts, **info}
