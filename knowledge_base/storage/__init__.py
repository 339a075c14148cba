"""knowledge_base/storage/__init__.py — public API of the storage package."""

from knowledge_base.storage.base import StorageBackend
from knowledge_base.storage.factory import create_backend
from knowledge_base.storage.json_backend import JsonFileBackend
from knowledge_base.storage.migration import MigrationReport, migrate
from knowledge_base.storage.sqlite_backend import SQLiteBackend

__all__ = [
    "StorageBackend",
    "JsonFileBackend",
    "SQLiteBackend",
    "create_backend",
    "migrate",
    "MigrationReport",
]
