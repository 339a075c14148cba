"""
knowledge_base/storage/factory.py

Resolves the persistence backend once, at startup, from explicit
configuration (``settings.storage_backend``). Nothing here inspects the
runtime environment to guess which store to use.
"""

from __future__ import annotations

from typing import Optional

from knowledge_base.core.config import Settings, settings as default_settings
from knowledge_base.core.exceptions import ValidationError
from knowledge_base.core.logger import get_logger
from knowledge_base.storage.base import StorageBackend
from knowledge_base.storage.json_backend import JsonFileBackend
from knowledge_base.storage.sqlite_backend import SQLiteBackend

logger = get_logger(__name__)


def create_backend(kind: Optional[str] = None, config: Optional[Settings] = None) -> StorageBackend:
    """
    Build the backend named ``kind`` (``"json"`` or ``"sqlite"``).

    Args:
        kind   : Backend identifier. Defaults to ``settings.storage_backend``.
        config : Settings providing the file locations. Defaults to the
                 shared ``settings`` instance.

    Raises:
        ValidationError: Unknown backend identifier.
    """
    config = config or default_settings
    kind = kind or config.storage_backend

    if kind == "json":
        backend: StorageBackend = JsonFileBackend(config.json_store_path)
    elif kind == "sqlite":
        backend = SQLiteBackend(config.sqlite_path)
    else:
        raise ValidationError(f"Unknown storage backend '{kind}' (expected 'json' or 'sqlite').")

    logger.info("Persistence backend selected: %s", backend.name)
    return backend
