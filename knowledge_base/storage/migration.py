"""
knowledge_base/storage/migration.py

One-shot copy of every record from one backend into another.

Records keep their ids and timestamps verbatim. A record already present
in the target with the same ``updated_at`` is skipped, so running the
migration again adds nothing; a target record with a different
``updated_at`` is overwritten (last writer wins, the source is the writer).
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence

from pydantic import BaseModel, Field, computed_field

from knowledge_base.core.exceptions import ValidationError
from knowledge_base.core.logger import get_logger
from knowledge_base.storage.base import StorageBackend

logger = get_logger(__name__)


class MigrationReport(BaseModel):
    """Per-namespace counts of one migration run."""

    source: str = Field(..., description="Name of the source backend.")
    target: str = Field(..., description="Name of the target backend.")
    migrated: Dict[str, int] = Field(default_factory=dict, description="Records copied, by namespace.")
    skipped: Dict[str, int] = Field(default_factory=dict, description="Records already present, by namespace.")

    @computed_field
    @property
    def total_migrated(self) -> int:
        return sum(self.migrated.values())

    @computed_field
    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())


async def migrate(
    source: StorageBackend,
    target: StorageBackend,
    namespaces: Optional[Sequence[str]] = None,
) -> MigrationReport:
    """
    Copy ``namespaces`` from ``source`` into ``target``. The default is
    every namespace present in ``source``; an empty sequence copies nothing.

    Raises:
        ValidationError: source and target are the same object.
        StorageError   : Either backend failed; records written before the
                         failure stay in the target and a rerun resumes.
    """
    if source is target:
        raise ValidationError("Migration source and target must be different backends.")

    report = MigrationReport(source=source.name, target=target.name)
    if namespaces is None:
        namespaces = await source.namespaces()
    for namespace in namespaces:
        records = await source.load(namespace)
        existing = {r["id"]: r.get("updated_at") for r in await target.load(namespace)}

        pending = [
            r for r in records
            if r["id"] not in existing or existing[r["id"]] != r.get("updated_at")
        ]
        await target.save_many(namespace, pending)

        report.migrated[namespace] = len(pending)
        report.skipped[namespace] = len(records) - len(pending)
        logger.info(
            "Migrated '%s' %s → %s: %d copied, %d already present.",
            namespace,
            source.name,
            target.name,
            len(pending),
            len(records) - len(pending),
        )

    return report
