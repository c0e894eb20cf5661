"""Provenance markers and reconciliation audit records.

Every stored entity carries a provenance marker. Only entities marked as
file-provisioned are ever considered for orphan deletion; anything created
through other means is left alone.

Each reconciliation pass is summarised in a ReconcileRecord and logged as a
structured audit entry that answers "what did this pass change, and from
which directory?".
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


class Provenance(str, Enum):
    """Who created a stored entity."""

    NONE = ""
    FILE = "file"


class ChangeType(str, Enum):
    """Outcome of reconciling one entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNCHANGED = "unchanged"


@dataclass
class ChangeSummary:
    """Counts of store mutations made by one reconciliation pass."""

    create_count: int = 0
    update_count: int = 0
    delete_count: int = 0
    unchanged_count: int = 0

    @property
    def total_mutations(self) -> int:
        """Total store writes (create + update + delete)."""
        return self.create_count + self.update_count + self.delete_count

    def record(self, change: ChangeType) -> None:
        if change is ChangeType.CREATE:
            self.create_count += 1
        elif change is ChangeType.UPDATE:
            self.update_count += 1
        elif change is ChangeType.DELETE:
            self.delete_count += 1
        else:
            self.unchanged_count += 1

    def merge(self, other: ChangeSummary) -> None:
        self.create_count += other.create_count
        self.update_count += other.update_count
        self.delete_count += other.delete_count
        self.unchanged_count += other.unchanged_count


@dataclass
class ReconcileRecord:
    """Audit record for one provisioning call."""

    kind: str
    path: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    provisioner_version: str = PROVISIONER_VERSION
    policy: str = ""
    summary: ChangeSummary = field(default_factory=ChangeSummary)
    duration_seconds: float = 0.0
    error: str | None = None
    failed_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def log_reconcile_record(record: ReconcileRecord) -> None:
    """Log a completed reconciliation record.

    Errors log at ERROR, passes that changed the store at INFO and no-op passes
    at DEBUG so steady-state polling does not flood the log.
    """
    if record.error:
        log_level = logging.ERROR
    elif record.summary.total_mutations > 0:
        log_level = logging.INFO
    else:
        log_level = logging.DEBUG

    logger.log(
        log_level,
        "Reconciliation record",
        extra={
            "record": record.to_dict(),
            # Flatten key fields for easier querying
            "kind": record.kind,
            "path": record.path,
            "created_count": record.summary.create_count,
            "updated_count": record.summary.update_count,
            "deleted_count": record.summary.delete_count,
            "duration_seconds": record.duration_seconds,
        },
    )


def log_entity_change(kind: str, key: tuple[int, str], change: ChangeType, source_path: str) -> None:
    """Log one entity mutation for fine-grained audit."""
    if change is ChangeType.UNCHANGED:
        return
    logger.info(
        "Provisioned entity change",
        extra={
            "kind": kind,
            "org_id": key[0],
            "uid": key[1],
            "change_type": change.value,
            "source_path": source_path,
        },
    )
