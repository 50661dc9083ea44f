"""Reconciliation provenance for audit.

Every reconciliation of one resource instance is stamped with a record
answering:
- "What was planned and what actually reached the platform?"
- "Did the instance need replacement, and which error ended the run?"
- "Which provisioner version and spec revision were running?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .planner import Operation, OperationKind

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")

_CHILD_KINDS = {
    OperationKind.ADD_CHILD,
    OperationKind.UPDATE_CHILD,
    OperationKind.REMOVE_CHILD,
    OperationKind.SET_DEFAULT,
}


@dataclass
class ChangeProvenanceSummary:
    """Counts of applied operations by category."""

    create_count: int = 0
    update_count: int = 0
    child_count: int = 0
    delete_count: int = 0

    @property
    def total(self) -> int:
        return self.create_count + self.update_count + self.child_count + self.delete_count

    def record(self, operations: list[Operation] | tuple[Operation, ...]) -> None:
        for operation in operations:
            if operation.kind == OperationKind.CREATE:
                self.create_count += 1
            elif operation.kind == OperationKind.UPDATE_FIELDS:
                self.update_count += 1
            elif operation.kind in _CHILD_KINDS:
                self.child_count += 1
            elif operation.kind == OperationKind.DELETE:
                self.delete_count += 1


@dataclass
class ReconcileProvenance:
    """Provenance record for the reconciliation of one resource instance."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    resource_key: str = ""
    kind: str = ""
    resource_id: str = ""
    operator_version: str = OPERATOR_VERSION
    git_commit_sha: str = ""

    # Outcome
    dry_run: bool = False
    lifecycle_before: str = ""
    lifecycle_after: str = ""
    operations_planned: int = 0
    operations_applied: int = 0
    requires_replacement: bool = False
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Writes provenance records to the structured log."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(
        self, resource_key: str, kind: str, dry_run: bool = False
    ) -> ReconcileProvenance:
        return ReconcileProvenance(
            resource_key=resource_key,
            kind=kind,
            operator_version=OPERATOR_VERSION,
            git_commit_sha=self._git_commit_sha,
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: ReconcileProvenance) -> None:
        """Log a completed provenance record.

        ERROR when the run failed, WARNING when replacement is required,
        INFO otherwise.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.requires_replacement:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "resource_key": provenance.resource_key,
                "kind": provenance.kind,
                "operations_planned": provenance.operations_planned,
                "operations_applied": provenance.operations_applied,
                "requires_replacement": provenance.requires_replacement,
                "operator_version": provenance.operator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Shared provenance logger, created on first use
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
