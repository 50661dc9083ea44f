"""Managed resource instances and their parent references."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class Lifecycle(str, Enum):
    """Lifecycle state of a ResourceInstance."""

    PENDING_CREATE = "pending_create"
    LIVE = "live"
    REMOVED = "removed"


@dataclass(frozen=True)
class ParentRef:
    """Reference to the resource owning another one.

    owner is the parent's own owner when it matters for locking, e.g. the
    VDC or VDC Group owning an edge gateway.
    """

    kind: str
    id: str
    name: str = ""
    owner: ParentRef | None = None

    @property
    def scope_key(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass(frozen=True)
class DeletePolicy:
    """Destructive behaviour of a Delete. Both flags are required inputs."""

    force: bool
    recursive: bool


@dataclass(frozen=True)
class ResourceInstance:
    """One managed object.

    id stays empty until the creation task completed. observed is written by
    the executor only; desired is written by the operator-facing layer only.
    """

    key: str
    kind: str
    desired: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    observed: dict[str, Any] = field(default_factory=dict)
    parent: ParentRef | None = None
    removed: bool = False
    # Remote object disappeared; recreation waits for operator confirmation
    vanished: bool = False

    @property
    def lifecycle(self) -> Lifecycle:
        if self.removed:
            return Lifecycle.REMOVED
        if not self.id:
            return Lifecycle.PENDING_CREATE
        return Lifecycle.LIVE

    def with_id(self, object_id: str) -> ResourceInstance:
        """Return a copy carrying the remote identifier."""
        if self.id and self.id != object_id:
            raise ValueError(
                f"Resource '{self.key}' already has id {self.id}; refusing to change it to {object_id}"
            )
        return replace(self, id=object_id, vanished=False)

    def with_observed(self, observed: dict[str, Any]) -> ResourceInstance:
        """Return a copy whose observed state is replaced by a fresh remote read."""
        return replace(self, observed=copy.deepcopy(observed))

    def forget_identity(self) -> ResourceInstance:
        """Return a copy treated as pending create after the remote object vanished."""
        return replace(self, id="", observed={}, vanished=True)

    def mark_removed(self) -> ResourceInstance:
        return replace(self, observed={}, removed=True)

    def with_desired(self, desired: dict[str, Any], parent: ParentRef | None = None) -> ResourceInstance:
        """Return a copy with new operator-supplied desired state."""
        return replace(self, desired=copy.deepcopy(desired), parent=parent or self.parent)

    def confirm_recreate(self) -> ResourceInstance:
        return replace(self, vanished=False)
