"""Boundary contract of the Remote Resource API.

The platform client itself lives outside this package. Anything that
implements RemoteResourceAPI can be driven by the executor: a REST adapter
in production, the in-memory mock in tests.

Contract notes:
- Mutating calls return an optional TaskHandle when the platform runs the
  change asynchronously; the executor polls task_status() until the task
  reaches a terminal state.
- read() raises NotFoundError for missing objects; busy objects raise
  RetryableRemoteError (or an error whose message carries a busy marker, see
  errors.classify_remote_error).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from .resources import ParentRef


class TaskStatus(str, Enum):
    """Status values reported for asynchronous remote tasks."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCESS, TaskStatus.ERROR, TaskStatus.ABORTED)


@dataclass(frozen=True)
class TaskHandle:
    """Reference to an asynchronous remote task."""

    task_id: str
    operation: str = ""


@dataclass(frozen=True)
class TaskResult:
    """Status snapshot of a remote task."""

    status: TaskStatus
    error_message: str = ""
    busy: bool = False


@dataclass(frozen=True)
class ObjectSummary:
    """Summary record returned by query() and consumed by the identity resolver."""

    id: str
    name: str
    created: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class RemoteResourceAPI(Protocol):
    """Create/read/update/delete/query operations keyed by opaque IDs."""

    async def create(
        self, kind: str, attributes: dict[str, Any], parent: ParentRef | None
    ) -> tuple[str, TaskHandle | None]: ...

    async def read(self, kind: str, object_id: str) -> dict[str, Any]: ...

    async def update(
        self, kind: str, object_id: str, attributes: dict[str, Any]
    ) -> TaskHandle | None: ...

    async def delete(
        self, kind: str, object_id: str, *, force: bool, recursive: bool
    ) -> TaskHandle | None: ...

    async def query(self, kind: str, parent: ParentRef | None = None) -> list[ObjectSummary]: ...

    async def task_status(self, handle: TaskHandle) -> TaskResult: ...

    async def add_child(
        self, kind: str, object_id: str, collection: str, record: dict[str, Any]
    ) -> TaskHandle | None: ...

    async def update_child(
        self, kind: str, object_id: str, collection: str, key: str, record: dict[str, Any]
    ) -> TaskHandle | None: ...

    async def remove_child(
        self, kind: str, object_id: str, collection: str, key: str
    ) -> TaskHandle | None: ...

    async def set_default(
        self, kind: str, object_id: str, collection: str, key: str
    ) -> TaskHandle | None: ...
