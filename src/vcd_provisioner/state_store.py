"""Desired/observed state store.

A keyed store with last-write-wins semantics and no cross-key transactions.
InMemoryStateStore serves tests and dry runs; YamlStateStore persists to a
single YAML file.

Metadata is held canonically as a list of entries (metadata_entry). The
YAML file additionally carries the legacy flat "metadata" mapping for older
readers. It is generated on write and discarded on read, so the two views
can never drift apart.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol

import yaml

from .config import MAX_STATE_FILE_SIZE_BYTES
from .resources import ParentRef, ResourceInstance

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

CANONICAL_METADATA = "metadata_entry"
LEGACY_METADATA = "metadata"


class StateStoreError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


class StateStore(Protocol):
    """Keyed store for resource instances."""

    def get(self, key: str) -> ResourceInstance | None: ...

    def put(self, instance: ResourceInstance) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class InMemoryStateStore:
    """State store kept in process memory."""

    def __init__(self, instances: list[ResourceInstance] | None = None) -> None:
        self._instances: dict[str, ResourceInstance] = {}
        for instance in instances or []:
            self.put(instance)

    def get(self, key: str) -> ResourceInstance | None:
        return self._instances.get(key)

    def put(self, instance: ResourceInstance) -> None:
        self._instances[instance.key] = instance

    def delete(self, key: str) -> None:
        self._instances.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._instances)


# =============================================================================
# Serialization
# =============================================================================


def _with_legacy_metadata(attributes: dict[str, Any]) -> dict[str, Any]:
    entries = attributes.get(CANONICAL_METADATA)
    if not entries:
        return dict(attributes)
    result = dict(attributes)
    result[LEGACY_METADATA] = {str(e["key"]): str(e["value"]) for e in entries}
    return result


def _without_legacy_metadata(attributes: dict[str, Any]) -> dict[str, Any]:
    result = dict(attributes)
    legacy = result.pop(LEGACY_METADATA, None)
    if legacy and CANONICAL_METADATA not in result:
        # Files written before metadata_entry existed
        result[CANONICAL_METADATA] = [{"key": k, "value": str(v)} for k, v in legacy.items()]
    return result


def _parent_to_dict(parent: ParentRef | None) -> dict[str, Any] | None:
    if parent is None:
        return None
    return {
        "kind": parent.kind,
        "id": parent.id,
        "name": parent.name,
        "owner": _parent_to_dict(parent.owner),
    }


def _parent_from_dict(data: dict[str, Any] | None) -> ParentRef | None:
    if not data:
        return None
    return ParentRef(
        kind=data["kind"],
        id=data["id"],
        name=data.get("name", ""),
        owner=_parent_from_dict(data.get("owner")),
    )


def instance_to_dict(instance: ResourceInstance) -> dict[str, Any]:
    """Serialize an instance, adding the legacy flat metadata view."""
    return {
        "kind": instance.kind,
        "id": instance.id,
        "removed": instance.removed,
        "vanished": instance.vanished,
        "parent": _parent_to_dict(instance.parent),
        "desired": _with_legacy_metadata(instance.desired),
        "observed": _with_legacy_metadata(instance.observed),
    }


def instance_from_dict(key: str, data: dict[str, Any]) -> ResourceInstance:
    """Deserialize an instance, keeping only canonical metadata."""
    try:
        return ResourceInstance(
            key=key,
            kind=data["kind"],
            id=data.get("id") or "",
            desired=_without_legacy_metadata(data.get("desired") or {}),
            observed=_without_legacy_metadata(data.get("observed") or {}),
            parent=_parent_from_dict(data.get("parent")),
            removed=bool(data.get("removed", False)),
            vanished=bool(data.get("vanished", False)),
        )
    except (KeyError, TypeError) as e:
        raise StateStoreError(f"Malformed state entry '{key}': {e}") from e


class YamlStateStore:
    """State store persisted to a YAML file.

    Every put/delete rewrites the file atomically (temporary file then
    rename). A lock serializes writers inside one process; concurrent
    processes are not coordinated.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._instances: dict[str, ResourceInstance] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, ResourceInstance]:
        if not self._path.exists():
            return {}

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {self._path}"
            )

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except yaml.YAMLError as e:
            raise StateStoreError(f"Invalid YAML in state file {self._path}: {e}") from e

        if not isinstance(raw, dict):
            raise StateStoreError(f"State file must contain a YAML mapping: {self._path}")
        version = raw.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(f"Unsupported state format version {version} in {self._path}")

        resources = raw.get("resources") or {}
        if not isinstance(resources, dict):
            raise StateStoreError(f"'resources' must be a mapping in {self._path}")

        instances = {key: instance_from_dict(key, data) for key, data in resources.items()}
        logger.info(
            "Loaded state file",
            extra={"path": str(self._path), "resources": len(instances)},
        )
        return instances

    def _write(self) -> None:
        document = {
            "version": STATE_FORMAT_VERSION,
            "resources": {
                key: instance_to_dict(instance)
                for key, instance in sorted(self._instances.items())
            },
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(document, handle, sort_keys=False, default_flow_style=False)
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

    def get(self, key: str) -> ResourceInstance | None:
        return self._instances.get(key)

    def put(self, instance: ResourceInstance) -> None:
        with self._lock:
            self._instances[instance.key] = instance
            self._write()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._instances.pop(key, None) is not None:
                self._write()

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._instances)


def open_state_store(path: Path | None) -> StateStore:
    """Open the YAML store at path, or an in-memory store when path is None."""
    if path is None:
        return InMemoryStateStore()
    return YamlStateStore(path)
