"""Child-collection synchronization.

Computes the operations that move a child collection (storage profiles of a
VDC, networks of a VM, access-control entries of a catalog) from its existing
members to the desired members. Members are matched by natural key and
partitioned three ways:

- present in both: candidate for an in-place update
- desired only: added
- existing only: removed

Application order avoids a window where a required collection is empty or
has no default member:

1. SetDefault on the desired default, when it already exists remotely
2. Add every new member (a new default is added with its flag set)
3. Update the mutable fields of surviving members
4. Remove every member that is no longer desired

Nothing here is transactional. A failure halfway leaves the collection
partially synchronized and the next pass recomputes from the re-read state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import InvalidPlanError

logger = logging.getLogger(__name__)


class ChildCollectionError(InvalidPlanError):
    """Raised when a desired collection cannot be synchronized."""

    def __init__(self, message: str, collection: str = "") -> None:
        super().__init__(message)
        self.collection = collection


class ChildOperationKind(str, Enum):
    SET_DEFAULT = "set_default"
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"


@dataclass(frozen=True)
class ChildOperation:
    """One add/update/remove/set-default step on a child collection."""

    kind: ChildOperationKind
    key: str
    record: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChildOperationPlan:
    """Ordered child operations for one collection."""

    operations: tuple[ChildOperation, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def keys(self, kind: ChildOperationKind) -> list[str]:
        return [op.key for op in self.operations if op.kind == kind]


def _index(
    records: Iterable[Mapping[str, Any]], key_field: str, collection: str, source: str
) -> dict[str, dict[str, Any]]:
    indexed: dict[str, dict[str, Any]] = {}
    for record in records:
        key = record.get(key_field)
        if key is None or key == "":
            raise ChildCollectionError(
                f"{source} member of '{collection}' has no '{key_field}': {dict(record)}",
                collection,
            )
        key = str(key)
        if key in indexed:
            raise ChildCollectionError(
                f"{source} members of '{collection}' share the key '{key}'", collection
            )
        indexed[key] = dict(record)
    return indexed


def validate_exclusivity(
    records: Iterable[Mapping[str, Any]],
    key_field: str,
    exclusivity_field: str,
    collection: str = "",
) -> str:
    """Check that exactly one member carries the exclusivity flag.

    Returns:
        Key of the flagged member.

    Raises:
        ChildCollectionError: If zero or several members are flagged.
    """
    flagged = [str(r.get(key_field)) for r in records if r.get(exclusivity_field) is True]
    if len(flagged) != 1:
        raise ChildCollectionError(
            f"Exactly one member of '{collection}' must set '{exclusivity_field}', "
            f"found {len(flagged)}: {flagged}",
            collection,
        )
    return flagged[0]


def _differs(
    existing: Mapping[str, Any],
    desired: Mapping[str, Any],
    fields: Iterable[str],
) -> bool:
    return any(existing.get(name) != desired.get(name) for name in fields)


def sync_children(
    existing: Iterable[Mapping[str, Any]] | None,
    desired: Iterable[Mapping[str, Any]],
    key_field: str = "name",
    exclusivity_field: str | None = None,
    compared_fields: Iterable[str] = (),
    ordered: bool = False,
    collection: str = "",
) -> ChildOperationPlan:
    """Compute the operations that turn existing into desired.

    Args:
        existing: Members as last read from the platform.
        desired: Members as specified by the operator.
        key_field: Natural key of a member.
        exclusivity_field: Boolean flag exactly one desired member must set.
        compared_fields: Fields whose change triggers an update. Empty means
            every field of the desired member except the key.
        ordered: Member position is significant. Adds and updates then carry
            a "position" (0-based index in desired).
        collection: Collection name, used in error messages.

    Raises:
        ChildCollectionError: On duplicate or missing keys, or when the
            desired members do not have exactly one default. Raised before
            any operation is produced.
    """
    desired_list = list(desired)
    existing_list = list(existing or [])
    desired_by_key = _index(desired_list, key_field, collection, "Desired")
    existing_by_key = _index(existing_list, key_field, collection, "Existing")

    default_key: str | None = None
    if exclusivity_field is not None:
        default_key = validate_exclusivity(desired_list, key_field, exclusivity_field, collection)

    existing_positions = {key: i for i, key in enumerate(existing_by_key)}
    desired_positions = {key: i for i, key in enumerate(desired_by_key)}

    new_keys = [k for k in desired_by_key if k not in existing_by_key]
    kept_keys = [k for k in desired_by_key if k in existing_by_key]
    removed_keys = [k for k in existing_by_key if k not in desired_by_key]

    operations: list[ChildOperation] = []

    # A newly added default cannot be promoted before it exists
    if (
        default_key is not None
        and exclusivity_field is not None
        and default_key in existing_by_key
        and existing_by_key[default_key].get(exclusivity_field) is not True
    ):
        operations.append(ChildOperation(ChildOperationKind.SET_DEFAULT, default_key))

    for key in new_keys:
        record = dict(desired_by_key[key])
        if ordered:
            record["position"] = desired_positions[key]
        operations.append(ChildOperation(ChildOperationKind.ADD, key, record))

    for key in kept_keys:
        wanted = desired_by_key[key]
        current = existing_by_key[key]
        fields = list(compared_fields) or [f for f in wanted if f != key_field]
        # The flag moves through SET_DEFAULT and ADD only
        fields = [f for f in fields if f != exclusivity_field]
        record = {f: wanted.get(f) for f in fields if f in wanted}
        changed = _differs(current, wanted, record)
        if ordered and existing_positions[key] != desired_positions[key]:
            record["position"] = desired_positions[key]
            changed = True
        if changed:
            record[key_field] = wanted[key_field]
            operations.append(ChildOperation(ChildOperationKind.UPDATE, key, record))

    for key in removed_keys:
        operations.append(ChildOperation(ChildOperationKind.REMOVE, key))

    if operations:
        logger.debug(
            "Computed child operations",
            extra={
                "collection": collection,
                "added": len(new_keys),
                "removed": len(removed_keys),
                "operations": len(operations),
            },
        )
    return ChildOperationPlan(tuple(operations))
