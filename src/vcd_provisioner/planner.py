"""Mutation planner.

Compares the observed and desired attributes of one ResourceInstance and
emits the ordered list of atomic remote operations that converge them:

- no remote identity yet: a single Create seeded with every non-computed
  desired attribute (initial child collections included)
- immutable attribute changed: RequiresReplacementError, never an update
- mutable attributes changed: one UpdateFields operation per update group,
  groups ordered by their references, then the descriptor's group order
- child collections: add/update/remove/set-default operations after every
  field update

Computed attributes never appear in an outgoing operation.

Planning is pure: it issues no remote call and never mutates the instance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .descriptors import (
    AttributeDescriptor,
    CollectionDescriptor,
    Mutability,
    ResourceDescriptor,
    get_descriptor,
)
from .errors import ErrorKind, InvalidPlanError, ProvisionerError
from .resources import DeletePolicy, Lifecycle, ResourceInstance
from .sync import ChildOperationKind, sync_children, validate_exclusivity

logger = logging.getLogger(__name__)


class RequiresReplacementError(ProvisionerError):
    """Raised when an immutable attribute differs from its observed value.

    The outer layer decides between destroy-then-create and abort.
    """

    kind = ErrorKind.REQUIRES_REPLACEMENT

    def __init__(self, attribute: str, attributes: list[str] | None = None) -> None:
        self.attribute = attribute
        self.attributes = attributes or [attribute]
        super().__init__(
            f"Changing immutable attribute(s) {self.attributes} requires replacement"
        )


class MultipleLockScopesError(InvalidPlanError):
    """Raised when a plan would have to lock more than one shared parent."""

    def __init__(self, scopes: set[str]) -> None:
        self.scopes = sorted(scopes)
        super().__init__(
            f"Operation touches several shared parents {self.scopes}; "
            f"apply the change in separate steps"
        )


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE_FIELDS = "update_fields"
    ADD_CHILD = "add_child"
    UPDATE_CHILD = "update_child"
    REMOVE_CHILD = "remove_child"
    SET_DEFAULT = "set_default"
    DELETE = "delete"


_CHILD_OPERATION_KINDS = {
    ChildOperationKind.SET_DEFAULT: OperationKind.SET_DEFAULT,
    ChildOperationKind.ADD: OperationKind.ADD_CHILD,
    ChildOperationKind.UPDATE: OperationKind.UPDATE_CHILD,
    ChildOperationKind.REMOVE: OperationKind.REMOVE_CHILD,
}


@dataclass(frozen=True)
class Operation:
    """One atomic remote operation."""

    kind: OperationKind
    attributes: dict[str, Any] = field(default_factory=dict)
    group: str = ""
    collection: str = ""
    child_key: str = ""
    retryable: bool = True
    requires_parent_lock: bool = False
    delete_policy: DeletePolicy | None = None

    def describe(self) -> str:
        if self.kind == OperationKind.UPDATE_FIELDS:
            return f"update_fields[{self.group}]({', '.join(sorted(self.attributes))})"
        if self.collection:
            return f"{self.kind.value}({self.collection}:{self.child_key})"
        if self.kind == OperationKind.DELETE and self.delete_policy is not None:
            return (
                f"delete(force={self.delete_policy.force}, "
                f"recursive={self.delete_policy.recursive})"
            )
        return self.kind.value


@dataclass(frozen=True)
class OperationPlan:
    """Ordered operations for one instance plus the lock scope they need."""

    operations: tuple[Operation, ...] = ()
    lock_scope: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def __len__(self) -> int:
        return len(self.operations)

    def describe(self) -> list[str]:
        return [op.describe() for op in self.operations]


def _is_set(attribute: AttributeDescriptor, value: Any) -> bool:
    """Explicit-presence check for a desired value.

    None is always unset. Zero numbers and empty strings count as unset
    unless the attribute declares its zero value meaningful.
    """
    if value is None:
        return False
    if attribute.meaningful_zero:
        return True
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)) and value == 0:
        return False
    if isinstance(value, str) and value == "":
        return False
    return True


def resolve_lock_scope(instance: ResourceInstance, descriptor: ResourceDescriptor) -> str | None:
    """Return the single scope the instance's mutations must hold.

    Raises:
        MultipleLockScopesError: If the mutation would touch two shared parents.
    """
    scopes = descriptor.lock_scopes(instance)
    if len(scopes) > 1:
        raise MultipleLockScopesError(scopes)
    return next(iter(scopes), None)


def _check_known(instance: ResourceInstance, descriptor: ResourceDescriptor) -> None:
    known = {a.name for a in descriptor.attributes} | {c.name for c in descriptor.collections}
    unknown = sorted(set(instance.desired) - known)
    if unknown:
        raise InvalidPlanError(
            f"Unknown attributes for kind '{descriptor.kind}' in '{instance.key}': {unknown}"
        )


def _order_groups(
    changed: dict[str, dict[str, Any]], descriptor: ResourceDescriptor
) -> list[str]:
    """Order changed update groups.

    A group runs after every changed group holding an attribute it references.
    Ties follow the descriptor's group order, then first appearance.
    """
    base = [g for g in descriptor.group_order if g in changed]
    base += [g for g in changed if g not in base]

    depends_on: dict[str, set[str]] = {g: set() for g in base}
    for group, attributes in changed.items():
        for name in attributes:
            attribute = descriptor.attribute(name)
            if attribute is None or attribute.references is None:
                continue
            target = descriptor.attribute(attribute.references)
            if target is not None and target.update_group in changed and target.update_group != group:
                depends_on[group].add(target.update_group)

    ordered: list[str] = []
    remaining = list(base)
    while remaining:
        ready = next((g for g in remaining if depends_on[g] <= set(ordered)), None)
        if ready is None:
            raise InvalidPlanError(
                f"Cyclic attribute references between update groups {remaining} "
                f"of kind '{descriptor.kind}'"
            )
        ordered.append(ready)
        remaining.remove(ready)
    return ordered


def _plan_create(
    instance: ResourceInstance, descriptor: ResourceDescriptor, lock_scope: str | None
) -> OperationPlan:
    attributes: dict[str, Any] = {}
    for attribute in descriptor.attributes:
        if attribute.mutability == Mutability.COMPUTED:
            continue
        value = instance.desired.get(attribute.name)
        if _is_set(attribute, value):
            attributes[attribute.name] = value

    for collection in descriptor.collections:
        records = instance.desired.get(collection.name)
        if records is None:
            continue
        if collection.exclusivity_field is not None and records:
            validate_exclusivity(
                records, collection.key_field, collection.exclusivity_field, collection.name
            )
        attributes[collection.name] = [dict(r) for r in records]

    operation = Operation(
        kind=OperationKind.CREATE,
        attributes=attributes,
        retryable=False,
        requires_parent_lock=lock_scope is not None,
    )
    return OperationPlan((operation,), lock_scope)


def _plan_collection(
    instance: ResourceInstance, collection: CollectionDescriptor, lock_scope: str | None
) -> list[Operation]:
    child_plan = sync_children(
        existing=instance.observed.get(collection.name),
        desired=instance.desired[collection.name],
        key_field=collection.key_field,
        exclusivity_field=collection.exclusivity_field,
        compared_fields=collection.compared_fields,
        ordered=collection.ordered,
        collection=collection.name,
    )
    return [
        Operation(
            kind=_CHILD_OPERATION_KINDS[child.kind],
            attributes=child.record,
            collection=collection.name,
            child_key=child.key,
            requires_parent_lock=lock_scope is not None,
        )
        for child in child_plan.operations
    ]


def plan(instance: ResourceInstance, descriptor: ResourceDescriptor | None = None) -> OperationPlan:
    """Compute the operations that move observed state to desired state.

    Args:
        instance: Instance with desired state and, when live, observed state.
        descriptor: Descriptor of the instance's kind. Looked up when omitted.

    Returns:
        The ordered plan. Empty when observed already matches desired.

    Raises:
        RequiresReplacementError: If an immutable attribute changed.
        MultipleLockScopesError: If the change touches two shared parents.
        ChildCollectionError: If a desired collection is invalid.
        InvalidPlanError: For unknown attributes or removed instances.
    """
    descriptor = descriptor or get_descriptor(instance.kind)
    if instance.lifecycle == Lifecycle.REMOVED:
        raise InvalidPlanError(f"Resource '{instance.key}' was removed and cannot be planned")
    _check_known(instance, descriptor)
    lock_scope = resolve_lock_scope(instance, descriptor)

    if instance.lifecycle == Lifecycle.PENDING_CREATE:
        return _plan_create(instance, descriptor, lock_scope)

    replacements: list[str] = []
    changed: dict[str, dict[str, Any]] = {}
    for attribute in descriptor.attributes:
        if attribute.mutability == Mutability.COMPUTED or attribute.name not in instance.desired:
            continue
        wanted = instance.desired[attribute.name]
        if not _is_set(attribute, wanted):
            continue
        if instance.observed.get(attribute.name) == wanted:
            continue
        if attribute.mutability == Mutability.IMMUTABLE:
            replacements.append(attribute.name)
        else:
            changed.setdefault(attribute.update_group, {})[attribute.name] = wanted

    if replacements:
        logger.warning(
            "Immutable attribute changed, replacement required",
            extra={"resource_key": instance.key, "kind": instance.kind, "attributes": replacements},
        )
        raise RequiresReplacementError(replacements[0], replacements)

    operations = [
        Operation(
            kind=OperationKind.UPDATE_FIELDS,
            attributes=changed[group],
            group=group,
            requires_parent_lock=lock_scope is not None,
        )
        for group in _order_groups(changed, descriptor)
    ]

    for collection in descriptor.collections:
        if instance.desired.get(collection.name) is not None:
            operations.extend(_plan_collection(instance, collection, lock_scope))

    return OperationPlan(tuple(operations), lock_scope if operations else None)


def plan_delete(
    instance: ResourceInstance,
    policy: DeletePolicy,
    descriptor: ResourceDescriptor | None = None,
) -> OperationPlan:
    """Plan the removal of a live instance.

    Instances without a remote identity yield an empty plan.

    Raises:
        InvalidPlanError: If policy is not a DeletePolicy.
    """
    descriptor = descriptor or get_descriptor(instance.kind)
    if not isinstance(policy, DeletePolicy):
        raise InvalidPlanError(f"Deleting '{instance.key}' requires an explicit DeletePolicy")
    if instance.lifecycle != Lifecycle.LIVE:
        return OperationPlan()

    lock_scope = resolve_lock_scope(instance, descriptor)
    operation = Operation(
        kind=OperationKind.DELETE,
        retryable=True,
        requires_parent_lock=lock_scope is not None,
        delete_policy=policy,
    )
    return OperationPlan((operation,), lock_scope)
