"""Lock coordination for mutations against shared parent objects.

Sibling resources (NAT rules of one edge gateway, VMs of one vApp, networks
of one VDC Group) are modified through their parent's API. Concurrent
reconciliations of siblings would race on that parent, so every mutation
sequence runs under the parent's scope lock.
A live vApp takes its own scope, the one its VMs lock through parent_scope.

Rules:
- At most one coroutine holds a given scope at a time, across every
  reconciliation running in the process.
- A task holding a scope may not acquire a second one. Plans that would need
  two scopes are rejected by the planner instead.
- Waiters are served in arrival order.
- Release happens on every exit path, including cancellation.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from .errors import InvalidPlanError, LockTimeoutError
from .resources import ParentRef, ResourceInstance

logger = logging.getLogger(__name__)

T = TypeVar("T")

VDC_GROUP_URN_PREFIX = "urn:vcloud:vdcGroup:"

# Parent kinds whose children mutate through the parent object
GATEWAY_CHILD_KINDS = frozenset({"nat_rule", "alb_settings", "dhcp_forwarding"})

# Scope currently held by the running task (None when no lock is held)
_held_scope: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "vcd_provisioner_held_scope", default=None
)


class NestedLockError(InvalidPlanError):
    """Raised when a task tries to acquire a second lock scope."""

    pass


class LockCoordinator:
    """Serializes mutations per lock scope.

    Create one instance per process and pass it to every reconciler that
    shares the remote platform. The coordinator owns its scope map; there is
    no module-level registry.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per scope; the entry goes away when it drops to zero
        self._users: dict[str, int] = {}

    def _checkout(self, scope_key: str) -> asyncio.Lock:
        # No await between lookup and insert, so this is atomic on the event loop
        lock = self._locks.get(scope_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[scope_key] = lock
        self._users[scope_key] = self._users.get(scope_key, 0) + 1
        return lock

    def _checkin(self, scope_key: str) -> None:
        remaining = self._users[scope_key] - 1
        if remaining:
            self._users[scope_key] = remaining
        else:
            del self._users[scope_key]
            del self._locks[scope_key]

    @property
    def scopes(self) -> list[str]:
        """Scopes currently held or waited for."""
        return sorted(self._locks)

    def is_locked(self, scope_key: str) -> bool:
        lock = self._locks.get(scope_key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, scope_key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lock for scope_key for the duration of the block.

        Args:
            scope_key: Identifier of the shared parent (see scope helpers below).
            timeout: Optional upper bound on the wait. None blocks until free.

        Raises:
            NestedLockError: If the current task already holds a scope.
            LockTimeoutError: If timeout elapsed before the scope became free.
        """
        held = _held_scope.get()
        if held is not None:
            raise NestedLockError(
                f"Cannot lock scope '{scope_key}' while holding '{held}'; "
                f"operations touching two shared parents must be rejected at planning"
            )

        lock = self._checkout(scope_key)
        try:
            try:
                if timeout is None:
                    await lock.acquire()
                else:
                    await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except TimeoutError as e:
                logger.error(
                    "Timed out waiting for lock",
                    extra={"scope_key": scope_key, "timeout_seconds": timeout},
                )
                raise LockTimeoutError(
                    f"Timed out after {timeout}s waiting for lock on {scope_key}", scope_key
                ) from e

            token = _held_scope.set(scope_key)
            logger.debug("Acquired lock", extra={"scope_key": scope_key})
            try:
                yield
            finally:
                _held_scope.reset(token)
                lock.release()
                logger.debug("Released lock", extra={"scope_key": scope_key})
        finally:
            self._checkin(scope_key)

    async def with_lock(
        self,
        scope_key: str,
        fn: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run fn while holding scope_key and return its result."""
        async with self.hold(scope_key, timeout=timeout):
            return await fn()


# =============================================================================
# Scope resolution
# =============================================================================


def owner_is_vdc_group(owner_id: str | None) -> bool:
    """Check whether an owner identifier references a VDC Group."""
    return bool(owner_id) and str(owner_id).startswith(VDC_GROUP_URN_PREFIX)


def vdc_group_scope(owner_id: str | None) -> str | None:
    """Scope key for an owner, or None when the owner is not a VDC Group."""
    if owner_is_vdc_group(owner_id):
        return f"vdc_group:{owner_id}"
    return None


def gateway_scope(gateway: ParentRef) -> str:
    """Scope key for mutations routed through an edge gateway.

    A gateway owned by a VDC Group is locked through the group, otherwise two
    sibling gateways of the same group would race undetected.
    """
    if gateway.owner is not None and (
        gateway.owner.kind == "vdc_group" or owner_is_vdc_group(gateway.owner.id)
    ):
        return f"vdc_group:{gateway.owner.id}"
    return gateway.scope_key


def no_scopes(instance: ResourceInstance) -> set[str]:
    return set()


def parent_scope(instance: ResourceInstance) -> set[str]:
    """Lock the direct parent (a VM's vApp, for instance)."""
    if instance.parent is None:
        return set()
    return {instance.parent.scope_key}


def self_scope(instance: ResourceInstance) -> set[str]:
    """Lock a live container under the key its children take through parent_scope."""
    if not instance.id:
        return set()
    return {f"{instance.kind}:{instance.id}"}


def gateway_child_scopes(instance: ResourceInstance) -> set[str]:
    if instance.parent is None:
        return set()
    return {gateway_scope(instance.parent)}


def owner_scopes(instance: ResourceInstance) -> set[str]:
    """Lock the owning VDC Group, both the current one and the desired one.

    Moving an object between two VDC Groups touches two shared parents and
    yields two scopes, which the planner rejects.
    """
    scopes: set[str] = set()
    for attributes in (instance.observed, instance.desired):
        scope = vdc_group_scope(_as_str(attributes.get("owner_id")))
        if scope is not None:
            scopes.add(scope)
    if not scopes and instance.parent is not None and instance.parent.kind == "vdc_group":
        scopes.add(instance.parent.scope_key)
    return scopes


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None
