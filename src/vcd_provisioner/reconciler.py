"""Reconciliation loop over every managed resource instance.

Per instance:
1. Load the instance from the state store
2. Refresh observed state from the platform (a vanished object clears the
   local identity and waits for operator confirmation before recreation)
3. Plan the operations that converge observed to desired
4. Execute them under the instance's lock scope
5. Store the updated instance, whatever the outcome

Instances reconcile concurrently, bounded by max_concurrent_reconciles.
Siblings sharing a parent serialize on the LockCoordinator; everything else
runs fully in parallel.

Circuit breaker prevents runaway retries on persistent failures.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import Config
from .errors import ErrorKind, InvalidPlanError, NotFoundError, ProvisionerError, error_kind
from .executor import PartialFailureError, ReconciliationExecutor
from .locks import LockCoordinator
from .models import ResourceSetSpec
from .planner import OperationPlan, RequiresReplacementError, plan, plan_delete
from .provenance import ChangeProvenanceSummary, get_provenance_logger
from .remote import RemoteResourceAPI
from .resources import DeletePolicy, Lifecycle, ResourceInstance
from .spec_loader import SpecLoadError, load_specs, to_instance
from .state_store import StateStore

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


@dataclass
class ReconcileResult:
    """Outcome of reconciling one resource instance.

    Carries what the operator surface reports: lifecycle state, last error
    kind, and whether replacement was required.
    """

    resource_key: str
    kind: str = ""
    lifecycle: Lifecycle = Lifecycle.PENDING_CREATE
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    operations_planned: list[str] = field(default_factory=list)
    operations_applied: int = 0
    requires_replacement: bool = False
    replacement_attributes: list[str] = field(default_factory=list)
    dry_run: bool = False
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> ErrorKind | None:
        return error_kind(self.error)

    @property
    def converged(self) -> bool:
        return self.success and not self.operations_planned


class Reconciler:
    """Reconciles resource instances held in a state store.

    The LockCoordinator is created once per process and shared by every
    reconciler talking to the same platform. Pass it explicitly when more
    than one reconciler runs.
    """

    def __init__(
        self,
        api: RemoteResourceAPI,
        store: StateStore,
        config: Config | None = None,
        locks: LockCoordinator | None = None,
    ) -> None:
        self._config = config or Config()
        self._store = store
        self._locks = locks or LockCoordinator()
        self._executor = ReconciliationExecutor(api, self._locks, self._config)
        self._provenance = get_provenance_logger()

        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        return self._config

    @property
    def locks(self) -> LockCoordinator:
        return self._locks

    @property
    def store(self) -> StateStore:
        return self._store

    # =========================================================================
    # Desired state
    # =========================================================================

    def apply_specs(self, spec_set: ResourceSetSpec) -> list[str]:
        """Record the desired state of every declared resource.

        Keys already in the store keep their identity and observed state.
        Stored keys missing from the specs are left alone: removal needs an
        explicit destroy() with a DeletePolicy.

        Returns:
            Keys whose desired state changed or that were added.

        Raises:
            InvalidPlanError: If a declared key changes kind.
        """
        changed: list[str] = []
        declared = set()
        for entry in spec_set.resources:
            declared.add(entry.key)
            fresh = to_instance(entry)
            existing = self._store.get(entry.key)
            if existing is None or existing.removed:
                self._store.put(fresh)
                changed.append(entry.key)
                continue
            if existing.kind != fresh.kind:
                raise InvalidPlanError(
                    f"Resource '{entry.key}' is a {existing.kind}, spec declares {fresh.kind}"
                )
            if existing.desired != fresh.desired or existing.parent != fresh.parent:
                self._store.put(existing.with_desired(fresh.desired, fresh.parent))
                changed.append(entry.key)

        for key in self._store.keys():
            if key not in declared:
                logger.warning(
                    "Resource no longer declared, destroy it explicitly to remove it",
                    extra={"resource_key": key},
                )
        return changed

    # =========================================================================
    # Single instance
    # =========================================================================

    async def reconcile(
        self,
        key: str,
        delete_policy: DeletePolicy | None = None,
        confirm_recreate: bool = False,
    ) -> ReconcileResult:
        """Converge one instance towards its desired state.

        Args:
            key: State store key of the instance.
            delete_policy: When given and an immutable attribute changed, the
                instance is destroyed with this policy and created again.
                When None, RequiresReplacementError is reported instead.
            confirm_recreate: Allow creating an instance whose remote object
                vanished since the last run.

        Returns:
            ReconcileResult. Errors are reported in it, never raised, except
            cancellation.
        """
        result = ReconcileResult(resource_key=key, dry_run=self._config.dry_run)
        instance = self._store.get(key)
        provenance = self._provenance.create_provenance(
            key, instance.kind if instance else "", dry_run=self._config.dry_run
        )
        change_summary = ChangeProvenanceSummary()
        started = time.monotonic()

        try:
            if instance is None:
                raise NotFoundError(f"No resource '{key}' in the state store")
            result.kind = instance.kind
            result.lifecycle = instance.lifecycle
            provenance.lifecycle_before = instance.lifecycle.value
            if instance.lifecycle == Lifecycle.REMOVED:
                return result

            instance = await self._refresh(instance)
            if instance.vanished:
                if not confirm_recreate:
                    result.lifecycle = instance.lifecycle
                    raise NotFoundError(
                        f"Remote object of '{key}' no longer exists; "
                        f"confirm recreation to create it again",
                        instance.id,
                    )
                instance = instance.confirm_recreate()

            try:
                operation_plan = plan(instance)
            except RequiresReplacementError as e:
                result.requires_replacement = True
                result.replacement_attributes = list(e.attributes)
                if delete_policy is None:
                    raise
                instance = await self._replace(instance, delete_policy, result, change_summary)
                operation_plan = plan(instance)

            result.operations_planned += operation_plan.describe()
            self._log_plan(instance, operation_plan)

            if self._config.dry_run or operation_plan.is_empty:
                result.lifecycle = instance.lifecycle
                return result

            instance = await self._execute(instance, operation_plan, result, change_summary)
            result.lifecycle = instance.lifecycle

        except asyncio.CancelledError:
            logger.warning("Reconciliation cancelled", extra={"resource_key": key})
            raise
        except ProvisionerError as e:
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during reconciliation")
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
            provenance.duration_seconds = time.monotonic() - started
            provenance.resource_id = instance.id if instance else ""
            provenance.lifecycle_after = result.lifecycle.value
            provenance.operations_planned = len(result.operations_planned)
            provenance.operations_applied = result.operations_applied
            provenance.requires_replacement = result.requires_replacement
            provenance.change_summary = change_summary
            if result.error is not None:
                provenance.error = str(result.error)
                provenance.error_type = type(result.error).__name__
                kind = result.error_kind
                provenance.error_kind = kind.value if kind else None
            self._provenance.log_provenance(provenance)
            self._log_result(result)

        return result

    async def destroy(self, key: str, policy: DeletePolicy) -> ReconcileResult:
        """Delete the remote object of an instance and discard the instance.

        Args:
            key: State store key of the instance.
            policy: Explicit force/recursive policy; there is no default.
        """
        result = ReconcileResult(resource_key=key, dry_run=self._config.dry_run)
        change_summary = ChangeProvenanceSummary()
        instance = self._store.get(key)
        try:
            if instance is None:
                raise NotFoundError(f"No resource '{key}' in the state store")
            result.kind = instance.kind
            result.lifecycle = instance.lifecycle
            delete_plan = plan_delete(instance, policy)
            result.operations_planned = delete_plan.describe()
            self._log_plan(instance, delete_plan)
            if self._config.dry_run:
                return result
            instance = await self._execute(instance, delete_plan, result, change_summary)
            await self._run_blocking(self._store.delete, key)
            result.lifecycle = Lifecycle.REMOVED
        except asyncio.CancelledError:
            raise
        except ProvisionerError as e:
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result)

        return result

    async def _run_blocking(self, fn: Any, *args: Any) -> Any:
        """Run a blocking store or file call on the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def _refresh(self, instance: ResourceInstance) -> ResourceInstance:
        refreshed = await self._executor.refresh(instance)
        if refreshed is not instance:
            await self._run_blocking(self._store.put, refreshed)
        return refreshed

    async def _execute(
        self,
        instance: ResourceInstance,
        operation_plan: OperationPlan,
        result: ReconcileResult,
        change_summary: ChangeProvenanceSummary,
    ) -> ResourceInstance:
        try:
            updated = await self._executor.execute(instance, operation_plan)
        except PartialFailureError as e:
            await self._run_blocking(self._store.put, e.instance)
            result.operations_applied += len(e.applied)
            change_summary.record(e.applied)
            result.lifecycle = e.instance.lifecycle
            raise
        except NotFoundError as e:
            if instance.lifecycle != Lifecycle.LIVE:
                raise
            # A missing child member or referenced object reports not found
            # too. Only a failed read of the instance itself clears its id.
            try:
                current = await self._executor.refresh(instance)
            except ProvisionerError as read_error:
                logger.error(
                    "Re-read after not found failed",
                    extra={"resource_key": instance.key, "error": str(read_error)},
                )
                current = instance
            if current.vanished:
                logger.warning(
                    "Remote object vanished during execution",
                    extra={"resource_key": instance.key, "id": instance.id, "error": str(e)},
                )
            await self._run_blocking(self._store.put, current)
            result.lifecycle = current.lifecycle
            raise

        await self._run_blocking(self._store.put, updated)
        result.operations_applied += len(operation_plan)
        change_summary.record(operation_plan.operations)
        return updated

    async def _replace(
        self,
        instance: ResourceInstance,
        policy: DeletePolicy,
        result: ReconcileResult,
        change_summary: ChangeProvenanceSummary,
    ) -> ResourceInstance:
        """Destroy the remote object so the next plan creates it again."""
        logger.warning(
            "Replacing resource",
            extra={
                "resource_key": instance.key,
                "kind": instance.kind,
                "attributes": result.replacement_attributes,
                "force": policy.force,
                "recursive": policy.recursive,
            },
        )
        delete_plan = plan_delete(instance, policy)
        result.operations_planned += delete_plan.describe()
        if self._config.dry_run:
            # Plan the create that would follow, without touching the platform
            return ResourceInstance(
                key=instance.key, kind=instance.kind, desired=instance.desired, parent=instance.parent
            )
        removed = await self._execute(instance, delete_plan, result, change_summary)
        fresh = ResourceInstance(
            key=removed.key, kind=removed.kind, desired=removed.desired, parent=removed.parent
        )
        await self._run_blocking(self._store.put, fresh)
        return fresh

    # =========================================================================
    # All instances
    # =========================================================================

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every stored instance, bounded by max_concurrent_reconciles."""
        semaphore = asyncio.Semaphore(self._config.max_concurrent_reconciles)

        async def bounded(key: str) -> ReconcileResult:
            async with semaphore:
                return await self.reconcile(key)

        keys = [
            key
            for key in self._store.keys()
            if (instance := self._store.get(key)) is not None and not instance.removed
        ]
        return list(await asyncio.gather(*(bounded(key) for key in keys)))

    async def _reconcile_once(self) -> bool:
        """Run one cycle. Returns False when the cycle counts as failed."""
        specs_dir = self._config.specs_dir
        if specs_dir.is_dir():
            try:
                spec_set = await self._run_blocking(load_specs, specs_dir)
                await self._run_blocking(self.apply_specs, spec_set)
            except (SpecLoadError, InvalidPlanError) as e:
                logger.error("Failed to load specs", extra={"specs_dir": str(specs_dir), "error": str(e)})
                return False

        results = await self.reconcile_all()
        failed = [r for r in results if r.error is not None]
        logger.info(
            "Reconciliation cycle complete",
            extra={
                "resources": len(results),
                "failed": len(failed),
                "converged": sum(1 for r in results if r.converged),
            },
        )
        return not results or len(failed) < len(results)

    async def run(self) -> None:
        """Run reconciliation cycles at the configured interval until shutdown.

        After MAX_CONSECUTIVE_FAILURES failed cycles the circuit opens and
        reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "specs_dir": str(self._config.specs_dir),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_concurrent_reconciles": self._config.max_concurrent_reconciles,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait(min(remaining, self._config.reconcile_interval_seconds))
                    continue
                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            if await self._reconcile_once():
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )

            await self._wait(self._config.reconcile_interval_seconds)

        logger.info("Reconciler shutdown complete")

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            # Normal timeout, continue to next cycle
            pass

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def circuit_open(self) -> bool:
        return self._circuit_open_until is not None

    # =========================================================================
    # Logging
    # =========================================================================

    def _log_plan(self, instance: ResourceInstance, operation_plan: OperationPlan) -> None:
        logger.info(
            "Computed plan",
            extra={
                "resource_key": instance.key,
                "kind": instance.kind,
                "lifecycle": instance.lifecycle.value,
                "operations": operation_plan.describe(),
                "lock_scope": operation_plan.lock_scope,
                "dry_run": self._config.dry_run,
            },
        )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "resource_key": result.resource_key,
            "kind": result.kind,
            "lifecycle": result.lifecycle.value,
            "duration_seconds": result.duration_seconds,
            "operations_planned": len(result.operations_planned),
            "operations_applied": result.operations_applied,
            "requires_replacement": result.requires_replacement,
            "dry_run": result.dry_run,
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            kind = result.error_kind
            extra["error_kind"] = kind.value if kind else None
            logger.error("Reconciliation failed", extra=extra)
        elif result.requires_replacement:
            logger.warning("Reconciliation: replacement required", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
