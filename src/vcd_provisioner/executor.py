"""Reconciliation executor.

Drives an OperationPlan against the Remote Resource API:

- operations run strictly in plan order, one at a time
- the plan's lock scope is held for the whole sequence and released on every
  exit path, cancellation included
- retryable operations go through tasks.retry, every remote call and task
  wait is bounded by the operation timeout budget
- a create is reported live only after its remote task succeeded; only a
  busy rejection of the create call is retried, never an accepted create
- when operation k of n fails after earlier ones took effect, observed state
  is re-read and PartialFailureError carries it, so the next plan starts
  from what the platform actually holds

Cancellation stops the loop before the next operation. An in-flight remote
call is not aborted since the platform has no cancel primitive.
"""

from __future__ import annotations

import logging
from typing import Any

from .config import Config
from .errors import ErrorKind, InvalidPlanError, NotFoundError, ProvisionerError
from .locks import LockCoordinator
from .planner import Operation, OperationKind, OperationPlan
from .remote import RemoteResourceAPI, TaskHandle
from .resources import Lifecycle, ResourceInstance
from .tasks import TimeoutBudget, await_task, bounded, retry

logger = logging.getLogger(__name__)


class PartialFailureError(ProvisionerError):
    """Raised when a plan failed after some of its operations took effect.

    Attributes:
        instance: The instance with observed state re-read after the failure.
        applied: Operations that completed before the failure.
        failed_operation: The operation that failed.
        cause: The classified error of the failed operation.
        observed_fresh: False when the re-read itself failed and observed is
            the pre-plan state.
    """

    kind = ErrorKind.PARTIAL_FAILURE

    def __init__(
        self,
        message: str,
        instance: ResourceInstance,
        applied: list[Operation],
        failed_operation: Operation,
        cause: ProvisionerError,
        observed_fresh: bool = True,
    ) -> None:
        super().__init__(message)
        self.instance = instance
        self.applied = applied
        self.failed_operation = failed_operation
        self.cause = cause
        self.observed_fresh = observed_fresh

    @property
    def observed(self) -> dict[str, Any]:
        return self.instance.observed


class ReconciliationExecutor:
    """Applies operation plans for resource instances."""

    def __init__(
        self,
        api: RemoteResourceAPI,
        locks: LockCoordinator,
        config: Config | None = None,
    ) -> None:
        self._api = api
        self._locks = locks
        self._config = config or Config()

    def _budget(self) -> TimeoutBudget:
        return TimeoutBudget(self._config.operation_timeout_seconds)

    async def refresh(self, instance: ResourceInstance) -> ResourceInstance:
        """Re-read observed state of a live instance.

        A vanished remote object clears the local identity and returns the
        instance as pending create.
        """
        if instance.lifecycle != Lifecycle.LIVE:
            return instance
        operation = f"read {instance.kind}/{instance.key}"
        budget = self._budget()
        try:
            observed = await retry(
                budget,
                lambda: bounded(
                    lambda: self._api.read(instance.kind, instance.id), budget, operation
                ),
                operation,
                backoff_base=self._config.retry_backoff_base_seconds,
                backoff_max=self._config.retry_backoff_max_seconds,
            )
        except NotFoundError:
            logger.warning(
                "Remote object not found, clearing identity",
                extra={"resource_key": instance.key, "kind": instance.kind, "id": instance.id},
            )
            return instance.forget_identity()
        return instance.with_observed(observed)

    async def execute(self, instance: ResourceInstance, plan: OperationPlan) -> ResourceInstance:
        """Apply plan to instance and return the updated instance.

        Raises:
            PartialFailureError: If an operation failed after others applied.
            ProvisionerError: If the first operation failed, or a lock could
                not be acquired.
        """
        if plan.is_empty:
            return instance

        logger.info(
            "Executing plan",
            extra={
                "resource_key": instance.key,
                "kind": instance.kind,
                "operations": plan.describe(),
                "lock_scope": plan.lock_scope,
            },
        )

        if plan.lock_scope is None:
            return await self._run(instance, plan)

        async with self._locks.hold(
            plan.lock_scope, timeout=self._config.operation_timeout_seconds
        ):
            return await self._run(instance, plan)

    async def _run(self, instance: ResourceInstance, plan: OperationPlan) -> ResourceInstance:
        current = instance
        applied: list[Operation] = []
        total = len(plan.operations)

        for index, operation in enumerate(plan.operations, start=1):
            try:
                current = await self._apply(current, operation)
            except ProvisionerError as e:
                logger.error(
                    "Operation failed",
                    extra={
                        "resource_key": instance.key,
                        "kind": instance.kind,
                        "operation": operation.describe(),
                        "position": f"{index}/{total}",
                        "error_kind": e.kind.value,
                        "error": str(e),
                    },
                )
                if not applied or current.lifecycle != Lifecycle.LIVE:
                    raise
                raise await self._partial_failure(current, applied, operation, e) from e
            applied.append(operation)

        if current.lifecycle == Lifecycle.LIVE:
            current = await self.refresh(current)
        return current

    async def _partial_failure(
        self,
        instance: ResourceInstance,
        applied: list[Operation],
        failed: Operation,
        cause: ProvisionerError,
    ) -> PartialFailureError:
        observed_fresh = True
        try:
            instance = await self.refresh(instance)
        except ProvisionerError as read_error:
            observed_fresh = False
            logger.error(
                "Re-read after partial failure failed",
                extra={"resource_key": instance.key, "error": str(read_error)},
            )
        return PartialFailureError(
            f"{failed.describe()} failed on '{instance.key}' after "
            f"{len(applied)} applied operation(s): {cause}",
            instance=instance,
            applied=applied,
            failed_operation=failed,
            cause=cause,
            observed_fresh=observed_fresh,
        )

    async def _apply(self, instance: ResourceInstance, operation: Operation) -> ResourceInstance:
        name = f"{operation.describe()} {instance.kind}/{instance.key}"
        budget = self._budget()

        async def attempt() -> ResourceInstance:
            return await self._dispatch(instance, operation, budget, name)

        if operation.retryable:
            result = await retry(
                budget,
                attempt,
                name,
                backoff_base=self._config.retry_backoff_base_seconds,
                backoff_max=self._config.retry_backoff_max_seconds,
            )
        else:
            result = await attempt()

        logger.info(
            "Applied operation",
            extra={
                "resource_key": instance.key,
                "kind": instance.kind,
                "operation": operation.describe(),
                "id": result.id,
            },
        )
        return result

    async def _wait(self, handle: TaskHandle | None, budget: TimeoutBudget) -> None:
        if handle is not None:
            await await_task(
                self._api, handle, budget, poll_interval=self._config.task_poll_interval_seconds
            )

    async def _dispatch(
        self,
        instance: ResourceInstance,
        operation: Operation,
        budget: TimeoutBudget,
        name: str,
    ) -> ResourceInstance:
        api = self._api
        kind = instance.kind

        match operation.kind:
            case OperationKind.CREATE:
                # A busy rejection of the call itself created nothing and may be
                # re-issued. Once a task exists the create is never sent again.
                object_id, handle = await retry(
                    budget,
                    lambda: bounded(
                        lambda: api.create(kind, operation.attributes, instance.parent),
                        budget,
                        name,
                    ),
                    name,
                    backoff_base=self._config.retry_backoff_base_seconds,
                    backoff_max=self._config.retry_backoff_max_seconds,
                )
                # The id is only stable once the creation task succeeded
                await self._wait(handle, budget)
                return instance.with_id(object_id)
            case OperationKind.UPDATE_FIELDS:
                handle = await bounded(
                    lambda: api.update(kind, instance.id, operation.attributes), budget, name
                )
            case OperationKind.ADD_CHILD:
                handle = await bounded(
                    lambda: api.add_child(
                        kind, instance.id, operation.collection, operation.attributes
                    ),
                    budget,
                    name,
                )
            case OperationKind.UPDATE_CHILD:
                handle = await bounded(
                    lambda: api.update_child(
                        kind,
                        instance.id,
                        operation.collection,
                        operation.child_key,
                        operation.attributes,
                    ),
                    budget,
                    name,
                )
            case OperationKind.REMOVE_CHILD:
                handle = await bounded(
                    lambda: api.remove_child(
                        kind, instance.id, operation.collection, operation.child_key
                    ),
                    budget,
                    name,
                )
            case OperationKind.SET_DEFAULT:
                handle = await bounded(
                    lambda: api.set_default(
                        kind, instance.id, operation.collection, operation.child_key
                    ),
                    budget,
                    name,
                )
            case OperationKind.DELETE:
                policy = operation.delete_policy
                if policy is None:
                    raise InvalidPlanError(f"{name} has no DeletePolicy")
                try:
                    handle = await bounded(
                        lambda: api.delete(
                            kind, instance.id, force=policy.force, recursive=policy.recursive
                        ),
                        budget,
                        name,
                    )
                    await self._wait(handle, budget)
                except NotFoundError:
                    logger.info(
                        "Object already gone, treating delete as done",
                        extra={"resource_key": instance.key, "id": instance.id},
                    )
                return instance.mark_removed()
            case _:
                raise InvalidPlanError(f"Unsupported operation {operation.kind}")

        await self._wait(handle, budget)
        return instance
