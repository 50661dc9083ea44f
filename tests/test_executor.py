"""Tests for the reconciliation executor against the mock platform."""

from __future__ import annotations

import asyncio
import copy
from typing import Any

import pytest
from vcd_mock import MockVcdPlatform

from vcd_provisioner.config import Config
from vcd_provisioner.errors import ErrorKind, FatalRemoteError, RetryableRemoteError
from vcd_provisioner.executor import PartialFailureError, ReconciliationExecutor
from vcd_provisioner.locks import LockCoordinator
from vcd_provisioner.planner import plan, plan_delete
from vcd_provisioner.resources import DeletePolicy, Lifecycle, ParentRef, ResourceInstance

CATALOG: dict[str, Any] = {
    "name": "main",
    "org": "acme",
    "description": "Golden images",
    "publish_enabled": True,
    "cache_enabled": False,
    "preserve_identity_information": False,
    "metadata_entry": [{"key": "team", "value": "platform"}],
}

HREF = {"href": "https://vcd.example.com/api/catalog/1"}


def storage_profile(name: str, default: bool = False) -> dict[str, Any]:
    return {"name": name, "limit": 0, "enabled": True, "default": default}


@pytest.fixture
def platform() -> MockVcdPlatform:
    return MockVcdPlatform(computed={"catalog": HREF})


@pytest.fixture
def executor(platform: MockVcdPlatform, fast_config: Config) -> ReconciliationExecutor:
    return ReconciliationExecutor(platform, LockCoordinator(), fast_config)


def snapshot(platform: MockVcdPlatform, object_id: str) -> dict[str, Any]:
    return copy.deepcopy(platform.attributes(object_id))


async def converge(
    executor: ReconciliationExecutor, instance: ResourceInstance
) -> ResourceInstance:
    return await executor.execute(instance, plan(instance))


class SharedScopePlatform(MockVcdPlatform):
    """Counts mutations in flight across every parent."""

    async def _enter(self, scope: str) -> None:
        await super()._enter("*")

    def _leave(self, scope: str) -> None:
        super()._leave("*")


class TestCreate:
    """Tests for executing Create operations."""

    @pytest.mark.asyncio
    async def test_create_becomes_live_after_task(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        instance = ResourceInstance(key="main-catalog", kind="catalog", desired=dict(CATALOG))

        live = await converge(executor, instance)

        assert live.lifecycle == Lifecycle.LIVE
        assert live.id in platform.objects
        assert live.observed["href"] == HREF["href"]
        assert platform.call_count("task_status") >= 1
        assert instance.id == ""

    @pytest.mark.asyncio
    async def test_second_pass_is_a_no_op(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        live = await converge(executor, ResourceInstance(key="c", kind="catalog", desired=dict(CATALOG)))
        mutations = len(platform.mutations())

        assert plan(live).is_empty
        again = await converge(executor, live)

        assert again == live
        assert len(platform.mutations()) == mutations

    @pytest.mark.asyncio
    async def test_failed_creation_task_leaves_instance_pending(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        platform.fail_task("create", "Duplicate name")
        instance = ResourceInstance(key="c", kind="catalog", desired=dict(CATALOG))

        with pytest.raises(FatalRemoteError, match="Duplicate name"):
            await converge(executor, instance)

        assert not platform.objects

    @pytest.mark.asyncio
    async def test_busy_create_call_is_reissued(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        """A create rejected as busy before any task started created nothing."""
        platform.fail_call("create", RuntimeError("Object is busy completing an operation"))
        instance = ResourceInstance(key="c", kind="catalog", desired=dict(CATALOG))

        live = await converge(executor, instance)

        assert live.lifecycle == Lifecycle.LIVE
        assert platform.call_count("create") == 2
        assert list(platform.objects) == [live.id]

    @pytest.mark.asyncio
    async def test_failed_create_task_is_not_reissued(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        """Once the platform accepted a create, a busy task failure is final."""
        platform.fail_task("create", "Object is busy completing an operation", busy=True)
        instance = ResourceInstance(key="c", kind="catalog", desired=dict(CATALOG))

        with pytest.raises(RetryableRemoteError):
            await converge(executor, instance)

        assert platform.call_count("create") == 1
        assert not platform.objects


class TestUpdate:
    """Tests for executing field and child updates."""

    @pytest.mark.asyncio
    async def test_busy_object_is_retried(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        object_id = platform.add_object("catalog", "main", {**CATALOG, "description": "old"})
        instance = ResourceInstance(
            key="c", kind="catalog", id=object_id, desired=dict(CATALOG),
            observed=snapshot(platform, object_id),
        )
        platform.mark_busy(object_id, times=2)

        live = await converge(executor, instance)

        assert platform.call_count("update") == 3
        assert live.observed["description"] == "Golden images"

    @pytest.mark.asyncio
    async def test_partial_failure_reports_fresh_observed_state(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        """Operation 2 of 3 fails: operation 1 stays applied and is not replayed."""
        stale = {**CATALOG, "description": "old", "publish_enabled": False, "metadata_entry": []}
        object_id = platform.add_object("catalog", "main", stale)
        instance = ResourceInstance(
            key="c", kind="catalog", id=object_id, desired=dict(CATALOG), observed=dict(stale)
        )
        platform.fail_task("update", "Publishing failed", when=lambda c: "publish_enabled" in c)
        operation_plan = plan(instance)
        assert len(operation_plan) == 3

        with pytest.raises(PartialFailureError) as exc_info:
            await executor.execute(instance, operation_plan)

        error = exc_info.value
        assert error.kind == ErrorKind.PARTIAL_FAILURE
        assert [op.group for op in error.applied] == ["core"]
        assert error.failed_operation.group == "publish"
        assert isinstance(error.cause, FatalRemoteError)
        assert error.observed_fresh
        assert error.observed["description"] == "Golden images"

        replan = plan(error.instance)
        assert replan.describe() == [
            "update_fields[publish](publish_enabled)",
            "update_fields[metadata](metadata_entry)",
        ]

    @pytest.mark.asyncio
    async def test_first_operation_failure_raises_original_error(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        object_id = platform.add_object("catalog", "main", {**CATALOG, "description": "old"})
        instance = ResourceInstance(
            key="c", kind="catalog", id=object_id, desired=dict(CATALOG),
            observed=snapshot(platform, object_id),
        )
        platform.fail_call("update", PermissionError("Access denied"))

        with pytest.raises(FatalRemoteError, match="Access denied"):
            await converge(executor, instance)

    @pytest.mark.asyncio
    async def test_default_storage_profile_swap(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        """The platform never sees a collection without a default member."""
        existing = {"name": "vdc1", "storage_profiles": [storage_profile("A", True), storage_profile("B")]}
        object_id = platform.add_object("vdc", "vdc1", existing)
        instance = ResourceInstance(
            key="vdc1",
            kind="vdc",
            id=object_id,
            desired={"storage_profiles": [storage_profile("B", True), storage_profile("C")]},
            observed=snapshot(platform, object_id),
        )

        live = await converge(executor, instance)

        profiles = {p["name"]: p["default"] for p in live.observed["storage_profiles"]}
        assert profiles == {"B": True, "C": False}
        assert [c.method for c in platform.mutations()] == [
            "set_default",
            "add_child",
            "remove_child",
        ]
        assert plan(live).is_empty

    @pytest.mark.asyncio
    async def test_renamed_default_storage_profile(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        object_id = platform.add_object(
            "vdc", "vdc1", {"name": "vdc1", "storage_profiles": [storage_profile("A", True)]}
        )
        instance = ResourceInstance(
            key="vdc1",
            kind="vdc",
            id=object_id,
            desired={"storage_profiles": [storage_profile("A2", True)]},
            observed=snapshot(platform, object_id),
        )

        live = await converge(executor, instance)

        assert live.observed["storage_profiles"] == [storage_profile("A2", True)]

    @pytest.mark.asyncio
    async def test_vm_network_order(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        front = {"name": "front", "ip_allocation_mode": "POOL", "is_primary": True, "connected": True}
        back = {"name": "back", "ip_allocation_mode": "DHCP", "is_primary": False, "connected": True}
        object_id = platform.add_object("vm", "web-1", {"networks": [dict(front)]}, parent_id="vapp-1")
        instance = ResourceInstance(
            key="web-1",
            kind="vm",
            id=object_id,
            desired={"networks": [back, front]},
            observed=snapshot(platform, object_id),
            parent=ParentRef("vapp", "vapp-1"),
        )

        live = await converge(executor, instance)

        assert [n["name"] for n in live.observed["networks"]] == ["back", "front"]


class TestDelete:
    """Tests for executing Delete operations."""

    @pytest.mark.asyncio
    async def test_delete_removes_object(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        object_id = platform.add_object("catalog", "main", dict(CATALOG))
        instance = ResourceInstance(key="c", kind="catalog", id=object_id, desired=dict(CATALOG))
        policy = DeletePolicy(force=True, recursive=True)

        removed = await executor.execute(instance, plan_delete(instance, policy))

        assert removed.lifecycle == Lifecycle.REMOVED
        assert object_id not in platform.objects
        assert platform.calls_for("delete")[0].detail == {"force": True, "recursive": True}

    @pytest.mark.asyncio
    async def test_delete_of_missing_object_is_done(
        self, executor: ReconciliationExecutor
    ) -> None:
        instance = ResourceInstance(key="c", kind="catalog", id="urn:vcloud:catalog:gone")

        removed = await executor.execute(
            instance, plan_delete(instance, DeletePolicy(force=False, recursive=False))
        )

        assert removed.lifecycle == Lifecycle.REMOVED

    @pytest.mark.asyncio
    async def test_non_recursive_delete_of_parent_fails(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        vapp_id = platform.add_object("vapp", "web")
        platform.add_object("vm", "web-1", parent_id=vapp_id)
        instance = ResourceInstance(key="web", kind="vapp", id=vapp_id)

        with pytest.raises(FatalRemoteError, match="still contains"):
            await executor.execute(
                instance, plan_delete(instance, DeletePolicy(force=False, recursive=False))
            )

        assert vapp_id in platform.objects


class TestRefresh:
    """Tests for ReconciliationExecutor.refresh()."""

    @pytest.mark.asyncio
    async def test_vanished_object_clears_identity(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        instance = ResourceInstance(
            key="c", kind="catalog", id="urn:vcloud:catalog:gone", observed=dict(CATALOG)
        )

        refreshed = await executor.refresh(instance)

        assert refreshed.lifecycle == Lifecycle.PENDING_CREATE
        assert refreshed.vanished
        assert refreshed.observed == {}

    @pytest.mark.asyncio
    async def test_pending_instance_is_not_read(
        self, executor: ReconciliationExecutor, platform: MockVcdPlatform
    ) -> None:
        instance = ResourceInstance(key="c", kind="catalog", desired=dict(CATALOG))

        assert await executor.refresh(instance) is instance
        assert platform.call_count("read") == 0


class TestLocking:
    """Tests for lock scope handling during execution."""

    @pytest.mark.asyncio
    async def test_siblings_on_one_gateway_are_serialized(self, fast_config: Config) -> None:
        platform = MockVcdPlatform(call_latency=0.01)
        executor = ReconciliationExecutor(platform, LockCoordinator(), fast_config)
        gateway = ParentRef("edge_gateway", "gw-1")
        rules = [
            ResourceInstance(
                key=f"snat-{i}",
                kind="nat_rule",
                desired={
                    "edge_gateway_id": "gw-1",
                    "rule_type": "SNAT",
                    "name": f"snat-{i}",
                    "external_address": "203.0.113.10",
                    "internal_address": f"10.0.{i}.0/24",
                },
                parent=gateway,
            )
            for i in range(4)
        ]

        results = await asyncio.gather(*(converge(executor, rule) for rule in rules))

        assert all(r.lifecycle == Lifecycle.LIVE for r in results)
        assert platform.max_in_flight["gw-1"] == 1

    @pytest.mark.asyncio
    async def test_unlocked_siblings_overlap(self, fast_config: Config) -> None:
        """Catalogs have no shared parent, their mutations may overlap."""
        platform = MockVcdPlatform(call_latency=0.01)
        executor = ReconciliationExecutor(platform, LockCoordinator(), fast_config)
        catalogs = [
            ResourceInstance(key=f"c{i}", kind="catalog", desired={**CATALOG, "name": f"c{i}"})
            for i in range(3)
        ]

        await asyncio.gather(*(converge(executor, c) for c in catalogs))

        assert platform.max_in_flight[""] > 1

    @pytest.mark.asyncio
    async def test_lock_released_on_cancellation(self, fast_config: Config) -> None:
        platform = MockVcdPlatform(call_latency=5)
        locks = LockCoordinator()
        executor = ReconciliationExecutor(platform, locks, fast_config)
        vm = ResourceInstance(
            key="web-1",
            kind="vm",
            desired={"name": "web-1", "vapp_name": "web"},
            parent=ParentRef("vapp", "vapp-1"),
        )

        task = asyncio.create_task(converge(executor, vm))
        await asyncio.sleep(0.01)
        assert locks.is_locked("vapp:vapp-1")

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not locks.is_locked("vapp:vapp-1")

    @pytest.mark.asyncio
    async def test_vapp_delete_waits_for_vm_update(self, fast_config: Config) -> None:
        platform = SharedScopePlatform(call_latency=0.01)
        locks = LockCoordinator()
        executor = ReconciliationExecutor(platform, locks, fast_config)
        vapp_id = platform.add_object("vapp", "web", {"org": "acme", "vdc": "vdc1"})
        vm_id = platform.add_object(
            "vm", "web-1", {"vapp_name": "web", "computer_name": "old"}, parent_id=vapp_id
        )
        vm = ResourceInstance(
            key="web-1",
            kind="vm",
            id=vm_id,
            desired={"name": "web-1", "vapp_name": "web", "computer_name": "new"},
            observed=snapshot(platform, vm_id),
            parent=ParentRef("vapp", vapp_id),
        )
        vapp = ResourceInstance(key="web", kind="vapp", id=vapp_id)

        update = asyncio.create_task(converge(executor, vm))
        await asyncio.sleep(0.005)
        assert locks.is_locked(f"vapp:{vapp_id}")
        delete = asyncio.create_task(
            executor.execute(vapp, plan_delete(vapp, DeletePolicy(force=True, recursive=True)))
        )
        updated, removed = await asyncio.gather(update, delete)

        assert updated.observed["computer_name"] == "new"
        assert removed.lifecycle == Lifecycle.REMOVED
        assert [c.method for c in platform.mutations()] == ["update", "delete"]
        assert platform.max_in_flight["*"] == 1
        assert vm_id not in platform.objects
