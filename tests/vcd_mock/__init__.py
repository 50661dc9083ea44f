"""VCD platform mock for integration testing.

In-memory implementation of the Remote Resource API so the executor, the
reconciler and the identity resolver can be exercised without a Cloud
Director endpoint.

Key Features:
- In-memory objects with child collections and computed attributes
- Asynchronous task simulation (queued → running → success/error)
- Busy-object and failure injection for retry and partial-failure tests
- Call log and per-parent concurrency tracking for lock assertions

Usage:
    from vcd_mock import MockVcdPlatform

    platform = MockVcdPlatform()
    catalog_id = platform.add_object("catalog", "main", {"org": "acme"})

    executor = ReconciliationExecutor(platform, LockCoordinator(), config)
    ...
    assert platform.call_count("update") == 1
"""

from .platform import MockCall, MockObject, MockVcdPlatform

__all__ = [
    "MockCall",
    "MockObject",
    "MockVcdPlatform",
]
