"""Tests for the operation registry."""

import pytest

from openpay.errors import NotFoundError
from openpay.operations import OperationType, new_operation_id
from openpay.registry import OperationRegistry

from fakes import START


@pytest.fixture
def registry(clock):
    return OperationRegistry(clock)


class TestOperationIds:
    def test_format(self):
        prefix, millis, suffix = new_operation_id("payment", START).split("_")
        assert prefix == "payment"
        assert millis == str(int(START.timestamp() * 1000))
        assert len(suffix) == 10

    def test_unique(self):
        assert len({new_operation_id("split", START) for _ in range(100)}) == 100


class TestOperationRegistry:
    def test_register_and_get(self, registry):
        op_id = registry.register(OperationType.ONE_TIME, "authorization_pending", {"amount": 10})
        record = registry.get(op_id)
        assert op_id.startswith("one_time_")
        assert record.status == "authorization_pending"
        assert record.to_dict()["payload"] == {"amount": 10}
        assert record.to_dict()["created_at"] == "2026-01-01T12:00:00Z"

    def test_explicit_id(self, registry):
        assert registry.register(OperationType.SPLIT, "ready", operation_id="split_1") == "split_1"
        with pytest.raises(ValueError):
            registry.register(OperationType.SPLIT, "ready", operation_id="split_1")

    def test_update_status_merges_payload(self, registry, clock):
        op_id = registry.register(OperationType.WALLET, "authorization_pending", {"a": 1})
        clock.advance(minutes=5)

        record = registry.update_status(op_id, "active", {"b": 2})

        assert record.status == "active"
        assert record.payload == {"a": 1, "b": 2}
        assert record.updated_at > record.created_at

    def test_get_missing(self, registry):
        with pytest.raises(NotFoundError):
            registry.get("nope")
        assert registry.find("nope") is None

    def test_list_filters_newest_first(self, registry, clock):
        a = registry.register(OperationType.ONE_TIME, "completed")
        clock.advance(seconds=1)
        b = registry.register(OperationType.SPLIT, "ready")
        clock.advance(seconds=1)
        c = registry.register(OperationType.ONE_TIME, "authorization_pending")

        assert [r.id for r in registry.list()] == [c, b, a]
        assert [r.id for r in registry.list(OperationType.ONE_TIME)] == [c, a]
        assert [r.id for r in registry.list(status="ready")] == [b]
        assert [r.id for r in registry.list_active()] == [c, b]

    def test_cancel_dispatches_by_type(self, registry):
        cancelled = []
        registry.register_canceller(OperationType.RECURRING, cancelled.append)
        op_id = registry.register(OperationType.RECURRING, "active")

        registry.cancel(op_id)

        assert cancelled == [op_id]

    def test_cancel_without_canceller(self, registry):
        op_id = registry.register(OperationType.WALLET, "active")
        with pytest.raises(NotFoundError):
            registry.cancel(op_id)

    def test_cleanup_removes_terminal(self, registry):
        registry.register(OperationType.ONE_TIME, "completed")
        registry.register(OperationType.SPLIT, "cancelled")
        keep = registry.register(OperationType.RECURRING, "failed")

        assert registry.cleanup() == 2
        assert len(registry) == 1
        assert registry.get(keep).status == "failed"
