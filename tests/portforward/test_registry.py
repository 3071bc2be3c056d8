"""
Unit tests for the forward registry.
"""

from datetime import timedelta

import pytest

from infradesk.services.portforward import Forward, ForwardRegistry, ForwardStatus, ForwardTarget
from infradesk.services.portforward.models import utcnow


TARGET = ForwardTarget("backup", "mysql", 3306)


@pytest.fixture
def registry():
    return ForwardRegistry()


def make_forward(connection_ref="conn-1", local_port=40001, target=TARGET):
    return Forward.for_target(connection_ref, target, local_port)


class TestRegistryLookup:
    """put / get / get_by_connection / delete."""

    def test_put_and_get(self, registry):
        forward = registry.put(make_forward())
        assert registry.get(forward.id).local_port == 40001
        assert registry.get_by_connection("conn-1").id == forward.id
        assert len(registry) == 1

    def test_reads_are_copies(self, registry):
        forward = registry.put(make_forward())
        copy = registry.get(forward.id)
        copy.status = ForwardStatus.ERROR
        copy.local_port = 1
        stored = registry.get(forward.id)
        assert stored.status == ForwardStatus.PENDING
        assert stored.local_port == 40001

    def test_missing_lookups_return_none(self, registry):
        assert registry.get("nope") is None
        assert registry.get_by_connection("nope") is None
        assert registry.delete("nope") is None

    def test_put_repoints_connection(self, registry):
        first = registry.put(make_forward(local_port=40001))
        second = registry.put(make_forward(local_port=40002))
        assert registry.get_by_connection("conn-1").id == second.id

        # Deleting the stale record keeps the index on the newer one
        registry.delete(first.id)
        assert registry.get_by_connection("conn-1").id == second.id

    def test_delete_clears_connection_index(self, registry):
        forward = registry.put(make_forward())
        removed = registry.delete(forward.id)
        assert removed.id == forward.id
        assert registry.get_by_connection("conn-1") is None
        assert len(registry) == 0

    def test_list_snapshot(self, registry):
        registry.put(make_forward("conn-1", 40001))
        registry.put(make_forward("conn-2", 40002))
        listed = registry.list()
        assert {f.connection_ref for f in listed} == {"conn-1", "conn-2"}


class TestRegistryUpdates:
    """touch / set_status / set_pod / counts."""

    def test_touch_updates_last_used(self, registry):
        forward = registry.put(make_forward())
        later = utcnow() + timedelta(minutes=5)
        touched = registry.touch(forward.id, now=later)
        assert touched.last_used_at == later
        assert registry.touch("nope") is None

    def test_set_status_records_error(self, registry):
        forward = registry.put(make_forward())
        failed = registry.set_status(forward.id, ForwardStatus.ERROR, last_error="boom")
        assert failed.status == ForwardStatus.ERROR
        assert failed.last_error == "boom"

    def test_set_status_clears_error_when_leaving_error(self, registry):
        forward = registry.put(make_forward())
        registry.set_status(forward.id, ForwardStatus.ERROR, last_error="boom")
        active = registry.set_status(forward.id, ForwardStatus.ACTIVE, last_error="ignored")
        assert active.last_error is None

    def test_compare_and_set(self, registry):
        forward = registry.put(make_forward())
        assert registry.set_status(forward.id, ForwardStatus.ERROR, expected=ForwardStatus.ACTIVE) is None
        assert registry.get(forward.id).status == ForwardStatus.PENDING

        active = registry.set_status(forward.id, ForwardStatus.ACTIVE, expected=ForwardStatus.PENDING)
        assert active.status == ForwardStatus.ACTIVE

    def test_status_changed_at_only_moves_on_change(self, registry):
        forward = registry.put(make_forward())
        t1 = utcnow() + timedelta(seconds=10)
        t2 = utcnow() + timedelta(seconds=20)
        registry.set_status(forward.id, ForwardStatus.ACTIVE, now=t1)
        registry.set_status(forward.id, ForwardStatus.ACTIVE, now=t2)
        assert registry.get(forward.id).status_changed_at == t1

    def test_set_pod(self, registry):
        forward = registry.put(make_forward())
        registry.set_pod(forward.id, "mysql-0")
        assert registry.get(forward.id).pod_name == "mysql-0"
        registry.set_pod("nope", "mysql-0")

    def test_count_by_status(self, registry):
        a = registry.put(make_forward("conn-1", 40001))
        registry.put(make_forward("conn-2", 40002))
        registry.set_status(a.id, ForwardStatus.ACTIVE)

        counts = registry.count_by_status()
        assert counts == {
            "pending": 1,
            "active": 1,
            "error": 0,
            "idle": 0,
            "stopped": 0,
            "total": 2,
        }


class TestForwardModel:
    """Forward helpers."""

    def test_to_dict(self):
        forward = make_forward()
        data = forward.to_dict()
        assert data["connection_id"] == "conn-1"
        assert data["local_host"] == "127.0.0.1"
        assert data["remote_host"] == "mysql.backup.svc.cluster.local"
        assert data["status"] == "pending"
        assert data["error_message"] is None

    def test_target_roundtrip(self):
        forward = make_forward()
        assert forward.target == TARGET
        assert str(TARGET) == "backup/mysql:3306"

    def test_is_live(self):
        forward = make_forward()
        assert forward.is_live
        forward.status = ForwardStatus.ERROR
        assert not forward.is_live
