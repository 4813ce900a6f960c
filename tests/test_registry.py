from coordinator.models import NodeMetrics

from conftest import FakeChannel


def test_admit_assigns_sequential_ids(registry):
    a = registry.admit(FakeChannel())
    b = registry.admit(FakeChannel())
    assert (a.id, b.id) == ("node-1", "node-2")
    assert [n.id for n in registry.snapshot()] == ["node-1", "node-2"]


def test_ids_are_not_recycled_after_disconnect(registry):
    first = registry.admit(FakeChannel())
    registry.remove(first)
    second = registry.admit(FakeChannel())
    assert second.id == "node-2"
    assert len(registry) == 1


def test_same_connection_is_admitted_once(registry):
    channel = FakeChannel()
    assert registry.admit(channel) is registry.admit(channel)
    assert len(registry) == 1


def test_remove_is_idempotent(registry):
    node = registry.admit(FakeChannel())
    assert registry.remove(node) is True
    assert registry.remove(node) is False
    assert registry.remove("node-99") is False
    assert registry.snapshot() == []


def test_snapshot_keeps_admission_order_through_churn(registry):
    nodes = [registry.admit(FakeChannel()) for _ in range(4)]
    registry.remove(nodes[1])
    registry.admit(FakeChannel())
    assert [n.id for n in registry.snapshot()] == ["node-1", "node-3", "node-4", "node-5"]


def test_admission_time_seeds_last_report(registry, clock):
    node = registry.admit(FakeChannel())
    assert node.last_report_at == clock.now
    assert node.latest_metrics is None


def test_record_report_updates_node(registry, clock):
    node = registry.admit(FakeChannel())
    clock.advance(12)
    metrics = NodeMetrics(connected=3)
    assert registry.record_report(node, metrics) is node
    assert node.last_report_at == clock.now
    assert node.latest_metrics == metrics


def test_record_report_for_removed_node_is_dropped(registry, clock):
    node = registry.admit(FakeChannel())
    registry.remove(node)
    before = node.last_report_at
    clock.advance(5)
    assert registry.record_report(node, NodeMetrics(connected=1)) is None
    assert node.last_report_at == before
    assert node.latest_metrics is None
