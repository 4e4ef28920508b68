import json
from unittest.mock import AsyncMock, patch

import pytest

from nodepilot.events import Topic
from nodepilot.exceptions import FetchError
from nodepilot.models import UNKNOWN_GEO, GeoInfo, MetricsSample, NodeDescriptor
from nodepilot.orchestrator import CentralManager
from nodepilot.pool import NodePool

from .conftest import FakeProber, RecordingHost, good_sample


class FakeGeo:
    def __init__(self, geo):
        self.geo = geo
        self.lookups = []

    async def resolve(self, ip, domain=None):
        self.lookups.append(ip)
        return self.geo


def node(node_id):
    return NodeDescriptor(id=node_id, address=f"{node_id.lower()}.example.com:443")


@pytest.fixture
async def build(config, clock):
    managers = []

    def _build(nodes, samples, **kwargs):
        kwargs.setdefault("host", RecordingHost())
        manager = CentralManager(
            config,
            pool=NodePool(nodes),
            prober=FakeProber(samples),
            clock=clock,
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield _build
    for manager in managers:
        await manager.destroy()


async def test_healthy_node_evaluation(build):
    manager = build([node("A")], {"A": good_sample(latency_ms=40)})

    result = await manager.evaluate_node(manager.pool.get("A"))

    assert result.success is True
    assert result.metrics.latency_ms == 40
    assert 0 <= result.score <= 100
    assert result.switched_to is None
    status = manager.state.get("A")
    assert status.metrics == result.metrics
    assert status.score == result.score
    assert status.availability_rate == 1.0
    assert manager.stats.average == pytest.approx(40)
    assert len(manager.metrics.get("A")) == 1


async def test_quality_moves_towards_metric_score(build):
    manager = build([node("A")], {"A": good_sample(latency_ms=10)})
    assert manager.node_manager.get_quality("A") == 50

    result = await manager.evaluate_node(manager.pool.get("A"))

    assert result.score > 70
    assert manager.node_manager.get_quality("A") == 70


async def test_exhausted_probe_yields_simulated_failure(build, config):
    manager = build([node("A")], {"A": FetchError("unreachable")})

    result = await manager.evaluate_node(manager.pool.get("A"))

    assert manager.prober.calls == ["A"] * config.MAX_RETRY_ATTEMPTS
    assert result.success is False
    assert result.metrics.simulated is True
    assert result.metrics.hard_fail is False
    assert manager.availability.hard_fail_streak("A") == 0
    assert manager.availability.rate("A") == 0.0


async def test_repeated_hard_fail_on_active_node_clears_cooldown(build):
    manager = build([node("A")], {"A": MetricsSample.failure(1000)})
    a = manager.pool.get("A")
    manager.node_manager.switch_to("A")
    assert manager.node_manager.is_in_cooldown("A")

    with patch.object(
        manager.node_manager, "switch_to_best", wraps=manager.node_manager.switch_to_best
    ) as switch_to_best:
        await manager.evaluate_node(a)
        assert manager.node_manager.is_in_cooldown("A")
        assert switch_to_best.call_count == 1

        await manager.evaluate_node(a)
        assert not manager.node_manager.is_in_cooldown("A")
        assert switch_to_best.call_count == 2

    assert manager.availability.hard_fail_streak("A") == 2
    assert manager.current_node == "A"


async def test_failing_active_node_escapes_to_healthy_one(build):
    manager = build([node("A"), node("B")], {"A": MetricsSample.failure(1000), "B": good_sample()})
    manager.node_manager.switch_to("A")
    breaches = []
    manager.bus.subscribe(Topic.PERFORMANCE_THRESHOLD_BREACHED, breaches.append)

    result = await manager.evaluate_node(manager.pool.get("A"))

    assert result.switched_to == "B"
    assert manager.current_node == "B"
    assert breaches == ["A"]


async def test_inactive_failing_node_does_not_switch(build):
    manager = build([node("A"), node("B")], {"A": good_sample(), "B": MetricsSample.failure(1000)})
    manager.node_manager.switch_to("A")

    result = await manager.evaluate_node(manager.pool.get("B"))

    assert result.switched_to is None
    assert manager.current_node == "A"


async def test_evaluate_all_isolates_failures(build):
    manager = build([node("A"), node("B")], {"A": good_sample(), "B": good_sample()})
    completed = []
    manager.bus.subscribe(Topic.EVALUATION_COMPLETED, completed.append)
    real_evaluate = manager.evaluate_node

    async def evaluate(n):
        if n.id == "A":
            raise RuntimeError("boom")
        return await real_evaluate(n)

    with patch.object(manager, "evaluate_node", side_effect=evaluate):
        results = await manager.evaluate_all()

    assert not results[0].ok
    assert isinstance(results[0].error, RuntimeError)
    assert results[1].ok
    assert results[1].value.node_id == "B"
    assert completed == [results]


async def test_evaluate_all_with_empty_pool(build):
    manager = build([], {})
    assert await manager.evaluate_all() == []


async def test_route_by_geo_prefers_target_region(build):
    geo = FakeGeo(GeoInfo("Japan", "Tokyo"))
    manager = build([node("A"), node("B")], {}, geo=geo)
    manager.node_manager.quality.update({"A": 90, "B": 30})
    manager.state.update_node_status("A", geo=GeoInfo("United States", "California"))
    manager.state.update_node_status("B", geo=GeoInfo("Japan", "Tokyo"))

    chosen = await manager.route_by_geo("8.8.8.8", "example.jp")

    assert chosen.id == "B"
    assert geo.lookups == ["8.8.8.8"]


async def test_route_by_geo_unknown_target_uses_score(build):
    manager = build([node("A"), node("B")], {}, geo=FakeGeo(UNKNOWN_GEO))
    manager.node_manager.quality.update({"A": 30, "B": 90})
    manager.state.update_node_status("A", geo=GeoInfo("Unknown", "Unknown"))

    chosen = await manager.route_by_geo("8.8.8.8")

    assert chosen.id == "B"


async def test_preheat_measures_first_nodes(build, config):
    nodes = [node("A"), node("B"), node("C")]
    manager = build(nodes, {n.id: good_sample() for n in nodes})
    manager.config = config.model_copy(update={"PREHEAT_NODE_COUNT": 2})

    await manager.preheat_nodes()

    assert manager.prober.calls == ["A", "B"]
    assert manager.state.get("A").initial_metrics is not None
    assert manager.state.get("C").initial_metrics is None


async def test_initialize_and_destroy_lifecycle(build):
    host = RecordingHost()
    manager = build([node("A")], {"A": good_sample()}, host=host)

    with patch.object(manager.mirror, "select_best", new=AsyncMock(return_value="")):
        assert await manager.initialize() is True
        await manager.initialize()

    assert manager.initialized
    assert manager.bus.listener_count(Topic.REQUEST_DETECTED) == 1
    assert host.notifications[0] == "Node selection initialized"
    assert set(host.subscriptions) == {"configChanged", "networkOnline"}

    await manager.destroy()

    assert not manager.initialized
    assert manager.bus.listener_count(Topic.REQUEST_DETECTED) == 0
    assert manager.session.closed
    stored = json.loads(host.storage["nodepilot_central_data"])["cache"]
    assert isinstance(stored, dict)


async def test_initialize_survives_mirror_failure(build):
    manager = build([node("A")], {"A": good_sample()})
    with patch.object(manager.mirror, "select_best", new=AsyncMock(side_effect=RuntimeError("dns"))):
        assert await manager.initialize() is True


async def test_request_detected_event_routes(build):
    manager = build([node("A"), node("B")], {}, geo=FakeGeo(GeoInfo("Japan", "Tokyo")))
    manager.state.update_node_status("B", geo=GeoInfo("Japan", "Tokyo"))
    with patch.object(manager.mirror, "select_best", new=AsyncMock(return_value="")):
        manager.config = manager.config.model_copy(update={"PREHEAT_NODE_COUNT": 0})
        await manager.initialize()

    manager.bus.publish(Topic.REQUEST_DETECTED, "8.8.8.8")
    await manager.bus.drain()

    assert manager.current_node == "B"


async def test_network_online_reevaluates(build):
    manager = build([node("A")], {"A": good_sample()})
    with patch.object(manager.mirror, "select_best", new=AsyncMock(return_value="")):
        manager.config = manager.config.model_copy(update={"PREHEAT_NODE_COUNT": 0})
        await manager.initialize()

    manager.bus.publish(Topic.NETWORK_ONLINE)
    await manager.bus.drain()

    assert manager.prober.forgotten == 1
    assert manager.prober.calls == ["A"]
    assert manager.mirror.last_probe is None


async def test_nodes_are_loaded_from_host(build):
    host = RecordingHost(nodes=[{"id": "h1", "address": "h1.example.com:443"}, {"id": 5}])
    manager = build([], {}, host=host)

    assert [n.id for n in manager.pool.nodes()] == ["h1"]
    assert manager.node_manager.get_quality("h1") == 50


async def test_snapshot(build):
    manager = build([node("A")], {"A": good_sample()})
    await manager.evaluate_node(manager.pool.get("A"))

    snapshot = manager.snapshot()

    assert snapshot["current_node"] is None
    assert snapshot["nodes"][0]["id"] == "A"
    assert snapshot["nodes"][0]["metrics"]["latency_ms"] == 50.0
    assert snapshot["nodes"][0]["history"]["samples"] == 1
