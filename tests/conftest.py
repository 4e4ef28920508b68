import json
from typing import Dict, List, Optional

import pytest

from nodepilot.config import Config
from nodepilot.host import HostBindings
from nodepilot.models import MetricsSample, NodeDescriptor


class FakeClock:
    """Manually advanced clock for TTL and cooldown tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingHost(HostBindings):
    """A host that remembers what the core told it."""

    def __init__(self, nodes: Optional[List[dict]] = None):
        self.storage: Dict[str, str] = {}
        self.storage_writes = 0
        self.notifications: List[str] = []
        self.current: Optional[str] = None
        self.statuses: Dict[str, dict] = {}
        self.qualities: Dict[str, int] = {}
        self.nodes = nodes
        self.subscriptions: Dict[str, list] = {}

    def get_current_node(self):
        return self.current

    def set_current_node(self, node_id):
        self.current = node_id

    def get_node_list(self):
        return self.nodes

    def get_storage(self, key):
        return self.storage.get(key)

    def set_storage(self, key, value):
        self.storage_writes += 1
        self.storage[key] = value

    def set_node_status(self, node_id, status):
        self.statuses[node_id] = status

    def set_node_quality(self, node_id, score):
        self.qualities[node_id] = score

    def notify(self, message):
        self.notifications.append(message)

    def subscribe(self, event, callback):
        self.subscriptions.setdefault(event, []).append(callback)
        return True

    def stored_cache(self, key: str) -> dict:
        return json.loads(self.storage[key])["cache"]


class FakeProber:
    """Stands in for `NodeProber`, returning scripted samples per node id."""

    def __init__(self, samples: Dict[str, object]):
        self.samples = samples
        self.calls: List[str] = []
        self.forgotten = 0

    async def probe(self, node: NodeDescriptor) -> MetricsSample:
        self.calls.append(node.id)
        outcome = self.samples[node.id]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def forget(self, node_id=None) -> int:
        self.forgotten += 1
        return 0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Config(
        _env_file=None,
        NODE_TEST_TIMEOUT=1.0,
        RETRY_DELAY_BASE=0.0,
        TCP_PROBE_ENABLED=False,
        GEO_EXTERNAL_LOOKUP=False,
    )


@pytest.fixture
def host():
    return RecordingHost()


def good_sample(latency_ms: float = 50.0) -> MetricsSample:
    return MetricsSample(latency_ms=latency_ms, jitter_ms=2.0, loss=0.0, bps=20_000_000, bytes=65536)
