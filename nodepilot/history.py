from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, List, Optional

from .host import HostBindings, call_host
from .models import MetricsSample
from .state import AppState
from .stats import SuccessRateTracker, percentile, std_dev, trend, weighted_average

logger = logging.getLogger(__name__)


class MetricsHistory:
    """Bounded per-node series of raw probe measurements."""

    def __init__(self, window_size: int = 50, host: Optional[HostBindings] = None):
        self.window_size = max(1, int(window_size))
        self.host = host or HostBindings()
        self.samples: Dict[str, Deque[MetricsSample]] = {}

    def append(self, node_id: str, sample: MetricsSample) -> None:
        if not node_id:
            return
        if node_id not in self.samples:
            self.samples[node_id] = deque(maxlen=self.window_size)
        self.samples[node_id].append(sample)
        call_host(self.host, "set_node_metrics", node_id, sample.to_dict())

    def get(self, node_id: str) -> List[MetricsSample]:
        return list(self.samples.get(node_id, ()))

    def summary(self, node_id: str) -> Dict[str, float]:
        """Latency statistics over the recorded window."""
        latencies = [s.latency_ms for s in self.samples.get(node_id, ())]
        return {
            "samples": len(latencies),
            "latency_weighted_avg": weighted_average(latencies),
            "latency_std_dev": std_dev(latencies),
            "latency_trend": trend(latencies),
            "latency_p90": percentile(latencies, 90),
        }


class AvailabilityTracker:
    """Success ratio and hard-fail streak per node."""

    def __init__(self, state: Optional[AppState] = None):
        self.state = state
        self.trackers: Dict[str, SuccessRateTracker] = {}

    def ensure(self, node_id: str) -> SuccessRateTracker:
        if node_id not in self.trackers:
            self.trackers[node_id] = SuccessRateTracker()
        return self.trackers[node_id]

    def record(self, node_id: str, success: bool, hard_fail: bool = False) -> None:
        tracker = self.ensure(node_id)
        tracker.record(success, hard_fail=hard_fail)
        if self.state is not None:
            self.state.update_node_status(node_id, availability_rate=tracker.rate)

    def rate(self, node_id: str) -> float:
        tracker = self.trackers.get(node_id)
        return tracker.rate if tracker else 0.0

    def hard_fail_streak(self, node_id: str) -> int:
        tracker = self.trackers.get(node_id)
        return tracker.hard_fail_streak if tracker else 0
