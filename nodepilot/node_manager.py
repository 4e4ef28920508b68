"""Per-node quality, cooldown and best-node selection.

A node is either *eligible* or *cooling down*. Becoming the active node starts
its cooldown, scaled by its quality score, during which the selector prefers
other nodes. The cooldown ends when its timer elapses or when it is cleared
for an emergency escape from a node that keeps hard-failing.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence

from .config import Config
from .events import EventBus, Topic
from .history import AvailabilityTracker
from .host import HostBindings, call_host
from .models import GeoInfo, MetricsSample, NodeDescriptor, QualityEntry, SwitchEvent
from .pool import NodePool
from .scoring import score_components
from .state import AppState

logger = logging.getLogger(__name__)

MAX_QUALITY_DELTA = 20


class NodeManager:
    def __init__(
        self,
        config: Config,
        pool: NodePool,
        state: AppState,
        availability: AvailabilityTracker,
        bus: Optional[EventBus] = None,
        host: Optional[HostBindings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.pool = pool
        self.state = state
        self.availability = availability
        self.bus = bus or EventBus()
        self.host = host or HostBindings()
        self._clock = clock
        self.quality: Dict[str, int] = {}
        self.quality_history: Dict[str, Deque[QualityEntry]] = {}
        self.cooldowns: Dict[str, float] = {}
        self.current_node: Optional[str] = call_host(self.host, "get_current_node")

    # ------------------------------------------------------------------ quality
    def seed_quality(self, nodes: Sequence[NodeDescriptor], score: int) -> None:
        for node in nodes:
            self.quality.setdefault(node.id, max(0, min(100, int(score))))

    def get_quality(self, node_id: str) -> int:
        return self.quality.get(node_id, 0)

    def update_quality(self, node_id: str, delta: float) -> int:
        """Apply `delta` (clamped to +/-20) and keep the score within [0, 100]."""
        try:
            delta = max(-MAX_QUALITY_DELTA, min(MAX_QUALITY_DELTA, float(delta)))
        except (TypeError, ValueError):
            delta = 0.0
        new_score = int(round(max(0.0, min(100.0, self.get_quality(node_id) + delta))))
        self.quality[node_id] = new_score

        history = self.quality_history.setdefault(
            node_id, deque(maxlen=self.config.MAX_HISTORY_RECORDS)
        )
        history.append(QualityEntry(timestamp=self._clock(), score=new_score))
        call_host(self.host, "set_node_quality", node_id, new_score)
        return new_score

    # ----------------------------------------------------------------- cooldown
    def is_in_cooldown(self, node_id: str) -> bool:
        end_time = self.cooldowns.get(node_id)
        return end_time is not None and self._clock() < end_time

    def cooldown_duration(self, node_id: str) -> float:
        """Seconds of cooldown for `node_id`; grows with its quality score."""
        score = max(0, min(100, self.get_quality(node_id)))
        factor = 1 + (score / 100) * 0.9
        return max(
            self.config.MIN_SWITCH_COOLDOWN,
            min(self.config.MAX_SWITCH_COOLDOWN, self.config.BASE_SWITCH_COOLDOWN * factor),
        )

    def clear_cooldown(self, node_id: str) -> bool:
        """Emergency release of a node's cooldown."""
        if self.cooldowns.pop(node_id, None) is None:
            return False
        logger.info(f"Cooldown cleared for node {node_id}")
        return True

    # ---------------------------------------------------------------- selection
    def score_node(self, node: NodeDescriptor) -> float:
        if not node or not node.id:
            return 0.0
        cfg = self.config
        quality = self.get_quality(node.id)
        metrics = self.state.get(node.id).metrics or MetricsSample()
        metric_score = score_components(metrics)["metric_score"]
        success_rate = self.availability.rate(node.id)
        penalty = cfg.AVAILABILITY_PENALTY if success_rate < cfg.AVAILABILITY_MIN_RATE else 0.0
        total_weight = (cfg.QUALITY_WEIGHT + cfg.METRIC_WEIGHT + cfg.SUCCESS_WEIGHT) or 1.0
        score = (
            quality * cfg.QUALITY_WEIGHT
            + metric_score * cfg.METRIC_WEIGHT
            + success_rate * 100 * cfg.SUCCESS_WEIGHT
        ) / total_weight - penalty
        logger.debug(
            f"Score {node.id}: quality={quality} metric={metric_score} "
            f"success={success_rate:.2f} penalty={penalty} -> {score:.2f}"
        )
        return score

    def select_best(self, candidates: Sequence[NodeDescriptor]) -> Optional[NodeDescriptor]:
        """Highest-scoring candidate; the first one wins ties."""
        if not candidates:
            logger.warning("No candidate nodes to select from")
            return None
        best = candidates[0]
        best_score = self.score_node(best)
        for node in candidates[1:]:
            score = self.score_node(node)
            if score > best_score:
                best, best_score = node, score
        return best

    def get_best_node(
        self, nodes: Sequence[NodeDescriptor], target_geo: Optional[GeoInfo] = None
    ) -> Optional[NodeDescriptor]:
        if not nodes:
            logger.warning("Invalid node list")
            return None
        candidates: List[NodeDescriptor] = [n for n in nodes if not self.is_in_cooldown(n.id)]
        if not candidates:
            candidates = list(nodes)
        if target_geo is not None and target_geo.region:
            regional = [
                n for n in candidates
                if (geo := self.state.get(n.id).geo) is not None and geo.region == target_geo.region
            ]
            if regional:
                candidates = regional
        return self.select_best(candidates) or candidates[0]

    # ---------------------------------------------------------------- switching
    def switch_to(
        self, node_id: str, target_geo: Optional[GeoInfo] = None
    ) -> Optional[NodeDescriptor]:
        if not isinstance(node_id, str) or not node_id:
            logger.warning("Invalid node id")
            return None
        if self.current_node == node_id:
            return self.pool.get(node_id) or NodeDescriptor(id=node_id)
        node = self.pool.get(node_id)
        if node is None:
            logger.warning(f"Node does not exist: {node_id}")
            return None

        old_node_id = self.current_node
        self.current_node = node_id
        # Never shorten a cooldown that is already running.
        cooldown_end = self._clock() + self.cooldown_duration(node_id)
        self.cooldowns[node_id] = max(cooldown_end, self.cooldowns.get(node_id, 0.0))

        event = SwitchEvent(old_node_id, node_id, target_geo, timestamp=self._clock())
        logger.debug(f"Switch event: {event.to_dict()}")
        call_host(self.host, "set_current_node", node_id)
        self.bus.publish(Topic.NODE_SWITCHED, event)

        geo = self.state.get(node_id).geo
        region = geo.region if geo else "unknown region"
        logger.info(f"Node switch: {old_node_id or 'none'} -> {node_id} ({region})")
        return node

    def switch_to_best(
        self, nodes: Sequence[NodeDescriptor], target_geo: Optional[GeoInfo] = None
    ) -> Optional[NodeDescriptor]:
        if not nodes:
            return None
        best = self.get_best_node(nodes, target_geo)
        if best is None:
            return None
        return self.switch_to(best.id, target_geo)
