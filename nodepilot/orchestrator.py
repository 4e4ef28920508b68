"""The probe -> score -> decide loop.

`CentralManager` is the context object built once at startup. It owns the
caches, trackers and the `NodeManager`, and it is passed explicitly to whatever
needs it (the main loop, the health app).
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Callable, List, Optional

import aiohttp

from .cache import CacheStore, LRUCache
from .config import Config
from .events import EventBus, Topic
from .fetcher import AcceleratedFetcher
from .geo import GeoResolver
from .history import AvailabilityTracker, MetricsHistory
from .host import HostBindings, call_host
from .mirror import MirrorSelector
from .models import UNKNOWN_GEO, EvaluationResult, GeoInfo, MetricsSample, NodeDescriptor
from .node_manager import NodeManager
from .pool import NodePool
from .prober import NodeProber
from .scoring import score_components
from .state import AppState
from .stats import RollingStats
from .types import TaskResult
from .utils import async_pool, is_ipv4, is_private_ip, retry

logger = logging.getLogger(__name__)


class CentralManager:
    def __init__(
        self,
        config: Config,
        pool: Optional[NodePool] = None,
        host: Optional[HostBindings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        bus: Optional[EventBus] = None,
        prober: Optional[NodeProber] = None,
        geo: Optional[GeoResolver] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.host = host or HostBindings()
        self.pool = pool if pool is not None else NodePool()
        if not len(self.pool):
            self._load_nodes_from_host()
        self.bus = bus or EventBus()
        self._clock = clock

        self.state = AppState(self.host)
        self.stats = RollingStats(config.FEATURE_WINDOW_SIZE)
        self.availability = AvailabilityTracker(self.state)
        self.metrics = MetricsHistory(config.FEATURE_WINDOW_SIZE, self.host)
        self.node_manager = NodeManager(
            config, self.pool, self.state, self.availability, self.bus, self.host, clock
        )
        self.node_manager.seed_quality(self.pool.nodes(), config.INITIAL_QUALITY)

        self.cache_store = CacheStore(self.host, config.STORAGE_KEY)
        self.probe_cache = self.cache_store.register("probe", self._new_cache())
        self.geo_cache = self.cache_store.register("geo", self._new_cache())

        self._owns_session = session is None
        self.session = session if session is not None else aiohttp.ClientSession()
        self.mirror = MirrorSelector(
            config.GH_MIRRORS,
            config.GH_TEST_TARGETS,
            session=self.session,
            ttl=config.MIRROR_PROBE_TTL,
            timeout=config.GEO_INFO_TIMEOUT,
            user_agent=config.USER_AGENT,
        )
        self.fetcher = AcceleratedFetcher(
            self.session,
            self.mirror,
            accelerated_hosts=config.ACCELERATED_HOSTS,
            user_agent=config.USER_AGENT,
            timeout=config.GEO_INFO_TIMEOUT,
        )
        self.prober = prober or NodeProber(
            self.fetcher,
            self.probe_cache,
            timeout=config.NODE_TEST_TIMEOUT,
            cache_ttl=config.PROBE_CACHE_TTL,
            sample_bytes=config.PROBE_SAMPLE_BYTES,
            tcp_probe=config.TCP_PROBE_ENABLED,
        )
        self.geo = geo or GeoResolver(
            self.fetcher,
            self.geo_cache,
            primary_url=config.GEO_PRIMARY_URL,
            fallback_url=config.GEO_FALLBACK_URL,
            enabled=config.GEO_EXTERNAL_LOOKUP,
            timeout=config.GEO_INFO_TIMEOUT,
            cache_ttl=config.GEO_CACHE_TTL,
            fallback_ttl=config.GEO_FALLBACK_TTL,
        )

        self.initialized = False
        self._listeners = None

    def _new_cache(self) -> LRUCache:
        return LRUCache(
            max_size=self.config.LRU_CACHE_MAX_SIZE,
            ttl=self.config.LRU_CACHE_TTL,
            cleanup_threshold=self.config.CACHE_CLEANUP_THRESHOLD,
            cleanup_batch_size=self.config.CACHE_CLEANUP_BATCH_SIZE,
        )

    def _load_nodes_from_host(self) -> int:
        raw_nodes = call_host(self.host, "get_node_list")
        if not raw_nodes:
            return 0
        count = self.pool.replace_from_dicts(raw_nodes)
        logger.info(f"Loaded {count} nodes from host.")
        return count

    @property
    def current_node(self) -> Optional[str]:
        return self.node_manager.current_node

    # ---------------------------------------------------------------- lifecycle
    async def __aenter__(self) -> "CentralManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.destroy()

    async def initialize(self) -> bool:
        """Pick a mirror, wire listeners and preheat nodes. Never raises."""
        try:
            try:
                await self.mirror.select_best()
            except Exception as e:
                logger.warning(f"Mirror selection failed: {e}")
            if self._listeners is None:
                self._register_listeners()
            try:
                await self.preheat_nodes()
            except Exception as e:
                logger.warning(f"Node preheat failed: {e}")
            self.initialized = True
            call_host(self.host, "notify", "Node selection initialized")
            logger.info("Initialization complete.")
        except Exception as e:
            logger.error(f"Initialization failed: {e}", exc_info=True)
            call_host(self.host, "notify", f"Initialization failed: {e}")
        return self.initialized

    async def destroy(self) -> None:
        logger.info("Releasing resources...")
        self._unregister_listeners()
        await self.cache_store.flush()
        if self._owns_session and not self.session.closed:
            await self.session.close()
        self.initialized = False
        logger.info("Resources released.")

    def _register_listeners(self) -> None:
        listeners = {
            Topic.REQUEST_DETECTED: self.on_request_detected,
            Topic.CONFIG_CHANGED: self.on_config_changed,
            Topic.NETWORK_ONLINE: self.on_network_online,
            Topic.EVALUATION_COMPLETED: self.on_evaluation_completed,
            Topic.PERFORMANCE_THRESHOLD_BREACHED: self.on_performance_threshold_breached,
        }
        for topic, listener in listeners.items():
            self.bus.subscribe(topic, listener)
        self._listeners = listeners

        call_host(self.host, "subscribe", Topic.CONFIG_CHANGED.value,
                  lambda: self.bus.publish(Topic.CONFIG_CHANGED))
        call_host(self.host, "subscribe", Topic.NETWORK_ONLINE.value,
                  lambda: self.bus.publish(Topic.NETWORK_ONLINE))
        call_host(self.host, "on_exit", self.destroy)

    def _unregister_listeners(self) -> None:
        if self._listeners is None:
            return
        for topic, listener in self._listeners.items():
            self.bus.unsubscribe(topic, listener)
        self._listeners = None

    # ------------------------------------------------------------ event handlers
    async def on_request_detected(self, target_ip: str) -> None:
        try:
            await self.route_by_geo(target_ip)
        except Exception as e:
            logger.warning(f"Geo routing failed for {target_ip}: {e}")

    async def on_config_changed(self) -> None:
        logger.info("Configuration changed, reloading nodes.")
        self._load_nodes_from_host()
        self.node_manager.seed_quality(self.pool.nodes(), self.config.INITIAL_QUALITY)
        self.prober.forget()
        await self.evaluate_all()

    async def on_network_online(self) -> None:
        logger.info("Network back online, re-evaluating nodes.")
        self.prober.forget()
        self.mirror.invalidate()
        await self.evaluate_all()

    def on_evaluation_completed(self, results: List[TaskResult[Optional[EvaluationResult]]]) -> None:
        healthy = sum(1 for r in results if r.ok and r.value is not None and r.value.success)
        logger.info(f"Evaluation complete: {healthy}/{len(results)} nodes healthy, active node {self.current_node or 'none'}.")

    def on_performance_threshold_breached(self, node_id: str) -> None:
        logger.warning(f"Active node {node_id} fell below its performance threshold.")

    # ------------------------------------------------------------------ probing
    async def preheat_nodes(self) -> None:
        """Take initial measurements of the first nodes so selection has data."""
        nodes = self.pool.nodes()[: self.config.PREHEAT_NODE_COUNT]
        if not nodes:
            return
        tasks = [functools.partial(self.prober.probe, node) for node in nodes]
        results = await async_pool(tasks, self.config.CONCURRENCY_LIMIT)
        for node, result in zip(nodes, results):
            if not result.ok:
                logger.error(f"Preheat failed for node {node.id}: {result.error}")
                continue
            sample: MetricsSample = result.value
            metric_score = score_components(sample)["metric_score"]
            self.state.update_node_status(node.id, initial_metrics=sample, last_tested=self._clock())
            self.metrics.append(node.id, sample)
            self.node_manager.update_quality(node.id, metric_score - self.node_manager.get_quality(node.id))
            self.availability.ensure(node.id)

    async def _resolve_node_geo(self, node: NodeDescriptor) -> Optional[GeoInfo]:
        ip = node.host
        if not self.config.GEO_EXTERNAL_LOOKUP or not is_ipv4(ip) or is_private_ip(ip):
            return None
        try:
            return await self.geo.resolve(ip)
        except Exception as e:
            logger.debug(f"Geo lookup failed for node {node.id}: {e}")
            return None

    async def evaluate_node(self, node: NodeDescriptor) -> Optional[EvaluationResult]:
        """Probe, score and record one node; escape from it if it is active and failing."""
        if node is None or not node.id:
            logger.warning("Invalid node")
            return None
        cfg = self.config

        try:
            sample = await retry(
                lambda: self.prober.probe(node),
                attempts=cfg.MAX_RETRY_ATTEMPTS,
                base_delay=cfg.RETRY_DELAY_BASE,
                max_backoff=cfg.MAX_RETRY_BACKOFF,
            )
        except Exception as e:
            logger.warning(f"Probe failed for node {node.id}, using simulated metrics: {e}")
            sample = MetricsSample.failure(cfg.NODE_TEST_TIMEOUT * 1000, simulated=True)

        self.availability.ensure(node.id)
        timeout_threshold_ms = cfg.NODE_TEST_TIMEOUT * 1000 * 2
        success = (
            not sample.simulated
            and sample.latency_ms < timeout_threshold_ms
            and not sample.hard_fail
        )
        self.availability.record(node.id, success, hard_fail=sample.hard_fail)
        score = max(0, min(100, score_components(sample)["metric_score"]))

        geo = await self._resolve_node_geo(node)

        self.node_manager.update_quality(node.id, score - self.node_manager.get_quality(node.id))
        self.metrics.append(node.id, sample)
        if success:
            self.stats.add(sample.latency_ms)
        self.state.update_node_status(
            node.id,
            metrics=sample,
            score=score,
            geo=geo or self.state.get(node.id).geo,
            last_evaluated=self._clock(),
            availability_rate=self.availability.rate(node.id),
        )

        switched_to = self._escape_if_failing(node, sample, score)
        return EvaluationResult(
            node_id=node.id,
            metrics=sample,
            score=score,
            success=success,
            geo=geo,
            switched_to=switched_to,
        )

    def _escape_if_failing(self, node: NodeDescriptor, sample: MetricsSample, score: int) -> Optional[str]:
        cfg = self.config
        if self.node_manager.current_node != node.id:
            return None
        rate = self.availability.rate(node.id)
        if not (sample.hard_fail or rate < cfg.AVAILABILITY_MIN_RATE or score < cfg.QUALITY_SCORE_THRESHOLD):
            return None
        nodes = self.pool.nodes()
        if not nodes:
            return None
        if self.availability.hard_fail_streak(node.id) >= cfg.AVAILABILITY_EMERGENCY_FAILS:
            self.node_manager.clear_cooldown(node.id)
        self.bus.publish(Topic.PERFORMANCE_THRESHOLD_BREACHED, node.id)
        chosen = self.node_manager.switch_to_best(nodes)
        return chosen.id if chosen else None

    async def evaluate_all(self) -> List[TaskResult[Optional[EvaluationResult]]]:
        nodes = self.pool.nodes()
        if not nodes:
            logger.warning("No nodes to evaluate.")
            return []
        tasks = [functools.partial(self.evaluate_node, node) for node in nodes]
        results = await async_pool(tasks, self.config.CONCURRENCY_LIMIT)
        for node, result in zip(nodes, results):
            if not result.ok:
                logger.warning(f"Evaluation failed for node {node.id}: {result.error}")
        self.bus.publish(Topic.EVALUATION_COMPLETED, results)
        return results

    # --------------------------------------------------------------- geo routing
    async def route_by_geo(
        self, target_ip: Optional[str], domain: Optional[str] = None
    ) -> Optional[NodeDescriptor]:
        """Switch to the best node, preferring ones in the target's region."""
        nodes = self.pool.nodes()
        if not target_ip or not nodes:
            logger.warning("Cannot route by geo: missing target or nodes")
            return self.node_manager.switch_to_best(nodes)
        target_geo = await self.geo.resolve(target_ip, domain)
        if target_geo is None or target_geo == UNKNOWN_GEO:
            logger.warning(f"No geo info for {target_ip}, selecting by score alone")
            return self.node_manager.switch_to_best(nodes)
        return self.node_manager.switch_to_best(nodes, target_geo)

    # ------------------------------------------------------------------- status
    def snapshot(self) -> dict:
        nodes = []
        for node in self.pool.nodes():
            status = self.state.get(node.id)
            nodes.append({
                "id": node.id,
                "name": node.name,
                "address": node.address,
                "quality": self.node_manager.get_quality(node.id),
                "selection_score": round(self.node_manager.score_node(node), 2),
                "in_cooldown": self.node_manager.is_in_cooldown(node.id),
                "hard_fail_streak": self.availability.hard_fail_streak(node.id),
                "history": self.metrics.summary(node.id),
                **status.to_dict(),
            })
        return {
            "initialized": self.initialized,
            "current_node": self.current_node,
            "mirror": self.mirror.selected,
            "average_latency_ms": round(self.stats.average, 2),
            "nodes": nodes,
        }
