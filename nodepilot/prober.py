from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Tuple

import aiohttp

from .cache import LRUCache
from .exceptions import FetchError, ProbeError
from .fetcher import AcceleratedFetcher
from .models import JITTER_CLAMP_MS, THROUGHPUT_SOFT_CAP_BPS, MetricsSample, NodeDescriptor

logger = logging.getLogger(__name__)


def bps_from_bytes_latency(bytes_read: int, latency_ms: float) -> float:
    """Throughput in bits/sec for `bytes_read` over `latency_ms`, capped."""
    ms = max(1.0, float(latency_ms or 1))
    return min(THROUGHPUT_SOFT_CAP_BPS, round(bytes_read * 8 / ms * 1000))


async def tcp_connect_latency(host: str, port: int, timeout: float) -> float:
    """Milliseconds to establish a TCP connection to `host:port`."""
    start_time = time.monotonic()
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    elapsed = (time.monotonic() - start_time) * 1000
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return elapsed


async def measure_response(
    response: aiohttp.ClientResponse, max_bytes: int = 64 * 1024
) -> Tuple[int, float]:
    """Sample up to `max_bytes` of the body. Returns (bytes read, jitter estimate ms).

    Jitter is estimated from the sampling speed: a slow trickle reads as a
    jittery link. A body that stalls past the request deadline keeps what was
    read so far. When a broken body yields nothing, `Content-Length` is used
    for bytes.
    """
    bytes_read = 0
    start_time = time.monotonic()
    try:
        while bytes_read < max_bytes:
            chunk = await response.content.read(min(8192, max_bytes - bytes_read))
            if not chunk:
                break
            bytes_read += len(chunk)
    except asyncio.TimeoutError:
        logger.debug(f"Body sampling hit the deadline after {bytes_read} bytes")
    except (aiohttp.ClientPayloadError, aiohttp.ClientConnectionError) as e:
        logger.debug(f"Body sampling interrupted: {e}")
        if not bytes_read:
            try:
                bytes_read = int(response.headers.get("Content-Length", "0"))
            except ValueError:
                bytes_read = 0
    duration_ms = max(1.0, (time.monotonic() - start_time) * 1000)
    speed_kbps = bytes_read * 8 / duration_ms
    jitter = min(JITTER_CLAMP_MS, max(1.0, 200 - round(speed_kbps / 10)))
    return bytes_read, jitter


class NodeProber:
    """Measures a node's latency, jitter and throughput, cache-first."""

    def __init__(
        self,
        fetcher: AcceleratedFetcher,
        cache: LRUCache,
        timeout: float = 5.0,
        cache_ttl: float = 60.0,
        sample_bytes: int = 64 * 1024,
        tcp_probe: bool = True,
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.sample_bytes = sample_bytes
        self.tcp_probe = tcp_probe

    @staticmethod
    def cache_key(node_id: str) -> str:
        return f"nodeMetrics:{node_id}"

    def forget(self, node_id: Optional[str] = None) -> int:
        """Drop cached results for one node, or for all nodes."""
        if node_id is not None:
            return int(self.cache.delete(self.cache_key(node_id)))
        return self.cache.delete_where(lambda key: str(key).startswith("nodeMetrics:"))

    async def _tcp_latency(self, node: NodeDescriptor) -> Optional[float]:
        if not self.tcp_probe or not node.address:
            return None
        host, port = node.split_address()
        try:
            return await tcp_connect_latency(host, port, self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"TCP connect probe failed for {node.id}: {e}")
            return None

    async def probe(self, node: NodeDescriptor) -> MetricsSample:
        """Probe a node. Unreachable nodes yield a cached hard-fail sample."""
        key = self.cache_key(node.id)
        cached = self.cache.get(key)
        if cached is not None:
            return MetricsSample.from_dict(cached)

        try:
            sample = await self._measure(node)
        except (FetchError, ProbeError, aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Probe failed for node {node.id}: {e}")
            sample = MetricsSample.failure(self.timeout * 1000)
        self.cache.set(key, sample.to_dict(), self.cache_ttl)
        return sample

    async def _measure(self, node: NodeDescriptor) -> MetricsSample:
        url = node.target_url
        if not url:
            raise ProbeError(f"Node {node.id} has no probe target")

        tcp_latency = await self._tcp_latency(node)

        start_time = time.monotonic()
        async with self.fetcher.request(url, timeout=self.timeout) as response:
            latency = (time.monotonic() - start_time) * 1000
            bytes_read, jitter = await measure_response(response, self.sample_bytes)
        transfer_ms = (time.monotonic() - start_time) * 1000

        bps = bps_from_bytes_latency(bytes_read, transfer_ms)
        final_latency = tcp_latency if tcp_latency is not None and tcp_latency < latency else latency
        return MetricsSample(
            latency_ms=final_latency,
            jitter_ms=jitter,
            loss=0.0,
            bps=bps,
            bytes=bytes_read,
        )
