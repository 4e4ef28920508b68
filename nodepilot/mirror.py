"""Accelerating-mirror selection for GitHub-hosted resources.

Rule sets and geo databases live on raw.githubusercontent.com and github.com,
which are often slow or blocked. A mirror prefix (``https://mirror/`` +
original URL) routes the same request through a proxy. The selector probes all
configured prefixes at once, prefers the direct path (empty prefix) whenever
it works, and memoizes its choice for a while.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

ProbeFn = Callable[[str], Awaitable[bool]]


class MirrorSelector:
    def __init__(
        self,
        mirrors: List[str],
        test_targets: List[str],
        session: Optional[aiohttp.ClientSession] = None,
        probe: Optional[ProbeFn] = None,
        ttl: float = 600.0,
        timeout: float = 3.0,
        user_agent: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        if not mirrors:
            raise ValueError("At least one mirror prefix is required")
        if not test_targets:
            raise ValueError("At least one test target is required")
        if session is None and probe is None:
            raise ValueError("Either an HTTP session or a probe function is required")
        self.mirrors = list(mirrors)
        self.test_targets = list(test_targets)
        self.session = session
        self.ttl = ttl
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.headers = {"User-Agent": user_agent} if user_agent else {}
        self._probe = probe or self._http_probe
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self.selected: Optional[str] = None
        self.last_probe: Optional[float] = None
        self.rounds = 0

    def _fresh(self) -> bool:
        return (
            self.selected is not None
            and self.last_probe is not None
            and self._clock() - self.last_probe < self.ttl
        )

    async def _http_probe(self, url: str) -> bool:
        try:
            async with self.session.get(url, timeout=self.timeout, headers=self.headers) as response:
                return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Mirror probe failed for {url}: {e}")
            return False

    async def _probe_prefix(self, prefix: str) -> bool:
        target = self._rng.choice(self.test_targets)
        try:
            return bool(await self._probe(f"{prefix}{target}"))
        except Exception as e:
            logger.debug(f"Mirror probe raised for prefix {prefix!r}: {e}")
            return False

    async def select_best(self) -> str:
        """Return the mirror prefix to use, probing at most once per TTL window."""
        if self._fresh():
            return self.selected
        async with self._lock:
            # Callers that queued behind a running round reuse its result.
            if self._fresh():
                return self.selected
            started = self._clock()
            results = await asyncio.gather(
                *(self._probe_prefix(m) for m in self.mirrors), return_exceptions=True
            )
            healthy = [m for m, ok in zip(self.mirrors, results) if ok is True]
            if "" in healthy:
                chosen = ""
            elif healthy:
                chosen = healthy[0]
            elif self.selected is not None:
                chosen = self.selected
            else:
                chosen = self.mirrors[0]
            self.rounds += 1
            if chosen != self.selected:
                logger.info(f"Selected mirror prefix {chosen or '<direct>'} ({len(healthy)}/{len(self.mirrors)} healthy)")
            self.selected = chosen
            self.last_probe = started
            return chosen

    def invalidate(self) -> None:
        self.last_probe = None
