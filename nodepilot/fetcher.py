from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set

import aiohttp

from .exceptions import FetchError, FetchTimeoutError, InvalidRequestError
from .mirror import MirrorSelector
from .utils import decode_base64_text

logger = logging.getLogger(__name__)

DEFAULT_ACCELERATED_HOSTS = ("https://raw.githubusercontent.com/", "https://github.com/")


class AcceleratedFetcher:
    """HTTP requests with a hard deadline and mirror acceleration for GitHub hosts."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        mirror: Optional[MirrorSelector] = None,
        accelerated_hosts: Sequence[str] = DEFAULT_ACCELERATED_HOSTS,
        user_agent: Optional[str] = None,
        timeout: float = 3.0,
    ):
        self.session = session
        self.mirror = mirror
        self.accelerated_hosts = tuple(accelerated_hosts)
        self.headers = {"User-Agent": user_agent} if user_agent else {}
        self.timeout = timeout

    async def accelerate(self, url: str) -> str:
        """Prefix GitHub raw/release URLs with the currently selected mirror."""
        if self.mirror is None or not url.startswith(self.accelerated_hosts):
            return url
        try:
            prefix = await self.mirror.select_best()
        except Exception as e:
            logger.warning(f"Mirror acceleration failed, using direct URL: {e}")
            return url
        return f"{prefix}{url}"

    @asynccontextmanager
    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """Open a request whose whole lifetime, body included, is bounded by `timeout`.

        Raises `FetchTimeoutError` when the deadline cancels the request and
        `FetchError` for any other transport failure.
        """
        if not isinstance(url, str) or not url:
            raise InvalidRequestError("A non-empty URL is required")
        url = await self.accelerate(url)
        timeout = self.timeout if timeout is None else timeout
        merged_headers = {**self.headers, **(headers or {})}
        client_timeout = aiohttp.ClientTimeout(total=timeout) if timeout and timeout > 0 else None
        try:
            async with self.session.request(
                method,
                url,
                headers=merged_headers,
                timeout=client_timeout,
                allow_redirects=kwargs.pop("allow_redirects", True),
                **kwargs,
            ) as response:
                yield response
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(url, timeout) from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Request to {url} failed: {e}") from e

    async def fetch_json(self, url: str, timeout: Optional[float] = None) -> Any:
        async with self.request(url, timeout=timeout) as response:
            if response.status >= 400:
                raise FetchError(f"HTTP status {response.status} from {url}")
            try:
                return await response.json(content_type=None)
            except ValueError as e:
                raise FetchError(f"Invalid JSON from {url}: {e}") from e

    async def fetch_text(self, url: str, timeout: Optional[float] = None) -> str:
        async with self.request(url, timeout=timeout) as response:
            if response.status >= 400:
                raise FetchError(f"HTTP status {response.status} from {url}")
            return await response.text()


class SubscriptionFetcher:
    """Manages fetching and decoding of subscription sources."""

    def __init__(self, fetcher: AcceleratedFetcher, sources: List[str], timeout: float = 10.0):
        self.fetcher = fetcher
        self.sources = sources
        self.timeout = timeout

    async def fetch_all(self) -> List[str]:
        """Fetches all subscriptions concurrently and returns the unique lines."""
        all_lines: Set[str] = set()
        ordered: List[str] = []

        tasks = [self.fetcher.fetch_text(url, timeout=self.timeout) for url in self.sources]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for source_url, result in zip(self.sources, results):
            if isinstance(result, Exception):
                logger.error(f"Could not process subscription from {source_url}: {result}")
                continue

            decoded_text = decode_base64_text(result.strip())
            raw_text = decoded_text if decoded_text else result

            new_lines = 0
            for line in raw_text.splitlines():
                line = line.strip()
                if line and line not in all_lines:
                    all_lines.add(line)
                    ordered.append(line)
                    new_lines += 1
            logger.info(f"Added {new_lines} new unique entries from {source_url}.")

        if not ordered:
            logger.warning("No node entries were fetched from any source.")
        return ordered
