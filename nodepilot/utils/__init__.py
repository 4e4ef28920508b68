"""
Utility functions used across the project.

Bounded retry with capped exponential backoff, a bounded-concurrency task
pool, address classification helpers, and `safe_write` / `decode_base64_text`
for the report writer and subscription fetcher.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import ipaddress
import logging
import re
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from ..exceptions import InvalidRequestError
from ..types import TaskResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_ATTEMPTS = 10
MAX_RETRY_BACKOFF = 5.0
MAX_POOL_CONCURRENCY = 50

_IPV4_RE = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")
_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9.-]+$")


async def retry(
    op: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.2,
    max_backoff: float = MAX_RETRY_BACKOFF,
) -> T:
    """Await `op()` until it succeeds, at most `attempts` times.

    Waits `min(max_backoff, base_delay * 2**attempt)` between tries and
    re-raises the last failure once exhausted. `InvalidRequestError` is
    raised immediately.
    """
    if not callable(op):
        raise InvalidRequestError("retry: op must be callable")
    max_attempts = max(1, min(MAX_RETRY_ATTEMPTS, int(attempts)))
    max_backoff = min(MAX_RETRY_BACKOFF, max_backoff)
    delay = max(0.0, min(max_backoff, float(base_delay)))
    for attempt in range(max_attempts):
        try:
            return await op()
        except InvalidRequestError:
            raise
        except Exception as e:
            if attempt >= max_attempts - 1:
                raise
            backoff = min(max_backoff, delay * 2 ** attempt)
            logger.debug(f"Attempt {attempt + 1}/{max_attempts} failed ({e}), retrying in {backoff:.2f}s")
            await asyncio.sleep(backoff)
    raise InvalidRequestError("retry: no attempts made")


async def async_pool(
    tasks: Sequence[Callable[[], Awaitable[T]]],
    limit: int = 3,
) -> List[TaskResult[T]]:
    """Run task factories with at most `limit` in flight.

    Slot `i` of the result always belongs to `tasks[i]`; a failing task fills
    its own slot with the error and leaves its siblings running.
    """
    if not tasks:
        return []
    semaphore = asyncio.Semaphore(max(1, min(MAX_POOL_CONCURRENCY, int(limit))))

    async def run_with_semaphore(task: Callable[[], Awaitable[T]]) -> TaskResult[T]:
        async with semaphore:
            try:
                return TaskResult(value=await task())
            except Exception as e:
                return TaskResult(error=e)

    return list(await asyncio.gather(*(run_with_semaphore(t) for t in tasks)))


def is_ipv4(ip: Optional[str]) -> bool:
    if not isinstance(ip, str) or not _IPV4_RE.match(ip):
        return False
    return all(0 <= int(part) <= 255 for part in ip.split("."))


def is_private_ip(ip: Optional[str]) -> bool:
    """True for private, loopback and link-local IPv4 addresses."""
    if not is_ipv4(ip):
        return False
    addr = ipaddress.IPv4Address(ip)
    return addr.is_private or addr.is_loopback or addr.is_link_local


def is_valid_domain(domain: Optional[str]) -> bool:
    return (
        isinstance(domain, str)
        and bool(_DOMAIN_RE.match(domain))
        and not domain.startswith(".")
        and not domain.endswith(".")
        and ".." not in domain
    )


async def safe_write(path: Path, content: str) -> None:
    """Asynchronously writes content to a file, creating parent directories."""
    try:
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_text, content, encoding="utf-8")
        logger.debug(f"Successfully wrote to file: {path}")
    except OSError as e:
        logger.error(f"Could not write to file {path}: {e}")


def decode_base64_text(encoded_text: str) -> Optional[str]:
    """Decodes a base64 encoded string, gracefully handling common errors."""
    # Ignore data URIs or non-base64 lines
    if not encoded_text or encoded_text.startswith(("data:", "#")):
        return None
    try:
        # Add padding if it's missing
        padding = len(encoded_text) % 4
        if padding != 0:
            encoded_text += "=" * (4 - padding)
        return base64.b64decode(encoded_text, validate=True).decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning(f"Could not decode bytes to UTF-8 after base64 decoding: {e}")
        return None
    except (ValueError, TypeError, binascii.Error):
        # Not a valid base64 string, might be a regular config line
        return None


__all__ = [
    "async_pool",
    "decode_base64_text",
    "is_ipv4",
    "is_private_ip",
    "is_valid_domain",
    "retry",
    "safe_write",
]
