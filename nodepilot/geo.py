from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .cache import LRUCache
from .exceptions import FetchError
from .fetcher import AcceleratedFetcher
from .models import LOCAL_GEO, UNKNOWN_GEO, GeoInfo
from .utils import is_ipv4, is_private_ip, is_valid_domain

logger = logging.getLogger(__name__)

TLD_COUNTRIES = {
    "cn": "China",
    "hk": "Hong Kong",
    "tw": "Taiwan",
    "jp": "Japan",
    "kr": "Korea",
    "us": "United States",
    "uk": "United Kingdom",
    "de": "Germany",
    "fr": "France",
    "ca": "Canada",
    "au": "Australia",
    "sg": "Singapore",
    "ru": "Russia",
    "in": "India",
    "br": "Brazil",
}


def fallback_geo(domain: Optional[str] = None) -> GeoInfo:
    """Best guess from the domain's top-level suffix, else Unknown."""
    if domain and is_valid_domain(domain):
        country = TLD_COUNTRIES.get(domain.rsplit(".", 1)[-1].lower())
        if country:
            return GeoInfo(country=country, region=country)
    return UNKNOWN_GEO


class GeoResolver:
    """IP geolocation through two public JSON services, cache-first."""

    def __init__(
        self,
        fetcher: AcceleratedFetcher,
        cache: LRUCache,
        primary_url: str = "https://ipapi.co/{ip}/json/",
        fallback_url: str = "https://ipinfo.io/{ip}/json",
        enabled: bool = True,
        timeout: float = 3.0,
        cache_ttl: float = 1800.0,
        fallback_ttl: float = 3600.0,
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.primary_url = primary_url
        self.fallback_url = fallback_url
        self.enabled = enabled
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.fallback_ttl = fallback_ttl

    async def _lookup(self, url: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self.fetcher.fetch_json(url, timeout=self.timeout)
        except FetchError as e:
            logger.warning(f"Geo lookup via {url} failed: {e}")
            return None
        return data if isinstance(data, dict) else None

    async def fetch_primary(self, ip: str) -> Optional[GeoInfo]:
        if not is_ipv4(ip):
            return None
        data = await self._lookup(self.primary_url.format(ip=ip))
        if data and data.get("country_name"):
            return GeoInfo(
                country=data["country_name"],
                region=data.get("region") or data.get("city") or "Unknown",
            )
        return None

    async def fetch_fallback(self, ip: str) -> Optional[GeoInfo]:
        data = await self._lookup(self.fallback_url.format(ip=ip))
        if data and data.get("country"):
            return GeoInfo(
                country=data["country"],
                region=data.get("region") or data.get("city") or "Unknown",
            )
        return None

    async def resolve(self, ip: Optional[str], domain: Optional[str] = None) -> GeoInfo:
        """Geo info for `ip`; never raises.

        Confirmed lookups are cached for `cache_ttl`, guesses derived from the
        domain for the longer `fallback_ttl`.
        """
        if not ip:
            return fallback_geo(domain)
        if is_private_ip(ip):
            return LOCAL_GEO
        cached = self.cache.get(ip)
        if cached is not None:
            return GeoInfo.from_dict(cached)

        if not self.enabled:
            fallback = fallback_geo(domain)
            self.cache.set(ip, fallback.to_dict(), self.fallback_ttl)
            return fallback

        geo = await self.fetch_primary(ip) or await self.fetch_fallback(ip)
        if geo is not None:
            self.cache.set(ip, geo.to_dict(), self.cache_ttl)
            return geo

        fallback = fallback_geo(domain)
        logger.debug(f"Geo lookups for {ip} failed, using fallback {fallback}")
        self.cache.set(ip, fallback.to_dict(), self.fallback_ttl)
        return fallback
