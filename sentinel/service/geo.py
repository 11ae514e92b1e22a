from __future__ import annotations

import ipaddress
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

import httpx

from sentinel.logging import get_logger
from sentinel.storage.errors import CacheUnavailable
from sentinel.storage.models import GeoLocation
from sentinel.storage.repository import FastStore

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


class GeoLookup(Protocol):
    async def resolve(self, ip: str) -> GeoLocation:
        """Never raises; unknown locations come back as ``GeoLocation.fallback()``."""
        ...


def haversine_km(a: GeoLocation, b: GeoLocation) -> float:
    """Great-circle distance between two points in kilometres."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lon = math.radians(b.lon - a.lon)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    # rounding can push h just outside [0, 1] for near-antipodal points
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


@dataclass(frozen=True)
class TravelMetrics:
    distance_km: float
    elapsed_hours: float
    speed_kmh: float


def travel_metrics(
    previous: GeoLocation,
    previous_at: Optional[datetime],
    current: GeoLocation,
    current_at: datetime,
) -> TravelMetrics:
    """Implied travel speed between two observations.

    Zero or negative elapsed time (or an unknown previous time) yields speed 0 so
    callers never see infinities or NaN.
    """
    distance = haversine_km(previous, current)
    if previous_at is None:
        return TravelMetrics(distance_km=distance, elapsed_hours=0.0, speed_kmh=0.0)
    elapsed_hours = (current_at - previous_at).total_seconds() / 3600
    if elapsed_hours <= 0:
        return TravelMetrics(distance_km=distance, elapsed_hours=0.0, speed_kmh=0.0)
    speed = distance / elapsed_hours
    if not math.isfinite(speed):
        speed = 0.0
    return TravelMetrics(distance_km=distance, elapsed_hours=elapsed_hours, speed_kmh=speed)


def _is_unroutable(ip: str) -> bool:
    if not ip:
        return True
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return addr.is_loopback or addr.is_private or addr.is_unspecified or addr.is_link_local


class GeoResolver:
    """IP to location lookup against an ipinfo-compatible JSON endpoint.

    Never raises: unroutable addresses and any lookup failure resolve to the
    ``Unknown`` fallback so risk arithmetic always has coordinates to work with.
    """

    def __init__(
        self,
        *,
        api_url: str = "https://ipinfo.io/{ip}/json",
        timeout: float = 2.0,
        cache: Optional[FastStore] = None,
        cache_ttl_seconds: int = 86400,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.timeout = timeout
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self._transport = transport

    async def resolve(self, ip: str) -> GeoLocation:
        if _is_unroutable(ip):
            return GeoLocation.fallback()

        cached = await self._cached(ip)
        if cached is not None:
            return cached

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(self.api_url.format(ip=ip))
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.warning("geo_lookup_failed", ip=ip, error=str(exc))
            return GeoLocation.fallback()
        except ValueError as exc:
            logger.warning("geo_lookup_invalid_json", ip=ip, error=str(exc))
            return GeoLocation.fallback()

        location = self._parse(data)
        if location.is_fallback:
            return location
        if self.cache:
            try:
                await self.cache.set_geo(ip, location, self.cache_ttl_seconds)
            except CacheUnavailable as exc:
                logger.warning("cache_unavailable", operation="set_geo", error=str(exc))
        return location

    async def _cached(self, ip: str) -> Optional[GeoLocation]:
        if not self.cache:
            return None
        try:
            return await self.cache.get_geo(ip)
        except CacheUnavailable as exc:
            logger.warning("cache_unavailable", operation="get_geo", error=str(exc))
            return None

    @staticmethod
    def _parse(data: object) -> GeoLocation:
        if not isinstance(data, dict):
            return GeoLocation.fallback()
        lat, lon = 0.0, 0.0
        loc = data.get("loc")
        if isinstance(loc, str) and "," in loc:
            try:
                lat_raw, lon_raw = loc.split(",", 1)
                lat, lon = float(lat_raw), float(lon_raw)
            except ValueError:
                lat, lon = 0.0, 0.0
        return GeoLocation(
            city=data.get("city") or "Unknown",
            country=data.get("country") or "Unknown",
            lat=lat,
            lon=lon,
        )


class StaticGeoResolver:
    """Fixed IP to location table; used in test mode and by unit tests."""

    def __init__(self, table: Optional[dict[str, GeoLocation]] = None) -> None:
        self.table = dict(table or {})
        self.lookups: list[str] = []

    async def resolve(self, ip: str) -> GeoLocation:
        self.lookups.append(ip)
        return self.table.get(ip, GeoLocation.fallback())
