"""Geo resolution and travel arithmetic."""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from conftest import BOSTON, LONDON, NEW_YORK, UnavailableCache
from sentinel.service.geo import GeoResolver, haversine_km, travel_metrics
from sentinel.storage.models import GeoLocation

PUBLIC_IP = "8.8.8.8"


class TestTravelMath:
    def test_haversine_new_york_london(self):
        assert haversine_km(NEW_YORK, LONDON) == pytest.approx(5570, rel=0.01)

    def test_haversine_same_point(self):
        assert haversine_km(BOSTON, BOSTON) == 0

    @pytest.mark.parametrize(
        "a, b",
        [
            (GeoLocation(lat=82, lon=0), GeoLocation(lat=-82, lon=180)),
            (GeoLocation(lat=0, lon=0), GeoLocation(lat=0, lon=180)),
            (GeoLocation(lat=40.7128, lon=-74.0060), GeoLocation(lat=-40.7128, lon=105.9940)),
        ],
    )
    def test_antipodal_points_are_half_the_circumference(self, clock, a, b):
        metrics = travel_metrics(a, clock.now - timedelta(hours=1), b, clock.now)
        assert metrics.distance_km == pytest.approx(20015.09, rel=1e-4)
        assert metrics.speed_kmh == pytest.approx(metrics.distance_km)

    def test_speed(self, clock):
        metrics = travel_metrics(NEW_YORK, clock.now, LONDON, clock.now + timedelta(hours=2))
        assert metrics.elapsed_hours == 2
        assert metrics.speed_kmh == pytest.approx(metrics.distance_km / 2)

    def test_zero_elapsed_time_has_no_speed(self, clock):
        metrics = travel_metrics(NEW_YORK, clock.now, LONDON, clock.now)
        assert metrics.speed_kmh == 0
        assert metrics.distance_km > 5000

    def test_unknown_previous_time(self, clock):
        assert travel_metrics(NEW_YORK, None, LONDON, clock.now).speed_kmh == 0

    def test_clock_going_backwards(self, clock):
        metrics = travel_metrics(NEW_YORK, clock.now, LONDON, clock.now - timedelta(minutes=5))
        assert metrics.speed_kmh == 0


def _transport(handler, calls):
    def record(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        return handler(request)

    return httpx.MockTransport(record)


class TestGeoResolver:
    async def test_parses_ipinfo_payload_and_caches(self, cache):
        calls = []
        payload = {"ip": PUBLIC_IP, "city": "Mountain View", "country": "US", "loc": "37.4056,-122.0775"}
        resolver = GeoResolver(
            api_url="https://geo.test/{ip}/json",
            cache=cache,
            transport=_transport(lambda request: httpx.Response(200, json=payload), calls),
        )

        first = await resolver.resolve(PUBLIC_IP)
        second = await resolver.resolve(PUBLIC_IP)

        assert first == GeoLocation(city="Mountain View", country="US", lat=37.4056, lon=-122.0775)
        assert second == first
        assert calls == ["geo.test"]

    @pytest.mark.parametrize("ip", ["127.0.0.1", "10.1.2.3", "192.168.0.7", "", "not-an-ip"])
    async def test_unroutable_addresses_skip_lookup(self, ip):
        calls = []
        resolver = GeoResolver(
            transport=_transport(lambda request: httpx.Response(200, json={}), calls)
        )
        assert await resolver.resolve(ip) == GeoLocation.fallback()
        assert calls == []

    async def test_server_error_falls_back_uncached(self, cache):
        calls = []
        resolver = GeoResolver(
            api_url="https://geo.test/{ip}/json",
            cache=cache,
            transport=_transport(lambda request: httpx.Response(500), calls),
        )

        assert (await resolver.resolve(PUBLIC_IP)).is_fallback
        assert (await resolver.resolve(PUBLIC_IP)).is_fallback
        assert len(calls) == 2
        assert await cache.get_geo(PUBLIC_IP) is None

    async def test_invalid_json_falls_back(self):
        calls = []
        resolver = GeoResolver(
            api_url="https://geo.test/{ip}/json",
            transport=_transport(lambda request: httpx.Response(200, text="<html>"), calls),
        )
        assert (await resolver.resolve(PUBLIC_IP)).is_fallback

    async def test_missing_coordinates_default_to_zero(self):
        calls = []
        resolver = GeoResolver(
            api_url="https://geo.test/{ip}/json",
            transport=_transport(
                lambda request: httpx.Response(200, json={"city": "Paris", "country": "FR"}), calls
            ),
        )
        assert await resolver.resolve(PUBLIC_IP) == GeoLocation(city="Paris", country="FR")

    async def test_cache_outage_still_resolves(self):
        calls = []
        resolver = GeoResolver(
            api_url="https://geo.test/{ip}/json",
            cache=UnavailableCache(),
            transport=_transport(
                lambda request: httpx.Response(
                    200, json={"city": "Paris", "country": "FR", "loc": "48.85,2.35"}
                ),
                calls,
            ),
        )
        location = await resolver.resolve(PUBLIC_IP)
        assert location.city == "Paris"
        assert location.lat == 48.85
