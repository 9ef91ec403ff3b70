"""
Tests for geocoding.py

Covers coordinate predicates, the cities cache (upsert, lookup, bulk
import), the provider client and the cache-first resolve flow.
"""

import httpx
import pytest
from unittest.mock import patch

from sqlalchemy import func, select

from db.models import City
from geocoding import (
    Geocoder,
    fetch_city_list,
    has_valid_coordinates,
    import_cities,
    location_key,
    needs_geocoding,
    normalize_coordinates,
    upsert_city,
)


def _google_ok(lat, lng):
    return {"status": "OK", "results": [{"geometry": {"location": {"lat": lat, "lng": lng}}}]}


def _transport(payload=None, *, calls=None, status_code=200, exc=None):
    """MockTransport that records requested addresses."""
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.params.get("address"))
        if exc is not None:
            raise exc
        return httpx.Response(status_code, json=payload)
    return httpx.MockTransport(handler)


async def _city_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(City))).scalar_one()


# ═══════════════════════════════════════════════
# Coordinate predicates
# ═══════════════════════════════════════════════

class TestCoordinatePredicates:
    def test_valid_pair(self):
        assert has_valid_coordinates(47.6062, -122.3321)
        assert has_valid_coordinates("47.6", "-122.3")

    def test_zero_pair_is_valid_but_needs_geocoding(self):
        assert has_valid_coordinates(0, 0)
        assert needs_geocoding(0, 0)

    def test_single_zero_needs_geocoding(self):
        assert needs_geocoding(47.6, 0)
        assert needs_geocoding(0, -122.3)

    @pytest.mark.parametrize("lat,lng", [
        (None, 1.0),
        (1.0, None),
        (91, 0.5),
        (-90.1, 0.5),
        (10, 180.5),
        ("north", 1.0),
        (float("nan"), 1.0),
        (True, 1.0),
    ])
    def test_invalid(self, lat, lng):
        assert not has_valid_coordinates(lat, lng)
        assert needs_geocoding(lat, lng)

    def test_boundaries(self):
        assert has_valid_coordinates(90, 180)
        assert has_valid_coordinates(-90, -180)

    def test_normalize(self):
        assert normalize_coordinates("1.5", "2.5") == (1.5, 2.5)
        assert normalize_coordinates(95, 2) == (None, None)
        assert normalize_coordinates(None, 2) == (None, None)

    def test_location_key(self):
        assert location_key(" Seattle ", "WA", "US") == ("seattle", "wa", "us")
        assert location_key("Seattle", "", None) == ("seattle", None, None)
        assert location_key("  ") is None


# ═══════════════════════════════════════════════
# Cities cache
# ═══════════════════════════════════════════════

class TestCitiesCache:
    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, db_session):
        assert await upsert_city(db_session, "Seattle", "WA", "US", 47.6, -122.3) is True
        assert await upsert_city(db_session, "Seattle", "WA", "US", 47.6062, -122.3321, "America/Los_Angeles") is False
        await db_session.commit()

        rows = (await db_session.execute(select(City))).scalars().all()
        assert len(rows) == 1
        assert rows[0].latitude == 47.6062
        assert rows[0].timezone == "America/Los_Angeles"

    @pytest.mark.asyncio
    async def test_upsert_skips_invalid(self, db_session):
        assert await upsert_city(db_session, "", "WA", "US", 1, 1) is None
        assert await upsert_city(db_session, "Nowhere", None, None, 100, 1) is None
        assert await _city_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive(self, db_session):
        await upsert_city(db_session, "Seattle", "WA", "US", 47.6062, -122.3321)
        await db_session.commit()

        point = await Geocoder(api_key="").lookup_cached(db_session, "SEATTLE", "wa", "us")
        assert point is not None
        assert (point.latitude, point.longitude) == (47.6062, -122.3321)

    @pytest.mark.asyncio
    async def test_lookup_null_state_acts_as_wildcard(self, db_session):
        await upsert_city(db_session, "Paris", None, "FR", 48.8566, 2.3522)
        await db_session.commit()

        point = await Geocoder(api_key="").lookup_cached(db_session, "Paris", "IDF", "FR")
        assert point is not None
        assert point.latitude == 48.8566

    @pytest.mark.asyncio
    async def test_lookup_prefers_exact_state(self, db_session):
        await upsert_city(db_session, "Portland", None, "US", 1.0, 1.0)
        await upsert_city(db_session, "Portland", "OR", "US", 45.5152, -122.6784)
        await db_session.commit()

        point = await Geocoder(api_key="").lookup_cached(db_session, "Portland", "OR", "US")
        assert point.latitude == 45.5152

    @pytest.mark.asyncio
    async def test_lookup_respects_different_state(self, db_session):
        await upsert_city(db_session, "Portland", "ME", "US", 43.6591, -70.2568)
        await db_session.commit()

        point = await Geocoder(api_key="").lookup_cached(db_session, "Portland", "OR", "US")
        assert point is None

    @pytest.mark.asyncio
    async def test_import_cities_aliases_and_skips(self, db_session):
        stats = await import_cities(db_session, [
            {"name": "Seattle", "state": "WA", "country": "US", "latitude": 47.6062, "longitude": -122.3321},
            {"city": "Austin", "state_code": "TX", "country_code": "US", "lat": 30.2672, "lng": -97.7431},
            {"name": "Broken", "latitude": "?", "longitude": 1},
            {"latitude": 1, "longitude": 1},
            "not-a-dict",
        ])
        assert stats == {"created": 2, "updated": 0, "skipped": 3}

        again = await import_cities(db_session, [
            {"name": "Seattle", "state": "WA", "country": "US", "latitude": 47.61, "longitude": -122.33},
        ])
        assert again == {"created": 0, "updated": 1, "skipped": 0}
        assert await _city_count(db_session) == 2

    @pytest.mark.asyncio
    async def test_fetch_city_list_unwraps_data(self):
        real_client = httpx.AsyncClient
        transport = _transport({"data": [{"name": "Seattle"}]})

        def factory(**kwargs):
            return real_client(transport=transport, **kwargs)

        with patch("geocoding.httpx.AsyncClient", side_effect=factory):
            cities = await fetch_city_list("https://cities.example.com/api", bearer="tok")
        assert cities == [{"name": "Seattle"}]


# ═══════════════════════════════════════════════
# Geocoder (provider + resolve)
# ═══════════════════════════════════════════════

class TestGeocoder:
    @pytest.mark.asyncio
    async def test_resolve_writes_through_and_hits_provider_once(self, db_session):
        calls = []
        geocoder = Geocoder(api_key="k", delay=0, transport=_transport(_google_ok(47.6062, -122.3321), calls=calls))

        first = await geocoder.resolve(db_session, "Seattle", "WA", "US")
        await db_session.commit()
        second = await geocoder.resolve(db_session, "seattle", "wa", "us")

        assert first.latitude == second.latitude == 47.6062
        assert geocoder.provider_calls == 1
        assert calls == ["Seattle, WA, US"]
        assert await _city_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_resolve_uses_cache_without_provider(self, db_session):
        await upsert_city(db_session, "Seattle", "WA", "US", 47.6062, -122.3321)
        await db_session.commit()
        calls = []
        geocoder = Geocoder(api_key="k", delay=0, transport=_transport(_google_ok(0, 0), calls=calls))

        point = await geocoder.resolve(db_session, "Seattle", "WA", "US")
        assert point.latitude == 47.6062
        assert calls == []

    @pytest.mark.asyncio
    async def test_no_api_key_returns_none(self, db_session):
        geocoder = Geocoder(api_key="", delay=0)
        assert await geocoder.resolve(db_session, "Atlantis") is None
        assert geocoder.provider_calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"status": "ZERO_RESULTS", "results": []},
        {"status": "OK", "results": []},
        {"status": "OK", "results": [{"geometry": {"location": {"lat": 200, "lng": 1}}}]},
    ])
    async def test_bad_provider_answers_return_none(self, db_session, payload):
        geocoder = Geocoder(api_key="k", delay=0, transport=_transport(payload))
        assert await geocoder.resolve(db_session, "Atlantis") is None
        assert await _city_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_http_error_returns_none(self, db_session):
        geocoder = Geocoder(api_key="k", delay=0, transport=_transport({}, status_code=500))
        assert await geocoder.resolve(db_session, "Atlantis") is None

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self, db_session):
        geocoder = Geocoder(
            api_key="k", delay=0,
            transport=_transport(exc=httpx.ConnectTimeout("timed out")),
        )
        assert await geocoder.resolve(db_session, "Atlantis") is None

    @pytest.mark.asyncio
    async def test_blank_city(self, db_session):
        geocoder = Geocoder(api_key="k", delay=0, transport=_transport(_google_ok(1, 1)))
        assert await geocoder.resolve(db_session, "  ") is None
        assert geocoder.provider_calls == 0
