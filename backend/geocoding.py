"""
Geocoder — city/state/country → coordinates.

Lookup order:
  1. ``cities`` table (case-insensitive name; state/country match or NULL)
  2. Google Maps Geocoding API, written through to ``cities`` on success

Provider problems (no key, timeout, non-OK status, empty results) never
propagate: ``resolve`` just returns ``None`` and the caller leaves the
contact's coordinates unset.

External calls are serialized process-wide by one lock with a small fixed
delay in front of each call, so a sweep over hundreds of cities cannot
burst the provider.

Usage:
    from geocoding import Geocoder, needs_geocoding

    geocoder = Geocoder()
    point = await geocoder.resolve(db, "Seattle", "WA", "US")
    if point:
        contact.latitude, contact.longitude = point.latitude, point.longitude
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import NamedTuple, Optional

import httpx
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import (
    GOOGLE_MAPS_API_KEY,
    GOOGLE_GEOCODE_URL,
    GEOCODE_TIMEOUT_SECONDS,
    GEOCODE_DELAY_SECONDS,
)
from db.models import City
from errors import ExternalServiceError

logger = logging.getLogger(__name__)

# One provider call at a time across the whole process
_provider_lock = asyncio.Lock()


class GeoPoint(NamedTuple):
    latitude: float
    longitude: float
    timezone: Optional[str] = None


# ──────────────────────────────────────────────
# Coordinate predicates
# ──────────────────────────────────────────────

def _as_float(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def has_valid_coordinates(lat, lng) -> bool:
    """Both present, numeric and in range.  ``(0, 0)`` passes."""
    la, ln = _as_float(lat), _as_float(lng)
    if la is None or ln is None:
        return False
    return -90 <= la <= 90 and -180 <= ln <= 180


def needs_geocoding(lat, lng) -> bool:
    """Coordinates missing, invalid, or carrying the zero "not geocoded" sentinel."""
    if not has_valid_coordinates(lat, lng):
        return True
    return float(lat) == 0 or float(lng) == 0


def normalize_coordinates(lat, lng) -> tuple[Optional[float], Optional[float]]:
    """Keep a valid pair as floats; anything else becomes ``(None, None)``."""
    if has_valid_coordinates(lat, lng):
        return float(lat), float(lng)
    return None, None


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def location_key(city, state=None, country=None) -> Optional[tuple[str, Optional[str], Optional[str]]]:
    """Normalized (city, state, country) triple used to group lookups; ``None`` without a city."""
    name = _clean(city)
    if not name:
        return None
    s, c = _clean(state), _clean(country)
    return (name.lower(), s.lower() if s else None, c.lower() if c else None)


# ──────────────────────────────────────────────
# Cities cache
# ──────────────────────────────────────────────

def _eq_or_is_null(column, value: Optional[str]):
    return column.is_(None) if value is None else column == value


async def upsert_city(
    db: AsyncSession,
    name: str,
    state: Optional[str],
    country: Optional[str],
    latitude,
    longitude,
    timezone: Optional[str] = None,
) -> Optional[bool]:
    """
    Insert or update the cache row keyed by (name, state, country).

    Returns True when created, False when updated, None when skipped
    (blank name or invalid coordinates).  Does not commit.
    """
    name = _clean(name)
    state, country = _clean(state), _clean(country)
    if not name or not has_valid_coordinates(latitude, longitude):
        return None

    existing = (await db.execute(
        select(City).where(
            City.name == name,
            _eq_or_is_null(City.state, state),
            _eq_or_is_null(City.country, country),
        ).limit(1)
    )).scalar_one_or_none()

    if existing:
        existing.latitude = float(latitude)
        existing.longitude = float(longitude)
        existing.timezone = timezone
        await db.flush()
        return False

    db.add(City(
        name=name,
        state=state,
        country=country,
        latitude=float(latitude),
        longitude=float(longitude),
        timezone=timezone,
    ))
    await db.flush()
    return True


async def import_cities(db: AsyncSession, cities: list[dict]) -> dict:
    """
    Bulk-load cache rows from a list of dicts.

    Accepted keys: ``name``/``city``, ``state``/``state_code``,
    ``country``/``country_code``, ``latitude``/``lat``,
    ``longitude``/``lng``, ``timezone``.  Rows without a name or with
    unusable coordinates are skipped.  Commits once at the end.
    """
    created = updated = skipped = 0
    for row in cities:
        if not isinstance(row, dict):
            skipped += 1
            continue
        name = row.get("name") or row.get("city")
        lat = row.get("latitude", row.get("lat"))
        lng = row.get("longitude", row.get("lng"))
        outcome = await upsert_city(
            db,
            name,
            row.get("state") or row.get("state_code"),
            row.get("country") or row.get("country_code"),
            lat,
            lng,
            row.get("timezone"),
        )
        if outcome is None:
            skipped += 1
        elif outcome:
            created += 1
        else:
            updated += 1

    await db.commit()
    logger.info("Cities import: %d created, %d updated, %d skipped", created, updated, skipped)
    return {"created": created, "updated": updated, "skipped": skipped}


async def fetch_city_list(url: str, bearer: Optional[str] = None) -> list[dict]:
    """Download a city list; accepts ``{"data": [...]}`` or a bare array."""
    headers = {"Authorization": f"Bearer {bearer}"} if bearer else {}
    async with httpx.AsyncClient(timeout=120.0) as client:
        resp = await client.get(url, headers=headers)
        resp.raise_for_status()
        payload = resp.json()
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    if isinstance(payload, list):
        return payload
    return []


# ──────────────────────────────────────────────
# Geocoder
# ──────────────────────────────────────────────

class Geocoder:
    """Cache-first geocoder.  One instance can be shared by every request."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        timeout: float = GEOCODE_TIMEOUT_SECONDS,
        delay: float = GEOCODE_DELAY_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = GOOGLE_MAPS_API_KEY if api_key is None else api_key
        self.timeout = timeout
        self.delay = delay
        self._transport = transport
        self.provider_calls = 0

    async def lookup_cached(
        self,
        db: AsyncSession,
        city: str,
        state: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Optional[GeoPoint]:
        """Cache-only lookup.  Never calls the provider."""
        name = _clean(city)
        if not name:
            return None
        state, country = _clean(state), _clean(country)

        query = select(City).where(func.lower(City.name) == name.lower())
        if state:
            query = query.where(or_(func.lower(City.state) == state.lower(), City.state.is_(None)))
        if country:
            query = query.where(or_(func.lower(City.country) == country.lower(), City.country.is_(None)))
        # Prefer rows that match on state/country over NULL wildcards
        query = query.order_by(City.state.is_(None), City.country.is_(None)).limit(5)

        for row in (await db.execute(query)).scalars():
            if has_valid_coordinates(row.latitude, row.longitude):
                return GeoPoint(float(row.latitude), float(row.longitude), row.timezone)
        return None

    async def geocode_remote(
        self,
        db: AsyncSession,
        city: str,
        state: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Optional[GeoPoint]:
        """Ask the provider and write a hit through to the cache.  Never raises for provider errors."""
        name = _clean(city)
        if not name:
            return None
        state, country = _clean(state), _clean(country)
        address = ", ".join(p for p in (name, state, country) if p)

        try:
            point = await self._call_provider(address)
        except ExternalServiceError as e:
            logger.warning("Geocode failed for '%s': %s", address, e.message)
            return None

        await upsert_city(db, name, state, country, point.latitude, point.longitude, point.timezone)
        return point

    async def resolve(
        self,
        db: AsyncSession,
        city: str,
        state: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Optional[GeoPoint]:
        """Cache first, provider on miss."""
        cached = await self.lookup_cached(db, city, state, country)
        if cached:
            return cached
        return await self.geocode_remote(db, city, state, country)

    async def _call_provider(self, address: str) -> GeoPoint:
        if not self.api_key:
            raise ExternalServiceError("GOOGLE_MAPS_API_KEY not configured")

        async with _provider_lock:
            await asyncio.sleep(self.delay)
            self.provider_calls += 1
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.get(
                        GOOGLE_GEOCODE_URL,
                        params={"address": address, "key": self.api_key},
                    )
                    resp.raise_for_status()
                    body = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                raise ExternalServiceError(f"{type(e).__name__}: {e}") from e

        if body.get("status") != "OK":
            raise ExternalServiceError(f"provider status {body.get('status')!r}")
        try:
            loc = body["results"][0]["geometry"]["location"]
            lat, lng = loc["lat"], loc["lng"]
        except (KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError("no location in provider response") from e
        if not has_valid_coordinates(lat, lng):
            raise ExternalServiceError(f"invalid coordinates {lat!r}, {lng!r}")
        return GeoPoint(float(lat), float(lng), None)
