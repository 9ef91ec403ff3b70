"""
Seed the cities cache with a handful of large US cities.

Re-running is safe: existing rows are updated in place.

Usage:
  cd backend
  python scripts/seed_cities.py
"""

import asyncio
import json
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from db import async_session, init_db  # noqa: E402
from geocoding import import_cities  # noqa: E402

US_CITIES = [
    ("Seattle", "WA", 47.6062, -122.3321, "America/Los_Angeles"),
    ("Portland", "OR", 45.5152, -122.6784, "America/Los_Angeles"),
    ("San Francisco", "CA", 37.7749, -122.4194, "America/Los_Angeles"),
    ("Los Angeles", "CA", 34.0522, -118.2437, "America/Los_Angeles"),
    ("San Diego", "CA", 32.7157, -117.1611, "America/Los_Angeles"),
    ("Las Vegas", "NV", 36.1699, -115.1398, "America/Los_Angeles"),
    ("Phoenix", "AZ", 33.4484, -112.0740, "America/Phoenix"),
    ("Denver", "CO", 39.7392, -104.9903, "America/Denver"),
    ("Salt Lake City", "UT", 40.7608, -111.8910, "America/Denver"),
    ("Dallas", "TX", 32.7767, -96.7970, "America/Chicago"),
    ("Austin", "TX", 30.2672, -97.7431, "America/Chicago"),
    ("Houston", "TX", 29.7604, -95.3698, "America/Chicago"),
    ("Chicago", "IL", 41.8781, -87.6298, "America/Chicago"),
    ("Minneapolis", "MN", 44.9778, -93.2650, "America/Chicago"),
    ("Atlanta", "GA", 33.7490, -84.3880, "America/New_York"),
    ("Miami", "FL", 25.7617, -80.1918, "America/New_York"),
    ("Washington", "DC", 38.9072, -77.0369, "America/New_York"),
    ("Philadelphia", "PA", 39.9526, -75.1652, "America/New_York"),
    ("New York", "NY", 40.7128, -74.0060, "America/New_York"),
    ("Boston", "MA", 42.3601, -71.0589, "America/New_York"),
]


async def main():
    await init_db()
    rows = [
        {"name": name, "state": state, "country": "US",
         "latitude": lat, "longitude": lng, "timezone": tz}
        for name, state, lat, lng, tz in US_CITIES
    ]
    async with async_session() as db:
        stats = await import_cities(db, rows)
    print(json.dumps(stats, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
