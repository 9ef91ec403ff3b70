"""
Geocoding Sweep — fills in missing coordinates for one user's contacts.

Selects contacts with a city and (NULL or zero) latitude/longitude, then:

  Phase 1  cache only: each unique (city, state, country) is looked up in
           the ``cities`` table; every matching contact is updated and the
           phase is committed.
  Phase 2  provider: the still-missing triples go to the geocoding API one
           at a time (rate-limited inside the Geocoder); hits are fanned
           out and committed per location.

A single city failing is counted and skipped.  Already-committed updates
survive a later timeout or crash, and re-running is safe because the
selection only picks contacts that still lack coordinates.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select

from contacts import needs_geocoding_clause
from db import async_session
from db.models import Contact
from geocoding import GeoPoint, Geocoder, location_key, needs_geocoding

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    contacts_found: int = 0
    unique_locations: int = 0
    found_in_cache: int = 0
    resolved_via_api: int = 0
    failed: int = 0
    contacts_updated: int = 0


def _group_by_location(contacts: list[Contact]) -> dict[tuple, list[Contact]]:
    groups: dict[tuple, list[Contact]] = {}
    for c in contacts:
        if not needs_geocoding(c.latitude, c.longitude):
            continue
        key = location_key(c.city, c.state, c.country)
        if key:
            groups.setdefault(key, []).append(c)
    return groups


def _fan_out(members: list[Contact], point: GeoPoint) -> int:
    for c in members:
        c.latitude = point.latitude
        c.longitude = point.longitude
        if point.timezone and not c.timezone:
            c.timezone = point.timezone
    return len(members)


async def sweep_user_contacts(
    user_id: str,
    session_factory=None,
    geocoder: Optional[Geocoder] = None,
    contact_ids: Optional[list[str]] = None,
) -> SweepReport:
    """Run both phases for ``user_id``.  Store errors propagate so the job runner can retry."""
    session_factory = session_factory or async_session
    geocoder = geocoder or Geocoder()
    report = SweepReport()

    async with session_factory() as db:
        query = select(Contact).where(Contact.user_id == user_id, needs_geocoding_clause())
        if contact_ids:
            query = query.where(Contact.id.in_(contact_ids))
        contacts = list((await db.execute(query)).scalars().all())
        report.contacts_found = len(contacts)

        if not contacts:
            logger.info("Geocoding sweep: nothing to do for user %s", user_id)
            return report

        # ── Phase 1: cities cache ──
        groups = _group_by_location(contacts)
        report.unique_locations = len(groups)
        logger.info(
            "Geocoding sweep for user %s: %d contacts, %d unique locations",
            user_id, len(contacts), len(groups),
        )

        for key, members in groups.items():
            first = members[0]
            point = await geocoder.lookup_cached(db, first.city, first.state, first.country)
            if point:
                report.found_in_cache += 1
                report.contacts_updated += _fan_out(members, point)
        await db.commit()
        logger.info(
            "Sweep phase 1 (cache): %d/%d locations found, %d contacts updated",
            report.found_in_cache, len(groups), report.contacts_updated,
        )

        # ── Phase 2: external provider for what is left ──
        remaining = _group_by_location(contacts)
        if not remaining:
            logger.info("All contacts geocoded from cities cache for user %s", user_id)
            return report

        phase2_updated = 0
        for key, members in remaining.items():
            first = members[0]
            point = await geocoder.geocode_remote(db, first.city, first.state, first.country)
            if not point:
                report.failed += 1
                continue
            report.resolved_via_api += 1
            phase2_updated += _fan_out(members, point)
            await db.commit()

        report.contacts_updated += phase2_updated
        logger.info(
            "Sweep phase 2 (api): %d resolved, %d failed, %d contacts updated",
            report.resolved_via_api, report.failed, phase2_updated,
        )

    logger.info("Geocoding sweep complete for user %s: %s", user_id, report.model_dump())
    return report
