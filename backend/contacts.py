"""
Contacts — per-user contact book.

Every write path (create, update, CSV import, reciprocal contacts from
introductions) goes through ``build_search_index`` so the derived
``search_index`` column never drifts from the fields it is built from.

Storage conventions:
  - first_name / last_name / email are stored trimmed and lower-cased;
    ``format_contact`` title-cases names on the way out.
  - latitude / longitude are either a valid pair or both NULL.

Usage:
    from contacts import list_contacts, create_contacts, format_contact

    page = await list_contacts(db, user.id, page=1, limit=10, filter="acme")
    result = await create_contacts(db, user.id, payload, geocoder)
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, delete, extract, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import IMPORT_CHUNK_SIZE
from db.models import Contact
from errors import DuplicateError, NotFoundError, ValidationError
from geocoding import Geocoder, needs_geocoding, normalize_coordinates
from models import ContactPayload, ContactUpdate
from utils import chunked, clean_str, title_case

logger = logging.getLogger(__name__)

# Sortable columns for the list endpoint
SORTABLE_FIELDS = {
    "created_at", "updated_at", "first_name", "last_name",
    "email", "company_name", "city", "position",
}

# Payload key → column for plain string fields
_FIELD_MAP = {
    "position": "position",
    "company": "company_name",
    "phone": "phone",
    "workPhone": "work_phone",
    "homePhone": "home_phone",
    "address": "address",
    "additionalAddresses": "additional_addresses",
    "city": "city",
    "state": "state",
    "country": "country",
    "timezone": "timezone",
    "birthday": "birthday",
    "notes": "notes",
    "title": "title",
    "role": "role",
    "websiteUrl": "website_url",
}


# ──────────────────────────────────────────────
# Derived fields & formatting
# ──────────────────────────────────────────────

def build_search_index(
    first_name: Optional[str],
    last_name: Optional[str],
    email: Optional[str] = None,
    position: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
) -> str:
    """Lower-cased, space-joined non-empty name/email/position/tag values."""
    parts = [first_name, last_name, email, position, *(tags or [])]
    return " ".join(str(p).strip() for p in parts if p and str(p).strip()).lower()


def apply_search_index(contact: Contact) -> Contact:
    contact.search_index = build_search_index(
        contact.first_name, contact.last_name, contact.email, contact.position, contact.tags
    )
    return contact


def normalize_name(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_email(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip().lower()
    return value or None


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def format_contact(c: Contact) -> dict:
    """API representation (camelCase, title-cased names, socials always an object)."""
    socials = {k: v for k, v in (c.socials or {}).items() if v not in (None, "")} \
        if isinstance(c.socials, dict) else {}
    return {
        "id": c.id,
        "firstName": title_case(c.first_name),
        "lastName": title_case(c.last_name),
        "name": title_case(f"{c.first_name or ''} {c.last_name or ''}".strip()),
        "email": c.email,
        "position": c.position,
        "company": c.company_name,
        "phone": c.phone,
        "workPhone": c.work_phone,
        "homePhone": c.home_phone,
        "address": c.address,
        "additionalAddresses": c.additional_addresses,
        "city": c.city,
        "state": c.state,
        "country": c.country,
        "latitude": c.latitude,
        "longitude": c.longitude,
        "timezone": c.timezone,
        "title": c.title,
        "role": c.role,
        "websiteUrl": c.website_url,
        "birthday": c.birthday,
        "notes": c.notes,
        "tags": c.tags or [],
        "industries": c.industries or [],
        "socials": socials,
        "onPlatform": bool(c.on_platform),
        "hasSync": bool(c.has_sync),
        "needsSync": bool(c.needs_sync),
        "created_at": _iso(c.created_at),
        "updated_at": _iso(c.updated_at),
    }


def needs_geocoding_clause():
    """SQL twin of ``needs_geocoding`` for contacts that have a city."""
    return and_(
        Contact.city.is_not(None),
        Contact.city != "",
        or_(
            Contact.latitude.is_(None),
            Contact.longitude.is_(None),
            Contact.latitude == 0,
            Contact.longitude == 0,
        ),
    )


async def _geocode_into(
    db: AsyncSession,
    geocoder: Optional[Geocoder],
    contact: Contact,
) -> None:
    """Fill coordinates from the geocoder when the contact has a city but no usable pair."""
    if geocoder is None or not contact.city or not needs_geocoding(contact.latitude, contact.longitude):
        return
    point = await geocoder.resolve(db, contact.city, contact.state, contact.country)
    if point:
        contact.latitude, contact.longitude = point.latitude, point.longitude
        if not contact.timezone and point.timezone:
            contact.timezone = point.timezone


# ──────────────────────────────────────────────
# Queries
# ──────────────────────────────────────────────

async def list_contacts(
    db: AsyncSession,
    user_id: str,
    page: int = 1,
    limit: int = 10,
    filter: str = "",
    sort: str = "created_at:desc",
) -> dict:
    page = max(int(page or 1), 1)
    limit = max(int(limit or 10), 1)

    query = select(Contact).where(Contact.user_id == user_id)
    if filter:
        like = f"%{filter.strip().lower()}%"
        query = query.where(or_(
            func.lower(Contact.search_index).like(like),
            func.lower(Contact.email).like(like),
            func.lower(Contact.first_name).like(like),
            func.lower(Contact.last_name).like(like),
        ))

    total = (await db.execute(
        select(func.count()).select_from(query.subquery())
    )).scalar_one()

    field, _, direction = (sort or "created_at:desc").partition(":")
    if field not in SORTABLE_FIELDS:
        field = "created_at"
    col = getattr(Contact, field)
    query = query.order_by(col.desc() if direction.lower() == "desc" else col.asc())

    rows = (await db.execute(
        query.offset((page - 1) * limit).limit(limit)
    )).scalars().all()

    return {
        "totalRecords": total,
        "totalPages": math.ceil(total / limit),
        "currentPage": page,
        "limit": limit,
        "count": len(rows),
        "contacts": [format_contact(c) for c in rows],
    }


async def _get_owned(db: AsyncSession, user_id: str, contact_id: str) -> Contact:
    contact = (await db.execute(
        select(Contact).where(Contact.id == contact_id, Contact.user_id == user_id)
    )).scalar_one_or_none()
    if not contact:
        raise NotFoundError("Contact not found")
    return contact


async def get_contact(db: AsyncSession, user_id: str, contact_id: str) -> dict:
    return format_contact(await _get_owned(db, user_id, contact_id))


async def count_contacts(db: AsyncSession, user_id: str) -> int:
    return (await db.execute(
        select(func.count()).select_from(Contact).where(Contact.user_id == user_id)
    )).scalar_one()


async def count_needing_geocoding(db: AsyncSession, user_id: str) -> int:
    return (await db.execute(
        select(func.count()).select_from(Contact).where(
            Contact.user_id == user_id, needs_geocoding_clause()
        )
    )).scalar_one()


async def geocoding_status(db: AsyncSession, user_id: str) -> dict:
    total = await count_contacts(db, user_id)
    with_coords = (await db.execute(
        select(func.count()).select_from(Contact).where(
            Contact.user_id == user_id,
            Contact.latitude.is_not(None),
            Contact.longitude.is_not(None),
            Contact.latitude != 0,
            Contact.longitude != 0,
        )
    )).scalar_one()
    progress = round(with_coords / total * 100, 1) if total else 0
    return {
        "totalContacts": total,
        "contactsWithCoordinates": with_coords,
        "contactsNeedingGeocoding": total - with_coords,
        "geocodingProgress": f"{progress}%",
    }


MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


async def contacts_chart(db: AsyncSession, user_id: str, year: int) -> dict:
    """Running total of contacts added in ``year``, one bucket per month."""
    month = extract("month", Contact.created_at)
    rows = (await db.execute(
        select(month, func.count())
        .where(Contact.user_id == user_id, extract("year", Contact.created_at) == year)
        .group_by(month)
    )).all()
    per_month = {int(m): n for m, n in rows}

    cumulative = []
    running = 0
    for index, name in enumerate(MONTHS, start=1):
        running += per_month.get(index, 0)
        cumulative.append({"date": name, "contacts_joined": running})
    return {"comulativeData": cumulative, "total": running}


async def existing_emails(db: AsyncSession, user_id: str, emails: Iterable[str]) -> set[str]:
    """``(user_id, email) IN (...)`` lookups, ``IMPORT_CHUNK_SIZE`` emails per query."""
    emails = sorted({e for e in emails if e})
    found: set[str] = set()
    for batch in chunked(emails, IMPORT_CHUNK_SIZE):
        rows = (await db.execute(
            select(Contact.email).where(Contact.user_id == user_id, Contact.email.in_(batch))
        )).scalars().all()
        found.update(rows)
    return found


# ──────────────────────────────────────────────
# Writes
# ──────────────────────────────────────────────

def _contact_from_payload(user_id: str, p: ContactPayload) -> Contact:
    lat, lng = normalize_coordinates(p.latitude, p.longitude)
    contact = Contact(
        user_id=user_id,
        first_name=normalize_name(p.firstName),
        last_name=normalize_name(p.lastName),
        email=p.email,
        latitude=lat,
        longitude=lng,
        tags=p.tags or [],
        industries=p.industries or [],
        socials=p.socials or {},
        on_platform=False,
        has_sync=False,
        needs_sync=False,
    )
    for key, col in _FIELD_MAP.items():
        setattr(contact, col, clean_str(getattr(p, key)))
    return apply_search_index(contact)


async def create_contacts(
    db: AsyncSession,
    user_id: str,
    payload: Union[dict, list],
    geocoder: Optional[Geocoder] = None,
) -> dict:
    """
    Create one contact (dict payload) or many (list payload).

    A list reports per-item ``success``/``message`` and never raises for a
    bad item.  A single dict raises ``ValidationError`` / ``DuplicateError``.
    """
    single = isinstance(payload, dict)
    items: list[Any] = [payload] if single else list(payload or [])

    parsed: list[Union[ContactPayload, dict]] = []
    for raw in items:
        try:
            parsed.append(ContactPayload.model_validate(raw))
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ()))
            message = f"Validation error: {field} {first.get('msg', '')}".strip()
            if single:
                raise ValidationError(message)
            email = raw.get("email") if isinstance(raw, dict) else None
            parsed.append({"success": False, "message": message, "email": email})

    taken = await existing_emails(
        db, user_id, [p.email for p in parsed if isinstance(p, ContactPayload)]
    )

    results: list[dict] = []
    created: list[Contact] = []
    for p in parsed:
        if isinstance(p, dict):
            results.append(p)
            continue
        if p.email and p.email in taken:
            message = f"A contact with email {p.email} already exists."
            if single:
                raise DuplicateError(message)
            results.append({"success": False, "message": message, "email": p.email})
            continue

        contact = _contact_from_payload(user_id, p)
        await _geocode_into(db, geocoder, contact)
        db.add(contact)
        if contact.email:
            taken.add(contact.email)
        created.append(contact)
        results.append({"contact": contact})

    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise DuplicateError("A contact with this email already exists.") from e

    out = []
    for r in results:
        if "contact" in r:
            formatted = format_contact(r["contact"])
            formatted["success"] = True
            out.append(formatted)
        else:
            out.append(r)

    logger.info("Created %d/%d contacts for user %s", len(created), len(items), user_id)
    return {
        "totalRecords": await count_contacts(db, user_id),
        "contacts": out,
    }


async def update_contact(
    db: AsyncSession,
    user_id: str,
    contact_id: str,
    changes: ContactUpdate,
    geocoder: Optional[Geocoder] = None,
) -> dict:
    """Partial update.  Re-geocodes when the city changes and coordinates are not usable."""
    contact = await _get_owned(db, user_id, contact_id)
    data = changes.model_dump(exclude_unset=True)

    if data.get("firstName"):
        contact.first_name = normalize_name(data["firstName"])
    if data.get("lastName"):
        contact.last_name = normalize_name(data["lastName"])
    if "email" in data and data["email"] and data["email"] != contact.email:
        clash = await existing_emails(db, user_id, [data["email"]])
        if clash:
            raise DuplicateError(f"A contact with email {data['email']} already exists.")
        contact.email = data["email"]

    for key, col in _FIELD_MAP.items():
        if key in data and data[key] is not None:
            setattr(contact, col, clean_str(data[key]))
    for key in ("tags", "industries", "socials"):
        if key in data and data[key] is not None:
            setattr(contact, key, data[key])

    if data.get("latitude") is not None or data.get("longitude") is not None:
        lat = data.get("latitude", contact.latitude)
        lng = data.get("longitude", contact.longitude)
        contact.latitude, contact.longitude = normalize_coordinates(lat, lng)

    if data.get("city"):
        await _geocode_into(db, geocoder, contact)

    apply_search_index(contact)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise DuplicateError("A contact with this email already exists.") from e
    await db.refresh(contact)
    return format_contact(contact)


async def delete_contacts(db: AsyncSession, user_id: str, record_ids: list[str]) -> int:
    if not record_ids:
        return 0
    result = await db.execute(
        delete(Contact).where(Contact.user_id == user_id, Contact.id.in_(record_ids))
    )
    await db.commit()
    logger.info("Deleted %d contacts for user %s", result.rowcount, user_id)
    return result.rowcount


async def get_or_create_contact(
    db: AsyncSession,
    owner_id: str,
    email: Optional[str],
    first_name: Optional[str],
    last_name: Optional[str],
) -> tuple[Contact, bool]:
    """Return the owner's contact for ``email``, creating it if absent.  Never overwrites."""
    email = normalize_email(email)
    if email:
        existing = (await db.execute(
            select(Contact).where(Contact.user_id == owner_id, Contact.email == email)
        )).scalar_one_or_none()
        if existing:
            return existing, False

    contact = Contact(
        user_id=owner_id,
        first_name=normalize_name(first_name),
        last_name=normalize_name(last_name),
        email=email,
        tags=[],
        industries=[],
        socials={},
        on_platform=True,
        has_sync=False,
        needs_sync=False,
    )
    apply_search_index(contact)
    db.add(contact)
    await db.flush()
    return contact, True
