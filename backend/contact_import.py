"""
Contact CSV Import — one pipeline, two conflict policies.

  skip   → rows whose email already exists for the user are skipped
           ("Duplicate email")
  update → those rows update the existing contact's mutable fields instead

Stages (everything before the write is pure / read-only):
  1. Parse CSV, map header aliases to logical fields
  2. Validate + normalize each row (names required, email lower-cased,
     tags/industries/socials cell parsing, coordinates)
  3. Batched ``(user_id, email) IN (...)`` existence queries, one per chunk
  4. Geocode each unique (city, state, country) once, fan results out;
     rows bound for an update inherit stored coordinates before that
  5. Write: chunked bulk insert (+ batched updates for the update policy)
     inside a single transaction, so an import is all-or-nothing
  6. If any written contact still has a city but no usable coordinates,
     dispatch a background geocoding sweep for the user

Usage:
    from contact_import import import_contacts, decode_upload, validate_upload

    validate_upload(upload.filename, len(raw))
    summary = await import_contacts(db, user.id, decode_upload(raw), "skip",
                                    geocoder=geocoder, dispatch=runner.dispatch)
"""

from __future__ import annotations

import csv
import io
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import ALLOWED_IMPORT_EXTENSIONS, IMPORT_CHUNK_SIZE, MAX_IMPORT_BYTES
from contacts import apply_search_index, build_search_index, existing_emails
from db.models import Contact
from errors import StoreError, ValidationError
from geocoding import Geocoder, location_key, needs_geocoding, normalize_coordinates
from utils import (
    chunked,
    clean_str,
    parse_coordinate,
    parse_date,
    parse_json_or_list,
    parse_json_or_object,
)

logger = logging.getLogger(__name__)

ConflictPolicy = Literal["skip", "update"]

SKIP_MISSING_NAME = "Missing firstName/lastName"
SKIP_DUPLICATE_EMAIL = "Duplicate email"

# Logical field → accepted header names (lower-cased).  First match wins.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "firstName": ("firstname", "first_name", "first"),
    "lastName": ("lastname", "last_name", "last"),
    "email": ("email",),
    "position": ("position",),
    "company": ("company", "company_name"),
    "phone": ("phone",),
    "workPhone": ("workphone", "work_phone"),
    "homePhone": ("homephone", "home_phone"),
    "address": ("address",),
    "additionalAddresses": ("additionaladdresses", "additional_addresses"),
    "city": ("city",),
    "latitude": ("latitude",),
    "longitude": ("longitude",),
    "timezone": ("timezone",),
    "birthday": ("birthday",),
    "notes": ("notes",),
    "title": ("title",),
    "role": ("role",),
    "websiteUrl": ("websiteurl", "website_url"),
    "state": ("state", "state_code", "province"),
    "country": ("country", "country_code"),
    "tags": ("tags",),
    "industries": ("industries",),
    "socials": ("socials",),
}

# Logical field → Contact column for plain string values
_STRING_COLUMNS = {
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
    "notes": "notes",
    "title": "title",
    "role": "role",
    "websiteUrl": "website_url",
}


class SkippedRow(BaseModel):
    row: int
    reason: str
    email: Optional[str] = None


class ImportSummary(BaseModel):
    """Outcome of one import run."""
    total_rows: int = 0
    created: int = 0
    updated: int = 0
    skipped_contacts: list[SkippedRow] = Field(default_factory=list)
    contacts_needing_geocoding: int = 0
    geocoding_job_dispatched: bool = False
    processing_time: float = 0.0

    @property
    def skipped(self) -> int:
        return len(self.skipped_contacts)

    def to_dict(self) -> dict:
        return {
            "summary": {
                "totalRows": self.total_rows,
                "created": self.created,
                "updated": self.updated,
                "skipped": self.skipped,
                "contactsNeedingGeocoding": self.contacts_needing_geocoding,
                "geocodingJobDispatched": self.geocoding_job_dispatched,
                "processingTime": f"{self.processing_time}s",
            },
            "skippedContacts": [s.model_dump() for s in self.skipped_contacts],
        }


# ──────────────────────────────────────────────
# Upload checks & parsing
# ──────────────────────────────────────────────

def validate_upload(filename: Optional[str], size: int) -> None:
    """Extension and size gate for uploaded files."""
    name = (filename or "").lower()
    if not name.endswith(ALLOWED_IMPORT_EXTENSIONS):
        raise ValidationError("The file must be a file of type: csv, txt.")
    if size > MAX_IMPORT_BYTES:
        raise ValidationError(
            f"The file may not be greater than {MAX_IMPORT_BYTES // 1024} kilobytes."
        )


def decode_upload(raw: bytes) -> str:
    """UTF-8 with an optional BOM."""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ValidationError("Unable to read uploaded file: not valid UTF-8") from e


def read_rows(csv_text: str) -> list[dict[str, str]]:
    """Header-keyed rows.  Cells beyond the header are kept under ``col_<i>``.

    A single cell may be as large as the whole upload; anything the csv
    module still rejects is reported as a ``ValidationError``.
    """
    if csv.field_size_limit() < MAX_IMPORT_BYTES:
        csv.field_size_limit(MAX_IMPORT_BYTES)
    reader = csv.reader(io.StringIO(csv_text))
    header: Optional[list[str]] = None
    rows: list[dict[str, str]] = []
    try:
        for cells in reader:
            if header is None:
                header = [h.strip().lower() for h in cells]
                continue
            if not any(c.strip() for c in cells):
                continue
            row: dict[str, str] = {}
            for i, value in enumerate(cells):
                key = header[i] if i < len(header) and header[i] else f"col_{i}"
                row.setdefault(key, value)
            rows.append(row)
    except csv.Error as e:
        raise ValidationError(f"Malformed CSV: {e}", data={"line": reader.line_num}) from e
    return rows


def map_row(row: dict[str, str]) -> dict[str, Optional[str]]:
    """Resolve header aliases to logical field names."""
    mapped: dict[str, Optional[str]] = {}
    for field, aliases in FIELD_ALIASES.items():
        mapped[field] = next((row[a] for a in aliases if a in row), None)
    return mapped


def row_values(mapped: dict[str, Optional[str]]) -> dict:
    """Normalized column values for every mutable field of a contact."""
    lat, lng = normalize_coordinates(
        parse_coordinate(mapped.get("latitude")),
        parse_coordinate(mapped.get("longitude")),
    )
    values = {
        "first_name": (mapped.get("firstName") or "").strip().lower(),
        "last_name": (mapped.get("lastName") or "").strip().lower(),
        "latitude": lat,
        "longitude": lng,
        "birthday": parse_date(mapped.get("birthday")) or clean_str(mapped.get("birthday")),
        "tags": parse_json_or_list(mapped.get("tags")),
        "industries": parse_json_or_list(mapped.get("industries")),
        "socials": parse_json_or_object(mapped.get("socials")),
    }
    for field, col in _STRING_COLUMNS.items():
        values[col] = clean_str(mapped.get(field))
    return values


# ──────────────────────────────────────────────
# Pipeline
# ──────────────────────────────────────────────

class _PendingRow:
    __slots__ = ("row_number", "email", "values")

    def __init__(self, row_number: int, email: Optional[str], values: dict):
        self.row_number = row_number
        self.email = email
        self.values = values

    @property
    def needs_geocoding(self) -> bool:
        return bool(self.values.get("city")) and needs_geocoding(
            self.values.get("latitude"), self.values.get("longitude")
        )


async def _geocode_rows(db: AsyncSession, geocoder: Geocoder, rows: list[_PendingRow]) -> int:
    """Resolve each unique location once and fan out.  Returns number of rows filled."""
    groups: dict[tuple, list[_PendingRow]] = {}
    for r in rows:
        if not r.needs_geocoding:
            continue
        key = location_key(r.values["city"], r.values.get("state"), r.values.get("country"))
        if key:
            groups.setdefault(key, []).append(r)

    filled = 0
    for key, members in groups.items():
        first = members[0].values
        point = await geocoder.resolve(db, first["city"], first.get("state"), first.get("country"))
        if not point:
            continue
        for r in members:
            r.values["latitude"] = point.latitude
            r.values["longitude"] = point.longitude
            if not r.values.get("timezone") and point.timezone:
                r.values["timezone"] = point.timezone
            filled += 1

    logger.info("Import geocoding: %d unique locations, %d rows filled", len(groups), filled)
    return filled


async def _apply_updates(
    db: AsyncSession,
    user_id: str,
    rows: list[_PendingRow],
    geocoder: Optional[Geocoder] = None,
) -> int:
    """
    Update existing contacts matched by email.  Identity/ownership columns
    stay untouched.

    A row without coordinates inherits the stored pair first; only rows that
    still need coordinates after that are sent to the geocoder.
    """
    by_email = {r.email: r for r in rows}
    matched: list[tuple[Contact, _PendingRow]] = []
    for emails in chunked(list(by_email), IMPORT_CHUNK_SIZE):
        existing = (await db.execute(
            select(Contact).where(Contact.user_id == user_id, Contact.email.in_(emails))
        )).scalars().all()
        for contact in existing:
            r = by_email[contact.email]
            if r.values["latitude"] is None:
                r.values["latitude"], r.values["longitude"] = contact.latitude, contact.longitude
            matched.append((contact, r))

    if geocoder is not None:
        await _geocode_rows(db, geocoder, [r for _, r in matched])

    for contact, r in matched:
        for col, value in r.values.items():
            setattr(contact, col, value)
        apply_search_index(contact)
    await db.flush()
    return len(matched)


async def import_contacts(
    db: AsyncSession,
    user_id: str,
    csv_text: str,
    conflict_policy: ConflictPolicy = "skip",
    geocoder: Optional[Geocoder] = None,
    dispatch: Optional[Callable[[str], object]] = None,
) -> ImportSummary:
    """Run the whole pipeline and return the summary.  Raises ``StoreError`` if the write fails."""
    if conflict_policy not in ("skip", "update"):
        raise ValidationError(f"Unknown conflict policy: {conflict_policy}")

    started = time.perf_counter()
    summary = ImportSummary()
    rows = read_rows(csv_text)
    summary.total_rows = len(rows)

    # ── 1-2. Validate + normalize ──
    valid: list[_PendingRow] = []
    for index, raw in enumerate(rows):
        mapped = map_row(raw)
        email = clean_str(mapped.get("email"))
        email = email.lower() if email else None
        if not (mapped.get("firstName") or "").strip() or not (mapped.get("lastName") or "").strip():
            summary.skipped_contacts.append(
                SkippedRow(row=index + 1, reason=SKIP_MISSING_NAME, email=email)
            )
            continue
        valid.append(_PendingRow(index + 1, email, row_values(mapped)))

    # ── 3. Dedup (chunked lookups) ──
    taken = await existing_emails(db, user_id, [r.email for r in valid])
    to_insert: list[_PendingRow] = []
    to_update: list[_PendingRow] = []
    seen_in_file: set[str] = set()
    for r in valid:
        if r.email and r.email in seen_in_file:
            summary.skipped_contacts.append(
                SkippedRow(row=r.row_number, reason=SKIP_DUPLICATE_EMAIL, email=r.email)
            )
            continue
        if r.email:
            seen_in_file.add(r.email)
        if r.email and r.email in taken:
            if conflict_policy == "update":
                to_update.append(r)
            else:
                summary.skipped_contacts.append(
                    SkippedRow(row=r.row_number, reason=SKIP_DUPLICATE_EMAIL, email=r.email)
                )
            continue
        to_insert.append(r)

    # ── 4. Geocode unique locations (updates are geocoded after their stored pair is merged) ──
    if geocoder is not None:
        await _geocode_rows(db, geocoder, to_insert)

    # ── 5. Write (single transaction) ──
    now = datetime.now(timezone.utc)
    records = []
    for r in to_insert:
        v = r.values
        records.append({
            **v,
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "email": r.email,
            "search_index": build_search_index(
                v["first_name"], v["last_name"], r.email, v.get("position"), v.get("tags")
            ),
            "on_platform": False,
            "has_sync": False,
            "needs_sync": False,
            "created_at": now,
            "updated_at": now,
        })

    try:
        for chunk in chunked(records, IMPORT_CHUNK_SIZE):
            await db.execute(insert(Contact), list(chunk))
            summary.created += len(chunk)
        if to_update:
            summary.updated = await _apply_updates(db, user_id, to_update, geocoder)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Contact import failed for user %s: %s", user_id, e, exc_info=True)
        raise StoreError("Import failed, no contacts were written") from e

    # ── 6. Hand stragglers to the background sweep ──
    summary.contacts_needing_geocoding = sum(1 for r in to_insert + to_update if r.needs_geocoding)
    if summary.contacts_needing_geocoding and dispatch is not None:
        dispatch(user_id)
        summary.geocoding_job_dispatched = True

    summary.processing_time = round(time.perf_counter() - started, 2)
    logger.info(
        "Import (%s) for user %s: %d rows, %d created, %d updated, %d skipped, %d need geocoding",
        conflict_policy, user_id, summary.total_rows, summary.created,
        summary.updated, summary.skipped, summary.contacts_needing_geocoding,
    )
    return summary
