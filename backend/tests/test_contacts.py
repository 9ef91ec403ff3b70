"""
Tests for contacts.py

Covers create (single + batch), duplicate handling, search index
maintenance, list/filter/sort, partial update, delete and the
geocoding status report.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy import select

import contacts
from conftest import ALICE_ID, BOB_ID, make_contact_payload
from contacts import (
    build_search_index,
    contacts_chart,
    create_contacts,
    delete_contacts,
    existing_emails,
    geocoding_status,
    get_contact,
    get_or_create_contact,
    list_contacts,
    update_contact,
)
from db.models import Contact
from errors import DuplicateError, NotFoundError, ValidationError
from geocoding import GeoPoint
from models import ContactUpdate


def _geocoder(point=None):
    geocoder = MagicMock()
    geocoder.resolve = AsyncMock(return_value=point)
    return geocoder


# ═══════════════════════════════════════════════
# build_search_index
# ═══════════════════════════════════════════════

class TestSearchIndex:
    def test_joins_lowercased_parts(self):
        assert build_search_index("Jane", "Doe", "J@X.COM", "CTO", ["VIP", "Friend"]) == \
            "jane doe j@x.com cto vip friend"

    def test_skips_empty_parts(self):
        assert build_search_index("jane", "", None, "  ", []) == "jane"


# ═══════════════════════════════════════════════
# create_contacts
# ═══════════════════════════════════════════════

class TestCreateContacts:
    @pytest.mark.asyncio
    async def test_single_contact(self, db_session):
        result = await create_contacts(db_session, ALICE_ID, make_contact_payload(email="Jane@Example.com"))
        assert result["totalRecords"] == 1
        contact = result["contacts"][0]
        assert contact["success"] is True
        assert contact["firstName"] == "Jane"
        assert contact["email"] == "jane@example.com"

        row = (await db_session.execute(select(Contact))).scalar_one()
        assert row.first_name == "jane"
        assert row.search_index == "jane doe jane@example.com engineer"

    @pytest.mark.asyncio
    async def test_geocodes_city(self, db_session):
        geocoder = _geocoder(GeoPoint(47.6062, -122.3321, "America/Los_Angeles"))
        result = await create_contacts(db_session, ALICE_ID, make_contact_payload(), geocoder)
        contact = result["contacts"][0]
        assert (contact["latitude"], contact["longitude"]) == (47.6062, -122.3321)
        assert contact["timezone"] == "America/Los_Angeles"
        geocoder.resolve.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_given_coordinates_skip_geocoder(self, db_session):
        geocoder = _geocoder(GeoPoint(1.0, 1.0))
        await create_contacts(
            db_session, ALICE_ID, make_contact_payload(latitude=47.6, longitude=-122.3), geocoder
        )
        geocoder.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_geocoder_miss_leaves_coordinates_empty(self, db_session):
        result = await create_contacts(db_session, ALICE_ID, make_contact_payload(), _geocoder(None))
        assert result["contacts"][0]["latitude"] is None

    @pytest.mark.asyncio
    async def test_single_missing_name_raises(self, db_session):
        with pytest.raises(ValidationError):
            await create_contacts(db_session, ALICE_ID, {"lastName": "Doe"})

    @pytest.mark.asyncio
    async def test_single_duplicate_raises(self, db_session):
        await create_contacts(db_session, ALICE_ID, make_contact_payload())
        with pytest.raises(DuplicateError):
            await create_contacts(db_session, ALICE_ID, make_contact_payload(firstName="Other"))

    @pytest.mark.asyncio
    async def test_same_email_for_different_owners(self, db_session):
        await create_contacts(db_session, ALICE_ID, make_contact_payload())
        result = await create_contacts(db_session, BOB_ID, make_contact_payload())
        assert result["totalRecords"] == 1

    @pytest.mark.asyncio
    async def test_batch_reports_per_item(self, db_session):
        await create_contacts(db_session, ALICE_ID, make_contact_payload(email="taken@example.com"))
        result = await create_contacts(db_session, ALICE_ID, [
            make_contact_payload(email="new@example.com"),
            make_contact_payload(email="taken@example.com"),
            {"firstName": "", "lastName": "x", "email": "blank@example.com"},
            make_contact_payload(email="new@example.com"),
        ])
        flags = [c["success"] for c in result["contacts"]]
        assert flags == [True, False, False, False]
        assert result["contacts"][1]["email"] == "taken@example.com"
        assert result["contacts"][2]["email"] == "blank@example.com"
        assert result["totalRecords"] == 2

    @pytest.mark.asyncio
    async def test_tags_and_socials_strings_are_parsed(self, db_session):
        result = await create_contacts(db_session, ALICE_ID, make_contact_payload(
            tags="vip; friend", socials="twitter:@jane",
        ))
        contact = result["contacts"][0]
        assert contact["tags"] == ["vip", "friend"]
        assert contact["socials"] == {"twitter": "@jane"}


# ═══════════════════════════════════════════════
# list / get
# ═══════════════════════════════════════════════

class TestListContacts:
    @pytest.mark.asyncio
    async def test_pagination_and_owner_scope(self, db_session):
        await create_contacts(db_session, ALICE_ID, [
            make_contact_payload(firstName=f"user{i}", email=f"u{i}@example.com") for i in range(5)
        ])
        await create_contacts(db_session, BOB_ID, make_contact_payload())

        page = await list_contacts(db_session, ALICE_ID, page=2, limit=2)
        assert page["totalRecords"] == 5
        assert page["totalPages"] == 3
        assert page["currentPage"] == 2
        assert page["count"] == 2

    @pytest.mark.asyncio
    async def test_filter_matches_search_index(self, db_session):
        await create_contacts(db_session, ALICE_ID, [
            make_contact_payload(firstName="Jane", email="jane@example.com", tags=["investor"]),
            make_contact_payload(firstName="Joe", email="joe@example.com"),
        ])
        page = await list_contacts(db_session, ALICE_ID, filter="INVESTOR")
        assert [c["firstName"] for c in page["contacts"]] == ["Jane"]

    @pytest.mark.asyncio
    async def test_sort_by_name(self, db_session):
        await create_contacts(db_session, ALICE_ID, [
            make_contact_payload(firstName="zed", email="z@example.com"),
            make_contact_payload(firstName="amy", email="a@example.com"),
        ])
        page = await list_contacts(db_session, ALICE_ID, sort="first_name:asc")
        assert [c["firstName"] for c in page["contacts"]] == ["Amy", "Zed"]

    @pytest.mark.asyncio
    async def test_unknown_sort_field_falls_back(self, db_session):
        await create_contacts(db_session, ALICE_ID, make_contact_payload())
        page = await list_contacts(db_session, ALICE_ID, sort="password:asc")
        assert page["count"] == 1

    @pytest.mark.asyncio
    async def test_get_contact_of_other_owner_is_not_found(self, db_session):
        result = await create_contacts(db_session, ALICE_ID, make_contact_payload())
        contact_id = result["contacts"][0]["id"]
        assert (await get_contact(db_session, ALICE_ID, contact_id))["id"] == contact_id
        with pytest.raises(NotFoundError):
            await get_contact(db_session, BOB_ID, contact_id)


# ═══════════════════════════════════════════════
# update / delete
# ═══════════════════════════════════════════════

class TestUpdateContact:
    @pytest.mark.asyncio
    async def test_partial_update_refreshes_search_index(self, db_session):
        result = await create_contacts(db_session, ALICE_ID, make_contact_payload())
        contact_id = result["contacts"][0]["id"]

        updated = await update_contact(
            db_session, ALICE_ID, contact_id, ContactUpdate(position="Founder", tags=["angel"])
        )
        assert updated["position"] == "Founder"
        assert updated["company"] == "Acme"

        row = (await db_session.execute(select(Contact))).scalar_one()
        assert row.search_index == "jane doe jane@example.com founder angel"

    @pytest.mark.asyncio
    async def test_email_clash_raises(self, db_session):
        await create_contacts(db_session, ALICE_ID, [
            make_contact_payload(email="a@example.com"),
            make_contact_payload(email="b@example.com"),
        ])
        row = (await db_session.execute(
            select(Contact).where(Contact.email == "b@example.com")
        )).scalar_one()
        with pytest.raises(DuplicateError):
            await update_contact(db_session, ALICE_ID, row.id, ContactUpdate(email="A@example.com"))

    @pytest.mark.asyncio
    async def test_city_change_regeocodes(self, db_session):
        result = await create_contacts(db_session, ALICE_ID, make_contact_payload(city=None))
        contact_id = result["contacts"][0]["id"]
        geocoder = _geocoder(GeoPoint(30.2672, -97.7431))

        updated = await update_contact(
            db_session, ALICE_ID, contact_id, ContactUpdate(city="Austin", state="TX"), geocoder
        )
        assert updated["latitude"] == 30.2672
        geocoder.resolve.assert_awaited_once()


class TestDeleteContacts:
    @pytest.mark.asyncio
    async def test_only_own_rows_are_deleted(self, db_session):
        mine = await create_contacts(db_session, ALICE_ID, make_contact_payload())
        theirs = await create_contacts(db_session, BOB_ID, make_contact_payload())
        ids = [mine["contacts"][0]["id"], theirs["contacts"][0]["id"]]

        assert await delete_contacts(db_session, ALICE_ID, ids) == 1
        assert await delete_contacts(db_session, ALICE_ID, []) == 0


# ═══════════════════════════════════════════════
# Reciprocal contacts & geocoding status
# ═══════════════════════════════════════════════

class TestGetOrCreateContact:
    @pytest.mark.asyncio
    async def test_creates_once(self, db_session):
        first, created = await get_or_create_contact(db_session, ALICE_ID, "Bob@Test.com", "Bob", "Baker")
        second, created_again = await get_or_create_contact(db_session, ALICE_ID, "bob@test.com", "Robert", "B")
        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert second.first_name == "bob"
        assert second.on_platform is True


class TestGeocodingStatus:
    @pytest.mark.asyncio
    async def test_counts(self, db_session):
        await create_contacts(db_session, ALICE_ID, [
            make_contact_payload(email="a@example.com", latitude=47.6, longitude=-122.3),
            make_contact_payload(email="b@example.com"),
            make_contact_payload(email="c@example.com", latitude=0, longitude=0),
            make_contact_payload(email="d@example.com", city=None),
        ])
        status = await geocoding_status(db_session, ALICE_ID)
        assert status["totalContacts"] == 4
        assert status["contactsWithCoordinates"] == 1
        assert status["contactsNeedingGeocoding"] == 3
        assert status["geocodingProgress"] == "25.0%"

    @pytest.mark.asyncio
    async def test_empty_book(self, db_session):
        status = await geocoding_status(db_session, ALICE_ID)
        assert status["geocodingProgress"] == "0%"


# ═══════════════════════════════════════════════
# existing_emails
# ═══════════════════════════════════════════════

class TestExistingEmails:
    @pytest.mark.asyncio
    async def test_lookup_is_chunked(self, db_session, monkeypatch):
        monkeypatch.setattr(contacts, "IMPORT_CHUNK_SIZE", 2)
        for i in range(5):
            db_session.add(Contact(user_id=ALICE_ID, first_name="u", last_name="x", email=f"u{i}@example.com"))
        db_session.add(Contact(user_id=BOB_ID, first_name="b", last_name="x", email="new@example.com"))
        await db_session.commit()

        wanted = [f"u{i}@example.com" for i in range(5)] + ["new@example.com", None, ""]
        spy = AsyncMock(wraps=db_session.execute)
        with patch.object(db_session, "execute", spy):
            found = await existing_emails(db_session, ALICE_ID, wanted)

        assert found == {f"u{i}@example.com" for i in range(5)}
        assert spy.await_count == 3

    @pytest.mark.asyncio
    async def test_no_emails_no_query(self, db_session):
        spy = AsyncMock(wraps=db_session.execute)
        with patch.object(db_session, "execute", spy):
            assert await existing_emails(db_session, ALICE_ID, [None, ""]) == set()
        spy.assert_not_awaited()


# ═══════════════════════════════════════════════
# contacts_chart
# ═══════════════════════════════════════════════

def _added(user_id, email, year, month, day=5):
    return Contact(
        user_id=user_id, first_name="c", last_name="x", email=email,
        created_at=datetime(year, month, day, 12, tzinfo=timezone.utc),
    )


class TestContactsChart:
    @pytest.mark.asyncio
    async def test_cumulative_by_month(self, db_session):
        db_session.add_all([
            _added(ALICE_ID, "a@example.com", 2025, 3),
            _added(ALICE_ID, "b@example.com", 2025, 3, 28),
            _added(ALICE_ID, "c@example.com", 2025, 6),
            _added(ALICE_ID, "d@example.com", 2024, 12),
            _added(BOB_ID, "e@example.com", 2025, 1),
        ])
        await db_session.commit()

        chart = await contacts_chart(db_session, ALICE_ID, 2025)

        assert chart["total"] == 3
        series = chart["comulativeData"]
        assert [m["date"] for m in series][:3] == ["January", "February", "March"]
        assert len(series) == 12
        assert [m["contacts_joined"] for m in series] == [0, 0, 2, 2, 2, 3, 3, 3, 3, 3, 3, 3]

    @pytest.mark.asyncio
    async def test_empty_year(self, db_session):
        chart = await contacts_chart(db_session, ALICE_ID, 1999)
        assert chart["total"] == 0
        assert {m["contacts_joined"] for m in chart["comulativeData"]} == {0}
