"""
Tests for db/__init__.py and db/models.py

Covers database initialization, table existence, field defaults,
uniqueness constraints and the optimistic-lock version column.
"""

import pytest
import pytest_asyncio
from sqlalchemy import inspect, select, String
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from db import Base, _safe_url


def _patch_uuid_columns():
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if hasattr(col.type, "__class__") and col.type.__class__.__name__ == "UUID":
                col.type = String(36)


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    _patch_uuid_columns()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine):
    Session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with Session() as s:
        yield s


# ═══════════════════════════════════════════════
# Database init & table creation
# ═══════════════════════════════════════════════

class TestDatabaseInit:
    @pytest.mark.asyncio
    async def test_tables_created(self, engine):
        async with engine.connect() as conn:
            table_names = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_table_names()
            )
        assert {"users", "cities", "contacts", "introductions"}.issubset(set(table_names))

    @pytest.mark.asyncio
    async def test_create_all_idempotent(self, engine):
        # Calling create_all again should not raise
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def test_safe_url_masks_password(self):
        assert _safe_url("postgresql+asyncpg://app:s3cret@db:5432/intro") == \
            "postgresql+asyncpg://app:***@db:5432/intro"
        assert _safe_url("sqlite+aiosqlite:///./intro_network.db") == "sqlite+aiosqlite:///./intro_network.db"


# ═══════════════════════════════════════════════
# Model field tests
# ═══════════════════════════════════════════════

class TestContactModel:
    @pytest.mark.asyncio
    async def test_defaults(self, session):
        from db.models import Contact, User
        session.add(User(id="u1", email="u1@test.com"))
        c = Contact(user_id="u1", first_name="jane", last_name="doe")
        session.add(c)
        await session.commit()
        assert c.id
        assert c.on_platform is False
        assert c.has_sync is False
        assert c.created_at is not None

    @pytest.mark.asyncio
    async def test_email_unique_per_owner(self, session):
        from db.models import Contact, User
        session.add_all([User(id="u1", email="u1@test.com"), User(id="u2", email="u2@test.com")])
        session.add_all([
            Contact(user_id="u1", first_name="a", last_name="a", email="x@test.com"),
            Contact(user_id="u2", first_name="a", last_name="a", email="x@test.com"),
            Contact(user_id="u1", first_name="b", last_name="b", email=None),
            Contact(user_id="u1", first_name="c", last_name="c", email=None),
        ])
        await session.commit()

        session.add(Contact(user_id="u1", first_name="d", last_name="d", email="x@test.com"))
        with pytest.raises(IntegrityError):
            await session.commit()


class TestCityModel:
    @pytest.mark.asyncio
    async def test_unique_location(self, session):
        from db.models import City
        session.add(City(name="Seattle", state="WA", country="US", latitude=47.6, longitude=-122.3))
        await session.commit()
        session.add(City(name="Seattle", state="WA", country="US", latitude=1, longitude=1))
        with pytest.raises(IntegrityError):
            await session.commit()


class TestIntroductionModel:
    @pytest.mark.asyncio
    async def test_defaults_and_version(self, session):
        from db.models import Introduction
        intro = Introduction(
            introduced_from_email="a@test.com",
            introduced_email="b@test.com",
            introduced_to_email="c@test.com",
        )
        session.add(intro)
        await session.commit()
        assert intro.introduced_status == "pending"
        assert intro.over_all_status == "pending"
        assert intro.revoke is False
        assert intro.version == 1

        intro.message = "updated"
        await session.commit()
        assert intro.version == 2

    @pytest.mark.asyncio
    async def test_stale_version_raises(self, engine):
        from db.models import Introduction
        Session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with Session() as first:
            intro = Introduction(
                introduced_from_email="a@test.com",
                introduced_email="b@test.com",
                introduced_to_email="c@test.com",
            )
            first.add(intro)
            await first.commit()

            async with Session() as second:
                other = (await second.execute(select(Introduction))).scalar_one()
                other.message = "theirs"
                await second.commit()

            intro.message = "ours"
            with pytest.raises(StaleDataError):
                await first.flush()
