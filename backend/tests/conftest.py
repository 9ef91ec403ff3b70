"""
Shared test fixtures for the entire test suite.

Provides:
  - In-memory SQLite database with all tables
  - Seeded users (connector, two introduced parties, an outsider)
  - A session factory bound to the same database for background jobs
  - Email sending stubbed out for every test
  - Sample data factories for contacts and CSV text
"""

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, patch

from sqlalchemy import String
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from db import Base
from db.models import User

# ── Deterministic test IDs ──────────────────────
ALICE_ID = "00000000-0000-4000-8000-000000000001"  # connector
BOB_ID = "00000000-0000-4000-8000-000000000002"    # introduced
CAROL_ID = "00000000-0000-4000-8000-000000000003"  # introduced_to
DAVE_ID = "00000000-0000-4000-8000-000000000004"   # not part of anything

USERS = [
    (ALICE_ID, "alice@test.com", "alice", "anders"),
    (BOB_ID, "bob@test.com", "bob", "baker"),
    (CAROL_ID, "carol@test.com", "carol", "cruz"),
    (DAVE_ID, "dave@test.com", "dave", "diaz"),
]


def _patch_uuid_columns_for_sqlite():
    """Replace PostgreSQL UUID columns with String(36) for SQLite compat."""
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if hasattr(col.type, "__class__") and col.type.__class__.__name__ == "UUID":
                col.type = String(36)


@pytest.fixture(autouse=True)
def _no_email():
    """Never talk to Resend from tests."""
    with patch("notifications._send_email", new=AsyncMock(return_value=True)) as mock_send:
        yield mock_send


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh in-memory SQLite engine shared by every session."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    _patch_uuid_columns_for_sqlite()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    """Session factory bound to the test engine (what background jobs receive)."""
    Session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with Session() as session:
        for uid, email, first, last in USERS:
            session.add(User(id=uid, email=email, first_name=first, last_name=last))
        await session.commit()
    return Session


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide a DB session with the test users pre-seeded."""
    async with session_factory() as session:
        yield session


# ── Sample data factories ──────────────────────

def make_contact_payload(**overrides):
    """A create-contact body with sensible defaults."""
    defaults = {
        "firstName": "Jane",
        "lastName": "Doe",
        "email": "jane@example.com",
        "position": "Engineer",
        "company": "Acme",
        "city": "Seattle",
        "state": "WA",
        "country": "US",
    }
    defaults.update(overrides)
    return defaults


def make_csv(*rows, header="firstName,lastName,email,city,state,country,latitude,longitude"):
    """CSV text from a header line plus already-joined row strings."""
    return "\n".join([header, *rows]) + "\n"
