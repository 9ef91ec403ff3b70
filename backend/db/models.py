"""
Database Models — SQLAlchemy ORM models for PostgreSQL.

Users authenticate with bearer JWTs; the ``users`` table keeps the
identity data (email, names) introductions need to resolve parties.

Tables:
  - users:          Platform users (id = auth subject UUID)
  - cities:         Geocoding cache keyed by (name, state, country)
  - contacts:       Per-user contact book
  - introductions:  Three-party referral records with per-party sub-status
"""

from datetime import datetime, timezone
from typing import Optional

import uuid as _uuid

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    Text,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    Double,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(_uuid.uuid4())


class User(Base):
    """Platform user.  ``id`` is the JWT ``sub`` claim."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class City(Base):
    """Read-through geocoding cache. Shared by every user, never deleted."""
    __tablename__ = "cities"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), index=True)
    state: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    latitude: Mapped[Optional[float]] = mapped_column(Double, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Double, nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("name", "state", "country", name="uq_cities_name_state_country"),
    )


class Contact(Base):
    """A contact-book entry owned by exactly one user."""
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    # Identity (stored lower-cased)
    first_name: Mapped[str] = mapped_column(String(255))
    last_name: Mapped[str] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    # Professional
    position: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Channels
    phone: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    work_phone: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    home_phone: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    website_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Location
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    additional_addresses: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Double, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Double, nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Free-form
    birthday: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    industries: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    socials: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # Derived, always written through contacts.build_search_index()
    search_index: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    # Sync flags
    on_platform: Mapped[bool] = mapped_column(Boolean, default=False)
    has_sync: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_sync: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        # NULL emails never collide
        UniqueConstraint("user_id", "email", name="uq_contacts_user_email"),
        Index("ix_contacts_user_city", "user_id", "city"),
    )


class Introduction(Base):
    """
    One connector (``introduced_from``) introducing party A (``introduced``)
    to party B (``introduced_to``).  A and B each carry an independent
    sub-status; ``over_all_status`` is derived from the pair.
    """
    __tablename__ = "introductions"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)

    # Who made the introduction
    introduced_from_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True, index=True)
    introduced_from_email: Mapped[str] = mapped_column(String(255), index=True)
    introduced_from_first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    introduced_from_last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Party A (existing user or only an email)
    introduced_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True, index=True)
    introduced_email: Mapped[str] = mapped_column(String(255), index=True)
    introduced_first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    introduced_last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    introduced_status: Mapped[str] = mapped_column(String(20), default="pending")
    introduced_is_attempt: Mapped[bool] = mapped_column(Boolean, default=False)
    introduced_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Party B
    introduced_to_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True, index=True)
    introduced_to_email: Mapped[str] = mapped_column(String(255), index=True)
    introduced_to_first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    introduced_to_last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    introduced_to_status: Mapped[str] = mapped_column(String(20), default="pending")
    introduced_to_is_attempt: Mapped[bool] = mapped_column(Boolean, default=False)
    introduced_to_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Overall
    over_all_status: Mapped[str] = mapped_column(String(20), default="pending")
    request_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # approved, rejected, pending
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reminder_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    revoke: Mapped[bool] = mapped_column(Boolean, default=False)

    # Optimistic lock, bumped by SQLAlchemy on every UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __mapper_args__ = {"version_id_col": version}
