"""
Referrals — the introduction workflow.

A connector (``introduced_from``) introduces party A (``introduced``) to
party B (``introduced_to``).  A and B each move their own sub-status
(pending → connected | decline); ``referral_status.combine`` turns the pair
into the overall status and the message each side sees.

Rules enforced here:
  - only A or B may update a sub-status; anyone else gets NotFound
  - a terminal sub-status (connected / decline) can only be re-sent as is
  - reaching ``connected`` creates reciprocal contacts (get-or-create,
    never overwriting an existing contact)
  - concurrent writers are detected through the row ``version`` and the
    read-modify-write is retried on a fresh load
  - only the connector can revoke, and only once

Notifications are fire-and-forget: they are scheduled as background tasks
and a failed send never affects the stored transition.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

import notifications
from contacts import get_or_create_contact
from db.models import Introduction, User
from errors import ConflictError, IllegalStateError, NotFoundError, ValidationError
from referral_status import (
    AWAITING_RESPONSE,
    CONNECTED,
    NEW_INTRODUCTION,
    NO_MATCH,
    OverallStatus,
    Status,
    combine,
    is_backward_transition,
)

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 3

# Keep references so scheduled sends are not garbage-collected mid-flight
_background_tasks: set[asyncio.Task] = set()


def _fire_and_forget(coro) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


# ──────────────────────────────────────────────
# Formatting
# ──────────────────────────────────────────────

def _full_name(first: Optional[str], last: Optional[str]) -> str:
    return f"{first or ''} {last or ''}".strip()


def format_introduction(intro: Introduction) -> dict:
    result = {
        "introduced": {
            "id": intro.introduced_id,
            "email": intro.introduced_email,
            "name": _full_name(intro.introduced_first_name, intro.introduced_last_name),
            "firstName": intro.introduced_first_name,
            "lastName": intro.introduced_last_name,
            "introducedStatus": intro.introduced_status,
            "introducedIsAttempt": bool(intro.introduced_is_attempt),
            "introducedMessage": intro.introduced_message,
        },
        "introducedTo": {
            "id": intro.introduced_to_id,
            "email": intro.introduced_to_email,
            "name": _full_name(intro.introduced_to_first_name, intro.introduced_to_last_name),
            "firstName": intro.introduced_to_first_name,
            "lastName": intro.introduced_to_last_name,
            "introducedToStatus": intro.introduced_to_status,
            "introducedToIsAttempt": bool(intro.introduced_to_is_attempt),
            "introducedToMessage": intro.introduced_to_message,
        },
        "introducedFrom": {
            "id": intro.introduced_from_id,
            "email": intro.introduced_from_email,
            "name": _full_name(intro.introduced_from_first_name, intro.introduced_from_last_name),
            "firstName": intro.introduced_from_first_name,
            "lastName": intro.introduced_from_last_name,
        },
        "message": intro.message,
        "reminder_message": intro.reminder_message,
        "created_at": intro.created_at.isoformat() if intro.created_at else None,
        "overAllStatus": intro.over_all_status,
        "introductionId": intro.id,
        "revoke": bool(intro.revoke),
    }
    if intro.request_status is not None:
        result["requestStatus"] = intro.request_status
    return result


# ──────────────────────────────────────────────
# Creation
# ──────────────────────────────────────────────

async def _resolve_party(db: AsyncSession, party: dict) -> tuple[Optional[str], Optional[str]]:
    """Fill a missing id from the users table by email, or a missing email by id."""
    party_id, email = party.get("id"), party.get("email")
    if not party_id and email:
        party_id = (await db.execute(
            select(User.id).where(func.lower(User.email) == email.lower())
        )).scalar_one_or_none()
    elif party_id and not email:
        email = (await db.execute(
            select(User.email).where(User.id == party_id)
        )).scalar_one_or_none()
    return party_id, email.lower() if email else None


async def make_introductions(
    db: AsyncSession,
    sender: dict,
    introduce: dict,
    recipients: list[dict],
    message: str,
    group_id: Optional[str] = None,
) -> list[Introduction]:
    """
    One Introduction row per recipient, all parties pending.

    Each party dict carries ``id``, ``email``, ``firstName``, ``lastName``.
    ``request_status`` is ``pending`` only when a group id is given.
    """
    if not recipients:
        raise ValidationError("The to field must have at least 1 items.")

    from_id, from_email = await _resolve_party(db, sender)
    intro_id, intro_email = await _resolve_party(db, introduce)
    if not from_email or not intro_email:
        raise ValidationError("Sender and introduced person need an email address")

    pending = combine(Status.PENDING, Status.PENDING)
    rows: list[Introduction] = []
    for recipient in recipients:
        to_id, to_email = await _resolve_party(db, recipient)
        if not to_email:
            raise ValidationError("Every recipient needs an email address")
        intro = Introduction(
            introduced_from_id=from_id,
            introduced_from_email=from_email,
            introduced_from_first_name=sender.get("firstName"),
            introduced_from_last_name=sender.get("lastName"),
            introduced_id=intro_id,
            introduced_email=intro_email,
            introduced_first_name=introduce.get("firstName"),
            introduced_last_name=introduce.get("lastName"),
            introduced_status=Status.PENDING.value,
            introduced_is_attempt=False,
            introduced_message=pending.introduced_message,
            introduced_to_id=to_id,
            introduced_to_email=to_email,
            introduced_to_first_name=recipient.get("firstName"),
            introduced_to_last_name=recipient.get("lastName"),
            introduced_to_status=Status.PENDING.value,
            introduced_to_is_attempt=False,
            introduced_to_message=pending.introduced_to_message,
            over_all_status=pending.over_all_status,
            request_status="pending" if group_id else None,
            message=message,
            revoke=False,
        )
        db.add(intro)
        rows.append(intro)

    await db.commit()
    logger.info("Introduction by %s: %s → %d recipients", from_email, intro_email, len(rows))

    for intro in rows:
        _fire_and_forget(notifications.send_introduction_created(format_introduction(intro)))
    return rows


async def count_sent(db: AsyncSession, from_email: str) -> int:
    return (await db.execute(
        select(func.count()).select_from(Introduction)
        .where(Introduction.introduced_from_email == from_email)
    )).scalar_one()


# ──────────────────────────────────────────────
# Status transitions
# ──────────────────────────────────────────────

async def _load(db: AsyncSession, introduction_id: str) -> Introduction:
    intro = (await db.execute(
        select(Introduction).where(Introduction.id == introduction_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not intro:
        raise NotFoundError("Introduction not found")
    return intro


def _apply_status(intro: Introduction, user_id: str, new_status: str) -> str:
    """Mutate ``intro`` in place for the caller's side and return the caller's previous sub-status."""
    if intro.introduced_id and intro.introduced_id == user_id:
        side, current = "introduced", intro.introduced_status
        result = combine(new_status, intro.introduced_to_status)
    elif intro.introduced_to_id and intro.introduced_to_id == user_id:
        side, current = "introduced_to", intro.introduced_to_status
        result = combine(intro.introduced_status, new_status)
    else:
        raise NotFoundError("User is not part of this introduction")

    if result.is_error:
        raise IllegalStateError(result.introduced_message)
    if is_backward_transition(current, new_status):
        raise IllegalStateError(f"Status '{current}' is final and cannot change to '{new_status}'")

    if side == "introduced":
        intro.introduced_status = new_status
        intro.introduced_is_attempt = True
        intro.introduced_message = result.introduced_message
    else:
        intro.introduced_to_status = new_status
        intro.introduced_to_is_attempt = True
        intro.introduced_to_message = result.introduced_to_message
    intro.over_all_status = result.over_all_status
    return current


async def _create_reciprocal_contacts(db: AsyncSession, intro: Introduction) -> int:
    created = 0
    if intro.introduced_to_id:
        _, new = await get_or_create_contact(
            db, intro.introduced_to_id, intro.introduced_email,
            intro.introduced_first_name, intro.introduced_last_name,
        )
        created += new
    if intro.introduced_id:
        _, new = await get_or_create_contact(
            db, intro.introduced_id, intro.introduced_to_email,
            intro.introduced_to_first_name, intro.introduced_to_last_name,
        )
        created += new
    return created


async def update_status(
    db: AsyncSession,
    introduction_id: str,
    user_id: str,
    new_status: str,
) -> dict:
    """Set the caller's sub-status and recompute the overall status."""
    previous = None
    for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
        intro = await _load(db, introduction_id)
        previous = _apply_status(intro, user_id, new_status)
        try:
            await db.flush()
        except StaleDataError:
            await db.rollback()
            logger.warning(
                "Introduction %s changed underneath us (attempt %d/%d), retrying",
                introduction_id, attempt, MAX_UPDATE_ATTEMPTS,
            )
            continue

        if intro.over_all_status == OverallStatus.CONNECTED.value:
            created = await _create_reciprocal_contacts(db, intro)
            if created:
                logger.info("Introduction %s connected: %d reciprocal contacts", introduction_id, created)
        await db.commit()
        break
    else:
        raise ConflictError("Introduction was modified concurrently, please retry")

    formatted = format_introduction(intro)
    if new_status in (Status.CONNECTED.value, Status.DECLINE.value) and previous != new_status:
        _fire_and_forget(notifications.send_status_changed(formatted, user_id, new_status))
    return formatted


async def update_request_status(db: AsyncSession, introduction_id: str, user_id: str, status: str) -> dict:
    intro = await _load_for_party(db, introduction_id, user_id)
    intro.request_status = status
    await db.commit()
    return format_introduction(intro)


async def _load_for_party(db: AsyncSession, introduction_id: str, user_id: str) -> Introduction:
    intro = (await db.execute(
        select(Introduction).where(
            Introduction.id == introduction_id,
            or_(
                Introduction.introduced_from_id == user_id,
                Introduction.introduced_id == user_id,
                Introduction.introduced_to_id == user_id,
            ),
        )
    )).scalar_one_or_none()
    if not intro:
        raise NotFoundError("Introduction not found")
    return intro


async def get_detail(db: AsyncSession, introduction_id: str, user_id: str) -> dict:
    return format_introduction(await _load_for_party(db, introduction_id, user_id))


async def send_reminder(db: AsyncSession, introduction_id: str, user_id: str, message: str) -> dict:
    intro = await _load_for_party(db, introduction_id, user_id)
    intro.reminder_message = message
    await db.commit()
    _fire_and_forget(notifications.send_reminder(format_introduction(intro), message))
    return {"message": "Reminder email sent to user."}


async def revoke(db: AsyncSession, introduction_id: str, user_id: str, flag: bool = True) -> dict:
    intro = (await db.execute(
        select(Introduction).where(
            Introduction.id == introduction_id,
            Introduction.introduced_from_id == user_id,
        )
    )).scalar_one_or_none()
    if not intro:
        raise NotFoundError("Introduction not found")
    if intro.revoke:
        raise IllegalStateError("You already revoke this referral")

    intro.revoke = flag
    await db.commit()
    if flag:
        _fire_and_forget(notifications.send_revoked(format_introduction(intro)))
    return {"message": "Referral revoked successfully"}


# ──────────────────────────────────────────────
# Listing
# ──────────────────────────────────────────────

def _status_filter(status: str, user_id: str):
    """
    Role-aware filter: what a status means depends on which party the caller is.

    ``new introduction`` matches the per-party ``*_message`` columns.  The
    sub-status columns only ever hold pending/connected/decline, so comparing
    them against that label would never match.
    """
    I = Introduction
    status = status.strip().lower()
    is_from = I.introduced_from_id == user_id
    is_a = I.introduced_id == user_id
    is_b = I.introduced_to_id == user_id

    if status == OverallStatus.PENDING.value:
        return and_(is_from, I.over_all_status == OverallStatus.PENDING.value)
    if status == CONNECTED:
        return or_(
            and_(is_from, I.over_all_status == OverallStatus.CONNECTED.value),
            and_(is_a, I.introduced_message == CONNECTED),
            and_(is_b, I.introduced_to_message == CONNECTED),
        )
    if status == NEW_INTRODUCTION:
        return or_(
            and_(is_a, I.introduced_message == NEW_INTRODUCTION),
            and_(is_b, I.introduced_to_message == NEW_INTRODUCTION),
        )
    if status in (AWAITING_RESPONSE, NO_MATCH):
        return or_(
            and_(is_b, I.introduced_to_message == AWAITING_RESPONSE),
            and_(is_a, I.introduced_message == AWAITING_RESPONSE),
        )
    return or_(
        and_(is_from, I.over_all_status == OverallStatus.PENDING.value),
        and_(is_a, I.introduced_status == Status.PENDING.value),
        and_(is_b, I.introduced_to_status == Status.PENDING.value),
    )


def _search_filter(search: str):
    I = Introduction
    columns = (
        I.introduced_first_name, I.introduced_last_name,
        I.introduced_to_first_name, I.introduced_to_last_name,
        I.introduced_from_first_name, I.introduced_from_last_name,
        I.over_all_status, I.introduced_to_status, I.introduced_status,
    )
    clauses = []
    for word in search.strip().lower().split():
        like = f"%{word}%"
        clauses.extend(func.lower(c).like(like) for c in columns)
    return or_(*clauses) if clauses else None


async def list_referrals(
    db: AsyncSession,
    caller_email: Optional[str],
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    search: Optional[str] = None,
) -> dict:
    """
    Introductions visible to ``caller_email`` (as any of the three parties),
    newest first.  A ``status`` + ``user_id`` filter wins over ``search``.
    """
    page = max(int(page or 1), 1)
    limit = max(int(limit or 10), 1)

    query = select(Introduction)
    if caller_email:
        email = caller_email.lower()
        query = query.where(or_(
            Introduction.introduced_from_email == email,
            Introduction.introduced_email == email,
            Introduction.introduced_to_email == email,
        ))

    if status and user_id:
        query = query.where(_status_filter(status, user_id))
    elif search:
        clause = _search_filter(search)
        if clause is not None:
            query = query.where(clause)

    total = (await db.execute(
        select(func.count()).select_from(query.subquery())
    )).scalar_one()

    rows = (await db.execute(
        query.order_by(Introduction.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()

    return {
        "totalRecords": total,
        "totalPages": math.ceil(total / limit),
        "currentPage": page,
        "limit": limit,
        "count": len(rows),
        "referrals": [format_introduction(r) for r in rows],
    }
