"""
Notification Service — Email notifications via Resend.

All sends are wrapped in ``asyncio.to_thread()`` because the Resend SDK
is synchronous and would block the event loop otherwise.

Includes:
  - Single retry with 2s backoff on failure (log on second failure).
  - Sends are fire-and-forget from the caller's point of view: every
    function returns a bool and never raises.

Notification types (all take a formatted introduction dict):
  1. Introduction created  → both introduced parties
  2. Status changed        → the connector (introduced_from)
  3. Reminder              → both introduced parties
  4. Revoked               → both introduced parties
"""

from __future__ import annotations

import asyncio
import html as _html
import logging
from typing import Optional

import resend

from config import RESEND_API_KEY, NOTIFICATION_FROM_EMAIL, APP_URL

logger = logging.getLogger(__name__)

_resend_initialized = False


def _init_resend() -> bool:
    """Initialize Resend SDK. Returns True if ready."""
    global _resend_initialized
    if _resend_initialized:
        return True
    if not RESEND_API_KEY:
        logger.debug("Resend API key not configured, email notifications disabled")
        return False
    resend.api_key = RESEND_API_KEY
    _resend_initialized = True
    return True


async def _send_email(
    to: Optional[str],
    subject: str,
    html: str,
    *,
    max_retries: int = 1,
) -> bool:
    """
    Send an email via Resend with retry.

    Runs the synchronous SDK call in a thread to avoid blocking the
    event loop.  Retries once after a 2-second backoff.

    Returns True on success, False on failure.
    """
    if not to or not _init_resend():
        return False

    payload = {
        "from": NOTIFICATION_FROM_EMAIL,
        "to": to,
        "subject": subject,
        "html": html + _footer(),
    }

    for attempt in range(max_retries + 1):
        try:
            await asyncio.to_thread(resend.Emails.send, payload)
            logger.info("Email sent to %s: %s", to, subject)
            return True
        except Exception as e:
            if attempt < max_retries:
                logger.warning(
                    "Email send failed (attempt %d/%d) to %s: %s, retrying in 2s",
                    attempt + 1,
                    max_retries + 1,
                    to,
                    e,
                )
                await asyncio.sleep(2)
            else:
                logger.error(
                    "Email send FAILED after %d attempts to %s: %s",
                    max_retries + 1,
                    to,
                    e,
                )
    return False


def _footer() -> str:
    return f"""
        <hr style="border: none; border-top: 1px solid #ddd; margin: 32px 0 16px;" />
        <p style="color: #888; font-size: 11px;">
            <a href="{APP_URL}/referrals" style="color: #888; text-decoration: underline;">
                View your introductions
            </a>
        </p>
    """


def _esc(s: Optional[str]) -> str:
    """Basic HTML escaping for user-provided strings."""
    return _html.escape(s or "", quote=True)


def _card(greeting_name: str, body: str, intro_id: str, cta: str) -> str:
    return f"""
        <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; max-width: 500px;">
            <h2 style="color: #222;">Hi {_esc(greeting_name) or "there"},</h2>
            {body}
            <p>
                <a href="{APP_URL}/referrals/{intro_id}"
                   style="display: inline-block; background: #222; color: #fff; padding: 10px 20px;
                          border-radius: 8px; text-decoration: none; font-weight: bold; font-size: 13px;">
                    {cta} →
                </a>
            </p>
        </div>
    """


async def _send_to_introduced_parties(intro: dict, subject: str, body_for) -> bool:
    """Send to A and B concurrently; ``body_for(party, other)`` builds each body."""
    a, b = intro["introduced"], intro["introducedTo"]
    results = await asyncio.gather(
        _send_email(a["email"], subject, _card(a["firstName"], body_for(a, b), intro["introductionId"], "Respond")),
        _send_email(b["email"], subject, _card(b["firstName"], body_for(b, a), intro["introductionId"], "Respond")),
    )
    return all(results)


# ──────────────────────────────────────────────
# Notification Types
# ──────────────────────────────────────────────

async def send_introduction_created(intro: dict) -> bool:
    """Tell both introduced parties about a new introduction."""
    sender = intro["introducedFrom"]["name"] or intro["introducedFrom"]["email"]
    message = intro.get("message") or ""

    def body(party: dict, other: dict) -> str:
        return f"""
            <p style="color: #444;"><strong>{_esc(sender)}</strong> would like to introduce you to
               <strong>{_esc(other["name"])}</strong>.</p>
            <blockquote style="color: #555; border-left: 3px solid #ddd; padding-left: 12px;">{_esc(message)}</blockquote>
        """

    return await _send_to_introduced_parties(intro, f"{sender} introduced you to someone", body)


async def send_status_changed(intro: dict, acting_user_id: str, new_status: str) -> bool:
    """Tell the connector that one side accepted or declined."""
    if intro["introduced"]["id"] == acting_user_id:
        actor, other = intro["introduced"], intro["introducedTo"]
    else:
        actor, other = intro["introducedTo"], intro["introduced"]
    verb = "accepted" if new_status == "connected" else "declined"
    connector = intro["introducedFrom"]
    body = f"""
        <p style="color: #444;"><strong>{_esc(actor["name"])}</strong> {verb} your introduction to
           <strong>{_esc(other["name"])}</strong>.</p>
        <p style="color: #666; font-size: 13px;">Overall status: {_esc(intro["overAllStatus"])}</p>
    """
    return await _send_email(
        connector["email"],
        f"{actor['name']} {verb} your introduction",
        _card(connector["firstName"], body, intro["introductionId"], "View introduction"),
    )


async def send_reminder(intro: dict, message: str) -> bool:
    """Nudge both introduced parties."""
    sender = intro["introducedFrom"]["name"] or intro["introducedFrom"]["email"]

    def body(party: dict, other: dict) -> str:
        return f"""
            <p style="color: #444;">A reminder from <strong>{_esc(sender)}</strong> about your introduction to
               <strong>{_esc(other["name"])}</strong>:</p>
            <blockquote style="color: #555; border-left: 3px solid #ddd; padding-left: 12px;">{_esc(message)}</blockquote>
        """

    return await _send_to_introduced_parties(intro, f"Reminder: {sender}'s introduction", body)


async def send_revoked(intro: dict) -> bool:
    """Tell both introduced parties that the connector withdrew the introduction."""
    sender = intro["introducedFrom"]["name"] or intro["introducedFrom"]["email"]

    def body(party: dict, other: dict) -> str:
        return f"""
            <p style="color: #444;"><strong>{_esc(sender)}</strong> withdrew the introduction to
               <strong>{_esc(other["name"])}</strong>. No action is needed.</p>
        """

    return await _send_to_introduced_parties(intro, f"{sender} withdrew an introduction", body)
