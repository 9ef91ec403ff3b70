"""
API Server — FastAPI app for the Intro Network backend

Endpoints (all under /api, bearer auth except health):
  GET    /api/health                               — Health check
  GET    /api/contacts                             — List / filter / sort contacts
  POST   /api/contacts/create-contact              — Create one or many contacts
  GET    /api/contacts/get-contact/{id}            — Single contact
  PATCH  /api/contacts/update-contact/{id}         — Partial update
  POST   /api/contacts/delete                      — Bulk delete by id
  POST   /api/contacts/import-csv-bulk             — CSV import, duplicates skipped
  POST   /api/contacts/import-csv-copy             — CSV import, duplicates updated
  POST   /api/contacts/geocode-pending             — Queue a geocoding sweep
  GET    /api/contacts/geocoding-status            — Coordinate coverage
  GET    /api/contacts/graph/{year}                — Cumulative contacts per month
  POST   /api/cities/import                        — Load the cities cache
  POST   /api/make-an-intro/validation             — Validate an intro payload
  POST   /api/make-an-intro                        — Create introductions
  GET    /api/referrals/get-user-referrals         — List / filter introductions
  POST   /api/referrals/update-status/{id}         — Caller's sub-status
  POST   /api/referrals/update-request-status/{id} — Group request status
  GET    /api/referrals/get-detail/{id}            — Single introduction
  POST   /api/referrals/send-reminder/{id}         — Store + email a reminder
  POST   /api/referrals/revoke-referral/{id}       — Connector withdraws

Security layers:
  1. Bearer JWT on every route but health
  2. Rate limiting (per-IP, in-memory)
  3. CORS restricted to frontend origins
  4. Upload extension + size limits

Run:
  uvicorn api_server:app --reload --port 8000
"""

import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

import httpx
from fastapi import Body, Depends, FastAPI, File, HTTPException, Path, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import contacts as contacts_service
import referrals as referrals_service
from auth import AuthUser, require_auth
from config import (
    ALLOWED_ORIGINS,
    GOOGLE_MAPS_API_KEY,
    MAX_IMPORT_BYTES,
    RATE_LIMIT_PER_MINUTE,
    RESEND_API_KEY,
)
from contact_import import decode_upload, import_contacts, validate_upload
from db import get_db
from db.models import User
from errors import AppError, ValidationError
from geocoding import Geocoder, fetch_city_list, import_cities
from jobs import geocode_jobs
from logging_config import setup_logging
from models import (
    CitiesImportRequest,
    ContactUpdate,
    DeleteContactsRequest,
    MakeAnIntroRequest,
    RevokeRequest,
    SendReminderRequest,
    UpdateRequestStatusRequest,
    UpdateStatusRequest,
)

setup_logging()
logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Rate Limiter (in-memory, per-IP)
# ──────────────────────────────────────────────

class RateLimiter:
    """Simple sliding-window rate limiter with automatic stale-IP cleanup."""

    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._last_cleanup = time.time()
        self._cleanup_interval = 300  # Prune stale IPs every 5 minutes

    def _maybe_cleanup(self):
        """Remove IPs with no recent requests to prevent unbounded memory growth."""
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        stale_keys = [
            k for k, timestamps in self._requests.items()
            if not timestamps or (now - max(timestamps)) > self.window
        ]
        for k in stale_keys:
            del self._requests[k]

    def check(self, client_id: str) -> bool:
        """Returns True if the request is allowed."""
        now = time.time()
        self._maybe_cleanup()
        self._requests[client_id] = [
            t for t in self._requests[client_id] if now - t < self.window
        ]
        if len(self._requests[client_id]) >= self.max_requests:
            return False
        self._requests[client_id].append(now)
        return True


# ──────────────────────────────────────────────
# App Setup
# ──────────────────────────────────────────────

rate_limiter = RateLimiter(max_requests=RATE_LIMIT_PER_MINUTE, window_seconds=60)
geocoder = Geocoder()

_RATE_LIMIT_EXEMPT = {
    "/api/health",
    "/api/contacts/geocoding-status",
}


def get_geocoder() -> Geocoder:
    return geocoder


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and the geocoding worker on startup."""
    from db import init_db
    logger.info("Initializing database...")
    await init_db()
    logger.info("Database ready")

    geocode_jobs.start()

    yield

    await geocode_jobs.stop()
    logger.info("Shutting down")


app = FastAPI(
    title="Intro Network API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────
# Middleware & error mapping
# ──────────────────────────────────────────────

@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    """Apply rate limiting to API routes (skip CORS preflight and status polling)."""
    path = request.url.path.rstrip("/")
    if (
        request.url.path.startswith("/api/")
        and request.method != "OPTIONS"
        and path not in _RATE_LIMIT_EXEMPT
    ):
        client_ip = request.client.host if request.client else "unknown"
        if not rate_limiter.check(client_ip):
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please wait a moment and try again."},
            )
    return await call_next(request)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"statusCode": exc.status_code, "message": exc.message, "data": exc.data},
    )


def _ok(data: Any = None, message: str = "Success", status_code: int = 200, **extra) -> dict:
    return {"statusCode": status_code, "message": message, "data": data, **extra}


# ──────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────

@app.get("/api/health")
async def health():
    """Health check."""
    return {
        "status": "ok",
        "geocoding_provider_configured": bool(GOOGLE_MAPS_API_KEY),
        "email_configured": bool(RESEND_API_KEY),
    }


# ──────────────────────────────────────────────
# Contacts
# ──────────────────────────────────────────────

@app.get("/api/contacts")
async def list_contacts(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=500),
    filter: str = "",
    sort: str = "created_at:desc",
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's contacts."""
    result = await contacts_service.list_contacts(db, user.id, page, limit, filter, sort)
    contacts = result.pop("contacts")
    return _ok({"contacts": contacts}, **result)


@app.post("/api/contacts/create-contact", status_code=201)
async def create_contact(
    payload: Union[list[dict[str, Any]], dict[str, Any]] = Body(...),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    geo: Geocoder = Depends(get_geocoder),
):
    """Create a single contact (object body) or several (array body)."""
    result = await contacts_service.create_contacts(db, user.id, payload, geo)
    return _ok(
        {"contacts": result["contacts"]},
        message="Contact created successfully",
        status_code=201,
        totalRecords=result["totalRecords"],
    )


@app.get("/api/contacts/get-contact/{contact_id}")
async def get_contact(
    contact_id: str,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await contacts_service.get_contact(db, user.id, contact_id))


@app.patch("/api/contacts/update-contact/{contact_id}")
async def update_contact(
    contact_id: str,
    request: ContactUpdate,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    geo: Geocoder = Depends(get_geocoder),
):
    contact = await contacts_service.update_contact(db, user.id, contact_id, request, geo)
    return _ok(contact, message="Contact updated successfully")


@app.post("/api/contacts/delete")
async def delete_contacts(
    request: DeleteContactsRequest,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    deleted = await contacts_service.delete_contacts(db, user.id, request.recordIds)
    return _ok({"deleted": deleted}, message="Contacts deleted successfully")


async def _run_import(
    file: UploadFile,
    policy: str,
    user: AuthUser,
    db: AsyncSession,
    geo: Geocoder,
) -> dict:
    # Read one byte past the limit so oversize uploads are detected without buffering them whole
    raw = await file.read(MAX_IMPORT_BYTES + 1)
    validate_upload(file.filename, len(raw))
    summary = await import_contacts(
        db,
        user.id,
        decode_upload(raw),
        policy,
        geocoder=geo,
        dispatch=geocode_jobs.dispatch,
    )
    return _ok(
        summary.to_dict(),
        message="Bulk import completed",
        totalRecords=await contacts_service.count_contacts(db, user.id),
    )


@app.post("/api/contacts/import-csv-bulk")
async def import_csv_bulk(
    file: UploadFile = File(...),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    geo: Geocoder = Depends(get_geocoder),
):
    """CSV import; rows whose email already exists are skipped."""
    return await _run_import(file, "skip", user, db, geo)


@app.post("/api/contacts/import-csv-copy")
async def import_csv_copy(
    file: UploadFile = File(...),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    geo: Geocoder = Depends(get_geocoder),
):
    """CSV import; rows whose email already exists update that contact."""
    return await _run_import(file, "update", user, db, geo)


@app.post("/api/contacts/geocode-pending")
async def geocode_pending(
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Queue a geocoding sweep if any contact still lacks coordinates."""
    pending = await contacts_service.count_needing_geocoding(db, user.id)
    if not pending:
        return _ok({"contactsNeedingGeocoding": 0}, message="No contacts need geocoding")
    geocode_jobs.dispatch(user.id)
    return _ok({"contactsNeedingGeocoding": pending}, message="Geocoding job dispatched")


@app.get("/api/contacts/geocoding-status")
async def geocoding_status(
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    status = await contacts_service.geocoding_status(db, user.id)
    status["jobQueued"] = geocode_jobs.is_queued(user.id)
    return _ok(status)


@app.get("/api/contacts/graph/{year}")
async def contacts_graph(
    year: int = Path(..., ge=1, le=9999),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await contacts_service.contacts_chart(db, user.id, year))


# ──────────────────────────────────────────────
# Cities cache
# ──────────────────────────────────────────────

@app.post("/api/cities/import")
async def cities_import(
    request: CitiesImportRequest,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Load cities from an inline list or a remote JSON endpoint."""
    cities = request.cities
    if cities is None:
        try:
            cities = await fetch_city_list(request.url, request.bearer)
        except httpx.HTTPError as e:
            logger.warning("Cities fetch from %s failed: %s", request.url, e)
            raise HTTPException(status_code=502, detail="Failed to fetch cities")
    counts = await import_cities(db, cities)
    return _ok(counts, message="Cities imported")


# ──────────────────────────────────────────────
# Make an intro
# ──────────────────────────────────────────────

@app.post("/api/make-an-intro/validation")
async def make_an_intro_validation(
    request: MakeAnIntroRequest,
    user: AuthUser = Depends(require_auth),
):
    """Body validation only; nothing is stored."""
    return _ok(None, message="Validation is succeed")


async def _sender_for(db: AsyncSession, user: AuthUser, request: MakeAnIntroRequest) -> dict:
    if request.from_ is not None:
        return request.from_.model_dump()
    row = (await db.execute(select(User).where(User.id == user.id))).scalar_one_or_none()
    return {
        "id": user.id,
        "email": (row.email if row else None) or user.email,
        "firstName": row.first_name if row else None,
        "lastName": row.last_name if row else None,
    }


@app.post("/api/make-an-intro")
async def make_an_intro(
    request: MakeAnIntroRequest,
    groupId: Optional[str] = Query(None),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Introduce one person to every recipient in ``to``."""
    sender = await _sender_for(db, user, request)
    rows = await referrals_service.make_introductions(
        db,
        sender,
        request.introduce.model_dump(),
        [r.model_dump() for r in request.to],
        request.message,
        group_id=groupId or request.groupId,
    )
    total = await referrals_service.count_sent(db, rows[0].introduced_from_email)
    return _ok(
        {"referrals": [referrals_service.format_introduction(r) for r in rows]},
        message="Intro sent successfully",
        totalRecords=total,
        count=len(rows),
    )


# ──────────────────────────────────────────────
# Referrals
# ──────────────────────────────────────────────

@app.get("/api/referrals/get-user-referrals")
async def get_user_referrals(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    userId: Optional[str] = None,
    search: Optional[str] = None,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Introductions the caller is part of, newest first."""
    if not user.email:
        raise ValidationError("Token carries no email claim")
    result = await referrals_service.list_referrals(
        db,
        user.email,
        page=page,
        limit=limit,
        status=status,
        user_id=(userId or user.id) if status else None,
        search=search,
    )
    referrals = result.pop("referrals")
    return _ok({"referrals": referrals}, message="Referrals fetched successfully", **result)


@app.post("/api/referrals/update-status/{introduction_id}")
async def update_status(
    introduction_id: str,
    request: UpdateStatusRequest,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    intro = await referrals_service.update_status(db, introduction_id, user.id, request.status)
    return _ok(intro, message="Status updated successfully")


@app.post("/api/referrals/update-request-status/{introduction_id}")
async def update_request_status(
    introduction_id: str,
    request: UpdateRequestStatusRequest,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    intro = await referrals_service.update_request_status(db, introduction_id, user.id, request.status)
    return _ok(intro, message="Request status updated successfully")


@app.get("/api/referrals/get-detail/{introduction_id}")
async def get_detail(
    introduction_id: str,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await referrals_service.get_detail(db, introduction_id, user.id))


@app.post("/api/referrals/send-reminder/{introduction_id}")
async def send_reminder(
    introduction_id: str,
    request: SendReminderRequest,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    result = await referrals_service.send_reminder(db, introduction_id, user.id, request.message)
    return _ok(None, message=result["message"])


@app.post("/api/referrals/revoke-referral/{introduction_id}")
async def revoke_referral(
    introduction_id: str,
    request: Optional[RevokeRequest] = None,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    flag = request.revoke if request is not None else True
    result = await referrals_service.revoke(db, introduction_id, user.id, flag)
    return _ok(None, message=result["message"])
