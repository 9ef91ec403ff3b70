"""
Domain errors raised by the service modules.

Every error carries the HTTP status the API renders it with; ``api_server``
registers a single handler for ``AppError``.  Bulk paths never raise these
per row, they collect them into their summaries instead.
"""

from typing import Optional


class AppError(Exception):
    status_code: int = 500

    def __init__(self, message: str, *, data: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.data = data


class ValidationError(AppError):
    """Malformed or missing input."""
    status_code = 422


class DuplicateError(AppError):
    """Email already used by another contact of the same owner."""
    status_code = 409


class NotFoundError(AppError):
    """Row absent, or caller is not a party to it."""
    status_code = 404


class IllegalStateError(AppError):
    """Undefined status pair, backward transition or double revoke."""
    status_code = 400


class ConflictError(AppError):
    """Concurrent writers kept beating us to the same row."""
    status_code = 409


class StoreError(AppError):
    status_code = 500


class ExternalServiceError(AppError):
    """Geocoding provider unreachable, timed out, or not configured.

    Raised and caught inside ``geocoding``; never reaches a request.
    """
    status_code = 502
