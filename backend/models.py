"""
Pydantic Data Models

Request bodies accepted by the API:
  - ContactPayload / ContactUpdate: contact create / partial update (camelCase)
  - DeleteContactsRequest: bulk delete by id
  - CitiesImportRequest: cache import from a URL or an inline list
  - IntroParty / MakeAnIntroRequest: "make an introduction"
  - UpdateStatusRequest / UpdateRequestStatusRequest / SendReminderRequest
  - RevokeRequest

Status values are ``Literal`` types, so FastAPI rejects anything else
with a 422 before a service is ever called.
"""

import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from utils import parse_json_or_list, parse_json_or_object

IntroStatus = Literal["pending", "connected", "decline"]
RequestStatus = Literal["approved", "rejected", "pending"]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _normalize_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip().lower()
    if not value:
        return None
    if not _EMAIL_RE.match(value):
        raise ValueError("email must be a valid email address")
    return value


class _ContactFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = Field(None, max_length=255)
    position: Optional[str] = Field(None, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=255)
    workPhone: Optional[str] = Field(None, max_length=255)
    homePhone: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    additionalAddresses: Optional[str] = None
    city: Optional[str] = Field(None, max_length=255)
    state: Optional[str] = Field(None, max_length=255)
    country: Optional[str] = Field(None, max_length=255)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    timezone: Optional[str] = Field(None, max_length=100)
    birthday: Optional[str] = None
    notes: Optional[str] = None
    title: Optional[str] = Field(None, max_length=255)
    role: Optional[str] = Field(None, max_length=255)
    websiteUrl: Optional[str] = None
    tags: Optional[list[str]] = None
    industries: Optional[list[str]] = None
    socials: Optional[dict[str, Any]] = None

    @field_validator("email")
    @classmethod
    def _email(cls, v):
        return _normalize_email(v)

    @field_validator("tags", "industries", mode="before")
    @classmethod
    def _string_lists(cls, v):
        if v is None:
            return None
        return parse_json_or_list(v)

    @field_validator("socials", mode="before")
    @classmethod
    def _socials(cls, v):
        if v is None:
            return None
        return parse_json_or_object(v)


class ContactPayload(_ContactFields):
    """One contact in a create request."""
    firstName: str = Field(..., min_length=1, max_length=255)
    lastName: str = Field(..., min_length=1, max_length=255)

    @field_validator("firstName", "lastName")
    @classmethod
    def _required_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class ContactUpdate(_ContactFields):
    """Partial update; only fields present in the body are applied."""
    firstName: Optional[str] = Field(None, min_length=1, max_length=255)
    lastName: Optional[str] = Field(None, min_length=1, max_length=255)


class DeleteContactsRequest(BaseModel):
    recordIds: list[str]


class CitiesImportRequest(BaseModel):
    """Either ``url`` (fetched server-side) or an inline ``cities`` list."""
    url: Optional[str] = None
    bearer: Optional[str] = None
    cities: Optional[list[dict[str, Any]]] = None

    @model_validator(mode="after")
    def _one_source(self):
        if not self.url and self.cities is None:
            raise ValueError("either url or cities is required")
        return self


class IntroParty(BaseModel):
    id: Optional[str] = None
    firstName: str = Field(..., min_length=1)
    lastName: str = Field(..., min_length=1)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, v):
        return _normalize_email(v)


class MakeAnIntroRequest(BaseModel):
    introduce: IntroParty
    to: list[IntroParty] = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    # Sender defaults to the authenticated user
    from_: Optional[IntroParty] = Field(None, alias="from")
    groupId: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class UpdateStatusRequest(BaseModel):
    status: IntroStatus


class UpdateRequestStatusRequest(BaseModel):
    status: RequestStatus


class SendReminderRequest(BaseModel):
    message: str = Field(..., min_length=1)


class RevokeRequest(BaseModel):
    revoke: bool = True
