# calsync/schemas/calendar.py
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from calsync.models.calendar import (
    CalendarProvider,
    EventVisibility,
    MappingDirection,
)

ICS_SCHEMES = ("http", "https", "webcal")


# Accounts
class CalendarAccount(BaseModel):
    id: int
    provider: CalendarProvider
    account_email: Optional[str] = None
    ics_url: Optional[str] = None
    needs_reauth: bool
    last_synced_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    webhook_expires_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class IcsSubscriptionCreate(BaseModel):
    url: str
    project_id: int
    technician_id: Optional[int] = None

    @field_validator("url")
    def validate_feed_url(cls, v: str) -> str:
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme.lower() not in ICS_SCHEMES or not parsed.netloc:
            raise ValueError("URL must use http, https or webcal")
        lowered = v.lower()
        if not (
            parsed.path.lower().endswith(".ics")
            or "/ical/" in lowered
            or "/calendar" in lowered
        ):
            raise ValueError("URL does not look like an ICS calendar feed")
        return v


# Mappings
class CalendarMappingCreate(BaseModel):
    project_id: int
    technician_id: Optional[int] = None
    provider_calendar_id: Optional[str] = None
    direction: MappingDirection = MappingDirection.IMPORT
    visibility: EventVisibility = EventVisibility.DETAILS


class CalendarMapping(CalendarMappingCreate):
    id: int
    account_id: int
    enabled: bool

    class Config:
        from_attributes = True


class WatchResponse(BaseModel):
    channel_id: str
    expires_at: Optional[datetime] = None


class AuthorizationUrl(BaseModel):
    authorization_url: str


# ICS feeds
class IcsFeedCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    project_id: Optional[int] = None
    technician_id: Optional[int] = None
    include_notes: bool = False
    include_phone: bool = False


class IcsFeed(BaseModel):
    id: int
    name: str
    project_id: Optional[int] = None
    technician_id: Optional[int] = None
    include_notes: bool
    include_phone: bool
    enabled: bool
    created_at: datetime
    rotated_at: Optional[datetime] = None
    url: Optional[str] = None

    class Config:
        from_attributes = True
