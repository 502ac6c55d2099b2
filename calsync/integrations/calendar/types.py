# calsync/integrations/calendar/types.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from calsync.models.calendar import CalendarProvider, EventVisibility


@dataclass
class ExternalEvent:
    """A provider calendar entry normalized to naive-UTC times."""

    external_id: str
    start: datetime
    end: datetime
    uid: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    attendee_name: Optional[str] = None
    attendee_email: Optional[str] = None
    attendee_phone: Optional[str] = None
    last_modified: Optional[datetime] = None
    all_day: bool = False
    busy: bool = True


@dataclass
class EventError:
    message: str
    event_id: Optional[str] = None


@dataclass
class EventListing:
    """
    Result of listing a window.

    ``complete`` is False when any page could not be read; callers must not
    treat a missing event as deleted in that case.
    """

    events: List[ExternalEvent] = field(default_factory=list)
    errors: List[EventError] = field(default_factory=list)
    complete: bool = True


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class AccountContext:
    """What an adapter needs to talk to one account (never the ORM row)."""

    account_id: int
    provider: CalendarProvider
    access_token: Optional[str] = None
    calendar_id: Optional[str] = None
    ics_url: Optional[str] = None


@dataclass
class EventPayload:
    """Outbound event body built from a booking."""

    title: str
    start: datetime
    end: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    visibility: EventVisibility = EventVisibility.DETAILS


@dataclass
class CreatedEvent:
    external_id: str
    uid: Optional[str] = None


@dataclass
class WebhookChannel:
    channel_id: str
    resource_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    client_state: Optional[str] = None
