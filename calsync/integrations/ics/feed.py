# calsync/integrations/ics/feed.py
import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx
from icalendar import Calendar

from calsync.core.config import settings
from calsync.integrations.calendar.base import ProviderAdapter
from calsync.integrations.calendar.errors import (
    ProviderError,
    TransientProviderError,
    error_for_status,
)
from calsync.integrations.calendar.retry import call_with_retry
from calsync.integrations.calendar.types import (
    AccountContext,
    CreatedEvent,
    EventError,
    EventListing,
    EventPayload,
    ExternalEvent,
    TokenSet,
)
from calsync.models.calendar import CalendarProvider
from calsync.utils.timeutils import as_naive_utc, ranges_overlap

logger = logging.getLogger(__name__)


def fetchable_url(url: str) -> str:
    """``webcal://`` is plain HTTPS as far as fetching goes."""
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://"):]
    return url


def _text(component, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class IcsFeedAdapter(ProviderAdapter):
    """
    Read-only adapter over a published iCalendar feed.

    The whole document is fetched on every listing and filtered to the
    window locally. Writes are accepted and ignored; nothing is ever pushed
    to an ICS source.
    """

    provider = CalendarProvider.ICS
    supports_write = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    async def fetch(self, url: str) -> str:
        async def attempt() -> str:
            try:
                async with httpx.AsyncClient(
                    timeout=settings.PROVIDER_TIMEOUT,
                    transport=self.transport,
                    follow_redirects=True,
                ) as client:
                    response = await client.get(
                        fetchable_url(url),
                        headers={
                            "User-Agent": settings.ICS_USER_AGENT,
                            "Accept": "text/calendar, */*",
                        },
                    )
            except httpx.TransportError as e:
                raise TransientProviderError(f"ICS feed unreachable: {e}", provider="ics")
            if response.status_code >= 400:
                raise error_for_status(
                    response.status_code,
                    f"ICS feed returned {response.status_code}",
                    "ics",
                    headers=response.headers,
                )
            return response.text

        return await call_with_retry(attempt, "ICS fetch")

    async def list_events(
        self, ctx: AccountContext, window_start: datetime, window_end: datetime
    ) -> EventListing:
        if not ctx.ics_url:
            raise ProviderError("ICS URL is required", provider="ics")

        try:
            body = await self.fetch(ctx.ics_url)
        except TransientProviderError as e:
            return EventListing(complete=False, errors=[EventError(message=e.message)])

        return self.parse(body, window_start, window_end, source=ctx.ics_url)

    def parse(
        self,
        body: str,
        window_start: datetime,
        window_end: datetime,
        source: str = "",
    ) -> EventListing:
        """Parse an iCalendar document and keep events overlapping the window."""
        try:
            calendar = Calendar.from_ical(body)
        except ValueError as e:
            raise ProviderError(f"ICS feed could not be parsed: {e}", provider="ics")

        listing = EventListing()
        for component in calendar.walk("VEVENT"):
            uid = _text(component, "UID")
            try:
                event = self.normalize_event(component, source)
            except (KeyError, TypeError, ValueError) as e:
                listing.errors.append(
                    EventError(message=f"Malformed event: {e}", event_id=uid)
                )
                continue
            if event is None:
                continue
            if ranges_overlap(event.start, event.end, window_start, window_end):
                listing.events.append(event)
        return listing

    @staticmethod
    def normalize_event(component, source: str = "") -> Optional[ExternalEvent]:
        """Map a VEVENT onto ``ExternalEvent``; cancelled events map to None."""
        status = _text(component, "STATUS")
        if status and status.upper() == "CANCELLED":
            return None

        dtstart = component.get("DTSTART")
        if dtstart is None:
            raise ValueError("VEVENT has no DTSTART")
        raw_start = dtstart.dt
        start = as_naive_utc(raw_start)
        all_day = not isinstance(raw_start, datetime)

        if component.get("DTEND") is not None:
            end = as_naive_utc(component.get("DTEND").dt)
        elif component.get("DURATION") is not None:
            end = start + component.get("DURATION").dt
        elif all_day:
            end = start + timedelta(days=1)
        else:
            end = start
        if end < start:
            raise ValueError("event ends before it starts")

        uid = _text(component, "UID")
        external_id = uid or f"{source}-{start.isoformat()}"
        recurrence = component.get("RECURRENCE-ID")
        if uid and recurrence is not None:
            # Overridden instances share the series UID
            external_id = f"{uid}:{as_naive_utc(recurrence.dt).isoformat()}"

        # DTSTAMP is regenerated on every publish and is not a modification time
        last_modified = component.get("LAST-MODIFIED")
        attendee = component.get("ATTENDEE")
        if isinstance(attendee, list):
            attendee = attendee[0] if attendee else None
        attendee_email = None
        attendee_name = None
        if attendee is not None:
            address = str(attendee)
            if address.lower().startswith("mailto:"):
                address = address[len("mailto:"):]
            attendee_email = address or None
            attendee_name = attendee.params.get("CN") if hasattr(attendee, "params") else None

        transparency = _text(component, "TRANSP")
        return ExternalEvent(
            external_id=external_id,
            uid=uid,
            start=start,
            end=end,
            title=_text(component, "SUMMARY"),
            description=_text(component, "DESCRIPTION"),
            location=_text(component, "LOCATION"),
            attendee_name=attendee_name,
            attendee_email=attendee_email,
            last_modified=as_naive_utc(last_modified.dt) if last_modified is not None else None,
            all_day=all_day,
            busy=not (transparency and transparency.upper() == "TRANSPARENT"),
        )

    async def create_event(
        self, ctx: AccountContext, payload: EventPayload
    ) -> CreatedEvent:
        logger.debug(f"Ignoring create on read-only ICS account {ctx.account_id}")
        return CreatedEvent(external_id="")

    async def update_event(
        self, ctx: AccountContext, external_id: str, payload: EventPayload
    ) -> None:
        return None

    async def delete_event(self, ctx: AccountContext, external_id: str) -> None:
        return None

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        raise ProviderError("ICS feeds do not use OAuth tokens", provider="ics")
